# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Image reference parsing and handling.
Parses image references like 'alpine', 'alpine:3.19' or 'myuser/app:v1'.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - alpine -> alpine:latest
        - alpine:3.19 -> alpine:3.19
        - myuser/app:v1 -> myuser/app:v1
    """

    name: str
    tag: str = "latest"

    DEFAULT_TAG = "latest"
    STORAGE_SEPARATOR = "+"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        The tag is whatever follows the last ':'. A missing or empty tag
        becomes 'latest'.

        Args:
            reference: Image reference string (e.g., 'alpine:3.19')

        Returns:
            Parsed ImageReference object.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")

        reference = reference.strip()
        name, tag = reference, ""
        if ":" in reference:
            last_colon = reference.rfind(":")
            after_colon = reference[last_colon + 1 :]
            # 'host:5000/app' has no tag, the colon belongs to the name
            if "/" not in after_colon:
                name = reference[:last_colon]
                tag = after_colon

        if not name:
            raise ValueError(f"Image reference '{reference}' has no name")
        if any(part in ("", ".", "..") for part in name.split("/")) or tag in (".", ".."):
            raise ValueError(f"Invalid image reference '{reference}'")

        return cls(name=name, tag=tag or cls.DEFAULT_TAG)

    @classmethod
    def from_storage(cls, storage_name: str, tag: str) -> "ImageReference":
        """Rebuild a reference from its on-disk directory names."""
        return cls(name=storage_name.replace(cls.STORAGE_SEPARATOR, "/"), tag=tag)

    @property
    def storage_name(self) -> str:
        """Directory name of the image under the images tree."""
        return self.name.replace("/", self.STORAGE_SEPARATOR)

    def repository(self, namespace: str) -> str:
        """
        Get the repository path used in registry URLs.

        Official images live under the namespace ('library/alpine');
        names that already carry a path are used as they are.
        """
        if "/" in self.name:
            return self.name
        return f"{namespace}/{self.name}"

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"

    def __repr__(self) -> str:
        return f"ImageReference({self})"
