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
Exceptions raised by the runtime.
Every error carries the reference, id or digest it failed on.
"""

from typing import Optional


class MiniboxError(Exception):
    """Base class for all runtime errors."""


class AuthError(MiniboxError):
    """The registry token endpoint did not hand out a usable token."""


class ManifestError(MiniboxError):
    """No manifest, no layers, or no entry for the target platform."""


class LayerFetchError(MiniboxError):
    """A layer blob could not be downloaded or failed verification."""

    def __init__(self, digest: str, reason: str = ""):
        self.digest = digest
        message = f"Failed to fetch layer {digest}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ImageNotFoundError(MiniboxError):
    """The referenced image has not been (completely) pulled."""

    def __init__(self, reference: str, reason: Optional[str] = None):
        self.reference = reference
        super().__init__(reason or f"Image {reference} not found")


class ExtractionError(MiniboxError):
    """A layer archive could not be extracted into a root filesystem."""

    def __init__(self, layer: str, reason: str = ""):
        self.layer = layer
        message = f"Failed to extract layer {layer}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ContainerNotFoundError(MiniboxError):
    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"Container {container_id} not found")


class ExecutionError(MiniboxError):
    """The command could not be started inside the container."""


class MountError(MiniboxError):
    """A bind mount or unmount failed."""
