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
On-disk layout of the runtime store.

    <root>/images/<name>/<tag>/<digest>.tar
    <root>/containers/<id>/rootfs/
    <root>/containers/<id>/workspace/
    <root>/staging/
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Union

from ..errors import ContainerNotFoundError
from ..REGISTRY.image_reference import ImageReference


@dataclass(frozen=True)
class Store:
    """Root of the store plus the path conventions every component shares."""

    root: Path

    @classmethod
    def at(cls, root: Union[str, Path]) -> "Store":
        return cls(root=Path(root).expanduser().absolute())

    @property
    def images_dir(self) -> Path:
        return self.root / "images"

    @property
    def containers_dir(self) -> Path:
        return self.root / "containers"

    @property
    def staging_dir(self) -> Path:
        """Scratch space for pulls and builds, renamed into place on success."""
        return self.root / "staging"

    def image_dir(self, ref: ImageReference) -> Path:
        return self.images_dir / ref.storage_name / ref.tag

    def container_dir(self, container_id: str) -> Path:
        # ids are single path components
        if not container_id or "/" in container_id or container_id in (".", ".."):
            raise ContainerNotFoundError(container_id)
        return self.containers_dir / container_id

    def rootfs_path(self, container_id: str) -> Path:
        return self.container_dir(container_id) / "rootfs"

    def workspace_path(self, container_id: str) -> Path:
        return self.container_dir(container_id) / "workspace"

    def ensure_layout(self) -> None:
        """Create the top-level directories."""
        for path in (self.images_dir, self.containers_dir, self.staging_dir):
            path.mkdir(parents=True, exist_ok=True)
