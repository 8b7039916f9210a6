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
Local image store.
Keeps downloaded layer archives under <root>/images/<name>/<tag>/.
"""

import os
import json
import shutil
import tempfile
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Iterator
from pathlib import Path
from datetime import datetime, timezone

from ..errors import ImageNotFoundError
from ..MODELS.image import Layer, StoredImage
from ..MODELS.store import Store
from .image_reference import ImageReference

MANIFEST_FILE = "manifest.json"


class ImageStore:
    """
    Manages pulled images on disk.
    An image is usable once its manifest.json and every layer it lists exist.
    """

    def __init__(self, store: Store):
        """
        Initialize the image store.

        Args:
            store: Store whose images tree is managed.
        """
        self.store = store
        self.store.ensure_layout()

    def layer_path(self, image_name: str, tag: str, digest: str) -> Path:
        """Get the path of a layer archive."""
        return self.store.image_dir(ImageReference(image_name, tag)) / f"{digest}.tar"

    def exists(self, image_name: str, tag: str) -> bool:
        """Check whether a directory exists for the image."""
        return self.store.image_dir(ImageReference(image_name, tag)).is_dir()

    def is_complete(self, image_name: str, tag: str) -> bool:
        """Check that the image has a manifest and all the layers it lists."""
        image_dir = self.store.image_dir(ImageReference(image_name, tag))
        manifest = self._read_manifest(image_dir)
        if manifest is None or not manifest.get("layers"):
            return False
        return all((image_dir / f"{digest}.tar").is_file() for digest in manifest["layers"])

    def _read_manifest(self, image_dir: Path) -> Optional[Dict[str, Any]]:
        """Load manifest.json, or None if it is missing or unreadable."""
        manifest_path = image_dir / MANIFEST_FILE
        if not manifest_path.is_file():
            return None
        try:
            with open(manifest_path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            return None
        return data if isinstance(data, dict) else None

    def layers(self, ref: ImageReference) -> List[Layer]:
        """
        Get the layers of an image in manifest order.

        Without a readable manifest the archives present are returned in name
        order, which is not necessarily the order they must be applied in.
        """
        image_dir = self.store.image_dir(ref)
        manifest = self._read_manifest(image_dir)

        if manifest is not None:
            paths = [image_dir / f"{digest}.tar" for digest in manifest.get("layers", [])]
        else:
            paths = sorted(image_dir.glob("*.tar"))

        return [
            Layer(digest=path.stem, path=path, size=path.stat().st_size if path.exists() else 0)
            for path in paths
        ]

    def _stored_image(self, ref: ImageReference) -> StoredImage:
        image_dir = self.store.image_dir(ref)
        created = datetime.fromtimestamp(image_dir.stat().st_ctime, tz=timezone.utc)
        return StoredImage(
            reference=ref,
            layers=self.layers(ref),
            created=created,
            complete=self.is_complete(ref.name, ref.tag),
        )

    def get(self, ref: ImageReference) -> StoredImage:
        """
        Get a complete stored image.

        Raises:
            ImageNotFoundError: The image was never pulled or is incomplete.
        """
        if not self.exists(ref.name, ref.tag):
            raise ImageNotFoundError(str(ref))
        if not self.is_complete(ref.name, ref.tag):
            raise ImageNotFoundError(
                str(ref), f"Image {ref} is incomplete, pull it again"
            )
        return self._stored_image(ref)

    def list_all(self) -> List[StoredImage]:
        """
        List all stored images, complete or not.

        Returns:
            StoredImage objects ordered by name and tag
        """
        images = []
        if not self.store.images_dir.is_dir():
            return images

        for name_dir in sorted(self.store.images_dir.iterdir()):
            if not name_dir.is_dir():
                continue
            for tag_dir in sorted(name_dir.iterdir()):
                if tag_dir.is_dir():
                    ref = ImageReference.from_storage(name_dir.name, tag_dir.name)
                    images.append(self._stored_image(ref))
        return images

    def remove(self, image_name: str, tag: str) -> bool:
        """
        Remove an image tag.
        The image's name directory goes too once its last tag is removed.

        Returns:
            True if removed, False if not found
        """
        ref = ImageReference(image_name, tag)
        tag_dir = self.store.image_dir(ref)
        if not tag_dir.is_dir():
            return False

        shutil.rmtree(tag_dir)

        name_dir = tag_dir.parent
        if name_dir.is_dir() and not any(name_dir.iterdir()):
            name_dir.rmdir()
        return True

    @contextmanager
    def staging(self, ref: ImageReference) -> Iterator[Path]:
        """
        Stage a pull of an image.

        Yields an empty directory on the store's filesystem. When the block
        completes the directory replaces the image's tag directory; when it
        raises the directory is deleted and the stored image is untouched.
        """
        self.store.staging_dir.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(
            tempfile.mkdtemp(prefix=f"pull-{ref.storage_name}-", dir=self.store.staging_dir)
        )
        try:
            yield staging_dir
        except BaseException:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise

        target = self.store.image_dir(ref)
        target.parent.mkdir(parents=True, exist_ok=True)

        previous = None
        if target.exists():
            # Re-pulling a tag replaces its layers
            previous = staging_dir.with_name(staging_dir.name + ".old")
            os.rename(target, previous)
        os.rename(staging_dir, target)
        if previous is not None:
            shutil.rmtree(previous, ignore_errors=True)

    def write_layer(self, staging_dir: Path, digest: str, content: bytes) -> Path:
        """Write a downloaded layer archive into a staging directory."""
        layer_path = staging_dir / f"{digest}.tar"
        with open(layer_path, "wb") as f:
            f.write(content)
        return layer_path

    def write_manifest(
        self,
        staging_dir: Path,
        ref: ImageReference,
        digests: List[str],
        manifest: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """
        Record the layer order of a pull.

        Args:
            staging_dir: Directory returned by staging()
            ref: Image reference being pulled
            digests: Layer digests, base layer first
            manifest: Registry manifest the layers came from
        """
        manifest_path = staging_dir / MANIFEST_FILE
        entry = {
            "reference": str(ref),
            "layers": digests,
            "pulled_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "manifest": manifest or {},
        }
        with open(manifest_path, "w") as f:
            json.dump(entry, f, indent=2)
        return manifest_path
