"""
Builders for turning stored images into container root filesystems.
"""
import errno
import os
import tarfile
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
from ..errors import ExtractionError
from ..MODELS.container import Container
from ..MODELS.store import Store
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.image_store import ImageStore
from ..UTILS.file_utils import remove_tree

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"
CONTAINER_FILE = "container.json"
MAX_SYMLINKS = 40

class ContainerBuilder:
    """
    Creates containers by extracting an image's layers, in order, into a
    fresh root filesystem next to an empty workspace directory.
    """
    def __init__(self, store: Store, image_store: Optional[ImageStore] = None):
        """
        Initializes the ContainerBuilder.

        :param store: Store holding images and containers.
        :param image_store: Image store to read layers from; built from store if omitted.
        """
        self.store = store
        self.image_store = image_store or ImageStore(store)

    def new_container_id(self, ref: ImageReference) -> str:
        """
        Allocates an id of the form <image-name>-<tag>_<nanosecond timestamp>.

        :param ref: Image the container is built from.
        :return: An id not used by any existing container.
        """
        while True:
            container_id = f"{ref.storage_name}-{ref.tag}_{time.time_ns()}"
            if not self.store.container_dir(container_id).exists():
                return container_id

    def build(self, image: Union[str, ImageReference]) -> Container:
        """
        Builds a container from a stored image.

        The root filesystem is assembled in a staging directory and only moved
        into the containers tree once every layer is extracted, so a failed
        build leaves no container behind.

        :param image: Image reference (e.g. 'alpine:3.19').
        :return: The new container.
        :raises ImageNotFoundError: The image is not (completely) pulled.
        :raises ExtractionError: A layer could not be extracted.
        """
        ref = image if isinstance(image, ImageReference) else ImageReference.parse(image)
        stored = self.image_store.get(ref)

        container_id = self.new_container_id(ref)
        self.store.staging_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f"build-{container_id}-", dir=self.store.staging_dir))

        try:
            rootfs = staging / "rootfs"
            rootfs.mkdir()
            (staging / "workspace").mkdir()

            for i, layer in enumerate(stored.layers):
                print(f"Extracting layer {i + 1}/{len(stored.layers)}: {layer.digest[:12]}...")
                try:
                    self.extract_layer(layer.path, rootfs)
                except (tarfile.TarError, OSError) as e:
                    raise ExtractionError(layer.digest, str(e)) from e

            container = Container(
                id=container_id,
                image=ref,
                root_path=self.store.rootfs_path(container_id),
                workspace_path=self.store.workspace_path(container_id),
                created_at=datetime.now(timezone.utc),
            )
            (staging / CONTAINER_FILE).write_text(container.model_dump_json(indent=2))

            self.store.containers_dir.mkdir(parents=True, exist_ok=True)
            os.rename(staging, self.store.container_dir(container_id))
        except BaseException:
            if staging.exists():
                remove_tree(staging)
            raise

        print(f"Created container {container_id}")
        return container

    def extract_layer(self, layer_path: Path, dest_dir: Path):
        """
        Extracts a layer archive over a root filesystem.

        Whiteout entries are applied first since they only hide files from
        lower layers; the remaining entries then overwrite what is there.
        Every member is written at the path the container will see, with
        symlinks already in the root filesystem resolved inside it.

        :param layer_path: Path to the layer archive (plain or compressed tar).
        :param dest_dir: Root filesystem to extract into.
        """
        root = os.path.realpath(dest_dir)
        # "r:*" detects gzip, bzip2 and xz compressed layers
        with tarfile.open(layer_path, mode="r:*") as tar:
            members = [m for m in tar.getmembers() if self._is_safe_name(m.name)]

            whiteouts, entries = [], []
            for member in members:
                name = os.path.basename(member.name.rstrip("/"))
                (whiteouts if name.startswith(WHITEOUT_PREFIX) else entries).append(member)

            for member in whiteouts:
                self._apply_whiteout(root, member.name)

            for member in entries:
                name = member.name.rstrip("/")
                if os.path.basename(name) in ("", "."):
                    continue
                target = os.path.join(self._resolve_in_root(root, os.path.dirname(name)), os.path.basename(name))
                changes = {"name": os.path.relpath(target, root)}

                if member.islnk():
                    if not self._is_safe_name(member.linkname):
                        print(f"Warning: skipping {member.name}, its link target leaves the root filesystem")
                        continue
                    source = self._resolve_in_root(root, member.linkname)
                    if not os.path.lexists(source):
                        print(f"Warning: skipping {member.name}, link target {member.linkname} does not exist")
                        continue
                    changes["linkname"] = os.path.relpath(source, root)

                self._prepare_target(Path(target), member)
                tar.extract(member.replace(**changes, deep=False), root, filter="fully_trusted")

    @staticmethod
    def _is_safe_name(name: str) -> bool:
        """Rejects absolute names and names climbing out with '..'."""
        if name.startswith("/"):
            return False
        return ".." not in Path(name).parts

    @staticmethod
    def _resolve_in_root(root: str, relative: str) -> str:
        """
        Resolves a path the way a process chrooted into root would.

        Symlinks are followed inside root: absolute targets restart at root
        and '..' stops at root, so the result never leaves it.

        :raises OSError: ELOOP when more than MAX_SYMLINKS links are followed.
        """
        pending = relative.split("/")
        parts = []
        followed = 0
        while pending:
            part = pending.pop(0)
            if part in ("", "."):
                continue
            if part == "..":
                if parts:
                    parts.pop()
                continue
            candidate = os.path.join(root, *parts, part)
            if os.path.islink(candidate):
                followed += 1
                if followed > MAX_SYMLINKS:
                    raise OSError(errno.ELOOP, os.strerror(errno.ELOOP), relative)
                link = os.readlink(candidate)
                if link.startswith("/"):
                    parts = []
                pending = link.split("/") + pending
                continue
            parts.append(part)
        return os.path.join(root, *parts)

    @staticmethod
    def _prepare_target(target: Path, member: tarfile.TarInfo):
        """
        Clears whatever a lower layer left at a path, unless both are directories.
        Writing through a leftover symlink would modify the link's target instead.
        """
        if not os.path.lexists(target):
            return
        if target.is_dir() and not target.is_symlink():
            if member.isdir():
                return
            remove_tree(target)
        else:
            target.unlink()

    def _apply_whiteout(self, root: str, whiteout_path: str):
        """
        Applies a whiteout entry.

        .wh.<name> deletes <name>; .wh..wh..opq empties its directory.
        """
        name = whiteout_path.rstrip("/")
        filename = os.path.basename(name)
        parent = Path(self._resolve_in_root(root, os.path.dirname(name)))

        if filename == OPAQUE_WHITEOUT:
            if parent.is_dir() and not parent.is_symlink():
                for item in parent.iterdir():
                    if item.is_dir() and not item.is_symlink():
                        remove_tree(item)
                    else:
                        item.unlink()
        else:
            target = parent / filename[len(WHITEOUT_PREFIX):]
            if target.is_dir() and not target.is_symlink():
                remove_tree(target)
            elif os.path.lexists(target):
                target.unlink()
