"""
Lifecycle management for stored containers and images: listing, removal and pruning.
"""
from datetime import datetime, timezone
from typing import Callable, List, Optional, Union
from pydantic import ValidationError
from ..BUILDERS.container_builder import CONTAINER_FILE
from ..errors import MiniboxError, MountError
from ..ISOLATION.filesystem_isolation import FilesystemIsolation
from ..MODELS.container import Container, PruneReport
from ..MODELS.image import StoredImage
from ..MODELS.store import Store
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.image_store import ImageStore
from ..RUNNERS.container_runner import WORKSPACE_MOUNT_POINT
from ..UTILS.file_utils import remove_tree

class LifecycleManager:
    """
    Enumerates and deletes containers and images directly on the store's
    directory layout.
    """
    def __init__(self,
                 store: Store,
                 image_store: Optional[ImageStore] = None,
                 fs: Optional[FilesystemIsolation] = None):
        """
        Initializes the lifecycle manager.

        :param store: Store to manage.
        :param image_store: Image store; built from store if omitted.
        :param fs: Used to detect workspaces that are still mounted.
        """
        self.store = store
        self.image_store = image_store or ImageStore(store)
        self.fs = fs or FilesystemIsolation()

    def list_images(self) -> List[StoredImage]:
        return self.image_store.list_all()

    def list_containers(self) -> List[Container]:
        """
        Lists every container in the store, oldest first.

        :return: Containers read from container.json, or from the directory
                 itself when the file is missing or unreadable.
        """
        containers = []
        if not self.store.containers_dir.is_dir():
            return containers

        for container_dir in self.store.containers_dir.iterdir():
            if container_dir.is_dir():
                containers.append(self._load_container(container_dir.name))

        return sorted(containers, key=lambda c: (c.created_at, c.id))

    def _load_container(self, container_id: str) -> Container:
        container_dir = self.store.container_dir(container_id)
        try:
            return Container.model_validate_json((container_dir / CONTAINER_FILE).read_text())
        except (OSError, ValidationError):
            pass

        # Ids look like <image-name>-<tag>_<timestamp>; the split is a best guess
        source = container_id.rsplit("_", 1)[0]
        name, _, tag = source.rpartition("-")
        image = ImageReference.from_storage(name or source, tag or ImageReference.DEFAULT_TAG)
        return Container(
            id=container_id,
            image=image,
            root_path=self.store.rootfs_path(container_id),
            workspace_path=self.store.workspace_path(container_id),
            created_at=datetime.fromtimestamp(container_dir.stat().st_ctime, tz=timezone.utc),
        )

    def delete_container(self, container_id: str) -> bool:
        """
        Deletes a container's root filesystem and workspace.

        :param container_id: Id of the container.
        :return: True if deleted, False if there is no such container.
        :raises MountError: The workspace is still mounted inside the rootfs.
        """
        container_dir = self.store.container_dir(container_id)
        if not container_dir.is_dir():
            return False

        mount_point = self.store.rootfs_path(container_id) / WORKSPACE_MOUNT_POINT
        if self.fs.is_mounted(str(mount_point)):
            raise MountError(f"Workspace of {container_id} is still mounted at {mount_point}")

        remove_tree(container_dir)
        return True

    def delete_image(self, image: Union[str, ImageReference]) -> bool:
        """
        Deletes an image tag. Containers built from it are not affected.

        :param image: Image reference.
        :return: True if deleted, False if the image is not stored.
        """
        ref = image if isinstance(image, ImageReference) else ImageReference.parse(image)
        return self.image_store.remove(ref.name, ref.tag)

    def prune(self, confirm: Callable[[], bool]) -> Optional[PruneReport]:
        """
        Deletes all containers and images once confirm() agrees.

        :param confirm: Asked once before anything is deleted.
        :return: What was removed, or None if confirmation was refused.
        """
        if not confirm():
            return None
        return self.prune_confirmed()

    def prune_confirmed(self) -> PruneReport:
        """
        Deletes every container, then every image.
        A target that fails to delete is recorded and the rest still go.

        :return: Counts of removed containers and images, plus failures.
        """
        report = PruneReport()

        for container in self.list_containers():
            try:
                if self.delete_container(container.id):
                    report.containers_removed += 1
            except (MiniboxError, OSError) as e:
                print(f"Warning: could not remove container {container.id}: {e}")
                report.failures.append(container.id)

        for image in self.list_images():
            ref = image.reference
            try:
                if self.image_store.remove(ref.name, ref.tag):
                    report.images_removed += 1
            except OSError as e:
                print(f"Warning: could not remove image {ref}: {e}")
                report.failures.append(str(ref))

        return report
