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
Execution of commands inside a container's root filesystem.
"""
import functools
import os
import subprocess
from pathlib import Path
from typing import Dict, Optional, Sequence
from ..errors import ContainerNotFoundError, ExecutionError, MountError
from ..ISOLATION.filesystem_isolation import FilesystemIsolation
from ..MODELS.store import Store

WORKSPACE_MOUNT_POINT = "workspace"

CONTAINER_ENV = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "HOME": "/root",
}

class ContainerRunner:
    """
    Runs a single command inside a container, with the container's workspace
    bind-mounted at /workspace for the duration of the command.
    """
    def __init__(self, store: Store, fs: Optional[FilesystemIsolation] = None):
        """
        Initializes the container runner.

        Args:
            store (Store): Store holding the containers.
            fs (Optional[FilesystemIsolation]): Mount and chroot primitives.
        """
        self.store = store
        self.fs = fs or FilesystemIsolation()

    def run(self,
            container_id: str,
            command: Sequence[str],
            env: Optional[Dict[str, str]] = None) -> int:
        """
        Runs a command inside a container and waits for it.

        The command is executed as given, argument by argument; it is never
        passed through a shell.

        Args:
            container_id (str): Id of the container.
            command (Sequence[str]): Executable and arguments, resolved inside the container.
            env (Optional[Dict[str, str]]): Extra environment variables.

        Returns:
            int: Exit code of the command, 128+N if it was killed by signal N.

        Raises:
            ContainerNotFoundError: The container has no root filesystem.
            MountError: The workspace could not be mounted or unmounted.
            ExecutionError: The command could not be started.
        """
        if not command:
            raise ExecutionError("No command given")

        rootfs = self.store.rootfs_path(container_id)
        workspace = self.store.workspace_path(container_id)
        if not rootfs.is_dir():
            raise ContainerNotFoundError(container_id)

        if not workspace.is_dir():
            print(f"Warning: workspace of {container_id} is missing, creating it")
            workspace.mkdir(parents=True)

        mount_point = rootfs / WORKSPACE_MOUNT_POINT
        # mount(2) follows symlinks, which could point anywhere on the host
        if mount_point.is_symlink() or (mount_point.exists() and not mount_point.is_dir()):
            raise MountError(f"{mount_point} is not a directory")

        with self.fs.bind_mount(str(workspace), str(mount_point)):
            return self._execute(container_id, rootfs, list(command), env)

    def _execute(self,
                 container_id: str,
                 rootfs: Path,
                 command: list,
                 env: Optional[Dict[str, str]] = None) -> int:
        """
        Executes the command in a child whose root is the container's rootfs.
        Standard input, output and error are inherited.
        """
        child_env = dict(CONTAINER_ENV)
        if "TERM" in os.environ:
            child_env["TERM"] = os.environ["TERM"]
        if env:
            child_env.update(env)

        try:
            result = subprocess.run(
                command,
                env=child_env,
                preexec_fn=functools.partial(FilesystemIsolation.enter_root, str(rootfs)),
                # Arguments must reach the container untouched (CWE-78)
                shell=False,
            )
        except OSError as e:
            raise ExecutionError(f"[{container_id}] Cannot execute {command[0]}: {e}") from e
        except subprocess.SubprocessError as e:
            raise ExecutionError(f"[{container_id}] Failed to enter root filesystem: {e}") from e

        if result.returncode < 0:
            return 128 - result.returncode
        return result.returncode
