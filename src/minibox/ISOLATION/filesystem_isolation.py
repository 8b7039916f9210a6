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
Filesystem isolation using chroot and bind mounts.
Provides the container's view of its root filesystem and workspace.
"""

import os
import sys
import ctypes
import ctypes.util
from contextlib import contextmanager
from typing import Iterator, Optional
from pathlib import Path

import psutil

from ..errors import MountError

# Mount flags
MS_BIND = 4096


def _load_libc() -> Optional[ctypes.CDLL]:
    if not sys.platform.startswith("linux"):
        return None
    return ctypes.CDLL(ctypes.util.find_library("c") or "libc.so.6", use_errno=True)


class FilesystemIsolation:
    """
    Bind mounts and root changes for running commands inside a rootfs.
    """

    def __init__(self):
        self._is_linux = sys.platform.startswith("linux")
        self._libc: Optional[ctypes.CDLL] = None

    @property
    def is_available(self) -> bool:
        """Check if filesystem isolation is available."""
        # mount and chroot require root on Linux
        return self._is_linux and os.geteuid() == 0

    @property
    def libc(self) -> ctypes.CDLL:
        if self._libc is None:
            self._libc = _load_libc()
            if self._libc is None:
                raise MountError("Bind mounts are only supported on Linux")
        return self._libc

    def mount_bind(self, source: str, target: str) -> None:
        """
        Create a bind mount.

        Args:
            source: Source directory on the host.
            target: Existing directory to mount it on.

        Raises:
            MountError: The mount(2) call failed.
        """
        ret = self.libc.mount(
            os.fsencode(source), os.fsencode(target), None, MS_BIND, None
        )
        if ret != 0:
            errno = ctypes.get_errno()
            raise MountError(
                f"Failed to bind mount {source} on {target}: {os.strerror(errno)}"
            )

    def unmount(self, target: str) -> None:
        """
        Unmount a filesystem.

        Raises:
            MountError: The umount2(2) call failed.
        """
        ret = self.libc.umount2(os.fsencode(target), 0)
        if ret != 0:
            errno = ctypes.get_errno()
            raise MountError(f"Failed to unmount {target}: {os.strerror(errno)}")

    def is_mounted(self, path: str) -> bool:
        """Check whether something is mounted on a path."""
        if not self._is_linux:
            return False
        real = os.path.realpath(path)
        return any(
            part.mountpoint == real for part in psutil.disk_partitions(all=True)
        )

    @contextmanager
    def bind_mount(self, source: str, target: str) -> Iterator[str]:
        """
        Bind mount for the duration of a block.

        The mount is released on every exit from the block, including
        exceptions raised inside it.

        Yields:
            The mount target.
        """
        Path(target).mkdir(parents=True, exist_ok=True)
        self.mount_bind(source, target)
        try:
            yield target
        finally:
            self.unmount(target)

    @staticmethod
    def enter_root(rootfs: str) -> None:
        """
        Change the root directory of the calling process.
        Meant to run in a freshly forked child, before exec.
        """
        os.chroot(rootfs)
        os.chdir("/")
