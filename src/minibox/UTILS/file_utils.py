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
Helpers for removing extracted filesystem trees.
"""

import os
import shutil
import stat
from pathlib import Path
from typing import Union


def make_tree_writable(path: Union[str, Path]) -> None:
    """
    Give the owner full access to every directory under path.
    Layers often ship read-only directories that rmtree cannot empty.
    """
    path = str(path)
    if os.path.islink(path) or not os.path.isdir(path):
        return

    os.chmod(path, stat.S_IMODE(os.lstat(path).st_mode) | stat.S_IRWXU)
    for dirpath, dirnames, _ in os.walk(path):
        for name in dirnames:
            child = os.path.join(dirpath, name)
            if not os.path.islink(child):
                os.chmod(child, stat.S_IMODE(os.lstat(child).st_mode) | stat.S_IRWXU)


def remove_tree(path: Union[str, Path]) -> None:
    """Delete a directory tree, including read-only directories inside it."""
    make_tree_writable(path)
    shutil.rmtree(path)
