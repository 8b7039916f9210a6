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
Unit tests for building container root filesystems from stored images.
"""
import errno
import json
import os
import pytest
from minibox.BUILDERS.container_builder import ContainerBuilder
from minibox.errors import ExtractionError, ImageNotFoundError
from minibox.REGISTRY.image_reference import ImageReference


class TestContainerBuilder:
    """Tests for ContainerBuilder."""

    def test_build_creates_rootfs_and_workspace(self, store, image_store, put_image, make_layer):
        """Test that a container gets a rootfs and an empty workspace."""
        put_image("alpine:3.19", [make_layer({"etc/os-release": b"alpine"}, dirs=["etc"])])

        container = ContainerBuilder(store, image_store).build("alpine:3.19")

        assert container.root_path == store.rootfs_path(container.id)
        assert (container.root_path / "etc" / "os-release").read_bytes() == b"alpine"
        assert container.workspace_path.is_dir()
        assert list(container.workspace_path.iterdir()) == []
        assert container.image == ImageReference("alpine", "3.19")

    def test_container_id_format(self, store, image_store, put_image, make_layer):
        """Test ids of the form <name>-<tag>_<timestamp>."""
        put_image("me/app:v1", [make_layer({"a": b"1"})])
        container = ContainerBuilder(store, image_store).build("me/app:v1")

        prefix, _, timestamp = container.id.rpartition("_")
        assert prefix == "me+app-v1"
        assert timestamp.isdigit()

    def test_ids_are_unique(self, store, image_store, put_image, make_layer):
        """Test that back-to-back builds get distinct ids."""
        put_image("alpine", [make_layer({"a": b"1"})])
        builder = ContainerBuilder(store, image_store)
        ids = {builder.build("alpine").id for _ in range(3)}
        assert len(ids) == 3

    def test_later_layers_win(self, store, image_store, put_image, make_layer):
        """Test last-writer-wins overlay in manifest order."""
        put_image("alpine", [
            make_layer({"etc/motd": b"base", "etc/keep": b"kept"}),
            make_layer({"etc/motd": b"top"}),
        ])
        rootfs = ContainerBuilder(store, image_store).build("alpine").root_path
        assert (rootfs / "etc" / "motd").read_bytes() == b"top"
        assert (rootfs / "etc" / "keep").read_bytes() == b"kept"

    def test_uncompressed_layers(self, store, image_store, put_image, make_layer):
        """Test that plain tar layers are accepted too."""
        put_image("alpine", [make_layer({"plain": b"tar"}, compress=False)])
        rootfs = ContainerBuilder(store, image_store).build("alpine").root_path
        assert (rootfs / "plain").read_bytes() == b"tar"

    def test_whiteout_removes_lower_file(self, store, image_store, put_image, make_layer):
        """Test .wh. entries deleting files from lower layers."""
        put_image("alpine", [
            make_layer({"etc/gone": b"x", "etc/stays": b"y"}),
            make_layer({"etc/.wh.gone": b""}),
        ])
        rootfs = ContainerBuilder(store, image_store).build("alpine").root_path
        assert not (rootfs / "etc" / "gone").exists()
        assert not (rootfs / "etc" / ".wh.gone").exists()
        assert (rootfs / "etc" / "stays").exists()

    def test_opaque_whiteout_keeps_same_layer_entries(self, store, image_store, put_image, make_layer):
        """Test that an opaque directory hides lower entries only."""
        put_image("alpine", [
            make_layer({"data/old": b"1"}),
            make_layer({"data/.wh..wh..opq": b"", "data/new": b"2"}),
        ])
        rootfs = ContainerBuilder(store, image_store).build("alpine").root_path
        assert sorted(os.listdir(rootfs / "data")) == ["new"]

    def test_file_replaces_lower_symlink(self, store, image_store, put_image, make_layer, tmp_path):
        """Test that a file over a symlink replaces the link instead of writing through it."""
        outside = tmp_path / "outside.txt"
        outside.write_bytes(b"host")
        put_image("alpine", [
            make_layer(symlinks={"link": str(outside)}),
            make_layer({"link": b"container"}),
        ])
        rootfs = ContainerBuilder(store, image_store).build("alpine").root_path
        assert outside.read_bytes() == b"host"
        assert not (rootfs / "link").is_symlink()
        assert (rootfs / "link").read_bytes() == b"container"

    def test_file_under_absolute_symlink_from_lower_layer(self, store, image_store, put_image, make_layer):
        """Test that var/run -> /run from a lower layer sends later files to /run in the rootfs."""
        put_image("debian", [
            make_layer(dirs=["run", "var"], symlinks={"var/run": "/run"}),
            make_layer({"var/run/app.pid": b"42"}),
        ])
        rootfs = ContainerBuilder(store, image_store).build("debian").root_path

        assert (rootfs / "run" / "app.pid").read_bytes() == b"42"
        assert (rootfs / "var" / "run").is_symlink()
        assert os.readlink(rootfs / "var" / "run") == "/run"

    def test_missing_image_raises_and_creates_nothing(self, store, image_store):
        """Test that building an unpulled image fails without leftovers."""
        with pytest.raises(ImageNotFoundError):
            ContainerBuilder(store, image_store).build("alpine")
        assert list(store.containers_dir.iterdir()) == []

    def test_extraction_failure_rolls_back(self, store, image_store, put_image, make_layer):
        """Test that a corrupt layer leaves no container directory."""
        put_image("alpine", [make_layer({"ok": b"1"}), b"definitely not a tar archive"])

        with pytest.raises(ExtractionError) as exc_info:
            ContainerBuilder(store, image_store).build("alpine")

        assert exc_info.value.layer == image_store.layers(ImageReference("alpine"))[1].digest
        assert list(store.containers_dir.iterdir()) == []
        assert list(store.staging_dir.iterdir()) == []

    def test_container_metadata_written(self, store, image_store, put_image, make_layer):
        """Test that container.json describes the container."""
        put_image("alpine", [make_layer({"a": b"1"})])
        container = ContainerBuilder(store, image_store).build("alpine")

        data = json.loads((store.container_dir(container.id) / "container.json").read_text())
        assert data["id"] == container.id
        assert data["image"] == {"name": "alpine", "tag": "latest"}

    def test_build_does_not_touch_image(self, store, image_store, put_image, make_layer):
        """Test that layers are copied out, not moved."""
        ref = put_image("alpine", [make_layer({"a": b"1"})])
        ContainerBuilder(store, image_store).build("alpine")
        assert image_store.is_complete(ref.name, ref.tag)


class TestExtractLayer:
    """Tests for the layer extraction primitives."""

    @pytest.mark.parametrize("name,safe", [
        ("etc/passwd", True),
        ("./etc/passwd", True),
        ("/etc/passwd", False),
        ("../escape", False),
        ("a/../../escape", False),
        ("a..b", True),
    ])
    def test_is_safe_name(self, name, safe):
        assert ContainerBuilder._is_safe_name(name) is safe

    def test_traversal_members_skipped(self, store, make_layer, tmp_path):
        """Test that members escaping the rootfs are not written."""
        layer = tmp_path / "layer.tar"
        layer.write_bytes(make_layer({"../escaped": b"x", "fine": b"y"}))
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()

        ContainerBuilder(store).extract_layer(layer, rootfs)

        assert not (tmp_path / "escaped").exists()
        assert (rootfs / "fine").exists()

    def test_absolute_symlink_resolved_inside_rootfs(self, store, make_layer, tmp_path):
        """Test that an absolute symlink in the rootfs points into the rootfs, not the host."""
        host_dir = tmp_path / "host"
        host_dir.mkdir()
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        (rootfs / "lib").symlink_to(host_dir)
        layer = tmp_path / "layer.tar"
        layer.write_bytes(make_layer({"lib/evil.so": b"x"}))

        ContainerBuilder(store).extract_layer(layer, rootfs)

        assert list(host_dir.iterdir()) == []
        assert (rootfs / str(host_dir).lstrip("/") / "evil.so").read_bytes() == b"x"

    def test_parent_links_stop_at_rootfs(self, store, make_layer, tmp_path):
        """Test that '..' in a symlink target cannot climb above the rootfs."""
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        (rootfs / "up").symlink_to("../../..")
        layer = tmp_path / "layer.tar"
        layer.write_bytes(make_layer({"up/file": b"x"}))

        ContainerBuilder(store).extract_layer(layer, rootfs)

        assert (rootfs / "file").read_bytes() == b"x"
        assert not (tmp_path / "file").exists()

    def test_hardlink_inside_rootfs(self, store, make_layer, tmp_path):
        """Test that hard links between layer members are kept."""
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        layer = tmp_path / "layer.tar"
        layer.write_bytes(make_layer({"bin/busybox": b"bb"}, dirs=["bin"],
                                     hardlinks={"bin/sh": "bin/busybox"}))

        ContainerBuilder(store).extract_layer(layer, rootfs)

        assert (rootfs / "bin" / "sh").read_bytes() == b"bb"
        assert os.path.samefile(rootfs / "bin" / "sh", rootfs / "bin" / "busybox")

    def test_hardlink_to_missing_target_skipped(self, store, make_layer, tmp_path):
        """Test that a hard link whose target is not in the rootfs is not created."""
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        layer = tmp_path / "layer.tar"
        layer.write_bytes(make_layer({"ok": b"y"}, hardlinks={"sh": "bin/missing"}))

        ContainerBuilder(store).extract_layer(layer, rootfs)

        assert not os.path.lexists(rootfs / "sh")
        assert (rootfs / "ok").exists()

    def test_symlink_loop_raises(self, store, make_layer, tmp_path):
        """Test that a member under a symlink loop fails with ELOOP."""
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        (rootfs / "loop").symlink_to("loop")
        layer = tmp_path / "layer.tar"
        layer.write_bytes(make_layer({"loop/file": b"x"}))

        with pytest.raises(OSError) as exc_info:
            ContainerBuilder(store).extract_layer(layer, rootfs)
        assert exc_info.value.errno == errno.ELOOP

    @pytest.mark.parametrize("links,relative,expected", [
        ({}, "etc/passwd", "etc/passwd"),
        ({"var/run": "/run"}, "var/run/app.pid", "run/app.pid"),
        ({"var/run": "../run"}, "var/run", "run"),
        ({"lib": "/../../usr/lib"}, "lib/x", "usr/lib/x"),
        ({"a": "b", "b": "/c"}, "a/x", "c/x"),
        ({}, "../../x", "x"),
    ])
    def test_resolve_in_root(self, tmp_path, links, relative, expected):
        root = tmp_path / "rootfs"
        root.mkdir()
        for name, target in links.items():
            (root / name).parent.mkdir(parents=True, exist_ok=True)
            (root / name).symlink_to(target)
        resolved = ContainerBuilder._resolve_in_root(os.path.realpath(root), relative)
        assert resolved == os.path.join(os.path.realpath(root), expected)
