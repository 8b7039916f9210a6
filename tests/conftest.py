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
Shared fixtures: temporary stores, layer archives and a fake registry.
"""
import hashlib
import io
import json
import tarfile
from urllib.error import HTTPError

import pytest

from minibox.MODELS.runtime_config import RuntimeConfig
from minibox.MODELS.store import Store
from minibox.REGISTRY.image_reference import ImageReference
from minibox.REGISTRY.image_store import ImageStore

REGISTRY_URL = "https://registry.test"
AUTH_URL = "https://auth.test/token"


def sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def build_layer(files=None, dirs=(), symlinks=None, compress=True, hardlinks=None) -> bytes:
    """Build a layer archive from {name: bytes} files, directory names and {name: target} links."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz" if compress else "w") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in (files or {}).items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
        for name, target in (hardlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.LNKTYPE
            info.linkname = target
            tar.addfile(info)
    return buf.getvalue()


class FakeResponse:
    def __init__(self, body: bytes, headers=None):
        self._body = body
        self.headers = headers or {}

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeRegistry:
    """
    Stands in for urlopen. Routes are keyed by URL without query string;
    values are bytes, dicts (sent as JSON) or exceptions to raise.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add_token(self, token="test-token"):
        self.routes[AUTH_URL] = {"token": token}

    def add_manifest(self, repository, reference, manifest):
        self.routes[f"{REGISTRY_URL}/v2/{repository}/manifests/{reference}"] = manifest

    def add_blob(self, repository, data, digest=None):
        digest = digest or sha256_digest(data)
        self.routes[f"{REGISTRY_URL}/v2/{repository}/blobs/{digest}"] = data
        return digest

    def add_image(self, repository, tag, layers):
        """Serve a single-platform v2 manifest for the given layer blobs."""
        digests = [self.add_blob(repository, data) for data in layers]
        manifest = {
            "schemaVersion": 2,
            "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
            "config": {"digest": "sha256:" + "0" * 64},
            "layers": [{"digest": d, "size": 1} for d in digests],
        }
        self.add_manifest(repository, tag, manifest)
        return digests

    def urls(self):
        return [request.full_url for request in self.requests]

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        url = request.full_url.split("?")[0]
        if url not in self.routes:
            raise HTTPError(request.full_url, 404, "Not Found", {}, None)
        body = self.routes[url]
        if isinstance(body, Exception):
            raise body
        if isinstance(body, dict):
            body = json.dumps(body).encode()
        return FakeResponse(body)


@pytest.fixture
def config(tmp_path):
    return RuntimeConfig(
        store_root=tmp_path / "store",
        registry_url=REGISTRY_URL,
        auth_url=AUTH_URL,
    )


@pytest.fixture
def store(config):
    return Store.at(config.store_root)


@pytest.fixture
def image_store(store):
    return ImageStore(store)


@pytest.fixture
def fake_registry(monkeypatch):
    registry = FakeRegistry()
    registry.add_token()
    monkeypatch.setattr("minibox.REGISTRY.registry_client.urlopen", registry)
    return registry


@pytest.fixture
def make_layer():
    return build_layer


@pytest.fixture
def put_image(image_store):
    """Store an image directly, bypassing the registry."""
    def _put(reference, layers):
        ref = ImageReference.parse(reference)
        with image_store.staging(ref) as staging_dir:
            digests = []
            for data in layers:
                digest = hashlib.sha256(data).hexdigest()
                image_store.write_layer(staging_dir, digest, data)
                digests.append(digest)
            image_store.write_manifest(staging_dir, ref, digests)
        return ref
    return _put
