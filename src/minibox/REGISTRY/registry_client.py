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
Docker registry client for pulling images.
Implements the pull side of the Docker Registry HTTP API V2.
"""

import json
import hashlib
from typing import Optional, Dict, List, Any, Iterator, Tuple, Union
from urllib.request import urlopen, Request
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode

from ..errors import AuthError, ManifestError, LayerFetchError
from ..MODELS.image import StoredImage
from ..MODELS.runtime_config import RuntimeConfig
from .image_reference import ImageReference
from .image_store import ImageStore

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+prettyjws"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"

INDEX_MEDIA_TYPES = (MANIFEST_LIST_V2, OCI_INDEX)


def local_digest(digest: str) -> str:
    """Strip the 'sha256:' prefix used in registry digests."""
    if digest.startswith("sha256:"):
        return digest[len("sha256:") :]
    return digest.replace(":", "-")


class RegistryClient:
    """
    Client for pulling images from a Docker registry.
    Handles single-platform manifests as well as manifest lists and OCI indexes.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        """
        Initialize the registry client.

        Args:
            config: Runtime configuration. Defaults to Docker Hub, amd64/linux.
        """
        self.config = config or RuntimeConfig()

    def _repository(self, image_name: str) -> str:
        return ImageReference(name=image_name).repository(self.config.namespace)

    def authenticate(self, image_name: str) -> str:
        """
        Get a bearer token allowing pulls of an image.

        Args:
            image_name: Image name without tag (e.g., 'alpine')

        Returns:
            The raw token.
        """
        params = {
            "service": self.config.auth_service,
            "scope": f"repository:{self._repository(image_name)}:pull",
        }
        url = f"{self.config.auth_url}?{urlencode(params)}"

        try:
            with urlopen(Request(url), timeout=self.config.request_timeout) as response:
                data = json.loads(response.read().decode())
        except (HTTPError, URLError, ValueError) as e:
            raise AuthError(f"Failed to get token for {image_name}: {e}") from e

        token = None
        if isinstance(data, dict):
            # Some token servers answer with 'access_token' instead
            token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthError(f"Token endpoint returned no token for {image_name}")
        return token

    def _make_request(
        self, url: str, token: Optional[str], accept: Optional[str] = None
    ) -> Tuple[bytes, Dict[str, str]]:
        """Make an authenticated request to the registry."""
        request = Request(url)

        if token:
            request.add_header("Authorization", f"Bearer {token}")
        if accept:
            request.add_header("Accept", accept)

        with urlopen(request, timeout=self.config.request_timeout) as response:
            headers = dict(response.headers)
            return response.read(), headers

    def _fetch_manifest(self, image_name: str, reference: str, token: Optional[str]) -> Dict[str, Any]:
        url = f"{self.config.registry_url}/v2/{self._repository(image_name)}/manifests/{reference}"

        # The registry picks whichever of these it has
        accept = ", ".join(
            [MANIFEST_V2, MANIFEST_V1, MANIFEST_LIST_V2, OCI_INDEX, OCI_MANIFEST]
        )

        try:
            content, headers = self._make_request(url, token, accept)
            manifest = json.loads(content.decode())
        except HTTPError as e:
            raise ManifestError(f"No manifest for {image_name}:{reference} (HTTP {e.code})") from e
        except (URLError, ValueError) as e:
            raise ManifestError(f"Failed to fetch manifest for {image_name}:{reference}: {e}") from e

        if not isinstance(manifest, dict):
            raise ManifestError(f"Malformed manifest for {image_name}:{reference}")

        # Older registries only say what they sent in the Content-Type header
        if "mediaType" not in manifest:
            content_type = headers.get("Content-Type", "").split(";")[0].strip()
            if content_type:
                manifest["mediaType"] = content_type
        return manifest

    @staticmethod
    def is_index(manifest: Dict[str, Any]) -> bool:
        """Check whether a manifest document is a multi-platform index."""
        if manifest.get("mediaType") in INDEX_MEDIA_TYPES:
            return True
        return "manifests" in manifest and "layers" not in manifest

    def resolve_manifest(self, image_name: str, tag: str, token: Optional[str]) -> Dict[str, Any]:
        """
        Get the image manifest for the target platform.

        Args:
            image_name: Image name
            tag: Tag to resolve
            token: Bearer token from authenticate()

        Returns:
            Single-platform manifest as a dictionary
        """
        manifest = self._fetch_manifest(image_name, tag, token)

        if self.is_index(manifest):
            digest = self._select_platform_manifest(image_name, tag, manifest)
            manifest = self._fetch_manifest(image_name, digest, token)
            if self.is_index(manifest):
                raise ManifestError(f"Nested index for {image_name}@{digest} is not supported")

        return manifest

    def _select_platform_manifest(
        self, image_name: str, tag: str, manifest_list: Dict[str, Any]
    ) -> str:
        """Return the digest of the index entry matching the target platform."""
        os_name = self.config.platform_os
        arch = self.config.platform_architecture

        for entry in manifest_list.get("manifests", []):
            platform_info = entry.get("platform", {})
            if (
                platform_info.get("os") == os_name
                and platform_info.get("architecture") == arch
                and entry.get("digest")
            ):
                return entry["digest"]

        raise ManifestError(f"No {os_name}/{arch} manifest for {image_name}:{tag}")

    @staticmethod
    def layer_digests(manifest: Dict[str, Any]) -> List[str]:
        """
        Get the layer digests of a manifest, base layer first.

        Args:
            manifest: Single-platform manifest (v2, OCI or legacy v1)

        Returns:
            Registry digests including their algorithm prefix
        """
        if "layers" in manifest:
            digests = [layer.get("digest", "") for layer in manifest.get("layers") or []]
        else:
            # Schema 1 lists the top-most layer first
            digests = [layer.get("blobSum", "") for layer in manifest.get("fsLayers") or []]
            digests.reverse()

        if not digests:
            raise ManifestError("Manifest has no layers")
        if not all(digests):
            raise ManifestError("Manifest lists a layer without a digest")
        return digests

    def fetch_layers(
        self, manifest: Dict[str, Any], image_name: str, token: Optional[str]
    ) -> Iterator[Tuple[str, bytes]]:
        """
        Download every layer of a manifest in order.

        Args:
            manifest: Manifest returned by resolve_manifest()
            image_name: Image name
            token: Bearer token from authenticate()

        Yields:
            (digest without 'sha256:' prefix, layer bytes) tuples
        """
        repository = self._repository(image_name)
        digests = self.layer_digests(manifest)

        for i, digest in enumerate(digests):
            print(f"Pulling layer {i + 1}/{len(digests)}: {digest[:19]}...")
            url = f"{self.config.registry_url}/v2/{repository}/blobs/{digest}"
            try:
                content, _ = self._make_request(url, token)
            except (HTTPError, URLError, OSError) as e:
                raise LayerFetchError(digest, str(e)) from e

            self._verify_digest(digest, content)
            yield local_digest(digest), content

    @staticmethod
    def _verify_digest(digest: str, content: bytes) -> None:
        algorithm, _, expected = digest.partition(":")
        try:
            actual = hashlib.new(algorithm, content).hexdigest()
        except ValueError as e:
            raise LayerFetchError(digest, f"unsupported digest algorithm '{algorithm}'") from e
        if actual != expected:
            raise LayerFetchError(digest, f"digest mismatch, got {algorithm}:{actual}")

    def pull_image(
        self, image: Union[str, ImageReference], image_store: ImageStore
    ) -> StoredImage:
        """
        Pull a complete image into the image store.

        Layers are written to a staging directory which only replaces the
        stored image once every layer has been downloaded.

        Args:
            image: Image reference (e.g., 'alpine:3.19')
            image_store: Store receiving the layers

        Returns:
            The stored image
        """
        ref = image if isinstance(image, ImageReference) else ImageReference.parse(image)
        print(f"Pulling image: {ref}")

        token = self.authenticate(ref.name)
        manifest = self.resolve_manifest(ref.name, ref.tag, token)

        with image_store.staging(ref) as staging_dir:
            digests = []
            for digest, content in self.fetch_layers(manifest, ref.name, token):
                image_store.write_layer(staging_dir, digest, content)
                digests.append(digest)
            image_store.write_manifest(staging_dir, ref, digests, manifest)

        stored = image_store.get(ref)
        print(f"Pulled {ref} ({len(stored.layers)} layers)")
        return stored
