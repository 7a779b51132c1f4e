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
Registry client for pulling images.
Implements the read side of the Docker Registry HTTP API V2 / OCI distribution API.
"""

import base64
import gzip
import hashlib
import http.client
import io
import json
import logging
import platform
import re
import zlib
from typing import Optional, Dict, List, Any, Tuple
from dataclasses import dataclass
from urllib.request import HTTPRedirectHandler, Request, build_opener
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse

from pydantic import ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..exceptions import InvalidDigestError, RegistryError
from ..MODELS.image_record import Descriptor, Digest, ImageConfig, Manifest
from ..MODELS.store_config import StoreConfig, registry_credentials, registry_key
from .image_reference import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_TYPES = [
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
]
INDEX_TYPES = [
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
]

ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass
class RegistryAuth:
    """Credentials for a registry."""

    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def basic(self) -> str:
        auth = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return f"Basic {auth}"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError):
        return exc.code >= 500 or exc.code == 429
    return isinstance(exc, (URLError, ConnectionError, TimeoutError, http.client.HTTPException))


class _StripAuthOnRedirect(HTTPRedirectHandler):
    """Blob downloads redirect to storage hosts that reject registry credentials."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        new = super().redirect_request(req, fp, code, msg, headers, newurl)
        if new is not None and urlparse(newurl).netloc != urlparse(req.full_url).netloc:
            new.remove_header("Authorization")
        return new


class LayerStream(io.RawIOBase):
    """
    Uncompressed, read-once view of a layer blob being downloaded.

    Transport and decompression failures surface as OSError. The compressed
    bytes are hashed as they are read and checked against the layer digest
    once the end of the blob is reached.
    """

    def __init__(self, response, descriptor: Descriptor, compressed: bool):
        super().__init__()
        self._response = response
        self._digest = descriptor.digest
        self._hasher = hashlib.new(descriptor.digest.algorithm)
        self._raw = _HashingReader(response, self._hasher, self._verify)
        self._reader = gzip.GzipFile(fileobj=self._raw, mode="rb") if compressed else self._raw

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        try:
            data = self._reader.read(len(buffer))
        except (EOFError, zlib.error, http.client.HTTPException) as e:
            raise OSError(f"Layer {self._digest} stream failed: {e}") from e
        buffer[:len(data)] = data
        return len(data)

    def _verify(self) -> None:
        actual = f"{self._digest.algorithm}:{self._hasher.hexdigest()}"
        if actual != self._digest:
            raise OSError(f"Layer digest mismatch: expected {self._digest}, got {actual}")

    def close(self) -> None:
        if not self.closed:
            try:
                if self._reader is not self._raw:
                    self._reader.close()
            finally:
                self._response.close()
        super().close()


class _HashingReader:
    def __init__(self, response, hasher, on_eof):
        self._response = response
        self._hasher = hasher
        self._on_eof = on_eof
        self._done = False

    def read(self, size: int = -1) -> bytes:
        data = self._response.read(size)
        if data:
            self._hasher.update(data)
        elif not self._done and size != 0:
            self._done = True
            self._on_eof()
        return data


class RemoteImage:
    """
    An image resolved in a registry: its manifest, config and digest,
    and access to the uncompressed stream of each layer.
    """

    def __init__(self, client: "RegistryClient", reference: ImageReference,
                 manifest: Manifest, config: ImageConfig, digest: Digest):
        self.client = client
        self.reference = reference
        self.manifest = manifest
        self.config = config
        self.digest = digest
        self._layers = {layer.digest: layer for layer in manifest.layers}

    @property
    def layers(self):
        return self.manifest.layers

    def layer_stream(self, digest: str) -> LayerStream:
        """
        Open the uncompressed stream of one of this image's layers.

        Raises:
            RegistryError: If the layer is not part of the image or cannot be fetched.
        """
        descriptor = self._layers.get(digest)
        if descriptor is None:
            raise RegistryError(f"Layer {digest} is not part of {self.reference}")
        return self.client.open_layer(self.reference, descriptor)


class RegistryClient:
    """
    Client for Docker Hub and OCI-compatible registries.
    Supports anonymous and basic credentials with bearer token exchange.
    """

    def __init__(self, config: Optional[StoreConfig] = None, timeout: float = 60):
        """
        Initialize the registry client.

        Args:
            config: Platform, insecure registry and login settings. Defaults to StoreConfig().
            timeout: Socket timeout in seconds for each request.
        """
        self.config = config or StoreConfig()
        self.timeout = timeout
        self._opener = build_opener(_StripAuthOnRedirect)
        self._auth_tokens: Dict[str, str] = {}
        self._credentials: Dict[str, RegistryAuth] = {
            registry: RegistryAuth(username=login.username, password=login.password)
            for registry, login in registry_credentials(self.config).items()
        }
        if self._credentials:
            logger.debug("Loaded logins for %s", ", ".join(sorted(self._credentials)))

    def base_url(self, ref: ImageReference) -> str:
        if ref.registry in self.config.insecure_registries:
            return f"http://{ref.registry}"
        return ref.registry_url

    def get_image(self, ref: ImageReference) -> RemoteImage:
        """
        Resolve a reference to a single-platform image.

        Args:
            ref: Parsed image reference.

        Returns:
            RemoteImage with manifest, config and digest loaded.
        """
        manifest, raw = self.get_manifest(ref)
        config = self.get_config(ref, manifest)
        return RemoteImage(self, ref, manifest, config, Digest.from_bytes(raw))

    def get_manifest(self, ref: ImageReference) -> Tuple[Manifest, bytes]:
        """
        Get the image manifest for the configured platform.

        A digest reference is checked against the first document fetched,
        which may be an index rather than the platform manifest.

        Args:
            ref: Image reference

        Returns:
            The parsed manifest and its raw bytes.
        """
        url = f"{self.base_url(ref)}/v2/{ref.repository}/manifests/{ref.reference}"
        content, headers = self._fetch(url, ref, ", ".join(MANIFEST_TYPES + INDEX_TYPES))
        if ref.digest:
            self._check_digest(content, ref.digest, f"manifest of {ref}")
        document = self._decode_json(content, f"manifest of {ref}")

        media_type = document.get("mediaType") or headers.get("Content-Type", "")
        if media_type in INDEX_TYPES or "manifests" in document:
            digest = self._select_platform_manifest(ref, document)
            url = f"{self.base_url(ref)}/v2/{ref.repository}/manifests/{digest}"
            content, _ = self._fetch(url, ref, ", ".join(MANIFEST_TYPES))
            self._check_digest(content, digest, f"manifest {digest}")
            document = self._decode_json(content, f"manifest {digest}")

        try:
            return Manifest.model_validate(document), content
        except ValidationError as e:
            raise RegistryError(f"Unsupported manifest for {ref}: {e}") from e

    def _select_platform_manifest(self, ref: ImageReference, index: Dict[str, Any]) -> Digest:
        """Pick the manifest for the configured platform from an index."""
        os_name = self.config.platform_os
        arch = self.config.platform_arch or ARCH_MAP.get(platform.machine().lower(), platform.machine().lower())

        manifests: List[Dict[str, Any]] = index.get("manifests", [])
        for entry in manifests:
            platform_info = entry.get("platform", {})
            if platform_info.get("os") == os_name and platform_info.get("architecture") == arch:
                return self._parse_digest(entry.get("digest"), ref)

        raise RegistryError(f"No manifest for platform {os_name}/{arch} in {ref}")

    def get_config(self, ref: ImageReference, manifest: Manifest) -> ImageConfig:
        """
        Get the image configuration blob.

        Args:
            ref: Image reference
            manifest: Image manifest

        Returns:
            Parsed image configuration.
        """
        digest = manifest.config.digest
        url = f"{self.base_url(ref)}/v2/{ref.repository}/blobs/{digest}"
        content, _ = self._fetch(url, ref)

        self._check_digest(content, digest, f"config of {ref}")
        try:
            return ImageConfig.model_validate(self._decode_json(content, f"config {digest}"))
        except ValidationError as e:
            raise RegistryError(f"Invalid config {digest}: {e}") from e

    def open_layer(self, ref: ImageReference, layer: Descriptor) -> LayerStream:
        """
        Start downloading a layer and return its uncompressed stream.

        Args:
            ref: Image reference
            layer: Layer descriptor from the manifest

        Returns:
            LayerStream; the caller closes it.
        """
        media_type = layer.media_type
        if "zstd" in media_type:
            raise RegistryError(f"Layer {layer.digest} uses unsupported compression: {media_type}")
        compressed = "gzip" in media_type or not media_type.endswith("tar")

        url = f"{self.base_url(ref)}/v2/{ref.repository}/blobs/{layer.digest}"
        response = self._open(url, ref)
        logger.debug("Streaming layer %s (%s)", layer.digest, media_type or "unknown type")
        return LayerStream(response, layer, compressed)

    def _fetch(self, url: str, ref: ImageReference, accept: Optional[str] = None) -> Tuple[bytes, Dict[str, str]]:
        response = self._open(url, ref, accept)
        try:
            return response.read(), dict(response.headers)
        except (OSError, http.client.HTTPException) as e:
            raise RegistryError(f"Failed reading {url}: {e}") from e
        finally:
            response.close()

    def _open(self, url: str, ref: ImageReference, accept: Optional[str] = None):
        """Make an authenticated request, authenticating once on a 401 challenge."""
        try:
            try:
                return self._send(url, ref, accept)
            except HTTPError as e:
                if e.code != 401:
                    raise
                challenge = e.headers.get("WWW-Authenticate", "")
                e.close()
                self._auth_tokens[self._scope_key(ref)] = self._authenticate(ref, challenge)
                return self._send(url, ref, accept)
        except HTTPError as e:
            raise RegistryError(f"Registry returned HTTP {e.code} for {url}", status=e.code) from e
        except (URLError, OSError, http.client.HTTPException) as e:
            raise RegistryError(f"Cannot reach registry at {url}: {e}") from e

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    def _send(self, url: str, ref: ImageReference, accept: Optional[str] = None):
        request = Request(url)
        token = self._auth_tokens.get(self._scope_key(ref))
        if token:
            request.add_header("Authorization", token)
        if accept:
            request.add_header("Accept", accept)
        return self._opener.open(request, timeout=self.timeout)

    def _authenticate(self, ref: ImageReference, challenge: str) -> str:
        """Answer a WWW-Authenticate challenge with an Authorization header value."""
        creds = self._credentials.get(registry_key(ref.registry))
        scheme, _, params_text = challenge.partition(" ")

        if scheme.lower() == "basic":
            if not creds:
                raise RegistryError(f"Registry {ref.registry} requires credentials", status=401)
            return creds.basic

        if scheme.lower() != "bearer":
            raise RegistryError(f"Unsupported authentication challenge from {ref.registry}: {challenge!r}", status=401)

        params = dict(_CHALLENGE_PARAM.findall(params_text))
        realm = params.pop("realm", None)
        if not realm:
            raise RegistryError(f"Bearer challenge from {ref.registry} has no realm", status=401)
        params.setdefault("scope", f"repository:{ref.repository}:pull")

        request = Request(f"{realm}?{urlencode(params)}")
        if creds:
            request.add_header("Authorization", creds.basic)
        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                data = json.loads(response.read().decode())
        except HTTPError as e:
            raise RegistryError(f"Token request to {realm} failed with HTTP {e.code}", status=e.code) from e
        except (URLError, OSError, ValueError) as e:
            raise RegistryError(f"Token request to {realm} failed: {e}") from e

        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryError(f"Token response from {realm} has no token")
        return f"Bearer {token}"

    @staticmethod
    def _scope_key(ref: ImageReference) -> str:
        return f"{ref.registry}/{ref.repository}"

    @staticmethod
    def _parse_digest(value: Any, ref: ImageReference) -> Digest:
        try:
            return Digest.parse(value)
        except InvalidDigestError as e:
            raise RegistryError(f"Invalid digest in index of {ref}: {e}") from e

    @staticmethod
    def _check_digest(content: bytes, expected: Digest, what: str) -> None:
        actual = Digest.from_bytes(content, expected.algorithm)
        if actual != expected:
            raise RegistryError(f"Digest mismatch for {what}: expected {expected}, got {actual}")

    @staticmethod
    def _decode_json(content: bytes, what: str) -> Dict[str, Any]:
        try:
            document = json.loads(content.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise RegistryError(f"Invalid JSON in {what}: {e}") from e
        if not isinstance(document, dict):
            raise RegistryError(f"Invalid JSON in {what}: expected an object")
        return document
