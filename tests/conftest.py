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
Shared fixtures: in-memory layer archives and a registry stand-in.
"""
import io
import json
import tarfile
from typing import Dict, List

import pytest

from cpull.MODELS.image_record import Descriptor, Digest, ImageConfig, LayerDescriptor, Manifest
from cpull.MODELS.store_config import StoreConfig

TAR_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar"


def build_tar(entries) -> bytes:
    """
    Build an uncompressed tar archive.

    Each entry is (name, kind) or (name, kind, payload) where kind is one of
    dir, file (payload: bytes), symlink / hardlink (payload: target), fifo, chardev.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for entry in entries:
            name, kind = entry[0], entry[1]
            info = tarfile.TarInfo(name)
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            elif kind == "file":
                data = entry[2]
                info.size = len(data)
                info.mode = entry[3] if len(entry) > 3 else 0o644
                tar.addfile(info, io.BytesIO(data))
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = entry[2]
                tar.addfile(info)
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = entry[2]
                tar.addfile(info)
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
                tar.addfile(info)
            elif kind == "chardev":
                info.type = tarfile.CHRTYPE
                info.devmajor, info.devminor = 1, 3
                tar.addfile(info)
            else:
                raise ValueError(f"Unknown entry kind {kind}")
    return buf.getvalue()


class FailingStream(io.RawIOBase):
    """Serves data, then raises OSError once fail_after bytes have been read."""

    def __init__(self, data: bytes, fail_after: int):
        super().__init__()
        self._data = data
        self._fail_after = fail_after
        self._pos = 0

    def readable(self):
        return True

    def readinto(self, buffer):
        if self._pos >= self._fail_after:
            raise OSError("connection reset by peer")
        end = min(self._pos + len(buffer), self._fail_after, len(self._data))
        chunk = self._data[self._pos:end]
        buffer[:len(chunk)] = chunk
        self._pos = end
        return len(chunk)


class FakeImage:
    """An image served from memory, counting layer stream requests."""

    def __init__(self, layers: List[bytes], os_name: str = "linux", arch: str = "amd64", label: str = ""):
        self.config = ImageConfig(
            architecture=arch,
            os=os_name,
            config={"Cmd": ["/bin/sh"], "Labels": {"name": label}},
            rootfs={"type": "layers", "diff_ids": [str(Digest.from_bytes(data)) for data in layers]},
        )
        config_bytes = self.config.to_json().encode()
        self.layer_data: Dict[str, bytes] = {Digest.from_bytes(data): data for data in layers}
        self.manifest = Manifest(
            media_type="application/vnd.oci.image.manifest.v1+json",
            config=Descriptor(
                media_type="application/vnd.oci.image.config.v1+json",
                size=len(config_bytes),
                digest=Digest.from_bytes(config_bytes),
            ),
            layers=[
                LayerDescriptor(media_type=TAR_MEDIA_TYPE, size=len(data), digest=Digest.from_bytes(data))
                for data in layers
            ],
        )
        self.digest = Digest.from_bytes(self.manifest.to_json().encode())
        self.opened: List[str] = []

    def layer_stream(self, digest):
        self.opened.append(digest)
        return io.BytesIO(self.layer_data[digest])


class FakeClient:
    """Resolves full reference names to FakeImages."""

    def __init__(self, images: Dict[str, FakeImage]):
        self.images = images
        self.requests: List[str] = []

    def get_image(self, ref):
        self.requests.append(ref.name)
        return self.images[ref.name]


@pytest.fixture
def store_config(tmp_path):
    return StoreConfig.for_root(tmp_path / "store")


@pytest.fixture
def make_tar():
    return build_tar


@pytest.fixture
def failing_stream():
    return FailingStream


@pytest.fixture
def fake_image():
    return FakeImage


@pytest.fixture
def fake_client():
    return FakeClient


@pytest.fixture
def sample_documents():
    manifest = {
        "schemaVersion": 2,
        "mediaType": "application/vnd.docker.distribution.manifest.v2+json",
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "size": 1469,
            "digest": "sha256:" + "c" * 64,
        },
        "layers": [
            {
                "mediaType": "application/vnd.docker.image.rootfs.diff.tar.gzip",
                "size": 3408729,
                "digest": "sha256:" + "a" * 64,
            },
        ],
    }
    config = {
        "architecture": "amd64",
        "os": "linux",
        "created": "2024-01-27T00:30:56.150769621Z",
        "config": {"Env": ["PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"], "Cmd": ["/bin/sh"]},
        "rootfs": {"type": "layers", "diff_ids": ["sha256:" + "d" * 64]},
        "history": [{"created": "2024-01-27T00:30:56Z", "created_by": "ADD file:abc in / "}],
        "container": "4ab2b5d5ef9a",
    }
    digest = Digest.from_bytes(json.dumps(manifest).encode())
    return digest, Manifest.model_validate(manifest), ImageConfig.model_validate(config)


@pytest.fixture(autouse=True)
def no_docker_logins(tmp_path_factory, monkeypatch):
    # Logins stored on the machine running the tests must not reach any client
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path_factory.mktemp("docker")))
