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
Unit tests for the image store.
"""
import json
import os
import threading

import pytest

from cpull.exceptions import ImageError, InvalidDigestError, StoreError
from cpull.MODELS.image_record import CacheOutcome
from cpull.STORE.digest_lock import DigestLock
from cpull.STORE.image_store import CONFIG_FILE, MANIFEST_FILE, ImageStore
from cpull.STORE.record_store import RecordStore


def test_ensure_image_writes_documents(store_config, sample_documents):
    digest, manifest, config = sample_documents
    store = ImageStore(store_config)

    assert store.ensure_image(digest, manifest, config) is CacheOutcome.FETCHED

    path = store.image_path(digest)
    assert path == store_config.image_root / digest.hex
    manifest_text = (path / MANIFEST_FILE).read_text()
    config_text = (path / CONFIG_FILE).read_text()

    # Two-space indentation, registry field names
    assert manifest_text.startswith('{\n  "schemaVersion": 2')
    stored = json.loads(manifest_text)
    assert stored["mediaType"] == "application/vnd.docker.distribution.manifest.v2+json"
    assert stored["layers"][0]["digest"] == "sha256:" + "a" * 64
    assert "annotations" not in stored

    stored_config = json.loads(config_text)
    assert stored_config["architecture"] == "amd64"
    assert stored_config["container"] == "4ab2b5d5ef9a"
    assert stored_config["rootfs"]["diff_ids"] == ["sha256:" + "d" * 64]


def test_ensure_roots_creates_both_stores(store_config, sample_documents):
    digest, manifest, config = sample_documents
    ImageStore(store_config).ensure_image(digest, manifest, config)
    assert store_config.image_root.is_dir()
    assert store_config.layer_root.is_dir()


def test_cached_image_is_not_rewritten(store_config, sample_documents):
    digest, manifest, config = sample_documents
    store = ImageStore(store_config)
    store.ensure_image(digest, manifest, config)
    manifest_path = store.image_path(digest) / MANIFEST_FILE
    before = os.stat(manifest_path).st_mtime_ns

    config.architecture = "arm64"
    assert store.ensure_image(digest, manifest, config) is CacheOutcome.ALREADY_CACHED

    assert os.stat(manifest_path).st_mtime_ns == before
    stored = json.loads((store.image_path(digest) / CONFIG_FILE).read_text())
    assert stored["architecture"] == "amd64"


def test_plain_documents(store_config):
    digest = "sha256:" + "1" * 64
    store = ImageStore(store_config)
    manifest = {"schemaVersion": 2, "config": {"digest": "sha256:" + "2" * 64}, "layers": []}
    config = {"os": "linux", "architecture": "riscv64"}

    store.ensure_image(digest, manifest, config)

    assert json.loads((store.image_path(digest) / MANIFEST_FILE).read_text()) == manifest
    assert json.loads((store.image_path(digest) / CONFIG_FILE).read_text()) == config


def test_unserializable_document_leaves_no_record(store_config, sample_documents):
    digest, manifest, _ = sample_documents
    store = ImageStore(store_config)

    with pytest.raises(ImageError) as exc_info:
        store.ensure_image(digest, manifest, {"created": object()})

    assert exc_info.value.digest == digest
    assert "Cannot serialize config.json" in str(exc_info.value)
    assert not store.has_image(digest)
    assert store.list_images() == []


def test_load_image(store_config, sample_documents):
    digest, manifest, config = sample_documents
    store = ImageStore(store_config)
    store.ensure_image(digest, manifest, config)

    record = store.load_image(digest)

    assert record.digest == digest
    assert record.manifest.layers[0].digest == manifest.layers[0].digest
    assert record.manifest.config.size == 1469
    assert record.config.os == "linux"
    assert record.config.model_extra["container"] == "4ab2b5d5ef9a"


def test_load_missing_image(store_config):
    with pytest.raises(ImageError) as exc_info:
        ImageStore(store_config).load_image("sha256:" + "e" * 64)
    assert "Not in the store" in str(exc_info.value)


def test_load_corrupt_image(store_config):
    digest = "sha256:" + "f" * 64
    path = store_config.image_root / ("f" * 64)
    path.mkdir(parents=True)
    (path / MANIFEST_FILE).write_text("{not json")
    (path / CONFIG_FILE).write_text("{}")

    with pytest.raises(ImageError) as exc_info:
        ImageStore(store_config).load_image(digest)
    assert "invalid" in str(exc_info.value)


def test_invalid_digest(store_config, sample_documents):
    _, manifest, config = sample_documents
    with pytest.raises(InvalidDigestError):
        ImageStore(store_config).ensure_image("sha256:ABC", manifest, config)


def test_list_images(store_config, sample_documents):
    _, manifest, config = sample_documents
    store = ImageStore(store_config)
    for char in "cab":
        store.ensure_image("sha256:" + char * 64, manifest, config)
    assert store.list_images() == ["a" * 64, "b" * 64, "c" * 64]


def test_clean_staging(store_config, sample_documents):
    digest, manifest, config = sample_documents
    store = ImageStore(store_config)
    store.ensure_image(digest, manifest, config)
    leftover = store.make_staging(digest)
    (leftover / MANIFEST_FILE).write_text("{}")

    assert store.clean_staging() == 1
    assert not leftover.exists()
    assert store.has_image(digest)


def test_digest_lock_reentry(tmp_path):
    lock = DigestLock(tmp_path, "abc")
    with lock:
        assert lock.path == tmp_path / ".locks" / "abc.lock"
        assert lock.path.exists()
    # Released locks can be taken again
    with DigestLock(tmp_path, "abc"):
        pass


def test_clean_staging_prunes_unused_locks(store_config, sample_documents):
    digest, manifest, config = sample_documents
    store = ImageStore(store_config)
    store.ensure_image(digest, manifest, config)
    lock_dir = store_config.image_root / ".locks"
    assert list(lock_dir.glob("*.lock")) == [lock_dir / f"{digest.hex}.lock"]

    assert store.clean_staging() == 0
    assert list(lock_dir.glob("*.lock")) == []
    assert store.has_image(digest)


def test_prune_locks_keeps_held_lock(tmp_path):
    store = RecordStore(tmp_path)
    with DigestLock(tmp_path, "idle"):
        pass
    with DigestLock(tmp_path, "busy") as held:
        assert store.prune_locks() == 1
        assert held.path.exists()
        assert not (tmp_path / ".locks" / "idle.lock").exists()
    assert store.prune_locks() == 1
    assert not held.path.exists()


def test_digest_lock_waiter_follows_removed_file(tmp_path):
    """
    A waiter that opened a lock file which its holder then removed must end up
    holding the file now at the lock path, so that two holders never coexist.
    """
    holder = DigestLock(tmp_path, "abc")
    holder.acquire()
    waiter = DigestLock(tmp_path, "abc")
    acquired = threading.Event()

    def wait_for_lock():
        waiter.acquire()
        acquired.set()

    thread = threading.Thread(target=wait_for_lock)
    thread.start()
    assert not acquired.wait(0.2)

    holder.remove()
    holder.release()
    thread.join(5)

    assert acquired.is_set()
    assert waiter.path.exists()
    assert not DigestLock(tmp_path, "abc").acquire(blocking=False)
    waiter.release()
    again = DigestLock(tmp_path, "abc")
    assert again.acquire(blocking=False)
    again.release()


def test_digest_lock_remove_requires_holding(tmp_path):
    with pytest.raises(StoreError):
        DigestLock(tmp_path, "abc").remove()
