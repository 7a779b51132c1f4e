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
Shared plumbing for the digest-keyed stores.

A record lives at <root>/<hex>. It is built in <root>/.staging/<hex>-XXXX and
renamed into place only once complete, so the presence of <root>/<hex> means
the record is whole. Creation is serialized per digest by DigestLock.
"""
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List

from ..exceptions import StoreError
from ..MODELS.image_record import Digest
from .digest_lock import LOCK_DIR, DigestLock

logger = logging.getLogger(__name__)

STAGING_DIR = ".staging"


class RecordStore:
    """
    A directory of records named by digest.
    """

    kind = "record"

    def __init__(self, root: Path):
        self.root = Path(root)
        self.staging_root = self.root / STAGING_DIR

    def error(self, digest: str, message: str) -> StoreError:
        return StoreError(f"{self.kind} {digest}: {message}")

    def path_for(self, digest: str) -> Path:
        return self.root / Digest.parse(digest).hex

    def contains(self, digest: str) -> bool:
        """
        Whether a complete record exists for the digest.

        :raises StoreError: If the check fails for a reason other than absence.
        """
        path = self.path_for(digest)
        try:
            os.stat(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise self.error(digest, f"Cannot check cache at {path}: {e}") from e
        return True

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create store directory {self.root}: {e}") from e

    def lock(self, digest: str) -> DigestLock:
        return DigestLock(self.root, Digest.parse(digest).hex)

    def make_staging(self, digest: str) -> Path:
        """Creates a fresh, private staging directory for one attempt."""
        hex_digest = Digest.parse(digest).hex
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f"{hex_digest}-", dir=self.staging_root))
            os.chmod(staging, 0o755)
        except OSError as e:
            raise self.error(digest, f"Cannot create staging directory: {e}") from e
        return staging

    def commit(self, digest: str, staging: Path) -> Path:
        """Moves a finished staging directory to its final path."""
        path = self.path_for(digest)
        try:
            os.rename(staging, path)
        except OSError as e:
            raise self.error(digest, f"Cannot move {staging} into place at {path}: {e}") from e
        logger.debug("Committed %s %s to %s", self.kind, digest, path)
        return path

    def list_digests(self) -> List[str]:
        """Hex names of the complete records, sorted."""
        if not self.root.exists():
            return []
        return sorted(
            entry.name for entry in self.root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def clean_staging(self) -> int:
        """
        Removes staging directories left behind by failed or interrupted attempts.
        Waits for the digest lock first so an attempt still in progress is left alone.
        Lock files nobody holds are removed afterwards.

        :return: Number of directories removed.
        """
        removed = 0
        entries = sorted(self.staging_root.iterdir()) if self.staging_root.exists() else []
        for entry in entries:
            hex_digest = entry.name.split("-", 1)[0]
            with DigestLock(self.root, hex_digest):
                if not entry.exists():
                    continue
                try:
                    shutil.rmtree(entry)
                except OSError as e:
                    raise StoreError(f"Cannot remove staging directory {entry}: {e}") from e
            logger.debug("Removed abandoned staging directory %s", entry)
            removed += 1
        self.prune_locks()
        return removed

    def prune_locks(self) -> int:
        """
        Removes lock files that no attempt holds. Held locks are skipped, not waited for.

        :return: Number of lock files removed.
        """
        lock_root = self.root / LOCK_DIR
        if not lock_root.exists():
            return 0

        removed = 0
        for entry in sorted(lock_root.glob("*.lock")):
            lock = DigestLock(self.root, entry.stem)
            if not lock.acquire(blocking=False):
                logger.debug("Lock %s is held, keeping it", entry)
                continue
            try:
                lock.remove()
            finally:
                lock.release()
            removed += 1
        logger.debug("Removed %d unused lock files from %s", removed, lock_root)
        return removed
