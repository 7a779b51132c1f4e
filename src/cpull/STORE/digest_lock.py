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
Per-digest locking so that concurrent pulls do not create the same record twice.
"""
import fcntl
import logging
import os
from pathlib import Path

from ..exceptions import StoreError

logger = logging.getLogger(__name__)

LOCK_DIR = ".locks"


class DigestLock:
    """
    Exclusive lock on one digest within one store root.

    Uses flock on <root>/.locks/<hex>.lock, which serializes both processes
    and threads (each acquisition opens its own file description). A lock file
    may be removed by its holder; waiters that locked the removed file notice
    and lock the new one instead.
    """

    def __init__(self, root: Path, name: str):
        self.path = Path(root) / LOCK_DIR / f"{name}.lock"
        self._handle = None

    def acquire(self, blocking: bool = True) -> bool:
        """
        :param blocking: Wait for the holder; when False, give up at once.
        :return: Whether the lock is now held. Always True when blocking.
        """
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        while True:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self.path, 'a')
            except OSError as e:
                raise StoreError(f"Cannot open lock file {self.path}: {e}") from e

            logger.debug("Waiting for lock %s", self.path)
            try:
                fcntl.flock(handle, flags)
            except BlockingIOError:
                handle.close()
                return False
            except OSError as e:
                handle.close()
                raise StoreError(f"Cannot lock {self.path}: {e}") from e

            if self._is_current(handle):
                self._handle = handle
                logger.debug("Acquired lock %s", self.path)
                return True
            handle.close()

    def _is_current(self, handle) -> bool:
        """Whether the locked file is still the one at self.path."""
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Cannot check lock file {self.path}: {e}") from e
        held = os.fstat(handle.fileno())
        return (on_disk.st_dev, on_disk.st_ino) == (held.st_dev, held.st_ino)

    def remove(self) -> None:
        """Deletes the lock file. Only valid while the lock is held."""
        if self._handle is None:
            raise StoreError(f"Cannot remove {self.path}: lock is not held")
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreError(f"Cannot remove lock file {self.path}: {e}") from e

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle, fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "DigestLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
