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
Shared store of extracted layers, keyed by layer digest.
"""
import logging
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

from ..exceptions import ArchiveError, CpullError, LayerError
from ..MODELS.image_record import CacheOutcome, Digest
from ..MODELS.store_config import StoreConfig
from .archive_unpacker import ArchiveUnpacker, UnpackPolicy, UnpackResult
from .record_store import RecordStore

logger = logging.getLogger(__name__)

# Returns a readable, uncompressed tar stream for a layer digest.
# The stream is used as a context manager and closed after unpacking.
StreamProvider = Callable[[Digest], BinaryIO]

DRAIN_CHUNK = 64 * 1024


class LayerStore(RecordStore):
    """
    Holds exactly one extracted copy of every layer pulled, whichever images reference it.
    """

    kind = "layer"

    def __init__(self, config: StoreConfig, policy: Optional[UnpackPolicy] = None):
        """
        :param config: Store configuration; layers live under config.layer_root.
        :param policy: Handling of symlinks and unsupported archive entries.
        """
        super().__init__(config.layer_root)
        self.policy = policy or UnpackPolicy()

    def error(self, digest: str, message: str) -> LayerError:
        return LayerError(digest, message)

    def layer_path(self, digest: str) -> Path:
        return self.path_for(digest)

    def has_layer(self, digest: str) -> bool:
        return self.contains(digest)

    def list_layers(self) -> List[str]:
        return self.list_digests()

    def ensure_layer(self, digest: str, stream_provider: StreamProvider) -> CacheOutcome:
        """
        Makes sure the layer is extracted in the store.

        :param digest: Layer digest.
        :param stream_provider: Called with the digest only when the layer is missing.
        :return: ALREADY_CACHED if the layer was present, FETCHED if it was extracted now.
        :raises LayerError: If the stream cannot be opened, unpacked or committed.
        """
        digest = Digest.parse(digest)
        if self.contains(digest):
            logger.debug("Layer %s found in cache", digest)
            return CacheOutcome.ALREADY_CACHED

        self.ensure_root()
        with self.lock(digest):
            # Another process may have finished while we waited for the lock
            if self.contains(digest):
                logger.debug("Layer %s was stored by a concurrent pull", digest)
                return CacheOutcome.ALREADY_CACHED

            staging = self.make_staging(digest)
            result = self._extract(digest, stream_provider, staging)
            self.commit(digest, staging)

        logger.info("Stored layer %s: %d entries written, %d skipped",
                    digest.short, result.written, len(result.skipped))

        return CacheOutcome.FETCHED

    def _extract(self, digest: Digest, stream_provider: StreamProvider, staging: Path) -> UnpackResult:
        try:
            stream = stream_provider(digest)
        except (CpullError, OSError) as e:
            raise LayerError(digest, f"Cannot open layer stream: {e}") from e

        logger.debug("Extracting layer %s into %s", digest, staging)
        try:
            with stream:
                result = ArchiveUnpacker(staging, self.policy).unpack(stream)
                # Consume the padding after the end-of-archive marker so the whole blob is read
                while stream.read(DRAIN_CHUNK):
                    pass
                return result
        except ArchiveError as e:
            raise LayerError(digest, f"Cannot unpack layer: {e}") from e
        except OSError as e:
            raise LayerError(digest, f"Cannot read layer stream: {e}") from e
