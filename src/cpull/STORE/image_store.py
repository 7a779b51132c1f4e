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
Store of image metadata, keyed by image digest.
Each image directory holds manifest.json and config.json.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from pydantic import BaseModel, ValidationError

from ..exceptions import ImageError, StoreError
from ..MODELS.image_record import CacheOutcome, Digest, ImageConfig, ImageRecord, Manifest
from ..MODELS.store_config import StoreConfig
from .record_store import RecordStore

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
CONFIG_FILE = "config.json"

Document = Union[BaseModel, Dict[str, Any]]


class ImageStore(RecordStore):
    """
    Persists the manifest and config of every image pulled, once per digest.
    """

    kind = "image"

    def __init__(self, config: StoreConfig):
        super().__init__(config.image_root)
        self.layer_root = Path(config.layer_root)

    def error(self, digest: str, message: str) -> ImageError:
        return ImageError(digest, message)

    def image_path(self, digest: str) -> Path:
        return self.path_for(digest)

    def has_image(self, digest: str) -> bool:
        return self.contains(digest)

    def list_images(self) -> List[str]:
        return self.list_digests()

    def ensure_roots(self) -> None:
        """Creates the image and layer store directories if missing."""
        self.ensure_root()
        try:
            self.layer_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create store directory {self.layer_root}: {e}") from e

    def ensure_image(self, digest: str, manifest: Document, config: Document) -> CacheOutcome:
        """
        Makes sure the image record exists.

        :param digest: Image digest.
        :param manifest: Manifest model or plain document.
        :param config: Config model or plain document.
        :return: ALREADY_CACHED if the record was present, FETCHED if it was written now.
        :raises ImageError: If a document cannot be serialized or written.
        """
        digest = Digest.parse(digest)
        self.ensure_roots()

        if self.contains(digest):
            logger.debug("Image %s found in cache", digest)
            return CacheOutcome.ALREADY_CACHED

        with self.lock(digest):
            if self.contains(digest):
                logger.debug("Image %s was stored by a concurrent pull", digest)
                return CacheOutcome.ALREADY_CACHED

            staging = self.make_staging(digest)
            self._write_document(digest, staging / MANIFEST_FILE, manifest)
            self._write_document(digest, staging / CONFIG_FILE, config)
            self.commit(digest, staging)

        return CacheOutcome.FETCHED

    def load_image(self, digest: str) -> ImageRecord:
        """
        Reads an image record back from the store.

        :raises ImageError: If the record is missing or unreadable.
        """
        digest = Digest.parse(digest)
        path = self.image_path(digest)
        try:
            manifest = Manifest.model_validate_json((path / MANIFEST_FILE).read_text())
            config = ImageConfig.model_validate_json((path / CONFIG_FILE).read_text())
        except FileNotFoundError as e:
            raise ImageError(digest, f"Not in the store: {e.filename}") from e
        except OSError as e:
            raise ImageError(digest, f"Cannot read record at {path}: {e}") from e
        except ValidationError as e:
            raise ImageError(digest, f"Record at {path} is invalid: {e}") from e
        return ImageRecord(digest=digest, manifest=manifest, config=config)

    def _write_document(self, digest: Digest, path: Path, document: Document) -> None:
        try:
            content = self._serialize(document)
        except (TypeError, ValueError) as e:
            raise ImageError(digest, f"Cannot serialize {path.name}: {e}") from e

        try:
            with open(path, 'w') as f:
                f.write(content)
        except OSError as e:
            raise ImageError(digest, f"Cannot write {path}: {e}") from e

    @staticmethod
    def _serialize(document: Document) -> str:
        if isinstance(document, (Manifest, ImageConfig)):
            return document.to_json()
        if isinstance(document, BaseModel):
            return document.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        return json.dumps(document, indent=2)
