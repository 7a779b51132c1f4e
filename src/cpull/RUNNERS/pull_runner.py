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
The pull workflow: image record first, then each layer in manifest order.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ..MODELS.image_record import CacheOutcome, Digest
from ..MODELS.store_config import StoreConfig
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.registry_client import RegistryClient
from ..STORE.image_store import ImageStore
from ..STORE.layer_store import LayerStore

logger = logging.getLogger(__name__)


class PullEvent(str, Enum):
    """Progress events reported while pulling."""

    IMAGE = "image"
    IMAGE_CACHED = "image_cached"
    IMAGE_STORED = "image_stored"
    LAYER = "layer"
    LAYER_PULLED = "layer_pulled"
    LAYER_CACHED = "layer_cached"


ProgressCallback = Callable[[PullEvent, str], None]


@dataclass
class LayerOutcome:
    digest: Digest
    outcome: CacheOutcome


@dataclass
class PullResult:
    """Outcome of one pull."""

    reference: str
    digest: Digest
    image_outcome: CacheOutcome
    layers: List[LayerOutcome] = field(default_factory=list)
    # Layers of a cached image that are absent from the layer store; reported, not repaired
    missing_layers: List[Digest] = field(default_factory=list)

    @property
    def image_cached(self) -> bool:
        return self.image_outcome is CacheOutcome.ALREADY_CACHED

    @property
    def fetched_layers(self) -> List[Digest]:
        return [layer.digest for layer in self.layers if layer.outcome is CacheOutcome.FETCHED]


class PullRunner:
    """
    Pulls images into the image and layer stores.

    The client only needs get_image(ref) returning an object with digest,
    manifest, config and layer_stream(digest).
    """

    def __init__(self,
                 config: StoreConfig,
                 client: Optional[RegistryClient] = None,
                 progress: Optional[ProgressCallback] = None):
        """
        :param config: Store configuration.
        :param client: Registry client. Defaults to a RegistryClient for the config.
        :param progress: Called with each PullEvent and the name or digest it concerns.
        """
        self.config = config
        self.client = client or RegistryClient(config)
        self.progress = progress
        self.image_store = ImageStore(config)
        self.layer_store = LayerStore(config)

    def pull(self, reference: str) -> PullResult:
        """
        Pull an image.

        A cached image ends the pull early with image_cached set; its layers
        are not fetched again.

        :param reference: Image reference such as 'alpine:3.19'.
        :return: What was found in cache and what was fetched.
        :raises ImageReferenceError: Before any I/O, if the reference is malformed.
        :raises RegistryError: If the image cannot be resolved or a layer cannot be fetched.
        :raises StoreError: If a record cannot be written.
        """
        ref = ImageReference.parse(reference)
        self._emit(PullEvent.IMAGE, ref.name)

        image = self.client.get_image(ref)
        outcome = self.image_store.ensure_image(image.digest, image.manifest, image.config)
        result = PullResult(reference=ref.name, digest=image.digest, image_outcome=outcome)

        if result.image_cached:
            result.missing_layers = [
                layer.digest for layer in image.manifest.layers
                if not self.layer_store.has_layer(layer.digest)
            ]
            if result.missing_layers:
                logger.warning("Image %s is cached but %d of its layers are missing",
                               image.digest, len(result.missing_layers))
            self._emit(PullEvent.IMAGE_CACHED, image.digest)
            return result

        self._emit(PullEvent.IMAGE_STORED, image.digest)
        for layer in image.manifest.layers:
            self._emit(PullEvent.LAYER, layer.digest)
            layer_outcome = self.layer_store.ensure_layer(layer.digest, image.layer_stream)
            result.layers.append(LayerOutcome(digest=layer.digest, outcome=layer_outcome))
            if layer_outcome is CacheOutcome.FETCHED:
                self._emit(PullEvent.LAYER_PULLED, layer.digest)
            else:
                self._emit(PullEvent.LAYER_CACHED, layer.digest)

        return result

    def _emit(self, event: PullEvent, subject: str) -> None:
        logger.debug("%s %s", event.value, subject)
        if self.progress:
            self.progress(event, subject)
