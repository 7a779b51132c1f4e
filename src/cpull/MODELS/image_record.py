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
Models for image manifests, configs and the records kept in the stores.
"""
import hashlib
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler
from pydantic_core import core_schema

from ..exceptions import InvalidDigestError

_HEX = re.compile(r"[a-f0-9]+")


class Digest(str):
    """
    A content digest of the form ``algorithm:hex``.

    The hex part names the record directory in the stores.
    """

    ALGORITHMS = {"sha256": 64, "sha512": 128}

    @classmethod
    def parse(cls, value: Any) -> "Digest":
        if isinstance(value, Digest):
            return value
        if not isinstance(value, str):
            raise InvalidDigestError(f"Digest must be a string, got {type(value).__name__}")

        algorithm, sep, encoded = value.partition(":")
        if not sep:
            raise InvalidDigestError(f"Digest {value!r} has no algorithm prefix")
        length = cls.ALGORITHMS.get(algorithm)
        if length is None:
            raise InvalidDigestError(f"Unsupported digest algorithm {algorithm!r}")
        if len(encoded) != length or not _HEX.fullmatch(encoded):
            raise InvalidDigestError(f"Digest {value!r} is not {length} lowercase hex characters")
        return cls(value)

    @classmethod
    def from_bytes(cls, data: bytes, algorithm: str = "sha256") -> "Digest":
        """Compute the digest of a byte string."""
        if algorithm not in cls.ALGORITHMS:
            raise InvalidDigestError(f"Unsupported digest algorithm {algorithm!r}")
        return cls(f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}")

    @property
    def algorithm(self) -> str:
        return self.partition(":")[0]

    @property
    def hex(self) -> str:
        return self.partition(":")[2]

    @property
    def short(self) -> str:
        return self.hex[:12]

    @classmethod
    def __get_pydantic_core_schema__(cls, source: Any, handler: GetCoreSchemaHandler):
        return core_schema.no_info_after_validator_function(
            cls.parse,
            core_schema.str_schema(),
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )


class CacheOutcome(str, Enum):
    """
    Result of asking a store to hold a record.
    """
    ALREADY_CACHED = "already_cached"
    FETCHED = "fetched"


class Descriptor(BaseModel):
    """
    Reference to a blob in the registry.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    media_type: str = Field("", alias="mediaType")
    size: int = 0
    digest: Digest
    urls: Optional[List[str]] = None
    annotations: Optional[Dict[str, str]] = None


class LayerDescriptor(Descriptor):
    """
    A layer of an image. The digest identifies the layer on its own,
    so any number of images may share it.
    """
    pass


class Manifest(BaseModel):
    """
    Image manifest: the config descriptor plus the ordered layers.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_version: int = Field(2, alias="schemaVersion")
    media_type: Optional[str] = Field(None, alias="mediaType")
    config: Descriptor
    layers: List[LayerDescriptor] = []
    annotations: Optional[Dict[str, str]] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class ImageConfig(BaseModel):
    """
    Image runtime configuration document.
    Fields not modelled here are kept as extras so the document survives a round-trip.
    """
    model_config = ConfigDict(extra="allow")

    architecture: str = ""
    os: str = ""
    created: Optional[str] = None
    author: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    rootfs: Optional[Dict[str, Any]] = None
    history: Optional[List[Dict[str, Any]]] = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True, indent=2)


class ImageRecord(BaseModel):
    """
    An image as held by the image store.
    """
    digest: Digest
    manifest: Manifest
    config: ImageConfig
