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
Image reference parsing.
Turns 'alpine', 'alpine:3.19' or 'ghcr.io/org/app@sha256:...' into registry, repository and tag or digest.
"""

import re
from typing import Optional
from dataclasses import dataclass

from ..exceptions import ImageReferenceError, InvalidDigestError
from ..MODELS.image_record import Digest

_COMPONENT = re.compile(r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*")
_TAG = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}")


@dataclass
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - alpine -> docker.io/library/alpine:latest
        - alpine:3.19 -> docker.io/library/alpine:3.19
        - myuser/app:v1 -> docker.io/myuser/app:v1
        - localhost:5000/app@sha256:<hex> -> localhost:5000/app@sha256:<hex>
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[Digest] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Reference of the form name[:tag] or name@digest.

        Returns:
            Parsed ImageReference.

        Raises:
            ImageReferenceError: If the reference is empty or malformed.
        """
        if not reference or not reference.strip():
            raise ImageReferenceError("Empty image reference")
        original = reference
        reference = reference.strip()

        digest = None
        if "@" in reference:
            reference, digest_part = reference.rsplit("@", 1)
            try:
                digest = Digest.parse(digest_part)
            except InvalidDigestError as e:
                raise ImageReferenceError(f"Invalid digest in {original!r}: {e}") from e

        tag = None
        last_colon = reference.rfind(":")
        if last_colon > reference.rfind("/"):
            # A colon after the last slash separates the tag; before it, it is a registry port
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]
            if not _TAG.fullmatch(tag):
                raise ImageReferenceError(f"Invalid tag {tag!r} in {original!r}")

        registry, repository = cls._split_name(reference, original)

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @classmethod
    def _split_name(cls, name: str, original: str):
        parts = name.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            path = parts[1:]
        else:
            registry = cls.DEFAULT_REGISTRY
            path = parts

        if registry == cls.DEFAULT_REGISTRY and len(path) == 1:
            # Official images live under library/
            path = ["library"] + path

        for component in path:
            if not _COMPONENT.fullmatch(component):
                raise ImageReferenceError(f"Invalid repository name in {original!r}")
        return registry, "/".join(path)

    @property
    def reference(self) -> str:
        """The tag or digest to request the manifest by."""
        return self.digest or self.tag

    @property
    def name(self) -> str:
        """Full name with registry, tag and digest."""
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    @property
    def registry_url(self) -> str:
        """Base URL of the registry API."""
        if self.registry == self.DEFAULT_REGISTRY:
            return "https://registry-1.docker.io"
        if "://" in self.registry:
            return self.registry
        return f"https://{self.registry}"

    def __str__(self) -> str:
        return self.name
