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

"""Exceptions raised while pulling and storing images."""

from typing import Optional


class CpullError(Exception):
    """Base exception for all cpull errors."""

    pass


class ConfigError(CpullError):
    """Raised when the store configuration is invalid or unreadable."""

    pass


class ImageReferenceError(CpullError, ValueError):
    """Raised when an image reference string cannot be parsed."""

    pass


class InvalidDigestError(CpullError, ValueError):
    """Raised when a digest string is not of the form algorithm:hex."""

    pass


class RegistryError(CpullError):
    """Raised when the registry cannot be reached or returns an error."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StoreError(CpullError):
    """Raised when a store directory or record cannot be read or written."""

    pass


class ImageError(StoreError):
    """Raised when an image record cannot be written or loaded."""

    def __init__(self, digest: str, message: str):
        super().__init__(f"image {digest}: {message}")
        self.digest = digest


class LayerError(StoreError):
    """Raised when a layer cannot be fetched or stored."""

    def __init__(self, digest: str, message: str):
        super().__init__(f"layer {digest}: {message}")
        self.digest = digest


class ArchiveError(CpullError):
    """Raised when a layer archive cannot be unpacked."""

    def __init__(self, message: str, entry: Optional[str] = None, path: Optional[str] = None):
        detail = message
        if entry is not None:
            detail = f"{detail} (entry {entry!r}"
            if path is not None:
                detail = f"{detail} -> {path}"
            detail = f"{detail})"
        super().__init__(detail)
        self.entry = entry
        self.path = path


class UnsafePathError(ArchiveError):
    """Raised when an archive entry would be written outside its destination."""

    pass


class UnsupportedEntryError(ArchiveError):
    """Raised in strict mode for archive entries that cannot be reproduced."""

    pass
