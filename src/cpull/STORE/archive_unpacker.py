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
Streaming extraction of layer archives.

A layer arrives as an uncompressed tar stream that can only be read once,
front to back. Entries are written as they are read; nothing is buffered and
nothing is rolled back if the stream fails part way through.
"""
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, List, Optional, Union

from ..exceptions import ArchiveError, UnsafePathError, UnsupportedEntryError

logger = logging.getLogger(__name__)

_TYPE_NAMES = {
    tarfile.LNKTYPE: "hard link",
    tarfile.SYMTYPE: "symlink",
    tarfile.CHRTYPE: "character device",
    tarfile.BLKTYPE: "block device",
    tarfile.FIFOTYPE: "fifo",
}


class EntryKind(str, Enum):
    """Kind of an archive entry. Every kind has a handling policy."""

    DIRECTORY = "directory"
    REGULAR_FILE = "file"
    SYMLINK = "symlink"
    HARD_LINK = "hard link"
    OTHER = "other"

    @classmethod
    def of(cls, member: tarfile.TarInfo) -> "EntryKind":
        if member.isdir():
            return cls.DIRECTORY
        if member.isreg():
            return cls.REGULAR_FILE
        if member.issym():
            return cls.SYMLINK
        if member.islnk():
            return cls.HARD_LINK
        return cls.OTHER


@dataclass
class UnpackPolicy:
    """How entries other than directories and regular files are treated."""

    symlinks: bool = True  # create symlinks; when False they are skipped like OTHER
    hardlinks: bool = True  # link to an entry already unpacked; when False they are skipped
    strict: bool = False  # raise instead of skipping entries that are not reproduced


@dataclass
class SkippedEntry:
    name: str
    kind: EntryKind
    type_name: str


@dataclass
class UnpackResult:
    """What an unpack wrote to disk."""

    directories: int = 0
    files: int = 0
    symlinks: int = 0
    hardlinks: int = 0
    skipped: List[SkippedEntry] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.directories + self.files + self.symlinks + self.hardlinks


class ArchiveUnpacker:
    """
    Reproduces a tar stream as a directory tree under a destination directory.

    Entry names are confined to the destination: absolute names, names that
    climb out with '..', and names whose parent resolves outside through a
    symlink are rejected with UnsafePathError.
    """

    def __init__(self, destination: Union[str, os.PathLike], policy: Optional[UnpackPolicy] = None):
        """
        :param destination: Existing directory to unpack into.
        :param policy: Handling of links and unsupported entries.
        """
        self.destination = os.path.abspath(os.fspath(destination))
        self.policy = policy or UnpackPolicy()
        self._root = os.path.realpath(self.destination)

    def unpack(self, stream: BinaryIO) -> UnpackResult:
        """
        Reads the stream to its end, writing each entry as it arrives.

        :param stream: Readable, uncompressed tar stream. It is not closed here.
        :return: Counts of what was written and the entries that were skipped.
        :raises ArchiveError: On a malformed stream, an unsafe entry, or a write failure.
        """
        result = UnpackResult()
        try:
            tar = tarfile.open(fileobj=stream, mode="r|")
        except (tarfile.TarError, OSError) as e:
            raise ArchiveError(f"Cannot read archive: {e}") from e

        last = None
        with tar:
            while True:
                try:
                    member = tar.next()
                except (tarfile.TarError, OSError) as e:
                    raise ArchiveError(f"Cannot read entry header after {last!r}: {e}") from e
                if member is None:
                    break
                self._unpack_member(tar, member, result)
                last = member.name

        logger.debug("Unpacked %d entries into %s (%d skipped)",
                     result.written, self.destination, len(result.skipped))
        return result

    def resolve(self, name: str) -> str:
        """
        Returns the destination path for an entry name.

        :raises UnsafePathError: If the entry would land outside the destination.
        """
        if os.path.isabs(name) or name.startswith(("/", "\\")):
            raise UnsafePathError("Absolute entry name", entry=name)

        normalized = os.path.normpath(name)
        if normalized == os.curdir:
            return self.destination
        if normalized == os.pardir or normalized.startswith(os.pardir + os.sep):
            raise UnsafePathError("Entry name escapes the destination", entry=name)

        path = os.path.join(self.destination, normalized)
        if not self._inside(os.path.realpath(os.path.dirname(path))):
            raise UnsafePathError("Entry parent resolves outside the destination", entry=name, path=path)
        return path

    def _inside(self, real_path: str) -> bool:
        return os.path.commonpath([self._root, real_path]) == self._root

    def _unpack_member(self, tar: tarfile.TarFile, member: tarfile.TarInfo, result: UnpackResult) -> None:
        path = self.resolve(member.name)
        kind = EntryKind.of(member)

        if kind is EntryKind.DIRECTORY:
            self._make_directory(member, path)
            result.directories += 1
        elif kind is EntryKind.REGULAR_FILE:
            self._write_file(tar, member, path)
            result.files += 1
        elif kind is EntryKind.SYMLINK and self.policy.symlinks:
            self._make_symlink(member, path)
            result.symlinks += 1
        elif kind is EntryKind.HARD_LINK and self.policy.hardlinks:
            self._make_hardlink(member, path)
            result.hardlinks += 1
        else:
            self._skip(member, kind, result)

    def _make_directory(self, member: tarfile.TarInfo, path: str) -> None:
        if os.path.islink(path) and not self._inside(os.path.realpath(path)):
            raise UnsafePathError("Directory entry is a symlink outside the destination",
                                  entry=member.name, path=path)
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise ArchiveError(f"Cannot create directory: {e}", entry=member.name, path=path) from e

    def _write_file(self, tar: tarfile.TarFile, member: tarfile.TarInfo, path: str) -> None:
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            # Replace a symlink or an existing file instead of writing through it,
            # which would also change every hard link to it
            if os.path.islink(path) or os.path.isfile(path):
                os.unlink(path)
            out = open(path, 'wb')
        except OSError as e:
            raise ArchiveError(f"Cannot create file: {e}", entry=member.name, path=path) from e

        try:
            with out, tar.extractfile(member) as body:
                shutil.copyfileobj(body, out)
        except tarfile.TarError as e:
            raise ArchiveError(f"Truncated file body: {e}", entry=member.name, path=path) from e
        except OSError as e:
            raise ArchiveError(f"Cannot write file body: {e}", entry=member.name, path=path) from e

        try:
            os.chmod(path, member.mode & 0o777)
        except OSError as e:
            raise ArchiveError(f"Cannot set permissions: {e}", entry=member.name, path=path) from e

    def _make_symlink(self, member: tarfile.TarInfo, path: str) -> None:
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            if os.path.lexists(path):
                if os.path.isdir(path) and not os.path.islink(path):
                    raise ArchiveError("Directory already exists where a symlink is expected",
                                       entry=member.name, path=path)
                os.unlink(path)
            os.symlink(member.linkname, path)
        except OSError as e:
            raise ArchiveError(f"Cannot create symlink: {e}", entry=member.name, path=path) from e

    def _make_hardlink(self, member: tarfile.TarInfo, path: str) -> None:
        """
        Links path to an entry unpacked earlier in the same archive.

        The target name is confined like an entry name. A target that is itself
        a symlink is linked as the symlink, never followed.
        """
        target = self.resolve(member.linkname)
        if target == path:
            raise ArchiveError("Hard link to itself", entry=member.name, path=path)
        if not os.path.lexists(target):
            raise ArchiveError(f"Hard link target {member.linkname!r} does not exist",
                               entry=member.name, path=path)
        if os.path.isdir(target) and not os.path.islink(target):
            raise ArchiveError(f"Hard link target {member.linkname!r} is a directory",
                               entry=member.name, path=path)

        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            if os.path.lexists(path):
                if os.path.isdir(path) and not os.path.islink(path):
                    raise ArchiveError("Directory already exists where a hard link is expected",
                                       entry=member.name, path=path)
                os.unlink(path)
        except OSError as e:
            raise ArchiveError(f"Cannot create hard link: {e}", entry=member.name, path=path) from e

        try:
            os.link(target, path, follow_symlinks=False)
        except OSError as e:
            # Filesystems without hard links get a copy
            logger.debug("Cannot link %s to %s (%s), copying instead", member.name, member.linkname, e)
            try:
                shutil.copy2(target, path, follow_symlinks=False)
            except OSError as copy_error:
                raise ArchiveError(f"Cannot copy hard link target: {copy_error}",
                                   entry=member.name, path=path) from copy_error

    def _skip(self, member: tarfile.TarInfo, kind: EntryKind, result: UnpackResult) -> None:
        type_name = _TYPE_NAMES.get(member.type, f"type {member.type!r}")
        if self.policy.strict:
            raise UnsupportedEntryError(f"Unsupported {type_name} entry", entry=member.name)
        logger.warning("Skipping %s entry %s", type_name, member.name)
        result.skipped.append(SkippedEntry(name=member.name, kind=kind, type_name=type_name))


def unpack(stream: BinaryIO, destination: Union[str, os.PathLike],
           policy: Optional[UnpackPolicy] = None) -> UnpackResult:
    """Unpacks a tar stream into destination. See ArchiveUnpacker.unpack."""
    return ArchiveUnpacker(destination, policy).unpack(stream)
