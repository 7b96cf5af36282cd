# repo.py -- Object and ref stores used as fetch targets
# Copyright (C) 2026 The fetchpack Authors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# fetchpack is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Repositories that fetched objects and refs are written to.

fetch() works against anything that provides the ObjectStore and RefStore
methods below; MemoryRepo and DiskRepo are the two implementations that
ship with fetchpack.
"""

import os
import tempfile
import zlib
from typing import Callable, Optional, Protocol, Union

from .pack import parse_raw_object

ObjectID = bytes
Ref = bytes

SHALLOW_KEY = "shallow"

BAD_REF_CHARS = set(b"\177 ~^:?*[")

SYMREF = b"ref: "


class ObjectStore(Protocol):
    """Raw, content-addressed object storage."""

    def has_object(self, sha: ObjectID) -> bool:
        """Check if an object is present."""
        ...

    def save_raw(self, sha: ObjectID, body: bytes) -> None:
        """Store an object in loose form. Saving an existing object is a no-op."""
        ...

    def load_raw(self, sha: ObjectID) -> Optional[bytes]:
        """Return an object in loose form, or None if it is not present."""
        ...

    def load_metadata(self, key: str) -> Optional[bytes]:
        """Return the metadata stored under key, or None."""
        ...

    def save_metadata(self, key: str, data: bytes) -> None:
        """Store metadata under key."""
        ...


class RefStore(Protocol):
    """Named references to objects."""

    def list_refs(self) -> list[Ref]:
        """Return the names of all refs."""
        ...

    def get_ref(self, name: Ref) -> Optional[ObjectID]:
        """Return the object a ref points at, or None."""
        ...

    def set_ref(self, name: Ref, sha: ObjectID) -> None:
        """Point a ref at an object."""
        ...


class RawRepo(ObjectStore, RefStore, Protocol):
    """A repository that can be fetched into."""


def parse_shallow(data: Optional[bytes]) -> list[ObjectID]:
    """Parse shallow metadata into an ordered list of object ids."""
    if not data:
        return []
    ret = {}
    for line in data.splitlines():
        line = line.strip()
        if line:
            ret[line] = None
    return list(ret)


def serialize_shallow(shallow: list[ObjectID]) -> bytes:
    """Serialize shallow boundaries, one object id per line."""
    return b"".join([sha + b"\n" for sha in shallow])


def commit_parents(body: bytes) -> list[ObjectID]:
    """Return the parents named by a commit in loose form.

    Raises:
      ValueError: If body is not a commit
    """
    type_num, content = parse_raw_object(body)
    if type_num != 1:
        raise ValueError("object is not a commit")
    parents = []
    for line in content.split(b"\n"):
        if not line:
            break
        if line.startswith(b"parent "):
            parents.append(line[7:].strip())
    return parents


def make_get_parents(store: ObjectStore) -> Callable[[ObjectID], list[ObjectID]]:
    """Return a function listing the locally present parents of a commit.

    The function raises KeyError for objects that are missing or are not
    commits, which ends the walk along that line of history.
    """

    def get_parents(sha: ObjectID) -> list[ObjectID]:
        body = store.load_raw(sha)
        if body is None:
            raise KeyError(sha)
        try:
            parents = commit_parents(body)
        except ValueError as exc:
            raise KeyError(sha) from exc
        return [p for p in parents if store.has_object(p)]

    return get_parents


def check_ref_format(refname: Ref) -> bool:
    """Check if a refname is correctly formatted.

    Implements the rules of git-check-ref-format that matter for names
    received from a remote.
    """
    if b"/." in refname or refname.startswith(b"."):
        return False
    if b"/" not in refname:
        return False
    if b".." in refname:
        return False
    for c in refname:
        if c < 0o40 or c in BAD_REF_CHARS:
            return False
    if refname[-1] in b"/.":
        return False
    if refname.endswith(b".lock"):
        return False
    if b"@{" in refname or b"\\" in refname:
        return False
    return True


class MemoryRepo:
    """Repository kept entirely in memory."""

    def __init__(self) -> None:
        self.objects: dict[ObjectID, bytes] = {}
        self.refs: dict[Ref, ObjectID] = {}
        self.metadata: dict[str, bytes] = {}

    def has_object(self, sha: ObjectID) -> bool:
        return sha in self.objects

    def save_raw(self, sha: ObjectID, body: bytes) -> None:
        self.objects[sha] = body

    def load_raw(self, sha: ObjectID) -> Optional[bytes]:
        return self.objects.get(sha)

    def load_metadata(self, key: str) -> Optional[bytes]:
        return self.metadata.get(key)

    def save_metadata(self, key: str, data: bytes) -> None:
        self.metadata[key] = data

    def list_refs(self) -> list[Ref]:
        return list(self.refs)

    def get_ref(self, name: Ref) -> Optional[ObjectID]:
        return self.refs.get(name)

    def set_ref(self, name: Ref, sha: ObjectID) -> None:
        self.refs[name] = sha


def _atomic_write(path: str, data: bytes) -> None:
    dirname = os.path.dirname(path)
    os.makedirs(dirname, exist_ok=True)
    (fd, tmppath) = tempfile.mkstemp(prefix=".tmp-", dir=dirname)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmppath, path)
    except BaseException:
        os.remove(tmppath)
        raise


class DiskRepo:
    """Repository stored in a git directory.

    Objects are written as zlib-compressed loose objects and refs as loose
    ref files, so the result can be read by git itself. Packed refs are read
    but never written.
    """

    def __init__(self, path: Union[str, os.PathLike[str]]) -> None:
        self.path = os.fspath(path)

    @classmethod
    def init(cls, path: Union[str, os.PathLike[str]]) -> "DiskRepo":
        """Create an empty (bare) git directory at path."""
        path = os.fspath(path)
        for subdir in ("objects", "refs/heads", "refs/tags"):
            os.makedirs(os.path.join(path, *subdir.split("/")), exist_ok=True)
        head = os.path.join(path, "HEAD")
        if not os.path.exists(head):
            _atomic_write(head, b"ref: refs/heads/master\n")
        return cls(path)

    def _object_path(self, sha: ObjectID) -> str:
        hexsha = sha.decode("ascii")
        return os.path.join(self.path, "objects", hexsha[:2], hexsha[2:])

    def _ref_path(self, name: Ref) -> str:
        if not check_ref_format(name):
            raise ValueError(f"invalid ref name {name!r}")
        return os.path.join(self.path, *name.decode("utf-8").split("/"))

    def has_object(self, sha: ObjectID) -> bool:
        return os.path.exists(self._object_path(sha))

    def save_raw(self, sha: ObjectID, body: bytes) -> None:
        path = self._object_path(sha)
        if os.path.exists(path):
            return
        _atomic_write(path, zlib.compress(body))

    def load_raw(self, sha: ObjectID) -> Optional[bytes]:
        try:
            with open(self._object_path(sha), "rb") as f:
                return zlib.decompress(f.read())
        except FileNotFoundError:
            return None

    def load_metadata(self, key: str) -> Optional[bytes]:
        try:
            with open(os.path.join(self.path, key), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def save_metadata(self, key: str, data: bytes) -> None:
        path = os.path.join(self.path, key)
        if data:
            _atomic_write(path, data)
        elif os.path.exists(path):
            os.remove(path)

    def _read_packed_refs(self) -> dict[Ref, ObjectID]:
        ret = {}
        try:
            f = open(os.path.join(self.path, "packed-refs"), "rb")
        except FileNotFoundError:
            return ret
        with f:
            for line in f:
                if line.startswith((b"#", b"^")):
                    continue
                sha, _, name = line.rstrip(b"\n").partition(b" ")
                if name:
                    ret[name] = sha
        return ret

    def list_refs(self) -> list[Ref]:
        names = dict.fromkeys(self._read_packed_refs())
        refs_dir = os.path.join(self.path, "refs")
        for root, dirs, files in os.walk(refs_dir):
            dirs.sort()
            for filename in sorted(files):
                if filename.endswith(".lock") or filename.startswith(".tmp-"):
                    continue
                relpath = os.path.relpath(os.path.join(root, filename), self.path)
                names[relpath.replace(os.path.sep, "/").encode("utf-8")] = None
        return list(names)

    def get_ref(self, name: Ref) -> Optional[ObjectID]:
        for _ in range(5):
            try:
                with open(self._ref_path(name), "rb") as f:
                    contents = f.read().strip()
            except FileNotFoundError:
                return self._read_packed_refs().get(name)
            if not contents.startswith(SYMREF):
                return contents
            name = contents[len(SYMREF) :]
        raise ValueError(f"symbolic ref loop at {name!r}")

    def set_ref(self, name: Ref, sha: ObjectID) -> None:
        _atomic_write(self._ref_path(name), sha + b"\n")
