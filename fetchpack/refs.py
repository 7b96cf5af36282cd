# refs.py -- Ref advertisements and refspecs
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

"""Parsing of ref advertisements and refspecs."""

import logging
from collections.abc import Iterable, Iterator, Mapping
from io import BytesIO
from typing import Optional, Union

from .errors import InvalidRequest, ProtocolViolation
from .protocol import (
    CAPABILITIES_REF,
    CAPABILITY_SYMREF,
    ZERO_SHA,
    Protocol,
    check_remote_error,
    extract_capabilities,
    parse_capability,
)

Ref = bytes
ObjectID = bytes

PEELED_TAG_SUFFIX = b"^{}"

DEFAULT_REFSPEC = b"+refs/heads/*:refs/remotes/origin/*"

_HEX_DIGITS = frozenset(b"0123456789abcdef")

logger = logging.getLogger(__name__)


def valid_hexsha(sha: bytes) -> bool:
    """Check whether sha is a 40 character lowercase hex object id."""
    return len(sha) == 40 and all(c in _HEX_DIGITS for c in sha)


class Capabilities(Mapping[bytes, Union[bool, bytes]]):
    """Immutable set of capabilities announced by a server.

    Flags map to True; ``key=value`` tokens map to their value. Keys that
    occur more than once (such as ``symref``) keep every value, available
    through get_all(); plain lookups return the first one.
    """

    def __init__(self, tokens: Iterable[bytes] = ()) -> None:
        values: dict[bytes, list[Union[bool, bytes]]] = {}
        for token in tokens:
            if not token:
                continue
            key, value = parse_capability(token)
            values.setdefault(key, []).append(True if value is None else value)
        self._values = values

    def __getitem__(self, key: bytes) -> Union[bool, bytes]:
        return self._values[key][0]

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.tokens()!r})"

    def get_all(self, key: bytes) -> list[Union[bool, bytes]]:
        """Return every value announced for key."""
        return list(self._values.get(key, []))

    def tokens(self) -> list[bytes]:
        """Return the capabilities as wire tokens."""
        ret = []
        for key, values in self._values.items():
            for value in values:
                ret.append(key if value is True else key + b"=" + value)  # type: ignore[operator]
        return ret

    def symrefs(self) -> dict[Ref, Ref]:
        """Return the symbolic refs announced through ``symref=src:dst``."""
        ret = {}
        for value in self.get_all(CAPABILITY_SYMREF):
            if isinstance(value, bytes) and b":" in value:
                src, dst = value.split(b":", 1)
                ret[src] = dst
        return ret


class RefAdvertisement:
    """Result of parsing an ``info/refs`` response.

    Attributes:
      capabilities: Capabilities announced by the server
      refs: List of (name, sha) tuples, in the order received
      peeled: Dictionary mapping tag names to the object they peel to
    """

    def __init__(
        self,
        capabilities: Capabilities,
        refs: list[tuple[Ref, ObjectID]],
        peeled: Optional[dict[Ref, ObjectID]] = None,
    ) -> None:
        self.capabilities = capabilities
        self.refs = refs
        self.peeled = peeled or {}

    def as_dict(self) -> dict[Ref, ObjectID]:
        """Return the refs as a dictionary."""
        return dict(self.refs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RefAdvertisement):
            return False
        return (
            self.capabilities == other.capabilities
            and self.refs == other.refs
            and self.peeled == other.peeled
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.capabilities!r}, {self.refs!r})"


def _read_service_announcement(proto: Protocol, service: bytes) -> None:
    pkt = proto.read_pkt_line()
    if pkt is None or not pkt.startswith(b"# service="):
        # Some servers skip the announcement altogether.
        proto.unread_pkt_line(pkt)
        return
    if pkt.rstrip(b"\n") != b"# service=" + service:
        raise ProtocolViolation(f"unexpected first line {pkt!r} from smart server")
    if proto.read_pkt_line() is not None:
        raise ProtocolViolation("expected flush-pkt after service announcement")


def parse_ref_advertisement(
    data: Union[bytes, str], service: bytes = b"git-upload-pack"
) -> RefAdvertisement:
    """Parse the response of a smart ``info/refs`` request.

    Args:
      data: Raw response body
      service: Name of the service that was requested
    Returns: A RefAdvertisement

    Raises:
      ProtocolViolation: If the advertisement is malformed or truncated
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    proto = Protocol(BytesIO(data).read)
    _read_service_announcement(proto, service)

    capabilities: Optional[Capabilities] = None
    refs: list[tuple[Ref, ObjectID]] = []
    peeled: dict[Ref, ObjectID] = {}
    seen: set[Ref] = set()
    for pkt in proto.read_pkt_seq():
        check_remote_error(pkt)
        line = pkt.rstrip(b"\n")
        if capabilities is None:
            line, tokens = extract_capabilities(line)
            capabilities = Capabilities(tokens)
        try:
            (sha, name) = line.split(b" ", 1)
        except ValueError as exc:
            raise ProtocolViolation(f"invalid ref line {pkt!r}") from exc
        if not valid_hexsha(sha) or not name:
            raise ProtocolViolation(f"invalid ref line {pkt!r}")
        if name == CAPABILITIES_REF and sha == ZERO_SHA:
            continue
        if name.endswith(PEELED_TAG_SUFFIX):
            peeled[name[: -len(PEELED_TAG_SUFFIX)]] = sha
            continue
        if name in seen:
            raise ProtocolViolation(f"duplicate ref {name!r} in advertisement")
        seen.add(name)
        refs.append((name, sha))

    if capabilities is None:
        capabilities = Capabilities()
    logger.debug(
        "Server advertised %d refs, capabilities: %r", len(refs), capabilities
    )
    return RefAdvertisement(capabilities, refs, peeled)


class RefSpec:
    """A fetch refspec such as ``+refs/heads/*:refs/remotes/origin/*``."""

    def __init__(self, src: Ref, dst: Ref, force: bool = False) -> None:
        if src.count(b"*") > 1 or dst.count(b"*") > 1:
            raise InvalidRequest(
                f"refspec may contain at most one '*': {src!r}:{dst!r}"
            )
        if (b"*" in src) != (b"*" in dst):
            raise InvalidRequest(f"refspec wildcards do not match: {src!r}:{dst!r}")
        self.src = src
        self.dst = dst
        self.force = force

    @classmethod
    def parse(cls, refspec: Union[str, bytes]) -> "RefSpec":
        """Parse a refspec string."""
        if isinstance(refspec, str):
            refspec = refspec.encode("utf-8")
        force = False
        if refspec.startswith(b"+"):
            force = True
            refspec = refspec[1:]
        if b":" in refspec:
            (src, dst) = refspec.split(b":", 1)
        else:
            src = dst = refspec
        if not src or not dst:
            raise InvalidRequest(f"invalid fetch refspec {refspec!r}")
        return cls(src, dst, force)

    def map(self, name: Ref) -> Optional[Ref]:
        """Map a remote ref name to the local name, or None if it does not match."""
        if b"*" not in self.src:
            return self.dst if name == self.src else None
        prefix, suffix = self.src.split(b"*", 1)
        if (
            len(name) < len(prefix) + len(suffix)
            or not name.startswith(prefix)
            or not name.endswith(suffix)
        ):
            return None
        matched = name[len(prefix) : len(name) - len(suffix)]
        return self.dst.replace(b"*", matched, 1)

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, RefSpec)
            and (self.src, self.dst, self.force)
            == (other.src, other.dst, other.force)
        )

    def __repr__(self) -> str:
        prefix = b"+" if self.force else b""
        return f"{self.__class__.__name__}({prefix + self.src + b':' + self.dst!r})"


def parse_refspecs(
    refspecs: Union[str, bytes, RefSpec, Iterable[Union[str, bytes, RefSpec]]],
) -> list[RefSpec]:
    """Parse one refspec or a list of them."""
    if isinstance(refspecs, (str, bytes, RefSpec)):
        refspecs = [refspecs]
    return [r if isinstance(r, RefSpec) else RefSpec.parse(r) for r in refspecs]


def map_remote_refs(
    refs: Iterable[tuple[Ref, ObjectID]], refspecs: Iterable[RefSpec]
) -> list[tuple[Ref, Ref, ObjectID]]:
    """Map advertised refs through refspecs.

    Returns: List of (remote name, local name, sha) tuples, in advertisement
        order. The first matching refspec wins.
    """
    refspecs = list(refspecs)
    ret = []
    for name, sha in refs:
        for refspec in refspecs:
            local = refspec.map(name)
            if local is not None:
                ret.append((name, local, sha))
                break
    return ret
