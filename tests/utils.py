# utils.py -- Test utilities for fetchpack
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

"""Utility functions common to fetchpack tests."""

import binascii
import zlib
from collections.abc import Iterable, Mapping, Sequence
from hashlib import sha1
from io import BytesIO
from struct import pack
from typing import Optional, Union

from fetchpack.pack import OFS_DELTA, REF_DELTA, TYPE_NUMBERS, obj_sha, object_header
from fetchpack.protocol import pkt_line

ADVERTISEMENT_CONTENT_TYPE = "application/x-git-upload-pack-advertisement"
RESULT_CONTENT_TYPE = "application/x-git-upload-pack-result"

DEFAULT_CAPABILITIES = [
    b"multi_ack_detailed",
    b"side-band-64k",
    b"ofs-delta",
    b"shallow",
    b"no-progress",
    b"agent=git/2.45.0",
]

EMPTY_TREE = obj_sha(2, b"")


def make_object(type_name: bytes, content: bytes) -> tuple[bytes, bytes]:
    """Return the object id and loose form of an object."""
    type_num = TYPE_NUMBERS[type_name]
    return obj_sha(type_num, content), object_header(type_num, len(content)) + content


def make_commit(
    parents: Sequence[bytes] = (),
    message: bytes = b"commit",
    tree: bytes = EMPTY_TREE,
) -> tuple[bytes, bytes]:
    """Return the object id and loose form of a commit."""
    lines = [b"tree " + tree]
    for parent in parents:
        lines.append(b"parent " + parent)
    lines.append(b"author Joe Example <joe@example.com> 1700000000 +0000")
    lines.append(b"committer Joe Example <joe@example.com> 1700000000 +0000")
    content = b"\n".join(lines) + b"\n\n" + message + b"\n"
    return make_object(b"commit", content)


def make_linear_history(count: int, start: int = 0) -> list[tuple[bytes, bytes]]:
    """Create a chain of commits, oldest first.

    Returns: List of (sha, loose form) tuples
    """
    ret: list[tuple[bytes, bytes]] = []
    for i in range(start, start + count):
        parents = [ret[-1][0]] if ret else []
        ret.append(make_commit(parents, message=b"commit %d" % i))
    return ret


def pack_object_header(
    type_num: int, delta_base: Union[bytes, int, None], size: int
) -> bytes:
    """Create a pack object header for the given object info."""
    header = []
    c = (type_num << 4) | (size & 15)
    size >>= 4
    while size:
        header.append(c | 0x80)
        c = size & 0x7F
        size >>= 7
    header.append(c)
    if type_num == OFS_DELTA:
        assert isinstance(delta_base, int)
        ret = [delta_base & 0x7F]
        delta_base >>= 7
        while delta_base:
            delta_base -= 1
            ret.insert(0, 0x80 | (delta_base & 0x7F))
            delta_base >>= 7
        header.extend(ret)
    elif type_num == REF_DELTA:
        assert isinstance(delta_base, bytes) and len(delta_base) == 20
        header.extend(delta_base)
    return bytes(header)


def _delta_encode_size(size: int) -> bytes:
    ret = bytearray()
    c = size & 0x7F
    size >>= 7
    while size:
        ret.append(c | 0x80)
        c = size & 0x7F
        size >>= 7
    ret.append(c)
    return bytes(ret)


def create_delta(base: bytes, target: bytes) -> bytes:
    """Create a delta turning base into target.

    Copies the common prefix from base (up to 64K) and inserts the rest.
    """
    out = [_delta_encode_size(len(base)), _delta_encode_size(len(target))]
    prefix = 0
    limit = min(len(base), len(target), 0xFFFF)
    while prefix < limit and base[prefix] == target[prefix]:
        prefix += 1
    if prefix:
        cmd = bytearray([0x80])
        for i in range(2):
            if prefix & 0xFF << i * 8:
                cmd.append((prefix >> i * 8) & 0xFF)
                cmd[0] |= 1 << (4 + i)
        out.append(bytes(cmd))
    rest = target[prefix:]
    for i in range(0, len(rest), 127):
        chunk = rest[i : i + 127]
        out.append(bytes([len(chunk)]) + chunk)
    return b"".join(out)


PackEntry = tuple[int, Union[bytes, tuple[Union[int, bytes], bytes]]]


def build_pack(entries: Iterable[PackEntry], version: int = 2) -> bytes:
    """Build a pack.

    Args:
      entries: (type_num, data) tuples. For whole objects data is the
        object content; for OFS_DELTA it is (index of base entry, delta),
        for REF_DELTA (hex id of base, delta).
      version: Pack version to write
    Returns: The pack, including its trailer
    """
    entries = list(entries)
    out = bytearray(b"PACK" + pack(">LL", version, len(entries)))
    offsets: list[int] = []
    for type_num, data in entries:
        offset = len(out)
        offsets.append(offset)
        if type_num == OFS_DELTA:
            assert isinstance(data, tuple)
            base_index, body = data
            assert isinstance(base_index, int)
            header = pack_object_header(
                type_num, offset - offsets[base_index], len(body)
            )
        elif type_num == REF_DELTA:
            assert isinstance(data, tuple)
            base_sha, body = data
            assert isinstance(base_sha, bytes)
            header = pack_object_header(
                type_num, binascii.unhexlify(base_sha), len(body)
            )
        else:
            assert isinstance(data, bytes)
            body = data
            header = pack_object_header(type_num, None, len(body))
        out += header + zlib.compress(body)
    out += sha1(bytes(out)).digest()
    return bytes(out)


def side_band(data: bytes, channel: int = 1, chunk_size: int = 8192) -> bytes:
    """Frame data as side-band packets on a channel, without the flush."""
    return b"".join(
        pkt_line(bytes([channel]) + data[i : i + chunk_size])
        for i in range(0, len(data), chunk_size)
    )


def shallow_info(
    shallow: Iterable[bytes] = (), unshallow: Iterable[bytes] = ()
) -> bytes:
    """Return a shallow-info section."""
    lines = [pkt_line(b"shallow " + sha + b"\n") for sha in shallow]
    lines.extend(pkt_line(b"unshallow " + sha + b"\n") for sha in unshallow)
    lines.append(pkt_line(None))
    return b"".join(lines)


def pack_response(
    pack_data: bytes,
    acks: Sequence[bytes] = (b"NAK\n",),
    deepen: bool = False,
    shallow: Iterable[bytes] = (),
    unshallow: Iterable[bytes] = (),
    use_side_band: bool = True,
    progress: Sequence[bytes] = (),
) -> bytes:
    """Return the response to a final negotiation round."""
    out = []
    if deepen:
        out.append(shallow_info(shallow, unshallow))
    out.extend(pkt_line(ack) for ack in acks)
    if use_side_band:
        out.extend(side_band(message, channel=2) for message in progress)
        out.append(side_band(pack_data))
        out.append(pkt_line(None))
    else:
        out.append(pack_data)
    return b"".join(out)


def advertisement(
    refs: Sequence[tuple[bytes, bytes]],
    capabilities: Sequence[bytes] = DEFAULT_CAPABILITIES,
    service: Optional[bytes] = b"git-upload-pack",
) -> bytes:
    """Return a smart HTTP ref advertisement."""
    out = []
    if service is not None:
        out.append(pkt_line(b"# service=" + service + b"\n"))
        out.append(pkt_line(None))
    caps = b"\0" + b" ".join(capabilities)
    if not refs:
        out.append(pkt_line(b"0" * 40 + b" capabilities^{}" + caps + b"\n"))
    for i, (name, sha) in enumerate(refs):
        out.append(pkt_line(sha + b" " + name + (caps if i == 0 else b"") + b"\n"))
    out.append(pkt_line(None))
    return b"".join(out)


class FakeResponse:
    """In-memory transport response."""

    def __init__(
        self,
        data: bytes,
        status: int = 200,
        content_type: Optional[str] = RESULT_CONTENT_TYPE,
    ) -> None:
        self.status = status
        self.content_type = content_type
        self._data = BytesIO(data)
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        return self._data.read(size)

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Transport answering from a script of canned responses.

    Each request pops the next scripted response; an exception in the
    script is raised instead. Requests are recorded in ``requests`` as
    (method, url, headers, body) tuples.
    """

    def __init__(
        self, responses: Iterable[Union[FakeResponse, Exception]] = ()
    ) -> None:
        self.responses = list(responses)
        self.requests: list[tuple[str, str, dict[str, str], Optional[bytes]]] = []
        self.served: list[FakeResponse] = []

    def add_advertisement(
        self,
        refs: Sequence[tuple[bytes, bytes]],
        capabilities: Sequence[bytes] = DEFAULT_CAPABILITIES,
    ) -> None:
        self.responses.append(
            FakeResponse(
                advertisement(refs, capabilities),
                content_type=ADVERTISEMENT_CONTENT_TYPE,
            )
        )

    def add_response(self, data: bytes) -> None:
        self.responses.append(FakeResponse(data))

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> FakeResponse:
        self.requests.append((method, url, dict(headers or {}), body))
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        self.served.append(resp)
        return resp

    @property
    def posts(self) -> list[bytes]:
        """Bodies of the POST requests sent so far."""
        return [
            body or b""
            for (method, _url, _headers, body) in self.requests
            if method == "POST"
        ]
