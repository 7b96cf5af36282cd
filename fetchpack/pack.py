# pack.py -- Streaming ingestion of fetched packs
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

"""Streaming ingestion of the response to a final upload-pack request.

The response to a ``done`` request consists of:

 * the shallow-info section, if the request deepened history
 * the closing acknowledgements (``ACK``/``NAK``)
 * the pack itself, optionally multiplexed over side-band channels

A pack starts with a 12 byte header (``PACK``, version, number of objects),
followed by the objects and a SHA-1 trailer over everything before it. Each
object has a variable length type/size header followed by zlib-compressed
data; delta objects additionally name their base, either by offset in the
pack (ofs-delta) or by object id (ref-delta).
"""

import binascii
import logging
import zlib
from collections.abc import Iterable, Iterator
from hashlib import sha1
from struct import unpack_from
from typing import Callable, NamedTuple, Optional

from .errors import (
    HangupException,
    IngestNotComplete,
    ProtocolViolation,
    TruncatedPack,
)
from .protocol import (
    _RBUFSIZE,
    CAPABILITY_SIDE_BAND,
    CAPABILITY_SIDE_BAND_64K,
    SIDE_BAND_CHANNEL_DATA,
    SIDE_BAND_CHANNEL_FATAL,
    SIDE_BAND_CHANNEL_PROGRESS,
    Protocol,
    check_remote_error,
    read_shallow_updates,
)

ObjectID = bytes

OFS_DELTA = 6
REF_DELTA = 7

DELTA_TYPES = (OFS_DELTA, REF_DELTA)

TYPE_NAMES = {
    1: b"commit",
    2: b"tree",
    3: b"blob",
    4: b"tag",
}
TYPE_NUMBERS = {name: num for num, name in TYPE_NAMES.items()}

logger = logging.getLogger(__name__)


class ObjectRecord(NamedTuple):
    """An object read from a pack.

    The body is the object in loose form: ``<type> <size>\\0<content>``.
    """

    sha: ObjectID
    body: bytes


def object_header(type_num: int, length: int) -> bytes:
    """Return an object header for the given numeric type and text length."""
    return TYPE_NAMES[type_num] + b" " + str(length).encode("ascii") + b"\0"


def obj_sha(type_num: int, content: bytes) -> ObjectID:
    """Compute the hex object id for a numeric type and content."""
    sha = sha1()
    sha.update(object_header(type_num, len(content)))
    sha.update(content)
    return sha.hexdigest().encode("ascii")


def parse_raw_object(body: bytes) -> tuple[int, bytes]:
    """Split a loose-form object into its numeric type and content.

    Raises:
      ValueError: If the body does not start with a valid object header
    """
    header, sep, content = body.partition(b"\0")
    if not sep:
        raise ValueError("object header is not terminated")
    type_name, _, size = header.partition(b" ")
    if type_name not in TYPE_NUMBERS or not size.isdigit():
        raise ValueError(f"invalid object header {header!r}")
    if int(size) != len(content):
        raise ValueError(f"object size mismatch: {int(size)} vs {len(content)}")
    return TYPE_NUMBERS[type_name], content


def apply_delta(src_buf: bytes, delta: bytes) -> bytes:
    """Based on the similar function in git's patch-delta.c.

    Args:
      src_buf: Source buffer
      delta: Delta instructions
    Raises:
      ProtocolViolation: If the delta does not apply to src_buf
    """
    out = []
    index = 0
    delta_length = len(delta)

    def get_delta_header_size(delta: bytes, index: int) -> tuple[int, int]:
        size = 0
        i = 0
        while index < delta_length:
            cmd = delta[index]
            index += 1
            size |= (cmd & ~0x80) << i
            i += 7
            if not cmd & 0x80:
                break
        return size, index

    src_size, index = get_delta_header_size(delta, index)
    dest_size, index = get_delta_header_size(delta, index)
    if src_size != len(src_buf):
        raise ProtocolViolation(
            f"Unexpected source buffer size: {src_size} vs {len(src_buf)}"
        )
    while index < delta_length:
        cmd = delta[index]
        index += 1
        if cmd & 0x80:
            cp_off = 0
            for i in range(4):
                if cmd & (1 << i):
                    cp_off |= delta[index] << (i * 8)
                    index += 1
            cp_size = 0
            for i in range(3):
                if cmd & (1 << (4 + i)):
                    cp_size |= delta[index] << (i * 8)
                    index += 1
            if cp_size == 0:
                cp_size = 0x10000
            if cp_off + cp_size > src_size or cp_size > dest_size:
                raise ProtocolViolation("delta copy out of range")
            out.append(src_buf[cp_off : cp_off + cp_size])
        elif cmd != 0:
            out.append(delta[index : index + cmd])
            index += cmd
        else:
            raise ProtocolViolation("Invalid delta opcode 0")

    if index != delta_length:
        raise ProtocolViolation(f"delta not empty: {delta[index:]!r}")
    ret = b"".join(out)
    if dest_size != len(ret):
        raise ProtocolViolation("delta destination size incorrect")
    return ret


class _PackBuffer:
    """Reads pack bytes from an iterator of chunks.

    Consumed bytes are fed into the running pack checksum; data is pulled
    from the chunk iterator only when the buffer runs dry.
    """

    def __init__(self, chunks: Iterator[bytes]) -> None:
        self._chunks = chunks
        self._buf = bytearray()
        self.offset = 0
        self.sha = sha1()

    def _fill(self, size: int) -> None:
        while len(self._buf) < size:
            chunk = next(self._chunks, None)
            if chunk is None:
                raise TruncatedPack(
                    f"pack data ended at offset {self.offset + len(self._buf)}"
                )
            self._buf += chunk

    def _consume(self, size: int, update_sha: bool = True) -> bytes:
        data = bytes(self._buf[:size])
        del self._buf[:size]
        self.offset += size
        if update_sha:
            self.sha.update(data)
        return data

    def read(self, size: int, update_sha: bool = True) -> bytes:
        """Read exactly size bytes."""
        self._fill(size)
        return self._consume(size, update_sha)

    def inflate(self, expected_size: int) -> bytes:
        """Read one zlib stream and return its decompressed contents."""
        decomp = zlib.decompressobj()
        out = []
        while not decomp.eof:
            self._fill(1)
            data = bytes(self._buf)
            try:
                out.append(decomp.decompress(data))
            except zlib.error as exc:
                raise ProtocolViolation(
                    f"corrupt object data at offset {self.offset}: {exc}"
                ) from exc
            self._consume(len(data) - len(decomp.unused_data))
        ret = b"".join(out)
        if len(ret) != expected_size:
            raise ProtocolViolation(
                f"decompressed size {len(ret)} does not match expected {expected_size}"
            )
        return ret

    def at_end(self) -> bool:
        """Check that no data is left, draining the chunk iterator."""
        if self._buf:
            return False
        for chunk in self._chunks:
            if chunk:
                return False
        return True


def read_pack_header(buf: _PackBuffer) -> tuple[int, int]:
    """Read the header of a pack.

    Returns: Tuple of (pack version, number of objects)
    """
    header = buf.read(12)
    if header[:4] != b"PACK":
        raise ProtocolViolation(f"Invalid pack header {header!r}")
    (version,) = unpack_from(b">L", header, 4)
    if version not in (2, 3):
        raise ProtocolViolation(f"Unsupported pack version {version}")
    (num_objects,) = unpack_from(b">L", header, 8)
    return (version, num_objects)


def _take_msb_bytes(buf: _PackBuffer) -> list[int]:
    ret: list[int] = []
    while len(ret) == 0 or ret[-1] & 0x80:
        ret.append(buf.read(1)[0])
    return ret


def _read_side_band_data(
    pkt_seq: Iterable[bytes], progress: Optional[Callable[[bytes], None]]
) -> Iterator[bytes]:
    """Demultiplex side-band packets, yielding pack data."""
    for pkt in pkt_seq:
        channel = pkt[0]
        data = pkt[1:]
        if channel == SIDE_BAND_CHANNEL_DATA:
            yield data
        elif channel == SIDE_BAND_CHANNEL_PROGRESS:
            if progress is not None:
                progress(data)
        elif channel == SIDE_BAND_CHANNEL_FATAL:
            raise ProtocolViolation(
                "remote error: " + data.rstrip(b"\n").decode("utf-8", "replace")
            )
        else:
            raise ProtocolViolation(f"Invalid sideband channel {channel}")


class PackIngestor:
    """Single-pass reader for the response to a final negotiation round.

    Iterating yields ObjectRecords one at a time; nothing is read from the
    stream before the next record is requested. Delta objects are resolved
    against their base, which is read back through ``get_raw``; callers are
    expected to store each record before asking for the next one.

    The shallow, unshallow and object_count attributes become available once
    the iteration has run to completion.
    """

    def __init__(
        self,
        read: Callable[[int], bytes],
        capabilities: Iterable[bytes],
        deepen: bool = False,
        progress: Optional[Callable[[bytes], None]] = None,
        get_raw: Optional[Callable[[ObjectID], Optional[bytes]]] = None,
    ) -> None:
        """Create a new ingestor.

        Args:
          read: Read function of the response body
          capabilities: Negotiated capabilities
          deepen: Whether the response starts with shallow-info
          progress: Optional callback for progress messages from the server
          get_raw: Function to look up a stored object in loose form
        """
        self._proto = Protocol(read)
        capabilities = set(capabilities)
        self._side_band = (
            CAPABILITY_SIDE_BAND_64K in capabilities
            or CAPABILITY_SIDE_BAND in capabilities
        )
        self._deepen = deepen
        self._progress = progress
        self._get_raw = get_raw
        self._started = False
        self._complete = False
        self._shallow: list[ObjectID] = []
        self._unshallow: list[ObjectID] = []
        self._object_count = 0
        self._offsets: dict[int, ObjectID] = {}

    def _check_complete(self) -> None:
        if not self._complete:
            raise IngestNotComplete("the pack has not been fully consumed yet")

    @property
    def shallow(self) -> list[ObjectID]:
        """New shallow boundaries reported by the server."""
        self._check_complete()
        return list(self._shallow)

    @property
    def unshallow(self) -> list[ObjectID]:
        """Boundaries the server reported as no longer shallow."""
        self._check_complete()
        return list(self._unshallow)

    @property
    def object_count(self) -> int:
        """Number of objects read from the pack."""
        self._check_complete()
        return self._object_count

    def __iter__(self) -> Iterator[ObjectRecord]:
        if self._started:
            raise ValueError("pack stream can only be consumed once")
        self._started = True
        return self._ingest()

    def _ingest(self) -> Iterator[ObjectRecord]:
        try:
            if self._deepen:
                self._shallow, self._unshallow = read_shallow_updates(
                    self._proto.read_pkt_seq()
                )
                logger.debug(
                    "Server reported %d shallow, %d unshallow",
                    len(self._shallow),
                    len(self._unshallow),
                )
            self._read_acknowledgements()
            buf = _PackBuffer(self._pack_chunks())
            yield from self._read_objects(buf)
        except HangupException as exc:
            raise TruncatedPack(str(exc)) from exc
        self._complete = True

    def _read_acknowledgements(self) -> None:
        pkt = self._proto.read_pkt_line()
        while pkt:
            check_remote_error(pkt)
            parts = pkt.rstrip(b"\n").split(b" ")
            if parts[0] == b"NAK":
                break
            if parts[0] != b"ACK" or len(parts) < 2:
                raise ProtocolViolation(f"unexpected negotiation response {pkt!r}")
            if len(parts) < 3 or parts[2] not in (b"ready", b"continue", b"common"):
                break
            pkt = self._proto.read_pkt_line()

    def _pack_chunks(self) -> Iterator[bytes]:
        if self._side_band:
            yield from _read_side_band_data(self._proto.read_pkt_seq(), self._progress)
        else:
            while True:
                data = self._proto.read_raw(_RBUFSIZE)
                if not data:
                    break
                yield data

    def _load_base(self, sha: ObjectID) -> tuple[int, bytes]:
        raw = self._get_raw(sha) if self._get_raw is not None else None
        if raw is None:
            raise ProtocolViolation(f"delta base {sha!r} is not available")
        try:
            return parse_raw_object(raw)
        except ValueError as exc:
            raise ProtocolViolation(f"delta base {sha!r} is corrupt: {exc}") from exc

    def _read_objects(self, buf: _PackBuffer) -> Iterator[ObjectRecord]:
        _version, num_objects = read_pack_header(buf)
        logger.debug("Receiving pack with %d objects", num_objects)
        for _ in range(num_objects):
            offset = buf.offset
            raw = _take_msb_bytes(buf)
            type_num = (raw[0] >> 4) & 0x07
            size = raw[0] & 0x0F
            for i, byte in enumerate(raw[1:]):
                size += (byte & 0x7F) << ((i * 7) + 4)

            base: Optional[ObjectID] = None
            if type_num == OFS_DELTA:
                raw = _take_msb_bytes(buf)
                delta_base_offset = raw[0] & 0x7F
                for byte in raw[1:]:
                    delta_base_offset += 1
                    delta_base_offset <<= 7
                    delta_base_offset += byte & 0x7F
                try:
                    base = self._offsets[offset - delta_base_offset]
                except KeyError as exc:
                    raise ProtocolViolation(
                        f"ofs-delta at {offset} refers to unknown offset"
                    ) from exc
            elif type_num == REF_DELTA:
                base = binascii.hexlify(buf.read(20))
            elif type_num not in TYPE_NAMES:
                raise ProtocolViolation(f"unknown object type {type_num} at {offset}")

            content = buf.inflate(size)
            if base is not None:
                type_num, base_content = self._load_base(base)
                try:
                    content = apply_delta(base_content, content)
                except IndexError as exc:
                    raise ProtocolViolation(f"truncated delta at {offset}") from exc
            sha = obj_sha(type_num, content)
            self._offsets[offset] = sha
            self._object_count += 1
            yield ObjectRecord(sha, object_header(type_num, len(content)) + content)

        expected = buf.sha.digest()
        trailer = buf.read(20, update_sha=False)
        if trailer != expected:
            raise ProtocolViolation(
                "pack checksum mismatch: expected {}, got {}".format(
                    binascii.hexlify(trailer).decode("ascii"),
                    binascii.hexlify(expected).decode("ascii"),
                )
            )
        if not buf.at_end():
            raise ProtocolViolation("unexpected data after pack trailer")
