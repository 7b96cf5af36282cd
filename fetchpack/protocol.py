# protocol.py -- Shared parts of the git smart protocol
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

"""Generic functions for talking the git smart server protocol."""

from collections.abc import Iterable, Iterator
from typing import Callable, Optional

from .errors import HangupException, ProtocolViolation

ZERO_SHA = b"0" * 40

SIDE_BAND_CHANNEL_DATA = 1
SIDE_BAND_CHANNEL_PROGRESS = 2
SIDE_BAND_CHANNEL_FATAL = 3

CAPABILITY_AGENT = b"agent"
CAPABILITY_DEEPEN_RELATIVE = b"deepen-relative"
CAPABILITY_INCLUDE_TAG = b"include-tag"
CAPABILITY_MULTI_ACK = b"multi_ack"
CAPABILITY_MULTI_ACK_DETAILED = b"multi_ack_detailed"
CAPABILITY_NO_DONE = b"no-done"
CAPABILITY_NO_PROGRESS = b"no-progress"
CAPABILITY_OFS_DELTA = b"ofs-delta"
CAPABILITY_SHALLOW = b"shallow"
CAPABILITY_SIDE_BAND = b"side-band"
CAPABILITY_SIDE_BAND_64K = b"side-band-64k"
CAPABILITY_SYMREF = b"symref"
CAPABILITY_THIN_PACK = b"thin-pack"

CAPABILITIES_REF = b"capabilities^{}"

COMMAND_DEEPEN = b"deepen"
COMMAND_SHALLOW = b"shallow"
COMMAND_UNSHALLOW = b"unshallow"
COMMAND_DONE = b"done"
COMMAND_WANT = b"want"
COMMAND_HAVE = b"have"

# Largest depth git accepts; used to ask for the full history again.
INFINITE_DEPTH = 0x7FFFFFFF

# Largest payload a single pkt-line can carry.
MAX_PKT_PAYLOAD = 65516

_RBUFSIZE = 65536


def agent_string() -> bytes:
    """Return the agent string this client announces."""
    from . import __version__

    return ("fetchpack/" + ".".join(map(str, __version__))).encode("ascii")


def capability_agent() -> bytes:
    """Return the agent capability token."""
    return CAPABILITY_AGENT + b"=" + agent_string()


def parse_capability(capability: bytes) -> tuple[bytes, Optional[bytes]]:
    """Split a capability token into key and optional value."""
    parts = capability.split(b"=", 1)
    if len(parts) == 1:
        return (parts[0], None)
    return (parts[0], parts[1])


def extract_capabilities(text: bytes) -> tuple[bytes, list[bytes]]:
    """Extract a capabilities list from a string, if present.

    Args:
      text: String to extract from
    Returns: Tuple with text with capabilities removed and list of capabilities
    """
    if b"\0" not in text:
        return text, []
    text, capabilities = text.rstrip().split(b"\0")
    return (text, capabilities.strip().split(b" "))


def pkt_line(data: Optional[bytes]) -> bytes:
    """Wrap data in a pkt-line.

    Args:
      data: The data to wrap, as a str or None.
    Returns: The data prefixed with its length in pkt-line format; if data was
        None, returns the flush-pkt ('0000').
    """
    if data is None:
        return b"0000"
    if len(data) > MAX_PKT_PAYLOAD:
        raise ValueError(f"pkt-line payload too long: {len(data)} bytes")
    return ("%04x" % (len(data) + 4)).encode("ascii") + data


def pkt_seq(*seq: Optional[bytes]) -> bytes:
    """Wrap a sequence of data in pkt-lines, followed by a flush-pkt."""
    return b"".join([pkt_line(s) for s in seq]) + pkt_line(None)


class Protocol:
    """Reads pkt-lines from a byte stream.

    The read callback follows the file-like convention: ``read(n)`` returns
    at most ``n`` bytes, and an empty result means end of stream.
    """

    def __init__(
        self,
        read: Callable[[int], bytes],
        report_activity: Optional[Callable[[int, str], None]] = None,
    ) -> None:
        self.read = read
        self.report_activity = report_activity
        self._readahead: Optional[bytes] = None
        self._pending: list[Optional[bytes]] = []
        self._eof = False

    def read_exact(self, size: int) -> bytes:
        """Read exactly size bytes, or fewer if the stream ends."""
        chunks = []
        remaining = size
        while remaining > 0:
            data = self.read(remaining)
            if not data:
                self._eof = True
                break
            chunks.append(data)
            remaining -= len(data)
        return b"".join(chunks)

    def eof(self) -> bool:
        """Check whether the stream has no more data.

        Note that this peeks at the stream and may block until data is
        available.
        """
        if self._pending or self._readahead:
            return False
        if self._eof:
            return True
        data = self.read(4)
        if not data:
            self._eof = True
            return True
        self._readahead = data
        return False

    def read_raw(self, size: int) -> bytes:
        """Read up to size bytes of unframed data following the pkt-lines."""
        if self._readahead:
            data, self._readahead = self._readahead[:size], self._readahead[size:]
            return data
        return self.read(size)

    def _read_framed(self, size: int) -> bytes:
        if self._readahead:
            head, self._readahead = self._readahead[:size], self._readahead[size:]
            return head + self.read_exact(size - len(head))
        return self.read_exact(size)

    def read_pkt_line(self) -> Optional[bytes]:
        """Read a pkt-line from the remote git process.

        Returns: The next payload from the stream, or None for a flush-pkt.

        Raises:
          HangupException: If the stream ends inside a pkt-line
          ProtocolViolation: If the length header is not valid
        """
        if self._pending:
            return self._pending.pop()
        sizestr = self._read_framed(4)
        if len(sizestr) < 4:
            raise HangupException()
        try:
            size = int(sizestr, 16)
        except ValueError as exc:
            raise ProtocolViolation(f"invalid pkt-line length {sizestr!r}") from exc
        if size == 0:
            if self.report_activity:
                self.report_activity(4, "read")
            return None
        if size < 4:
            raise ProtocolViolation(f"invalid pkt-line length {size}")
        if self.report_activity:
            self.report_activity(size, "read")
        pkt_contents = self._read_framed(size - 4)
        if len(pkt_contents) + 4 != size:
            raise HangupException()
        return pkt_contents

    def unread_pkt_line(self, data: Optional[bytes]) -> None:
        """Unread a single line of data into the readahead buffer.

        Args:
          data: The data to unread, without the length prefix.

        Raises:
          ValueError: If more than one pkt-line is unread.
        """
        if self._pending:
            raise ValueError("Attempted to unread multiple pkt-lines.")
        self._pending.append(data)

    def read_pkt_seq(self) -> Iterator[bytes]:
        """Read a sequence of pkt-lines from the remote git process.

        Returns: Yields each line of data up to but not including the next
            flush-pkt.
        """
        pkt = self.read_pkt_line()
        while pkt:
            yield pkt
            pkt = self.read_pkt_line()


def read_shallow_updates(
    pkt_seq: Iterable[bytes],
) -> tuple[list[bytes], list[bytes]]:
    """Read a shallow-info section.

    Returns: Tuple of (new shallow boundaries, new unshallow boundaries)
    """
    new_shallow: list[bytes] = []
    new_unshallow: list[bytes] = []
    for pkt in pkt_seq:
        if pkt == b"shallow-info\n":
            continue
        try:
            cmd, sha = pkt.split(b" ", 1)
        except ValueError as exc:
            raise ProtocolViolation(f"unknown command {pkt!r}") from exc
        if cmd == COMMAND_SHALLOW:
            new_shallow.append(sha.strip())
        elif cmd == COMMAND_UNSHALLOW:
            new_unshallow.append(sha.strip())
        else:
            raise ProtocolViolation(f"unknown command {pkt!r}")
    return (new_shallow, new_unshallow)


def check_remote_error(pkt: bytes) -> None:
    """Raise ProtocolViolation if pkt is an ``ERR`` line."""
    if pkt.startswith(b"ERR "):
        raise ProtocolViolation(
            "remote error: " + pkt[4:].rstrip(b"\n").decode("utf-8", "replace")
        )
