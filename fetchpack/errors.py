# errors.py -- Exception classes for fetchpack
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

"""fetchpack-related exception classes.

Every error raised by a fetch derives from :class:`FetchError`, so callers
that only care about "did the fetch work" can catch that one class.
"""

from collections.abc import Sequence
from typing import Optional


class FetchError(Exception):
    """Base class for all fetch failures."""

    def __eq__(self, other: object) -> bool:
        """Check equality between errors of the same class and arguments."""
        return type(self) is type(other) and self.args == other.args  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class ProtocolViolation(FetchError):
    """The remote sent something that does not follow the Git protocol."""


class HangupException(ProtocolViolation):
    """The remote closed the stream in the middle of a pkt-line."""

    def __init__(self, stderr_lines: Optional[Sequence[bytes]] = None) -> None:
        """Initialize a HangupException.

        Args:
            stderr_lines: Optional lines of error output sent by the remote.
        """
        if stderr_lines:
            super().__init__(
                "\n".join(
                    line.decode("utf-8", "surrogateescape") for line in stderr_lines
                )
            )
        else:
            super().__init__("The remote server unexpectedly closed the connection.")
        self.stderr_lines = stderr_lines


class TruncatedPack(FetchError):
    """The pack response ended before its terminator was read."""


class InvalidRequest(FetchError):
    """The caller asked for something that can not be sent to the remote."""


class NetworkFailure(FetchError):
    """The transport failed to complete a round-trip."""


class NotGitRepository(NetworkFailure):
    """The remote URL does not point at a Git repository."""


class HTTPUnauthorized(NetworkFailure):
    """Raised when authentication fails."""

    def __init__(self, www_authenticate: Optional[str], url: str) -> None:
        """Initialize HTTPUnauthorized exception.

        Args:
          www_authenticate: WWW-Authenticate header value
          url: URL that requires authentication
        """
        super().__init__("No valid credentials provided")
        self.www_authenticate = www_authenticate
        self.url = url


class IngestNotComplete(FetchError):
    """A result of pack ingestion was requested before the pack was consumed."""
