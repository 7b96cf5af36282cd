# request.py -- Composing git-upload-pack requests
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

"""Serialization of negotiation rounds into upload-pack requests."""

from collections.abc import Iterable, Mapping
from typing import Union

from .errors import InvalidRequest, ProtocolViolation
from .negotiation import NegotiationRequest
from .protocol import (
    CAPABILITY_MULTI_ACK,
    CAPABILITY_MULTI_ACK_DETAILED,
    CAPABILITY_NO_PROGRESS,
    CAPABILITY_OFS_DELTA,
    CAPABILITY_SHALLOW,
    CAPABILITY_SIDE_BAND,
    CAPABILITY_SIDE_BAND_64K,
    COMMAND_DEEPEN,
    COMMAND_DONE,
    COMMAND_HAVE,
    COMMAND_SHALLOW,
    COMMAND_WANT,
    capability_agent,
    pkt_line,
)

# Alternatives in order of preference; the first one the server offers wins.
_CAPABILITY_CHOICES = [
    (CAPABILITY_MULTI_ACK_DETAILED, CAPABILITY_MULTI_ACK),
    (CAPABILITY_SIDE_BAND_64K, CAPABILITY_SIDE_BAND),
    (CAPABILITY_OFS_DELTA,),
    (CAPABILITY_SHALLOW,),
]


def negotiate_capabilities(
    server_capabilities: Union[Mapping[bytes, object], Iterable[bytes]],
    progress: bool = True,
) -> list[bytes]:
    """Pick the capabilities to request from those offered by the server.

    Args:
      server_capabilities: Capabilities announced by the server
      progress: Whether the caller wants progress messages
    Returns: List of capability tokens to send with the first want
    """
    offered = set(server_capabilities)
    ret = []
    for choices in _CAPABILITY_CHOICES:
        for capability in choices:
            if capability in offered:
                ret.append(capability)
                break
    if not progress and CAPABILITY_NO_PROGRESS in offered:
        ret.append(CAPABILITY_NO_PROGRESS)
    ret.append(capability_agent())
    return ret


def compose_request(
    request: NegotiationRequest, capabilities: Iterable[bytes]
) -> bytes:
    """Serialize a negotiation round.

    Args:
      request: The round to serialize
      capabilities: Negotiated capability tokens, as returned by
        negotiate_capabilities()
    Returns: The request body

    Raises:
      InvalidRequest: If the request has no wants
      ProtocolViolation: If the request deepens history or carries shallow
        boundaries but the shallow capability was not negotiated
    """
    if not request.wants:
        raise InvalidRequest("a fetch request needs at least one want")
    capabilities = list(capabilities)
    if (request.deepen or request.shallows) and (
        CAPABILITY_SHALLOW not in capabilities
    ):
        raise ProtocolViolation(
            "server does not support shallow capability required for depth"
        )
    lines = []
    wantcmd = COMMAND_WANT + b" " + request.wants[0]
    if capabilities:
        wantcmd += b" " + b" ".join(capabilities)
    lines.append(pkt_line(wantcmd + b"\n"))
    for want in request.wants[1:]:
        lines.append(pkt_line(COMMAND_WANT + b" " + want + b"\n"))
    for sha in request.shallows:
        lines.append(pkt_line(COMMAND_SHALLOW + b" " + sha + b"\n"))
    if request.depth is not None:
        lines.append(
            pkt_line(COMMAND_DEEPEN + b" " + str(request.depth).encode("ascii") + b"\n")
        )
    lines.append(pkt_line(None))
    for have in request.haves:
        lines.append(pkt_line(COMMAND_HAVE + b" " + have + b"\n"))
    if request.done:
        lines.append(pkt_line(COMMAND_DONE + b"\n"))
    else:
        lines.append(pkt_line(None))
    return b"".join(lines)
