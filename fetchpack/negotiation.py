# negotiation.py -- want/have negotiation for git-upload-pack
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

"""Want/have negotiation.

Over smart HTTP every round is a separate, stateless request: each one
repeats the wants, the shallow state and the haves the server already
acknowledged as common, followed by a window of new haves. The engine
below decides what goes into each round; the caller feeds the server's
answers back through :meth:`NegotiationEngine.ack`,
:meth:`NegotiationEngine.nak` and :meth:`NegotiationEngine.update_shallow`
before asking for the next request.
"""

import logging
from collections import deque
from collections.abc import Iterable, Iterator
from typing import Callable, Optional

from .errors import InvalidRequest, ProtocolViolation
from .protocol import (
    INFINITE_DEPTH,
    Protocol,
    check_remote_error,
    read_shallow_updates,
)

ObjectID = bytes

INITIAL_WINDOW = 16
MAX_WINDOW = 256
MAX_ROUNDS = 8

logger = logging.getLogger(__name__)


def check_depth(depth: Optional[int], unshallow: bool = False) -> None:
    """Check that a depth and unshallow request can be sent.

    Raises:
      InvalidRequest: If depth is not a positive integer, or is combined
        with unshallow
    """
    if depth is not None and (
        isinstance(depth, bool) or not isinstance(depth, int) or depth <= 0
    ):
        raise InvalidRequest(f"depth must be a positive integer, not {depth!r}")
    if unshallow and depth is not None:
        raise InvalidRequest("unshallow can not be combined with depth")


class NegotiationRequest:
    """One round of the want/have negotiation.

    Attributes:
      wants: Objects to fetch
      haves: Objects the client already has
      shallows: Local shallow boundaries
      depth: Requested history depth, or None
      done: Whether this is the final round, answered with a pack
    """

    __slots__ = ("done", "depth", "haves", "shallows", "wants")

    def __init__(
        self,
        wants: list[ObjectID],
        haves: Optional[list[ObjectID]] = None,
        shallows: Optional[list[ObjectID]] = None,
        depth: Optional[int] = None,
        done: bool = False,
    ) -> None:
        self.wants = wants
        self.haves = haves or []
        self.shallows = shallows or []
        self.depth = depth
        self.done = done

    @property
    def deepen(self) -> bool:
        """Whether the server will answer with a shallow-info section.

        upload-pack only sends shallow-info in response to a deepen line;
        shallow lines on their own do not trigger it.
        """
        return self.depth is not None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NegotiationRequest):
            return False
        return all(getattr(self, s) == getattr(other, s) for s in self.__slots__)

    def __repr__(self) -> str:
        data = [f"{s}={getattr(self, s)!r}" for s in self.__slots__]
        return "{}({})".format(self.__class__.__name__, ", ".join(data))


class _HaveWalker:
    """Walks local history from the tips, newest first."""

    def __init__(
        self,
        heads: Iterable[ObjectID],
        get_parents: Optional[Callable[[ObjectID], list[ObjectID]]],
        shallow: set[ObjectID],
    ) -> None:
        self.get_parents = get_parents
        self.shallow = shallow
        self.common: set[ObjectID] = set()
        self.parents: dict[ObjectID, list[ObjectID]] = {}
        self._queue: deque[ObjectID] = deque()
        self._seen: set[ObjectID] = set()
        for head in heads:
            self._push(head)

    def _push(self, sha: ObjectID) -> None:
        if sha not in self._seen:
            self._seen.add(sha)
            self._queue.append(sha)

    def mark_common(self, sha: ObjectID) -> None:
        """Mark sha and every ancestor walked so far as common."""
        todo = [sha]
        while todo:
            sha = todo.pop()
            if sha in self.common:
                continue
            self.common.add(sha)
            todo.extend(self.parents.get(sha, []))

    def next(self) -> Optional[ObjectID]:
        while self._queue:
            sha = self._queue.popleft()
            if sha in self.common:
                continue
            parents: list[ObjectID] = []
            if self.get_parents is not None and sha not in self.shallow:
                try:
                    parents = self.get_parents(sha)
                except KeyError:
                    parents = []
            self.parents[sha] = parents
            for parent in parents:
                self._push(parent)
            return sha
        return None

    def take(self, count: int) -> list[ObjectID]:
        ret = []
        while len(ret) < count:
            sha = self.next()
            if sha is None:
                break
            ret.append(sha)
        return ret

    def exhausted(self) -> bool:
        return all(sha in self.common for sha in self._queue)


class NegotiationEngine:
    """Produces the rounds of a fetch negotiation.

    Iterating over the engine yields NegotiationRequest objects. The last
    one yielded has done set; the server answers it with the pack. No
    request is yielded at all if there is nothing to fetch.
    """

    def __init__(
        self,
        remote_refs: Iterable[ObjectID],
        local_refs: Iterable[ObjectID],
        wanted_refs: Iterable[ObjectID],
        shallows: Iterable[ObjectID] = (),
        depth: Optional[int] = None,
        unshallow: bool = False,
        get_parents: Optional[Callable[[ObjectID], list[ObjectID]]] = None,
        has_object: Optional[Callable[[ObjectID], bool]] = None,
        window: int = INITIAL_WINDOW,
        max_rounds: int = MAX_ROUNDS,
    ) -> None:
        """Create a new engine.

        Args:
          remote_refs: Object ids advertised by the remote
          local_refs: Object ids of the local ref tips
          wanted_refs: Object ids of the remote refs selected for fetching
          shallows: Current local shallow boundaries
          depth: Requested history depth, or None for full history
          unshallow: Ask the server for the complete history behind the
            current shallow boundaries
          get_parents: Function returning the parents of a local commit;
            without it only the local tips are offered as haves
          has_object: Function checking whether an object is stored locally;
            wanted objects it reports as present are not requested
          window: Number of new haves in the first round
          max_rounds: Number of non-final rounds before giving up on
            finding common history
        """
        check_depth(depth, unshallow)
        remote = set(remote_refs)
        local_refs = list(dict.fromkeys(local_refs))
        local = set(local_refs)
        self.shallows = list(dict.fromkeys(shallows))
        if unshallow:
            depth = INFINITE_DEPTH
        self.depth = depth
        self.deepen = depth is not None
        wants = []
        for sha in dict.fromkeys(wanted_refs):
            if sha not in remote:
                raise InvalidRequest(
                    f"requested want {sha!r} not in server provided refs"
                )
            if self.deepen:
                wants.append(sha)
            elif sha in local or (has_object is not None and has_object(sha)):
                logger.debug("Skipping want %s, already present", sha)
            else:
                wants.append(sha)
        self.wants = wants
        self.window = window
        self.max_rounds = max_rounds
        self.common: list[ObjectID] = []
        self.unshallowed: list[ObjectID] = []
        self.ready = False
        self._walker = _HaveWalker(local_refs, get_parents, set(self.shallows))
        self._sent: list[ObjectID] = []
        self._started = False

    def ack(self, sha: ObjectID, status: Optional[bytes] = None) -> None:
        """Record that the server has sha (and therefore its ancestors)."""
        if sha not in self.common:
            self.common.append(sha)
        self._walker.mark_common(sha)
        if status == b"ready":
            self.ready = True

    def nak(self) -> None:
        """Nothing in common was found in the last round."""

    def update_shallow(
        self, new_shallow: Iterable[ObjectID], new_unshallow: Iterable[ObjectID]
    ) -> None:
        """Apply shallow-info reported by the server for the next rounds."""
        new_unshallow = list(new_unshallow)
        for sha in new_unshallow:
            if sha not in self.unshallowed:
                self.unshallowed.append(sha)
        unshallow = set(new_unshallow)
        self.shallows = [sha for sha in self.shallows if sha not in unshallow]
        self._walker.shallow.difference_update(unshallow)
        self._walker.shallow.update(new_shallow)

    def _request(self, haves: list[ObjectID], done: bool) -> NegotiationRequest:
        return NegotiationRequest(
            list(self.wants),
            haves=haves,
            shallows=list(self.shallows),
            depth=self.depth,
            done=done,
        )

    def __iter__(self) -> Iterator[NegotiationRequest]:
        if self._started:
            raise ValueError("negotiation has already been started")
        self._started = True
        return self._rounds()

    def _rounds(self) -> Iterator[NegotiationRequest]:
        if not self.wants:
            logger.debug("Nothing to fetch, skipping negotiation")
            return
        window = self.window
        rounds = 0
        while True:
            batch = self._walker.take(window)
            self._sent.extend(batch)
            if self._walker.exhausted():
                logger.debug("Sending final round with %d haves", len(self._sent))
                yield self._request(list(self._sent), done=True)
                return
            if rounds >= self.max_rounds:
                logger.debug("No common history after %d rounds, giving up", rounds)
                yield self._request(list(self._sent), done=True)
                return
            rounds += 1
            new = [sha for sha in batch if sha not in self._walker.common]
            logger.debug(
                "Negotiation round %d: %d common, %d new haves",
                rounds,
                len(self.common),
                len(new),
            )
            yield self._request(self.common + new, done=False)
            if self.ready:
                yield self._request(list(self.common), done=True)
                return
            window = min(window * 2, MAX_WINDOW)


def read_round_response(
    proto: Protocol, request: NegotiationRequest, engine: NegotiationEngine
) -> None:
    """Read the answer to an intermediate negotiation round.

    The server answers with its shallow-info (if the request deepens)
    followed by acknowledgements up to a NAK or the end of the response.

    Raises:
      ProtocolViolation: If the answer is not understood
    """
    if request.deepen:
        new_shallow, new_unshallow = read_shallow_updates(proto.read_pkt_seq())
        engine.update_shallow(new_shallow, new_unshallow)
    while not proto.eof():
        pkt = proto.read_pkt_line()
        if pkt is None:
            continue
        check_remote_error(pkt)
        parts = pkt.rstrip(b"\n").split(b" ")
        if parts[0] == b"NAK":
            engine.nak()
            break
        if parts[0] != b"ACK" or len(parts) < 2:
            raise ProtocolViolation(f"unexpected negotiation response {pkt!r}")
        status = parts[2] if len(parts) > 2 else None
        if status not in (None, b"continue", b"common", b"ready"):
            raise ProtocolViolation(f"unexpected acknowledgement {pkt!r}")
        engine.ack(parts[1], status)
        if status is None:
            # Single-ack servers stop at the first common commit.
            engine.ready = True
            break
