# test_client.py -- Tests for the fetch client
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

"""Tests for fetchpack.client."""

import shutil
import tempfile
from collections.abc import Iterable
from typing import Any
from unittest.mock import patch

from fetchpack.client import FetchResult, fetch, ls_remote
from fetchpack.errors import (
    InvalidRequest,
    NotGitRepository,
    ProtocolViolation,
    TruncatedPack,
)
from fetchpack.negotiation import NegotiationRequest
from fetchpack.pack import parse_raw_object
from fetchpack.protocol import capability_agent, pkt_line
from fetchpack.refs import Capabilities
from fetchpack.repo import SHALLOW_KEY, DiskRepo, MemoryRepo, parse_shallow
from fetchpack.request import compose_request, negotiate_capabilities

from . import TestCase
from .utils import (
    ADVERTISEMENT_CONTENT_TYPE,
    DEFAULT_CAPABILITIES,
    FakeResponse,
    FakeTransport,
    build_pack,
    make_commit,
    make_linear_history,
    pack_response,
    shallow_info,
)

URL = "https://git.example.com/repo.git"
TRACKING_REF = b"refs/remotes/origin/main"


def pack_objects(objects: Iterable[tuple[bytes, bytes]]) -> bytes:
    """Build a pack holding the given loose-form objects."""
    return build_pack([parse_raw_object(body) for (_sha, body) in objects])


def negotiated(progress: bool = False) -> list[bytes]:
    return negotiate_capabilities(Capabilities(DEFAULT_CAPABILITIES), progress)


class FetchResultTests(TestCase):
    def test_attributes(self) -> None:
        result = FetchResult(TRACKING_REF, b"1" * 40, b"2" * 40)
        self.assertEqual(TRACKING_REF, result.ref)
        self.assertEqual(b"1" * 40, result.old_sha)
        self.assertEqual(b"1" * 40, result.from_)
        self.assertEqual(b"2" * 40, result.new_sha)
        self.assertEqual(b"2" * 40, result.to)

    def test_as_dict(self) -> None:
        self.assertEqual(
            {"ref": TRACKING_REF, "from": None, "to": b"2" * 40},
            FetchResult(TRACKING_REF, None, b"2" * 40).as_dict(),
        )

    def test_eq(self) -> None:
        self.assertEqual(
            FetchResult(TRACKING_REF, None, b"2" * 40),
            FetchResult(TRACKING_REF, None, b"2" * 40),
        )
        self.assertNotEqual(
            FetchResult(TRACKING_REF, None, b"2" * 40),
            FetchResult(TRACKING_REF, b"2" * 40, b"2" * 40),
        )

    def test_repr(self) -> None:
        self.assertEqual(
            "FetchResult(b'refs/remotes/origin/main', None, b'22')",
            repr(FetchResult(TRACKING_REF, None, b"22")),
        )


class FetchTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.repo = MemoryRepo()
        self.transport = FakeTransport()
        self.history = make_linear_history(3)
        self.a, self.b, self.c = (sha for sha, _ in self.history)

    def store(self, objects: Iterable[tuple[bytes, bytes]]) -> None:
        for sha, body in objects:
            self.repo.save_raw(sha, body)

    def fetch(self, **kwargs: Any) -> list[FetchResult]:
        return fetch(URL, self.repo, transport=self.transport, **kwargs)

    def test_clone(self) -> None:
        self.transport.add_advertisement(
            [(b"HEAD", self.c), (b"refs/heads/main", self.c)]
        )
        self.transport.add_response(pack_response(pack_objects(self.history)))
        results = self.fetch()
        self.assertEqual([FetchResult(TRACKING_REF, None, self.c)], results)
        self.assertEqual({TRACKING_REF: self.c}, self.repo.refs)
        self.assertEqual(dict(self.history), self.repo.objects)
        self.assertIsNone(self.repo.load_metadata(SHALLOW_KEY))

    def test_requests(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(pack_response(pack_objects(self.history)))
        self.fetch()
        (get, post) = self.transport.requests
        self.assertEqual(
            ("GET", URL + "/info/refs?service=git-upload-pack"), get[:2]
        )
        self.assertEqual(("POST", URL + "/git-upload-pack"), post[:2])
        self.assertEqual(
            "application/x-git-upload-pack-request", post[2]["Content-Type"]
        )
        self.assertEqual("application/x-git-upload-pack-response", post[2]["Accept"])
        self.assertEqual(
            compose_request(NegotiationRequest([self.c], done=True), negotiated()),
            post[3],
        )
        self.assertTrue(all(resp.closed for resp in self.transport.served))

    def test_trailing_slash(self) -> None:
        self.transport.add_advertisement([])
        fetch(URL + "/", self.repo, transport=self.transport)
        self.assertEqual(
            URL + "/info/refs?service=git-upload-pack", self.transport.requests[0][1]
        )

    def test_first_want_carries_capabilities(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(pack_response(pack_objects(self.history)))
        self.fetch()
        self.assertTrue(
            self.transport.posts[0].startswith(
                pkt_line(
                    b"want "
                    + self.c
                    + b" multi_ack_detailed side-band-64k ofs-delta shallow"
                    + b" no-progress "
                    + capability_agent()
                    + b"\n"
                )
            )
        )

    def test_fast_forward(self) -> None:
        self.store(self.history[:1])
        self.repo.set_ref(TRACKING_REF, self.a)
        self.transport.add_advertisement([(b"refs/heads/main", self.b)])
        self.transport.add_response(pack_response(pack_objects(self.history[1:2])))
        results = self.fetch()
        self.assertEqual([FetchResult(TRACKING_REF, self.a, self.b)], results)
        self.assertEqual(self.b, self.repo.get_ref(TRACKING_REF))
        self.assertEqual(
            [
                compose_request(
                    NegotiationRequest([self.b], haves=[self.a], done=True),
                    negotiated(),
                )
            ],
            self.transport.posts,
        )

    def test_up_to_date(self) -> None:
        self.store(self.history)
        self.repo.set_ref(TRACKING_REF, self.c)
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        results = self.fetch()
        self.assertEqual([FetchResult(TRACKING_REF, self.c, self.c)], results)
        self.assertEqual([], self.transport.posts)
        self.assertEqual(self.c, self.repo.get_ref(TRACKING_REF))

    def test_idempotent(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(pack_response(pack_objects(self.history)))
        first = self.fetch()
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        second = self.fetch()
        self.assertEqual(
            [r.new_sha for r in first], [r.old_sha for r in second]
        )
        self.assertEqual(1, len(self.transport.posts))

    def test_wanted_object_already_stored(self) -> None:
        self.store(self.history)
        self.repo.set_ref(TRACKING_REF, self.c)
        self.transport.add_advertisement([(b"refs/heads/main", self.b)])
        results = self.fetch()
        self.assertEqual([FetchResult(TRACKING_REF, self.c, self.b)], results)
        self.assertEqual([], self.transport.posts)
        self.assertEqual(self.b, self.repo.get_ref(TRACKING_REF))

    def test_fetch_into_shallow_repository(self) -> None:
        self.store(self.history[2:])
        self.repo.set_ref(TRACKING_REF, self.c)
        self.repo.save_metadata(SHALLOW_KEY, self.c + b"\n")
        new = make_commit([self.c], message=b"new")
        self.transport.add_advertisement([(b"refs/heads/main", new[0])])
        self.transport.add_response(pack_response(pack_objects([new])))
        results = self.fetch()
        self.assertEqual([FetchResult(TRACKING_REF, self.c, new[0])], results)
        self.assertEqual(new[1], self.repo.load_raw(new[0]))
        self.assertEqual(self.c + b"\n", self.repo.load_metadata(SHALLOW_KEY))
        self.assertEqual(
            [
                compose_request(
                    NegotiationRequest(
                        [new[0]], haves=[self.c], shallows=[self.c], done=True
                    ),
                    negotiated(),
                )
            ],
            self.transport.posts,
        )

    def test_empty_remote(self) -> None:
        self.transport.add_advertisement([])
        self.assertEqual([], self.fetch())
        self.assertEqual([], self.transport.posts)
        self.assertEqual({}, self.repo.refs)

    def test_unmatched_refs(self) -> None:
        self.transport.add_advertisement([(b"refs/tags/v1", self.c)])
        self.assertEqual([], self.fetch())
        self.assertEqual([], self.transport.posts)

    def test_refspecs(self) -> None:
        other, other_body = make_commit(message=b"other")
        self.transport.add_advertisement(
            [
                (b"refs/heads/main", self.c),
                (b"refs/heads/dev", other),
                (b"refs/tags/v1", self.c),
            ]
        )
        self.transport.add_response(
            pack_response(pack_objects(self.history + [(other, other_body)]))
        )
        results = self.fetch(
            refspec=["refs/heads/dev:refs/heads/dev", "refs/tags/*:refs/tags/*"]
        )
        self.assertEqual(
            [
                FetchResult(b"refs/heads/dev", None, other),
                FetchResult(b"refs/tags/v1", None, self.c),
            ],
            results,
        )
        self.assertEqual(
            compose_request(
                NegotiationRequest([other, self.c], done=True), negotiated()
            ),
            self.transport.posts[0],
        )

    def test_invalid_local_ref_name(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/a..b", self.c)])
        self.assertRaises(ProtocolViolation, self.fetch)
        self.assertEqual([], self.transport.posts)

    def test_progress(self) -> None:
        messages: list[bytes] = []
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(
            pack_response(
                pack_objects(self.history), progress=[b"Counting objects: 3\n"]
            )
        )
        self.fetch(progress=messages.append)
        self.assertEqual([b"Counting objects: 3\n"], messages)
        self.assertNotIn(b"no-progress", self.transport.posts[0])

    def test_multiple_rounds(self) -> None:
        local = make_linear_history(20, start=100)
        self.store(local)
        tip = local[-1][0]
        self.repo.set_ref(TRACKING_REF, tip)
        new = make_commit([tip], message=b"new")
        self.transport.add_advertisement([(b"refs/heads/main", new[0])])
        self.transport.add_response(pkt_line(b"NAK\n"))
        self.transport.add_response(pack_response(pack_objects([new])))
        results = self.fetch()
        self.assertEqual([FetchResult(TRACKING_REF, tip, new[0])], results)
        (first, final) = self.transport.posts
        self.assertTrue(first.endswith(pkt_line(None)))
        self.assertEqual(16, first.count(b"have "))
        self.assertTrue(final.endswith(pkt_line(b"done\n")))
        self.assertEqual(20, final.count(b"have "))

    def test_ready(self) -> None:
        local = make_linear_history(20, start=100)
        self.store(local)
        tip = local[-1][0]
        self.repo.set_ref(TRACKING_REF, tip)
        new = make_commit([tip], message=b"new")
        self.transport.add_advertisement([(b"refs/heads/main", new[0])])
        self.transport.add_response(
            pkt_line(b"ACK " + tip + b" common\n")
            + pkt_line(b"ACK " + tip + b" ready\n")
            + pkt_line(b"NAK\n")
        )
        self.transport.add_response(
            pack_response(pack_objects([new]), acks=[b"ACK " + tip + b"\n"])
        )
        self.fetch()
        self.assertEqual(
            compose_request(
                NegotiationRequest([new[0]], haves=[tip], done=True), negotiated()
            ),
            self.transport.posts[1],
        )

    def test_depth(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(
            pack_response(
                pack_objects(self.history[2:]), deepen=True, shallow=[self.c]
            )
        )
        results = self.fetch(depth=1)
        self.assertEqual([FetchResult(TRACKING_REF, None, self.c)], results)
        self.assertEqual(self.c + b"\n", self.repo.load_metadata(SHALLOW_KEY))
        self.assertIn(pkt_line(b"deepen 1\n"), self.transport.posts[0])
        self.assertEqual({self.c}, set(self.repo.objects))

    def test_unshallow(self) -> None:
        self.store(self.history[2:])
        self.repo.set_ref(TRACKING_REF, self.c)
        self.repo.save_metadata(SHALLOW_KEY, self.c + b"\n")
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(
            pack_response(
                pack_objects(self.history[:2]), deepen=True, unshallow=[self.c]
            )
        )
        results = self.fetch(unshallow=True)
        self.assertEqual([FetchResult(TRACKING_REF, self.c, self.c)], results)
        self.assertEqual([], parse_shallow(self.repo.load_metadata(SHALLOW_KEY)))
        self.assertEqual(dict(self.history), self.repo.objects)
        post = self.transport.posts[0]
        self.assertIn(pkt_line(b"shallow " + self.c + b"\n"), post)
        self.assertIn(pkt_line(b"deepen 2147483647\n"), post)

    def test_unshallow_complete_repository(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.assertRaises(InvalidRequest, self.fetch, unshallow=True)
        self.assertEqual([], self.transport.requests)

    def test_unshallow_with_depth(self) -> None:
        self.repo.save_metadata(SHALLOW_KEY, self.c + b"\n")
        self.assertRaises(InvalidRequest, self.fetch, unshallow=True, depth=1)
        self.assertEqual([], self.transport.requests)

    def test_invalid_depth(self) -> None:
        self.assertRaises(InvalidRequest, self.fetch, depth=0)
        self.assertEqual([], self.transport.requests)

    def test_invalid_refspec(self) -> None:
        self.assertRaises(InvalidRequest, self.fetch, refspec="refs/heads/*:")
        self.assertEqual([], self.transport.requests)

    def test_shallow_merge(self) -> None:
        old = b"e" * 40
        other = b"f" * 40
        self.repo.save_metadata(SHALLOW_KEY, old + b"\n" + other + b"\n")
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(
            pack_response(
                pack_objects(self.history[1:]),
                deepen=True,
                shallow=[self.b],
                unshallow=[old],
            )
        )
        self.fetch(depth=2)
        self.assertEqual(
            other + b"\n" + self.b + b"\n", self.repo.load_metadata(SHALLOW_KEY)
        )

    def test_unshallow_in_intermediate_round(self) -> None:
        local = make_linear_history(20, start=100)
        self.store(local)
        tip = local[-1][0]
        oldest = local[0][0]
        self.repo.set_ref(TRACKING_REF, tip)
        self.repo.save_metadata(SHALLOW_KEY, oldest + b"\n")
        new = make_commit([tip], message=b"new")
        self.transport.add_advertisement([(b"refs/heads/main", new[0])])
        self.transport.add_response(
            shallow_info(unshallow=[oldest]) + pkt_line(b"NAK\n")
        )
        self.transport.add_response(
            pack_response(
                pack_objects([new]), deepen=True, shallow=[local[-2][0]]
            )
        )
        self.fetch(depth=3)
        (first, final) = self.transport.posts
        self.assertIn(pkt_line(b"shallow " + oldest + b"\n"), first)
        self.assertNotIn(b"shallow " + oldest, final)
        self.assertEqual(
            local[-2][0] + b"\n", self.repo.load_metadata(SHALLOW_KEY)
        )

    def test_truncated_pack(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(
            pack_response(pack_objects(self.history), deepen=True, shallow=[self.c])[
                :-4
            ]
        )
        self.assertRaises(TruncatedPack, self.fetch, depth=1)
        self.assertEqual({}, self.repo.refs)
        self.assertIsNone(self.repo.load_metadata(SHALLOW_KEY))
        self.assertTrue(all(resp.closed for resp in self.transport.served))

    def test_store_error(self) -> None:
        class FailingRepo(MemoryRepo):
            def save_raw(self, sha: bytes, body: bytes) -> None:
                raise OSError("disk full")

        self.repo = FailingRepo()
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(pack_response(pack_objects(self.history)))
        self.assertRaises(OSError, self.fetch)
        self.assertEqual({}, self.repo.refs)

    def test_not_found(self) -> None:
        self.transport.responses.append(NotGitRepository("not found"))
        self.assertRaises(NotGitRepository, self.fetch)

    def test_dumb_server(self) -> None:
        self.transport.responses.append(
            FakeResponse(b"1" * 40 + b"\trefs/heads/main\n", content_type="text/plain")
        )
        self.assertRaises(ProtocolViolation, self.fetch)
        self.assertTrue(self.transport.served[0].closed)

    def test_invalid_result_content_type(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.responses.append(FakeResponse(b"", content_type="text/html"))
        self.assertRaises(ProtocolViolation, self.fetch)
        self.assertTrue(self.transport.served[1].closed)
        self.assertEqual({}, self.repo.refs)

    def test_remote_error(self) -> None:
        self.transport.add_advertisement([(b"refs/heads/main", self.c)])
        self.transport.add_response(pkt_line(b"ERR upload-pack: not our ref\n"))
        with self.assertRaises(ProtocolViolation) as cm:
            self.fetch()
        self.assertIn("not our ref", str(cm.exception))

    def test_default_transport(self) -> None:
        self.transport.add_advertisement([])
        with patch("fetchpack.client.Urllib3Transport", return_value=self.transport):
            self.assertEqual([], fetch(URL, self.repo))
        self.assertEqual(1, len(self.transport.requests))


class DiskRepoFetchTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.path = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.path)
        self.repo = DiskRepo.init(self.path)

    def test_clone_and_refetch(self) -> None:
        history = make_linear_history(3)
        tip = history[-1][0]
        transport = FakeTransport()
        transport.add_advertisement([(b"refs/heads/main", tip)])
        transport.add_response(
            pack_response(
                pack_objects(history[1:]), deepen=True, shallow=[history[1][0]]
            )
        )
        transport.add_advertisement([(b"refs/heads/main", tip)])
        self.assertEqual(
            [FetchResult(TRACKING_REF, None, tip)],
            fetch(URL, self.repo, transport=transport, depth=2),
        )
        self.assertEqual(tip, self.repo.get_ref(TRACKING_REF))
        self.assertEqual(
            history[1][0] + b"\n", self.repo.load_metadata(SHALLOW_KEY)
        )
        for sha, body in history[1:]:
            self.assertEqual(body, self.repo.load_raw(sha))
        self.assertEqual(
            [FetchResult(TRACKING_REF, tip, tip)],
            fetch(URL, self.repo, transport=transport),
        )


    def test_incremental_fetch_into_shallow_clone(self) -> None:
        history = make_linear_history(4)
        (a, b, _c, d) = (sha for sha, _ in history)
        transport = FakeTransport()
        transport.add_advertisement([(b"refs/heads/main", b)])
        transport.add_response(
            pack_response(pack_objects(history[1:2]), deepen=True, shallow=[b])
        )
        fetch(URL, self.repo, transport=transport, depth=1)
        self.assertEqual(b + b"\n", self.repo.load_metadata(SHALLOW_KEY))

        transport.add_advertisement([(b"refs/heads/main", d)])
        transport.add_response(pack_response(pack_objects(history[2:])))
        self.assertEqual(
            [FetchResult(TRACKING_REF, b, d)],
            fetch(URL, self.repo, transport=transport),
        )
        self.assertEqual(d, self.repo.get_ref(TRACKING_REF))
        self.assertEqual(b + b"\n", self.repo.load_metadata(SHALLOW_KEY))
        for sha, body in history[1:]:
            self.assertEqual(body, self.repo.load_raw(sha))
        self.assertFalse(self.repo.has_object(a))
        post = transport.posts[1]
        self.assertIn(pkt_line(b"shallow " + b + b"\n"), post)
        self.assertIn(pkt_line(b"have " + b + b"\n"), post)
        self.assertNotIn(b"deepen", post)


class LsRemoteTests(TestCase):
    def test_ls_remote(self) -> None:
        transport = FakeTransport()
        transport.add_advertisement(
            [(b"HEAD", b"1" * 40), (b"refs/heads/main", b"1" * 40)],
            [b"symref=HEAD:refs/heads/main"],
        )
        adv = ls_remote(URL, transport=transport)
        self.assertEqual(
            [(b"HEAD", b"1" * 40), (b"refs/heads/main", b"1" * 40)], adv.refs
        )
        self.assertEqual({b"HEAD": b"refs/heads/main"}, adv.capabilities.symrefs())

    def test_content_type_parameters(self) -> None:
        transport = FakeTransport(
            [
                FakeResponse(
                    pkt_line(None),
                    content_type=ADVERTISEMENT_CONTENT_TYPE + "; charset=utf-8",
                )
            ]
        )
        self.assertEqual([], ls_remote(URL, transport=transport).refs)
