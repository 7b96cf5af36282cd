# client.py -- Fetch client for the smart HTTP protocol
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

"""Fetching from a remote repository.

:func:`fetch` drives a complete fetch: it reads the remote's ref
advertisement, negotiates the objects to transfer, stores the received
objects and finally updates shallow metadata and refs. Refs and shallow
metadata are only touched once every object of the pack has been stored; an
error or interruption before that leaves them as they were.
"""

from collections.abc import Iterable
from typing import Callable, Optional, Union

from . import log_utils
from .errors import InvalidRequest, ProtocolViolation
from .negotiation import NegotiationEngine, check_depth, read_round_response
from .pack import PackIngestor
from .protocol import Protocol
from .refs import (
    DEFAULT_REFSPEC,
    RefAdvertisement,
    RefSpec,
    map_remote_refs,
    parse_ref_advertisement,
    parse_refspecs,
)
from .repo import (
    SHALLOW_KEY,
    RawRepo,
    check_ref_format,
    make_get_parents,
    parse_shallow,
    serialize_shallow,
)
from .request import compose_request, negotiate_capabilities
from .transport import (
    HTTPResponse,
    Transport,
    Urllib3Transport,
    split_url_credentials,
)

logger = log_utils.getLogger(__name__)

ObjectID = bytes
Ref = bytes

UPLOAD_PACK_SERVICE = "git-upload-pack"
ADVERTISEMENT_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-advertisement"
REQUEST_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-request"
RESPONSE_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-response"
# git-http-backend answers with this type rather than the one we accept.
RESULT_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-result"


class FetchResult:
    """Change made to a local ref by a fetch.

    Attributes:
      ref: Name of the local ref
      old_sha: Value of the ref before the fetch, or None if it did not exist
      new_sha: Value of the ref after the fetch
    """

    __slots__ = ("new_sha", "old_sha", "ref")

    def __init__(
        self, ref: Ref, old_sha: Optional[ObjectID], new_sha: ObjectID
    ) -> None:
        self.ref = ref
        self.old_sha = old_sha
        self.new_sha = new_sha

    @property
    def from_(self) -> Optional[ObjectID]:
        """Alias for old_sha."""
        return self.old_sha

    @property
    def to(self) -> ObjectID:
        """Alias for new_sha."""
        return self.new_sha

    def as_dict(self) -> dict[str, Optional[bytes]]:
        """Return the result as a dictionary with ref, from and to keys."""
        return {"ref": self.ref, "from": self.old_sha, "to": self.new_sha}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FetchResult):
            return NotImplemented
        return (self.ref, self.old_sha, self.new_sha) == (
            other.ref,
            other.old_sha,
            other.new_sha,
        )

    def __hash__(self) -> int:
        return hash((self.ref, self.old_sha, self.new_sha))

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self.ref!r}, {self.old_sha!r}, "
            f"{self.new_sha!r})"
        )


def _service_url(url: str, tail: str) -> str:
    return url.rstrip("/") + "/" + tail


def discover_refs(transport: Transport, url: str) -> RefAdvertisement:
    """Retrieve and parse the ref advertisement of a remote repository.

    Raises:
      NetworkFailure: If the advertisement could not be retrieved
      ProtocolViolation: If the remote does not speak the smart protocol or
        sent a malformed advertisement
    """
    resp = transport.request(
        "GET",
        _service_url(url, f"info/refs?service={UPLOAD_PACK_SERVICE}"),
        headers={"Accept": "*/*"},
    )
    try:
        content_type = resp.content_type
        if content_type is None or content_type.split(";")[0] != (
            ADVERTISEMENT_CONTENT_TYPE
        ):
            raise ProtocolViolation(
                f"remote does not support the smart HTTP protocol "
                f"(content-type {content_type!r})"
            )
        data = resp.read()
    finally:
        resp.close()
    return parse_ref_advertisement(data, UPLOAD_PACK_SERVICE.encode("ascii"))


def ls_remote(url: str, transport: Optional[Transport] = None) -> RefAdvertisement:
    """List the refs of a remote repository.

    Args:
      url: URL of the remote repository
      transport: Transport to use; defaults to a new Urllib3Transport
    Returns: The RefAdvertisement sent by the remote
    """
    if transport is None:
        transport = Urllib3Transport()
    return discover_refs(transport, url)


def _upload_pack_request(transport: Transport, url: str, body: bytes) -> HTTPResponse:
    resp = transport.request(
        "POST",
        _service_url(url, UPLOAD_PACK_SERVICE),
        headers={
            "Content-Type": REQUEST_CONTENT_TYPE,
            "Accept": RESPONSE_CONTENT_TYPE,
            "Content-Length": str(len(body)),
        },
        body=body,
    )
    content_type = resp.content_type
    if content_type is not None and content_type.split(";")[0] not in (
        RESPONSE_CONTENT_TYPE,
        RESULT_CONTENT_TYPE,
    ):
        resp.close()
        raise ProtocolViolation(f"Invalid content-type from server: {content_type}")
    return resp


def _merge_shallow(
    previous: list[ObjectID],
    shallow: Iterable[ObjectID],
    unshallow: Iterable[ObjectID],
) -> list[ObjectID]:
    removed = set(unshallow)
    ret = [sha for sha in previous if sha not in removed]
    for sha in shallow:
        if sha not in removed and sha not in ret:
            ret.append(sha)
    return ret


def fetch(
    url: str,
    repo: RawRepo,
    transport: Optional[Transport] = None,
    refspec: Union[str, bytes, RefSpec, Iterable[Union[str, bytes, RefSpec]]] = (
        DEFAULT_REFSPEC
    ),
    depth: Optional[int] = None,
    unshallow: bool = False,
    progress: Optional[Callable[[bytes], None]] = None,
) -> list[FetchResult]:
    """Fetch refs and objects from a remote repository.

    Args:
      url: URL of the remote repository
      repo: Repository to fetch into
      transport: Transport to use; defaults to a new Urllib3Transport
      refspec: Refspec or list of refspecs mapping remote refs to local refs
      depth: Limit history to this many commits
      unshallow: Fetch the complete history of a shallow repository
      progress: Optional callback receiving progress messages from the server
    Returns: One FetchResult for every remote ref that matched a refspec

    Raises:
      InvalidRequest: If the arguments can not be satisfied
      NetworkFailure: If talking to the remote failed
      ProtocolViolation: If the remote sent something unexpected
      TruncatedPack: If the pack ended early
    """
    refspecs = parse_refspecs(refspec)
    check_depth(depth, unshallow)

    local_refs = {name: repo.get_ref(name) for name in repo.list_refs()}
    previous_shallow = parse_shallow(repo.load_metadata(SHALLOW_KEY))
    if unshallow and not previous_shallow:
        raise InvalidRequest("can not unshallow a repository with complete history")

    if transport is None:
        transport = Urllib3Transport()
    display_url = split_url_credentials(url)[0]

    advertisement = discover_refs(transport, url)
    mapped = map_remote_refs(advertisement.refs, refspecs)
    for remote, local, _sha in mapped:
        if not check_ref_format(local):
            raise ProtocolViolation(
                f"remote ref {remote!r} maps to invalid ref name {local!r}"
            )
    logger.debug(
        "%d of %d remote refs match %r", len(mapped), len(advertisement.refs), refspecs
    )

    engine = NegotiationEngine(
        [sha for (_name, sha) in advertisement.refs],
        [
            sha
            for sha in local_refs.values()
            if sha is not None and repo.has_object(sha)
        ],
        [sha for (_remote, _local, sha) in mapped],
        shallows=previous_shallow,
        depth=depth,
        unshallow=unshallow,
        get_parents=make_get_parents(repo),
        has_object=repo.has_object,
    )
    capabilities = negotiate_capabilities(
        advertisement.capabilities, progress=progress is not None
    )
    logger.debug("Requesting capabilities: %r", capabilities)

    new_shallow: list[ObjectID] = []
    new_unshallow: list[ObjectID] = []
    for request in engine:
        body = compose_request(request, capabilities)
        resp = _upload_pack_request(transport, url, body)
        try:
            if not request.done:
                read_round_response(Protocol(resp.read), request, engine)
                continue
            ingestor = PackIngestor(
                resp.read,
                capabilities,
                deepen=request.deepen,
                progress=progress,
                get_raw=repo.load_raw,
            )
            for record in ingestor:
                repo.save_raw(record.sha, record.body)
            logger.info(
                "Received %d objects from %s", ingestor.object_count, display_url
            )
            new_shallow = ingestor.shallow
            new_unshallow = engine.unshallowed + ingestor.unshallow
        finally:
            resp.close()

    if new_shallow or new_unshallow:
        shallow = _merge_shallow(previous_shallow, new_shallow, new_unshallow)
        logger.debug(
            "Updating shallow boundaries: %d shallow, %d unshallow",
            len(new_shallow),
            len(new_unshallow),
        )
        repo.save_metadata(SHALLOW_KEY, serialize_shallow(shallow))

    results = []
    for _remote, local, sha in mapped:
        old_sha = local_refs.get(local)
        repo.set_ref(local, sha)
        if old_sha != sha:
            logger.debug("Updated %s: %r -> %r", local, old_sha, sha)
        results.append(FetchResult(local, old_sha, sha))
    return results
