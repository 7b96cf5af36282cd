# transport.py -- HTTP transports for the smart protocol
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

"""HTTP transports.

fetch() talks to the remote through a :class:`Transport`: a single
``request()`` method returning a response with ``status``, ``content_type``,
``read(n)`` and ``close()``. :class:`Urllib3Transport` is the implementation
used by default.
"""

import logging
import os
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Optional, Protocol, Union
from urllib.parse import unquote, urlparse, urlunparse

from .errors import HTTPUnauthorized, NetworkFailure, NotGitRepository

if TYPE_CHECKING:
    import urllib3

logger = logging.getLogger(__name__)


class HTTPResponse(Protocol):
    """Response returned by a transport."""

    status: int
    content_type: Optional[str]

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes of the body."""
        ...

    def close(self) -> None:
        """Release the underlying connection."""
        ...


class Transport(Protocol):
    """Something that can perform HTTP round-trips."""

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> HTTPResponse:
        """Perform a request and return the response.

        The body of the response is streamed; callers must close it.

        Raises:
          NotGitRepository: If the server answered 404
          HTTPUnauthorized: If the server answered 401
          NetworkFailure: On connection errors and other non-200 answers
        """
        ...


def default_user_agent_string() -> str:
    """Return the default user agent string for fetchpack."""
    # Start user agent with "git/", because some hosting sites require it.
    from . import __version__

    return "git/fetchpack/{}".format(".".join([str(x) for x in __version__]))


def default_urllib3_manager(
    timeout: Optional[float] = None,
    ca_certs: Optional[str] = None,
    proxy: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Union["urllib3.ProxyManager", "urllib3.PoolManager"]:
    """Return urllib3 connection pool manager.

    Honour detected proxy configurations.

    Args:
      timeout: Timeout for HTTP requests in seconds
      ca_certs: Path to a CA bundle used to verify servers
      proxy: Proxy URL; taken from https_proxy or http_proxy if not given
      user_agent: User agent to send; defaults to default_user_agent_string()

    Returns:
      A `urllib3.ProxyManager` instance for proxy configurations,
      a `urllib3.PoolManager` instance otherwise
    """
    import urllib3

    if proxy is None:
        for proxyname in ("https_proxy", "http_proxy"):
            proxy = os.environ.get(proxyname)
            if proxy:
                break

    if user_agent is None:
        user_agent = default_user_agent_string()
    headers = {"User-agent": user_agent}

    kwargs: dict[str, Union[str, float, None]] = {
        "ca_certs": ca_certs,
        "cert_reqs": "CERT_REQUIRED",
    }
    if timeout is not None:
        kwargs["timeout"] = timeout

    if proxy:
        proxy_url = urlparse(proxy)
        if proxy_url.username is not None:
            proxy_headers = urllib3.make_headers(
                proxy_basic_auth=f"{proxy_url.username}:{proxy_url.password or ''}"
            )
        else:
            proxy_headers = {}
        return urllib3.ProxyManager(
            proxy, proxy_headers=proxy_headers, headers=headers, **kwargs
        )
    return urllib3.PoolManager(headers=headers, **kwargs)


def split_url_credentials(url: str) -> tuple[str, Optional[str], Optional[str]]:
    """Remove user information from a URL.

    Returns: Tuple with the URL without credentials, the username and the
      password (both unquoted, or None)
    """
    parsed = urlparse(url)
    if parsed.username is None and parsed.password is None:
        return url, None, None
    hostname = parsed.hostname or ""
    netloc = f"{hostname}:{parsed.port}" if parsed.port else hostname
    username = unquote(parsed.username) if parsed.username else None
    password = unquote(parsed.password) if parsed.password else None
    return urlunparse(parsed._replace(netloc=netloc)), username, password


def _basic_auth_header(username: str, password: Optional[str]) -> dict[str, str]:
    import urllib3.util

    # No escaping needed: ":" is not allowed in username:
    # https://tools.ietf.org/html/rfc2617#section-2
    return urllib3.util.make_headers(basic_auth=f"{username}:{password or ''}")


def _wrap_urllib3_exceptions(
    func: Callable[..., bytes],
) -> Callable[..., bytes]:
    import urllib3.exceptions

    def wrapper(*args: object, **kwargs: object) -> bytes:
        try:
            return func(*args, **kwargs)
        except urllib3.exceptions.HTTPError as error:
            raise NetworkFailure(str(error)) from error

    return wrapper


class Urllib3Response:
    """A streamed urllib3 response."""

    def __init__(self, resp: "urllib3.BaseHTTPResponse") -> None:
        self._resp = resp
        self.status = resp.status
        self.headers = resp.headers
        self.content_type: Optional[str] = resp.headers.get("Content-Type")
        self.read = _wrap_urllib3_exceptions(resp.read)

    def close(self) -> None:
        self._resp.release_conn()

    def __enter__(self) -> "Urllib3Response":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Urllib3Transport:
    """Transport that uses urllib3 for HTTP(S) connections."""

    def __init__(
        self,
        pool_manager: Optional["urllib3.PoolManager"] = None,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        extra_headers: Optional[Mapping[str, str]] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        """Create a new transport.

        Args:
          pool_manager: urllib3 pool manager to use; one is created with
            default_urllib3_manager() if not given
          timeout: Timeout for HTTP requests in seconds
          user_agent: User agent for a newly created pool manager
          extra_headers: Headers sent with every request
          username: Username for HTTP basic authentication
          password: Password for HTTP basic authentication
        """
        self._timeout = timeout
        self._extra_headers = dict(extra_headers or {})
        if pool_manager is None:
            self.pool_manager = default_urllib3_manager(
                timeout=timeout, user_agent=user_agent
            )
        else:
            self.pool_manager = pool_manager
        if username is not None:
            self._extra_headers.update(_basic_auth_header(username, password))

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> Urllib3Response:
        import urllib3.exceptions

        url, username, password = split_url_credentials(url)
        req_headers = dict(self.pool_manager.headers)
        req_headers.update(self._extra_headers)
        if username is not None and "authorization" not in {
            k.lower() for k in req_headers
        }:
            req_headers.update(_basic_auth_header(username, password))
        if headers is not None:
            req_headers.update(headers)
        req_headers["Pragma"] = "no-cache"

        request_kwargs: dict[str, object] = {
            "headers": req_headers,
            "preload_content": False,
        }
        if self._timeout is not None:
            request_kwargs["timeout"] = self._timeout
        if body is not None:
            request_kwargs["body"] = body

        logger.debug("%s %s", method, url)
        try:
            resp = self.pool_manager.request(method, url, **request_kwargs)  # type: ignore[arg-type]
        except urllib3.exceptions.HTTPError as e:
            raise NetworkFailure(str(e)) from e

        if resp.status != 200:
            www_authenticate = resp.headers.get("WWW-Authenticate")
            resp.drain_conn()
            resp.release_conn()
            if resp.status == 404:
                raise NotGitRepository(f"repository not found at {url}")
            if resp.status == 401:
                raise HTTPUnauthorized(www_authenticate, url)
            raise NetworkFailure(f"unexpected http resp {resp.status} for {url}")
        return Urllib3Response(resp)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.pool_manager!r})"
