"""SSRF-safe async HTTP fetcher with manual, re-validated redirect handling.

Every hop of a fetch runs the same sequence::

    VALIDATE_URL → RESOLVE → CONNECT → SUCCESS
                                     → REDIRECT → VALIDATE_URL ...
                                     → ERROR

- **VALIDATE_URL** parses the URL and rejects anything but ``http``/``https``
  before any network activity.
- **RESOLVE** calls :meth:`PinnedResolver.resolve_and_pin` for the hop's own
  hostname, so a redirect to a private address is caught exactly like a
  first-hop one.
- **CONNECT** sends the request to the pinned address: the URL host is
  replaced by the address, the original ``Host`` header is kept and, for
  TLS, the original hostname travels as SNI (httpx's ``sni_hostname``
  request extension) so the certificate is still verified against the
  hostname.  httpx therefore never resolves the hostname itself.

Redirects are never followed by httpx; ``Location`` is resolved against the
URL that issued it and fed back into VALIDATE_URL.  Response bodies are
capped at :data:`~webtoepub.scraper.config.MAX_RESPONSE_BYTES`, both on the
declared ``Content-Length`` and on the bytes actually streamed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx

from webtoepub.api.metrics import outbound_fetches_total, unsafe_targets_blocked_total
from webtoepub.config.settings import DEFAULT_USER_AGENT
from webtoepub.core.exceptions import (
    FetchError,
    InvalidInputError,
    NetworkError,
    PayloadTooLargeError,
    RedirectWithoutLocationError,
    TooManyRedirectsError,
    UnsafeTargetError,
)
from webtoepub.scraper.config import (
    ALLOWED_SCHEMES,
    CONNECTION_POOL_LIMITS,
    MAX_REDIRECTS,
    MAX_RESPONSE_BYTES,
    REQUEST_TIMEOUT,
)
from webtoepub.scraper.resolver import PinnedResolver, ResolvedAddress

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class FetchRequest:
    """Progress of one logical fetch through its redirect chain.

    A new instance is created for every hop, pointing at the resolved
    ``Location`` of the previous one.

    Attributes:
        url: URL requested at this hop.
        redirect_count: Redirects followed before reaching this hop.
        bytes_so_far: Body bytes received at this hop.
    """

    url: httpx.URL
    redirect_count: int = 0
    bytes_so_far: int = 0


@dataclass
class FetchedResource:
    """Successful result of :meth:`SafeFetcher.fetch`.

    Attributes:
        url: The URL originally requested.
        final_url: URL of the hop that returned 2xx.
        status_code: The 2xx status of the final hop.
        content_type: Upstream ``Content-Type`` header, or ``None``.
        body: Complete response body (decoded of any content-encoding).
        encoding: Charset declared by the upstream, if any.
        redirects: Number of redirects followed.
    """

    url: str
    final_url: str
    status_code: int
    content_type: str | None
    body: bytes
    encoding: str | None = None
    redirects: int = 0

    @property
    def text(self) -> str:
        """Return the body decoded with the declared charset (UTF-8 otherwise)."""
        try:
            return self.body.decode(self.encoding or "utf-8", errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Client factory
# ---------------------------------------------------------------------------


def build_http_client() -> httpx.AsyncClient:
    """Create the shared :class:`httpx.AsyncClient` used by :class:`SafeFetcher`.

    The client never follows redirects, ignores proxy environment variables
    and refuses to store cookies, so nothing one caller's fetch receives can
    leak into another caller's request to the same pinned address.  It also
    keeps no idle connections: the pool is keyed by the pinned IP, and a
    TLS session verified for one hostname must not carry a request for a
    different hostname served from the same address.
    """
    limits = httpx.Limits(
        max_connections=CONNECTION_POOL_LIMITS["max_connections"],
        max_keepalive_connections=CONNECTION_POOL_LIMITS["max_keepalive_connections"],
    )
    return httpx.AsyncClient(
        follow_redirects=False,
        trust_env=False,
        timeout=REQUEST_TIMEOUT,
        limits=limits,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
    )


# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------


def parse_target_url(url: str | httpx.URL) -> httpx.URL:
    """Parse ``url`` and enforce the scheme and host rules.

    Raises:
        InvalidInputError: If the URL does not parse, has no host, or uses a
            scheme other than ``http``/``https``.
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise InvalidInputError(f"Invalid URL format: {url!s}") from exc
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise InvalidInputError(f"Invalid protocol: {parsed.scheme or 'none'}")
    if not parsed.host:
        raise InvalidInputError(f"URL has no host: {url!s}")
    return parsed


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class SafeFetcher:
    """Fetch user-supplied URLs without ever touching a blocked address.

    Args:
        resolver: Resolver used to pin every hop.
        client: Shared async client, normally from :func:`build_http_client`.
        user_agent: Default ``User-Agent`` header.
        max_redirects: Redirect limit per logical fetch.
        max_bytes: Response body ceiling in bytes.
        timeout: Per-hop timeout in seconds.
    """

    def __init__(
        self,
        resolver: PinnedResolver,
        client: httpx.AsyncClient,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        max_redirects: int = MAX_REDIRECTS,
        max_bytes: int = MAX_RESPONSE_BYTES,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.resolver = resolver
        self.client = client
        self.user_agent = user_agent
        self.max_redirects = max_redirects
        self.max_bytes = max_bytes
        self.timeout = timeout

    async def fetch(self, url: str, *, user_agent: str | None = None) -> FetchedResource:
        """Fetch ``url``, walking redirects manually.

        Args:
            url: Absolute ``http``/``https`` URL.
            user_agent: Overrides the default ``User-Agent`` for this fetch.

        Returns:
            The body and metadata of the first 2xx response.

        Raises:
            InvalidInputError: Unparsable URL or disallowed scheme, on the
                first hop or on any redirect target.
            UnsafeTargetError: Any hop resolved to a blocked address.
            TooManyRedirectsError: More than ``max_redirects`` redirects.
            PayloadTooLargeError: Body declared or streamed past ``max_bytes``.
            NetworkError: Timeout, transport failure, non-2xx status, or a
                redirect without a ``Location``.
        """
        try:
            resource = await self._fetch(url, user_agent or self.user_agent)
        except UnsafeTargetError:
            unsafe_targets_blocked_total.inc()
            outbound_fetches_total.labels(outcome="blocked").inc()
            raise
        except PayloadTooLargeError:
            outbound_fetches_total.labels(outcome="too_large").inc()
            raise
        except FetchError:
            outbound_fetches_total.labels(outcome="failed").inc()
            raise
        outbound_fetches_total.labels(outcome="success").inc()
        return resource

    async def _fetch(self, url: str, user_agent: str) -> FetchedResource:
        request = FetchRequest(url=parse_target_url(url))

        while True:
            resolved = await self.resolver.resolve_and_pin(_lookup_host(request.url))
            response = await self._send_pinned(request.url, resolved, user_agent)
            try:
                status = response.status_code

                if 300 <= status < 400:
                    location = response.headers.get("location")
                    if not location:
                        raise RedirectWithoutLocationError(status)
                    if request.redirect_count >= self.max_redirects:
                        raise TooManyRedirectsError(self.max_redirects)
                    next_url = self._redirect_target(request.url, location)
                    logger.debug(
                        "scraper: redirect %d %s -> %s",
                        request.redirect_count + 1,
                        request.url,
                        next_url,
                    )
                    request = FetchRequest(
                        url=next_url,
                        redirect_count=request.redirect_count + 1,
                    )
                    continue

                if not 200 <= status < 300:
                    raise NetworkError(
                        f"Upstream responded with HTTP {status}",
                        status_code_upstream=status,
                    )

                body = await self._read_capped(response, request)
                return FetchedResource(
                    url=str(url),
                    final_url=str(request.url),
                    status_code=status,
                    content_type=response.headers.get("content-type"),
                    body=body,
                    encoding=response.charset_encoding,
                    redirects=request.redirect_count,
                )
            finally:
                await response.aclose()

    def _redirect_target(self, current: httpx.URL, location: str) -> httpx.URL:
        """Resolve ``location`` against ``current`` and validate the result.

        Raises:
            InvalidInputError: If the target does not parse or uses a scheme
                other than ``http``/``https``, exactly as for a first hop.
        """
        try:
            joined = current.join(location)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            logger.warning("scraper: unparsable redirect location %r from %s", location, current)
            raise InvalidInputError(f"Invalid URL format: {location}") from exc
        try:
            return parse_target_url(joined)
        except InvalidInputError:
            logger.warning("scraper: refusing redirect from %s to %r", current, location)
            raise

    async def _send_pinned(
        self,
        url: httpx.URL,
        resolved: ResolvedAddress,
        user_agent: str,
    ) -> httpx.Response:
        """Send a GET for ``url`` to ``resolved.address`` and return the streaming response."""
        extensions: dict[str, str] = {}
        if url.scheme == "https":
            extensions["sni_hostname"] = _lookup_host(url)

        # IPv6 literals must be bracketed to be a valid URL host.
        host = f"[{resolved.address}]" if ":" in resolved.address else resolved.address
        request = self.client.build_request(
            "GET",
            url.copy_with(host=host),
            headers={
                "Host": url.netloc.decode("ascii"),
                "User-Agent": user_agent,
                "Accept": "*/*",
            },
            timeout=self.timeout,
            extensions=extensions,
        )
        try:
            return await self.client.send(request, stream=True, follow_redirects=False)
        except httpx.TimeoutException as exc:
            logger.warning("scraper: timeout fetching %s", url)
            raise NetworkError(f"Timeout fetching {url}") from exc
        except httpx.HTTPError as exc:
            logger.warning("scraper: request error for %s: %s", url, exc)
            raise NetworkError(f"Request error for {url}: {exc}") from exc

    async def _read_capped(self, response: httpx.Response, request: FetchRequest) -> bytes:
        """Read the body, failing as soon as it is known to exceed the ceiling."""
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_bytes:
            logger.warning(
                "scraper: %s declares %s bytes (limit %d)", request.url, declared, self.max_bytes
            )
            raise PayloadTooLargeError(self.max_bytes, declared=int(declared))

        chunks: list[bytes] = []
        try:
            async for chunk in response.aiter_bytes():
                request.bytes_so_far += len(chunk)
                if request.bytes_so_far > self.max_bytes:
                    logger.warning(
                        "scraper: %s exceeded %d bytes while streaming",
                        request.url,
                        self.max_bytes,
                    )
                    raise PayloadTooLargeError(self.max_bytes)
                chunks.append(chunk)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timeout reading {request.url}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Error reading {request.url}: {exc}") from exc
        return b"".join(chunks)


def _lookup_host(url: httpx.URL) -> str:
    """Return the ASCII (IDNA-encoded) hostname of ``url``."""
    return url.raw_host.decode("ascii")
