"""Constants and tuning parameters for outbound fetching.

These limits are process-wide and read-only at request time; every
concurrent fetch shares them without any mutable state.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Redirect and size guards
# ---------------------------------------------------------------------------

#: Maximum number of redirects followed for one logical fetch.  A chain of
#: exactly this many redirects succeeds; one more fails.
MAX_REDIRECTS: int = 5

#: Response body ceiling in bytes.  Bodies above this are rejected, never
#: truncated.
MAX_RESPONSE_BYTES: int = 10 * 1024 * 1024  # 10 MiB

# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

#: Per-hop outbound request timeout in seconds.
REQUEST_TIMEOUT: float = 10.0

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

#: URL schemes the fetcher will ever request.
ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})

#: Content-Type served by the image proxy when the upstream sends none.
DEFAULT_IMAGE_CONTENT_TYPE: str = "image/jpeg"

# ---------------------------------------------------------------------------
# Realtime channel
# ---------------------------------------------------------------------------

#: Seconds between SSE keep-alive comments on an idle job stream.
SSE_KEEPALIVE_SECONDS: float = 15.0

# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------

#: Pool sizing for the shared outbound client.  Requests are pinned to an
#: address, so the pool keys connections by IP rather than hostname; idle
#: connections are never kept, otherwise a TLS session negotiated for one
#: hostname could be reused for another hostname on the same address.
CONNECTION_POOL_LIMITS: dict[str, int] = {
    "max_connections": 100,
    "max_keepalive_connections": 0,
}
