"""Application-wide exception hierarchy for the WebToEpub scraper engine.

All custom exceptions subclass ``WebToEpubError``.  Each class carries the
HTTP status the API maps it to, so route handlers never translate errors by
inspecting message text.

Hierarchy::

    WebToEpubError
    ├── InvalidInputError              (400)
    ├── FetchError
    │   ├── UnsafeTargetError          (403; hostname, address)
    │   ├── TooManyRedirectsError      (500; max_redirects)
    │   ├── PayloadTooLargeError       (413; limit)
    │   └── NetworkError               (500; status_code)
    │       └── RedirectWithoutLocationError
    ├── ExtractionError                (500; url)
    └── SystemicError                  (500; details)
"""

from __future__ import annotations


class WebToEpubError(Exception):
    """Base class for all WebToEpub exceptions.

    Attributes:
        status_code: HTTP status the API layer responds with when this error
            reaches a request handler.
    """

    status_code: int = 500


class InvalidInputError(WebToEpubError):
    """Raised for malformed or missing request fields.

    Always detected before any network I/O takes place.
    """

    status_code = 400


# ---------------------------------------------------------------------------
# Outbound fetch exceptions
# ---------------------------------------------------------------------------


class FetchError(WebToEpubError):
    """Base class for failures of a single logical outbound fetch."""


class UnsafeTargetError(FetchError):
    """Raised when a hostname resolves to an address the classifier rejects.

    Applies equally to the first hop and to any redirect hop.

    Args:
        hostname: The hostname that was resolved.
        address: The offending resolved address.
    """

    status_code = 403

    def __init__(self, hostname: str, address: str) -> None:
        super().__init__(
            f"DNS resolution denied: {hostname} resolved to private/unsafe IP {address}"
        )
        self.hostname = hostname
        self.address = address


class TooManyRedirectsError(FetchError):
    """Raised when a redirect chain exceeds the hop limit.

    Args:
        max_redirects: The redirect limit that was exceeded.
    """

    def __init__(self, max_redirects: int) -> None:
        super().__init__(f"Too many redirects (limit {max_redirects})")
        self.max_redirects = max_redirects


class PayloadTooLargeError(FetchError):
    """Raised when a response body declares or streams past the byte ceiling.

    Args:
        limit: The byte ceiling that was exceeded.
        declared: ``Content-Length`` announced by the upstream, if any.
    """

    status_code = 413

    def __init__(self, limit: int, declared: int | None = None) -> None:
        if declared is not None:
            message = f"Response declares {declared} bytes, limit is {limit}"
        else:
            message = f"Response exceeded the {limit} byte limit"
        super().__init__(message)
        self.limit = limit
        self.declared = declared


class NetworkError(FetchError):
    """Raised on timeouts, connection failures and unusable upstream responses.

    Args:
        message: Human-readable description of the failure.
        status_code_upstream: HTTP status returned by the upstream, if the
            failure was an unacceptable status rather than a transport error.
    """

    def __init__(self, message: str, status_code_upstream: int | None = None) -> None:
        super().__init__(message)
        self.status_code_upstream = status_code_upstream


class RedirectWithoutLocationError(NetworkError):
    """Raised when a 3xx response carries no usable ``Location`` header."""

    def __init__(self, status_code_upstream: int) -> None:
        super().__init__(
            "Redirect without location header",
            status_code_upstream=status_code_upstream,
        )


# ---------------------------------------------------------------------------
# Extraction exceptions
# ---------------------------------------------------------------------------


class ExtractionError(WebToEpubError):
    """Raised when a fetched page yields nothing usable, e.g. no chapter links.

    Args:
        url: The page that was parsed.
        message: What was missing.
    """

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message}: {url}")
        self.url = url


# ---------------------------------------------------------------------------
# Batch exceptions
# ---------------------------------------------------------------------------


class SystemicError(WebToEpubError):
    """Raised when a batch call fails before producing any per-item result.

    Args:
        message: Short description shown as ``error`` in the response body.
        details: Underlying cause shown as ``details`` in the response body.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.details = details
