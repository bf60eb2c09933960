"""Application settings loaded from environment variables.

Uses Pydantic Settings v2 for validated, type-safe configuration.
Operator-controlled switches (most importantly the SSRF bypass) are read
exclusively through this module; never call ``os.getenv`` directly
elsewhere in the codebase.

Usage::

    from webtoepub.config.settings import get_settings

    settings = get_settings()
    if settings.allow_internal_ips:
        ...
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

#: Browser-like user agent sent when a caller does not supply its own.
DEFAULT_USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Service configuration backed by environment variables and an optional .env file.

    Every field has a safe default, so the service starts with no environment
    at all.  The defaults are the hardened ones: internal addresses are
    blocked unless an operator explicitly opts out.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Application behaviour
    # ------------------------------------------------------------------

    app_name: str = "WebToEpub Scraper Engine"
    """Human-readable service name reported by ``GET /`` and the OpenAPI docs."""

    debug: bool = False
    """Enable FastAPI debug mode.  Never True in production."""

    log_level: str = "INFO"
    """Logging verbosity.  One of: DEBUG, INFO, WARNING, ERROR, CRITICAL."""

    host: str = "0.0.0.0"
    """Interface the uvicorn server binds to.  ``0.0.0.0`` keeps the service
    reachable from inside containers."""

    port: int = 3000
    """TCP port the uvicorn server listens on (``PORT`` on most PaaS hosts)."""

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------

    client_url: str = "*"
    """Origin(s) allowed to call the HTTP surface.  A single origin, a
    comma-separated list, or ``*`` for any origin."""

    # ------------------------------------------------------------------
    # Outbound fetch safety
    # ------------------------------------------------------------------

    allow_internal_ips: bool = False
    """Disable the IP safety classifier entirely.

    Only for deployments confined to a trusted private network (e.g. a
    cluster-internal mirror).  With this enabled the proxy and crawler will
    happily connect to loopback, RFC 1918 and link-local addresses.
    """

    user_agent: str = DEFAULT_USER_AGENT
    """Default ``User-Agent`` for outbound requests."""

    # ------------------------------------------------------------------
    # Crawl tuning
    # ------------------------------------------------------------------

    batch_concurrency: int = Field(default=4, ge=1, le=32)
    """Maximum simultaneous chapter fetches within one batch request."""

    toc_max_pages: int = Field(default=20, ge=1, le=200)
    """Upper bound on paginated table-of-contents pages followed per novel."""

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    metrics_enabled: bool = True
    """Expose Prometheus metrics at ``GET /metrics``."""

    @property
    def allowed_origins(self) -> list[str]:
        """Return :attr:`client_url` split into the list CORS middleware expects."""
        origins = [origin.strip() for origin in self.client_url.split(",")]
        return [origin for origin in origins if origin] or ["*"]


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    In tests, call ``get_settings.cache_clear()`` after patching environment
    variables.

    Returns:
        Settings: The validated settings object.
    """
    return Settings()
