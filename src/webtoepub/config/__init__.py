"""Configuration package for the WebToEpub scraper engine.

Re-exports the settings symbols so that callers can write::

    from webtoepub.config import get_settings
"""

from __future__ import annotations

from webtoepub.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
