"""WebToEpub scraper engine.

Discovers a serialized novel's table of contents, fetches chapter bodies in
batches and proxies embedded images, routing every outbound request through
an SSRF-safe fetcher.
"""

__version__ = "0.1.0"
