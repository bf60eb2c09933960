"""Safe outbound-fetch engine and novel crawl jobs.

Sub-modules:
- ``config``             - fetch limits and protocol constants
- ``ip_safety``          - IP safety classifier (private/reserved range checks)
- ``resolver``           - DNS resolve-and-pin against the classifier
- ``http_fetcher``       - redirect-walking fetcher with per-hop pinning
- ``content_extractor``  - generic novel TOC / chapter extraction
- ``batch``              - bounded-concurrency chapter batch fetcher
- ``tasks``              - detached novel-analysis jobs (run-and-report)
- ``router``             - FastAPI router (``/api/...`` and ``/ws``)
"""
