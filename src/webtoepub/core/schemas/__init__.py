"""Pydantic schemas for request/response validation.

Sub-modules:
    novel - NovelInfoRequest, JobQueuedResponse, ChaptersBatchRequest/Response,
            ErrorResponse
"""

from __future__ import annotations
