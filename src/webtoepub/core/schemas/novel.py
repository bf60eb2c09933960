"""Pydantic request/response schemas for the novel and chapter routes.

Request fields are all optional at the schema level: a missing field is a
400 raised by the route (or the orchestrator) with a specific message, not
a generic validation failure.  Field names follow the browser client's
camelCase wire format through aliases.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NovelInfoRequest(BaseModel):
    """Payload for ``POST /api/novel-info``.

    Attributes:
        url: Table-of-contents URL of the novel to analyse.
        job_id: Client-chosen job identifier (``jobId`` on the wire); the
            client must already be listening on this job's channel.
    """

    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")


class JobQueuedResponse(BaseModel):
    """Acknowledgement returned once a job has been scheduled."""

    status: str
    message: str


class ChaptersBatchRequest(BaseModel):
    """Payload for ``POST /api/chapters-batch``.

    Attributes:
        chapters: Chapter descriptors (``{"url", "title"?}`` objects or bare
            URL strings).  Typed loosely so that a non-array value reaches
            the route and is rejected with a 400.
        job_id: Optional channel for ``chapter-progress`` events.
        user_agent: Optional ``User-Agent`` override for every fetch.
    """

    model_config = ConfigDict(populate_by_name=True)

    chapters: Any = None
    job_id: Optional[str] = Field(default=None, alias="jobId")
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


class ChaptersBatchResponse(BaseModel):
    """Per-chapter results in request order."""

    results: List[Dict[str, Any]]


class ErrorResponse(BaseModel):
    """Body of every non-2xx JSON response."""

    error: str
    details: Optional[Any] = None
