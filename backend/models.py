"""Shared backend models for Memento."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class IndexState(str, Enum):
    CAPTURED = "captured"
    CONVERTED = "converted"
    INDEXED = "indexed"
    FAILED = "failed"


class SearchMode(str, Enum):
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Derive a document id from a URL.

    Strips the scheme, a leading ``www.`` and one trailing slash, so repeated
    captures of the same page resolve to the same id.
    """
    normalized = _SCHEME_RE.sub("", (url or "").strip())
    if normalized.startswith("www."):
        normalized = normalized[len("www.") :]
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def _timestamp() -> float:
    return time.time()


@dataclass
class DocumentRecord:
    """A captured page and its indexing state."""

    id: str
    url: str
    title: str = ""
    content: Optional[str] = ""
    timestamp: float = field(default_factory=_timestamp)
    state: IndexState = IndexState.CAPTURED
    content_ref: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_capture(
        cls, url: str, title: str, content: str, timestamp: Optional[float] = None
    ) -> "DocumentRecord":
        return cls(
            id=normalize_url(url),
            url=url,
            title=title or "",
            content=content,
            timestamp=timestamp if timestamp is not None else time.time(),
        )


# API payloads

class SearchHitPayload(BaseModel):
    url: str
    title: str
    snippet: str
    score: float
    related: List[str] = Field(default_factory=list)


class SearchResponsePayload(BaseModel):
    results: List[SearchHitPayload] = Field(default_factory=list)


class ErrorPayload(BaseModel):
    error: str
    detail: str


class IngestResponsePayload(BaseModel):
    success: bool = True
    id: str
    state: IndexState


class DocumentPayload(BaseModel):
    id: str
    url: str
    title: str
    timestamp: float
    state: IndexState
    content: Optional[str] = None
    error: Optional[str] = None


# Request payloads

class SearchRequest(BaseModel):
    """Query boundary request.

    Validation of ``query``, ``mode`` and ``limit`` is left to the query
    engine so a bad request surfaces as ``InvalidQuery`` rather than a schema
    error.
    """

    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    mode: str = SearchMode.HYBRID.value
    limit: int = 10
    include_related: bool = Field(default=False, alias="includeRelated")


class ViewportEntryPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    time_visible_ms: float = Field(
        default=0.0,
        validation_alias=AliasChoices("timeVisibleMs", "timeVisible", "time_visible_ms"),
    )
    visibility_percentage: float = Field(
        default=0.0,
        validation_alias=AliasChoices("visibilityPercentage", "visibility_percentage"),
    )


class InteractionDataPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    viewport_data: Dict[str, ViewportEntryPayload] = Field(
        default_factory=dict, alias="viewportData"
    )
    cursor_movement: float = Field(default=0.0, alias="cursorMovement")
    scroll_events: int = Field(default=0, alias="scrollEvents")
    observed_duration_ms: float = Field(default=0.0, alias="observedDurationMs")


class IngestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    title: str = ""
    content: str
    timestamp: Optional[datetime] = None
    interaction_data: Optional[InteractionDataPayload] = Field(
        default=None, alias="interactionData"
    )


class InteractionReportRequest(InteractionDataPayload):
    url: str
