"""Attention aggregation for captured pages.

Reduces periodic viewport/interaction telemetry into one record per document.
Merging is done by pure reducers so it can be tested without storage.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional

from models import InteractionDataPayload

logger = logging.getLogger(__name__)

# Reports below this visible time are noise and never reach storage.
MIN_SIGNIFICANT_MS = 500.0


@dataclass(frozen=True)
class ElementAttention:
    element_path: str
    time_visible_ms: float = 0.0
    max_visibility_percentage: float = 0.0

    @property
    def weighted_ms(self) -> float:
        return self.time_visible_ms * min(max(self.max_visibility_percentage, 0.0), 100.0) / 100.0


@dataclass(frozen=True)
class AttentionRecord:
    elements: Mapping[str, ElementAttention] = field(default_factory=dict)
    cursor_movement_total: float = 0.0
    scroll_event_count: int = 0
    observed_duration_ms: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "elements": {
                path: {
                    "time_visible_ms": element.time_visible_ms,
                    "max_visibility_percentage": element.max_visibility_percentage,
                }
                for path, element in self.elements.items()
            },
            "cursor_movement_total": self.cursor_movement_total,
            "scroll_event_count": self.scroll_event_count,
            "observed_duration_ms": self.observed_duration_ms,
        }

    @classmethod
    def from_dict(cls, raw: Mapping) -> "AttentionRecord":
        elements = {
            path: ElementAttention(
                element_path=path,
                time_visible_ms=float(data.get("time_visible_ms", 0.0)),
                max_visibility_percentage=float(data.get("max_visibility_percentage", 0.0)),
            )
            for path, data in (raw.get("elements") or {}).items()
        }
        return cls(
            elements=elements,
            cursor_movement_total=float(raw.get("cursor_movement_total", 0.0)),
            scroll_event_count=int(raw.get("scroll_event_count", 0)),
            observed_duration_ms=float(raw.get("observed_duration_ms", 0.0)),
        )


def merge_element(current: ElementAttention, reported: ElementAttention) -> ElementAttention:
    """Add visible time and keep the larger visibility percentage."""
    return replace(
        current,
        time_visible_ms=current.time_visible_ms + reported.time_visible_ms,
        max_visibility_percentage=max(
            current.max_visibility_percentage, reported.max_visibility_percentage
        ),
    )


def merge_records(current: AttentionRecord, reported: AttentionRecord) -> AttentionRecord:
    elements: Dict[str, ElementAttention] = dict(current.elements)
    for path, element in reported.elements.items():
        if path in elements:
            elements[path] = merge_element(elements[path], element)
        else:
            elements[path] = element

    return AttentionRecord(
        elements=elements,
        cursor_movement_total=current.cursor_movement_total + reported.cursor_movement_total,
        scroll_event_count=current.scroll_event_count + reported.scroll_event_count,
        # Reports carry elapsed time since tracking started, not a delta.
        observed_duration_ms=max(current.observed_duration_ms, reported.observed_duration_ms),
    )


def record_from_report(
    report: InteractionDataPayload, min_significant_ms: float = MIN_SIGNIFICANT_MS
) -> AttentionRecord:
    """Build a record from one telemetry report, dropping insignificant elements."""
    elements: Dict[str, ElementAttention] = {}
    for path, entry in report.viewport_data.items():
        if entry.time_visible_ms < min_significant_ms:
            continue
        elements[path] = ElementAttention(
            element_path=path,
            time_visible_ms=entry.time_visible_ms,
            max_visibility_percentage=entry.visibility_percentage,
        )

    return AttentionRecord(
        elements=elements,
        cursor_movement_total=max(report.cursor_movement, 0.0),
        scroll_event_count=max(report.scroll_events, 0),
        observed_duration_ms=max(report.observed_duration_ms, 0.0),
    )


class AttentionAggregator:
    """Holds one AttentionRecord per document id."""

    def __init__(self, path: Optional[str] = None, min_significant_ms: float = MIN_SIGNIFICANT_MS):
        self.path = path
        self.min_significant_ms = min_significant_ms
        self._records: Dict[str, AttentionRecord] = {}
        self._lock = threading.Lock()
        self._load()

    def apply_report(self, doc_id: str, report: InteractionDataPayload) -> AttentionRecord:
        incoming = record_from_report(report, self.min_significant_ms)
        with self._lock:
            current = self._records.get(doc_id, AttentionRecord())
            merged = merge_records(current, incoming)
            self._records[doc_id] = merged
            self._save()
        return merged

    def get(self, doc_id: str) -> Optional[AttentionRecord]:
        with self._lock:
            return self._records.get(doc_id)

    def engagement(self, doc_id: str) -> float:
        """Visibility-weighted visible time over observed duration, in [0, 1]."""
        record = self.get(doc_id)
        if record is None or record.observed_duration_ms <= 0:
            return 0.0
        weighted = sum(element.weighted_ms for element in record.elements.values())
        return min(weighted / record.observed_duration_ms, 1.0)

    def top_elements(self, doc_id: str, limit: int = 5) -> List[ElementAttention]:
        record = self.get(doc_id)
        if record is None:
            return []
        ranked = sorted(
            record.elements.values(),
            key=lambda element: (element.weighted_ms, element.time_visible_ms),
            reverse=True,
        )
        return ranked[: max(limit, 0)]

    def __len__(self) -> int:
        return len(self._records)

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self._records = {
                doc_id: AttentionRecord.from_dict(data) for doc_id, data in raw.items()
            }
            logger.info("Loaded attention data for %d documents", len(self._records))
        except (OSError, ValueError) as e:
            logger.warning("Failed to load attention data: %s", e)
            self._records = {}

    def _save(self):
        if not self.path:
            return
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(
                    {doc_id: record.to_dict() for doc_id, record in self._records.items()},
                    f,
                    indent=2,
                )
        except OSError as e:
            logger.warning("Failed to save attention data: %s", e)
