"""Filesystem-backed storage for captured pages."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from errors import StorageFailure
from models import DocumentRecord, IndexState

logger = logging.getLogger(__name__)


class DocumentStore:
    """Local JSON storage keyed by normalized-URL id.

    Each page is a ``<stem>.json`` metadata record with its content stored
    out-of-line in ``<stem>.md``.
    """

    def __init__(self, root: Optional[Path] = None):
        base_dir = Path(root) if root else Path(__file__).resolve().parent / "storage" / "pages"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.pages_dir = base_dir
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def put(self, document: DocumentRecord) -> str:
        """Upsert a document and return its resolved id.

        A new document, or one whose title or content changed, goes back to
        ``captured`` so the reconciler picks it up again.
        """
        with self._lock:
            existing = self._load(document.id)
            record = DocumentRecord(
                id=document.id,
                url=document.url,
                title=document.title,
                content=document.content,
                timestamp=document.timestamp,
                state=IndexState.CAPTURED,
                content_ref=self._content_path(document.id).name,
            )
            if existing is not None:
                unchanged = (
                    existing.title == document.title and existing.content == document.content
                )
                if unchanged:
                    record.state = existing.state
                    record.error = existing.error

            self._write_content(record)
            self._write_record(record)
            return record.id

    def get(self, doc_id: str, with_content: bool = True) -> DocumentRecord:
        record = self._load(doc_id, with_content)
        if record is None:
            raise FileNotFoundError(f"Document not found: {doc_id}")
        return record

    def exists(self, doc_id: str) -> bool:
        return self._record_path(doc_id).exists()

    def list_unindexed(self) -> Iterator[DocumentRecord]:
        """Yield documents not yet indexed.

        The directory is rescanned on every call, so a consumer can stop and
        start again without missing anything still pending.
        """
        for path in sorted(self.pages_dir.glob("*.json")):
            try:
                record = self._read_record(path)
            except StorageFailure as exc:
                logger.warning("Skipping unreadable record %s: %s", path.name, exc)
                continue
            if record.state != IndexState.INDEXED:
                yield record

    def list_records(self) -> Dict[str, DocumentRecord]:
        records: Dict[str, DocumentRecord] = {}
        for path in self.pages_dir.glob("*.json"):
            try:
                record = self._read_record(path, with_content=False)
            except StorageFailure:
                continue
            records[record.id] = record
        return records

    def count_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in IndexState}
        for record in self.list_records().values():
            counts[record.state.value] += 1
        return counts

    def mark_converted(self, doc_id: str) -> None:
        self._transition(doc_id, IndexState.CONVERTED)

    def mark_failed(self, doc_id: str, reason: str) -> None:
        self._transition(doc_id, IndexState.FAILED, error=reason)

    def mark_indexed(self, doc_id: str, expected: Optional[DocumentRecord] = None) -> bool:
        """Move a document to ``indexed``.

        With ``expected`` this is a compare-and-set: if the stored title or
        content no longer match what was indexed (a recapture landed in
        between), the state is left alone so the next tick re-indexes it.

        Returns:
            True if the document moved to ``indexed``
        """
        with self._lock:
            record = self.get(doc_id)
            if record.state == IndexState.INDEXED:
                return False
            if expected is not None and (
                record.title != expected.title or record.content != expected.content
            ):
                logger.info("%s changed while indexing; leaving it for the next tick", doc_id)
                return False
            record.state = IndexState.INDEXED
            record.error = None
            self._write_record(record)
            return True

    def reset_state(self, doc_id: str) -> None:
        with self._lock:
            record = self.get(doc_id)
            record.state = IndexState.CAPTURED
            record.error = None
            self._write_record(record)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _transition(self, doc_id: str, state: IndexState, error: Optional[str] = None):
        with self._lock:
            record = self.get(doc_id)
            # indexed is terminal; only mark_indexed and reset_state touch it
            if record.state == IndexState.INDEXED:
                return
            record.state = state
            record.error = error
            self._write_record(record)

    def _stem(self, doc_id: str) -> str:
        slug = re.sub(r"[^A-Za-z0-9._-]+", "_", doc_id).strip("_")[:80] or "page"
        digest = hashlib.sha1(doc_id.encode("utf-8")).hexdigest()[:12]
        return f"{slug}-{digest}"

    def _record_path(self, doc_id: str) -> Path:
        return self.pages_dir / f"{self._stem(doc_id)}.json"

    def _content_path(self, doc_id: str) -> Path:
        return self.pages_dir / f"{self._stem(doc_id)}.md"

    def _load(self, doc_id: str, with_content: bool = True) -> Optional[DocumentRecord]:
        path = self._record_path(doc_id)
        if not path.exists():
            return None
        return self._read_record(path, with_content)

    def _read_record(self, path: Path, with_content: bool = True) -> DocumentRecord:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as exc:
            raise StorageFailure(f"Failed to read {path.name}: {exc}") from exc

        url = raw.get("url") or ""
        record_id = raw.get("id") or path.stem
        try:
            state = IndexState(raw.get("state") or IndexState.CAPTURED.value)
        except ValueError:
            state = IndexState.CAPTURED
        # Older records carried a boolean flag instead of a lifecycle tag.
        if raw.get("indexed") is True and "state" not in raw:
            state = IndexState.INDEXED

        content_ref = raw.get("content_ref") or raw.get("mdFilename")
        content: Optional[str] = None
        if with_content:
            content = self._read_content(path.parent / content_ref) if content_ref else None

        return DocumentRecord(
            id=record_id,
            url=url,
            title=raw.get("title") or "",
            content=content,
            timestamp=self._parse_timestamp(raw.get("timestamp")),
            state=state,
            content_ref=content_ref,
            error=raw.get("error"),
        )

    def _parse_timestamp(self, value) -> float:
        if value is None or value == "":
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            pass
        # ISO strings as written by the capture side
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0

    def _read_content(self, path: Path) -> Optional[str]:
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageFailure(f"Failed to read content {path.name}: {exc}") from exc

    def _write_content(self, record: DocumentRecord):
        path = self._content_path(record.id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(record.content or "", encoding="utf-8")
        except OSError as exc:
            raise StorageFailure(f"Failed to write content for {record.id}: {exc}") from exc

    def _write_record(self, record: DocumentRecord):
        payload = {
            "id": record.id,
            "url": record.url,
            "title": record.title,
            "timestamp": record.timestamp,
            "state": record.state.value,
            "content_ref": record.content_ref,
            "error": record.error,
        }

        path = self._record_path(record.id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(path)
        except OSError as exc:
            raise StorageFailure(f"Failed to write record {record.id}: {exc}") from exc
