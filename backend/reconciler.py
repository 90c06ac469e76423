"""Background reconciliation of the document store with the search indexes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from embedder import EmbeddingProvider
from errors import ConversionFailure, MementoError
from lexical_index import LexicalIndex, tokenize
from locks import ReadWriteLock
from models import DocumentRecord, IndexState
from query_engine import clean_text
from semantic_index import SemanticIndex
from storage import DocumentStore

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10
# Index files are rewritten after this many changes and at the end of a tick.
SAVE_EVERY = 50


class Converter:
    """Turns stored page content into indexable text."""

    def convert(self, record: DocumentRecord) -> str:
        raise NotImplementedError


class MarkdownConverter(Converter):
    """Markdown arrives already converted by the capture side; only clean it up."""

    def convert(self, record: DocumentRecord) -> str:
        text = clean_text(record.content or "")
        if not text:
            raise ConversionFailure(f"No indexable text in {record.id}")
        return text


@dataclass
class ReconcileReport:
    indexed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.indexed) + len(self.skipped) + len(self.failed)


class Reconciler:
    """Drives unindexed documents through lexical and semantic indexing.

    Each document is handled on its own: a failure is logged and the document
    stays unindexed until a later tick. There is no retry cap.
    """

    def __init__(
        self,
        store: DocumentStore,
        lexical: LexicalIndex,
        semantic: SemanticIndex,
        embedder: EmbeddingProvider,
        lock: ReadWriteLock,
        converter: Optional[Converter] = None,
        interval: float = 10.0,
    ):
        self.store = store
        self.lexical = lexical
        self.semantic = semantic
        self.embedder = embedder
        self.lock = lock
        self.converter = converter or MarkdownConverter()
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()
        self._save_lock = threading.Lock()

    def run_once(self) -> ReconcileReport:
        with self._run_lock:
            report = ReconcileReport()
            unsaved = 0
            for record in self.store.list_unindexed():
                if record.state == IndexState.FAILED:
                    continue
                outcome = self._reconcile(record)
                getattr(report, outcome).append(record.id)
                if outcome == "skipped":
                    continue

                unsaved += 1
                if unsaved >= SAVE_EVERY:
                    self._flush()
                    unsaved = 0
                if outcome == "indexed" and len(report.indexed) % PROGRESS_EVERY == 0:
                    logger.info("Indexed %d documents", len(report.indexed))

            if unsaved:
                self._flush()

        if report.processed:
            logger.info(
                "Reconcile finished: %d indexed, %d skipped, %d failed",
                len(report.indexed),
                len(report.skipped),
                len(report.failed),
            )
        return report

    def index_document(self, record: DocumentRecord, text: str, persist: bool = True) -> bool:
        """Insert one document into both indexes and mark it indexed, atomically for readers.

        Everything that can be checked up front is checked before the write
        lock is taken. Any later failure restores the document's previous
        index entries before the lock is released, so readers see it in both
        indexes or in neither. If the stored record changed while this ran,
        the previous entries are restored too and False is returned.
        """
        tokens = tokenize(f"{text} {record.title}")
        vector = self.embedder.embed(text)
        self.semantic.check_dimension(vector)

        with self.lock.write():
            previous_tokens = self.lexical.get_tokens(record.id)
            previous_vector = self.semantic.get_vector(record.id)
            try:
                self.lexical.add_document(record.id, tokens, persist=False)
                self.semantic.add_document(record.id, vector, persist=False)
                indexed = self.store.mark_indexed(record.id, expected=record)
                if not indexed and self.store.get(record.id, with_content=False).state != IndexState.INDEXED:
                    self._restore(record.id, previous_tokens, previous_vector)
            except Exception:
                self._restore(record.id, previous_tokens, previous_vector)
                raise

        if persist:
            self.save_indexes()
        return indexed

    def save_indexes(self):
        """Write both indexes to disk outside the exclusive section."""
        with self._save_lock, self.lock.read():
            self.lexical.save()
            self.semantic.save()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="memento-reconciler", daemon=True)
        self._thread.start()
        logger.info("Reconciler started (interval %.1fs)", self.interval)

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                # the thread only ends on stop(); try again next tick
                logger.exception("Reconcile tick failed")
            self._stop.wait(self.interval)

    def _reconcile(self, record: DocumentRecord) -> str:
        if record.content is None:
            logger.warning("Content missing for %s (%s); leaving unindexed", record.id, record.content_ref)
            return "skipped"

        try:
            text = self.converter.convert(record)
        except ConversionFailure as exc:
            logger.warning("Conversion failed for %s: %s", record.id, exc)
            try:
                self._mark_failed(record, str(exc))
            except MementoError as mark_exc:
                logger.warning("Could not mark %s failed: %s", record.id, mark_exc)
                return "skipped"
            return "failed"
        except Exception:
            logger.exception("Converter error for %s", record.id)
            return "skipped"

        try:
            self.store.mark_converted(record.id)
            indexed = self.index_document(record, text, persist=False)
        except MementoError as exc:
            logger.warning("Indexing failed for %s: %s", record.id, exc)
            return "skipped"
        except Exception:
            logger.exception("Indexing failed for %s", record.id)
            return "skipped"
        return "indexed" if indexed else "skipped"

    def _mark_failed(self, record: DocumentRecord, reason: str):
        with self.lock.write():
            self.lexical.remove_document(record.id, persist=False)
            self.semantic.remove_document(record.id, persist=False)
            self.store.mark_failed(record.id, reason)

    def _restore(self, doc_id: str, tokens, vector):
        """Put a document's index entries back to what they were. Caller holds the write lock."""
        if tokens is None:
            self.lexical.remove_document(doc_id, persist=False)
        else:
            self.lexical.add_document(doc_id, tokens, persist=False)
        if vector is None:
            self.semantic.remove_document(doc_id, persist=False)
        else:
            self.semantic.add_document(doc_id, vector, persist=False)

    def _flush(self):
        # A lost write is repaired at startup: indexed documents missing from an index are requeued.
        try:
            self.save_indexes()
        except MementoError as exc:
            logger.warning("Could not save indexes: %s", exc)
