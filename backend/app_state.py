"""Backend application state: one engine owning every shared component."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from attention import AttentionAggregator, AttentionRecord
from embedder import EmbeddingProvider, create_embedding_provider
from errors import CaptureFailure
from journey import JourneyGraph
from lexical_index import LexicalIndex
from locks import ReadWriteLock
from models import (
    DocumentRecord,
    IndexState,
    IngestRequest,
    InteractionDataPayload,
    SearchHitPayload,
    normalize_url,
)
from query_engine import HybridQueryEngine
from reconciler import Converter, ReconcileReport, Reconciler
from semantic_index import SemanticIndex
from storage import DocumentStore

logger = logging.getLogger(__name__)


def default_data_dir() -> Path:
    configured = os.environ.get("MEMENTO_DATA_DIR")
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parent / "storage"


class MementoEngine:
    """Holds the document store, indexes, attention and journey state.

    Every component shares this engine's read-write lock; there is no module
    level state.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        embedder: Optional[EmbeddingProvider] = None,
        converter: Optional[Converter] = None,
        reconcile_interval: Optional[float] = None,
    ):
        self.data_dir = Path(data_dir) if data_dir else default_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        index_dir = self.data_dir / "index"

        self.lock = ReadWriteLock()
        self._ingest_lock = threading.Lock()
        self.embedder = embedder or create_embedding_provider()
        self.store = DocumentStore(root=self.data_dir / "pages")
        self.lexical = LexicalIndex(index_path=str(index_dir / "lexical.json"))
        self.semantic = SemanticIndex(
            dimension=self.embedder.get_embedding_dim(),
            metadata_path=str(index_dir / "semantic.json"),
        )
        self.attention = AttentionAggregator(path=str(self.data_dir / "attention.json"))
        self.journey = JourneyGraph(path=str(self.data_dir / "journey.json"))

        if reconcile_interval is None:
            reconcile_interval = float(os.environ.get("MEMENTO_RECONCILE_INTERVAL", "10"))
        self.reconcile_interval = reconcile_interval

        self.query_engine = HybridQueryEngine(
            store=self.store,
            lexical=self.lexical,
            semantic=self.semantic,
            embedder=self.embedder,
            lock=self.lock,
            attention=self.attention,
            journey=self.journey,
        )
        self.reconciler = Reconciler(
            store=self.store,
            lexical=self.lexical,
            semantic=self.semantic,
            embedder=self.embedder,
            lock=self.lock,
            converter=converter,
            interval=reconcile_interval or 10.0,
        )

        self.verify_consistency()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self):
        if self.reconcile_interval > 0:
            self.reconciler.start()

    def stop(self):
        self.reconciler.stop(timeout=5.0)

    def verify_consistency(self) -> List[str]:
        """Requeue documents marked indexed that an index has lost, e.g. after a crash."""
        requeued: List[str] = []
        for doc_id, record in self.store.list_records().items():
            if record.state != IndexState.INDEXED:
                continue
            if self.lexical.contains(doc_id) and self.semantic.contains(doc_id):
                continue
            self.store.reset_state(doc_id)
            requeued.append(doc_id)
        if requeued:
            logger.info("Requeued %d documents missing from the indexes", len(requeued))
        return requeued

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------
    def ingest(self, request: IngestRequest) -> DocumentRecord:
        """Store a captured page, record the visit and merge any telemetry."""
        if not request.url or not normalize_url(request.url):
            raise CaptureFailure("Capture has no URL")

        timestamp = request.timestamp.timestamp() if request.timestamp else time.time()
        document = DocumentRecord.from_capture(
            url=request.url,
            title=request.title,
            content=request.content,
            timestamp=timestamp,
        )
        with self._ingest_lock:
            doc_id = self.store.put(document)
            self.journey.record_visit(request.url, request.title, timestamp)
            if request.interaction_data is not None:
                self.attention.apply_report(doc_id, request.interaction_data)
        return self.store.get(doc_id, with_content=False)

    def report_interaction(self, url: str, report: InteractionDataPayload) -> AttentionRecord:
        doc_id = normalize_url(url)
        if not doc_id:
            raise CaptureFailure("Interaction report has no URL")
        return self.attention.apply_report(doc_id, report)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------
    def search(
        self,
        query: str,
        mode: str = "hybrid",
        limit: int = 10,
        include_related: bool = False,
    ) -> List[SearchHitPayload]:
        return self.query_engine.search(query, mode=mode, limit=limit, include_related=include_related)

    def reconcile(self) -> ReconcileReport:
        return self.reconciler.run_once()

    def stats(self) -> Dict:
        with self.lock.read():
            lexical = self.lexical.get_stats()
            semantic = self.semantic.get_stats()
        return {
            "documents": self.store.count_by_state(),
            "lexical": lexical,
            "semantic": semantic,
            "attention_documents": len(self.attention),
            "journey_pages": len(self.journey.nodes),
            "reconciler_running": self.reconciler.running,
        }
