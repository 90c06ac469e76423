"""
Semantic index module for Memento.

Stores one embedding per document and answers cosine-similarity queries
through a FAISS inner-product index over L2-normalized vectors.
Not synchronized on its own; callers share the engine's read-write lock.
"""

import json
import logging
import os
from typing import Dict, List, Optional, Sequence

import faiss
import numpy as np

from errors import DimensionMismatch, IndexingFailure

logger = logging.getLogger(__name__)


def _normalize(vectors: np.ndarray) -> np.ndarray:
    """Row-normalize; zero rows stay zero so their similarity is 0."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    return (vectors / safe).astype(np.float32)


class SemanticIndex:
    """Document id -> embedding vector with cosine-similarity search."""

    def __init__(self, dimension: int, metadata_path: Optional[str] = None):
        """
        Initialize the semantic index.

        Args:
            dimension: Embedding dimension, fixed for the lifetime of the index
            metadata_path: Optional JSON file the vectors are persisted to
        """
        if dimension <= 0:
            raise ValueError(f"Embedding dimension must be positive, got {dimension}")
        self.dimension = dimension
        self.metadata_path = metadata_path
        self.embeddings: Dict[str, List[float]] = {}
        self.positions: List[str] = []
        self.index = faiss.IndexFlatIP(dimension)

        self._load_metadata()

    def add_document(self, doc_id: str, vector: Sequence[float], persist: bool = True):
        """Store or replace a document's embedding.

        With ``persist=False`` only memory changes; call ``save()`` later.
        """
        self.check_dimension(vector)
        values = [float(v) for v in vector]

        replacing = doc_id in self.embeddings
        self.embeddings[doc_id] = values
        if replacing:
            # FAISS flat indexes have no in-place update.
            self._rebuild_index()
        else:
            self._add_to_index(doc_id, values)

        if persist:
            self._save_metadata()

    def remove_document(self, doc_id: str, persist: bool = True) -> bool:
        if doc_id not in self.embeddings:
            return False
        del self.embeddings[doc_id]
        self._rebuild_index()
        if persist:
            self._save_metadata()
        return True

    def save(self):
        self._save_metadata()

    def query(self, vector: Sequence[float]) -> Dict[str, float]:
        """
        Cosine similarity of ``vector`` against every stored document.

        Returns:
            Mapping of document id to similarity; 0 when either side has zero magnitude
        """
        self.check_dimension(vector)
        if self.index.ntotal == 0:
            return {}

        query_np = _normalize(np.array([vector], dtype=np.float32))
        distances, indices = self.index.search(query_np, self.index.ntotal)

        results: Dict[str, float] = {}
        for distance, idx in zip(distances[0], indices[0]):
            if idx == -1:  # No more results
                continue
            doc_id = self.positions[idx]
            results[doc_id] = float(np.clip(distance, -1.0, 1.0))
        return results

    def get_vector(self, doc_id: str) -> Optional[List[float]]:
        return self.embeddings.get(doc_id)

    def contains(self, doc_id: str) -> bool:
        return doc_id in self.embeddings

    def __len__(self) -> int:
        return len(self.embeddings)

    def get_stats(self) -> Dict:
        return {
            "documents": len(self.embeddings),
            "dimension": self.dimension,
            "faiss_index_size": self.index.ntotal,
            "metadata_file": self.metadata_path,
        }

    def clear(self):
        self.embeddings = {}
        self._rebuild_index()
        if self.metadata_path and os.path.exists(self.metadata_path):
            os.remove(self.metadata_path)

    def check_dimension(self, vector: Sequence[float]):
        if len(vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(vector))

    def _add_to_index(self, doc_id: str, values: List[float]):
        self.index.add(_normalize(np.array([values], dtype=np.float32)))
        self.positions.append(doc_id)

    def _rebuild_index(self):
        """Rebuild the FAISS index from the stored embeddings."""
        self.index = faiss.IndexFlatIP(self.dimension)
        self.positions = list(self.embeddings.keys())
        if self.positions:
            matrix = np.array([self.embeddings[doc_id] for doc_id in self.positions], dtype=np.float32)
            self.index.add(_normalize(matrix))

    def _load_metadata(self):
        """Load embeddings from the JSON file and rebuild the FAISS index."""
        if not self.metadata_path or not os.path.exists(self.metadata_path):
            return
        try:
            with open(self.metadata_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load semantic index: %s", e)
            return

        stored_dim = raw.get("dimension")
        if stored_dim != self.dimension:
            # Vectors from another provider are useless here; the store will re-index.
            logger.warning(
                "Discarding semantic index with dimension %s (expected %d)",
                stored_dim,
                self.dimension,
            )
            return

        self.embeddings = {doc_id: list(vec) for doc_id, vec in (raw.get("embeddings") or {}).items()}
        self._rebuild_index()
        logger.info("Loaded semantic index with %d vectors", self.index.ntotal)

    def _save_metadata(self):
        if not self.metadata_path:
            return
        tmp_path = f"{self.metadata_path}.tmp"
        try:
            os.makedirs(os.path.dirname(self.metadata_path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"dimension": self.dimension, "embeddings": self.embeddings}, f)
            os.replace(tmp_path, self.metadata_path)
        except OSError as e:
            raise IndexingFailure(f"Failed to save semantic index: {e}") from e
