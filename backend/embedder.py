"""
Embedding module for Memento.

Defines the embedding provider seam used by the semantic index. The default
provider is a deterministic hash-derived placeholder, NOT a trained
embedding; a sentence-transformers model can be selected instead.
"""

import hashlib
import logging
import math
import os
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_EMBED_DIM = 64


class EmbeddingProvider:
    """Turns text into fixed-dimension vectors."""

    embedding_dim: int

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]

    def get_embedding_dim(self) -> int:
        return self.embedding_dim


class HashEmbeddingProvider(EmbeddingProvider):
    """Placeholder vectors seeded from a SHA-256 digest of the text.

    Identical input always yields the identical vector. Values lie in [0, 1],
    so any two non-empty texts have a positive cosine similarity.
    """

    def __init__(self, embedding_dim: Optional[int] = None):
        dim = embedding_dim or int(os.environ.get("MEMENTO_EMBED_DIM", DEFAULT_EMBED_DIM))
        if dim <= 0:
            raise ValueError(f"Embedding dimension must be positive, got {dim}")
        self.embedding_dim = dim

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            return [0.0] * self.embedding_dim

        digest = hashlib.sha256(text.encode("utf-8")).digest()
        seed = int.from_bytes(digest[:8], "big")
        # Keep the phase argument small enough for a precise sin().
        phase = (seed % 1_000_003) + 1
        return [math.sin(phase * (i + 1)) * 0.5 + 0.5 for i in range(self.embedding_dim)]


class SentenceTransformerProvider(EmbeddingProvider):
    """Handles text embedding using sentence-transformers."""

    def __init__(self, model_name: Optional[str] = None):
        """
        Initialize the provider.

        Args:
            model_name: Name of the sentence-transformers model to use.
                       Defaults to `MEMENTO_EMBED_MODEL` or `BAAI/bge-small-en-v1.5`.
        """
        self.model_name = model_name or os.environ.get("MEMENTO_EMBED_MODEL") or "BAAI/bge-small-en-v1.5"
        self.model = None
        self.embedding_dim = 384  # common for many small ST models; refined after load

    def load_model(self):
        """Lazy load the sentence-transformers model."""
        if self.model is not None:
            return
        try:
            logger.info("Loading sentence-transformers model: %s", self.model_name)
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise RuntimeError(
                "sentence-transformers is required for model embeddings. "
                f"Install the 'models' extra to use '{self.model_name}'. Reason: {e}"
            ) from e

        try:
            self.model = SentenceTransformer(self.model_name)
            test_embedding = self.model.encode(["test"])
            self.embedding_dim = test_embedding.shape[1]
            logger.info("Model loaded. Embedding dimension: %d", self.embedding_dim)
        except Exception as e:
            raise RuntimeError(
                f"Failed to load sentence-transformers model '{self.model_name}': {e}"
            ) from e

    def embed(self, text: str) -> List[float]:
        self.load_model()

        if not text or not text.strip():
            return [0.0] * self.embedding_dim

        try:
            embedding = self.model.encode([text], convert_to_numpy=True)
            return embedding[0].tolist()
        except Exception as e:
            raise RuntimeError(f"Embedding failed: {e}") from e

    def get_embedding_dim(self) -> int:
        self.load_model()
        return self.embedding_dim


def create_embedding_provider() -> EmbeddingProvider:
    """Pick the provider from the environment; the hash placeholder by default."""
    if os.environ.get("MEMENTO_EMBED_MODEL"):
        return SentenceTransformerProvider()
    return HashEmbeddingProvider()
