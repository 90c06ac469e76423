"""Hybrid lexical + semantic retrieval with attention-weighted ranking."""

from __future__ import annotations

import logging
import os
import re
from typing import Dict, Iterable, List, Optional

from attention import AttentionAggregator
from embedder import EmbeddingProvider
from errors import InvalidQuery, SearchFailure
from journey import JourneyGraph
from lexical_index import LexicalIndex, tokenize
from locks import ReadWriteLock
from models import DocumentRecord, SearchHitPayload, SearchMode
from semantic_index import SemanticIndex
from storage import DocumentStore

logger = logging.getLogger(__name__)

MAX_LIMIT = 100
SNIPPET_CHARS = 200

_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """Drop HTML comments (capture-side importance markers) and collapse whitespace."""
    without_comments = _COMMENT_RE.sub(" ", text or "")
    return _WHITESPACE_RE.sub(" ", without_comments).strip()


def make_snippet(content: str, terms: Iterable[str] = (), max_chars: int = SNIPPET_CHARS) -> str:
    """Excerpt of at most ``max_chars`` characters, centred on the first matched term."""
    text = clean_text(content)
    if len(text) <= max_chars:
        return text

    lowered = text.lower()
    positions = [lowered.find(term) for term in terms if term]
    hits = [pos for pos in positions if pos >= 0]
    if not hits:
        return text[: max_chars - 3].rstrip() + "..."

    budget = max_chars - 6  # room for leading and trailing ellipses
    start = max(0, min(hits) - budget // 2)
    end = min(len(text), start + budget)
    start = max(0, end - budget)

    snippet = text[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def combine_scores(
    lexical: Dict[str, float], semantic: Dict[str, float]
) -> Dict[str, float]:
    """Mean of both scores where a document matched twice, else its single score."""
    combined: Dict[str, float] = {}
    for doc_id in set(lexical) | set(semantic):
        if doc_id in lexical and doc_id in semantic:
            combined[doc_id] = (lexical[doc_id] + semantic[doc_id]) / 2.0
        elif doc_id in lexical:
            combined[doc_id] = lexical[doc_id]
        else:
            combined[doc_id] = semantic[doc_id]
    return combined


def _clamp(score: float) -> float:
    return min(max(score, 0.0), 1.0)


class HybridQueryEngine:
    """Merges the lexical and semantic indexes into one ranked result list."""

    def __init__(
        self,
        store: DocumentStore,
        lexical: LexicalIndex,
        semantic: SemanticIndex,
        embedder: EmbeddingProvider,
        lock: Optional[ReadWriteLock] = None,
        attention: Optional[AttentionAggregator] = None,
        journey: Optional[JourneyGraph] = None,
        attention_floor_ms: Optional[float] = None,
        attention_max_boost: Optional[float] = None,
    ):
        self.store = store
        self.lexical = lexical
        self.semantic = semantic
        self.embedder = embedder
        self.lock = lock or ReadWriteLock()
        self.attention = attention
        self.journey = journey
        self.attention_floor_ms = (
            attention_floor_ms
            if attention_floor_ms is not None
            else float(os.environ.get("MEMENTO_ATTENTION_FLOOR_MS", "5000"))
        )
        self.attention_max_boost = (
            attention_max_boost
            if attention_max_boost is not None
            else float(os.environ.get("MEMENTO_ATTENTION_MAX_BOOST", "0.25"))
        )

    def search(
        self,
        query: str,
        mode: str = SearchMode.HYBRID.value,
        limit: int = 10,
        include_related: bool = False,
    ) -> List[SearchHitPayload]:
        if not isinstance(query, str) or not query.strip():
            raise InvalidQuery("Query must be a non-empty string")
        try:
            search_mode = SearchMode(mode)
        except ValueError:
            raise InvalidQuery(f"Unknown search mode: {mode!r}") from None
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
            raise InvalidQuery(f"Limit must be an integer between 1 and {MAX_LIMIT}")

        with self.lock.read():
            try:
                return self._search(query, search_mode, limit, include_related)
            except SearchFailure:
                raise
            except Exception as exc:
                logger.exception("Search failed for query %r", query)
                raise SearchFailure(f"Search failed: {exc}") from exc

    def attention_boost(self, doc_id: str) -> float:
        """Multiplier in [1, 1 + max_boost] for documents the user actually read."""
        if self.attention is None:
            return 1.0
        record = self.attention.get(doc_id)
        if record is None or record.observed_duration_ms < self.attention_floor_ms:
            return 1.0
        return 1.0 + self.attention_max_boost * self.attention.engagement(doc_id)

    def _search(
        self, query: str, mode: SearchMode, limit: int, include_related: bool
    ) -> List[SearchHitPayload]:
        tokens = tokenize(query)

        lexical_scores: Dict[str, float] = {}
        semantic_scores: Dict[str, float] = {}
        if mode in (SearchMode.LEXICAL, SearchMode.HYBRID):
            lexical_scores = self.lexical.query(tokens)
        if mode in (SearchMode.SEMANTIC, SearchMode.HYBRID):
            query_vector = self.embedder.embed(query)
            # Orthogonal or undefined similarity is not a match.
            semantic_scores = {
                doc_id: score
                for doc_id, score in self.semantic.query(query_vector).items()
                if score > 0
            }

        combined = combine_scores(lexical_scores, semantic_scores)

        candidates: List[tuple] = []
        for doc_id, score in combined.items():
            try:
                record = self.store.get(doc_id, with_content=False)
            except FileNotFoundError:
                logger.debug("Index entry %s has no stored document", doc_id)
                continue
            boosted = _clamp(score * self.attention_boost(doc_id))
            candidates.append((boosted, record))

        candidates.sort(key=lambda item: (item[0], item[1].timestamp), reverse=True)

        hits: List[SearchHitPayload] = []
        for score, record in candidates[:limit]:
            hits.append(self._to_hit(record, score, tokens, include_related))
        return hits

    def _to_hit(
        self, record: DocumentRecord, score: float, tokens: List[str], include_related: bool
    ) -> SearchHitPayload:
        content = self.store.get(record.id).content or ""
        related: List[str] = []
        if include_related and self.journey is not None:
            related = self.journey.related(record.url)
        return SearchHitPayload(
            url=record.url,
            title=record.title,
            snippet=make_snippet(content, tokens),
            score=score,
            related=related,
        )
