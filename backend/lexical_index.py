"""
Lexical index module for Memento.

Inverted index from token to the set of document ids containing it.
Not synchronized on its own; callers share the engine's read-write lock.
"""

import json
import logging
import os
import re
from typing import Dict, Iterable, List, Optional, Set

from errors import IndexingFailure

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def tokenize(text: str) -> List[str]:
    """
    Split text into index tokens.

    Lowercases, turns punctuation into whitespace, splits on whitespace and
    drops single-character tokens. Order and repeats are preserved.
    """
    if not text:
        return []
    cleaned = _PUNCTUATION_RE.sub(" ", text.lower())
    return [token for token in cleaned.split() if len(token) > 1]


class LexicalIndex:
    """Token -> document id postings with per-document replace semantics."""

    def __init__(self, index_path: Optional[str] = None):
        """
        Initialize the lexical index.

        Args:
            index_path: Optional JSON file the postings are persisted to
        """
        self.index_path = index_path
        self.postings: Dict[str, Set[str]] = {}
        self.doc_tokens: Dict[str, Set[str]] = {}
        self._load()

    def add_document(self, doc_id: str, tokens: Iterable[str], persist: bool = True) -> int:
        """
        Index a document's tokens.

        Re-adding an id replaces its previous postings, so indexing the same
        document twice leaves the index unchanged.

        Args:
            doc_id: Document id
            tokens: Document tokens, repeats allowed
            persist: Write the index file now; batch writers pass False and call save()

        Returns:
            Number of distinct tokens indexed for the document
        """
        distinct = {token for token in tokens if token}
        self._remove_postings(doc_id)

        for token in distinct:
            self.postings.setdefault(token, set()).add(doc_id)
        self.doc_tokens[doc_id] = distinct

        if persist:
            self._save()
        return len(distinct)

    def remove_document(self, doc_id: str, persist: bool = True) -> bool:
        removed = self._remove_postings(doc_id)
        if removed and persist:
            self._save()
        return removed

    def get_tokens(self, doc_id: str) -> Optional[Set[str]]:
        tokens = self.doc_tokens.get(doc_id)
        return set(tokens) if tokens is not None else None

    def save(self):
        self._save()

    def query(self, tokens: Iterable[str]) -> Dict[str, float]:
        """
        Score documents against query tokens.

        Query tokens are de-duplicated, so the score is the share of distinct
        query tokens a document contains and always lies in [0, 1].

        Returns:
            Mapping of document id to lexical score, matches only
        """
        distinct = {token for token in tokens if token}
        if not distinct:
            return {}

        matches: Dict[str, int] = {}
        for token in distinct:
            for doc_id in self.postings.get(token, ()):
                matches[doc_id] = matches.get(doc_id, 0) + 1

        total = len(distinct)
        return {doc_id: count / total for doc_id, count in matches.items()}

    def contains(self, doc_id: str) -> bool:
        return doc_id in self.doc_tokens

    def __len__(self) -> int:
        return len(self.doc_tokens)

    def get_stats(self) -> Dict:
        return {
            "documents": len(self.doc_tokens),
            "tokens": len(self.postings),
            "index_file": self.index_path,
        }

    def clear(self):
        self.postings = {}
        self.doc_tokens = {}
        if self.index_path and os.path.exists(self.index_path):
            os.remove(self.index_path)

    def _remove_postings(self, doc_id: str) -> bool:
        previous = self.doc_tokens.pop(doc_id, None)
        if previous is None:
            return False
        for token in previous:
            posting = self.postings.get(token)
            if posting is None:
                continue
            posting.discard(doc_id)
            if not posting:
                del self.postings[token]
        return True

    def _load(self):
        """Load postings from the JSON file, if any."""
        if not self.index_path or not os.path.exists(self.index_path):
            return
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self.doc_tokens = {doc_id: set(tokens) for doc_id, tokens in raw.items()}
            for doc_id, tokens in self.doc_tokens.items():
                for token in tokens:
                    self.postings.setdefault(token, set()).add(doc_id)
            logger.info("Loaded lexical index with %d documents", len(self.doc_tokens))
        except (OSError, ValueError) as e:
            logger.warning("Failed to load lexical index: %s", e)
            self.postings = {}
            self.doc_tokens = {}

    def _save(self):
        # Postings are derived from doc_tokens, which is all that gets written.
        if not self.index_path:
            return
        payload = {doc_id: sorted(tokens) for doc_id, tokens in self.doc_tokens.items()}
        tmp_path = f"{self.index_path}.tmp"
        try:
            os.makedirs(os.path.dirname(self.index_path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.index_path)
        except OSError as e:
            raise IndexingFailure(f"Failed to save lexical index: {e}") from e
