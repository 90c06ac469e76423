"""Error taxonomy for the Memento backend.

Each error carries a short ``kind`` string so the HTTP layer can report a
distinguishable failure without leaking class names.
"""

from __future__ import annotations


class MementoError(Exception):
    kind = "memento_error"


class CaptureFailure(MementoError):
    """An ingest payload was absent or garbled upstream."""

    kind = "capture_failure"


class ConversionFailure(MementoError):
    """Captured content cannot be turned into indexable text."""

    kind = "conversion_failure"


class StorageFailure(MementoError):
    """The document store could not read or write a record."""

    kind = "storage_failure"


class IndexingFailure(MementoError):
    """A single document could not be indexed; it stays unindexed."""

    kind = "indexing_failure"


class InvalidQuery(MementoError):
    kind = "invalid_query"


class SearchFailure(MementoError):
    kind = "search_failure"


class DimensionMismatch(MementoError, ValueError):
    """Vector dimension differs from the dimension the index was created with."""

    kind = "dimension_mismatch"

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimensions don't match: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
