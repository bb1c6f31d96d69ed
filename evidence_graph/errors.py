"""
Exception hierarchy for the evidence graph pipeline.

Only two boundaries raise: the embedding fetch (misaligned or failed
batches) and input ingestion (records that fail schema validation).
Every other stage degrades and reports diagnostics instead.
"""


class EvidenceGraphError(Exception):
    """Base class for all pipeline errors."""


class EmbeddingError(EvidenceGraphError):
    """An embedding batch could not be produced."""

    def __init__(self, message: str, batch_index: int = 0):
        super().__init__(message)
        self.batch_index = batch_index


class EmbeddingDimensionError(EmbeddingError):
    """A returned vector does not have the expected dimensionality."""

    def __init__(self, expected: int, received: int, batch_index: int = 0):
        super().__init__(
            f"Embedding dimension mismatch in batch {batch_index}: expected {expected}, got {received}",
            batch_index=batch_index,
        )
        self.expected = expected
        self.received = received


class EmbeddingCountError(EmbeddingError):
    """The number of returned vectors does not match the number of inputs."""

    def __init__(self, expected: int, received: int, batch_index: int = 0):
        super().__init__(
            f"Embedding count mismatch in batch {batch_index}: expected {expected}, got {received}",
            batch_index=batch_index,
        )
        self.expected = expected
        self.received = received


class InputValidationError(EvidenceGraphError):
    """Upstream records failed validation at ingestion."""

    def __init__(self, kind: str, errors):
        super().__init__(f"Invalid {kind} input: {errors}")
        self.kind = kind
        self.errors = errors
