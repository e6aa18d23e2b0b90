"""Exception types shared across the Recollect pipeline."""


class RecollectError(Exception):
    """Base class for Recollect errors."""
    pass


class ClassificationError(RecollectError):
    """Classification service failed or returned an unusable response."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class EmbeddingError(RecollectError):
    """Embedding generation failed."""
    pass


class StorageUnavailableError(RecollectError):
    """Chunk/entity storage could not be read for a user scope."""
    pass


class CacheUnavailableError(RecollectError):
    """Semantic cache is not initialized or its backing store failed."""
    pass
