"""Exception taxonomy for the clustering and search engine.

Every error raised on purpose by crowdlens derives from CrowdLensError, so
callers can catch the whole family while the specific classes keep their
natural builtin bases (ValueError, KeyError).
"""

from typing import Optional


class CrowdLensError(Exception):
    """Base class for all crowdlens errors."""
    pass


class DimensionMismatch(CrowdLensError, ValueError):
    """Raised when two embeddings of different length are compared."""

    def __init__(self, len_a: int, len_b: int):
        self.len_a = len_a
        self.len_b = len_b
        super().__init__(
            f"Embedding vectors must have same length, got {len_a} and {len_b}"
        )


class NotFound(CrowdLensError, KeyError):
    """Raised when a photo, cluster, face or event id is unknown."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind.capitalize()} not found: {entity_id}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class ProviderFailure(CrowdLensError):
    """Raised when the vision provider fails or times out."""

    def __init__(
        self,
        message: str,
        code: str = "PROVIDER_ERROR",
        retryable: bool = False
    ):
        self.message = message
        self.code = code
        self.retryable = retryable
        super().__init__(message)


class PhotoNotPending(CrowdLensError, ValueError):
    """Raised when processing a photo that has left the pending state."""

    def __init__(self, photo_id: str, status: str):
        self.photo_id = photo_id
        self.status = status
        super().__init__(
            f"Photo {photo_id} is {status}; only pending photos can be processed "
            f"(use reprocess_photo)"
        )


class PersistenceFailure(CrowdLensError):
    """Raised when the storage backend fails to write a record."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class LockTimeout(CrowdLensError):
    """Raised when an event lock cannot be acquired in time."""
    pass


class ClaimError(CrowdLensError):
    """Base class for cluster ownership errors."""
    pass


class AlreadyClaimed(ClaimError):
    """Raised when claiming a cluster somebody already owns."""
    pass


class NotClaimed(ClaimError):
    """Raised when unclaiming a cluster nobody owns."""
    pass
