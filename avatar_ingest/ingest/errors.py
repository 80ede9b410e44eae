"""Exception hierarchy for the ingestion pipeline.

Every failure that reaches a caller is an :class:`IngestError`.  Each instance
records the pipeline ``stage`` it was raised from, the source ``fingerprint``
when one had been computed, and whether retrying the same request could
succeed.  The HTTP layer and the migration worker branch on ``retryable``
rather than on concrete subclasses.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "IngestError",
    "DecodeError",
    "PolicyViolation",
    "SourceError",
    "FetchError",
    "StorageError",
    "TransientStorageError",
    "CatalogError",
]


class IngestError(RuntimeError):
    """Base exception for ingestion failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        fingerprint: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.fingerprint = fingerprint
        if retryable is not None:
            self.retryable = retryable

    def at(self, stage: str, fingerprint: Optional[str] = None) -> "IngestError":
        """Fill in the stage/fingerprint if the raiser did not know them."""
        if self.stage is None:
            self.stage = stage
        if self.fingerprint is None:
            self.fingerprint = fingerprint
        return self

    def to_dict(self) -> dict[str, object]:
        return {
            "error": self.message,
            "stage": self.stage,
            "fingerprint": self.fingerprint,
            "retryable": self.retryable,
        }


class DecodeError(IngestError):
    """Raised when source bytes are not a valid or supported image."""


class PolicyViolation(IngestError):
    """Raised when an image exceeds configured ceilings even after best-effort resizing."""


class SourceError(IngestError):
    """Raised when an upstream source reference or response is unusable."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        stage: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message, stage=stage, retryable=retryable)
        self.status_code = status_code


class FetchError(SourceError):
    """Upstream network failure or server error; retrying may succeed."""

    retryable = True


class TransientStorageError(IngestError):
    """Object-store fault that is worth retrying (timeouts, throttling, 5xx)."""

    retryable = True


class StorageError(IngestError):
    """Object-store write failed for good; no catalog row was written."""


class CatalogError(IngestError):
    """Catalog insert failed after retries; the stored object is left orphaned."""

    retryable = True
