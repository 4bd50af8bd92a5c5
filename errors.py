"""Exception taxonomy shared by the enrichment pipeline."""

from __future__ import annotations

from typing import Any


class BomEnrichmentError(RuntimeError):
    """Base class for every error raised on purpose by this package."""


class ColumnInferenceError(BomEnrichmentError):
    """No usable header row, or the description/part-number columns are ambiguous.

    Fatal for the job: raised before any row work starts. The detected headers
    travel with the error so the caller can show them for diagnosis.
    """

    def __init__(self, message: str, headers: list[Any] | None = None) -> None:
        super().__init__(message)
        self.headers: list[Any] = list(headers or [])


class TransientLookupError(BomEnrichmentError):
    """Connection reset or dropped connection talking to an external collaborator."""


class RateLimitError(BomEnrichmentError):
    """Quota or budget of an external collaborator is exhausted. Never retried."""


class StorageError(BomEnrichmentError):
    """The job store could not write or read an artifact."""


def is_transient_error(exc: BaseException) -> bool:
    """Default retry predicate: only connection resets are worth another attempt."""
    return isinstance(exc, (TransientLookupError, ConnectionResetError))
