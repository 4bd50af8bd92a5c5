"""Shared typed models for the enrichment pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

NO_SOURCE = "NO_SOURCE"
NO_SECOND_SOURCE = "NO_SECOND_SOURCE"
NO_PART_NUMBER_MARKER = "no part number available"


@dataclass(frozen=True, slots=True)
class ComponentRow:
    """One spreadsheet row as seen by the orchestrator."""

    raw_description: str
    part_number: str
    row_index: int


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    """Canonical description plus citations for one row."""

    description: str
    primary_source: str
    secondary_source: str | None
    raw_search_text: str


@dataclass(frozen=True, slots=True)
class ColumnMapping:
    """1-based column indices chosen by column inference."""

    description_column_index: int
    part_number_column_index: int
    header_row_index: int = 1


@dataclass(slots=True)
class Job:
    """One enrichment run over one uploaded spreadsheet."""

    job_id: str
    source_buffer: bytes
    created_at: float
    last_access: float
    original_name: str = ""
    column_mapping: ColumnMapping | None = None

    def bind_columns(self, mapping: ColumnMapping) -> None:
        """Attach the column mapping. It can be set once per job and never replaced."""
        if self.column_mapping is not None and self.column_mapping != mapping:
            raise RuntimeError(
                f"Column mapping for job_id={self.job_id} is already bound to {self.column_mapping}"
            )
        self.column_mapping = mapping

    def touch(self, now: float) -> None:
        self.last_access = now


class RowState(str, Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    FORMATTING = "formatting"
    CANONICALIZING = "canonicalizing"
    DONE = "done"
    SKIPPED = "skipped"
    ERROR_RECORDED = "error_recorded"


@dataclass(frozen=True, slots=True)
class RowOutcome:
    """Terminal state of one row plus its result or error text."""

    row_index: int
    state: RowState
    result: EnrichmentResult | None = None
    error: str | None = None


class JobStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class JobReport:
    """Summary returned to the caller once a job stops issuing row work."""

    job_id: str
    status: JobStatus
    total_rows: int
    processed: int = 0
    enriched: int = 0
    skipped: int = 0
    errors: int = 0
    artifact: bytes = b""
    artifact_path: str | None = None
    error_messages: list[str] = field(default_factory=list)


class ProgressListener(Protocol):
    def __call__(self, processed: int, total: int) -> None: ...


class PreviewListener(Protocol):
    def __call__(self, before: str, after: str, source: str) -> None: ...
