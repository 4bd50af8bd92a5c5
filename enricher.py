"""Per-row enrichment state machine and the job loop that drives it.

Row lifecycle::

    PENDING -> SEARCHING -> FORMATTING -> CANONICALIZING -> DONE
    PENDING -> SKIPPED                  (empty part number)
    any     -> ERROR_RECORDED           (row-level failure, written as a sentinel)

A RateLimitError is the one failure that escapes a row: the job loop stops
issuing rows, keeps what is already written and reports the job as partial.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable

from canonicalizer import canonicalize
from column_inference import HEADER_SEARCH_ROWS, MAX_SAMPLE_ROWS, detect_column_mapping
from errors import RateLimitError, StorageError
from models import (
    NO_SECOND_SOURCE,
    NO_SOURCE,
    ComponentRow,
    EnrichmentResult,
    Job,
    JobReport,
    JobStatus,
    PreviewListener,
    ProgressListener,
    RowOutcome,
    RowState,
)
from retry import RetryPolicy
from spreadsheet_io import Worksheet, load_workbook, write_workbook
from storage import JobStore

CHECKPOINT_EVERY = int(os.getenv("CHECKPOINT_EVERY", "10"))

OUTPUT_HEADERS = ("Enriched Description", "Source", "Second Source")
SKIPPED_MARKER = "SKIPPED - missing part number"
ERROR_SOURCE_MARKER = "ERROR"
EMPTY_SOURCE_MARKER = "-"

LOGGER = logging.getLogger(__name__)

LookupFn = Callable[[str, str], str]
FormatFn = Callable[[str, str | None, str | None], str]

_LIST_MARKER_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+")


@dataclass(frozen=True, slots=True)
class FormattedResponse:
    description: str
    primary_source: str
    secondary_source: str


def parse_formatted_response(text: str, fallback_description: str = "") -> FormattedResponse:
    """Read the formatter's three-line contract without ever raising.

    Wrong line counts and URL lines without ``https://`` become the
    NO_SOURCE / NO_SECOND_SOURCE sentinels. A missing description line falls
    back to the original description.
    """
    lines = [_LIST_MARKER_RE.sub("", line).strip() for line in (text or "").splitlines()]
    lines = [line for line in lines if line]

    description = lines[0] if lines else ""
    if not description or description.lower().startswith("https://"):
        description = fallback_description

    if len(lines) != 3:
        LOGGER.warning("Formatter returned %s line(s) instead of 3; sources dropped", len(lines))
        return FormattedResponse(description, NO_SOURCE, NO_SECOND_SOURCE)

    primary = lines[1] if lines[1].lower().startswith("https://") else NO_SOURCE
    secondary = lines[2] if lines[2].lower().startswith("https://") else NO_SECOND_SOURCE
    return FormattedResponse(description, primary, secondary)


class RowEnricher:
    """Runs one row through lookup, formatting and canonicalization."""

    def __init__(
        self,
        lookup: LookupFn | None = None,
        formatter: FormatFn | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        if lookup is None:
            from perplexity_client import search_component as lookup  # noqa: PLC0415
        if formatter is None:
            from llm_client import format_lookup as formatter  # noqa: PLC0415
        self._lookup = lookup
        self._formatter = formatter
        self._retry = retry_policy or RetryPolicy()

    def enrich(self, row: ComponentRow) -> RowOutcome:
        if not row.part_number.strip():
            LOGGER.info("Row %s skipped: empty part number", row.row_index)
            return RowOutcome(row.row_index, RowState.SKIPPED)

        state = RowState.SEARCHING
        try:
            raw_text = self._retry.call(self._lookup, row.raw_description, row.part_number)

            state = RowState.FORMATTING
            reply = self._retry.call(self._formatter, raw_text, row.part_number, row.raw_description)
            formatted = parse_formatted_response(reply, fallback_description=row.raw_description)

            state = RowState.CANONICALIZING
            description = canonicalize(formatted.description, row.part_number)
        except RateLimitError:
            raise
        except Exception as exc:  # broad by design: one bad row never aborts the job
            LOGGER.exception("Row %s failed while %s: %s", row.row_index, state.value, exc)
            return RowOutcome(row.row_index, RowState.ERROR_RECORDED, error=f"{state.value}: {exc}")

        result = EnrichmentResult(
            description=description,
            primary_source=formatted.primary_source,
            secondary_source=formatted.secondary_source,
            raw_search_text=raw_text,
        )
        return RowOutcome(row.row_index, RowState.DONE, result=result)


def enrich_job(
    job: Job,
    store: JobStore,
    *,
    enricher: RowEnricher | None = None,
    on_progress: ProgressListener | None = None,
    on_preview: PreviewListener | None = None,
    checkpoint_every: int = CHECKPOINT_EVERY,
    cancel_event: threading.Event | None = None,
) -> JobReport:
    """Enrich every data row of the job's workbook, checkpointing along the way.

    Column inference runs once and is bound to the job before any row work;
    a ColumnInferenceError therefore aborts the job with nothing processed.
    The final artifact is persisted through ``store``; failing to persist it
    raises StorageError.
    """
    enricher = enricher or RowEnricher()
    source = store.get(job.job_id)
    worksheet = load_workbook(source if source is not None else job.source_buffer)

    if job.column_mapping is None:
        job.bind_columns(detect_column_mapping(worksheet.head_rows(HEADER_SEARCH_ROWS + MAX_SAMPLE_ROWS + 1)))
    mapping = job.column_mapping

    header_row = mapping.header_row_index
    description_col = worksheet.column_count + 1
    source_col = description_col + 1
    second_source_col = description_col + 2
    for offset, title in enumerate(OUTPUT_HEADERS):
        worksheet.set_cell(header_row, description_col + offset, title)

    first_row = header_row + 1
    last_row = worksheet.row_count
    total = max(0, last_row - first_row + 1)
    report = JobReport(job_id=job.job_id, status=JobStatus.COMPLETED, total_rows=total)
    LOGGER.info("Enriching job_id=%s: %s data row(s), mapping=%s", job.job_id, total, mapping)
    _record_chat(store, job.job_id, f"Started enriching {total} row(s).")

    try:
        for row_number in range(first_row, last_row + 1):
            if cancel_event is not None and cancel_event.is_set():
                report.status = JobStatus.CANCELLED
                LOGGER.warning("Job job_id=%s cancelled after %s/%s rows", job.job_id, report.processed, total)
                break

            row = ComponentRow(
                raw_description=_cell_text(worksheet.get_cell(row_number, mapping.description_column_index)),
                part_number=_cell_text(worksheet.get_cell(row_number, mapping.part_number_column_index)),
                row_index=row_number,
            )

            try:
                outcome = enricher.enrich(row)
            except RateLimitError as exc:
                _write_error(worksheet, row_number, description_col, source_col, f"rate limit: {exc}")
                report.errors += 1
                report.processed += 1
                report.error_messages.append(f"row {row_number}: rate limit: {exc}")
                report.status = JobStatus.PARTIAL
                LOGGER.warning(
                    "Rate limit hit on row %s of job_id=%s; stopping with a partial result", row_number, job.job_id
                )
                _notify_progress(on_progress, report.processed, total)
                break

            _write_outcome(worksheet, outcome, row, report, description_col, source_col, second_source_col)
            report.processed += 1

            if outcome.state is RowState.DONE and on_preview is not None:
                on_preview(row.raw_description, outcome.result.description, outcome.result.primary_source)
            _notify_progress(on_progress, report.processed, total)

            if checkpoint_every > 0 and report.processed % checkpoint_every == 0:
                _checkpoint(store, job.job_id, worksheet, "checkpoint")
    except BaseException:
        _checkpoint(store, job.job_id, worksheet, "failed")
        raise

    worksheet.autosize_columns()
    report.artifact = write_workbook(worksheet)
    variant = "enriched" if report.status is JobStatus.COMPLETED else report.status.value
    report.artifact_path = str(store.save_artifact(job.job_id, report.artifact, variant))

    LOGGER.info(
        "Job job_id=%s %s: processed=%s enriched=%s skipped=%s errors=%s",
        job.job_id,
        report.status.value,
        report.processed,
        report.enriched,
        report.skipped,
        report.errors,
    )
    _record_chat(
        store,
        job.job_id,
        f"Finished ({report.status.value}): {report.enriched} enriched, {report.skipped} skipped, "
        f"{report.errors} error(s) out of {total} row(s).",
    )
    return report


def _write_outcome(
    worksheet: Worksheet,
    outcome: RowOutcome,
    row: ComponentRow,
    report: JobReport,
    description_col: int,
    source_col: int,
    second_source_col: int,
) -> None:
    row_number = row.row_index
    if outcome.state is RowState.DONE:
        result = outcome.result
        worksheet.set_cell(row_number, description_col, result.description)
        _write_source(worksheet, row_number, source_col, result.primary_source)
        _write_source(worksheet, row_number, second_source_col, result.secondary_source or NO_SECOND_SOURCE)
        report.enriched += 1
    elif outcome.state is RowState.SKIPPED:
        worksheet.set_cell(row_number, description_col, SKIPPED_MARKER)
        worksheet.set_cell(row_number, source_col, EMPTY_SOURCE_MARKER)
        report.skipped += 1
    else:
        _write_error(worksheet, row_number, description_col, source_col, outcome.error or "unknown error")
        report.errors += 1
        report.error_messages.append(f"row {row_number}: {outcome.error}")


def _write_source(worksheet: Worksheet, row_number: int, col: int, value: str) -> None:
    if value.lower().startswith("https://"):
        worksheet.set_hyperlink(row_number, col, value)
    else:
        worksheet.set_cell(row_number, col, value)


def _write_error(worksheet: Worksheet, row_number: int, description_col: int, source_col: int, message: str) -> None:
    worksheet.set_cell(row_number, description_col, f"ERROR: {message}")
    worksheet.set_cell(row_number, source_col, ERROR_SOURCE_MARKER)


def _checkpoint(store: JobStore, job_id: str, worksheet: Worksheet, variant: str) -> None:
    try:
        store.save_artifact(job_id, write_workbook(worksheet), variant)
    except (StorageError, OSError) as exc:
        LOGGER.error("Checkpoint (%s) failed for job_id=%s: %s", variant, job_id, exc)


def _record_chat(store: JobStore, job_id: str, message: str) -> None:
    try:
        store.add_chat_message(job_id, "assistant", message)
    except StorageError as exc:
        LOGGER.warning("Could not record chat message for job_id=%s: %s", job_id, exc)


def _notify_progress(listener: ProgressListener | None, processed: int, total: int) -> None:
    if listener is not None:
        listener(processed, total)


def _cell_text(value: Any) -> str:
    return "" if value is None else str(value).strip()
