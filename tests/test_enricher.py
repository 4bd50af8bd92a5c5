from __future__ import annotations

import threading
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from openpyxl import Workbook

from enricher import (
    EMPTY_SOURCE_MARKER,
    ERROR_SOURCE_MARKER,
    SKIPPED_MARKER,
    RowEnricher,
    enrich_job,
    parse_formatted_response,
)
from errors import ColumnInferenceError, RateLimitError, TransientLookupError
from models import NO_SECOND_SOURCE, NO_SOURCE, ColumnMapping, ComponentRow, JobStatus, RowState
from retry import RetryPolicy
from spreadsheet_io import load_workbook
from storage import JobStore

_HEADER = ["Item", "Description", "Part Number", "Qty"]
_MAPPING = ColumnMapping(description_column_index=2, part_number_column_index=3)
_REPLY = "CAP CHIP CER 39 PF 50 V 2% COG 0402\nhttps://example.com\nNO_SECOND_SOURCE"


def _workbook_bytes(rows: list[list[object]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _no_sleep_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0, sleep=lambda _seconds: None)


def _enricher(lookup: MagicMock | None = None, formatter: MagicMock | None = None) -> RowEnricher:
    return RowEnricher(
        lookup=lookup or MagicMock(return_value="raw search text"),
        formatter=formatter or MagicMock(return_value=_REPLY),
        retry_policy=_no_sleep_policy(),
    )


@pytest.fixture
def store(tmp_path: Path):
    with JobStore(tmp_path / "storage") as job_store:
        yield job_store


# ---------------------------------------------------------------------------
# parse_formatted_response
# ---------------------------------------------------------------------------

def test_parse_three_line_reply() -> None:
    parsed = parse_formatted_response("RES 10K 1% 0402\nhttps://a.example\nhttps://b.example")
    assert parsed.description == "RES 10K 1% 0402"
    assert parsed.primary_source == "https://a.example"
    assert parsed.secondary_source == "https://b.example"


def test_parse_strips_list_markers_and_blank_lines() -> None:
    parsed = parse_formatted_response("1. RES 10K\n\n2. https://a.example\n\n- https://b.example\n")
    assert parsed.description == "RES 10K"
    assert parsed.primary_source == "https://a.example"
    assert parsed.secondary_source == "https://b.example"


def test_parse_wrong_line_count_uses_sentinels() -> None:
    parsed = parse_formatted_response("RES 10K\nhttps://a.example")
    assert parsed.description == "RES 10K"
    assert parsed.primary_source == NO_SOURCE
    assert parsed.secondary_source == NO_SECOND_SOURCE


def test_parse_rejects_urls_without_https() -> None:
    parsed = parse_formatted_response("RES 10K\nwww.a.example\nhttp://b.example")
    assert parsed.primary_source == NO_SOURCE
    assert parsed.secondary_source == NO_SECOND_SOURCE


def test_parse_empty_reply_falls_back_to_original_description() -> None:
    parsed = parse_formatted_response("", fallback_description="RES 10 OHM")
    assert parsed.description == "RES 10 OHM"
    assert parsed.primary_source == NO_SOURCE


def test_parse_url_as_first_line_is_not_a_description() -> None:
    parsed = parse_formatted_response(
        "https://a.example\nhttps://b.example\nhttps://c.example", fallback_description="RES 10 OHM"
    )
    assert parsed.description == "RES 10 OHM"
    assert parsed.primary_source == "https://b.example"


# ---------------------------------------------------------------------------
# RowEnricher
# ---------------------------------------------------------------------------

def test_row_is_looked_up_formatted_and_canonicalized() -> None:
    lookup = MagicMock(return_value="raw search text")
    formatter = MagicMock(return_value=_REPLY)
    row = ComponentRow("CAP CHIP CER 39 PF", "X123", 2)

    outcome = _enricher(lookup, formatter).enrich(row)

    assert outcome.state is RowState.DONE
    assert outcome.result.description == "CAP CRM 39PF 50V 2% COG 0402 SMT"
    assert outcome.result.primary_source == "https://example.com"
    assert outcome.result.secondary_source == NO_SECOND_SOURCE
    assert outcome.result.raw_search_text == "raw search text"
    lookup.assert_called_once_with("CAP CHIP CER 39 PF", "X123")
    formatter.assert_called_once_with("raw search text", "X123", "CAP CHIP CER 39 PF")


def test_empty_part_number_is_skipped_without_lookup() -> None:
    lookup = MagicMock()
    outcome = _enricher(lookup).enrich(ComponentRow("RES 10K", "  ", 3))

    assert outcome.state is RowState.SKIPPED
    lookup.assert_not_called()


def test_transient_lookup_failure_is_retried() -> None:
    lookup = MagicMock(side_effect=[TransientLookupError("reset"), "raw search text"])
    outcome = _enricher(lookup).enrich(ComponentRow("CAP", "X123", 2))

    assert outcome.state is RowState.DONE
    assert lookup.call_count == 2


def test_lookup_succeeds_on_third_attempt() -> None:
    lookup = MagicMock(
        side_effect=[TransientLookupError("reset"), TransientLookupError("reset"), "raw search text"]
    )
    outcome = _enricher(lookup).enrich(ComponentRow("CAP", "X123", 2))

    assert outcome.state is RowState.DONE
    assert outcome.result.raw_search_text == "raw search text"
    assert lookup.call_count == 3


def test_exhausted_transient_retries_become_row_error() -> None:
    lookup = MagicMock(side_effect=TransientLookupError("connection reset"))
    outcome = _enricher(lookup).enrich(ComponentRow("CAP", "X123", 2))

    assert outcome.state is RowState.ERROR_RECORDED
    assert outcome.error == "searching: connection reset"
    assert lookup.call_count == 3


def test_lookup_failure_is_recorded_with_stage() -> None:
    lookup = MagicMock(side_effect=RuntimeError("HTTP 500"))
    outcome = _enricher(lookup).enrich(ComponentRow("CAP", "X123", 2))

    assert outcome.state is RowState.ERROR_RECORDED
    assert outcome.error == "searching: HTTP 500"
    assert lookup.call_count == 1


def test_formatter_failure_is_recorded_with_stage() -> None:
    formatter = MagicMock(side_effect=RuntimeError("empty content"))
    outcome = _enricher(formatter=formatter).enrich(ComponentRow("CAP", "X123", 2))

    assert outcome.state is RowState.ERROR_RECORDED
    assert outcome.error.startswith("formatting:")


def test_malformed_reply_still_yields_a_description() -> None:
    formatter = MagicMock(return_value="RES 10 OHM 1%")
    outcome = _enricher(formatter=formatter).enrich(ComponentRow("RES", "X123", 2))

    assert outcome.state is RowState.DONE
    assert outcome.result.description == "RES 10R 1%"
    assert outcome.result.primary_source == NO_SOURCE
    assert outcome.result.secondary_source == NO_SECOND_SOURCE


def test_rate_limit_escapes_the_row() -> None:
    lookup = MagicMock(side_effect=RateLimitError("quota"))
    with pytest.raises(RateLimitError):
        _enricher(lookup).enrich(ComponentRow("CAP", "X123", 2))
    assert lookup.call_count == 1


# ---------------------------------------------------------------------------
# enrich_job
# ---------------------------------------------------------------------------

def test_enrich_job_end_to_end(store: JobStore) -> None:
    data = _workbook_bytes([_HEADER, [1, "CAP CHIP CER 39 PF 50 V 2% COG 0402", "X123", 10]])
    job = store.create_job(data, original_name="bom.xlsx")
    job.bind_columns(_MAPPING)
    progress = MagicMock()
    preview = MagicMock()

    report = enrich_job(job, store, enricher=_enricher(), on_progress=progress, on_preview=preview)

    assert report.status is JobStatus.COMPLETED
    assert (report.processed, report.enriched, report.skipped, report.errors) == (1, 1, 0, 0)
    sheet = load_workbook(report.artifact)
    assert sheet.get_cell(1, 5) == "Enriched Description"
    assert sheet.get_cell(1, 6) == "Source"
    assert sheet.get_cell(1, 7) == "Second Source"
    assert sheet.get_cell(2, 5) == "CAP CRM 39PF 50V 2% COG 0402 SMT"
    assert sheet.get_cell(2, 6) == "https://example.com"
    assert sheet.get_cell(2, 7) == NO_SECOND_SOURCE
    # Input columns are untouched.
    assert sheet.get_cell(2, 2) == "CAP CHIP CER 39 PF 50 V 2% COG 0402"

    progress.assert_called_once_with(1, 1)
    preview.assert_called_once_with(
        "CAP CHIP CER 39 PF 50 V 2% COG 0402", "CAP CRM 39PF 50V 2% COG 0402 SMT", "https://example.com"
    )
    assert report.artifact_path.endswith("_enriched.xlsx")
    assert Path(report.artifact_path).read_bytes() == report.artifact


def test_enrich_job_infers_columns_when_unbound(store: JobStore) -> None:
    data = _workbook_bytes([
        _HEADER,
        [1, "RES CHIP 1.8 KOHM 1% 0402", "RC0402FR-071K8L", 10],
        [2, "CAP CHIP CER 1 UF 0603", "GRM188R61C105", 5],
    ])
    job = store.create_job(data)
    lookup = MagicMock(return_value="raw")

    enrich_job(job, store, enricher=_enricher(lookup), checkpoint_every=0)

    assert job.column_mapping == _MAPPING
    lookup.assert_any_call("RES CHIP 1.8 KOHM 1% 0402", "RC0402FR-071K8L")


def test_column_inference_failure_happens_before_any_lookup(store: JobStore) -> None:
    job = store.create_job(_workbook_bytes([[1, 2, 3], [4, 5, 6]]))
    lookup = MagicMock()

    with pytest.raises(ColumnInferenceError):
        enrich_job(job, store, enricher=_enricher(lookup))

    lookup.assert_not_called()


def test_skipped_and_failed_rows_get_markers(store: JobStore) -> None:
    data = _workbook_bytes([
        _HEADER,
        [1, "RES 10K", None, 1],
        [2, "CAP 1UF", "BROKEN", 1],
    ])
    job = store.create_job(data)
    job.bind_columns(_MAPPING)
    lookup = MagicMock(side_effect=RuntimeError("HTTP 500"))

    report = enrich_job(job, store, enricher=_enricher(lookup))

    assert (report.processed, report.enriched, report.skipped, report.errors) == (2, 0, 1, 1)
    assert report.status is JobStatus.COMPLETED
    sheet = load_workbook(report.artifact)
    assert sheet.get_cell(2, 5) == SKIPPED_MARKER
    assert sheet.get_cell(2, 6) == EMPTY_SOURCE_MARKER
    assert sheet.get_cell(3, 5) == "ERROR: searching: HTTP 500"
    assert sheet.get_cell(3, 6) == ERROR_SOURCE_MARKER
    assert report.error_messages == ["row 3: searching: HTTP 500"]


def test_exhausted_retries_mark_the_row_and_continue(store: JobStore) -> None:
    data = _workbook_bytes([
        _HEADER,
        [1, "RES 10 OHM", "PN-000001", 1],
        [2, "RES 20 OHM", "PN-000002", 1],
    ])
    job = store.create_job(data)
    job.bind_columns(_MAPPING)

    def lookup(description: str, part_number: str) -> str:
        if part_number == "PN-000001":
            raise TransientLookupError("connection reset")
        return "raw"

    lookup_mock = MagicMock(side_effect=lookup)

    report = enrich_job(job, store, enricher=_enricher(lookup_mock))

    assert report.status is JobStatus.COMPLETED
    assert (report.processed, report.enriched, report.errors) == (2, 1, 1)
    assert lookup_mock.call_count == 4
    sheet = load_workbook(report.artifact)
    assert sheet.get_cell(2, 5) == "ERROR: searching: connection reset"
    assert sheet.get_cell(2, 6) == ERROR_SOURCE_MARKER
    assert sheet.get_cell(3, 5) == "CAP CRM 39PF 50V 2% COG 0402 SMT"


def test_rate_limit_stops_the_job_with_a_partial_artifact(store: JobStore) -> None:
    data = _workbook_bytes([
        _HEADER,
        [1, "RES 10 OHM", "PN-000001", 1],
        [2, "RES 20 OHM", "PN-000002", 1],
        [3, "RES 30 OHM", "PN-000003", 1],
    ])
    job = store.create_job(data)
    job.bind_columns(_MAPPING)
    lookup = MagicMock(side_effect=["raw", RateLimitError("quota exhausted"), "raw"])

    report = enrich_job(job, store, enricher=_enricher(lookup))

    assert report.status is JobStatus.PARTIAL
    assert (report.processed, report.enriched, report.errors) == (2, 1, 1)
    assert lookup.call_count == 2
    sheet = load_workbook(report.artifact)
    assert sheet.get_cell(2, 5) == "CAP CRM 39PF 50V 2% COG 0402 SMT"
    assert sheet.get_cell(3, 5).startswith("ERROR: rate limit")
    assert sheet.get_cell(4, 5) is None
    assert report.artifact_path.endswith("_partial.xlsx")


def test_cancellation_stops_issuing_rows(store: JobStore) -> None:
    data = _workbook_bytes([
        _HEADER,
        [1, "RES 10 OHM", "PN-000001", 1],
        [2, "RES 20 OHM", "PN-000002", 1],
    ])
    job = store.create_job(data)
    job.bind_columns(_MAPPING)
    cancel = threading.Event()
    lookup = MagicMock(return_value="raw")

    report = enrich_job(
        job,
        store,
        enricher=_enricher(lookup),
        on_progress=lambda processed, total: cancel.set(),
        cancel_event=cancel,
    )

    assert report.status is JobStatus.CANCELLED
    assert report.processed == 1
    assert lookup.call_count == 1
    assert report.artifact_path.endswith("_cancelled.xlsx")


def test_checkpoint_is_saved_every_k_rows(store: JobStore) -> None:
    rows = [[index, f"RES {index}0 OHM", f"PN-00000{index}", 1] for index in range(1, 5)]
    job = store.create_job(_workbook_bytes([_HEADER, *rows]))
    job.bind_columns(_MAPPING)

    enrich_job(job, store, enricher=_enricher(), checkpoint_every=2)

    checkpoints = list(store.artifacts_dir.glob(f"{job.job_id}_*_checkpoint.xlsx"))
    finals = list(store.artifacts_dir.glob(f"{job.job_id}_*_enriched.xlsx"))
    assert len(checkpoints) == 2
    assert len(finals) == 1


def test_unexpected_failure_saves_a_failed_checkpoint(store: JobStore) -> None:
    job = store.create_job(_workbook_bytes([_HEADER, [1, "RES 10 OHM", "PN-000001", 1]]))
    job.bind_columns(_MAPPING)

    def explode(processed: int, total: int) -> None:
        raise ValueError("listener crashed")

    with pytest.raises(ValueError):
        enrich_job(job, store, enricher=_enricher(), on_progress=explode)

    assert store.latest_artifact(job.job_id, "failed") is not None


def test_job_chat_history_records_start_and_finish(store: JobStore) -> None:
    job = store.create_job(_workbook_bytes([_HEADER, [1, "RES 10 OHM", "PN-000001", 1]]))
    job.bind_columns(_MAPPING)

    enrich_job(job, store, enricher=_enricher())

    history = store.get_chat_history(job.job_id)
    assert [entry["role"] for entry in history] == ["assistant", "assistant"]
    assert history[0]["content"] == "Started enriching 1 row(s)."
    assert history[1]["content"].startswith("Finished (completed): 1 enriched")
