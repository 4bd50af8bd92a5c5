"""Heuristic detection of the description and part-number columns (no LLM calls)."""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from errors import ColumnInferenceError
from models import ColumnMapping

LOGGER = logging.getLogger(__name__)

HEADER_SEARCH_ROWS = 10
MAX_SAMPLE_ROWS = 5

_PART_NUMBER_RE = re.compile(r"^[A-Za-z0-9-]{6,}$")
_PROSE_RE = re.compile(r"^[A-Za-z]+\S*\s+\S")
_HEADER_TOKEN_RE = re.compile(r"[A-Za-z]{2,}")


def find_header_row(rows: Sequence[Sequence[Any]]) -> int:
    """Return the 0-based index of the header row within the first ten rows.

    A row with at least two alphabetic cells wins over a row with only one,
    so a title line above the table ("BOM rev B") is not mistaken for headers.
    """
    first_single: int | None = None
    for index, row in enumerate(rows[:HEADER_SEARCH_ROWS]):
        tokens = sum(1 for cell in row if _HEADER_TOKEN_RE.search(_cell_text(cell)))
        if tokens >= 2:
            return index
        if tokens == 1 and first_single is None:
            first_single = index

    if first_single is None:
        raise ColumnInferenceError(
            f"No header row found in the first {HEADER_SEARCH_ROWS} rows",
            headers=[],
        )
    return first_single


def infer_columns(
    header_row: Sequence[Any],
    sample_rows: Sequence[Sequence[Any]],
    header_row_index: int = 1,
) -> ColumnMapping:
    """Score every column and pick the part-number and description columns.

    Part-number score: sample cells that are alphanumeric-plus-hyphen and
    longer than five characters. Description score: sample cells that start
    with letters and contain an internal space. Ties go to a header that
    literally contains "part" / "description", then to the leftmost column.
    """
    headers = list(header_row)
    samples = list(sample_rows)[:MAX_SAMPLE_ROWS]
    column_count = max([len(headers), *(len(row) for row in samples)], default=0)

    part_scores = [0] * column_count
    prose_scores = [0] * column_count
    for row in samples:
        for col, cell in enumerate(row):
            text = _cell_text(cell)
            if _PART_NUMBER_RE.match(text):
                part_scores[col] += 1
            if _PROSE_RE.match(text):
                prose_scores[col] += 1

    LOGGER.debug("Column scores part=%s description=%s", part_scores, prose_scores)

    part_col = _select_column(part_scores, headers, "part")
    description_col = _select_column(prose_scores, headers, "description")

    if part_col is None or description_col is None:
        raise ColumnInferenceError(
            "Could not find both a description column and a part-number column",
            headers=headers,
        )
    if part_col == description_col:
        raise ColumnInferenceError(
            f"Description and part-number columns are ambiguous (both column {part_col + 1})",
            headers=headers,
        )

    mapping = ColumnMapping(
        description_column_index=description_col + 1,
        part_number_column_index=part_col + 1,
        header_row_index=header_row_index,
    )
    LOGGER.info(
        "Detected columns: description=%s (%r) part_number=%s (%r)",
        mapping.description_column_index,
        _header_at(headers, description_col),
        mapping.part_number_column_index,
        _header_at(headers, part_col),
    )
    return mapping


def detect_column_mapping(rows: Sequence[Sequence[Any]]) -> ColumnMapping:
    """Find the header row in the top of a sheet and infer columns from the rows under it."""
    header_index = find_header_row(rows)
    samples = [row for row in rows[header_index + 1 :] if any(_cell_text(cell) for cell in row)]
    return infer_columns(rows[header_index], samples[:MAX_SAMPLE_ROWS], header_row_index=header_index + 1)


def _select_column(scores: list[int], headers: list[Any], keyword: str) -> int | None:
    best = max(scores, default=0)
    if best == 0:
        return None
    candidates = [col for col, score in enumerate(scores) if score == best]
    for col in candidates:
        if keyword in _cell_text(_header_at(headers, col)).lower():
            return col
    return candidates[0]


def _header_at(headers: list[Any], col: int) -> Any:
    return headers[col] if col < len(headers) else None


def _cell_text(value: Any) -> str:
    return "" if value is None else str(value).strip()
