"""Preview and progress sinks for enrichment jobs (CSV file + log lines)."""

from __future__ import annotations

import csv
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

PREVIEW_CSV_PATH = os.getenv("PREVIEW_CSV_PATH", "enrichment_preview.csv")

LOGGER = logging.getLogger(__name__)

PREVIEW_COLUMNS = [
    "job_id",
    "before",       # description as it was in the spreadsheet
    "after",        # canonical description written to the output
    "source",       # primary source URL or NO_SOURCE
    "created_at",
]


class CsvPreviewSink:
    """Preview listener that appends one CSV row per enriched component."""

    def __init__(self, path: str | Path | None = None, job_id: str = "") -> None:
        self.path = Path(path or PREVIEW_CSV_PATH)
        self.job_id = job_id

    def __call__(self, before: str, after: str, source: str) -> None:
        write_header = not self.path.exists() or self.path.stat().st_size == 0
        row = {
            "job_id": self.job_id,
            "before": _as_text(before),
            "after": _as_text(after),
            "source": _as_text(source),
            "created_at": datetime.now(UTC).isoformat(),
        }

        with self.path.open("a", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=PREVIEW_COLUMNS)
            if write_header:
                writer.writeheader()
            writer.writerow(row)

        LOGGER.info("Preview: %r -> %r (%s)", row["before"], row["after"], row["source"])


def log_progress(processed: int, total: int) -> None:
    """Progress listener that logs ``processed/total`` with a percentage."""
    percent = round(processed * 100 / total) if total else 100
    LOGGER.info("Progress: %s%% (%s/%s)", percent, processed, total)


def _as_text(value: object, max_len: int = 500) -> str:
    """Convert value to a stripped string, truncated to max_len chars."""
    s = value.strip() if isinstance(value, str) else ""
    if len(s) > max_len:
        return s[: max_len - 1] + "…"
    return s
