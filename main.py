"""CLI entrypoint for the BOM description enrichment pipeline."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from column_inference import HEADER_SEARCH_ROWS, MAX_SAMPLE_ROWS, detect_column_mapping
from enricher import CHECKPOINT_EVERY, enrich_job
from errors import ColumnInferenceError, StorageError
from llm_client import answer_question
from models import JobStatus
from preview_sink import CsvPreviewSink, log_progress
from spreadsheet_io import load_workbook
from storage import JobStore

DEFAULT_STORAGE_DIR = "table_storage"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_COLUMNS = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Enrich BOM component descriptions with looked-up specifications")
    parser.add_argument(
        "--storage-dir",
        default=os.getenv("BOM_STORAGE_DIR", DEFAULT_STORAGE_DIR),
        help="Directory for job metadata, checkpoints and final artifacts",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    enrich = subparsers.add_parser("enrich", help="Enrich one BOM workbook")
    enrich.add_argument("input", type=Path, help="Path to the input .xlsx file")
    enrich.add_argument("-o", "--output", type=Path, default=None, help="Output path (default: <input>_enriched.xlsx)")
    enrich.add_argument(
        "--dry-run",
        action="store_true",
        help="Only detect the description/part-number columns, without API calls or writes",
    )
    enrich.add_argument("--preview-csv", type=Path, default=None, help="Append before/after previews to this CSV")
    enrich.add_argument(
        "--checkpoint-every",
        type=int,
        default=CHECKPOINT_EVERY,
        help="Persist a checkpoint after this many rows (0 disables)",
    )

    ask = subparsers.add_parser("ask", help="Ask a question about the components of an enriched job")
    ask.add_argument("question", help="Question text")
    ask.add_argument("--job-id", required=True, help="Job id printed by a previous enrich run")

    return parser.parse_args(argv)


def run_enrich(
    input_path: Path,
    output_path: Path | None,
    storage_dir: str,
    dry_run: bool = False,
    preview_csv: Path | None = None,
    checkpoint_every: int = CHECKPOINT_EVERY,
) -> int:
    """Run one enrichment job end to end and write the result next to the input."""
    data = input_path.read_bytes()

    if dry_run:
        worksheet = load_workbook(data)
        try:
            mapping = detect_column_mapping(worksheet.head_rows(HEADER_SEARCH_ROWS + MAX_SAMPLE_ROWS + 1))
        except ColumnInferenceError as exc:
            logging.error("[dry-run] Column detection failed: %s. Headers: %s", exc, exc.headers)
            return EXIT_BAD_COLUMNS
        logging.info(
            "[dry-run] header_row=%s description_column=%s part_number_column=%s rows=%s",
            mapping.header_row_index,
            mapping.description_column_index,
            mapping.part_number_column_index,
            worksheet.row_count - mapping.header_row_index,
        )
        return EXIT_OK

    output_path = output_path or input_path.with_name(f"{input_path.stem}_enriched.xlsx")
    store = JobStore(storage_dir)
    store.start()
    try:
        job = store.create_job(data, original_name=input_path.name)
        logging.info("Job id: %s", job.job_id)
        preview = CsvPreviewSink(preview_csv, job_id=job.job_id) if preview_csv else None

        try:
            report = enrich_job(
                job,
                store,
                on_progress=log_progress,
                on_preview=preview,
                checkpoint_every=checkpoint_every,
            )
        except ColumnInferenceError as exc:
            logging.error("Column detection failed: %s. Headers: %s", exc, exc.headers)
            return EXIT_BAD_COLUMNS
        except StorageError as exc:
            logging.error("Could not persist the result for job_id=%s: %s", job.job_id, exc)
            return EXIT_FAILED
        except KeyboardInterrupt:
            logging.warning("Interrupted; latest checkpoint kept under %s", store.artifacts_dir)
            return EXIT_INTERRUPTED

        output_path.write_bytes(report.artifact)
        if report.status is not JobStatus.COMPLETED:
            logging.warning(
                "Job %s: processed %s/%s rows before stopping", report.status.value, report.processed, report.total_rows
            )
        logging.info(
            "Run complete. enriched=%s skipped=%s errors=%s output=%s",
            report.enriched,
            report.skipped,
            report.errors,
            output_path,
        )
        return EXIT_OK
    finally:
        store.stop()


def run_ask(question: str, job_id: str, storage_dir: str) -> int:
    """Answer a question using the job's chat history, then record both turns."""
    store = JobStore(storage_dir)
    store.start()
    try:
        if store.load_metadata(job_id) is None:
            logging.error("Unknown job_id=%s in %s", job_id, storage_dir)
            return EXIT_FAILED

        history = store.get_chat_history(job_id)
        store.add_chat_message(job_id, "user", question)
        answer = answer_question(question, history)
        store.add_chat_message(job_id, "assistant", answer)
        print(answer)
        return EXIT_OK
    finally:
        store.stop()


def main(argv: list[str] | None = None) -> int:
    """Initialize config and dispatch the chosen command."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)

    if args.command == "ask":
        return run_ask(args.question, args.job_id, args.storage_dir)
    return run_enrich(
        input_path=args.input,
        output_path=args.output,
        storage_dir=args.storage_dir,
        dry_run=args.dry_run,
        preview_csv=args.preview_csv,
        checkpoint_every=args.checkpoint_every,
    )


if __name__ == "__main__":
    raise SystemExit(main())
