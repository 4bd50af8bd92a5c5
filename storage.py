"""Job cache and artifact store with background TTL and count-based housekeeping.

Layout under ``root_dir``::

    processed/<job_id>_<timestamp_ms>_<variant>.xlsx   checkpoint / final artifacts
    metadata/<job_id>.json                               original name, times, chat history

In-flight working buffers live in memory only. ``put``/``get`` take the store
lock for the duration of a dict operation; the sweeper thread takes the same
lock, so eviction never interleaves with a read or write of the same job.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

from errors import StorageError
from models import Job

WORKING_TTL_SECONDS = float(os.getenv("WORKING_TTL_SECONDS", "300"))
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
MAX_WORKING_JOBS = int(os.getenv("MAX_WORKING_JOBS", "50"))
ARTIFACT_MAX_AGE_SECONDS = float(os.getenv("ARTIFACT_MAX_AGE_SECONDS", str(24 * 60 * 60)))
MAX_ARTIFACTS_PER_JOB = int(os.getenv("MAX_ARTIFACTS_PER_JOB", "20"))

ARTIFACT_SUFFIX = ".xlsx"

# Job ids are opaque and may contain underscores; timestamp and variant never do.
_ARTIFACT_NAME_RE = re.compile(r"^(?P<job_id>.+)_(?P<stamp>\d+)_(?P<variant>[^_]+)\.xlsx$")

LOGGER = logging.getLogger(__name__)


class JobStore:
    """Explicitly constructed store shared by job workers; call start() before use."""

    def __init__(
        self,
        root_dir: str | Path,
        *,
        working_ttl_seconds: float = WORKING_TTL_SECONDS,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        max_working_jobs: int = MAX_WORKING_JOBS,
        artifact_max_age_seconds: float = ARTIFACT_MAX_AGE_SECONDS,
        max_artifacts_per_job: int = MAX_ARTIFACTS_PER_JOB,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.artifacts_dir = self.root_dir / "processed"
        self.metadata_dir = self.root_dir / "metadata"
        self.working_ttl_seconds = working_ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.max_working_jobs = max_working_jobs
        self.artifact_max_age_seconds = artifact_max_age_seconds
        self.max_artifacts_per_job = max_artifacts_per_job
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._fs_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Create the directories and launch the periodic sweeper thread."""
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        if self._sweeper is not None:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="job-store-sweeper", daemon=True)
        self._sweeper.start()
        LOGGER.info("Job store started at %s (sweep every %ss)", self.root_dir, self.sweep_interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        LOGGER.info("Job store stopped")

    def __enter__(self) -> JobStore:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep_expired()
                self.housekeep_artifacts()
            except OSError as exc:
                LOGGER.warning("Job store sweep failed: %s", exc)

    # ------------------------------------------------------------------
    # In-memory working buffers
    # ------------------------------------------------------------------

    def create_job(self, source_buffer: bytes, original_name: str = "") -> Job:
        now = self._clock()
        job = Job(
            job_id=uuid.uuid4().hex,
            source_buffer=source_buffer,
            created_at=now,
            last_access=now,
            original_name=original_name,
        )
        with self._lock:
            self._jobs[job.job_id] = job
            self._evict_over_capacity()

        try:
            self._write_metadata(
                job.job_id,
                {
                    "original_name": original_name,
                    "created_at": _iso(now),
                    "last_access": _iso(now),
                    "processed_name": "",
                    "chat_history": [],
                },
            )
        except StorageError as exc:
            LOGGER.warning("Could not write metadata for job_id=%s: %s", job.job_id, exc)

        LOGGER.info("Created job_id=%s for %s (%s bytes)", job.job_id, original_name or "<unnamed>", len(source_buffer))
        return job

    def put(self, job_id: str, data: bytes) -> None:
        now = self._clock()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                self._jobs[job_id] = Job(job_id=job_id, source_buffer=data, created_at=now, last_access=now)
                self._evict_over_capacity()
            else:
                job.source_buffer = data
                job.touch(now)

    def get(self, job_id: str) -> bytes | None:
        """Working buffer for ``job_id``, or None when absent or already evicted."""
        job = self.get_job(job_id)
        return None if job is None else job.source_buffer

    def get_job(self, job_id: str) -> Job | None:
        now = self._clock()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.touch(now)
            return job

    def discard(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def sweep_expired(self, now: float | None = None) -> list[str]:
        """Evict jobs idle for longer than the TTL; returns the evicted ids."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if now - job.last_access > self.working_ttl_seconds
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            LOGGER.info("Evicted %s idle job(s): %s", len(expired), ", ".join(expired))
        return expired

    def _evict_over_capacity(self) -> None:
        # Caller holds self._lock.
        overflow = len(self._jobs) - self.max_working_jobs
        if overflow <= 0:
            return
        oldest = sorted(self._jobs.values(), key=lambda job: job.last_access)[:overflow]
        for job in oldest:
            del self._jobs[job.job_id]
            LOGGER.info("Evicted least recently used job_id=%s", job.job_id)

    # ------------------------------------------------------------------
    # Persisted artifacts
    # ------------------------------------------------------------------

    def save_artifact(self, job_id: str, data: bytes, variant: str) -> Path:
        """Persist one artifact as ``<job_id>_<timestamp_ms>_<variant>.xlsx``."""
        stamp = int(self._clock() * 1000)
        with self._fs_lock:
            path = self._artifact_path(job_id, stamp, variant)
            while path.exists():
                stamp += 1
                path = self._artifact_path(job_id, stamp, variant)

            tmp_path = path.with_name(path.name + ".tmp")
            try:
                tmp_path.write_bytes(data)
                os.replace(tmp_path, path)
            except OSError as exc:
                raise StorageError(f"Could not write artifact {path.name}: {exc}") from exc

        try:
            self._update_metadata(job_id, processed_name=path.name)
        except StorageError as exc:
            LOGGER.warning("Could not update metadata for job_id=%s: %s", job_id, exc)

        LOGGER.info("Saved %s artifact for job_id=%s: %s", variant, job_id, path.name)
        return path

    def latest_artifact(self, job_id: str, variant: str | None = None) -> Path | None:
        candidates = []
        for path in self.artifacts_dir.glob(f"*{ARTIFACT_SUFFIX}"):
            parsed = _parse_artifact_name(path.name)
            if parsed is None or parsed[0] != job_id:
                continue
            if variant is None or parsed[1] == variant:
                candidates.append(path)
        if not candidates:
            return None
        return max(candidates, key=lambda path: (path.stat().st_mtime, path.name))

    def housekeep_artifacts(self, now: float | None = None) -> list[Path]:
        """Keep, per job, only the newest artifacts that are within the count cap and age limit."""
        now = self._clock() if now is None else now
        groups: dict[str, list[tuple[float, Path]]] = defaultdict(list)
        with self._fs_lock:
            for path in self.artifacts_dir.glob(f"*{ARTIFACT_SUFFIX}"):
                parsed = _parse_artifact_name(path.name)
                if parsed is None:
                    continue
                try:
                    groups[parsed[0]].append((path.stat().st_mtime, path))
                except FileNotFoundError:
                    continue

            removed: list[Path] = []
            for entries in groups.values():
                entries.sort(key=lambda entry: entry[0], reverse=True)
                for rank, (mtime, path) in enumerate(entries):
                    if rank < self.max_artifacts_per_job and now - mtime <= self.artifact_max_age_seconds:
                        continue
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        continue
                    except OSError as exc:
                        LOGGER.warning("Could not delete artifact %s: %s", path.name, exc)
                        continue
                    removed.append(path)

        if removed:
            LOGGER.info("Artifact housekeeping removed %s file(s)", len(removed))
        return removed

    def _artifact_path(self, job_id: str, stamp: int, variant: str) -> Path:
        return self.artifacts_dir / f"{job_id}_{stamp}_{variant}{ARTIFACT_SUFFIX}"

    # ------------------------------------------------------------------
    # Metadata and chat history
    # ------------------------------------------------------------------

    def load_metadata(self, job_id: str) -> dict[str, Any] | None:
        path = self._metadata_path(job_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StorageError(f"Could not read metadata for job_id={job_id}: {exc}") from exc

    def add_chat_message(self, job_id: str, role: str, content: str) -> None:
        now = _iso(self._clock())
        with self._fs_lock:
            metadata = self.load_metadata(job_id)
            if metadata is None:
                raise StorageError(f"No metadata for job_id={job_id}")
            metadata.setdefault("chat_history", []).append(
                {"role": role, "content": content, "timestamp": now}
            )
            metadata["last_access"] = now
            self._write_metadata(job_id, metadata)

    def get_chat_history(self, job_id: str) -> list[dict[str, Any]]:
        metadata = self.load_metadata(job_id)
        if metadata is None:
            return []
        return list(metadata.get("chat_history", []))

    def _update_metadata(self, job_id: str, **fields: Any) -> None:
        with self._fs_lock:
            metadata = self.load_metadata(job_id)
            if metadata is None:
                return
            metadata.update(fields)
            metadata["last_access"] = _iso(self._clock())
            self._write_metadata(job_id, metadata)

    def _write_metadata(self, job_id: str, metadata: dict[str, Any]) -> None:
        path = self._metadata_path(job_id)
        try:
            path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Could not write metadata for job_id={job_id}: {exc}") from exc

    def _metadata_path(self, job_id: str) -> Path:
        return self.metadata_dir / f"{job_id}.json"


def _parse_artifact_name(name: str) -> tuple[str, str] | None:
    """Split ``<job_id>_<timestamp_ms>_<variant>.xlsx`` into (job_id, variant)."""
    match = _ARTIFACT_NAME_RE.match(name)
    if match is None:
        return None
    return match["job_id"], match["variant"]


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, UTC).isoformat()
