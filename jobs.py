"""Transcode job records, the job store, and the job lifecycle manager."""

from __future__ import annotations

import asyncio
import codecs
import collections
import contextlib
import dataclasses
import enum
import logging
import pathlib
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from typing import Any
from typing import Protocol

from transcoding import DashPolicy
from transcoding import MediaInfo
from transcoding import NoMediaStreamsError
from transcoding import ProbeError
from transcoding import ProgressEvent
from transcoding import StreamClassification
from transcoding import build_dash_ffmpeg_cmd
from transcoding import classify_streams
from transcoding import error_tail
from transcoding import interpret_progress
from transcoding import parse_progress_line
from transcoding import split_output_lines


log = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20
_STDERR_CHUNK_BYTES = 4096
_ERROR_MAX_CHARS = 1000


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.ERROR)


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.ERROR}),
    JobStatus.PROCESSING: frozenset({JobStatus.READY, JobStatus.ERROR}),
    JobStatus.READY: frozenset(),
    JobStatus.ERROR: frozenset(),
}


class JobStateError(Exception):
    """Raised on a status change the job state machine does not allow."""


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class Job:
    id: str
    status: JobStatus = JobStatus.QUEUED
    percent: int = 0
    error: str | None = None
    created_at: str = dataclasses.field(default_factory=_now)
    started_at: str | None = None
    finished_at: str | None = None

    def apply(
        self,
        status: JobStatus | None = None,
        percent: int | None = None,
        error: str | None = None,
    ) -> Job:
        """Return a copy with the patch applied under the state machine rules.

        Percent only moves forward, and only while processing. Terminal jobs
        ignore percent patches and reject status changes.
        """
        if self.status.is_terminal:
            if status is not None and status is not self.status:
                raise JobStateError(f"job {self.id} is already {self.status.value}")
            return self

        changes: dict[str, Any] = {}
        if status is not None and status is not self.status:
            if status not in _TRANSITIONS[self.status]:
                raise JobStateError(
                    f"job {self.id}: {self.status.value} -> {status.value} not allowed"
                )
            now = _now()
            changes["status"] = status
            if status is JobStatus.PROCESSING:
                changes["percent"] = 0
                changes["started_at"] = now
            if status.is_terminal:
                changes["finished_at"] = now
            if status is JobStatus.READY:
                changes["percent"] = 100
            elif status is JobStatus.ERROR:
                changes["error"] = error or "Unknown error"

        if percent is not None and changes.get("status", self.status) is JobStatus.PROCESSING:
            current = changes.get("percent", self.percent)
            changes["percent"] = max(current, min(100, max(0, int(percent))))

        return dataclasses.replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "percent": self.percent,
            "createdAt": self.created_at,
        }
        if self.started_at:
            result["startedAt"] = self.started_at
        if self.finished_at:
            result["finishedAt"] = self.finished_at
        if self.error:
            result["error"] = self.error
        return result


class JobStore(Protocol):
    def create(self, job_id: str) -> Job: ...

    def update(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        percent: int | None = None,
        error: str | None = None,
    ) -> Job | None: ...

    def get(self, job_id: str) -> Job | None: ...


class InMemoryJobStore:
    """Process-lifetime job registry. Records are immutable snapshots."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str) -> Job:
        job = Job(id=job_id)
        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"job id already exists: {job_id}")
            self._jobs[job_id] = job
        return job

    def update(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        percent: int | None = None,
        error: str | None = None,
    ) -> Job | None:
        """Apply a patch atomically. Returns None for unknown ids."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            updated = job.apply(status=status, percent=percent, error=error)
            self._jobs[job_id] = updated
            return updated

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


def _remove_upload(path: str, job_id: str) -> None:
    try:
        pathlib.Path(path).unlink()
    except FileNotFoundError:
        log.debug("Upload for job %s already removed: %s", job_id, path)
    except OSError as e:
        log.debug("Could not remove upload for job %s: %s", job_id, e)


class JobManager:
    """Runs one background worker per submitted file.

    Each worker probes the upload, classifies its streams, runs ffmpeg into
    ``<dash_dir>/<job_id>`` and records progress in the store. Workers share
    nothing but the store.
    """

    def __init__(
        self,
        store: JobStore,
        dash_dir: str | pathlib.Path,
        prober: Callable[[str], MediaInfo],
        policy: DashPolicy | None = None,
        ffmpeg_path: str = "ffmpeg",
        max_concurrent_jobs: int = 0,
    ) -> None:
        self.store = store
        self.dash_dir = pathlib.Path(dash_dir)
        self.prober = prober
        self.policy = policy or DashPolicy()
        self.ffmpeg_path = ffmpeg_path
        self._slots = asyncio.Semaphore(max_concurrent_jobs) if max_concurrent_jobs > 0 else None
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def output_dir(self, job_id: str) -> pathlib.Path:
        return self.dash_dir / job_id

    def submit(self, upload_path: str, filename: str = "") -> Job:
        """Register a queued job and start its worker. Must run on the event loop."""
        job_id = str(uuid.uuid4())
        job = self.store.create(job_id)
        log.info("Job %s queued for %s", job_id, filename or upload_path)
        task = asyncio.create_task(self._run_job(job_id, upload_path), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
        return job

    async def wait(self, job_id: str) -> Job | None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self.store.get(job_id)

    def active_jobs(self) -> list[str]:
        return list(self._tasks)

    def shutdown(self) -> None:
        """Kill all running ffmpeg processes for clean shutdown."""
        for job_id, process in list(self._processes.items()):
            try:
                process.kill()
                log.info("Shutdown: killed ffmpeg for job %s", job_id)
            except (ProcessLookupError, OSError):
                pass

    async def _run_job(self, job_id: str, upload_path: str) -> None:
        try:
            async with self._slots or contextlib.nullcontext():
                await self._process(job_id, upload_path)
        except Exception:
            log.exception("Job %s failed unexpectedly", job_id)
            self._fail(job_id, "Internal error while processing job")
        finally:
            _remove_upload(upload_path, job_id)

    async def _process(self, job_id: str, upload_path: str) -> None:
        try:
            media_info = await asyncio.to_thread(self.prober, upload_path)
        except ProbeError as e:
            log.warning("Job %s: probe failed: %s", job_id, e)
            self._fail(job_id, f"Could not read media metadata: {e}")
            return

        try:
            classification = classify_streams(media_info)
        except NoMediaStreamsError as e:
            log.warning("Job %s: %s", job_id, e)
            self._fail(job_id, str(e))
            return

        log.info(
            "Job %s probe: video=%s audio=%s duration=%s",
            job_id,
            classification.has_video,
            classification.has_audio,
            f"{classification.duration:.1f}s" if classification.duration else "unknown",
        )
        self.store.update(job_id, status=JobStatus.PROCESSING)
        log.info("Job %s processing", job_id)

        error = await self._encode(job_id, upload_path, classification)
        if error is None:
            self.store.update(job_id, status=JobStatus.READY)
            log.info("Job %s ready", job_id)
        else:
            self._fail(job_id, error)

    async def _encode(
        self,
        job_id: str,
        upload_path: str,
        classification: StreamClassification,
    ) -> str | None:
        """Run ffmpeg for one job. Returns None on success, else an error message."""
        output_dir = self.output_dir(job_id)
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = build_dash_ffmpeg_cmd(
            upload_path,
            output_dir,
            classification,
            self.policy,
            self.ffmpeg_path,
        )
        log.info("Starting ffmpeg for job %s: %s", job_id, " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("Job %s: could not start ffmpeg: %s", job_id, e)
            return f"Could not start ffmpeg: {e}"

        self._processes[job_id] = process
        tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        try:
            await self._pump_stderr(
                process,
                job_id,
                tail,
                lambda event: self._on_progress(job_id, event, classification.duration),
            )
            returncode = await process.wait()
        finally:
            self._processes.pop(job_id, None)

        if returncode == 0:
            return None
        log.error("ffmpeg:%s failed (exit %d): %s", job_id, returncode, "\n".join(tail))
        return error_tail(tail, _ERROR_MAX_CHARS) or f"ffmpeg exited with code {returncode}"

    async def _pump_stderr(
        self,
        process: asyncio.subprocess.Process,
        job_id: str,
        tail: collections.deque[str],
        on_progress: Callable[[ProgressEvent], None],
    ) -> None:
        assert process.stderr is not None
        # Chunks can end mid-character
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await process.stderr.read(_STDERR_CHUNK_BYTES)
            if not chunk:
                break
            lines, pending = split_output_lines(pending + decoder.decode(chunk))
            for line in lines:
                self._handle_line(line, job_id, tail, on_progress)
        pending += decoder.decode(b"", final=True)
        if pending.strip():
            self._handle_line(pending, job_id, tail, on_progress)

    @staticmethod
    def _handle_line(
        text: str,
        job_id: str,
        tail: collections.deque[str],
        on_progress: Callable[[ProgressEvent], None],
    ) -> None:
        text = text.rstrip()
        event = parse_progress_line(text)
        if event is not None:
            on_progress(event)
            return
        tail.append(text)
        lowered = text.lower()
        is_fatal = "error" in lowered or "fatal" in lowered
        log.log(logging.WARNING if is_fatal else logging.DEBUG, "ffmpeg:%s %s", job_id, text)

    def _on_progress(self, job_id: str, event: ProgressEvent, duration: float | None) -> None:
        percent = interpret_progress(event, duration)
        if percent is not None:
            self.store.update(job_id, percent=percent)

    def _fail(self, job_id: str, message: str) -> None:
        try:
            self.store.update(job_id, status=JobStatus.ERROR, error=message)
        except JobStateError as e:
            log.warning("Job %s: %s", job_id, e)
            return
        log.info("Job %s error: %s", job_id, message)
