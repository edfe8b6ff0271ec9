"""Conversion job controller: stages uploads, runs encodes in the background, tracks their state."""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from oggconverter.config import (
    DEFAULT_QUALITY,
    DEFAULT_SAMPLE_RATE,
    ENCODE_TIMEOUT,
    MAX_WORKERS,
    OUTPUT_CHANNELS,
    OUTPUT_DIR,
    OUTPUT_EXTENSION,
    UPLOAD_DIR,
)
from oggconverter.conversion.encoder import FFmpegEncoder, format_duration
from oggconverter.conversion.errors import EncodeFailed, IOFailure, NotFound, ProbeFailed, UploadRejected
from oggconverter.conversion.models import ConversionJob, JobStatus, SupportedSettings, utcnow
from oggconverter.conversion.store import InMemoryJobStore, JobStore

logger = logging.getLogger("converter.service")

# Progress stays below this until the output is confirmed on disk
MAX_RUNNING_PROGRESS = 95
CANCELLED_MESSAGE = "Conversion cancelled"


@dataclass
class _RunningJob:
    future: Future
    cancel_event: threading.Event
    input_path: Path


def validate_settings(quality: int, sample_rate: int) -> None:
    if quality not in SupportedSettings.QUALITY:
        raise UploadRejected(
            f"Unsupported quality: {quality} kbps. Options: {', '.join(map(str, SupportedSettings.QUALITY))}"
        )
    if sample_rate not in SupportedSettings.SAMPLE_RATE:
        raise UploadRejected(
            f"Unsupported sample rate: {sample_rate} Hz. Options: {', '.join(map(str, SupportedSettings.SAMPLE_RATE))}"
        )


def _remove_file(path: Path) -> None:
    """Delete a file if present. A missing file is not an error."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


class ConversionService:
    """Handles MP3 to OGG conversion jobs with progress, cancellation and cleanup.

    Each submitted job is encoded on a bounded thread pool. Job state lives in
    the store; workers only change it through this class, keyed by job id.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        encoder: Optional[FFmpegEncoder] = None,
        upload_dir: Path = UPLOAD_DIR,
        output_dir: Path = OUTPUT_DIR,
        max_workers: int = MAX_WORKERS,
        encode_timeout: Optional[float] = ENCODE_TIMEOUT,
    ):
        self.store = store or InMemoryJobStore()
        self.encoder = encoder or FFmpegEncoder()
        self.upload_dir = Path(upload_dir)
        self.output_dir = Path(output_dir)
        self.encode_timeout = encode_timeout
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._running: dict[str, _RunningJob] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="encode")
        logger.info("ConversionService initialized with max_workers=%s", max_workers)

    def staging_path(self, filename: str) -> Path:
        """Unique path in the upload dir for an incoming file."""
        name = Path(filename or "").name or "upload.mp3"
        return self.upload_dir / f"{uuid.uuid4().hex}_{name}"

    def output_path(self, job_id: str) -> Path:
        return self.output_dir / f"{job_id}{OUTPUT_EXTENSION}"

    def get(self, job_id: str) -> Optional[ConversionJob]:
        return self.store.get(job_id)

    def list(self) -> list[ConversionJob]:
        return self.store.list()

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._running

    def _probe_duration(self, path: Path) -> Optional[float]:
        try:
            return self.encoder.probe_duration(path)
        except ProbeFailed as e:
            logger.warning("Could not get audio duration for %s: %s", path.name, e)
            return None

    def submit(
        self,
        input_path: Path,
        filename: str,
        quality: int = DEFAULT_QUALITY,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
    ) -> ConversionJob:
        """Create a job for a staged upload and start encoding it. Returns without waiting.

        The staged file belongs to the service from here on and is removed
        once the job reaches a terminal state.
        """
        input_path = Path(input_path)
        validate_settings(quality, sample_rate)
        try:
            original_size = input_path.stat().st_size
        except OSError as e:
            raise IOFailure(f"Uploaded file is not readable: {e}")

        seconds = self._probe_duration(input_path)
        job = self.store.create(
            filename=filename,
            original_size=original_size,
            duration=format_duration(seconds) if seconds else "0:00",
            status=JobStatus.PROCESSING,
            progress=0,
            quality=quality,
            sample_rate=sample_rate,
        )
        cancel_event = threading.Event()
        # Registered under the lock so the worker's cleanup cannot run first
        with self._lock:
            try:
                future = self._executor.submit(self._run, job.id, input_path, seconds, cancel_event)
            except RuntimeError:
                # Pool already shut down
                future = None
            else:
                self._running[job.id] = _RunningJob(future, cancel_event, input_path)
        if future is None:
            _remove_file(input_path)
            logger.error("Job %s not started: converter is shutting down", job.id)
            return self.store.update(job.id, status=JobStatus.FAILED, error_message="Converter is shutting down")
        logger.info(
            "Started job %s for %s (%s kbps, %s Hz, %s)",
            job.id, filename, quality, sample_rate, job.duration,
        )
        return job

    def _run(self, job_id: str, input_path: Path, duration: Optional[float], cancel_event: threading.Event) -> None:
        output_path = self.output_path(job_id)
        try:
            job = self.store.get(job_id)
            if job is None:
                return
            if cancel_event.is_set():
                raise EncodeFailed(CANCELLED_MESSAGE)
            self.encoder.encode(
                input_path,
                output_path,
                bitrate=job.quality,
                sample_rate=job.sample_rate,
                channels=OUTPUT_CHANNELS,
                duration=duration,
                on_progress=lambda percent: self._on_progress(job_id, percent),
                cancel_event=cancel_event,
                timeout=self.encode_timeout,
            )
            self._on_success(job_id, output_path)
        except EncodeFailed as e:
            logger.error("Conversion failed for job %s: %s", job_id, e.message)
            self._on_failure(job_id, e.message, output_path)
        except Exception as e:
            logger.exception("Conversion failed for job %s: %s", job_id, e)
            self._on_failure(job_id, f"Conversion failed: {e}", output_path)
        finally:
            _remove_file(input_path)
            with self._lock:
                self._running.pop(job_id, None)

    def _on_progress(self, job_id: str, percent: float) -> None:
        job = self.store.get(job_id)
        if job is None or job.status.is_terminal:
            return
        progress = max(job.progress, min(int(round(percent)), MAX_RUNNING_PROGRESS))
        if progress != job.progress:
            self.store.update(job_id, progress=progress)

    def _on_success(self, job_id: str, output_path: Path) -> None:
        try:
            size = output_path.stat().st_size
        except OSError as e:
            logger.error("Encoded output missing for job %s: %s", job_id, e)
            self._on_failure(job_id, f"Converted file could not be read: {e}", output_path)
            return
        self.store.update(
            job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            converted_size=size,
            completed_at=utcnow(),
            error_message=None,
        )
        logger.info("Job %s completed (%s bytes)", job_id, size)

    def _on_failure(self, job_id: str, message: str, output_path: Path) -> None:
        _remove_file(output_path)
        self.store.update(job_id, status=JobStatus.FAILED, error_message=message or "Conversion failed")

    def cancel(self, job_id: str) -> ConversionJob:
        """Stop a job that has not finished. Terminal jobs are returned unchanged.

        A queued job fails immediately; a running one fails once ffmpeg has
        been stopped, so the returned snapshot may still show processing.
        """
        job = self.store.get(job_id)
        if job is None:
            raise NotFound("Conversion job not found")
        if job.status.is_terminal:
            return job
        with self._lock:
            running = self._running.get(job_id)
            if running is None:
                return job
            running.cancel_event.set()
            never_started = running.future.cancel()
            if never_started:
                self._running.pop(job_id, None)
        if never_started:
            _remove_file(running.input_path)
            self.store.update(job_id, status=JobStatus.FAILED, error_message=CANCELLED_MESSAGE)
        logger.info("Cancel requested for job %s", job_id)
        return self.store.get(job_id) or job

    def download(self, job_id: str) -> tuple[Path, ConversionJob]:
        """Path of a completed job's output. NotFound otherwise."""
        job = self.store.get(job_id)
        if job is None or job.status != JobStatus.COMPLETED:
            raise NotFound("File not found or conversion not completed")
        path = self.output_path(job_id)
        if not path.is_file():
            raise NotFound("Converted file not found")
        return path, job

    def remove(self, job_id: str, wait_timeout: Optional[float] = 30) -> bool:
        """Delete a job and its output. An unfinished job is cancelled and awaited first."""
        if self.store.get(job_id) is None:
            return False
        with self._lock:
            running = self._running.get(job_id)
        if running is not None:
            self.cancel(job_id)
            wait_futures([running.future], timeout=wait_timeout)
        _remove_file(self.output_path(job_id))
        removed = self.store.delete(job_id)
        if removed:
            logger.info("Deleted job %s", job_id)
        return removed

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[ConversionJob]:
        """Block until the job's worker is done. Returns the final job."""
        with self._lock:
            running = self._running.get(job_id)
        if running is not None:
            wait_futures([running.future], timeout=timeout)
        return self.store.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel unfinished jobs and stop the worker pool."""
        with self._lock:
            running = list(self._running.items())
            self._running.clear()
        for job_id, r in running:
            r.cancel_event.set()
            if r.future.cancel():
                # Queued, so no worker will ever finish it
                _remove_file(r.input_path)
                self.store.update(job_id, status=JobStatus.FAILED, error_message=CANCELLED_MESSAGE)
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("ConversionService stopped (%s unfinished jobs cancelled)", len(running))


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service
