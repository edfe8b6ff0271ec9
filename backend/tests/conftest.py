"""Shared fixtures: a scripted encoder and a service writing into tmp dirs."""
import os
import tempfile
import threading
from pathlib import Path

import pytest

# Keep config from creating dirs inside the source tree
_TMP_ROOT = Path(tempfile.mkdtemp(prefix="oggconverter-tests-"))
os.environ.setdefault("UPLOAD_DIR", str(_TMP_ROOT / "uploads"))
os.environ.setdefault("OUTPUT_DIR", str(_TMP_ROOT / "outputs"))

from oggconverter.conversion.errors import EncodeFailed, ProbeFailed  # noqa: E402
from oggconverter.conversion.models import JobStatus  # noqa: E402
from oggconverter.conversion.service import ConversionService  # noqa: E402


class FakeEncoder:
    """Stands in for ffmpeg. Behaviour is scripted per test."""

    def __init__(self, duration=65.0, progress=(10.0, 50.0, 90.0), output=b"OggS" + b"\x00" * 2048):
        self.duration = duration
        self.progress = list(progress)
        self.output = output
        self.error = None
        self.gate = None
        self.started = threading.Event()
        self.calls = []

    def is_available(self):
        return True

    def probe_duration(self, path):
        if self.duration is None:
            raise ProbeFailed("Invalid data found when processing input")
        return self.duration

    def encode(self, src, dest, *, bitrate, sample_rate, channels=1, duration=None,
               on_progress=None, cancel_event=None, timeout=None):
        self.calls.append({
            "src": Path(src), "dest": Path(dest), "bitrate": bitrate,
            "sample_rate": sample_rate, "channels": channels, "duration": duration,
        })
        self.started.set()
        if self.gate is not None:
            # Hold the job in processing until released or cancelled
            while not self.gate.wait(0.01):
                if cancel_event is not None and cancel_event.is_set():
                    raise EncodeFailed("Conversion cancelled")
        for percent in self.progress:
            if on_progress:
                on_progress(percent)
        if self.error is not None:
            raise self.error
        if self.output is not None:
            Path(dest).write_bytes(self.output)
        return Path(dest)


def assert_job_invariants(job):
    assert 0 <= job.progress <= 100
    assert (job.progress == 100) == (job.status == JobStatus.COMPLETED)
    completed = job.status == JobStatus.COMPLETED
    assert (job.converted_size is not None) == completed
    assert (job.completed_at is not None) == completed
    assert (job.error_message is not None) == (job.status == JobStatus.FAILED)


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def service(tmp_path, encoder):
    svc = ConversionService(
        encoder=encoder,
        upload_dir=tmp_path / "uploads",
        output_dir=tmp_path / "outputs",
        max_workers=2,
        encode_timeout=30,
    )
    yield svc
    if encoder.gate is not None:
        encoder.gate.set()
    svc.shutdown(wait=True)


@pytest.fixture
def staged_mp3(service):
    """Write a fake MP3 into the service's upload dir and return its path."""
    def _make(name="song.mp3", data=b"ID3" + b"\xff\xfb" * 2048):
        path = service.staging_path(name)
        path.write_bytes(data)
        return path
    return _make
