"""Tests for the conversion job lifecycle."""
import threading

import pytest

from conftest import FakeEncoder, assert_job_invariants
from oggconverter.conversion.errors import EncodeFailed, NotFound, UploadRejected
from oggconverter.conversion.models import JobStatus
from oggconverter.conversion.service import ConversionService


def test_submit_returns_processing_job_then_completes(service, encoder, staged_mp3):
    src = staged_mp3("Track 01.mp3")
    size = src.stat().st_size

    job = service.submit(src, "Track 01.mp3", 128, 44100)

    assert job.status == JobStatus.PROCESSING
    assert job.progress == 0
    assert job.original_size == size
    assert job.duration == "1:05"
    assert_job_invariants(job)

    done = service.wait(job.id, timeout=5)
    assert done.status == JobStatus.COMPLETED
    assert done.progress == 100
    assert done.converted_size == len(encoder.output)
    assert done.completed_at is not None
    assert_job_invariants(done)
    assert not src.exists()
    assert service.output_path(job.id).is_file()


def test_encoder_gets_mono_and_requested_settings(service, encoder, staged_mp3):
    job = service.submit(staged_mp3(), "song.mp3", 192, 48000)
    service.wait(job.id, timeout=5)

    call = encoder.calls[0]
    assert call["channels"] == 1
    assert call["bitrate"] == 192
    assert call["sample_rate"] == 48000
    assert call["dest"] == service.output_path(job.id)
    assert call["dest"].name == f"{job.id}.ogg"


def test_probe_failure_falls_back_to_zero_duration(service, encoder, staged_mp3):
    encoder.duration = None

    job = service.submit(staged_mp3(), "song.mp3")

    assert job.duration == "0:00"
    assert service.wait(job.id, timeout=5).status == JobStatus.COMPLETED


@pytest.mark.parametrize("quality,sample_rate", [(64, 44100), (128, 16000), (0, 0)])
def test_off_menu_settings_are_rejected(service, staged_mp3, quality, sample_rate):
    with pytest.raises(UploadRejected):
        service.submit(staged_mp3(), "song.mp3", quality, sample_rate)
    assert service.list() == []


def test_encode_failure_marks_job_failed(service, encoder, staged_mp3):
    encoder.error = EncodeFailed("Invalid data found when processing input")
    src = staged_mp3()

    job = service.submit(src, "song.mp3")
    done = service.wait(job.id, timeout=5)

    assert done.status == JobStatus.FAILED
    assert done.error_message == "Invalid data found when processing input"
    assert done.progress < 100
    assert_job_invariants(done)
    assert not src.exists()
    assert not service.output_path(job.id).exists()


def test_unexpected_worker_error_is_isolated_to_job(service, encoder, staged_mp3):
    encoder.error = OSError("disk full")

    job = service.submit(staged_mp3(), "song.mp3")
    done = service.wait(job.id, timeout=5)

    assert done.status == JobStatus.FAILED
    assert "disk full" in done.error_message
    assert_job_invariants(done)


def test_missing_output_after_success_fails_job(service, encoder, staged_mp3):
    encoder.output = None

    job = service.submit(staged_mp3(), "song.mp3")
    done = service.wait(job.id, timeout=5)

    assert done.status == JobStatus.FAILED
    assert done.error_message.startswith("Converted file could not be read")
    assert done.converted_size is None
    assert_job_invariants(done)


def test_progress_is_capped_and_monotonic(service):
    job = service.store.create(filename="a.mp3", original_size=1, status=JobStatus.PROCESSING)

    service._on_progress(job.id, 12.4)
    assert service.get(job.id).progress == 12
    service._on_progress(job.id, 99.9)
    assert service.get(job.id).progress == 95
    service._on_progress(job.id, 30)
    assert service.get(job.id).progress == 95


def test_progress_ignored_after_terminal_state(service):
    job = service.store.create(
        filename="a.mp3", original_size=1, status=JobStatus.FAILED, error_message="boom",
    )

    service._on_progress(job.id, 50)

    assert service.get(job.id).progress == 0


def test_download_requires_completed_job(service, encoder, staged_mp3):
    encoder.gate = threading.Event()
    job = service.submit(staged_mp3(), "Mix.MP3")
    assert encoder.started.wait(5)

    with pytest.raises(NotFound):
        service.download(job.id)

    encoder.gate.set()
    service.wait(job.id, timeout=5)
    path, done = service.download(job.id)
    assert path == service.output_path(job.id)
    assert done.output_filename == "Mix.ogg"


def test_download_unknown_or_missing_output(service, staged_mp3):
    with pytest.raises(NotFound):
        service.download("does-not-exist")

    job = service.submit(staged_mp3(), "song.mp3")
    service.wait(job.id, timeout=5)
    service.output_path(job.id).unlink()

    with pytest.raises(NotFound):
        service.download(job.id)


def test_remove_unknown_job_has_no_side_effects(service, staged_mp3):
    job = service.submit(staged_mp3(), "song.mp3")
    service.wait(job.id, timeout=5)

    assert service.remove("does-not-exist") is False
    assert [j.id for j in service.list()] == [job.id]
    assert service.output_path(job.id).exists()


def test_remove_completed_job_deletes_output(service, staged_mp3):
    job = service.submit(staged_mp3(), "song.mp3")
    service.wait(job.id, timeout=5)
    output = service.output_path(job.id)
    assert output.exists()

    assert service.remove(job.id) is True

    assert service.get(job.id) is None
    assert not output.exists()
    with pytest.raises(NotFound):
        service.download(job.id)


def test_remove_running_job_cancels_and_waits(service, encoder, staged_mp3):
    encoder.gate = threading.Event()
    src = staged_mp3()
    job = service.submit(src, "song.mp3")
    assert encoder.started.wait(5)

    assert service.remove(job.id, wait_timeout=5) is True

    assert service.get(job.id) is None
    assert not service.is_running(job.id)
    assert not src.exists()
    assert not service.output_path(job.id).exists()


def test_cancel_running_job(service, encoder, staged_mp3):
    encoder.gate = threading.Event()
    job = service.submit(staged_mp3(), "song.mp3")
    assert encoder.started.wait(5)

    service.cancel(job.id)
    done = service.wait(job.id, timeout=5)

    assert done.status == JobStatus.FAILED
    assert done.error_message == "Conversion cancelled"
    assert_job_invariants(done)


def test_cancel_queued_job_fails_immediately(tmp_path, staged_mp3):
    encoder = FakeEncoder()
    encoder.gate = threading.Event()
    svc = ConversionService(
        encoder=encoder,
        upload_dir=tmp_path / "up1",
        output_dir=tmp_path / "out1",
        max_workers=1,
    )
    try:
        first = svc.submit(staged_mp3(), "first.mp3")
        assert encoder.started.wait(5)
        queued_src = svc.staging_path("second.mp3")
        queued_src.write_bytes(b"ID3")
        queued = svc.submit(queued_src, "second.mp3")

        cancelled = svc.cancel(queued.id)

        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error_message == "Conversion cancelled"
        assert not queued_src.exists()
        assert svc.get(first.id).status == JobStatus.PROCESSING
    finally:
        encoder.gate.set()
        svc.shutdown(wait=True)
    assert len(encoder.calls) == 1


def test_cancel_unknown_and_terminal(service, staged_mp3):
    with pytest.raises(NotFound):
        service.cancel("does-not-exist")

    job = service.submit(staged_mp3(), "song.mp3")
    service.wait(job.id, timeout=5)

    assert service.cancel(job.id).status == JobStatus.COMPLETED


def test_concurrent_jobs_finish_independently(service, encoder, staged_mp3):
    encoder.progress = [5.0, 25.0, 60.0, 95.0, 99.0]
    jobs = [service.submit(staged_mp3(f"{i}.mp3"), f"{i}.mp3") for i in range(2)]

    done = [service.wait(j.id, timeout=5) for j in jobs]

    assert [d.status for d in done] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
    assert {d.filename for d in done} == {"0.mp3", "1.mp3"}
    assert len({d.id for d in done}) == 2
    for d in done:
        assert_job_invariants(d)


def test_list_orders_newest_first(service, staged_mp3):
    jobs = [service.submit(staged_mp3(f"{i}.mp3"), f"{i}.mp3") for i in range(3)]

    listed = service.list()

    assert [j.id for j in listed] == [j.id for j in reversed(jobs)]


def test_submit_after_shutdown_fails_job(service, staged_mp3):
    service.shutdown(wait=True)
    src = staged_mp3()

    job = service.submit(src, "song.mp3")

    assert job.status == JobStatus.FAILED
    assert_job_invariants(job)
    assert not src.exists()


def test_shutdown_fails_queued_jobs(tmp_path, staged_mp3):
    encoder = FakeEncoder()
    encoder.gate = threading.Event()
    svc = ConversionService(
        encoder=encoder,
        upload_dir=tmp_path / "up2",
        output_dir=tmp_path / "out2",
        max_workers=1,
    )
    first = svc.submit(staged_mp3(), "first.mp3")
    assert encoder.started.wait(5)
    queued_src = svc.staging_path("second.mp3")
    queued_src.write_bytes(b"ID3")
    queued = svc.submit(queued_src, "second.mp3")

    svc.shutdown(wait=False)

    job = svc.get(queued.id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "Conversion cancelled"
    assert_job_invariants(job)
    assert not queued_src.exists()

    # The running job sees the cancel token and fails too
    svc.shutdown(wait=True)
    assert svc.get(first.id).status == JobStatus.FAILED
    assert len(encoder.calls) == 1
