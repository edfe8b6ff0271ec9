"""ffmpeg/ffprobe adapter: probes MP3 duration and encodes mono OGG with progress."""
import json
import logging
import shutil
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from oggconverter.config import (
    ENCODE_TIMEOUT,
    FFMPEG_BIN,
    FFPROBE_BIN,
    OUTPUT_CHANNELS,
    PROBE_TIMEOUT,
)
from oggconverter.conversion.errors import EncodeFailed, ProbeFailed

logger = logging.getLogger("converter.encoder")

ProgressCallback = Callable[[float], None]

# Lines of ffmpeg stderr kept for the failure message
_STDERR_TAIL = 20


def format_duration(seconds: float) -> str:
    """Render seconds as m:ss, e.g. 185.4 -> '3:05'."""
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"


def _parse_out_time(key: str, value: str) -> Optional[float]:
    """Seconds encoded so far from an ffmpeg -progress line, or None."""
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        # ffmpeg reports microseconds under both keys
        return int(value) / 1_000_000
    except ValueError:
        return None


class FFmpegEncoder:
    """Runs ffmpeg as a subprocess and reports progress from its -progress stream."""

    def __init__(self, ffmpeg_bin: str = FFMPEG_BIN, ffprobe_bin: str = FFPROBE_BIN):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    def is_available(self) -> bool:
        return shutil.which(self.ffmpeg_bin) is not None

    def probe_duration(self, path: Path) -> float:
        """Duration of an audio file in seconds."""
        cmd = [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            str(path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT)
        except FileNotFoundError:
            raise ProbeFailed("ffprobe not installed")
        except subprocess.TimeoutExpired:
            raise ProbeFailed(f"ffprobe timed out after {PROBE_TIMEOUT}s")
        if result.returncode != 0:
            raise ProbeFailed(result.stderr.strip() or f"ffprobe exited with code {result.returncode}")
        try:
            return float(json.loads(result.stdout)["format"]["duration"])
        except (ValueError, KeyError, TypeError) as e:
            raise ProbeFailed(f"No duration in ffprobe output: {e}")

    def build_command(self, src: Path, dest: Path, bitrate: int, sample_rate: int, channels: int) -> list[str]:
        return [
            self.ffmpeg_bin,
            "-hide_banner", "-nostdin", "-nostats",
            "-loglevel", "error",
            "-y", "-i", str(src),
            "-vn",  # MP3 cover art would otherwise become a video stream
            "-ac", str(channels),
            "-c:a", "libvorbis",
            "-b:a", f"{bitrate}k",
            "-ar", str(sample_rate),
            "-f", "ogg",
            "-progress", "pipe:1",
            str(dest),
        ]

    def encode(
        self,
        src: Path,
        dest: Path,
        *,
        bitrate: int,
        sample_rate: int,
        channels: int = OUTPUT_CHANNELS,
        duration: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = ENCODE_TIMEOUT,
    ) -> Path:
        """Encode src to OGG at dest. Returns dest or raises EncodeFailed.

        on_progress receives percent estimates (0-100, not guaranteed
        monotonic) in the order ffmpeg emits them; it is only called when
        the input duration is known. The input file is never removed.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise EncodeFailed("Conversion cancelled")
        cmd = self.build_command(src, dest, bitrate, sample_rate, channels)
        logger.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            logger.error("ffmpeg not found. Install ffmpeg for audio conversion.")
            raise EncodeFailed("ffmpeg not installed")

        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL)
        drain = threading.Thread(target=self._drain, args=(proc.stderr, stderr_tail), daemon=True)
        drain.start()
        stop_reason: list[str] = []
        watchdog = threading.Thread(
            target=self._watch,
            args=(proc, cancel_event, timeout, stop_reason),
            daemon=True,
        )
        watchdog.start()

        encoded = 0.0
        try:
            for line in proc.stdout:
                key, _, value = line.strip().partition("=")
                seconds = _parse_out_time(key, value)
                if seconds is None:
                    continue
                encoded = max(encoded, seconds)
                if duration and on_progress:
                    # Some builds report a large negative "no timestamp" value first
                    on_progress(max(0.0, min(100.0, seconds / duration * 100.0)))
            returncode = proc.wait()
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            drain.join(timeout=5)
            watchdog.join(timeout=5)

        if stop_reason or returncode != 0 or encoded <= 0:
            dest.unlink(missing_ok=True)
            if stop_reason:
                raise EncodeFailed(stop_reason[0])
            detail = "\n".join(stderr_tail).strip()
            if returncode == 0:
                # ffmpeg can exit cleanly on undecodable input having written nothing
                raise EncodeFailed(detail or "No audio could be decoded from the input")
            raise EncodeFailed(detail or f"ffmpeg exited with code {returncode}")
        logger.info("Encoded %s -> %s (%.1fs of audio)", src.name, dest.name, encoded)
        return dest

    @staticmethod
    def _drain(stream, tail: deque) -> None:
        for line in stream:
            line = line.rstrip()
            if line:
                tail.append(line)

    @staticmethod
    def _watch(proc: subprocess.Popen, cancel_event, timeout, stop_reason: list) -> None:
        """Kill ffmpeg on cancellation or timeout. Exits when the process ends."""
        deadline = time.monotonic() + timeout if timeout else None
        while proc.poll() is None:
            if cancel_event is not None and cancel_event.wait(0.2):
                stop_reason.append("Conversion cancelled")
            elif cancel_event is None:
                time.sleep(0.2)
            if not stop_reason and deadline is not None and time.monotonic() > deadline:
                stop_reason.append(f"Conversion timed out after {int(timeout)}s")
            if stop_reason:
                proc.kill()
                return
