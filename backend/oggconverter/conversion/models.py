"""Conversion job model."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from oggconverter.config import (
    DEFAULT_QUALITY,
    DEFAULT_SAMPLE_RATE,
    OUTPUT_EXTENSION,
    QUALITY_OPTIONS,
    SAMPLE_RATE_OPTIONS,
)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SupportedSettings:
    QUALITY = QUALITY_OPTIONS  # kbps
    SAMPLE_RATE = SAMPLE_RATE_OPTIONS  # Hz


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConversionJob:
    """State of one upload-to-OGG conversion. Owned by the job store."""

    id: str
    filename: str
    original_size: int
    created_at: datetime = field(default_factory=utcnow)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    duration: str = "0:00"
    quality: int = DEFAULT_QUALITY
    sample_rate: int = DEFAULT_SAMPLE_RATE
    converted_size: Optional[int] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def output_filename(self) -> str:
        """Download name: the original stem with the OGG extension."""
        stem = Path(self.filename).stem or self.id
        return f"{stem}{OUTPUT_EXTENSION}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "originalSize": self.original_size,
            "convertedSize": self.converted_size,
            "duration": self.duration,
            "status": self.status.value,
            "progress": self.progress,
            "errorMessage": self.error_message,
            "quality": self.quality,
            "sampleRate": self.sample_rate,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
