from .service import ConversionService
from .models import ConversionJob, JobStatus, SupportedSettings
from .store import InMemoryJobStore, JobStore

__all__ = ["ConversionService", "ConversionJob", "JobStatus", "SupportedSettings", "InMemoryJobStore", "JobStore"]
