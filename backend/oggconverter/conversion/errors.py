"""Conversion error kinds. Each carries the HTTP status the API maps it to."""


class ConverterError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UploadRejected(ConverterError):
    """Wrong file type, oversize upload or an off-menu setting. Raised before any job exists."""

    status_code = 400

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class ProbeFailed(ConverterError):
    """Duration could not be read. Recovered locally, never fails a job."""


class EncodeFailed(ConverterError):
    """ffmpeg reported an error, timed out or was cancelled."""


class NotFound(ConverterError):
    status_code = 404


class IOFailure(ConverterError):
    """Reading or writing a job's files failed."""
