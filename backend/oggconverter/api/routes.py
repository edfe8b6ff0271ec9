"""API routes for upload, conversion status, download and deletion."""
import asyncio
import logging
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from oggconverter.config import (
    DEFAULT_QUALITY,
    DEFAULT_SAMPLE_RATE,
    INPUT_CONTENT_TYPES,
    INPUT_EXTENSIONS,
    MAX_UPLOAD_SIZE_BYTES,
    MAX_UPLOAD_SIZE_MB,
)
from oggconverter.conversion.errors import ConverterError, NotFound, UploadRejected
from oggconverter.conversion.models import SupportedSettings
from oggconverter.conversion.service import ConversionService, get_conversion_service, validate_settings

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])

CHUNK_SIZE = 1024 * 1024


def _http_error(e: ConverterError) -> HTTPException:
    return HTTPException(e.status_code, e.message)


def _is_mp3(file: UploadFile) -> bool:
    ext = Path(file.filename or "").suffix.lower()
    content_type = (file.content_type or "").lower()
    return ext in INPUT_EXTENSIONS or content_type in INPUT_CONTENT_TYPES


async def _save_upload(file: UploadFile, dest: Path) -> int:
    """Stream the upload to dest. Raises UploadRejected when it is empty or too large."""
    total = 0
    try:
        with open(dest, "wb") as f:
            while chunk := await file.read(CHUNK_SIZE):
                total += len(chunk)
                if total > MAX_UPLOAD_SIZE_BYTES:
                    raise UploadRejected(f"File too large (max {MAX_UPLOAD_SIZE_MB} MB)", status_code=413)
                f.write(chunk)
        if total == 0:
            raise UploadRejected("Uploaded file is empty")
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    return total


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/settings")
def get_settings():
    """Conversion options offered to the client."""
    return {
        "quality": SupportedSettings.QUALITY,
        "sampleRate": SupportedSettings.SAMPLE_RATE,
        "defaultQuality": DEFAULT_QUALITY,
        "defaultSampleRate": DEFAULT_SAMPLE_RATE,
        "channels": 1,
        "format": "ogg",
        "maxUploadSizeMb": MAX_UPLOAD_SIZE_MB,
    }


@router.get("/conversions")
def list_conversions(svc: ConversionService = Depends(get_conversion_service)):
    """All conversion jobs, newest first."""
    return [job.to_dict() for job in svc.list()]


@router.post("/conversions", status_code=202)
async def create_conversion(
    file: UploadFile = File(...),
    quality: int = Form(DEFAULT_QUALITY),
    sample_rate: int = Form(DEFAULT_SAMPLE_RATE, alias="sampleRate"),
    svc: ConversionService = Depends(get_conversion_service),
):
    """Upload an MP3 and start converting it. Returns the job before encoding finishes."""
    if not _is_mp3(file):
        raise HTTPException(400, "Only MP3 files are allowed")
    try:
        validate_settings(quality, sample_rate)
    except UploadRejected as e:
        raise _http_error(e)

    dest = svc.staging_path(file.filename)
    try:
        size = await _save_upload(file, dest)
    except UploadRejected as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Upload failed: %s", e)
        raise HTTPException(500, "Failed to upload file")

    logger.info("Received %s (%s bytes)", file.filename, size)
    try:
        job = await asyncio.to_thread(svc.submit, dest, file.filename, quality, sample_rate)
    except ConverterError as e:
        dest.unlink(missing_ok=True)
        raise _http_error(e)
    return job.to_dict()


@router.get("/conversions/{job_id}")
def get_conversion(job_id: str, svc: ConversionService = Depends(get_conversion_service)):
    job = svc.get(job_id)
    if not job:
        raise HTTPException(404, "Conversion job not found")
    return job.to_dict()


@router.get("/conversions/{job_id}/download")
def download_conversion(job_id: str, svc: ConversionService = Depends(get_conversion_service)):
    """Stream the converted OGG as an attachment named after the original file."""
    try:
        path, job = svc.download(job_id)
    except NotFound as e:
        raise _http_error(e)
    return FileResponse(path, media_type="audio/ogg", filename=job.output_filename)


@router.post("/conversions/{job_id}/cancel")
def cancel_conversion(job_id: str, svc: ConversionService = Depends(get_conversion_service)):
    try:
        job = svc.cancel(job_id)
    except NotFound as e:
        raise _http_error(e)
    return job.to_dict()


@router.delete("/conversions/{job_id}")
def delete_conversion(job_id: str, svc: ConversionService = Depends(get_conversion_service)):
    """Delete a job and its converted file. A running job is cancelled first."""
    if not svc.remove(job_id):
        raise HTTPException(404, "Conversion job not found")
    return {"message": "Conversion job deleted"}
