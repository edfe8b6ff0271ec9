"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from oggconverter.api.routes import router
from oggconverter.config import CORS_ORIGINS, logger as config_logger
from oggconverter.conversion.service import get_conversion_service

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    svc = get_conversion_service()
    if not svc.encoder.is_available():
        config_logger.warning("ffmpeg not found on PATH; conversions will fail")
    config_logger.info("Converter API started")
    yield
    config_logger.info("Converter API shutting down")
    svc.shutdown(wait=False)


app = FastAPI(
    title="MP3 to OGG Converter API",
    description="Convert MP3 uploads to mono OGG with progress tracking.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"],
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from oggconverter.config import HOST, PORT
    uvicorn.run("oggconverter.main:app", host=HOST, port=PORT, reload=True)
