"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")


def _int_list(value: str) -> list[int]:
    return [int(v.strip()) for v in value.split(",") if v.strip()]


# Paths (override with env)
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads")))
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(BASE_DIR / "outputs")))
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

# Accepted uploads
INPUT_EXTENSIONS = {".mp3"}
INPUT_CONTENT_TYPES = {"audio/mpeg", "audio/mp3"}
MAX_UPLOAD_SIZE_MB = int(os.getenv("MAX_UPLOAD_SIZE_MB", "100"))
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024

# Conversion options (env overrides). Output is always mono OGG.
OUTPUT_EXTENSION = ".ogg"
OUTPUT_CHANNELS = 1
QUALITY_OPTIONS = _int_list(os.getenv("QUALITY_OPTIONS", "96,128,160,192"))
SAMPLE_RATE_OPTIONS = _int_list(os.getenv("SAMPLE_RATE_OPTIONS", "22050,44100,48000"))
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "128"))
DEFAULT_SAMPLE_RATE = int(os.getenv("DEFAULT_SAMPLE_RATE", "44100"))

# Encoder binaries
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")
PROBE_TIMEOUT = int(os.getenv("PROBE_TIMEOUT", "30"))
# Seconds before a running encode is killed and the job marked failed
ENCODE_TIMEOUT = int(os.getenv("ENCODE_TIMEOUT", "600"))

# Concurrency: encodes beyond MAX_WORKERS wait in the executor queue
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(min(8, os.cpu_count() or 2))))

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("converter")
