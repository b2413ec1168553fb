"""Configuration for the media attachment extractor."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection
DATABASE_URL = os.getenv("DATABASE_URL")

# Object storage (archival copies, rendered PDF pages)
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME")

# Google service account; falls back to application default credentials
GOOGLE_CLIENT_EMAIL = os.getenv("GOOGLE_CLIENT_EMAIL")
GOOGLE_PRIVATE_KEY = os.getenv("GOOGLE_PRIVATE_KEY")

# Speech-to-text
ASSEMBLYAI_API_KEY = os.getenv("ASSEMBLYAI_API_KEY")
TRANSCRIPTION_LANGUAGE = os.getenv("TRANSCRIPTION_LANGUAGE", "pt")
TRANSCRIPTION_POLL_INTERVAL = float(os.getenv("TRANSCRIPTION_POLL_INTERVAL", "5"))
TRANSCRIPTION_MAX_POLLS = int(os.getenv("TRANSCRIPTION_MAX_POLLS", "60"))

# Network timeouts (seconds)
FETCH_TIMEOUT = int(os.getenv("FETCH_TIMEOUT", "60"))
OCR_TIMEOUT = int(os.getenv("OCR_TIMEOUT", "60"))

# PDF extraction
PDF_TEXT_MIN_CHARS = int(os.getenv("PDF_TEXT_MIN_CHARS", "50"))
PDF_OCR_SCALE = float(os.getenv("PDF_OCR_SCALE", "2.0"))
PDF_OCR_CONCURRENCY = int(os.getenv("PDF_OCR_CONCURRENCY", "3"))
PDF_OCR_MAX_PAGES = int(os.getenv("PDF_OCR_MAX_PAGES", "20"))

# Worker settings
WORKER_ENABLED = os.getenv("WORKER_ENABLED", "true").lower() in ("1", "true", "yes")
WORKER_POLL_INTERVAL = int(os.getenv("WORKER_POLL_INTERVAL", "30"))  # seconds between passes
WORKER_INITIAL_DELAY = int(os.getenv("WORKER_INITIAL_DELAY", "5"))
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "3"))
WORKER_MAX_PER_PASS = int(os.getenv("WORKER_MAX_PER_PASS", "10"))
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
STALE_PROCESSING_SECONDS = int(os.getenv("STALE_PROCESSING_SECONDS", "300"))

# Periodic trigger
CRON_MAX_ITEMS = int(os.getenv("CRON_MAX_ITEMS", "5"))
CRON_SECRET = os.getenv("CRON_SECRET")

# HTTP surface
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "3001"))


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if PDF_OCR_CONCURRENCY < 1:
        errors.append(f"PDF_OCR_CONCURRENCY must be >= 1: {PDF_OCR_CONCURRENCY}")

    if WORKER_CONCURRENCY < 1:
        errors.append(f"WORKER_CONCURRENCY must be >= 1: {WORKER_CONCURRENCY}")

    if MAX_ATTEMPTS < 1:
        errors.append(f"MAX_ATTEMPTS must be >= 1: {MAX_ATTEMPTS}")

    if PDF_OCR_SCALE <= 0:
        errors.append(f"PDF_OCR_SCALE must be positive: {PDF_OCR_SCALE}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))


def warn_missing_services(logger):
    """Log which optional external services are not configured."""
    if not GCS_BUCKET_NAME:
        logger.warning("GCS_BUCKET_NAME not set - archival copies and PDF page uploads disabled")
    if not ASSEMBLYAI_API_KEY:
        logger.warning("ASSEMBLYAI_API_KEY not set - audio items will fail")
