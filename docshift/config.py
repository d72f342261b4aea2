import os

UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "uploads")
RESULTS_DIR = os.environ.get("RESULTS_DIR", "compressed")
BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# Cleanup configuration
CLEANUP_MODE = os.environ.get("CLEANUP_MODE", "lazy").lower()  # "lazy" or "active"
CLEANUP_INTERVAL_MINUTES = int(os.environ.get("CLEANUP_INTERVAL_MINUTES", "30"))
FILE_EXPIRATION_MINUTES = int(os.environ.get("FILE_EXPIRATION_MINUTES", "60"))

# External tools, timeouts in seconds
GS_BINARY = os.environ.get("GS_BINARY", "gs")
LIBREOFFICE_BINARY = os.environ.get("LIBREOFFICE_BINARY", "libreoffice")
QPDF_BINARY = os.environ.get("QPDF_BINARY", "qpdf")
FFMPEG_BINARY = os.environ.get("FFMPEG_BINARY", "ffmpeg")

GS_TIMEOUT = int(os.environ.get("GS_TIMEOUT", "120"))
RASTER_TIMEOUT = int(os.environ.get("RASTER_TIMEOUT", "120"))
LIBREOFFICE_TIMEOUT = int(os.environ.get("LIBREOFFICE_TIMEOUT", "120"))
OCR_TIMEOUT = int(os.environ.get("OCR_TIMEOUT", "300"))
QPDF_TIMEOUT = int(os.environ.get("QPDF_TIMEOUT", "60"))
FFMPEG_TIMEOUT = int(os.environ.get("FFMPEG_TIMEOUT", "600"))

# Extreme PDF compression: rasterize pages and rebuild from JPEGs
EXTREME_COMPRESSION_THRESHOLD = 90
EXTREME_DPI = 50
EXTREME_JPEG_QUALITY = 30
