"""
Scratch and result file handling.

Uploads land in ``UPLOAD_DIR`` under a unique name and belong to the request
that stored them; ``scratch_paths`` removes them when the request is done,
whatever the outcome. Produced artifacts live in ``RESULTS_DIR``, are served
statically under ``/results`` and expire after ``FILE_EXPIRATION_MINUTES``.
"""

import asyncio
import logging
import re
import shutil
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from docshift import config
from docshift.errors import ValidationError

logger = logging.getLogger(__name__)

SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")
CHUNK_SIZE = 8 * 1024 * 1024


def upload_dir() -> Path:
    return Path(config.UPLOAD_DIR)


def results_dir() -> Path:
    return Path(config.RESULTS_DIR)


def ensure_directories() -> None:
    upload_dir().mkdir(parents=True, exist_ok=True)
    results_dir().mkdir(parents=True, exist_ok=True)


def sanitize_label(label: str, fallback: str) -> str:
    """
    Filesystem-safe version of a user-provided name.

    >>> sanitize_label("Quarterly Report (final)", "document")
    'quarterly-report-final'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def unique_name(prefix: str, suffix: str = "") -> str:
    return f"{prefix}_{uuid.uuid4().hex}{suffix}"


def scratch_path(prefix: str, suffix: str = "") -> Path:
    return upload_dir() / unique_name(prefix, suffix)


def result_path(prefix: str, suffix: str = "") -> Path:
    return results_dir() / unique_name(prefix, suffix)


def file_suffix(filename: Optional[str]) -> str:
    return Path(filename or "").suffix.lower()


async def store_upload(file: Optional[UploadFile], suffix: str = "") -> Path:
    """Copy an upload into the scratch area under a fresh unique name."""
    if file is None or not file.filename:
        raise ValidationError("No file uploaded.")

    destination = scratch_path("upload", suffix)
    with discard_on_error(destination), destination.open("wb") as buffer:
        while chunk := await file.read(CHUNK_SIZE):
            buffer.write(chunk)
    await file.close()
    return destination


def remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists():
        path.unlink()


@contextmanager
def scratch_paths(*paths: Path):
    """Own ``paths`` for the duration of the block and delete them afterwards."""
    try:
        yield
    finally:
        for path in paths:
            try:
                remove_path(path)
            except OSError as e:
                logger.warning(f"Failed to delete {path}: {e}")


@contextmanager
def discard_on_error(*paths: Path):
    """Delete partially written outputs if the block raises."""
    try:
        yield
    except BaseException:
        for path in paths:
            try:
                remove_path(path)
            except OSError as e:
                logger.warning(f"Failed to delete partial output {path}: {e}")
        raise


def write_result(data: bytes, prefix: str, suffix: str) -> Path:
    output_path = result_path(prefix, suffix)
    with discard_on_error(output_path):
        output_path.write_bytes(data)
    return output_path


def download_url(path: Path) -> str:
    return f"{config.BASE_URL}/results/{path.name}"


def cleanup_expired_files() -> int:
    """Remove results older than FILE_EXPIRATION_MINUTES"""
    folder = results_dir()
    cutoff_time = datetime.now().timestamp() - (config.FILE_EXPIRATION_MINUTES * 60)
    deleted_count = 0

    for file_path in folder.glob("*"):
        try:
            if file_path.stat().st_mtime < cutoff_time:
                remove_path(file_path)
                deleted_count += 1
        except OSError as e:
            logger.warning(f"Failed to delete {file_path}: {e}")

    if deleted_count > 0:
        logger.info(f"Cleanup: Deleted {deleted_count} expired files")
    return deleted_count


def lazy_cleanup() -> None:
    """Run cleanup on-demand for lazy mode"""
    if config.CLEANUP_MODE == "lazy":
        cleanup_expired_files()


async def active_cleanup_loop() -> None:
    """Background cleanup loop for active mode"""
    while True:
        try:
            await asyncio.sleep(config.CLEANUP_INTERVAL_MINUTES * 60)
            cleanup_expired_files()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Active cleanup loop error: {e}")


def results_status() -> dict:
    files = []
    now = datetime.now(timezone.utc)

    for file in results_dir().glob("*"):
        if not file.is_file():
            continue
        stat = file.stat()
        created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        files.append({
            "filename": file.name,
            "size_kb": round(stat.st_size / 1024, 2),
            "created_at": created_at.isoformat(),
            "age_minutes": round((now - created_at).total_seconds() / 60, 2),
        })

    return {
        "file_count": len(files),
        "total_size_kb": round(sum(f["size_kb"] for f in files), 2),
        "files": sorted(files, key=lambda x: x["age_minutes"], reverse=True),
    }
