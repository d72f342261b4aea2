import asyncio
import logging
import zipfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from docshift import assembly, config, imaging, storage
from docshift.errors import GatewayError, ValidationError
from docshift.models import (
    AssemblyResponse,
    CompressionResponse,
    DownloadResponse,
    VideoResponse,
    parse_organize_actions,
    parse_rotate_actions,
)
from docshift.tools import Encryptor, OcrEngine, OfficeConverter, PdfCompressor, Rasterizer, VideoTranscoder

logger = logging.getLogger(__name__)

PDF_TYPES = {"application/pdf"}
PDF_EXTENSIONS = {".pdf"}
IMAGE_TYPES = {"image/jpeg", "image/png"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png"}
OFFICE_EXTENSIONS = {".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods", ".odp", ".rtf", ".txt"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v", ".wmv", ".flv"}

storage.ensure_directories()

cleanup_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start and stop expired-result cleanup based on mode"""
    global cleanup_task

    storage.ensure_directories()
    if config.CLEANUP_MODE == "active":
        cleanup_task = asyncio.create_task(storage.active_cleanup_loop())
        logger.info(f"Active cleanup started: Every {config.CLEANUP_INTERVAL_MINUTES} minutes, deleting files older than {config.FILE_EXPIRATION_MINUTES} minutes")
    else:
        logger.info(f"Lazy cleanup enabled: Files older than {config.FILE_EXPIRATION_MINUTES} minutes deleted on each request")

    yield

    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        cleanup_task = None


app = FastAPI(
    title="docshift",
    description="File transformation gateway: compress, convert, OCR, protect, merge and reorganize documents.",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Images", "description": "Image recompression"},
        {"name": "Document Conversion", "description": "Convert between office documents, images and PDF"},
        {"name": "Core PDF Operations", "description": "Compress, merge, rasterize and protect PDFs"},
        {"name": "Page Organization", "description": "Reorder, insert blank pages, rotate and delete pages"},
        {"name": "Text & OCR", "description": "Make PDFs searchable"},
        {"name": "Video", "description": "Video re-encoding"},
        {"name": "Cache Management", "description": "Monitor and clean up produced files"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.mount("/results", StaticFiles(directory=config.RESULTS_DIR), name="results")


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def get_rasterizer() -> Rasterizer:
    return Rasterizer()


def get_compressor() -> PdfCompressor:
    return PdfCompressor()


def get_office_converter() -> OfficeConverter:
    return OfficeConverter()


def get_ocr_engine() -> OcrEngine:
    return OcrEngine()


def get_encryptor() -> Encryptor:
    return Encryptor()


def get_video_transcoder() -> VideoTranscoder:
    return VideoTranscoder()


def require_type(file: UploadFile, message: str, content_types=(), extensions=()) -> None:
    """Accept the upload if its declared content type or its extension is allowed."""
    if (file.content_type or "") in content_types:
        return
    if storage.file_suffix(file.filename) in extensions:
        return
    raise ValidationError(message)


def require_pdf(file: UploadFile) -> None:
    require_type(file, "Only PDF uploads are supported.", PDF_TYPES, PDF_EXTENSIONS)


def require_range(name: str, value: int, low: int, high: int) -> int:
    if not low <= value <= high:
        raise ValidationError(f"{name} must be between {low} and {high}.")
    return value


def load_document(path: Path) -> assembly.Document:
    return assembly.Document.from_bytes(path.read_bytes())


def download_response(output_path: Path) -> dict:
    return {"downloadUrl": storage.download_url(output_path), "size": output_path.stat().st_size}


def assembly_response(result: assembly.AssemblyResult, prefix: str) -> dict:
    output_path = storage.write_result(result.data, prefix, ".pdf")
    return {
        "downloadUrl": storage.download_url(output_path),
        "size": result.size,
        "pageCount": result.page_count,
        "skippedPages": list(result.skipped),
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.post("/upload", response_model=DownloadResponse, tags=["Images"])
async def compress_image(
    image: UploadFile = File(None),
    compression: Optional[int] = Form(None, description="Compression level 0-100 (default 60)"),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(image, storage.file_suffix(image.filename) if image else "")

    with storage.scratch_paths(input_path):
        if (image.content_type or "") not in IMAGE_TYPES:
            raise ValidationError("Only JPG and PNG formats are allowed.")
        level = require_range("compression", 60 if compression is None else compression, 0, 100)

        fmt = await run_in_threadpool(imaging.detect_format, input_path)
        output_path = storage.result_path("compressed", imaging.IMAGE_SUFFIXES[fmt])
        with storage.discard_on_error(output_path):
            await run_in_threadpool(imaging.recompress_image, input_path, output_path, level)

    return download_response(output_path)


@app.post("/compress-pdf", response_model=CompressionResponse, tags=["Core PDF Operations"])
async def compress_pdf(
    file: UploadFile = File(None),
    compression: Optional[int] = Form(None, description="Compression level 0-100 (default 60); 90 and above rasterizes pages"),
    rasterizer: Rasterizer = Depends(get_rasterizer),
    compressor: PdfCompressor = Depends(get_compressor),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(file, ".pdf")
    raster_dir = storage.scratch_path("pages")

    with storage.scratch_paths(input_path, raster_dir):
        require_pdf(file)
        level = require_range("compression", 60 if compression is None else compression, 0, 100)
        original_size = input_path.stat().st_size

        if level >= config.EXTREME_COMPRESSION_THRESHOLD:
            logger.info(f"Extreme compression: rasterizing at {config.EXTREME_DPI} DPI")
            await run_in_threadpool(
                rasterizer.run, input_path, raster_dir,
                dpi=config.EXTREME_DPI, quality=config.EXTREME_JPEG_QUALITY,
            )
            images = sorted(raster_dir.glob("*.jpg"))
            result = await run_in_threadpool(assembly.images_to_pdf, images)
            output_path = storage.write_result(result.data, "extreme", ".pdf")
            method = "extreme"
        else:
            output_path = storage.result_path("compressed", ".pdf")
            with storage.discard_on_error(output_path):
                await run_in_threadpool(compressor.run, input_path, output_path, compression=level)
            method = "standard"

    final_size = output_path.stat().st_size
    return {
        "downloadUrl": storage.download_url(output_path),
        "originalSize": original_size,
        "finalSize": final_size,
        "compressionPercent": round((1 - final_size / original_size) * 100) if original_size else 0,
        "method": method,
    }


@app.post("/convert-to-pdf", response_model=DownloadResponse, tags=["Document Conversion"])
async def convert_to_pdf(
    file: UploadFile = File(None),
    converter: OfficeConverter = Depends(get_office_converter),
):
    storage.lazy_cleanup()
    suffix = storage.file_suffix(file.filename) if file else ""
    input_path = await storage.store_upload(file, suffix)

    with storage.scratch_paths(input_path):
        if suffix not in OFFICE_EXTENSIONS:
            raise ValidationError(f"Unsupported document type: {suffix or 'none'}")

        stem = storage.sanitize_label(Path(file.filename).stem, fallback="document")
        output_path = storage.result_path(stem, ".pdf")
        with storage.discard_on_error(output_path):
            await run_in_threadpool(converter.run, input_path, output_path, target="pdf")

    return download_response(output_path)


@app.post("/image-to-pdf", response_model=DownloadResponse, tags=["Document Conversion"])
async def image_to_pdf(file: UploadFile = File(None)):
    storage.lazy_cleanup()
    suffix = storage.file_suffix(file.filename) if file else ""
    input_path = await storage.store_upload(file, suffix)

    with storage.scratch_paths(input_path):
        if suffix not in IMAGE_EXTENSIONS:
            raise ValidationError("Only JPG, PNG, and JPEG files are allowed.")
        await run_in_threadpool(imaging.ensure_image, input_path)
        result = await run_in_threadpool(assembly.images_to_pdf, [input_path])
        output_path = storage.write_result(result.data, "converted", ".pdf")

    return download_response(output_path)


@app.post("/make-searchable", response_model=DownloadResponse, tags=["Text & OCR"])
async def make_searchable(
    file: UploadFile = File(None),
    language: str = Form("eng", description="OCR language (eng, spa, fra, deu, eng+fra, etc.)"),
    ocr: OcrEngine = Depends(get_ocr_engine),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(file, ".pdf")

    with storage.scratch_paths(input_path):
        require_pdf(file)
        if not language or not all(part.replace("_", "").isalpha() for part in language.split("+")):
            raise ValidationError(f"Invalid OCR language: {language!r}")

        output_path = storage.result_path("searchable", ".pdf")
        with storage.discard_on_error(output_path):
            await run_in_threadpool(ocr.run, input_path, output_path, language=language)

    return download_response(output_path)


@app.post("/merge-pdf", response_model=DownloadResponse, tags=["Core PDF Operations"])
async def merge_pdf(files: List[UploadFile] = File(None)):
    storage.lazy_cleanup()
    files = files or []
    input_paths = []

    try:
        for file in files:
            input_paths.append(await storage.store_upload(file, ".pdf"))
    except BaseException:
        for path in input_paths:
            storage.remove_path(path)
        raise

    with storage.scratch_paths(*input_paths):
        if len(files) < 2:
            raise ValidationError("Upload at least two PDF files.")
        for file in files:
            require_pdf(file)

        documents = [await run_in_threadpool(load_document, path) for path in input_paths]
        result = await run_in_threadpool(assembly.merge, documents)
        output_path = storage.write_result(result.data, "merged", ".pdf")

    return download_response(output_path)


@app.post("/pdf-to-word", response_model=DownloadResponse, tags=["Document Conversion"])
async def pdf_to_word(
    file: UploadFile = File(None),
    converter: OfficeConverter = Depends(get_office_converter),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(file, ".pdf")

    with storage.scratch_paths(input_path):
        require_pdf(file)
        stem = storage.sanitize_label(Path(file.filename).stem, fallback="document")
        output_path = storage.result_path(stem, ".docx")
        with storage.discard_on_error(output_path):
            await run_in_threadpool(converter.run, input_path, output_path, target="docx")

    return download_response(output_path)


@app.post("/protect-pdf", response_model=DownloadResponse, tags=["Core PDF Operations"])
async def protect_pdf(
    file: UploadFile = File(None),
    password: Optional[str] = Form(None),
    encryptor: Encryptor = Depends(get_encryptor),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(file, ".pdf")

    with storage.scratch_paths(input_path):
        if not password:
            raise ValidationError("Password is required.")
        require_pdf(file)

        output_path = storage.result_path("protected", ".pdf")
        with storage.discard_on_error(output_path):
            await run_in_threadpool(encryptor.run, input_path, output_path, password=password)

    return download_response(output_path)


@app.post("/organize-pdf", response_model=AssemblyResponse, tags=["Page Organization"])
async def organize_pdf(
    original_pdf: UploadFile = File(None, alias="originalPdf"),
    actions: Optional[str] = Form(None, description='JSON list of page indices and "blank" markers, e.g. [0, 2, "blank", 1]'),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(original_pdf, ".pdf")

    with storage.scratch_paths(input_path):
        if not actions:
            raise ValidationError("Missing file or actions.")
        require_pdf(original_pdf)
        operations = parse_organize_actions(actions)

        source = await run_in_threadpool(load_document, input_path)
        result = await run_in_threadpool(assembly.assemble, source, operations)

    return assembly_response(result, "organized")


@app.post("/rotate-pdf", response_model=AssemblyResponse, tags=["Page Organization"])
async def rotate_pdf(
    original_pdf: UploadFile = File(None, alias="originalPdf"),
    actions: Optional[str] = Form(None, description='JSON list of {"originalIndex": int, "rotation": int}; omitted pages are deleted'),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(original_pdf, ".pdf")

    with storage.scratch_paths(input_path):
        if not actions:
            raise ValidationError("Missing file or actions.")
        require_pdf(original_pdf)
        operations = parse_rotate_actions(actions)

        source = await run_in_threadpool(load_document, input_path)
        result = await run_in_threadpool(assembly.assemble, source, operations)

    return assembly_response(result, "rotated")


@app.post("/pdf-to-jpg", response_model=DownloadResponse, tags=["Core PDF Operations"])
async def pdf_to_jpg(
    file: UploadFile = File(None),
    rasterizer: Rasterizer = Depends(get_rasterizer),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(file, ".pdf")
    raster_dir = storage.scratch_path("jpgs")

    with storage.scratch_paths(input_path, raster_dir):
        require_pdf(file)
        await run_in_threadpool(rasterizer.run, input_path, raster_dir)

        zip_path = storage.result_path("converted", ".zip")
        with storage.discard_on_error(zip_path):
            await run_in_threadpool(_zip_directory, raster_dir, zip_path)

    return download_response(zip_path)


def _zip_directory(source_dir: Path, zip_path: Path) -> Path:
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zipf:
        for image_path in sorted(source_dir.iterdir()):
            if image_path.is_file():
                zipf.write(image_path, image_path.name)
    return zip_path


@app.post("/compress-video", response_model=VideoResponse, tags=["Video"])
async def compress_video(
    file: UploadFile = File(None),
    crf: Optional[int] = Form(None, description="x264 constant rate factor 0-51 (default 28)"),
    transcoder: VideoTranscoder = Depends(get_video_transcoder),
):
    storage.lazy_cleanup()
    input_path = await storage.store_upload(file, storage.file_suffix(file.filename) if file else "")

    with storage.scratch_paths(input_path):
        if not (file.content_type or "").startswith("video/") and storage.file_suffix(file.filename) not in VIDEO_EXTENSIONS:
            raise ValidationError("Only video uploads are supported.")
        factor = require_range("crf", 28 if crf is None else crf, 0, 51)

        output_path = storage.result_path("compressed", ".mp4")
        with storage.discard_on_error(output_path):
            await run_in_threadpool(transcoder.run, input_path, output_path, crf=factor)

    return {"downloadUrl": storage.download_url(output_path), "finalSize": output_path.stat().st_size}


@app.get("/cache/status", tags=["Cache Management"])
def cache_status():
    status = storage.results_status()
    status["cleanup_mode"] = config.CLEANUP_MODE
    status["file_expiration_minutes"] = config.FILE_EXPIRATION_MINUTES
    if config.CLEANUP_MODE == "active":
        status["active_cleanup_running"] = cleanup_task is not None and not cleanup_task.done()
        status["cleanup_interval_minutes"] = config.CLEANUP_INTERVAL_MINUTES
    return status


@app.post("/cleanup/run", tags=["Cache Management"])
def manual_cleanup():
    """Manually trigger the cleanup process"""
    deleted_count = storage.cleanup_expired_files()
    return {
        "message": "Manual cleanup completed",
        "deleted_files": deleted_count,
        "remaining_files": len(list(storage.results_dir().glob("*"))),
        "cleanup_mode": config.CLEANUP_MODE,
        "file_expiration_minutes": config.FILE_EXPIRATION_MINUTES,
    }
