import asyncio
import logging
import os
import re
import subprocess
import tempfile
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import BinaryIO, Iterator
from urllib.parse import quote

import requests
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from . import __version__
from .abuse import AbuseControl, AdmissionRejected, RateLimited, audit_request
from .config import Settings
from .conversion import ConversionRequest, ConversionService, TtlReaper
from .conversion.adapters import LocalFileStorage, build_job_store
from .conversion.engines import build_default_selector, find_renderer
from .conversion.errors import (
    ArtifactGone,
    EngineError,
    JobNotFound,
    JobNotReady,
    JobValidationError,
    UploadTooLarge,
    public_failure_reason,
)
from .conversion.insights import MockInsightsGenerator
from .conversion.models import AnalysisMode
from .logging_config import setup_logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


class HtmlToPdfBody(BaseModel):
    html: str = ""
    filename: str | None = None


def _error(status_code: int, message: str, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


# ─── Dependencies ───────────────────────────────────────────────────────────


def get_service(request: Request) -> ConversionService:
    return request.app.state.service


def get_abuse(request: Request) -> AbuseControl:
    return request.app.state.abuse


def convert_rate_limit(request: Request) -> str:
    abuse = get_abuse(request)
    ip = abuse.ip_of(request)
    abuse.convert_limiter.hit(ip)
    return ip


def read_rate_limit(request: Request) -> str:
    abuse = get_abuse(request)
    ip = abuse.ip_of(request)
    abuse.read_limiter.hit(ip)
    return ip


def conversion_slot(request: Request, ip: str = Depends(convert_rate_limit)):
    """Hold one of the ip's active-conversion slots for the whole request."""
    with get_abuse(request).active.slot(ip):
        yield ip


# ─── Routes ─────────────────────────────────────────────────────────────────


@router.get("/health")
def health() -> dict[str, object]:
    """Basic health check endpoint."""
    return {"ok": True, "service": "docspark-backend"}


@router.post("/convert", status_code=status.HTTP_201_CREATED)
async def convert(
    request: Request,
    file: UploadFile | None = File(None),
    targetFormat: str = Form(""),
    preset: str | None = Form(None),
    analysisMode: str | None = Form(None),
    analysisConsent: str | None = Form(None),
    challengeToken: str | None = Form(None),
    ip: str = Depends(conversion_slot),
) -> JSONResponse:
    """Upload a document and convert it to ``targetFormat``.

    The conversion runs before the response is sent; a failed conversion
    still answers 201 with ``status: failed``.
    """
    if file is None or not file.filename:
        raise JobValidationError("File is required")

    service = get_service(request)
    abuse = get_abuse(request)
    settings: Settings = request.app.state.settings
    storage = service.storage

    staged = await storage.stage_upload(file.read, max_bytes=settings.max_upload_bytes)
    conversion_request = ConversionRequest(
        original_name=file.filename,
        target_format=targetFormat,
        preset=preset or None,
        analysis_mode=analysisMode or AnalysisMode.CONVERT_ONLY,
        analysis_consent=(analysisConsent or "").strip().lower() == "true",
    )
    try:
        service.validate(conversion_request)
        await asyncio.to_thread(abuse.challenge.verify, challengeToken, ip)
        abuse.duplicates.check_and_remember(ip, staged.sha256)
        job = service.admit(conversion_request, staged)
    except BaseException:
        storage.discard(staged)
        raise

    finished = await asyncio.to_thread(service.run, job.id)
    if finished is None:
        raise JobNotFound(job.id)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"jobId": finished.id, "status": finished.status},
    )


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request, _ip: str = Depends(read_rate_limit)) -> dict[str, object]:
    job = get_service(request).get_job(job_id)
    return {
        "jobId": job.id,
        "status": job.status,
        "progress": job.progress,
        "failureReason": public_failure_reason(job.failure_reason),
    }


def _content_disposition(filename: str) -> str:
    if not filename.isascii() or any(c in filename for c in "\"\\"):
        return f"attachment; filename*=utf-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


def _iter_file(handle: BinaryIO, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    with handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


@router.get("/jobs/{job_id}/download")
def download(job_id: str, request: Request, _ip: str = Depends(read_rate_limit)) -> StreamingResponse:
    result = get_service(request).get_download(job_id)
    # an open handle outlives a concurrent unlink by the reaper or a DELETE
    try:
        handle = open(result.path, "rb")
    except FileNotFoundError:
        raise ArtifactGone(job_id) from None
    size = os.fstat(handle.fileno()).st_size
    return StreamingResponse(
        _iter_file(handle),
        media_type=result.media_type,
        headers={"Content-Disposition": _content_disposition(result.filename), "Content-Length": str(size)},
    )


@router.get("/jobs/{job_id}/insights")
def insights(job_id: str, request: Request, _ip: str = Depends(read_rate_limit)) -> JSONResponse:
    payload = get_service(request).get_insights(job_id)
    if payload is None:
        return _error(status.HTTP_404_NOT_FOUND, "Insights not available for this job")
    return JSONResponse(content=payload)


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, request: Request, _ip: str = Depends(read_rate_limit)) -> dict[str, bool]:
    get_service(request).delete_job(job_id)
    return {"success": True}


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def _pdf_filename(name: str | None) -> str:
    stem = Path(name or "").stem
    stem = _UNSAFE_FILENAME_CHARS.sub("_", stem).strip(" ._") or "document"
    return f"{stem[:120]}.pdf"


@router.post("/html-to-pdf")
async def html_to_pdf(body: HtmlToPdfBody, request: Request, _ip: str = Depends(convert_rate_limit)) -> Response:
    """Render an HTML string straight to PDF. No job is created."""
    settings: Settings = request.app.state.settings
    if not body.html.strip():
        raise JobValidationError("html is required")
    if len(body.html.encode("utf-8")) > settings.max_html_bytes:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, f"HTML exceeds {settings.max_html_kb} KB limit")

    renderer = find_renderer(get_service(request).selector)
    if renderer is None:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "PDF rendering is unavailable right now.")

    with tempfile.TemporaryDirectory(prefix="docspark-html-") as workdir:
        html_path = Path(workdir) / "page.html"
        pdf_path = Path(workdir) / "page.pdf"
        html_path.write_text(body.html, encoding="utf-8")
        try:
            await asyncio.to_thread(renderer.render_file, str(html_path), str(pdf_path))
        except EngineError as e:
            logger.warning("html-to-pdf failed: %s", e.code)
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "PDF rendering is unavailable right now.")
        pdf = pdf_path.read_bytes()

    filename = _pdf_filename(body.filename)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": _content_disposition(filename)},
    )


# ─── Error mapping ──────────────────────────────────────────────────────────


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(JobValidationError)
    async def _validation(_: Request, exc: JobValidationError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _bad_request(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(status.HTTP_400_BAD_REQUEST, str(message))

    @app.exception_handler(UploadTooLarge)
    async def _too_large(_: Request, exc: UploadTooLarge) -> JSONResponse:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, str(exc))

    @app.exception_handler(JobNotFound)
    async def _not_found(_: Request, exc: JobNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "Job not found")

    @app.exception_handler(JobNotReady)
    async def _not_ready(_: Request, exc: JobNotReady) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc), status=exc.status)

    @app.exception_handler(ArtifactGone)
    async def _gone(_: Request, exc: ArtifactGone) -> JSONResponse:
        return _error(status.HTTP_410_GONE, "Converted file no longer available")

    @app.exception_handler(AdmissionRejected)
    async def _rejected(request: Request, exc: AdmissionRejected) -> JSONResponse:
        ip = request.app.state.abuse.ip_of(request)
        audit_request(exc.event, request, ip, **exc.details)
        headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message}, headers=headers)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


# ─── Application ────────────────────────────────────────────────────────────


async def _prune_loop(abuse: AbuseControl, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        dropped = abuse.prune_all()
        if dropped:
            logger.debug("Pruned %d stale abuse-control entries", dropped)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if app.state.configure_logging:
        setup_logging(settings.log_level, settings.log_file)

    store = build_job_store(settings)
    storage = LocalFileStorage(settings.data_dir)
    selector = build_default_selector(settings, runner=app.state.runner)
    app.state.service = ConversionService(
        store,
        storage,
        selector,
        MockInsightsGenerator(),
        ttl_minutes=settings.ttl_minutes,
    )
    app.state.abuse = AbuseControl.from_settings(settings, session=app.state.challenge_session)
    app.state.reaper = TtlReaper(store, storage, interval_seconds=settings.ttl_sweep_interval_sec)

    app.state.reaper.start()
    prune_task = asyncio.create_task(_prune_loop(app.state.abuse, settings.abuse_prune_interval_sec))
    logger.info("[DocSpark] Backend ready (data dir: %s, store: %s)", settings.data_dir, settings.job_store)
    try:
        yield
    finally:
        prune_task.cancel()
        with suppress(asyncio.CancelledError):
            await prune_task
        await app.state.reaper.stop()


def create_app(
    settings: Settings | None = None,
    *,
    runner=subprocess.run,
    challenge_session=requests,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the API. Components are created when the app starts up."""
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="DocSpark",
        version=os.getenv("DOCSPARK_VERSION", __version__),
        description="Upload a document, convert it to another format, then download the result.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runner = runner
    app.state.challenge_session = challenge_session
    app.state.configure_logging = configure_logging

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("docspark.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
