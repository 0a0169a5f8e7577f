import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from .engines import ConversionOutcome, EngineSelector
from .errors import (
    CONVERSION_FAILED,
    INSIGHTS_FAILED,
    INTERNAL_ERROR,
    STORAGE_FAILED,
    ArtifactGone,
    ConversionFailed,
    InvalidTransition,
    JobNotFound,
    JobNotReady,
    JobValidationError,
    failure_code,
)
from .interfaces import FileStorageGateway, InsightsGateway, JobStoreGateway
from .models import (
    ALLOWED_INPUT_FORMATS,
    ALLOWED_OUTPUT_FORMATS,
    ALLOWED_PRESETS,
    AnalysisMode,
    ConversionRequest,
    Job,
    JobStatus,
    StagedUpload,
    normalize_format,
)

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255

# Progress checkpoints written while a job is processing.
PROGRESS_STARTED = 10
PROGRESS_CONVERTED = 85


class _StageError(Exception):
    """Internal wrapper that tags a pipeline exception with its failure code."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class Download:
    path: str
    filename: str
    media_type: str


MEDIA_TYPES = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain; charset=utf-8",
    "html": "text/html; charset=utf-8",
    "md": "text/markdown; charset=utf-8",
    "rtf": "application/rtf",
    "csv": "text/csv; charset=utf-8",
}


class ConversionService:
    """Core domain service driving conversion jobs.

    This service is framework-agnostic. It validates and admits requests,
    runs the conversion pipeline synchronously, and answers read/delete
    queries, using gateways for the job store, file storage, conversion
    engines and insights.
    """

    def __init__(
        self,
        store: JobStoreGateway,
        storage: FileStorageGateway,
        selector: EngineSelector,
        insights: InsightsGateway,
        *,
        ttl_minutes: int = 30,
    ) -> None:
        self._store = store
        self._storage = storage
        self._selector = selector
        self._insights = insights
        self._ttl = timedelta(minutes=ttl_minutes)

    @property
    def store(self) -> JobStoreGateway:
        return self._store

    @property
    def storage(self) -> FileStorageGateway:
        return self._storage

    @property
    def selector(self) -> EngineSelector:
        return self._selector

    # ─── Admission ───────────────────────────────────────────────────────

    def validate(self, request: ConversionRequest) -> ConversionRequest:
        """Check every client-supplied field; return the request with formats normalized."""
        name = request.original_name or ""
        if not name:
            raise JobValidationError("File is required")
        if len(name) > MAX_FILENAME_LENGTH:
            raise JobValidationError("Filename is too long.")

        source = request.source_format
        if source not in ALLOWED_INPUT_FORMATS:
            allowed = ", ".join(sorted(ALLOWED_INPUT_FORMATS))
            raise JobValidationError(f"Unsupported input format: {source or '(none)'}. Allowed: {allowed}")

        target = normalize_format(request.target_format)
        if target not in ALLOWED_OUTPUT_FORMATS:
            allowed = ", ".join(sorted(ALLOWED_OUTPUT_FORMATS))
            raise JobValidationError(f"Unsupported target format: {target or '(none)'}. Allowed: {allowed}")

        preset = request.preset or None
        if preset is not None and preset not in ALLOWED_PRESETS:
            raise JobValidationError(f"Invalid preset: {preset}. Allowed: {', '.join(ALLOWED_PRESETS)}")

        mode = request.analysis_mode or AnalysisMode.CONVERT_ONLY
        if mode not in AnalysisMode.ALL:
            raise JobValidationError("analysisMode must be 'convert_only' or 'convert_plus_insights'")
        if mode == AnalysisMode.CONVERT_PLUS_INSIGHTS and not request.analysis_consent:
            raise JobValidationError("analysisConsent is required when analysisMode is 'convert_plus_insights'")

        return ConversionRequest(
            original_name=name,
            target_format=target,
            preset=preset,
            analysis_mode=mode,
            analysis_consent=bool(request.analysis_consent),
        )

    def admit(self, request: ConversionRequest, staged: StagedUpload) -> Job:
        """Validate, then create a queued job that owns the staged upload.

        On a validation error nothing is created and the staged upload is
        left for the caller to discard.
        """
        req = self.validate(request)
        job_id = str(uuid.uuid4())
        original_path = self._storage.adopt(staged, job_id, req.source_format)
        job = Job.new(
            job_id,
            original_name=req.original_name,
            original_path=original_path,
            source_format=req.source_format,
            target_format=req.target_format,
            preset=req.preset,
            analysis_mode=req.analysis_mode,
            analysis_consent=req.analysis_consent,
            ttl=self._ttl,
        )
        try:
            self._store.create(job)
        except Exception:
            Path(original_path).unlink(missing_ok=True)
            raise
        logger.info("Job %s admitted: %s -> %s (%s)", job.id, job.source_format, job.target_format, job.analysis_mode)
        return job

    # ─── Pipeline ────────────────────────────────────────────────────────

    def run(self, job_id: str) -> Job | None:
        """Drive a queued job to ``done`` or ``failed``.

        Blocking; callers on an event loop should offload it to a thread.
        Returns the terminal job, or ``None`` when the job was deleted while
        it was running.
        """
        job: Job | None = None
        try:
            job = self._store.update_status(job_id, JobStatus.PROCESSING, PROGRESS_STARTED)
            outcome = self._convert(job)
            self._store.update_status(job_id, JobStatus.PROCESSING, PROGRESS_CONVERTED)
            if job.wants_insights:
                self._attach_insights(job)
            done = self._store.mark_done(job_id, outcome.output_path, outcome.engine)
            logger.info("Job %s done via %s", job_id, done.engine)
            return done
        except JobNotFound:
            logger.info("Job %s disappeared while running; nothing to finish", job_id)
            if job is not None:
                self._storage.remove_job_files(job)
            return None
        except _StageError as e:
            return self._fail(job_id, e.code)
        except OSError as e:
            return self._fail(job_id, failure_code(STORAGE_FAILED, e.strerror or str(e)))
        except Exception as e:
            logger.exception("Job %s crashed in pipeline", job_id)
            return self._fail(job_id, failure_code(INTERNAL_ERROR, type(e).__name__))

    def _convert(self, job: Job) -> ConversionOutcome:
        try:
            output_path = self._storage.output_path(job.id, job.target_format)
        except OSError as e:
            raise _StageError(failure_code(STORAGE_FAILED, e.strerror or str(e))) from e
        try:
            outcome = self._selector.convert(job.original_path, output_path, job.source_format, job.target_format)
        except ConversionFailed as e:
            raise _StageError(failure_code(CONVERSION_FAILED, str(e))) from e
        except OSError as e:
            raise _StageError(failure_code(STORAGE_FAILED, e.strerror or str(e))) from e
        return outcome

    def _attach_insights(self, job: Job) -> None:
        try:
            payload = self._insights.generate(job)
        except Exception as e:
            raise _StageError(failure_code(INSIGHTS_FAILED, str(e) or type(e).__name__)) from e
        self._store.save_insights(job.id, payload)

    def _fail(self, job_id: str, code: str) -> Job | None:
        logger.warning("Job %s failed: %s", job_id, code)
        try:
            job = self._store.get(job_id)
            Path(self._storage.output_path(job_id, job.target_format)).unlink(missing_ok=True)
            return self._store.mark_failed(job_id, code)
        except JobNotFound:
            return None
        except InvalidTransition:
            # queued -> failed is not a legal transition; the reaper reclaims it at expiry
            stranded = self._store.get(job_id)
            logger.error(
                "Job %s stranded in %s (%s); it will be removed at %s",
                job_id,
                stranded.status,
                code,
                stranded.expires_at.isoformat(),
            )
            return stranded

    # ─── Queries ─────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Job:
        return self._store.get(job_id)

    def get_download(self, job_id: str) -> Download:
        job = self._store.get(job_id)
        if job.status != JobStatus.DONE:
            raise JobNotReady(job.status, "Job is not yet complete")
        if not job.converted_path or not Path(job.converted_path).is_file():
            raise ArtifactGone(job_id)
        return Download(
            path=job.converted_path,
            filename=job.download_name,
            media_type=MEDIA_TYPES.get(job.target_format, "application/octet-stream"),
        )

    def get_insights(self, job_id: str) -> dict[str, object] | None:
        job = self._store.get(job_id)
        if job.analysis_mode == AnalysisMode.CONVERT_ONLY:
            raise JobNotReady(job.status, "This job was created in convert-only mode. Insights are not available.")
        if job.status != JobStatus.DONE:
            raise JobNotReady(job.status, "Job is not yet complete")
        return job.insights

    def delete_job(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        self._storage.remove_job_files(job)
        deleted = self._store.delete(job_id)
        logger.info("Job %s deleted", job_id)
        return deleted
