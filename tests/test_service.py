from datetime import datetime, timezone
from pathlib import Path

import pytest

from docspark.conversion.engines import EngineSelector, PassthroughStrategy, build_default_selector
from docspark.conversion.errors import (
    ArtifactGone,
    EngineError,
    JobNotFound,
    JobNotReady,
    JobValidationError,
    public_failure_reason,
)
from docspark.conversion.insights import MockInsightsGenerator
from docspark.conversion.models import AnalysisMode, ConversionRequest, JobStatus
from docspark.conversion.service import PROGRESS_CONVERTED, PROGRESS_STARTED, ConversionService


def _request(name: str = "notes.txt", target: str = "html", **kwargs) -> ConversionRequest:
    return ConversionRequest(original_name=name, target_format=target, **kwargs)


class RecordingStore:
    """Wraps a real store and records every status/progress write."""

    def __init__(self, inner):
        self._inner = inner
        self.progress: list[tuple[str, int]] = []

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def update_status(self, job_id, status, progress):
        self.progress.append((status, progress))
        return self._inner.update_status(job_id, status, progress)


@pytest.mark.parametrize(
    "request_kwargs, message",
    [
        ({"name": ""}, "File is required"),
        ({"name": "a" * 252 + ".txt"}, "Filename is too long."),
        ({"name": "archive.zip"}, "Unsupported input format: zip"),
        ({"name": "README"}, "Unsupported input format: (none)"),
        ({"target": "exe"}, "Unsupported target format: exe"),
        ({"preset": "tiny"}, "Invalid preset: tiny"),
        ({"analysis_mode": "everything"}, "analysisMode must be"),
        ({"analysis_mode": AnalysisMode.CONVERT_PLUS_INSIGHTS}, "analysisConsent is required"),
    ],
)
def test_validate_rejects(service, request_kwargs, message):
    with pytest.raises(JobValidationError, match=message.replace("(", r"\(").replace(")", r"\)")):
        service.validate(_request(**request_kwargs))


def test_validate_normalizes_formats(service):
    req = service.validate(_request("Page.HTM", "Markdown", preset="print-safe"))
    assert req.source_format == "html"
    assert req.target_format == "md"
    assert req.preset == "print-safe"
    assert req.analysis_mode == AnalysisMode.CONVERT_ONLY


def test_admit_creates_queued_job_owning_the_upload(service, stage, storage):
    staged = stage(b"hello")
    job = service.admit(_request(), staged)

    assert job.status == JobStatus.QUEUED
    assert job.progress == 0
    assert (job.expires_at - job.created_at).total_seconds() == 30 * 60
    assert not Path(staged.path).exists()
    assert Path(job.original_path) == storage.job_dir(job.id) / "input" / "original.txt"
    assert Path(job.original_path).read_bytes() == b"hello"


def test_admit_rejects_without_creating(service, stage, store):
    staged = stage(b"hello")
    with pytest.raises(JobValidationError):
        service.admit(_request(target="exe"), staged)
    assert Path(staged.path).exists()
    assert store.list_expired(datetime.max.replace(tzinfo=timezone.utc)) == []


def test_run_txt_to_html(service, stage):
    job = service.admit(_request("notes.txt", "html"), stage(b"a < b\nsecond line"))
    done = service.run(job.id)

    assert done.status == JobStatus.DONE
    assert done.progress == 100
    assert done.engine == "text-transform"
    assert done.failure_reason is None
    body = Path(done.converted_path).read_text(encoding="utf-8")
    assert body.startswith("<!doctype html>")
    assert "a &lt; b" in body


def test_run_reports_progress_checkpoints(settings, store, storage, stage):
    recording = RecordingStore(store)
    svc = ConversionService(recording, storage, build_default_selector(settings), MockInsightsGenerator())
    job = svc.admit(_request("a.md", "txt"), stage(b"# hi"))
    svc.run(job.id)

    assert recording.progress == [
        (JobStatus.PROCESSING, PROGRESS_STARTED),
        (JobStatus.PROCESSING, PROGRESS_CONVERTED),
    ]


def test_run_failure_keeps_diagnostics_internal(service, stage):
    job = service.admit(_request("scan.pdf", "csv"), stage(b"%PDF-1.4"))
    failed = service.run(job.id)

    assert failed.status == JobStatus.FAILED
    assert failed.failure_reason.startswith("conversion_failed: ")
    assert "pandoc not installed" in failed.failure_reason
    assert failed.converted_path is None

    public = public_failure_reason(failed.failure_reason)
    assert "pandoc" not in public
    assert public == "This format pair is unavailable right now. Please try a different target format."


def test_run_with_insights(service, stage):
    job = service.admit(
        _request("cv.md", "txt", analysis_mode=AnalysisMode.CONVERT_PLUS_INSIGHTS, analysis_consent=True),
        stage(b"# CV"),
    )
    service.run(job.id)
    insights = service.get_insights(job.id)

    assert {"summary", "keyFields", "redactionHints", "qualityScore"} <= set(insights)
    assert insights["keyFields"][0] == {"label": "Document Title", "value": "cv"}
    assert 85 <= insights["qualityScore"]["overall"] <= 96


def test_insights_failure_fails_the_job(settings, store, storage, stage):
    class BrokenInsights:
        def generate(self, job):
            raise RuntimeError("model offline")

    svc = ConversionService(store, storage, EngineSelector([PassthroughStrategy()]), BrokenInsights())
    job = svc.admit(
        _request("a.txt", "md", analysis_mode=AnalysisMode.CONVERT_PLUS_INSIGHTS, analysis_consent=True),
        stage(b"x"),
    )
    failed = svc.run(job.id)

    assert failed.status == JobStatus.FAILED
    assert failed.failure_reason == "insights_failed: model offline"
    assert failed.insights is None
    assert not Path(storage.output_path(job.id, "md")).exists()


def test_unexpected_error_is_recorded_as_internal(settings, store, storage, stage):
    class Exploding:
        name = "exploding"

        def applies(self, source_format, target_format):
            return True

        def attempt(self, task):
            raise KeyError("boom")

    svc = ConversionService(store, storage, EngineSelector([Exploding()]), None)
    job = svc.admit(_request("a.txt", "md"), stage(b"x"))
    failed = svc.run(job.id)

    assert failed.status == JobStatus.FAILED
    assert failed.failure_reason == "internal_error: KeyError"
    assert public_failure_reason(failed.failure_reason) == "Conversion failed. Please try again."


def test_job_deleted_mid_run_returns_none(settings, store, storage, stage):
    class DeletingStrategy:
        name = "deleting"

        def applies(self, source_format, target_format):
            return True

        def attempt(self, task):
            Path(task.output_path).write_text("x")
            job_id = Path(task.output_path).parent.parent.name
            store.delete(job_id)

    svc = ConversionService(store, storage, EngineSelector([DeletingStrategy()]), None)
    job = svc.admit(_request("a.txt", "md"), stage(b"x"))

    assert svc.run(job.id) is None
    assert not storage.job_dir(job.id).exists()


def test_job_that_cannot_start_stays_queued_and_is_logged(store, storage, stage, caplog):
    class ReadOnlyStore(RecordingStore):
        def update_status(self, job_id, status, progress):
            raise OSError(30, "Read-only file system")

    svc = ConversionService(ReadOnlyStore(store), storage, EngineSelector([PassthroughStrategy()]), None)
    job = svc.admit(_request("a.txt", "txt"), stage(b"x"))
    stranded = svc.run(job.id)

    assert stranded.status == JobStatus.QUEUED
    assert stranded.failure_reason is None
    assert "stranded in queued (storage_failed: Read-only file system)" in caplog.text
    assert not Path(storage.output_path(job.id, "txt")).exists()


def test_engine_error_from_strategy_is_a_conversion_failure(settings, store, storage, stage):
    class Failing:
        name = "failing"

        def applies(self, source_format, target_format):
            return True

        def attempt(self, task):
            raise EngineError("failing engine exploded")

    svc = ConversionService(store, storage, EngineSelector([Failing()]), None)
    job = svc.admit(_request("a.txt", "md"), stage(b"x"))
    assert svc.run(job.id).failure_reason == "conversion_failed: failing engine exploded"


def test_download_states(service, stage):
    job = service.admit(_request("notes.txt", "html"), stage(b"hello"))
    with pytest.raises(JobNotReady) as exc_info:
        service.get_download(job.id)
    assert exc_info.value.status == JobStatus.QUEUED

    service.run(job.id)
    download = service.get_download(job.id)
    assert download.filename == "notes.html"
    assert download.media_type.startswith("text/html")

    Path(download.path).unlink()
    with pytest.raises(ArtifactGone):
        service.get_download(job.id)


def test_insights_states(service, stage):
    plain = service.admit(_request("a.txt", "md"), stage(b"a"))
    service.run(plain.id)
    with pytest.raises(JobNotReady, match="convert-only"):
        service.get_insights(plain.id)

    pending = service.admit(
        _request("b.txt", "md", analysis_mode=AnalysisMode.CONVERT_PLUS_INSIGHTS, analysis_consent=True),
        stage(b"b"),
    )
    with pytest.raises(JobNotReady, match="not yet complete"):
        service.get_insights(pending.id)


def test_delete_job_removes_files_and_record(service, stage, storage):
    job = service.admit(_request("notes.txt", "html"), stage(b"hello"))
    service.run(job.id)

    service.delete_job(job.id)

    assert not storage.job_dir(job.id).exists()
    with pytest.raises(JobNotFound):
        service.get_job(job.id)
    with pytest.raises(JobNotFound):
        service.delete_job(job.id)
