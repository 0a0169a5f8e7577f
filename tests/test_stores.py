from datetime import datetime, timedelta, timezone

import pytest

from docspark.conversion.adapters import InMemoryJobStore, JsonFileJobStore, SqliteJobStore, build_job_store
from docspark.conversion.errors import InvalidTransition, JobNotFound
from docspark.conversion.models import AnalysisMode, Job, JobStatus

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "json", "sqlite"])
def job_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    if request.param == "json":
        return JsonFileJobStore(tmp_path / "records")
    return SqliteJobStore(tmp_path / "jobs.db")


def _job(job_id: str = "job-1", *, insights: bool = False, ttl_minutes: int = 30, now: datetime = T0) -> Job:
    return Job.new(
        job_id,
        original_name="report.docx",
        original_path=f"/data/jobs/{job_id}/input/original.docx",
        source_format="docx",
        target_format="pdf",
        preset=None,
        analysis_mode=AnalysisMode.CONVERT_PLUS_INSIGHTS if insights else AnalysisMode.CONVERT_ONLY,
        analysis_consent=insights,
        ttl=timedelta(minutes=ttl_minutes),
        now=now,
    )


def test_create_and_get_round_trip(job_store):
    job_store.create(_job())
    loaded = job_store.get("job-1")

    assert loaded.status == JobStatus.QUEUED
    assert loaded.progress == 0
    assert loaded.original_name == "report.docx"
    assert loaded.created_at == T0
    assert loaded.expires_at == T0 + timedelta(minutes=30)
    assert loaded.converted_path is None


def test_get_missing_raises(job_store):
    with pytest.raises(JobNotFound):
        job_store.get("nope")


def test_lifecycle_to_done(job_store):
    job_store.create(_job())
    job_store.update_status("job-1", JobStatus.PROCESSING, 10)
    job_store.update_status("job-1", JobStatus.PROCESSING, 85)
    done = job_store.mark_done("job-1", "/data/out.pdf", "libreoffice")

    assert (done.status, done.progress, done.engine) == (JobStatus.DONE, 100, "libreoffice")
    assert job_store.get("job-1").converted_path == "/data/out.pdf"


def test_terminal_states_are_final(job_store):
    job_store.create(_job())
    job_store.update_status("job-1", JobStatus.PROCESSING, 10)
    job_store.mark_failed("job-1", "conversion_failed: pandoc not installed")

    with pytest.raises(InvalidTransition):
        job_store.update_status("job-1", JobStatus.PROCESSING, 50)
    with pytest.raises(InvalidTransition):
        job_store.mark_done("job-1", "/data/out.pdf", "pandoc")
    assert job_store.get("job-1").status == JobStatus.FAILED


def test_queued_cannot_jump_to_done(job_store):
    job_store.create(_job())
    with pytest.raises(InvalidTransition):
        job_store.mark_done("job-1", "/data/out.pdf", "pandoc")


def test_progress_never_goes_back(job_store):
    job_store.create(_job())
    job_store.update_status("job-1", JobStatus.PROCESSING, 85)
    with pytest.raises(InvalidTransition):
        job_store.update_status("job-1", JobStatus.PROCESSING, 10)
    assert job_store.get("job-1").progress == 85


def test_mark_failed_clears_result_fields(job_store):
    job_store.create(_job(insights=True))
    job_store.update_status("job-1", JobStatus.PROCESSING, 10)
    job_store.save_insights("job-1", {"summary": "s"})
    failed = job_store.mark_failed("job-1", "storage_failed: disk full")

    assert failed.insights is None
    assert failed.converted_path is None
    assert job_store.get("job-1").failure_reason == "storage_failed: disk full"


def test_insights_only_for_consenting_jobs(job_store):
    job_store.create(_job("a", insights=True))
    job_store.create(_job("b"))
    for job_id in ("a", "b"):
        job_store.update_status(job_id, JobStatus.PROCESSING, 10)

    job_store.save_insights("a", {"qualityScore": {"overall": 90}})
    assert job_store.get("a").insights == {"qualityScore": {"overall": 90}}
    with pytest.raises(InvalidTransition):
        job_store.save_insights("b", {"summary": "nope"})


def test_returned_jobs_are_copies(job_store):
    job_store.create(_job())
    job = job_store.get("job-1")
    job.status = JobStatus.DONE
    assert job_store.get("job-1").status == JobStatus.QUEUED


def test_delete_and_list_expired(job_store):
    job_store.create(_job("old", ttl_minutes=5))
    job_store.create(_job("new", ttl_minutes=60))

    expired = job_store.list_expired(T0 + timedelta(minutes=10))
    assert [j.id for j in expired] == ["old"]
    # expiry is inclusive
    assert [j.id for j in job_store.list_expired(T0 + timedelta(minutes=5))] == ["old"]

    assert job_store.delete("old").id == "old"
    with pytest.raises(JobNotFound):
        job_store.delete("old")
    assert job_store.list_expired(T0 + timedelta(days=1))[0].id == "new"


def test_json_store_rejects_path_like_ids(tmp_path):
    store = JsonFileJobStore(tmp_path / "records")
    with pytest.raises(JobNotFound):
        store.get("../../etc/passwd")


def test_sqlite_store_survives_reopen(tmp_path):
    SqliteJobStore(tmp_path / "jobs.db").create(_job(insights=True))
    reopened = SqliteJobStore(tmp_path / "jobs.db")
    assert reopened.get("job-1").analysis_consent is True


def test_build_job_store_backends(make_settings):
    assert isinstance(build_job_store(make_settings(job_store="memory")), InMemoryJobStore)
    assert isinstance(build_job_store(make_settings(job_store="json")), JsonFileJobStore)
    assert isinstance(build_job_store(make_settings(job_store="sqlite")), SqliteJobStore)
    with pytest.raises(ValueError):
        build_job_store(make_settings(job_store="redis"))
