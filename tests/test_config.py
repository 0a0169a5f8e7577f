import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from docspark.config import Settings
from docspark.conversion.errors import failure_code, public_failure_reason
from docspark.conversion.models import normalize_format
from docspark.logging_config import setup_logging


def test_defaults_without_environment(monkeypatch):
    for name in ("DATA_DIR", "JOB_STORE", "TTL_MINUTES", "CONVERT_RATE_MAX", "CORS_ORIGINS", "TRUST_PROXY"):
        monkeypatch.delenv(name, raising=False)
    s = Settings.from_env()

    assert s.job_store == "json"
    assert s.ttl_minutes == 30
    assert s.max_upload_bytes == 250 * 1024 * 1024
    assert (s.convert_rate_window_sec, s.convert_rate_max) == (600, 8)
    assert (s.read_rate_window_sec, s.read_rate_max) == (60, 120)
    assert s.max_active_conversions_per_ip == 2
    assert s.challenge_provider == "none"
    assert s.trust_proxy is True
    assert s.cors_origins == ()
    assert s.resolved_sqlite_path == s.data_dir / "docspark.db"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("JOB_STORE", " SQLite ")
    monkeypatch.setenv("TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("TRUST_PROXY", "off")
    monkeypatch.setenv("CHALLENGE_PROVIDER", "Turnstile")
    monkeypatch.setenv("PANDOC_PATH", "")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = Settings.from_env()

    assert s.data_dir == tmp_path.resolve()
    assert s.job_store == "sqlite"
    assert s.ttl_minutes == 5
    assert s.cors_origins == ("https://a.example", "https://b.example")
    assert s.trust_proxy is False
    assert s.challenge_provider == "turnstile"
    assert s.pandoc_path is None
    assert s.log_level == "DEBUG"


def test_bad_number_fails_fast(monkeypatch):
    monkeypatch.setenv("MAX_UPLOAD_MB", "lots")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_setup_logging_installs_handlers(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        log_file = tmp_path / "logs" / "docspark.log"
        logger = setup_logging("DEBUG", str(log_file))
        setup_logging("DEBUG", str(log_file))

        assert logger.name == "docspark"
        assert len(root.handlers) == 2
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        assert logging.getLogger("uvicorn.access").level == logging.WARNING

        logging.getLogger("docspark.test").info("hello file")
        for h in root.handlers:
            h.flush()
        assert "hello file" in Path(log_file).read_text(encoding="utf-8")
    finally:
        for h in root.handlers:
            h.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


@pytest.mark.parametrize(
    "raw, expected",
    [("HTM", "html"), (".Markdown", "md"), ("text", "txt"), (" PDF ", "pdf"), (None, "")],
)
def test_normalize_format(raw, expected):
    assert normalize_format(raw) == expected


def test_public_failure_reasons():
    assert public_failure_reason(None) is None
    assert public_failure_reason(failure_code("storage_failed", "No space left on device")) == (
        "The converted file could not be saved. Please try again."
    )
    assert public_failure_reason("insights_failed: x") == "Document insights could not be generated for this file."
    assert public_failure_reason("something odd") == "Conversion failed. Please try again."
