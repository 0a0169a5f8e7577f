import hashlib
import random
import subprocess
import uuid
from dataclasses import replace
from pathlib import Path

import pytest

from docspark.config import Settings
from docspark.conversion.adapters import InMemoryJobStore, LocalFileStorage
from docspark.conversion.engines import build_default_selector
from docspark.conversion.insights import MockInsightsGenerator
from docspark.conversion.models import StagedUpload
from docspark.conversion.service import ConversionService

MISSING = "/nonexistent/docspark-test-binary"


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temp dir with every external engine pointed at nothing."""
    return Settings(
        data_dir=tmp_path / "data",
        job_store="memory",
        pandoc_path=MISSING,
        soffice_path=MISSING,
        headless_shell_path=MISSING,
        browser_path=MISSING,
    )


@pytest.fixture
def make_settings(settings):
    def _make(**overrides) -> Settings:
        return replace(settings, **overrides)

    return _make


class FakeRunner:
    """Stands in for subprocess.run; records argv and runs an optional side effect."""

    def __init__(self, effect=None, returncode: int = 0):
        self.calls: list[list[str]] = []
        self._effect = effect
        self._returncode = returncode

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        if self._effect is not None:
            self._effect(argv)
        return subprocess.CompletedProcess(argv, self._returncode, stdout=b"", stderr=b"")


@pytest.fixture
def fake_executable(tmp_path) -> str:
    """An executable file on disk, so shutil.which accepts it as a configured engine path."""
    exe = tmp_path / "bin" / "fake-engine"
    exe.parent.mkdir(parents=True, exist_ok=True)
    exe.write_text("#!/bin/sh\nexit 0\n")
    exe.chmod(0o755)
    return str(exe)


@pytest.fixture
def storage(settings) -> LocalFileStorage:
    return LocalFileStorage(settings.data_dir)


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def service(settings, store, storage) -> ConversionService:
    return ConversionService(
        store,
        storage,
        build_default_selector(settings),
        MockInsightsGenerator(random.Random(7)),
        ttl_minutes=settings.ttl_minutes,
    )


@pytest.fixture
def stage(settings, storage):
    """Write bytes straight into the staging area, as a finished upload would be."""

    def _stage(content: bytes) -> StagedUpload:
        path = Path(settings.data_dir) / "staging" / f"{uuid.uuid4().hex}.part"
        path.write_bytes(content)
        return StagedUpload(path=str(path), size_bytes=len(content), sha256=hashlib.sha256(content).hexdigest())

    return _stage
