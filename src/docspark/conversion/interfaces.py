from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Protocol

from .models import Job, StagedUpload


@dataclass(frozen=True)
class ConversionTask:
    input_path: str
    output_path: str
    source_format: str
    target_format: str


class ConversionStrategy(Protocol):
    name: str

    def applies(self, source_format: str, target_format: str) -> bool:
        """Whether this strategy should be attempted for the pair at all."""

    def attempt(self, task: ConversionTask) -> None:
        """Write ``task.output_path`` or raise ``EngineError``.

        This is a blocking call; callers should offload to threads if needed.
        """


class JobStoreGateway(Protocol):
    def create(self, job: Job) -> Job:
        ...

    def get(self, job_id: str) -> Job:
        """Return the job or raise ``JobNotFound``."""

    def update_status(self, job_id: str, status: str, progress: int) -> Job:
        ...

    def mark_done(self, job_id: str, converted_path: str, engine: str) -> Job:
        ...

    def mark_failed(self, job_id: str, reason: str) -> Job:
        ...

    def save_insights(self, job_id: str, insights: dict[str, object]) -> Job:
        ...

    def delete(self, job_id: str) -> Job:
        """Remove the record and return it, or raise ``JobNotFound``."""

    def list_expired(self, now: datetime) -> list[Job]:
        ...


class FileStorageGateway(Protocol):
    async def stage_upload(
        self,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_bytes: int,
    ) -> StagedUpload:
        """Spool an upload stream into the staging area while hashing it."""

    def discard(self, staged: StagedUpload) -> None:
        ...

    def adopt(self, staged: StagedUpload, job_id: str, source_format: str) -> str:
        """Move a staged upload into the job's input directory; return its path."""

    def output_path(self, job_id: str, target_format: str) -> str:
        ...

    def remove_job_files(self, job: Job) -> None:
        """Best-effort delete of everything a job owns on disk."""


class InsightsGateway(Protocol):
    def generate(self, job: Job) -> dict[str, object]:
        ...
