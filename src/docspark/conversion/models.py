from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path


SUPPORTED_FORMATS = ("pdf", "docx", "txt", "html", "md", "rtf", "csv")
ALLOWED_INPUT_FORMATS = frozenset(SUPPORTED_FORMATS)
ALLOWED_OUTPUT_FORMATS = frozenset(SUPPORTED_FORMATS)
PLAIN_TEXT_FORMATS = frozenset({"txt", "md", "csv"})
ALLOWED_PRESETS = ("resume-safe", "print-safe", "mobile-safe")

_FORMAT_ALIASES = {
    "htm": "html",
    "markdown": "md",
    "text": "txt",
}


def normalize_format(fmt: str | None) -> str:
    """Lower-case a format name or extension and resolve known aliases."""
    value = str(fmt or "").strip().lower().lstrip(".")
    return _FORMAT_ALIASES.get(value, value)


class JobStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    TERMINAL = frozenset({DONE, FAILED})


class AnalysisMode:
    CONVERT_ONLY = "convert_only"
    CONVERT_PLUS_INSIGHTS = "convert_plus_insights"

    ALL = (CONVERT_ONLY, CONVERT_PLUS_INSIGHTS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as strings.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class Job:
    id: str
    original_name: str
    original_path: str
    source_format: str
    target_format: str
    preset: str | None
    analysis_mode: str
    analysis_consent: bool
    created_at: datetime
    expires_at: datetime
    status: str = JobStatus.QUEUED
    progress: int = 0
    converted_path: str | None = None
    engine: str | None = None
    failure_reason: str | None = None
    insights: dict[str, object] | None = None

    @classmethod
    def new(
        cls,
        job_id: str,
        *,
        original_name: str,
        original_path: str,
        source_format: str,
        target_format: str,
        preset: str | None,
        analysis_mode: str,
        analysis_consent: bool,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> "Job":
        created = now or utcnow()
        return cls(
            id=job_id,
            original_name=original_name,
            original_path=original_path,
            source_format=source_format,
            target_format=target_format,
            preset=preset,
            analysis_mode=analysis_mode,
            analysis_consent=analysis_consent,
            created_at=created,
            expires_at=created + ttl,
        )

    @property
    def wants_insights(self) -> bool:
        return self.analysis_mode == AnalysisMode.CONVERT_PLUS_INSIGHTS and self.analysis_consent

    @property
    def download_name(self) -> str:
        return f"{Path(self.original_name).stem or 'converted'}.{self.target_format}"

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["created_at"] = to_iso(self.created_at)
        data["expires_at"] = to_iso(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Job":
        values = dict(data)
        values["created_at"] = parse_iso(str(values["created_at"]))
        values["expires_at"] = parse_iso(str(values["expires_at"]))
        values["analysis_consent"] = bool(values.get("analysis_consent"))
        values["progress"] = int(values.get("progress") or 0)  # type: ignore[arg-type]
        return cls(**values)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ConversionRequest:
    """Everything the client asked for, before any job exists."""

    original_name: str
    target_format: str
    preset: str | None = None
    analysis_mode: str = AnalysisMode.CONVERT_ONLY
    analysis_consent: bool = False

    @property
    def source_format(self) -> str:
        name = self.original_name
        return normalize_format(name.rsplit(".", 1)[-1]) if "." in name else ""


@dataclass(frozen=True)
class StagedUpload:
    """An upload spooled to the staging area, not yet owned by any job."""

    path: str
    size_bytes: int
    sha256: str
