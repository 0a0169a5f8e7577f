import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment at startup.

    Every field has a development default so the service starts with no
    environment at all. Tests build instances directly with overrides.
    """

    data_dir: Path = Path("./data").resolve()
    job_store: str = "json"  # json | sqlite | memory
    sqlite_path: Path | None = None

    ttl_minutes: int = 30
    ttl_sweep_interval_sec: float = 60.0

    max_upload_mb: int = 250
    max_html_kb: int = 5 * 1024

    convert_rate_window_sec: float = 10 * 60
    convert_rate_max: int = 8
    read_rate_window_sec: float = 60
    read_rate_max: int = 120
    max_active_conversions_per_ip: int = 2
    duplicate_window_sec: float = 2 * 60
    abuse_prune_interval_sec: float = 60

    challenge_provider: str = "none"  # none | turnstile | hcaptcha
    challenge_secret_key: str = ""
    challenge_timeout_sec: float = 10

    trust_proxy: bool = True
    cors_origins: tuple[str, ...] = field(default_factory=tuple)

    pandoc_path: str | None = None
    soffice_path: str | None = None
    headless_shell_path: str | None = None
    browser_path: str | None = None
    pandoc_timeout_sec: float = 60
    office_timeout_sec: float = 120
    renderer_timeout_sec: float = 45

    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @property
    def max_html_bytes(self) -> int:
        return self.max_html_kb * 1024

    @property
    def resolved_sqlite_path(self) -> Path:
        return self.sqlite_path or (self.data_dir / "docspark.db")

    @classmethod
    def from_env(cls) -> "Settings":
        sqlite_path = os.getenv("SQLITE_PATH")
        origins = tuple(o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip())
        return cls(
            data_dir=Path(os.getenv("DATA_DIR", "./data")).resolve(),
            job_store=os.getenv("JOB_STORE", "json").strip().lower(),
            sqlite_path=Path(sqlite_path).resolve() if sqlite_path else None,
            ttl_minutes=_env_int("TTL_MINUTES", 30),
            ttl_sweep_interval_sec=_env_float("TTL_SWEEP_INTERVAL_SEC", 60.0),
            max_upload_mb=_env_int("MAX_UPLOAD_MB", 250),
            max_html_kb=_env_int("MAX_HTML_KB", 5 * 1024),
            convert_rate_window_sec=_env_float("CONVERT_RATE_WINDOW_SEC", 10 * 60),
            convert_rate_max=_env_int("CONVERT_RATE_MAX", 8),
            read_rate_window_sec=_env_float("READ_RATE_WINDOW_SEC", 60),
            read_rate_max=_env_int("READ_RATE_MAX", 120),
            max_active_conversions_per_ip=_env_int("MAX_ACTIVE_CONVERSIONS_PER_IP", 2),
            duplicate_window_sec=_env_float("DUPLICATE_WINDOW_SEC", 2 * 60),
            abuse_prune_interval_sec=_env_float("ABUSE_PRUNE_INTERVAL_SEC", 60),
            challenge_provider=os.getenv("CHALLENGE_PROVIDER", "none").strip().lower(),
            challenge_secret_key=os.getenv("CHALLENGE_SECRET_KEY", ""),
            challenge_timeout_sec=_env_float("CHALLENGE_TIMEOUT_SEC", 10),
            trust_proxy=_env_bool("TRUST_PROXY", "true"),
            cors_origins=origins,
            pandoc_path=os.getenv("PANDOC_PATH") or None,
            soffice_path=os.getenv("SOFFICE_PATH") or None,
            headless_shell_path=os.getenv("HEADLESS_SHELL_PATH") or None,
            browser_path=os.getenv("BROWSER_PATH") or None,
            pandoc_timeout_sec=_env_float("PANDOC_TIMEOUT_SEC", 60),
            office_timeout_sec=_env_float("OFFICE_TIMEOUT_SEC", 120),
            renderer_timeout_sec=_env_float("RENDERER_TIMEOUT_SEC", 45),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )
