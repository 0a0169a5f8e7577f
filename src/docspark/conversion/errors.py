"""Exception types raised by the conversion domain.

Diagnostic codes carried by ``EngineError`` / ``ConversionFailed`` are for
logs and the job store only. Clients see ``public_failure_reason`` output.
"""


class DocSparkError(Exception):
    """Base class for all errors raised by docspark."""


class JobValidationError(DocSparkError):
    """Request rejected before a job was created. The message is client-safe."""


class UploadTooLarge(DocSparkError):
    def __init__(self, max_mb: int) -> None:
        super().__init__(f"File exceeds {max_mb} MB limit")
        self.max_mb = max_mb


class JobNotFound(DocSparkError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(DocSparkError):
    """A job was asked to move to a state its current state cannot reach."""


class JobNotReady(DocSparkError):
    """The job exists but is not in a state that can answer the request."""

    def __init__(self, status: str, message: str) -> None:
        super().__init__(message)
        self.status = status


class ArtifactGone(DocSparkError):
    """The job is done but its converted file has been reclaimed."""


class EngineError(DocSparkError):
    """One conversion strategy failed. ``code`` is a short diagnostic string."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class ConversionFailed(DocSparkError):
    """Every applicable strategy failed for a source/target pair."""

    def __init__(self, codes: list[str]) -> None:
        self.codes = list(codes) or ["no conversion strategy applies"]
        super().__init__("; ".join(self.codes))


# Failure codes stored on a job are "<stage>: <detail>".
CONVERSION_FAILED = "conversion_failed"
INSIGHTS_FAILED = "insights_failed"
STORAGE_FAILED = "storage_failed"
INTERNAL_ERROR = "internal_error"

_PUBLIC_MESSAGES = {
    CONVERSION_FAILED: "This format pair is unavailable right now. Please try a different target format.",
    INSIGHTS_FAILED: "Document insights could not be generated for this file.",
    STORAGE_FAILED: "The converted file could not be saved. Please try again.",
}
_DEFAULT_PUBLIC_MESSAGE = "Conversion failed. Please try again."


def failure_code(stage: str, detail: str) -> str:
    return f"{stage}: {detail}" if detail else stage


def public_failure_reason(code: str | None) -> str | None:
    """Map an internal failure code to a fixed, client-safe message."""
    if not code:
        return None
    stage = code.split(":", 1)[0].strip()
    return _PUBLIC_MESSAGES.get(stage, _DEFAULT_PUBLIC_MESSAGE)
