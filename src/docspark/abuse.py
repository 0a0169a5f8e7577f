"""
Per-IP admission controls for the public API.

Rate limiting, the active-conversion cap, duplicate upload detection and
challenge verification. All state is in process memory and is lost on
restart; call ``AbuseControl.prune_all`` periodically to drop stale entries.
"""
import json
import logging
import math
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator

import requests
from fastapi import Request

from .config import Settings

security_logger = logging.getLogger("docspark.security")

CHALLENGE_ENDPOINTS = {
    "turnstile": "https://challenges.cloudflare.com/turnstile/v0/siteverify",
    "hcaptcha": "https://hcaptcha.com/siteverify",
}


class AdmissionRejected(Exception):
    """Base for requests refused by an abuse control.

    ``event`` and ``details`` feed the security audit log; clients only ever
    see ``public_message``.
    """

    status_code = 429
    event = "admission_rejected"
    public_message = "Too many requests. Please wait and try again."

    def __init__(self, detail: str | None = None, **details: object) -> None:
        super().__init__(detail or self.public_message)
        self.details = details


class RateLimited(AdmissionRejected):
    event = "rate_limited"

    def __init__(self, bucket: str, retry_after: int, *, hits: int, max_requests: int) -> None:
        super().__init__(
            f"{bucket} rate limit exceeded",
            bucketKey=bucket,
            hits=hits,
            maxRequests=max_requests,
            retryAfterSeconds=retry_after,
        )
        self.bucket = bucket
        self.retry_after = retry_after


class TooManyActiveConversions(AdmissionRejected):
    event = "active_conversion_limit"
    public_message = "Too many active conversions from this IP. Please wait for current jobs to finish."


class DuplicateUpload(AdmissionRejected):
    event = "duplicate_upload_blocked"
    public_message = "Duplicate upload detected. Please wait before retrying the same file."


class ChallengeRejected(AdmissionRejected):
    status_code = 403
    event = "challenge_rejected"
    public_message = "Verification failed. Please try again."

    def __init__(self, reason: str, error_codes: list[str] | None = None) -> None:
        codes = list(error_codes or [])
        super().__init__(reason, reason=reason, errorCodes=codes)
        self.reason = reason
        self.error_codes = codes


def client_ip(request: Request, trust_proxy: bool = True) -> str:
    """Best-effort client address: first X-Forwarded-For hop when behind a proxy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else "unknown"


def audit_security_event(event: str, *, ip: str, method: str, path: str, user_agent: str | None, **details: object) -> None:
    payload = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "event": event,
        "ip": ip,
        "method": method,
        "path": path,
        "userAgent": user_agent or "unknown",
        **details,
    }
    security_logger.warning("[SECURITY] %s", json.dumps(payload, default=str))


def audit_request(event: str, request: Request, ip: str, **details: object) -> None:
    audit_security_event(
        event,
        ip=ip,
        method=request.method,
        path=request.url.path,
        user_agent=request.headers.get("user-agent"),
        **details,
    )


class FixedWindowRateLimiter:
    """Fixed-window counter per ``(bucket, ip)``.

    The window opens at an ip's first hit and resets once it has fully
    elapsed, so a burst of ``max_requests`` is always admitted.
    """

    def __init__(self, bucket: str, window_seconds: float, max_requests: int, clock: Callable[[], float] = time.monotonic):
        self.bucket = bucket
        self.window_seconds = float(window_seconds)
        self.max_requests = int(max_requests)
        self._clock = clock
        self._lock = threading.Lock()
        # ip -> (reset_at, hits)
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, ip: str) -> int:
        """Count one request; return hits so far or raise ``RateLimited``."""
        now = self._clock()
        with self._lock:
            reset_at, hits = self._windows.get(ip, (now + self.window_seconds, 0))
            if now > reset_at:
                reset_at, hits = now + self.window_seconds, 0
            hits += 1
            self._windows[ip] = (reset_at, hits)
        if hits > self.max_requests:
            retry_after = max(1, math.ceil(reset_at - now))
            raise RateLimited(self.bucket, retry_after, hits=hits, max_requests=self.max_requests)
        return hits

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [ip for ip, (reset_at, _) in self._windows.items() if reset_at < now]
            for ip in stale:
                del self._windows[ip]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class ActiveConversionTracker:
    """Caps the number of conversions in flight per ip."""

    def __init__(self, max_active: int) -> None:
        self.max_active = int(max_active)
        self._lock = threading.Lock()
        self._active: dict[str, int] = {}

    def acquire(self, ip: str) -> int:
        with self._lock:
            current = self._active.get(ip, 0)
            if current >= self.max_active:
                raise TooManyActiveConversions(f"{current} active conversions", active=current, maxActive=self.max_active)
            self._active[ip] = current + 1
            return current + 1

    def release(self, ip: str) -> None:
        with self._lock:
            current = self._active.get(ip, 0)
            if current <= 1:
                self._active.pop(ip, None)
            else:
                self._active[ip] = current - 1

    def active(self, ip: str) -> int:
        with self._lock:
            return self._active.get(ip, 0)

    @contextmanager
    def slot(self, ip: str) -> Iterator[None]:
        self.acquire(ip)
        try:
            yield
        finally:
            self.release(ip)


class DuplicateUploadGuard:
    """Rejects the same content from the same ip within a time window."""

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        # "ip:sha256" -> expires_at
        self._seen: dict[str, float] = {}

    def check_and_remember(self, ip: str, fingerprint: str) -> None:
        key = f"{ip}:{fingerprint}"
        now = self._clock()
        with self._lock:
            expires_at = self._seen.get(key)
            if expires_at is not None and expires_at >= now:
                raise DuplicateUpload(
                    "duplicate upload", fingerprint=fingerprint[:16], windowSec=self.window_seconds
                )
            self._seen[key] = now + self.window_seconds

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, expires_at in self._seen.items() if expires_at < now]
            for key in stale:
                del self._seen[key]
        return len(stale)


class ChallengeVerifier:
    """Verifies a Turnstile/hCaptcha token. Anything short of success rejects."""

    def __init__(self, provider: str = "none", secret_key: str = "", *, timeout: float = 10, session=requests) -> None:
        self.provider = (provider or "none").strip().lower()
        self._secret = secret_key
        self._timeout = timeout
        self._session = session

    @property
    def enabled(self) -> bool:
        return self.provider != "none"

    def verify(self, token: str | None, remote_ip: str) -> None:
        if not self.enabled:
            return
        if not self._secret:
            raise ChallengeRejected("challenge_not_configured")
        if not token:
            raise ChallengeRejected("missing_challenge_token")
        endpoint = CHALLENGE_ENDPOINTS.get(self.provider)
        if endpoint is None:
            raise ChallengeRejected("unsupported_challenge_provider")

        try:
            resp = self._session.post(
                endpoint,
                data={"secret": self._secret, "response": token, "remoteip": remote_ip},
                timeout=self._timeout,
            )
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ChallengeRejected("challenge_service_unavailable") from e

        if isinstance(data, dict) and data.get("success") is True:
            return
        codes = data.get("error-codes") if isinstance(data, dict) else None
        raise ChallengeRejected("challenge_failed", codes if isinstance(codes, list) else [])


class AbuseControl:
    """Bundle of the admission controls the API applies."""

    def __init__(
        self,
        convert_limiter: FixedWindowRateLimiter,
        read_limiter: FixedWindowRateLimiter,
        active: ActiveConversionTracker,
        duplicates: DuplicateUploadGuard,
        challenge: ChallengeVerifier,
        *,
        trust_proxy: bool = True,
    ) -> None:
        self.convert_limiter = convert_limiter
        self.read_limiter = read_limiter
        self.active = active
        self.duplicates = duplicates
        self.challenge = challenge
        self.trust_proxy = trust_proxy

    @classmethod
    def from_settings(cls, settings: Settings, *, session=requests) -> "AbuseControl":
        return cls(
            convert_limiter=FixedWindowRateLimiter("convert", settings.convert_rate_window_sec, settings.convert_rate_max),
            read_limiter=FixedWindowRateLimiter("read", settings.read_rate_window_sec, settings.read_rate_max),
            active=ActiveConversionTracker(settings.max_active_conversions_per_ip),
            duplicates=DuplicateUploadGuard(settings.duplicate_window_sec),
            challenge=ChallengeVerifier(
                settings.challenge_provider,
                settings.challenge_secret_key,
                timeout=settings.challenge_timeout_sec,
                session=session,
            ),
            trust_proxy=settings.trust_proxy,
        )

    def ip_of(self, request: Request) -> str:
        return client_ip(request, self.trust_proxy)

    def prune_all(self) -> int:
        return self.convert_limiter.prune() + self.read_limiter.prune() + self.duplicates.prune()
