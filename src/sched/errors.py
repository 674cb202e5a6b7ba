from __future__ import annotations

from enum import Enum

_QUOTA_CODES = frozenset({"insufficient_quota", "quota_exhausted", "billing_hard_limit_reached"})
_QUOTA_MARKERS = ("insufficient_quota", "exceeded your current quota")
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "429")
_TRANSIENT_MARKERS = ("timeout", "timed out", "network")
_RETRYABLE_STATUSES = frozenset({408, 409})


class SchedulerError(Exception):
    """Base class for every failure raised by the scheduler core."""


class ProviderError(SchedulerError):
    """Failure reported across the provider call boundary."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after_ms: float | None = None,
        code: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.code = code
        self.provider = provider
        self.model = model

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (status={self.status})"


class RateLimited(ProviderError):
    pass


class QuotaExhausted(ProviderError):
    pass


class TransientFailure(ProviderError):
    pass


class ConfigurationFailure(ProviderError):
    pass


class ModelCoolingDown(SchedulerError):
    """Raised instead of dispatching when a model is cooling down or near its quota."""

    def __init__(self, route_key: str, retry_after_ms: float, reason: str) -> None:
        super().__init__(
            f"model {route_key} is cooling down for {int(retry_after_ms)}ms ({reason})"
        )
        self.route_key = route_key
        self.retry_after_ms = retry_after_ms
        self.reason = reason


class ChainExhausted(SchedulerError):
    def __init__(self, last_error: BaseException | None, *, attempted: int = 0, skipped: int = 0) -> None:
        if last_error is None:
            message = "model chain exhausted"
        else:
            message = f"model chain exhausted: {last_error}"
        super().__init__(message)
        self.last_error = last_error
        self.attempted = attempted
        self.skipped = skipped

    @property
    def retry_after_ms(self) -> float | None:
        return getattr(self.last_error, "retry_after_ms", None)


class FailureKind(str, Enum):
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


def error_status(exc: BaseException) -> int | None:
    status = getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _error_code(exc: BaseException) -> str | None:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code.strip().lower()
    return None


def _error_text(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message.lower()
    return str(exc).lower()


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, QuotaExhausted):
        return FailureKind.QUOTA_EXHAUSTED
    if isinstance(exc, (ConfigurationFailure, ModelCoolingDown)):
        return FailureKind.FATAL
    if isinstance(exc, RateLimited):
        return FailureKind.RATE_LIMITED
    if isinstance(exc, TransientFailure):
        return FailureKind.TRANSIENT
    code = _error_code(exc)
    text = _error_text(exc)
    if code is not None:
        if code in _QUOTA_CODES:
            return FailureKind.QUOTA_EXHAUSTED
    elif any(marker in text for marker in _QUOTA_MARKERS):
        return FailureKind.QUOTA_EXHAUSTED
    status = error_status(exc)
    if status == 429 or any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    if status in _RETRYABLE_STATUSES or (status is not None and status >= 500):
        return FailureKind.TRANSIENT
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return FailureKind.TRANSIENT
    return FailureKind.FATAL


def is_retryable(kind: FailureKind) -> bool:
    return kind in (FailureKind.RATE_LIMITED, FailureKind.TRANSIENT)
