"""Error taxonomy, classification and retry policy for sync operations.

Every failure that crosses a sync boundary is turned into a :class:`SyncError`
carrying a type from :class:`SyncErrorType`, a retryability flag and a short,
stable user-facing message. :func:`with_retry` applies bounded exponential
backoff to retryable failures and :func:`with_timeout` races an operation
against a deadline, abandoning (not cancelling) the loser.
"""

import concurrent.futures
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any, NamedTuple, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.settings import Settings, get_settings
from app.core.utils import get_logger, utcnow_iso

logger = get_logger("expense-sync.errors")

T = TypeVar("T")

HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_REQUEST_TIMEOUT = 408
HTTP_INTERNAL_ERROR = 500
HTTP_GATEWAY_TIMEOUT = 504


class SyncErrorType(StrEnum):
    """Failure categories shared by the worker, the engine and the API."""

    NETWORK = "NETWORK"
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    SERVER = "SERVER"
    TIMEOUT = "TIMEOUT"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    UNKNOWN = "UNKNOWN"


USER_MESSAGES: dict[SyncErrorType, str] = {
    SyncErrorType.NETWORK: "Please check your internet connection and try again.",
    SyncErrorType.AUTH: "Please sign in to sync your data.",
    SyncErrorType.VALIDATION: "Invalid data detected. Please contact support.",
    SyncErrorType.SERVER: "Server is temporarily unavailable. Please try again later.",
    SyncErrorType.TIMEOUT: "The request took too long. Please try again.",
    SyncErrorType.DATA_INTEGRITY: "Data format is invalid and cannot be synced.",
    SyncErrorType.UNKNOWN: "An unexpected error occurred. Please try again.",
}

RETRYABLE_TYPES = frozenset({SyncErrorType.NETWORK, SyncErrorType.TIMEOUT, SyncErrorType.SERVER})


def is_retryable(error_type: SyncErrorType) -> bool:
    """Return the default retryability of an error type (unknown is not retryable)."""
    return error_type in RETRYABLE_TYPES


class SyncError(Exception):
    """A classified sync failure."""

    def __init__(
        self,
        message: str,
        error_type: SyncErrorType = SyncErrorType.UNKNOWN,
        *,
        code: str | None = None,
        status_code: int | None = None,
        retryable: bool | None = None,
        details: Any = None,
    ) -> None:
        """Build an error; retryability defaults to what the error type implies."""
        super().__init__(message)
        self.message = message
        self.type = error_type
        self.code = code
        self.status_code = status_code
        self.retryable = is_retryable(error_type) if retryable is None else retryable
        self.user_message = USER_MESSAGES[error_type]
        self.details = details
        self.timestamp = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs, job records and API bodies."""
        return {
            "type": str(self.type),
            "message": self.message,
            "user_message": self.user_message,
            "code": self.code,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }


class JobNotFoundError(LookupError):
    """Raised when a job does not exist (or belongs to another user)."""

    def __init__(self, job_id: str) -> None:
        """Record which job could not be found."""
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(RuntimeError):
    """Raised when a job transition is not allowed from its current status."""

    def __init__(self, job_id: str, status: str, action: str) -> None:
        """Record the job, its current status and the rejected action."""
        super().__init__(f"Cannot {action} job {job_id} in {status} status")
        self.job_id = job_id
        self.status = status
        self.action = action


def _status_code_of(exc: BaseException) -> int | None:
    """HTTP status carried by an exception or its response, if any."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def _type_for_status(status_code: int) -> SyncErrorType:
    """Map an HTTP status code to an error type."""
    if status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
        return SyncErrorType.AUTH
    # Checked before the generic 5xx rule so that 504 is a timeout.
    if status_code in (HTTP_REQUEST_TIMEOUT, HTTP_GATEWAY_TIMEOUT):
        return SyncErrorType.TIMEOUT
    if status_code >= HTTP_INTERNAL_ERROR:
        return SyncErrorType.SERVER
    if HTTP_BAD_REQUEST <= status_code < HTTP_INTERNAL_ERROR:
        return SyncErrorType.VALIDATION
    return SyncErrorType.UNKNOWN


def classify(exc: BaseException) -> SyncError:
    """Convert an arbitrary exception into a :class:`SyncError`.

    Already-classified errors are returned unchanged.
    """
    if isinstance(exc, SyncError):
        return exc

    status_code = _status_code_of(exc)
    details = None
    if status_code is not None:
        error_type = _type_for_status(status_code)
        response = getattr(exc, "response", None)
        if isinstance(response, httpx.Response):
            details = response.text
        else:
            details = getattr(exc, "detail", None)
    elif isinstance(exc, httpx.TimeoutException | TimeoutError):
        error_type = SyncErrorType.TIMEOUT
    elif isinstance(exc, httpx.TransportError | ConnectionError | OperationalError | DisconnectionError):
        error_type = SyncErrorType.NETWORK
    elif isinstance(exc, IntegrityError):
        error_type = SyncErrorType.DATA_INTEGRITY
    elif isinstance(exc, PydanticValidationError):
        error_type = SyncErrorType.VALIDATION
        details = exc.errors(include_url=False, include_context=False)
    else:
        error_type = SyncErrorType.UNKNOWN

    message = str(exc) or exc.__class__.__name__
    error = SyncError(
        message,
        error_type,
        code=exc.__class__.__name__,
        status_code=status_code,
        details=details,
    )
    error.__cause__ = exc
    return error


def log_sync_error(error: SyncError, context: str | None = None) -> None:
    """Log a classified error at a level chosen from its type."""
    prefix = f"[{context}] " if context else ""
    summary = f"{prefix}{error.type}: {error.message} (retryable={error.retryable}, status={error.status_code})"
    if error.type in (SyncErrorType.VALIDATION, SyncErrorType.DATA_INTEGRITY):
        logger.error(f"Sync error (critical) {summary}")
    elif error.retryable:
        logger.warning(f"Sync error (retryable) {summary}")
    else:
        logger.error(f"Sync error (non-retryable) {summary}")


class RetryConfig(BaseModel):
    """Bounded exponential backoff parameters (delays in seconds)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryConfig":
        """Build the retry policy from application settings."""
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)


def _is_retryable_error(exc: BaseException) -> bool:
    """Whether tenacity should try again after ``exc``."""
    return isinstance(exc, SyncError) and exc.retryable


def with_retry(
    operation: Callable[[], T],
    config: RetryConfig | None = None,
    on_retry: Callable[[int, SyncError], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    Failures are classified first; only retryable ones are retried. When the
    attempts run out, or the error is not retryable, the classified error is
    raised. ``sleep`` is injectable so tests can observe delays without waiting.
    """
    config = config or RetryConfig.from_settings()

    def attempt() -> T:
        try:
            return operation()
        except SyncError:
            raise
        except Exception as exc:
            raise classify(exc) from exc

    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception()
        delay = state.next_action.sleep if state.next_action else 0
        logger.warning(
            f"Sync operation failed (attempt {state.attempt_number}/{config.max_attempts}), "
            f"retrying in {delay:.2f}s: {error}"
        )
        if on_retry is not None:
            on_retry(state.attempt_number, error)

    retrying = Retrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.base_delay,
            exp_base=config.backoff_multiplier,
            max=config.max_delay,
        ),
        retry=retry_if_exception(_is_retryable_error),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return retrying(attempt)


def with_timeout(
    operation: Callable[[], T],
    timeout_seconds: float | None = None,
    error_message: str = "Operation timed out",
) -> T:
    """Race ``operation`` against a deadline.

    The operation runs on its own thread. When the deadline passes first, a
    retryable ``TIMEOUT`` error is raised and the thread is left to finish on
    its own; its eventual result is discarded.
    """
    if timeout_seconds is None:
        timeout_seconds = get_settings().request_timeout_seconds
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-timeout")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        if future.done():
            raise
        raise SyncError(error_message, SyncErrorType.TIMEOUT, code="TIMEOUT", retryable=True) from None
    finally:
        executor.shutdown(wait=False)


class SafeResult(NamedTuple):
    """Outcome of :func:`safe_call`."""

    success: bool
    data: Any = None
    error: SyncError | None = None


def safe_call(operation: Callable[[], T], fallback: T | None = None, *, log_error: bool = True) -> SafeResult:
    """Run ``operation`` and capture any failure as a classified error."""
    try:
        return SafeResult(success=True, data=operation())
    except Exception as exc:
        error = classify(exc)
        if log_error:
            log_sync_error(error, "safe_call")
        return SafeResult(success=False, data=fallback, error=error)


def error_result(exc: BaseException, operation: str) -> dict[str, Any]:
    """Build the standard failure body for an API response."""
    error = classify(exc)
    log_sync_error(error, operation)
    return {
        "success": False,
        "message": error.user_message,
        "error": error.message,
        "error_type": str(error.type),
        "retryable": error.retryable,
        "timestamp": error.timestamp,
    }


class ErrorAggregator:
    """Collects classified errors across a batch without aborting it."""

    def __init__(self) -> None:
        """Start with no recorded errors."""
        self._errors: list[SyncError] = []

    def add(self, exc: BaseException) -> SyncError:
        """Classify ``exc``, record it and return the classified error."""
        error = classify(exc)
        self._errors.append(error)
        return error

    def has_errors(self) -> bool:
        """Whether anything has been recorded."""
        return bool(self._errors)

    @property
    def errors(self) -> list[SyncError]:
        """A copy of the recorded errors, oldest first."""
        return list(self._errors)

    def errors_by_type(self, error_type: SyncErrorType) -> list[SyncError]:
        """Recorded errors of one type."""
        return [error for error in self._errors if error.type == error_type]

    def has_retryable_errors(self) -> bool:
        """Whether any recorded error is worth retrying."""
        return any(error.retryable for error in self._errors)

    def summary(self) -> dict[str, Any]:
        """Counts by type, retryable count and de-duplicated user messages."""
        counts: dict[str, int] = {}
        messages: dict[str, None] = {}
        for error in self._errors:
            counts[str(error.type)] = counts.get(str(error.type), 0) + 1
            messages.setdefault(error.user_message)
        return {
            "total_errors": len(self._errors),
            "errors_by_type": counts,
            "retryable_count": sum(1 for error in self._errors if error.retryable),
            "user_messages": list(messages),
        }

    def clear(self) -> None:
        """Forget every recorded error."""
        self._errors.clear()
