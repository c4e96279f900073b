"""Tests for error classification, retry and timeout handling."""

import threading

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.errors import (
    USER_MESSAGES,
    ErrorAggregator,
    RetryConfig,
    SyncError,
    SyncErrorType,
    classify,
    error_result,
    safe_call,
    with_retry,
    with_timeout,
)


def _http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://sync.test/api/sync/upload")
    response = httpx.Response(status_code, request=request, text="upstream said no")
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.mark.parametrize(
    ("status_code", "expected_type", "retryable"),
    [
        (401, SyncErrorType.AUTH, False),
        (403, SyncErrorType.AUTH, False),
        (408, SyncErrorType.TIMEOUT, True),
        (504, SyncErrorType.TIMEOUT, True),
        (500, SyncErrorType.SERVER, True),
        (503, SyncErrorType.SERVER, True),
        (404, SyncErrorType.VALIDATION, False),
        (422, SyncErrorType.VALIDATION, False),
    ],
)
def test_classify_http_status(status_code: int, expected_type: SyncErrorType, retryable: bool) -> None:
    error = classify(_http_error(status_code))
    if error.type is not expected_type or error.retryable is not retryable:
        msg = f"{status_code}: expected {expected_type}/{retryable}, got {error.type}/{error.retryable}"
        raise AssertionError(msg)
    if error.status_code != status_code or error.user_message != USER_MESSAGES[expected_type]:
        msg = f"{status_code}: unexpected status or user message on {error.to_dict()}"
        raise AssertionError(msg)


@pytest.mark.parametrize(
    ("exc", "expected_type"),
    [
        (httpx.ConnectTimeout("connect timed out"), SyncErrorType.TIMEOUT),
        (TimeoutError("slow"), SyncErrorType.TIMEOUT),
        (httpx.ConnectError("refused"), SyncErrorType.NETWORK),
        (ConnectionResetError("reset"), SyncErrorType.NETWORK),
        (OperationalError("SELECT 1", {}, Exception("database is locked")), SyncErrorType.NETWORK),
        (IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")), SyncErrorType.DATA_INTEGRITY),
        (ValueError("something odd"), SyncErrorType.UNKNOWN),
    ],
)
def test_classify_exceptions(exc: Exception, expected_type: SyncErrorType) -> None:
    error = classify(exc)
    if error.type is not expected_type:
        msg = f"{exc!r}: expected {expected_type}, got {error.type}"
        raise AssertionError(msg)
    if error.__cause__ is not exc:
        msg = "Expected the underlying exception to be kept as the cause"
        raise AssertionError(msg)


def test_unknown_errors_are_not_retryable() -> None:
    error = classify(RuntimeError("boom"))
    if error.retryable or error.code != "RuntimeError":
        msg = f"Unexpected classification {error.to_dict()}"
        raise AssertionError(msg)
    already = SyncError("bad", SyncErrorType.AUTH)
    if classify(already) is not already:
        msg = "Expected a SyncError to be returned unchanged"
        raise AssertionError(msg)


def test_retry_succeeds_on_third_attempt() -> None:
    calls: list[int] = []
    sleeps: list[float] = []
    retries: list[tuple[int, SyncErrorType]] = []

    def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise httpx.ConnectError("network down")
        return "ok"

    result = with_retry(
        flaky,
        RetryConfig(max_attempts=3, base_delay=1.0, max_delay=30.0, backoff_multiplier=2.0),
        on_retry=lambda attempt, error: retries.append((attempt, error.type)),
        sleep=sleeps.append,
    )
    if result != "ok" or len(calls) != 3:
        msg = f"Expected success on the third call, got {result!r} after {len(calls)} calls"
        raise AssertionError(msg)
    if sleeps != [1.0, 2.0]:
        msg = f"Expected delays [1.0, 2.0], got {sleeps}"
        raise AssertionError(msg)
    if retries != [(1, SyncErrorType.NETWORK), (2, SyncErrorType.NETWORK)]:
        msg = f"Unexpected retry callbacks {retries}"
        raise AssertionError(msg)


def test_retry_delays_are_capped() -> None:
    sleeps: list[float] = []

    def always_down() -> None:
        raise _http_error(503)

    with pytest.raises(SyncError) as excinfo:
        with_retry(
            always_down,
            RetryConfig(max_attempts=4, base_delay=10.0, max_delay=15.0, backoff_multiplier=2.0),
            sleep=sleeps.append,
        )
    if excinfo.value.type is not SyncErrorType.SERVER:
        msg = f"Expected the last SERVER error to propagate, got {excinfo.value.type}"
        raise AssertionError(msg)
    if sleeps != [10.0, 15.0, 15.0]:
        msg = f"Expected capped delays, got {sleeps}"
        raise AssertionError(msg)
    if RetryConfig(base_delay=10.0, max_delay=15.0).delay_for(2) != 15.0:
        msg = "Expected delay_for to respect the cap"
        raise AssertionError(msg)


def test_non_retryable_errors_fail_immediately() -> None:
    calls: list[int] = []
    sleeps: list[float] = []

    def unauthorized() -> None:
        calls.append(1)
        raise _http_error(401)

    with pytest.raises(SyncError) as excinfo:
        with_retry(unauthorized, RetryConfig(), sleep=sleeps.append)
    if excinfo.value.type is not SyncErrorType.AUTH or len(calls) != 1 or sleeps:
        msg = f"Expected one attempt and no sleeps, got {len(calls)} calls and {sleeps}"
        raise AssertionError(msg)


def test_with_timeout() -> None:
    if with_timeout(lambda: 42, 1.0) != 42:
        msg = "Expected the result of a fast operation"
        raise AssertionError(msg)

    release = threading.Event()
    with pytest.raises(SyncError) as excinfo:
        with_timeout(lambda: release.wait(5), 0.05, "Upload timed out")
    release.set()
    error = excinfo.value
    if error.type is not SyncErrorType.TIMEOUT or not error.retryable or error.message != "Upload timed out":
        msg = f"Unexpected timeout error {error.to_dict()}"
        raise AssertionError(msg)

    def broken() -> None:
        msg = "broken"
        raise ValueError(msg)

    with pytest.raises(ValueError, match="broken"):
        with_timeout(broken, 1.0)


def test_error_aggregator_summary() -> None:
    aggregator = ErrorAggregator()
    if aggregator.has_errors():
        msg = "Expected an empty aggregator"
        raise AssertionError(msg)
    aggregator.add(httpx.ConnectError("down"))
    aggregator.add(httpx.ConnectError("still down"))
    aggregator.add(_http_error(401))
    summary = aggregator.summary()
    expected = {
        "total_errors": 3,
        "errors_by_type": {"NETWORK": 2, "AUTH": 1},
        "retryable_count": 2,
        "user_messages": [USER_MESSAGES[SyncErrorType.NETWORK], USER_MESSAGES[SyncErrorType.AUTH]],
    }
    if summary != expected:
        msg = f"Expected {expected}, got {summary}"
        raise AssertionError(msg)
    if len(aggregator.errors_by_type(SyncErrorType.AUTH)) != 1 or not aggregator.has_retryable_errors():
        msg = "Unexpected aggregator queries"
        raise AssertionError(msg)
    aggregator.clear()
    if aggregator.errors:
        msg = "Expected clear() to drop every error"
        raise AssertionError(msg)


def test_safe_call_and_error_result() -> None:
    ok = safe_call(lambda: {"categories": 2})
    if not ok.success or ok.data != {"categories": 2} or ok.error is not None:
        msg = f"Unexpected success result {ok}"
        raise AssertionError(msg)

    def failing() -> None:
        raise _http_error(500)

    failed = safe_call(failing, fallback=[], log_error=False)
    if failed.success or failed.data != [] or failed.error.type is not SyncErrorType.SERVER:
        msg = f"Unexpected failure result {failed}"
        raise AssertionError(msg)

    body = error_result(_http_error(401), "download")
    if body["success"] or body["error_type"] != "AUTH" or body["message"] != USER_MESSAGES[SyncErrorType.AUTH]:
        msg = f"Unexpected error body {body}"
        raise AssertionError(msg)
