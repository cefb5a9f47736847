import asyncio

from issueflow.rate_limit import RateLimiter, is_rate_limited, wait_time
from issueflow.stages import ErrorKind, StageError, StageSuccess


def test_structured_success_is_never_rate_limited() -> None:
    result = StageSuccess(
        payload={"status": "success", "summary": "Added rate limit handling to the API client"},
        envelope={"is_error": True, "result": "rate limit"},
    )

    assert is_rate_limited(result) is False


def test_structured_rate_limit_status_is_rate_limited() -> None:
    result = StageSuccess(payload={"status": "rate_limit"})

    assert is_rate_limited(result) is True


def test_text_heuristics_need_an_executor_error() -> None:
    discussed = StageSuccess(
        payload={"status": "failed"},
        envelope={"is_error": False, "result": "The 429 handler returns too many requests"},
    )
    flagged = StageError(
        kind=ErrorKind.EXECUTOR_ERROR,
        message="Claude usage limit reached",
        envelope={"is_error": True, "result": "Claude usage limit reached"},
    )

    assert is_rate_limited(discussed) is False
    assert is_rate_limited(flagged) is True


def test_timeouts_are_not_rate_limits() -> None:
    result = StageError(kind=ErrorKind.TIMEOUT, message="rate limit")

    assert is_rate_limited(result) is False


def test_wait_time_prefers_explicit_retry_after() -> None:
    result = StageError(
        kind=ErrorKind.EXECUTOR_ERROR,
        envelope={"is_error": True, "retry_after": 30, "result": "wait 10 minutes"},
    )

    assert wait_time(result, default_seconds=300, buffer_seconds=60) == 90


def test_wait_time_parses_retry_after_text() -> None:
    result = StageError(kind=ErrorKind.EXECUTOR_ERROR, message="429: Retry-After: 45")

    assert wait_time(result, default_seconds=300, buffer_seconds=5) == 50


def test_wait_time_parses_minutes() -> None:
    result = StageError(kind=ErrorKind.EXECUTOR_ERROR, message="Please wait 2 minutes")

    assert wait_time(result, default_seconds=300, buffer_seconds=60) == 180


def test_wait_time_falls_back_to_default_plus_buffer() -> None:
    result = StageError(kind=ErrorKind.EXECUTOR_ERROR, message="rate limited")

    assert wait_time(result, default_seconds=300, buffer_seconds=60) == 360


def test_backoff_sleeps_for_computed_delay() -> None:
    slept: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    limiter = RateLimiter(default_seconds=10, buffer_seconds=1, sleep=fake_sleep)
    result = StageError(kind=ErrorKind.EXECUTOR_ERROR, message="rate limit")

    delay = asyncio.run(limiter.backoff(result))

    assert delay == 11
    assert slept == [11]
