from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable

from issueflow.stages import (
    StageError,
    StageResult,
    StageSuccess,
    executor_flagged_error,
    result_text,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERN = re.compile(
    r"rate[\s_-]?limit|too many requests|usage limit|hit your limit|quota exceeded|\b429\b",
    re.IGNORECASE,
)
RETRY_AFTER_PATTERN = re.compile(r"retry[\s_-]?after\D{0,5}(\d+)", re.IGNORECASE)
WAIT_MINUTES_PATTERN = re.compile(r"wait\s+(\d+)\s+min(?:ute)?s?\b", re.IGNORECASE)

DEFAULT_WAIT_SECONDS = 300.0
BUFFER_SECONDS = 60.0


def _structured_status(result: StageResult) -> str | None:
    if isinstance(result, StageSuccess):
        status = result.payload.get("status")
    else:
        structured = result.envelope.get("structured_output")
        status = structured.get("status") if isinstance(structured, dict) else None
    return status.lower() if isinstance(status, str) else None


def is_rate_limited(result: StageResult) -> bool:
    if isinstance(result, StageError) and result.timed_out:
        return False

    status = _structured_status(result)
    if status == "success":
        return False
    if status == "rate_limit":
        return True

    # Stage output may legitimately discuss rate limiting, so text heuristics
    # only apply to responses the executor itself marked as failed.
    flagged = executor_flagged_error(result.envelope) or isinstance(result, StageError)
    if not flagged:
        return False
    return bool(RATE_LIMIT_PATTERN.search(result_text(result)))


def wait_time(
    result: StageResult,
    *,
    default_seconds: float = DEFAULT_WAIT_SECONDS,
    buffer_seconds: float = BUFFER_SECONDS,
) -> float:
    text = result_text(result)
    retry_after = result.envelope.get("retry_after")
    if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
        base = float(retry_after)
    elif match := RETRY_AFTER_PATTERN.search(text):
        base = float(match.group(1))
    elif match := WAIT_MINUTES_PATTERN.search(text):
        base = float(match.group(1)) * 60.0
    else:
        base = default_seconds
    return base + buffer_seconds


class RateLimiter:
    def __init__(
        self,
        *,
        default_seconds: float = DEFAULT_WAIT_SECONDS,
        buffer_seconds: float = BUFFER_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.default_seconds = default_seconds
        self.buffer_seconds = buffer_seconds
        self._sleep = sleep

    def is_rate_limited(self, result: StageResult) -> bool:
        return is_rate_limited(result)

    def wait_time(self, result: StageResult) -> float:
        return wait_time(
            result,
            default_seconds=self.default_seconds,
            buffer_seconds=self.buffer_seconds,
        )

    async def backoff(self, result: StageResult) -> float:
        delay = self.wait_time(result)
        logger.warning("Executor rate limited; suspending for %.0fs", delay)
        await self._sleep(delay)
        return delay
