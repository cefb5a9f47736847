"""Iteration caps for refinement loops and task implementation retries."""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

SIZE_CAPS = {"S": 1, "M": 2, "L": 3}
DEFAULT_SIZE_CAP = 3

# (exclusive upper bound on changed lines, cap)
DIFF_CAP_BANDS = ((20, 1), (100, 2), (300, 3))
LARGE_DIFF_CAP = 5

SIZE_MARKER_PATTERN = re.compile(r"\*\*\(\s*([A-Za-z]+)\s*\)\*\*|\(\s*([SMLsml])\s*\)")


def extract_size_label(description: str) -> str | None:
    match = SIZE_MARKER_PATTERN.search(description)
    if not match:
        return None
    label = match.group(1) or match.group(2)
    return label.strip().upper()


def size_cap(label: str | None) -> int:
    if label is None:
        return DEFAULT_SIZE_CAP
    return SIZE_CAPS.get(label.strip().upper(), DEFAULT_SIZE_CAP)


def diff_cap(diff_line_count: int) -> int:
    for upper_bound, cap in DIFF_CAP_BANDS:
        if diff_line_count < upper_bound:
            return cap
    return LARGE_DIFF_CAP


def max_iterations(size_label: str | None, diff_line_count: int) -> int:
    """Quality-loop cap: the stricter of the size label and the diff magnitude."""
    return min(size_cap(size_label), diff_cap(diff_line_count))


def get_max_review_attempts(size_label: str | None) -> int:
    """Implementation attempts allowed for one task, by size label alone."""
    normalized = size_label.strip().upper() if size_label else None
    if normalized not in SIZE_CAPS:
        logger.warning(
            "Unrecognised task size label %r; allowing %d implementation attempts",
            size_label,
            DEFAULT_SIZE_CAP,
        )
        return DEFAULT_SIZE_CAP
    return SIZE_CAPS[normalized]
