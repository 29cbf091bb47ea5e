"""
Small helpers shared by the sync and ingestion code.
"""

import re
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

_SOURCE_TYPE_PATTERN = re.compile(r"egr|lwc", re.IGNORECASE)


def format_bytes(num_bytes: float) -> str:
    """Format a byte count using B, KB, MB, GB or TB."""
    if num_bytes is None or num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{value:.0f} {units[i]}" if i == 0 else f"{value:.2f} {units[i]}"


def format_duration(seconds: float) -> str:
    """Format a duration as ms, seconds, or minutes and seconds."""
    if seconds is None or seconds < 0:
        return "0ms"
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, rem = divmod(seconds, 60)
    return f"{int(minutes)}m {rem:.1f}s"


def format_rate(num_bytes: float, seconds: float) -> str:
    """Format a transfer rate such as ``1.50 MB/s``."""
    if seconds <= 0:
        return "n/a"
    return f"{format_bytes(num_bytes / seconds)}/s"


def source_type_from_file_name(file_name: str) -> Optional[str]:
    """Extract the enquiry source type (EGR or LWC) from a file name.

    Args:
        file_name: Name of the payload file

    Returns:
        Optional[str]: Upper-cased source type, or None if the name has none
    """
    if not file_name:
        return None
    match = _SOURCE_TYPE_PATTERN.search(file_name)
    return match.group(0).upper() if match else None


def run_with_concurrency_limit(
    items: Sequence[T], limit: int, func: Callable[[T], R]
) -> List[R]:
    """Run ``func`` over ``items`` with at most ``limit`` calls in flight.

    Results are returned in the order of ``items`` regardless of which
    call finishes first. An exception raised by ``func`` propagates once
    all submitted work has settled.

    Args:
        items: Units of work
        limit: Maximum number of concurrent calls
        func: Callable applied to each item

    Returns:
        List[R]: One result per item, in input order
    """
    if limit < 1:
        raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
    if not items:
        return []

    with ThreadPoolExecutor(max_workers=min(limit, len(items))) as executor:
        futures = [executor.submit(func, item) for item in items]
        return [future.result() for future in futures]
