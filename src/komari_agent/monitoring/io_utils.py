"""Shared I/O and arithmetic helpers for the metrics readers.

Functions:
    read_text: Read a kernel file without blocking the event loop
    path_exists: Existence check without blocking the event loop
    parse_int: Lenient integer parsing of kernel values
    parse_key_values: Parse "key value" lines (cpu.stat style)
    compute_rate: Delta over elapsed seconds, floored at 0
    compute_cpu_percent: CPU-seconds delta as a percentage of N cores
    clamp: Bound a value into [low, high]
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _read_text_sync(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return None


async def read_text(path: Path | None) -> str | None:
    """Read a file's contents, returning None if it is missing or unreadable.

    Args:
        path: File to read; None is treated as "metric unavailable"

    Returns:
        File contents, or None
    """
    if path is None:
        return None
    return await asyncio.to_thread(_read_text_sync, path)


async def path_exists(path: Path) -> bool:
    return await asyncio.to_thread(path.exists)


def parse_int(value: str | None) -> int | None:
    """Parse a kernel integer value.

    Args:
        value: Raw text (surrounding whitespace allowed)

    Returns:
        The integer, or None for missing/non-numeric input (e.g. "max")
    """
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_key_values(text: str | None) -> dict[str, int]:
    """Parse "key value" lines such as cgroup v2 cpu.stat.

    Format:
        usage_usec 123456
        user_usec 100000
    """
    result: dict[str, int] = {}
    if not text:
        return result
    for line in text.strip().splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        value = parse_int(parts[1])
        if value is not None:
            result[parts[0]] = value
    return result


def compute_rate(delta: float, elapsed_seconds: float) -> float:
    """Compute a per-second rate from a counter delta.

    Args:
        delta: Counter difference between two samples
        elapsed_seconds: Wall time between the samples

    Returns:
        Rate per second, 0.0 if elapsed is not positive; never negative
    """
    if elapsed_seconds <= 0:
        return 0.0
    return max(0.0, delta / elapsed_seconds)


def compute_cpu_percent(cpu_seconds_delta: float, elapsed_seconds: float, cores: float) -> float:
    """Compute CPU usage as a percentage of ``cores`` over the interval.

    Returns:
        Percentage (can exceed 100 for a limit below actual usage), 0.0 when
        elapsed or cores is not positive; never negative
    """
    if cores <= 0:
        return 0.0
    return compute_rate(cpu_seconds_delta, elapsed_seconds) / cores * 100.0


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))
