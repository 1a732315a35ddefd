"""Container uptime resolution.

Container runtimes differ in whether the container gets its own PID namespace.
When it does, PID 1 is the container's entrypoint and its start time is the
container start time. When it does not, PID 1 is the host's init and using it
would report host uptime, so the ``auto`` policy checks for that first.

Strategies (one per UptimePolicy):
- process: wall-clock time since the agent process started
- pid1: time since PID 1 started (from /proc/1/stat starttime and /proc/stat btime)
- auto: process if PID 1 looks like the host's init, otherwise pid1
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

import psutil

from komari_agent.core.constants import DEFAULT_CLK_TCK
from komari_agent.core.schemas import UptimePolicy
from komari_agent.monitoring.io_utils import read_text

logger = logging.getLogger(__name__)

# Field 22 of /proc/<pid>/stat, counted from the state field (field 3) after the comm ")"
_STARTTIME_INDEX = 22 - 3

_BTIME_RE = re.compile(r"^btime\s+(\d+)\s*$", re.MULTILINE)


def get_clock_ticks() -> int:
    """Kernel clock ticks per second (USER_HZ), used by /proc/<pid>/stat."""
    try:
        ticks = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError, AttributeError):
        return DEFAULT_CLK_TCK
    return ticks if ticks > 0 else DEFAULT_CLK_TCK


def parse_start_ticks(stat_text: str) -> int | None:
    """Extract the starttime field from /proc/<pid>/stat.

    The comm field may contain spaces and parentheses, so parsing starts
    after the last ")".
    """
    rparen = stat_text.rfind(")")
    if rparen < 0:
        return None
    fields = stat_text[rparen + 1 :].split()
    if len(fields) <= _STARTTIME_INDEX:
        return None
    try:
        return int(fields[_STARTTIME_INDEX])
    except ValueError:
        return None


def parse_boot_time(proc_stat_text: str) -> int | None:
    """Extract btime (boot time, epoch seconds) from /proc/stat."""
    match = _BTIME_RE.search(proc_stat_text)
    return int(match.group(1)) if match else None


def looks_like_host_membership(cgroup_text: str | None) -> bool:
    """Check whether a /proc/<pid>/cgroup record only contains root paths.

    Host init sits at the root of every hierarchy ("0::/" on v2, "N:ctrl:/" on
    v1); container processes usually show /docker/<id>, /kubepods/... etc.
    This is a best-effort heuristic: unusual layouts (e.g. rootless runtimes
    with a private cgroup namespace) can be misclassified.
    """
    if not cgroup_text:
        return False
    lines = [line.strip() for line in cgroup_text.strip().splitlines() if line.strip()]
    if not lines:
        return False
    return all(line.endswith(":/") for line in lines)


def _default_process_start() -> float:
    try:
        return psutil.Process(os.getpid()).create_time()
    except psutil.Error:
        return time.time()


class UptimeResolver:
    """Resolve container uptime in seconds according to an UptimePolicy.

    ``resolve()`` never raises and never returns a negative value.
    """

    def __init__(
        self,
        proc_root: Path = Path("/proc"),
        clock: Callable[[], float] = time.time,
        process_start: float | None = None,
        clock_ticks: int | None = None,
    ) -> None:
        self._proc = proc_root
        self._clock = clock
        if process_start is None:
            process_start = _default_process_start()
        self._process_start = process_start
        self._clock_ticks = clock_ticks or get_clock_ticks()
        self._strategies: dict[UptimePolicy, Callable[[], Awaitable[float]]] = {
            UptimePolicy.PROCESS: self._process_strategy,
            UptimePolicy.PID1: self._pid1_strategy,
            UptimePolicy.AUTO: self._auto_strategy,
        }

    async def resolve(self, policy: UptimePolicy) -> float:
        return await self._strategies[policy]()

    def process_uptime(self) -> float:
        return max(0.0, self._clock() - self._process_start)

    async def pid1_uptime(self) -> float | None:
        """Seconds since PID 1 started, or None if the records are unreadable/malformed."""
        stat1, proc_stat = await asyncio.gather(
            read_text(self._proc / "1" / "stat"),
            read_text(self._proc / "stat"),
        )
        if not stat1 or not proc_stat:
            logger.debug("PID 1 uptime unavailable: /proc/1/stat or /proc/stat unreadable")
            return None

        start_ticks = parse_start_ticks(stat1)
        boot_time = parse_boot_time(proc_stat)
        if start_ticks is None or boot_time is None:
            logger.debug("PID 1 uptime unavailable: malformed starttime or btime")
            return None

        started_at = boot_time + start_ticks / self._clock_ticks
        return max(0.0, self._clock() - started_at)

    async def pid1_is_host_init(self) -> bool:
        return looks_like_host_membership(await read_text(self._proc / "1" / "cgroup"))

    async def _process_strategy(self) -> float:
        return self.process_uptime()

    async def _pid1_strategy(self) -> float:
        uptime = await self.pid1_uptime()
        return uptime if uptime is not None else self.process_uptime()

    async def _auto_strategy(self) -> float:
        if await self.pid1_is_host_init():
            logger.debug("PID 1 looks like host init (shared PID namespace), using process uptime")
            return self.process_uptime()
        return await self._pid1_strategy()
