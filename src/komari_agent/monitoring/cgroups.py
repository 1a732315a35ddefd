"""cgroup detection and accounting readers.

Detects which resource-control interface is active for this process and reads
CPU, memory and swap accounting from it.

Files sourced (v2, unified hierarchy):
- cpu.stat: usage_usec (cumulative CPU time)
- cpu.max: "<quota> <period>" or "max <period>"
- memory.current / memory.max
- memory.swap.current / memory.swap.max

Files sourced (v1, per-controller hierarchies):
- cpuacct.usage: cumulative CPU time in nanoseconds
- cpu.cfs_quota_us / cpu.cfs_period_us
- memory.usage_in_bytes / memory.limit_in_bytes
- memory.memsw.usage_in_bytes / memory.memsw.limit_in_bytes (memory + swap)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from komari_agent.core.constants import CGROUP_V1_UNBOUNDED_THRESHOLD
from komari_agent.core.schemas import CgroupMode, LimitFallback
from komari_agent.monitoring.base import (
    CPU_MAX,
    CPU_PERIOD,
    CPU_QUOTA,
    CPU_STAT,
    CPUACCT_USAGE,
    MEMORY_CURRENT,
    MEMORY_LIMIT,
    MEMORY_MAX,
    MEMORY_USAGE,
    MEMSW_LIMIT,
    MEMSW_USAGE,
    SWAP_CURRENT,
    SWAP_MAX,
    CgroupDescriptor,
    RawCgroupReading,
)
from komari_agent.monitoring.io_utils import parse_int, parse_key_values, path_exists, read_text

logger = logging.getLogger(__name__)

V2_FILES = {
    CPU_STAT: "cpu.stat",
    CPU_MAX: "cpu.max",
    MEMORY_CURRENT: "memory.current",
    MEMORY_MAX: "memory.max",
    SWAP_CURRENT: "memory.swap.current",
    SWAP_MAX: "memory.swap.max",
}

# logical name -> (controller, file name)
V1_FILES = {
    CPUACCT_USAGE: ("cpuacct", "cpuacct.usage"),
    CPU_QUOTA: ("cpu", "cpu.cfs_quota_us"),
    CPU_PERIOD: ("cpu", "cpu.cfs_period_us"),
    MEMORY_USAGE: ("memory", "memory.usage_in_bytes"),
    MEMORY_LIMIT: ("memory", "memory.limit_in_bytes"),
    MEMSW_USAGE: ("memory", "memory.memsw.usage_in_bytes"),
    MEMSW_LIMIT: ("memory", "memory.memsw.limit_in_bytes"),
}


def parse_cgroup_membership(text: str | None) -> dict[str, str]:
    """Parse /proc/<pid>/cgroup into controller -> relative path.

    Format (one line per hierarchy):
        12:memory:/docker/abc123
        4:cpu,cpuacct:/docker/abc123
        0::/system.slice/docker-abc123.scope

    The v2 unified entry (empty controller list) is stored under "".
    """
    result: dict[str, str] = {}
    if not text:
        return result
    for line in text.strip().splitlines():
        parts = line.split(":", 2)
        if len(parts) != 3:
            continue
        controllers = [c for c in parts[1].split(",") if c]
        if not controllers:
            result.setdefault("", parts[2])
        for controller in controllers:
            result[controller] = parts[2]
    return result


class CgroupResolver:
    """Detect the active cgroup interface and locate its accounting files.

    ``resolve()`` never raises: anything that cannot be located is left as a
    None path, and a host without any usable interface yields
    ``CgroupMode.UNAVAILABLE``.
    """

    def __init__(
        self,
        cgroup_root: Path = Path("/sys/fs/cgroup"),
        self_cgroup_file: Path = Path("/proc/self/cgroup"),
    ) -> None:
        self._root = cgroup_root
        self._self_cgroup_file = self_cgroup_file

    async def resolve(self) -> CgroupDescriptor:
        try:
            membership = parse_cgroup_membership(await read_text(self._self_cgroup_file))
            if await path_exists(self._root / "cgroup.controllers"):
                descriptor = await self._resolve_v2(membership)
            else:
                descriptor = await self._resolve_v1(membership)
        except OSError as e:
            logger.warning(f"cgroup detection failed, metrics will use host fallbacks: {e}")
            descriptor = CgroupDescriptor.unavailable()

        found = sum(1 for p in descriptor.paths.values() if p is not None)
        logger.info(f"Detected cgroup mode {descriptor.mode.value} ({found} accounting files)")
        return descriptor

    async def _resolve_v2(self, membership: dict[str, str]) -> CgroupDescriptor:
        base = self._root
        relative = membership.get("", "/").strip("/")
        if relative:
            candidate = self._root / relative
            # Inside a cgroup namespace the own group is mounted at the root instead
            if await path_exists(candidate / "cgroup.controllers"):
                base = candidate
        logger.debug(f"cgroup v2 base directory: {base}")

        paths: dict[str, Path | None] = {}
        for name, filename in V2_FILES.items():
            path = base / filename
            paths[name] = path if await path_exists(path) else None
        return CgroupDescriptor(mode=CgroupMode.V2, paths=paths)

    async def _resolve_v1(self, membership: dict[str, str]) -> CgroupDescriptor:
        paths: dict[str, Path | None] = {}
        for name, (controller, filename) in V1_FILES.items():
            paths[name] = await self._locate_v1_file(controller, filename, membership)

        if all(p is None for p in paths.values()):
            return CgroupDescriptor(mode=CgroupMode.UNAVAILABLE, paths=paths)
        return CgroupDescriptor(mode=CgroupMode.V1, paths=paths)

    async def _locate_v1_file(
        self, controller: str, filename: str, membership: dict[str, str]
    ) -> Path | None:
        if controller not in membership:
            return None
        mount = self._root / controller
        relative = membership[controller].strip("/")
        # Host view uses the membership path; a namespaced container sees itself at the mount root
        for directory in (mount / relative, mount) if relative else (mount,):
            path = directory / filename
            if await path_exists(path):
                return path
        return None


def _memory_fallback(policy: LimitFallback, host_total_bytes: int) -> int:
    return host_total_bytes if policy is LimitFallback.HOST else 0


def parse_cpu_max(text: str | None) -> float | None:
    """Parse cgroup v2 cpu.max into a core count.

    Format:
        max 100000      (unlimited -> None)
        200000 100000   (2.0 cores)
    """
    if not text:
        return None
    parts = text.split()
    if len(parts) < 2 or parts[0] == "max":
        return None
    quota = parse_int(parts[0])
    period = parse_int(parts[1])
    if quota is None or period is None or quota <= 0 or period <= 0:
        return None
    return quota / period


async def read_cgroup_usage(
    descriptor: CgroupDescriptor,
    fallback: LimitFallback,
    host_total_memory: int,
) -> RawCgroupReading:
    """Read CPU, memory and swap accounting for the resolved interface.

    Args:
        descriptor: Resolved cgroup interface
        fallback: Policy for unbounded/unreadable memory limits
        host_total_memory: Host physical memory in bytes

    Returns:
        RawCgroupReading; unreadable values degrade to None/0/fallback
    """
    if descriptor.mode is CgroupMode.V2:
        return await _read_v2(descriptor, fallback, host_total_memory)
    if descriptor.mode is CgroupMode.V1:
        return await _read_v1(descriptor, fallback, host_total_memory)
    return RawCgroupReading(memory_limit_bytes=_memory_fallback(fallback, host_total_memory))


async def _read_v2(
    descriptor: CgroupDescriptor, fallback: LimitFallback, host_total_memory: int
) -> RawCgroupReading:
    cpu_stat, cpu_max, mem_cur, mem_max, swap_cur, swap_max = await asyncio.gather(
        *(read_text(descriptor.path(name)) for name in V2_FILES)
    )

    usage_usec = parse_key_values(cpu_stat).get("usage_usec", 0)

    memory_limit = parse_int(mem_max)  # "max" parses to None
    if memory_limit is None or memory_limit <= 0:
        memory_limit = _memory_fallback(fallback, host_total_memory)

    return RawCgroupReading(
        cpu_usage_seconds=usage_usec / 1e6,
        limit_cores=parse_cpu_max(cpu_max),
        memory_usage_bytes=parse_int(mem_cur),
        memory_limit_bytes=memory_limit,
        swap_usage_bytes=max(0, parse_int(swap_cur) or 0),
        swap_limit_bytes=max(0, parse_int(swap_max) or 0),
    )


async def _read_v1(
    descriptor: CgroupDescriptor, fallback: LimitFallback, host_total_memory: int
) -> RawCgroupReading:
    texts = await asyncio.gather(*(read_text(descriptor.path(name)) for name in V1_FILES))
    values = {name: parse_int(text) for name, text in zip(V1_FILES, texts)}

    limit_cores = None
    quota, period = values[CPU_QUOTA], values[CPU_PERIOD]
    if quota is not None and period is not None and quota > 0 and period > 0:
        limit_cores = quota / period

    memory_usage = values[MEMORY_USAGE]
    raw_limit = values[MEMORY_LIMIT]
    bounded_limit = None
    if raw_limit is not None and 0 < raw_limit < CGROUP_V1_UNBOUNDED_THRESHOLD:
        bounded_limit = raw_limit
    memory_limit = (
        bounded_limit
        if bounded_limit is not None
        else _memory_fallback(fallback, host_total_memory)
    )

    swap_usage = 0
    memsw_usage = values[MEMSW_USAGE]
    if memsw_usage is not None and memory_usage is not None:
        swap_usage = max(0, memsw_usage - memory_usage)

    # memsw.limit is memory + swap; unbounded combined limit means no swap limit to report
    swap_limit = 0
    memsw_limit = values[MEMSW_LIMIT]
    if (
        memsw_limit is not None
        and memsw_limit < CGROUP_V1_UNBOUNDED_THRESHOLD
        and bounded_limit is not None
    ):
        swap_limit = max(0, memsw_limit - bounded_limit)

    return RawCgroupReading(
        cpu_usage_seconds=(values[CPUACCT_USAGE] or 0) / 1e9,
        limit_cores=limit_cores,
        memory_usage_bytes=memory_usage,
        memory_limit_bytes=memory_limit,
        swap_usage_bytes=swap_usage,
        swap_limit_bytes=swap_limit,
    )
