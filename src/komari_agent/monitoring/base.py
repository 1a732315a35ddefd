"""Internal data types shared by the resolvers and the metrics sampler.

These are plain dataclasses rather than pydantic models: they never leave the
process and are rebuilt on every sample (except CgroupDescriptor, which is
resolved once).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from komari_agent.core.schemas import CgroupMode, IPAddresses, OSRelease

# Logical cgroup file names (keys of CgroupDescriptor.paths)
# v2
CPU_STAT = "cpu_stat"
CPU_MAX = "cpu_max"
MEMORY_CURRENT = "memory_current"
MEMORY_MAX = "memory_max"
SWAP_CURRENT = "swap_current"
SWAP_MAX = "swap_max"
# v1
CPUACCT_USAGE = "cpuacct_usage"
CPU_QUOTA = "cpu_quota"
CPU_PERIOD = "cpu_period"
MEMORY_USAGE = "memory_usage"
MEMORY_LIMIT = "memory_limit"
MEMSW_USAGE = "memsw_usage"
MEMSW_LIMIT = "memsw_limit"


@dataclass(frozen=True)
class CgroupDescriptor:
    """Resolved resource-control interface.

    ``paths`` maps logical metric names to absolute file paths. Individual
    entries may be None when the file could not be located.
    """

    mode: CgroupMode
    paths: Mapping[str, Path | None] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "paths", MappingProxyType(dict(self.paths)))

    def path(self, name: str) -> Path | None:
        return self.paths.get(name)

    @classmethod
    def unavailable(cls) -> CgroupDescriptor:
        return cls(mode=CgroupMode.UNAVAILABLE)


@dataclass
class RawCgroupReading:
    """CPU/memory/swap values read from the cgroup files for one sample.

    Limits are already resolved against the fallback policy. ``limit_cores``
    is None when no CPU quota is set.
    """

    cpu_usage_seconds: float = 0.0
    limit_cores: float | None = None
    memory_usage_bytes: int | None = None
    memory_limit_bytes: int | None = None
    swap_usage_bytes: int = 0
    swap_limit_bytes: int = 0


@dataclass(frozen=True)
class RateState:
    """Cumulative counters from the previous sample."""

    at: float  # Monotonic seconds
    cpu_seconds: float
    rx_bytes: int
    tx_bytes: int


@dataclass(frozen=True)
class Rates:
    """Rates derived from two consecutive samples (None on the first sample)."""

    cpu_percent_of_limit: float | None = None
    cpu_percent_of_host: float | None = None
    rx_bps: float | None = None
    tx_bps: float | None = None


@dataclass(frozen=True)
class ProcessCounts:
    processes: int = 0
    threads: int = 0


@dataclass(frozen=True)
class DiskUsage:
    total_bytes: int | None = None
    used_bytes: int | None = None


@dataclass(frozen=True)
class HostFacts:
    """Identity facts about the host, re-read on every sample."""

    hostname: str
    platform: str
    kernel: str
    arch: str
    cpu_cores: int
    cpu_model: str | None = None
    os_release: OSRelease | None = None
    ips: IPAddresses = field(default_factory=IPAddresses)
