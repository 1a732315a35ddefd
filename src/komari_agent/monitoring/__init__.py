"""Monitoring module - container resource sampling.

Components:
- CgroupResolver: detects cgroup v1/v2 and locates accounting files
- UptimeResolver: container uptime per UptimePolicy
- MetricsSampler: gathers all subsystems into an immutable Snapshot

Shared utilities:
- io_utils: non-blocking file reads and rate helpers
"""

from __future__ import annotations

from komari_agent.monitoring.base import (
    CgroupDescriptor,
    RateState,
    Rates,
    RawCgroupReading,
)
from komari_agent.monitoring.cgroups import CgroupResolver, read_cgroup_usage
from komari_agent.monitoring.io_utils import clamp, compute_cpu_percent, compute_rate
from komari_agent.monitoring.sampler import MetricsSampler, compute_rates
from komari_agent.monitoring.uptime import UptimeResolver

__all__ = [
    "CgroupDescriptor",
    "CgroupResolver",
    "MetricsSampler",
    "RateState",
    "Rates",
    "RawCgroupReading",
    "UptimeResolver",
    "clamp",
    "compute_cpu_percent",
    "compute_rate",
    "compute_rates",
    "read_cgroup_usage",
]
