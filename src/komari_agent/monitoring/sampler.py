"""Metrics sampler: one immutable Snapshot per call.

The sampler gathers every subsystem concurrently (cgroup accounting, host
facts, load, disk, network, connections, processes, uptime), derives rates
against the previous call, and folds the results into a Snapshot.

The only state carried between calls is:
- the CgroupDescriptor, resolved on first use and then fixed for the process
- the RateState (cumulative counters of the previous sample)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from komari_agent.core.schemas import (
    ConnectionCounts,
    CPUMetrics,
    LimitFallback,
    Metrics,
    MetricsConfig,
    NetworkMetrics,
    Snapshot,
    SystemInfo,
    UsageTotal,
)
from komari_agent.monitoring.base import (
    CgroupDescriptor,
    DiskUsage,
    HostFacts,
    ProcessCounts,
    RateState,
    Rates,
    RawCgroupReading,
)
from komari_agent.monitoring.cgroups import CgroupResolver, read_cgroup_usage
from komari_agent.monitoring.host import (
    count_processes,
    host_cpu_count,
    host_total_memory,
    read_connection_counts,
    read_disk_usage,
    read_host_facts,
    read_load_average,
    read_net_dev,
)
from komari_agent.monitoring.io_utils import compute_cpu_percent, compute_rate
from komari_agent.monitoring.uptime import UptimeResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_rates(
    previous: RateState | None,
    current: RateState,
    limit_cores: float,
    host_cores: int,
) -> Rates:
    """Derive CPU and network rates from two consecutive cumulative samples.

    Args:
        previous: State of the previous sample, None on the first call
        current: State of this sample
        limit_cores: Cores the container may use (CPU % of limit denominator)
        host_cores: Host logical cores (CPU % of host denominator)

    Returns:
        Rates; all None on the first call, all 0.0 when elapsed time is not
        positive (clock anomaly), otherwise floored at 0 (counter resets)
    """
    if previous is None:
        return Rates()

    elapsed = current.at - previous.at
    if elapsed <= 0:
        logger.debug(f"Non-positive sampling interval ({elapsed:.6f}s), reporting zero rates")
        return Rates(
            cpu_percent_of_limit=0.0,
            cpu_percent_of_host=0.0,
            rx_bps=0.0,
            tx_bps=0.0,
        )

    cpu_delta = current.cpu_seconds - previous.cpu_seconds
    return Rates(
        cpu_percent_of_limit=compute_cpu_percent(cpu_delta, elapsed, limit_cores),
        cpu_percent_of_host=compute_cpu_percent(cpu_delta, elapsed, host_cores),
        rx_bps=compute_rate(current.rx_bytes - previous.rx_bytes, elapsed),
        tx_bps=compute_rate(current.tx_bytes - previous.tx_bytes, elapsed),
    )


class MetricsSampler:
    """Produce Snapshots of the container's resource consumption.

    Example:
        ```python
        sampler = MetricsSampler(MetricsConfig())
        first = await sampler.snapshot()   # rates are None
        await asyncio.sleep(1)
        second = await sampler.snapshot()  # rates over the last second
        ```

    Samples must not be taken concurrently with each other; ``system_info()``
    does not touch the rate state and may overlap with ``snapshot()``.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        *,
        descriptor: CgroupDescriptor | None = None,
        cgroup_resolver: CgroupResolver | None = None,
        uptime_resolver: UptimeResolver | None = None,
        proc_root: Path = Path("/proc"),
        os_release_path: Path = Path("/etc/os-release"),
        clock: Callable[[], float] = time.monotonic,
        host_memory: Callable[[], int] = host_total_memory,
    ) -> None:
        """Initialize the sampler.

        Args:
            config: Sampler configuration (defaults to MetricsConfig())
            descriptor: Pre-resolved cgroup interface; skips detection when given
            cgroup_resolver: Resolver used on first sample when no descriptor is given
            uptime_resolver: Uptime strategy provider
            proc_root: procfs mount (tests point this at a fake tree)
            os_release_path: OS release metadata file
            clock: Monotonic clock used for rate intervals
            host_memory: Returns host physical memory in bytes
        """
        self.config = config or MetricsConfig()
        self._descriptor = descriptor
        self._descriptor_lock = asyncio.Lock()
        self._resolver = cgroup_resolver or CgroupResolver()
        self._uptime = uptime_resolver or UptimeResolver(proc_root=proc_root)
        self._proc = proc_root
        self._os_release_path = os_release_path
        self._clock = clock
        self._host_memory = host_memory
        self._rate_state: RateState | None = None

    @property
    def rate_state(self) -> RateState | None:
        return self._rate_state

    async def get_descriptor(self) -> CgroupDescriptor:
        """Return the cgroup interface, resolving it on first use."""
        if self._descriptor is None:
            async with self._descriptor_lock:
                if self._descriptor is None:
                    self._descriptor = await self._resolver.resolve()
        return self._descriptor

    async def snapshot(self) -> Snapshot:
        """Take one sample and return it as an immutable Snapshot.

        Each subsystem degrades independently: a failing reader yields empty
        values for its own fields and never aborts the snapshot.
        """
        descriptor = await self.get_descriptor()
        cfg = self.config
        host_memory = self._host_memory()
        at = self._clock()

        facts, cgroup, disk, interfaces, connections, processes, uptime = await asyncio.gather(
            self._guarded("host facts", self._read_facts(), None),
            self._guarded(
                "cgroup",
                read_cgroup_usage(descriptor, cfg.memory_limit_fallback, host_memory),
                None,
            ),
            self._guarded(
                "disk",
                read_disk_usage(cfg.disk_path, cfg.subprocess_timeout_seconds),
                DiskUsage(),
            ),
            self._guarded("network", read_net_dev(self._proc, cfg.exclude_loopback), {}),
            self._guarded("connections", read_connection_counts(self._proc), ConnectionCounts()),
            self._guarded(
                "processes",
                count_processes(self._proc, cfg.process_scan_concurrency),
                ProcessCounts(),
            ),
            self._guarded("uptime", self._uptime.resolve(cfg.uptime_policy), 0.0),
        )
        load = read_load_average()

        if cgroup is None:
            cgroup = self._fallback_cgroup_reading(host_memory)
        host_cores = facts.cpu_cores if facts is not None else host_cpu_count()

        total_rx = sum(c.rx_bytes for c in interfaces.values())
        total_tx = sum(c.tx_bytes for c in interfaces.values())
        state = RateState(
            at=at,
            cpu_seconds=cgroup.cpu_usage_seconds,
            rx_bytes=total_rx,
            tx_bytes=total_tx,
        )
        rates = compute_rates(
            self._rate_state,
            state,
            limit_cores=cgroup.limit_cores or host_cores,
            host_cores=host_cores,
        )
        self._rate_state = state

        system = self._build_system_info(facts, cgroup, disk, descriptor)
        metrics = Metrics(
            cpu=CPUMetrics(
                usage_percent_of_limit=rates.cpu_percent_of_limit,
                usage_percent_of_host=rates.cpu_percent_of_host,
                limit_cores=self._effective_limit_cores(cgroup.limit_cores, host_cores),
            ),
            ram=UsageTotal(total=cgroup.memory_limit_bytes, used=cgroup.memory_usage_bytes),
            swap=UsageTotal(total=cgroup.swap_limit_bytes, used=cgroup.swap_usage_bytes),
            load=load,
            disk=UsageTotal(total=disk.total_bytes, used=disk.used_bytes),
            network=NetworkMetrics(
                up_bps=rates.tx_bps,
                down_bps=rates.rx_bps,
                total_up_bytes=total_tx,
                total_down_bytes=total_rx,
                by_interface=interfaces,
            ),
            connections=connections,
            process=processes.processes,
            threads=processes.threads,
            uptime_seconds=max(0.0, uptime),
        )
        return Snapshot(at=datetime.now(UTC), system=system, metrics=metrics)

    async def system_info(self) -> SystemInfo:
        """Collect the slowly-changing identity facts (no rates, no rate state update)."""
        descriptor = await self.get_descriptor()
        cfg = self.config
        host_memory = self._host_memory()

        facts, cgroup, disk = await asyncio.gather(
            self._guarded("host facts", self._read_facts(), None),
            self._guarded(
                "cgroup",
                read_cgroup_usage(descriptor, cfg.memory_limit_fallback, host_memory),
                None,
            ),
            self._guarded(
                "disk",
                read_disk_usage(cfg.disk_path, cfg.subprocess_timeout_seconds),
                DiskUsage(),
            ),
        )
        if cgroup is None:
            cgroup = self._fallback_cgroup_reading(host_memory)
        return self._build_system_info(facts, cgroup, disk, descriptor)

    async def _read_facts(self) -> HostFacts:
        return await read_host_facts(
            self._proc, self._os_release_path, self.config.exclude_loopback
        )

    async def _guarded(self, label: str, aw: Awaitable[T], default: T) -> T:
        try:
            return await aw
        except Exception as e:
            logger.warning(f"Error reading {label} metrics, reporting defaults: {e}")
            logger.debug(f"{label} reader traceback", exc_info=True)
            return default

    def _fallback_cgroup_reading(self, host_memory: int) -> RawCgroupReading:
        if self.config.memory_limit_fallback is LimitFallback.HOST:
            return RawCgroupReading(memory_limit_bytes=host_memory)
        return RawCgroupReading(memory_limit_bytes=0)

    def _effective_limit_cores(self, limit_cores: float | None, host_cores: int) -> float:
        if limit_cores is not None:
            return limit_cores
        if self.config.memory_limit_fallback is LimitFallback.HOST:
            return float(host_cores)
        return 0.0

    def _build_system_info(
        self,
        facts: HostFacts | None,
        cgroup: RawCgroupReading,
        disk: DiskUsage,
        descriptor: CgroupDescriptor,
    ) -> SystemInfo:
        if facts is None:
            facts = HostFacts(
                hostname="unknown",
                platform="unknown",
                kernel="",
                arch="",
                cpu_cores=host_cpu_count(),
            )
        return SystemInfo(
            hostname=facts.hostname,
            platform=facts.platform,
            kernel=facts.kernel,
            arch=facts.arch,
            cpu_model=facts.cpu_model,
            cpu_cores=facts.cpu_cores,
            os_release=facts.os_release,
            ips=facts.ips,
            disk_total_bytes=disk.total_bytes,
            mem_limit_bytes=cgroup.memory_limit_bytes,
            swap_limit_bytes=cgroup.swap_limit_bytes,
            cgroup_mode=descriptor.mode,
        )

