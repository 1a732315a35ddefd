"""Tests for MetricsSampler and rate derivation."""

import asyncio

import pytest
from pydantic import ValidationError

from komari_agent.core.schemas import CgroupMode, LimitFallback, MetricsConfig, UptimePolicy
from komari_agent.monitoring import sampler as sampler_module
from komari_agent.monitoring.base import CgroupDescriptor, DiskUsage, RateState
from komari_agent.monitoring.cgroups import V2_FILES
from komari_agent.monitoring.sampler import MetricsSampler, compute_rates
from komari_agent.monitoring.uptime import UptimeResolver
from komari_agent.reporting.payloads import build_basic_info

from conftest import write

HOST_MEMORY = 16 * 1024**3


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingResolver:
    def __init__(self, descriptor: CgroupDescriptor) -> None:
        self.descriptor = descriptor
        self.calls = 0

    async def resolve(self) -> CgroupDescriptor:
        self.calls += 1
        return self.descriptor


@pytest.fixture(autouse=True)
def no_df(monkeypatch):
    async def fake_disk_usage(path, timeout=2.0):
        return DiskUsage(total_bytes=100 * 1024**3, used_bytes=40 * 1024**3)

    monkeypatch.setattr(sampler_module, "read_disk_usage", fake_disk_usage)


def v2_descriptor(root, values):
    paths = {}
    for name, filename in V2_FILES.items():
        paths[name] = write(root / filename, values[filename]) if filename in values else None
    return CgroupDescriptor(mode=CgroupMode.V2, paths=paths)


def make_sampler(fake_proc, descriptor, clock, **config):
    uptime = UptimeResolver(
        proc_root=fake_proc.root, clock=lambda: 1000.0, process_start=900.0, clock_ticks=100
    )
    return MetricsSampler(
        MetricsConfig(uptime_policy=UptimePolicy.PROCESS, **config),
        descriptor=descriptor,
        uptime_resolver=uptime,
        proc_root=fake_proc.root,
        os_release_path=fake_proc.root / "os-release",
        clock=clock,
        host_memory=lambda: HOST_MEMORY,
    )


class TestComputeRates:
    """Tests for rate derivation between two cumulative samples."""

    def test_first_sample_has_no_rates(self) -> None:
        """Test that the first snapshot has no rates."""
        state = RateState(at=1.0, cpu_seconds=5, rx_bytes=10, tx_bytes=10)
        rates = compute_rates(None, state, limit_cores=2, host_cores=4)
        assert rates.cpu_percent_of_limit is None
        assert rates.cpu_percent_of_host is None
        assert rates.rx_bps is None
        assert rates.tx_bps is None

    def test_rates_over_one_second(self) -> None:
        """Test rates derived over a one second interval."""
        prev = RateState(at=10.0, cpu_seconds=1.0, rx_bytes=1000, tx_bytes=500)
        cur = RateState(at=11.0, cpu_seconds=1.5, rx_bytes=3000, tx_bytes=1500)
        rates = compute_rates(prev, cur, limit_cores=2.0, host_cores=4)

        assert rates.rx_bps == pytest.approx(2000.0)
        assert rates.tx_bps == pytest.approx(1000.0)
        assert rates.cpu_percent_of_limit == pytest.approx(25.0)
        assert rates.cpu_percent_of_host == pytest.approx(12.5)

    @pytest.mark.parametrize("elapsed", [0.0, -1.0])
    def test_non_positive_interval_gives_zero(self, elapsed) -> None:
        """Test that a non-positive interval gives zero rates."""
        prev = RateState(at=10.0, cpu_seconds=1.0, rx_bytes=1000, tx_bytes=500)
        cur = RateState(at=10.0 + elapsed, cpu_seconds=2.0, rx_bytes=5000, tx_bytes=5000)
        rates = compute_rates(prev, cur, limit_cores=1.0, host_cores=1)

        assert rates.cpu_percent_of_limit == 0.0
        assert rates.cpu_percent_of_host == 0.0
        assert rates.rx_bps == 0.0
        assert rates.tx_bps == 0.0

    def test_counter_reset_floors_at_zero(self) -> None:
        """Test that counter resets never give negative rates."""
        prev = RateState(at=10.0, cpu_seconds=5.0, rx_bytes=9000, tx_bytes=9000)
        cur = RateState(at=12.0, cpu_seconds=1.0, rx_bytes=100, tx_bytes=100)
        rates = compute_rates(prev, cur, limit_cores=1.0, host_cores=1)

        assert rates.rx_bps == 0.0
        assert rates.cpu_percent_of_limit == 0.0


class TestMetricsSampler:
    """End-to-end sampling against fake procfs and cgroup trees."""

    def test_network_rate_between_snapshots(self, fake_proc, tmp_path) -> None:
        """Test network rates between two snapshots."""
        clock = FakeClock()
        descriptor = v2_descriptor(tmp_path / "cg", {"memory.max": "max\n"})
        sampler = make_sampler(fake_proc, descriptor, clock)

        fake_proc.net_dev({"lo": (50, 50), "eth0": (1000, 400)})
        first = asyncio.run(sampler.snapshot())
        assert first.metrics.network.down_bps is None
        assert first.metrics.cpu.usage_percent_of_limit is None
        assert first.metrics.network.total_down_bytes == 1000

        clock.advance(1.0)
        fake_proc.net_dev({"lo": (90_000, 90_000), "eth0": (3000, 900)})
        second = asyncio.run(sampler.snapshot())

        assert second.metrics.network.down_bps == pytest.approx(2000.0)
        assert second.metrics.network.up_bps == pytest.approx(500.0)
        assert "lo" not in second.metrics.network.by_interface

    def test_loopback_included_when_configured(self, fake_proc, tmp_path) -> None:
        """Test that loopback traffic is counted when configured."""
        fake_proc.net_dev({"lo": (50, 60), "eth0": (1000, 400)})
        sampler = make_sampler(
            fake_proc, CgroupDescriptor.unavailable(), FakeClock(), exclude_loopback=False
        )
        snap = asyncio.run(sampler.snapshot())

        assert snap.metrics.network.total_down_bytes == 1050
        assert snap.metrics.network.total_up_bytes == 460

    def test_cpu_rate_against_limit(self, fake_proc, tmp_path) -> None:
        """Test CPU percent against the cgroup limit and host cores."""
        clock = FakeClock()
        cg = tmp_path / "cg"
        descriptor = v2_descriptor(
            cg, {"cpu.stat": "usage_usec 1000000\n", "cpu.max": "50000 100000\n"}
        )
        sampler = make_sampler(fake_proc, descriptor, clock)

        asyncio.run(sampler.snapshot())
        clock.advance(2.0)
        write(cg / "cpu.stat", "usage_usec 1500000\n")
        snap = asyncio.run(sampler.snapshot())

        # 0.5 CPU-seconds over 2s against a 0.5 core limit
        assert snap.metrics.cpu.usage_percent_of_limit == pytest.approx(50.0)
        assert snap.metrics.cpu.limit_cores == pytest.approx(0.5)

    @pytest.mark.parametrize(
        ("fallback", "expected"),
        [(LimitFallback.HOST, HOST_MEMORY), (LimitFallback.ZERO, 0)],
    )
    def test_unbounded_memory_fallback(self, fake_proc, tmp_path, fallback, expected) -> None:
        """Test memory totals under each fallback when memory is unbounded."""
        descriptor = v2_descriptor(
            tmp_path / "cg", {"memory.max": "max\n", "memory.current": "1048576\n"}
        )
        sampler = make_sampler(fake_proc, descriptor, FakeClock(), memory_limit_fallback=fallback)

        snap = asyncio.run(sampler.snapshot())
        assert snap.metrics.ram.total == expected
        assert snap.metrics.ram.used == 1048576

        system = asyncio.run(sampler.system_info())
        assert build_basic_info(system, "test").mem_total == expected

    def test_unavailable_cgroup_still_completes(self, fake_proc) -> None:
        """Test that a snapshot completes without cgroups."""
        fake_proc.process(1, threads=4)
        fake_proc.process(7, threads=2)
        fake_proc.socket_table("tcp", 2)
        sampler = make_sampler(fake_proc, CgroupDescriptor.unavailable(), FakeClock())

        snap = asyncio.run(sampler.snapshot())

        assert snap.system.cgroup_mode is CgroupMode.UNAVAILABLE
        assert snap.metrics.ram.total == HOST_MEMORY
        assert snap.metrics.cpu.limit_cores == float(snap.system.cpu_cores)
        assert snap.metrics.process == 2
        assert snap.metrics.threads == 6
        assert snap.metrics.connections.tcp == 2
        assert snap.metrics.uptime_seconds == pytest.approx(100.0)
        assert snap.metrics.disk.total == 100 * 1024**3

    def test_failing_reader_degrades_only_its_fields(self, fake_proc, monkeypatch) -> None:
        """Test that one failing reader only empties its own fields."""
        fake_proc.process(1, threads=1)

        async def broken(proc_root):
            raise RuntimeError("boom")

        monkeypatch.setattr(sampler_module, "read_connection_counts", broken)
        sampler = make_sampler(fake_proc, CgroupDescriptor.unavailable(), FakeClock())

        snap = asyncio.run(sampler.snapshot())
        assert snap.metrics.connections.tcp == 0
        assert snap.metrics.process == 1

    def test_descriptor_resolved_once(self, fake_proc) -> None:
        """Test that the cgroup descriptor is resolved once."""
        resolver = CountingResolver(CgroupDescriptor.unavailable())
        sampler = MetricsSampler(
            MetricsConfig(uptime_policy=UptimePolicy.PROCESS),
            cgroup_resolver=resolver,
            proc_root=fake_proc.root,
            host_memory=lambda: HOST_MEMORY,
        )

        async def sample_three_times():
            await sampler.snapshot()
            await sampler.snapshot()
            await sampler.system_info()

        asyncio.run(sample_three_times())
        assert resolver.calls == 1

    def test_system_info_does_not_touch_rate_state(self, fake_proc) -> None:
        """Test that system_info leaves the rate state alone."""
        sampler = make_sampler(fake_proc, CgroupDescriptor.unavailable(), FakeClock())
        asyncio.run(sampler.system_info())
        assert sampler.rate_state is None

        asyncio.run(sampler.snapshot())
        assert sampler.rate_state is not None

    def test_snapshot_is_immutable(self, fake_proc) -> None:
        """Test that snapshots are frozen."""
        sampler = make_sampler(fake_proc, CgroupDescriptor.unavailable(), FakeClock())
        snap = asyncio.run(sampler.snapshot())
        with pytest.raises(ValidationError):
            snap.metrics.process = 99
