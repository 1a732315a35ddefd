"""Shared fixtures: fake procfs trees and snapshot builders."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from komari_agent.core.schemas import (
    CgroupMode,
    ConnectionCounts,
    CPUMetrics,
    IPAddresses,
    LoadAverage,
    Metrics,
    NetworkMetrics,
    OSRelease,
    Snapshot,
    SystemInfo,
    UsageTotal,
)

NET_DEV_HEADER = (
    "Inter-|   Receive                                                |  Transmit\n"
    " face |bytes    packets errs drop fifo frame compressed multicast|"
    "bytes    packets errs drop fifo colls carrier compressed\n"
)


def net_dev_line(iface: str, rx: int, tx: int) -> str:
    return f"{iface:>6}: {rx} 10 0 0 0 0 0 0 {tx} 12 0 0 0 0 0 0\n"


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class FakeProc:
    """Builder for a minimal procfs tree."""

    def __init__(self, root: Path) -> None:
        self.root = root
        root.mkdir(parents=True, exist_ok=True)

    def net_dev(self, counters: dict[str, tuple[int, int]]) -> None:
        body = "".join(net_dev_line(name, rx, tx) for name, (rx, tx) in counters.items())
        write(self.root / "net" / "dev", NET_DEV_HEADER + body)

    def socket_table(self, name: str, rows: int) -> None:
        header = "  sl  local_address rem_address   st tx_queue rx_queue\n"
        lines = "".join(f"   {i}: 0100007F:1F90 00000000:0000 0A 0:0\n" for i in range(rows))
        write(self.root / "net" / name, header + lines)

    def process(self, pid: int, threads: int) -> None:
        write(
            self.root / str(pid) / "status",
            f"Name:\tproc{pid}\nState:\tS (sleeping)\nPid:\t{pid}\nThreads:\t{threads}\n",
        )

    def pid1(self, start_ticks: int, cgroup: str, comm: str = "tini") -> None:
        fields = ["S"] + ["0"] * 18 + [str(start_ticks)] + ["0"] * 10
        write(self.root / "1" / "stat", f"1 ({comm}) " + " ".join(fields) + "\n")
        write(self.root / "1" / "cgroup", cgroup)

    def boot_time(self, btime: int) -> None:
        write(self.root / "stat", f"cpu  1 2 3 4\nintr 0\nbtime {btime}\nprocesses 10\n")


@pytest.fixture
def fake_proc(tmp_path: Path) -> FakeProc:
    return FakeProc(tmp_path / "proc")


def make_system(**overrides) -> SystemInfo:
    values = dict(
        hostname="web-1",
        platform="linux",
        kernel="6.1.0",
        arch="x86_64",
        cpu_model="AMD EPYC 7B13",
        cpu_cores=8,
        os_release=OSRelease(pretty_name="Debian GNU/Linux 12 (bookworm)"),
        ips=IPAddresses(ipv4="10.0.0.5", ipv6=None),
        disk_total_bytes=50 * 1024**3,
        mem_limit_bytes=2 * 1024**3,
        swap_limit_bytes=0,
        cgroup_mode=CgroupMode.V2,
    )
    values.update(overrides)
    return SystemInfo(**values)


def make_snapshot(cpu_percent=None, up=None, down=None, uptime=42.9, threads=7) -> Snapshot:
    metrics = Metrics(
        cpu=CPUMetrics(usage_percent_of_limit=cpu_percent, usage_percent_of_host=None),
        ram=UsageTotal(total=1024, used=512),
        swap=UsageTotal(total=0, used=0),
        load=LoadAverage(load1=0.5, load5=0.25, load15=0.1),
        disk=UsageTotal(total=None, used=None),
        network=NetworkMetrics(
            up_bps=up, down_bps=down, total_up_bytes=900, total_down_bytes=3000
        ),
        connections=ConnectionCounts(tcp=3, udp=1, unix=9),
        process=12,
        threads=threads,
        uptime_seconds=uptime,
    )
    return Snapshot(at=datetime.now(UTC), system=make_system(), metrics=metrics)
