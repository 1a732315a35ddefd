"""Tests for the host-level readers (procfs tables, df, interfaces)."""

import asyncio
import socket
from types import SimpleNamespace

import pytest

from komari_agent.monitoring import host
from komari_agent.monitoring.host import (
    count_processes,
    count_table_rows,
    parse_cpu_model,
    parse_df_output,
    parse_net_dev,
    parse_os_release,
    pick_ip_addresses,
    read_connection_counts,
)

from conftest import NET_DEV_HEADER, net_dev_line


class TestIdentityParsers:
    def test_cpu_model_x86(self) -> None:
        """Test reading the model name on x86."""
        text = "processor\t: 0\nvendor_id\t: GenuineIntel\nmodel name\t: Intel(R) Xeon(R) CPU\n"
        assert parse_cpu_model(text) == "Intel(R) Xeon(R) CPU"

    def test_cpu_model_arm_hardware(self) -> None:
        """Test falling back to the Hardware line on ARM."""
        text = "processor\t: 0\nBogoMIPS\t: 108.00\n\nHardware\t: BCM2835\n"
        assert parse_cpu_model(text) == "BCM2835"

    def test_cpu_model_missing(self) -> None:
        """Test that no model line yields None."""
        assert parse_cpu_model("processor\t: 0\n") is None
        assert parse_cpu_model(None) is None

    def test_os_release(self) -> None:
        """Test parsing quoted os-release fields."""
        text = 'NAME="Alpine Linux"\nID=alpine\nPRETTY_NAME="Alpine Linux v3.19"\n# comment\n'
        release = parse_os_release(text)
        assert release.pretty_name == "Alpine Linux v3.19"
        assert release.fields["ID"] == "alpine"
        assert release.fields["NAME"] == "Alpine Linux"

    def test_os_release_without_pretty_name(self) -> None:
        """Test os-release without PRETTY_NAME."""
        assert parse_os_release("ID=scratch\n").pretty_name is None
        assert parse_os_release("") is None


class TestPickIpAddresses:
    """Tests for address selection across interfaces."""

    def _patch(self, monkeypatch, interfaces):
        monkeypatch.setattr(host.psutil, "net_if_addrs", lambda: interfaces)

    def test_skips_loopback_and_link_local(self, monkeypatch) -> None:
        """Test that loopback and link-local addresses are skipped."""
        self._patch(
            monkeypatch,
            {
                "lo": [
                    SimpleNamespace(family=socket.AF_INET, address="127.0.0.1"),
                    SimpleNamespace(family=socket.AF_INET6, address="::1"),
                ],
                "eth0": [
                    SimpleNamespace(family=socket.AF_INET6, address="fe80::1%eth0"),
                    SimpleNamespace(family=socket.AF_INET, address="172.17.0.2"),
                    SimpleNamespace(family=socket.AF_INET6, address="2001:db8::2"),
                ],
            },
        )
        ips = pick_ip_addresses()
        assert ips.ipv4 == "172.17.0.2"
        assert ips.ipv6 == "2001:db8::2"

    def test_no_usable_addresses(self, monkeypatch) -> None:
        """Test that no usable address yields None for both families."""
        self._patch(
            monkeypatch, {"lo": [SimpleNamespace(family=socket.AF_INET, address="127.0.0.1")]}
        )
        ips = pick_ip_addresses(exclude_loopback=False)
        assert ips.ipv4 is None
        assert ips.ipv6 is None


class TestParseDf:
    def test_posix_output(self) -> None:
        """Test parsing POSIX df output."""
        text = (
            "Filesystem     1024-blocks     Used Available Capacity Mounted on\n"
            "overlay          102687672 40518260  56910148      42% /\n"
        )
        usage = parse_df_output(text)
        assert usage.total_bytes == 102687672 * 1024
        assert usage.used_bytes == 40518260 * 1024

    def test_filesystem_name_with_spaces(self) -> None:
        """Test df rows whose filesystem name contains spaces."""
        text = (
            "Filesystem 1024-blocks Used Available Capacity Mounted on\n"
            "my share   1000 400 600 40% /mnt\n"
        )
        assert parse_df_output(text).total_bytes == 1000 * 1024

    def test_garbage(self) -> None:
        """Test that unusable df output yields empty usage."""
        assert parse_df_output("").total_bytes is None
        assert parse_df_output("header only\n").used_bytes is None


class HangingDf:
    """Subprocess stand-in whose output never arrives."""

    def __init__(self) -> None:
        self.returncode: int | None = None
        self.killed = False
        self.reaped = False

    async def communicate(self):
        await asyncio.sleep(3600)

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        self.reaped = True
        return self.returncode


class TestReadDiskUsage:
    """Tests for the df subprocess lifecycle."""

    def _spawn(self, monkeypatch) -> HangingDf:
        process = HangingDf()

        async def fake_exec(*args, **kwargs):
            return process

        monkeypatch.setattr(host.asyncio, "create_subprocess_exec", fake_exec)
        return process

    def test_timeout_kills_and_reaps(self, monkeypatch, tmp_path) -> None:
        """Test that a hung df is killed and reaped on timeout."""
        process = self._spawn(monkeypatch)

        usage = asyncio.run(host.read_disk_usage(tmp_path, timeout=0.01))

        assert usage.total_bytes is None
        assert process.killed
        assert process.reaped

    def test_cancellation_kills_and_reaps(self, monkeypatch, tmp_path) -> None:
        """Test that cancelling the read kills and reaps df."""
        process = self._spawn(monkeypatch)

        async def scenario():
            task = asyncio.create_task(host.read_disk_usage(tmp_path, timeout=60))
            await asyncio.sleep(0.02)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert process.killed
        assert process.reaped

    def test_missing_df_binary(self, monkeypatch, tmp_path) -> None:
        """Test that a missing df binary yields empty usage."""
        async def fake_exec(*args, **kwargs):
            raise FileNotFoundError("df")

        monkeypatch.setattr(host.asyncio, "create_subprocess_exec", fake_exec)

        assert asyncio.run(host.read_disk_usage(tmp_path)).used_bytes is None


class TestParseNetDev:
    """Tests for /proc/net/dev parsing."""

    TEXT = NET_DEV_HEADER + net_dev_line("lo", 500, 500) + net_dev_line("eth0", 1000, 2000)

    def test_excludes_loopback_by_default(self) -> None:
        """Test that loopback counters are excluded by default."""
        counters = parse_net_dev(self.TEXT)
        assert set(counters) == {"eth0"}
        assert counters["eth0"].rx_bytes == 1000
        assert counters["eth0"].tx_bytes == 2000

    def test_includes_loopback_when_requested(self) -> None:
        """Test that loopback counters can be included."""
        counters = parse_net_dev(self.TEXT, exclude_loopback=False)
        assert set(counters) == {"lo", "eth0"}

    def test_short_lines_skipped(self) -> None:
        """Test that truncated interface lines are skipped."""
        counters = parse_net_dev(NET_DEV_HEADER + "  eth1: 1 2 3\n")
        assert counters == {}


class TestConnections:
    def test_count_table_rows(self) -> None:
        """Test counting rows below the table header."""
        assert count_table_rows("header\nrow1\nrow2\n") == 2
        assert count_table_rows("header only\n") == 0
        assert count_table_rows(None) == 0

    def test_sums_ipv4_and_ipv6(self, fake_proc) -> None:
        """Test that IPv4 and IPv6 socket tables are summed."""
        fake_proc.socket_table("tcp", 3)
        fake_proc.socket_table("tcp6", 2)
        fake_proc.socket_table("udp", 1)
        fake_proc.socket_table("unix", 4)

        counts = asyncio.run(read_connection_counts(fake_proc.root))
        assert counts.tcp == 5
        assert counts.udp == 1
        assert counts.unix == 4


class TestCountProcesses:
    """Tests for the bounded /proc scan."""

    def test_counts_processes_and_threads(self, fake_proc) -> None:
        """Test counting numeric /proc entries and their threads."""
        fake_proc.process(1, threads=1)
        fake_proc.process(42, threads=8)
        fake_proc.process(100, threads=3)
        (fake_proc.root / "self").mkdir()
        (fake_proc.root / "net").mkdir()

        counts = asyncio.run(count_processes(fake_proc.root))
        assert counts.processes == 3
        assert counts.threads == 12

    def test_vanished_entry_is_skipped(self, fake_proc) -> None:
        """Test that a process exiting mid-scan is skipped."""
        fake_proc.process(1, threads=2)
        (fake_proc.root / "77").mkdir()  # exited between listing and reading

        counts = asyncio.run(count_processes(fake_proc.root))
        assert counts.processes == 1
        assert counts.threads == 2

    def test_missing_proc_root(self, tmp_path) -> None:
        """Test that a missing /proc yields zero counts."""
        counts = asyncio.run(count_processes(tmp_path / "nope"))
        assert counts.processes == 0

    def test_concurrency_is_bounded(self, fake_proc, monkeypatch) -> None:
        """Test that the scan never exceeds its worker limit."""
        for pid in range(1, 121):
            fake_proc.process(pid, threads=1)

        in_flight = 0
        peak = 0
        original = host.read_text

        async def tracking_read_text(path):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(0)
                return await original(path)
            finally:
                in_flight -= 1

        monkeypatch.setattr(host, "read_text", tracking_read_text)
        counts = asyncio.run(count_processes(fake_proc.root, concurrency=10))

        assert counts.processes == 120
        assert counts.threads == 120
        assert peak <= 10
