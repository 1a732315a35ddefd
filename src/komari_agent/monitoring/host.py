"""Host-level readers: identity facts, load, disk, network, connections, processes.

Everything here reads procfs text tables, psutil, or ``df`` output. Readers
never raise for a missing source: they log at DEBUG and return an empty value
so one unavailable subsystem cannot abort a snapshot.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import platform
import re
import socket
from pathlib import Path

import psutil

from komari_agent.core.schemas import (
    ConnectionCounts,
    InterfaceCounters,
    IPAddresses,
    LoadAverage,
    OSRelease,
)
from komari_agent.monitoring.base import DiskUsage, HostFacts, ProcessCounts
from komari_agent.monitoring.io_utils import parse_int, read_text

logger = logging.getLogger(__name__)

LOOPBACK_INTERFACE = "lo"

_CPU_MODEL_PATTERNS = [
    re.compile(r"^model name\s*:\s*(.+)$", re.MULTILINE),
    re.compile(r"^Hardware\s*:\s*(.+)$", re.MULTILINE),  # ARM boards
    re.compile(r"^Processor\s*:\s*(.+)$", re.MULTILINE),
]
_OS_RELEASE_LINE = re.compile(r"^([A-Z0-9_]+)=(.*)$")
_THREADS_RE = re.compile(r"^Threads:\s+(\d+)", re.MULTILINE)


# ---------------------------------------------------------------------------
# Identity facts
# ---------------------------------------------------------------------------


def host_cpu_count() -> int:
    return psutil.cpu_count(logical=True) or 1


def host_total_memory() -> int:
    try:
        return int(psutil.virtual_memory().total)
    except (OSError, RuntimeError) as e:
        logger.debug(f"Cannot read host memory size: {e}")
        return 0


def parse_cpu_model(cpuinfo_text: str | None) -> str | None:
    """Extract the CPU model from /proc/cpuinfo.

    Tries "model name" (x86), then "Hardware" and "Processor" (ARM).
    """
    if not cpuinfo_text:
        return None
    for pattern in _CPU_MODEL_PATTERNS:
        match = pattern.search(cpuinfo_text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def parse_os_release(text: str | None) -> OSRelease | None:
    """Parse /etc/os-release KEY=value lines (values optionally double-quoted)."""
    if not text:
        return None
    fields: dict[str, str] = {}
    for line in text.splitlines():
        match = _OS_RELEASE_LINE.match(line.strip())
        if not match:
            continue
        value = match.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        fields[match.group(1)] = value
    return OSRelease(pretty_name=fields.get("PRETTY_NAME") or None, fields=fields)


def pick_ip_addresses(exclude_loopback: bool = True) -> IPAddresses:
    """Pick the first usable IPv4 and IPv6 address across interfaces.

    Loopback and link-local addresses are never picked; the loopback
    interface itself is skipped when ``exclude_loopback`` is set.
    """
    ipv4: str | None = None
    ipv6: str | None = None
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logger.debug(f"Cannot list interface addresses: {e}")
        return IPAddresses()

    for name, addrs in interfaces.items():
        if exclude_loopback and name == LOOPBACK_INTERFACE:
            continue
        for addr in addrs:
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                ip = ipaddress.ip_address(addr.address.split("%", 1)[0])
            except ValueError:
                continue
            if ip.is_loopback or ip.is_link_local:
                continue
            if ip.version == 4 and ipv4 is None:
                ipv4 = str(ip)
            elif ip.version == 6 and ipv6 is None:
                ipv6 = str(ip)
    return IPAddresses(ipv4=ipv4, ipv6=ipv6)


async def read_host_facts(
    proc_root: Path = Path("/proc"),
    os_release_path: Path = Path("/etc/os-release"),
    exclude_loopback: bool = True,
) -> HostFacts:
    cpuinfo, os_release = await asyncio.gather(
        read_text(proc_root / "cpuinfo"),
        read_text(os_release_path),
    )
    uname = platform.uname()
    return HostFacts(
        hostname=socket.gethostname(),
        platform=uname.system.lower() or "unknown",
        kernel=uname.release,
        arch=uname.machine,
        cpu_cores=host_cpu_count(),
        cpu_model=parse_cpu_model(cpuinfo),
        os_release=parse_os_release(os_release),
        ips=pick_ip_addresses(exclude_loopback),
    )


def read_load_average() -> LoadAverage:
    try:
        load1, load5, load15 = psutil.getloadavg()
    except OSError as e:
        logger.debug(f"Cannot read load average: {e}")
        return LoadAverage()
    return LoadAverage(load1=load1, load5=load5, load15=load15)


# ---------------------------------------------------------------------------
# Disk
# ---------------------------------------------------------------------------


def parse_df_output(text: str) -> DiskUsage:
    """Parse ``df -kP <path>`` output.

    Format:
        Filesystem     1024-blocks     Used Available Capacity Mounted on
        overlay          102687672 40518260  56910148      42% /

    Columns are counted from the right because the filesystem name may
    contain spaces.
    """
    lines = text.strip().splitlines()
    if len(lines) < 2:
        return DiskUsage()
    cols = lines[1].split()
    if len(cols) < 6:
        return DiskUsage()
    total_kb = parse_int(cols[-5])
    used_kb = parse_int(cols[-4])
    return DiskUsage(
        total_bytes=total_kb * 1024 if total_kb is not None else None,
        used_bytes=used_kb * 1024 if used_kb is not None else None,
    )


async def read_disk_usage(path: Path, timeout: float = 2.0) -> DiskUsage:
    try:
        process = await asyncio.create_subprocess_exec(
            "df",
            "-kP",
            str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"Cannot run df: {e}")
        return DiskUsage()

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug(f"df {path} timed out after {timeout}s")
        return DiskUsage()
    finally:
        # Reap df on timeout and on cancellation of the sampling task
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    if process.returncode != 0:
        logger.debug(f"df {path} exited with status {process.returncode}")
        return DiskUsage()
    return parse_df_output(stdout.decode("utf-8", errors="replace"))


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


def parse_net_dev(text: str | None, exclude_loopback: bool = True) -> dict[str, InterfaceCounters]:
    """Parse /proc/net/dev into per-interface cumulative byte counters.

    Format (two header lines, then one line per interface):
        eth0: 1234 10 0 0 0 0 0 0 5678 12 0 0 0 0 0 0

    Receive bytes is the first column, transmit bytes the ninth.
    """
    result: dict[str, InterfaceCounters] = {}
    if not text:
        return result
    for line in text.strip().splitlines()[2:]:
        name, sep, rest = line.partition(":")
        if not sep:
            continue
        iface = name.strip()
        if exclude_loopback and iface == LOOPBACK_INTERFACE:
            continue
        cols = rest.split()
        if len(cols) < 16:
            continue
        result[iface] = InterfaceCounters(
            rx_bytes=max(0, parse_int(cols[0]) or 0),
            tx_bytes=max(0, parse_int(cols[8]) or 0),
        )
    return result


async def read_net_dev(
    proc_root: Path = Path("/proc"), exclude_loopback: bool = True
) -> dict[str, InterfaceCounters]:
    return parse_net_dev(await read_text(proc_root / "net" / "dev"), exclude_loopback)


def count_table_rows(text: str | None) -> int:
    """Count entries in a /proc/net socket table (all lines minus the header)."""
    if not text:
        return 0
    return max(0, len(text.strip().splitlines()) - 1)


async def read_connection_counts(proc_root: Path = Path("/proc")) -> ConnectionCounts:
    net = proc_root / "net"
    tcp, tcp6, udp, udp6, unix = await asyncio.gather(
        *(read_text(net / name) for name in ("tcp", "tcp6", "udp", "udp6", "unix"))
    )
    return ConnectionCounts(
        tcp=count_table_rows(tcp) + count_table_rows(tcp6),
        udp=count_table_rows(udp) + count_table_rows(udp6),
        unix=count_table_rows(unix),
    )


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


async def count_processes(proc_root: Path = Path("/proc"), concurrency: int = 50) -> ProcessCounts:
    """Count processes and threads by scanning /proc/<pid>/status.

    A fixed pool of ``concurrency`` workers pulls pids from one shared
    iterator, capping the number of status files open at once. Entries that
    vanish between listing and reading (exited processes) are skipped.
    """
    try:
        names = await asyncio.to_thread(os.listdir, proc_root)
    except OSError as e:
        logger.debug(f"Cannot list {proc_root}: {e}")
        return ProcessCounts()

    numeric = [name for name in names if name.isdigit()]
    pids = iter(numeric)
    processes = 0
    threads = 0

    async def worker() -> None:
        nonlocal processes, threads
        for pid in pids:
            status = await read_text(proc_root / pid / "status")
            if status is None:
                continue
            processes += 1
            match = _THREADS_RE.search(status)
            if match:
                threads += int(match.group(1))

    await asyncio.gather(*(worker() for _ in range(min(concurrency, len(numeric)))))
    return ProcessCounts(processes=processes, threads=threads)
