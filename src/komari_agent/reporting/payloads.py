"""Translation of sampler output into collector wire payloads."""

from __future__ import annotations

import math
from urllib.parse import quote

from komari_agent.core.constants import (
    BASIC_INFO_PATH,
    CPU_USAGE_MAX_PERCENT,
    REPORT_PATH,
    VIRTUALIZATION_LABEL,
)
from komari_agent.core.schemas import (
    BasicInfoPayload,
    ConnectionsPayload,
    CPUPayload,
    LoadPayload,
    NetworkPayload,
    ReportPayload,
    Snapshot,
    SystemInfo,
    UsagePayload,
)
from komari_agent.monitoring.io_utils import clamp


def _floor_non_negative(value: float | None) -> int:
    if value is None or not math.isfinite(value):
        return 0
    return max(0, math.floor(value))


def build_basic_info(system: SystemInfo, agent_version: str) -> BasicInfoPayload:
    """Build the identity push body from system facts."""
    return BasicInfoPayload(
        arch=system.arch,
        cpu_cores=system.cpu_cores,
        cpu_name=system.cpu_model or "",
        disk_total=system.disk_total_bytes or 0,
        ipv4=system.ips.ipv4 or "",
        ipv6=system.ips.ipv6 or "",
        mem_total=system.mem_limit_bytes or 0,
        swap_total=system.swap_limit_bytes or 0,
        os=system.os_name,
        kernel_version=system.kernel,
        version=agent_version,
        virtualization=VIRTUALIZATION_LABEL,
    )


def build_report(snapshot: Snapshot, attach_threads: bool = False) -> ReportPayload:
    """Reshape a Snapshot into one stream frame.

    cpu.usage is the percentage of the container's CPU limit clamped into
    [0, 999]; network up/down are whole bytes per second. Rates that are not
    available yet (first sample) are sent as 0.
    """
    m = snapshot.metrics
    cpu_usage = m.cpu.usage_percent_of_limit or 0.0
    if not math.isfinite(cpu_usage):
        cpu_usage = 0.0

    return ReportPayload(
        cpu=CPUPayload(usage=clamp(cpu_usage, 0.0, CPU_USAGE_MAX_PERCENT)),
        ram=UsagePayload(total=m.ram.total or 0, used=m.ram.used or 0),
        swap=UsagePayload(total=m.swap.total or 0, used=m.swap.used or 0),
        load=LoadPayload(load1=m.load.load1, load5=m.load.load5, load15=m.load.load15),
        disk=UsagePayload(total=m.disk.total or 0, used=m.disk.used or 0),
        network=NetworkPayload(
            up=_floor_non_negative(m.network.up_bps),
            down=_floor_non_negative(m.network.down_bps),
            totalUp=m.network.total_up_bytes,
            totalDown=m.network.total_down_bytes,
        ),
        connections=ConnectionsPayload(tcp=m.connections.tcp, udp=m.connections.udp),
        uptime=_floor_non_negative(m.uptime_seconds),
        process=m.process,
        message=f"threads={m.threads}" if attach_threads else "",
    )


def basic_info_url(endpoint: str, token: str) -> str:
    return f"{endpoint}{BASIC_INFO_PATH}?token={quote(token, safe='')}"


def report_url(endpoint: str, token: str) -> str:
    """Stream URL: the report endpoint with http(s) upgraded to ws(s)."""
    url = f"{endpoint}{REPORT_PATH}?token={quote(token, safe='')}"
    if url.startswith("https:"):
        return "wss:" + url[len("https:") :]
    if url.startswith("http:"):
        return "ws:" + url[len("http:") :]
    return url
