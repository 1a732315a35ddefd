"""Pydantic schemas for the Komari agent.

This module defines all data contracts used by the agent: the configuration
loaded at startup, the immutable snapshot produced by the metrics sampler, and
the two payloads sent to the collector (identity push and stream frame).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from komari_agent import __version__
from komari_agent.core.constants import (
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_INFO_INTERVAL,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_REPORT_INTERVAL,
    DEFAULT_SUBPROCESS_TIMEOUT,
    PROCESS_SCAN_CONCURRENCY,
    VIRTUALIZATION_LABEL,
)


class CgroupMode(str, Enum):
    """Resource-control interface detected for this process."""

    V1 = "v1"  # Legacy per-controller hierarchies
    V2 = "v2"  # Unified hierarchy
    UNAVAILABLE = "unavailable"  # Nothing usable mounted


class UptimePolicy(str, Enum):
    """How container uptime is computed."""

    AUTO = "auto"  # pid1 unless PID 1 looks like the host's init
    PID1 = "pid1"  # Start time of PID 1
    PROCESS = "process"  # Start time of the agent process


class LimitFallback(str, Enum):
    """Value reported when a memory/CPU limit is unbounded or unreadable."""

    HOST = "host"  # Substitute host total memory / core count
    ZERO = "zero"  # Report 0


# =============================================================================
# CONFIGURATION
# =============================================================================


class MetricsConfig(BaseModel):
    """Configuration for the metrics sampler."""

    disk_path: Path = Field(default=Path("/"), description="Mount path reported as disk usage")
    exclude_loopback: bool = Field(
        default=True, description="Drop the loopback interface from network totals"
    )
    uptime_policy: UptimePolicy = Field(default=UptimePolicy.AUTO)
    memory_limit_fallback: LimitFallback = Field(default=LimitFallback.HOST)
    process_scan_concurrency: int = Field(
        default=PROCESS_SCAN_CONCURRENCY, ge=1, le=1024, description="Max parallel status reads"
    )
    subprocess_timeout_seconds: float = Field(default=DEFAULT_SUBPROCESS_TIMEOUT, gt=0, le=10)

    model_config = {"extra": "forbid"}

    @field_validator("uptime_policy", "memory_limit_fallback", mode="before")
    @classmethod
    def lowercase_enum(cls, v: object) -> object:
        """Accept policies in any case (e.g. 'AUTO' from the environment)."""
        if isinstance(v, str):
            return v.strip().lower()
        return v


class DiagnosticsConfig(BaseModel):
    """Logging toggles for troubleshooting the agent in the field."""

    log_level: str = Field(default="INFO")
    log_payload: bool = Field(default=False, description="Log identity payloads at DEBUG")
    log_ws_send: bool = Field(default=False, description="Log stream frames at DEBUG")
    log_ws_every: int = Field(default=1, ge=1, description="Log every Nth stream frame")
    log_ws_max_length: int = Field(default=8000, ge=1)
    attach_threads_to_message: bool = Field(
        default=False, description="Send 'threads=<n>' in the frame message field"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and check the log level name."""
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class AgentConfig(BaseModel):
    """Top-level agent configuration.

    Loaded from an optional YAML/JSON file and overlaid with environment
    variables (see ``load_config``). ``endpoint`` and ``token`` are required.
    """

    endpoint: str = Field(..., min_length=1, description="Collector base URL (http/https)")
    token: str = Field(..., min_length=1, description="Bearer token appended to URLs")
    report_interval_seconds: float = Field(default=DEFAULT_REPORT_INTERVAL, gt=0)
    info_interval_seconds: float = Field(default=DEFAULT_INFO_INTERVAL, gt=0)
    reconnect_delay_seconds: float = Field(default=DEFAULT_RECONNECT_DELAY, gt=0)
    handshake_timeout_seconds: float = Field(default=DEFAULT_HANDSHAKE_TIMEOUT, gt=0)
    http_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)
    agent_version: str = Field(default=f"komari-agent-py/{__version__}")
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Require an http(s) URL and drop the trailing slash."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must start with http:// or https://, got {v!r}")
        return v.rstrip("/")

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("token must not be blank")
        return v


# =============================================================================
# SNAPSHOT (immutable sampler output)
# =============================================================================

_FROZEN = {"frozen": True}


class OSRelease(BaseModel):
    """Parsed /etc/os-release."""

    pretty_name: str | None = None
    fields: dict[str, str] = Field(default_factory=dict)

    model_config = _FROZEN


class IPAddresses(BaseModel):
    ipv4: str | None = None
    ipv6: str | None = None

    model_config = _FROZEN


class SystemInfo(BaseModel):
    """Mostly-static facts about the host and container."""

    hostname: str
    platform: str
    kernel: str
    arch: str
    cpu_model: str | None = None
    cpu_cores: int = Field(ge=1, description="Host logical core count")
    os_release: OSRelease | None = None
    ips: IPAddresses = Field(default_factory=IPAddresses)
    disk_total_bytes: int | None = Field(default=None, ge=0)
    mem_limit_bytes: int | None = Field(default=None, ge=0)
    swap_limit_bytes: int | None = Field(default=None, ge=0)
    cgroup_mode: CgroupMode = CgroupMode.UNAVAILABLE

    model_config = _FROZEN

    @property
    def os_name(self) -> str:
        """OS pretty name, or the platform when os-release is missing."""
        if self.os_release is not None and self.os_release.pretty_name:
            return self.os_release.pretty_name
        return self.platform


class CPUMetrics(BaseModel):
    """CPU usage over the last sampling interval (None on the first sample)."""

    usage_percent_of_limit: float | None = Field(default=None, ge=0)
    usage_percent_of_host: float | None = Field(default=None, ge=0)
    limit_cores: float = Field(default=0.0, ge=0, description="Effective core limit")

    model_config = _FROZEN


class UsageTotal(BaseModel):
    total: int | None = Field(default=None, ge=0)
    used: int | None = Field(default=None, ge=0)

    model_config = _FROZEN


class LoadAverage(BaseModel):
    load1: float = 0.0
    load5: float = 0.0
    load15: float = 0.0

    model_config = _FROZEN


class InterfaceCounters(BaseModel):
    rx_bytes: int = Field(default=0, ge=0)
    tx_bytes: int = Field(default=0, ge=0)

    model_config = _FROZEN


class NetworkMetrics(BaseModel):
    """Network throughput (bytes/sec) and cumulative totals (bytes)."""

    up_bps: float | None = Field(default=None, ge=0)
    down_bps: float | None = Field(default=None, ge=0)
    total_up_bytes: int = Field(default=0, ge=0)
    total_down_bytes: int = Field(default=0, ge=0)
    by_interface: dict[str, InterfaceCounters] = Field(default_factory=dict)

    model_config = _FROZEN


class ConnectionCounts(BaseModel):
    tcp: int = Field(default=0, ge=0)
    udp: int = Field(default=0, ge=0)
    unix: int = Field(default=0, ge=0)

    model_config = _FROZEN


class Metrics(BaseModel):
    """Point-in-time metrics computed for one snapshot."""

    cpu: CPUMetrics = Field(default_factory=CPUMetrics)
    ram: UsageTotal = Field(default_factory=UsageTotal)
    swap: UsageTotal = Field(default_factory=UsageTotal)
    load: LoadAverage = Field(default_factory=LoadAverage)
    disk: UsageTotal = Field(default_factory=UsageTotal)
    network: NetworkMetrics = Field(default_factory=NetworkMetrics)
    connections: ConnectionCounts = Field(default_factory=ConnectionCounts)
    process: int = Field(default=0, ge=0)
    threads: int = Field(default=0, ge=0)
    uptime_seconds: float = Field(default=0.0, ge=0)

    model_config = _FROZEN


class Snapshot(BaseModel):
    """One sampling result: system facts plus computed metrics."""

    at: datetime
    system: SystemInfo
    metrics: Metrics

    model_config = _FROZEN


# =============================================================================
# WIRE PAYLOADS
# =============================================================================


class BasicInfoPayload(BaseModel):
    """Body of the identity push (POST uploadBasicInfo)."""

    arch: str
    cpu_cores: int
    cpu_name: str = ""
    disk_total: int = 0
    ipv4: str = ""
    ipv6: str = ""
    mem_total: int = 0
    swap_total: int = 0
    os: str = ""
    kernel_version: str = ""
    version: str = ""
    virtualization: str = VIRTUALIZATION_LABEL


class CPUPayload(BaseModel):
    usage: float = Field(ge=0, le=999)


class UsagePayload(BaseModel):
    total: int = 0
    used: int = 0


class LoadPayload(BaseModel):
    load1: float = 0.0
    load5: float = 0.0
    load15: float = 0.0


class NetworkPayload(BaseModel):
    up: int = Field(default=0, ge=0)
    down: int = Field(default=0, ge=0)
    totalUp: int = Field(default=0, ge=0)  # noqa: N815 - wire field name
    totalDown: int = Field(default=0, ge=0)  # noqa: N815 - wire field name


class ConnectionsPayload(BaseModel):
    tcp: int = 0
    udp: int = 0


class ReportPayload(BaseModel):
    """One stream frame (report websocket)."""

    cpu: CPUPayload
    ram: UsagePayload
    swap: UsagePayload
    load: LoadPayload
    disk: UsagePayload
    network: NetworkPayload
    connections: ConnectionsPayload
    uptime: int = Field(default=0, ge=0)
    process: int = Field(default=0, ge=0)
    message: str = ""
