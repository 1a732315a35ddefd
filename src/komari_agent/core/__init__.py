"""Core module - configuration and schemas."""

from __future__ import annotations

from komari_agent.core.config import load_config
from komari_agent.core.constants import CPU_USAGE_MAX_PERCENT, PROCESS_SCAN_CONCURRENCY
from komari_agent.core.schemas import (
    AgentConfig,
    BasicInfoPayload,
    CgroupMode,
    DiagnosticsConfig,
    LimitFallback,
    Metrics,
    MetricsConfig,
    ReportPayload,
    Snapshot,
    SystemInfo,
    UptimePolicy,
)

__all__ = [
    "CPU_USAGE_MAX_PERCENT",
    "PROCESS_SCAN_CONCURRENCY",
    "AgentConfig",
    "BasicInfoPayload",
    "CgroupMode",
    "DiagnosticsConfig",
    "LimitFallback",
    "load_config",
    "Metrics",
    "MetricsConfig",
    "ReportPayload",
    "Snapshot",
    "SystemInfo",
    "UptimePolicy",
]
