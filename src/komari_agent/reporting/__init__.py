"""Reporting module - delivery of snapshots to the collector.

- ReportingClient: identity push + report stream with reconnection
- ConnectionStateMachine: stream connection lifecycle
- payloads: Snapshot -> wire payload translation
"""

from __future__ import annotations

from komari_agent.reporting.client import ReportingClient, ReportingError
from komari_agent.reporting.payloads import build_basic_info, build_report
from komari_agent.reporting.state import (
    ConnectionEvent,
    ConnectionState,
    ConnectionStateMachine,
    InvalidTransitionError,
)

__all__ = [
    "ConnectionEvent",
    "ConnectionState",
    "ConnectionStateMachine",
    "InvalidTransitionError",
    "ReportingClient",
    "ReportingError",
    "build_basic_info",
    "build_report",
]
