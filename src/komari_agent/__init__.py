"""Komari agent - container metrics reporter."""

from __future__ import annotations

__version__ = "0.1.0"

from komari_agent.core.schemas import (  # noqa: E402
    AgentConfig,
    BasicInfoPayload,
    ReportPayload,
    Snapshot,
)

__all__ = [
    "AgentConfig",
    "BasicInfoPayload",
    "ReportPayload",
    "Snapshot",
    "__version__",
]
