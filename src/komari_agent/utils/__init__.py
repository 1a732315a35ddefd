"""Utils module - Shared utilities."""

from __future__ import annotations

from komari_agent.utils.logging import mask_token, setup_logging, truncate

__all__ = ["mask_token", "setup_logging", "truncate"]
