"""Shared constants for the Komari agent.

Centralized constants to avoid duplication and ensure consistency across modules.
"""

from __future__ import annotations

# Collector endpoints (relative to the configured HTTP endpoint)
BASIC_INFO_PATH = "/api/clients/uploadBasicInfo"
REPORT_PATH = "/api/clients/report"

# Label sent as the virtualization technology in the identity payload
VIRTUALIZATION_LABEL = "Docker"

# Upper bound for cpu.usage in the stream payload (multi-core bursts exceed 100%)
CPU_USAGE_MAX_PERCENT = 999.0

# Maximum number of /proc/<pid>/status files read at the same time
PROCESS_SCAN_CONCURRENCY = 50

# cgroup v1 reports "no limit" as a huge page-aligned value; anything above this is unbounded
CGROUP_V1_UNBOUNDED_THRESHOLD = 1 << 52

# Fallback when os.sysconf cannot report SC_CLK_TCK
DEFAULT_CLK_TCK = 100

# Default intervals (seconds)
DEFAULT_REPORT_INTERVAL = 1.0
DEFAULT_INFO_INTERVAL = 300.0
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_HANDSHAKE_TIMEOUT = 8.0
DEFAULT_HTTP_TIMEOUT = 10.0
DEFAULT_SUBPROCESS_TIMEOUT = 2.0
