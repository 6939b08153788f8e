"""
Process-wide configuration for the harness.

Settings are read once from the environment at import time. Everything that
varies per test (chains, relayers, options) lives on the Interchain instead.
"""

import os
from pathlib import Path

DOCKER_HOST = os.environ.get("DOCKER_HOST", "unix:///var/run/docker.sock")
"""Container runtime endpoint. Supports `unix://` sockets and `tcp://host:port`."""

if not DOCKER_HOST.startswith(("unix://", "tcp://", "http://")):
    raise ValueError(
        f"Invalid DOCKER_HOST environment variable: '{DOCKER_HOST}'. "
        "Supported schemes: unix://, tcp://, http://"
    )

DOCKER_API_VERSION = os.environ.get("HARNESS_DOCKER_API_VERSION", "v1.43")
"""Docker Engine API version prefix used for every request."""

HARNESS_HOME = Path(os.environ.get("HARNESS_HOME", Path.home() / ".interchain-harness"))
"""Root directory for run-scoped log files and the default block database."""

LOG_DIR = HARNESS_HOME / "logs"
"""Directory that receives log files created by `create_log_file`."""

DEFAULT_BLOCK_DATABASE = HARNESS_HOME / "databases" / "block.db"
"""Default location of the optional per-block telemetry database."""

KEEP_CONTAINERS = os.environ.get("HARNESS_KEEP_CONTAINERS", "").lower() in {"1", "true", "yes"}
"""When set, containers are stopped but not removed on close (debugging aid)."""

_SUPPORTED_LOG_LEVELS: list[str] = ["DEBUG", "INFO", "WARNING", "ERROR"]

LOG_LEVEL = os.environ.get("HARNESS_LOG_LEVEL", "INFO").upper()
"""Default log level for the CLI."""

if LOG_LEVEL not in _SUPPORTED_LOG_LEVELS:
    raise ValueError(
        f"Invalid HARNESS_LOG_LEVEL environment variable: '{LOG_LEVEL}'. "
        f"Supported values: {_SUPPORTED_LOG_LEVELS}"
    )

# -----------------------------------------------------------------------------
# Default per-operation deadlines (seconds)
# -----------------------------------------------------------------------------

NODE_READINESS_TIMEOUT = 60.0
"""Time each node has to reach its initial height."""

TX_INCLUSION_TIMEOUT = 30.0
"""Time a submitted transaction has to appear in a block."""

RELAYER_PATH_TIMEOUT = 120.0
"""Time a relayer path has to reach the OPENED state."""

BLOCK_WAIT_TIMEOUT = 120.0
"""Default deadline for `wait_for_blocks`."""

POLL_INTERVAL = 1.0
"""Granularity of every polling loop."""

STOP_GRACE_PERIOD = 10
"""Seconds a container gets to exit after SIGTERM before it is killed."""
