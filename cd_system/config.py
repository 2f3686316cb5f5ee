"""
This module defines constants for the continuous deployment supervisor.
It includes the watched repository, the public forwarding port, the backend
port range, build/backend commands, polling and drain timings, and logging levels.

Every value can be overridden with a CD_* environment variable.
"""

import os
import shlex
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.getenv(f"CD_{name}", default)


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").lower() in ("1", "true", "yes", "on")


# Watched repository
REPO_URL = _env("REPO_URL", "https://github.com/veygo-rent/veygo-httpd-rust.git")
CLONE_DIR = Path(_env("CLONE_DIR", "target/veygo-httpd-rust"))

# Network configurations
FORWARD_HOST = _env("FORWARD_HOST", "0.0.0.0")
FORWARD_PORT = _env_int("FORWARD_PORT", 8000)
BACKEND_HOST = _env("BACKEND_HOST", "127.0.0.1")

# Backend port allocation
BACKEND_PORT_RANGE = (
    _env_int("BACKEND_PORT_MIN", 8001),
    _env_int("BACKEND_PORT_MAX", 8999),
)
PORT_PROBE_HOST = _env("PORT_PROBE_HOST", "0.0.0.0")
PORT_PROBE_ATTEMPTS = _env_int("PORT_PROBE_ATTEMPTS", 10)

# External tools
BUILD_COMMAND = shlex.split(_env("BUILD_COMMAND", "cargo build --release"))
MIGRATION_COMMAND = shlex.split(_env("MIGRATION_COMMAND", "diesel migration run"))
STRICT_MIGRATIONS = _env_bool("STRICT_MIGRATIONS", False)
BACKEND_COMMAND = shlex.split(_env("BACKEND_COMMAND", "./target/release/veygo-httpd-rust"))
BACKEND_OUTPUT = _env("BACKEND_OUTPUT", "inherit")  # inherit, discard or a log file path

# Timing configurations
REPO_POLL_INTERVAL = _env_float("REPO_POLL_INTERVAL", 60)  # Seconds between repository checks
DRAIN_TIMEOUT = _env_float("DRAIN_TIMEOUT", 5)  # Seconds in-flight connections get after a swap
TERMINATE_TIMEOUT = _env_float("TERMINATE_TIMEOUT", 10)  # Seconds before SIGTERM becomes SIGKILL
READY_TIMEOUT = _env_float("READY_TIMEOUT", 0)  # 0 disables the backend readiness wait
STARTUP_GRACE = _env_float("STARTUP_GRACE", 1)  # Seconds a new backend must stay up before the old one is killed
FORWARDER_BIND_ATTEMPTS = _env_int("FORWARDER_BIND_ATTEMPTS", 5)
FORWARDER_BIND_RETRY_DELAY = _env_float("FORWARDER_BIND_RETRY_DELAY", 1)
CONNECT_TIMEOUT = _env_float("CONNECT_TIMEOUT", 5)  # Outbound connect timeout per relayed connection

# Deployment history kept in memory for the reporter
HISTORY_SIZE = _env_int("HISTORY_SIZE", 50)

# Logging configuration
LOG_LEVEL = _env("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Web reporter settings
REPORTER_HOST = _env("REPORTER_HOST", "0.0.0.0")
REPORTER_PORT = _env_int("REPORTER_PORT", 5050)
