"""
Environment-driven configuration shared by the control-plane functions and
the in-sandbox programs.
"""

import os

from .log_config import StructuredLogger, get_logger

# Environment variable names
EVENT_STORE_URL = "EVENT_STORE_URL"
EVENT_STORE_KEY = "EVENT_STORE_KEY"
SANDBOX_TIMEOUT_SECONDS = "SANDBOX_TIMEOUT_SECONDS"
SESSION_MAX_AGE_SECONDS = "SESSION_MAX_AGE_SECONDS"
RUNNER_FIRST_OUTPUT_TIMEOUT = "RUNNER_FIRST_OUTPUT_TIMEOUT"
SNAPSHOT_ENDPOINT_URL = "SNAPSHOT_ENDPOINT_URL"
AGENT_BACKEND = "AGENT_BACKEND"
WORKING_DIRECTORY = "WORKING_DIRECTORY"
TEMPLATE_URL = "TEMPLATE_URL"

# Defaults
DEFAULT_SANDBOX_TIMEOUT_SECONDS = 3600.0
DEFAULT_SESSION_MAX_AGE_SECONDS = 3600.0
DEFAULT_FIRST_OUTPUT_TIMEOUT_SECONDS = 60.0
DEFAULT_WORKING_DIRECTORY = "/workspace/project"
DEFAULT_AGENT_BACKEND = "claude"


def resolve_seconds(
    name: str,
    default: float,
    min_value: float,
    max_value: float,
    log: StructuredLogger | None = None,
) -> float:
    """Read a duration in seconds from the environment, clamped to [min_value, max_value]."""
    log = log or get_logger("config")
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = float(raw)
        except ValueError:
            log.warn(
                "config.timeout_invalid",
                timeout_name=name,
                timeout_ms=int(default * 1000),
                detail=f"invalid value '{raw}', using default",
            )
            value = default

    if value < min_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            timeout_ms=int(min_value * 1000),
            detail=f"below min ({min_value}s), clamped",
        )
        value = min_value
    elif value > max_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            timeout_ms=int(max_value * 1000),
            detail=f"above max ({max_value}s), clamped",
        )
        value = max_value

    return value


def default_working_directory() -> str:
    return os.environ.get(WORKING_DIRECTORY) or DEFAULT_WORKING_DIRECTORY


def default_backend() -> str:
    return os.environ.get(AGENT_BACKEND) or DEFAULT_AGENT_BACKEND


def default_template_url() -> str | None:
    return os.environ.get(TEMPLATE_URL) or None
