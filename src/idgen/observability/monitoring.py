# SPDX-License-Identifier: MIT
"""Helpers for enabling Pydantic Logfire telemetry."""

from __future__ import annotations

import os
import sys
from typing import Literal

import logfire

LogLevel = Literal["fatal", "error", "warn", "notice", "info", "debug", "trace"]

_LEVEL_ALIASES: dict[str, LogLevel] = {
    "CRITICAL": "fatal",
    "FATAL": "fatal",
    "ERROR": "error",
    "WARNING": "warn",
    "WARN": "warn",
    "NOTICE": "notice",
    "INFO": "info",
    "DEBUG": "debug",
    "TRACE": "trace",
}


def _mask_token(value: str | None) -> str | None:
    """Return a masked representation of ``value`` for safe logging."""

    if not value:
        return None
    return f"{value[:4]}..."


def logfire_level(level: str) -> LogLevel:
    """Map a conventional level name such as ``"WARNING"`` to logfire's."""

    try:
        return _LEVEL_ALIASES[level.upper()]
    except KeyError:
        raise ValueError(f"Unknown log level {level!r}") from None


def init_logfire(token: str | None = None, min_log_level: LogLevel = "warn") -> None:
    """Configure Logfire console output and optional export.

    Args:
        token: Optional Logfire write token. If omitted, ``IDGEN_LOGFIRE_TOKEN``
            from the environment is used. Missing tokens keep telemetry local.
        min_log_level: Minimum level for console and telemetry output.
    """

    key = token or os.getenv("IDGEN_LOGFIRE_TOKEN")
    logfire.configure(
        token=key,
        send_to_logfire="if-token-present",
        service_name="patient-idgen",
        console=logfire.ConsoleOptions(
            min_log_level=min_log_level,
            show_project_link=False,
            output=sys.stderr,
        ),
        min_level=min_log_level,
    )
    logfire.debug("Configured logfire", token=_mask_token(key))


__all__ = ["LogLevel", "init_logfire", "logfire_level"]
