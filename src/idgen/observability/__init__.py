# SPDX-License-Identifier: MIT
"""Telemetry and monitoring helpers for the identifier engine.

Exports:
    init_logfire: Configure Pydantic Logfire instrumentation.
    record_generation: Record the outcome of one generation attempt.
    print_summary: Output a summary of collected metrics.
    reset: Clear stored metrics.
"""

from .monitoring import init_logfire
from .telemetry import print_summary, record_generation, reset

__all__ = [
    "init_logfire",
    "record_generation",
    "print_summary",
    "reset",
]
