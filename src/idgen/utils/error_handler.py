# SPDX-License-Identifier: MIT
"""Reporting seam for engine failures."""

from __future__ import annotations

from abc import ABC, abstractmethod

import logfire

from idgen.errors import ConfigurationError, IdentifierEngineError


class ErrorHandler(ABC):
    """Receive failures the engine is about to raise or has absorbed.

    ``handle`` must not raise; callers keep propagating the original error.
    """

    @abstractmethod
    def handle(self, message: str, exc: Exception | None = None) -> None:
        """Record ``message`` with optional ``exc`` context."""


class LoggingErrorHandler(ErrorHandler):
    """Error handler that logs via ``logfire``.

    Engine errors are logged with their stable ``code``. Retryable failures
    are warnings; everything else, configuration problems included, is an
    error.
    """

    def handle(self, message: str, exc: Exception | None = None) -> None:
        """Log ``message`` at a level chosen from ``exc``."""
        if exc is None:
            logfire.error(message)
            return
        if isinstance(exc, IdentifierEngineError):
            attributes: dict[str, object] = {"code": exc.code, "retryable": exc.retryable}
            if isinstance(exc, ConfigurationError) and exc.errors:
                attributes["fields"] = [f"{err.field}: {err.message}" for err in exc.errors]
            log = logfire.warning if exc.retryable else logfire.error
            log(f"{message}: {exc}", **attributes)
        else:
            logfire.error(f"{message}: {exc}", error_type=type(exc).__name__)


__all__ = ["ErrorHandler", "LoggingErrorHandler"]
