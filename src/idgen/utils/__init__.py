# SPDX-License-Identifier: MIT
"""Error reporting shared by the engine, loaders and runtime."""

from .error_handler import ErrorHandler, LoggingErrorHandler

__all__ = ["ErrorHandler", "LoggingErrorHandler"]
