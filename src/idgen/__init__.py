# SPDX-License-Identifier: MIT
"""Patient identifier generation and allocation engine."""

__version__ = "0.1.0"

__all__ = ["__version__"]
