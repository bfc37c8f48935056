# SPDX-License-Identifier: MIT
"""Command line entry points."""
