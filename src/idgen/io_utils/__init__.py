# SPDX-License-Identifier: MIT
"""Durable state and file helpers.

Exports:
    StateStore: Storage contract required by the engine.
    InMemoryStateStore: Lock-guarded dictionary store.
    JSONFileStateStore: Store rewriting one JSON document atomically.
    load_app_config: Read ``config/app.yaml``.
    load_catalogue: Read a YAML identifier catalogue.
    apply_catalogue: Create missing catalogue records.
    read_identifier_file: Read identifiers for a pool upload.
"""

from .loader import apply_catalogue, load_app_config, load_catalogue, read_identifier_file
from .store import InMemoryStateStore, JSONFileStateStore, StateStore, StoreSnapshot

__all__ = [
    "InMemoryStateStore",
    "JSONFileStateStore",
    "StateStore",
    "StoreSnapshot",
    "apply_catalogue",
    "load_app_config",
    "load_catalogue",
    "read_identifier_file",
]
