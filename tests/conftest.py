# SPDX-License-Identifier: MIT
"""Shared fixtures for the identifier engine tests.

Logfire is configured locally so spans, logs and metrics are recorded in
process without console output or export.
"""

from __future__ import annotations

from typing import Any

import logfire
import pytest

from idgen.engine.configuration import ConfigurationService
from idgen.engine.retry import RetryPolicy
from idgen.io_utils.store import InMemoryStateStore
from idgen.models import IdentifierType
from idgen.observability import telemetry
from idgen.runtime.environment import RuntimeEnv

logfire.configure(send_to_logfire=False, console=False)

FAST_RETRY = RetryPolicy(attempts=8, base=0.0001, cap=0.001, jitter=0.0)


@pytest.fixture(autouse=True)
def _reset_globals():
    """Start every test with empty telemetry and no runtime environment."""

    telemetry.reset()
    RuntimeEnv.reset()
    yield
    RuntimeEnv.reset()
    telemetry.reset()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def config(store: InMemoryStateStore) -> ConfigurationService:
    return ConfigurationService(store)


@pytest.fixture
def mrn_type(config: ConfigurationService) -> IdentifierType:
    """Plain numeric identifier type without a check digit."""

    return config.create_identifier_type({"id": "mrn", "name": "MRN"})


def sequential_spec(**overrides: Any) -> dict[str, Any]:
    """Return a valid sequential source spec for the ``mrn`` type."""

    spec: dict[str, Any] = {
        "id": "mrn-seq",
        "kind": "sequential",
        "name": "MRN sequence",
        "identifier_type_id": "mrn",
        "prefix": "MRN-",
        "min_length": 8,
        "max_length": 8,
        "first_identifier_base": 1,
    }
    spec.update(overrides)
    return spec
