# SPDX-License-Identifier: MIT
"""Allocation engine: source strategies, policy resolution and the façade.

Exports:
    GenerationService: Issue validated identifiers for registration flows.
    ConfigurationService: Validated writes of types, sources and policies.
    PolicyResolver: Select the policy for a type and location.
    SequenceAllocator: Monotonic counters for sequential sources.
    PoolManager: Reservation lifecycle for pool sources.
    RemoteSourceClient: Buffered delegation to remote providers.
    Deadline: Time budget and cancellation signal for one call.
"""

from .configuration import ConfigurationService
from .policy import PolicyResolver
from .pool import PoolManager
from .remote import RemoteSourceClient
from .retry import CircuitBreaker, Deadline, RetryPolicy, with_retry
from .sequence import SequenceAllocator
from .service import GenerationService

__all__ = [
    "CircuitBreaker",
    "ConfigurationService",
    "Deadline",
    "GenerationService",
    "PolicyResolver",
    "PoolManager",
    "RemoteSourceClient",
    "RetryPolicy",
    "SequenceAllocator",
    "with_retry",
]
