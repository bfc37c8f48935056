# SPDX-License-Identifier: MIT
"""End-to-end tests for the generation façade."""

import asyncio

import httpx
import pytest
from conftest import FAST_RETRY, sequential_spec

from idgen.engine.remote import RemoteSourceClient
from idgen.engine.retry import Deadline, RetryPolicy
from idgen.engine.sequence import SequenceAllocator
from idgen.engine.service import GenerationService
from idgen.errors import (
    CapacityExhausted,
    GeneratedValueInvalid,
    IdentifierEngineError,
    InvalidIdentifier,
    LocationRequired,
    ManualEntryRequired,
    NoPolicyConfigured,
    NotFound,
    PoolExhausted,
    RemoteUnavailable,
    ReservationNotFound,
)
from idgen.observability import telemetry
from idgen.utils.error_handler import ErrorHandler


class RecordingHandler(ErrorHandler):
    def __init__(self) -> None:
        self.seen: list[tuple[str, Exception]] = []

    def handle(self, message: str, exc: Exception | None = None) -> None:
        self.seen.append((message, exc))


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def service(store, handler) -> GenerationService:
    return GenerationService(
        store,
        sequences=SequenceAllocator(store, retry=FAST_RETRY),
        error_handler=handler,
    )


@pytest.fixture
def mrn_sequence(config, mrn_type):
    source = config.create_identifier_source(sequential_spec())
    config.upsert_policy("mrn", None, source.id)
    return source


def _pool(config, identifiers, **extra):
    spec = {
        "id": "vip",
        "kind": "pool",
        "name": "VIP pool",
        "identifier_type_id": "mrn",
        "identifiers": identifiers,
    }
    spec.update(extra)
    source = config.create_identifier_source(spec)
    config.upsert_policy("mrn", None, source.id)
    return source


@pytest.mark.asyncio
async def test_sequential_generation_is_committed_and_logged(
    service, store, mrn_sequence
) -> None:
    first = await service.generate("mrn")
    second = await service.generate("mrn")
    assert (first.value, second.value) == ("MRN-0001", "MRN-0002")
    assert first.status == "committed"
    assert first.sequence_number == 1
    assert [r.value for r in store.list_issued("mrn")] == ["MRN-0001", "MRN-0002"]
    assert telemetry.snapshot()["mrn-seq"].generated == 2


@pytest.mark.asyncio
async def test_letter_alphabet_starts_at_zero_symbol(service, config, mrn_type) -> None:
    config.create_identifier_source(
        sequential_spec(
            prefix="",
            base_character_set="ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789",
            min_length=3,
            max_length=3,
            first_identifier_base=0,
        )
    )
    config.upsert_policy("mrn", None, "mrn-seq")
    assert (await service.generate("mrn")).value == "AAA"
    assert (await service.generate("mrn")).value == "AAB"


@pytest.mark.asyncio
async def test_check_digit_is_appended(service, config) -> None:
    config.create_identifier_type(
        {"id": "luhn", "name": "Luhn", "check_digit_algorithm": "MOD10"}
    )
    config.create_identifier_source(
        sequential_spec(
            id="luhn-seq",
            name="Luhn sequence",
            identifier_type_id="luhn",
            prefix="",
            min_length=5,
            max_length=5,
        )
    )
    config.upsert_policy("luhn", None, "luhn-seq")
    generated = await service.generate("luhn")
    assert generated.value == "000018"
    await service.validate_manual_identifier("luhn", "000026")
    with pytest.raises(InvalidIdentifier):
        await service.validate_manual_identifier("luhn", "000019")


@pytest.mark.asyncio
async def test_manual_only_location(service, config, mrn_sequence) -> None:
    """A location override disabling generation forces manual entry there only."""
    config.upsert_policy(
        "mrn", "clinic-x", "mrn-seq", automatic_generation=False, manual_entry=True
    )
    with pytest.raises(ManualEntryRequired):
        await service.generate("mrn", "clinic-x")
    generated = await service.generate("mrn", "clinic-y")
    assert generated.value == "MRN-0001"
    assert generated.location_id == "clinic-y"


@pytest.mark.asyncio
async def test_location_required(service, config) -> None:
    config.create_identifier_type(
        {
            "id": "clinic",
            "name": "Clinic number",
            "location_behavior": "REQUIRED",
            "uniqueness_behavior": "UNIQUE_PER_LOCATION",
        }
    )
    config.create_identifier_source(
        sequential_spec(id="clinic-seq", name="Clinic", identifier_type_id="clinic")
    )
    config.upsert_policy("clinic", None, "clinic-seq")
    with pytest.raises(LocationRequired):
        await service.generate("clinic")
    assert (await service.generate("clinic", "ward-1")).value == "MRN-0001"


@pytest.mark.asyncio
async def test_missing_policy_is_reported(service, handler, mrn_type) -> None:
    with pytest.raises(NoPolicyConfigured):
        await service.generate("mrn")
    assert isinstance(handler.seen[0][1], NoPolicyConfigured)
    assert telemetry.snapshot()["unresolved"].errors == {"NO_POLICY_CONFIGURED": 1}


@pytest.mark.asyncio
async def test_invalid_generated_value_is_not_reused(
    service, store, config, mrn_sequence, handler
) -> None:
    config.update_identifier_type("mrn", {"format_regex": r"MRN-\d{3}"})
    with pytest.raises(GeneratedValueInvalid) as info:
        await service.generate("mrn")
    assert info.value.value == "MRN-0001"
    assert store.get_counter("mrn-seq") == 1
    assert store.list_issued() == []
    assert "validation_failed" in handler.seen[0][0]

    config.update_identifier_type("mrn", {"format_regex": r"MRN-\d{4}"})
    assert (await service.generate("mrn")).value == "MRN-0002"


@pytest.mark.asyncio
async def test_skip_automatic_assignment_bypasses_validation(
    service, config, mrn_type
) -> None:
    config.update_identifier_type("mrn", {"format_regex": r"\d+"})
    config.create_identifier_source(sequential_spec(skip_automatic_assignment=True))
    config.upsert_policy("mrn", None, "mrn-seq")
    assert (await service.generate("mrn")).value == "MRN-0001"


@pytest.mark.asyncio
async def test_capacity_exhaustion_is_source_unavailable(
    service, config, mrn_type, handler
) -> None:
    config.create_identifier_source(
        sequential_spec(prefix="", min_length=1, max_length=1)
    )
    config.upsert_policy("mrn", None, "mrn-seq")
    values = [(await service.generate("mrn")).value for _ in range(9)]
    assert values[-1] == "9"
    with pytest.raises(CapacityExhausted):
        await service.generate("mrn")
    assert "source_unavailable" in handler.seen[-1][0]


@pytest.mark.asyncio
async def test_pool_values_are_reserved_until_committed(service, store, config, mrn_type) -> None:
    _pool(config, ["VIP001", "VIP002"])
    first = await service.generate("mrn")
    assert first.status == "reserved"
    assert first.reservation_token
    assert store.list_issued() == []

    committed = await service.commit_reservation(first.reservation_token)
    assert committed.value == "VIP001"
    assert committed.identifier_type_id == "mrn"
    assert [r.value for r in store.list_issued("mrn")] == ["VIP001"]
    with pytest.raises(ReservationNotFound):
        await service.commit_reservation(first.reservation_token)


@pytest.mark.asyncio
async def test_committed_pool_value_keeps_its_location(service, store, config, mrn_type) -> None:
    config.update_identifier_type("mrn", {"uniqueness_behavior": "UNIQUE_PER_LOCATION"})
    _pool(config, ["VIP001", "VIP002"])
    reserved = await service.generate("mrn", "ward-x")
    committed = await service.commit_reservation(reserved.reservation_token)
    assert committed.location_id == "ward-x"
    assert [(r.value, r.location_id) for r in store.list_issued("mrn")] == [
        ("VIP001", "ward-x")
    ]
    with pytest.raises(InvalidIdentifier, match="already in use"):
        await service.validate_manual_identifier("mrn", "VIP001", "ward-x")
    await service.validate_manual_identifier("mrn", "VIP001", "ward-y")


@pytest.mark.asyncio
async def test_released_pool_value_is_handed_out_again(service, config, mrn_type) -> None:
    _pool(config, ["VIP001", "VIP002"])
    first = await service.generate("mrn")
    second = await service.generate("mrn")
    with pytest.raises(PoolExhausted):
        await service.generate("mrn")
    assert await service.release_reservation(first.reservation_token) == "VIP001"
    again = await service.generate("mrn")
    assert (second.value, again.value) == ("VIP002", "VIP001")


@pytest.mark.asyncio
async def test_invalid_pool_value_is_released(service, config, mrn_type) -> None:
    source = _pool(config, ["BAD-1", "VIP002"])
    config.update_identifier_type("mrn", {"format_regex": r"VIP\d{3}"})
    with pytest.raises(GeneratedValueInvalid):
        await service.generate("mrn")
    stats = service.pools.stats(source)
    assert (stats.available, stats.reserved) == (2, 0)


@pytest.mark.asyncio
async def test_remote_values_are_committed(store, config, mrn_type) -> None:
    def provider(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"identifiers": ["R-1", "R-2"]})

    remote = RemoteSourceClient(
        store,
        client=httpx.AsyncClient(transport=httpx.MockTransport(provider)),
        retry=RetryPolicy(attempts=2, base=0.0001, cap=0.001, jitter=0.0),
    )
    config.create_identifier_source(
        {
            "id": "remote",
            "kind": "remote",
            "name": "Remote",
            "identifier_type_id": "mrn",
            "url": "https://ids.example/generate",
            "batch_size": 2,
            "low_water_mark": 0,
        }
    )
    config.upsert_policy("mrn", None, "remote")
    service = GenerationService(store, remote=remote)
    generated = await service.generate("mrn")
    assert generated.value == "R-1"
    assert generated.status == "committed"
    assert [r.source_id for r in store.list_issued()] == ["remote"]


@pytest.mark.asyncio
async def test_remote_outage_is_retryable(store, config, mrn_type) -> None:
    remote = RemoteSourceClient(
        store,
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        ),
        retry=RetryPolicy(attempts=2, base=0.0001, cap=0.001, jitter=0.0),
    )
    config.create_identifier_source(
        {
            "id": "remote",
            "kind": "remote",
            "name": "Remote",
            "identifier_type_id": "mrn",
            "url": "https://ids.example/generate",
        }
    )
    config.upsert_policy("mrn", None, "remote")
    service = GenerationService(store, remote=remote)
    with pytest.raises(RemoteUnavailable) as info:
        await service.generate("mrn")
    assert info.value.retryable is True


@pytest.mark.asyncio
async def test_concurrent_generation_is_unique(service, mrn_sequence) -> None:
    results = await asyncio.gather(*(service.generate("mrn") for _ in range(50)))
    values = [r.value for r in results]
    assert len(set(values)) == 50
    assert sorted(r.sequence_number for r in results) == list(range(1, 51))


@pytest.mark.asyncio
async def test_expired_deadline_cancels(service, mrn_sequence) -> None:
    with pytest.raises(IdentifierEngineError) as info:
        await service.generate("mrn", deadline=Deadline(0))
    assert info.value.code == "CANCELLED"


@pytest.mark.asyncio
async def test_manual_identifier_validation(service, mrn_type) -> None:
    assert (await service.validate_manual_identifier("mrn", "ABC")).id == "mrn"
    with pytest.raises(InvalidIdentifier) as info:
        await service.validate_manual_identifier("mrn", "  ")
    assert info.value.reasons == ["identifier is blank"]
    with pytest.raises(NotFound):
        await service.validate_manual_identifier("passport", "ABC")


@pytest.mark.asyncio
async def test_generated_values_block_manual_duplicates(service, mrn_sequence) -> None:
    await service.generate("mrn")
    with pytest.raises(InvalidIdentifier, match="already in use"):
        await service.validate_manual_identifier("mrn", "MRN-0001")


@pytest.mark.asyncio
async def test_uniqueness_per_location(service, config) -> None:
    config.create_identifier_type(
        {
            "id": "clinic",
            "name": "Clinic number",
            "location_behavior": "REQUIRED",
            "uniqueness_behavior": "UNIQUE_PER_LOCATION",
        }
    )
    record = await service.record_manual_identifier("clinic", "C-1", "ward-1")
    assert record.manual is True
    await service.record_manual_identifier("clinic", "C-1", "ward-2")
    with pytest.raises(InvalidIdentifier):
        await service.record_manual_identifier("clinic", "C-1", "ward-1")
    with pytest.raises(InvalidIdentifier) as info:
        await service.validate_manual_identifier("clinic", "C-2")
    assert info.value.reasons == ["a location is required for this identifier type"]


@pytest.mark.asyncio
async def test_not_unique_types_accept_repeats(service, store, config) -> None:
    config.create_identifier_type(
        {"id": "family", "name": "Family folder", "uniqueness_behavior": "NOT_UNIQUE"}
    )
    await service.record_manual_identifier("family", "F-9")
    await service.record_manual_identifier("family", "F-9")
    assert len(store.list_issued("family")) == 2
