# SPDX-License-Identifier: MIT
"""Tests for YAML and identifier file loading."""

from pathlib import Path

import pytest

from idgen.engine.configuration import ConfigurationService
from idgen.io_utils.loader import (
    apply_catalogue,
    load_app_config,
    load_catalogue,
    read_identifier_file,
)
from idgen.io_utils.store import InMemoryStateStore
from idgen.models import PoolSource

SHIPPED_CATALOGUE = Path(__file__).resolve().parents[1] / "config" / "catalogue.yaml"


def test_load_app_config(tmp_path) -> None:
    (tmp_path / "app.yaml").write_text("log_level: DEBUG\nremote_timeout: 2.5\n")
    config = load_app_config(tmp_path, "app.yaml")
    assert config.log_level == "DEBUG"
    assert config.remote_timeout == 2.5
    assert config.model_fields_set == {"log_level", "remote_timeout"}


def test_empty_document_uses_defaults(tmp_path) -> None:
    (tmp_path / "app.yaml").write_text("# nothing here\n")
    assert load_app_config(tmp_path, "app.yaml").allocation_attempts == 8


def test_malformed_yaml(tmp_path) -> None:
    (tmp_path / "app.yaml").write_text("log_level: [unclosed\n")
    with pytest.raises(RuntimeError, match="YAML"):
        load_app_config(tmp_path, "app.yaml")


def test_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_app_config(tmp_path, "absent.yaml")


def test_shipped_catalogue_applies_once() -> None:
    """Applying a catalogue twice only upserts its policies again."""
    config = ConfigurationService(InMemoryStateStore())
    catalogue = load_catalogue(SHIPPED_CATALOGUE)

    first = apply_catalogue(config, catalogue)
    assert first == {"identifier_types": 3, "sources": 3, "policies": 4}
    pool = config.get_source("national-id-pool")
    assert isinstance(pool, PoolSource)
    assert len(config.store.list_pool_entries(pool.id)) == 3

    second = apply_catalogue(config, catalogue)
    assert second == {"identifier_types": 0, "sources": 0, "policies": 4}
    assert len(config.list_policies()) == 4


def test_catalogue_matches_existing_records_by_name(tmp_path) -> None:
    config = ConfigurationService(InMemoryStateStore())
    config.create_identifier_type({"id": "legacy-mrn", "name": "MRN"})
    path = tmp_path / "catalogue.yaml"
    path.write_text(
        "identifier_types:\n"
        "  - id: mrn\n"
        "    name: mrn\n",
        encoding="utf-8",
    )
    assert apply_catalogue(config, load_catalogue(path))["identifier_types"] == 0
    assert [t.id for t in config.list_identifier_types()] == ["legacy-mrn"]


def test_invalid_catalogue(tmp_path) -> None:
    path = tmp_path / "catalogue.yaml"
    path.write_text(
        "sources:\n"
        "  - kind: sequential\n"
        "    name: Broken\n"
        "    identifier_type_id: mrn\n"
        "    base_character_set: '0'\n",
        encoding="utf-8",
    )
    with pytest.raises(RuntimeError):
        load_catalogue(path)


def test_read_identifier_file(tmp_path) -> None:
    path = tmp_path / "ids.txt"
    path.write_text("# batch 7\nVIP001\n\n  VIP002  \n   # note\nVIP003\n")
    assert read_identifier_file(path) == ["VIP001", "VIP002", "VIP003"]
