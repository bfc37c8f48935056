# SPDX-License-Identifier: MIT
"""Tests for the ``idgen`` command line interface."""

import json
from pathlib import Path

import pytest

from idgen.cli import main as cli

CATALOGUE = """\
identifier_types:
  - id: mrn
    name: MRN
sources:
  - id: mrn-seq
    kind: sequential
    name: MRN sequence
    identifier_type_id: mrn
    prefix: MRN-
    min_length: 8
    max_length: 8
  - id: vip
    kind: pool
    name: VIP pool
    identifier_type_id: mrn
    identifiers: [VIP001]
policies:
  - identifier_type_id: mrn
    source_id: mrn-seq
  - identifier_type_id: mrn
    location_id: vip-lounge
    source_id: vip
"""


@pytest.fixture
def app_config(tmp_path, monkeypatch) -> Path:
    """Write a configuration with durable state and a small catalogue."""
    monkeypatch.setattr(cli, "init_logfire", lambda *args, **kwargs: None)
    monkeypatch.delenv("IDGEN_STATE_FILE", raising=False)
    monkeypatch.delenv("IDGEN_CATALOGUE_FILE", raising=False)
    catalogue = tmp_path / "catalogue.yaml"
    catalogue.write_text(CATALOGUE, encoding="utf-8")
    path = tmp_path / "app.yaml"
    path.write_text(
        f"state_file: {tmp_path / 'state.json'}\ncatalogue_file: {catalogue}\n",
        encoding="utf-8",
    )
    return path


def _run(capsys, *argv: str) -> dict:
    cli.main(list(argv))
    return json.loads(capsys.readouterr().out)


def _fail(capsys, *argv: str) -> tuple[int, dict]:
    with pytest.raises(SystemExit) as info:
        cli.main(list(argv))
    err = capsys.readouterr().err
    payload, _ = json.JSONDecoder().raw_decode(err)
    return info.value.code, payload


def test_generate_persists_counter(app_config, capsys) -> None:
    first = _run(capsys, "generate", "--config", str(app_config), "--type", "mrn")
    second = _run(capsys, "generate", "--config", str(app_config), "--type", "mrn")
    assert (first["value"], second["value"]) == ("MRN-0001", "MRN-0002")
    assert second["status"] == "committed"


def test_reserve_and_commit_pool_value(app_config, capsys) -> None:
    reserved = _run(
        capsys,
        "generate",
        "--config",
        str(app_config),
        "--type",
        "mrn",
        "--location",
        "vip-lounge",
    )
    assert reserved["status"] == "reserved"
    committed = _run(
        capsys, "commit", "--config", str(app_config), reserved["reservation_token"]
    )
    assert committed["value"] == "VIP001"

    code, payload = _fail(
        capsys, "generate", "--config", str(app_config), "--type", "mrn",
        "--location", "vip-lounge",
    )
    assert code == 1
    assert payload["error"] == "POOL_EXHAUSTED"
    assert payload["retryable"] is False


def test_release_returns_value(app_config, capsys) -> None:
    reserved = _run(
        capsys, "generate", "--config", str(app_config), "--type", "mrn",
        "--location", "vip-lounge",
    )
    released = _run(
        capsys, "release", "--config", str(app_config), reserved["reservation_token"]
    )
    assert released == {"value": "VIP001", "status": "released"}


def test_check_and_record_manual_value(app_config, capsys) -> None:
    assert _run(capsys, "check", "--config", str(app_config), "--type", "mrn", "M-1") == {
        "valid": True,
        "value": "M-1",
    }
    recorded = _run(
        capsys, "check", "--config", str(app_config), "--type", "mrn", "--record", "M-1"
    )
    assert recorded["recorded"]["manual"] is True

    code, payload = _fail(
        capsys, "check", "--config", str(app_config), "--type", "mrn", "M-1"
    )
    assert code == 1
    assert payload["error"] == "INVALID_IDENTIFIER"
    assert "already in use" in payload["message"]


def test_pool_upload(app_config, tmp_path, capsys) -> None:
    ids = tmp_path / "ids.txt"
    ids.write_text("VIP001\nVIP002\n# spare\nVIP003\n", encoding="utf-8")
    result = _run(capsys, "pool-upload", "--config", str(app_config), "vip", str(ids))
    assert result["added"] == 2
    assert result["available"] == 3
    assert result["total"] == 3

    code, payload = _fail(
        capsys, "pool-upload", "--config", str(app_config), "mrn-seq", str(ids)
    )
    assert payload["error"] == "CONFIGURATION_ERROR"
    assert payload["fields"] == [
        {"field": "source_id", "message": "must reference a pool source"}
    ]


def test_sweep(app_config, capsys) -> None:
    assert _run(capsys, "sweep", "--config", str(app_config)) == {"released": 0}


def test_unknown_type_is_reported(app_config, capsys) -> None:
    code, payload = _fail(capsys, "generate", "--config", str(app_config), "--type", "x")
    assert code == 1
    assert payload["error"] == "NOT_FOUND"
    assert payload["fields"][0]["field"] == "identifier_type_id"


def test_missing_config_file(tmp_path, capsys) -> None:
    code, payload = _fail(
        capsys, "sweep", "--config", str(tmp_path / "missing.yaml")
    )
    assert code == 2
    assert payload["error"] == "CONFIGURATION_ERROR"


def test_version(capsys) -> None:
    cli.main(["--version"])
    assert capsys.readouterr().out.startswith("patient-idgen ")


def test_no_command_prints_help(capsys) -> None:
    with pytest.raises(SystemExit) as info:
        cli.main([])
    assert info.value.code == 1
    assert "generate" in capsys.readouterr().out
