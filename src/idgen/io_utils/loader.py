# SPDX-License-Identifier: MIT
"""Utilities for loading configuration, catalogues and identifier files.

The helpers in this module centralise file-system access so callers receive
concise exceptions. YAML documents are validated against pydantic schemas;
parse and validation failures are reported through an
:class:`~idgen.utils.error_handler.ErrorHandler` and re-raised as
``RuntimeError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import logfire
import yaml
from pydantic import TypeAdapter, ValidationError

from idgen.models import AppConfig, Catalogue
from idgen.utils.error_handler import ErrorHandler, LoggingErrorHandler

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from idgen.engine.configuration import ConfigurationService

T = TypeVar("T")


def _read_file(path: Path, error_handler: ErrorHandler | None = None) -> str:
    """Return the contents of ``path``.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If the file cannot be read.
    """
    handler = error_handler or LoggingErrorHandler()
    with logfire.span("fs.read_text", attributes={"path": str(path)}):
        try:
            with path.open("r", encoding="utf-8") as file:
                text = file.read()
                logfire.debug("Read text file", path=str(path), bytes=len(text))
                return text
        except FileNotFoundError as exc:
            handler.handle(f"File not found: {path}", exc)
            raise
        except OSError as exc:
            handler.handle(f"Error reading file {path}", exc)
            raise RuntimeError(f"An error occurred while reading {path}: {exc}") from exc


def _read_yaml_file(
    path: Path,
    schema: type[T],
    error_handler: ErrorHandler | None = None,
) -> T:
    """Return YAML data loaded from ``path`` validated against ``schema``.

    An empty document validates as an empty mapping.
    """
    handler = error_handler or LoggingErrorHandler()
    with logfire.span("fs.read_yaml", attributes={"path": str(path)}):
        try:
            adapter = TypeAdapter(schema)
            return adapter.validate_python(yaml.safe_load(_read_file(path, handler)) or {})
        except FileNotFoundError:
            raise
        except (RuntimeError, ValidationError, yaml.YAMLError, ValueError) as exc:
            handler.handle(f"Error reading YAML file {path}", exc)
            raise RuntimeError(
                f"An error occurred while reading the YAML file: {exc}"
            ) from exc


def load_app_config(
    base_dir: Path | str = Path("config"),
    filename: Path | str = Path("app.yaml"),
) -> AppConfig:
    """Return application configuration from ``base_dir``."""
    path = Path(base_dir) / Path(filename)
    return _read_yaml_file(path, AppConfig)


def load_catalogue(path: Path | str, error_handler: ErrorHandler | None = None) -> Catalogue:
    """Return the identifier types, sources and policies declared in ``path``."""
    return _read_yaml_file(Path(path), Catalogue, error_handler)


def read_identifier_file(path: Path | str) -> list[str]:
    """Return one identifier per non-blank line, skipping ``#`` comments."""
    lines = _read_file(Path(path)).splitlines()
    return [
        line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")
    ]


def apply_catalogue(
    config: "ConfigurationService", catalogue: Catalogue
) -> dict[str, int]:
    """Create catalogue records that do not exist yet.

    Records are matched on ``id`` first and then on name, so applying the same
    catalogue twice is a no-op. Policies are upserted.

    Returns:
        Count of records created or upserted per kind.
    """
    created = {"identifier_types": 0, "sources": 0, "policies": 0}
    with logfire.span("loader.apply_catalogue"):
        type_names = {t.name.casefold() for t in config.list_identifier_types()}
        for identifier_type in catalogue.identifier_types:
            if (
                config.store.get_identifier_type(identifier_type.id) is not None
                or identifier_type.name.casefold() in type_names
            ):
                continue
            config.create_identifier_type(identifier_type)
            type_names.add(identifier_type.name.casefold())
            created["identifier_types"] += 1

        source_names = {s.name.casefold() for s in config.list_sources()}
        for source in catalogue.sources:
            if (
                config.store.get_source(source.id) is not None
                or source.name.casefold() in source_names
            ):
                continue
            config.create_identifier_source(source)
            source_names.add(source.name.casefold())
            created["sources"] += 1

        for policy in catalogue.policies:
            config.upsert_policy(
                policy.identifier_type_id,
                policy.location_id,
                policy.source_id,
                automatic_generation=policy.automatic_generation,
                manual_entry=policy.manual_entry,
            )
            created["policies"] += 1
        logfire.info("Applied identifier catalogue", **created)
    return created


__all__ = [
    "apply_catalogue",
    "load_app_config",
    "load_catalogue",
    "read_identifier_file",
]
