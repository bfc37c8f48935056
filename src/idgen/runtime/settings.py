# SPDX-License-Identifier: MIT
"""Engine settings read from ``config/app.yaml`` and ``IDGEN_`` variables.

:class:`Settings` is a ``pydantic-settings`` model. Any key of the YAML file
can be overridden by the matching ``IDGEN_<KEY>`` environment variable, and
an optional ``.env`` file supplies values neither of them sets.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from idgen.io_utils.loader import load_app_config
from idgen.models import AppConfig

ENV_PREFIX = "IDGEN_"
DEFAULT_CONFIG = Path("config") / "app.yaml"


class Settings(BaseSettings):
    """Tunables for allocation, pools, remote sources and logging."""

    log_level: str = Field("INFO", description="Logging verbosity level.")
    logfire_token: str | None = Field(
        None, description="Logfire write token, if available.", repr=False
    )
    state_file: Path | None = Field(
        None, description="JSON state document; in-memory state when unset."
    )
    catalogue_file: Path | None = Field(
        None, description="YAML catalogue applied at start-up."
    )
    allocation_attempts: int = Field(
        8, ge=1, description="Counter compare-and-swap attempts before giving up."
    )
    retry_base_delay: float = Field(
        0.01, gt=0, description="Initial backoff delay in seconds."
    )
    retry_max_delay: float = Field(0.5, gt=0, description="Backoff ceiling in seconds.")
    sequence_batch_size: int = Field(
        1, ge=1, description="Sequence numbers reserved per durable counter write."
    )
    reservation_ttl: float = Field(
        300.0, gt=0, description="Seconds before a pool reservation expires."
    )
    sweep_interval: float = Field(
        30.0, gt=0, description="Seconds between expired reservation sweeps."
    )
    remote_timeout: float = Field(
        10.0, gt=0, description="Per-request timeout for remote sources in seconds."
    )
    remote_attempts: int = Field(3, ge=1, description="Remote fetch attempts.")
    circuit_failure_threshold: int = Field(
        5, ge=1, description="Consecutive remote failures that open the circuit."
    )
    circuit_cooldown: float = Field(
        30.0, gt=0, description="Seconds an open circuit waits before probing."
    )

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Return validated engine settings.

    Precedence, highest first: process environment, the YAML file, a ``.env``
    file in the working directory, then field defaults. The default
    ``config/app.yaml`` may be absent; an explicit ``config_path`` may not.

    Args:
        config_path: Optional path to a YAML configuration file.

    Returns:
        Settings merged from every source.

    Raises:
        RuntimeError: If the configuration file or values are invalid.
    """
    if config_path:
        cfg_path = Path(config_path)
        try:
            config = load_app_config(cfg_path.parent, cfg_path.name)
        except FileNotFoundError as exc:
            raise RuntimeError(f"Configuration file not found: {cfg_path}") from exc
    elif DEFAULT_CONFIG.exists():
        config = load_app_config()
    else:
        config = AppConfig()
    env_file_path = Path(".env")
    env_file = env_file_path if env_file_path.exists() else None
    # Init kwargs outrank the environment, so pass only keys it leaves unset.
    file_values = {
        key: value
        for key, value in config.model_dump(exclude_unset=True).items()
        if f"{ENV_PREFIX}{key.upper()}" not in os.environ
    }
    try:
        return Settings(_env_file=env_file, **file_values)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(map(str, error['loc']))}: {error['msg']}"
            for error in exc.errors()
        )
        raise RuntimeError(f"Invalid configuration: {details}") from exc


__all__ = ["DEFAULT_CONFIG", "ENV_PREFIX", "Settings", "load_settings"]
