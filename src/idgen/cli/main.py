# SPDX-License-Identifier: MIT
"""Command line interface for the identifier engine.

Every subcommand prints one JSON document to ``stdout``. Engine failures are
printed to ``stderr`` as JSON carrying the error ``code`` and the user-facing
message, and the process exits with status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, Sequence

import logfire

from idgen import __version__
from idgen.engine.retry import Deadline
from idgen.errors import ConfigurationError, FieldError, IdentifierEngineError, user_message
from idgen.io_utils.loader import read_identifier_file
from idgen.models import PoolSource
from idgen.observability import telemetry
from idgen.observability.monitoring import init_logfire, logfire_level
from idgen.runtime.environment import RuntimeEnv
from idgen.runtime.settings import Settings, load_settings

LOG_LEVELS = ["fatal", "error", "warn", "notice", "info", "debug", "trace"]

Command = Callable[[argparse.Namespace, RuntimeEnv], Awaitable[Any]]


def _print_version() -> None:
    """Print the installed package version."""
    try:
        pkg_version = version("patient-idgen")
    except PackageNotFoundError:  # pragma: no cover - fallback for source checkouts
        pkg_version = __version__
    print(f"patient-idgen {pkg_version}")


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _configure_logging(args: argparse.Namespace, settings: Settings) -> None:
    """Configure Logfire from the settings level and verbosity flags."""
    index = LOG_LEVELS.index(logfire_level(settings.log_level)) + args.verbose - args.quiet
    index = max(0, min(len(LOG_LEVELS) - 1, index))
    init_logfire(settings.logfire_token, LOG_LEVELS[index])  # type: ignore[arg-type]


def _deadline(args: argparse.Namespace) -> Deadline | None:
    timeout = getattr(args, "timeout", None)
    return Deadline(timeout) if timeout else None


async def _cmd_generate(args: argparse.Namespace, env: RuntimeEnv) -> dict[str, Any]:
    result = await env.generation.generate(args.type, args.location, _deadline(args))
    return result.model_dump(mode="json")


async def _cmd_commit(args: argparse.Namespace, env: RuntimeEnv) -> dict[str, Any]:
    result = await env.generation.commit_reservation(args.token)
    return result.model_dump(mode="json")


async def _cmd_release(args: argparse.Namespace, env: RuntimeEnv) -> dict[str, Any]:
    value = await env.generation.release_reservation(args.token)
    return {"value": value, "status": "released"}


async def _cmd_check(args: argparse.Namespace, env: RuntimeEnv) -> dict[str, Any]:
    if args.record:
        record = await env.generation.record_manual_identifier(
            args.type, args.value, args.location
        )
        return {"valid": True, "recorded": record.model_dump(mode="json")}
    await env.generation.validate_manual_identifier(args.type, args.value, args.location)
    return {"valid": True, "value": args.value}


async def _cmd_pool_upload(args: argparse.Namespace, env: RuntimeEnv) -> dict[str, Any]:
    source = env.config.get_source(args.source)
    if not isinstance(source, PoolSource):
        raise ConfigurationError(
            f"Source {source.name!r} is not a pool source",
            [FieldError("source_id", "must reference a pool source")],
        )
    added = env.pools.add_identifiers(source, read_identifier_file(args.file))
    stats = env.pools.stats(source)
    return {"added": added, **stats.model_dump(), "total": stats.total}


async def _cmd_sweep(args: argparse.Namespace, env: RuntimeEnv) -> dict[str, Any]:
    released = env.pools.sweep()
    if not args.watch:
        return {"released": released}
    env.start_sweeper()
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logfire.info("Reservation sweeper stopped")
    return {"released": released, "status": "stopped"}


def _add_common_args(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Add options shared across subcommands."""
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (repeatable)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease logging verbosity (repeatable)",
    )
    return parser


def _build_parser() -> argparse.ArgumentParser:
    """Return an argument parser configured with subcommands."""
    parser = argparse.ArgumentParser(
        prog="idgen",
        description=(
            "Generate, reserve and validate patient identifiers from sequential,"
            " pool and remote sources."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the patient-idgen version and exit.",
    )
    common = _add_common_args(argparse.ArgumentParser(add_help=False))
    subparsers = parser.add_subparsers(dest="command")

    generate = subparsers.add_parser(
        "generate", parents=[common], help="Generate an identifier"
    )
    generate.add_argument("--type", required=True, help="Identifier type id")
    generate.add_argument("--location", default=None, help="Registration location id")
    generate.add_argument(
        "--timeout", type=float, default=None, help="Seconds before giving up"
    )
    generate.set_defaults(func=_cmd_generate)

    commit = subparsers.add_parser(
        "commit", parents=[common], help="Commit a pool reservation"
    )
    commit.add_argument("token", help="Reservation token returned by generate")
    commit.set_defaults(func=_cmd_commit)

    release = subparsers.add_parser(
        "release", parents=[common], help="Release a pool reservation"
    )
    release.add_argument("token", help="Reservation token returned by generate")
    release.set_defaults(func=_cmd_release)

    check = subparsers.add_parser(
        "check", parents=[common], help="Validate a manually entered identifier"
    )
    check.add_argument("--type", required=True, help="Identifier type id")
    check.add_argument("--location", default=None, help="Registration location id")
    check.add_argument(
        "--record", action="store_true", help="Record the value as issued when valid"
    )
    check.add_argument("value", help="Identifier to validate")
    check.set_defaults(func=_cmd_check)

    upload = subparsers.add_parser(
        "pool-upload", parents=[common], help="Load identifiers into a pool source"
    )
    upload.add_argument("source", help="Pool source id")
    upload.add_argument("file", type=Path, help="File with one identifier per line")
    upload.set_defaults(func=_cmd_pool_upload)

    sweep = subparsers.add_parser(
        "sweep", parents=[common], help="Release expired pool reservations"
    )
    sweep.add_argument(
        "--watch",
        action="store_true",
        help="Keep sweeping every sweep_interval seconds until interrupted",
    )
    sweep.set_defaults(func=_cmd_sweep)
    return parser


def _run_async_with_signals(coro: Coroutine[Any, Any, Any]) -> Any:
    """Execute ``coro`` and cancel on SIGINT or SIGTERM.

    Raises:
        asyncio.CancelledError: Propagated when a termination signal is received.
    """

    async def _runner() -> Any:
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(coro)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)
        try:
            return await task
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    return asyncio.run(_runner())


async def _dispatch(func: Command, args: argparse.Namespace, env: RuntimeEnv) -> Any:
    try:
        return await func(args, env)
    finally:
        await env.aclose()


def _execute_subcommand(args: argparse.Namespace, settings: Settings) -> None:
    """Initialise runtime and dispatch to the chosen subcommand."""
    _configure_logging(args, settings)
    telemetry.reset()
    try:
        env = RuntimeEnv.initialize(settings)
        result = _run_async_with_signals(_dispatch(args.func, args, env))
    except IdentifierEngineError as exc:
        payload: dict[str, Any] = {
            "error": exc.code,
            "message": user_message(exc),
            "detail": str(exc),
            "retryable": exc.retryable,
        }
        if isinstance(exc, ConfigurationError) and exc.errors:
            payload["fields"] = [
                {"field": err.field, "message": err.message} for err in exc.errors
            ]
        print(json.dumps(payload, indent=2), file=sys.stderr)
        raise SystemExit(1) from exc
    finally:
        telemetry.print_summary(sys.stderr)
        logfire.force_flush()
        RuntimeEnv.reset()
    _emit(result)


def main(argv: Sequence[str] | None = None) -> None:
    """Parse arguments and dispatch to the requested subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.version:
        _print_version()
        return
    if args.command is None:
        parser.print_help()
        raise SystemExit(1)
    try:
        settings = load_settings(args.config)
    except RuntimeError as exc:
        print(json.dumps({"error": "CONFIGURATION_ERROR", "message": str(exc)}), file=sys.stderr)
        raise SystemExit(2) from exc
    _execute_subcommand(args, settings)


if __name__ == "__main__":
    # Allow module to be executed as a standalone script
    main()
