"""
Operator CLI for the audit configuration file.

``audit-config init`` seeds a file from the environment defaults, ``validate``
loads and checks it, ``show``/``get``/``set`` inspect and edit it through the
manager, and ``watch`` keeps a manager running with hot reload until
interrupted, logging every notification it publishes.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from .core.config import ENVIRONMENTS
from .core.contracts import (
    BasePayload,
    ConfigChangeEvent,
    ConfigErrorPayload,
    ConfigReloadedPayload,
    ConfigTopic,
    HotReloadPayload,
)
from .core.errors import ConfigError, ConfigValidationError
from .integration import (
    AuditConfigRuntime,
    BootstrapOptions,
    initialize_audit_config,
    load_environment_settings,
    prepare_config_file,
)

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str, log_file: Path | None = None) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    if log_file is not None:
        _ensure_rotating_file_handler(log_file)


def _emit(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def _parse_value(raw: str) -> Any:
    """Interpret ``raw`` as JSON, falling back to a plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, shutting down.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def _log_notification(topic: str, payload: BasePayload) -> None:
    if isinstance(payload, ConfigChangeEvent):
        LOGGER.info(
            "%s: %s %r -> %r by %s",
            topic,
            payload.field,
            payload.previous_value,
            payload.new_value,
            payload.changed_by,
        )
    elif isinstance(payload, HotReloadPayload):
        LOGGER.info("%s: %s is now %r (%s)", topic, payload.path, payload.new_value, payload.source)
    elif isinstance(payload, ConfigReloadedPayload):
        LOGGER.info("%s: %d change(s): %s", topic, len(payload.changes), ", ".join(payload.paths))
    elif isinstance(payload, ConfigErrorPayload):
        LOGGER.error("%s: %s failed: %s", topic, payload.operation, payload.message)
    else:
        LOGGER.info("%s", topic)


def _options(args: argparse.Namespace, *, hot_reload: bool = False) -> BootstrapOptions:
    return BootstrapOptions(
        environment=args.environment,
        config_dir=args.config_dir,
        config_path=args.config_file,
        enable_hot_reload=hot_reload,
        check_interval=getattr(args, "interval", None) or 30.0,
        enable_secure_storage=args.secure,
    )


async def _run_init(args: argparse.Namespace) -> int:
    prepared = await prepare_config_file(_options(args), load_environment_settings())
    state = "Created" if prepared.created else "Kept existing"
    LOGGER.info("%s %s configuration at %s", state, prepared.environment, prepared.path)
    print(prepared.path)
    return 0


async def _with_runtime(
    args: argparse.Namespace, *, hot_reload: bool = False
) -> AuditConfigRuntime:
    return await initialize_audit_config(
        _options(args, hot_reload=hot_reload), load_environment_settings()
    )


async def _run_command(args: argparse.Namespace) -> int:
    if args.command == "init":
        return await _run_init(args)

    runtime = await _with_runtime(args, hot_reload=args.command == "watch")
    manager = runtime.manager
    try:
        if args.command == "validate":
            manager.validate_current_config()
            LOGGER.info(
                "Configuration %s is valid (version %s)",
                runtime.config_path,
                manager.get_version(),
            )
        elif args.command == "show":
            _emit(manager.export_config(include_sensitive=args.include_sensitive))
        elif args.command == "get":
            _emit(manager.get_config_value(args.path))
        elif args.command == "set":
            event = await manager.update_config(
                args.path, _parse_value(args.value), args.changed_by, args.reason
            )
            _emit(event.to_record())
        elif args.command == "watch":
            for topic in ConfigTopic:
                manager.bus.subscribe(topic, _log_notification)
            stop_event = asyncio.Event()
            _install_signal_handlers(stop_event)
            LOGGER.info("Watching %s. Press Ctrl+C to stop.", runtime.config_path)
            await stop_event.wait()
    finally:
        await runtime.close()
    return 0


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="audit-config", description="Inspect and manage the audit configuration file."
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help=(
            "Directory holding audit-config.<environment>.json "
            "(default: AUDIT_CONFIG_DIR or ./config)."
        ),
    )
    parser.add_argument(
        "--config-file",
        type=Path,
        default=None,
        help="Explicit configuration file path; overrides --config-dir.",
    )
    parser.add_argument(
        "--environment",
        "-e",
        default=None,
        help=f"One of {', '.join(ENVIRONMENTS)} (default: AUDIT_ENVIRONMENT or development).",
    )
    secure = parser.add_mutually_exclusive_group()
    secure.add_argument(
        "--secure",
        dest="secure",
        action="store_true",
        default=None,
        help="Force encrypted storage (default: enabled outside development).",
    )
    secure.add_argument(
        "--plaintext",
        dest="secure",
        action="store_false",
        help="Force plaintext storage.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Root log level (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this rotating file.",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init", help="Create the configuration file from defaults if missing.")
    commands.add_parser("validate", help="Load and validate the configuration file.")
    show = commands.add_parser("show", help="Print the configuration with secrets masked.")
    show.add_argument(
        "--include-sensitive", action="store_true", help="Print credentials unmasked."
    )
    get = commands.add_parser("get", help="Print one value by dotted path.")
    get.add_argument("path")
    set_ = commands.add_parser("set", help="Validate, apply, and persist one value.")
    set_.add_argument("path")
    set_.add_argument("value", help="JSON literal; anything that is not JSON is taken as a string.")
    set_.add_argument("--changed-by", default="cli", help="Actor recorded in the change event.")
    set_.add_argument("--reason", default=None, help="Free-text reason for the change.")
    watch = commands.add_parser("watch", help="Run with hot reload and log notifications.")
    watch.add_argument(
        "--interval", type=float, default=None, help="Polling interval in seconds (default: 30)."
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_file)
    try:
        return asyncio.run(_run_command(args))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigValidationError as exc:
        LOGGER.error("Configuration is invalid (%d issue(s)):", len(exc.issues))
        for issue in exc.issues:
            LOGGER.error("  %s", issue)
        return 2
    except (ConfigError, ValueError) as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("audit-config crashed.")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["configure_logging", "main", "parse_args"]
