"""Application entry point for the Nomi bridge."""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.sqlite_storage import SQLiteStorage
from bridge import open_bridge
from client import CredentialResolver
from core.config import BridgeOptions, Credentials, PollConfig, RoomConfig
from core.errors import ConfigurationError
from core.models import PollReport
from core.scheduler import PollScheduler

NAME = "NOMI BRIDGE"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def add_secrets(self, secrets: list[str]) -> None:
        """Mask more values, e.g. keys resolved from the credential table."""

        merged = set(self._secrets) | {secret for secret in secrets if secret}
        # Longest first so a key containing another is masked whole.
        self._secrets = sorted(merged, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


_REDACTOR: Optional[_RedactingFormatter] = None


def _redact_credentials(credentials: Credentials) -> None:
    if _REDACTOR is not None:
        _REDACTOR.add_secrets([credentials.nomi_api_key, credentials.llm_api_key])


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    global _REDACTOR
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)
    if config.get("redact", {}).get("enabled", False):
        _REDACTOR = formatter

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/nomi_bridge.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _bridge_options() -> BridgeOptions:
    return BridgeOptions(
        nomi_base_url=settings.NOMI_BASE_URL,
        llm_base_url=settings.LLM_BASE_URL,
        http_timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
        poll=PollConfig(
            mode=settings.POLL_MODE,
            max_answer_chars=settings.POLL_MAX_ANSWER_CHARS,
            fallback_prompt=settings.POLL_FALLBACK_PROMPT,
            poll_all_when_unselected=settings.POLL_ALL_WHEN_UNSELECTED,
        ),
        room=RoomConfig(
            name=settings.ROOM_NAME,
            backchanneling_enabled=settings.ROOM_BACKCHANNELING,
            note=settings.ROOM_NOTE,
        ),
    )


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


async def _poll_pass(
    storage: SQLiteStorage,
    resolver: CredentialResolver,
    options: BridgeOptions,
    user_id: Optional[str],
) -> PollReport:
    # Credentials are resolved per tick so key changes apply without a restart.
    credentials = resolver.resolve(user_id)
    async with open_bridge(credentials, storage, options) as bridge:
        return await bridge.orchestrator.run_pass()


def _run(user_id: Optional[str]) -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting nomi bridge poller")

    storage = _open_storage()
    resolver = CredentialResolver(
        storage, settings.LLM_DEFAULT_MODEL, on_resolved=_redact_credentials
    )
    options = _bridge_options()
    # Validate credentials up front; later ticks re-resolve them.
    resolver.resolve(user_id)

    async def _main() -> None:
        scheduler = PollScheduler(
            lambda: _poll_pass(storage, resolver, options, user_id),
            settings.POLL_INTERVAL_SECONDS,
            context=user_id or "default",
        )
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        scheduler.start()
        logger.info("Polling every %ss. Press Ctrl+C to stop.", settings.POLL_INTERVAL_SECONDS)
        await stop.wait()
        logger.info("Stopping after the current pass...")
        await scheduler.stop()

    asyncio.run(_main())


def _poll_once(user_id: Optional[str]) -> None:
    _configure_logging()
    storage = _open_storage()
    resolver = CredentialResolver(
        storage, settings.LLM_DEFAULT_MODEL, on_resolved=_redact_credentials
    )
    report = asyncio.run(_poll_pass(storage, resolver, _bridge_options(), user_id))
    print(json.dumps(report.to_dict(), indent=2))


def _serve() -> None:
    import uvicorn

    from adapters.http_api import create_app

    _print_banner()
    _configure_logging()
    storage = _open_storage()
    options = _bridge_options()
    resolver = CredentialResolver(
        storage, settings.LLM_DEFAULT_MODEL, on_resolved=_redact_credentials
    )
    app = create_app(
        storage=storage,
        resolver=resolver,
        bridge_opener=functools.partial(open_bridge, storage=storage, options=options),
        interval_seconds=settings.POLL_INTERVAL_SECONDS,
        scheduler_enabled=settings.SCHEDULER_ENABLED,
    )
    uvicorn.run(app, host=settings.SERVER_HOST, port=settings.SERVER_PORT, log_config=None)


def _save_keys(args: argparse.Namespace) -> None:
    if not any([args.nomi_key, args.llm_key, args.model]):
        raise SystemExit("Nothing to save: pass --nomi-key, --llm-key and/or --model")
    storage = _open_storage()
    storage.save_credentials(
        args.user,
        nomi_api_key=args.nomi_key,
        llm_api_key=args.llm_key,
        llm_model=args.model,
    )
    print(f"Credentials saved for {args.user}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="nomi-bridge")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Poll on a fixed interval until stopped")
    run_parser.add_argument("--user", help="Use the stored credentials of this user")

    poll_parser = subparsers.add_parser("poll", help="Run one poll pass and print the report")
    poll_parser.add_argument("--user", help="Use the stored credentials of this user")

    subparsers.add_parser("serve", help="Start the HTTP bridge")

    keys_parser = subparsers.add_parser("keys", help="Store API keys for a user")
    keys_parser.add_argument("--user", required=True)
    keys_parser.add_argument("--nomi-key")
    keys_parser.add_argument("--llm-key")
    keys_parser.add_argument("--model")

    args = parser.parse_args(argv)
    try:
        if args.command == "serve":
            _serve()
            return
        if args.command == "poll":
            _poll_once(args.user)
            return
        if args.command == "keys":
            _save_keys(args)
            return
        _run(getattr(args, "user", None))
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc


if __name__ == "__main__":
    main()
