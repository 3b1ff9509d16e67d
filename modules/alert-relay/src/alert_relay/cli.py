from __future__ import annotations

import argparse
import json
import signal
import sys
import time
from pathlib import Path
from typing import Any

from .config import JsonFileConfigSource, validate_config
from .errors import RelayError
from .feed import status_from_store, supported_feed_types
from .paths import data_root, default_config_path, ensure_data_dirs
from .relay import AlertRelay
from .run_logger import RelayLogger
from .scheduler import cluster_scheduler
from .sink import AlertSink, JsonlSink, WebhookSink
from .state import StateStore
from .store import Store


IDLE_SECONDS = 1.0


class RunSignalHandler:
    def __init__(self, logger: RelayLogger) -> None:
        self._logger = logger
        self._previous_handlers: dict[int, Any] = {}
        self.interrupted = False

    def __enter__(self) -> "RunSignalHandler":
        self._install(signal.SIGTERM)
        self._install(signal.SIGINT)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        return False

    def _install(self, signum: signal.Signals) -> None:
        self._previous_handlers[int(signum)] = signal.getsignal(signum)
        signal.signal(signum, self._handle)

    def _handle(self, signum, frame) -> None:
        self.interrupted = True
        name = signal.Signals(signum).name
        self._logger.log(f"relay interrupted signal={name}")
        raise KeyboardInterrupt


def _idle() -> None:
    time.sleep(IDLE_SECONDS)


def _build_sink(root: Path, args: argparse.Namespace) -> AlertSink:
    if args.sink == "webhook":
        return WebhookSink(args.webhook_url)
    return JsonlSink(root)


def cmd_validate(root: Path, args: argparse.Namespace) -> int:
    source = JsonFileConfigSource(args.config or default_config_path(root))
    try:
        config = source.load()
        validate_config(config, supported_feed_types(), source.load_settings())
    except RelayError as exc:
        print(f"configuration invalid: {exc}")
        return 1
    print(f"configuration valid feeds={len(config.feeds)}")
    return 0


def cmd_status(root: Path, args: argparse.Namespace) -> int:
    source = JsonFileConfigSource(args.config or default_config_path(root))
    try:
        config = source.load()
    except RelayError as exc:
        print(json.dumps({"error": str(exc)}))
        return 1
    store = Store(root=root)
    try:
        payload = {
            feed.id: {
                "name": feed.name,
                **status_from_store(StateStore(store, feed.id), feed.enabled).to_dict(),
            }
            for feed in config.feeds
        }
    finally:
        store.close()
    print(json.dumps(payload, indent=2))
    return 0


def cmd_run(root: Path, args: argparse.Namespace) -> int:
    source = JsonFileConfigSource(args.config or default_config_path(root))
    try:
        settings = source.load_settings()
    except RelayError as exc:
        print(f"configuration invalid: {exc}")
        return 1
    logger = RelayLogger(root, min_level=args.log_level)
    store = Store(root=root)
    scheduler = cluster_scheduler(
        store,
        owner=args.worker_id,
        lease_seconds=settings.job_lease_seconds,
        logger=logger,
    )
    relay = AlertRelay(source, store, _build_sink(root, args), scheduler, logger, settings=settings)
    try:
        with RunSignalHandler(logger):
            try:
                relay.activate()
            except RelayError as exc:
                logger.error(f"relay failed to start error={exc}")
                print(f"relay failed to start: {exc}")
                return 1
            print(f"relay running feeds={len(relay.registry)} data_root={root}")
            try:
                while True:
                    _idle()
            except KeyboardInterrupt:
                print("relay stopping")
    finally:
        relay.deactivate()
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="alert-relay")
    parser.add_argument("--data-root", type=Path, default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate")
    validate_parser.add_argument("--config", type=Path)
    validate_parser.set_defaults(func=cmd_validate)

    status_parser = subparsers.add_parser("status")
    status_parser.add_argument("--config", type=Path)
    status_parser.set_defaults(func=cmd_status)

    run_parser = subparsers.add_parser("run")
    run_parser.add_argument("--config", type=Path)
    run_parser.add_argument("--sink", choices=["jsonl", "webhook"], default="jsonl")
    run_parser.add_argument("--webhook-url")
    run_parser.add_argument("--worker-id")
    run_parser.add_argument(
        "--log-level", choices=["debug", "info", "warning", "error"], default="info"
    )
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    if args.command == "run" and args.sink == "webhook" and not args.webhook_url:
        parser.error("--webhook-url is required with --sink webhook")
    root = data_root(args.data_root)
    ensure_data_dirs(root)
    return args.func(root, args)


if __name__ == "__main__":
    sys.exit(main())
