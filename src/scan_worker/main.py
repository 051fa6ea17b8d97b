from __future__ import annotations

import argparse
from dataclasses import replace
import logging
from pathlib import Path
import signal
from threading import Event

from scan_worker.config import Settings, get_settings
from scan_worker.coordinator import ScanCoordinator
from scan_worker.db import get_engine
from scan_worker.dispatch import DispatchLoop
from scan_worker.sandbox import DockerSandboxManager, SandboxError, build_sandbox_manager
from scan_worker.store import SqlJobStore

logger = logging.getLogger("scan_worker")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scan-worker",
        description="Claim queued scan jobs and run them in a sandboxed scanner",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one queued job and exit",
    )
    parser.add_argument(
        "--backend",
        choices=["docker", "process"],
        default=None,
        help="Override SANDBOX_BACKEND",
    )
    return parser


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_dispatch_loop(settings: Settings) -> DispatchLoop:
    store = SqlJobStore(get_engine())
    sandbox = build_sandbox_manager(settings)
    if isinstance(sandbox, DockerSandboxManager):
        try:
            sandbox.reap_orphans()
        except SandboxError as exc:
            logger.warning("orphan sandbox cleanup failed error=%s", exc)

    coordinator = ScanCoordinator(
        store=store,
        sandbox=sandbox,
        artifacts_root=Path(settings.artifacts_dir),
        scan_timeout_seconds=settings.scan_timeout_seconds,
        stop_grace_seconds=settings.stop_grace_seconds,
        max_line_bytes=settings.parser_max_line_bytes,
    )
    return DispatchLoop(
        store=store,
        runner=coordinator,
        poll_seconds=settings.poll_seconds,
        worker_id=settings.worker_id,
    )


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    if args.backend is not None:
        settings = replace(settings, sandbox_backend=args.backend)
    _configure_logging(settings)

    loop = build_dispatch_loop(settings)
    if args.once:
        processed = loop.run_once()
        logger.info("single pass finished processed=%s", processed)
        return

    stop_event = Event()

    def _request_stop(signum: int, _frame: object) -> None:
        logger.info("received signal=%s, finishing current job before exit", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    loop.run_forever(stop_event)


if __name__ == "__main__":
    main()
