"""Command line entry points: run a suite remotely, list its tests, or act as a worker."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from pathlib import Path
from typing import List, Optional

import uvicorn

from zen.config import ZenConfig, load_config
from zen.services.artifacts import ArtifactStore, set_artifact_store, sync_session
from zen.services.dispatch import DispatchController
from zen.services.invoke import RemoteInvocationError, build_invoker
from zen.services.journal import RuntimeJournal
from zen.services.report import exit_code, log_summary, write_junit
from zen.services import worker

LOGGER = logging.getLogger("zen.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="zen", description="Distributed browser test runner")
    sub = parser.add_subparsers(dest="command")

    remote = sub.add_parser("remote", help="Run the whole suite on remote workers")
    remote.add_argument("config", type=Path, help="Path to the zen JSON config")
    remote.add_argument("--max-attempts", type=int, default=None, help="Attempts per test before it counts as failed")
    remote.add_argument("--junit", type=Path, default=None, help="Write failing tests as JUnit XML to this path")
    remote.add_argument("--debug", action="store_true", help="Verbose logging, including sync status")

    listing = sub.add_parser("list", help="Print the suite's test names")
    listing.add_argument("config", type=Path, help="Path to the zen JSON config")
    listing.add_argument("--debug", action="store_true")

    work = sub.add_parser("worker", help="Run one worker function (container entrypoint)")
    work.add_argument("function", help="workTests or listTests")
    work.add_argument("payload", help="JSON payload file")
    return parser


class GatewayServer:
    """Serves the asset gateway and worker API in a background thread."""

    def __init__(self, port: int) -> None:
        self._server = uvicorn.Server(
            uvicorn.Config("zen.main:app", host="0.0.0.0", port=port, log_level="warning")
        )
        self._thread = threading.Thread(target=self._server.run, name="zen-gateway", daemon=True)

    def start(self, timeout: float = 10.0) -> None:
        self._thread.start()
        deadline = time.time() + timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.time() > deadline:
                raise RuntimeError("Gateway server failed to start")
            time.sleep(0.05)

    def stop(self) -> None:
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout=5)


def _prepare(config: ZenConfig, debug: bool) -> GatewayServer:
    store = ArtifactStore(config.asset_root)
    set_artifact_store(store)
    t0 = time.time()
    LOGGER.info("Syncing assets")
    sync_session(config, store, on_status=LOGGER.info if debug else LOGGER.debug)
    LOGGER.info("Took %sms", int((time.time() - t0) * 1000))
    gateway = GatewayServer(config.port)
    if config.invoker != "http":
        gateway.start()
    return gateway


def _controller(config: ZenConfig, max_attempts: int) -> DispatchController:
    return DispatchController(
        RuntimeJournal.for_directory(config.tmp_dir),
        build_invoker(config),
        concurrency_limit=config.concurrency,
        max_attempts=max_attempts,
        max_rounds=config.max_rounds,
        session_id=config.session_id,
        work_tests_function=config.work_tests_function,
        list_tests_function=config.list_tests_function,
    )


def run_remote(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    max_attempts = args.max_attempts or config.max_attempts
    gateway = _prepare(config, args.debug)
    try:
        controller = _controller(config, max_attempts)
        t0 = time.time()
        LOGGER.info("Getting test names")
        tests = controller.list_tests()
        LOGGER.info("Took %sms", int((time.time() - t0) * 1000))

        t0 = time.time()
        outcomes = controller.run(tests)
        log_summary(outcomes, time.time() - t0)
        if args.junit:
            write_junit(outcomes, args.junit)
        return exit_code(outcomes)
    except RemoteInvocationError as exc:
        LOGGER.error("Remote run failed: %s", exc)
        return 1
    finally:
        gateway.stop()


def list_tests(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    gateway = _prepare(config, args.debug)
    try:
        names = _controller(config, config.max_attempts).list_tests()
    except RemoteInvocationError as exc:
        LOGGER.error("Listing tests failed: %s", exc)
        return 1
    finally:
        gateway.stop()
    for name in names:
        print(name)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == "worker":
        return worker.main([args.function, args.payload])

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "remote":
        return run_remote(args)
    return list_tests(args)


if __name__ == "__main__":
    sys.exit(main())
