from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from zen.config import WorkerSettings
from zen.constants import (
    DEADLINE_MESSAGE,
    FINAL_TEST_MARGIN_MS,
    RETRY_TIME_FACTOR,
    SHUTDOWN_MARGIN_MS,
    UNRESOLVED_MESSAGE,
)
from zen.schemas import (
    ListTestsRequest,
    ListTestsResponse,
    TestRequest,
    TestResult,
    WorkTestsRequest,
    WorkTestsResponse,
)
from zen.services.browser import BrowserManager, BrowserSessionError, get_browser_manager
from zen.services.session import BundleFaultError, InvocationDeadlineExceeded, SessionController

LOGGER = logging.getLogger("zen.worker")

RESULT_FILENAME = "result.json"


class DeadlineContext:
    """Remaining-time view of one invocation, mirroring a serverless runtime context.

    The clock runs from construction. ``start`` restarts it once the invocation
    actually holds the browser, so time spent queued behind other invocations
    sharing this process is not charged to the budget.
    """

    def __init__(
        self,
        budget_ms: int,
        log_stream_name: str = "local",
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._budget_ms = budget_ms
        self._expires_at = clock() + budget_ms / 1000.0
        self.log_stream_name = log_stream_name

    def start(self) -> None:
        self._expires_at = self._clock() + self._budget_ms / 1000.0

    def get_remaining_time_in_millis(self) -> int:
        return max(0, int((self._expires_at - self._clock()) * 1000))


class UnknownFunctionError(ValueError):
    pass


class WorkerExecutionLoop:
    """Runs assigned tests in one browser tab, deflaking failures within the time budget.

    The browser is acquired for the duration of one invocation and released
    when it returns, whatever happened inside.
    """

    def __init__(
        self,
        browser_manager: Optional[BrowserManager] = None,
        settings: Optional[WorkerSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = browser_manager or get_browser_manager()
        self._settings = settings or WorkerSettings.from_env()
        self._clock = clock

    @property
    def settings(self) -> WorkerSettings:
        return self._settings

    def new_context(self, budget_ms: int, log_stream_name: str) -> DeadlineContext:
        return DeadlineContext(budget_ms, log_stream_name, clock=self._clock)

    def session_url(self, session_id: str) -> str:
        return f"{self._settings.gateway_url.rstrip('/')}/sessions/{session_id}/index.html"

    def _open_controller(self, session_id: str) -> SessionController:
        return SessionController.open(
            self._manager,
            self.session_url(session_id),
            session_id=session_id,
            skip_hot_reload=self._settings.skip_hot_reload,
            fail_on_exceptions=self._settings.fail_on_exceptions,
            clock=self._clock,
        )

    def _deadlines(self, context: DeadlineContext) -> tuple[float, float]:
        remaining_ms = context.get_remaining_time_in_millis()
        hard_deadline = self._clock() + (remaining_ms - SHUTDOWN_MARGIN_MS) / 1000.0
        return hard_deadline, hard_deadline - FINAL_TEST_MARGIN_MS / 1000.0

    def work_tests(self, request: WorkTestsRequest, context: DeadlineContext) -> WorkTestsResponse:
        log_stream = context.log_stream_name
        results: Dict[str, List[TestResult]] = {name: [] for name in request.test_names}

        try:
            self._manager.acquire()
        except Exception as exc:
            LOGGER.exception("Browser launch failed")
            self._fill_missing(results, f"Browser launch failed: {exc}", log_stream)
            return WorkTestsResponse(results=results, log_stream_name=log_stream)

        context.start()
        hard_deadline, cutoff = self._deadlines(context)
        LOGGER.info(
            "Working %s tests (deflake limit %s, %sms budget)",
            len(request.test_names),
            request.deflake_limit,
            context.get_remaining_time_in_millis(),
        )
        controller: Optional[SessionController] = None
        try:
            controller = self._open_controller(request.session_id)
            controller.reload()
            self._run_attempts(controller, request, results, hard_deadline, cutoff, log_stream)
        except Exception as exc:
            LOGGER.exception("Worker session failed")
            self._fill_missing(results, f"Worker session failed: {exc}", log_stream)
        finally:
            if controller is not None:
                try:
                    controller.close()
                except BrowserSessionError as exc:
                    LOGGER.debug("Ignoring error while closing session: %s", exc)
            self._manager.release()

        self._fill_missing(results, UNRESOLVED_MESSAGE, log_stream)
        return WorkTestsResponse(results=results, log_stream_name=log_stream)

    def _run_attempts(
        self,
        controller: SessionController,
        request: WorkTestsRequest,
        results: Dict[str, List[TestResult]],
        hard_deadline: float,
        cutoff: float,
        log_stream: str,
    ) -> None:
        for attempt in range(1, request.deflake_limit + 1):
            remaining = [name for name, history in results.items() if not history or history[-1].failed]
            if not remaining:
                return
            if attempt > 1:
                LOGGER.info("Deflaking %s tests (attempt %s)", len(remaining), attempt)

            for index, name in enumerate(remaining):
                history = results[name]
                if attempt > 1:
                    expected = RETRY_TIME_FACTOR * history[-1].time_ms / 1000.0
                    if self._clock() + expected >= cutoff:
                        self._expire(results, remaining[index:], attempt, log_stream)
                        return
                    controller.reload()
                elif self._clock() >= hard_deadline:
                    self._expire(results, remaining[index:], attempt, log_stream)
                    return

                test = TestRequest(test_name=name, run_id=request.run_id)
                try:
                    result = controller.run_test(test, deadline=hard_deadline)
                except InvocationDeadlineExceeded:
                    self._expire(results, remaining[index:], attempt, log_stream)
                    return
                except BrowserSessionError as exc:
                    LOGGER.warning("Browser failure while running %s: %s", name, exc)
                    result = TestResult(full_name=name, error=f"Browser session failed: {exc}")
                if result is None:
                    continue
                history.append(result.model_copy(update={"attempts": attempt, "log_stream": log_stream}))

    def _expire(
        self,
        results: Dict[str, List[TestResult]],
        names: List[str],
        attempt: int,
        log_stream: str,
    ) -> None:
        LOGGER.warning("Invocation deadline reached with %s tests unfinished", len(names))
        for name in names:
            results[name].append(
                TestResult(full_name=name, error=DEADLINE_MESSAGE, attempts=attempt, log_stream=log_stream)
            )

    @staticmethod
    def _fill_missing(results: Dict[str, List[TestResult]], message: str, log_stream: str) -> None:
        for name, history in results.items():
            if not history:
                history.append(TestResult(full_name=name, error=message, log_stream=log_stream))

    def list_tests(self, request: ListTestsRequest, context: DeadlineContext) -> ListTestsResponse:
        log_stream = context.log_stream_name
        try:
            self._manager.acquire()
        except Exception as exc:
            LOGGER.exception("Browser launch failed")
            return ListTestsResponse(error=f"Browser launch failed: {exc}", log_stream_name=log_stream)

        context.start()
        hard_deadline, _ = self._deadlines(context)
        controller: Optional[SessionController] = None
        try:
            controller = self._open_controller(request.session_id)
            controller.reload()
            names = controller.list_test_names(deadline=hard_deadline)
        except (BundleFaultError, InvocationDeadlineExceeded, BrowserSessionError) as exc:
            LOGGER.error("Listing tests failed: %s", exc)
            return ListTestsResponse(error=str(exc), log_stream_name=log_stream)
        finally:
            if controller is not None:
                try:
                    controller.close()
                except BrowserSessionError as exc:
                    LOGGER.debug("Ignoring error while closing session: %s", exc)
            self._manager.release()
        return ListTestsResponse(test_names=names or [], log_stream_name=log_stream)


def handler_kind(function_name: str) -> str:
    """Map a deployed function name such as ``zen-workTests`` to its handler."""
    kind = function_name.rsplit("-", 1)[-1]
    if kind not in ("workTests", "listTests"):
        raise UnknownFunctionError(f"Unknown worker function '{function_name}'")
    return kind


def handle_invocation(
    function_name: str,
    payload: Dict[str, Any],
    *,
    loop: Optional[WorkerExecutionLoop] = None,
    log_stream_name: Optional[str] = None,
) -> Dict[str, Any]:
    kind = handler_kind(function_name)
    loop = loop or get_worker_loop()
    settings = loop.settings
    stream = log_stream_name or settings.log_stream_name
    if kind == "workTests":
        work_request = WorkTestsRequest.model_validate(payload)
        context = loop.new_context(work_request.time_budget_ms or settings.time_budget_ms, stream)
        return loop.work_tests(work_request, context).model_dump()
    list_request = ListTestsRequest.model_validate(payload)
    context = loop.new_context(list_request.time_budget_ms or settings.time_budget_ms, stream)
    return loop.list_tests(list_request, context).model_dump()


_worker_loop: Optional[WorkerExecutionLoop] = None


def get_worker_loop() -> WorkerExecutionLoop:
    global _worker_loop
    if _worker_loop is None:
        _worker_loop = WorkerExecutionLoop()
    return _worker_loop


def main(argv: Optional[List[str]] = None) -> int:
    """Container entrypoint: run one function against a payload file, write ``result.json``."""
    parser = argparse.ArgumentParser(prog="zen-worker")
    parser.add_argument("function", help="workTests or listTests (deployed names accepted)")
    parser.add_argument("payload", type=Path, help="JSON payload file")
    parser.add_argument("--result", type=Path, default=None, help="where to write the result JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    result_path = args.result or args.payload.parent / RESULT_FILENAME
    try:
        payload = json.loads(args.payload.read_text(encoding="utf-8"))
        result = handle_invocation(args.function, payload)
        exit_code = 0
    except (OSError, ValueError, ValidationError) as exc:
        LOGGER.error("Invocation of %s failed: %s", args.function, exc)
        result = {"error": str(exc)}
        exit_code = 1

    text = json.dumps(result)
    result_path.write_text(text, encoding="utf-8")
    print(text)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
