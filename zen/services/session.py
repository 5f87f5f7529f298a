from __future__ import annotations

import json
import logging
import queue
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from zen.constants import (
    HOT_RELOAD_TIMEOUT_SECONDS,
    LOADING_TIMEOUT_SECONDS,
    RUNNING_TIMEOUT_SECONDS,
    STARTING_TIMEOUT_SECONDS,
    TIMEOUT_MESSAGE,
)
from zen.schemas import RequestKind, SessionState, TestRequest, TestResult
from zen.services.browser import (
    BrowserManager,
    BrowserSession,
    EvaluationError,
    SessionClosedError,
    SessionSignal,
)

LOGGER = logging.getLogger("zen.session")

LIST_TESTS_EXPRESSION = "Latte.flatten().map(t => t.fullName)"


class BundleFaultError(RuntimeError):
    """The test bundle failed to load; nothing can run until new code arrives."""

    def __init__(self, message: str, stack: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.stack = stack


class InvocationDeadlineExceeded(RuntimeError):
    pass


@dataclass
class SessionTimeouts:
    starting: float = STARTING_TIMEOUT_SECONDS
    running: float = RUNNING_TIMEOUT_SECONDS
    hot_reload: float = HOT_RELOAD_TIMEOUT_SECONDS
    loading: float = LOADING_TIMEOUT_SECONDS

    def for_state(self, state: SessionState) -> Optional[float]:
        return {
            SessionState.starting: self.starting,
            SessionState.running: self.running,
            SessionState.hot_reload: self.hot_reload,
            SessionState.loading: self.loading,
        }.get(state)


class PendingRequest:
    """A queued test or test-list request, completed exactly once.

    Completion carries a value, an error, or ``None`` when a newer request
    superseded this one.
    """

    def __init__(self, kind: RequestKind, payload: Optional[TestRequest] = None) -> None:
        self.kind = kind
        self.payload = payload
        self._done = False
        self._value: Any = None
        self._error: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        return self._done

    def complete(self, value: Any) -> bool:
        if self._done:
            return False
        self._done = True
        self._value = value
        return True

    def fail(self, error: BaseException) -> bool:
        if self._done:
            return False
        self._done = True
        self._error = error
        return True

    def cancel(self) -> bool:
        return self.complete(None)

    def result(self) -> Any:
        if not self._done:
            raise RuntimeError("Request is still pending")
        if self._error is not None:
            raise self._error
        return self._value


def _parse_payload(text: str) -> Any:
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        LOGGER.warning("Discarding malformed bundle payload: %s", text[:200])
        return None


class SessionController:
    """State machine for one browser tab running one test at a time.

    Browser signals land in ``channel``; ``pump`` drains them and fires the
    current state's timeout. Every state change goes through ``_change_state``,
    which replaces the armed timeout, so a timeout from an earlier state can
    never fire.
    """

    def __init__(
        self,
        session: BrowserSession,
        *,
        channel: Optional["queue.Queue[SessionSignal]"] = None,
        session_id: str = "Dev",
        skip_hot_reload: bool = False,
        fail_on_exceptions: bool = False,
        timeouts: Optional[SessionTimeouts] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.05,
    ) -> None:
        self._session = session
        self._channel: "queue.Queue[SessionSignal]" = channel if channel is not None else queue.Queue()
        self.session_id = session_id
        self.skip_hot_reload = skip_hot_reload
        self.fail_on_exceptions = fail_on_exceptions
        self._timeouts = timeouts or SessionTimeouts()
        self._clock = clock
        self._poll_interval = poll_interval
        self._state = SessionState.starting
        self._timeout_at: Optional[float] = None
        self._code_hash: Optional[str] = None
        self._pending: Optional[PendingRequest] = None
        self._started_at: Optional[float] = None
        self._bad_code_error = ""
        self._bad_code_stack = ""
        self._requests: Dict[str, str] = {}
        self._change_state(SessionState.starting)

    @classmethod
    def open(cls, manager: BrowserManager, url: str, **kwargs: Any) -> "SessionController":
        channel: "queue.Queue[SessionSignal]" = queue.Queue()
        session = manager.open_session(url, channel.put)
        return cls(session, channel=channel, **kwargs)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending

    @property
    def bad_code(self) -> Optional[str]:
        if self._state is SessionState.bad_code:
            return self._bad_code_error
        return None

    def _change_state(self, state: SessionState) -> None:
        self._state = state
        timeout = self._timeouts.for_state(state)
        self._timeout_at = self._clock() + timeout if timeout is not None else None

    def _retry_on_close(self, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except SessionClosedError as exc:
            LOGGER.warning("[%s] session closed (%s); recreating page", self.session_id, exc)
            self._session.recreate()
            return action()

    # ------------------------------------------------------------------ requests
    def set_code_hash(self, code_hash: str) -> None:
        self._code_hash = code_hash
        if self._state is SessionState.idle:
            self._hot_reload()
        elif self._state in (SessionState.bad_code, SessionState.hot_reload):
            self.reload()
        else:
            LOGGER.debug("[%s] deferring code %s until idle", self.session_id, code_hash)

    def set_test(self, test: TestRequest) -> PendingRequest:
        self._supersede()
        request = PendingRequest(RequestKind.test, test)
        self._pending = request
        if self._state is SessionState.idle:
            self._run()
        elif self._state is SessionState.running:
            self.reload()
        elif self._state is SessionState.bad_code:
            self._fail_test(self._bad_code_error, self._bad_code_stack)
        return request

    def get_test_names(self) -> PendingRequest:
        request = PendingRequest(RequestKind.list_names)
        if self._state is SessionState.bad_code:
            request.fail(BundleFaultError(self._bad_code_error, self._bad_code_stack))
            return request
        self._supersede()
        self._pending = request
        if self._state is SessionState.idle:
            self._list_tests()
        return request

    def _supersede(self) -> None:
        if self._pending is not None and not self._pending.done:
            LOGGER.debug("[%s] superseding pending %s request", self.session_id, self._pending.kind.value)
            self._pending.cancel()
        self._pending = None
        self._started_at = None

    # ---------------------------------------------------------------- transitions
    def reload(self) -> None:
        self._change_state(SessionState.loading)
        self._code_hash = None
        self._requests.clear()
        LOGGER.info("[%s] reloading", self.session_id)
        try:
            self._retry_on_close(self._session.reload)
        except EvaluationError as exc:
            LOGGER.warning("[%s] reload failed, waiting for loading timeout: %s", self.session_id, exc)

    def _hot_reload(self) -> None:
        if self.skip_hot_reload:
            self.reload()
            return
        code_hash = self._code_hash
        self._code_hash = None
        self._change_state(SessionState.hot_reload)
        try:
            self._retry_on_close(lambda: self._session.evaluate(f"void Zen.upgrade({json.dumps(code_hash)})"))
        except EvaluationError as exc:
            LOGGER.warning("[%s] hot reload failed: %s", self.session_id, exc)
            self.reload()

    def _run(self) -> None:
        test = self._pending.payload if self._pending else None
        if test is None:
            return
        self._change_state(SessionState.running)
        self._started_at = self._clock()
        payload = {"testName": test.test_name, "runId": test.run_id, "logs": test.logs}
        try:
            self._retry_on_close(lambda: self._session.focus("body"))
            self._retry_on_close(lambda: self._session.evaluate(f"void Zen.run({json.dumps(payload)})"))
        except EvaluationError as exc:
            self._fail_test(str(exc))
            self.reload()

    def _list_tests(self) -> None:
        request = self._pending
        if request is None:
            return
        self._pending = None
        try:
            names = self._retry_on_close(lambda: self._session.evaluate(LIST_TESTS_EXPRESSION))
        except EvaluationError as exc:
            LOGGER.warning("[%s] listing tests failed: %s", self.session_id, exc)
            request.fail(BundleFaultError(str(exc)))
            return
        request.complete([str(name) for name in names or []])

    def _become_idle(self) -> None:
        self._change_state(SessionState.idle)
        if self._code_hash:
            self._hot_reload()
        elif self._pending is not None and self._pending.kind is RequestKind.test:
            self._run()
        elif self._pending is not None and self._pending.kind is RequestKind.list_names:
            self._list_tests()

    def _enter_bad_code(self, message: str, stack: List[str]) -> None:
        self._change_state(SessionState.bad_code)
        self._bad_code_error = message
        self._bad_code_stack = "\n".join(stack)
        request = self._pending
        if request is None:
            return
        if request.kind is RequestKind.test:
            self._fail_test(message, self._bad_code_stack)
        else:
            self._pending = None
            request.fail(BundleFaultError(message, self._bad_code_stack))

    def _on_timeout(self) -> None:
        if self._state is SessionState.running:
            LOGGER.warning("[%s] test timed out", self.session_id)
            self._fail_test(TIMEOUT_MESSAGE)
        elif self._state is SessionState.loading and self._requests:
            LOGGER.warning(
                "[%s] timeout while loading; %s requests outstanding: %s",
                self.session_id,
                len(self._requests),
                ", ".join(sorted(set(self._requests.values()))[:5]),
            )
        else:
            LOGGER.warning("[%s] timeout while %s", self.session_id, self._state.value)
        # A stuck page cannot be trusted to run anything else.
        self.reload()

    # -------------------------------------------------------------------- results
    def _finish_test(self, raw: Dict[str, Any]) -> None:
        request = self._pending
        if request is None or request.kind is not RequestKind.test:
            LOGGER.debug("[%s] result without a pending test", self.session_id)
            return
        test = request.payload
        elapsed_ms = 0
        if self._started_at is not None:
            elapsed_ms = max(0, int((self._clock() - self._started_at) * 1000))
        log = raw.get("log")
        wants_console = bool(test.logs and test.logs.get("console"))
        error = raw.get("error")
        result = TestResult(
            full_name=test.test_name,
            error=str(error) if error else None,
            stack=str(raw.get("stack") or "") or None,
            time_ms=elapsed_ms,
            attempts=1,
            log=log if wants_console and isinstance(log, dict) else None,
        )
        self._pending = None
        self._started_at = None
        request.complete(result)

    def _fail_test(self, error: str, stack: str = "") -> None:
        self._finish_test({"error": error or "Test failed", "stack": stack})

    # -------------------------------------------------------------------- signals
    def _handle_signal(self, signal: SessionSignal) -> None:
        if signal.kind == "console":
            self._on_console(signal.text)
        elif signal.kind == "error":
            self._on_exception(signal.text, signal.stack)
        elif signal.kind == "request":
            self._requests[signal.key] = signal.text
        elif signal.kind == "requestfinished":
            self._requests.pop(signal.key, None)
        elif signal.kind == "requestfailed":
            LOGGER.info("[%s] request failed %s", self.session_id, signal.text)
            self._requests.pop(signal.key, None)

    def _on_console(self, text: str) -> None:
        if text.startswith("Zen.idle"):
            if self._state is SessionState.loading:
                self._become_idle()
        elif text.startswith("Zen.hotReload"):
            if self._state is SessionState.hot_reload:
                self._become_idle()
        elif text.startswith("Zen.results"):
            if self._state is SessionState.running:
                payload = _parse_payload(text[len("Zen.results"):])
                if not isinstance(payload, dict):
                    payload = {"error": "Malformed test result from bundle"}
                self._finish_test(payload)
                self._become_idle()
        elif text.startswith("Zen.resizeWindow"):
            args = _parse_payload(text[len("Zen.resizeWindow"):])
            if isinstance(args, dict) and "width" in args and "height" in args:
                self._retry_on_close(lambda: self._session.resize(int(args["width"]), int(args["height"])))
        else:
            LOGGER.debug("[%s] console: %s", self.session_id, text)

    def _on_exception(self, message: str, stack: List[str]) -> None:
        LOGGER.info("[%s] page error in %s: %s %s", self.session_id, self._state.value, message, stack)
        if self._state is SessionState.loading:
            self._enter_bad_code(message, stack)
        elif self._state is SessionState.running and self.fail_on_exceptions:
            self._fail_test(message, "\n".join(stack))
            self.reload()
        elif self._state is SessionState.hot_reload:
            self.reload()

    # ---------------------------------------------------------------------- pump
    def _drain_signals(self) -> None:
        while True:
            try:
                signal = self._channel.get_nowait()
            except queue.Empty:
                return
            self._handle_signal(signal)

    def _check_timeout(self) -> None:
        if self._timeout_at is not None and self._clock() >= self._timeout_at:
            self._timeout_at = None
            self._on_timeout()

    def pump(self, seconds: Optional[float] = None) -> None:
        """Give the browser ``seconds`` to deliver signals, then apply them."""
        wait = self._poll_interval if seconds is None else seconds
        self._retry_on_close(lambda: self._session.poll(wait))
        self._drain_signals()
        self._check_timeout()

    def wait(self, request: PendingRequest, deadline: Optional[float] = None) -> Any:
        """Pump until ``request`` completes; raise when ``deadline`` passes first."""
        while not request.done:
            now = self._clock()
            if deadline is not None and now >= deadline:
                raise InvocationDeadlineExceeded(f"[{self.session_id}] invocation deadline reached")
            step = self._poll_interval
            if deadline is not None:
                step = min(step, deadline - now)
            self.pump(step)
        return request.result()

    def run_test(self, test: TestRequest, deadline: Optional[float] = None) -> Optional[TestResult]:
        return self.wait(self.set_test(test), deadline)

    def list_test_names(self, deadline: Optional[float] = None) -> List[str]:
        return self.wait(self.get_test_names(), deadline)

    def close(self) -> None:
        self._supersede()
        self._session.close()
