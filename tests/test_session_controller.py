from __future__ import annotations

import json
import queue
from typing import Dict, List, Tuple

import pytest

from zen.constants import TIMEOUT_MESSAGE
from zen.schemas import SessionState, TestRequest
from zen.services.browser import BrowserSession, SessionClosedError, SessionSignal
from zen.services.session import (
    LIST_TESTS_EXPRESSION,
    BundleFaultError,
    InvocationDeadlineExceeded,
    SessionController,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSession(BrowserSession):
    """Plays the test bundle: signals queued by an action arrive on the next poll."""

    def __init__(self, sink, clock: FakeClock) -> None:
        self._sink = sink
        self._clock = clock
        self._scheduled: List[SessionSignal] = []
        self.outcomes: Dict[str, object] = {}
        self.test_names = ["suite a", "suite b"]
        self.bad_bundle = False
        self.close_next_evaluate = False
        self.runs: List[str] = []
        self.evaluated: List[str] = []
        self.reloads = 0
        self.recreated = 0
        self.sizes: List[Tuple[int, int]] = []
        self.closed = False

    def emit(self, signal: SessionSignal) -> None:
        self._scheduled.append(signal)

    @property
    def url(self) -> str:
        return "http://gateway/sessions/s1/index.html"

    def evaluate(self, expression: str):
        if self.close_next_evaluate:
            self.close_next_evaluate = False
            raise SessionClosedError("Target page, context or browser has been closed")
        self.evaluated.append(expression)
        if expression == LIST_TESTS_EXPRESSION:
            return list(self.test_names)
        if expression.startswith("void Zen.upgrade("):
            self.emit(SessionSignal.console("Zen.hotReload"))
        elif expression.startswith("void Zen.run("):
            payload = json.loads(expression[len("void Zen.run("):-1])
            name = payload["testName"]
            self.runs.append(name)
            outcome = self.outcomes.get(name, "pass")
            if outcome == "hang":
                return None
            if outcome in ("raise", "raise_then_pass"):
                self.emit(SessionSignal.error("TypeError x is undefined", ["at test.js:3"]))
            if outcome == "raise":
                return None
            result = {"error": None} if outcome in ("pass", "raise_then_pass") else outcome
            self.emit(SessionSignal.console("Zen.results " + json.dumps(result)))
        return None

    def reload(self) -> None:
        self.reloads += 1
        self._scheduled = []
        if self.bad_bundle:
            self.emit(SessionSignal.error("SyntaxError boom", ["at bundle.js:1"]))
        else:
            self.emit(SessionSignal.console("Zen.idle"))

    def focus(self, selector: str) -> None:
        pass

    def recreate(self) -> None:
        self.recreated += 1

    def resize(self, width: int, height: int) -> None:
        self.sizes.append((width, height))

    def poll(self, seconds: float) -> None:
        self._clock.advance(seconds)
        scheduled, self._scheduled = self._scheduled, []
        for signal in scheduled:
            self._sink(signal)

    def close(self) -> None:
        self.closed = True


def _controller(**kwargs) -> Tuple[SessionController, ScriptedSession, FakeClock]:
    clock = FakeClock()
    channel: "queue.Queue[SessionSignal]" = queue.Queue()
    session = ScriptedSession(channel.put, clock)
    controller = SessionController(session, channel=channel, clock=clock, session_id="s1", **kwargs)
    return controller, session, clock


def _idle_controller(**kwargs) -> Tuple[SessionController, ScriptedSession, FakeClock]:
    controller, session, clock = _controller(**kwargs)
    controller.reload()
    controller.pump()
    assert controller.state is SessionState.idle
    return controller, session, clock


@pytest.mark.unit
def test_starting_reloads_after_init_timeout() -> None:
    controller, session, _clock = _controller()
    assert controller.state is SessionState.starting

    controller.pump(10.0)
    assert controller.state is SessionState.loading
    assert session.reloads == 1

    controller.pump()
    assert controller.state is SessionState.idle


@pytest.mark.unit
def test_test_runs_and_returns_to_idle() -> None:
    controller, session, _clock = _idle_controller()
    session.outcomes["fails"] = {"error": "expected 1 to be 2", "stack": "at spec.js:9"}

    passing = controller.run_test(TestRequest(test_name="passes"))
    failing = controller.run_test(TestRequest(test_name="fails"))

    assert passing is not None and not passing.failed
    assert passing.full_name == "passes"
    assert failing is not None and failing.error == "expected 1 to be 2"
    assert failing.stack == "at spec.js:9"
    assert controller.state is SessionState.idle
    assert session.runs == ["passes", "fails"]


@pytest.mark.unit
def test_second_test_supersedes_first_with_none() -> None:
    controller, session, _clock = _idle_controller()
    session.outcomes["first"] = "hang"

    first = controller.set_test(TestRequest(test_name="first"))
    second = controller.set_test(TestRequest(test_name="second"))

    assert first.done
    assert first.result() is None
    assert session.runs == ["first"]
    assert controller.state is SessionState.loading

    result = controller.wait(second)
    assert result is not None and result.full_name == "second"
    assert session.runs == ["first", "second"]


@pytest.mark.unit
def test_hanging_test_fails_with_chrome_timeout() -> None:
    controller, session, _clock = _idle_controller()
    session.outcomes["slow"] = "hang"

    result = controller.run_test(TestRequest(test_name="slow"))

    assert result is not None
    assert result.error == TIMEOUT_MESSAGE
    assert result.time_ms >= 19_900
    assert controller.state is SessionState.loading
    assert session.reloads == 2


@pytest.mark.unit
def test_no_timeout_fires_after_leaving_timed_state() -> None:
    controller, session, _clock = _idle_controller()
    controller.run_test(TestRequest(test_name="quick"))
    reloads = session.reloads

    controller.pump(120.0)

    assert controller.state is SessionState.idle
    assert session.reloads == reloads


@pytest.mark.unit
def test_bad_bundle_fails_pending_test_and_list_requests() -> None:
    controller, session, _clock = _controller()
    session.bad_bundle = True
    pending = controller.set_test(TestRequest(test_name="a"))

    controller.reload()
    controller.pump()

    assert controller.state is SessionState.bad_code
    assert controller.bad_code == "SyntaxError boom"
    result = pending.result()
    assert result.error == "SyntaxError boom"
    assert "bundle.js" in (result.stack or "")

    listing = controller.get_test_names()
    assert listing.done
    with pytest.raises(BundleFaultError):
        listing.result()

    assert controller.run_test(TestRequest(test_name="b")).error == "SyntaxError boom"


@pytest.mark.unit
def test_new_code_recovers_from_bad_code() -> None:
    controller, session, _clock = _controller()
    session.bad_bundle = True
    controller.reload()
    controller.pump()
    assert controller.state is SessionState.bad_code

    session.bad_bundle = False
    controller.set_code_hash("fixed")
    assert controller.state is SessionState.loading
    controller.pump()
    assert controller.state is SessionState.idle


@pytest.mark.unit
def test_strict_mode_fails_test_on_page_exception() -> None:
    controller, session, _clock = _idle_controller(fail_on_exceptions=True)
    session.outcomes["throws"] = "raise"

    result = controller.run_test(TestRequest(test_name="throws"))

    assert result is not None and result.error == "TypeError x is undefined"
    assert controller.state is SessionState.loading


@pytest.mark.unit
def test_lenient_mode_ignores_page_exception() -> None:
    controller, session, _clock = _idle_controller()
    session.outcomes["noisy"] = "raise_then_pass"

    result = controller.run_test(TestRequest(test_name="noisy"))

    assert result is not None and not result.failed
    assert controller.state is SessionState.idle


@pytest.mark.unit
def test_new_code_hot_reloads_when_idle() -> None:
    controller, session, _clock = _idle_controller()

    controller.set_code_hash("abc123")
    assert controller.state is SessionState.hot_reload
    assert 'void Zen.upgrade("abc123")' in session.evaluated

    controller.pump()
    assert controller.state is SessionState.idle


@pytest.mark.unit
def test_new_code_full_reloads_when_hot_reload_disabled() -> None:
    controller, session, _clock = _idle_controller(skip_hot_reload=True)
    reloads = session.reloads

    controller.set_code_hash("abc123")

    assert controller.state is SessionState.loading
    assert session.reloads == reloads + 1


@pytest.mark.unit
def test_new_code_is_deferred_while_running() -> None:
    controller, session, _clock = _idle_controller()
    pending = controller.set_test(TestRequest(test_name="a"))

    controller.set_code_hash("next")
    assert controller.state is SessionState.running

    controller.wait(pending)
    assert controller.state is SessionState.hot_reload
    assert 'void Zen.upgrade("next")' in session.evaluated


@pytest.mark.unit
def test_closed_page_is_recreated_once() -> None:
    controller, session, _clock = _idle_controller()
    session.close_next_evaluate = True

    result = controller.run_test(TestRequest(test_name="a"))

    assert session.recreated == 1
    assert result is not None and not result.failed


@pytest.mark.unit
def test_lists_test_names_when_idle() -> None:
    controller, _session, _clock = _idle_controller()
    assert controller.list_test_names() == ["suite a", "suite b"]


@pytest.mark.unit
def test_list_request_waits_for_bundle() -> None:
    controller, _session, _clock = _controller()
    request = controller.get_test_names()
    assert not request.done

    controller.reload()
    assert controller.wait(request) == ["suite a", "suite b"]


@pytest.mark.unit
def test_wait_raises_at_invocation_deadline() -> None:
    controller, session, clock = _idle_controller()
    session.outcomes["slow"] = "hang"

    with pytest.raises(InvocationDeadlineExceeded):
        controller.run_test(TestRequest(test_name="slow"), deadline=clock() + 1.0)


@pytest.mark.unit
def test_resize_message_resizes_viewport() -> None:
    controller, session, _clock = _idle_controller()
    session.emit(SessionSignal.console('Zen.resizeWindow {"width": 1024, "height": 768}'))

    controller.pump()

    assert session.sizes == [(1024, 768)]
