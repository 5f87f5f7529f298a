from __future__ import annotations

from typing import Any, Callable, Dict, List

import pytest
from playwright.sync_api import Error as PlaywrightError

from zen.services.browser import (
    BrowserManager,
    BrowserSessionError,
    EvaluationError,
    PlaywrightSession,
    SessionClosedError,
    SessionSignal,
)


class FakePage:
    def __init__(self) -> None:
        self.handlers: Dict[str, Callable[[Any], None]] = {}
        self.url = "about:blank"
        self.calls: List[tuple] = []
        self.evaluate_error: Exception | None = None

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self.handlers[event] = handler

    def goto(self, url: str, wait_until: str = "load") -> None:
        self.url = url
        self.calls.append(("goto", url, wait_until))

    def evaluate(self, expression: str) -> Any:
        if self.evaluate_error is not None:
            raise self.evaluate_error
        self.calls.append(("evaluate", expression))
        return 42

    def wait_for_timeout(self, ms: float) -> None:
        self.calls.append(("wait", ms))

    def set_viewport_size(self, size: Dict[str, int]) -> None:
        self.calls.append(("viewport", size))

    def close(self) -> None:
        self.calls.append(("close",))


class FakeBrowser:
    def __init__(self) -> None:
        self.pages: List[FakePage] = []

    def new_page(self, viewport: Dict[str, int]) -> FakePage:
        page = FakePage()
        self.pages.append(page)
        return page


class FakeRequest:
    def __init__(self, url: str) -> None:
        self.url = url


class FakePageError:
    name = "TypeError"
    message = "x is undefined\nsecond line"
    stack = "TypeError: x is undefined\n    at run (bundle.js:10)\n    at main (bundle.js:2)"


def _session() -> tuple[PlaywrightSession, FakeBrowser, List[SessionSignal]]:
    browser = FakeBrowser()
    signals: List[SessionSignal] = []
    session = PlaywrightSession(browser, "http://gw/sessions/s1/index.html", signals.append)
    return session, browser, signals


@pytest.mark.unit
def test_page_events_become_signals() -> None:
    session, browser, signals = _session()
    page = browser.pages[0]

    class _Message:
        text = "Zen.idle"

    page.handlers["console"](_Message())
    page.handlers["pageerror"](FakePageError())
    request = FakeRequest("http://gw/sessions/s1/app.js")
    page.handlers["request"](request)
    page.handlers["requestfinished"](request)

    assert signals[0] == SessionSignal.console("Zen.idle")
    assert signals[1].kind == "error"
    assert signals[1].text == "TypeError x is undefined"
    assert signals[1].stack == ["at run (bundle.js:10)", "at main (bundle.js:2)"]
    assert [signal.kind for signal in signals[2:]] == ["request", "requestfinished"]
    assert signals[2].key == signals[3].key
    assert session.url == "http://gw/sessions/s1/index.html"


@pytest.mark.unit
def test_playwright_errors_are_classified() -> None:
    session, browser, _signals = _session()
    page = browser.pages[0]

    page.evaluate_error = PlaywrightError("Target page, context or browser has been closed")
    with pytest.raises(SessionClosedError):
        session.evaluate("1")

    page.evaluate_error = PlaywrightError("ReferenceError: Zen is not defined")
    with pytest.raises(EvaluationError):
        session.evaluate("Zen.run()")


@pytest.mark.unit
def test_recreate_opens_fresh_page_at_last_url() -> None:
    session, browser, _signals = _session()

    session.recreate()

    assert len(browser.pages) == 2
    assert browser.pages[0].calls[-1] == ("close",)
    assert browser.pages[1].calls[0] == ("goto", "http://gw/sessions/s1/index.html", "commit")
    assert session.evaluate("1") == 42


@pytest.mark.unit
def test_poll_hands_control_to_playwright() -> None:
    session, browser, _signals = _session()
    session.poll(0.25)
    session.resize(1024, 768)
    assert ("wait", 250.0) in browser.pages[0].calls
    assert ("viewport", {"width": 1024, "height": 768}) in browser.pages[0].calls


@pytest.mark.unit
def test_open_session_requires_acquire() -> None:
    manager = BrowserManager()
    with pytest.raises(BrowserSessionError):
        manager.open_session("http://gw/index.html", lambda signal: None)


@pytest.mark.unit
def test_page_creation_failure_is_a_session_error() -> None:
    class _DeadBrowser:
        def new_page(self, viewport: Dict[str, int]) -> FakePage:
            raise PlaywrightError("Browser has been closed")

    with pytest.raises(SessionClosedError):
        PlaywrightSession(_DeadBrowser(), "http://gw/sessions/s1/index.html", lambda signal: None)
