from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from zen.config import WorkerSettings
from zen.constants import CHROME_FLAGS, DEFAULT_WINDOW_SIZE

LOGGER = logging.getLogger("zen.browser")


class BrowserSessionError(RuntimeError):
    pass


class SessionClosedError(BrowserSessionError):
    """The page or browser behind a session went away."""


class EvaluationError(BrowserSessionError):
    pass


@dataclass(frozen=True)
class SessionSignal:
    kind: str
    text: str = ""
    stack: List[str] = field(default_factory=list)
    key: str = ""

    @classmethod
    def console(cls, text: str) -> "SessionSignal":
        return cls(kind="console", text=text)

    @classmethod
    def error(cls, message: str, stack: Optional[List[str]] = None) -> "SessionSignal":
        return cls(kind="error", text=message, stack=list(stack or []))

    @classmethod
    def request(cls, kind: str, request: Any) -> "SessionSignal":
        return cls(kind=kind, text=getattr(request, "url", ""), key=str(id(request)))


SignalSink = Callable[[SessionSignal], None]


def _is_closed_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return "closed" in text or "target crashed" in text


class BrowserSession:
    """One page in the shared browser, as seen by the session controller."""

    @property
    def url(self) -> str:  # pragma: no cover - interface stub
        raise NotImplementedError

    def evaluate(self, expression: str) -> Any:  # pragma: no cover - interface stub
        raise NotImplementedError

    def reload(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def focus(self, selector: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def recreate(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def resize(self, width: int, height: int) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def poll(self, seconds: float) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class PlaywrightSession(BrowserSession):
    def __init__(
        self,
        browser: Any,
        url: str,
        sink: SignalSink,
        *,
        width: int = DEFAULT_WINDOW_SIZE["width"],
        height: int = DEFAULT_WINDOW_SIZE["height"],
    ) -> None:
        self._browser = browser
        self._sink = sink
        self._viewport = {"width": width, "height": height}
        self._last_url = url
        self._page = self._call(self._new_page)
        self._call(lambda: self._page.goto(url, wait_until="commit"))

    def _new_page(self) -> Any:
        page = self._browser.new_page(viewport=dict(self._viewport))
        page.on("console", lambda message: self._sink(SessionSignal.console(message.text)))
        page.on("pageerror", self._on_page_error)
        page.on("request", lambda request: self._sink(SessionSignal.request("request", request)))
        page.on("requestfinished", lambda request: self._sink(SessionSignal.request("requestfinished", request)))
        page.on("requestfailed", lambda request: self._sink(SessionSignal.request("requestfailed", request)))
        return page

    def _on_page_error(self, error: Any) -> None:
        name = getattr(error, "name", "") or ""
        raw_message = getattr(error, "message", "") or str(error)
        first_line = raw_message.split("\n", 1)[0]
        message = f"{name} {first_line}".strip() if name else first_line
        stack_text = getattr(error, "stack", "") or ""
        frames = [line.strip() for line in stack_text.splitlines()[1:] if line.strip()]
        self._sink(SessionSignal.error(message, frames))

    def _call(self, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except PlaywrightError as exc:
            if _is_closed_error(exc):
                raise SessionClosedError(str(exc)) from exc
            raise EvaluationError(str(exc)) from exc

    @property
    def url(self) -> str:
        try:
            current = self._page.url
        except PlaywrightError:
            return self._last_url
        if current and current != "about:blank":
            self._last_url = current
        return self._last_url

    def evaluate(self, expression: str) -> Any:
        return self._call(lambda: self._page.evaluate(expression))

    def reload(self) -> None:
        self._call(lambda: self._page.reload(wait_until="commit"))

    def focus(self, selector: str) -> None:
        self._call(lambda: self._page.focus(selector))

    def recreate(self) -> None:
        target = self.url
        try:
            self._page.close()
        except PlaywrightError:
            pass
        self._page = self._call(self._new_page)
        self._call(lambda: self._page.goto(target, wait_until="commit"))
        LOGGER.info("Recreated browser page at %s", target)

    def resize(self, width: int, height: int) -> None:
        self._viewport = {"width": int(width), "height": int(height)}
        self._call(lambda: self._page.set_viewport_size(dict(self._viewport)))

    def poll(self, seconds: float) -> None:
        # Playwright only dispatches page events while it holds control.
        self._call(lambda: self._page.wait_for_timeout(max(0.0, seconds) * 1000))

    def close(self) -> None:
        try:
            self._page.close()
        except PlaywrightError as exc:
            LOGGER.debug("Ignoring error while closing page: %s", exc)


class BrowserManager:
    """Process-wide headless Chromium with an explicit acquire/release lifecycle.

    ``acquire`` blocks until no other invocation holds the browser, then
    launches it. ``release`` tears it down so the next invocation starts clean.
    Playwright's sync API is bound to the launching thread, so acquire, use and
    release must happen on one thread.
    """

    def __init__(
        self,
        *,
        width: int = DEFAULT_WINDOW_SIZE["width"],
        height: int = DEFAULT_WINDOW_SIZE["height"],
    ) -> None:
        self._width = width
        self._height = height
        self._lock = threading.Lock()
        self._playwright: Optional[Any] = None
        self._browser: Optional[Any] = None

    def acquire(self) -> "BrowserManager":
        self._lock.acquire()
        try:
            if self._browser is None:
                LOGGER.info("Launching headless Chromium")
                self._playwright = sync_playwright().start()
                self._browser = self._playwright.chromium.launch(
                    headless=True,
                    args=CHROME_FLAGS + [f"--window-size={self._width},{self._height}"],
                )
        except Exception:
            self._shutdown()
            self._lock.release()
            raise
        return self

    def open_session(self, url: str, sink: SignalSink) -> BrowserSession:
        if self._browser is None:
            raise BrowserSessionError("Browser not acquired")
        LOGGER.info("Opening session at %s", url)
        return PlaywrightSession(self._browser, url, sink, width=self._width, height=self._height)

    def _shutdown(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as exc:
                LOGGER.debug("Browser close failed: %s", exc)
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PlaywrightError as exc:
                LOGGER.debug("Playwright stop failed: %s", exc)
        self._browser = None
        self._playwright = None

    def release(self) -> None:
        try:
            self._shutdown()
            LOGGER.info("Browser released")
        finally:
            if self._lock.locked():
                self._lock.release()

    def __enter__(self) -> "BrowserManager":
        return self.acquire()

    def __exit__(self, *exc_info: object) -> None:
        self.release()


_browser_manager: Optional[BrowserManager] = None


def get_browser_manager() -> BrowserManager:
    global _browser_manager
    if _browser_manager is None:
        settings = WorkerSettings.from_env()
        _browser_manager = BrowserManager(width=settings.window_width, height=settings.window_height)
    return _browser_manager
