from __future__ import annotations

import base64
import enum
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from playwright.async_api import async_playwright

from bridgekeeper.browser.actions import (
    ActionResult,
    BrowserAction,
    ClickAction,
    ExtractAction,
    NavigateAction,
    ScreenshotAction,
    SelectAction,
    TypeAction,
    UploadAction,
    WaitAction,
)
from bridgekeeper.browser.policy import DomainAllowList
from bridgekeeper.errors import ActionFailedError, BrowserError, SessionClosedError

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--disable-gpu",
)

CLICK_SETTLE_MS = 1000
KEYSTROKE_DELAY_MS = 50

_EXTRACT_JS = """
elements => elements.map(el => ({
    text: el.innerText || el.textContent,
    html: el.innerHTML,
    value: el.value === undefined ? null : el.value,
    href: el.href === undefined ? null : el.href,
}))
"""


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


class BrowserSession:
    """One headless Chromium page driven through a fixed action vocabulary.

    The browser starts lazily on the first action. Actions never raise: every
    failure, including a rejected navigation, comes back as an unsuccessful
    ``ActionResult``. Use ``async with`` so the browser is always released.
    """

    def __init__(
        self,
        allow_list: DomainAllowList | None = None,
        *,
        headless: bool = True,
        viewport: dict[str, int] | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        launch_args: Sequence[str] = DEFAULT_LAUNCH_ARGS,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self._allow_list = allow_list or DomainAllowList()
        self._headless = headless
        self._viewport = dict(viewport or DEFAULT_VIEWPORT)
        self._user_agent = user_agent
        self._launch_args = tuple(launch_args)
        self._playwright_factory = playwright_factory

        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Any = None
        self._state = SessionState.UNINITIALIZED

        self._handlers: dict[type, Callable[[Any, Any], Awaitable[ActionResult]]] = {
            NavigateAction: self._navigate,
            ClickAction: self._click,
            TypeAction: self._type,
            SelectAction: self._select,
            UploadAction: self._upload,
            ExtractAction: self._extract,
            ScreenshotAction: self._screenshot,
            WaitAction: self._wait,
        }

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def allow_list(self) -> DomainAllowList:
        return self._allow_list

    async def __aenter__(self) -> BrowserSession:
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()

    async def execute(self, action: BrowserAction) -> ActionResult:
        action_type = getattr(action, "type", type(action).__name__)
        try:
            if self._state is SessionState.CLOSED:
                raise SessionClosedError("Browser session is closed")

            handler = self._handlers.get(type(action))
            if handler is None:
                raise ActionFailedError(f"Unknown action type: {action_type}", action_type=str(action_type))

            # Rejected targets must not start a browser, let alone a request.
            if isinstance(action, NavigateAction):
                self._allow_list.check(action.url)

            page = await self._ensure_page()
            return await handler(page, action)
        except Exception as exc:
            error = exc if isinstance(exc, BrowserError) else ActionFailedError(
                str(exc) or "Browser action failed", action_type=str(action_type)
            )
            logger.warning(
                "browser action failed",
                extra={
                    "action_type": action_type,
                    "error_type": type(exc).__name__,
                    "current_url": self._current_url(),
                },
            )
            return ActionResult(success=False, error=str(error), current_url=self._current_url())

    async def execute_sequence(self, actions: Iterable[BrowserAction]) -> list[ActionResult]:
        """Run actions in order, stopping at the first failure."""
        results: list[ActionResult] = []
        for action in actions:
            result = await self.execute(action)
            results.append(result)
            if not result.success:
                break
        return results

    async def page_content(self) -> str:
        return await self._require_page().content()

    async def page_text(self) -> str:
        return await self._require_page().evaluate("() => document.body.innerText")

    async def close(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._state = SessionState.CLOSED

        for name, resource, method in (
            ("page", self._page, "close"),
            ("context", self._context, "close"),
            ("browser", self._browser, "close"),
            ("playwright", self._playwright, "stop"),
        ):
            if resource is None:
                continue
            try:
                await getattr(resource, method)()
            except Exception as exc:
                logger.warning(
                    "browser resource release failed",
                    extra={"resource": name, "error_type": type(exc).__name__},
                )

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

    async def _ensure_page(self) -> Any:
        if self._page is not None:
            return self._page

        if self._playwright is None:
            self._playwright = await self._playwright_factory().start()
        if self._browser is None:
            self._browser = await self._playwright.chromium.launch(
                headless=self._headless,
                args=list(self._launch_args),
            )
        if self._context is None:
            self._context = await self._browser.new_context(
                viewport=self._viewport,
                user_agent=self._user_agent,
            )
        self._page = await self._context.new_page()
        self._state = SessionState.READY
        logger.debug("browser session ready", extra={"headless": self._headless})
        return self._page

    def _require_page(self) -> Any:
        if self._state is SessionState.CLOSED:
            raise SessionClosedError("Browser session is closed")
        if self._page is None:
            raise BrowserError("No page available")
        return self._page

    def _current_url(self) -> str | None:
        if self._page is None:
            return None
        return self._page.url

    async def _navigate(self, page: Any, action: NavigateAction) -> ActionResult:
        await page.goto(action.url, wait_until="networkidle", timeout=action.timeout)
        logger.info("browser navigated", extra={"current_url": page.url})
        return ActionResult(
            success=True,
            data={"message": f"Navigated to {action.url}"},
            current_url=page.url,
        )

    async def _click(self, page: Any, action: ClickAction) -> ActionResult:
        await page.wait_for_selector(action.selector, timeout=action.timeout)
        await page.click(action.selector, timeout=action.timeout)
        await page.wait_for_timeout(CLICK_SETTLE_MS)
        return ActionResult(
            success=True,
            data={"message": f"Clicked element: {action.selector}"},
            current_url=page.url,
        )

    async def _type(self, page: Any, action: TypeAction) -> ActionResult:
        await page.wait_for_selector(action.selector, timeout=action.timeout)
        await page.click(action.selector, click_count=3, timeout=action.timeout)
        await page.type(action.selector, action.text, delay=KEYSTROKE_DELAY_MS, timeout=action.timeout)
        return ActionResult(
            success=True,
            data={"message": f"Typed text into: {action.selector}"},
            current_url=page.url,
        )

    async def _select(self, page: Any, action: SelectAction) -> ActionResult:
        await page.wait_for_selector(action.selector, timeout=action.timeout)
        selected = await page.select_option(action.selector, value=action.value, timeout=action.timeout)
        return ActionResult(
            success=True,
            data={"message": f"Selected {action.value} in {action.selector}", "selected": list(selected or [])},
            current_url=page.url,
        )

    async def _upload(self, page: Any, action: UploadAction) -> ActionResult:
        path = Path(action.file_path)
        if not path.is_file():
            raise ActionFailedError(f"File not found: {action.file_path}", action_type=action.type)

        handle = await page.query_selector(action.selector)
        if handle is None:
            raise ActionFailedError(f"File input not found: {action.selector}", action_type=action.type)

        await handle.set_input_files(str(path))
        return ActionResult(
            success=True,
            data={"message": f"Uploaded file: {path.name}"},
            current_url=page.url,
        )

    async def _extract(self, page: Any, action: ExtractAction) -> ActionResult:
        await page.wait_for_selector(action.selector, timeout=action.timeout)
        extracted = await page.eval_on_selector_all(action.selector, _EXTRACT_JS)
        return ActionResult(
            success=True,
            data={"extracted": extracted, "count": len(extracted)},
            current_url=page.url,
        )

    async def _screenshot(self, page: Any, action: ScreenshotAction) -> ActionResult:
        image = await page.screenshot(type="png", full_page=action.full_page)
        if not image:
            raise ActionFailedError("Screenshot returned no data", action_type=action.type)
        return ActionResult(
            success=True,
            data={"message": "Screenshot captured", "full_page": action.full_page},
            screenshot_base64=base64.b64encode(image).decode("ascii"),
            current_url=page.url,
        )

    async def _wait(self, page: Any, action: WaitAction) -> ActionResult:
        await page.wait_for_timeout(action.timeout)
        return ActionResult(success=True, data={"message": "Waited"}, current_url=page.url)
