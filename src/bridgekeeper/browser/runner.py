from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from bridgekeeper.browser.actions import ActionResult, BrowserAction, NavigateAction, ScreenshotAction
from bridgekeeper.browser.policy import DomainAllowList
from bridgekeeper.browser.session import BrowserSession, SessionState

logger = logging.getLogger(__name__)

SessionFactory = Callable[[DomainAllowList], BrowserSession]


@dataclass
class RunReport:
    success: bool
    results: list[ActionResult]
    summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": [result.model_dump() for result in self.results],
            "summary": self.summary,
        }


def with_start_url(actions: Sequence[BrowserAction], url: str | None) -> list[BrowserAction]:
    """Prepend a navigation to ``url`` unless the batch already starts with one."""
    batch = list(actions)
    if url and (not batch or not isinstance(batch[0], NavigateAction)):
        batch.insert(0, NavigateAction(url=url))
    return batch


async def run_actions(
    actions: Sequence[BrowserAction],
    *,
    allow_list: DomainAllowList | None = None,
    include_screenshot: bool = False,
    session_factory: SessionFactory | None = None,
) -> RunReport:
    """Run a fail-fast batch in a fresh session that is always closed afterwards.

    A full-page screenshot is attached to the last result when requested or
    when a step failed.
    """
    allow_list = allow_list or DomainAllowList()
    factory = session_factory or (lambda policy: BrowserSession(policy))

    async with factory(allow_list) as session:
        results = await session.execute_sequence(actions)

        failed = any(not result.success for result in results)
        if results and (failed or include_screenshot) and session.state is SessionState.READY:
            shot = await session.execute(ScreenshotAction(full_page=True))
            if shot.screenshot_base64:
                results[-1] = results[-1].model_copy(update={"screenshot_base64": shot.screenshot_base64})

    succeeded = sum(1 for result in results if result.success)
    report = RunReport(
        success=not failed,
        results=results,
        summary={"total": len(results), "succeeded": succeeded, "failed": len(results) - succeeded},
    )
    logger.info("browser batch finished", extra=report.summary)
    return report
