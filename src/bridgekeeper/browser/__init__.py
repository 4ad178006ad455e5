from bridgekeeper.browser.actions import (
    ACTION_TYPES,
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
    parse_action,
    parse_actions,
)
from bridgekeeper.browser.policy import DomainAllowList
from bridgekeeper.browser.runner import RunReport, run_actions, with_start_url
from bridgekeeper.browser.session import BrowserSession, SessionState

__all__ = [
    "ACTION_TYPES",
    "ActionResult",
    "BrowserAction",
    "BrowserSession",
    "ClickAction",
    "DomainAllowList",
    "ExtractAction",
    "NavigateAction",
    "RunReport",
    "ScreenshotAction",
    "SelectAction",
    "SessionState",
    "TypeAction",
    "UploadAction",
    "WaitAction",
    "parse_action",
    "parse_actions",
    "run_actions",
    "with_start_url",
]
