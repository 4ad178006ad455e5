from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class NavigateAction(_Action):
    type: Literal["navigate"] = "navigate"
    url: str = Field(min_length=1)
    timeout: int = Field(default=30000, gt=0)


class ClickAction(_Action):
    type: Literal["click"] = "click"
    selector: str = Field(min_length=1)
    timeout: int = Field(default=10000, gt=0)


class TypeAction(_Action):
    type: Literal["type"] = "type"
    selector: str = Field(min_length=1)
    text: str = Field(min_length=1)
    timeout: int = Field(default=10000, gt=0)


class SelectAction(_Action):
    type: Literal["select"] = "select"
    selector: str = Field(min_length=1)
    value: str = Field(min_length=1)
    timeout: int = Field(default=10000, gt=0)


class UploadAction(_Action):
    type: Literal["upload"] = "upload"
    selector: str = Field(min_length=1)
    file_path: str = Field(min_length=1)


class ExtractAction(_Action):
    type: Literal["extract"] = "extract"
    selector: str = Field(min_length=1)
    timeout: int = Field(default=10000, gt=0)


class ScreenshotAction(_Action):
    type: Literal["screenshot"] = "screenshot"
    full_page: bool = False


class WaitAction(_Action):
    type: Literal["wait"] = "wait"
    timeout: int = Field(default=2000, ge=0)


BrowserAction = Annotated[
    Union[
        NavigateAction,
        ClickAction,
        TypeAction,
        SelectAction,
        UploadAction,
        ExtractAction,
        ScreenshotAction,
        WaitAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES: tuple[str, ...] = (
    "navigate",
    "click",
    "type",
    "select",
    "upload",
    "extract",
    "screenshot",
    "wait",
)

_action_adapter: TypeAdapter[BrowserAction] = TypeAdapter(BrowserAction)
_actions_adapter: TypeAdapter[list[BrowserAction]] = TypeAdapter(list[BrowserAction])


def parse_action(payload: dict[str, Any]) -> BrowserAction:
    """Validate one agent-supplied action; raises ``pydantic.ValidationError``."""
    return _action_adapter.validate_python(payload)


def parse_actions(payload: list[dict[str, Any]]) -> list[BrowserAction]:
    return _actions_adapter.validate_python(payload)


class ActionResult(BaseModel):
    """Uniform outcome of any browser action."""

    success: bool
    data: dict[str, Any] | None = None
    screenshot_base64: str | None = None
    error: str | None = None
    current_url: str | None = None
