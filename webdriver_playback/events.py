"""Events published on a playback session's event bus."""

from typing import Any

from bubus import BaseEvent
from pydantic import Field


class TabOpenedEvent(BaseEvent[None]):
	session_id: str
	handle: str
	opener_step_id: str | None = None
	is_main: bool = False


class TabClosedEvent(BaseEvent[None]):
	session_id: str
	handle: str


class BrowserClosedEvent(BaseEvent[None]):
	session_id: str | None = None
	reason: str


class StepResultEvent(BaseEvent[None]):
	session_id: str
	step_id: str
	success: bool
	is_tab_opener: bool = False
	error_type: str | None = None
	reason: str | None = None
	phase_times: list[dict[str, float]] = Field(default_factory=list)
	extra: dict[str, Any] = Field(default_factory=dict)
