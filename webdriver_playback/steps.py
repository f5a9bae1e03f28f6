"""Step descriptors and the per-step playback context."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from webdriver_playback.config import PlaybackConfig


class StepTabInfo(BaseModel):
	"""Tab a step was recorded in, as seen by the recorder."""

	model_config = ConfigDict(extra='ignore')

	url: str | None = None
	current_url: str | None = None
	order: int | None = None
	is_main: bool = False
	opener_step_id: str | None = None


class FrameLocatorSpec(BaseModel):
	"""One level of a recorded frame chain; locate data is opaque to this package."""

	model_config = ConfigDict(extra='allow')

	frame_id: str
	target_id: str | None = None


class ParameterValue(BaseModel):
	model_config = ConfigDict(extra='allow')

	type: str
	frame_locators: list[FrameLocatorSpec] | None = None


class Step(BaseModel):
	model_config = ConfigDict(extra='allow')

	id: str
	type: str
	version: str = '1.2.0'
	original_step_id: str | None = None
	tab_info: StepTabInfo | None = None
	frame_locators: list[FrameLocatorSpec] = Field(default_factory=list)
	events: list[dict[str, Any]] = Field(default_factory=list)
	parameter_values: list[ParameterValue] | None = None
	step_timeout: int | None = None
	use_step_timeout: bool = False
	default_timeout: int | None = None
	duration_ms: int | None = None
	is_scroll_to_element: bool = False
	is_tab_opener: bool = False


class StepRetryRecord(BaseModel):
	step_id: str
	results: list[Any] = Field(default_factory=list)


class ResultsHandler(BaseModel):
	"""Step results in the order they were produced, grouped per consecutive step."""

	results_by_chronologic_order: list[StepRetryRecord] = Field(default_factory=list)

	def add_result(self, step_id: str, result: Any) -> None:
		records = self.results_by_chronologic_order
		if not records or records[-1].step_id != step_id:
			records.append(StepRetryRecord(step_id=step_id))
		records[-1].results.append(result)

	def last_record(self) -> StepRetryRecord | None:
		return self.results_by_chronologic_order[-1] if self.results_by_chronologic_order else None


class Playback(BaseModel):
	results_handler: ResultsHandler = Field(default_factory=ResultsHandler)


class PlaybackContext(BaseModel):
	config: PlaybackConfig = Field(default_factory=PlaybackConfig)
	data: dict[str, Any] = Field(default_factory=dict)
	playback: Playback = Field(default_factory=Playback)


class StepPlayback(BaseModel):
	"""A step being played: its descriptor, the run context and retry bookkeeping."""

	model_config = ConfigDict(validate_assignment=True)

	step: Step
	context: PlaybackContext = Field(default_factory=PlaybackContext)
	retry_index: int = Field(default=0, ge=0)
	start_timestamp: float | None = None

	@property
	def step_type(self) -> str:
		return self.step.type

	def set_start_timestamp(self, timestamp_ms: float) -> None:
		self.start_timestamp = timestamp_ms
