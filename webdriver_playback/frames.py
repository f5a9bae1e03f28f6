"""Walks a recorded iframe chain, switching the driver into each frame in turn."""

import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from webdriver_playback.config import PlaybackConfig
from webdriver_playback.driver import PlaybackDriver, extract_element_id
from webdriver_playback.errors import EmptyLocateResultError
from webdriver_playback.steps import FrameLocatorSpec, StepPlayback

logger = logging.getLogger(__name__)

TOP_FRAME_ID = 'top'
ALLOWED_SAME_STEP_RETRIES = 1


class FrameOffset(BaseModel):
	top: float = 0
	left: float = 0

	def shifted(self, location: dict[str, Any] | None) -> 'FrameOffset':
		location = location or {}
		return FrameOffset(top=self.top + (location.get('top') or 0), left=self.left + (location.get('left') or 0))


class FrameHandler(BaseModel):
	"""One frame of a tab; ``parent`` links back up to the tab's top handler."""

	model_config = ConfigDict(arbitrary_types_allowed=True)

	frame_id: str = TOP_FRAME_ID
	full_frame_id: str = TOP_FRAME_ID
	tab_id: str | None = None
	frame_offset: FrameOffset = Field(default_factory=FrameOffset)
	frame_element: dict[str, Any] | None = None
	cached_result_url: str | None = None
	parent: 'FrameHandler | None' = None

	@property
	def is_top(self) -> bool:
		return self.parent is None

	def chain(self) -> list['FrameHandler']:
		"""Handlers from the top frame down to this one."""
		handlers: list[FrameHandler] = []
		handler: FrameHandler | None = self
		while handler is not None:
			handlers.append(handler)
			handler = handler.parent
		return handlers[::-1]


FrameHandler.model_rebuild()


class LocateResult(BaseModel):
	model_config = ConfigDict(arbitrary_types_allowed=True)

	located_element: Any = None
	frame_offset: FrameOffset | None = None
	result_url: str | None = None


class LocateCapability(Protocol):
	"""Finds an element (here: a frame element) inside ``current_frame``."""

	async def locate(self, frame_locator: FrameLocatorSpec, current_frame: FrameHandler, target_id: str) -> LocateResult: ...


class FrameTree:
	"""Frames of a single tab, rooted at its top handler."""

	def __init__(self, tab_id: str, tab_info: Any = None) -> None:
		self.tab_id = tab_id
		self.tab_info = tab_info
		self.top_frame_handler = FrameHandler(tab_id=tab_id)

	def get_top_frame_handler(self) -> FrameHandler:
		self.top_frame_handler.frame_offset = FrameOffset()
		return self.top_frame_handler


def is_empty_result(located_element: Any) -> bool:
	return located_element is None or located_element == '' or located_element == {}


class FrameLocator:
	def __init__(
		self,
		driver: PlaybackDriver,
		locate_capability: LocateCapability,
		config: PlaybackConfig | None = None,
	) -> None:
		self.driver = driver
		self.locate_capability = locate_capability
		self.config = config or PlaybackConfig()
		self.current_frame_handler: FrameHandler | None = None
		self._cache: dict[str, str] = {}

	def cache_results(self, element_guid: str, result_url: str) -> None:
		self._cache[element_guid] = result_url

	def get_results_from_cache(self, element_guid: str | None) -> str | None:
		if element_guid is None:
			return None
		return self._cache.get(element_guid)

	def cache_frame_locate_results(self, frame_handler: FrameHandler | None) -> None:
		if frame_handler is None or not frame_handler.frame_element or not frame_handler.cached_result_url:
			return
		guid = extract_element_id(frame_handler.frame_element)
		if guid:
			self.cache_results(guid, frame_handler.cached_result_url)

	async def locate(
		self,
		frame_locator: FrameLocatorSpec,
		frame_depth: int,
		current_frame: FrameHandler,
		frame_tree: FrameTree,
		step_playback: StepPlayback,
	) -> FrameHandler:
		"""Locate one frame element inside ``current_frame`` and switch into it."""
		target_id = f'frame_locator_{frame_depth}'
		frame_locator.target_id = target_id
		result = await self.locate_capability.locate(frame_locator, current_frame, target_id)
		if is_empty_result(result.located_element):
			logger.error(f'got empty locate result for frame {frame_locator.frame_id} at depth {frame_depth}')
			raise EmptyLocateResultError(f'frame {frame_locator.frame_id} was not found')
		step_playback.context.data[target_id] = result

		location = await self.driver.get_element_location_with_padding(result.located_element)
		frame_offset = current_frame.frame_offset.shifted(location)

		frame_element = await self.driver.switch_to_located_frame(result.located_element)
		guid = extract_element_id(frame_element)
		handler = FrameHandler(
			frame_id=frame_locator.frame_id,
			full_frame_id=f'{current_frame.full_frame_id}-{frame_locator.frame_id}',
			tab_id=frame_tree.tab_id,
			frame_offset=frame_offset,
			frame_element=frame_element,
			cached_result_url=result.result_url or self.get_results_from_cache(guid),
			parent=current_frame,
		)
		self.current_frame_handler = handler
		return handler

	async def _locate_chain(
		self,
		frame_locators: list[FrameLocatorSpec],
		start_depth: int,
		start_frame: FrameHandler,
		frame_tree: FrameTree,
		step_playback: StepPlayback,
	) -> FrameHandler:
		current = start_frame
		for depth, frame_locator in enumerate(frame_locators, start=start_depth):
			current = await self.locate(frame_locator, depth, current, frame_tree, step_playback)
		return current

	def _exceeded_same_step_retries(self, step_playback: StepPlayback) -> bool:
		last_record = step_playback.context.playback.results_handler.last_record()
		return (
			last_record is not None
			and last_record.step_id == step_playback.step.id
			and len(last_record.results) > ALLOWED_SAME_STEP_RETRIES
		)

	async def find_frame(
		self,
		step_playback: StepPlayback,
		frame_locators: list[FrameLocatorSpec],
		frame_tree: FrameTree,
	) -> FrameHandler:
		"""Switch the driver into the frame ``frame_locators`` describes and return its handler.

		With frame switch optimization on, a chain that passes through the current
		frame is resumed from there instead of from the top document, unless this
		step already failed more than once.
		"""
		allow_no_frame_switch = self.config.enable_frame_switch_optimization
		current = self.current_frame_handler
		if (
			allow_no_frame_switch
			and current is not None
			and current.tab_id == frame_tree.tab_id
			and not self._exceeded_same_step_retries(step_playback)
		):
			position = next(
				(index for index, locator in enumerate(frame_locators) if locator.frame_id == current.frame_id),
				-1,
			)
			# resume only from the exact ancestor, not a same-named frame elsewhere
			if position > -1 and current.full_frame_id == '-'.join(
				['top', *(locator.frame_id for locator in frame_locators[: position + 1])]
			):
				return await self._locate_chain(
					frame_locators[position + 1 :], position + 1, current, frame_tree, step_playback
				)

		top_frame_handler = frame_tree.get_top_frame_handler()
		if not (allow_no_frame_switch and current is top_frame_handler):
			await self.driver.switch_to_top_frame()
		self.cache_frame_locate_results(current)
		self.current_frame_handler = top_frame_handler
		return await self._locate_chain(frame_locators, 0, top_frame_handler, frame_tree, step_playback)
