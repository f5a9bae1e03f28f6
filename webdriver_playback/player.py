"""Plays a single recorded step against a live browser session.

``SeleniumPlayer`` owns the per-session wiring: the tab registry, the frame
locator and the timeout budget. ``run_step`` drives one attempt of a step
through budget, tab, frame and action phases and reports a ``StepResult``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from typing import Any, TypeVar

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, Field
from selenium.common.exceptions import WebDriverException
from uuid_extensions import uuid7str

from webdriver_playback.config import PlaybackConfig
from webdriver_playback.driver import PlaybackDriver
from webdriver_playback.errors import StepPhaseTimeoutError, StepPlaybackError, StepTimeoutError, error_message
from webdriver_playback.events import StepResultEvent
from webdriver_playback.frames import FrameHandler, FrameLocator, FrameTree, LocateCapability
from webdriver_playback.steps import StepPlayback
from webdriver_playback.tabs import AddTabOptions, TabRegistry
from webdriver_playback.timeouts import TimeoutBudgetCalculator, is_debugger_connected

T = TypeVar('T')

END_DRIVER_TIMEOUT = 2 * 60

StepAction = Callable[[StepPlayback, FrameHandler], Awaitable[Any]]


class StepResult(BaseModel):
	model_config = ConfigDict(arbitrary_types_allowed=True)

	success: bool
	reason: str | None = None
	error_type: str | None = None
	should_retry: bool = False
	tab_id: str | None = None
	value: Any = None
	phase_times: list[dict[str, float]] = Field(default_factory=list)


class SeleniumPlayer:
	def __init__(
		self,
		session_id: str,
		driver: PlaybackDriver,
		locate_capability: LocateCapability,
		config: PlaybackConfig | None = None,
		event_bus: EventBus | None = None,
		tab_registry: TabRegistry | None = None,
	) -> None:
		self.id = session_id
		self.driver = driver
		self.config = config or driver.config
		self._owns_event_bus = event_bus is None
		self.event_bus = event_bus or EventBus(name=f'PlaybackSession_{uuid7str()[-4:]}')
		self.tab_registry = tab_registry or TabRegistry(driver, self.config, self.event_bus)
		self.frame_locator = FrameLocator(driver, locate_capability, self.config)
		self.timeout_calculator = TimeoutBudgetCalculator(is_debugger_connected(self.config))
		self.frame_trees: dict[str, FrameTree] = {}
		self._popup_tasks: set[asyncio.Task] = set()

		self.tab_registry.create_session(session_id)
		self.tab_registry.set_add_frame_handler_callback(self.add_playback_frame_handler)
		self.event_bus.on(StepResultEvent, self.on_StepResultEvent)

	@property
	def logger(self) -> logging.Logger:
		return logging.getLogger(f'webdriver_playback.SeleniumPlayer🅟 {self.id[-4:]}')

	def get_session_id(self) -> str | None:
		return self.driver.session_id

	async def add_playback_frame_handler(self, tab_id: str, tab_info: Any = None) -> FrameTree:
		frame_tree = FrameTree(tab_id, tab_info)
		self.frame_trees[tab_id] = frame_tree
		return frame_tree

	# step playback

	async def _with_budget(self, operation: Coroutine[Any, Any, T], timeout_ms: float, phase: str) -> T:
		try:
			return await asyncio.wait_for(operation, timeout=max(timeout_ms, 0) / 1000)
		except TimeoutError as exc:
			raise StepPhaseTimeoutError(f'{phase} did not finish within {int(timeout_ms)}ms') from exc

	async def _play_step(self, step_playback: StepPlayback, action: StepAction) -> tuple[str, Any]:
		calculator = self.timeout_calculator
		step = step_playback.step

		tab_id = await self._with_budget(
			self.tab_registry.get_tab_id_by_tab_info(self.id, step), calculator.get_tab_timeout(step_playback), 'tab'
		)
		calculator.report_get_tab_time()

		frame_tree = self.frame_trees.get(tab_id) or await self.add_playback_frame_handler(tab_id)
		frame_handler = await self._with_budget(
			self.frame_locator.find_frame(step_playback, step.frame_locators, frame_tree),
			calculator.get_frame_timeout(step_playback),
			'frame',
		)
		calculator.report_get_frame_time()

		value = await self._with_budget(
			action(step_playback, frame_handler), calculator.get_action_timeout(step_playback), 'action'
		)
		calculator.report_step_action_time()
		return tab_id, value

	async def run_step(self, step_playback: StepPlayback, action: StepAction) -> StepResult:
		"""Play one attempt of a step; attempt 0 starts the step budget, later ones start a retry."""
		calculator = self.timeout_calculator
		step = step_playback.step
		if step_playback.retry_index == 0:
			calculator.init_step_run(step_playback)
		else:
			calculator.init_retry_time()

		step_timeout = None
		if not calculator.is_debugger_connected:
			step_timeout = max(calculator.get_total_step_time_left_to_play(step_playback), 0) / 1000

		try:
			tab_id, value = await asyncio.wait_for(self._play_step(step_playback, action), timeout=step_timeout)
		except TimeoutError:
			self.logger.warning(f'step {step.id} ran out of its {int(calculator.total_step_time)}ms budget, closing the session')
			await self._force_close()
			result = StepResult(
				success=False,
				reason=f'step {step.id} timed out',
				error_type=StepTimeoutError.error_type,
				should_retry=StepTimeoutError.should_retry,
			)
		except StepPlaybackError as exc:
			result = StepResult(
				success=False, reason=error_message(exc), error_type=exc.error_type, should_retry=exc.should_retry
			)
		except WebDriverException as exc:
			self.logger.info(f'step {step.id} failed: {error_message(exc)}')
			result = StepResult(success=False, reason=error_message(exc), error_type=type(exc).__name__, should_retry=True)
		else:
			result = StepResult(success=True, tab_id=tab_id, value=value)

		result.phase_times = calculator.get_step_times()
		step_playback.context.playback.results_handler.add_result(step.id, result)
		await self.event_bus.dispatch(
			StepResultEvent(
				session_id=self.id,
				step_id=step.id,
				success=result.success,
				is_tab_opener=step.is_tab_opener,
				error_type=result.error_type,
				reason=result.reason,
				phase_times=result.phase_times,
			)
		)
		return result

	async def _force_close(self) -> None:
		try:
			await self.driver.force_end()
		except WebDriverException as exc:
			self.logger.debug(f'force end failed: {error_message(exc)}')

	# tab bookkeeping

	async def on_StepResultEvent(self, event: StepResultEvent) -> None:
		if event.session_id != self.id:
			return
		self.on_step_completed(event.step_id, event.is_tab_opener)

	def on_step_completed(self, step_id: str, is_tab_opener: bool) -> None:
		"""Start waiting for the popup a tab-opener step opened, without blocking the next step."""
		if not is_tab_opener:
			return
		task = asyncio.create_task(self._register_popup(step_id))
		self._popup_tasks.add(task)
		task.add_done_callback(self._popup_tasks.discard)

	async def _register_popup(self, opener_step_id: str) -> None:
		try:
			await asyncio.wait_for(
				self.tab_registry.add_new_popup(self.id, opener_step_id), timeout=self.config.step_timeout / 1000
			)
		except TimeoutError:
			self.logger.info(f'no popup appeared for tab opener step {opener_step_id}')
		except WebDriverException as exc:
			self.logger.warning(f'failed to register popup of step {opener_step_id}: {error_message(exc)}')

	def clear_session_tabs(self) -> None:
		self.tab_registry.clear_all_tabs(self.id)

	async def add_tab(self, opener_step_id: str | None = None, options: AddTabOptions | None = None) -> FrameTree:
		"""Register the most recently opened window handle."""
		ids = await self.driver.get_tab_ids()
		handle = ids[-1]
		await self.tab_registry.add_new_tab(self.id, handle, opener_step_id, options or AddTabOptions())
		return await self.add_playback_frame_handler(handle)

	async def add_all_tabs(
		self,
		opener_step_id: str | None = None,
		options: AddTabOptions | None = None,
		blacklist: Iterable[str] = (),
	) -> None:
		"""Register every open window handle, dropping tabs whose URL is prohibited."""
		options = options or AddTabOptions(check_for_main_tab=True)
		options = options.model_copy(update={'force_switch': True})
		prohibited_urls = (*self.config.prohibited_tab_urls, *blacklist)
		ids = await self.driver.get_tab_ids()
		# newest first, so the application under test is probed before any editor tab
		for handle in reversed(ids):
			await self.tab_registry.add_new_tab(self.id, handle, opener_step_id, options)
			tab_info = self.tab_registry.get_tab_info(self.id, handle)
			if tab_info is not None and any(bad in tab_info.url for bad in prohibited_urls):
				self.tab_registry.remove_tab_info(self.id, handle)
				continue
			await self.add_playback_frame_handler(handle)

		# the main-tab probe can fail on a reloading or busy page
		self.tab_registry.fix_missing_main_tab(self.id)
		if self.tab_registry.tab_count(self.id) == 1:
			main_tab_id = self.tab_registry.get_main_tab_id(self.id)
			if main_tab_id is not None:
				await self.tab_registry.switch_tab(main_tab_id, self.id, force_switch=True)

	async def on_done(self) -> None:
		"""End the browser session, force-closing it when a graceful end hangs."""
		try:
			await asyncio.wait_for(self.driver.end(), timeout=END_DRIVER_TIMEOUT)
		except TimeoutError:
			self.logger.warning('ending the driver timed out, forcing it closed')
			await self._force_close()
		except WebDriverException as exc:
			self.logger.debug(f'failed to end driver: {error_message(exc)}')
		finally:
			for task in list(self._popup_tasks):
				task.cancel()
			if self._owns_event_bus:
				await self.event_bus.stop(clear=True, timeout=5)
