"""Wall-clock budgets for a step and for each of its retries.

All values are milliseconds. The first retry of a step gets at most a third of
the step's remaining time so later retries still have room; phases within a
retry (tab, frame, locate, dynamic parent) share the retry's budget.
"""

import copy
import sys
import time

from webdriver_playback.config import PlaybackConfig
from webdriver_playback.steps import StepPlayback

COMMUNICATION_BUFFER_TIME = 1000
MINIMAL_RETRY_TIME = 5000
HALF_HOUR_IN_MS = 30 * 60 * 1000
DEBUGGER_ACTION_TIMEOUT = 10 * 60 * 1000
SLEEP_ERROR_MARGIN_MS = 5000
MIN_ACTION_PLAYBACK_TIME = 30_000

UI_VERIFICATION_STEPS = ('simple-ui-verification', 'wait-for-simple-ui-verification')
FULL_TIMEOUT_STEP_TYPES = (
	*UI_VERIFICATION_STEPS,
	'custom-validation',
	'sfdc-recorded-step',
	'sfdc-step-login',
	'sfdc-step-logout',
	'sfdc-step-sobjectcreate',
	'sfdc-step-sobjectdelete',
	'sfdc-step-findrecord',
	'sfdc-step-quickaction',
	'sfdc-step-sobjectvalidate',
	'sfdc-step-launchapp',
	'sfdc-step-closeconsoletabs',
	'sfdc-step-sobjectedit',
)

PHASE_TAB = 'tab'
PHASE_FRAME = 'frame'
PHASE_CONDITION = 'condition'
PHASE_PRE_LOCATE = 'pre-locate'
PHASE_LOCATE = 'locate'
PHASE_ACTION = 'action'


def now_ms() -> float:
	return time.time() * 1000


def is_debugger_connected(config: PlaybackConfig | None = None) -> bool:
	"""True when a tracing debugger (pdb, debugpy, an IDE) is attached to this process."""
	if config is not None and config.disable_debugger_infinite_timeout:
		return False
	return sys.gettrace() is not None or 'pydevd' in sys.modules


class TimeoutBudgetCalculator:
	def __init__(self, is_debugger_connected: bool = False) -> None:
		self.is_debugger_connected = is_debugger_connected
		self.reset_step_variables()

	def reset_step_variables(self, total_step_time: float = 0, current_retry_times: list[float] | None = None) -> None:
		self.current_retry_times: list[float] = list(current_retry_times or [])
		self.total_step_time = total_step_time
		self.total_step_times_report: list[dict[str, float]] = []
		self.current_retry_times_report: dict[str, float] = {}
		now = now_ms()
		self.current_retry_start = now
		self.last_update_time = now

	def reset_retry_variables(self) -> None:
		"""Archive the finished retry's phase breakdown and start timing a new retry."""
		now = now_ms()
		self.current_retry_start = now
		self.last_update_time = now
		self.total_step_times_report.append(self.current_retry_times_report)
		self.current_retry_times_report = {}

	def init_retry_time(self) -> None:
		self.reset_retry_variables()

	def _retry_timeout_suggestions(self, step_playback: StepPlayback, total_step_time: float) -> list[float]:
		time_to_play_step = self.get_total_step_time_left_to_play(step_playback, total_step_time)
		if time_to_play_step <= MINIMAL_RETRY_TIME:
			return [MINIMAL_RETRY_TIME]
		return [max(MINIMAL_RETRY_TIME, time_to_play_step / 3)]

	def init_step_run(self, step_playback: StepPlayback) -> None:
		"""Compute the step's total budget and its retry slots; call once when the step starts."""
		step_playback.set_start_timestamp(now_ms())
		total_step_time = self.get_total_step_run_time(step_playback)
		if step_playback.step_type in FULL_TIMEOUT_STEP_TYPES:
			current_retry_times = [total_step_time]
		else:
			current_retry_times = self._retry_timeout_suggestions(step_playback, total_step_time)
		self.reset_step_variables(total_step_time, current_retry_times)
		step_playback.context.data['max_total_step_time'] = total_step_time

	def get_step_times(self) -> list[dict[str, float]]:
		"""Phase breakdown of every finished retry plus the current one."""
		return copy.deepcopy([*self.total_step_times_report, self.current_retry_times_report])

	def get_total_step_run_time(self, step_playback: StepPlayback) -> float:
		step = step_playback.step
		config = step_playback.context.config
		fallback_timeout: float | None = config.step_timeout
		if step_playback.step_type in UI_VERIFICATION_STEPS:
			fallback_timeout = config.applitools_step_timeout or HALF_HOUR_IN_MS
		if step.type.startswith('sfdc-'):
			fallback_timeout = step.default_timeout or config.step_timeout
		if step.use_step_timeout and step.step_timeout:
			return step.step_timeout
		return fallback_timeout

	def get_total_step_time_left_to_play(self, step_playback: StepPlayback, total_step_time: float | None = None) -> float:
		if total_step_time is None:
			total_step_time = self.total_step_time
		start = step_playback.start_timestamp if step_playback.start_timestamp is not None else now_ms()
		return total_step_time - (now_ms() - start)

	def get_current_retry_time(self, step_playback: StepPlayback) -> float:
		if step_playback.retry_index < len(self.current_retry_times):
			return self.current_retry_times[step_playback.retry_index]
		return self.get_total_step_time_left_to_play(step_playback)

	def get_total_current_retry_time_left(self, step_playback: StepPlayback) -> float:
		total_retry_time = now_ms() - self.current_retry_start
		return self.get_current_retry_time(step_playback) - total_retry_time + COMMUNICATION_BUFFER_TIME

	# Phase getters share the retry budget. Giving a phase its own sub-budget
	# means changing only that getter.

	def get_tab_timeout(self, step_playback: StepPlayback) -> float:
		return self.get_total_current_retry_time_left(step_playback)

	def get_dynamic_parent_timeout(self, step_playback: StepPlayback) -> float:
		return self.get_total_current_retry_time_left(step_playback)

	def get_frame_timeout(self, step_playback: StepPlayback) -> float:
		return self.get_total_current_retry_time_left(step_playback)

	def get_locate_timeout(self, step_playback: StepPlayback) -> float:
		return self.get_total_current_retry_time_left(step_playback)

	def calc_android_scroll_timeout(self, step_playback: StepPlayback) -> float:
		buffer = 5000
		# scroll-to-element runs a locate per event
		time_per_event = 4000 if step_playback.step.is_scroll_to_element else 2000
		return len(step_playback.step.events) * time_per_event + buffer

	def get_action_timeout(self, step_playback: StepPlayback) -> float:
		if self.is_debugger_connected:
			return DEBUGGER_ACTION_TIMEOUT
		step = step_playback.step
		if step.type == 'sleep':
			return (step.duration_ms or 0) + SLEEP_ERROR_MARGIN_MS
		if step.type == 'android-scroll':
			return max(self.calc_android_scroll_timeout(step_playback), MIN_ACTION_PLAYBACK_TIME)
		return max(self.get_total_step_time_left_to_play(step_playback), MIN_ACTION_PLAYBACK_TIME)

	def set_step_phase_time(self, phase: str) -> float:
		"""Record the time since the previous phase boundary under ``phase``."""
		now = now_ms()
		elapsed = now - self.last_update_time
		self.last_update_time = now
		self.current_retry_times_report[phase] = elapsed
		return elapsed

	def report_get_tab_time(self) -> None:
		self.set_step_phase_time(PHASE_TAB)

	def report_get_frame_time(self) -> None:
		self.set_step_phase_time(PHASE_FRAME)

	def report_calc_condition_time(self) -> None:
		self.set_step_phase_time(PHASE_CONDITION)

	def report_pre_locate_actions_time(self) -> None:
		self.set_step_phase_time(PHASE_PRE_LOCATE)

	def report_find_elements_time(self) -> None:
		self.set_step_phase_time(PHASE_LOCATE)

	def report_step_action_time(self) -> None:
		self.set_step_phase_time(PHASE_ACTION)
