"""Playback configuration shared by the driver, tab registry and step budgets."""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field


def _env_int(env: Mapping[str, str], name: str) -> int | None:
	raw = env.get(name)
	if raw is None or not raw.strip():
		return None
	return int(raw)


def _env_flag(env: Mapping[str, str], name: str) -> bool:
	return (_env_int(env, name) or 0) > 0


class PlaybackConfig(BaseModel):
	"""Timeouts, queue limits and feature switches for a playback run.

	Step-level values are milliseconds, transport-level values are seconds.
	"""

	model_config = ConfigDict(extra='forbid', validate_assignment=True)

	step_timeout: int = Field(default=30_000, gt=0)
	applitools_step_timeout: int | None = Field(default=None, gt=0)
	requests_queue_size: int | None = Field(default=None, gt=0)
	disable_debugger_infinite_timeout: bool = False
	enable_frame_switch_optimization: bool = False
	connection_timeout: float = Field(default=90.0, gt=0)
	tab_poll_interval: float = Field(default=0.5, gt=0)
	pending_tab_wait: float = Field(default=3.0, ge=0)
	keep_alive_interval: float = Field(default=10.0, gt=0)
	# tabs whose url contains one of these are never registered for playback
	prohibited_tab_urls: tuple[str, ...] = ('app.testim.io',)

	@classmethod
	def from_env(cls, env: Mapping[str, str] | None = None, **overrides) -> 'PlaybackConfig':
		"""Build a config from environment variables, letting keyword overrides win."""
		env = os.environ if env is None else env
		values: dict = {
			'disable_debugger_infinite_timeout': _env_flag(env, 'DISABLE_DEBUGGER_INFINITE_TIMEOUT'),
			'enable_frame_switch_optimization': _env_flag(env, 'ENABLE_FRAME_SWITCH_OPTIMIZATION'),
		}
		step_timeout = _env_int(env, 'STEP_TIMEOUT')
		if step_timeout is not None:
			values['step_timeout'] = step_timeout
		applitools_step_timeout = _env_int(env, 'APPLITOOLS_STEP_TIMEOUT')
		if applitools_step_timeout is not None:
			values['applitools_step_timeout'] = applitools_step_timeout
		queue_size = _env_int(env, 'REQUESTS_QUEUE_SIZE')
		if queue_size is not None:
			values['requests_queue_size'] = queue_size
		values.update(overrides)
		return cls(**values)
