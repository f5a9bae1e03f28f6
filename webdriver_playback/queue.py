"""Per-session protocol command queue with a concurrency cap."""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from webdriver_playback.errors import error_message
from webdriver_playback.perf import SeleniumPerfStats

T = TypeVar('T')

logger = logging.getLogger(__name__)

MAX_OPERATION_TEXT = 2000


def describe_operation(operation: Callable[..., object]) -> str:
	"""Source text of the queued callable (or its repr), truncated for logging."""
	try:
		text = inspect.getsource(operation)
	except (OSError, TypeError):
		text = getattr(operation, '__qualname__', None) or repr(operation)
	return text[:MAX_OPERATION_TEXT]


class CommandQueue:
	"""Runs protocol calls with at most ``max_concurrent`` in flight.

	``None`` means unbounded. With a cap of 1 calls run strictly one after the
	other in submission order; with a higher cap only parallelism is bounded.
	Failures are logged with the session context and re-raised untouched.
	"""

	def __init__(
		self,
		max_concurrent: int | None = None,
		perf_stats: SeleniumPerfStats | None = None,
		session_id: str | None = None,
		test_name: str | None = None,
	) -> None:
		if max_concurrent is not None and max_concurrent < 1:
			raise ValueError(f'max_concurrent must be positive, got {max_concurrent}')
		self.max_concurrent = max_concurrent
		self.perf_stats = perf_stats or SeleniumPerfStats()
		self.session_id = session_id
		self.test_name = test_name
		self._semaphore = asyncio.Semaphore(max_concurrent) if max_concurrent is not None else None
		self._waiting = 0
		self._in_flight = 0

	@property
	def queue_length(self) -> int:
		"""Number of calls waiting for a free slot."""
		return self._waiting

	@property
	def in_flight(self) -> int:
		return self._in_flight

	@property
	def is_idle(self) -> bool:
		return self._waiting == 0 and self._in_flight == 0

	async def _run(self, operation: Callable[[], Awaitable[T]]) -> T:
		self._in_flight += 1
		try:
			return await operation()
		finally:
			self._in_flight -= 1

	async def add(self, operation: Callable[[], Awaitable[T]]) -> T:
		mark_id = self.perf_stats.mark_start()
		try:
			if self._semaphore is None:
				return await self._run(operation)
			self._waiting += 1
			try:
				await self._semaphore.acquire()
			finally:
				self._waiting -= 1
			try:
				return await self._run(operation)
			finally:
				self._semaphore.release()
		except Exception as exc:
			logger.warning(
				f'error from selenium session={self.session_id} test={self.test_name}: '
				f'{type(exc).__name__}: {error_message(exc)}\n{describe_operation(operation)}'
			)
			raise
		finally:
			self.perf_stats.mark_end(mark_id)
