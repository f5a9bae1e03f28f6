"""JSON-Wire / W3C negotiation, one operation at a time.

Remote ends speak either the legacy JSON-Wire dialect, the W3C dialect, or a
mix of both depending on the operation. Each operation is first tried on its
legacy endpoint; if the remote end answers with an "unsupported command"
signature the session remembers that the operation needs the W3C endpoint and
never probes the legacy one again.
"""

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from selenium.common.exceptions import UnknownMethodException

from webdriver_playback.errors import WebDriverProtocolError, error_message
from webdriver_playback.queue import CommandQueue
from webdriver_playback.transport import INVALID_ARGUMENT_MESSAGE

T = TypeVar('T')

logger = logging.getLogger(__name__)

_MISMATCH_FRAGMENTS = (
	'Command not found',
	'did not match a known command',
	'Unknown timeout type',
	'Server returned HTTP response code: 405 for URL',
	'Invalid timeout type specified: ms',
)
_MISMATCH_MESSAGES = ('HTTP method not allowed', 'Unknown error')


def is_old_protocol_error(exc: BaseException) -> bool:
	"""True when ``exc`` means "this endpoint does not exist in the remote's dialect"."""
	if isinstance(exc, UnknownMethodException):
		return True
	message = error_message(exc)
	if message in _MISMATCH_MESSAGES:
		return True
	if any(fragment in message for fragment in _MISMATCH_FRAGMENTS):
		return True
	if isinstance(exc, WebDriverProtocolError):
		if exc.http_status == 405 or exc.error_type == 'UnknownCommand':
			return True
		if exc.details == INVALID_ARGUMENT_MESSAGE:
			return True
	return False


@dataclass(slots=True)
class Command(Generic[T]):
	"""One logical operation with its legacy and W3C implementations."""

	operation_name: str
	invoke_old: Callable[[], Awaitable[T]]
	invoke_new: Callable[[], Awaitable[T]]


class ProtocolCapabilities:
	"""Per-session map of operations that must use the W3C endpoint.

	Flags only ever go from unset to set while the session lives; ``reset()`` is
	for session teardown.
	"""

	def __init__(self) -> None:
		self._new_endpoint_operations: set[str] = set()

	def requires_new_endpoint(self, operation_name: str) -> bool:
		return operation_name in self._new_endpoint_operations

	def mark_new_endpoint(self, operation_name: str) -> None:
		self._new_endpoint_operations.add(operation_name)

	def snapshot(self) -> dict[str, bool]:
		return {name: True for name in sorted(self._new_endpoint_operations)}

	def reset(self) -> None:
		self._new_endpoint_operations.clear()

	def __contains__(self, operation_name: object) -> bool:
		return operation_name in self._new_endpoint_operations


class ProtocolCompatibilityLayer:
	"""Executes ``Command`` objects, switching dialects on protocol mismatch."""

	def __init__(self, queue: CommandQueue, capabilities: ProtocolCapabilities | None = None) -> None:
		self.queue = queue
		self.capabilities = capabilities or ProtocolCapabilities()

	async def run_unqueued(self, command: Command[T]) -> T:
		"""Run ``command`` without taking a queue slot; for use inside an already queued call."""
		if self.capabilities.requires_new_endpoint(command.operation_name):
			return await command.invoke_new()
		try:
			return await command.invoke_old()
		except Exception as exc:
			if not is_old_protocol_error(exc):
				raise
			logger.info(
				f'{command.operation_name} is not supported by the legacy endpoint ({error_message(exc)!r}), '
				'switching to the W3C endpoint for the rest of the session'
			)
			self.capabilities.mark_new_endpoint(command.operation_name)
		return await command.invoke_new()

	async def run(self, command: Command[T]) -> T:
		return await self.queue.add(functools.partial(self.run_unqueued, command))
