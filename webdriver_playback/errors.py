"""Exceptions raised by the playback layer.

Everything derives from selenium's ``WebDriverException`` so callers that
already handle selenium failures keep working.
"""

from typing import Any

from selenium.common.exceptions import WebDriverException

WINDOW_CLOSED_MESSAGES = ('no such window', 'no window found', 'the window could not be found')


def error_message(exc: BaseException) -> str:
	"""Return the bare message of an exception without selenium's "Message:" decoration."""
	if isinstance(exc, WebDriverException):
		return exc.msg or ''
	return str(exc)


def is_window_closed_error(exc: BaseException) -> bool:
	message = error_message(exc).lower()
	return any(text in message for text in WINDOW_CLOSED_MESSAGES)


class WebDriverProtocolError(WebDriverException):
	"""A failed WebDriver HTTP response, classified by error type."""

	def __init__(
		self,
		message: str,
		error_type: str = 'UnknownError',
		status: int | str | None = None,
		http_status: int | None = None,
		org_status_message: str | None = None,
		request_id: str | None = None,
		details: Any = None,
	) -> None:
		super().__init__(message)
		self.error_type = error_type
		self.status = status
		self.http_status = http_status
		self.org_status_message = org_status_message
		self.request_id = request_id
		self.details = details

	def to_dict(self) -> dict[str, Any]:
		return {'name': self.error_type, 'message': self.msg}


class DriverNotStartedError(WebDriverException):
	"""Raised when a protocol call is issued before ``PlaybackDriver.init()``."""


class SeleniumCrashError(WebDriverException):
	def __init__(self, msg: str = 'selenium driver crashed') -> None:
		super().__init__(msg)


class StepPlaybackError(WebDriverException):
	"""Base class for step-level failures reported back to the step retry loop."""

	error_type = 'step-failed'
	should_retry = True

	def __init__(self, msg: str | None = None) -> None:
		super().__init__(msg or self.error_type)


class InvalidTestVersionError(StepPlaybackError):
	"""The step was recorded before frame locators existed and cannot be played."""

	error_type = 'invalid-test-version'
	should_retry = False


class TabNotFoundError(StepPlaybackError):
	error_type = 'no-tab-found'


class EmptyLocateResultError(StepPlaybackError):
	error_type = 'empty-locate-result'


class StepTimeoutError(StepPlaybackError):
	error_type = 'step-timeout'
	should_retry = False


class StepPhaseTimeoutError(StepPlaybackError):
	"""A single phase (tab, frame or action) used up the current retry's budget."""

	error_type = 'phase-timeout'
