"""Async WebDriver session driver used by the playback layer.

Every protocol call goes through the session's ``CommandQueue``; operations
whose endpoint differs between JSON-Wire and W3C go through the
``ProtocolCompatibilityLayer`` as a ``Command``.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import quote, unquote

import httpx
from bubus import EventBus
from pydantic import validate_call
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.keys import Keys
from uuid_extensions import uuid7str

from webdriver_playback.config import PlaybackConfig
from webdriver_playback.errors import DriverNotStartedError, SeleniumCrashError, WebDriverProtocolError, error_message
from webdriver_playback.events import BrowserClosedEvent
from webdriver_playback.perf import SeleniumPerfMark, SeleniumPerfStats
from webdriver_playback.protocol import Command, ProtocolCapabilities, ProtocolCompatibilityLayer
from webdriver_playback.queue import CommandQueue
from webdriver_playback.transport import WebDriverHttpClient

T = TypeVar('T')

W3C_ELEMENT_ID = 'element-6066-11e4-a52e-4f735466cecf'
LEGACY_ELEMENT_ID = 'ELEMENT'
LOCATED_ELEMENT_ATTRIBUTE = 'data-playback-element-id'
CLOSED_BROWSER_THRESHOLD_COUNT = 3
KEEP_ALIVE_HISTORY_SIZE = 100

# Key names accepted by keys(); mapped to selenium's unicode code points.
_SELENIUM_KEY_ALIASES: dict[str, str] = {
	'backspace': 'BACKSPACE',
	'tab': 'TAB',
	'enter': 'ENTER',
	'return': 'RETURN',
	'esc': 'ESCAPE',
	'escape': 'ESCAPE',
	'space': 'SPACE',
	'pageup': 'PAGE_UP',
	'pagedown': 'PAGE_DOWN',
	'end': 'END',
	'home': 'HOME',
	'left': 'ARROW_LEFT',
	'arrowleft': 'ARROW_LEFT',
	'up': 'ARROW_UP',
	'arrowup': 'ARROW_UP',
	'right': 'ARROW_RIGHT',
	'arrowright': 'ARROW_RIGHT',
	'down': 'ARROW_DOWN',
	'arrowdown': 'ARROW_DOWN',
	'insert': 'INSERT',
	'delete': 'DELETE',
	'cmd': 'COMMAND',
	'command': 'COMMAND',
	'meta': 'META',
	'ctrl': 'CONTROL',
	'control': 'CONTROL',
	'alt': 'ALT',
	'shift': 'SHIFT',
	'null': 'NULL',
	'f1': 'F1',
	'f2': 'F2',
	'f3': 'F3',
	'f4': 'F4',
	'f5': 'F5',
	'f6': 'F6',
	'f7': 'F7',
	'f8': 'F8',
	'f9': 'F9',
	'f10': 'F10',
	'f11': 'F11',
	'f12': 'F12',
}

IS_ELEMENT_DISPLAYED_SCRIPT = """
var element = arguments[0];
if (!element || !element.isConnected) { return false; }
var node = element;
while (node && node.nodeType === 1) {
	var style = window.getComputedStyle(node);
	if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') { return false; }
	node = node.parentElement || (node.getRootNode && node.getRootNode().host);
}
var rect = element.getBoundingClientRect();
return rect.width > 0 && rect.height > 0;
"""

GET_LOCATED_ELEMENT_SCRIPT = """
var getLocatedElement = function (locatedElement) {
	if (!locatedElement) { return null; }
	var root = document;
	var shadowPath = locatedElement.shadowPath || [];
	for (var i = 0; i < shadowPath.length - 1; i++) {
		var host = root.querySelector(shadowPath[i]);
		if (!host || !host.shadowRoot) { return null; }
		root = host.shadowRoot;
	}
	var id = locatedElement.elementId;
	return root.querySelector('[%s="' + id + '"]');
};
""" % LOCATED_ELEMENT_ATTRIBUTE

GET_ELEMENT_LOCATION_WITH_PADDING_SCRIPT = (
	GET_LOCATED_ELEMENT_SCRIPT
	+ """
var element = getLocatedElement(arguments[0]);
if (!element) { return null; }
var style = window.getComputedStyle(element);
var paddingTop = parseInt(style.paddingTop.replace('px', '')) || 0;
var paddingLeft = parseInt(style.paddingLeft.replace('px', '')) || 0;
var rect = element.getBoundingClientRect();
return { top: Math.round(rect.top + paddingTop), left: Math.round(rect.left + paddingLeft) };
"""
)

GET_ELEMENT_IN_PAGE_SCRIPT = GET_LOCATED_ELEMENT_SCRIPT + 'return getLocatedElement(arguments[0]);'

KEEP_ALIVE_SCRIPT = 'return window.getPlaybackStatus ? window.getPlaybackStatus() : true;'


def extract_element_id(element: Any) -> str | None:
	"""Return the element id from a JSON-Wire or W3C element reference."""
	if element is None:
		return None
	if isinstance(element, str):
		return element
	if isinstance(element, dict):
		if 'value' in element and isinstance(element['value'], dict):
			element = element['value']
		return element.get(LEGACY_ELEMENT_ID) or element.get(W3C_ELEMENT_ID)
	return None


def element_reference(element_id: str) -> dict[str, str]:
	return {LEGACY_ELEMENT_ID: element_id, W3C_ELEMENT_ID: element_id}


def encode_for_safari(url: str | None, is_safari: bool = True, logger: logging.Logger | None = None) -> str | None:
	"""Percent-encode ``url`` for Safari unless it already looks encoded."""
	if not is_safari or not url:
		return url
	# a lone % breaks Safari but rewriting it would break already-valid URLs
	if '%' in url:
		return url.replace(' ', '%20')
	try:
		if unquote(url) != url:
			return url
		return quote(url, safe="!#$&'()*+,-./:;=?@[]_~")
	except (TypeError, ValueError) as exc:
		if logger:
			logger.warning(f'tried to encode url but failed: {exc} url={url}')
		return url


class PlaybackDriver:
	"""One remote WebDriver session: HTTP client, command queue and dialect map."""

	def __init__(
		self,
		grid_url: str,
		config: PlaybackConfig | None = None,
		perf_stats: SeleniumPerfStats | None = None,
		event_bus: EventBus | None = None,
		headers: dict[str, str] | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.config = config or PlaybackConfig()
		self.perf_stats = perf_stats or SeleniumPerfStats()
		self.event_bus = event_bus
		self.client = WebDriverHttpClient(
			grid_url,
			headers=headers,
			connection_timeout=self.config.connection_timeout,
			transport=transport,
		)
		self.protocol_capabilities = ProtocolCapabilities()
		self.desired_capabilities: dict[str, Any] = {}
		self.test_name: str | None = None
		self.test_result_id: str | None = None
		self.queue: CommandQueue | None = None
		self._compat: ProtocolCompatibilityLayer | None = None
		self._is_alive = False
		self._keep_alive_task: asyncio.Task | None = None
		self._keep_alive_requests: deque[dict[str, Any]] = deque(maxlen=KEEP_ALIVE_HISTORY_SIZE)
		self._browser_closed_failed_keep_alives = 0

	@property
	def logger(self) -> logging.Logger:
		session_id = self.session_id[-4:] if self.session_id else '----'
		return logging.getLogger(f'webdriver_playback.PlaybackDriver🅢 {session_id}')

	@property
	def session_id(self) -> str | None:
		return self.client.session_id

	@property
	def is_started(self) -> bool:
		return self.client.session_id is not None

	def _require_compat(self) -> ProtocolCompatibilityLayer:
		if self._compat is None:
			raise DriverNotStartedError('WebDriver session is not started. Call await init() first.')
		return self._compat

	# browser detection

	@property
	def browser_name(self) -> str | None:
		return self.desired_capabilities.get('browserName')

	def is_chrome(self) -> bool:
		return self.browser_name == 'chrome'

	def is_firefox(self) -> bool:
		return self.browser_name == 'firefox'

	def is_safari(self) -> bool:
		return self.browser_name in ('safari', 'safari technology preview')

	def is_ie(self) -> bool:
		return self.browser_name == 'internet explorer'

	def is_android(self) -> bool:
		return self.desired_capabilities.get('platformName') == 'Android'

	def is_edge(self) -> bool:
		return self.browser_name == 'MicrosoftEdge' and bool(self.desired_capabilities.get('_isOldEdge'))

	def is_edge_chromium(self) -> bool:
		return self.browser_name == 'MicrosoftEdge' and not self.desired_capabilities.get('_isOldEdge')

	def is_chromium(self) -> bool:
		return self.is_chrome() or self.is_edge_chromium()

	# queue

	def _max_concurrent_requests(self) -> int | None:
		max_concurrent = None
		if self.is_ie() or self.is_android():
			max_concurrent = 1
		if self.config.requests_queue_size is not None:
			max_concurrent = self.config.requests_queue_size
		return max_concurrent

	def init_queue_requests(self) -> CommandQueue:
		self.queue = CommandQueue(
			self._max_concurrent_requests(),
			perf_stats=self.perf_stats,
			session_id=self.session_id,
			test_name=self.test_name,
		)
		self._compat = ProtocolCompatibilityLayer(self.queue, self.protocol_capabilities)
		return self.queue

	async def add_to_queue(self, operation: Callable[[], Awaitable[T]]) -> T:
		self._require_compat()
		assert self.queue is not None
		return await self.queue.add(operation)

	async def _run_command(self, command: Command[T]) -> T:
		return await self._require_compat().run(command)

	@staticmethod
	def _value(result: dict[str, Any]) -> Any:
		return result.get('value')

	# lifecycle

	async def init(
		self,
		capabilities: dict[str, Any],
		test_name: str | None = None,
		test_result_id: str | None = None,
	) -> dict[str, Any]:
		"""Request a browser from the grid and prepare the command queue."""
		self.test_name = test_name
		self.test_result_id = test_result_id
		self.client.test_result_id = test_result_id
		self._browser_closed_failed_keep_alives = 0
		self.desired_capabilities = dict(
			capabilities.get('desiredCapabilities') or capabilities.get('capabilities', {}).get('alwaysMatch') or {}
		)
		queue = self.init_queue_requests()
		perf_id = self.perf_stats.mark_start(SeleniumPerfMark.GET_BROWSER)
		try:
			self.logger.info(f'requesting browser test_name={test_name} test_result_id={test_result_id}')
			result = await queue.add(lambda: self.client.new_session(capabilities))
		except WebDriverProtocolError:
			self.logger.error('failed to init webdriver', exc_info=True)
			raise
		except Exception as exc:
			self.logger.error(f'failed to init webdriver: {exc}')
			raise WebDriverException('failed to init client driver') from exc
		finally:
			self.perf_stats.mark_end(perf_id, SeleniumPerfMark.GET_BROWSER)
		queue.session_id = self.session_id
		self.logger.info(f'init new session test_name={test_name} test_result_id={test_result_id}')
		self.start_keep_alive()
		return result

	async def end(self) -> None:
		"""Delete the remote session; failures are logged, not raised."""
		self.logger.info('delete session')
		await self.stop_keep_alive()
		self.protocol_capabilities.reset()
		if self.queue is None or not self.is_started:
			self.logger.warning('failed to close session because session is undefined')
			return
		try:
			await self.queue.add(self.client.delete_session)
		except WebDriverException as exc:
			self.logger.debug(f'delete session failed: {error_message(exc)}')

	async def force_end(self) -> None:
		"""Delete the remote session without waiting for queued calls."""
		await self.stop_keep_alive()
		self.protocol_capabilities.reset()
		if self.is_started:
			await self.client.delete_session()

	async def aclose(self) -> None:
		await self.stop_keep_alive()
		await self.client.aclose()

	async def __aenter__(self) -> 'PlaybackDriver':
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.end()
		await self.aclose()

	# dialect-negotiated operations

	@validate_call
	async def execute(self, script: str, *args: Any) -> Any:
		"""Execute synchronous JavaScript in the current browsing context."""
		return await self._run_command(self._execute_command(script, list(args)))

	def _execute_command(self, script: str, args: list[Any]) -> Command[Any]:
		body = {'script': script, 'args': args}

		async def old_endpoint() -> Any:
			return self._value(await self.client.post('/session/{session_id}/execute', body))

		async def new_endpoint() -> Any:
			return self._value(await self.client.post('/session/{session_id}/execute/sync', body))

		return Command('execute', old_endpoint, new_endpoint)

	@validate_call
	async def execute_async(self, script: str, *args: Any) -> Any:
		"""Execute asynchronous JavaScript; the script must call its last argument when done."""
		body = {'script': script, 'args': list(args)}

		async def old_endpoint() -> Any:
			return self._value(await self.client.post('/session/{session_id}/execute_async', body))

		async def new_endpoint() -> Any:
			return self._value(await self.client.post('/session/{session_id}/execute/async', body))

		return await self._run_command(Command('execute_async', old_endpoint, new_endpoint))

	async def element_displayed(self, element_id: str) -> bool:
		compat = self._require_compat()

		async def old_endpoint() -> bool:
			return bool(self._value(await self.client.get(f'/session/{{session_id}}/element/{element_id}/displayed')))

		async def new_endpoint() -> bool:
			# already inside a queue slot, so the script runs unqueued
			command = self._execute_command(IS_ELEMENT_DISPLAYED_SCRIPT, [element_reference(element_id)])
			return bool(await compat.run_unqueued(command))

		return await self._run_command(Command('element_displayed', old_endpoint, new_endpoint))

	async def window_handles(self) -> list[str]:
		async def old_endpoint() -> list[str]:
			return list(self._value(await self.client.get('/session/{session_id}/window_handles')) or [])

		async def new_endpoint() -> list[str]:
			return list(self._value(await self.client.get('/session/{session_id}/window/handles')) or [])

		return await self._run_command(Command('window_handles', old_endpoint, new_endpoint))

	async def window_handle(self) -> str:
		async def old_endpoint() -> str:
			return self._value(await self.client.get('/session/{session_id}/window_handle'))

		async def new_endpoint() -> str:
			return self._value(await self.client.get('/session/{session_id}/window'))

		return await self._run_command(Command('window_handle', old_endpoint, new_endpoint))

	@validate_call
	async def timeouts(self, timeout_type: str, ms: int) -> None:
		async def old_endpoint() -> None:
			await self.client.post('/session/{session_id}/timeouts', {'type': timeout_type, 'ms': ms})

		async def new_endpoint() -> None:
			await self.client.post('/session/{session_id}/timeouts', {timeout_type: ms})

		await self._run_command(Command('timeouts', old_endpoint, new_endpoint))

	def _parse_key_value(self, value: str) -> list[str]:
		mapped = _SELENIUM_KEY_ALIASES.get(value.lower()) if len(value) > 1 else None
		if mapped is not None:
			return [getattr(Keys, mapped)]
		return list(value)

	async def keys(self, value: str | list[str]) -> None:
		"""Send key strokes to the active element."""
		if isinstance(value, str):
			key = self._parse_key_value(value)
		elif isinstance(value, list):
			key = [char for chars in value for char in self._parse_key_value(chars)]
		else:
			raise TypeError("number or type of arguments don't agree with keys protocol command")

		async def old_endpoint() -> None:
			await self.client.post('/session/{session_id}/keys', {'value': key})

		async def new_endpoint() -> None:
			key_down = [{'type': 'keyDown', 'value': char} for char in key]
			key_up = [{'type': 'keyUp', 'value': char} for char in key]
			await self.client.post(
				'/session/{session_id}/actions',
				{'actions': [{'type': 'key', 'id': 'keys', 'actions': [*key_down, *key_up]}]},
			)

		await self._run_command(Command('keys', old_endpoint, new_endpoint))

	async def window_handle_size(self, window_handle: str = 'current', size: dict[str, int] | None = None) -> dict[str, int]:
		"""Read the window size, or resize it when ``size`` is given."""
		method = 'GET'
		data: dict[str, int] | None = None
		if size is not None:
			if not isinstance(size.get('width'), int) or not isinstance(size.get('height'), int):
				raise TypeError("number or type of arguments don't agree with window_handle_size protocol command")
			method = 'POST'
			height = size['height'] - 1 if self.is_edge() else size['height']
			data = {'width': abs(size['width']), 'height': abs(height)}

		def _size(result: dict[str, Any]) -> dict[str, int]:
			value = self._value(result) or {}
			return {'width': value.get('width', 0), 'height': value.get('height', 0)}

		async def old_endpoint() -> dict[str, int]:
			return _size(await self.client.request(method, f'/session/{{session_id}}/window/{window_handle}/size', data))

		async def new_endpoint() -> dict[str, int]:
			return _size(await self.client.request(method, '/session/{session_id}/window/rect', data))

		return await self._run_command(Command('window_handle_size', old_endpoint, new_endpoint))

	async def alert_accept(self) -> None:
		async def old_endpoint() -> None:
			await self.client.post('/session/{session_id}/accept_alert')

		async def new_endpoint() -> None:
			await self.client.post('/session/{session_id}/alert/accept')

		await self._run_command(Command('alert_accept', old_endpoint, new_endpoint))

	# single-dialect operations

	async def _queued_value(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
		result = await self.add_to_queue(lambda: self.client.request(method, path, body))
		return self._value(result)

	@validate_call
	async def url(self, url: str) -> None:
		"""Navigate the current tab."""
		await self._queued_value('POST', '/session/{session_id}/url', {'url': encode_for_safari(url, self.is_safari(), self.logger)})

	async def get_url(self) -> str:
		return await self._queued_value('GET', '/session/{session_id}/url')

	async def get_title(self) -> str:
		return await self._queued_value('GET', '/session/{session_id}/title')

	async def reload_tab(self) -> None:
		await self._queued_value('POST', '/session/{session_id}/refresh')

	async def frame(self, element: Any = None) -> None:
		"""Switch into the frame of ``element``, or to the top document when ``None``."""
		element_id = extract_element_id(element)
		frame_id = element_reference(element_id) if element_id else None
		await self._queued_value('POST', '/session/{session_id}/frame', {'id': frame_id})

	@validate_call
	async def switch_tab(self, handle: str) -> None:
		await self._queued_value('POST', '/session/{session_id}/window', {'name': handle, 'handle': handle})

	async def actions(self, actions: list[dict[str, Any]]) -> None:
		await self._queued_value('POST', '/session/{session_id}/actions', {'actions': actions})

	@validate_call
	async def find_element(self, selector: str) -> dict[str, Any]:
		perf_id = self.perf_stats.mark_start(SeleniumPerfMark.GET_ELEMENT)
		try:
			return await self._queued_value('POST', '/session/{session_id}/element', {'using': 'css selector', 'value': selector})
		finally:
			self.perf_stats.mark_end(perf_id, SeleniumPerfMark.GET_ELEMENT)

	async def get_source(self) -> str:
		perf_id = self.perf_stats.mark_start(SeleniumPerfMark.GET_HTML)
		try:
			return await self._queued_value('GET', '/session/{session_id}/source')
		finally:
			self.perf_stats.mark_end(perf_id, SeleniumPerfMark.GET_HTML)

	async def take_screenshot(self) -> str:
		perf_id = self.perf_stats.mark_start(SeleniumPerfMark.GET_SCREENSHOT)
		try:
			return await self._queued_value('GET', '/session/{session_id}/screenshot')
		finally:
			self.perf_stats.mark_end(perf_id, SeleniumPerfMark.GET_SCREENSHOT)

	# composite helpers

	async def execute_js(self, script: str, *args: Any) -> Any:
		return await self.execute(script, *args)

	async def execute_code_async(self, script: str, timeout_ms: int, *args: Any) -> Any:
		await self.timeouts('script', timeout_ms)
		return await self.execute_async(script, *args)

	async def get_tab_ids(self) -> list[str]:
		return await self.window_handles()

	async def get_current_tab_id(self) -> str:
		return await self.window_handle()

	async def is_visible(self, element: Any) -> bool:
		element_id = extract_element_id(element)
		if element_id is None:
			return False
		return await self.element_displayed(element_id)

	async def get_element(self, located_element: Any) -> dict[str, Any]:
		"""Resolve a located element (id or ``{elementId, shadowPath}``) to a WebDriver element reference."""
		if isinstance(located_element, (str, int)):
			return await self.find_element(f"[{LOCATED_ELEMENT_ATTRIBUTE}='{located_element}']")
		if isinstance(located_element, dict) and located_element.get('shadowPath'):
			perf_id = self.perf_stats.mark_start(SeleniumPerfMark.GET_ELEMENT)
			try:
				return await self.execute(GET_ELEMENT_IN_PAGE_SCRIPT, located_element)
			finally:
				self.perf_stats.mark_end(perf_id, SeleniumPerfMark.GET_ELEMENT)
		element_id = located_element.get('elementId') if isinstance(located_element, dict) else None
		return await self.find_element(f"[{LOCATED_ELEMENT_ATTRIBUTE}='{element_id}']")

	async def switch_to_located_frame(self, located_element: Any) -> dict[str, Any]:
		element = await self.get_element(located_element)
		await self.frame(element)
		return element

	async def switch_to_top_frame(self) -> None:
		try:
			await self.frame(None)
		except WebDriverProtocolError as exc:
			if exc.error_type == 'ECONNREFUSED' or 'ECONNREFUSED' in error_message(exc):
				raise SeleniumCrashError() from exc
			raise

	async def get_element_location_with_padding(self, located_element: Any) -> dict[str, int] | None:
		"""Viewport position of a located element, shifted by its top/left padding."""
		if isinstance(located_element, (str, int)):
			located_element = {'elementId': located_element}
		return await self.execute(GET_ELEMENT_LOCATION_WITH_PADDING_SCRIPT, located_element)

	# keep-alive

	def is_alive(self) -> bool:
		return self._is_alive

	@staticmethod
	def is_closed_browser_error(exc: BaseException) -> bool:
		if not isinstance(exc, WebDriverProtocolError):
			return False
		message = error_message(exc)
		if exc.error_type == 'UnknownError' and any(
			text in message for text in ('CLIENT_STOPPED_SESSION', 'BROWSER_TIMEOUT', 'was terminated due to TIMEOUT')
		):
			return True
		if exc.error_type == 'NoSuchWindow' and 'window was already closed' in message:
			return True
		return exc.error_type == 'SelectorTimeoutError' and 'chrome not reachable' in message

	def max_keep_alive_gap(self) -> float:
		"""Largest gap in seconds between consecutive keep-alive probes."""
		starts = [request['start'] for request in self._keep_alive_requests if request.get('start')]
		gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
		return max(gaps, default=0.0)

	def start_keep_alive(self) -> None:
		if self._keep_alive_task is not None:
			return
		self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())

	async def stop_keep_alive(self) -> None:
		task = self._keep_alive_task
		self._keep_alive_task = None
		if task is None or task is asyncio.current_task():
			return
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass

	async def _keep_alive_loop(self) -> None:
		while True:
			await asyncio.sleep(self.config.keep_alive_interval)
			await self.keep_alive_tick()

	async def keep_alive_tick(self) -> None:
		"""Probe the page once; report the browser closed after repeated closed-browser errors."""
		if self.queue is None or self.queue.queue_length > 0:
			return
		request = {'id': uuid7str(), 'start': time.monotonic()}
		self._keep_alive_requests.append(request)
		try:
			await self.execute(KEEP_ALIVE_SCRIPT)
		except WebDriverException as exc:
			request['error'] = time.monotonic()
			if isinstance(exc, WebDriverProtocolError) and exc.error_type == 'UnexpectedAlertOpen':
				self._browser_closed_failed_keep_alives = 0
				self.logger.warning('close unexpected alert open')
				try:
					await self.alert_accept()
				except WebDriverException as inner:
					self.logger.warning(f'failed to click on alert: {error_message(inner)}')
				return
			self.logger.warning(f'err while getting playback status: {error_message(exc)}')
			self._is_alive = False
			if not self.is_closed_browser_error(exc):
				self._browser_closed_failed_keep_alives = 0
				return
			self._browser_closed_failed_keep_alives += 1
			if self._browser_closed_failed_keep_alives >= CLOSED_BROWSER_THRESHOLD_COUNT and self.event_bus is not None:
				await self.event_bus.dispatch(BrowserClosedEvent(session_id=self.session_id, reason=error_message(exc)))
			return
		self._is_alive = True
		request['end'] = time.monotonic()
		self._browser_closed_failed_keep_alives = 0
