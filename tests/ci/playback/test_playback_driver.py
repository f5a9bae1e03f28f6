"""Tests for PlaybackDriver helpers, queue setup and keep-alive."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest
from bubus import EventBus
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.common.keys import Keys

from webdriver_playback import driver as driver_module
from webdriver_playback.config import PlaybackConfig
from webdriver_playback.driver import LOCATED_ELEMENT_ATTRIBUTE, PlaybackDriver, element_reference, encode_for_safari, extract_element_id
from webdriver_playback.errors import DriverNotStartedError, SeleniumCrashError
from webdriver_playback.events import BrowserClosedEvent
from webdriver_playback.perf import SeleniumPerfMark

SESSION_ID = 'sess-9876'


class _FakeGrid:
	def __init__(self) -> None:
		self.requests: list[tuple[str, str, Any]] = []
		self.handlers: dict[tuple[str, str], Any] = {}

	def __call__(self, request: httpx.Request) -> httpx.Response:
		path = request.url.path
		body = json.loads(request.content) if request.content else None
		self.requests.append((request.method, path, body))
		if (request.method, path) == ('POST', '/session'):
			return httpx.Response(200, json={'value': {'sessionId': SESSION_ID, 'capabilities': {}}})
		handler = self.handlers.get((request.method, path.replace(SESSION_ID, '{sid}')))
		if handler is None:
			return httpx.Response(200, json={'value': None})
		return handler(request)

	def bodies(self, method: str, path: str) -> list[Any]:
		path = path.replace('{sid}', SESSION_ID)
		return [body for m, p, body in self.requests if (m, p) == (method, path)]


async def _driver(grid: _FakeGrid, capabilities: dict[str, Any], **kwargs: Any) -> PlaybackDriver:
	driver = PlaybackDriver('http://grid.test', transport=httpx.MockTransport(grid), **kwargs)
	await driver.init({'desiredCapabilities': capabilities}, test_name='driver-test', test_result_id='result-1')
	return driver


def test_encode_for_safari() -> None:
	assert encode_for_safari('https://a.com/a b?q=ü') == 'https://a.com/a%20b?q=%C3%BC'
	assert encode_for_safari('https://a.com/a%20b c') == 'https://a.com/a%20b%20c'
	assert encode_for_safari('https://a.com/a b', is_safari=False) == 'https://a.com/a b'
	assert encode_for_safari(None) is None


def test_element_reference_round_trip() -> None:
	reference = element_reference('el-1')

	assert extract_element_id(reference) == 'el-1'
	assert extract_element_id({'value': {'ELEMENT': 'el-2'}}) == 'el-2'
	assert extract_element_id(None) is None


@pytest.mark.asyncio
async def test_calls_before_init_raise() -> None:
	driver = PlaybackDriver('http://grid.test', transport=httpx.MockTransport(lambda request: httpx.Response(200)))
	try:
		with pytest.raises(DriverNotStartedError):
			await driver.get_url()
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_ie_and_android_sessions_run_one_command_at_a_time() -> None:
	grid = _FakeGrid()
	ie = await _driver(grid, {'browserName': 'internet explorer'})
	android = await _driver(grid, {'platformName': 'Android', 'browserName': 'chrome'})
	chrome = await _driver(grid, {'browserName': 'chrome'})
	tuned = await _driver(grid, {'browserName': 'internet explorer'}, config=PlaybackConfig(requests_queue_size=4))
	try:
		assert ie.queue.max_concurrent == 1
		assert android.queue.max_concurrent == 1
		assert chrome.queue.max_concurrent is None
		assert tuned.queue.max_concurrent == 4
		assert ie.queue.session_id == SESSION_ID
		assert ie.perf_stats.get_stats()['selenium_stats']['GET_BROWSER_COUNT'] == 1
	finally:
		for driver in (ie, android, chrome, tuned):
			await driver.aclose()


@pytest.mark.asyncio
async def test_element_visibility_fallback_does_not_deadlock_single_slot_queue() -> None:
	grid = _FakeGrid()
	grid.handlers[('GET', '/session/{sid}/element/el-1/displayed')] = lambda request: httpx.Response(405)
	grid.handlers[('POST', '/session/{sid}/execute')] = lambda request: httpx.Response(200, json={'value': True})
	driver = await _driver(grid, {'browserName': 'internet explorer'})
	try:
		assert await asyncio.wait_for(driver.is_visible(element_reference('el-1')), timeout=2) is True
		assert await driver.is_visible(None) is False
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_keys_map_named_keys_to_selenium_code_points() -> None:
	grid = _FakeGrid()
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		await driver.keys('Enter')
		await driver.keys(['ab', 'Tab'])

		assert grid.bodies('POST', '/session/{sid}/keys') == [{'value': [Keys.ENTER]}, {'value': ['a', 'b', Keys.TAB]}]
		with pytest.raises(TypeError):
			await driver.keys(5)  # type: ignore[arg-type]
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_keys_use_actions_on_w3c_only_remote() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/keys')] = lambda request: httpx.Response(
		404, json={'value': {'error': 'unknown command', 'message': 'unknown command: POST /keys'}}
	)
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		await driver.keys('x')

		[body] = grid.bodies('POST', '/session/{sid}/actions')
		assert body['actions'][0]['actions'] == [{'type': 'keyDown', 'value': 'x'}, {'type': 'keyUp', 'value': 'x'}]
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_old_edge_resize_compensates_height() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/window/current/size')] = lambda request: httpx.Response(
		200, json={'value': {'width': 800, 'height': 599}}
	)
	driver = await _driver(grid, {'browserName': 'MicrosoftEdge', '_isOldEdge': True})
	try:
		size = await driver.window_handle_size(size={'width': 800, 'height': 600})

		assert grid.bodies('POST', '/session/{sid}/window/current/size') == [{'width': 800, 'height': 599}]
		assert size == {'width': 800, 'height': 599}
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_safari_navigation_is_encoded() -> None:
	grid = _FakeGrid()
	driver = await _driver(grid, {'browserName': 'safari'})
	try:
		await driver.url('https://a.com/search?q=a b')

		assert grid.bodies('POST', '/session/{sid}/url') == [{'url': 'https://a.com/search?q=a%20b'}]
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_switch_to_located_frame_and_back_to_top() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/element')] = lambda request: httpx.Response(
		200, json={'value': element_reference('frame-el')}
	)
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		element = await driver.switch_to_located_frame('7')
		await driver.switch_to_top_frame()

		assert grid.bodies('POST', '/session/{sid}/element') == [
			{'using': 'css selector', 'value': f"[{LOCATED_ELEMENT_ATTRIBUTE}='7']"}
		]
		assert grid.bodies('POST', '/session/{sid}/frame') == [{'id': element_reference('frame-el')}, {'id': None}]
		assert extract_element_id(element) == 'frame-el'
		assert driver.perf_stats.get_stats()['selenium_stats'][f'{SeleniumPerfMark.GET_ELEMENT.value}_COUNT'] == 1
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_switch_to_top_frame_reports_crash_when_grid_is_gone() -> None:
	grid = _FakeGrid()

	def refuse(request: httpx.Request) -> httpx.Response:
		raise httpx.ConnectError('connection refused', request=request)

	grid.handlers[('POST', '/session/{sid}/frame')] = refuse
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		with pytest.raises(SeleniumCrashError):
			await driver.switch_to_top_frame()
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_execute_code_async_sets_script_timeout_first() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/execute_async')] = lambda request: httpx.Response(200, json={'value': 'done'})
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		assert await driver.execute_code_async('arguments[0]("done")', 3000) == 'done'

		paths = [path for _, path, _ in grid.requests[1:]]
		assert paths == [f'/session/{SESSION_ID}/timeouts', f'/session/{SESSION_ID}/execute_async']
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_keep_alive_reports_closed_browser_after_repeated_failures() -> None:
	bus = EventBus(name='KeepAliveTest')
	closed: list[BrowserClosedEvent] = []

	def on_browser_closed(event: BrowserClosedEvent) -> None:
		closed.append(event)

	bus.on(BrowserClosedEvent, on_browser_closed)
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/execute')] = lambda request: httpx.Response(
		500, json={'value': {'error': 'unknown error', 'message': 'Session was closed: CLIENT_STOPPED_SESSION'}}
	)
	driver = await _driver(grid, {'browserName': 'chrome'}, event_bus=bus)
	try:
		for _ in range(3):
			await driver.keep_alive_tick()

		assert not driver.is_alive()
		assert len(closed) == 1
		assert closed[0].session_id == SESSION_ID
		assert 'CLIENT_STOPPED_SESSION' in closed[0].reason
	finally:
		await driver.aclose()
		await bus.stop(clear=True, timeout=5)


@pytest.mark.asyncio
async def test_keep_alive_accepts_unexpected_alert() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/execute')] = lambda request: httpx.Response(
		500, json={'value': {'error': 'unexpected alert open', 'message': 'unexpected alert open'}}
	)
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		await driver.keep_alive_tick()

		assert len(grid.bodies('POST', '/session/{sid}/accept_alert')) == 1
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_keep_alive_success_marks_driver_alive() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/execute')] = lambda request: httpx.Response(200, json={'value': True})
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		await driver.keep_alive_tick()

		assert driver.is_alive()
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_keep_alive_loop_runs_after_init_and_stops_on_end(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setattr(driver_module, 'KEEP_ALIVE_HISTORY_SIZE', 3)
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/execute')] = lambda request: httpx.Response(200, json={'value': True})
	driver = await _driver(grid, {'browserName': 'chrome'}, config=PlaybackConfig(keep_alive_interval=0.01))
	try:
		for _ in range(200):
			if len(grid.bodies('POST', '/session/{sid}/execute')) >= 5:
				break
			await asyncio.sleep(0.01)
		task = driver._keep_alive_task

		assert task is not None
		assert len(grid.bodies('POST', '/session/{sid}/execute')) >= 5
		assert driver.is_alive()
		assert driver.max_keep_alive_gap() > 0
		# only the most recent probes are kept
		assert len(driver._keep_alive_requests) == 3

		await driver.end()

		assert driver._keep_alive_task is None
		assert task.done()
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_end_deletes_session_and_resets_capabilities() -> None:
	grid = _FakeGrid()
	grid.handlers[('POST', '/session/{sid}/execute')] = lambda request: httpx.Response(
		404, json={'value': {'error': 'unknown command', 'message': 'unknown command'}}
	)
	grid.handlers[('POST', '/session/{sid}/execute/sync')] = lambda request: httpx.Response(200, json={'value': 1})
	driver = await _driver(grid, {'browserName': 'chrome'})
	try:
		await driver.execute('return 1;')
		assert 'execute' in driver.protocol_capabilities

		await driver.end()

		assert ('DELETE', f'/session/{SESSION_ID}', None) in grid.requests
		assert not driver.is_started
		assert driver.protocol_capabilities.snapshot() == {}
	finally:
		await driver.aclose()


@pytest.mark.asyncio
async def test_init_wraps_unexpected_failures() -> None:
	def explode(request: httpx.Request) -> httpx.Response:
		raise ValueError('bad capabilities')

	driver = PlaybackDriver('http://grid.test', transport=httpx.MockTransport(explode))
	try:
		with pytest.raises(WebDriverException, match='failed to init client driver'):
			await driver.init({'desiredCapabilities': {'browserName': 'chrome'}})
	finally:
		await driver.aclose()
