"""Tests for WebDriver HTTP response classification."""

from __future__ import annotations

import httpx
import pytest

from webdriver_playback.errors import DriverNotStartedError, WebDriverProtocolError
from webdriver_playback.transport import WebDriverHttpClient


def _client(handler) -> WebDriverHttpClient:
	client = WebDriverHttpClient('http://grid.test/', transport=httpx.MockTransport(handler))
	client.session_id = 'sess-1'
	return client


@pytest.mark.asyncio
async def test_successful_response_returns_decoded_body() -> None:
	client = _client(lambda request: httpx.Response(200, json={'sessionId': 'sess-1', 'status': 0, 'value': 'Title'}))
	try:
		assert await client.get('/session/{session_id}/title') == {'sessionId': 'sess-1', 'status': 0, 'value': 'Title'}
	finally:
		await client.aclose()


@pytest.mark.asyncio
async def test_session_placeholder_requires_a_started_session() -> None:
	client = WebDriverHttpClient('http://grid.test', transport=httpx.MockTransport(lambda request: httpx.Response(200)))
	try:
		with pytest.raises(DriverNotStartedError):
			await client.get('/session/{session_id}/url')
	finally:
		await client.aclose()


@pytest.mark.asyncio
async def test_connection_failure_is_reported_as_econnrefused() -> None:
	def refuse(request: httpx.Request) -> httpx.Response:
		raise httpx.ConnectError('connection refused', request=request)

	client = _client(refuse)
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.post('/session/{session_id}/frame', {'id': None})
	finally:
		await client.aclose()

	assert exc_info.value.error_type == 'ECONNREFUSED'
	assert exc_info.value.status == -1
	assert exc_info.value.request_id


@pytest.mark.asyncio
async def test_plain_text_body_becomes_selenium_protocol_error() -> None:
	client = _client(lambda request: httpx.Response(500, text='  grid exploded  '))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.get('/session/{session_id}/url')
	finally:
		await client.aclose()

	assert exc_info.value.error_type == 'SeleniumProtocolError'
	assert exc_info.value.msg == 'grid exploded'
	assert exc_info.value.http_status == 500


@pytest.mark.asyncio
async def test_json_wire_status_is_mapped_to_error_type() -> None:
	body = {'status': 7, 'value': {'message': 'Unable to locate element (Session info: chrome=120.0)'}}
	client = _client(lambda request: httpx.Response(500, json=body))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.post('/session/{session_id}/element', {'using': 'css selector', 'value': '#x'})
	finally:
		await client.aclose()

	error = exc_info.value
	assert error.error_type == 'NoSuchElement'
	assert error.msg == 'Unable to locate element'
	assert error.status == 7
	assert error.org_status_message.startswith('Unable to locate element (Session info')
	assert error.to_dict() == {'name': 'NoSuchElement', 'message': 'Unable to locate element'}


@pytest.mark.asyncio
async def test_w3c_error_string_is_mapped_to_error_type() -> None:
	body = {'value': {'error': 'no such window', 'message': 'no such window: target window already closed'}}
	client = _client(lambda request: httpx.Response(404, json=body))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.post('/session/{session_id}/window', {'handle': 'h1'})
	finally:
		await client.aclose()

	assert exc_info.value.error_type == 'NoSuchWindow'
	assert exc_info.value.http_status == 404


@pytest.mark.asyncio
async def test_orig_value_is_appended_to_message() -> None:
	body = {'value': {'error': 'javascript error', 'message': 'Script failed:', 'origValue': 'x is undefined'}}
	client = _client(lambda request: httpx.Response(500, json=body))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.post('/session/{session_id}/execute/sync', {'script': 'x.y', 'args': []})
	finally:
		await client.aclose()

	assert exc_info.value.msg == 'Script failed: x is undefined'


@pytest.mark.asyncio
async def test_405_uses_allow_header_when_it_carries_the_error() -> None:
	client = _client(lambda request: httpx.Response(405, headers={'Allow': 'Command not found: GET /foo'}))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.get('/session/{session_id}/foo')
	finally:
		await client.aclose()

	assert exc_info.value.msg == 'Command not found: GET /foo'
	assert exc_info.value.error_type == 'UnknownCommand'
	assert exc_info.value.http_status == 405


@pytest.mark.asyncio
async def test_empty_error_response_reports_http_code_and_url() -> None:
	client = _client(lambda request: httpx.Response(502))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.get('/session/{session_id}/source')
	finally:
		await client.aclose()

	assert exc_info.value.msg.startswith('Server returned HTTP response code: 502 for URL: http://grid.test/session/sess-1/source')


@pytest.mark.asyncio
async def test_appium_error_payload_with_non_200_status_is_a_failure() -> None:
	body = {'value': {'error': 'unknown error', 'message': 'Appium failed', 'stacktrace': '...'}}
	client = _client(lambda request: httpx.Response(500, json=body))
	try:
		with pytest.raises(WebDriverProtocolError) as exc_info:
			await client.get('/session/{session_id}/url')
	finally:
		await client.aclose()

	assert exc_info.value.error_type == 'UnknownError'


@pytest.mark.asyncio
async def test_new_session_reads_both_response_shapes() -> None:
	responses = iter(
		[
			{'sessionId': 'legacy-1', 'status': 0, 'value': {'browserName': 'internet explorer'}},
			{'value': {'sessionId': 'w3c-1', 'capabilities': {'browserName': 'firefox'}}},
		]
	)
	client = WebDriverHttpClient('http://grid.test', transport=httpx.MockTransport(lambda request: httpx.Response(200, json=next(responses))))
	try:
		await client.new_session({'desiredCapabilities': {}})
		assert client.session_id == 'legacy-1'
		assert client.capabilities == {'browserName': 'internet explorer'}

		await client.new_session({'capabilities': {}})
		assert client.session_id == 'w3c-1'
		assert client.capabilities == {'browserName': 'firefox'}
	finally:
		await client.aclose()
