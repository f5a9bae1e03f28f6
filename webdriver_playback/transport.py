"""Raw WebDriver HTTP client.

This is the base protocol client: it knows endpoints and response shapes of
both the JSON-Wire and the W3C dialects, but makes no decision about which one
to use. ``ProtocolCompatibilityLayer`` sits on top of it.
"""

import json
import logging
from typing import Any, NamedTuple

import httpx
from uuid_extensions import uuid7str

from webdriver_playback.errors import DriverNotStartedError, WebDriverProtocolError

logger = logging.getLogger(__name__)


class StatusCode(NamedTuple):
	id: str
	message: str


INVALID_ARGUMENT_MESSAGE = 'The arguments passed to a command are either invalid or malformed.'

# JSON-Wire numeric statuses and their W3C error-string equivalents.
STATUS_CODES: dict[int | str, StatusCode] = {
	-1: StatusCode('Unknown', 'Remote end send an unknown status code.'),
	6: StatusCode('NoSuchDriver', 'A session is either terminated or not started'),
	7: StatusCode('NoSuchElement', 'An element could not be located on the page using the given search parameters.'),
	8: StatusCode('NoSuchFrame', 'A request to switch to a frame could not be satisfied because the frame could not be found.'),
	9: StatusCode(
		'UnknownCommand',
		'The requested resource could not be found, or a request was received using an HTTP method that is not supported by the mapped resource.',
	),
	10: StatusCode('StaleElementReference', 'An element command failed because the referenced element is no longer attached to the DOM.'),
	11: StatusCode('ElementNotVisible', 'An element command could not be completed because the element is not visible on the page.'),
	12: StatusCode('InvalidElementState', 'An element command could not be completed because the element is in an invalid state.'),
	13: StatusCode('UnknownError', 'An unknown server-side error occurred while processing the command.'),
	17: StatusCode('JavaScriptError', 'An error occurred while executing user supplied JavaScript.'),
	21: StatusCode('Timeout', 'An operation did not complete before its timeout expired.'),
	23: StatusCode('NoSuchWindow', 'A request to switch to a different window could not be satisfied because the window could not be found.'),
	26: StatusCode('UnexpectedAlertOpen', 'A modal dialog was open, blocking this operation'),
	27: StatusCode('NoAlertOpenError', 'An attempt was made to operate on a modal dialog when one was not open.'),
	28: StatusCode('ScriptTimeout', 'A script did not complete before its timeout expired.'),
	32: StatusCode('InvalidSelector', 'Argument was an invalid selector (e.g. XPath/CSS).'),
	33: StatusCode('SessionNotCreatedException', 'A new session could not be created.'),
	34: StatusCode('MoveTargetOutOfBounds', 'Target provided for a move action is out of bounds.'),
	61: StatusCode('InvalidArgument', INVALID_ARGUMENT_MESSAGE),
}

_W3C_ERRORS: dict[str, int] = {
	'no such element': 7,
	'no such frame': 8,
	'unknown command': 9,
	'unknown method': 9,
	'stale element reference': 10,
	'element not interactable': 11,
	'invalid element state': 12,
	'unknown error': 13,
	'javascript error': 17,
	'timeout': 21,
	'no such window': 23,
	'unexpected alert open': 26,
	'no such alert': 27,
	'script timeout': 28,
	'invalid selector': 32,
	'session not created': 33,
	'move target out of bounds': 34,
	'invalid argument': 61,
	'invalid session id': 6,
}
for _name, _code in _W3C_ERRORS.items():
	STATUS_CODES[_name] = STATUS_CODES[_code]


def _is_successful_response(body: Any, status_code: int) -> bool:
	if not isinstance(body, dict):
		return False
	# JSON-Wire responses carry a numeric status that must be 0
	if body.get('status') not in (None, 0):
		return False
	if 'value' not in body:
		return False
	if status_code == 200:
		return True
	value = body['value']
	# Appium reports some failures with a non-200 code and an error payload
	if isinstance(value, dict) and (value.get('error') or value.get('stackTrace') or value.get('stacktrace')):
		return False
	return True


def _clean_problem(problem: str) -> str:
	if '(Session info:' in problem:
		problem = problem[: problem.index('(Session info:')].strip()
	if 'unknown error: path is not absolute' in problem:
		problem = (
			'You are trying to set a value to an input field with type="file", use the `upload_file` command instead '
			f'(Selenium error: {problem})'
		)
	return problem


class WebDriverHttpClient:
	"""Issues WebDriver HTTP requests and turns failures into ``WebDriverProtocolError``."""

	def __init__(
		self,
		grid_url: str,
		headers: dict[str, str] | None = None,
		connection_timeout: float = 90.0,
		test_result_id: str | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.grid_url = grid_url.rstrip('/')
		self.test_result_id = test_result_id
		self.session_id: str | None = None
		self.capabilities: dict[str, Any] = {}
		self._client = httpx.AsyncClient(
			base_url=self.grid_url,
			headers={'Content-Type': 'application/json; charset=utf-8', **(headers or {})},
			timeout=connection_timeout,
			transport=transport,
		)

	def _resolve_path(self, path: str) -> str:
		if '{session_id}' not in path:
			return path
		if self.session_id is None:
			raise DriverNotStartedError('WebDriver session is not started. Call await init() first.')
		return path.replace('{session_id}', self.session_id)

	def _build_error(self, request_id: str, response: httpx.Response | None, exc: Exception | None = None) -> WebDriverProtocolError:
		if response is None:
			return WebDriverProtocolError(
				"Couldn't connect to selenium server",
				error_type='ECONNREFUSED',
				status=-1,
				org_status_message=str(exc) if exc else None,
				request_id=request_id,
			)

		try:
			body: Any = response.json()
		except (json.JSONDecodeError, ValueError):
			body = response.text

		if isinstance(body, dict) and isinstance(body.get('value'), dict):
			value = body['value']
			if isinstance(value.get('origValue'), str) and isinstance(value.get('message'), str):
				value['message'] = f'{value["message"]} {value["origValue"]}'

		if isinstance(body, str) and body.strip():
			return WebDriverProtocolError(
				body.strip(),
				error_type='SeleniumProtocolError',
				http_status=response.status_code,
				request_id=request_id,
			)

		if isinstance(body, dict) and body.get('value') is not None:
			value = body['value']
			error_key = value.get('error') if isinstance(value, dict) else None
			code = STATUS_CODES.get(body.get('status')) or STATUS_CODES.get(error_key) or STATUS_CODES[-1]
			org_message = value.get('message', '') if isinstance(value, dict) else str(value)
			message = _clean_problem(org_message) if isinstance(org_message, str) and org_message else code.message
			return WebDriverProtocolError(
				message,
				error_type=code.id,
				status=body.get('status'),
				http_status=response.status_code,
				org_status_message=org_message,
				request_id=request_id,
				details=code.message,
			)

		if response.status_code == 405:
			# IE server puts the error in the Allow header
			allow = response.headers.get('allow', '')
			message = allow if 'Command not found' in allow else 'HTTP method not allowed'
			return WebDriverProtocolError(
				message,
				error_type='UnknownCommand',
				http_status=405,
				request_id=request_id,
			)

		return WebDriverProtocolError(
			f'Server returned HTTP response code: {response.status_code} for URL: {response.request.url}',
			error_type='UnknownError',
			status=-1,
			http_status=response.status_code,
			request_id=request_id,
		)

	async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
		"""Send one WebDriver request and return the decoded JSON body on success."""
		request_id = uuid7str()
		resolved = self._resolve_path(path)
		if resolved == '/session':
			logger.debug(f'{method} REQUEST {resolved} request_id={request_id} test_result_id={self.test_result_id}')
		else:
			logger.debug(f'{method} REQUEST {resolved} request_id={request_id} body={body}')

		try:
			if method == 'GET':
				response = await self._client.get(resolved)
			elif method == 'DELETE':
				response = await self._client.delete(resolved)
			else:
				response = await self._client.request(method, resolved, json=body if body is not None else {})
		except httpx.RequestError as exc:
			raise self._build_error(request_id, None, exc) from exc

		if not resolved.endswith('/screenshot'):
			logger.debug(f'{method} RESPONSE {resolved} request_id={request_id} status={response.status_code} body={response.text[:500]}')

		try:
			decoded = response.json()
		except (json.JSONDecodeError, ValueError):
			decoded = None
		if _is_successful_response(decoded, response.status_code):
			return decoded
		raise self._build_error(request_id, response)

	async def get(self, path: str) -> dict[str, Any]:
		return await self.request('GET', path)

	async def post(self, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
		return await self.request('POST', path, body)

	async def delete(self, path: str) -> dict[str, Any]:
		return await self.request('DELETE', path)

	async def new_session(self, capabilities: dict[str, Any]) -> dict[str, Any]:
		"""Create a remote session, accepting both dialects' response shapes."""
		result = await self.post('/session', capabilities)
		value = result.get('value') if isinstance(result.get('value'), dict) else {}
		session_id = result.get('sessionId') or value.get('sessionId')
		if not session_id:
			raise WebDriverProtocolError('New session response did not contain a session id', error_type='SessionNotCreatedException')
		self.session_id = session_id
		self.capabilities = value.get('capabilities') or value
		return result

	async def delete_session(self) -> None:
		if self.session_id is None:
			return
		try:
			await self.delete('/session/{session_id}')
		finally:
			self.session_id = None

	async def aclose(self) -> None:
		await self._client.aclose()
