"""Tab registry: durable tab identity on top of reused WebDriver window handles.

Window handles say nothing about which recorded tab they correspond to, so a
recorded step's tab is matched against the registry with a ladder of
heuristics (main flag, opener step, URL, domain+path, domain+path+hash, order).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlsplit

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, Field
from selenium.common.exceptions import WebDriverException
from uuid_extensions import uuid7str

from webdriver_playback.config import PlaybackConfig
from webdriver_playback.errors import InvalidTestVersionError, TabNotFoundError, error_message, is_window_closed_error
from webdriver_playback.events import TabClosedEvent, TabOpenedEvent
from webdriver_playback.steps import Step

logger = logging.getLogger(__name__)

MAIN_TAB_PROBE_SCRIPT = 'return window.__isMainPlaybackTab;'
FRAME_LOCATORS_MIN_VERSION = (1, 2, 0)


class TabDriver(Protocol):
	"""Driver calls the registry needs."""

	async def switch_tab(self, handle: str) -> None: ...

	async def get_title(self) -> str: ...

	async def get_url(self) -> str: ...

	async def execute_js(self, script: str, *args: Any) -> Any: ...

	async def get_tab_ids(self) -> list[str]: ...


class TabRecord(BaseModel):
	"""What the registry knows about one window handle."""

	model_config = ConfigDict(validate_assignment=True)

	handle: str
	info_id: str = Field(default_factory=uuid7str)
	url: str = ''
	current_url: str | None = None
	last_updated_url: str | None = None
	title: str = ''
	order: int
	is_main: bool = False
	opener_step_id: str | None = None
	opener_original_step_id: str | None = None
	is_closed: bool = False


class AddTabOptions(BaseModel):
	model_config = ConfigDict(extra='forbid')

	skip_load_info: bool = False
	check_for_main_tab: bool = False
	force_switch: bool = False


class _TabLike(Protocol):
	url: str | None
	current_url: str | None
	order: int | None
	is_main: bool
	opener_step_id: str | None


@dataclass(slots=True)
class _TabDetails:
	title: str = ''
	url: str = ''
	is_main_tab: Any = 'unknown'


@dataclass(slots=True)
class _SessionTabs:
	tab_count: int = 0
	next_order: int = 0
	tab_infos: dict[str, TabRecord] = field(default_factory=dict)
	added: set[str] = field(default_factory=set)
	current_tab: str | None = None
	last_active_tab: str | None = None


@dataclass(slots=True, frozen=True)
class UrlParts:
	domain: str
	path: tuple[str, ...]
	hash: str


def break_url(url: str | None) -> UrlParts:
	if not url:
		return UrlParts('', (), '')
	parts = urlsplit(url)
	return UrlParts(parts.netloc, tuple(segment for segment in parts.path.split('/') if segment), parts.fragment)


def combine_domain_and_path(parts: UrlParts) -> str:
	return f'{parts.domain}/{"/".join(parts.path)}'


def combine_domain_path_and_hash(parts: UrlParts) -> str:
	return f'{parts.domain}/{"/".join(parts.path)}#{parts.hash}'


def parse_step_version(version: str) -> tuple[int, ...] | None:
	"""Parse a dotted step version such as ``1.2.0``; pre-release suffixes are ignored."""
	core = version.strip().split('-', 1)[0].split('+', 1)[0]
	parts = core.split('.')
	if not parts or not all(part.isdigit() for part in parts):
		return None
	numbers = [int(part) for part in parts]
	return tuple(numbers + [0] * (3 - len(numbers)))


def is_invalid_step_version(step: Step) -> bool:
	"""Steps older than 1.2.0 are only playable when every locate parameter carries frame locators."""
	version = parse_step_version(step.version)
	if version is None:
		return True
	if version >= FRAME_LOCATORS_MIN_VERSION:
		return False
	if not step.parameter_values:
		return True
	return any(param.type == 'locate' and not param.frame_locators for param in step.parameter_values)


class TabRegistry:
	"""Tracks tabs per session and resolves which live handle a step addresses.

	Pending popup registrations are instance state, so independent registries
	(one per worker) never see each other's pending markers.
	"""

	def __init__(
		self,
		driver: TabDriver,
		config: PlaybackConfig | None = None,
		event_bus: EventBus | None = None,
	) -> None:
		self.driver = driver
		self.config = config or PlaybackConfig()
		self.event_bus = event_bus
		self.session_tabs: dict[str, _SessionTabs] = {}
		self.pending_tabs: dict[str, str] = {}
		self._add_frame_handler: Callable[[str], Awaitable[Any]] | None = None

	def create_session(self, session_id: str) -> None:
		if session_id in self.session_tabs:
			# joining an existing session
			return
		self.session_tabs[session_id] = _SessionTabs()

	def _session(self, session_id: str) -> _SessionTabs:
		try:
			return self.session_tabs[session_id]
		except KeyError:
			raise KeyError(f'Unknown playback session {session_id}, call create_session() first') from None

	def set_add_frame_handler_callback(self, callback: Callable[[str], Awaitable[Any]]) -> None:
		self._add_frame_handler = callback

	async def _notify_frame_handler(self, handle: str) -> None:
		if self._add_frame_handler is not None:
			await self._add_frame_handler(handle)

	# queries

	def tab_count(self, session_id: str) -> int | None:
		session = self.session_tabs.get(session_id)
		return session.tab_count if session else None

	def get_all_tab_infos(self, session_id: str) -> dict[str, TabRecord]:
		return self._session(session_id).tab_infos

	def get_all_tab_ids(self, session_id: str) -> list[str]:
		return list(self.get_all_tab_infos(session_id))

	def get_all_open_tab_ids(self, session_id: str) -> list[str]:
		return [handle for handle, info in self.get_all_tab_infos(session_id).items() if not info.is_closed]

	def is_session_tab(self, session_id: str, handle: str) -> bool:
		return handle in self.get_all_tab_infos(session_id)

	def get_tab_info(self, session_id: str, handle: str | None) -> TabRecord | None:
		if handle is None:
			return None
		return self.get_all_tab_infos(session_id).get(handle)

	def get_active_tab_info(self, session_id: str) -> TabRecord | None:
		return self.get_tab_info(session_id, self._session(session_id).last_active_tab)

	def get_all_tab_info_strings(self, session_id: str) -> list[str]:
		return [
			f'tabId={handle}, url={info.url}, order={info.order}, isMain={info.is_main}, '
			f'openerStepId={info.opener_step_id}, isClosed={info.is_closed}, currentUrl: {info.current_url}, '
			f'lastUpdatedUrl: {info.last_updated_url}'
			for handle, info in self.get_all_tab_infos(session_id).items()
		]

	def get_main_tab_info(self, session_id: str) -> TabRecord | None:
		return next((info for info in self.get_all_tab_infos(session_id).values() if info.is_main), None)

	def get_main_tab_id(self, session_id: str) -> str | None:
		info = self.get_main_tab_info(session_id)
		return info.handle if info else None

	def is_main_tab_exists(self, session_id: str) -> bool:
		return self.get_main_tab_id(session_id) is not None

	# registration

	async def add_new_tab(
		self,
		session_id: str,
		handle: str,
		opener_step_id: str | None = None,
		options: AddTabOptions | None = None,
	) -> TabRecord | None:
		"""Register ``handle`` once per session; later calls for the same handle are no-ops."""
		session = self._session(session_id)
		if handle in session.added:
			return None
		session.added.add(handle)
		logger.info(f'Adding a new tab sessionId: {session_id}, tabId: {handle}, openerId: {opener_step_id}')
		order = session.next_order
		session.next_order += 1
		session.tab_count += 1
		try:
			record = await self._build_tab_info(session_id, handle, order, opener_step_id, options or AddTabOptions())
		except BaseException:
			# unwind so the handle can be registered again
			if handle not in session.tab_infos:
				session.added.discard(handle)
				session.tab_count -= 1
				if session.next_order == order + 1:
					session.next_order = order
			raise
		if self.event_bus is not None:
			await self.event_bus.dispatch(
				TabOpenedEvent(session_id=session_id, handle=handle, opener_step_id=opener_step_id, is_main=record.is_main)
			)
		return record

	def _resolve_is_main(self, session_id: str, is_main_probe: Any, options: AddTabOptions) -> bool:
		if options.check_for_main_tab:
			return is_main_probe is True
		if is_main_probe is not True:
			# first tab wins when the page could not tell us
			return self.get_main_tab_info(session_id) is None
		return True

	async def _build_tab_info(
		self,
		session_id: str,
		handle: str,
		order: int,
		opener_step_id: str | None,
		options: AddTabOptions,
	) -> TabRecord:
		details = await self.get_tab_details(handle, session_id, options)
		is_main = self._resolve_is_main(session_id, details.is_main_tab, options)
		if is_main:
			previous_main = self.get_main_tab_info(session_id)
			if previous_main is not None and previous_main.handle != handle:
				logger.warning(f'Tab {handle} reports itself as main, demoting previous main tab {previous_main.handle}')
				previous_main.is_main = False
		record = TabRecord(
			handle=handle,
			url=details.url,
			title=details.title,
			order=order,
			is_main=is_main,
			opener_step_id=opener_step_id,
		)
		self._session(session_id).tab_infos[handle] = record
		return record

	async def get_tab_details(self, handle: str, session_id: str, options: AddTabOptions) -> _TabDetails:
		"""Switch to ``handle`` and read its title, URL and main-tab marker; failures yield empty details."""
		try:
			await self.switch_tab(handle, session_id, force_switch=options.force_switch)
		except WebDriverException as exc:
			logger.error(f'failed to switch to tab {handle}: {error_message(exc)}')
			return _TabDetails()
		if options.skip_load_info:
			return _TabDetails()
		try:
			if options.check_for_main_tab:
				title, url, is_main_tab = await asyncio.gather(
					self.driver.get_title(), self.driver.get_url(), self.driver.execute_js(MAIN_TAB_PROBE_SCRIPT)
				)
			else:
				title, url = await asyncio.gather(self.driver.get_title(), self.driver.get_url())
				is_main_tab = 'unknown'
		except WebDriverException as exc:
			logger.error(f'failed to get url or title of tab {handle}: {error_message(exc)}')
			return _TabDetails()
		return _TabDetails(title=title or '', url=url or '', is_main_tab=is_main_tab)

	def add_opener_step_id(self, session_id: str, handle: str, opener_step_id: str) -> None:
		self.get_all_tab_infos(session_id)[handle].opener_step_id = opener_step_id

	def add_opener_step(self, session_id: str, handle: str, opener_step: Step) -> None:
		record = self.get_all_tab_infos(session_id)[handle]
		record.opener_step_id = opener_step.id
		record.opener_original_step_id = opener_step.original_step_id

	def update_tab_url(self, session_id: str, handle: str, url: str) -> None:
		"""Record a navigation inside an already registered tab."""
		record = self.get_tab_info(session_id, handle)
		if record is None:
			return
		record.current_url = url
		record.last_updated_url = url

	def fix_missing_main_tab(self, session_id: str) -> None:
		if self.get_main_tab_info(session_id) is not None:
			return
		infos = self.get_all_tab_infos(session_id)
		if not infos:
			return
		next(iter(infos.values())).is_main = True

	def remove_tab_info(self, session_id: str, handle: str) -> None:
		session = self._session(session_id)
		if session.tab_infos.pop(handle, None) is not None:
			session.tab_count -= 1
		session.added.discard(handle)
		if session.current_tab == handle:
			session.current_tab = None

	def clear_all_tabs(self, session_id: str) -> None:
		for handle in self.get_all_tab_ids(session_id):
			self.remove_tab_info(session_id, handle)
		self._session(session_id).tab_count = 0

	def clear_non_main_tabs(self, session_id: str) -> None:
		for handle, info in list(self.get_all_tab_infos(session_id).items()):
			if not info.is_main:
				self.remove_tab_info(session_id, handle)
		self._session(session_id).tab_count = 1

	async def mark_tab_closed(self, session_id: str, handle: str) -> None:
		session = self._session(session_id)
		record = session.tab_infos.get(handle)
		if record is None or record.is_closed:
			return
		record.is_closed = True
		session.tab_count -= 1
		if session.current_tab == handle:
			session.current_tab = None
		logger.info(f'Tab {handle} of session {session_id} was closed, {session.tab_count} tabs left')
		if self.event_bus is not None:
			await self.event_bus.dispatch(TabClosedEvent(session_id=session_id, handle=handle))

	# matching

	def exact_url_match(self, first: _TabLike, second: _TabLike, all_urls: list[str]) -> bool:
		if sum(1 for url in all_urls if url == second.url) != 1:
			return False
		return (
			first.url == second.url
			or first.current_url == second.url
			or (bool(first.current_url) and first.current_url == second.current_url)
		)

	def single_exact_match_for_parts(
		self,
		first: _TabLike,
		second: _TabLike,
		all_urls: list[str],
		combine: Callable[[UrlParts], str],
	) -> bool:
		first_combined = combine(break_url(first.url or first.current_url))
		second_combined = combine(break_url(second.url or second.current_url))
		if first_combined != second_combined:
			return False
		matches = sum(1 for url in all_urls if combine(break_url(url)) == first_combined)
		return matches == 1

	def is_same_tab(self, session_id: str, first: _TabLike, second: _TabLike) -> bool:
		"""Decide whether two tab descriptions denote the same tab.

		Rules are tried in order: both main, same opener step, same URL, same
		domain+path, same domain+path+hash, same order. The URL rules only count
		when the URL is unique among the session's open tabs.
		"""
		if first.is_main and second.is_main:
			return True
		if first.opener_step_id and second.opener_step_id and first.opener_step_id == second.opener_step_id:
			return True

		all_urls = [info.url for info in self.get_all_tab_infos(session_id).values() if not info.is_closed]
		if self.exact_url_match(first, second, all_urls):
			return True
		if self.single_exact_match_for_parts(first, second, all_urls, combine_domain_and_path):
			return True
		if self.single_exact_match_for_parts(first, second, all_urls, combine_domain_path_and_hash):
			return True
		return first.order == second.order

	# switching and resolution

	async def switch_tab(self, handle: str, session_id: str, force_switch: bool = False) -> None:
		"""Switch the driver to ``handle``; with a single known tab the switch is skipped unless forced."""
		session = self.session_tabs.get(session_id)
		tab_count = session.tab_count if session else 1
		if tab_count > 1 or force_switch:
			await self.driver.switch_tab(handle)
		if session is not None:
			session.last_active_tab = handle

	async def get_unregistered_tab_id(self, session_id: str) -> str | None:
		known = set(self.get_all_tab_ids(session_id))
		handles = await self.driver.get_tab_ids()
		return next((handle for handle in handles if handle not in known), None)

	async def wait_for_tab_to_open(self, session_id: str) -> str:
		"""Poll until a handle the registry does not know appears; callers bound this with a timeout."""
		while True:
			new_handle = await self.get_unregistered_tab_id(session_id)
			if new_handle:
				return new_handle
			await asyncio.sleep(self.config.tab_poll_interval)

	async def try_to_add_tab(self, session_id: str, opener_step_id: str | None = None) -> None:
		if self.pending_tabs.get(session_id):
			# a popup registration is in progress
			return
		new_handle = await self.get_unregistered_tab_id(session_id)
		if not new_handle:
			return
		logger.info(f'Registering unknown tab {new_handle} found while resolving a step opened by {opener_step_id}')
		await self.add_new_tab(session_id, new_handle)
		await self._notify_frame_handler(new_handle)
		self._session(session_id).current_tab = None

	async def add_new_popup(self, session_id: str, opener_step_id: str) -> None:
		"""Wait for the popup opened by ``opener_step_id`` and register it."""
		infos = self.get_all_tab_infos(session_id)
		if any(info.opener_step_id == opener_step_id for info in infos.values()):
			return
		if self.pending_tabs.get(session_id):
			logger.info(f'overriding opener step id from {self.pending_tabs[session_id]} to {opener_step_id}')
			self.pending_tabs[session_id] = opener_step_id
			return
		self.pending_tabs[session_id] = opener_step_id
		try:
			new_handle = await self.wait_for_tab_to_open(session_id)
			await self.add_new_tab(session_id, new_handle, self.pending_tabs[session_id])
			await self._notify_frame_handler(new_handle)
			self._session(session_id).current_tab = None
		finally:
			self.pending_tabs.pop(session_id, None)

	async def wait_to_pending_tabs(self, session_id: str, opener_step_id: str | None) -> None:
		"""Give a popup opened by ``opener_step_id`` a short time to finish registering."""
		if not opener_step_id:
			return
		loop = asyncio.get_running_loop()
		deadline = loop.time() + self.config.pending_tab_wait
		while self.pending_tabs.get(session_id) == opener_step_id and loop.time() + self.config.tab_poll_interval < deadline:
			await asyncio.sleep(self.config.tab_poll_interval)

	def _match_tab(self, session_id: str, step: Step) -> str | None:
		open_ids = self.get_all_open_tab_ids(session_id)
		if step.tab_info is None:
			main_id = self.get_main_tab_id(session_id)
			return main_id if main_id in open_ids else None
		infos = self.get_all_tab_infos(session_id)
		return next((handle for handle in open_ids if self.is_same_tab(session_id, infos[handle], step.tab_info)), None)

	async def get_tab_id_by_tab_info(self, session_id: str, step: Step, force_switch: bool = False) -> str:
		"""Resolve the live handle of the tab ``step`` was recorded in and switch to it.

		``force_switch`` switches even when a single tab is known, which is needed
		after the focused window closed underneath the driver.
		"""
		if is_invalid_step_version(step):
			raise InvalidTestVersionError(f'step {step.id} version {step.version} has no frame locators')
		opener_step_id = step.tab_info.opener_step_id if step.tab_info else None
		await self.wait_to_pending_tabs(session_id, opener_step_id)

		handle = self._match_tab(session_id, step)
		if handle is None:
			await self.try_to_add_tab(session_id, opener_step_id)
			raise TabNotFoundError('No tab ID found')

		session = self._session(session_id)
		if session.current_tab == handle and not force_switch:
			return handle
		try:
			await self.switch_tab(handle, session_id, force_switch=force_switch)
		except WebDriverException as exc:
			if not is_window_closed_error(exc):
				raise
			logger.info(f'Tab {handle} is gone ({error_message(exc)}), resolving step {step.id} against the remaining tabs')
			await self.mark_tab_closed(session_id, handle)
			session.current_tab = None
			return await self.get_tab_id_by_tab_info(session_id, step, force_switch=True)
		session.current_tab = handle
		return handle
