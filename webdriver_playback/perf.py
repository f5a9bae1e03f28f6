"""Per-session timing marks for protocol calls, aggregated into percentiles."""

import math
import time
from enum import Enum
from typing import Any

from uuid_extensions import uuid7str


class SeleniumPerfMark(str, Enum):
	GET_BROWSER = 'GET_BROWSER'
	GET_HTML = 'GET_HTML'
	GET_ELEMENT = 'GET_ELEMENT'
	GET_SCREENSHOT = 'GET_SCREENSHOT'


ALL_MARK = 'ALL'


def calc_percentile(samples: list[float], percentile: float) -> float:
	"""Nearest-rank percentile; 0 for an empty sample list."""
	if not samples:
		return 0
	ordered = sorted(samples)
	if percentile <= 0:
		return ordered[0]
	if percentile >= 100:
		return ordered[-1]
	index = math.ceil(len(ordered) * (percentile / 100)) - 1
	return ordered[index]


def _now_ms() -> float:
	return time.monotonic() * 1000


class SeleniumPerfStats:
	"""Collects call durations in milliseconds, bucketed by mark.

	Unnamed marks land in the ``ALL`` bucket, which is what the command queue
	uses for every protocol call.
	"""

	def __init__(self) -> None:
		self.marks: dict[str, list[float]] = {mark.value: [] for mark in SeleniumPerfMark}
		self.marks[ALL_MARK] = []
		self._start_times: dict[str, float] = {}

	@staticmethod
	def _key(mark_id: str, mark: SeleniumPerfMark | None) -> str:
		return f'{mark.value if mark else ALL_MARK}:{mark_id}'

	def mark_start(self, mark: SeleniumPerfMark | None = None) -> str:
		mark_id = uuid7str()
		self._start_times[self._key(mark_id, mark)] = _now_ms()
		return mark_id

	def mark_end(self, mark_id: str, mark: SeleniumPerfMark | None = None) -> float | None:
		started = self._start_times.pop(self._key(mark_id, mark), None)
		if started is None:
			return None
		duration = _now_ms() - started
		self.marks[mark.value if mark else ALL_MARK].append(duration)
		return duration

	@property
	def in_flight(self) -> int:
		return len(self._start_times)

	def get_stats(self) -> dict[str, Any]:
		stats: dict[str, float] = {}
		for key, samples in self.marks.items():
			if not samples:
				continue
			stats[f'{key}_COUNT'] = len(samples)
			stats[f'{key}_P50'] = calc_percentile(samples, 50)
			stats[f'{key}_P95'] = calc_percentile(samples, 95)
		return {
			'selenium_perf_marks': {key: list(samples) for key, samples in self.marks.items()},
			'selenium_stats': stats,
		}
