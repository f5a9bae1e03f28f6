"""Tests for perf marks and environment-driven configuration."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from webdriver_playback import perf
from webdriver_playback.config import PlaybackConfig
from webdriver_playback.perf import SeleniumPerfMark, SeleniumPerfStats, calc_percentile


def test_calc_percentile_nearest_rank() -> None:
	samples = [5.0, 1.0, 3.0, 2.0, 4.0]

	assert calc_percentile(samples, 50) == 3.0
	assert calc_percentile(samples, 95) == 5.0
	assert calc_percentile(samples, 0) == 1.0
	assert calc_percentile([], 50) == 0


def test_marks_are_bucketed_and_summarized(monkeypatch: pytest.MonkeyPatch) -> None:
	ticks = iter([0.0, 10.0, 100.0, 130.0, 200.0, 205.0])
	monkeypatch.setattr(perf, '_now_ms', lambda: next(ticks))
	stats = SeleniumPerfStats()

	first = stats.mark_start(SeleniumPerfMark.GET_HTML)
	assert stats.mark_end(first, SeleniumPerfMark.GET_HTML) == 10.0
	second = stats.mark_start(SeleniumPerfMark.GET_HTML)
	stats.mark_end(second, SeleniumPerfMark.GET_HTML)
	third = stats.mark_start()
	stats.mark_end(third)

	result = stats.get_stats()
	assert result['selenium_perf_marks']['GET_HTML'] == [10.0, 30.0]
	assert result['selenium_stats']['GET_HTML_COUNT'] == 2
	assert result['selenium_stats']['GET_HTML_P50'] == 10.0
	assert result['selenium_stats']['GET_HTML_P95'] == 30.0
	assert result['selenium_stats']['ALL_COUNT'] == 1
	# marks without samples are left out of the summary
	assert 'GET_SCREENSHOT_COUNT' not in result['selenium_stats']


def test_mark_end_with_wrong_bucket_is_ignored() -> None:
	stats = SeleniumPerfStats()
	mark_id = stats.mark_start(SeleniumPerfMark.GET_ELEMENT)

	assert stats.mark_end(mark_id, SeleniumPerfMark.GET_BROWSER) is None
	assert stats.in_flight == 1


def test_config_from_env() -> None:
	config = PlaybackConfig.from_env(
		{
			'STEP_TIMEOUT': '45000',
			'APPLITOOLS_STEP_TIMEOUT': '600000',
			'REQUESTS_QUEUE_SIZE': '2',
			'DISABLE_DEBUGGER_INFINITE_TIMEOUT': '1',
			'ENABLE_FRAME_SWITCH_OPTIMIZATION': '0',
		}
	)

	assert config.step_timeout == 45_000
	assert config.applitools_step_timeout == 600_000
	assert config.requests_queue_size == 2
	assert config.disable_debugger_infinite_timeout is True
	assert config.enable_frame_switch_optimization is False


def test_config_defaults_and_overrides() -> None:
	config = PlaybackConfig.from_env({'STEP_TIMEOUT': ' '}, step_timeout=12_000)

	assert config.step_timeout == 12_000
	assert config.requests_queue_size is None
	assert config.tab_poll_interval == 0.5
	assert config.pending_tab_wait == 3.0
	assert config.prohibited_tab_urls == ('app.testim.io',)


def test_config_rejects_unknown_and_invalid_values() -> None:
	with pytest.raises(ValidationError):
		PlaybackConfig(step_timeout=0)
	with pytest.raises(ValidationError):
		PlaybackConfig(unknown_option=True)
	with pytest.raises(ValueError):
		PlaybackConfig.from_env({'REQUESTS_QUEUE_SIZE': 'many'})
