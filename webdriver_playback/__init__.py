"""Step playback over the WebDriver wire protocol."""

from .config import PlaybackConfig
from .driver import PlaybackDriver
from .frames import FrameHandler, FrameLocator, FrameTree, LocateResult
from .perf import SeleniumPerfStats
from .player import SeleniumPlayer, StepResult
from .protocol import ProtocolCapabilities, ProtocolCompatibilityLayer
from .queue import CommandQueue
from .steps import Step, StepPlayback
from .tabs import TabRecord, TabRegistry
from .timeouts import TimeoutBudgetCalculator
from .transport import WebDriverHttpClient

__all__ = [
	'CommandQueue',
	'FrameHandler',
	'FrameLocator',
	'FrameTree',
	'LocateResult',
	'PlaybackConfig',
	'PlaybackDriver',
	'ProtocolCapabilities',
	'ProtocolCompatibilityLayer',
	'SeleniumPerfStats',
	'SeleniumPlayer',
	'Step',
	'StepPlayback',
	'StepResult',
	'TabRecord',
	'TabRegistry',
	'TimeoutBudgetCalculator',
	'WebDriverHttpClient',
]
