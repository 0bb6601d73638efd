"""Close browser tabs whose URL matches user-supplied regular expressions."""

from .config import CloseMode, CloserConfig
from .evaluator import Decision, decide
from .rules.patterns import PatternSet
from .scheduler import ScanResult, Scheduler
from .timers import LoopClock, ManualClock, TimerRegistry

__all__ = [
    "CloseMode",
    "CloserConfig",
    "Decision",
    "decide",
    "PatternSet",
    "ScanResult",
    "Scheduler",
    "LoopClock",
    "ManualClock",
    "TimerRegistry",
]
