from .events import (
    ConfigChanged,
    Event,
    EventType,
    ScanRequested,
    TabActivated,
    TabCreated,
    TabRemoved,
    TabUpdated,
)
from .tab import TabChange, TabSnapshot

__all__ = [
    "ConfigChanged",
    "Event",
    "EventType",
    "ScanRequested",
    "TabActivated",
    "TabCreated",
    "TabRemoved",
    "TabUpdated",
    "TabChange",
    "TabSnapshot",
]
