from .base import AdapterHealth, BrowserAdapter, TabSource
from .memory import InMemoryBrowser

__all__ = ["AdapterHealth", "BrowserAdapter", "TabSource", "InMemoryBrowser"]
