"""Browser hosts the control plane can drive."""

from tabwright.host.base import NAVIGATION_MESSAGE_TYPE, BrowserHost
from tabwright.host.memory import MemoryHost, MemoryRoute

__all__ = ['BrowserHost', 'MemoryHost', 'MemoryRoute', 'NAVIGATION_MESSAGE_TYPE']
