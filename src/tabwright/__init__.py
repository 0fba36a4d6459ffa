"""tabwright - a browser automation control plane over a remote host."""

__version__ = '0.1.0'

from tabwright.browser.downloads import Download
from tabwright.browser.element import ElementHandle
from tabwright.browser.frame import Frame
from tabwright.browser.locator import FrameLocator, Locator
from tabwright.browser.page import Page
from tabwright.browser.session import BrowserSession
from tabwright.browser.views import (
    CaptureRateLimitError,
    ContextDestroyedError,
    ElementNotConnectedError,
    EvaluationError,
    FrameDetachedError,
    InvalidArgumentError,
    InvalidSelectorError,
    NavigationAbortedError,
    ProtocolError,
    ScreenshotOptions,
    StrictModeViolationError,
    TabwrightError,
    TimeoutError,
    URLNotAllowedError,
)
from tabwright.host.base import BrowserHost
from tabwright.host.memory import MemoryHost

# Browser alias for a shorter API
Browser = BrowserSession

__all__ = [
    'Browser',
    'BrowserHost',
    'BrowserSession',
    'CaptureRateLimitError',
    'ContextDestroyedError',
    'Download',
    'ElementHandle',
    'ElementNotConnectedError',
    'EvaluationError',
    'Frame',
    'FrameDetachedError',
    'FrameLocator',
    'InvalidArgumentError',
    'InvalidSelectorError',
    'Locator',
    'MemoryHost',
    'NavigationAbortedError',
    'Page',
    'ProtocolError',
    'ScreenshotOptions',
    'StrictModeViolationError',
    'TabwrightError',
    'TimeoutError',
    'URLNotAllowedError',
]
