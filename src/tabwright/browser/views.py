"""Browser view models and the tabwright error hierarchy."""

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

World = Literal['MAIN', 'ISOLATED']
LifecycleEvent = Literal['commit', 'domcontentloaded', 'load']
WaitUntil = Literal['commit', 'domcontentloaded', 'load', 'networkidle']
ElementState = Literal['visible', 'hidden', 'enabled', 'disabled', 'editable', 'checked', 'unchecked']
SelectorState = Literal['attached', 'detached', 'visible', 'hidden']

LIFECYCLE_ORDER: tuple[LifecycleEvent, ...] = ('commit', 'domcontentloaded', 'load')

# Tri-state result values returned by handle-scoped element operations
DONE = 'done'
NOT_CONNECTED = 'error:notconnected'


class Size(BaseModel):
    width: float
    height: float


class Rect(BaseModel):
    x: float
    y: float
    width: float
    height: float


class ScreenshotOptions(BaseModel):
    """Options accepted by page, locator and element screenshots."""

    model_config = ConfigDict(extra='forbid')

    type: Literal['png', 'jpeg'] = 'png'
    quality: int | None = None
    full_page: bool = False
    clip: Rect | None = None
    scale: Literal['css', 'device'] = 'device'
    path: str | None = None


class DocumentInfo(BaseModel):
    """Identifies one load of a frame."""

    document_id: str | None = None
    request: Any | None = None


class NavigationEvent(BaseModel):
    """One entry of the merged per-frame navigation stream."""

    kind: Literal['committed', 'same_document', 'domcontentloaded', 'load', 'aborted', 'detached']
    tab_id: int
    frame_id: int
    parent_frame_id: int | None = None
    url: str = ''
    document_id: str | None = None
    name: str | None = None
    new_document: bool = False
    error: str | None = None


class TabInfo(BaseModel):
    """Represents information about a browser tab."""

    model_config = ConfigDict(extra='forbid')

    tab_id: int
    url: str
    title: str = ''
    active: bool = False


class SnapshotResult(BaseModel):
    """Accessibility snapshot of one frame plus the iframe refs it contains."""

    snapshot: str
    iframe_refs: list[str] = Field(default_factory=list)


# ============================================================================
# Errors
# ============================================================================


class TabwrightError(Exception):
    """Base error carrying the public operation name and the progress log.

    Args:
        message: Technical error message.
        operation: Api name of the failing call (e.g. ``page.goto``).
        call_log: Diagnostic trail accumulated by the progress controller.
        details: Additional metadata for debugging.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        call_log: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.operation = operation
        self.call_log = list(call_log) if call_log else []
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        text = f'{self.operation}: {self.message}' if self.operation else self.message
        if self.details:
            text = f'{text} ({self.details})'
        if self.call_log:
            text += '\nCall log:\n' + '\n'.join(f'  - {line}' for line in self.call_log)
        return text


class TimeoutError(TabwrightError):
    """A progress deadline or an explicit wait expired."""

    def __init__(self, timeout_ms: float, message: str | None = None, **kwargs: Any):
        self.timeout_ms = timeout_ms
        super().__init__(message or f'Timeout {_format_ms(timeout_ms)}ms exceeded.', **kwargs)


class ProtocolError(TabwrightError):
    """Host transport failure, classified as ``closed`` or ``error``."""

    CLOSED_PATTERNS = (
        re.compile(r'No tab with id', re.I),
        re.compile(r'No frame with id', re.I),
        re.compile(r'Frame with ID \d+ was removed', re.I),
        re.compile(r'Target closed', re.I),
        re.compile(r'Cannot access contents of', re.I),
    )

    def __init__(self, type: Literal['closed', 'error'], method: str | None, message: str, **kwargs: Any):
        self.type = type
        self.method = method
        self.raw_message = message
        prefix = f'Protocol error ({method}): ' if method else 'Protocol error: '
        super().__init__(prefix + message, **kwargs)

    @classmethod
    def from_error(cls, error: BaseException, method: str | None = None) -> 'ProtocolError':
        if isinstance(error, ProtocolError):
            return error
        message = str(error) or type(error).__name__
        kind: Literal['closed', 'error'] = 'error'
        if any(pattern.search(message) for pattern in cls.CLOSED_PATTERNS):
            kind = 'closed'
        return cls(kind, method, message)

    @property
    def is_closed(self) -> bool:
        return self.type == 'closed'


class ContextDestroyedError(TabwrightError):
    def __init__(self, reason: str | None = None, **kwargs: Any):
        self.reason = reason
        message = 'Execution context was destroyed'
        if reason:
            message += f', most likely because of a navigation ({reason})'
        super().__init__(message, **kwargs)


class FrameDetachedError(TabwrightError):
    def __init__(self, message: str = 'Frame was detached', **kwargs: Any):
        super().__init__(message, **kwargs)


class NavigationAbortedError(TabwrightError):
    def __init__(self, message: str, document_id: str | None = None, **kwargs: Any):
        self.document_id = document_id
        super().__init__(message, **kwargs)


class InvalidSelectorError(TabwrightError):
    pass


class StrictModeViolationError(TabwrightError):
    pass


class ElementNotConnectedError(TabwrightError):
    def __init__(self, message: str = 'Element is not attached to the DOM', **kwargs: Any):
        super().__init__(message, **kwargs)


class URLNotAllowedError(TabwrightError):
    """Error raised when a URL is not allowed"""
    pass


class InvalidArgumentError(TabwrightError):
    pass


class CaptureRateLimitError(TabwrightError):
    MARKER = 'MAX_CAPTURE_VISIBLE_TAB_CALLS_PER_SECOND'

    def __init__(self, message: str | None = None, **kwargs: Any):
        super().__init__(message or f'This request exceeds the {self.MARKER} quota.', **kwargs)

    @classmethod
    def matches(cls, error: BaseException) -> bool:
        return isinstance(error, cls) or cls.MARKER in str(error)


class EvaluationError(TabwrightError):
    pass


def _format_ms(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def is_retriable_error(error: BaseException) -> bool:
    """Errors that a retrying caller may recover from by resolving again."""
    return isinstance(error, ContextDestroyedError) or (
        isinstance(error, ProtocolError) and error.is_closed
    )
