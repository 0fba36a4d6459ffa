"""Event definitions for host and page communication.

Host events are produced by a ``BrowserHost`` implementation and consumed by
the navigation tracker, readiness manager and downloads watchdog. Page events
are produced by tabwright itself for user code to subscribe to.
"""

import os
from typing import Any, Literal

from bubus import BaseEvent
from pydantic import Field


def _get_timeout(env_var: str, default: float) -> float | None:
    """Safely parse environment variable timeout values with robust error handling.

    Args:
        env_var: Environment variable name (e.g. 'TIMEOUT_NavigationCommittedEvent')
        default: Default timeout value as float (e.g. 15.0)

    Returns:
        Parsed float value or the default if parsing fails
    """
    env_value = os.getenv(env_var)
    if env_value:
        try:
            parsed = float(env_value)
            if parsed < 0:
                return default
            return parsed
        except (ValueError, TypeError):
            pass

    return default


# ============================================================================
# Session Lifecycle Events
# ============================================================================


class BrowserStartEvent(BaseEvent[None]):
    """Attach watchdogs and start background services."""

    event_timeout: float | None = _get_timeout('TIMEOUT_BrowserStartEvent', 30.0)


class BrowserStopEvent(BaseEvent[None]):
    """Tear down pages and background services."""

    event_timeout: float | None = _get_timeout('TIMEOUT_BrowserStopEvent', 45.0)


class BrowserStoppedEvent(BaseEvent[None]):
    """Session has stopped."""

    reason: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_BrowserStoppedEvent', 30.0)


# ============================================================================
# Host Tab Events
# ============================================================================


class TabCreatedEvent(BaseEvent[None]):
    """Host opened a new tab."""

    tab_id: int
    url: str = 'about:blank'

    event_timeout: float | None = _get_timeout('TIMEOUT_TabCreatedEvent', 30.0)


class TabActivatedEvent(BaseEvent[None]):
    """Host brought a tab to the foreground."""

    tab_id: int

    event_timeout: float | None = _get_timeout('TIMEOUT_TabActivatedEvent', 30.0)


class TabClosedEvent(BaseEvent[None]):
    """Host removed a tab."""

    tab_id: int

    event_timeout: float | None = _get_timeout('TIMEOUT_TabClosedEvent', 30.0)


# ============================================================================
# Host Navigation Events
# ============================================================================


class NavigationCommittedEvent(BaseEvent[None]):
    """A frame committed a navigation (new document unless the id is unchanged)."""

    tab_id: int
    frame_id: int
    parent_frame_id: int | None = None
    url: str
    document_id: str | None = None
    frame_name: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_NavigationCommittedEvent', 15.0)


class NavigationDOMContentLoadedEvent(BaseEvent[None]):
    """A frame's document finished parsing."""

    tab_id: int
    frame_id: int
    url: str
    document_id: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_NavigationDOMContentLoadedEvent', 15.0)


class NavigationCompletedEvent(BaseEvent[None]):
    """A frame's document fired load."""

    tab_id: int
    frame_id: int
    url: str
    document_id: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_NavigationCompletedEvent', 15.0)


class HistoryStateUpdatedEvent(BaseEvent[None]):
    """Same-document navigation reported by the host (history API, fragment)."""

    tab_id: int
    frame_id: int
    url: str
    kind: str = 'pushState'

    event_timeout: float | None = _get_timeout('TIMEOUT_HistoryStateUpdatedEvent', 15.0)


class NavigationErrorEvent(BaseEvent[None]):
    """A navigation was aborted before committing."""

    tab_id: int
    frame_id: int
    url: str
    error: str
    document_id: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_NavigationErrorEvent', 15.0)


class FrameRemovedEvent(BaseEvent[None]):
    """Host reports that a frame is gone."""

    tab_id: int
    frame_id: int

    event_timeout: float | None = _get_timeout('TIMEOUT_FrameRemovedEvent', 15.0)


class PageMessageEvent(BaseEvent[None]):
    """Message posted by page-side instrumentation through the messaging channel."""

    tab_id: int
    frame_id: int
    type: str
    detail: dict[str, Any] = Field(default_factory=dict)

    event_timeout: float | None = _get_timeout('TIMEOUT_PageMessageEvent', 15.0)


# ============================================================================
# Host Download Events
# ============================================================================


class DownloadCreatedEvent(BaseEvent[None]):
    """Host started a download. No tab association is supplied."""

    download_id: int
    url: str
    filename: str = ''
    mime_type: str | None = None
    total_bytes: int | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_DownloadCreatedEvent', 30.0)


class DownloadChangedEvent(BaseEvent[None]):
    """Download state delta."""

    download_id: int
    state: Literal['in_progress', 'interrupted', 'complete']
    filename: str | None = None
    error: str | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_DownloadChangedEvent', 30.0)


# ============================================================================
# Page Events (produced by tabwright)
# ============================================================================


class FrameAttachedEvent(BaseEvent[None]):
    tab_id: int
    frame_id: int
    parent_frame_id: int | None = None

    event_timeout: float | None = _get_timeout('TIMEOUT_FrameAttachedEvent', 30.0)


class FrameDetachedEvent(BaseEvent[None]):
    tab_id: int
    frame_id: int

    event_timeout: float | None = _get_timeout('TIMEOUT_FrameDetachedEvent', 30.0)


class FrameNavigatedEvent(BaseEvent[None]):
    tab_id: int
    frame_id: int
    url: str
    name: str = ''
    new_document: bool = True

    event_timeout: float | None = _get_timeout('TIMEOUT_FrameNavigatedEvent', 30.0)


class ExecutionContextDestroyedEvent(BaseEvent[None]):
    tab_id: int
    frame_id: int
    reason: str

    event_timeout: float | None = _get_timeout('TIMEOUT_ExecutionContextDestroyedEvent', 30.0)


class ReadinessBarrierResetEvent(BaseEvent[None]):
    tab_id: int
    frame_id: int

    event_timeout: float | None = _get_timeout('TIMEOUT_ReadinessBarrierResetEvent', 30.0)


class PageDOMContentLoadedEvent(BaseEvent[None]):
    tab_id: int
    url: str

    event_timeout: float | None = _get_timeout('TIMEOUT_PageDOMContentLoadedEvent', 30.0)


class PageLoadEvent(BaseEvent[None]):
    tab_id: int
    url: str

    event_timeout: float | None = _get_timeout('TIMEOUT_PageLoadEvent', 30.0)


class PageClosedEvent(BaseEvent[None]):
    tab_id: int

    event_timeout: float | None = _get_timeout('TIMEOUT_PageClosedEvent', 30.0)


class DownloadStartedEvent(BaseEvent[None]):
    """A download was associated with a page (best effort, see DownloadsWatchdog)."""

    tab_id: int | None = None
    download_id: int
    url: str
    suggested_filename: str

    event_timeout: float | None = _get_timeout('TIMEOUT_DownloadStartedEvent', 30.0)


class FileDownloadedEvent(BaseEvent[None]):
    """A file has been downloaded."""

    tab_id: int | None = None
    download_id: int
    url: str
    path: str
    file_name: str

    event_timeout: float | None = _get_timeout('TIMEOUT_FileDownloadedEvent', 30.0)


class DownloadFailedEvent(BaseEvent[None]):
    tab_id: int | None = None
    download_id: int
    url: str
    error: str

    event_timeout: float | None = _get_timeout('TIMEOUT_DownloadFailedEvent', 30.0)
