"""Abstract contract for the browser host tabwright drives.

A host owns tabs, frames, script injection, visible-area capture, and
downloads. It reports everything that happens in the browser as events on the
session's ``EventBus`` (see :mod:`tabwright.browser.events`). The controller
never touches page memory: every page-side call is a JSON-shaped
``{"function_name": ..., "args": [...]}`` request answered by
``{"success": ..., "result" | "error": ...}``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from bubus import BaseEvent, EventBus

from tabwright.browser.views import World

logger = logging.getLogger(__name__)

# Message type posted by page-side instrumentation on the messaging channel
NAVIGATION_MESSAGE_TYPE = 'tabwright:navigation-event'


class BrowserHost(ABC):
    """Host primitives consumed by the control plane."""

    def __init__(self) -> None:
        self.event_bus: EventBus | None = None

    def connect(self, event_bus: EventBus) -> None:
        """Route host events to ``event_bus``. Called once by the owning session."""
        self.event_bus = event_bus

    async def emit(self, event: BaseEvent[Any]) -> None:
        """Dispatch a host event and wait until every handler has seen it."""
        if self.event_bus is None:
            logger.debug(f'Dropping {type(event).__name__}: host is not connected to a session')
            return
        await self.event_bus.dispatch(event)

    # Script injection

    @abstractmethod
    async def inject(self, tab_id: int, frame_id: int, world: World, request: dict[str, Any]) -> dict[str, Any]:
        """Run one registered page-side operation in ``world`` of a frame."""
        pass

    @abstractmethod
    async def ensure_instrumentation(self, tab_id: int, frame_id: int) -> None:
        """Install the page-side runtime into the frame if it is missing."""
        pass

    @abstractmethod
    async def ping(self, tab_id: int, frame_id: int) -> bool:
        """Return True once the page-side runtime answers in the frame."""
        pass

    # Capture

    @abstractmethod
    async def capture_visible(self, tab_id: int, format: str = 'png', quality: int | None = None) -> str:
        """Capture the visible area of a tab as a ``data:`` URL."""
        pass

    # Navigation

    @abstractmethod
    async def navigate(self, tab_id: int, frame_id: int, url: str) -> None:
        """History-preserving navigation of one frame."""
        pass

    @abstractmethod
    async def reload(self, tab_id: int) -> None:
        pass

    @abstractmethod
    async def go_back(self, tab_id: int) -> bool:
        """Return False when there is no history entry to go back to."""
        pass

    @abstractmethod
    async def go_forward(self, tab_id: int) -> bool:
        pass

    # Tabs

    @abstractmethod
    async def create_tab(self, url: str = 'about:blank') -> int:
        pass

    @abstractmethod
    async def close_tab(self, tab_id: int) -> None:
        pass

    @abstractmethod
    async def activate_tab(self, tab_id: int) -> None:
        pass

    # Downloads

    @abstractmethod
    async def cancel_download(self, download_id: int) -> None:
        pass

    @abstractmethod
    async def read_download(self, download_id: int) -> bytes:
        pass
