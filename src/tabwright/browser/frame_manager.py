"""Frame tree bookkeeping for one page.

The frame manager subscribes to the navigation tracker for its tab, keeps the
``Frame`` objects in sync with the host's frame tree and publishes the public
frame and page events on the session bus.
"""

import logging
from typing import TYPE_CHECKING

from bubus import BaseEvent

from tabwright.browser.events import (
    FrameAttachedEvent,
    FrameDetachedEvent,
    FrameNavigatedEvent,
    PageDOMContentLoadedEvent,
    PageLoadEvent,
)
from tabwright.browser.frame import Frame
from tabwright.browser.navigation import normalize_url
from tabwright.browser.views import NavigationEvent

if TYPE_CHECKING:
    from tabwright.browser.page import Page

logger = logging.getLogger(__name__)


class FrameManager:
    def __init__(self, page: 'Page'):
        self._page = page
        self._main_frame = Frame(page, 0)
        self._frames: dict[int, Frame] = {0: self._main_frame}
        self._sync_from_tracker()
        self._unsubscribe = page.navigation_tracker.subscribe(page.tab_id, self._on_navigation_event)

    @property
    def main_frame(self) -> Frame:
        return self._main_frame

    def frame(self, frame_id: int) -> Frame | None:
        return self._frames.get(frame_id)

    def frames(self) -> list[Frame]:
        """All attached frames, parents before children."""
        result: list[Frame] = []
        pending = [self._main_frame]
        while pending:
            frame = pending.pop(0)
            if frame.is_detached():
                continue
            result.append(frame)
            pending.extend(sorted(frame.child_frames, key=lambda child: child.frame_id))
        return result

    def find_child_frame(self, parent: Frame, src: str, ordinal: int = 0, index: int | None = None) -> Frame | None:
        """Map an ``<iframe>`` element to its content frame.

        The host does not report which element hosts which frame. Children
        loaded from the same URL are told apart by ordinal; a child that has
        since navigated away from its ``src`` falls back to document position.
        """
        children = sorted(parent.child_frames, key=lambda child: child.frame_id)
        target = normalize_url(src)
        same_src = [child for child in children if normalize_url(child.url) == target]
        if ordinal < len(same_src):
            return same_src[ordinal]
        if index is not None and 0 <= index < len(children):
            return children[index]
        return None

    # ------------------------------------------------------------------
    # Navigation events
    # ------------------------------------------------------------------

    def _sync_from_tracker(self) -> None:
        # Pages created for tabs that already committed start from the tracked state
        state = self._page.navigation_tracker.get_state(self._page.tab_id, 0)
        if state is None:
            return
        self._main_frame._on_new_document_committed(state.url, state.document_id)
        for stage in state.lifecycle - {'commit'}:
            self._main_frame._on_lifecycle_event(stage)

    def _on_navigation_event(self, event: NavigationEvent) -> None:
        if event.kind == 'detached':
            frame = self._frames.get(event.frame_id)
            if frame is not None:
                self._remove_frame_recursively(frame)
            return

        if event.kind == 'aborted':
            logger.debug(f'Navigation of frame {event.frame_id} to {event.url} aborted: {event.error}')
            return

        frame = self._frames.get(event.frame_id)
        if event.kind == 'committed':
            if frame is None:
                frame = self._attach_frame(event.frame_id, event.parent_frame_id)
                if frame is None:
                    return
            # A new document replaces the whole subtree of the frame
            for child in frame.child_frames:
                self._remove_frame_recursively(child)
            frame._on_new_document_committed(event.url, event.document_id, event.name)
            if frame.is_main_frame:
                self._page._record_visit(event.url)
            self._publish(
                FrameNavigatedEvent(
                    tab_id=event.tab_id, frame_id=frame.frame_id, url=event.url, name=frame.name, new_document=True
                )
            )
            return

        if frame is None:
            return
        if event.kind == 'same_document':
            frame._on_same_document_navigation(event.url)
            if frame.is_main_frame:
                self._page._record_visit(event.url)
            self._publish(
                FrameNavigatedEvent(
                    tab_id=event.tab_id, frame_id=frame.frame_id, url=event.url, name=frame.name, new_document=False
                )
            )
        elif event.kind in ('domcontentloaded', 'load'):
            frame._on_lifecycle_event(event.kind)
            if frame.is_main_frame:
                if event.kind == 'domcontentloaded':
                    self._publish(PageDOMContentLoadedEvent(tab_id=event.tab_id, url=frame.url))
                else:
                    self._publish(PageLoadEvent(tab_id=event.tab_id, url=frame.url))

    def _attach_frame(self, frame_id: int, parent_frame_id: int | None) -> Frame | None:
        parent = self._frames.get(parent_frame_id) if parent_frame_id is not None else None
        if parent is None:
            logger.debug(f'Ignoring frame {frame_id} of tab {self._page.tab_id} with unknown parent {parent_frame_id}')
            return None
        frame = Frame(self._page, frame_id, parent)
        self._frames[frame_id] = frame
        self._publish(FrameAttachedEvent(tab_id=self._page.tab_id, frame_id=frame_id, parent_frame_id=parent_frame_id))
        return frame

    def _remove_frame_recursively(self, frame: Frame) -> None:
        for child in frame.child_frames:
            self._remove_frame_recursively(child)
        frame._on_detached()
        self._frames.pop(frame.frame_id, None)
        self._page.readiness_manager.remove_barrier(self._page.tab_id, frame.frame_id)
        self._publish(FrameDetachedEvent(tab_id=self._page.tab_id, frame_id=frame.frame_id))

    def _publish(self, event: BaseEvent) -> None:
        self._page.event_bus.dispatch(event)

    def dispose(self) -> None:
        self._unsubscribe()
        self._remove_frame_recursively(self._main_frame)
