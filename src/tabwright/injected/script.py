"""Page-side runtime installed into every world of every document.

``PageDocument`` is one load of a frame: the DOM and the window state both
worlds share. ``InjectedScript`` is the per-world entry point. It owns that
world's handle registry and answers ``{function_name, args}`` requests from the
closed operation registry in :mod:`tabwright.injected.operations`.
"""

import logging
import weakref
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup, Tag

from tabwright.browser.views import TabwrightError, World
from tabwright.injected import dom
from tabwright.injected.handles import HandleRegistry
from tabwright.injected.selector_engine import SelectorEvaluator

logger = logging.getLogger(__name__)

HANDLE_KEY = '__handle__'


class _Detached:
    """Stands in for a handle argument whose node is gone."""

    def __repr__(self) -> str:
        return '<detached>'


DETACHED = _Detached()


@dataclass
class WindowState:
    inner_width: int = 1280
    inner_height: int = 720
    device_pixel_ratio: float = 1.0
    scroll_x: float = 0
    scroll_y: float = 0
    # Full page size; ``None`` means the page fits the viewport
    scroll_width: int | None = None
    scroll_height: int | None = None
    scroll_behavior: str = ''
    page_globals: dict[str, Any] = field(default_factory=dict)

    @property
    def document_width(self) -> int:
        return max(self.scroll_width or 0, self.inner_width)

    @property
    def document_height(self) -> int:
        return max(self.scroll_height or 0, self.inner_height)

    def scroll_to(self, x: float, y: float) -> None:
        self.scroll_x = max(0, min(x, self.document_width - self.inner_width))
        self.scroll_y = max(0, min(y, self.document_height - self.inner_height))


class PageDocument:
    """The DOM and window of one frame document, shared by both worlds."""

    def __init__(self, html: str, url: str, document_id: str, window: WindowState | None = None):
        self.soup = BeautifulSoup(html, 'html.parser')
        self.url = url
        self.document_id = document_id
        self.window = window or WindowState()
        self.event_log: list[dict[str, Any]] = []
        self.aria_refs: dict[str, weakref.ref[Tag]] = {}
        self.input_files: dict[int, list[dict[str, Any]]] = {}
        self.focused: weakref.ref[Tag] | None = None
        # Requests the host drains after every injection call
        self.navigation_requests: list[str] = []
        self.history_requests: list[tuple[str, str]] = []
        self.scroll_capture_state: dict[str, Any] | None = None

    @property
    def title(self) -> str:
        title = self.soup.find('title')
        return dom.normalize_whitespace(title.get_text()) if title is not None else ''

    def record_event(self, event_type: str, target: Tag, **detail: Any) -> None:
        self.event_log.append({'type': event_type, 'target': describe_element(target), **detail})

    def resolve_aria_ref(self, ref: str) -> Tag | None:
        weak = self.aria_refs.get(ref)
        node = weak() if weak is not None else None
        if node is None or not dom.is_connected(node, self.soup):
            return None
        return node


def describe_element(node: Tag) -> str:
    text = node.name or ''
    if node.get('id'):
        text += f'#{node["id"]}'
    classes = node.get('class')
    if classes:
        text += '.' + '.'.join(classes if isinstance(classes, list) else str(classes).split())
    return text


class InjectedScript:
    """One world's view of a document."""

    def __init__(self, document: PageDocument, world: World):
        self.document = document
        self.world = world
        self.handles = HandleRegistry(
            lambda node: dom.is_connected(node, document.soup),
            prefix='m' if world == 'MAIN' else 'i',
        )
        self.evaluator = SelectorEvaluator(document.soup, document.resolve_aria_ref)

    @property
    def soup(self) -> BeautifulSoup:
        return self.document.soup

    def evaluate(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run one registered operation. Never raises across the sandbox boundary."""
        from tabwright.injected.operations import OPERATIONS

        function_name = request.get('function_name')
        operation = OPERATIONS.get(function_name) if isinstance(function_name, str) else None
        if operation is None:
            return {'success': False, 'error': f'Unknown operation: {function_name!r}', 'error_type': 'EvaluationError'}
        try:
            args = [self._decode(arg) for arg in request.get('args') or []]
            result = operation(self, *args)
            return {'success': True, 'result': self._encode(result)}
        except TabwrightError as e:
            return {'success': False, 'error': e.message, 'error_type': type(e).__name__}
        except Exception as e:
            logger.debug(f'Operation {function_name} failed in {self.world} world: {type(e).__name__}: {e}')
            return {'success': False, 'error': f'{type(e).__name__}: {e}', 'error_type': 'EvaluationError'}

    def _decode(self, value: Any) -> Any:
        if isinstance(value, dict):
            if set(value) == {HANDLE_KEY}:
                node = self.handles.node_for(value[HANDLE_KEY])
                return DETACHED if node is None else node
            return {key: self._decode(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self._decode(item) for item in value]
        return value

    def _encode(self, value: Any) -> Any:
        if isinstance(value, Tag) and not isinstance(value, BeautifulSoup):
            return {HANDLE_KEY: self.handles.handle_for(value)}
        if isinstance(value, dict):
            return {key: self._encode(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._encode(item) for item in value]
        if value is DETACHED:
            return None
        return value
