"""Closed registry of page-side operations.

The controller never ships code into the page. It sends
``{"function_name": ..., "args": [...]}`` and the runtime dispatches to one of
the functions registered here. Element handles travel as
``{"__handle__": id}`` and arrive decoded: a live ``Tag`` or ``DETACHED``.

Element operations answer with the tri-state contract: ``'done'``,
``'error:notconnected'``, or a raised ``TabwrightError``.
"""

import math
import weakref
from typing import Any, Callable, Literal, get_args
from urllib.parse import urlencode, urljoin, urlsplit

from bs4 import Tag

from tabwright.browser.views import DONE, NOT_CONNECTED, EvaluationError, TabwrightError
from tabwright.injected import dom
from tabwright.injected.script import DETACHED, InjectedScript
from tabwright.injected.selector_parser import parse_selector
from tabwright.injected.snapshot import build_snapshot

Operation = Callable[..., Any]

ElementAction = Literal[
    'click',
    'tap',
    'fill',
    'set_checked',
    'dispatch_event',
    'focus',
    'hover',
    'select_option',
    'set_input_files',
    'scroll_into_view',
]
ElementProperty = Literal['text_content', 'inner_text', 'inner_html', 'get_attribute', 'input_value', 'bounding_box']
QueryOperation = Literal[
    'query_selector',
    'query_selector_all',
    'count',
    'frame_selector_evaluation',
    'check_selector_state',
    'element_state',
    'is_iframe_element',
    'iframe_info',
]
DocumentOperation = Literal[
    'document_info',
    'document_html',
    'snapshot_for_ai',
    'event_log',
    'get_global',
    'set_global',
    'history_push_state',
    'history_replace_state',
    'set_location_hash',
]
CaptureOperation = Literal[
    'viewport_size',
    'scroll_position',
    'device_pixel_ratio',
    'full_page_size',
    'begin_scroll_capture',
    'scroll_to_segment',
    'restore_scroll',
]
HandleOperation = Literal['release_handle']
OperationName = ElementAction | ElementProperty | QueryOperation | HandleOperation | DocumentOperation | CaptureOperation

OPERATIONS: dict[str, Operation] = {}


def operation(name: str) -> Callable[[Operation], Operation]:
    """Register a page-side operation under ``name``."""

    def decorator(fn: Operation) -> Operation:
        if name in OPERATIONS:
            raise ValueError(f'Operation {name!r} is already registered')
        OPERATIONS[name] = fn
        return fn

    return decorator


def registered_operation_names() -> set[str]:
    return {name for family in get_args(OperationName) for name in get_args(family)}


# ============================================================================
# Helpers
# ============================================================================


def _detached(node: Any) -> bool:
    return node is DETACHED or not isinstance(node, Tag)


def _check_visible_enabled(node: Tag, force: bool, need_enabled: bool = True) -> None:
    if force:
        return
    if not dom.is_visible(node):
        raise TabwrightError('Element is not visible')
    if need_enabled and dom.is_disabled(node):
        raise TabwrightError('Element is disabled')


def _activate(script: InjectedScript, node: Tag) -> None:
    """Default action of a click: follow links, toggle checkables, submit forms."""
    document = script.document
    label = node if node.name == 'label' else node.find_parent('label')
    if node.name != 'input' and label is not None:
        target_id = label.get('for')
        control = script.soup.find(id=target_id) if target_id else label.find(['input', 'textarea', 'select'])
        if control is not None and control is not node:
            document.record_event('click', control)
            node = control

    kind = dom.input_type(node)
    if kind == 'checkbox':
        if node.has_attr('checked'):
            del node['checked']
        else:
            node['checked'] = ''
        document.record_event('change', node)
        return
    if kind == 'radio':
        name = node.get('name')
        if name:
            for other in script.soup.find_all('input', attrs={'type': 'radio', 'name': name}):
                if other is not node and other.has_attr('checked'):
                    del other['checked']
        node['checked'] = ''
        document.record_event('change', node)
        return

    link = node if node.name == 'a' else node.find_parent('a')
    if link is not None and link.has_attr('href'):
        document.navigation_requests.append(urljoin(document.url, str(link['href'])))
        return

    is_submit = (node.name == 'button' and str(node.get('type') or 'submit').lower() == 'submit') or kind in (
        'submit',
        'image',
    )
    form = node.find_parent('form') if is_submit else None
    if form is not None:
        action = urljoin(document.url, str(form.get('action') or document.url))
        fields = [
            (str(field['name']), dom.input_value(field))
            for field in form.find_all(['input', 'textarea', 'select'])
            if field.get('name') and dom.input_type(field) not in ('submit', 'button', 'image', 'file')
            and (dom.input_type(field) not in ('checkbox', 'radio') or field.has_attr('checked'))
        ]
        if str(form.get('method') or 'get').lower() == 'get' and fields:
            action = action.split('?', 1)[0] + '?' + urlencode(fields)
        document.record_event('submit', form)
        document.navigation_requests.append(action)
        return

    if node.name in ('input', 'textarea', 'select', 'button', 'a') or node.has_attr('tabindex'):
        document.focused = _weak(node)


def _weak(node: Tag) -> weakref.ref[Tag]:
    return weakref.ref(node)


# ============================================================================
# Queries
# ============================================================================


@operation('query_selector')
def query_selector(script: InjectedScript, selector: str, root: Any = None, strict: bool = False) -> Tag | None:
    if root is not None and _detached(root):
        return None
    return script.evaluator.query(parse_selector(selector), root, strict=strict)


@operation('query_selector_all')
def query_selector_all(script: InjectedScript, selector: str, root: Any = None) -> list[Tag]:
    if root is not None and _detached(root):
        return []
    return script.evaluator.query_all(parse_selector(selector), root)


@operation('count')
def count(script: InjectedScript, selector: str, root: Any = None) -> int:
    return len(query_selector_all(script, selector, root))


@operation('frame_selector_evaluation')
def frame_selector_evaluation(script: InjectedScript, selector: str, root: Any = None, strict: bool = False) -> Tag | None:
    """Resolve one frame-boundary chunk. The caller checks that the result is an iframe."""
    return query_selector(script, selector, root, strict)


@operation('check_selector_state')
def check_selector_state(script: InjectedScript, selector: str, root: Any, state: str, strict: bool = False) -> dict[str, Any]:
    element = query_selector(script, selector, root, strict)
    visible = element is not None and dom.is_visible(element)
    if state == 'attached':
        matched = element is not None
    elif state == 'detached':
        matched = element is None
    elif state == 'visible':
        matched = visible
    elif state == 'hidden':
        matched = not visible
    else:
        raise EvaluationError(f'state: expected one of (attached|detached|visible|hidden), got {state!r}')
    return {'matched': matched, 'element': element if state in ('attached', 'visible') else None}


@operation('element_state')
def element_state(script: InjectedScript, node: Any, state: str) -> bool | str:
    if _detached(node):
        return NOT_CONNECTED
    if state == 'visible':
        return dom.is_visible(node)
    if state == 'hidden':
        return not dom.is_visible(node)
    if state == 'enabled':
        return not dom.is_disabled(node)
    if state == 'disabled':
        return dom.is_disabled(node)
    if state == 'editable':
        return dom.is_editable(node)
    if state in ('checked', 'unchecked'):
        checked = dom.is_checked(node)
        if checked is None:
            raise TabwrightError('Not a checkbox or radio button')
        return checked if state == 'checked' else not checked
    raise EvaluationError(f'Unexpected element state "{state}"')


@operation('is_iframe_element')
def is_iframe_element(script: InjectedScript, node: Any) -> bool:
    return not _detached(node) and node.name in dom.FRAME_TAGS


@operation('iframe_info')
def iframe_info(script: InjectedScript, node: Any) -> dict[str, Any] | str:
    """Resolved ``src`` plus the position among same-src iframes of the document."""
    if _detached(node):
        return NOT_CONNECTED
    if node.name not in dom.FRAME_TAGS:
        return {'is_frame': False}
    src = urljoin(script.document.url, str(node.get('src') or 'about:blank'))
    ordinal = 0
    index = 0
    for other in script.soup.find_all(list(dom.FRAME_TAGS)):
        if other is node:
            break
        index += 1
        if urljoin(script.document.url, str(other.get('src') or 'about:blank')) == src:
            ordinal += 1
    return {'is_frame': True, 'src': src, 'ordinal': ordinal, 'index': index, 'name': node.get('name')}


# ============================================================================
# Element actions
# ============================================================================


@operation('click')
def click(script: InjectedScript, node: Any, options: dict[str, Any] | None = None) -> str:
    if _detached(node):
        return NOT_CONNECTED
    force = bool((options or {}).get('force'))
    _check_visible_enabled(node, force)
    script.document.record_event('click', node, modifiers=(options or {}).get('modifiers') or [])
    _activate(script, node)
    return DONE


@operation('tap')
def tap(script: InjectedScript, node: Any, options: dict[str, Any] | None = None) -> str:
    if _detached(node):
        return NOT_CONNECTED
    _check_visible_enabled(node, bool((options or {}).get('force')))
    script.document.record_event('touchstart', node)
    script.document.record_event('touchend', node)
    script.document.record_event('click', node)
    _activate(script, node)
    return DONE


@operation('fill')
def fill(script: InjectedScript, node: Any, value: str, options: dict[str, Any] | None = None) -> str:
    if _detached(node):
        return NOT_CONNECTED
    force = bool((options or {}).get('force'))
    _check_visible_enabled(node, force)
    if node.name == 'input':
        kind = dom.input_type(node)
        if kind not in dom.TEXT_INPUT_TYPES:
            raise TabwrightError(f'Input of type "{kind}" cannot be filled')
        if kind == 'number' and value.strip():
            try:
                float(value)
            except ValueError:
                raise TabwrightError('Cannot type text into input[type=number]')
        if not force and node.has_attr('readonly'):
            raise TabwrightError('Element is not editable')
        node['value'] = value
    elif node.name == 'textarea':
        if not force and node.has_attr('readonly'):
            raise TabwrightError('Element is not editable')
        node.string = value
    elif dom.is_content_editable(node):
        node.string = value
    else:
        raise TabwrightError('Element is not an <input>, <textarea> or [contenteditable] element')
    script.document.focused = _weak(node)
    script.document.record_event('input', node)
    script.document.record_event('change', node)
    return DONE


@operation('set_checked')
def set_checked(script: InjectedScript, node: Any, state: bool, options: dict[str, Any] | None = None) -> str:
    if _detached(node):
        return NOT_CONNECTED
    current = dom.is_checked(node)
    if current is None:
        raise TabwrightError('Not a checkbox or radio button')
    if current == state:
        return DONE
    if not state and dom.input_type(node) == 'radio':
        raise TabwrightError('Cannot uncheck radio button')
    result = click(script, node, options)
    if result != DONE:
        return result
    if dom.is_checked(node) != state:
        raise TabwrightError('Clicking the checkbox did not change its state')
    return DONE


@operation('dispatch_event')
def dispatch_event(script: InjectedScript, node: Any, event_type: str, event_init: dict[str, Any] | None = None) -> str:
    if _detached(node):
        return NOT_CONNECTED
    script.document.record_event(event_type, node, init=event_init or {})
    return DONE


@operation('focus')
def focus(script: InjectedScript, node: Any) -> str:
    if _detached(node):
        return NOT_CONNECTED
    script.document.focused = _weak(node)
    script.document.record_event('focus', node)
    return DONE


@operation('hover')
def hover(script: InjectedScript, node: Any, options: dict[str, Any] | None = None) -> str:
    if _detached(node):
        return NOT_CONNECTED
    _check_visible_enabled(node, bool((options or {}).get('force')), need_enabled=False)
    script.document.record_event('mouseover', node)
    return DONE


@operation('select_option')
def select_option(script: InjectedScript, node: Any, values: list[str], options: dict[str, Any] | None = None) -> list[str] | str:
    if _detached(node):
        return NOT_CONNECTED
    if node.name != 'select':
        raise TabwrightError('Element is not a <select> element')
    _check_visible_enabled(node, bool((options or {}).get('force')))
    all_options = node.find_all('option')
    chosen = [
        option
        for option in all_options
        if dom.option_value(option) in values or dom.element_text(option) in values
    ]
    if values and not chosen:
        raise TabwrightError(f'No option matches {values!r}')
    if not node.has_attr('multiple'):
        chosen = chosen[:1]
    for option in all_options:
        if option.has_attr('selected'):
            del option['selected']
    for option in chosen:
        option['selected'] = ''
    script.document.record_event('input', node)
    script.document.record_event('change', node)
    return [dom.option_value(option) for option in chosen]


@operation('set_input_files')
def set_input_files(script: InjectedScript, node: Any, files: list[dict[str, Any]]) -> str:
    if _detached(node):
        return NOT_CONNECTED
    if dom.input_type(node) != 'file':
        raise TabwrightError('Node is not an HTMLInputElement of type "file"')
    if len(files) > 1 and not node.has_attr('multiple'):
        raise TabwrightError('Non-multiple file input can only accept single file')
    script.document.input_files[id(node)] = files
    node['value'] = f'C:\\fakepath\\{files[0]["name"]}' if files else ''
    script.document.record_event('input', node)
    script.document.record_event('change', node)
    return DONE


@operation('scroll_into_view')
def scroll_into_view(script: InjectedScript, node: Any) -> str:
    if _detached(node):
        return NOT_CONNECTED
    if not dom.is_visible(node):
        raise TabwrightError('Element is not visible')
    box = dom.bounding_box(node)
    window = script.document.window
    if box is not None:
        if box['y'] < window.scroll_y or box['y'] + box['height'] > window.scroll_y + window.inner_height:
            window.scroll_to(window.scroll_x, box['y'])
        if box['x'] < window.scroll_x or box['x'] + box['width'] > window.scroll_x + window.inner_width:
            window.scroll_to(box['x'], window.scroll_y)
    return DONE


# ============================================================================
# Element properties
# ============================================================================


@operation('text_content')
def text_content(script: InjectedScript, node: Any) -> str:
    return NOT_CONNECTED if _detached(node) else dom.text_content(node)


@operation('inner_text')
def inner_text(script: InjectedScript, node: Any) -> str:
    return NOT_CONNECTED if _detached(node) else dom.element_text(node)


@operation('inner_html')
def inner_html(script: InjectedScript, node: Any) -> str:
    return NOT_CONNECTED if _detached(node) else node.decode_contents()


@operation('get_attribute')
def get_attribute(script: InjectedScript, node: Any, name: str) -> str | None:
    if _detached(node):
        return NOT_CONNECTED
    value = node.get(name)
    if isinstance(value, list):
        return ' '.join(value)
    return value


@operation('input_value')
def input_value(script: InjectedScript, node: Any) -> str:
    if _detached(node):
        return NOT_CONNECTED
    if node.name not in ('input', 'textarea', 'select'):
        raise TabwrightError('Node is not an <input>, <textarea> or <select> element')
    return dom.input_value(node)


@operation('bounding_box')
def bounding_box(script: InjectedScript, node: Any) -> dict[str, float] | str | None:
    return NOT_CONNECTED if _detached(node) else dom.bounding_box(node)


# ============================================================================
# Handles
# ============================================================================


@operation('release_handle')
def release_handle(script: InjectedScript, handle_id: str) -> int:
    """Forget one handle, then prune handles whose nodes left the tree. Returns the pruned count."""
    script.handles.release(handle_id)
    return script.handles.collect()


# ============================================================================
# Document
# ============================================================================


@operation('document_info')
def document_info(script: InjectedScript) -> dict[str, Any]:
    document = script.document
    return {
        'url': document.url,
        'title': document.title,
        'document_id': document.document_id,
        'world': script.world,
    }


@operation('document_html')
def document_html(script: InjectedScript) -> str:
    return str(script.soup)


@operation('snapshot_for_ai')
def snapshot_for_ai(script: InjectedScript, ref_prefix: str = '') -> dict[str, object]:
    return build_snapshot(script.document, ref_prefix)


@operation('event_log')
def event_log(script: InjectedScript) -> list[dict[str, Any]]:
    return list(script.document.event_log)


@operation('get_global')
def get_global(script: InjectedScript, name: str) -> Any:
    # Page globals are only reachable from the main world
    if script.world != 'MAIN':
        return None
    return script.document.window.page_globals.get(name)


@operation('set_global')
def set_global(script: InjectedScript, name: str, value: Any) -> None:
    if script.world != 'MAIN':
        raise TabwrightError('Page globals are not reachable from the isolated world')
    script.document.window.page_globals[name] = value


def _same_document_url(script: InjectedScript, url: str) -> str:
    resolved = urljoin(script.document.url, url)
    if urlsplit(resolved)[:2] != urlsplit(script.document.url)[:2]:
        raise TabwrightError(f'Cannot change history state to a different origin: {resolved}')
    return resolved


@operation('history_push_state')
def history_push_state(script: InjectedScript, url: str) -> str:
    resolved = _same_document_url(script, url)
    script.document.history_requests.append(('pushState', resolved))
    return resolved


@operation('history_replace_state')
def history_replace_state(script: InjectedScript, url: str) -> str:
    resolved = _same_document_url(script, url)
    script.document.history_requests.append(('replaceState', resolved))
    return resolved


@operation('set_location_hash')
def set_location_hash(script: InjectedScript, fragment: str) -> str:
    resolved = script.document.url.split('#', 1)[0] + '#' + fragment.lstrip('#')
    script.document.history_requests.append(('hashchange', resolved))
    return resolved


# ============================================================================
# Capture helpers (main world)
# ============================================================================


def _segment_offset(index: int, total_segments: int, viewport_size: float, total_size: float) -> float:
    if index == total_segments - 1:
        return max(0, total_size - viewport_size)
    return index * viewport_size


@operation('viewport_size')
def viewport_size(script: InjectedScript) -> dict[str, int]:
    window = script.document.window
    return {'width': window.inner_width, 'height': window.inner_height}


@operation('scroll_position')
def scroll_position(script: InjectedScript) -> dict[str, float]:
    window = script.document.window
    return {'x': window.scroll_x, 'y': window.scroll_y}


@operation('device_pixel_ratio')
def device_pixel_ratio(script: InjectedScript) -> float:
    return script.document.window.device_pixel_ratio


@operation('full_page_size')
def full_page_size(script: InjectedScript) -> dict[str, int]:
    window = script.document.window
    return {'width': window.document_width, 'height': window.document_height}


@operation('begin_scroll_capture')
def begin_scroll_capture(script: InjectedScript) -> dict[str, Any]:
    window = script.document.window
    script.document.scroll_capture_state = {
        'scroll_x': window.scroll_x,
        'scroll_y': window.scroll_y,
        'scroll_behavior': window.scroll_behavior,
        'viewport_width': window.inner_width,
        'viewport_height': window.inner_height,
    }
    window.scroll_behavior = 'auto'
    return {
        'viewport_width': window.inner_width,
        'viewport_height': window.inner_height,
        'total_width': window.document_width,
        'total_height': window.document_height,
        'x_segments': math.ceil(window.document_width / window.inner_width),
        'y_segments': math.ceil(window.document_height / window.inner_height),
    }


@operation('scroll_to_segment')
def scroll_to_segment(script: InjectedScript, x_index: int, y_index: int) -> dict[str, Any]:
    state = script.document.scroll_capture_state
    if state is None:
        raise TabwrightError('Scroll capture not initialized')
    window = script.document.window
    x_segments = math.ceil(window.document_width / window.inner_width)
    y_segments = math.ceil(window.document_height / window.inner_height)
    x = _segment_offset(x_index, x_segments, state['viewport_width'], window.document_width)
    y = _segment_offset(y_index, y_segments, state['viewport_height'], window.document_height)
    window.scroll_to(x, y)
    return {'x': window.scroll_x, 'y': window.scroll_y, 'x_index': x_index, 'y_index': y_index}


@operation('restore_scroll')
def restore_scroll(script: InjectedScript) -> None:
    state = script.document.scroll_capture_state
    if state is None:
        return
    window = script.document.window
    window.scroll_behavior = state['scroll_behavior']
    window.scroll_to(state['scroll_x'], state['scroll_y'])
    script.document.scroll_capture_state = None
