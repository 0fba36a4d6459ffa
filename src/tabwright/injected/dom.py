"""DOM helpers for the page-side runtime.

The runtime works on a BeautifulSoup tree. There is no layout engine, so
visibility is derived from markup (``hidden``, inline ``display``/``visibility``,
non-rendered tags) and geometry from inline absolute positioning.
"""

import re

from bs4 import BeautifulSoup, NavigableString, Tag

NON_RENDERED_TAGS = frozenset(
    {'head', 'script', 'style', 'template', 'noscript', 'title', 'meta', 'link', 'base'}
)
FORM_CONTROL_TAGS = frozenset({'button', 'input', 'select', 'textarea', 'option', 'optgroup'})
TEXT_INPUT_TYPES = frozenset(
    {'', 'text', 'search', 'email', 'password', 'tel', 'url', 'number', 'date', 'time', 'datetime-local', 'month', 'week'}
)
FRAME_TAGS = frozenset({'iframe', 'frame'})

_STYLE_DECL = re.compile(r'\s*([a-zA-Z-]+)\s*:\s*([^;]+)')
_PX = re.compile(r'^\s*(-?\d+(?:\.\d+)?)(?:px)?\s*$')
_WHITESPACE = re.compile(r'\s+')


def document_of(node: Tag) -> BeautifulSoup | None:
    current: Tag | None = node
    while current is not None:
        if isinstance(current, BeautifulSoup):
            return current
        current = current.parent
    return None


def is_connected(node: Tag, document: BeautifulSoup) -> bool:
    return document_of(node) is document


def parse_style(node: Tag) -> dict[str, str]:
    style = node.get('style') or ''
    if isinstance(style, list):
        style = ';'.join(style)
    return {name.lower(): value.strip().lower() for name, value in _STYLE_DECL.findall(style)}


def input_type(node: Tag) -> str:
    return str(node.get('type') or '').lower() if node.name == 'input' else ''


def is_visible(node: Tag) -> bool:
    if node.name in NON_RENDERED_TAGS or input_type(node) == 'hidden':
        return False
    current: Tag | None = node
    while current is not None and not isinstance(current, BeautifulSoup):
        if current.name in NON_RENDERED_TAGS:
            return False
        if current.has_attr('hidden'):
            return False
        style = parse_style(current)
        if style.get('display') == 'none':
            return False
        if current is node and style.get('visibility') in ('hidden', 'collapse'):
            return False
        current = current.parent
    return True


def is_disabled(node: Tag) -> bool:
    if node.name not in FORM_CONTROL_TAGS and node.get('aria-disabled') != 'true':
        return False
    if node.has_attr('disabled') or node.get('aria-disabled') == 'true':
        return True
    fieldset = node.find_parent('fieldset')
    return fieldset is not None and fieldset.has_attr('disabled')


def is_editable(node: Tag) -> bool:
    if is_disabled(node) or node.has_attr('readonly'):
        return False
    if node.name == 'textarea' or node.name == 'select':
        return True
    if node.name == 'input':
        return input_type(node) in TEXT_INPUT_TYPES
    return is_content_editable(node)


def is_content_editable(node: Tag) -> bool:
    current: Tag | None = node
    while current is not None and not isinstance(current, BeautifulSoup):
        value = current.get('contenteditable')
        if value is not None:
            return str(value).lower() in ('', 'true', 'plaintext-only')
        current = current.parent
    return False


def is_checkable(node: Tag) -> bool:
    if input_type(node) in ('checkbox', 'radio'):
        return True
    return get_role(node) in ('checkbox', 'radio', 'switch', 'menuitemcheckbox', 'option')


def is_checked(node: Tag) -> bool | None:
    if input_type(node) in ('checkbox', 'radio'):
        return node.has_attr('checked')
    aria = node.get('aria-checked')
    if aria is not None:
        return aria == 'true'
    return None


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(' ', text).strip()


def element_text(node: Tag) -> str:
    """Rendered-ish text: skips script/style content, collapses whitespace."""
    parts: list[str] = []
    for descendant in node.descendants:
        # Comment and CData are NavigableString subclasses
        if type(descendant) is NavigableString:
            parent = descendant.parent
            if parent is not None and parent.name in NON_RENDERED_TAGS:
                continue
            parts.append(str(descendant))
    return normalize_whitespace(' '.join(parts))


def text_content(node: Tag) -> str:
    return node.get_text()


_IMPLICIT_ROLES = {
    'article': 'article',
    'aside': 'complementary',
    'button': 'button',
    'dialog': 'dialog',
    'footer': 'contentinfo',
    'form': 'form',
    'h1': 'heading',
    'h2': 'heading',
    'h3': 'heading',
    'h4': 'heading',
    'h5': 'heading',
    'h6': 'heading',
    'header': 'banner',
    'hr': 'separator',
    'iframe': 'iframe',
    'frame': 'iframe',
    'img': 'img',
    'li': 'listitem',
    'main': 'main',
    'nav': 'navigation',
    'ol': 'list',
    'option': 'option',
    'p': 'paragraph',
    'progress': 'progressbar',
    'section': 'region',
    'select': 'combobox',
    'table': 'table',
    'tbody': 'rowgroup',
    'td': 'cell',
    'textarea': 'textbox',
    'th': 'columnheader',
    'thead': 'rowgroup',
    'tr': 'row',
    'ul': 'list',
}

_INPUT_ROLES = {
    'button': 'button',
    'checkbox': 'checkbox',
    'image': 'button',
    'radio': 'radio',
    'range': 'slider',
    'reset': 'button',
    'search': 'searchbox',
    'submit': 'button',
}


def get_role(node: Tag) -> str | None:
    explicit = node.get('role')
    if explicit:
        return str(explicit).split()[0].lower()
    if node.name == 'a':
        return 'link' if node.has_attr('href') else None
    if node.name == 'input':
        kind = input_type(node)
        if kind == 'hidden':
            return None
        return _INPUT_ROLES.get(kind, 'textbox')
    return _IMPLICIT_ROLES.get(node.name)


def heading_level(node: Tag) -> int | None:
    if node.name and re.fullmatch(r'h[1-6]', node.name):
        return int(node.name[1])
    level = node.get('aria-level')
    return int(level) if level and str(level).isdigit() else None


def labels_for(node: Tag) -> list[Tag]:
    labels: list[Tag] = []
    document = document_of(node)
    element_id = node.get('id')
    if document is not None and element_id:
        labels.extend(document.find_all('label', attrs={'for': element_id}))
    parent_label = node.find_parent('label')
    if parent_label is not None and not any(label is parent_label for label in labels):
        labels.append(parent_label)
    return labels


def accessible_name(node: Tag) -> str:
    label = node.get('aria-label')
    if label:
        return normalize_whitespace(str(label))
    labelled_by = node.get('aria-labelledby')
    document = document_of(node)
    if labelled_by and document is not None:
        ids = labelled_by if isinstance(labelled_by, list) else str(labelled_by).split()
        texts = [element_text(ref) for ref in (document.find(id=i) for i in ids) if ref is not None]
        if texts:
            return normalize_whitespace(' '.join(texts))
    if node.name == 'img':
        return normalize_whitespace(str(node.get('alt') or ''))
    if node.name in ('input', 'textarea', 'select'):
        texts = [element_text(label) for label in labels_for(node)]
        if any(texts):
            return normalize_whitespace(' '.join(texts))
        if input_type(node) in ('button', 'submit', 'reset'):
            return normalize_whitespace(str(node.get('value') or ''))
        return normalize_whitespace(str(node.get('title') or node.get('placeholder') or ''))
    if get_role(node) in ('button', 'link', 'heading', 'checkbox', 'radio', 'option', 'listitem', 'cell', 'columnheader', 'tab', 'menuitem'):
        return element_text(node)
    return normalize_whitespace(str(node.get('title') or ''))


def input_value(node: Tag) -> str:
    if node.name == 'textarea':
        return node.get_text()
    if node.name == 'select':
        selected = [option for option in node.find_all('option') if option.has_attr('selected')]
        option = selected[0] if selected else node.find('option')
        return option_value(option) if option is not None else ''
    if input_type(node) in ('checkbox', 'radio'):
        return str(node.get('value') or 'on')
    return str(node.get('value') or '')


def option_value(option: Tag) -> str:
    value = option.get('value')
    return str(value) if value is not None else element_text(option)


def bounding_box(node: Tag) -> dict[str, float] | None:
    """Box from inline ``left/top/width/height`` in css pixels, relative to the page."""
    if not is_visible(node):
        return None
    style = parse_style(node)
    values: dict[str, float] = {}
    for key in ('left', 'top', 'width', 'height'):
        match = _PX.match(style.get(key, ''))
        if match is None:
            return None
        values[key] = float(match.group(1))
    x, y = values['left'], values['top']
    parent = node.parent
    while parent is not None and not isinstance(parent, BeautifulSoup):
        parent_style = parse_style(parent)
        left = _PX.match(parent_style.get('left', ''))
        top = _PX.match(parent_style.get('top', ''))
        if left and top and parent_style.get('position') in ('absolute', 'relative'):
            x += float(left.group(1))
            y += float(top.group(1))
        parent = parent.parent
    return {'x': x, 'y': y, 'width': values['width'], 'height': values['height']}


def document_order(document: BeautifulSoup) -> dict[int, int]:
    return {id(element): index for index, element in enumerate(document.find_all(True))}


def sort_in_document_order(document: BeautifulSoup, elements: list[Tag]) -> list[Tag]:
    seen: set[int] = set()
    unique: list[Tag] = []
    for element in elements:
        if id(element) not in seen:
            seen.add(id(element))
            unique.append(element)
    if len(unique) < 2:
        return unique
    order = document_order(document)
    return sorted(unique, key=lambda element: order.get(id(element), -1))
