"""Selector grammar shared by the controller and the page-side runtime.

A selector is a ``>>``-separated chain of ``engine=body`` parts. Parts without
an engine prefix are CSS (or text when quoted). Composite engines
(``internal:has``, ``internal:and``...) carry a JSON-quoted nested selector.
``internal:control=enter-frame`` marks an iframe boundary.
"""

import json
import re
from dataclasses import dataclass, field

from tabwright.browser.views import InvalidSelectorError

ENTER_FRAME = 'enter-frame'

SCOPE_ENGINES = frozenset(
    {'css', 'text', 'id', 'data-testid', 'role', 'aria-ref', 'internal:label', 'internal:control'}
)
FILTER_ENGINES = frozenset(
    {
        'nth',
        'visible',
        'internal:has-text',
        'internal:has-not-text',
        'internal:has',
        'internal:has-not',
        'internal:and',
        'internal:or',
    }
)
NESTED_ENGINES = frozenset({'internal:has', 'internal:has-not', 'internal:and', 'internal:or'})
KNOWN_ENGINES = SCOPE_ENGINES | FILTER_ENGINES

_ENGINE_PREFIX = re.compile(r'^\s*([a-zA-Z_0-9-]+(?::[a-zA-Z_0-9-]+)*)\s*=(.*)$', re.S)


@dataclass(frozen=True)
class SelectorPart:
    name: str
    body: str
    source: str
    nested: 'ParsedSelector | None' = None


@dataclass(frozen=True)
class ParsedSelector:
    parts: tuple[SelectorPart, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        return stringify_selector(self)

    @property
    def needs_main_world(self) -> bool:
        return any(part.name.startswith('_') or part.name.startswith('internal:') for part in self.parts)


def _split_top_level(selector: str) -> list[str]:
    chunks: list[str] = []
    quote: str | None = None
    depth = 0
    start = 0
    index = 0
    while index < len(selector):
        char = selector[index]
        if quote:
            if char == '\\':
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in ('"', "'", '`'):
            quote = char
        elif char in '([':
            depth += 1
        elif char in ')]':
            depth = max(0, depth - 1)
        elif depth == 0 and selector.startswith('>>', index):
            chunks.append(selector[start:index])
            index += 2
            start = index
            continue
        index += 1
    if quote:
        raise InvalidSelectorError(f'Unmatched quote in selector: {selector}')
    chunks.append(selector[start:])
    return chunks


def _parse_part(source: str, full_selector: str) -> SelectorPart:
    text = source.strip()
    if not text:
        raise InvalidSelectorError(f'Empty selector part while parsing selector "{full_selector}"')

    match = _ENGINE_PREFIX.match(text)
    if match:
        name, body = match.group(1).lower(), match.group(2).strip()
        if name not in KNOWN_ENGINES and not name.startswith('_'):
            raise InvalidSelectorError(f'Unknown engine "{name}" while parsing selector {full_selector}')
    elif text.startswith('//') or text.startswith('..'):
        raise InvalidSelectorError(f'XPath selectors are not supported: {text}')
    elif text[0] in ('"', "'"):
        name, body = 'text', text
    else:
        name, body = 'css', text

    nested = None
    if name in NESTED_ENGINES:
        try:
            nested_source = json.loads(body)
        except ValueError:
            raise InvalidSelectorError(f'Malformed nested selector in "{text}"')
        if not isinstance(nested_source, str):
            raise InvalidSelectorError(f'Malformed nested selector in "{text}"')
        nested = parse_selector(nested_source)
    elif name == 'nth':
        try:
            int(body)
        except ValueError:
            raise InvalidSelectorError(f'Malformed "nth" selector body: {body!r}')
    elif name == 'visible' and body not in ('true', 'false'):
        raise InvalidSelectorError(f'Malformed "visible" selector body: {body!r}')
    return SelectorPart(name=name, body=body, source=text, nested=nested)


def parse_selector(selector: str) -> ParsedSelector:
    if not isinstance(selector, str) or not selector.strip():
        raise InvalidSelectorError('Selector must be a non-empty string')
    return ParsedSelector(tuple(_parse_part(chunk, selector) for chunk in _split_top_level(selector)))


def stringify_selector(selector: ParsedSelector) -> str:
    return ' >> '.join(part.source for part in selector.parts)


def is_enter_frame(part: SelectorPart) -> bool:
    return part.name == 'internal:control' and part.body == ENTER_FRAME


def _contains_enter_frame(selector: ParsedSelector) -> bool:
    for part in selector.parts:
        if is_enter_frame(part):
            return True
        if part.nested is not None and _contains_enter_frame(part.nested):
            return True
    return False


def split_selector_by_frame(selector: str) -> list[ParsedSelector]:
    """Split at iframe boundaries. Every chunk but the last must resolve to an iframe."""
    parsed = parse_selector(selector)
    chunks: list[ParsedSelector] = []
    current: list[SelectorPart] = []
    for part in parsed.parts:
        if is_enter_frame(part):
            if not current:
                raise InvalidSelectorError(
                    f'Selector cannot start with entering frame, select the iframe first: {selector}'
                )
            chunks.append(ParsedSelector(tuple(current)))
            current = []
            continue
        if part.nested is not None and _contains_enter_frame(part.nested):
            raise InvalidSelectorError('Frame locators are not allowed inside composite locators')
        current.append(part)
    if not current:
        raise InvalidSelectorError(f'Selector cannot end with entering frame, while parsing selector {selector}')
    chunks.append(ParsedSelector(tuple(current)))
    return chunks


def quote_selector_text(text: str, exact: bool = False) -> str:
    return json.dumps(text) + ('s' if exact else 'i')


def nested_selector_body(selector: str) -> str:
    return json.dumps(selector)
