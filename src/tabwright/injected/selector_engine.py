"""Page-side selector evaluation over a BeautifulSoup document."""

import json
import re
from typing import Callable

import soupsieve
from bs4 import BeautifulSoup, Tag

from tabwright.browser.views import InvalidSelectorError, StrictModeViolationError
from tabwright.injected import dom
from tabwright.injected.selector_parser import ParsedSelector, SelectorPart, stringify_selector

TextMatcher = Callable[[str], bool]

_REGEX_BODY = re.compile(r'^/(.*)/([imsux]*)$', re.S)
_ROLE_ATTR = re.compile(r'\[\s*([a-z-]+)\s*(?:=\s*("(?:[^"\\]|\\.)*"[is]?|[^\]]+))?\s*\]')


def create_text_matcher(body: str, exact_by_default: bool) -> TextMatcher:
    """Build a matcher from a text body.

    ``/re/flags`` is a regex search, ``"text"s`` an exact match, ``"text"i``
    a case-insensitive substring match. A bare quoted string is exact when
    ``exact_by_default`` is set. Unquoted text is a case-insensitive
    substring match. Both sides are whitespace-normalized.
    """
    body = body.strip()
    regex = _REGEX_BODY.match(body)
    if regex:
        flags = 0
        if 'i' in regex.group(2):
            flags |= re.I
        if 's' in regex.group(2):
            flags |= re.S
        if 'm' in regex.group(2):
            flags |= re.M
        try:
            pattern = re.compile(regex.group(1), flags)
        except re.error as e:
            raise InvalidSelectorError(f'Invalid regular expression in selector: {e}')
        return lambda text: pattern.search(dom.normalize_whitespace(text)) is not None

    exact = exact_by_default
    if body[:1] in ('"', "'"):
        suffix = ''
        if body[-1:] in ('i', 's') and len(body) >= 3 and body[-2] == body[0]:
            suffix = body[-1]
            body = body[:-1]
        if body[0] == '"':
            try:
                value = json.loads(body)
            except ValueError:
                raise InvalidSelectorError(f'Malformed quoted text: {body}')
        else:
            value = body[1:-1].replace("\\'", "'")
        if suffix == 's':
            exact = True
        elif suffix == 'i':
            exact = False
    else:
        value = body
        exact = False

    needle = dom.normalize_whitespace(str(value))
    if exact:
        return lambda text: dom.normalize_whitespace(text) == needle
    lowered = needle.lower()
    return lambda text: lowered in dom.normalize_whitespace(text).lower()


class SelectorEvaluator:
    """Evaluates parsed selectors against one document.

    Args:
        document: Parsed page document.
        resolve_aria_ref: Callback returning the live node recorded for a
            snapshot ref, or ``None``.
    """

    def __init__(self, document: BeautifulSoup, resolve_aria_ref: Callable[[str], Tag | None]):
        self.document = document
        self._resolve_aria_ref = resolve_aria_ref

    def query(self, selector: ParsedSelector, root: Tag | None = None, strict: bool = False) -> Tag | None:
        elements = self.query_all(selector, root)
        if strict and len(elements) > 1:
            raise StrictModeViolationError(
                f'strict mode violation: "{stringify_selector(selector)}" resolved to {len(elements)} elements'
            )
        return elements[0] if elements else None

    def query_all(self, selector: ParsedSelector, root: Tag | None = None) -> list[Tag]:
        root = root if root is not None else self.document
        scopes: list[Tag] = [root]
        current: list[Tag] = []
        matched_any = False
        for part in selector.parts:
            if part.nested is not None or part.name in ('nth', 'visible', 'internal:has-text', 'internal:has-not-text'):
                base = current if matched_any else [element for element in scopes if not isinstance(element, BeautifulSoup)]
                current = self._filter(part, base, scopes)
            else:
                scopes = current if matched_any else scopes
                current = dom.sort_in_document_order(
                    self.document, [match for scope in scopes for match in self._match(part, scope)]
                )
            matched_any = True
        return current

    def _match(self, part: SelectorPart, scope: Tag) -> list[Tag]:
        name, body = part.name, part.body
        if name == 'css':
            try:
                return list(soupsieve.select(body, scope))
            except soupsieve.SelectorSyntaxError as e:
                raise InvalidSelectorError(f'"{body}" is not a valid selector: {e}')
        if name == 'id':
            return scope.find_all(attrs={'id': _unquote(body)})
        if name == 'data-testid':
            return scope.find_all(attrs={'data-testid': _unquote(body)})
        if name == 'text':
            return self._match_text(scope, create_text_matcher(body, exact_by_default=True))
        if name == 'role':
            return self._match_role(scope, body)
        if name == 'internal:label':
            return self._match_label(scope, create_text_matcher(body, exact_by_default=False))
        if name == 'aria-ref':
            node = self._resolve_aria_ref(_unquote(body))
            if node is None:
                return []
            if scope is not self.document and not any(parent is scope for parent in node.parents):
                return []
            return [node]
        if name == 'internal:control':
            raise InvalidSelectorError(f'Unexpected "{part.source}" inside a frame-local selector')
        raise InvalidSelectorError(f'Selector engine "{name}" is not available in this world')

    def _filter(self, part: SelectorPart, elements: list[Tag], scopes: list[Tag]) -> list[Tag]:
        name, body = part.name, part.body
        if name == 'nth':
            index = int(body)
            if index < 0:
                index += len(elements)
            return [elements[index]] if 0 <= index < len(elements) else []
        if name == 'visible':
            wanted = body == 'true'
            return [element for element in elements if dom.is_visible(element) == wanted]
        if name in ('internal:has-text', 'internal:has-not-text'):
            matcher = create_text_matcher(body, exact_by_default=False)
            keep = name == 'internal:has-text'
            return [element for element in elements if matcher(dom.element_text(element)) == keep]
        assert part.nested is not None
        if name in ('internal:has', 'internal:has-not'):
            keep = name == 'internal:has'
            return [element for element in elements if bool(self.query_all(part.nested, element)) == keep]
        others = [match for scope in scopes for match in self.query_all(part.nested, scope)]
        if name == 'internal:and':
            other_ids = {id(element) for element in others}
            return [element for element in elements if id(element) in other_ids]
        if name == 'internal:or':
            return dom.sort_in_document_order(self.document, elements + others)
        raise InvalidSelectorError(f'Unknown filter "{name}"')

    def _match_text(self, scope: Tag, matcher: TextMatcher) -> list[Tag]:
        candidates = [
            element
            for element in scope.find_all(True)
            if element.name not in dom.NON_RENDERED_TAGS and matcher(dom.element_text(element))
        ]
        matched = {id(element) for element in candidates}
        return [
            element
            for element in candidates
            if not any(id(descendant) in matched for descendant in element.find_all(True))
        ]

    def _match_role(self, scope: Tag, body: str) -> list[Tag]:
        role_match = re.match(r'\s*([a-z]+)', body)
        if role_match is None:
            raise InvalidSelectorError(f'Role must not be empty: "role={body}"')
        role = role_match.group(1)
        name_matcher: TextMatcher | None = None
        filters: dict[str, str] = {}
        include_hidden = False
        for attr, value in _ROLE_ATTR.findall(body[role_match.end():]):
            if attr == 'name':
                name_matcher = create_text_matcher(value, exact_by_default=False)
            elif attr == 'include-hidden':
                include_hidden = value.strip() in ('', 'true')
            elif attr in ('checked', 'disabled', 'level', 'selected'):
                filters[attr] = value.strip().strip('"')
            else:
                raise InvalidSelectorError(f'Unknown attribute "{attr}" in role selector')

        results: list[Tag] = []
        for element in scope.find_all(True):
            if dom.get_role(element) != role:
                continue
            if not include_hidden and not dom.is_visible(element):
                continue
            if name_matcher is not None and not name_matcher(dom.accessible_name(element)):
                continue
            if 'checked' in filters and str(bool(dom.is_checked(element))).lower() != filters['checked']:
                continue
            if 'disabled' in filters and str(dom.is_disabled(element)).lower() != filters['disabled']:
                continue
            if 'level' in filters and str(dom.heading_level(element)) != filters['level']:
                continue
            if 'selected' in filters and str(element.has_attr('selected')).lower() != filters['selected']:
                continue
            results.append(element)
        return results

    def _match_label(self, scope: Tag, matcher: TextMatcher) -> list[Tag]:
        results: list[Tag] = []
        for label in scope.find_all('label'):
            if not matcher(dom.element_text(label)):
                continue
            target_id = label.get('for')
            control = self.document.find(id=target_id) if target_id else None
            if control is None:
                control = label.find(['input', 'textarea', 'select', 'button'])
            if control is not None:
                results.append(control)
        for element in scope.find_all(attrs={'aria-label': True}):
            if matcher(str(element.get('aria-label'))):
                results.append(element)
        return dom.sort_in_document_order(self.document, results)


def _unquote(body: str) -> str:
    body = body.strip()
    if len(body) >= 2 and body[0] == body[-1] and body[0] in ('"', "'"):
        return body[1:-1]
    return body
