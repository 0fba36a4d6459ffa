"""Accessibility-tree snapshot used by AI-driven callers.

Each node with a role becomes one YAML-like line carrying a ``[ref=...]``
that the ``aria-ref`` selector engine resolves later. Refs are prefixed so
child-frame snapshots (``f1e3``) can be stitched under their iframe line.
"""

import weakref

from bs4 import NavigableString, Tag

from tabwright.injected import dom
from tabwright.injected.script import PageDocument

# Roles whose accessible name already carries their text content
NAME_FROM_CONTENT = frozenset(
    {'button', 'link', 'heading', 'option', 'checkbox', 'radio', 'tab', 'menuitem', 'columnheader', 'cell', 'listitem'}
)


class _SnapshotBuilder:
    def __init__(self, document: PageDocument, ref_prefix: str):
        self.document = document
        self.ref_prefix = ref_prefix
        self.counter = 0
        self.iframe_refs: list[str] = []

    def next_ref(self, node: Tag) -> str:
        self.counter += 1
        ref = f'{self.ref_prefix}e{self.counter}'
        self.document.aria_refs[ref] = weakref.ref(node)
        return ref

    def visit_children(self, node: Tag, depth: int) -> list[str]:
        lines: list[str] = []
        for child in node.children:
            if type(child) is NavigableString:
                text = dom.normalize_whitespace(str(child))
                if text and node.name not in dom.NON_RENDERED_TAGS:
                    lines.append(f'{"  " * depth}- text: {_quote(text)}')
            elif isinstance(child, Tag):
                lines.extend(self.visit(child, depth))
        return lines

    def visit(self, node: Tag, depth: int) -> list[str]:
        if not dom.is_visible(node):
            return []
        role = dom.get_role(node)
        if role is None:
            return self.visit_children(node, depth)

        ref = self.next_ref(node)
        name = dom.accessible_name(node)
        line = f'{"  " * depth}- {role}'
        if name:
            line += f' {_quote(name)}'
        checked = dom.is_checked(node)
        if checked is not None:
            line += ' [checked]' if checked else ''
        if dom.is_disabled(node):
            line += ' [disabled]'
        level = dom.heading_level(node) if role == 'heading' else None
        if level:
            line += f' [level={level}]'
        line += f' [ref={ref}]'

        if role == 'iframe':
            self.iframe_refs.append(ref)
            return [line]

        children: list[str]
        if role in NAME_FROM_CONTENT and name and not any(
            isinstance(child, Tag) and dom.get_role(child) for child in node.find_all(True)
        ):
            children = []
        else:
            children = self.visit_children(node, depth + 1)
            if not name and len(children) == 1 and children[0].lstrip().startswith('- text: '):
                return [f'{line}: {children[0].split("- text: ", 1)[1]}']
        if children:
            return [f'{line}:', *children]
        return [line]


def build_snapshot(document: PageDocument, ref_prefix: str = '') -> dict[str, object]:
    """Snapshot the document, replacing any refs recorded by an earlier snapshot."""
    document.aria_refs.clear()
    builder = _SnapshotBuilder(document, ref_prefix)
    root = document.soup.body or document.soup
    lines = builder.visit_children(root, 0)
    return {'snapshot': '\n'.join(lines), 'iframe_refs': builder.iframe_refs}


def _quote(text: str) -> str:
    escaped = text.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'
