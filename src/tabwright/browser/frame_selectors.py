"""Cross-frame selector resolution.

``iframe#outer >> internal:control=enter-frame >> button`` is resolved chunk
by chunk: every chunk before an ``enter-frame`` marker must match an iframe
element in the current frame, and resolution continues in that iframe's
content frame. The final chunk is returned unresolved together with the frame
and world it has to run in.
"""

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tabwright.browser.views import InvalidSelectorError, World
from tabwright.injected.selector_parser import ParsedSelector, split_selector_by_frame, stringify_selector

if TYPE_CHECKING:
    from tabwright.browser.element import ElementHandle
    from tabwright.browser.frame import Frame

logger = logging.getLogger(__name__)

_SUB_FRAME_REF = re.compile(r'^f(\d+)e\d+$')


@dataclass
class SelectorInFrame:
    frame: 'Frame'
    parsed: ParsedSelector
    world: World
    strict: bool
    scope: 'ElementHandle | None' = None

    @property
    def selector(self) -> str:
        return stringify_selector(self.parsed)


def selector_world(parsed: ParsedSelector) -> World:
    return 'MAIN' if parsed.needs_main_world else 'ISOLATED'


class FrameSelectors:
    def __init__(self, frame: 'Frame'):
        self.frame = frame

    async def resolve_frame_for_selector(
        self, selector: str, strict: bool = False, scope: 'ElementHandle | None' = None
    ) -> SelectorInFrame:
        frame = self.frame
        chunks = split_selector_by_frame(selector)

        for index, chunk in enumerate(chunks[:-1]):
            frame = self._jump_to_aria_ref_frame(selector, chunk, frame)
            context = await frame.get_context()
            chunk_scope = scope if index == 0 and scope is not None and scope.frame is frame else None
            world = chunk_scope.world if chunk_scope is not None else selector_world(chunk)
            handle = await context.evaluate_handle(
                'frame_selector_evaluation', stringify_selector(chunk), chunk_scope, strict, world=world
            )
            if handle is None:
                logger.debug(f'Frame chunk "{stringify_selector(chunk)}" matched nothing')
                raise InvalidSelectorError(f'Could not find frame for selector "{selector}"')
            child = await handle.content_frame()
            if child is None:
                raise InvalidSelectorError(f'Selector "{selector}" did not resolve to an iframe')
            frame = child

        if frame is not self.frame:
            scope = None
        last = chunks[-1]
        frame = self._jump_to_aria_ref_frame(selector, last, frame)
        world = scope.world if scope is not None else selector_world(last)
        return SelectorInFrame(frame=frame, parsed=last, world=world, strict=strict, scope=scope)

    def _jump_to_aria_ref_frame(self, selector: str, parsed: ParsedSelector, frame: 'Frame') -> 'Frame':
        """``aria-ref=f2e5`` names the second frame of the last snapshot directly."""
        first = parsed.parts[0]
        if first.name != 'aria-ref':
            return frame
        match = _SUB_FRAME_REF.match(first.body.strip().strip('"'))
        if match is None:
            return frame
        page = self.frame.page
        frame_index = int(match.group(1))
        frame_ids = page.last_snapshot_frame_ids
        target = None
        if 0 < frame_index <= len(frame_ids):
            target = page.frame_manager.frame(frame_ids[frame_index - 1])
        if target is None:
            raise InvalidSelectorError(f'Invalid frame in aria-ref selector "{selector}"')
        return target

    async def query(
        self, selector: str, strict: bool = False, scope: 'ElementHandle | None' = None
    ) -> 'ElementHandle | None':
        resolved = await self.resolve_frame_for_selector(selector, strict, scope)
        context = await resolved.frame.get_context()
        return await context.evaluate_handle(
            'query_selector', resolved.selector, self._scope_arg(resolved), resolved.strict, world=resolved.world
        )

    async def query_all(self, selector: str, scope: 'ElementHandle | None' = None) -> list['ElementHandle']:
        resolved = await self.resolve_frame_for_selector(selector, scope=scope)
        context = await resolved.frame.get_context()
        return await context.execute_script(
            'query_selector_all', resolved.selector, self._scope_arg(resolved), world=resolved.world
        )

    async def query_count(self, selector: str) -> int:
        resolved = await self.resolve_frame_for_selector(selector)
        context = await resolved.frame.get_context()
        return int(await context.execute_script('count', resolved.selector, None, world=resolved.world) or 0)

    @staticmethod
    def _scope_arg(resolved: SelectorInFrame) -> 'ElementHandle | None':
        return resolved.scope
