"""
Scroll-Preservation Controller.

Keeps a scrollable viewport visually stable across list mutations. Works on
any object exposing `scroll_top`, `scroll_height` and `client_height`.

- PREPEND (older page loaded above): shift scroll_top by the height delta so
  the content under the operator's eyes does not move.
- APPEND (new arrivals below): follow to the new bottom, but only if the
  viewport was already near the bottom before the mutation.

Merging never touches a viewport; callers capture an anchor, apply the
merge, then restore.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from dashboard_config import NEAR_BOTTOM_THRESHOLD
from message_merge import MergeDirection


def is_near_bottom(viewport, threshold: int = NEAR_BOTTOM_THRESHOLD) -> bool:
    return viewport.scroll_height - viewport.scroll_top - viewport.client_height < threshold


def scroll_to_bottom(viewport):
    viewport.scroll_top = viewport.scroll_height


@dataclass
class ScrollAnchor:
    kind: MergeDirection
    scroll_top: float
    scroll_height: float
    was_near_bottom: bool
    discarded: bool = False

    def discard(self):
        """Leave the viewport alone when the block exits."""
        self.discarded = True

    def restore(self, viewport):
        if self.kind == MergeDirection.PREPEND:
            viewport.scroll_top = self.scroll_top + (viewport.scroll_height - self.scroll_height)
        elif self.was_near_bottom:
            scroll_to_bottom(viewport)


class ScrollPreservationController:
    def __init__(self, threshold: int = NEAR_BOTTOM_THRESHOLD):
        self.threshold = threshold

    def capture(self, viewport, kind: MergeDirection) -> ScrollAnchor:
        return ScrollAnchor(
            kind=MergeDirection(kind),
            scroll_top=viewport.scroll_top,
            scroll_height=viewport.scroll_height,
            was_near_bottom=is_near_bottom(viewport, self.threshold),
        )

    @contextmanager
    def preserving(self, viewport, kind: MergeDirection) -> Iterator[Optional[ScrollAnchor]]:
        """Wrap a mutation; the viewport is adjusted when the block exits normally."""
        if viewport is None:
            yield None
            return
        anchor = self.capture(viewport, kind)
        yield anchor
        if not anchor.discarded:
            anchor.restore(viewport)
