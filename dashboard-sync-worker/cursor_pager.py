"""
Cursor-based pagination independent of what is being paged.
"""

from typing import Any, Awaitable, Callable, Generic, List, Optional, Tuple, TypeVar

from dashboard_models import CursorState

T = TypeVar('T')

PageFetcher = Callable[[Optional[str]], Awaitable[Tuple[List[Any], Optional[str]]]]


class CursorPager(Generic[T]):
    """
    Fetch pages through a `fetch_page(token) -> (items, next_token)` callable.

    The pager keeps no position of its own; callers hold the `CursorState`
    and only replace it with the one returned on success, so a failed fetch
    leaves their position untouched.
    """

    def __init__(self, fetch_page: PageFetcher):
        self.fetch_page = fetch_page

    async def fetch_next(self, state: Optional[CursorState] = None) -> Tuple[List[T], CursorState]:
        state = state or CursorState()
        if not state.has_more:
            return [], state

        items, next_token = await self.fetch_page(state.token)
        return list(items), CursorState(token=next_token or None, pages=state.pages + 1)
