"""
Identity-keyed merge of message batches.

Merging is pure: the caller stores the returned list on the owning
conversation and applies any viewport adjustment afterwards.
"""

from enum import Enum
from typing import Iterable, List, Sequence

from dashboard_models import Message


class MergeDirection(str, Enum):
    PREPEND = 'prepend'  # Older page loaded above the current list
    APPEND = 'append'    # New arrivals below the current list


def new_message_ids(existing: Sequence[Message], incoming: Iterable[Message]) -> List[str]:
    """Ids from `incoming` that a merge would add to `existing`, in input order."""
    seen = {message.id for message in existing}
    added = []
    for message in incoming:
        if message.id not in seen:
            seen.add(message.id)
            added.append(message.id)
    return added


def merge_messages(
    existing: Sequence[Message],
    incoming: Iterable[Message],
    direction: MergeDirection = MergeDirection.APPEND,
) -> List[Message]:
    """
    Merge `incoming` into `existing` without duplicates.

    Messages whose id is already present are dropped, the remainder is placed
    before or after `existing` according to `direction`, and the result is
    stable-sorted by creation time so equal timestamps keep arrival order.
    """
    seen = {message.id for message in existing}
    fresh = []
    for message in incoming:
        if message.id in seen:
            continue
        seen.add(message.id)
        fresh.append(message)

    if direction == MergeDirection.PREPEND:
        combined = fresh + list(existing)
    else:
        combined = list(existing) + fresh

    # list.sort is stable
    combined.sort(key=lambda message: message.created_at)
    return combined
