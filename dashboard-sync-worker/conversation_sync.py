"""
═══════════════════════════════════════════════════════════════════════════════
                    CONVERSATION SYNC ENGINE
═══════════════════════════════════════════════════════════════════════════════

Keeps the session's conversation collection consistent with the remote by
polling the first page of conversations on a timer.

CYCLE:
┌─────────────────────────────────────────────────────────────────────────────┐
│  IDLE → FETCHING → DIFFING ─┬─ NO_CHANGE ─────────────────────────→ IDLE    │
│                             └─ ENRICHING → MERGING ───────────────→ IDLE    │
│                                                                             │
│  FETCHING   first conversation page + first message page of each           │
│  DIFFING    changed = new id, or message count / updatedAt differs         │
│  NO_CHANGE  nothing is mutated (no re-render, no re-enrichment)            │
│  ENRICHING  resolve the latest incoming sender of each changed convo       │
│  MERGING    refresh held objects in place, append genuinely new ones       │
└─────────────────────────────────────────────────────────────────────────────┘

GUARANTEES:
- Exclusive: one cycle at a time (cycle lock); overlapping ticks are skipped
- Idempotent: merges are keyed by conversation / message id
- Non-blocking: cycle failures are logged and recorded, never raised
- Teardown-safe: results arriving after stop() are discarded
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable, Tuple

from dashboard_config import (
    POLL_INTERVAL, SUPPORTED_CHANNEL, HIDE_EMPTY_CONVERSATIONS,
    UNKNOWN_PARTICIPANT, NO_MORE_CONVERSATIONS, MAX_ERRORS,
)
from dashboard_models import Conversation, Message, CursorState
from cursor_pager import CursorPager
from message_merge import MergeDirection, merge_messages, new_message_ids
from remote_client import RemoteError, RateLimitedError
from lock_manager import LockManager
from sync_logger import log

CYCLE_LOCK = ('cycle', 'conversations')

# ═══════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ═══════════════════════════════════════════════════════════════════════════════


class SyncState(str, Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    DIFFING = 'diffing'
    NO_CHANGE = 'no_change'
    ENRICHING = 'enriching'
    MERGING = 'merging'


@dataclass
class SyncStats:
    """Track sync statistics."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cycles_run: int = 0
    cycles_changed: int = 0
    cycles_unchanged: int = 0
    cycles_skipped: int = 0
    cycles_failed: int = 0
    rate_limited: int = 0
    conversations_changed: int = 0
    conversations_loaded: int = 0
    contact_failures: int = 0
    last_cycle_at: Optional[datetime] = None
    last_change_at: Optional[datetime] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def record_error(self, where: str, error: Exception):
        self.errors.append({
            'where': where,
            'error': f"{type(error).__name__}: {error}",
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })
        # Keep only last MAX_ERRORS errors
        self.errors = self.errors[-MAX_ERRORS:]

    def to_dict(self, state: SyncState = SyncState.IDLE) -> Dict[str, Any]:
        return {
            'state': state.value,
            'started_at': self.started_at.isoformat(),
            'uptime_seconds': (datetime.now(timezone.utc) - self.started_at).total_seconds(),
            'cycles_run': self.cycles_run,
            'cycles_changed': self.cycles_changed,
            'cycles_unchanged': self.cycles_unchanged,
            'cycles_skipped': self.cycles_skipped,
            'cycles_failed': self.cycles_failed,
            'rate_limited': self.rate_limited,
            'conversations_changed': self.conversations_changed,
            'conversations_loaded': self.conversations_loaded,
            'contact_failures': self.contact_failures,
            'last_cycle_at': self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            'last_change_at': self.last_change_at.isoformat() if self.last_change_at else None,
            'errors': self.errors[-10:],  # Last 10 errors
        }


# ═══════════════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ═══════════════════════════════════════════════════════════════════════════════


def diff_conversations(held: Iterable[Conversation], fetched: Iterable[Conversation]) -> List[Conversation]:
    """Fetched conversations that are new or whose message count or update time moved."""
    by_id = {conversation.id: conversation for conversation in held}
    changed = []
    for conversation in fetched:
        existing = by_id.get(conversation.id)
        if (
            existing is None
            or existing.message_count != conversation.message_count
            or existing.updated_at != conversation.updated_at
        ):
            changed.append(conversation)
    return changed


def latest_incoming_message(messages: List[Message]) -> Optional[Message]:
    """Most recent incoming message that names its sender (scans newest first)."""
    for message in reversed(messages):
        if message.is_incoming and message.user_id:
            return message
    return None


def display_order(conversations: Iterable[Conversation]) -> List[Conversation]:
    """Unique by id (first occurrence wins), newest update first."""
    seen = set()
    unique = []
    for conversation in conversations:
        if conversation.id in seen:
            continue
        seen.add(conversation.id)
        unique.append(conversation)
    return sorted(unique, key=lambda c: c.updated_at, reverse=True)


def message_pager(client, conversation_id: str) -> CursorPager:
    """Pager over one conversation's messages."""
    async def fetch(token: Optional[str]) -> Tuple[List[Message], Optional[str]]:
        result = await client.list_messages(conversation_id, next_token=token)
        return result['messages'], result['next_token']
    return CursorPager(fetch)


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════


class ConversationSyncEngine:
    """Owns the conversation collection and the top-level conversation cursor."""

    def __init__(
        self,
        client,
        resolver,
        hide_empty: bool = HIDE_EMPTY_CONVERSATIONS,
        channel: str = SUPPORTED_CHANNEL,
        poll_interval: float = POLL_INTERVAL,
        locks: Optional[LockManager] = None,
    ):
        self.client = client
        self.resolver = resolver
        self.hide_empty = hide_empty
        self.channel = channel
        self.poll_interval = poll_interval
        self.locks = locks or LockManager()

        self.state = SyncState.IDLE
        self.cursor = CursorState()
        self.pager = CursorPager(self._fetch_conversation_page)
        self.stats = SyncStats()
        self.loaded = False   # True once the first page has been committed
        self.version = 0      # Bumped on every mutation; published as the re-render signal

        self._conversations: List[Conversation] = []
        self._alive = True
        self._task: Optional[asyncio.Task] = None

    # ── Read side ────────────────────────────────────────────────────────────

    @property
    def alive(self) -> bool:
        return self._alive

    @property
    def collection(self) -> List[Conversation]:
        """The held collection in storage order. Do not mutate."""
        return self._conversations

    def conversations(self) -> List[Conversation]:
        return display_order(self._conversations)

    @property
    def has_more_conversations(self) -> bool:
        return self.cursor.has_more

    def list_footer(self) -> Optional[str]:
        if self.loaded and not self.cursor.has_more:
            return NO_MORE_CONVERSATIONS
        return None

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def find_by_user(self, user_id: str) -> Optional[Conversation]:
        for conversation in self.conversations():
            if conversation.user_id == user_id:
                return conversation
        return None

    # ── Timer ────────────────────────────────────────────────────────────────

    def start(self):
        """Start the background polling timer (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll_loop())

    async def stop(self):
        """Cancel the timer and discard anything still in flight."""
        self._alive = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.locks.release_all()
        self.state = SyncState.IDLE

    async def _poll_loop(self):
        log.info(f"[POLL] Polling conversations every {self.poll_interval}s")
        while self._alive:
            await asyncio.sleep(self.poll_interval)
            if not self._alive:
                break
            # The next tick is only scheduled once this cycle is back to IDLE
            await self.poll_cycle(trigger='timer')

    # ── Polling cycle ────────────────────────────────────────────────────────

    async def refresh(self) -> bool:
        """Run one cycle now, unless one is already in flight."""
        return await self.poll_cycle(trigger='manual')

    async def poll_cycle(self, trigger: str = 'timer') -> bool:
        """
        Run one fetch-diff-enrich-merge pass.

        Returns:
            True if the held collection changed
        """
        if not self._alive:
            return False

        lock_id = self.locks.acquire(*CYCLE_LOCK, metadata={'trigger': trigger})
        if lock_id is None:
            self.stats.cycles_skipped += 1
            log.info(f"[POLL] Cycle already in flight - skipping {trigger} tick")
            return False

        self.stats.cycles_run += 1
        self.stats.last_cycle_at = datetime.now(timezone.utc)
        try:
            return await self._run_cycle()

        except RateLimitedError as e:
            wait = f", retry after {e.retry_after:.0f}s" if e.retry_after else ''
            log.warn(f"[POLL] Rate limited{wait} - cycle aborted")
            self.stats.rate_limited += 1
            self.stats.cycles_failed += 1
            self.stats.record_error('poll', e)
            return False

        except Exception as e:
            log.error(f"[POLL] Error updating conversations: {type(e).__name__}: {e}")
            self.stats.cycles_failed += 1
            self.stats.record_error('poll', e)
            return False

        finally:
            self.locks.release(*CYCLE_LOCK, lock_id=lock_id)
            self.state = SyncState.IDLE

    async def _run_cycle(self) -> bool:
        self.state = SyncState.FETCHING
        batch, cursor = await self.pager.fetch_next(CursorState())
        fetched = await self._load_first_pages(batch, skip_failures=True)
        if not self._alive:
            return False

        self.state = SyncState.DIFFING
        changed = diff_conversations(self._conversations, fetched)

        if not changed:
            self.state = SyncState.NO_CHANGE
            if not self.loaded:
                # First pass over an unchanged (typically empty) listing still
                # establishes where "load more" starts.
                self.cursor = cursor
                self.loaded = True
            self.stats.cycles_unchanged += 1
            log.info("[POLL] No updates needed")
            return False

        log.info(f"[POLL] {len(changed)} conversation(s) changed - enriching")
        self.state = SyncState.ENRICHING
        await self._enrich(changed)
        if not self._alive:
            return False

        self.state = SyncState.MERGING
        self._merge_changed(changed)
        if self.cursor.pages <= 1:
            # Do not rewind a cursor that "load more" already advanced
            self.cursor = cursor
        self.loaded = True
        self.version += 1

        self.stats.cycles_changed += 1
        self.stats.conversations_changed += len(changed)
        self.stats.last_change_at = datetime.now(timezone.utc)
        return True

    # ── Load more ────────────────────────────────────────────────────────────

    async def load_more(self) -> List[Conversation]:
        """
        Fetch the next conversation page and append it.

        Errors propagate to the caller; the cursor only advances on success.
        """
        if not self.cursor.has_more or not self._alive:
            return []

        log.info("[LOAD-MORE] Loading older conversations")
        batch, cursor = await self.pager.fetch_next(self.cursor)
        fetched = await self._load_first_pages(batch, skip_failures=False)
        await self._enrich(fetched)
        if not self._alive:
            return []

        held_ids = {conversation.id for conversation in self._conversations}
        appended = [c for c in fetched if c.id not in held_ids]
        self._conversations.extend(appended)
        self.cursor = cursor
        self.loaded = True
        self.version += 1
        self.stats.conversations_loaded += len(appended)
        log.info(f"[LOAD-MORE] Appended {len(appended)} conversation(s), more: {cursor.has_more}")
        return appended

    # ── Per-conversation messages ────────────────────────────────────────────

    async def refresh_messages(self, conversation: Conversation, replace: bool = False) -> List[str]:
        """
        Fetch the newest message page of `conversation` and merge it.

        With `replace`, the list and cursor are reset to that page (manual
        reload). Returns the ids that were added.
        """
        items, cursor = await message_pager(self.client, conversation.id).fetch_next(CursorState())
        if not self._alive:
            return []

        if replace:
            conversation.messages = merge_messages([], items)
            conversation.cursor = cursor
            self.version += 1
            return [m.id for m in conversation.messages]

        added = new_message_ids(conversation.messages, items)
        if added:
            conversation.messages = merge_messages(conversation.messages, items, MergeDirection.APPEND)
            self.version += 1
        if conversation.cursor is None or conversation.cursor.pages <= 1:
            conversation.cursor = cursor
        return added

    async def load_older_messages(self, conversation: Conversation) -> List[str]:
        """
        Fetch the next older message page of `conversation` and prepend it.

        The conversation's cursor is created lazily and only advances on
        success. Returns the ids that were added.
        """
        if conversation.cursor is None:
            return await self.refresh_messages(conversation)
        if not conversation.cursor.has_more:
            return []

        items, cursor = await message_pager(self.client, conversation.id).fetch_next(conversation.cursor)
        if not self._alive:
            return []

        added = new_message_ids(conversation.messages, items)
        conversation.messages = merge_messages(conversation.messages, items, MergeDirection.PREPEND)
        conversation.cursor = cursor
        self.version += 1
        return added

    def append_message(self, conversation: Conversation, message: Message) -> bool:
        """Merge a locally created message (e.g. a sent reply)."""
        if not new_message_ids(conversation.messages, [message]):
            return False
        conversation.messages = merge_messages(conversation.messages, [message], MergeDirection.APPEND)
        self.version += 1
        return True

    def remove_conversation(self, conversation_id: str) -> bool:
        """Drop a conversation (after the remote confirmed its deletion)."""
        before = len(self._conversations)
        self._conversations[:] = [c for c in self._conversations if c.id != conversation_id]
        removed = len(self._conversations) != before
        if removed:
            self.version += 1
        return removed

    # ── Internals ────────────────────────────────────────────────────────────

    async def _fetch_conversation_page(self, token: Optional[str]) -> Tuple[List[Conversation], Optional[str]]:
        result = await self.client.list_conversations(next_token=token)
        return result['conversations'], result['next_token']

    async def _load_first_pages(self, batch: List[Conversation], skip_failures: bool) -> List[Conversation]:
        """Keep the supported channel and attach each conversation's newest message page."""
        kept = []
        for conversation in batch:
            if conversation.integration != self.channel:
                continue

            try:
                items, cursor = await message_pager(self.client, conversation.id).fetch_next(CursorState())
            except RateLimitedError:
                raise
            except RemoteError as e:
                if not skip_failures:
                    raise
                log.warn(f"  Skipping {conversation.id} this cycle: {e}")
                self.stats.record_error(f'messages:{conversation.id}', e)
                continue

            conversation.messages = merge_messages([], items)
            conversation.cursor = cursor
            conversation.message_count = len(items)

            if self.hide_empty and not items:
                continue
            kept.append(conversation)
        return kept

    async def _enrich(self, conversations: List[Conversation]):
        # Completion order does not matter: each task only writes its own conversation
        await asyncio.gather(*(self._enrich_one(c) for c in conversations))

    async def _enrich_one(self, conversation: Conversation):
        incoming = latest_incoming_message(conversation.messages)
        if incoming is None or not self._alive:
            conversation.user_name = UNKNOWN_PARTICIPANT
            conversation.user_id = None
            return

        try:
            contact = await self.resolver.resolve(incoming.user_id)
        except RemoteError as e:
            log.warn(f"  Could not resolve participant {incoming.user_id}: {e}")
            self.stats.contact_failures += 1
            conversation.user_name = UNKNOWN_PARTICIPANT
            conversation.user_id = None
            return

        conversation.user_name = contact.name
        conversation.user_id = contact.id

    def _merge_changed(self, changed: List[Conversation]):
        held = {conversation.id: conversation for conversation in self._conversations}
        for conversation in changed:
            existing = held.get(conversation.id)
            if existing is None:
                self._conversations.append(conversation)
                held[conversation.id] = conversation
                continue

            # Same object stays in the list so anything holding it sees the update
            existing.refresh_from(conversation)
            existing.messages = merge_messages(existing.messages, conversation.messages, MergeDirection.APPEND)
            if existing.cursor is None or existing.cursor.pages <= 1:
                existing.cursor = conversation.cursor
