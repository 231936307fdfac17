"""
Open-conversation controller.

Everything the operator does inside one conversation: the initial message
load (bounded retry, aborted on rate limit), loading older pages, manual
reload, periodic new-message polling, sending replies, deleting the
conversation and looking up the participants of its messages.

Viewport handling is optional: when a viewport is attached every prepend or
append goes through the scroll-preservation controller.
"""

import asyncio
from typing import Optional, Dict, List

from dashboard_config import (
    INITIAL_LOAD_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_DELAY,
    MESSAGE_POLL_INTERVAL, DEFAULT_SENDER_ID, UNKNOWN_PARTICIPANT, START_OF_CONVERSATION,
)
from dashboard_models import Conversation, Contact, Message, TextPayload, OUTGOING
from message_merge import MergeDirection
from remote_client import RemoteError, RateLimitedError
from scroll_preservation import ScrollPreservationController, is_near_bottom, scroll_to_bottom
from sync_logger import log


class ConversationView:
    def __init__(
        self,
        engine,
        conversation: Conversation,
        notices,
        viewport=None,
        scroll: Optional[ScrollPreservationController] = None,
        retries: int = INITIAL_LOAD_RETRIES,
        retry_delay: float = RETRY_BASE_DELAY,
        poll_interval: float = MESSAGE_POLL_INTERVAL,
    ):
        self.engine = engine
        self.conversation = conversation
        self.notices = notices
        self.viewport = viewport
        self.scroll = scroll or ScrollPreservationController()
        self.retries = retries
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval

        self.is_loading = False
        self.load_error: Optional[str] = None
        self.participants: Dict[str, Contact] = {}

        self._alive = True
        self._poll_task: Optional[asyncio.Task] = None

    # ── Derived state ────────────────────────────────────────────────────────

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    @property
    def has_more_messages(self) -> bool:
        return self.conversation.has_more_messages

    @property
    def bot_user_id(self) -> Optional[str]:
        """The bot's own user id, as seen on the latest outgoing message."""
        for message in reversed(self.conversation.messages):
            if message.direction == OUTGOING and message.user_id:
                return message.user_id
        return None

    def display_name(self) -> str:
        user_id = self.conversation.user_id
        if not user_id:
            return UNKNOWN_PARTICIPANT
        participant = self.participants.get(user_id)
        if participant:
            return participant.name
        return self.conversation.user_name or user_id

    def list_header(self) -> Optional[str]:
        if self.conversation.messages and not self.has_more_messages:
            return START_OF_CONVERSATION
        return None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def open(self) -> bool:
        """
        Initial load with bounded retry.

        Each failed attempt is inspected: a rate limit aborts immediately with
        a persistent notice, anything else is retried with exponential backoff
        up to `retries` attempts in total.
        """
        self.is_loading = True
        self.load_error = None
        attempts = max(1, self.retries)
        try:
            for attempt in range(1, attempts + 1):
                try:
                    await self._load_first_page()

                except RateLimitedError as e:
                    log.warn(f"[VIEW] Rate limited loading {self.conversation.id} (attempt {attempt}) - aborting")
                    self.load_error = str(e)
                    if self._alive:
                        self.notices.rate_limited()
                    return False

                except RemoteError as e:
                    log.warn(f"[VIEW] Could not load messages for {self.conversation.id} "
                             f"(attempt {attempt}/{attempts}): {e}")
                    self.load_error = str(e)
                    if attempt == attempts:
                        if self._alive:
                            self.notices.error("Couldn't load messages")
                        return False
                    await asyncio.sleep(min(RETRY_MAX_DELAY, self.retry_delay * (2 ** (attempt - 1))))
                    continue

                break

            if not self._alive:
                return False

            self.load_error = None
            await self.load_participants()
            return True

        finally:
            self.is_loading = False

    async def close(self):
        """Stop polling; later completions no longer touch this view."""
        self._alive = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    def start_polling(self):
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self):
        while self._alive:
            await asyncio.sleep(self.poll_interval)
            if not self._alive:
                break
            await self.poll_new_messages()

    # ── Message operations ───────────────────────────────────────────────────

    async def _load_first_page(self):
        await self.engine.refresh_messages(self.conversation)
        if self.viewport is not None and self._alive:
            scroll_to_bottom(self.viewport)

    async def poll_new_messages(self) -> List[str]:
        """Merge newly arrived messages; quiet on failure."""
        if not self._alive:
            return []
        try:
            with self.scroll.preserving(self.viewport, MergeDirection.APPEND) as anchor:
                added = await self.engine.refresh_messages(self.conversation)
                if anchor is not None and not self._alive:
                    anchor.discard()
        except RateLimitedError:
            log.warn(f"[VIEW] Rate limited polling {self.conversation.id}")
            return []
        except RemoteError as e:
            log.warn(f"[VIEW] Error fetching new messages for {self.conversation.id}: {e}")
            return []
        return added

    async def load_older(self) -> List[str]:
        """Prepend the next older page, keeping the viewport where it was."""
        if not self.has_more_messages or not self._alive:
            return []
        try:
            with self.scroll.preserving(self.viewport, MergeDirection.PREPEND) as anchor:
                added = await self.engine.load_older_messages(self.conversation)
                if anchor is not None and not self._alive:
                    anchor.discard()
        except RateLimitedError:
            if self._alive:
                self.notices.rate_limited()
            return []
        except RemoteError as e:
            log.warn(f"[VIEW] Could not load older messages for {self.conversation.id}: {e}")
            if self._alive:
                self.notices.error("Couldn't load older messages")
            return []
        return added

    async def reload(self) -> bool:
        """Replace the list with the newest page; stay at the bottom if we were there."""
        was_at_bottom = self.viewport is not None and is_near_bottom(self.viewport, self.scroll.threshold)
        self.is_loading = True
        try:
            await self.engine.refresh_messages(self.conversation, replace=True)
        except RateLimitedError:
            if self._alive:
                self.notices.rate_limited()
            return False
        except RemoteError as e:
            log.warn(f"[VIEW] Reload failed for {self.conversation.id}: {e}")
            if self._alive:
                self.notices.error("Couldn't reload messages")
            return False
        finally:
            self.is_loading = False

        if was_at_bottom and self._alive:
            scroll_to_bottom(self.viewport)
        return True

    async def send_text(self, text: str) -> Optional[Message]:
        """Send a text reply as the bot and append it."""
        if not text or not text.strip():
            return None
        try:
            message = await self.engine.client.create_message(
                self.conversation.id,
                self.bot_user_id or DEFAULT_SENDER_ID,
                TextPayload(text=text),
                message_type='text',
            )
        except RateLimitedError:
            self.notices.rate_limited()
            return None
        except RemoteError as e:
            log.error(f"[VIEW] Error sending message to {self.conversation.id}: {e}")
            self.notices.error("Couldn't send the message")
            return None

        if not self._alive:
            return message
        self.engine.append_message(self.conversation, message)
        if self.viewport is not None:
            scroll_to_bottom(self.viewport)
        return message

    async def delete(self) -> bool:
        """Delete remotely first; the conversation is only dropped locally on success."""
        try:
            await self.engine.client.delete_conversation(self.conversation.id)
        except RateLimitedError:
            self.notices.rate_limited()
            return False
        except RemoteError as e:
            log.error(f"[VIEW] Could not delete {self.conversation.id}: {e}")
            self.notices.error("Couldn't delete this conversation")
            return False

        self.engine.remove_conversation(self.conversation.id)
        self.notices.success('Conversation deleted')
        await self.close()
        return True

    # ── Participants ─────────────────────────────────────────────────────────

    async def load_participants(self) -> Dict[str, Contact]:
        """Look up every sender in the message list concurrently; failures are skipped."""
        user_ids = []
        for message in self.conversation.messages:
            if message.user_id and message.user_id not in user_ids and message.user_id not in self.participants:
                user_ids.append(message.user_id)
        if not user_ids:
            return self.participants

        results = await asyncio.gather(
            *(self.engine.resolver.describe(user_id) for user_id in user_ids),
            return_exceptions=True,
        )
        if not self._alive:
            return self.participants

        for user_id, result in zip(user_ids, results):
            if isinstance(result, RemoteError):
                log.warn(f"[VIEW] Could not load participant {user_id}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            self.participants[user_id] = result
        return self.participants
