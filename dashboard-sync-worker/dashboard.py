"""
Dashboard - session-level orchestration.

One Dashboard per logged-in session. It wires the pieces together and is the
single place the worker (or a test) talks to:

    SessionContext ──► RemoteClient
         │
         ▼
    Dashboard ──► ConversationSyncEngine ──► ContactResolver
         │
         ├──► ConversationView (the selected conversation, at most one)
         └──► NoticeBoard

Nothing here is global; logout() tears everything down and the object is
not reused afterwards.
"""

from typing import Optional, Dict, Any, List

from dashboard_config import HIDE_EMPTY_CONVERSATIONS, SUPPORTED_CHANNEL, POLL_INTERVAL
from dashboard_models import Contact, Message, TextPayload
from contact_resolver import ContactResolver
from conversation_details import ConversationView
from conversation_sync import ConversationSyncEngine
from notices import NoticeBoard
from remote_client import RemoteError, RateLimitedError
from sync_logger import log


class Dashboard:
    def __init__(
        self,
        session,
        hide_empty: bool = HIDE_EMPTY_CONVERSATIONS,
        channel: str = SUPPORTED_CHANNEL,
        poll_interval: float = POLL_INTERVAL,
        notices: Optional[NoticeBoard] = None,
        view_options: Optional[Dict[str, Any]] = None,
    ):
        self.session = session
        self.client = session.client
        self.notices = notices or NoticeBoard()
        self.resolver = ContactResolver(self.client, channel=channel)
        self.engine = ConversationSyncEngine(
            self.client,
            self.resolver,
            hide_empty=hide_empty,
            channel=channel,
            poll_interval=poll_interval,
        )
        self.view_options = dict(view_options or {})
        self.view: Optional[ConversationView] = None
        self.bot_name: Optional[str] = None
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self, poll: bool = True):
        """Load bot info, run the first cycle and start the polling timer."""
        await self.load_bot_info()
        if not self.engine.collection:
            await self.engine.poll_cycle(trigger='initial')
        if poll:
            self.engine.start()

    async def load_bot_info(self) -> Optional[str]:
        try:
            bot = await self.client.get_bot(self.session.bot_id)
        except RemoteError as e:
            log.warn(f"Could not load bot info: {e}")
            self.notices.error("Couldn't load bot info")
            return None
        self.bot_name = bot.get('name') or self.session.bot_id
        return self.bot_name

    async def logout(self):
        """Stop polling, drop the selected view and close the session."""
        if self._closed:
            return
        self._closed = True
        await self.engine.stop()
        if self.view is not None:
            await self.view.close()
            self.view = None
        self.resolver.close()
        self.notices.clear()
        await self.session.teardown()
        log.info("Logged out")

    teardown = logout

    # ── Conversations ────────────────────────────────────────────────────────

    async def refresh(self) -> bool:
        return await self.engine.refresh()

    async def load_more_conversations(self) -> int:
        """Append the next conversation page; on failure the cursor stays put."""
        try:
            appended = await self.engine.load_more()
        except RateLimitedError:
            self.notices.rate_limited()
            return 0
        except RemoteError as e:
            log.warn(f"[LOAD-MORE] Failed: {e}")
            self.notices.error("Couldn't load older conversations")
            return 0
        return len(appended)

    async def select_conversation(self, conversation_id: str, poll: bool = True) -> Optional[ConversationView]:
        conversation = self.engine.get(conversation_id)
        if conversation is None:
            self.notices.error('Conversation not found')
            return None

        if self.view is not None:
            if self.view.conversation is conversation:
                return self.view
            await self.view.close()

        self.view = ConversationView(self.engine, conversation, self.notices, **self.view_options)
        if await self.view.open() and poll:
            self.view.start_polling()
        return self.view

    async def select_contact(self, contact_id: str) -> Optional[ConversationView]:
        conversation = self.engine.find_by_user(contact_id)
        if conversation is None:
            self.notices.error('No conversation found for this contact')
            return None
        return await self.select_conversation(conversation.id)

    async def close_conversation(self):
        if self.view is not None:
            await self.view.close()
            self.view = None

    async def delete_conversation(self, conversation_id: str) -> bool:
        if self.view is not None and self.view.conversation.id == conversation_id:
            deleted = await self.view.delete()
            if deleted:
                self.view = None
            return deleted

        conversation = self.engine.get(conversation_id)
        if conversation is None:
            self.notices.error('Conversation not found')
            return False
        # Same remote-first rule as an open view
        view = ConversationView(self.engine, conversation, self.notices, **self.view_options)
        return await view.delete()

    async def send_custom_message(self, conversation_id: str, user_id: str, text: str) -> Optional[Message]:
        """Send a text message to any conversation as any user."""
        if not conversation_id or not user_id or not text or not text.strip():
            self.notices.error('Please fill in all fields')
            return None

        try:
            message = await self.client.create_message(conversation_id, user_id, TextPayload(text=text))
        except RateLimitedError:
            self.notices.rate_limited()
            return None
        except RemoteError as e:
            log.error(f"Error sending custom message to {conversation_id}: {e}")
            self.notices.error("Couldn't send the message")
            return None

        conversation = self.engine.get(conversation_id)
        if conversation is not None:
            self.engine.append_message(conversation, message)
        self.notices.success('Message sent')
        return message

    # ── Contacts ─────────────────────────────────────────────────────────────

    def contacts(self, search: str = '') -> List[Contact]:
        return sorted(self.resolver.search(search), key=lambda c: c.name.lower())

    # ── Status ───────────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        return {
            'bot_name': self.bot_name,
            'session': self.session.get_session_info(),
            'sync': self.engine.stats.to_dict(self.engine.state),
            'conversations': len(self.engine.collection),
            'version': self.engine.version,
            'has_more_conversations': self.engine.has_more_conversations,
            'footer': self.engine.list_footer(),
            'contacts': len(self.resolver.contacts()),
            'selected': self.view.conversation.id if self.view is not None else None,
            'locks': self.engine.locks.list_all_locks(),
            'notices': [n.to_dict() for n in self.notices.active()],
        }
