"""
Remote Client - thin async adapter over the Botpress chat API.

Only the calls the dashboard needs are exposed. Responses are returned as
typed models where the sync core consumes them and as plain dicts otherwise.

ERRORS:
- RateLimitedError  HTTP 429, carries the Retry-After hint when present
- NotFoundError     HTTP 404, or 400 for references that no longer exist
- RemoteError       everything else (5xx, network failures, timeouts)
"""

import asyncio
from typing import Optional, Dict, Any

import aiohttp

from dashboard_config import API_BASE_URL, REQUEST_TIMEOUT
from dashboard_models import Conversation, Message, Payload


class RemoteError(Exception):
    """Generic failure talking to the remote API."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitedError(RemoteError):
    """The remote rejected the call because the request quota is exhausted."""

    def __init__(self, message: str = 'Rate limited', retry_after: Optional[float] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class NotFoundError(RemoteError):
    """The referenced conversation, message or user does not exist."""


class RemoteClient:
    """Authenticated client for one bot in one workspace."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        workspace_id: str,
        bot_id: str,
        base_url: str = API_BASE_URL,
    ):
        self.session = session
        self.bot_id = bot_id
        self.workspace_id = workspace_id
        self.base_url = base_url.rstrip('/')
        self._headers = {
            'Authorization': f'Bearer {token}',
            'x-bot-id': bot_id,
            'x-workspace-id': workspace_id,
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            async with self.session.request(
                method,
                url,
                params=params or None,
                json=json_body,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as response:
                if response.status == 429:
                    raise RateLimitedError(
                        f'{method} {path}: rate limited',
                        retry_after=_retry_after(response.headers.get('Retry-After')),
                    )
                if response.status == 404:
                    raise NotFoundError(f'{method} {path}: not found', status=404)
                if response.status == 400:
                    text = await response.text()
                    raise NotFoundError(f'{method} {path}: invalid request: {text[:200]}', status=400)
                if response.status >= 400:
                    text = await response.text()
                    raise RemoteError(f'{method} {path}: HTTP {response.status}: {text[:200]}', status=response.status)

                if response.status == 204:
                    return {}
                return await response.json(content_type=None) or {}

        except asyncio.TimeoutError as e:
            raise RemoteError(f'{method} {path}: timed out after {REQUEST_TIMEOUT}s') from e
        except aiohttp.ClientError as e:
            raise RemoteError(f'{method} {path}: {type(e).__name__}: {e}') from e

    # ── Listings ─────────────────────────────────────────────────────────────

    async def list_conversations(self, next_token: Optional[str] = None) -> Dict[str, Any]:
        data = await self._request('GET', '/v1/chat/conversations', params={'nextToken': next_token})
        return {
            'conversations': [Conversation.from_api(c) for c in data.get('conversations', [])],
            'next_token': (data.get('meta') or {}).get('nextToken'),
        }

    async def list_messages(self, conversation_id: str, next_token: Optional[str] = None) -> Dict[str, Any]:
        data = await self._request(
            'GET',
            '/v1/chat/messages',
            params={'conversationId': conversation_id, 'nextToken': next_token},
        )
        return {
            'messages': [Message.from_api(m) for m in data.get('messages', [])],
            'next_token': (data.get('meta') or {}).get('nextToken'),
        }

    # ── Lookups ──────────────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        data = await self._request('GET', f'/v1/chat/users/{user_id}')
        user = data.get('user') or {}
        user.setdefault('tags', {})
        return user

    async def get_bot(self, bot_id: Optional[str] = None) -> Dict[str, Any]:
        data = await self._request('GET', f'/v1/admin/bots/{bot_id or self.bot_id}')
        return data.get('bot') or {}

    # ── Mutations ────────────────────────────────────────────────────────────

    async def create_message(
        self,
        conversation_id: str,
        user_id: str,
        payload: Payload,
        message_type: str = 'text',
        tags: Optional[Dict[str, str]] = None,
    ) -> Message:
        body = payload.to_api()
        body.pop('type', None)
        data = await self._request('POST', '/v1/chat/messages', json_body={
            'conversationId': conversation_id,
            'userId': user_id,
            'payload': body,
            'type': message_type,
            'tags': tags or {},
        })
        return Message.from_api(data['message'])

    async def delete_conversation(self, conversation_id: str) -> bool:
        await self._request('DELETE', f'/v1/chat/conversations/{conversation_id}')
        return True


def _retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
