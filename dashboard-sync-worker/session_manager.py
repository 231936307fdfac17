"""
Session Manager - explicit handle for one authenticated dashboard session.

A session owns the HTTP connection pool and the RemoteClient built on it.
It is created once per login and torn down on logout; nothing about it is
global, so tests and the worker can each hold their own.

CREDENTIALS:
- Token, workspace id and bot id are read from the environment by from_env()
- They are never logged; get_session_info() only reports their presence
"""

import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import aiohttp

from dashboard_config import API_BASE_URL, TOKEN_ENV, WORKSPACE_ID_ENV, BOT_ID_ENV
from remote_client import RemoteClient
from sync_logger import log


class SessionError(Exception):
    """The session cannot be created or is no longer usable."""


class SessionContext:
    def __init__(self, client: RemoteClient, bot_id: str, http: Optional[aiohttp.ClientSession] = None):
        self.client = client
        self.bot_id = bot_id
        self._http = http
        self._alive = True
        self.created_at = datetime.now(timezone.utc)

    @classmethod
    async def create(
        cls,
        token: str,
        workspace_id: str,
        bot_id: str,
        base_url: str = API_BASE_URL,
    ) -> 'SessionContext':
        """Open an HTTP session and bind a RemoteClient to it."""
        missing = [name for name, value in (
            ('token', token), ('workspace_id', workspace_id), ('bot_id', bot_id)
        ) if not value]
        if missing:
            raise SessionError(f"Missing credentials: {', '.join(missing)}")

        http = aiohttp.ClientSession()
        client = RemoteClient(http, token, workspace_id, bot_id, base_url=base_url)
        log.info(f"Session created for bot {bot_id}")
        return cls(client, bot_id, http=http)

    @classmethod
    async def from_env(cls, base_url: str = API_BASE_URL) -> 'SessionContext':
        return await cls.create(
            os.getenv(TOKEN_ENV, ''),
            os.getenv(WORKSPACE_ID_ENV, ''),
            os.getenv(BOT_ID_ENV, ''),
            base_url=base_url,
        )

    @property
    def alive(self) -> bool:
        return self._alive

    async def teardown(self):
        """Close the HTTP session. Safe to call more than once."""
        if not self._alive:
            return
        self._alive = False
        if self._http is not None and not self._http.closed:
            await self._http.close()
        log.info(f"Session for bot {self.bot_id} torn down")

    def get_session_info(self) -> Dict[str, Any]:
        """Summary of the session without secrets."""
        return {
            'alive': self._alive,
            'bot_id': self.bot_id,
            'workspace_id': getattr(self.client, 'workspace_id', None),
            'created_at': self.created_at.isoformat(),
        }
