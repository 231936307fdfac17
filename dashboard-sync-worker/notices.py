"""
Operator notices (the dashboard's toasts).

Transient and success notices expire on their own; rate-limit notices stay
until the operator dismisses them.
"""

import itertools
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Optional, List, Dict, Any

from dashboard_config import NOTICE_TTL, MAX_NOTICES

RATE_LIMIT_TEXT = 'You have reached the limit of requests to the API. Please wait a moment and try again.'


class NoticeKind(str, Enum):
    TRANSIENT = 'transient'
    SUCCESS = 'success'
    RATE_LIMIT = 'rate_limit'


@dataclass
class Notice:
    id: int
    kind: NoticeKind
    text: str
    created_at: datetime
    expires_at: Optional[datetime] = None  # None: stays until dismissed

    @property
    def persistent(self) -> bool:
        return self.expires_at is None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return (now or datetime.now(timezone.utc)) < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'text': self.text,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }


class NoticeBoard:
    def __init__(self, ttl: float = NOTICE_TTL, limit: int = MAX_NOTICES):
        self.ttl = ttl
        self.limit = limit
        self._notices: List[Notice] = []
        self._ids = itertools.count(1)

    def _push(self, kind: NoticeKind, text: str, persistent: bool = False) -> Notice:
        now = datetime.now(timezone.utc)
        notice = Notice(
            id=next(self._ids),
            kind=kind,
            text=text,
            created_at=now,
            expires_at=None if persistent else now + timedelta(seconds=self.ttl),
        )
        self._notices.append(notice)
        self._notices = self._notices[-self.limit:]
        return notice

    def error(self, text: str) -> Notice:
        return self._push(NoticeKind.TRANSIENT, text)

    def success(self, text: str) -> Notice:
        return self._push(NoticeKind.SUCCESS, text)

    def rate_limited(self, text: str = RATE_LIMIT_TEXT) -> Notice:
        # One persistent rate-limit notice is enough
        for notice in self._notices:
            if notice.kind == NoticeKind.RATE_LIMIT and notice.text == text:
                return notice
        return self._push(NoticeKind.RATE_LIMIT, text, persistent=True)

    def active(self) -> List[Notice]:
        now = datetime.now(timezone.utc)
        self._notices = [n for n in self._notices if n.is_active(now)]
        return list(self._notices)

    def dismiss(self, notice_id: int) -> bool:
        before = len(self._notices)
        self._notices = [n for n in self._notices if n.id != notice_id]
        return len(self._notices) != before

    def clear(self):
        self._notices = []
