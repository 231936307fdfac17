"""
Data structures shared by the sync core.

Remote records arrive as camelCase JSON dicts; each dataclass exposes a
`from_api` constructor that turns one into a typed value.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union

INCOMING = 'incoming'
OUTGOING = 'outgoing'


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp (a trailing 'Z' is accepted) into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    else:
        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ═══════════════════════════════════════════════════════════════════════════════
# PAYLOADS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TextPayload:
    text: str
    kind: str = 'text'

    def to_api(self) -> Dict[str, Any]:
        return {'type': self.kind, 'text': self.text}


@dataclass(frozen=True)
class ImagePayload:
    image_url: str
    kind: str = 'image'

    def to_api(self) -> Dict[str, Any]:
        return {'type': self.kind, 'imageUrl': self.image_url}


@dataclass(frozen=True)
class UnsupportedPayload:
    """A payload kind this worker does not render; kept verbatim."""
    kind: str
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> Dict[str, Any]:
        return dict(self.raw, type=self.kind)


Payload = Union[TextPayload, ImagePayload, UnsupportedPayload]


def parse_payload(message_type: Optional[str], raw: Optional[Dict[str, Any]]) -> Payload:
    """Build the payload variant for a remote message."""
    raw = raw or {}
    kind = raw.get('type') or message_type or 'text'

    if kind == 'text':
        return TextPayload(text=str(raw.get('text') or ''))
    if kind == 'image':
        return ImagePayload(image_url=str(raw.get('imageUrl') or ''))
    return UnsupportedPayload(kind=kind, raw={k: v for k, v in raw.items() if k != 'type'})


def payload_preview(payload: Payload) -> str:
    """Short one-line description of a payload, used for logs and list previews."""
    if isinstance(payload, TextPayload):
        return payload.text
    if isinstance(payload, ImagePayload):
        return f"[image] {payload.image_url}"
    if isinstance(payload, UnsupportedPayload):
        return f"[{payload.kind}]"
    raise TypeError(f"Unknown payload variant: {type(payload).__name__}")


# ═══════════════════════════════════════════════════════════════════════════════
# MESSAGES AND CONVERSATIONS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CursorState:
    """
    Position in a cursor-paginated listing.

    `pages` counts pages fetched so far. Before the first page there is always
    more to fetch; afterwards only while the remote returned a next token.
    """
    token: Optional[str] = None
    pages: int = 0

    @property
    def has_more(self) -> bool:
        return self.pages == 0 or bool(self.token)


@dataclass(frozen=True)
class Message:
    id: str
    direction: str
    created_at: datetime
    user_id: Optional[str]
    payload: Payload
    conversation_id: str
    type: str = 'text'
    tags: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_incoming(self) -> bool:
        return self.direction == INCOMING

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Message':
        message_type = data.get('type') or 'text'
        return cls(
            id=str(data['id']),
            direction=data.get('direction') or INCOMING,
            created_at=parse_timestamp(data.get('createdAt')),
            user_id=data.get('userId'),
            payload=parse_payload(message_type, data.get('payload')),
            conversation_id=str(data.get('conversationId') or ''),
            type=message_type,
            tags=dict(data.get('tags') or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'direction': self.direction,
            'created_at': self.created_at.isoformat(),
            'user_id': self.user_id,
            'conversation_id': self.conversation_id,
            'type': self.type,
            'payload': self.payload.to_api(),
            'preview': payload_preview(self.payload),
        }


@dataclass
class Conversation:
    id: str
    channel: str
    integration: str
    created_at: datetime
    updated_at: datetime
    tags: Dict[str, str] = field(default_factory=dict)
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    cursor: Optional[CursorState] = None
    message_count: int = 0  # Size of the first message page at the last sync

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Conversation':
        return cls(
            id=str(data['id']),
            channel=data.get('channel') or '',
            integration=data.get('integration') or '',
            created_at=parse_timestamp(data.get('createdAt')),
            updated_at=parse_timestamp(data.get('updatedAt')),
            tags=dict(data.get('tags') or {}),
        )

    @property
    def has_more_messages(self) -> bool:
        return self.cursor is None or self.cursor.has_more

    def refresh_from(self, other: 'Conversation'):
        """Copy remote-owned fields from a freshly fetched copy, keeping this object's identity."""
        self.channel = other.channel
        self.integration = other.integration
        self.created_at = other.created_at
        self.updated_at = other.updated_at
        self.tags = dict(other.tags)
        self.user_id = other.user_id
        self.user_name = other.user_name
        self.message_count = other.message_count

    def to_dict(self, include_messages: bool = False) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'channel': self.channel,
            'integration': self.integration,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'user_name': self.user_name,
            'message_count': len(self.messages),
            'has_more_messages': self.has_more_messages,
        }
        if include_messages:
            result['messages'] = [m.to_dict() for m in self.messages]
        return result


@dataclass(frozen=True)
class Contact:
    id: str
    name: str
    phone: Optional[str] = None
    about: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'phone': self.phone, 'about': self.about}
