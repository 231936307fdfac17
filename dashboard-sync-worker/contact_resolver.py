"""
Contact Resolver - participant identity lookup with a session-scoped cache.

The cache is written only here. One entry per participant id; a later
resolution for the same id replaces the earlier one.
"""

from typing import Optional, Dict, Any, List

from dashboard_config import SUPPORTED_CHANNEL, UNKNOWN_PARTICIPANT
from dashboard_models import Contact
from sync_logger import log


def contact_from_user(participant_id: str, user: Dict[str, Any], channel: str = SUPPORTED_CHANNEL) -> Contact:
    """Build a Contact from a remote user record's tags."""
    tags = user.get('tags') or {}
    name = (
        tags.get(f'{channel}:name')
        or tags.get('name')
        or participant_id
        or UNKNOWN_PARTICIPANT
    )
    return Contact(
        id=participant_id,
        name=name,
        phone=tags.get(f'{channel}:userId') or None,
        about=tags.get(f'{channel}:about') or None,
    )


class ContactResolver:
    def __init__(self, client, channel: str = SUPPORTED_CHANNEL):
        self.client = client
        self.channel = channel
        self._contacts: Dict[str, Contact] = {}
        self._alive = True

    async def describe(self, participant_id: str) -> Contact:
        """Look a participant up without touching the cache."""
        user = await self.client.get_user(participant_id)
        return contact_from_user(participant_id, user, self.channel)

    async def resolve(self, participant_id: str) -> Contact:
        """
        Resolve a participant and store it in the cache.

        Errors from the remote propagate and leave the cache untouched; the
        caller decides how to label the participant.
        """
        contact = await self.describe(participant_id)
        if not self._alive:
            return contact
        previous = self._contacts.get(participant_id)
        self._contacts[participant_id] = contact
        if previous is not None and previous != contact:
            log.info(f"Contact {participant_id} updated: {previous.name} -> {contact.name}")
        return contact

    def get(self, participant_id: Optional[str]) -> Optional[Contact]:
        if not participant_id:
            return None
        return self._contacts.get(participant_id)

    def contacts(self) -> List[Contact]:
        return list(self._contacts.values())

    def search(self, term: str = '') -> List[Contact]:
        """Contacts whose name contains `term` (case-insensitive) or whose phone contains it."""
        if not term:
            return self.contacts()
        lowered = term.lower()
        return [
            contact for contact in self._contacts.values()
            if lowered in contact.name.lower() or (contact.phone and term in contact.phone)
        ]

    def clear(self):
        self._contacts.clear()

    def close(self):
        """Stop accepting writes; lookups completing later are returned but not cached."""
        self._alive = False
        self._contacts.clear()
