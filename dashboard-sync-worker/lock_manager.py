"""
In-process lock table for sync work.

Used to keep a polling cycle exclusive with itself:
- A polling cycle holds ('cycle', 'conversations') while it runs
- Acquisition never waits; a held lock means "skip this tick"
- Locks do not expire; they are held until the owner releases them or
  release_all() runs at teardown
- Release is checked against the lock id handed out by acquire(), so a
  finished owner can never drop a lock someone else holds

Usage:
    from lock_manager import LockManager

    locks = LockManager()

    lock_id = locks.acquire('cycle', 'conversations')
    if lock_id:
        try:
            # Do work...
        finally:
            locks.release('cycle', 'conversations', lock_id)
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple


@dataclass
class _Lock:
    lock_id: str
    acquired_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


class LockManager:
    """Lock table keyed by (lock_type, lock_key)."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], _Lock] = {}

    def acquire(self, lock_type: str, lock_key: str = 'all',
                metadata: Optional[Dict] = None) -> Optional[str]:
        """
        Attempt to acquire a lock.

        Returns:
            The lock id if acquired, None if the lock is already held
        """
        key = (lock_type, lock_key)
        if key in self._locks:
            return None

        lock_id = str(uuid.uuid4())[:24]
        self._locks[key] = _Lock(
            lock_id=lock_id,
            acquired_at=datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
        )
        return lock_id

    def release(self, lock_type: str, lock_key: str = 'all', lock_id: Optional[str] = None) -> bool:
        """
        Release a lock. With `lock_id`, only the owner's lock is released.

        Returns:
            True if a lock was held and is now released
        """
        key = (lock_type, lock_key)
        lock = self._locks.get(key)
        if lock is None or (lock_id is not None and lock.lock_id != lock_id):
            return False
        del self._locks[key]
        return True

    def is_locked(self, lock_type: str, lock_key: str = 'all') -> bool:
        return (lock_type, lock_key) in self._locks

    def release_all(self) -> int:
        """
        Release every lock. Called during teardown.

        Returns:
            Number of locks released
        """
        released = len(self._locks)
        self._locks.clear()
        return released

    def list_all_locks(self) -> List[Dict[str, Any]]:
        """List all current locks, newest first."""
        locks = sorted(self._locks.items(), key=lambda item: item[1].acquired_at, reverse=True)
        return [{
            'lock_type': lock_type,
            'lock_key': lock_key,
            'acquired_at': lock.acquired_at.isoformat(),
            'metadata': lock.metadata,
        } for (lock_type, lock_key), lock in locks]
