from lock_manager import LockManager


def test_acquire_is_exclusive_per_key():
    locks = LockManager()
    lock_id = locks.acquire('cycle', 'conversations', metadata={'trigger': 'timer'})
    assert lock_id
    assert locks.acquire('cycle', 'conversations') is None
    assert locks.acquire('cycle', 'contacts')

    assert locks.list_all_locks()[-1]['metadata'] == {'trigger': 'timer'}

    assert locks.release('cycle', 'conversations', lock_id)
    assert not locks.release('cycle', 'conversations', lock_id)
    assert locks.acquire('cycle', 'conversations')


def test_release_only_drops_the_owners_lock():
    locks = LockManager()
    stale = locks.acquire('cycle', 'conversations')
    locks.release_all()
    current = locks.acquire('cycle', 'conversations')

    assert not locks.release('cycle', 'conversations', stale)
    assert locks.is_locked('cycle', 'conversations')

    assert locks.release('cycle', 'conversations', current)
    assert not locks.is_locked('cycle', 'conversations')


def test_release_all_clears_the_table():
    locks = LockManager()
    locks.acquire('cycle', 'conversations')
    locks.acquire('cycle', 'contacts')

    listed = locks.list_all_locks()
    assert {(lock['lock_type'], lock['lock_key']) for lock in listed} == {
        ('cycle', 'conversations'), ('cycle', 'contacts'),
    }

    assert locks.release_all() == 2
    assert locks.list_all_locks() == []
