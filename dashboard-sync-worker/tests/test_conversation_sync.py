import asyncio

import pytest

from fakes import FakeClient, conversation_data, make_message

from contact_resolver import ContactResolver
from conversation_sync import (
    CYCLE_LOCK, ConversationSyncEngine, SyncState, diff_conversations, display_order, latest_incoming_message,
)
from dashboard_config import NO_MORE_CONVERSATIONS, UNKNOWN_PARTICIPANT
from dashboard_models import Conversation, CursorState
from remote_client import RateLimitedError, RemoteError


def build_engine(client, **kwargs):
    return ConversationSyncEngine(client, ContactResolver(client), **kwargs)


@pytest.fixture
def client():
    client = FakeClient()
    client.add_user('u1', **{'whatsapp:name': 'Alice'})
    client.add_user('u2', **{'whatsapp:name': 'Bob'})
    client.add_conversation('c1', updated=10)
    client.add_message('c1', 'm1', 1, user_id='u1')
    client.add_conversation('c2', updated=20)
    client.add_message('c2', 'm2', 2, user_id='u2')
    return client


@pytest.mark.asyncio
async def test_empty_listing_shows_no_more_conversations_and_no_contacts():
    client = FakeClient()
    engine = build_engine(client)

    assert engine.list_footer() is None
    changed = await engine.poll_cycle()

    assert changed is False
    assert engine.conversations() == []
    assert engine.list_footer() == NO_MORE_CONVERSATIONS
    assert not engine.has_more_conversations
    assert engine.resolver.contacts() == []
    assert client.count('get_user') == 0
    assert engine.state == SyncState.IDLE


@pytest.mark.asyncio
async def test_first_cycle_loads_and_enriches(client):
    engine = build_engine(client)

    assert await engine.poll_cycle() is True

    assert [c.id for c in engine.conversations()] == ['c2', 'c1']
    c1 = engine.get('c1')
    assert (c1.user_id, c1.user_name) == ('u1', 'Alice')
    assert [m.id for m in c1.messages] == ['m1']
    assert c1.cursor == CursorState(token=None, pages=1)
    assert {c.id for c in engine.resolver.contacts()} == {'u1', 'u2'}
    assert engine.find_by_user('u2') is engine.get('c2')


@pytest.mark.asyncio
async def test_unchanged_cycle_leaves_collection_untouched(client):
    engine = build_engine(client)
    await engine.poll_cycle()

    collection = engine.collection
    held = list(collection)
    version = engine.version
    lookups = client.count('get_user')

    assert await engine.poll_cycle() is False

    assert engine.collection is collection
    assert all(a is b for a, b in zip(engine.collection, held))
    assert engine.version == version
    assert client.count('get_user') == lookups
    assert engine.stats.cycles_unchanged == 1


@pytest.mark.asyncio
async def test_changed_conversation_is_refreshed_in_place(client):
    engine = build_engine(client)
    await engine.poll_cycle()
    held = engine.get('c1')

    client.add_message('c1', 'm3', 30, user_id='u1')
    client.touch('c1', 30)
    assert await engine.poll_cycle() is True

    assert engine.get('c1') is held
    assert [m.id for m in held.messages] == ['m1', 'm3']
    assert held.updated_at > engine.get('c2').updated_at
    assert [c.id for c in engine.conversations()] == ['c1', 'c2']


@pytest.mark.asyncio
async def test_same_message_delivered_twice_appears_once(client):
    engine = build_engine(client)
    await engine.poll_cycle()

    # updatedAt moves although the first message page is identical
    client.touch('c1', 40)
    await engine.poll_cycle()

    assert [m.id for m in engine.get('c1').messages] == ['m1']


@pytest.mark.asyncio
async def test_enrichment_uses_latest_incoming_sender(client):
    client.add_message('c1', 'm4', 4, direction='outgoing', user_id='bot-user')
    client.add_message('c1', 'm5', 5, user_id='u2')
    client.add_message('c1', 'm6', 6, direction='outgoing', user_id='bot-user')
    engine = build_engine(client)

    await engine.poll_cycle()

    assert engine.get('c1').user_name == 'Bob'


@pytest.mark.asyncio
async def test_unresolvable_participant_is_labelled_unknown(client):
    client.add_conversation('c3', updated=30)
    client.add_message('c3', 'm9', 9, user_id='ghost')
    engine = build_engine(client)

    assert await engine.poll_cycle() is True

    c3 = engine.get('c3')
    assert c3.user_name == UNKNOWN_PARTICIPANT
    assert c3.user_id is None
    assert engine.resolver.get('ghost') is None
    assert engine.stats.contact_failures == 1
    assert engine.get('c1').user_name == 'Alice'


@pytest.mark.asyncio
async def test_contact_change_is_last_write_wins(client):
    engine = build_engine(client)
    await engine.poll_cycle()

    client.add_user('u1', **{'whatsapp:name': 'Alicia'})
    client.add_message('c1', 'm7', 7, user_id='u1')
    client.touch('c1', 50)
    await engine.poll_cycle()

    assert engine.resolver.get('u1').name == 'Alicia'
    assert engine.get('c1').user_name == 'Alicia'
    assert len([c for c in engine.resolver.contacts() if c.id == 'u1']) == 1


@pytest.mark.asyncio
async def test_other_channels_and_empty_conversations_are_filtered(client):
    client.add_conversation('tg', updated=5, integration='telegram')
    client.add_message('tg', 'tm', 1)
    client.add_conversation('empty', updated=6)

    engine = build_engine(client, hide_empty=True)
    await engine.poll_cycle()
    assert {c.id for c in engine.collection} == {'c1', 'c2'}

    showing = build_engine(client, hide_empty=False)
    await showing.poll_cycle()
    assert {c.id for c in showing.collection} == {'c1', 'c2', 'empty'}
    assert showing.get('empty').user_name == UNKNOWN_PARTICIPANT


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(client):
    engine = build_engine(client)
    client.gate = asyncio.Event()

    first = asyncio.create_task(engine.poll_cycle())
    await asyncio.sleep(0)
    assert engine.locks.is_locked(*CYCLE_LOCK)

    assert await engine.refresh() is False
    assert engine.stats.cycles_skipped == 1

    client.gate.set()
    assert await first is True
    assert not engine.locks.is_locked(*CYCLE_LOCK)
    assert client.count('list_conversations') == 1


@pytest.mark.asyncio
async def test_slow_cycle_keeps_the_lock_until_it_finishes(client):
    engine = build_engine(client)
    client.gate = asyncio.Event()

    first = asyncio.create_task(engine.poll_cycle(trigger='timer'))
    await asyncio.sleep(0)
    for _ in range(3):
        await asyncio.sleep(0.02)
        assert await engine.refresh() is False

    assert engine.stats.cycles_run == 1
    assert engine.stats.cycles_skipped == 3
    assert engine.locks.list_all_locks()[0]['metadata'] == {'trigger': 'timer'}

    client.gate.set()
    assert await first is True
    assert engine.locks.list_all_locks() == []


@pytest.mark.asyncio
async def test_finished_cycle_does_not_release_a_newer_lock(client):
    engine = build_engine(client)
    client.gate = asyncio.Event()

    first = asyncio.create_task(engine.poll_cycle())
    await asyncio.sleep(0)
    # Lock taken away from the running cycle and handed to another owner
    engine.locks.release_all()
    other = engine.locks.acquire(*CYCLE_LOCK)

    client.gate.set()
    await first

    assert engine.locks.is_locked(*CYCLE_LOCK)
    assert await engine.refresh() is False
    assert engine.locks.release(*CYCLE_LOCK, lock_id=other)


@pytest.mark.asyncio
async def test_rate_limited_cycle_is_aborted_without_changes(client):
    engine = build_engine(client)
    await engine.poll_cycle()
    version = engine.version

    client.touch('c1', 99)
    client.fail('list_messages', RateLimitedError(retry_after=3))
    assert await engine.poll_cycle() is False

    assert engine.version == version
    assert engine.stats.rate_limited == 1
    assert engine.stats.errors[-1]['where'] == 'poll'
    assert engine.state == SyncState.IDLE
    assert not engine.locks.is_locked(*CYCLE_LOCK)


@pytest.mark.asyncio
async def test_failing_conversation_is_skipped_for_the_cycle(client):
    engine = build_engine(client)
    client.fail('list_messages', RemoteError('HTTP 500'))

    await engine.poll_cycle()
    assert [c.id for c in engine.collection] == ['c2']

    await engine.poll_cycle()
    assert {c.id for c in engine.collection} == {'c1', 'c2'}


@pytest.mark.asyncio
async def test_listing_failure_is_recorded_and_swallowed(client):
    engine = build_engine(client)
    client.fail('list_conversations', RemoteError('HTTP 502'))

    assert await engine.poll_cycle() is False
    assert engine.stats.cycles_failed == 1
    assert engine.collection == []
    assert engine.list_footer() is None


@pytest.mark.asyncio
async def test_load_more_appends_and_advances_cursor():
    client = FakeClient(conversation_page_size=2)
    client.add_user('u1', name='Alice')
    for i, conversation_id in enumerate(['c1', 'c2', 'c3']):
        client.add_conversation(conversation_id, updated=30 - i)
        client.add_message(conversation_id, f'm{i}', i, user_id='u1')
    engine = build_engine(client)

    await engine.poll_cycle()
    assert [c.id for c in engine.collection] == ['c1', 'c2']
    assert engine.cursor == CursorState(token='2', pages=1)
    assert engine.list_footer() is None

    appended = await engine.load_more()
    assert [c.id for c in appended] == ['c3']
    assert engine.get('c3').user_name == 'Alice'
    assert engine.cursor.pages == 2
    assert engine.list_footer() == NO_MORE_CONVERSATIONS
    assert await engine.load_more() == []

    # Polling the first page again does not rewind the deeper cursor
    client.touch('c1', 100)
    await engine.poll_cycle()
    assert engine.cursor.pages == 2
    assert len(engine.collection) == 3


@pytest.mark.asyncio
async def test_failed_load_more_keeps_cursor_and_collection():
    client = FakeClient(conversation_page_size=1)
    client.add_conversation('c1', updated=2)
    client.add_message('c1', 'm1', 1, user_id=None)
    client.add_conversation('c2', updated=1)
    client.add_message('c2', 'm2', 1, user_id=None)
    engine = build_engine(client)
    await engine.poll_cycle()
    cursor = engine.cursor

    client.fail('list_conversations', RateLimitedError())
    with pytest.raises(RateLimitedError):
        await engine.load_more()
    assert engine.cursor is cursor
    assert [c.id for c in engine.collection] == ['c1']

    client.fail('list_messages', RemoteError('HTTP 500'))
    with pytest.raises(RemoteError):
        await engine.load_more()
    assert engine.cursor is cursor

    await engine.load_more()
    assert [c.id for c in engine.collection] == ['c1', 'c2']


@pytest.mark.asyncio
async def test_results_after_stop_are_discarded(client):
    engine = build_engine(client)
    client.gate = asyncio.Event()

    cycle = asyncio.create_task(engine.poll_cycle())
    await asyncio.sleep(0)
    await engine.stop()
    client.gate.set()

    assert await cycle is False
    assert engine.collection == []
    assert engine.resolver.contacts() == []
    assert await engine.poll_cycle() is False


@pytest.mark.asyncio
async def test_timer_runs_cycles_until_stopped(client):
    engine = build_engine(client, poll_interval=0.01)
    engine.start()
    await asyncio.sleep(0.1)
    await engine.stop()

    runs = engine.stats.cycles_run
    assert runs >= 1
    await asyncio.sleep(0.05)
    assert engine.stats.cycles_run == runs


@pytest.mark.asyncio
async def test_load_older_messages_prepends_and_stops_at_start():
    client = FakeClient(message_page_size=20)
    client.add_conversation('c1', updated=1)
    for i in range(1, 41):
        client.add_message('c1', f'm{i}', i, user_id=None)
    engine = build_engine(client)
    await engine.poll_cycle()
    conversation = engine.get('c1')
    assert [m.id for m in conversation.messages][:1] == ['m21']

    added = await engine.load_older_messages(conversation)

    assert len(added) == 20
    assert [m.id for m in conversation.messages] == [f'm{i}' for i in range(1, 41)]
    assert not conversation.has_more_messages
    assert await engine.load_older_messages(conversation) == []


def test_pure_helpers():
    held = Conversation.from_api(conversation_data('c1', updated=1))
    held.message_count = 1
    same = Conversation.from_api(conversation_data('c1', updated=1))
    same.message_count = 1
    grown = Conversation.from_api(conversation_data('c1', updated=1))
    grown.message_count = 2
    fresh = Conversation.from_api(conversation_data('c9', updated=0))

    assert diff_conversations([held], [same]) == []
    assert diff_conversations([held], [grown, fresh]) == [grown, fresh]

    messages = [make_message('a', 1, user_id='u1'), make_message('b', 2, direction='outgoing', user_id='bot')]
    assert latest_incoming_message(messages).id == 'a'
    assert latest_incoming_message([]) is None

    assert [c.id for c in display_order([held, fresh, same])] == ['c1', 'c9']
