import asyncio
import os
import signal
import sys
import pytest
import main
from conftest import FakeListingsClient, FakeTransport, make_listing
from main import INVALID_BUTTON_REPLY, PURCHASE_REPLY, STALE_REFERENCE_REPLY, Monitor, PollState


def listings(ids, **changes):
    """Fresh fetch results; ``changes`` maps id -> status."""
    return [make_listing(listing_id, status=changes.get(listing_id, 'active')) for listing_id in ids]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client():
    return FakeListingsClient()


@pytest.fixture
def monitor(config, store, client, transport):
    return Monitor(config, store, client, transport)


@pytest.mark.asyncio
async def test_new_listings_are_stored_batched_and_tracked(monitor, store, client, transport):
    ids = [f"l{n}" for n in range(12)]
    store.insert_listings(listings(ids[:5]))
    client.listings = listings(ids)

    assert await monitor.poll_once() is True

    assert [len(batch.listings) for _, batch in transport.posted] == [5, 2]
    assert [batch.sequence_number for _, batch in transport.posted] == [1, 2]
    assert [listing.id for _, batch in transport.posted for listing in batch.listings] == ids[5:]
    assert {listing.id for listing in store.list_undelivered()} == set(ids[:5])

    second_handle = transport.posted[1][0]
    assert monitor.tracker.resolve(second_handle, 2).id == 'l11'
    assert all(store.is_delivered(listing_id) for listing_id in ids[5:])
    assert monitor.stats['new_listings'] == 7
    assert monitor.stats['batches_posted'] == 2


@pytest.mark.asyncio
async def test_no_new_listings_is_fast_path(monitor, store, client, transport):
    store.insert_listings(listings(['a', 'b']))
    client.listings = listings(['a', 'b'])

    await monitor.poll_once()

    assert transport.posted == []
    assert monitor.stats['polls_completed'] == 1


@pytest.mark.asyncio
async def test_status_change_edits_whole_message_once(monitor, store, client, transport):
    ids = ['a', 'b', 'c', 'd', 'e', 'f', 'g']
    client.listings = listings(ids)
    await monitor.poll_once()
    first_handle = transport.posted[0][0]

    client.listings = listings(ids, c='in-progress')
    await monitor.poll_once()

    assert len(transport.edits) == 1
    handle, channel_ref, content = transport.edits[0]
    assert handle == first_handle
    assert channel_ref == transport.channel_ref
    assert content['sequence'] == 1
    assert [listing.id for listing in content['listings']] == ['a', 'b', 'c', 'd', 'e']
    assert [listing.status for listing in content['listings']] == [
        'active', 'active', 'in-progress', 'active', 'active']
    assert store.get_by_id('c').status == 'in-progress'
    assert len(transport.posted) == 2

    await monitor.poll_once()
    assert len(transport.edits) == 1


@pytest.mark.asyncio
async def test_failed_edit_does_not_block_other_messages(monitor, store, client, transport):
    ids = ['a', 'b', 'c', 'd', 'e', 'f', 'g']
    client.listings = listings(ids)
    await monitor.poll_once()
    first_handle, second_handle = (handle for handle, _ in transport.posted)
    transport.fail_edits.add(first_handle)

    client.listings = listings(ids, a='completed', g='cancelled')
    await monitor.poll_once()

    assert [handle for handle, _, _ in transport.edits] == [second_handle]
    assert store.get_by_id('a').status == 'completed'
    assert monitor.state is PollState.IDLE


@pytest.mark.asyncio
async def test_tick_during_poll_is_skipped(monitor, store, client):
    client.listings = listings(['a', 'b'])
    client.gate = asyncio.Event()

    running = asyncio.create_task(monitor.poll_once())
    await client.entered.wait()
    assert monitor.state is PollState.POLLING

    assert await monitor.poll_once() is False
    assert client.calls == 1
    assert store.list_undelivered() == []

    client.gate.set()
    assert await running is True
    assert monitor.state is PollState.IDLE
    assert monitor.stats['ticks_skipped'] == 1
    assert store.exists('a')


@pytest.mark.asyncio
async def test_failed_batch_is_not_rebatched(monitor, store, client, transport):
    ids = [f"l{n}" for n in range(7)]
    client.listings = listings(ids)
    transport.fail_batches.add(1)

    await monitor.poll_once()

    assert [batch.sequence_number for _, batch in transport.posted] == [2]
    assert {listing.id for listing in store.list_undelivered()} == set(ids[:5])
    assert all(store.get_delivery(listing_id) is None for listing_id in ids[:5])
    assert monitor.stats['batches_failed'] == 1

    transport.fail_batches.clear()
    await monitor.poll_once()
    assert len(transport.posted) == 1


@pytest.mark.asyncio
async def test_failed_batch_redelivered_when_enabled(monitor, store, client, transport):
    monitor.config.REDELIVER_UNDELIVERED = True
    client.listings = listings(['a', 'b'])
    transport.fail_batches.add(1)
    await monitor.poll_once()
    assert transport.posted == []

    transport.fail_batches.clear()
    await monitor.poll_once()

    assert [listing.id for _, batch in transport.posted for listing in batch.listings] == ['a', 'b']
    assert transport.posted[0][1].sequence_number == 2
    assert store.list_undelivered() == []


@pytest.mark.asyncio
async def test_fetch_error_is_contained(monitor, client, transport):
    client.error = ConnectionError('api down')
    errors = []
    monitor.events.on_error(lambda error, context: errors.append(context))

    assert await monitor.poll_once() is True
    assert monitor.state is PollState.IDLE
    assert monitor.stats['polls_failed'] == 1
    assert errors == ['poll_once']

    client.error = None
    client.listings = listings(['a'])
    await monitor.poll_once()
    assert len(transport.posted) == 1


@pytest.mark.asyncio
async def test_throwing_observer_does_not_abort_cycle(monitor, client, transport):
    seen = []

    def broken(listing):
        raise RuntimeError('bad hook')

    monitor.events.on_new_listing(broken)
    monitor.events.on_new_listing(lambda listing: seen.append(listing.id))
    client.listings = listings(['a', 'b'])

    await monitor.poll_once()

    assert seen == ['a', 'b']
    assert len(transport.posted) == 1
    assert monitor.stats['polls_failed'] == 0


@pytest.mark.asyncio
async def test_handle_interaction(monitor, client, transport):
    clicks = []
    monitor.events.on_interaction(clicks.append)
    client.listings = listings(['a', 'b'])
    await monitor.poll_once()
    handle = transport.posted[0][0]

    assert await monitor.handle_interaction(handle, 'buy:b:2', '42', 'user#42') == PURCHASE_REPLY
    assert clicks[0].listing.id == 'b'
    assert clicks[0].position == 2

    assert await monitor.handle_interaction(handle, 'garbage', '42', 'user#42') == INVALID_BUTTON_REPLY
    assert await monitor.handle_interaction(handle, 'buy:z:3', '42', 'user#42') == STALE_REFERENCE_REPLY
    assert await monitor.handle_interaction('999', 'buy:a:1', '42', 'user#42') == STALE_REFERENCE_REPLY
    assert len(clicks) == 1


@pytest.mark.asyncio
async def test_scheduler_waits_for_inflight_cycle(monitor, store, client):
    client.listings = listings(['a'])
    client.gate = asyncio.Event()
    stop = asyncio.Event()

    scheduler = asyncio.create_task(monitor.run_scheduler(stop))
    await client.entered.wait()
    stop.set()
    await asyncio.sleep(0.05)
    assert not scheduler.done()

    client.gate.set()
    await asyncio.wait_for(scheduler, timeout=2)

    assert monitor.state is PollState.IDLE
    assert client.calls == 1
    assert store.exists('a')


@pytest.mark.asyncio
async def test_batch_delay_only_between_sends(monitor, client, transport, monkeypatch):
    monitor.config.BATCH_DELAY = 0.5
    posted_before_sleep = []

    async def fake_sleep(delay):
        posted_before_sleep.append((len(transport.posted), delay))

    monkeypatch.setattr(main.asyncio, 'sleep', fake_sleep)
    client.listings = listings([f"l{n}" for n in range(12)])

    await monitor.poll_once()

    assert len(transport.posted) == 3
    assert posted_before_sleep == [(1, 0.5), (2, 0.5)]


@pytest.mark.asyncio
async def test_raising_send_does_not_stop_later_batches(monitor, store, client, transport):
    ids = [f"l{n}" for n in range(12)]
    client.listings = listings(ids)
    transport.raise_batches.add(2)
    errors = []
    monitor.events.on_error(lambda error, context: errors.append(context))

    assert await monitor.poll_once() is True

    assert [batch.sequence_number for _, batch in transport.posted] == [1, 3]
    assert {listing.id for listing in store.list_undelivered()} == set(ids[5:10])
    assert errors == ['deliver_batch']
    assert monitor.stats['batches_failed'] == 1
    assert monitor.stats['polls_failed'] == 0
    assert monitor.state is PollState.IDLE


@pytest.mark.asyncio
async def test_new_listings_batch_event_fires_once_before_each_listing(monitor, store, client):
    calls = []

    def broken(new_listings):
        raise RuntimeError('bad batch hook')

    monitor.events.on_new_listings_batch(broken)
    monitor.events.on_new_listings_batch(lambda new_listings: calls.append([listing.id for listing in new_listings]))
    monitor.events.on_new_listing(lambda listing: calls.append(listing.id))
    store.insert_listings(listings(['a']))
    client.listings = listings(['a', 'b', 'c'])

    await monitor.poll_once()
    await monitor.poll_once()

    assert calls == [['b', 'c'], 'b', 'c']
    assert monitor.stats['polls_failed'] == 0


class StalledNotifier:
    """A Discord client that connects but never becomes ready."""

    instances = []

    def __init__(self, config):
        self.closed = asyncio.Event()
        self.interaction_handler = None
        StalledNotifier.instances.append(self)

    async def start(self):
        await self.closed.wait()

    async def wait_until_ready(self):
        await asyncio.Event().wait()

    async def close(self):
        self.closed.set()


@pytest.mark.skipif(sys.platform == 'win32', reason='loop signal handlers are POSIX only')
@pytest.mark.asyncio
async def test_sigterm_before_ready_shuts_down(config, monkeypatch):
    StalledNotifier.instances.clear()
    monkeypatch.setattr(main, 'DiscordNotifier', StalledNotifier)
    asyncio.get_running_loop().call_later(0.2, os.kill, os.getpid(), signal.SIGTERM)

    exit_code = await asyncio.wait_for(main.run(config), timeout=3)

    assert exit_code == 0
    assert StalledNotifier.instances[0].closed.is_set()
