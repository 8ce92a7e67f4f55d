"""
Integration tests for the engine's consistency guarantees.

Tests cover:
- Failed mutations leave each key as before, unless a newer write landed
- Successful mutations end with server data, not the optimistic guess, even when a fetch
  was already running across the commit
- Bulk outcomes account for every item exactly once
- Realtime events can be applied any number of times
- The optimistic value is what readers see until settlement
"""

import asyncio

import pytest

from portal.schoolsync.cache.query import CachedQuery
from portal.schoolsync.cache.store import CacheStore
from portal.schoolsync.mutation.bulk import BulkExecutor
from portal.schoolsync.mutation.context import MutationState
from portal.schoolsync.mutation.coordinator import MutationCoordinator
from portal.schoolsync.mutation.transforms import remove_items, update_items, upsert_response_record
from portal.schoolsync.notify import RecordingNotificationSink
from portal.schoolsync.realtime.events import RealtimeEvent
from portal.schoolsync.realtime.memory import InMemoryChangeFeed
from portal.schoolsync.realtime.subscriber import RealtimeSubscriber, TableBinding
from portal.schoolsync.transport.base import RequestSpec, Response
from portal.schoolsync.transport.memory import InMemoryTransport

PENDING = ("users", "pending")
ALL = ("users", "all")
STATS = ("stats", "dashboard")


def users(*ids):
    return [{"id": i, "name": i.upper()} for i in ids]


@pytest.fixture
def store():
    s = CacheStore()
    s.set(PENDING, users("a", "b", "c"))
    s.set(ALL, users("a", "b", "c", "d"))
    s.set(STATS, {"pending": 3})
    return s


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


class TestRollbackCorrectness:
    """Failed mutations restore every affected key."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 409, 500, 503])
    async def test_all_keys_restored(self, store, transport, sink, status):
        before = {k: store.get_data(k) for k in (PENDING, ALL, STATS)}
        transport.respond("POST", "/api/admin/users/a/approve", status)
        coordinator = MutationCoordinator(store, transport, sink)

        await coordinator.mutate(
            [PENDING, ALL, STATS],
            {
                PENDING: remove_items("a"),
                ALL: update_items(["a"], {"status": "approved"}),
                STATS: lambda old: {"pending": old["pending"] - 1},
            },
            RequestSpec("POST", "/api/admin/users/a/approve"),
        )

        assert {k: store.get_data(k) for k in (PENDING, ALL, STATS)} == before

    @pytest.mark.asyncio
    async def test_newer_write_preserved_on_one_key_only(self, store, transport, sink):
        transport.respond("POST", "/api/admin/users/a/approve", 500)
        gate = transport.hold("POST", "/api/admin/users/a/approve")
        coordinator = MutationCoordinator(store, transport, sink)

        task = asyncio.ensure_future(
            coordinator.mutate(
                [PENDING, STATS],
                {PENDING: remove_items("a"), STATS: lambda old: {"pending": 2}},
                RequestSpec("POST", "/api/admin/users/a/approve"),
            )
        )
        await transport.wait_for_in_flight("POST", "/api/admin/users/a/approve")
        store.set(STATS, {"pending": 7})
        gate.set()
        result = await task

        assert result.stale_keys == [STATS]
        assert store.get_data(PENDING) == users("a", "b", "c")
        assert store.get_data(STATS) == {"pending": 7}


class TestReconciliation:
    """Successful mutations end with server data."""

    @pytest.mark.asyncio
    async def test_server_record_replaces_guess(self, store, transport, sink):
        transport.respond(
            "PUT", "/api/users/b", 200, {"id": "b", "name": "B (server)", "updated": True}
        )
        coordinator = MutationCoordinator(store, transport, sink)
        await coordinator.mutate(
            [ALL],
            update_items(["b"], {"name": "B (guess)"}),
            RequestSpec("PUT", "/api/users/b", {"name": "B (guess)"}),
            reconcile=upsert_response_record(),
        )
        assert store.get_data(ALL)[1] == {"id": "b", "name": "B (server)", "updated": True}

    @pytest.mark.asyncio
    async def test_refetch_replaces_guess(self, store, transport, sink):
        async def fetch(key):
            return users("b", "c", "e")

        store.bind_query(PENDING, fetch)
        transport.respond("POST", "/api/admin/users/a/approve", 200, {"id": "a"})
        coordinator = MutationCoordinator(store, transport, sink)
        await coordinator.mutate([PENDING], remove_items("a"), RequestSpec("POST", "/api/admin/users/a/approve"))
        assert store.get_data(PENDING) == users("b", "c", "e")

    @pytest.mark.asyncio
    async def test_fetch_started_before_commit_is_not_trusted(self, store, transport, sink):
        server = users("a", "b", "c")
        fetch_started = asyncio.Event()
        release_fetch = asyncio.Event()

        async def fetch(key):
            snapshot = list(server)
            fetch_started.set()
            await release_fetch.wait()
            return snapshot

        def approve(body):
            server[:] = [u for u in server if u["id"] != "a"]
            return Response(200, {"id": "a"})

        store.bind_query(PENDING, fetch)
        store.subscribe(PENDING, lambda entry: None)
        transport.route("POST", "/api/admin/users/a/approve", approve)
        gate = transport.hold("POST", "/api/admin/users/a/approve")
        coordinator = MutationCoordinator(store, transport, sink)

        task = asyncio.ensure_future(
            coordinator.mutate([PENDING], remove_items("a"), RequestSpec("POST", "/api/admin/users/a/approve"))
        )
        await transport.wait_for_in_flight("POST", "/api/admin/users/a/approve")
        # A realtime nudge starts a fetch that reads the server before the commit
        store.invalidate(PENDING)
        await fetch_started.wait()
        gate.set()
        for _ in range(10):
            await asyncio.sleep(0)
        release_fetch.set()
        result = await task

        assert result.status == MutationState.RECONCILED
        assert server == users("b", "c")
        assert store.get_data(PENDING) == users("b", "c")
        assert not store.get(PENDING).is_stale


class TestBulkCompleteness:
    """Every bulk item lands in exactly one bucket."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failing",
        [set(), {"u3"}, {"u0", "u5", "u9"}, {f"u{i}" for i in range(10)}],
    )
    async def test_partition(self, transport, sink, failing):
        store = CacheStore()
        ids = [f"u{i}" for i in range(10)]
        store.set(PENDING, [{"id": i} for i in ids])

        async def item_request(user_id):
            await asyncio.sleep(0)
            if user_id in failing:
                return Response(500, {"message": f"{user_id} failed"})
            return Response(200, {"id": user_id})

        executor = BulkExecutor(store, transport, sink)
        outcome = await executor.run_bulk(ids, item_request, affected_keys=[PENDING])

        assert len(outcome.succeeded) + len(outcome.failed) == len(ids)
        assert set(outcome.succeeded).isdisjoint(outcome.failed_ids)
        assert set(outcome.failed_ids) == failing
        assert outcome.succeeded == [i for i in ids if i not in failing]


class TestIdempotentRealtime:
    """Applying an event twice equals applying it once."""

    EVENTS = [
        RealtimeEvent.update("users", {"id": "b", "name": "Bee"}),
        RealtimeEvent.update("users", {"id": "b", "name": "Bee"}, timestamp=1700000000),
        RealtimeEvent.delete("users", "c"),
        RealtimeEvent.delete("users", "zz"),
        RealtimeEvent.insert("users", {"id": "e"}),
    ]

    @pytest.mark.parametrize("event", EVENTS, ids=str)
    def test_apply_twice(self, event):
        def run(times):
            store = CacheStore()
            store.set(PENDING, users("a", "b", "c"))
            store.set(ALL, users("a", "b", "c", "d"))
            subscriber = RealtimeSubscriber(store, bindings=[TableBinding("users")])
            for _ in range(times):
                subscriber.handle_event(event)
            return {k: (e.data, e.version, e.is_stale) for k in store.keys() for e in [store.get(k)]}

        assert run(2) == run(1)

    @pytest.mark.asyncio
    async def test_replayed_feed_events(self, store):
        feed = InMemoryChangeFeed()
        subscriber = RealtimeSubscriber(store, feed, [TableBinding("users")])
        subscriber.watch("users")
        feed.publish(RealtimeEvent.update("users", {"id": "a", "name": "Ay"}, timestamp=10))
        feed.publish(RealtimeEvent.delete("users", "b", timestamp=11))
        await feed.flush()
        state = {k: store.get(k).version for k in (PENDING, ALL)}

        feed.replay()
        await feed.flush()
        assert {k: store.get(k).version for k in (PENDING, ALL)} == state
        assert store.get_data(PENDING) == [{"id": "a", "name": "Ay"}, {"id": "c", "name": "C"}]
        await subscriber.close()


class TestOptimisticVisibility:
    """Readers see the optimistic value until settlement."""

    @pytest.mark.asyncio
    async def test_observer_sees_optimistic_value(self, store, transport, sink):
        states = []
        query = CachedQuery(store, PENDING, on_change=states.append)
        await query.start()

        transport.respond("POST", "/api/admin/users/a/approve", 500)
        gate = transport.hold("POST", "/api/admin/users/a/approve")
        coordinator = MutationCoordinator(store, transport, sink)
        task = asyncio.ensure_future(
            coordinator.mutate([PENDING], remove_items("a"), RequestSpec("POST", "/api/admin/users/a/approve"))
        )
        await transport.wait_for_in_flight("POST", "/api/admin/users/a/approve")

        for _ in range(5):
            await asyncio.sleep(0)
            assert query.state.data == users("b", "c")
        assert states[-1].data == users("b", "c")

        gate.set()
        await task
        assert query.state.data == users("a", "b", "c")
        query.close()
