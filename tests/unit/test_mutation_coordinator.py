"""
Unit tests for the mutation state machine and coordinator.

Tests cover:
- Transition order of MutationAttempt
- Rollback and the stale rollback guard
- Reconcile strategies (reconciler, refetch, fallback)
- Error reporting through the sink
"""

import asyncio

import pytest

from portal.schoolsync.cache.store import CacheStore
from portal.schoolsync.errors import HttpStatusError, MutationError, NetworkError
from portal.schoolsync.mutation.context import InvalidTransitionError, MutationState
from portal.schoolsync.mutation.coordinator import (
    MutationAttempt,
    MutationCoordinator,
    resolve_transforms,
)
from portal.schoolsync.mutation.transforms import (
    drop_response_record,
    remove_items,
    replace_with_response,
    update_items,
)
from portal.schoolsync.notify import Error, RecordingNotificationSink, Success
from portal.schoolsync.transport.base import RequestSpec, Response
from portal.schoolsync.transport.memory import InMemoryTransport

PENDING = ("users", "pending")
APPROVE_U1 = "/api/admin/users/u1/approve"


@pytest.fixture
def store():
    s = CacheStore()
    s.set(PENDING, [{"id": "u1"}, {"id": "u2"}])
    return s


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def coordinator(store, transport, sink):
    return MutationCoordinator(store, transport, sink)


class TestResolveTransforms:
    """Tests for per-key transform resolution."""

    def test_single_callable_applies_to_all(self):
        fn = remove_items("u1")
        assert resolve_transforms([PENDING, ("users",)], fn) == {PENDING: fn, ("users",): fn}

    def test_mapping_must_cover_keys(self):
        with pytest.raises(ValueError):
            resolve_transforms([PENDING, ("users",)], {PENDING: remove_items("u1")})

    def test_mapping_rejects_unknown_keys(self):
        with pytest.raises(ValueError):
            resolve_transforms([PENDING], {("terms",): remove_items("u1")})


class TestMutationAttempt:
    """Tests for MutationAttempt transitions."""

    @pytest.mark.asyncio
    async def test_happy_path_transitions(self, store):
        attempt = MutationAttempt(
            store,
            [PENDING],
            {PENDING: remove_items("u1")},
            request=lambda: {"id": "u1"},
            reconciler=drop_response_record(),
        )
        assert attempt.state == MutationState.IDLE
        context = attempt.snapshot()
        assert attempt.state == MutationState.SNAPSHOTTING
        assert context.version_at_snapshot[PENDING] == 1

        attempt.apply_optimistic()
        assert attempt.state == MutationState.OPTIMISTIC_APPLIED
        assert context.version_after_apply[PENDING] == 2
        assert store.get_data(PENDING) == [{"id": "u2"}]

        payload = await attempt.send()
        assert attempt.state == MutationState.IN_FLIGHT
        await attempt.reconcile(payload)
        assert attempt.state == MutationState.RECONCILED
        assert attempt.context is None

    @pytest.mark.asyncio
    async def test_send_before_apply_rejected(self, store):
        attempt = MutationAttempt(store, [PENDING], {}, request=lambda: None)
        with pytest.raises(InvalidTransitionError):
            await attempt.send()
        assert attempt.state == MutationState.IDLE

    def test_apply_without_snapshot_rejected(self, store):
        attempt = MutationAttempt(store, [PENDING], {PENDING: remove_items("u1")})
        with pytest.raises(InvalidTransitionError):
            attempt.apply_optimistic()
        with pytest.raises(InvalidTransitionError):
            attempt.roll_back()
        assert store.version(PENDING) == 1

    def test_failing_transform_writes_nothing(self, store):
        everyone = ("users", "all")
        store.set(everyone, [{"id": "u1"}])
        seen = []
        store.subscribe(PENDING, lambda entry: seen.append(entry.data))

        def broken(old):
            raise TypeError("bad transform")

        attempt = MutationAttempt(
            store, [PENDING, everyone], {PENDING: remove_items("u1"), everyone: broken}
        )
        attempt.snapshot()
        with pytest.raises(TypeError):
            attempt.apply_optimistic()

        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2"}]
        assert store.version(PENDING) == 1
        assert store.version(everyone) == 1
        assert seen == []
        assert attempt.context is None

    @pytest.mark.asyncio
    async def test_terminal_state_is_final(self, store):
        attempt = MutationAttempt(store, [PENDING], {PENDING: remove_items("u1")})
        attempt.begin()
        await attempt.send()
        attempt.roll_back()
        assert attempt.state.is_terminal
        with pytest.raises(InvalidTransitionError):
            await attempt.send()

    @pytest.mark.asyncio
    async def test_roll_back_restores_snapshot(self, store):
        attempt = MutationAttempt(store, [PENDING], {PENDING: remove_items("u1")})
        attempt.begin()
        await attempt.send()
        assert attempt.roll_back() == []
        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2"}]
        assert attempt.state == MutationState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_roll_back_skips_newer_write(self, store):
        attempt = MutationAttempt(store, [PENDING], {PENDING: remove_items("u1")})
        attempt.begin()
        await attempt.send()
        store.set(PENDING, [{"id": "u3"}])
        assert attempt.roll_back() == [PENDING]
        assert store.get_data(PENDING) == [{"id": "u3"}]

    @pytest.mark.asyncio
    async def test_roll_back_of_absent_key(self):
        store = CacheStore()
        attempt = MutationAttempt(store, [("terms",)], {("terms",): lambda old: [{"id": "t1"}]})
        attempt.begin()
        assert store.get_data(("terms",)) == [{"id": "t1"}]
        await attempt.send()
        attempt.roll_back()
        assert store.get(("terms",)).data is None

    @pytest.mark.asyncio
    async def test_failing_reconciler_falls_back_to_refetch(self, store):
        async def fetch(key):
            return [{"id": "u2", "from": "server"}]

        def broken(key, old, payload):
            raise KeyError("id")

        store.bind_query(PENDING, fetch)
        attempt = MutationAttempt(
            store,
            [PENDING],
            {PENDING: remove_items("u1")},
            request=lambda: {"ok": True},
            reconciler=broken,
        )
        attempt.begin()
        payload = await attempt.send()
        await attempt.reconcile(payload)
        assert store.get_data(PENDING) == [{"id": "u2", "from": "server"}]


class TestMutationCoordinator:
    """Tests for MutationCoordinator.mutate()."""

    @pytest.mark.asyncio
    async def test_success_with_reconciler(self, coordinator, store, transport, sink):
        transport.respond("POST", "/api/users/u2", 200, {"id": "u2", "name": "Server"})
        result = await coordinator.mutate(
            [PENDING],
            update_items(["u2"], {"name": "Guess"}),
            RequestSpec("POST", "/api/users/u2", {"name": "Guess"}),
            reconcile=lambda key, old, payload: [{"id": "u1"}, payload],
            success_message="User updated",
        )
        assert result.ok
        assert result.status == MutationState.RECONCILED
        assert result.data == {"id": "u2", "name": "Server"}
        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2", "name": "Server"}]
        assert sink.outcomes == [Success("User updated")]

    @pytest.mark.asyncio
    async def test_success_without_reconciler_refetches(self, coordinator, store, transport):
        calls = 0

        async def fetch(key):
            nonlocal calls
            calls += 1
            return [{"id": "u2"}]

        store.bind_query(PENDING, fetch)
        transport.respond("POST", APPROVE_U1, 200, {"id": "u1", "status": "approved"})
        result = await coordinator.mutate(
            [PENDING], remove_items("u1"), RequestSpec("POST", APPROVE_U1)
        )
        assert result.ok
        assert calls == 1
        assert store.get_data(PENDING) == [{"id": "u2"}]
        assert not store.get(PENDING).is_stale

    @pytest.mark.asyncio
    async def test_failing_transform_aborts_before_request(self, coordinator, store, transport, sink):
        def broken(old):
            raise TypeError("bad transform")

        store.set(("stats",), {"pending": 2})
        with pytest.raises(TypeError):
            await coordinator.mutate(
                [PENDING, ("stats",)],
                {PENDING: remove_items("u1"), ("stats",): broken},
                RequestSpec("POST", APPROVE_U1),
            )
        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2"}]
        assert store.get_data(("stats",)) == {"pending": 2}
        assert transport.requests == []
        assert sink.outcomes == []

    @pytest.mark.asyncio
    async def test_success_without_query_fn_marks_stale(self, coordinator, store, transport):
        transport.respond("POST", APPROVE_U1, 200, {"id": "u1"})
        await coordinator.mutate([PENDING], remove_items("u1"), RequestSpec("POST", APPROVE_U1))
        entry = store.get(PENDING)
        assert entry.data == [{"id": "u2"}]
        assert entry.is_stale

    @pytest.mark.asyncio
    async def test_http_failure_rolls_back_and_notifies(self, coordinator, store, transport, sink):
        transport.respond("POST", APPROVE_U1, 500, {"message": "Database unavailable"})
        result = await coordinator.mutate(
            [PENDING], remove_items("u1"), RequestSpec("POST", APPROVE_U1)
        )
        assert not result.ok
        assert result.status == MutationState.ROLLED_BACK
        assert isinstance(result.error, HttpStatusError)
        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2"}]
        assert sink.outcomes == [Error("Database unavailable", result.error)]

    @pytest.mark.asyncio
    async def test_network_failure_uses_error_message(self, coordinator, transport, sink):
        transport.fail("POST", APPROVE_U1, NetworkError())
        await coordinator.mutate(
            [PENDING],
            remove_items("u1"),
            RequestSpec("POST", APPROVE_U1),
            error_message="Failed to approve user",
        )
        assert sink.last.message == "Failed to approve user"

    @pytest.mark.asyncio
    async def test_raise_on_error(self, coordinator, store, transport):
        transport.respond("POST", APPROVE_U1, 400, {"message": "Already approved"})
        with pytest.raises(MutationError) as exc_info:
            await coordinator.mutate(
                [PENDING],
                remove_items("u1"),
                RequestSpec("POST", APPROVE_U1),
                raise_on_error=True,
            )
        assert exc_info.value.message == "Already approved"
        assert isinstance(exc_info.value.cause, HttpStatusError)
        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2"}]

    @pytest.mark.asyncio
    async def test_callable_request(self, coordinator, store):
        async def approve():
            return Response(200, [{"id": "u2"}])

        result = await coordinator.mutate(
            [PENDING], remove_items("u1"), approve, reconcile=replace_with_response
        )
        assert result.ok
        assert store.get_data(PENDING) == [{"id": "u2"}]

    @pytest.mark.asyncio
    async def test_multi_key_apply_is_atomic_for_listeners(self, coordinator, store, transport):
        store.set(("users", "all"), [{"id": "u1", "status": "pending"}])
        seen = []
        store.subscribe(PENDING, lambda e: seen.append(store.get_data(("users", "all"))))
        transport.respond("POST", APPROVE_U1, 200, {"id": "u1"})
        await coordinator.mutate(
            [PENDING, ("users", "all")],
            {
                PENDING: remove_items("u1"),
                ("users", "all"): update_items(["u1"], {"status": "approved"}),
            },
            RequestSpec("POST", APPROVE_U1),
        )
        # The first notification already sees both optimistic writes
        assert seen[0] == [{"id": "u1", "status": "approved"}]

    @pytest.mark.asyncio
    async def test_invalidate_on_success(self, coordinator, store, transport):
        store.set(("stats", "dashboard"), {"pending": 2})
        transport.respond("POST", APPROVE_U1, 200, {"id": "u1"})
        await coordinator.mutate(
            [PENDING],
            remove_items("u1"),
            RequestSpec("POST", APPROVE_U1),
            invalidate_on_success=[("stats",)],
        )
        assert store.get(("stats", "dashboard")).is_stale

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_stop_settlement(self, coordinator, store, transport):
        transport.respond("POST", APPROVE_U1, 500)
        gate = transport.hold("POST", APPROVE_U1)
        task = asyncio.ensure_future(
            coordinator.mutate([PENDING], remove_items("u1"), RequestSpec("POST", APPROVE_U1))
        )
        await transport.wait_for_in_flight("POST", APPROVE_U1)
        task.cancel()
        gate.set()
        await coordinator.wait_settled()
        assert store.get_data(PENDING) == [{"id": "u1"}, {"id": "u2"}]
