"""
Mutation coordinator for optimistic writes.

The coordinator runs one write against the cache:

1. Snapshot every affected key (MutationContext)
2. Apply the optimistic transform to each key, atomically for listeners
3. Issue the request
4. On success, replace the optimistic guess with server truth
5. On failure, restore each key from the snapshot unless a newer write
   landed meanwhile (stale rollback), then report the error once

Invariants:
    - Steps 1 and 2 run without awaiting, inside one store batch
    - Every transform runs before the first write; one that raises writes
      nothing
    - Rollback never overwrites a write newer than the optimistic apply
    - Transport failures are recovered here and returned, not raised
      (unless raise_on_error is set)
    - Settlement is shielded from the caller; a cancelled caller does not
      stop reconciliation

How to change safely:
    - Keep each transition in its own MutationAttempt method
    - Add new success strategies as reconcilers in transforms.py
    - Re-run the interleaving scenarios in tests/integration
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any, Union

from ..cache.keys import QueryKey, make_query_key
from ..cache.store import CacheStore
from ..errors import HttpStatusError, MutationError, SyncEngineError
from ..notify import Error, NotificationSink, Success
from ..transport.base import RequestSpec, Response, Transport
from .context import (
    TRANSITIONS,
    InvalidTransitionError,
    MutationContext,
    MutationResult,
    MutationState,
)
from .transforms import Reconciler, Updater

logger = logging.getLogger(__name__)

RequestLike = Union[RequestSpec, Callable[[], Awaitable[Any]]]
TransformLike = Union[Updater, Mapping[Any, Updater], None]


def normalize_keys(keys: Iterable[Any]) -> list[QueryKey]:
    """Normalize and de-duplicate keys, keeping order."""
    return list(dict.fromkeys(make_query_key(k) for k in keys))


def resolve_transforms(keys: list[QueryKey], transform: TransformLike) -> dict[QueryKey, Updater]:
    """Expand a single transform or a per-key mapping into one updater per key.

    Raises:
        ValueError: If a mapping names a key that is not affected, or
            misses one that is
    """
    if transform is None:
        return {}
    if callable(transform):
        return {k: transform for k in keys}

    per_key = {make_query_key(k): fn for k, fn in transform.items()}
    unknown = set(per_key) - set(keys)
    if unknown:
        raise ValueError(f"Transforms given for keys that are not affected: {sorted(map(str, unknown))}")
    missing = [k for k in keys if k not in per_key]
    if missing:
        raise ValueError(f"No optimistic transform for affected keys: {missing}")
    return per_key


async def response_payload(result: Any) -> Any:
    """Turn a request result into its payload.

    A Response must be ok (HttpStatusError otherwise); any other value is
    taken as the payload itself.
    """
    if isinstance(result, Response):
        if not result.ok:
            raise HttpStatusError(result.status, await result.json())
        return await result.json()
    return result


class MutationAttempt:
    """One pass through the mutation state machine.

    Each transition is a separate method so that it can be driven and
    tested on its own:

        >>> attempt = MutationAttempt(store, [key], {key: remove_items("u1")}, request)
        >>> attempt.snapshot()
        >>> attempt.apply_optimistic()
        >>> payload = await attempt.send()
        >>> await attempt.reconcile(payload)
    """

    def __init__(
        self,
        store: CacheStore,
        affected_keys: list[QueryKey],
        transforms: dict[QueryKey, Updater],
        request: RequestLike | None = None,
        transport: Transport | None = None,
        reconciler: Reconciler | None = None,
        label: str | None = None,
    ) -> None:
        self.store = store
        self.affected_keys = affected_keys
        self.transforms = transforms
        self.request = request
        self.transport = transport
        self.reconciler = reconciler
        self.attempt_id = uuid.uuid4().hex[:8]
        self.label = label or self.attempt_id
        self.state = MutationState.IDLE
        self.context: MutationContext | None = None

    def _transition(self, target: MutationState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        logger.debug(
            "Mutation transition",
            extra={
                "mutation": self.label,
                "from_state": self.state.value,
                "to_state": target.value,
            },
        )
        self.state = target

    def _require_context(self, target: MutationState) -> MutationContext:
        if self.context is None:
            raise InvalidTransitionError(self.state, target)
        return self.context

    def snapshot(self) -> MutationContext:
        """Capture the current entry and version of every affected key."""
        self._transition(MutationState.SNAPSHOTTING)
        context = MutationContext(affected_keys=list(self.affected_keys))
        for key in self.affected_keys:
            entry = self.store.get(key)
            context.snapshot[key] = entry
            context.version_at_snapshot[key] = entry.version if entry else 0
        self.context = context
        return context

    def apply_optimistic(self) -> None:
        """Patch every affected key with its optimistic transform.

        All transforms run before anything is written, so a transform that
        raises leaves every key untouched.

        Raises:
            InvalidTransitionError: If no snapshot was taken
            Exception: Whatever a transform raised; nothing was written
        """
        context = self._require_context(MutationState.OPTIMISTIC_APPLIED)
        try:
            updates = {
                key: transform(self.store.get_data(key))
                for key, transform in self.transforms.items()
            }
        except Exception:
            self.context = None
            raise

        with self.store.batch():
            for key in self.affected_keys:
                if key in updates:
                    self.store.set(key, updates[key])
                context.version_after_apply[key] = self.store.version(key)
        self._transition(MutationState.OPTIMISTIC_APPLIED)

    def begin(self) -> MutationContext:
        """Snapshot and apply in one synchronous step."""
        context = self.snapshot()
        self.apply_optimistic()
        return context

    async def send(self) -> Any:
        """Issue the request.

        Returns:
            Server payload

        Raises:
            Exception: Any transport failure or non-ok response
        """
        self._transition(MutationState.IN_FLIGHT)
        request = self.request
        if request is None:
            return None
        if isinstance(request, RequestSpec):
            if self.transport is None:
                raise SyncEngineError("RequestSpec given but no transport configured")
            result = await request.send(self.transport)
        else:
            result = request()
            if inspect.isawaitable(result):
                result = await result
        return await response_payload(result)

    async def reconcile(self, payload: Any) -> None:
        """Replace the optimistic data with the server's."""
        if self.reconciler is not None:
            try:
                with self.store.batch():
                    for key in self.affected_keys:
                        self.store.patch(
                            key,
                            lambda old, k=key: self.reconciler(k, old, payload),
                        )
            except Exception as e:
                logger.error(
                    f"Reconciler failed, falling back to refetch: {e}",
                    extra={"mutation": self.label},
                    exc_info=True,
                )
                await self._refetch_affected()
        else:
            await self._refetch_affected()
        self._finish(MutationState.RECONCILED)

    async def resync(self) -> None:
        """Settle by discarding the optimistic guess in favour of a refetch.

        Used when the guess is known to be wrong but a rollback would be
        too (a partially applied batch).
        """
        await self._refetch_affected()
        self._finish(MutationState.RECONCILED)

    def roll_back(self) -> list[QueryKey]:
        """Restore every affected key from the snapshot.

        Returns:
            Keys whose rollback was skipped because a newer write landed
        """
        context = self._require_context(MutationState.ROLLED_BACK)
        stale: list[QueryKey] = []
        with self.store.batch():
            for key in self.affected_keys:
                restored = self.store.restore(
                    key,
                    context.snapshot.get(key),
                    expected_version=context.version_after_apply.get(key, 0),
                )
                if not restored:
                    stale.append(key)
        if stale:
            logger.debug(
                "Stale rollback skipped for newer writes",
                extra={"mutation": self.label, "keys": stale},
            )
        self._finish(MutationState.ROLLED_BACK)
        return stale

    def _finish(self, state: MutationState) -> None:
        self._transition(state)
        self.context = None

    async def _refetch_affected(self) -> None:
        # Keys without a query function are only marked stale
        for key in self.affected_keys:
            errors = await self.store.invalidate_and_refetch(key, exact=True)
            for failed_key, error in errors.items():
                if error is not None:
                    logger.warning(
                        f"Refetch after mutation failed: {error}",
                        extra={"mutation": self.label, "key": failed_key},
                    )


class MutationCoordinator:
    """Runs single optimistic mutations against a CacheStore.

    Example:
        >>> coordinator = MutationCoordinator(store, transport, sink)
        >>> result = await coordinator.mutate(
        ...     [("users", "pending")],
        ...     remove_items("u1"),
        ...     RequestSpec("POST", "/api/admin/users/u1/approve"),
        ... )
        >>> result.status
        <MutationState.RECONCILED: 'reconciled'>
    """

    def __init__(
        self,
        store: CacheStore,
        transport: Transport | None = None,
        sink: NotificationSink | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.sink = sink
        self._pending: set[asyncio.Future] = set()

    def begin(
        self,
        affected_keys: Iterable[Any],
        optimistic_transform: TransformLike,
        request: RequestLike | None = None,
        *,
        reconcile: Reconciler | None = None,
        label: str | None = None,
    ) -> MutationAttempt:
        """Create an attempt and apply its optimistic patch now."""
        keys = normalize_keys(affected_keys)
        attempt = MutationAttempt(
            self.store,
            keys,
            resolve_transforms(keys, optimistic_transform),
            request=request,
            transport=self.transport,
            reconciler=reconcile,
            label=label,
        )
        attempt.begin()
        return attempt

    async def mutate(
        self,
        affected_keys: Iterable[Any],
        optimistic_transform: TransformLike,
        request: RequestLike,
        *,
        reconcile: Reconciler | None = None,
        invalidate_on_success: Iterable[Any] = (),
        success_message: str | None = None,
        error_message: str | None = None,
        raise_on_error: bool = False,
        label: str | None = None,
    ) -> MutationResult:
        """Apply an optimistic write and settle it.

        Args:
            affected_keys: Keys to snapshot and patch
            optimistic_transform: One updater for all keys, or {key: updater}
            request: RequestSpec, or async callable returning a Response
                (or the payload directly)
            reconcile: (key, optimistic_data, payload) -> data applied on
                success; without it affected keys are refetched
            invalidate_on_success: Extra key prefixes to invalidate on success
            success_message: Message for the success notification
            error_message: Message for the error notification
            raise_on_error: Raise MutationError after rolling back
            label: Name used in logs

        Returns:
            MutationResult (RECONCILED or ROLLED_BACK)

        Raises:
            MutationError: Only if raise_on_error and the mutation failed
            ValueError: If optimistic_transform names unknown keys
        """
        attempt = self.begin(
            affected_keys,
            optimistic_transform,
            request,
            reconcile=reconcile,
            label=label,
        )
        settle = asyncio.ensure_future(
            self._settle(attempt, list(invalidate_on_success), success_message, error_message)
        )
        self._pending.add(settle)
        settle.add_done_callback(self._pending.discard)
        result = await asyncio.shield(settle)

        if raise_on_error and not result.ok:
            raise MutationError(
                error_message or _error_text(result.error),
                cause=result.error,
                stale_keys=result.stale_keys,
            ) from result.error
        return result

    async def wait_settled(self) -> None:
        """Wait for every mutation started here to settle (testing helper)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _settle(
        self,
        attempt: MutationAttempt,
        invalidate_on_success: list[Any],
        success_message: str | None,
        error_message: str | None,
    ) -> MutationResult:
        try:
            payload = await attempt.send()
        except Exception as e:
            stale = attempt.roll_back()
            logger.warning(
                f"Mutation failed and was rolled back: {e}",
                extra={
                    "mutation": attempt.label,
                    "keys": attempt.affected_keys,
                    "stale_keys": stale,
                },
            )
            self._notify(Error(error_message or _error_text(e), e))
            return MutationResult(MutationState.ROLLED_BACK, error=e, stale_keys=stale)

        await attempt.reconcile(payload)
        for prefix in invalidate_on_success:
            self.store.invalidate(prefix)
        logger.debug("Mutation reconciled", extra={"mutation": attempt.label})
        self._notify(Success(success_message) if success_message else Success())
        return MutationResult(MutationState.RECONCILED, data=payload)

    def _notify(self, outcome: Any) -> None:
        if self.sink is not None:
            self.sink.notify(outcome)


def _error_text(error: BaseException | None) -> str:
    if isinstance(error, SyncEngineError):
        return error.message
    if error is not None and str(error):
        return str(error)
    return "An error occurred. Please try again."
