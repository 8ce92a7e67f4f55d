"""
Bulk executor for optimistic batch mutations (bulk approve, bulk delete).

One snapshot and one optimistic patch cover the whole batch; the item
requests then run concurrently and every item settles on its own. The
aggregate is classified as:

- SUCCESS: all items succeeded -> reconcile, clear selection
- FAILURE: all items failed -> roll back the batch patch, one error,
  restore the selection so the user can retry
- PARTIAL: mixed -> the optimistic guess assumed uniform success and is
  no longer trustworthy, so affected keys are invalidated and refetched
  (not rolled back); a partial-success notification lists the failed ids
  and the selection is cleared

Invariants:
    - len(succeeded) + len(failed) == number of distinct ids attempted
    - succeeded and failed are disjoint and follow submission order
    - One item's failure never cancels or delays another (no fail-fast)
    - A partial result is never reported as a plain success
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..cache.store import CacheStore
from ..config import BulkConfig
from ..errors import BulkError, SyncEngineError
from ..notify import Error, NotificationSink, PartialSuccess, SelectionState, Success
from ..transport.base import RequestSpec, Transport
from .coordinator import (
    MutationAttempt,
    TransformLike,
    normalize_keys,
    resolve_transforms,
    response_payload,
)
from .transforms import Reconciler, remove_items

logger = logging.getLogger(__name__)

PerItemRequest = Callable[[Any], Any]


class BulkStatus(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


@dataclass(frozen=True)
class BulkFailure:
    id: Any
    error: BaseException


@dataclass
class BulkOutcome:
    """Per-item results of a bulk mutation.

    Attributes:
        succeeded: Ids that succeeded, in submission order
        failed: Failures, in submission order
        payloads: Server payload per succeeded id
    """

    succeeded: list = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)
    payloads: dict = field(default_factory=dict)

    @classmethod
    def from_results(cls, item_ids: list, results: list) -> BulkOutcome:
        """Build an outcome from gather() results aligned with item_ids.

        Raises:
            ValueError: If ids and results differ in length
        """
        if len(item_ids) != len(results):
            raise ValueError(f"{len(item_ids)} ids but {len(results)} results")
        outcome = cls()
        for item_id, result in zip(item_ids, results):
            if isinstance(result, BaseException):
                outcome.failed.append(BulkFailure(item_id, result))
            else:
                outcome.succeeded.append(item_id)
                outcome.payloads[item_id] = result
        return outcome

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def failed_ids(self) -> list:
        return [f.id for f in self.failed]

    @property
    def status(self) -> BulkStatus:
        if not self.failed:
            return BulkStatus.SUCCESS
        if not self.succeeded:
            return BulkStatus.FAILURE
        return BulkStatus.PARTIAL


class BulkExecutor:
    """Runs N independent item mutations behind one optimistic patch.

    Example:
        >>> executor = BulkExecutor(store, transport, sink, selection)
        >>> outcome = await executor.run_bulk(
        ...     ["a", "b", "c"],
        ...     lambda user_id: RequestSpec("POST", f"/api/admin/users/{user_id}/approve"),
        ...     affected_keys=[("users", "pending")],
        ... )
        >>> outcome.status
        <BulkStatus.PARTIAL: 'partial'>
    """

    def __init__(
        self,
        store: CacheStore,
        transport: Transport | None = None,
        sink: NotificationSink | None = None,
        selection: SelectionState | None = None,
        config: BulkConfig | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.sink = sink
        self.selection = selection
        self.config = config or BulkConfig()

    async def run_bulk(
        self,
        item_ids: Iterable[Any],
        per_item_request: PerItemRequest,
        *,
        affected_keys: Iterable[Any] = (),
        optimistic_transform: TransformLike = None,
        id_field: str = "id",
        reconcile: Reconciler | None = None,
        invalidate_on_success: Iterable[Any] = (),
        success_message: str | None = None,
        error_message: str | None = None,
        selection: SelectionState | None = None,
        label: str | None = None,
    ) -> BulkOutcome:
        """Apply a batch optimistically and settle every item.

        Args:
            item_ids: Ids to act on (duplicates are collapsed)
            per_item_request: item_id -> RequestSpec, or an awaitable
                returning a Response (or the payload directly)
            affected_keys: Keys to snapshot and patch once for the batch
            optimistic_transform: Batch updater (default: remove all ids
                from list data)
            id_field: Record id field used by the default transform
            reconcile: (key, data, {id: payload}) -> data on total success;
                without it affected keys are refetched
            invalidate_on_success: Extra prefixes to invalidate when any
                item succeeded
            success_message: Message for the success notification
            error_message: Message for the total-failure notification
            selection: Selection to clear/restore (default: executor's)
            label: Name used in logs

        Returns:
            BulkOutcome keyed by item id
        """
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return BulkOutcome()

        keys = normalize_keys(affected_keys)
        if optimistic_transform is None:
            optimistic_transform = remove_items(*ids, id_field=id_field)

        attempt = MutationAttempt(
            self.store,
            keys,
            resolve_transforms(keys, optimistic_transform),
            reconciler=reconcile,
            label=label or f"bulk[{len(ids)}]",
        )
        attempt.begin()

        settle = asyncio.ensure_future(
            self._settle(
                attempt,
                ids,
                per_item_request,
                list(invalidate_on_success),
                success_message,
                error_message,
                selection if selection is not None else self.selection,
            )
        )
        return await asyncio.shield(settle)

    async def _settle(
        self,
        attempt: MutationAttempt,
        ids: list,
        per_item_request: PerItemRequest,
        invalidate_on_success: list,
        success_message: str | None,
        error_message: str | None,
        selection: SelectionState | None,
    ) -> BulkOutcome:
        # Every item runs inside the single IN_FLIGHT state of the batch
        await attempt.send()
        semaphore = (
            asyncio.Semaphore(self.config.max_concurrency)
            if self.config.max_concurrency > 0
            else None
        )
        results = await asyncio.gather(
            *(self._run_item(item_id, per_item_request, semaphore) for item_id in ids),
            return_exceptions=True,
        )
        outcome = BulkOutcome.from_results(ids, results)
        status = outcome.status

        if status == BulkStatus.SUCCESS:
            await attempt.reconcile(outcome.payloads)
            self._invalidate(invalidate_on_success)
            if selection is not None:
                selection.clear()
            logger.info(
                "Bulk mutation succeeded",
                extra={"mutation": attempt.label, "count": len(ids)},
            )
            self._notify(
                Success(success_message or f"{len(ids)} item(s) processed successfully")
            )

        elif status == BulkStatus.FAILURE:
            stale = attempt.roll_back()
            error = BulkError(
                error_message or f"Failed to process {len(ids)} item(s)",
                failed_ids=outcome.failed_ids,
            )
            if selection is not None:
                selection.restore(ids)
            logger.warning(
                "Bulk mutation failed and was rolled back",
                extra={
                    "mutation": attempt.label,
                    "failed_ids": outcome.failed_ids,
                    "stale_keys": stale,
                },
            )
            self._notify(Error(error.message, error))

        else:
            # Not a rollback: items that succeeded are real server changes
            await attempt.resync()
            self._invalidate(invalidate_on_success)
            if selection is not None:
                selection.clear()
            failed_ids = outcome.failed_ids
            logger.warning(
                "Bulk mutation partially succeeded",
                extra={
                    "mutation": attempt.label,
                    "succeeded_count": len(outcome.succeeded),
                    "failed_ids": failed_ids,
                },
            )
            self._notify(
                PartialSuccess(
                    succeeded_count=len(outcome.succeeded),
                    failed_ids=tuple(failed_ids),
                    message=(
                        f"{len(outcome.succeeded)} of {outcome.total} item(s) processed; "
                        f"failed: {', '.join(str(i) for i in failed_ids)}"
                    ),
                )
            )

        return outcome

    async def _run_item(
        self,
        item_id: Any,
        per_item_request: PerItemRequest,
        semaphore: asyncio.Semaphore | None,
    ) -> Any:
        if semaphore is None:
            return await self._send_item(item_id, per_item_request)
        async with semaphore:
            return await self._send_item(item_id, per_item_request)

    async def _send_item(self, item_id: Any, per_item_request: PerItemRequest) -> Any:
        request = per_item_request(item_id)
        if isinstance(request, RequestSpec):
            if self.transport is None:
                raise SyncEngineError("RequestSpec given but no transport configured")
            result = await request.send(self.transport)
        elif inspect.isawaitable(request):
            result = await request
        else:
            result = request
        return await response_payload(result)

    def _invalidate(self, prefixes: list) -> None:
        for prefix in prefixes:
            self.store.invalidate(prefix)

    def _notify(self, outcome: Any) -> None:
        if self.sink is not None:
            self.sink.notify(outcome)
