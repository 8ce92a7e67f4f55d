"""
Mutation module for the SchoolSync engine - optimistic writes.

This module handles:
- Single optimistic mutations with precise rollback (MutationCoordinator)
- Concurrent bulk mutations with aggregate classification (BulkExecutor)
- Pure transforms and reconcilers for list-shaped query data

Invariants:
    - Optimistic apply always precedes the request
    - Reconcile/rollback always follows request settlement
    - Rollback is skipped, never forced, when a newer write exists

How to change safely:
    - Keep transforms pure; the store relies on structural replacement
    - Test interleavings with InMemoryTransport gates
"""

from .bulk import BulkExecutor, BulkFailure, BulkOutcome, BulkStatus
from .context import (
    InvalidTransitionError,
    MutationContext,
    MutationResult,
    MutationState,
)
from .coordinator import MutationAttempt, MutationCoordinator
from .transforms import (
    add_item,
    drop_response_record,
    find_record,
    optimistic_add,
    optimistic_prepend,
    optimistic_remove,
    optimistic_remove_many,
    optimistic_toggle,
    optimistic_update,
    remove_items,
    replace_with_response,
    update_items,
    upsert_record,
    upsert_response_record,
)

__all__ = [
    "MutationCoordinator",
    "MutationAttempt",
    "MutationContext",
    "MutationResult",
    "MutationState",
    "InvalidTransitionError",
    "BulkExecutor",
    "BulkOutcome",
    "BulkFailure",
    "BulkStatus",
    # Transforms
    "optimistic_add",
    "optimistic_prepend",
    "optimistic_update",
    "optimistic_remove",
    "optimistic_remove_many",
    "optimistic_toggle",
    "upsert_record",
    "find_record",
    "add_item",
    "remove_items",
    "update_items",
    # Reconcilers
    "replace_with_response",
    "upsert_response_record",
    "drop_response_record",
]
