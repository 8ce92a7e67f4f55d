"""
State and context types for optimistic mutations.

A mutation attempt moves through

    IDLE -> SNAPSHOTTING -> OPTIMISTIC_APPLIED -> IN_FLIGHT -> RECONCILED
                                                            -> ROLLED_BACK

RECONCILED and ROLLED_BACK are terminal. There is no retry transition; a
retry is a new attempt started by the caller.

Invariants:
    - A MutationContext belongs to exactly one attempt
    - The context is dropped when the attempt settles
    - version_after_apply is what rollback compares the live version to
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from ..cache.keys import QueryKey
from ..cache.store import CacheEntry


class MutationState(enum.Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    IN_FLIGHT = "in_flight"
    RECONCILED = "reconciled"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (MutationState.RECONCILED, MutationState.ROLLED_BACK)


# Allowed transitions of the mutation state machine
TRANSITIONS: dict[MutationState, frozenset] = {
    MutationState.IDLE: frozenset({MutationState.SNAPSHOTTING}),
    MutationState.SNAPSHOTTING: frozenset({MutationState.OPTIMISTIC_APPLIED}),
    MutationState.OPTIMISTIC_APPLIED: frozenset({MutationState.IN_FLIGHT}),
    MutationState.IN_FLIGHT: frozenset({MutationState.RECONCILED, MutationState.ROLLED_BACK}),
    MutationState.RECONCILED: frozenset(),
    MutationState.ROLLED_BACK: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """A mutation attempt was driven out of order."""

    def __init__(self, current: MutationState, target: MutationState) -> None:
        super().__init__(f"Invalid mutation transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass
class MutationContext:
    """Snapshot taken at the start of a mutation.

    Attributes:
        affected_keys: Keys the mutation touches
        snapshot: Entry of each key before the optimistic apply (None if absent)
        version_at_snapshot: Version of each key before the optimistic apply
        version_after_apply: Version of each key right after the optimistic apply
    """

    affected_keys: list[QueryKey]
    snapshot: dict[QueryKey, CacheEntry | None] = field(default_factory=dict)
    version_at_snapshot: dict[QueryKey, int] = field(default_factory=dict)
    version_after_apply: dict[QueryKey, int] = field(default_factory=dict)


@dataclass
class MutationResult:
    """Settled outcome of one mutation attempt.

    Attributes:
        status: RECONCILED or ROLLED_BACK
        data: Server payload on success
        error: Failure on rollback
        stale_keys: Keys whose rollback was skipped because a newer write existed
    """

    status: MutationState
    data: Any = None
    error: BaseException | None = None
    stale_keys: list[QueryKey] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == MutationState.RECONCILED
