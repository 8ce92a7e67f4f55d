"""
Notification and selection surface.

Mutation and bulk outcomes are reported to a NotificationSink as exactly
one of Success, Error or PartialSuccess. Sinks own no cache state; a UI
adapter renders them (toasts, banners), tests record them.

SelectionState tracks the ids a user has ticked in a table so bulk
actions can clear or restore the selection according to their outcome.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    message: str = "Changes saved successfully"


@dataclass(frozen=True)
class Error:
    message: str
    error: BaseException | None = None


@dataclass(frozen=True)
class PartialSuccess:
    """Some items of a bulk action succeeded, the rest failed.

    Attributes:
        succeeded_count: Number of items that succeeded
        failed_ids: Ids of the items that failed, in submission order
        message: Human readable summary
    """

    succeeded_count: int
    failed_ids: tuple = ()
    message: str = ""


Outcome = Union[Success, Error, PartialSuccess]


@runtime_checkable
class NotificationSink(Protocol):
    def notify(self, outcome: Outcome) -> None: ...


class LoggingNotificationSink:
    """Sink that writes outcomes to the log."""

    def notify(self, outcome: Outcome) -> None:
        if isinstance(outcome, Success):
            logger.info(outcome.message)
        elif isinstance(outcome, PartialSuccess):
            logger.warning(
                outcome.message,
                extra={
                    "succeeded_count": outcome.succeeded_count,
                    "failed_ids": list(outcome.failed_ids),
                },
            )
        else:
            logger.error(outcome.message)


@dataclass
class RecordingNotificationSink:
    """Sink that keeps every outcome, for tests and UI adapters."""

    outcomes: list = field(default_factory=list)

    def notify(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    @property
    def last(self) -> Outcome | None:
        return self.outcomes[-1] if self.outcomes else None

    def of_type(self, kind: type) -> list:
        return [o for o in self.outcomes if isinstance(o, kind)]


class SelectionState:
    """Ids currently selected in a table."""

    def __init__(self, ids: Iterable[Any] = ()) -> None:
        self._selected: dict[Any, None] = dict.fromkeys(ids)

    @property
    def selected(self) -> frozenset:
        return frozenset(self._selected)

    def snapshot(self) -> list:
        """Selected ids in selection order."""
        return list(self._selected)

    def select(self, *ids: Any) -> None:
        for item_id in ids:
            self._selected[item_id] = None

    def deselect(self, *ids: Any) -> None:
        for item_id in ids:
            self._selected.pop(item_id, None)

    def toggle(self, item_id: Any) -> bool:
        """Flip one id; returns whether it is now selected."""
        if item_id in self._selected:
            del self._selected[item_id]
            return False
        self._selected[item_id] = None
        return True

    def clear(self) -> None:
        self._selected.clear()

    def restore(self, ids: Iterable[Any]) -> None:
        """Replace the selection with ids."""
        self._selected = dict.fromkeys(ids)

    def __contains__(self, item_id: Any) -> bool:
        return item_id in self._selected

    def __len__(self) -> int:
        return len(self._selected)
