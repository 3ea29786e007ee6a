"""Status deltas between two fleet snapshots.

:func:`compute_diff` is the pure core: two snapshots in, one
:class:`StatusDiff` out.  :class:`DiffEngine` keeps the last snapshot that was
handed to a partner for each operator scope and produces the next delta
against it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Protocol

from .. import config
from ..clock import Clock, SystemClock
from ..ids import EntityId, OperatorId
from .domain import StatusValue
from .events import EventBus, Notification, StatusChanged

logger = logging.getLogger(__name__)

Snapshot = Mapping[EntityId, StatusValue]

_EMPTY: Snapshot = MappingProxyType({})


@dataclass(frozen=True)
class StatusDiff:
    """New, changed and removed EVSE statuses of one operator scope.

    The three collections are disjoint: every id lands in exactly one of them
    or in none.
    """

    operator_id: Optional[OperatorId]
    timestamp: datetime
    new_status: Mapping[EntityId, StatusValue] = field(default_factory=lambda: _EMPTY)
    changed_status: Mapping[EntityId, StatusValue] = field(default_factory=lambda: _EMPTY)
    removed_ids: frozenset[EntityId] = frozenset()

    def __len__(self) -> int:
        return len(self.new_status) + len(self.changed_status) + len(self.removed_ids)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0


def compute_diff(
    previous: Snapshot,
    current: Snapshot,
    at: datetime,
    operator_id: Optional[OperatorId] = None,
) -> StatusDiff:
    """Classify every id of ``previous`` and ``current``.

    Only the status kind counts; two snapshots taken a moment apart with the
    same kinds produce an empty diff.  Neither input is modified.
    """
    new_status: dict[EntityId, StatusValue] = {}
    changed_status: dict[EntityId, StatusValue] = {}

    for entity_id, value in current.items():
        old = previous.get(entity_id)
        if old is None:
            new_status[entity_id] = value
        elif old.kind is not value.kind:
            changed_status[entity_id] = value

    removed_ids = frozenset(entity_id for entity_id in previous if entity_id not in current)

    return StatusDiff(
        operator_id=operator_id,
        timestamp=at,
        new_status=MappingProxyType(new_status),
        changed_status=MappingProxyType(changed_status),
        removed_ids=removed_ids,
    )


class SnapshotSource(Protocol):
    def snapshot(self, operator_id: Optional[OperatorId] = None) -> Snapshot:
        """Return an immutable copy of the current status map."""


DiffSink = Callable[[StatusDiff], Awaitable[object]]


class DiffEngine:
    """Produce deltas against the last published snapshot per operator scope.

    The scope ``None`` covers the whole fleet.  A diff only becomes the new
    baseline once :meth:`take` is called or the sink of :meth:`run` accepted
    it, so a failed transmission is retried with the full accumulated delta.
    """

    def __init__(
        self,
        source: SnapshotSource,
        clock: Clock | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.source = source
        self.clock = clock or SystemClock()
        self._published: dict[Optional[OperatorId], Snapshot] = {}
        self._published_versions: dict[Optional[OperatorId], int] = {}
        self._versions: dict[OperatorId, int] = {}
        self._fleet_version = 0
        if bus is not None:
            bus.subscribe(self, name="diff-engine")

    def notify(self, notification: Notification) -> None:
        if isinstance(notification, StatusChanged):
            operator = notification.entity_id.operator_id
            self._versions[operator] = self._versions.get(operator, 0) + 1
            self._fleet_version += 1

    def _version(self, operator_id: Optional[OperatorId]) -> int:
        if operator_id is None:
            return self._fleet_version
        return self._versions.get(operator_id, 0)

    def has_pending(self, operator_id: Optional[OperatorId] = None) -> bool:
        """Whether status changes were announced since the last publication."""
        if operator_id not in self._published:
            return True
        return self._version(operator_id) != self._published_versions[operator_id]

    def baseline(self, operator_id: Optional[OperatorId] = None) -> Snapshot:
        return self._published.get(operator_id, _EMPTY)

    def _prepare(self, operator_id: Optional[OperatorId]) -> tuple[StatusDiff, Snapshot, int]:
        version = self._version(operator_id)
        current = self.source.snapshot(operator_id)
        diff = compute_diff(self.baseline(operator_id), current, self.clock.now(), operator_id)
        return diff, current, version

    def _commit(self, operator_id: Optional[OperatorId], snapshot: Snapshot, version: int) -> None:
        self._published[operator_id] = snapshot
        self._published_versions[operator_id] = version

    def peek(self, operator_id: Optional[OperatorId] = None) -> StatusDiff:
        """Compute the pending diff without moving the baseline."""
        diff, _, _ = self._prepare(operator_id)
        return diff

    def take(self, operator_id: Optional[OperatorId] = None) -> StatusDiff:
        """Compute the pending diff and make the current snapshot the baseline."""
        diff, snapshot, version = self._prepare(operator_id)
        self._commit(operator_id, snapshot, version)
        logger.debug(
            "Published diff for %s: %d new, %d changed, %d removed",
            operator_id or "fleet",
            len(diff.new_status),
            len(diff.changed_status),
            len(diff.removed_ids),
        )
        return diff

    def reset(self, operator_id: Optional[OperatorId] = None) -> None:
        """Forget the baseline so the next diff is a full resend."""
        self._published.pop(operator_id, None)
        self._published_versions.pop(operator_id, None)

    async def publish(self, sink: DiffSink, operator_id: Optional[OperatorId] = None) -> Optional[StatusDiff]:
        """Send the pending diff to ``sink`` and advance the baseline on success.

        Returns ``None`` when there was nothing to send.  Exceptions from the
        sink propagate and leave the baseline untouched.
        """
        diff, snapshot, version = self._prepare(operator_id)
        if diff.is_empty:
            self._commit(operator_id, snapshot, version)
            return None
        await sink(diff)
        self._commit(operator_id, snapshot, version)
        logger.info(
            "→ StatusDiff for %s: %d new, %d changed, %d removed",
            operator_id or "fleet",
            len(diff.new_status),
            len(diff.changed_status),
            len(diff.removed_ids),
        )
        return diff

    async def run(
        self,
        sink: DiffSink,
        operator_ids: Iterable[Optional[OperatorId]] = (None,),
        interval: float = config.DIFF_PUSH_INTERVAL,
    ) -> None:
        """Push pending diffs for every scope each ``interval`` seconds."""
        scopes = list(operator_ids)
        while True:
            for operator_id in scopes:
                if not self.has_pending(operator_id):
                    continue
                try:
                    await self.publish(sink, operator_id)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Sending status diff for %s failed", operator_id or "fleet")
            await asyncio.sleep(interval)
