"""Per-EVSE status history."""

from __future__ import annotations

import bisect
import logging
from datetime import datetime
from typing import Iterator, Optional

from ..errors import OutOfOrderTimestamp
from ..ids import EntityId
from .domain import StatusValue

logger = logging.getLogger(__name__)


class StatusSchedule:
    """Append-only, timestamp-ordered status history of one entity.

    Entries with equal timestamps are kept in insertion order.  The schedule
    never drops entries on its own; retention belongs to whoever persists it.
    """

    def __init__(self, entity_id: EntityId) -> None:
        self.entity_id = entity_id
        self._entries: list[StatusValue] = []
        self._timestamps: list[datetime] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StatusValue]:
        return iter(list(self._entries))

    def append(self, value: StatusValue) -> None:
        """Record ``value`` as the newest entry.

        Raises
        ------
        OutOfOrderTimestamp
            If ``value`` is older than the latest entry.  The schedule is left
            unchanged.
        """
        if self._timestamps and value.timestamp < self._timestamps[-1]:
            raise OutOfOrderTimestamp(self.entity_id, value.timestamp, self._timestamps[-1])
        self._entries.append(value)
        self._timestamps.append(value.timestamp)

    def override(self, value: StatusValue) -> int:
        """Correct the history: drop entries at or after ``value.timestamp``
        and record ``value`` in their place.

        Returns the number of entries that were replaced.
        """
        index = bisect.bisect_left(self._timestamps, value.timestamp)
        replaced = len(self._entries) - index
        if replaced:
            logger.warning(
                "Overriding %d status entries of %s from %s",
                replaced,
                self.entity_id,
                value.timestamp.isoformat(),
            )
        del self._entries[index:]
        del self._timestamps[index:]
        self._entries.append(value)
        self._timestamps.append(value.timestamp)
        return replaced

    def latest(self) -> Optional[StatusValue]:
        return self._entries[-1] if self._entries else None

    def slice(self, start: datetime, end: datetime) -> "ScheduleSlice":
        """Entries with ``start <= timestamp < end`` in ascending order."""
        return ScheduleSlice(self, start, end)

    def _range(self, start: datetime, end: datetime) -> Iterator[StatusValue]:
        lo = bisect.bisect_left(self._timestamps, start)
        hi = bisect.bisect_left(self._timestamps, end)
        yield from self._entries[lo:hi]


class ScheduleSlice:
    """Lazy view over a time range; every iteration starts from the beginning."""

    def __init__(self, schedule: StatusSchedule, start: datetime, end: datetime) -> None:
        self._schedule = schedule
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[StatusValue]:
        return self._schedule._range(self.start, self.end)

    def __repr__(self) -> str:
        return (
            f"ScheduleSlice({self._schedule.entity_id}, "
            f"{self.start.isoformat()}, {self.end.isoformat()})"
        )
