from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .core.domain import ChargeDetailRecord
from .errors import DuplicateRecord


class RecordStore:
    """In-memory charge detail records keyed by session id."""

    def __init__(self) -> None:
        self._records: Dict[str, ChargeDetailRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ChargeDetailRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def add(self, record: ChargeDetailRecord) -> ChargeDetailRecord:
        if record.session_id in self._records:
            raise DuplicateRecord(record.session_id)
        self._records[record.session_id] = record
        return record

    def get(self, session_id: str) -> Optional[ChargeDetailRecord]:
        return self._records.get(session_id)

    def between(
        self,
        start: datetime,
        end: datetime,
        provider_id: Optional[str] = None,
    ) -> List[ChargeDetailRecord]:
        """Records whose session ended in ``[start, end)``, oldest first."""
        records = [
            record
            for record in self._records.values()
            if start <= record.session_end < end
            and (provider_id is None or record.provider_id == provider_id)
        ]
        records.sort(key=lambda r: (r.session_end, r.session_id))
        return records
