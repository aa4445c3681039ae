"""RingStore: bounded, insertion-ordered in-memory store of dump records."""

from __future__ import annotations

import json
import logging
from collections import deque
from datetime import datetime

from ..types import DumpCategory, DumpFilter, DumpRecord, DumpStats

logger = logging.getLogger(__name__)


class RingStore:
    """Keep the most recent ``capacity`` records in insertion order.

    Eviction is FIFO by insertion, not by timestamp, and happens inside
    ``add`` so the store is never observably over capacity. ``add`` returns
    what it evicted and leaves notification to the caller.

    Mutated only from the event loop thread; no locking.
    """

    def __init__(self, capacity: int = 1000, *, log: logging.Logger | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._records: deque[DumpRecord] = deque()
        self._log = log or logger

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, record: DumpRecord) -> list[DumpRecord]:
        """Append *record*; return records evicted from the oldest end."""
        self._records.append(record)
        evicted: list[DumpRecord] = []
        while len(self._records) > self.capacity:
            evicted.append(self._records.popleft())
        if evicted:
            self._log.debug("Evicted %d dump(s) over capacity %d", len(evicted), self.capacity)
        return evicted

    def clear(self) -> int:
        count = len(self._records)
        self._records.clear()
        return count

    def remove_older_than(self, cutoff: datetime) -> int:
        """Drop records with ``timestamp <= cutoff``. Returns count removed."""
        kept = [r for r in self._records if r.timestamp > cutoff]
        removed = len(self._records) - len(kept)
        self._records = deque(kept)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_all(self) -> list[DumpRecord]:
        return list(self._records)

    def get_by_id(self, record_id: str) -> DumpRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def get_recent(self, count: int = 10) -> list[DumpRecord]:
        if count <= 0:
            return []
        return list(self._records)[-count:]

    def get_filtered(self, criteria: DumpFilter | None = None) -> list[DumpRecord]:
        """Records matching every set criterion, in insertion order."""
        if criteria is None:
            return self.get_all()
        return [r for r in self._records if _matches(r, criteria)]

    def sorted_for_display(self, criteria: DumpFilter | None = None) -> list[DumpRecord]:
        """Newest first. A view only; storage order is unchanged."""
        return sorted(self.get_filtered(criteria), key=lambda r: r.timestamp, reverse=True)

    def group_by_category(self) -> dict[DumpCategory, list[DumpRecord]]:
        grouped: dict[DumpCategory, list[DumpRecord]] = {c: [] for c in DumpCategory}
        for record in self._records:
            grouped[record.category].append(record)
        return grouped

    def get_unique_files(self) -> list[str]:
        return sorted({r.source.file for r in self._records})

    def get_stats(self) -> DumpStats:
        stats = DumpStats()
        for record in self._records:
            stats.total += 1
            stats.by_category[record.category] += 1
            stats.total_size += len(record.content)
            if stats.oldest is None or record.timestamp < stats.oldest:
                stats.oldest = record.timestamp
            if stats.newest is None or record.timestamp > stats.newest:
                stats.newest = record.timestamp
        return stats

    def memory_usage(self) -> dict:
        stats = self.get_stats()
        return {
            "dumps": stats.total,
            "totalSize": stats.total_size,
            "averageSize": round(stats.total_size / stats.total) if stats.total else 0,
        }

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def export_json(self, criteria: DumpFilter | None = None) -> str:
        return json.dumps([r.to_dict() for r in self.get_filtered(criteria)], indent=2)

    def import_json(self, text: str) -> int:
        """Add every valid record from a JSON array.

        Invalid entries and entries whose id is already stored are skipped.

        Raises ValueError if *text* is not a JSON array.
        """
        try:
            entries = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError("Invalid JSON format") from e
        if not isinstance(entries, list):
            raise ValueError("Invalid JSON format: expected an array of dumps")

        known = {r.id for r in self._records}
        imported = 0
        for entry in entries:
            try:
                record = DumpRecord.from_dict(entry)
            except ValueError as e:
                self._log.debug("Skipping invalid imported dump: %s", e)
                continue
            if record.id in known:
                self._log.debug("Skipping imported dump %s: id already stored", record.id)
                continue
            known.add(record.id)
            self.add(record)
            imported += 1
        return imported


def _matches(record: DumpRecord, criteria: DumpFilter) -> bool:
    if criteria.category and criteria.category != "all":
        if record.category != criteria.category:
            return False

    if criteria.search:
        needle = criteria.search.lower()
        src = record.source
        haystacks = [record.content, src.file, src.function or "", src.class_name or ""]
        if not any(needle in h.lower() for h in haystacks):
            return False

    if criteria.date_from and record.timestamp < criteria.date_from:
        return False
    if criteria.date_to and record.timestamp > criteria.date_to:
        return False

    if criteria.file and criteria.file not in record.source.file:
        return False

    return True
