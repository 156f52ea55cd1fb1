"""Device ledger: fingerprint -> DeviceRecord over a pluggable store.

Store contract
--------------
``get``/``put`` read and overwrite a single record. ``create_if_absent``
inserts only when no record exists and reports whether it created one;
concurrent callers for the same fingerprint see exactly one creation.
``update`` applies a function to the current record and persists the
result atomically with respect to other writers of the same fingerprint
(a per-key lock in process, compare-and-swap on ``version`` in a shared
store). Stores never hand out objects that alias their internal state.
Connectivity failures surface as ``StoreUnavailable``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Tuple

from .concurrency import KeyedLocks
from .models import DeviceRecord, DeviceStats, DeviceStatus, RiskEvent


RecordFactory = Callable[[], DeviceRecord]
RecordMutation = Callable[[DeviceRecord], DeviceRecord]


class StoreUnavailable(RuntimeError):
    """The backing store could not be reached or could not commit a write."""


class DeviceStore(ABC):
    @abstractmethod
    def get(self, fingerprint: str) -> Optional[DeviceRecord]:
        raise NotImplementedError

    @abstractmethod
    def put(self, record: DeviceRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def create_if_absent(self, record: DeviceRecord) -> Tuple[DeviceRecord, bool]:
        raise NotImplementedError

    @abstractmethod
    def update(self, fingerprint: str, mutate: RecordMutation) -> DeviceRecord:
        """Atomically replace the record with ``mutate(record)``; ``KeyError`` if missing."""
        raise NotImplementedError

    @abstractmethod
    def records(self) -> Iterator[DeviceRecord]:
        raise NotImplementedError


class InMemoryDeviceStore(DeviceStore):
    """Process-local store.

    Stored records are replaced, never mutated in place, so reads skip the lock.
    """

    def __init__(self, stripes: int = 256):
        self._records: Dict[str, DeviceRecord] = {}
        self._locks = KeyedLocks(stripes)

    def get(self, fingerprint: str) -> Optional[DeviceRecord]:
        record = self._records.get(fingerprint)
        return record.copy() if record is not None else None

    def put(self, record: DeviceRecord) -> None:
        with self._locks.for_key(record.fingerprint):
            stored = record.copy()
            current = self._records.get(record.fingerprint)
            stored.version = (current.version if current is not None else 0) + 1
            self._records[record.fingerprint] = stored

    def create_if_absent(self, record: DeviceRecord) -> Tuple[DeviceRecord, bool]:
        with self._locks.for_key(record.fingerprint):
            existing = self._records.get(record.fingerprint)
            if existing is not None:
                return existing.copy(), False
            stored = record.copy()
            stored.version = 1
            self._records[record.fingerprint] = stored
            return stored.copy(), True

    def update(self, fingerprint: str, mutate: RecordMutation) -> DeviceRecord:
        with self._locks.for_key(fingerprint):
            current = self._records.get(fingerprint)
            if current is None:
                raise KeyError(fingerprint)
            updated = mutate(current.copy())
            updated.version = current.version + 1
            self._records[fingerprint] = updated
            return updated.copy()

    def records(self) -> Iterator[DeviceRecord]:
        for record in list(self._records.values()):
            yield record.copy()

    def __len__(self) -> int:
        return len(self._records)


class DeviceLedger:
    def __init__(self, store: Optional[DeviceStore] = None):
        self.store = store or InMemoryDeviceStore()

    def get(self, fingerprint: str) -> Optional[DeviceRecord]:
        return self.store.get(fingerprint)

    def put(self, fingerprint: str, record: DeviceRecord) -> None:
        if record.fingerprint != fingerprint:
            raise ValueError(f"record belongs to {record.fingerprint}, not {fingerprint}")
        self.store.put(record)

    def get_or_create(self, fingerprint: str, factory: Optional[RecordFactory] = None) -> DeviceRecord:
        existing = self.store.get(fingerprint)
        if existing is not None:
            return existing
        record = factory() if factory is not None else _blank_record(fingerprint)
        stored, _ = self.store.create_if_absent(record)
        return stored

    def upsert(self, fingerprint: str, factory: RecordFactory, mutate: RecordMutation) -> Tuple[DeviceRecord, bool]:
        """Create the record on first sighting, otherwise apply ``mutate`` atomically."""
        if self.store.get(fingerprint) is None:
            stored, created = self.store.create_if_absent(factory())
            if created:
                return stored, True
        return self.store.update(fingerprint, mutate), False

    def update(self, fingerprint: str, mutate: RecordMutation) -> Optional[DeviceRecord]:
        try:
            return self.store.update(fingerprint, mutate)
        except KeyError:
            return None

    def append_event(self, fingerprint: str, event: RiskEvent) -> Optional[DeviceRecord]:
        def _append(record: DeviceRecord) -> DeviceRecord:
            record.add_event(event)
            return record

        return self.update(fingerprint, _append)

    def stats(self) -> DeviceStats:
        stats = DeviceStats()
        for record in self.store.records():
            stats.count(record.status)
        return stats


def _blank_record(fingerprint: str) -> DeviceRecord:
    now = datetime.now(timezone.utc)
    return DeviceRecord(
        fingerprint=fingerprint,
        first_seen=now,
        last_seen=now,
        trust_score=0.5,
        status=DeviceStatus.TRUSTED,
    )
