from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, MutableMapping, Optional, Tuple

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from .ledger import DeviceStore, InMemoryDeviceStore, RecordMutation, StoreUnavailable
from .models import DEFAULT_MAX_EVENTS, DeviceRecord, DeviceStatus, RiskEvent, RiskEventKind, Severity

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class MongoDeviceStore(DeviceStore):
    """MongoDB-backed device store shared between workers.

    One document per fingerprint keyed by ``_id``. Creation relies on the
    unique ``_id`` index; updates are compare-and-swap on ``version`` and
    retried a bounded number of times.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "device_trust",
        collection: Optional[Collection] = None,
        max_events: int = DEFAULT_MAX_EVENTS,
        max_retries: int = 8,
        timeout_ms: int = 2000,
    ) -> None:
        if collection is None:
            if uri is None:
                raise ValueError("either a MongoDB uri or a collection is required")
            self.client = MongoClient(uri, tz_aware=True, serverSelectionTimeoutMS=timeout_ms)
            collection = self.client[database]["devices"]
            try:
                collection.create_index("status")
            except PyMongoError as exc:
                logger.warning("Could not ensure device indexes: %s", exc)
        self.devices = collection
        self.max_events = max_events
        self.max_retries = max_retries

    def get(self, fingerprint: str) -> Optional[DeviceRecord]:
        try:
            document = self.devices.find_one({"_id": fingerprint})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self.deserialize(document) if document is not None else None

    def put(self, record: DeviceRecord) -> None:
        document = self.serialize(record)
        try:
            self.devices.replace_one({"_id": record.fingerprint}, document, upsert=True)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def create_if_absent(self, record: DeviceRecord) -> Tuple[DeviceRecord, bool]:
        stored = record.copy()
        stored.version = 1
        try:
            self.devices.insert_one(self.serialize(stored))
            return stored, True
        except DuplicateKeyError:
            existing = self.get(record.fingerprint)
            if existing is None:
                raise StoreUnavailable(f"record {record.fingerprint} vanished after duplicate insert")
            return existing, False
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def update(self, fingerprint: str, mutate: RecordMutation) -> DeviceRecord:
        for _ in range(self.max_retries):
            current = self.get(fingerprint)
            if current is None:
                raise KeyError(fingerprint)
            expected = current.version
            updated = mutate(current)
            updated.version = expected + 1
            try:
                result = self.devices.replace_one(
                    {"_id": fingerprint, "version": expected},
                    self.serialize(updated),
                )
            except PyMongoError as exc:
                raise StoreUnavailable(str(exc)) from exc
            if result.matched_count == 1:
                return updated
        logger.warning("Gave up updating %s after %d conflicting writes", fingerprint, self.max_retries)
        raise StoreUnavailable(f"too much contention updating {fingerprint}")

    def records(self) -> Iterator[DeviceRecord]:
        try:
            for document in self.devices.find({}):
                yield self.deserialize(document)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def serialize(self, record: DeviceRecord) -> Dict[str, Any]:
        return {
            "_id": record.fingerprint,
            "principal_id": record.principal_id,
            "request_count": record.request_count,
            "first_seen": record.first_seen,
            "last_seen": record.last_seen,
            "origins": list(record.origins),
            "identifiers": list(record.identifiers),
            "events": [self._serialize_event(event) for event in record.events],
            "trust_score": record.trust_score,
            "status": record.status.value,
            "version": record.version,
        }

    def deserialize(self, document: Mapping[str, Any]) -> DeviceRecord:
        return DeviceRecord(
            fingerprint=str(document["_id"]),
            principal_id=document.get("principal_id"),
            request_count=int(document.get("request_count", 0)),
            first_seen=_aware(document["first_seen"]),
            last_seen=_aware(document["last_seen"]),
            origins=list(document.get("origins", [])),
            identifiers=list(document.get("identifiers", [])),
            events=deque(
                (self._deserialize_event(item) for item in document.get("events", [])),
                maxlen=self.max_events,
            ),
            trust_score=float(document.get("trust_score", 0.0)),
            status=DeviceStatus(document.get("status", DeviceStatus.TRUSTED.value)),
            version=int(document.get("version", 0)),
        )

    def _serialize_event(self, event: RiskEvent) -> MutableMapping[str, Any]:
        return {
            "kind": event.kind.value,
            "timestamp": event.timestamp,
            "severity": event.severity.value,
            "detail": dict(event.detail),
        }

    def _deserialize_event(self, payload: Mapping[str, Any]) -> RiskEvent:
        return RiskEvent(
            kind=RiskEventKind(payload["kind"]),
            timestamp=_aware(payload["timestamp"]),
            severity=Severity(payload["severity"]),
            detail=dict(payload.get("detail") or {}),
        )


def make_store(
    uri: Optional[str] = None,
    database: str = "device_trust",
    stripes: int = 256,
    max_events: int = DEFAULT_MAX_EVENTS,
) -> DeviceStore:
    """Pick a store from a URI.

    - ``None``, ``""`` or ``memory://`` -> ``InMemoryDeviceStore``
    - ``mongodb://...`` / ``mongodb+srv://...`` -> ``MongoDeviceStore``
    """
    if not uri or uri.startswith("memory://"):
        return InMemoryDeviceStore(stripes=stripes)
    if uri.startswith("mongodb://") or uri.startswith("mongodb+srv://"):
        return MongoDeviceStore(uri=uri, database=database, max_events=max_events)
    raise ValueError(f"unsupported device store uri: {uri}")
