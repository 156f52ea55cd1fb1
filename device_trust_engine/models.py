from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

DEFAULT_MAX_EVENTS = 100


class DeviceStatus(str, Enum):
    TRUSTED = "trusted"
    SUSPICIOUS = "suspicious"
    BLOCKED = "blocked"


class Outcome(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskEventKind(str, Enum):
    ORIGIN_CHANGED = "origin_changed"
    IDENTIFIER_CHANGED = "identifier_changed"
    RATE_EXCEEDED = "rate_exceeded"
    MANUAL_ACTION = "manual_action"
    RULE_BLOCK = "rule_block"


@dataclass(slots=True)
class ClientAttributes:
    """Client-declared attributes. Any field may be absent or falsified.

    Field declaration order is the canonical fingerprint order; append new
    fields at the end so existing fingerprints stay stable.
    """

    timezone: Optional[str] = None
    screen_resolution: Optional[str] = None
    platform: Optional[str] = None
    plugins: Optional[Tuple[str, ...]] = None
    fonts: Optional[Tuple[str, ...]] = None
    canvas: Optional[str] = None
    webgl: Optional[str] = None
    audio: Optional[str] = None
    touch_support: Optional[bool] = None
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None
    connection: Optional[str] = None
    cookies_enabled: Optional[bool] = None
    do_not_track: Optional[bool] = None
    color_depth: Optional[int] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None

    def canonical_values(self) -> List[Any]:
        values: List[Any] = []
        for item in fields(self):
            value = getattr(self, item.name)
            values.append(list(value) if isinstance(value, tuple) else value)
        return values

    def populated_fields(self) -> Tuple[str, ...]:
        return tuple(item.name for item in fields(self) if getattr(self, item.name) is not None)


@dataclass(slots=True)
class RequestObservation:
    origin: str
    identifier: str = ""
    attributes: ClientAttributes = field(default_factory=ClientAttributes)


@dataclass(slots=True, frozen=True)
class InstantaneousRisk:
    value: float
    flags: Tuple[str, ...] = ()
    confidence: float = 0.0


@dataclass(slots=True, frozen=True)
class RiskEvent:
    kind: RiskEventKind
    timestamp: datetime
    severity: Severity
    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DeviceRecord:
    fingerprint: str
    first_seen: datetime
    last_seen: datetime
    trust_score: float
    status: DeviceStatus = DeviceStatus.TRUSTED
    principal_id: Optional[str] = None
    request_count: int = 0
    origins: List[str] = field(default_factory=list)
    identifiers: List[str] = field(default_factory=list)
    events: Deque[RiskEvent] = field(default_factory=lambda: deque(maxlen=DEFAULT_MAX_EVENTS))
    version: int = 0

    def add_event(self, event: RiskEvent) -> None:
        self.events.append(event)

    def recent_events(self, since: datetime, ignore: Tuple[RiskEventKind, ...] = ()) -> int:
        return sum(1 for event in self.events if event.timestamp >= since and event.kind not in ignore)

    def copy(self) -> "DeviceRecord":
        return DeviceRecord(
            fingerprint=self.fingerprint,
            first_seen=self.first_seen,
            last_seen=self.last_seen,
            trust_score=self.trust_score,
            status=self.status,
            principal_id=self.principal_id,
            request_count=self.request_count,
            origins=list(self.origins),
            identifiers=list(self.identifiers),
            events=deque(self.events, maxlen=self.events.maxlen),
            version=self.version,
        )


@dataclass(slots=True)
class Decision:
    fingerprint: str
    instantaneous_risk: float
    trust_score: float
    status: DeviceStatus
    outcome: Outcome
    flags: Tuple[str, ...] = ()
    confidence: float = 0.0
    request_count: int = 0
    degraded: bool = False


@dataclass(slots=True)
class DeviceStats:
    total: int = 0
    trusted: int = 0
    suspicious: int = 0
    blocked: int = 0

    def count(self, status: DeviceStatus) -> None:
        self.total += 1
        if status is DeviceStatus.TRUSTED:
            self.trusted += 1
        elif status is DeviceStatus.SUSPICIOUS:
            self.suspicious += 1
        elif status is DeviceStatus.BLOCKED:
            self.blocked += 1

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "trusted": self.trusted,
            "suspicious": self.suspicious,
            "blocked": self.blocked,
        }
