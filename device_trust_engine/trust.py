from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import List, Optional

from .config import DecisionThresholds, TrustConfig
from .decision import resolve_status
from .models import (
    DeviceRecord,
    DeviceStatus,
    InstantaneousRisk,
    RequestObservation,
    RiskEvent,
    RiskEventKind,
    Severity,
)


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def _remember(values: List[str], value: str, limit: int) -> bool:
    """Record ``value`` in an insertion-ordered, size-capped list; True when new."""
    if value in values:
        return False
    values.append(value)
    while len(values) > limit:
        values.pop(0)
    return True


class TrustScoreEngine:
    """Longitudinal trust for one device.

    Trust moves by a small tenure gain per request, minus a capped penalty
    for risk events inside ``recent_window`` and a damped share of the
    request's instantaneous risk. Gains are bounded by ``tenure_increment``
    while a single maximal-risk request costs ``risk_damping``, so trust is
    slow to earn and fast to lose, and repeated bad requests compound.
    """

    def __init__(self, config: Optional[TrustConfig] = None, thresholds: Optional[DecisionThresholds] = None):
        self.config = config or TrustConfig()
        self.thresholds = thresholds or DecisionThresholds()

    def seed(
        self,
        fingerprint: str,
        observation: RequestObservation,
        risk: InstantaneousRisk,
        now: datetime,
        principal_id: Optional[str] = None,
    ) -> DeviceRecord:
        trust = self.config.seed_trust_clean if risk.value < self.config.seed_risk_cutoff else self.config.seed_trust_risky
        record = DeviceRecord(
            fingerprint=fingerprint,
            first_seen=now,
            last_seen=now,
            trust_score=_clamp(trust),
            principal_id=principal_id,
            request_count=1,
            origins=[observation.origin],
            identifiers=[observation.identifier],
            events=deque(maxlen=self.config.max_events),
        )
        record.status = resolve_status(record.status, record.trust_score, self.thresholds)
        self._apply_block_rule(record, risk, now)
        return record

    def update(
        self,
        record: DeviceRecord,
        observation: RequestObservation,
        risk: InstantaneousRisk,
        now: datetime,
        principal_id: Optional[str] = None,
    ) -> DeviceRecord:
        if principal_id:
            record.principal_id = principal_id

        known_before = list(record.origins)
        if _remember(record.origins, observation.origin, self.config.max_tracked_origins):
            record.add_event(
                RiskEvent(
                    kind=RiskEventKind.ORIGIN_CHANGED,
                    timestamp=now,
                    severity=Severity.HIGH if len(record.origins) > 3 else Severity.MEDIUM,
                    detail={"origin": observation.origin, "previous": known_before[-3:]},
                )
            )

        if _remember(record.identifiers, observation.identifier, self.config.max_tracked_identifiers):
            record.add_event(
                RiskEvent(
                    kind=RiskEventKind.IDENTIFIER_CHANGED,
                    timestamp=now,
                    severity=Severity.MEDIUM,
                    detail={"identifier": observation.identifier[:256]},
                )
            )

        record.trust_score = self.next_trust(record, risk, now)
        record.status = resolve_status(record.status, record.trust_score, self.thresholds)
        self._apply_block_rule(record, risk, now)
        record.request_count += 1
        record.last_seen = max(record.last_seen, now)
        return record

    def next_trust(self, record: DeviceRecord, risk: InstantaneousRisk, now: datetime) -> float:
        config = self.config
        saturation = config.tenure_saturation.total_seconds()
        age = max((now - record.first_seen).total_seconds(), 0.0)
        tenure = min(age / saturation, 1.0) if saturation > 0 else 1.0
        gain = config.tenure_increment * (0.5 + 0.5 * tenure)

        recent = record.recent_events(now - config.recent_window, ignore=(RiskEventKind.MANUAL_ACTION,))
        event_penalty = min(config.event_penalty * recent, config.max_event_penalty)
        risk_penalty = _clamp(risk.value) * config.risk_damping

        return _clamp(record.trust_score + gain - event_penalty - risk_penalty)

    def grant(self, record: DeviceRecord, now: datetime) -> DeviceRecord:
        """Manual trust: clears a block and restores part of the score."""
        record.status = DeviceStatus.TRUSTED
        record.trust_score = _clamp(record.trust_score + self.config.manual_trust_bonus)
        record.add_event(
            RiskEvent(
                kind=RiskEventKind.MANUAL_ACTION,
                timestamp=now,
                severity=Severity.LOW,
                detail={"action": "trust"},
            )
        )
        return record

    def revoke(self, record: DeviceRecord, now: datetime, reason: str) -> DeviceRecord:
        record.status = DeviceStatus.BLOCKED
        record.add_event(
            RiskEvent(
                kind=RiskEventKind.MANUAL_ACTION,
                timestamp=now,
                severity=Severity.CRITICAL,
                detail={"action": "block", "reason": reason},
            )
        )
        return record

    def _apply_block_rule(self, record: DeviceRecord, risk: InstantaneousRisk, now: datetime) -> None:
        floor = self.config.auto_block_trust_floor
        if floor is None or record.status is DeviceStatus.BLOCKED:
            return
        if record.trust_score <= floor and risk.value >= self.thresholds.block_risk:
            record.status = DeviceStatus.BLOCKED
            record.add_event(
                RiskEvent(
                    kind=RiskEventKind.RULE_BLOCK,
                    timestamp=now,
                    severity=Severity.CRITICAL,
                    detail={"trust_score": round(record.trust_score, 4), "risk": round(risk.value, 4)},
                )
            )
