from __future__ import annotations

from typing import Dict, Iterable, Optional, Tuple

from .config import DecisionThresholds
from .models import Decision, DeviceRecord, DeviceStatus, InstantaneousRisk, Outcome

BLOCK_STATUS_CODE = 403
BLOCK_RESPONSE: Dict[str, str] = {
    "error": "Device Security Check Failed",
    "code": "DEVICE_BLOCKED",
    "message": "This device has been flagged for security review.",
    "support": "Please contact support if you believe this is an error.",
}


def resolve_status(current: DeviceStatus, trust_score: float, thresholds: DecisionThresholds) -> DeviceStatus:
    if current is DeviceStatus.BLOCKED:
        return DeviceStatus.BLOCKED
    if trust_score < thresholds.suspicious_trust:
        return DeviceStatus.SUSPICIOUS
    return DeviceStatus.TRUSTED


def _merge_flags(*groups: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(flag for group in groups for flag in group))


class DecisionEngine:
    """Maps a device record and a request's risk onto Allow / Warn / Block.

    Rules are checked in priority order, first match wins:

    1. device blocked, or risk at or above ``block_risk`` -> BLOCK
    2. risk at or above ``warn_risk``, or device suspicious -> WARN
    3. otherwise -> ALLOW
    """

    def __init__(self, thresholds: Optional[DecisionThresholds] = None):
        self.thresholds = thresholds or DecisionThresholds()

    def transition(self, record: DeviceRecord) -> DeviceRecord:
        record.status = resolve_status(record.status, record.trust_score, self.thresholds)
        return record

    def outcome(self, status: DeviceStatus, risk: float) -> Outcome:
        if status is DeviceStatus.BLOCKED or risk >= self.thresholds.block_risk:
            return Outcome.BLOCK
        if risk >= self.thresholds.warn_risk or status is DeviceStatus.SUSPICIOUS:
            return Outcome.WARN
        return Outcome.ALLOW

    def decide(self, record: DeviceRecord, risk: InstantaneousRisk) -> Decision:
        self.transition(record)
        outcome = self.outcome(record.status, risk.value)
        extra = ("DEVICE_BLOCKED",) if record.status is DeviceStatus.BLOCKED else ()
        return Decision(
            fingerprint=record.fingerprint,
            instantaneous_risk=risk.value,
            trust_score=record.trust_score,
            status=record.status,
            outcome=outcome,
            flags=_merge_flags(risk.flags, extra),
            confidence=risk.confidence,
            request_count=record.request_count,
        )

    def degraded(self, fingerprint: str, risk: InstantaneousRisk) -> Decision:
        """Decision without a device record: only the request's own risk can escalate."""
        if risk.value >= self.thresholds.block_risk:
            outcome = Outcome.BLOCK
        elif risk.value >= self.thresholds.warn_risk:
            outcome = Outcome.WARN
        else:
            outcome = Outcome.ALLOW
        return Decision(
            fingerprint=fingerprint,
            instantaneous_risk=risk.value,
            trust_score=self.thresholds.degraded_trust,
            status=DeviceStatus.SUSPICIOUS,
            outcome=outcome,
            flags=_merge_flags(risk.flags, ("LEDGER_UNAVAILABLE",)),
            confidence=risk.confidence,
            degraded=True,
        )

    def fallback(self, fingerprint: str, reason: str = "INTERNAL_ERROR") -> Decision:
        return Decision(
            fingerprint=fingerprint,
            instantaneous_risk=0.0,
            trust_score=self.thresholds.degraded_trust,
            status=DeviceStatus.TRUSTED,
            outcome=Outcome.ALLOW,
            flags=(reason,),
            degraded=True,
        )


def response_headers(decision: Decision) -> Dict[str, str]:
    headers: Dict[str, str] = {"X-Trust-Score": f"{decision.trust_score:.2f}"}
    if decision.fingerprint:
        headers["X-Device-ID"] = decision.fingerprint
    if decision.outcome is not Outcome.ALLOW:
        headers["X-Security-Alert"] = "high-risk-device"
    return headers
