from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .alerts import AlertSink, build_alert_payload, log_alert
from .config import EngineConfig
from .decision import DecisionEngine
from .fingerprinting import FingerprintDeriver
from .ledger import DeviceLedger, DeviceStore, StoreUnavailable
from .models import (
    Decision,
    DeviceRecord,
    DeviceStats,
    InstantaneousRisk,
    Outcome,
    RequestObservation,
    RiskEvent,
    RiskEventKind,
    Severity,
)
from .rate_governor import RateGovernor
from .risk_scorer import RequestRiskScorer
from .trust import TrustScoreEngine

logger = logging.getLogger(__name__)


class DeviceTrustEngine:
    """Single entry point: one observation in, one decision out, never raises."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: DeviceStore | None = None,
        alert_sink: AlertSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.deriver = FingerprintDeriver(self.config.fingerprint_length)
        self.scorer = RequestRiskScorer(self.config.weights)
        self.ledger = DeviceLedger(store)
        self.trust = TrustScoreEngine(self.config.trust, self.config.thresholds)
        self.governor = RateGovernor(self.config.rate_limit, clock=self.clock, stripes=self.config.lock_stripes)
        self.decisions = DecisionEngine(self.config.thresholds)
        self.alert_sink = alert_sink or log_alert

    def evaluate(
        self,
        observation: RequestObservation,
        endpoint: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> Decision:
        now = self.clock()
        fingerprint = ""
        try:
            fingerprint = self.deriver.derive(observation)
            admitted = self.governor.admit(observation.origin, fingerprint, now)
            risk = self.scorer.score(observation, self.deriver.confidence(observation))
            if not admitted:
                risk = self.scorer.with_rate_breach(risk)
        except Exception:
            logger.exception(
                "Device risk scoring failed for origin %s; allowing request", getattr(observation, "origin", None)
            )
            return self.decisions.fallback(fingerprint)

        try:
            decision = self._record(fingerprint, observation, risk, now, principal_id, admitted)
        except StoreUnavailable as exc:
            logger.warning("Device ledger unavailable, deciding %s without history: %s", fingerprint, exc)
            decision = self.decisions.degraded(fingerprint, risk)
        except Exception:
            logger.exception("Device trust update failed for %s; allowing request", fingerprint)
            return self.decisions.fallback(fingerprint)

        if decision.outcome is not Outcome.ALLOW:
            self._alert(decision, observation, now, endpoint, principal_id)
        return decision

    def _record(
        self,
        fingerprint: str,
        observation: RequestObservation,
        risk: InstantaneousRisk,
        now: datetime,
        principal_id: Optional[str],
        admitted: bool,
    ) -> Decision:
        record, _ = self.ledger.upsert(
            fingerprint,
            lambda: self.trust.seed(fingerprint, observation, risk, now, principal_id),
            lambda current: self.trust.update(current, observation, risk, now, principal_id),
        )
        if not admitted:
            record = self._attribute_breach(observation.origin, fingerprint, now) or record
        return self.decisions.decide(record, risk)

    def _attribute_breach(self, origin: str, fingerprint: str, now: datetime) -> Optional[DeviceRecord]:
        current = None
        event = RiskEvent(
            kind=RiskEventKind.RATE_EXCEEDED,
            timestamp=now,
            severity=Severity.HIGH,
            detail={"origin": origin, "ceiling": self.config.rate_limit.ceiling},
        )
        targets = self.governor.breach_targets(origin)
        for index, target in enumerate(targets):
            try:
                updated = self.ledger.append_event(target, event)
            except StoreUnavailable:
                for pending in targets[index:]:
                    self.governor.requeue(origin, pending)
                raise
            if updated is None:
                # owner admitted but not yet recorded; a later breach retries it
                self.governor.requeue(origin, target)
            if target == fingerprint:
                current = updated
        return current

    def _alert(
        self,
        decision: Decision,
        observation: RequestObservation,
        now: datetime,
        endpoint: Optional[str],
        principal_id: Optional[str],
    ) -> None:
        try:
            alert = build_alert_payload(
                decision=decision,
                observation=observation,
                timestamp=now,
                endpoint=endpoint,
                principal_id=principal_id,
            )
            self.alert_sink(alert)
        except Exception:
            logger.exception("Alert sink failed for device %s", decision.fingerprint)

    def device(self, fingerprint: str) -> Optional[DeviceRecord]:
        return self.ledger.get(fingerprint)

    def block_device(self, fingerprint: str, reason: str = "manual") -> Optional[DeviceRecord]:
        now = self.clock()
        record = self.ledger.update(fingerprint, lambda current: self.trust.revoke(current, now, reason))
        if record is not None:
            logger.warning("Device %s blocked manually: %s", fingerprint, reason)
        return record

    def trust_device(self, fingerprint: str) -> Optional[DeviceRecord]:
        now = self.clock()
        record = self.ledger.update(fingerprint, lambda current: self.trust.grant(current, now))
        if record is not None:
            logger.info("Device %s trusted manually", fingerprint)
        return record

    def stats(self) -> DeviceStats:
        return self.ledger.stats()
