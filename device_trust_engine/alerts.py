from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Callable, Mapping, MutableMapping, Optional

import httpx
from fastapi.encoders import jsonable_encoder

from .models import Decision, Outcome, RequestObservation

logger = logging.getLogger(__name__)

AlertSink = Callable[[Mapping[str, Any]], None]


def resolve_webhook_url(default: Optional[str] = None) -> Optional[str]:
    """Return the alert webhook URL from environment or provided default."""
    return os.getenv("ALERT_WEBHOOK_URL", default)


def build_alert_payload(
    *,
    decision: Decision,
    observation: RequestObservation,
    timestamp: datetime,
    endpoint: Optional[str] = None,
    principal_id: Optional[str] = None,
) -> MutableMapping[str, Any]:
    """Create a JSON-serializable record describing a Warn or Block decision."""
    payload: MutableMapping[str, Any] = {
        "fingerprint": decision.fingerprint,
        "origin": observation.origin,
        "instantaneous_risk": decision.instantaneous_risk,
        "flags": list(decision.flags),
        "trust_score": decision.trust_score,
        "request_count": decision.request_count,
        "endpoint": endpoint,
        "principal_id": principal_id,
        "outcome": decision.outcome,
        "status": decision.status,
        "degraded": decision.degraded,
        "timestamp": timestamp,
    }
    return jsonable_encoder(payload)


def log_alert(alert: Mapping[str, Any]) -> None:
    if alert.get("outcome") == Outcome.BLOCK.value:
        logger.error("Device blocked: %s from %s", alert.get("fingerprint"), alert.get("origin"), extra={"alert": alert})
    else:
        logger.warning(
            "High-risk device detected: %s from %s", alert.get("fingerprint"), alert.get("origin"), extra={"alert": alert}
        )


def deliver_webhook(webhook_url: Optional[str], alert: Mapping[str, Any], timeout: float = 5.0) -> bool:
    """POST a device alert to the webhook. Returns whether the receiver accepted it."""
    if not webhook_url:
        return False

    fingerprint = alert.get("fingerprint") or "unknown"
    headers = {"X-Device-ID": str(fingerprint), "X-Alert-Outcome": str(alert.get("outcome", ""))}
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(str(webhook_url), json=dict(alert), headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to deliver device alert webhook for %s to %s: %s", fingerprint, webhook_url, exc)
        return False
    logger.debug("Delivered %s alert for device %s", alert.get("outcome"), fingerprint)
    return True
