from __future__ import annotations

import ipaddress
from typing import List, Optional, Tuple

from .config import RiskWeights
from .models import ClientAttributes, InstantaneousRisk, RequestObservation


MEDIUM_RISK_LEVEL = 0.5
HIGH_RISK_LEVEL = 0.7


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def is_private_origin(origin: str) -> bool:
    try:
        address = ipaddress.ip_address(origin.strip().strip("[]"))
    except ValueError:
        return False
    return address.is_private or address.is_reserved or address.is_loopback or address.is_link_local


class RequestRiskScorer:
    """Stateless additive rules over a single observation.

    Each rule that fires contributes its configured weight once and appends one
    flag. The total is clamped to [0, 1].
    """

    def __init__(self, weights: Optional[RiskWeights] = None):
        self.weights = weights or RiskWeights()

    def score(self, observation: RequestObservation, confidence: float = 0.0) -> InstantaneousRisk:
        fired: List[Tuple[str, float]] = []
        identifier = observation.identifier or ""
        attributes = observation.attributes

        if is_private_origin(observation.origin):
            fired.append(("PRIVATE_IP", self.weights.private_origin))

        if len(identifier) < self.weights.min_identifier_length:
            fired.append(("SUSPICIOUS_USER_AGENT", self.weights.weak_identifier))

        if self._automation_signature(identifier):
            fired.append(("BOT_DETECTED", self.weights.automation_signature))

        if self._platform_mismatch(attributes.platform, identifier):
            fired.append(("PLATFORM_MISMATCH", self.weights.platform_mismatch))

        if attributes.cookies_enabled is False:
            fired.append(("COOKIES_DISABLED", self.weights.cookies_disabled))

        if attributes.do_not_track:
            fired.append(("DO_NOT_TRACK", self.weights.do_not_track))

        if self._looks_headless(attributes):
            fired.append(("POSSIBLE_HEADLESS", self.weights.headless))

        if (attributes.hardware_concurrency or 0) > self.weights.max_plausible_cpu:
            fired.append(("EXCESSIVE_CPU_COUNT", self.weights.excessive_cpu))

        if (attributes.device_memory or 0.0) > self.weights.max_plausible_memory:
            fired.append(("EXCESSIVE_DEVICE_MEMORY", self.weights.excessive_memory))

        value = _clamp(sum(weight for _, weight in fired))
        flags = [name for name, _ in fired]
        return InstantaneousRisk(value=value, flags=tuple(flags + _level_flags(value)), confidence=confidence)

    def with_rate_breach(self, risk: InstantaneousRisk) -> InstantaneousRisk:
        value = _clamp(risk.value + self.weights.rate_exceeded)
        base = [flag for flag in risk.flags if flag not in ("MEDIUM_RISK", "HIGH_RISK")]
        return InstantaneousRisk(
            value=value,
            flags=tuple(base + ["RAPID_REQUESTS"] + _level_flags(value)),
            confidence=risk.confidence,
        )

    def _automation_signature(self, identifier: str) -> bool:
        lowered = identifier.lower()
        return any(signature in lowered for signature in self.weights.automation_signatures)

    def _platform_mismatch(self, platform: Optional[str], identifier: str) -> bool:
        if not platform or not identifier:
            return False
        declared = platform.lower()
        agent = identifier.lower()
        for needle, tokens in self.weights.platform_tokens:
            if declared.startswith(needle) and not any(token in agent for token in tokens):
                return True
        return False

    def _looks_headless(self, attributes: ClientAttributes) -> bool:
        if attributes.canvas is None and attributes.webgl is None:
            return True
        return len(attributes.fonts or ()) < self.weights.min_font_count


def _level_flags(value: float) -> List[str]:
    flags: List[str] = []
    if value > MEDIUM_RISK_LEVEL:
        flags.append("MEDIUM_RISK")
    if value > HIGH_RISK_LEVEL:
        flags.append("HIGH_RISK")
    return flags
