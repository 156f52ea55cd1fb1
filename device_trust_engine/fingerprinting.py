from __future__ import annotations

import hashlib
import json

from .models import RequestObservation

# attribute -> confidence contribution; origin and identifier form the base
CONFIDENCE_WEIGHTS = (
    ("accept_language", 0.1),
    ("timezone", 0.1),
    ("screen_resolution", 0.1),
    ("canvas", 0.2),
    ("webgl", 0.1),
    ("plugins", 0.1),
)
BASE_CONFIDENCE = 0.3


class FingerprintDeriver:
    def __init__(self, length: int = 32):
        if not 8 <= length <= 64:
            raise ValueError("fingerprint length must be between 8 and 64 hex characters")
        self.length = length

    def canonical_bytes(self, observation: RequestObservation) -> bytes:
        # absent attributes serialize as null so field positions never shift
        values = [observation.origin, observation.identifier, *observation.attributes.canonical_values()]
        return json.dumps(values, separators=(",", ":"), default=str).encode("utf-8")

    def derive(self, observation: RequestObservation) -> str:
        return hashlib.sha256(self.canonical_bytes(observation)).hexdigest()[: self.length]

    def confidence(self, observation: RequestObservation) -> float:
        attributes = observation.attributes
        confidence = BASE_CONFIDENCE
        for name, weight in CONFIDENCE_WEIGHTS:
            value = getattr(attributes, name)
            if value is not None and value != ():
                confidence += weight
        return min(round(confidence, 4), 1.0)
