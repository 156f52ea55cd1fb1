"""Device Trust Engine: request-time device fingerprinting and trust gating."""

from .config import EngineConfig
from .engine import DeviceTrustEngine
from .ledger import DeviceLedger, DeviceStore, InMemoryDeviceStore, StoreUnavailable
from .models import (
    ClientAttributes,
    Decision,
    DeviceRecord,
    DeviceStatus,
    InstantaneousRisk,
    Outcome,
    RequestObservation,
    RiskEvent,
    RiskEventKind,
    Severity,
)

__all__ = [
    "EngineConfig",
    "DeviceTrustEngine",
    "DeviceLedger",
    "DeviceStore",
    "InMemoryDeviceStore",
    "StoreUnavailable",
    "ClientAttributes",
    "Decision",
    "DeviceRecord",
    "DeviceStatus",
    "InstantaneousRisk",
    "Outcome",
    "RequestObservation",
    "RiskEvent",
    "RiskEventKind",
    "Severity",
]
