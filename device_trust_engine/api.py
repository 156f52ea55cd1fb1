from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, Field

from .config import EngineConfig
from .decision import response_headers
from .engine import DeviceTrustEngine
from .ledger import StoreUnavailable
from .middleware import DeviceGateMiddleware
from .models import Decision, DeviceRecord, RequestObservation
from .observation import parse_client_attributes
from .persistence import make_store
from .tasks import CeleryAlertSink


class ObservationPayload(BaseModel):
    origin: str
    identifier: str = ""
    attributes: Dict[str, Any] = Field(default_factory=dict)
    endpoint: Optional[str] = None
    principal_id: Optional[str] = None


class DecisionResponse(BaseModel):
    fingerprint: str
    instantaneous_risk: float
    trust_score: float
    status: str
    outcome: str
    flags: List[str]
    confidence: float
    request_count: int
    degraded: bool


class RiskEventResponse(BaseModel):
    kind: str
    timestamp: datetime
    severity: str
    detail: Dict[str, Any]


class DeviceResponse(BaseModel):
    fingerprint: str
    status: str
    trust_score: float
    request_count: int
    first_seen: datetime
    last_seen: datetime
    principal_id: Optional[str] = None
    origins: List[str]
    identifiers: List[str]
    events: List[RiskEventResponse]


class BlockRequest(BaseModel):
    reason: str = "manual"


class StatsResponse(BaseModel):
    total: int
    trusted: int
    suspicious: int
    blocked: int


def _to_observation(payload: ObservationPayload) -> RequestObservation:
    return RequestObservation(
        origin=payload.origin,
        identifier=payload.identifier,
        attributes=parse_client_attributes(payload.attributes),
    )


def _serialize_decision(decision: Decision) -> DecisionResponse:
    return DecisionResponse(
        fingerprint=decision.fingerprint,
        instantaneous_risk=decision.instantaneous_risk,
        trust_score=decision.trust_score,
        status=decision.status.value,
        outcome=decision.outcome.value,
        flags=list(decision.flags),
        confidence=decision.confidence,
        request_count=decision.request_count,
        degraded=decision.degraded,
    )


def _serialize_device(record: DeviceRecord) -> DeviceResponse:
    return DeviceResponse(
        fingerprint=record.fingerprint,
        status=record.status.value,
        trust_score=record.trust_score,
        request_count=record.request_count,
        first_seen=record.first_seen,
        last_seen=record.last_seen,
        principal_id=record.principal_id,
        origins=list(record.origins),
        identifiers=list(record.identifiers),
        events=[
            RiskEventResponse(
                kind=event.kind.value,
                timestamp=event.timestamp,
                severity=event.severity.value,
                detail=dict(event.detail),
            )
            for event in record.events
        ],
    )


def build_engine() -> DeviceTrustEngine:
    config = EngineConfig.from_env()
    store = make_store(
        os.getenv("MONGODB_URI"),
        database=os.getenv("MONGODB_DATABASE", "device_trust"),
        stripes=config.lock_stripes,
        max_events=config.trust.max_events,
    )
    return DeviceTrustEngine(config, store=store, alert_sink=CeleryAlertSink())


def create_app(engine: DeviceTrustEngine | None = None, gate: bool = False) -> FastAPI:
    app = FastAPI(title="Device Trust Engine API", version="1.0.0")
    app.state.engine = engine or build_engine()
    if gate:
        app.add_middleware(
            DeviceGateMiddleware,
            engine=app.state.engine,
            exempt_paths=("/health", "/docs", "/redoc", "/openapi.json", "/evaluate"),
        )

    def _found(record: Optional[DeviceRecord], fingerprint: str) -> DeviceResponse:
        if record is None:
            raise HTTPException(status_code=404, detail=f"Unknown device {fingerprint}")
        return _serialize_device(record)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/evaluate", response_model=DecisionResponse)
    def evaluate(request: ObservationPayload, response: Response) -> DecisionResponse:
        decision = app.state.engine.evaluate(
            _to_observation(request),
            endpoint=request.endpoint,
            principal_id=request.principal_id,
        )
        response.headers.update(response_headers(decision))
        return _serialize_decision(decision)

    @app.get("/devices/stats", response_model=StatsResponse)
    def device_stats() -> StatsResponse:
        try:
            stats = app.state.engine.stats()
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail="Device ledger unavailable") from exc
        return StatsResponse(**stats.as_dict())

    @app.get("/devices/{fingerprint}", response_model=DeviceResponse)
    def device(fingerprint: str) -> DeviceResponse:
        try:
            record = app.state.engine.device(fingerprint)
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail="Device ledger unavailable") from exc
        return _found(record, fingerprint)

    @app.post("/devices/{fingerprint}/block", response_model=DeviceResponse)
    def block_device(fingerprint: str, request: BlockRequest | None = None) -> DeviceResponse:
        reason = request.reason if request is not None else "manual"
        try:
            record = app.state.engine.block_device(fingerprint, reason)
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail="Device ledger unavailable") from exc
        return _found(record, fingerprint)

    @app.post("/devices/{fingerprint}/trust", response_model=DeviceResponse)
    def trust_device(fingerprint: str) -> DeviceResponse:
        try:
            record = app.state.engine.trust_device(fingerprint)
        except StoreUnavailable as exc:
            raise HTTPException(status_code=503, detail="Device ledger unavailable") from exc
        return _found(record, fingerprint)

    return app


app = create_app()
