import base64
import json
from datetime import datetime, timezone

from builders import CHROME_ON_WINDOWS, FakeClock
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from device_trust_engine import DeviceTrustEngine, EngineConfig, InMemoryDeviceStore, StoreUnavailable
from device_trust_engine.api import create_app
from device_trust_engine.decision import BLOCK_RESPONSE
from device_trust_engine.middleware import DeviceGateMiddleware

GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


def build_attributes() -> dict:
    return {
        "timezone": "America/New_York",
        "screenResolution": "1920x1080",
        "platform": "Win32",
        "plugins": ["PDF Viewer", "Chrome PDF Viewer"],
        "fonts": ["Arial", "Calibri", "Cambria", "Consolas", "Georgia", "Segoe UI"],
        "canvas": "c9f1d2e3",
        "webgl": "ANGLE (Intel UHD Graphics 620)",
        "hardwareConcurrency": 8,
        "deviceMemory": 8,
        "cookieEnabled": True,
        "acceptLanguage": "en-US,en;q=0.9",
    }


def build_evaluate_payload(identifier: str = CHROME_ON_WINDOWS) -> dict:
    return {
        "origin": "93.184.216.34",
        "identifier": identifier,
        "attributes": build_attributes(),
        "endpoint": "POST /checkout",
        "principal_id": "user-42",
    }


def build_engine(store=None) -> DeviceTrustEngine:
    clock = FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
    return DeviceTrustEngine(EngineConfig(), store=store, alert_sink=lambda alert: None, clock=clock)


class UnreachableStore(InMemoryDeviceStore):
    def get(self, fingerprint):
        raise StoreUnavailable("connection refused")

    def records(self):
        raise StoreUnavailable("connection refused")

    def update(self, fingerprint, mutate):
        raise StoreUnavailable("connection refused")


def test_healthcheck():
    client = TestClient(create_app(build_engine()))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_evaluate_endpoint_returns_decision_and_headers():
    client = TestClient(create_app(build_engine()))

    response = client.post("/evaluate", json=build_evaluate_payload())
    assert response.status_code == 200

    body = response.json()
    assert body["outcome"] == "allow"
    assert body["status"] == "trusted"
    assert body["request_count"] == 1
    assert body["flags"] == []
    assert len(body["fingerprint"]) == 32
    assert response.headers["X-Device-ID"] == body["fingerprint"]
    assert response.headers["X-Trust-Score"] == "0.70"
    assert "X-Security-Alert" not in response.headers


def test_evaluate_endpoint_flags_automation():
    client = TestClient(create_app(build_engine()))

    response = client.post("/evaluate", json=build_evaluate_payload(GOOGLEBOT))
    body = response.json()

    assert "BOT_DETECTED" in body["flags"]
    assert body["outcome"] == "warn"
    assert response.headers["X-Security-Alert"] == "high-risk-device"


def test_evaluate_rejects_payload_without_origin():
    client = TestClient(create_app(build_engine()))
    response = client.post("/evaluate", json={"identifier": CHROME_ON_WINDOWS})
    assert response.status_code == 422


def test_device_lookup_and_admin_controls():
    app = create_app(build_engine())
    client = TestClient(app)
    fingerprint = client.post("/evaluate", json=build_evaluate_payload()).json()["fingerprint"]

    device = client.get(f"/devices/{fingerprint}")
    assert device.status_code == 200
    assert device.json()["principal_id"] == "user-42"
    assert device.json()["origins"] == ["93.184.216.34"]

    blocked = client.post(f"/devices/{fingerprint}/block", json={"reason": "chargeback"})
    assert blocked.status_code == 200
    assert blocked.json()["status"] == "blocked"
    assert blocked.json()["events"][-1]["detail"] == {"action": "block", "reason": "chargeback"}

    evaluated = client.post("/evaluate", json=build_evaluate_payload()).json()
    assert evaluated["outcome"] == "block"
    assert "DEVICE_BLOCKED" in evaluated["flags"]

    stats = client.get("/devices/stats")
    assert stats.json() == {"total": 1, "trusted": 0, "suspicious": 0, "blocked": 1}

    trusted = client.post(f"/devices/{fingerprint}/trust")
    assert trusted.status_code == 200
    assert trusted.json()["status"] == "trusted"


def test_block_without_body_uses_default_reason():
    client = TestClient(create_app(build_engine()))
    fingerprint = client.post("/evaluate", json=build_evaluate_payload()).json()["fingerprint"]

    response = client.post(f"/devices/{fingerprint}/block")
    assert response.json()["events"][-1]["detail"]["reason"] == "manual"


def test_unknown_device_returns_404():
    client = TestClient(create_app(build_engine()))
    for response in (
        client.get("/devices/" + "0" * 32),
        client.post("/devices/" + "0" * 32 + "/block"),
        client.post("/devices/" + "0" * 32 + "/trust"),
    ):
        assert response.status_code == 404


def test_unreachable_ledger_returns_503_for_admin_but_evaluates_degraded():
    client = TestClient(create_app(build_engine(store=UnreachableStore())))

    assert client.get("/devices/stats").status_code == 503
    assert client.get("/devices/" + "0" * 32).status_code == 503
    assert client.post("/devices/" + "0" * 32 + "/block").status_code == 503

    body = client.post("/evaluate", json=build_evaluate_payload()).json()
    assert body["degraded"] is True
    assert "LEDGER_UNAVAILABLE" in body["flags"]


def build_gated_app(engine: DeviceTrustEngine) -> FastAPI:
    app = FastAPI()
    app.add_middleware(DeviceGateMiddleware, engine=engine, principal_resolver=lambda request: "user-7")

    @app.get("/orders")
    def orders(request: Request) -> dict:
        return {"outcome": request.state.device_decision.outcome.value}

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


def browser_headers(user_agent: str = CHROME_ON_WINDOWS) -> dict:
    encoded = base64.b64encode(json.dumps(build_attributes()).encode()).decode()
    return {"User-Agent": user_agent, "X-Device-Fingerprint": encoded, "Accept-Language": "en-US,en;q=0.9"}


def test_gate_attaches_device_headers():
    engine = build_engine()
    client = TestClient(build_gated_app(engine))

    response = client.get("/orders", headers=browser_headers())

    assert response.status_code == 200
    assert response.json() == {"outcome": "allow"}
    fingerprint = response.headers["X-Device-ID"]
    assert len(fingerprint) == 32
    assert response.headers["X-Trust-Score"] == "0.70"
    assert engine.device(fingerprint).principal_id == "user-7"


def test_gate_blocks_manually_blocked_device():
    engine = build_engine()
    client = TestClient(build_gated_app(engine))
    fingerprint = client.get("/orders", headers=browser_headers()).headers["X-Device-ID"]
    engine.block_device(fingerprint, reason="fraud ring")

    response = client.get("/orders", headers=browser_headers())

    assert response.status_code == 403
    assert response.json() == BLOCK_RESPONSE
    assert response.headers["X-Device-ID"] == fingerprint
    assert response.headers["X-Security-Alert"] == "high-risk-device"


def test_gate_warns_but_serves_automation():
    client = TestClient(build_gated_app(build_engine()))
    response = client.get("/orders", headers=browser_headers(GOOGLEBOT))

    assert response.status_code == 200
    assert response.json() == {"outcome": "warn"}
    assert response.headers["X-Security-Alert"] == "high-risk-device"


def test_gate_skips_exempt_paths():
    engine = build_engine()
    client = TestClient(build_gated_app(engine))
    response = client.get("/health", headers=browser_headers())

    assert response.status_code == 200
    assert "X-Device-ID" not in response.headers
    assert engine.stats().total == 0


def test_gated_service_app():
    engine = build_engine()
    client = TestClient(create_app(engine, gate=True))

    stats = client.get("/devices/stats", headers=browser_headers())
    assert "X-Device-ID" in stats.headers
    evaluated = client.post("/evaluate", json=build_evaluate_payload())
    assert evaluated.status_code == 200
    assert engine.stats().total == 2


def test_evaluate_drops_unconvertible_attributes():
    client = TestClient(create_app(build_engine()))
    hostile = build_evaluate_payload()
    hostile["attributes"].update(hardwareConcurrency="²", colorDepth="9" * 5000)
    absent = build_evaluate_payload()
    del absent["attributes"]["hardwareConcurrency"]

    response = client.post("/evaluate", json=hostile)

    assert response.status_code == 200
    assert response.json()["fingerprint"] == client.post("/evaluate", json=absent).json()["fingerprint"]


def test_gate_ignores_hostile_fingerprint_header():
    client = TestClient(build_gated_app(build_engine()))
    headers = browser_headers()
    headers["X-Device-Fingerprint"] = base64.b64encode(b"[" * 5000 + b"]" * 5000).decode()

    response = client.get("/orders", headers=headers)

    assert response.status_code == 200
    assert len(response.headers["X-Device-ID"]) == 32
