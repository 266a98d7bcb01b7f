import json

import pytest
from fastapi.testclient import TestClient

from device_registry import DeviceRegistry
from ingest import IngestionGateway, get_gateway
from middleware import create_token
from netmeter_api import app
from rate_limit import FixedWindowRateLimiter
from readings import add_meter_reading, verify_reading
from signatures import compute_signature
from store import Store, get_store

ALPHA_TOKEN = "device-token-alpha"
ALPHA_SECRET = "alpha-signing-secret"
BETA_TOKEN = "device-token-beta"
BETA_SECRET = "beta-signing-secret"

REGISTRY = {
    ALPHA_TOKEN: {
        "deviceId": "DEV-ALPHA",
        "applicationId": "APP-001",
        "customerId": "CUST-001",
        "secret": ALPHA_SECRET,
    },
    BETA_TOKEN: {
        "deviceId": "DEV-BETA",
        "applicationId": "APP-002",
        "customerId": "CUST-002",
        "secret": BETA_SECRET,
    },
}


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def store(tmp_path):
    s = Store(f"sqlite:///{tmp_path / 'netmeter.db'}")
    s.init_schema()
    return s


@pytest.fixture
def registry():
    return DeviceRegistry.from_dict(REGISTRY)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return FixedWindowRateLimiter(limit=30, window_ms=60_000, clock=clock)


@pytest.fixture
def gateway(registry, limiter, store):
    return IngestionGateway(registry=registry, limiter=limiter, store=store)


@pytest.fixture
def client(gateway, store):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def officer_headers():
    token, _ = create_token("OFF-001", "officer", name="Test Officer")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    token, _ = create_token("CUST-001", "customer", name="Test Customer")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def reading_body():
    def _make(**overrides):
        body = {
            "kWh_generated": 12.5,
            "kWh_exported": 4.25,
            "kWh_imported": 1.75,
            "voltage": 231.4,
            "current": 5.2,
            "timestamp": "2025-03-15T10:00:00Z",
        }
        body.update(overrides)
        return body
    return _make


@pytest.fixture
def signed_post(client):
    """POST a body to the ingestion endpoint, signed with the given secret."""
    def _post(body, token=ALPHA_TOKEN, secret=ALPHA_SECRET, signature=None):
        raw = body if isinstance(body, (bytes, str)) else json.dumps(body)
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        headers = {
            "x-device-token": token,
            "x-device-signature": signature if signature is not None else compute_signature(secret, raw),
            "content-type": "application/json",
        }
        return client.post("/api/iot/measurements", content=raw, headers=headers)
    return _post


@pytest.fixture
def verified_reading(store):
    """Store a reading and verify it; net units = imported - exported."""
    def _make(imported, exported, timestamp="2025-03-15T10:00:00Z", generated=20.0,
              customer_id="CUST-001", application_id="APP-001"):
        reading = add_meter_reading(
            store,
            customer_id=customer_id,
            application_id=application_id,
            device_id="DEV-ALPHA",
            kwh_generated=generated,
            kwh_exported=exported,
            kwh_imported=imported,
            timestamp=timestamp,
        )
        return verify_reading(store, reading.id)
    return _make
