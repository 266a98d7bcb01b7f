import pytest

from store import Store


def _reading(**overrides):
    data = {
        "customer_id": "CUST-001",
        "application_id": "APP-001",
        "device_id": "DEV-ALPHA",
        "kwh_generated": 3.5,
        "kwh_exported": 1.25,
        "kwh_imported": 0.5,
        "timestamp": "2025-03-15T10:00:00.000Z",
        "status": "pending",
    }
    data.update(overrides)
    return data


def test_create_fills_id_and_timestamps(store):
    record = store.meter_readings.create(_reading())
    assert record.id.startswith("mr_")
    assert record.created_at.endswith("Z")
    assert store.meter_readings.find_unique(record.id).to_wire() == record.to_wire()


def test_find_unique_missing(store):
    assert store.meter_readings.find_unique("mr_missing") is None


def test_find_many_where_and_null(store):
    a = store.meter_readings.create(_reading(customer_id="CUST-001"))
    store.meter_readings.create(_reading(customer_id="CUST-002", application_id=None))

    assert [r.id for r in store.meter_readings.find_many({"customer_id": "CUST-001"})] == [a.id]
    nulls = store.meter_readings.find_many({"application_id": None})
    assert [r.customer_id for r in nulls] == ["CUST-002"]


def test_find_many_keeps_insertion_order(store):
    ids = [store.meter_readings.create(_reading()).id for _ in range(5)]
    assert [r.id for r in store.meter_readings.find_many()] == ids


def test_find_many_order_and_limit(store):
    for day in ("01", "03", "02"):
        store.meter_readings.create(_reading(timestamp=f"2025-03-{day}T00:00:00.000Z"))
    rows = store.meter_readings.find_many(order_by="-timestamp", limit=2)
    assert [r.timestamp[8:10] for r in rows] == ["03", "02"]


def test_unknown_column_rejected(store):
    with pytest.raises(ValueError):
        store.meter_readings.find_many({"nope": 1})
    with pytest.raises(ValueError):
        store.meter_readings.find_many(order_by="-nope")


def test_update_merges_fields(store):
    record = store.meter_readings.create(_reading())
    updated = store.meter_readings.update(record.id, {"status": "verified", "net_units": -0.75})
    assert updated.status == "verified"
    assert updated.kwh_generated == 3.5
    assert store.meter_readings.find_unique(record.id).net_units == -0.75


def test_update_missing_returns_none(store):
    assert store.meter_readings.update("mr_missing", {"status": "verified"}) is None


def test_line_items_round_trip_as_json(store):
    invoice = store.invoices.create({
        "customer_id": "CUST-001",
        "type": "monthly_bill",
        "description": "March Net Metering Bill",
        "amount": 45.0,
        "due_date": "2025-03-29T10:00:00.000Z",
        "line_items": [{"description": "Net energy import (1.5 kWh)", "quantity": 1,
                        "unit_price": 45.0, "total": 45.0}],
    })
    stored = store.invoices.find_unique(invoice.id)
    assert stored.line_items[0].description == "Net energy import (1.5 kWh)"
    assert stored.to_wire()["lineItems"][0]["unitPrice"] == 45.0
    assert stored.updated_at == stored.created_at


def test_transaction_rolls_back_every_write(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as conn:
            store.meter_readings.create(_reading(), conn=conn)
            store.meter_readings.create(_reading(), conn=conn)
            raise RuntimeError("abort")
    assert store.meter_readings.find_many() == []


def test_ping_counts_rows(store):
    store.meter_readings.create(_reading())
    assert store.ping() == {"meter_readings": 1, "invoices": 0, "monthly_bills": 0}


def test_unsupported_urls():
    with pytest.raises(ValueError):
        Store("mysql://localhost/db")
    with pytest.raises(ValueError):
        Store("sqlite:///:memory:")


def test_sqlite_parent_directory_is_created(tmp_path):
    path = tmp_path / "nested" / "dir" / "netmeter.db"
    s = Store(f"sqlite:///{path}")
    s.init_schema()
    assert path.exists()


def test_health_endpoint(client):
    data = client.get("/health").json()
    assert data["status"] == "ok"
    assert data["database"] == "sqlite"
    assert data["tables"]["meter_readings"] == 0


def test_config_endpoint(client):
    data = client.get("/api/config").json()
    assert data["ratePerKwh"] == 30
    assert data["creditRatePerKwh"] == 25
