import threading

import pytest

from billing import compute_amount, generate_monthly_bills
from readings import add_meter_reading
from run_billing import main as run_billing_main


# ---------------------------------------------------------------------------
# Amount rule
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("net,expected", [
    (100.0, 3000.0),
    (-50.0, -1250.0),
    (0.0, 0.0),
    (0.5, 15.0),
])
def test_compute_amount(net, expected):
    assert compute_amount(net, 30, 25) == expected


# ---------------------------------------------------------------------------
# Batch run
# ---------------------------------------------------------------------------

def test_net_import_is_charged(store, verified_reading):
    reading = verified_reading(imported=100.0, exported=0.0)
    [result] = generate_monthly_bills(store, 3, 2025, rate_per_kwh=30, credit_rate_per_kwh=25)
    invoice, bill = result["invoice"], result["bill"]

    assert invoice.amount == 3000.0
    assert invoice.type == "monthly_bill"
    assert invoice.status == "pending"
    assert invoice.customer_id == reading.customer_id
    assert invoice.application_id == reading.application_id
    assert invoice.description == "March Net Metering Bill"
    assert invoice.paid_at is None

    [item] = invoice.line_items
    assert item.description == "Net energy import (100 kWh)"
    assert item.quantity == 1
    assert item.unit_price == item.total == 3000.0

    assert bill.invoice_id == invoice.id
    assert (bill.month, bill.year) == (3, 2025)
    assert bill.kwh_imported == 100.0
    assert bill.kwh_exported == 0.0
    assert bill.kwh_generated == reading.kwh_generated
    assert bill.net_amount == invoice.amount


def test_net_export_is_credited(store, verified_reading):
    verified_reading(imported=10.0, exported=60.0)
    [result] = generate_monthly_bills(store, 3, 2025, rate_per_kwh=30, credit_rate_per_kwh=25)
    invoice, bill = result["invoice"], result["bill"]

    assert invoice.amount == -1250.0
    assert invoice.line_items[0].description == "Net energy export (50 kWh)"
    assert bill.kwh_exported == 50.0
    assert bill.kwh_imported == 0.0
    assert bill.net_amount == -1250.0


def test_zero_net_is_a_zero_invoice(store, verified_reading):
    verified_reading(imported=5.0, exported=5.0)
    [result] = generate_monthly_bills(store, 3, 2025, rate_per_kwh=30, credit_rate_per_kwh=25)
    assert result["invoice"].amount == 0.0
    assert result["bill"].net_amount == 0.0
    assert result["invoice"].line_items[0].description == "Net energy import (0 kWh)"


def test_due_date_is_reading_date_plus_due_days(store, verified_reading):
    verified_reading(imported=1.0, exported=0.0, timestamp="2025-03-15T10:00:00Z")
    [result] = generate_monthly_bills(store, 3, 2025, due_days=14)
    assert result["invoice"].due_date == "2025-03-29T10:00:00.000Z"


def test_default_rates_come_from_config(store, verified_reading):
    verified_reading(imported=2.0, exported=0.0)
    verified_reading(imported=0.0, exported=2.0)
    results = generate_monthly_bills(store, 3, 2025)
    assert [r["invoice"].amount for r in results] == [60.0, -50.0]


def test_only_verified_readings_of_the_period_are_billed(store, verified_reading):
    verified_reading(imported=1.0, exported=0.0, timestamp="2025-03-10T00:00:00Z")
    verified_reading(imported=1.0, exported=0.0, timestamp="2025-04-10T00:00:00Z")
    verified_reading(imported=1.0, exported=0.0, timestamp="2024-03-10T00:00:00Z")
    add_meter_reading(
        store, customer_id="CUST-001", application_id="APP-001", device_id="DEV-ALPHA",
        kwh_generated=1.0, kwh_exported=0.0, kwh_imported=1.0, timestamp="2025-03-11T00:00:00Z",
    )

    results = generate_monthly_bills(store, 3, 2025)
    assert len(results) == 1
    assert len(store.invoices.find_many()) == 1


def test_empty_period_bills_nothing(store):
    assert generate_monthly_bills(store, 6, 2025) == []
    assert store.invoices.find_many() == []


def test_rerun_bills_the_same_readings_again(store, verified_reading):
    # readings carry no billed marker; a second run duplicates every pair
    verified_reading(imported=3.0, exported=0.0)
    verified_reading(imported=0.0, exported=4.0)
    first = generate_monthly_bills(store, 3, 2025)
    second = generate_monthly_bills(store, 3, 2025)

    assert len(first) == len(second) == 2
    assert len(store.invoices.find_many()) == 4
    assert len(store.monthly_bills.find_many()) == 4


def test_every_bill_matches_its_invoice(store, verified_reading):
    for imported, exported in [(1.1, 0.0), (0.0, 3.3), (2.25, 0.75), (0.1, 0.2)]:
        verified_reading(imported=imported, exported=exported)
    generate_monthly_bills(store, 3, 2025, rate_per_kwh=31.7, credit_rate_per_kwh=23.3)

    invoices = {i.id: i for i in store.invoices.find_many()}
    bills = store.monthly_bills.find_many()
    assert len(bills) == len(invoices) == 4
    for bill in bills:
        assert bill.net_amount == invoices[bill.invoice_id].amount


def test_failed_bill_write_rolls_back_its_invoice(store, verified_reading, monkeypatch):
    verified_reading(imported=1.0, exported=0.0)

    def broken(data, conn=None):
        raise RuntimeError("write failed")

    monkeypatch.setattr(store.monthly_bills, "create", broken)
    with pytest.raises(RuntimeError):
        generate_monthly_bills(store, 3, 2025)
    assert store.invoices.find_many() == []


def test_concurrent_runs_do_not_interleave(store, verified_reading):
    for _ in range(5):
        verified_reading(imported=1.0, exported=0.0)
    errors = []

    def run():
        try:
            generate_monthly_bills(store, 3, 2025)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    invoices = {i.id for i in store.invoices.find_many()}
    bills = store.monthly_bills.find_many()
    assert len(invoices) == len(bills) == 10
    assert {b.invoice_id for b in bills} == invoices


def test_unrepresentable_due_date_skips_only_that_reading(store, verified_reading):
    verified_reading(imported=1.0, exported=0.0, timestamp="9999-12-25T00:00:00Z")
    ok = verified_reading(imported=2.0, exported=0.0, timestamp="9999-12-01T00:00:00Z")

    results = generate_monthly_bills(store, 12, 9999, rate_per_kwh=30, credit_rate_per_kwh=25)
    assert len(results) == 1
    assert results[0]["invoice"].amount == 60.0
    assert results[0]["invoice"].due_date == "9999-12-15T00:00:00.000Z"
    assert results[0]["bill"].kwh_imported == ok.net_units
    assert len(store.invoices.find_many()) == 1


def test_invalid_month_rejected(store):
    with pytest.raises(ValueError):
        generate_monthly_bills(store, 13, 2025)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

def test_generate_monthly_endpoint(client, verified_reading, officer_headers):
    verified_reading(imported=100.0, exported=0.0)
    r = client.post(
        "/api/invoices/generate-monthly",
        json={"month": 3, "year": 2025, "ratePerKwh": 30, "creditRatePerKwh": 25},
        headers=officer_headers,
    )
    assert r.status_code == 200
    [pair] = r.json()["monthlyBills"]
    assert pair["invoice"]["amount"] == 3000.0
    assert pair["invoice"]["lineItems"][0]["unitPrice"] == 3000.0
    assert pair["bill"]["netAmount"] == 3000.0
    assert pair["bill"]["invoiceId"] == pair["invoice"]["id"]


@pytest.mark.parametrize("body", [{}, {"month": 3}, {"year": 2025}])
def test_generate_monthly_requires_period(client, officer_headers, body):
    r = client.post("/api/invoices/generate-monthly", json=body, headers=officer_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "month and year are required"


def test_generate_monthly_rejects_bad_month(client, officer_headers):
    r = client.post("/api/invoices/generate-monthly", json={"month": 13, "year": 2025}, headers=officer_headers)
    assert r.status_code == 400


def test_generate_monthly_is_officer_only(client, customer_headers):
    r = client.post("/api/invoices/generate-monthly", json={"month": 3, "year": 2025}, headers=customer_headers)
    assert r.status_code == 403


def test_list_invoices_scoped_to_customer(client, store, verified_reading, customer_headers, officer_headers):
    verified_reading(imported=1.0, exported=0.0, customer_id="CUST-001")
    verified_reading(imported=1.0, exported=0.0, customer_id="CUST-002")
    generate_monthly_bills(store, 3, 2025)

    own = client.get("/api/invoices", headers=customer_headers).json()
    assert [i["customerId"] for i in own["invoices"]] == ["CUST-001"]
    assert own["monthlyBills"] == []

    everything = client.get("/api/invoices", params={"includeMonthly": "true"}, headers=officer_headers).json()
    assert len(everything["invoices"]) == 2
    assert len(everything["monthlyBills"]) == 2


def test_get_invoice_with_its_bill(client, store, verified_reading, customer_headers):
    verified_reading(imported=1.0, exported=0.0)
    [result] = generate_monthly_bills(store, 3, 2025)
    invoice_id = result["invoice"].id

    data = client.get(f"/api/invoices/{invoice_id}", headers=customer_headers).json()
    assert data["invoice"]["id"] == invoice_id
    assert data["monthlyBill"]["id"] == result["bill"].id


def test_get_other_customers_invoice_forbidden(client, store, verified_reading, customer_headers):
    verified_reading(imported=1.0, exported=0.0, customer_id="CUST-002")
    [result] = generate_monthly_bills(store, 3, 2025)
    r = client.get(f"/api/invoices/{result['invoice'].id}", headers=customer_headers)
    assert r.status_code == 403


def test_get_missing_invoice(client, officer_headers):
    assert client.get("/api/invoices/inv_missing", headers=officer_headers).status_code == 404


def test_mark_invoice_paid(client, store, verified_reading, officer_headers):
    verified_reading(imported=1.0, exported=0.0)
    [result] = generate_monthly_bills(store, 3, 2025)
    invoice_id = result["invoice"].id

    r = client.patch(
        f"/api/invoices/{invoice_id}",
        json={"status": "paid", "paidAt": "2025-04-02T09:30:00Z"},
        headers=officer_headers,
    )
    assert r.status_code == 200
    assert r.json()["invoice"]["status"] == "paid"
    stored = store.invoices.find_unique(invoice_id)
    assert stored.status == "paid"
    assert stored.paid_at == "2025-04-02T09:30:00.000Z"
    assert stored.line_items[0].total == 30.0


def test_patch_rejects_bad_paid_at(client, store, verified_reading, officer_headers):
    verified_reading(imported=1.0, exported=0.0)
    [result] = generate_monthly_bills(store, 3, 2025)
    r = client.patch(f"/api/invoices/{result['invoice'].id}", json={"paidAt": "yesterday"}, headers=officer_headers)
    assert r.status_code == 400


def test_patch_missing_invoice(client, officer_headers):
    r = client.patch("/api/invoices/inv_missing", json={"status": "paid"}, headers=officer_headers)
    assert r.status_code == 404


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def test_cli_dry_run_writes_nothing(store, verified_reading, monkeypatch):
    monkeypatch.setattr("run_billing.get_store", lambda: store)
    verified_reading(imported=1.0, exported=0.0)
    assert run_billing_main(["--month", "3", "--year", "2025", "--dry-run"]) == 0
    assert store.invoices.find_many() == []


def test_cli_run_creates_invoices(store, verified_reading, monkeypatch):
    monkeypatch.setattr("run_billing.get_store", lambda: store)
    verified_reading(imported=1.0, exported=0.0)
    assert run_billing_main(["--month", "3", "--year", "2025", "--rate", "40"]) == 0
    [invoice] = store.invoices.find_many()
    assert invoice.amount == 40.0


def test_cli_rejects_bad_month():
    with pytest.raises(SystemExit):
        run_billing_main(["--month", "0", "--year", "2025"])
