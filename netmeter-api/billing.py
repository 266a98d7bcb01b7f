"""
Monthly net-metering billing and invoice endpoints.

Provides:
  - POST  /api/invoices/generate-monthly  - officer: bill a (month, year) period
  - GET   /api/invoices                   - officer: all; customer: own
  - GET   /api/invoices/{id}              - invoice + its monthly bill
  - PATCH /api/invoices/{id}              - officer: status / paidAt

Billing rule per verified reading (net_units = imported - exported):
  net_units >= 0  ->  amount = net_units * rate_per_kwh          (customer owes)
  net_units <  0  ->  amount = net_units * credit_rate_per_kwh   (negative, credit)

Each reading produces one Invoice with a single line item and one
MonthlyBill pointing back at it; the pair is written in one transaction.

Readings carry no "billed" marker: running the same period twice bills
every reading twice.  Callers must run each period once.
"""

import calendar
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query

from config import CONFIG
from middleware import get_current_user, require_role
from models import (
    BillingRunRequest,
    CurrentUser,
    InvoiceType,
    InvoiceUpdateRequest,
    InvoiceStatus,
    ReadingStatus,
    UserRole,
)
from readings import format_timestamp, parse_timestamp
from store import Store, get_store

logger = logging.getLogger("netmeter-api.billing")

router = APIRouter(prefix="/api/invoices", tags=["invoices"])

# One lock per billing period so concurrent runs over the same readings
# cannot interleave.
_period_locks: Dict[Tuple[int, int], threading.Lock] = {}
_period_locks_guard = threading.Lock()


def _period_lock(month: int, year: int) -> threading.Lock:
    with _period_locks_guard:
        return _period_locks.setdefault((year, month), threading.Lock())


# ---------------------------------------------------------------------------
# Billing engine
# ---------------------------------------------------------------------------

def compute_amount(net_units: float, rate_per_kwh: float, credit_rate_per_kwh: float) -> float:
    if net_units >= 0:
        return net_units * rate_per_kwh
    return net_units * credit_rate_per_kwh


def _format_kwh(value: float) -> str:
    value = abs(value)
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.4f}".rstrip("0").rstrip(".")


def generate_monthly_bills(
    store: Store,
    month: int,
    year: int,
    rate_per_kwh: Optional[float] = None,
    credit_rate_per_kwh: Optional[float] = None,
    due_days: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Bill every verified reading of (month, year).

    Returns [{"bill": MonthlyBill, "invoice": Invoice}, ...] in the order
    the readings were stored.  A storage error rolls back the current
    reading's pair and aborts the run; pairs already written stay.
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1-12, got {month}")
    rate = CONFIG.rate_per_kwh if rate_per_kwh is None else rate_per_kwh
    credit_rate = CONFIG.credit_rate_per_kwh if credit_rate_per_kwh is None else credit_rate_per_kwh
    due_days = CONFIG.due_days if due_days is None else due_days

    created: List[Dict[str, Any]] = []
    with _period_lock(month, year):
        readings = store.meter_readings.find_many({
            "month": month,
            "year": year,
            "status": ReadingStatus.verified.value,
        })

        for reading in readings:
            net = reading.net_units
            if net is None:
                logger.warning("Reading %s is verified but has no net units, skipped", reading.id)
                continue

            reading_date = parse_timestamp(reading.timestamp)
            try:
                due_date = reading_date + timedelta(days=due_days)
            except OverflowError:
                logger.warning("Reading %s due date out of range (%s + %d days), skipped",
                               reading.id, reading.timestamp, due_days)
                continue

            amount = compute_amount(net, rate, credit_rate)
            direction = "import" if net >= 0 else "export"

            with store.transaction() as conn:
                invoice = store.invoices.create({
                    "application_id": reading.application_id,
                    "customer_id": reading.customer_id,
                    "type": InvoiceType.monthly_bill.value,
                    "description": f"{calendar.month_name[reading_date.month]} Net Metering Bill",
                    "amount": amount,
                    "status": InvoiceStatus.pending.value,
                    "due_date": format_timestamp(due_date),
                    "paid_at": None,
                    "line_items": [{
                        "description": f"Net energy {direction} ({_format_kwh(net)} kWh)",
                        "quantity": 1,
                        "unit_price": amount,
                        "total": amount,
                    }],
                }, conn=conn)

                bill = store.monthly_bills.create({
                    "invoice_id": invoice.id,
                    "customer_id": reading.customer_id,
                    "application_id": reading.application_id,
                    "month": month,
                    "year": year,
                    "kwh_generated": reading.kwh_generated,
                    "kwh_exported": max(0.0, -net),
                    "kwh_imported": max(0.0, net),
                    "net_amount": amount,
                }, conn=conn)

            created.append({"bill": bill, "invoice": invoice})

    logger.info("Billing %04d-%02d: %d readings, %d invoices @ %.2f/%.2f per kWh",
                year, month, len(readings), len(created), rate, credit_rate)
    return created


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/generate-monthly")
def generate_monthly(
    body: BillingRunRequest,
    user: CurrentUser = Depends(require_role(UserRole.officer)),
    store: Store = Depends(get_store),
):
    """Run the monthly billing batch for one period."""
    if not body.month or not body.year:
        raise HTTPException(status_code=400, detail="month and year are required")
    if not 1 <= body.month <= 12:
        raise HTTPException(status_code=400, detail="month must be between 1 and 12")

    try:
        results = generate_monthly_bills(
            store, body.month, body.year,
            rate_per_kwh=body.rate_per_kwh,
            credit_rate_per_kwh=body.credit_rate_per_kwh,
        )
    except Exception as e:
        logger.error("Billing run %s-%s by %s failed: %s", body.year, body.month, user.user_id, e)
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "monthlyBills": [
            {"bill": r["bill"].to_wire(), "invoice": r["invoice"].to_wire()}
            for r in results
        ],
    }


@router.get("")
def list_invoices(
    include_monthly: bool = Query(False, alias="includeMonthly"),
    user: CurrentUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    if user.role == UserRole.customer:
        where = {"customer_id": user.user_id}
    elif user.role == UserRole.officer:
        where = {}
    else:
        raise HTTPException(status_code=403, detail="Requires one of: ['officer', 'customer']")

    invoices = store.invoices.find_many(where, order_by="-created_at")
    monthly_bills = store.monthly_bills.find_many(where, order_by="-created_at") if include_monthly else []
    return {
        "invoices": [i.to_wire() for i in invoices],
        "monthlyBills": [b.to_wire() for b in monthly_bills],
    }


@router.get("/{invoice_id}")
def get_invoice(
    invoice_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    invoice = store.invoices.find_unique(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    if user.role != UserRole.officer and invoice.customer_id != user.user_id:
        raise HTTPException(status_code=403, detail="Not your invoice")

    bills = store.monthly_bills.find_many({"invoice_id": invoice_id})
    return {
        "invoice": invoice.to_wire(),
        "monthlyBill": bills[0].to_wire() if bills else None,
    }


@router.patch("/{invoice_id}")
def update_invoice(
    invoice_id: str,
    body: InvoiceUpdateRequest,
    user: CurrentUser = Depends(require_role(UserRole.officer)),
    store: Store = Depends(get_store),
):
    changes: Dict[str, Any] = {}
    if body.status is not None:
        changes["status"] = body.status.value
    if body.paid_at is not None:
        try:
            changes["paid_at"] = format_timestamp(parse_timestamp(body.paid_at))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Bad paidAt timestamp: {body.paid_at}")

    updated = store.invoices.update(invoice_id, changes)
    if updated is None:
        raise HTTPException(status_code=404, detail="Invoice not found")

    logger.info("Invoice %s updated by %s: %s", invoice_id, user.user_id, changes)
    return {"invoice": updated.to_wire()}
