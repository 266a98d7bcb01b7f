"""
Meter reading store operations and officer reading endpoints.

Provides:
  - GET  /api/meter-readings               - officer: all readings; customer: own
  - POST /api/meter-readings/{id}/verify   - officer: pending → verified

Lifecycle of a reading:
  pending  - written by the ingestion gateway, not billable
  verified - set once by an officer; month, year and net_units are filled in
             here and the reading becomes an input to the monthly billing run
"""

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from config import CONFIG
from middleware import get_current_user, require_role
from models import CurrentUser, MeterReading, ReadingStatus, UserRole
from store import Store, get_store

logger = logging.getLogger("netmeter-api.readings")

router = APIRouter(prefix="/api/meter-readings", tags=["meter-readings"])


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string to an aware UTC datetime.

    Naive values are taken as UTC.  Raises ValueError if unparseable.
    """
    s = (value or "").strip()
    if not s:
        raise ValueError("empty timestamp")
    if s[-1] in "Zz":
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError:
        raise ValueError(f"timestamp out of range: {value}")


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Store operations
# ---------------------------------------------------------------------------

def add_meter_reading(
    store: Store,
    customer_id: str,
    application_id: Optional[str],
    device_id: str,
    kwh_generated: float,
    kwh_exported: float,
    kwh_imported: float,
    timestamp: str,
    voltage: Optional[float] = None,
    current: Optional[float] = None,
) -> MeterReading:
    """Persist a new pending reading.  *timestamp* is normalised to UTC."""
    return store.meter_readings.create({
        "customer_id": customer_id,
        "application_id": application_id,
        "device_id": device_id,
        "kwh_generated": kwh_generated,
        "kwh_exported": kwh_exported,
        "kwh_imported": kwh_imported,
        "voltage": voltage,
        "current": current,
        "timestamp": format_timestamp(parse_timestamp(timestamp)),
        "status": ReadingStatus.pending.value,
    })


def get_meter_readings(
    store: Store,
    customer_id: Optional[str] = None,
    status: Optional[ReadingStatus] = None,
) -> List[MeterReading]:
    """Readings, newest first by reading timestamp."""
    where: Dict[str, Any] = {}
    if customer_id:
        where["customer_id"] = customer_id
    if status:
        where["status"] = status
    return store.meter_readings.find_many(where, order_by="-timestamp")


def verify_reading(store: Store, reading_id: str) -> MeterReading:
    """Move a reading from pending to verified and fill in its billing fields.

    Raises LookupError for an unknown id and ValueError if the reading is
    already verified.
    """
    with store.transaction() as conn:
        reading = store.meter_readings.find_unique(reading_id, conn=conn)
        if reading is None:
            raise LookupError(reading_id)
        if reading.status == ReadingStatus.verified.value:
            raise ValueError(f"Reading {reading_id} is already verified")

        ts = parse_timestamp(reading.timestamp)
        updated = store.meter_readings.update(reading_id, {
            "status": ReadingStatus.verified.value,
            "month": ts.month,
            "year": ts.year,
            "net_units": reading.kwh_imported - reading.kwh_exported,
        }, conn=conn)
    return updated


# ---------------------------------------------------------------------------
# Dashboard aggregation
# ---------------------------------------------------------------------------

def _settle(net_kwh: float, rate: float, credit_rate: float) -> tuple[float, float]:
    """(amount_due, credit) for a net kWh figure at display rates."""
    if net_kwh > 0:
        return round(net_kwh * rate, 2), 0.0
    if net_kwh < 0:
        return 0.0, round(abs(net_kwh) * credit_rate, 2)
    return 0.0, 0.0


def calculate_monthly_billing(
    readings: List[MeterReading],
    rate: float = CONFIG.dashboard_rate_per_kwh,
    credit_rate: float = CONFIG.dashboard_credit_per_kwh,
) -> List[Dict[str, Any]]:
    """Per calendar month (UTC) energy sums with an estimated charge or credit."""
    grouped: Dict[tuple, Dict[str, Any]] = {}
    for r in readings:
        ts = parse_timestamp(r.timestamp)
        key = (ts.year, ts.month)
        if key not in grouped:
            grouped[key] = {
                "month": calendar.month_abbr[ts.month],
                "year": ts.year,
                "monthIndex": ts.month - 1,
                "kWhGenerated": 0.0,
                "kWhExported": 0.0,
                "kWhImported": 0.0,
                "netKWh": 0.0,
                "amountDue": 0.0,
                "credit": 0.0,
            }
        g = grouped[key]
        g["kWhGenerated"] += r.kwh_generated
        g["kWhExported"] += r.kwh_exported
        g["kWhImported"] += r.kwh_imported

    for g in grouped.values():
        g["netKWh"] = g["kWhImported"] - g["kWhExported"]
        g["amountDue"], g["credit"] = _settle(g["netKWh"], rate, credit_rate)

    return [grouped[k] for k in sorted(grouped)]


def build_energy_snapshot(
    readings: List[MeterReading],
    rate: float = CONFIG.dashboard_rate_per_kwh,
    credit_rate: float = CONFIG.dashboard_credit_per_kwh,
) -> Dict[str, Any]:
    totals = {
        "kWhGenerated": sum(r.kwh_generated for r in readings),
        "kWhExported": sum(r.kwh_exported for r in readings),
        "kWhImported": sum(r.kwh_imported for r in readings),
    }
    totals["netKWh"] = totals["kWhImported"] - totals["kWhExported"]
    totals["amountDue"], totals["credit"] = _settle(totals["netKWh"], rate, credit_rate)
    return {
        "totals": totals,
        "monthly": calculate_monthly_billing(readings, rate, credit_rate),
    }


def build_dashboard_payload(store: Store, customer_id: Optional[str] = None, limit: int = 30) -> Dict[str, Any]:
    """Latest *limit* readings plus monthly and all-time aggregates over every reading."""
    all_readings = get_meter_readings(store, customer_id)
    snapshot = build_energy_snapshot(all_readings)
    return {
        "readings": [r.to_wire() for r in all_readings[:limit]],
        "monthly": snapshot["monthly"],
        "totals": snapshot["totals"],
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
def list_meter_readings(
    status: Optional[ReadingStatus] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    """Officers see every reading; customers see their own."""
    if user.role == UserRole.customer:
        readings = get_meter_readings(store, customer_id=user.user_id, status=status)
    elif user.role == UserRole.officer:
        readings = get_meter_readings(store, status=status)
    else:
        raise HTTPException(status_code=403, detail="Requires one of: ['officer', 'customer']")
    return {"readings": [r.to_wire() for r in readings]}


@router.post("/{reading_id}/verify")
def verify_meter_reading(
    reading_id: str,
    user: CurrentUser = Depends(require_role(UserRole.officer)),
    store: Store = Depends(get_store),
):
    """Officer verification: the reading becomes eligible for billing."""
    try:
        reading = verify_reading(store, reading_id)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Reading not found: {reading_id}")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error("Reading verification failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("Reading %s verified by %s: %04d-%02d net=%.4f kWh",
                reading_id, user.user_id, reading.year, reading.month, reading.net_units)
    return {"reading": reading.to_wire()}
