"""
Device telemetry ingestion gateway.

Provides:
  - POST /api/iot/measurements   - signed meter reading from a registered device
  - GET  /api/iot/measurements   - reading history + aggregates for dashboards

Write path, in order (first failure ends the request, nothing is written):
  1. x-device-token / x-device-signature headers present       401
  2. token resolves in the device registry                     401
  3. per-token fixed-window rate limit                         429
  4. HMAC-SHA256 of the raw body matches the signature          401
  5. body is JSON                                               400
  6. body matches the reading schema                            400
  7. reading stored as pending, customer from the registry      202

The JSON body is only parsed after the signature checks out, so payload
errors are not observable without a valid device secret.
"""

import json
import logging
import math
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config import CONFIG
from device_registry import DeviceRegistry, load_registry
from errors import (
    IngestError,
    InvalidSignature,
    MalformedPayload,
    RateLimited,
    Unauthorized,
    ValidationFailed,
)
from models import MeterReadingPayload
from rate_limit import FixedWindowRateLimiter
from readings import add_meter_reading, build_dashboard_payload
from signatures import verify_signature
from store import Store, get_store

logger = logging.getLogger("netmeter-api.ingest")

router = APIRouter(prefix="/api/iot", tags=["iot"])

DEFAULT_LIMIT = 30
MIN_LIMIT = 1
MAX_LIMIT = 200


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


class IngestionGateway:
    """Authenticates, rate-limits, validates and stores device readings."""

    def __init__(self, registry: DeviceRegistry, limiter: FixedWindowRateLimiter, store: Store):
        self.registry = registry
        self.limiter = limiter
        self.store = store

    def ingest(self, token: Optional[str], signature: Optional[str], raw_body: bytes) -> Dict[str, Any]:
        if not token or not signature:
            raise Unauthorized()

        device = self.registry.resolve(token)
        if device is None:
            logger.warning("Ingest rejected: unknown device token")
            raise Unauthorized("Unknown device token")

        if not self.limiter.check(token):
            logger.warning("Ingest rejected: rate limit exceeded for %s", device.device_id)
            raise RateLimited()

        if not verify_signature(device.secret, raw_body, signature):
            logger.warning("Ingest rejected: bad signature from %s", device.device_id)
            raise InvalidSignature()

        try:
            parsed = json.loads(raw_body, parse_constant=_reject_constant)
        except ValueError:
            raise MalformedPayload()

        try:
            payload = MeterReadingPayload.model_validate(parsed)
        except ValidationError as e:
            failed = ValidationFailed.from_pydantic(e)
            logger.info("Ingest rejected: %s payload invalid (%s)",
                        device.device_id, ", ".join(failed.issues["fieldErrors"]) or "body")
            raise failed

        record = add_meter_reading(
            self.store,
            customer_id=device.customer_id,
            application_id=device.application_id if payload.application_id is None else payload.application_id,
            device_id=device.device_id if payload.device_id is None else payload.device_id,
            kwh_generated=payload.kwh_generated,
            kwh_exported=payload.kwh_exported,
            kwh_imported=payload.kwh_imported,
            voltage=payload.voltage,
            current=payload.current,
            timestamp=payload.timestamp,
        )

        logger.info("Reading %s from %s: gen=%.3f exp=%.3f imp=%.3f kWh",
                    record.id, record.device_id, record.kwh_generated,
                    record.kwh_exported, record.kwh_imported)

        return {
            "status": "accepted",
            "readingId": record.id,
            "receivedAt": record.created_at,
            "applicationId": record.application_id,
        }


_gateway: Optional[IngestionGateway] = None


def get_gateway() -> IngestionGateway:
    """Lazy-initialize the process-wide gateway from config."""
    global _gateway
    if _gateway is None:
        _gateway = IngestionGateway(
            registry=load_registry(CONFIG.device_registry_path),
            limiter=FixedWindowRateLimiter(
                limit=CONFIG.rate_limit_requests,
                window_ms=CONFIG.rate_limit_window_ms,
            ),
            store=get_store(),
        )
    return _gateway


def clamp_limit(raw: Optional[str]) -> int:
    """Missing or non-numeric -> 30, otherwise clamped to [1, 200].

    A blank value counts as 0, so ``?limit=`` gives 1.
    """
    if raw is None:
        return DEFAULT_LIMIT
    if not raw.strip():
        return MIN_LIMIT
    try:
        n = float(raw)
    except ValueError:
        return DEFAULT_LIMIT
    if not math.isfinite(n):
        return DEFAULT_LIMIT
    return int(min(max(n, MIN_LIMIT), MAX_LIMIT))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/measurements", status_code=202)
async def ingest_measurement(
    request: Request,
    x_device_token: Optional[str] = Header(None),
    x_device_signature: Optional[str] = Header(None),
    gateway: IngestionGateway = Depends(get_gateway),
):
    raw_body = await request.body()

    try:
        result = await run_in_threadpool(gateway.ingest, x_device_token, x_device_signature, raw_body)
    except IngestError:
        raise
    except Exception as e:
        logger.error("Meter reading ingest failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to store reading")

    return JSONResponse(status_code=202, content=result)


@router.get("/measurements")
def measurements_dashboard(
    customer_id: Optional[str] = Query(None, alias="customerId"),
    limit: Optional[str] = Query(None),
    gateway: IngestionGateway = Depends(get_gateway),
):
    """Reading history and monthly/all-time aggregates, optionally for one customer."""
    return build_dashboard_payload(gateway.store, customer_id, clamp_limit(limit))
