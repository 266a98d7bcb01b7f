"""
Solar Net-Metering API
======================
FastAPI service providing:
  - Signed meter-reading ingestion from registered devices
  - Officer verification of readings
  - Monthly net-metering billing (invoices + monthly bills)
  - Dashboard aggregates over reading history

Runs on 0.0.0.0:8100 by default.  See config.py for environment variables.
"""

import logging
from datetime import datetime, timezone

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import CONFIG
from errors import IngestError, ingest_error_handler
from store import Store, get_store

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("netmeter-api")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Solar Net-Metering API",
    description="Device reading ingestion, reading verification and monthly net-metering billing.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(IngestError, ingest_error_handler)

# ---------------------------------------------------------------------------
# Mount sub-routers (ingest, readings, billing)
# ---------------------------------------------------------------------------
from ingest import router as ingest_router
from readings import router as readings_router
from billing import router as billing_router

app.include_router(ingest_router)
app.include_router(readings_router)
app.include_router(billing_router)


# ---- Config ----

@app.get("/api/config")
def config_endpoint():
    """Billing parameters the dashboards display."""
    return {
        "currency": CONFIG.currency,
        "ratePerKwh": CONFIG.rate_per_kwh,
        "creditRatePerKwh": CONFIG.credit_rate_per_kwh,
        "dueDays": CONFIG.due_days,
    }


# ---- Health ----

@app.get("/health")
@app.get("/api/health")
def health(store: Store = Depends(get_store)):
    """Health check including store connectivity."""
    status = {
        "status": "ok",
        "database": store.backend,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    try:
        status["tables"] = store.ping()
    except Exception as e:
        status["status"] = "db_error"
        status["error"] = str(e)
    return status


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    db_url = CONFIG.database_url
    logger.info("=" * 60)
    logger.info("Solar Net-Metering API v1.0")
    logger.info("Database: %s", db_url.split("@")[-1] if "@" in db_url else db_url)
    logger.info("Port: %d", CONFIG.port)
    logger.info("=" * 60)

    get_store()
    uvicorn.run(app, host="0.0.0.0", port=CONFIG.port, log_level="info")
