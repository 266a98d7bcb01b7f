#!/usr/bin/env python3
"""
Run the monthly net-metering billing batch for one period.

Intended for cron.  Bills every verified reading of the period; running the
same period twice bills the readings twice, so schedule it once per period.

Usage:
    python3 run_billing.py --month 3 --year 2025 --dry-run
    python3 run_billing.py --month 3 --year 2025
    python3 run_billing.py --month 3 --year 2025 --rate 32 --credit-rate 24
"""

import argparse
import logging
import sys

from config import CONFIG
from billing import compute_amount, generate_monthly_bills
from models import ReadingStatus
from store import get_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("netmeter-api.run-billing")


def preview(store, month: int, year: int, rate: float, credit_rate: float) -> int:
    """Log what a run would bill, without writing anything."""
    readings = store.meter_readings.find_many({
        "month": month, "year": year, "status": ReadingStatus.verified.value,
    })
    total = 0.0
    for r in readings:
        amount = compute_amount(r.net_units or 0.0, rate, credit_rate)
        total += amount
        log.info("  %s  customer=%s  net=%+.3f kWh  amount=%+.2f", r.id, r.customer_id, r.net_units or 0.0, amount)
    log.info("DRY RUN: %d readings, net total %+.2f %s", len(readings), total, CONFIG.currency)
    return len(readings)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate monthly net-metering bills")
    parser.add_argument("--month", type=int, required=True, help="Billing month (1-12)")
    parser.add_argument("--year", type=int, required=True, help="Billing year")
    parser.add_argument("--rate", type=float, default=CONFIG.rate_per_kwh, help="Charge per net-imported kWh")
    parser.add_argument("--credit-rate", type=float, default=CONFIG.credit_rate_per_kwh,
                        help="Credit per net-exported kWh")
    parser.add_argument("--dry-run", action="store_true", help="Preview only, no DB writes")
    args = parser.parse_args(argv)

    if not 1 <= args.month <= 12:
        parser.error("--month must be between 1 and 12")
    if args.rate < 0 or args.credit_rate < 0:
        parser.error("rates must be non-negative")

    log.info("=" * 60)
    log.info("NET METERING BILLING %04d-%02d", args.year, args.month)
    log.info("Rates: %.2f import / %.2f export credit per kWh", args.rate, args.credit_rate)
    log.info("=" * 60)

    store = get_store()
    if args.dry_run:
        preview(store, args.month, args.year, args.rate, args.credit_rate)
        return 0

    try:
        results = generate_monthly_bills(
            store, args.month, args.year,
            rate_per_kwh=args.rate, credit_rate_per_kwh=args.credit_rate,
        )
    except Exception as e:
        log.error("Billing run failed: %s", e)
        return 1

    for r in results:
        inv = r["invoice"]
        log.info("  invoice %s  customer=%s  amount=%+.2f  due=%s",
                 inv.id, inv.customer_id, inv.amount, inv.due_date)
    log.info("Done: %d invoices created", len(results))
    return 0


if __name__ == "__main__":
    sys.exit(main())
