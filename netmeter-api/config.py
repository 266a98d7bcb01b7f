"""
Runtime configuration for the net-metering API.

Reads environment variables once into a frozen NetMeteringConfig.  Modules
import CONFIG for defaults; tests build their own instances with
get_config(env={...}) instead of patching os.environ.

Variables:
  DATABASE_URL                       - sqlite:///path or postgresql://...   (default: sqlite:///./netmeter.db)
  NETMETER_PORT                      - Port to bind                          (default: 8100)
  NETMETER_JWT_SECRET                - JWT signing secret                    (default: dev secret)
  NETMETER_JWT_EXPIRY_HOURS          - Token lifetime                        (default: 8)
  NETMETER_DEVICE_REGISTRY           - JSON file of device registrations     (default: built-in dev registry)
  NETMETER_RATE_LIMIT_WINDOW_MS      - Ingestion rate-limit window           (default: 60000)
  NETMETER_RATE_LIMIT_REQUESTS       - Requests allowed per window           (default: 30)
  NETMETER_RATE_PER_KWH              - Billing rate for net import           (default: 30)
  NETMETER_CREDIT_RATE_PER_KWH       - Billing credit for net export         (default: 25)
  NETMETER_DUE_DAYS                  - Invoice due date offset               (default: 14)
  NETMETER_DASHBOARD_RATE_PER_KWH    - Display rate for dashboard estimates  (default: 52)
  NETMETER_DASHBOARD_CREDIT_PER_KWH  - Display credit for dashboard          (default: 30)
  NETMETER_CURRENCY                  - ISO 4217 code shown to clients        (default: LKR)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class NetMeteringConfig:
    database_url: str
    port: int
    jwt_secret: str
    jwt_expiry_hours: int
    device_registry_path: str           # empty -> built-in registry
    rate_limit_window_ms: int
    rate_limit_requests: int
    rate_per_kwh: float                 # charged per net-imported kWh
    credit_rate_per_kwh: float          # credited per net-exported kWh
    due_days: int
    dashboard_rate_per_kwh: float
    dashboard_credit_per_kwh: float
    currency: str


def _get(env: Mapping[str, str], name: str, default: str) -> str:
    v = env.get(name)
    return v if v is not None and v != "" else default


def get_config(env: Optional[Mapping[str, str]] = None) -> NetMeteringConfig:
    """Build the config from *env* (defaults to os.environ)."""
    env = os.environ if env is None else env
    return NetMeteringConfig(
        database_url=_get(env, "DATABASE_URL", "sqlite:///./netmeter.db"),
        port=int(_get(env, "NETMETER_PORT", "8100")),
        jwt_secret=_get(env, "NETMETER_JWT_SECRET", "netmeter-dev-secret-change-me"),
        jwt_expiry_hours=int(_get(env, "NETMETER_JWT_EXPIRY_HOURS", "8")),
        device_registry_path=_get(env, "NETMETER_DEVICE_REGISTRY", ""),
        rate_limit_window_ms=int(_get(env, "NETMETER_RATE_LIMIT_WINDOW_MS", "60000")),
        rate_limit_requests=int(_get(env, "NETMETER_RATE_LIMIT_REQUESTS", "30")),
        rate_per_kwh=float(_get(env, "NETMETER_RATE_PER_KWH", "30")),
        credit_rate_per_kwh=float(_get(env, "NETMETER_CREDIT_RATE_PER_KWH", "25")),
        due_days=int(_get(env, "NETMETER_DUE_DAYS", "14")),
        dashboard_rate_per_kwh=float(_get(env, "NETMETER_DASHBOARD_RATE_PER_KWH", "52")),
        dashboard_credit_per_kwh=float(_get(env, "NETMETER_DASHBOARD_CREDIT_PER_KWH", "30")),
        currency=_get(env, "NETMETER_CURRENCY", "LKR").upper(),
    )


CONFIG: NetMeteringConfig = get_config()
