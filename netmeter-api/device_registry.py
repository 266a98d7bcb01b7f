"""
Device registry: maps a device token to its owning customer/application.

Registrations are loaded once and never mutated, so lookups need no locking.
The signing secret never leaves the process; it is only used to verify
HMAC signatures on ingested readings.

Registry file format (NETMETER_DEVICE_REGISTRY):

    {
      "device-token-alpha": {
        "deviceId": "DEV-ALPHA",
        "applicationId": "APP-001",
        "customerId": "CUST-001",
        "secret": "alpha-signing-secret"
      }
    }
"""

import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional

logger = logging.getLogger("netmeter-api.devices")


@dataclass(frozen=True)
class DeviceRegistration:
    device_id: str
    application_id: str
    customer_id: str
    secret: str

    def __repr__(self) -> str:
        return (
            f"DeviceRegistration(device_id={self.device_id!r}, "
            f"application_id={self.application_id!r}, customer_id={self.customer_id!r})"
        )


class DeviceRegistry:
    """Read-only token -> DeviceRegistration lookup."""

    def __init__(self, registrations: Mapping[str, DeviceRegistration]):
        self._registrations = MappingProxyType(dict(registrations))

    def resolve(self, token: Optional[str]) -> Optional[DeviceRegistration]:
        if not token:
            return None
        return self._registrations.get(token)

    def __len__(self) -> int:
        return len(self._registrations)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Mapping[str, str]]) -> "DeviceRegistry":
        registrations: Dict[str, DeviceRegistration] = {}
        for token, entry in raw.items():
            missing = [k for k in ("deviceId", "applicationId", "customerId", "secret") if not entry.get(k)]
            if missing:
                raise ValueError(f"Device registration {token!r} missing: {', '.join(missing)}")
            registrations[token] = DeviceRegistration(
                device_id=entry["deviceId"],
                application_id=entry["applicationId"],
                customer_id=entry["customerId"],
                secret=entry["secret"],
            )
        return cls(registrations)

    @classmethod
    def from_file(cls, path: str) -> "DeviceRegistry":
        with open(path, encoding="utf-8") as fh:
            try:
                raw = json.load(fh)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in device registry {path}: {e}")
        if not isinstance(raw, dict):
            raise ValueError(f"Device registry {path} must be a JSON object")
        return cls.from_dict(raw)


# Development registry, used when NETMETER_DEVICE_REGISTRY is not set.
DEFAULT_REGISTRY = {
    "device-token-alpha": {
        "deviceId": "DEV-ALPHA",
        "applicationId": "APP-001",
        "customerId": "CUST-001",
        "secret": "alpha-signing-secret",
    },
}


def load_registry(path: str = "") -> DeviceRegistry:
    """Load the registry from *path*, or the development registry if empty."""
    if not path:
        logger.warning("NETMETER_DEVICE_REGISTRY not set, using development device registry")
        return DeviceRegistry.from_dict(DEFAULT_REGISTRY)
    registry = DeviceRegistry.from_file(path)
    logger.info("Loaded %d device registrations from %s", len(registry), path)
    return registry
