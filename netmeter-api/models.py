"""
Pydantic models for the net-metering API.

Persisted records serialise with the camelCase field names existing stored
data and dashboards use (customerId, kWhGenerated, lineItems, ...); Python
code uses the snake_case attribute names.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictStr, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class UserRole(str, Enum):
    customer = "customer"
    installer = "installer"
    officer = "officer"


class ReadingStatus(str, Enum):
    pending = "pending"
    verified = "verified"


class InvoiceType(str, Enum):
    authority_fee = "authority_fee"
    installation = "installation"
    monthly_bill = "monthly_bill"


class InvoiceStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> dict:
        """Dump with the stored (camelCase) field names."""
        return self.model_dump(by_alias=True, mode="json")


class MeterReading(Record):
    """One ingested telemetry sample.

    month/year/net_units stay None until the reading is verified.
    """
    id: str
    customer_id: str
    application_id: Optional[str] = None
    device_id: str
    kwh_generated: float = Field(..., ge=0, alias="kWhGenerated")
    kwh_exported: float = Field(..., ge=0, alias="kWhExported")
    kwh_imported: float = Field(..., ge=0, alias="kWhImported")
    voltage: Optional[float] = None
    current: Optional[float] = None
    timestamp: str                      # ISO-8601 UTC
    created_at: str
    status: ReadingStatus = ReadingStatus.pending
    month: Optional[int] = None
    year: Optional[int] = None
    net_units: Optional[float] = None   # imported - exported


class LineItem(Record):
    description: str
    quantity: float
    unit_price: float
    total: float


class Invoice(Record):
    id: str
    application_id: Optional[str] = None
    customer_id: str
    type: InvoiceType
    description: str
    amount: float                       # positive = owed, negative = credit
    status: InvoiceStatus = InvoiceStatus.pending
    due_date: str
    paid_at: Optional[str] = None
    line_items: List[LineItem] = []
    created_at: str
    updated_at: str


class MonthlyBill(Record):
    id: str
    invoice_id: str
    customer_id: str
    application_id: Optional[str] = None
    month: int
    year: int
    kwh_generated: float = Field(..., alias="kWhGenerated")
    kwh_exported: float = Field(..., alias="kWhExported")
    kwh_imported: float = Field(..., alias="kWhImported")
    net_amount: float
    created_at: str


# ---------------------------------------------------------------------------
# Device payload
# ---------------------------------------------------------------------------

class MeterReadingPayload(BaseModel):
    """Body a device POSTs.  Numbers must be JSON numbers, not strings."""
    application_id: Optional[StrictStr] = Field(None, alias="applicationId")
    device_id: Optional[StrictStr] = Field(None, alias="deviceId")
    kwh_generated: StrictFloat = Field(..., ge=0, allow_inf_nan=False, alias="kWh_generated")
    kwh_exported: StrictFloat = Field(..., ge=0, allow_inf_nan=False, alias="kWh_exported")
    kwh_imported: StrictFloat = Field(..., ge=0, allow_inf_nan=False, alias="kWh_imported")
    voltage: Optional[StrictFloat] = Field(None, allow_inf_nan=False)
    current: Optional[StrictFloat] = Field(None, allow_inf_nan=False)
    timestamp: StrictStr

    @field_validator("timestamp")
    @classmethod
    def timestamp_must_parse(cls, v: str) -> str:
        from readings import parse_timestamp

        try:
            parse_timestamp(v)
        except ValueError:
            raise ValueError("timestamp must be a valid ISO date string")
        return v


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class BillingRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    month: Optional[int] = None
    year: Optional[int] = None
    rate_per_kwh: Optional[float] = Field(None, ge=0, alias="ratePerKwh")
    credit_rate_per_kwh: Optional[float] = Field(None, ge=0, alias="creditRatePerKwh")


class InvoiceUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[InvoiceStatus] = None
    paid_at: Optional[str] = Field(None, alias="paidAt")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class CurrentUser(BaseModel):
    """Decoded JWT payload representing the current user."""
    user_id: str
    role: UserRole
    name: str = ""
    email: str = ""
