import uuid
from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .config import settings
from .models import IssueKind, MeasurementType, PaymentType
from .money import ZERO, quantize_cents, to_decimal

# Raw measured/priced values stay loose so the resolver can report junk as an
# item error instead of failing the whole snapshot at ingestion.
Number = Union[float, str]


class CamelModel(BaseModel):
    """snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def _lenient_decimal(value):
    if value is None or value == "":
        return ZERO
    try:
        return to_decimal(value)
    except ValueError:
        return value  # let pydantic report it


# --- Inputs ---

class Surface(CamelModel):
    name: Optional[str] = None
    sqft: Optional[Number] = None
    width: Optional[Number] = None
    height: Optional[Number] = None
    linear_ft: Optional[Number] = None
    units: Optional[Number] = None
    waste_factor: Optional[Number] = None
    subtype: Optional[str] = None


# Legacy key -> (camel, snake) canonical key
_LEGACY_ITEM_KEYS = {
    "materialCost": ("materialCostPerUnit", "material_cost_per_unit"),
    "laborCost": ("laborCostPerUnit", "labor_cost_per_unit"),
    "name": ("customName", "custom_name"),
}

# Flat measurement fields that predate surfaces[]
_FLAT_MEASUREMENT_KEYS = ("sqft", "width", "height", "linearFt", "linear_ft", "units")


class WorkItem(CamelModel):
    type: str = ""
    subtype: Optional[str] = None
    custom_name: Optional[str] = None
    measurement_type: Optional[str] = None
    material_cost_per_unit: Optional[Number] = None
    labor_cost_per_unit: Optional[Number] = None
    surfaces: List[Surface] = []
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, data):
        """
        Collapse legacy records to the single surfaces[] representation.

        Flat top-level measurements become one surface when surfaces[] is
        empty and are dropped otherwise, so the engine never sees both.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, (camel, snake) in _LEGACY_ITEM_KEYS.items():
            value = data.pop(legacy, None)
            if value is not None and camel not in data and snake not in data:
                data[camel] = value

        flat = {k: data.pop(k) for k in _FLAT_MEASUREMENT_KEYS if k in data}
        if not data.get("surfaces") and any(v not in (None, "") for v in flat.values()):
            data["surfaces"] = [flat]
        return data

    @field_validator("measurement_type", mode="before")
    @classmethod
    def _measurement_type_str(cls, value):
        if isinstance(value, MeasurementType):
            return value.value
        if value is not None and not isinstance(value, str):
            # the resolver reports and defaults unknown types
            return str(value)
        return value

    @property
    def display_name(self) -> str:
        return self.custom_name or self.type or "Unnamed Item"


class Category(CamelModel):
    key: str
    name: str = Field(min_length=1)
    work_items: List[WorkItem] = []


class Fee(CamelModel):
    name: str = ""
    amount: Decimal = ZERO

    coerce_decimals = field_validator("amount", mode="before")(_lenient_decimal)


class WasteEntry(CamelModel):
    label: Optional[str] = None
    surface_cost: Decimal = ZERO
    waste_factor: Decimal = ZERO

    coerce_decimals = field_validator("surface_cost", "waste_factor", mode="before")(_lenient_decimal)


class PaymentRecord(CamelModel):
    """Durable payment shape. Frozen; the ledger replaces records, never edits them."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    date: date_type
    amount: Decimal = Field(ge=0)
    method: str = Field(default_factory=lambda: settings.DEFAULT_PAYMENT_METHOD)
    note: str = ""
    is_paid: bool = False
    type: PaymentType = PaymentType.ONE_TIME
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None
    manually_adjusted: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, data):
        """Untyped records: only method 'Deposit' marks the deposit. Notes never change the type."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "note" not in data and "description" in data:
            data["note"] = data.pop("description") or ""
        if data.get("type") in (None, ""):
            method = str(data.get("method") or "").strip().lower()
            if method == "deposit":
                data["type"] = PaymentType.DEPOSIT
            else:
                data["type"] = PaymentType.ONE_TIME
        if str(getattr(data["type"], "value", data["type"])) == PaymentType.DEPOSIT.value:
            data["isPaid"] = True
            data.pop("is_paid", None)
        if data.get("note") is None:
            data["note"] = ""
        return data

    @field_validator("date", mode="before")
    @classmethod
    def _truncate_datetime(cls, value):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str) and len(value) > 10:
            return value[:10]
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_decimal(cls, value):
        try:
            return to_decimal(value)
        except ValueError:
            return value

    @field_validator("amount")
    @classmethod
    def _amount_cents(cls, value):
        return quantize_cents(value)


class ProjectSettings(CamelModel):
    tax_rate: Decimal = ZERO
    markup: Decimal = ZERO
    labor_discount: Decimal = ZERO
    transportation_fee: Decimal = ZERO
    waste_factor: Decimal = ZERO
    misc_fees: List[Fee] = []
    waste_entries: List[WasteEntry] = []
    payments: List[PaymentRecord] = []

    coerce_decimals = field_validator(
        "tax_rate", "markup", "labor_discount", "transportation_fee", "waste_factor",
        mode="before",
    )(_lenient_decimal)


# --- Results ---

class CalcIssue(CamelModel):
    message: str
    code: str
    kind: IssueKind = IssueKind.CALCULATION
    context: Dict[str, Any] = {}


class UnitsResult(CamelModel):
    units: Decimal = ZERO
    label: str = "units"
    measurement_type: MeasurementType = MeasurementType.SQUARE_FOOT
    errors: List[CalcIssue] = []
    warnings: List[CalcIssue] = []


class CostResult(CamelModel):
    units: Decimal = ZERO
    unit_label: str = "units"
    measurement_type: Optional[MeasurementType] = None
    material_cost: str = "0.00"
    labor_cost: str = "0.00"
    total_cost: str = "0.00"
    material_cost_per_unit: str = "0.0000"
    labor_cost_per_unit: str = "0.0000"
    errors: List[CalcIssue] = []
    warnings: List[CalcIssue] = []


class TotalsSummary(CamelModel):
    total_items: int = 0
    valid_items: int = 0
    invalid_items: int = 0
    total_categories: int = 0


class Totals(CamelModel):
    material_cost: str = "0.00"
    labor_cost: str = "0.00"
    labor_cost_before_discount: str = "0.00"
    labor_discount: str = "0.00"
    labor_discount_rate: str = "0.0000"
    waste_cost: str = "0.00"
    tax_amount: str = "0.00"
    markup_amount: str = "0.00"
    transportation_fee: str = "0.00"
    misc_fees_total: str = "0.00"
    subtotal: str = "0.00"
    total: str = "0.00"
    total_units: Decimal = ZERO
    summary: TotalsSummary = TotalsSummary()
    errors: List[CalcIssue] = []
    warnings: List[CalcIssue] = []


class CategoryBreakdown(CamelModel):
    key: str
    name: str
    item_count: int = 0
    valid_item_count: int = 0
    material_cost: str = "0.00"
    labor_cost: str = "0.00"
    subtotal: str = "0.00"
    total_units: Decimal = ZERO
    has_errors: bool = False


class BreakdownSummary(CamelModel):
    total_categories: int = 0
    valid_categories: int = 0
    total_items: int = 0
    valid_items: int = 0


class CategoryBreakdowns(CamelModel):
    breakdowns: List[CategoryBreakdown] = []
    summary: BreakdownSummary = BreakdownSummary()
    errors: List[CalcIssue] = []
    warnings: List[CalcIssue] = []


class PaymentSummary(CamelModel):
    paid_payments: int = 0
    total_payments: int = 0
    overdue_payments: int = 0


class PaymentDetails(CamelModel):
    grand_total: str = "0.00"
    total_paid: str = "0.00"
    total_due: str = "0.00"
    overdue_payments: str = "0.00"
    deposit: str = "0.00"
    summary: PaymentSummary = PaymentSummary()
    errors: List[CalcIssue] = []
    warnings: List[CalcIssue] = []


class CacheStats(CamelModel):
    hits: int = 0
    misses: int = 0
    hit_rate: str = "0.00%"
    cache_size: int = 0
