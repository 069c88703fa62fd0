"""
Enums and calculation limits shared by the engine, ledger and reconciler.
"""

import enum


class MeasurementType(str, enum.Enum):
    SQUARE_FOOT = "square-foot"
    LINEAR_FOOT = "linear-foot"
    BY_UNIT = "by-unit"


class PaymentType(str, enum.Enum):
    DEPOSIT = "Deposit"
    INSTALLMENT = "Installment"
    ONE_TIME = "OneTime"


class IssueKind(str, enum.Enum):
    VALIDATION = "validation"
    CALCULATION = "calculation"
    CONSISTENCY = "consistency"


DEFAULT_MEASUREMENT_TYPE = MeasurementType.SQUARE_FOOT

# Display label per measurement type
UNIT_LABELS = {
    MeasurementType.SQUARE_FOOT: "sqft",
    MeasurementType.LINEAR_FOOT: "linear ft",
    MeasurementType.BY_UNIT: "units",
}

# Accepted spellings -> canonical type (lower-cased, trimmed)
_MEASUREMENT_ALIASES = {
    MeasurementType.SQUARE_FOOT: {
        "square-foot", "sqft", "sq ft", "square foot", "square foot (sqft)",
        "single-surface", "area",
    },
    MeasurementType.LINEAR_FOOT: {
        "linear-foot", "linear ft", "linearft", "linear foot", "length",
    },
    MeasurementType.BY_UNIT: {
        "by-unit", "by unit", "unit", "units", "count",
    },
}


def parse_measurement_type(value):
    """Return the canonical MeasurementType for a raw value, or None if unrecognized."""
    if isinstance(value, MeasurementType):
        return value
    if value is None:
        return None
    text = str(value).lower().strip()
    for mtype, aliases in _MEASUREMENT_ALIASES.items():
        if text in aliases:
            return mtype
    return None


# --- Calculation limits ---
# Rates outside these bounds are clamped with a warning.

MAX_UNITS = 50000
MAX_COST = 10000000
MAX_SURFACES_PER_ITEM = 100
MAX_TAX_RATE = 0.25
MAX_MARKUP_RATE = 5.0
MAX_WASTE_FACTOR = 0.50
MAX_LABOR_DISCOUNT = 1.0
