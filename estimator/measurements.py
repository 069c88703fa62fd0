"""
Measurement resolver: work item surfaces -> one scalar quantity -> cost.

Input: WorkItem (canonical surfaces[] form)
Output: UnitsResult / CostResult. Never raises; bad surfaces come back as
errors[] with units=0 so the caller decides whether to block or flag.
"""

import logging
import re
from decimal import Decimal

from .catalog import WorkTypeCapability
from .errors import CalculationError, ConsistencyError
from .models import (
    DEFAULT_MEASUREMENT_TYPE, MAX_COST, MAX_SURFACES_PER_ITEM, MAX_UNITS,
    UNIT_LABELS, MeasurementType, parse_measurement_type,
)
from .money import ZERO, fmt, quantize_cents, to_decimal
from .schemas import CalcIssue, CostResult, Surface, UnitsResult, WorkItem

logger = logging.getLogger(__name__)

RATE_PLACES = Decimal("0.0001")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


class MeasurementResolver:
    """Resolves units and per-item costs. One instance per engine."""

    def __init__(self, work_types: WorkTypeCapability = None):
        self.work_types = work_types

    # --- Measurement type ---

    def resolve_measurement_type(self, item: WorkItem, category_key: str = None):
        """
        Returns (MeasurementType, warnings).

        Order: the item's own type, then the catalog's type for its work type,
        then square-foot with an INVALID_MEASUREMENT_TYPE warning.
        """
        warnings = []
        mtype = parse_measurement_type(item.measurement_type)
        if mtype is not None:
            return mtype, warnings

        raw = item.measurement_type
        if self.work_types is not None and item.type:
            catalog_type = parse_measurement_type(
                self.work_types.resolve_measurement_type(category_key, item.type)
            )
            if catalog_type is not None:
                if raw not in (None, ""):
                    warnings.append(ConsistencyError(
                        f"Invalid measurement type '{raw}' for {item.display_name}; "
                        f"using catalog type '{catalog_type.value}'",
                        code="INVALID_MEASUREMENT_TYPE",
                        context={"measurement_type": raw, "resolved": catalog_type.value},
                    ).to_issue())
                return catalog_type, warnings

        if raw not in (None, ""):
            logger.warning(
                "Unknown measurement type %r on %s, defaulting to %s",
                raw, item.display_name, DEFAULT_MEASUREMENT_TYPE.value,
            )
            warnings.append(ConsistencyError(
                f"Invalid measurement type '{raw}' for {item.display_name}; "
                f"defaulting to '{DEFAULT_MEASUREMENT_TYPE.value}'",
                code="INVALID_MEASUREMENT_TYPE",
                context={"measurement_type": raw, "resolved": DEFAULT_MEASUREMENT_TYPE.value},
            ).to_issue())
        return DEFAULT_MEASUREMENT_TYPE, warnings

    # --- Units ---

    def resolve_units(self, item: WorkItem, category_key: str = None) -> UnitsResult:
        mtype, warnings = self.resolve_measurement_type(item, category_key)
        errors = []

        if len(item.surfaces) > MAX_SURFACES_PER_ITEM:
            warnings.append(CalcIssue(
                message=f"{item.display_name} has {len(item.surfaces)} surfaces "
                        f"(limit {MAX_SURFACES_PER_ITEM})",
                code="TOO_MANY_SURFACES",
            ))

        total = ZERO
        for index, surface in enumerate(item.surfaces):
            try:
                total += self.surface_units(surface, mtype, index)
            except CalculationError as e:
                errors.append(e.to_issue())

        if errors:
            total = ZERO
        elif total > MAX_UNITS:
            errors.append(CalcIssue(
                message=f"Units exceed maximum limit: {total}",
                code="UNITS_EXCEED_LIMIT",
                context={"units": str(total), "limit": MAX_UNITS},
            ))
            total = Decimal(MAX_UNITS)

        units = quantize_cents(max(ZERO, total))
        if units == ZERO and not errors:
            warnings.append(CalcIssue(
                message=f"{item.display_name} resolves to 0 {UNIT_LABELS[mtype]}",
                code="ZERO_UNITS",
                context={"surfaces": len(item.surfaces)},
            ))

        return UnitsResult(
            units=units,
            label=UNIT_LABELS[mtype],
            measurement_type=mtype,
            errors=errors,
            warnings=warnings,
        )

    def surface_units(self, surface: Surface, mtype: MeasurementType, index: int) -> Decimal:
        """Units contributed by one surface. Raises CalculationError on missing/bad fields."""
        if mtype == MeasurementType.SQUARE_FOOT:
            sqft = self.parse_measure(surface.sqft, "sqft", index)
            if sqft is not None and sqft > 0:
                return sqft
            width = self.parse_measure(surface.width, "width", index)
            height = self.parse_measure(surface.height, "height", index)
            if width is None or height is None:
                if sqft is not None:
                    return sqft
                raise CalculationError(
                    f"Surface {index + 1} needs sqft or width and height",
                    code="MISSING_FIELD",
                    context={"surface_index": index, "fields": ["sqft", "width", "height"]},
                )
            return width * height

        if mtype == MeasurementType.LINEAR_FOOT:
            return self._required(surface.linear_ft, "linearFt", index)

        return self._required(surface.units, "units", index)

    def _required(self, value, field: str, index: int) -> Decimal:
        number = self.parse_measure(value, field, index)
        if number is None:
            raise CalculationError(
                f"Surface {index + 1} is missing {field}",
                code="MISSING_FIELD",
                context={"surface_index": index, "fields": [field]},
            )
        return number

    def parse_measure(self, value, field: str, index: int):
        """Parse a surface measurement. None when absent; raises when junk or negative."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        try:
            number = to_decimal(value)
        except ValueError:
            raise CalculationError(
                f"Surface {index + 1}: {field} must be a valid number",
                code="INVALID_NUMBER",
                context={"surface_index": index, "field": field, "value": str(value)},
            )
        if number < 0:
            raise CalculationError(
                f"Surface {index + 1}: {field} cannot be negative",
                code="NEGATIVE_VALUE",
                context={"surface_index": index, "field": field, "value": str(value)},
            )
        return number

    # --- Cost ---

    def parse_rate(self, value, field: str) -> Decimal:
        """Parse a per-unit cost. Blank is 0; '$1,250.50' is accepted."""
        if value is None or (isinstance(value, str) and not value.strip()):
            return ZERO
        if isinstance(value, str):
            value = _NON_NUMERIC.sub("", value)
        try:
            rate = to_decimal(value)
        except ValueError:
            raise CalculationError(
                f"Invalid {field}: must be a valid number",
                code="INVALID_COST",
                context={"field": field},
            )
        if rate < 0:
            raise CalculationError(
                f"Invalid {field}: cannot be negative",
                code="NEGATIVE_COST",
                context={"field": field, "cost": str(rate)},
            )
        if rate > MAX_COST:
            raise CalculationError(
                f"{field} exceeds maximum limit",
                code="COST_EXCEEDS_LIMIT",
                context={"field": field, "cost": str(rate), "limit": MAX_COST},
            )
        return rate

    def resolve_cost(self, item: WorkItem, category_key: str = None) -> CostResult:
        """units x material rate, units x labor rate; both floored at zero."""
        errors = []
        rates = {}
        for field, value in (("material cost", item.material_cost_per_unit),
                             ("labor cost", item.labor_cost_per_unit)):
            try:
                rates[field] = self.parse_rate(value, field)
            except CalculationError as e:
                errors.append(e.to_issue())
                rates[field] = ZERO

        units_result = self.resolve_units(item, category_key)
        errors.extend(units_result.errors)

        if errors:
            material = labor = ZERO
        else:
            material = quantize_cents(max(ZERO, units_result.units * rates["material cost"]))
            labor = quantize_cents(max(ZERO, units_result.units * rates["labor cost"]))

        return CostResult(
            units=units_result.units,
            unit_label=units_result.label,
            measurement_type=units_result.measurement_type,
            material_cost=fmt(material),
            labor_cost=fmt(labor),
            total_cost=fmt(material + labor),
            material_cost_per_unit=str(rates["material cost"].quantize(RATE_PLACES)),
            labor_cost_per_unit=str(rates["labor cost"].quantize(RATE_PLACES)),
            errors=errors,
            warnings=units_result.warnings,
        )
