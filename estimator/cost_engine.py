"""
Cost engine: one priced pass over categories -> work items, then totals,
category breakdowns and payment details built from that same pass.

Pure math. Inputs are immutable snapshots; a new snapshot gets a new engine.

Composition order for the grand total (fixed):
    labor          = labor_before_discount - labor_before_discount x labor_discount
    subtotal       = material + labor
    waste          = sum(waste entry surface_cost x waste_factor)
                     (or material x settings.waste_factor when there are no entries)
    tax            = (subtotal + waste) x tax_rate
    markup         = (subtotal + waste) x markup           (not compounded on tax)
    total          = subtotal + waste + tax + markup + misc fees + transportation
Each component is rounded to cents before the final sum, so the rendered
components always add up to the rendered total.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .catalog import CUSTOM_CATEGORY_PREFIX, WorkTypeCapability
from .config import settings as config
from .errors import CalculationError, ConsistencyError, ValidationError
from .ledger import PaymentLedger
from .measurements import MeasurementResolver
from .models import MAX_LABOR_DISCOUNT, MAX_MARKUP_RATE, MAX_TAX_RATE, MAX_WASTE_FACTOR
from .money import ZERO, fmt, quantize_cents, to_decimal
from .schemas import (
    BreakdownSummary, CacheStats, CalcIssue, Category, CategoryBreakdown,
    CategoryBreakdowns, CostResult, Fee, PaymentDetails, PaymentRecord,
    ProjectSettings, Totals, TotalsSummary, WasteEntry, WorkItem,
)

logger = logging.getLogger(__name__)

RATE_PLACES = Decimal("0.0001")

_SETTINGS_RATES = ("tax_rate", "markup", "labor_discount", "transportation_fee", "waste_factor")
_SETTINGS_LISTS = (
    ("misc_fees", Fee, "INVALID_FEE"),
    ("waste_entries", WasteEntry, "INVALID_WASTE_ENTRY"),
    ("payments", PaymentRecord, "INVALID_PAYMENT"),
)


def _setting(raw: dict, name: str):
    """Read a settings field by its camelCase or snake_case key."""
    camel = to_camel(name)
    return raw[camel] if camel in raw else raw.get(name)


class EngineOptions(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    enable_caching: bool = Field(default_factory=lambda: config.ENGINE_ENABLE_CACHING)
    strict_validation: bool = Field(default_factory=lambda: config.ENGINE_STRICT_VALIDATION)
    timeout_ms: int = Field(default_factory=lambda: config.ENGINE_TIMEOUT_MS, gt=0)
    max_cache_size: int = Field(default_factory=lambda: config.ENGINE_MAX_CACHE_SIZE, gt=0)


@dataclass
class PricedItem:
    item: WorkItem
    index: int
    cost: CostResult
    valid: bool

    @property
    def material(self) -> Decimal:
        return Decimal(self.cost.material_cost) if self.valid else ZERO

    @property
    def labor(self) -> Decimal:
        return Decimal(self.cost.labor_cost) if self.valid else ZERO

    @property
    def units(self) -> Decimal:
        return self.cost.units if self.valid else ZERO


@dataclass
class PricedCategory:
    category: Category
    items: List[PricedItem] = field(default_factory=list)


@dataclass
class ItemPass:
    categories: List[PricedCategory]
    errors: List[CalcIssue]
    warnings: List[CalcIssue]


class CostEngine:
    """
    Totals, category breakdowns and payment details for one input snapshot.

    All three results come from a single item pass computed at most once per
    engine instance. With caching enabled, each result is memoized against a
    content fingerprint of the inputs.
    """

    def __init__(self, categories=None, settings=None,
                 work_types: WorkTypeCapability = None, options=None):
        if isinstance(options, EngineOptions):
            self.options = options
        else:
            self.options = EngineOptions(**(options or {}))

        self._input_errors: List[CalcIssue] = []
        self._input_warnings: List[CalcIssue] = []
        self._rejected_items: dict = {}
        self.categories = self._validate_categories(categories)
        self.settings = self._validate_settings(settings)
        self.work_types = work_types
        self.resolver = MeasurementResolver(work_types)

        self._cache: dict = {}
        self._cache_hits = 0
        self._cache_misses = 0
        self._item_pass = None
        self._fingerprints: dict = {}

    # --- Input validation ---

    def _validate_categories(self, categories) -> tuple:
        if categories is None:
            return ()
        if not isinstance(categories, (list, tuple)):
            self._input_errors.append(ValidationError(
                "Categories must be a list", code="INVALID_CATEGORIES",
            ).to_issue())
            return ()

        valid = []
        seen_keys = set()
        for index, raw in enumerate(categories):
            category = self._build_category(index, raw, position=len(valid))
            if category is None:
                continue
            if category.key in seen_keys:
                self._input_warnings.append(ConsistencyError(
                    f"Duplicate category key '{category.key}'",
                    code="DUPLICATE_CATEGORY_KEY",
                    context={"index": index, "key": category.key},
                ).to_issue())
            seen_keys.add(category.key)
            valid.append(category)
        return tuple(valid)

    def _build_category(self, index: int, raw, position: int):
        """
        Validate one category, then its work items one at a time.

        A malformed work item is swapped for an empty placeholder that the
        item pass prices at zero with the validation error attached, so its
        siblings are still priced.
        """
        if isinstance(raw, Category):
            return raw
        if not isinstance(raw, dict):
            self._input_errors.append(ValidationError(
                f"Invalid category at index {index}",
                code="INVALID_CATEGORY",
                context={"index": index, "problems": ["category must be an object"]},
            ).to_issue())
            return None

        data = dict(raw)
        raw_items = data.pop("workItems", None)
        if raw_items is None:
            raw_items = data.pop("work_items", None)
        try:
            category = Category.model_validate(data)
        except PydanticValidationError as e:
            self._input_errors.append(ValidationError(
                f"Invalid category at index {index}",
                code="INVALID_CATEGORY",
                context={"index": index, "problems": [err["msg"] for err in e.errors()]},
            ).to_issue())
            return None

        if raw_items is None:
            raw_items = []
        elif not isinstance(raw_items, (list, tuple)):
            self._input_errors.append(ValidationError(
                f"Work items of '{category.name}' must be a list",
                code="INVALID_WORK_ITEMS",
                context={"category": category.name},
            ).to_issue())
            raw_items = []

        items = []
        for item_index, raw_item in enumerate(raw_items):
            if isinstance(raw_item, WorkItem):
                items.append(raw_item)
                continue
            try:
                items.append(WorkItem.model_validate(raw_item))
            except PydanticValidationError as e:
                name = None
                if isinstance(raw_item, dict):
                    name = raw_item.get("customName") or raw_item.get("name")
                placeholder = WorkItem(custom_name=name if isinstance(name, str) else None)
                self._rejected_items[(position, item_index)] = ValidationError(
                    f"Invalid work item {item_index + 1} in '{category.name}'",
                    code="INVALID_WORK_ITEM",
                    context={"problems": [err["msg"] for err in e.errors()]},
                ).to_issue()
                logger.warning("Work item %d in %s failed validation", item_index + 1, category.name)
                items.append(placeholder)
        return category.model_copy(update={"work_items": items})

    def _validate_settings(self, raw) -> ProjectSettings:
        """
        Validate settings field by field.

        A bad rate becomes 0 and a bad fee, waste entry or payment is
        dropped; each with a warning. The rest of the settings survive.
        """
        if raw is None:
            return ProjectSettings()
        if isinstance(raw, ProjectSettings):
            return raw
        if not isinstance(raw, dict):
            self._input_errors.append(ValidationError(
                "Settings must be an object",
                code="INVALID_SETTINGS",
                context={"type": type(raw).__name__},
            ).to_issue())
            return ProjectSettings()

        cleaned = {}
        for name in _SETTINGS_RATES:
            value = _setting(raw, name)
            if value is None or value == "":
                continue
            try:
                cleaned[name] = to_decimal(value)
            except ValueError:
                logger.warning("Setting %s=%r is not a number, using 0", name, value)
                self._input_warnings.append(ValidationError(
                    f"Setting '{to_camel(name)}' must be a number; using 0",
                    code="INVALID_SETTING",
                    context={"field": to_camel(name), "value": str(value)},
                ).to_issue())

        for name, model, code in _SETTINGS_LISTS:
            entries = _setting(raw, name)
            if entries is None:
                continue
            if not isinstance(entries, (list, tuple)):
                self._input_warnings.append(ValidationError(
                    f"Setting '{to_camel(name)}' must be a list; ignoring it",
                    code="INVALID_SETTING",
                    context={"field": to_camel(name)},
                ).to_issue())
                continue
            kept = []
            for index, entry in enumerate(entries):
                if isinstance(entry, model):
                    kept.append(entry)
                    continue
                try:
                    kept.append(model.model_validate(entry))
                except PydanticValidationError as e:
                    logger.warning("Dropping invalid %s entry %d", to_camel(name), index)
                    self._input_warnings.append(ValidationError(
                        f"Skipping invalid {to_camel(name)} entry {index + 1}",
                        code=code,
                        context={"index": index, "problems": [err["msg"] for err in e.errors()]},
                    ).to_issue())
            cleaned[name] = kept

        return ProjectSettings(**cleaned)

    # --- Caching ---

    def fingerprint(self, include_payments: bool = False) -> str:
        """SHA-256 over the canonical JSON of the inputs."""
        if include_payments not in self._fingerprints:
            exclude = None if include_payments else {"payments"}
            payload = {
                "categories": [c.model_dump(mode="json") for c in self.categories],
                "settings": self.settings.model_dump(mode="json", exclude=exclude),
            }
            blob = json.dumps(payload, sort_keys=True, default=str)
            self._fingerprints[include_payments] = hashlib.sha256(blob.encode()).hexdigest()
        return self._fingerprints[include_payments]

    def _cached(self, prefix: str, fingerprint: str, compute):
        if not self.options.enable_caching:
            return compute()
        key = f"{prefix}::{fingerprint}"
        if key in self._cache:
            self._cache_hits += 1
            logger.debug("Cache hit for %s", prefix)
            return self._cache[key]
        self._cache_misses += 1
        result = compute()
        if len(self._cache) >= self.options.max_cache_size:
            oldest = next(iter(self._cache))
            del self._cache[oldest]
        self._cache[key] = result
        return result

    def get_cache_stats(self) -> CacheStats:
        total = self._cache_hits + self._cache_misses
        hit_rate = (self._cache_hits / total * 100) if total else 0.0
        return CacheStats(
            hits=self._cache_hits,
            misses=self._cache_misses,
            hit_rate=f"{hit_rate:.2f}%",
            cache_size=len(self._cache),
        )

    def clear_cache(self):
        """Drop memoized results and counters. The item pass is kept; inputs have not changed."""
        self._cache.clear()
        self._cache_hits = 0
        self._cache_misses = 0

    # --- Item pass ---

    def _run_item_pass(self) -> ItemPass:
        """Price every work item exactly once for this engine instance."""
        if self._item_pass is not None:
            return self._item_pass

        started = time.monotonic()
        deadline = started + self.options.timeout_ms / 1000.0
        errors: List[CalcIssue] = []
        warnings: List[CalcIssue] = []
        priced_categories = []
        timed_out = False

        for position, category in enumerate(self.categories):
            priced = PricedCategory(category=category)
            for index, item in enumerate(category.work_items):
                if not timed_out and time.monotonic() > deadline:
                    timed_out = True
                    logger.warning(
                        "Item pass exceeded %d ms; remaining items priced at zero",
                        self.options.timeout_ms,
                    )
                    errors.append(CalculationError(
                        "Calculation timeout exceeded",
                        code="TIMEOUT",
                        context={"timeout_ms": self.options.timeout_ms,
                                 "category": category.name, "item_index": index},
                    ).to_issue())
                if timed_out:
                    priced.items.append(PricedItem(item=item, index=index, cost=CostResult(), valid=False))
                    continue
                rejected = self._rejected_items.get((position, index))
                priced.items.append(self._price_item(category, index, item, errors, warnings, rejected))
            priced_categories.append(priced)

        self._item_pass = ItemPass(categories=priced_categories, errors=errors, warnings=warnings)
        duration_ms = round((time.monotonic() - started) * 1000, 1)
        logger.debug(
            "Priced %d categories in %.1f ms", len(priced_categories), duration_ms,
            extra={"fingerprint": self.fingerprint(), "duration_ms": duration_ms},
        )
        return self._item_pass

    def _price_item(self, category: Category, index: int, item: WorkItem,
                    errors: list, warnings: list, rejected: CalcIssue = None) -> PricedItem:
        if rejected is not None:
            cost = CostResult(errors=[rejected])
        else:
            try:
                cost = self.resolver.resolve_cost(item, category.key)
            except CalculationError as e:
                cost = CostResult(errors=[e.to_issue()])

        where = {"category": category.name, "item": item.display_name, "item_index": index}
        item_errors = [self._locate(issue, where) for issue in cost.errors]
        item_warnings = [self._locate(issue, where) for issue in cost.warnings]

        for issue in self._check_catalog(category, item):
            located = self._locate(issue, where)
            if self.options.strict_validation:
                item_errors.append(located)
            else:
                item_warnings.append(located)

        valid = not item_errors
        if not valid:
            warnings.append(CalcIssue(
                message=f"Item calculation failed: {item.display_name}",
                code="ITEM_CALCULATION_FAILED",
                context={**where, "errors": [i.message for i in item_errors]},
            ))
        errors.extend(item_errors)
        warnings.extend(item_warnings)
        return PricedItem(item=item, index=index, cost=cost, valid=valid)

    @staticmethod
    def _locate(issue: CalcIssue, where: dict) -> CalcIssue:
        return issue.model_copy(update={"context": {**issue.context, **where}})

    def _check_catalog(self, category: Category, item: WorkItem) -> List[CalcIssue]:
        """Catalog consistency for one item: known work type, valid subtypes."""
        if self.work_types is None or not item.type:
            return []
        issues = []
        details = self.work_types.get_work_type_details(item.type)
        if details is None:
            if not category.key.startswith(CUSTOM_CATEGORY_PREFIX):
                issues.append(ConsistencyError(
                    f"Work type '{item.type}' is not in the catalog",
                    code="UNKNOWN_WORK_TYPE",
                    context={"work_type": item.type},
                ).to_issue())
            return issues

        subtypes = [item.subtype] + [s.subtype for s in item.surfaces]
        for subtype in subtypes:
            if subtype and not self.work_types.is_valid_subtype(item.type, subtype):
                issues.append(ConsistencyError(
                    f"Invalid subtype '{subtype}' for work type '{item.type}'",
                    code="INVALID_SUBTYPE",
                    context={"work_type": item.type, "subtype": subtype},
                ).to_issue())
        return issues

    # --- Totals ---

    def calculate_totals(self) -> Totals:
        return self._cached("totals", self.fingerprint(), self._compute_totals)

    def _compute_totals(self) -> Totals:
        item_pass = self._run_item_pass()
        warnings = list(self._input_warnings) + list(item_pass.warnings)

        material = ZERO
        labor_before = ZERO
        total_units = ZERO
        total_items = 0
        valid_items = 0
        for priced_category in item_pass.categories:
            for priced in priced_category.items:
                total_items += 1
                if priced.valid:
                    valid_items += 1
                material += priced.material
                labor_before += priced.labor
                total_units += priced.units

        adj = self._calculate_adjustments(material, labor_before, warnings)

        return Totals(
            material_cost=fmt(material),
            labor_cost=fmt(adj["labor"]),
            labor_cost_before_discount=fmt(labor_before),
            labor_discount=fmt(adj["labor_discount"]),
            labor_discount_rate=str(adj["labor_discount_rate"].quantize(RATE_PLACES)),
            waste_cost=fmt(adj["waste"]),
            tax_amount=fmt(adj["tax"]),
            markup_amount=fmt(adj["markup"]),
            transportation_fee=fmt(adj["transportation"]),
            misc_fees_total=fmt(adj["misc"]),
            subtotal=fmt(adj["subtotal"]),
            total=fmt(adj["total"]),
            total_units=quantize_cents(total_units),
            summary=TotalsSummary(
                total_items=total_items,
                valid_items=valid_items,
                invalid_items=total_items - valid_items,
                total_categories=len(self.categories),
            ),
            errors=list(self._input_errors) + list(item_pass.errors),
            warnings=warnings,
        )

    def _clamp(self, value: Decimal, upper: float, name: str, warnings: list) -> Decimal:
        """Clamp a rate to [0, upper], warning when it was out of range."""
        upper = Decimal(str(upper))
        if ZERO <= value <= upper:
            return value
        clamped = min(max(value, ZERO), upper)
        logger.warning("%s %s out of range, clamped to %s", name, value, clamped)
        warnings.append(CalcIssue(
            message=f"{name} {value} is outside 0-{upper}; using {clamped}",
            code="RATE_OUT_OF_RANGE",
            context={"field": name, "value": str(value), "clamped": str(clamped)},
        ))
        return clamped

    def _calculate_waste(self, material: Decimal, warnings: list) -> Decimal:
        """Settings-level waste entries win; the global waste factor is the fallback."""
        entries = self.settings.waste_entries
        if entries:
            waste = ZERO
            for entry in entries:
                factor = self._clamp(entry.waste_factor, MAX_WASTE_FACTOR, "waste_factor", warnings)
                waste += max(ZERO, entry.surface_cost) * factor
            return waste
        factor = self._clamp(self.settings.waste_factor, MAX_WASTE_FACTOR, "waste_factor", warnings)
        return material * factor

    def _calculate_adjustments(self, material: Decimal, labor_before: Decimal, warnings: list) -> dict:
        s = self.settings
        discount_rate = self._clamp(s.labor_discount, MAX_LABOR_DISCOUNT, "labor_discount", warnings)
        tax_rate = self._clamp(s.tax_rate, MAX_TAX_RATE, "tax_rate", warnings)
        markup_rate = self._clamp(s.markup, MAX_MARKUP_RATE, "markup", warnings)

        labor_discount = quantize_cents(labor_before * discount_rate)
        labor = labor_before - labor_discount
        subtotal = material + labor

        waste = quantize_cents(self._calculate_waste(material, warnings))
        base = subtotal + waste
        tax = quantize_cents(base * tax_rate)
        markup = quantize_cents(base * markup_rate)

        misc = quantize_cents(sum((max(ZERO, fee.amount) for fee in s.misc_fees), ZERO))
        transportation = quantize_cents(max(ZERO, s.transportation_fee))

        total = subtotal + waste + tax + markup + misc + transportation
        return {
            "labor_discount_rate": discount_rate,
            "labor_discount": labor_discount,
            "labor": labor,
            "subtotal": subtotal,
            "waste": waste,
            "tax": tax,
            "markup": markup,
            "misc": misc,
            "transportation": transportation,
            "total": total,
        }

    # --- Category breakdowns ---

    def calculate_category_breakdowns(self) -> CategoryBreakdowns:
        return self._cached("breakdowns", self.fingerprint(), self._compute_breakdowns)

    def _compute_breakdowns(self) -> CategoryBreakdowns:
        item_pass = self._run_item_pass()
        breakdowns = []
        for priced_category in item_pass.categories:
            category = priced_category.category
            material = sum((p.material for p in priced_category.items), ZERO)
            labor = sum((p.labor for p in priced_category.items), ZERO)
            units = sum((p.units for p in priced_category.items), ZERO)
            item_count = len(priced_category.items)
            valid_count = sum(1 for p in priced_category.items if p.valid)
            breakdowns.append(CategoryBreakdown(
                key=category.key,
                name=category.name,
                item_count=item_count,
                valid_item_count=valid_count,
                material_cost=fmt(material),
                labor_cost=fmt(labor),
                subtotal=fmt(material + labor),
                total_units=quantize_cents(units),
                has_errors=valid_count < item_count,
            ))

        return CategoryBreakdowns(
            breakdowns=breakdowns,
            summary=BreakdownSummary(
                total_categories=len(breakdowns),
                valid_categories=sum(1 for b in breakdowns if not b.has_errors),
                total_items=sum(b.item_count for b in breakdowns),
                valid_items=sum(b.valid_item_count for b in breakdowns),
            ),
            errors=list(self._input_errors) + list(item_pass.errors),
            warnings=list(self._input_warnings) + list(item_pass.warnings),
        )

    # --- Payments ---

    def calculate_payment_details(self, grand_total=None, today: date = None) -> PaymentDetails:
        """
        Payment details against this snapshot's payments.

        Pass `grand_total` when the caller already holds Totals; otherwise the
        (cached) totals are computed here.
        """
        if grand_total is None:
            grand_total = self.calculate_totals().total
        today = today or date.today()
        key = f"{self.fingerprint(include_payments=True)}::{grand_total}::{today.isoformat()}"
        ledger = PaymentLedger(self.settings.payments)
        return self._cached(
            "payments", key,
            lambda: ledger.calculate_payment_details(grand_total, today=today),
        )
