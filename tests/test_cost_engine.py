"""
Cost engine tests: totals, breakdowns, payment details, caching.

Tests:
1-3.   Example A / Example B end to end
4-8.   Composition order, clamps and waste
9-18.  Bad items, bad inputs, catalog checks
19-25. Caching, idempotence, shared item pass, timeout
26-27. Category breakdowns
28.    Engine options

Pure math, no I/O.
"""

import time
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from estimator.catalog import default_catalog
from estimator.cost_engine import CostEngine, EngineOptions
from estimator.models import IssueKind


def _sample_bathroom():
    """Second category: wall tile by area plus baseboard by length."""
    return {
        "key": "bathroom",
        "name": "Bathroom",
        "workItems": [
            {
                "type": "wall-tile",
                "measurementType": "square-foot",
                "materialCostPerUnit": "7.25",
                "laborCostPerUnit": "4.10",
                "surfaces": [{"width": 8, "height": 6}, {"sqft": 33.3}],
            },
            {
                "type": "baseboard",
                "measurementType": "linear-foot",
                "materialCostPerUnit": 2.15,
                "laborCostPerUnit": 1.35,
                "surfaces": [{"linearFt": 42}],
            },
        ],
    }


def _sample_full_settings():
    return {
        "taxRate": 0.0825,
        "markup": 0.15,
        "laborDiscount": 0.1,
        "transportationFee": 75.5,
        "miscFees": [{"name": "Permit", "amount": 120}, {"name": "Disposal", "amount": "45.25"}],
        "wasteEntries": [{"label": "Tile overage", "surfaceCost": 333.33, "wasteFactor": 0.1}],
    }


def _codes(issues):
    return [i.code for i in issues]


def _d(value):
    return Decimal(value)


# ============================================================
# 1-3. Examples
# ============================================================

def test_example_a_totals(make_engine):
    totals = make_engine().calculate_totals()
    assert totals.material_cost == "500.00"
    assert totals.labor_cost == "300.00"
    assert totals.subtotal == "800.00"
    assert totals.tax_amount == "64.00"
    assert totals.markup_amount == "80.00"
    assert totals.waste_cost == "0.00"
    assert totals.total == "944.00"
    assert totals.errors == []
    assert totals.summary.total_items == 1
    assert totals.summary.valid_items == 1


def test_example_a_with_catalog_is_clean(make_engine, catalog):
    totals = make_engine(work_types=catalog).calculate_totals()
    assert totals.total == "944.00"
    assert totals.warnings == []


def test_example_b_payment_details(make_engine, categories):
    settings = {"taxRate": 0.08, "markup": 0.10, "payments": [
        {"date": "2024-01-01", "amount": 200, "type": "Deposit", "isPaid": True},
    ]}
    engine = make_engine(categories, settings)
    details = engine.calculate_payment_details()
    assert details.grand_total == "944.00"
    assert details.total_paid == "200.00"
    assert details.total_due == "744.00"
    assert details.deposit == "200.00"

    # grand total passed in is used as-is
    assert engine.calculate_payment_details("1000.00").total_due == "800.00"


# ============================================================
# 4-8. Composition, clamps, waste
# ============================================================

def test_total_is_sum_of_rendered_components(make_engine, categories):
    totals = make_engine(categories + [_sample_bathroom()], _sample_full_settings()).calculate_totals()
    assert totals.errors == []
    parts = [totals.subtotal, totals.waste_cost, totals.tax_amount, totals.markup_amount,
             totals.misc_fees_total, totals.transportation_fee]
    assert _d(totals.total) == sum(_d(p) for p in parts)
    assert _d(totals.subtotal) == _d(totals.material_cost) + _d(totals.labor_cost)
    assert _d(totals.labor_cost) == _d(totals.labor_cost_before_discount) - _d(totals.labor_discount)
    assert totals.misc_fees_total == "165.25"
    assert totals.transportation_fee == "75.50"
    assert totals.waste_cost == "33.33"


def test_labor_discount(make_engine):
    totals = make_engine(settings={"taxRate": 0.08, "markup": 0.10, "laborDiscount": 0.25}).calculate_totals()
    assert totals.labor_cost_before_discount == "300.00"
    assert totals.labor_discount == "75.00"
    assert totals.labor_discount_rate == "0.2500"
    assert totals.labor_cost == "225.00"
    assert totals.subtotal == "725.00"
    assert totals.tax_amount == "58.00"
    assert totals.markup_amount == "72.50"
    assert totals.total == "855.50"


def test_tax_and_markup_apply_to_subtotal_plus_waste(make_engine):
    totals = make_engine(settings={"taxRate": 0.08, "markup": 0.10, "wasteFactor": 0.1}).calculate_totals()
    # no waste entries: global factor on material
    assert totals.waste_cost == "50.00"
    assert totals.tax_amount == "68.00"
    assert totals.markup_amount == "85.00"
    assert totals.total == "1003.00"


def test_out_of_range_rates_are_clamped(make_engine):
    totals = make_engine(settings={"taxRate": 0.5, "markup": 0.10}).calculate_totals()
    assert totals.tax_amount == "200.00"
    assert totals.total == "1080.00"
    assert "RATE_OUT_OF_RANGE" in _codes(totals.warnings)


def test_waste_entry_factor_is_clamped(make_engine):
    settings = {"wasteEntries": [{"surfaceCost": 100, "wasteFactor": 0.9}]}
    totals = make_engine(settings=settings).calculate_totals()
    assert totals.waste_cost == "50.00"
    assert totals.total == "850.00"
    assert "RATE_OUT_OF_RANGE" in _codes(totals.warnings)


# ============================================================
# 9-18. Bad items, bad inputs, catalog checks
# ============================================================

def test_bad_item_does_not_block_others(make_engine, categories):
    categories[0]["workItems"].append({
        "type": "paint", "customName": "Ceiling", "measurementType": "square-foot",
        "materialCostPerUnit": 2, "laborCostPerUnit": 1, "surfaces": [{"sqft": "abc"}],
    })
    engine = make_engine(categories)
    totals = engine.calculate_totals()
    assert totals.total == "944.00"
    assert totals.summary.invalid_items == 1
    assert _codes(totals.errors) == ["INVALID_NUMBER"]
    assert totals.errors[0].context["category"] == "Kitchen"
    assert totals.errors[0].context["item"] == "Ceiling"
    assert "ITEM_CALCULATION_FAILED" in _codes(totals.warnings)

    breakdown = engine.calculate_category_breakdowns().breakdowns[0]
    assert breakdown.has_errors
    assert breakdown.item_count == 2
    assert breakdown.valid_item_count == 1


def test_non_object_settings_fall_back_to_defaults(make_engine):
    totals = make_engine(settings="high").calculate_totals()
    assert "INVALID_SETTINGS" in _codes(totals.errors)
    assert totals.errors[0].kind == IssueKind.VALIDATION
    assert totals.total == "800.00"


def test_bad_rate_only_zeroes_that_rate(make_engine):
    totals = make_engine(settings={"taxRate": "lots", "markup": 0.10}).calculate_totals()
    assert totals.errors == []
    assert _codes(totals.warnings) == ["INVALID_SETTING"]
    assert totals.warnings[0].context["field"] == "taxRate"
    assert totals.tax_amount == "0.00"
    assert totals.markup_amount == "80.00"
    assert totals.total == "880.00"


def test_bad_payment_keeps_deposit_and_rates(make_engine, project_settings):
    project_settings["payments"] = [
        {"date": "2024-01-01", "amount": 200, "type": "Deposit"},
        {"amount": 50, "method": "Cash"},
    ]
    engine = make_engine(settings=project_settings)
    totals = engine.calculate_totals()
    assert totals.total == "944.00"
    assert "INVALID_PAYMENT" in _codes(totals.warnings)

    details = engine.calculate_payment_details(today=date(2024, 1, 2))
    assert details.total_paid == "200.00"
    assert details.deposit == "200.00"
    assert details.summary.total_payments == 1


def test_bad_fee_is_dropped(make_engine, project_settings):
    project_settings["miscFees"] = [{"name": "Permit", "amount": 120}, {"name": "Junk", "amount": "abc"}]
    totals = make_engine(settings=project_settings).calculate_totals()
    assert totals.misc_fees_total == "120.00"
    assert totals.total == "1064.00"
    assert "INVALID_FEE" in _codes(totals.warnings)


def test_malformed_work_item_keeps_its_category(make_engine, categories):
    categories[0]["workItems"].append({"customName": "Shelf", "surfaces": ["oops"]})
    engine = make_engine(categories)
    totals = engine.calculate_totals()
    assert totals.total == "944.00"
    assert _codes(totals.errors) == ["INVALID_WORK_ITEM"]
    assert totals.errors[0].context["item"] == "Shelf"
    assert totals.summary.invalid_items == 1

    breakdown = engine.calculate_category_breakdowns().breakdowns[0]
    assert breakdown.item_count == 2
    assert breakdown.valid_item_count == 1


def test_numeric_measurement_type_defaults_to_square_foot(make_engine, categories):
    categories[0]["workItems"].append({
        "customName": "Odd", "measurementType": 7, "sqft": 10,
        "materialCostPerUnit": 1, "laborCostPerUnit": 1,
    })
    totals = make_engine(categories).calculate_totals()
    assert totals.material_cost == "510.00"
    assert totals.errors == []
    assert "INVALID_MEASUREMENT_TYPE" in _codes(totals.warnings)


def test_invalid_and_duplicate_categories(make_engine, categories):
    bad = [{"key": "nameless", "workItems": []}, categories[0], dict(categories[0])]
    engine = make_engine(bad)
    totals = engine.calculate_totals()
    assert "INVALID_CATEGORY" in _codes(totals.errors)
    assert "DUPLICATE_CATEGORY_KEY" in _codes(totals.warnings)
    # the duplicate is still priced
    assert totals.material_cost == "1000.00"

    not_a_list = make_engine("kitchen").calculate_totals()
    assert _codes(not_a_list.errors) == ["INVALID_CATEGORIES"]
    assert not_a_list.total == "0.00"


def test_catalog_checks_warn_or_block(make_engine, catalog):
    def snapshot(key):
        return [{"key": key, "name": "Spa", "workItems": [
            {"type": "hot-tub", "measurementType": "by-unit",
             "materialCostPerUnit": 4000, "laborCostPerUnit": 1000, "surfaces": [{"units": 1}]},
        ]}]

    lenient = make_engine(snapshot("spa"), {}, work_types=catalog).calculate_totals()
    assert lenient.total == "5000.00"
    assert "UNKNOWN_WORK_TYPE" in _codes(lenient.warnings)

    strict = make_engine(snapshot("spa"), {}, work_types=catalog, strict_validation=True).calculate_totals()
    assert strict.total == "0.00"
    assert "UNKNOWN_WORK_TYPE" in _codes(strict.errors)

    custom = make_engine(snapshot("custom_spa"), {}, work_types=catalog, strict_validation=True).calculate_totals()
    assert custom.total == "5000.00"
    assert custom.errors == []


def test_invalid_subtype_is_flagged(make_engine, categories, catalog):
    categories[0]["workItems"][0]["subtype"] = "shag-carpet"
    totals = make_engine(categories, work_types=catalog).calculate_totals()
    assert "INVALID_SUBTYPE" in _codes(totals.warnings)
    assert totals.total == "944.00"


# ============================================================
# 19-25. Caching, idempotence, shared pass, timeout
# ============================================================

def test_totals_are_idempotent(make_engine):
    engine = make_engine()
    first = engine.calculate_totals()
    assert engine.calculate_totals() == first
    assert make_engine(enable_caching=False).calculate_totals() == first


def test_cache_stats(make_engine):
    engine = make_engine()
    engine.calculate_totals()
    engine.calculate_totals()
    stats = engine.get_cache_stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.hit_rate == "50.00%"
    assert stats.cache_size == 1

    engine.clear_cache()
    stats = engine.get_cache_stats()
    assert (stats.hits, stats.misses, stats.cache_size) == (0, 0, 0)
    assert stats.hit_rate == "0.00%"


def test_cache_disabled_keeps_no_stats(make_engine):
    engine = make_engine(enable_caching=False)
    engine.calculate_totals()
    engine.calculate_category_breakdowns()
    assert engine.get_cache_stats().cache_size == 0
    assert engine.get_cache_stats().misses == 0


def test_cache_evicts_oldest(make_engine):
    engine = make_engine(max_cache_size=1)
    engine.calculate_totals()
    engine.calculate_category_breakdowns()
    assert engine.get_cache_stats().cache_size == 1
    engine.calculate_totals()
    assert engine.get_cache_stats().misses == 3


def test_breakdowns_share_the_item_pass(make_engine, categories, monkeypatch):
    engine = make_engine(categories + [_sample_bathroom()], enable_caching=False)
    calls = []
    original = engine.resolver.resolve_cost

    def counting(item, category_key=None):
        calls.append(category_key)
        return original(item, category_key)

    monkeypatch.setattr(engine.resolver, "resolve_cost", counting)
    engine.calculate_totals()
    engine.calculate_category_breakdowns()
    engine.calculate_totals()
    assert calls == ["kitchen", "bathroom", "bathroom"]


def test_fingerprint_ignores_payments_for_totals(make_engine):
    plain = make_engine()
    paid = make_engine(settings={"taxRate": 0.08, "markup": 0.10, "payments": [
        {"date": "2024-01-01", "amount": 50, "isPaid": True},
    ]})
    assert plain.fingerprint() == paid.fingerprint()
    assert plain.fingerprint(include_payments=True) != paid.fingerprint(include_payments=True)


def test_timeout_prices_remaining_items_at_zero(make_engine, categories, monkeypatch):
    categories[0]["workItems"] = categories[0]["workItems"] * 3
    engine = make_engine(categories, timeout_ms=5)
    original = engine.resolver.resolve_cost

    def slow(item, category_key=None):
        time.sleep(0.05)
        return original(item, category_key)

    monkeypatch.setattr(engine.resolver, "resolve_cost", slow)
    totals = engine.calculate_totals()
    assert "TIMEOUT" in _codes(totals.errors)
    assert totals.material_cost == "500.00"
    assert totals.summary.invalid_items == 2


# ============================================================
# 26-27. Category breakdowns
# ============================================================

def test_category_breakdowns(make_engine, categories):
    engine = make_engine(categories + [_sample_bathroom()])
    result = engine.calculate_category_breakdowns()
    assert [b.key for b in result.breakdowns] == ["kitchen", "bathroom"]

    kitchen, bathroom = result.breakdowns
    assert kitchen.subtotal == "800.00"
    assert kitchen.total_units == Decimal("100.00")
    # 81.30 sqft wall tile + 42 linear ft baseboard
    assert bathroom.material_cost == "679.73"
    assert bathroom.labor_cost == "390.03"
    assert bathroom.subtotal == "1069.76"
    assert result.summary.total_categories == 2
    assert result.summary.valid_items == 3

    totals = engine.calculate_totals()
    assert _d(totals.material_cost) == sum(_d(b.material_cost) for b in result.breakdowns)


def test_engine_accepts_models(categories):
    from estimator.schemas import Category, ProjectSettings
    engine = CostEngine(
        [Category.model_validate(c) for c in categories],
        ProjectSettings(tax_rate=Decimal("0.08"), markup=Decimal("0.10")),
        work_types=default_catalog(),
        options=EngineOptions(enable_caching=False),
    )
    assert engine.calculate_totals().total == "944.00"


# ============================================================
# 28. Engine options
# ============================================================

def test_engine_options_accept_camel_case(categories, project_settings):
    engine = CostEngine(categories, project_settings, options={"enableCaching": False, "timeoutMs": 500})
    assert engine.options.enable_caching is False
    assert engine.options.timeout_ms == 500

    with pytest.raises(PydanticValidationError):
        CostEngine(categories, project_settings, options={"enableCache": False})
