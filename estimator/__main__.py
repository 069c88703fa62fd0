"""
Price a saved project snapshot.

    python -m estimator snapshot.json [--json] [--strict] [--today YYYY-MM-DD]

The snapshot is `{"categories": [...], "settings": {...}}`; legacy item and
payment shapes are accepted. Read-only: nothing is written back.
"""

import argparse
import json
import logging
import sys
from datetime import date

from .catalog import default_catalog
from .config import settings
from .cost_engine import CostEngine, EngineOptions
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="estimator", description="Price a remodeling project snapshot.")
    parser.add_argument("snapshot", help="Path to a JSON snapshot with categories and settings")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--strict", action="store_true", help="Treat catalog mismatches as item errors")
    parser.add_argument("--no-catalog", action="store_true", help="Skip work-type catalog checks")
    parser.add_argument("--today", type=date.fromisoformat, default=None,
                        help="Reference date for overdue payments (default: today)")
    return parser


def load_snapshot(path: str) -> dict:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Snapshot must be a JSON object with 'categories' and 'settings'")
    return data


def price_snapshot(data: dict, strict: bool = False, use_catalog: bool = True, today: date = None) -> dict:
    options = EngineOptions(strict_validation=strict or settings.ENGINE_STRICT_VALIDATION)
    engine = CostEngine(
        data.get("categories"),
        data.get("settings"),
        work_types=default_catalog() if use_catalog else None,
        options=options,
    )
    totals = engine.calculate_totals()
    return {
        "totals": totals,
        "breakdowns": engine.calculate_category_breakdowns(),
        "payments": engine.calculate_payment_details(totals.total, today=today),
    }


def render_text(results: dict) -> str:
    totals = results["totals"]
    lines = [
        f"Material:        {totals.material_cost:>12}",
        f"Labor:           {totals.labor_cost:>12}  (discount {totals.labor_discount})",
        f"Subtotal:        {totals.subtotal:>12}",
        f"Waste:           {totals.waste_cost:>12}",
        f"Tax:             {totals.tax_amount:>12}",
        f"Markup:          {totals.markup_amount:>12}",
        f"Misc fees:       {totals.misc_fees_total:>12}",
        f"Transportation:  {totals.transportation_fee:>12}",
        f"TOTAL:           {totals.total:>12}",
        "",
        "Categories:",
    ]
    for b in results["breakdowns"].breakdowns:
        flag = " (!)" if b.has_errors else ""
        lines.append(f"  {b.name:<24} {b.subtotal:>12}  {b.valid_item_count}/{b.item_count} items{flag}")

    payments = results["payments"]
    lines += [
        "",
        f"Paid:            {payments.total_paid:>12}",
        f"Due:             {payments.total_due:>12}",
        f"Overdue:         {payments.overdue_payments:>12}",
        f"Deposit:         {payments.deposit:>12}",
    ]

    issues = totals.errors + payments.errors
    if issues:
        lines += ["", "Errors:"] + [f"  [{i.code}] {i.message}" for i in issues]
    if totals.warnings or payments.warnings:
        lines += ["", "Warnings:"] + [
            f"  [{i.code}] {i.message}" for i in totals.warnings + payments.warnings
        ]
    return "\n".join(lines)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    try:
        data = load_snapshot(args.snapshot)
    except (OSError, ValueError) as e:
        logger.error("Could not read snapshot %s: %s", args.snapshot, e)
        return 2

    results = price_snapshot(data, strict=args.strict, use_catalog=not args.no_catalog, today=args.today)
    if args.json:
        payload = {name: result.model_dump(mode="json", by_alias=True) for name, result in results.items()}
        print(json.dumps(payload, indent=2))
    else:
        print(render_text(results))
    return 1 if results["totals"].errors else 0


if __name__ == "__main__":
    sys.exit(main())
