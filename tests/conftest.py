"""
Shared test fixtures: Example A kitchen snapshot, catalog, engine factory.
"""

import pytest

from estimator.catalog import default_catalog
from estimator.cost_engine import CostEngine, EngineOptions


def kitchen_categories():
    """Example A: one kitchen floor, 100 sqft at $5 material / $3 labor."""
    return [
        {
            "key": "kitchen",
            "name": "Kitchen",
            "workItems": [
                {
                    "type": "floor-tile",
                    "customName": "Kitchen floor",
                    "measurementType": "square-foot",
                    "materialCostPerUnit": 5,
                    "laborCostPerUnit": 3,
                    "surfaces": [{"name": "Main floor", "sqft": 100}],
                },
            ],
        },
    ]


def kitchen_settings(**overrides):
    """Example A settings: 8% tax, 10% markup. Keyword args override (camelCase)."""
    data = {"taxRate": 0.08, "markup": 0.10}
    data.update(overrides)
    return data


def deposit_payment(amount=200, date="2024-01-01"):
    return {"date": date, "amount": amount, "method": "Check", "type": "Deposit", "isPaid": True}


@pytest.fixture
def categories():
    return kitchen_categories()


@pytest.fixture
def project_settings():
    return kitchen_settings()


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def make_engine():
    """Build a CostEngine; options default to caching on, generous timeout."""
    def _make(categories=None, settings=None, work_types=None, **options):
        opts = {"enable_caching": True, "strict_validation": False, "timeout_ms": 30000}
        opts.update(options)
        return CostEngine(
            kitchen_categories() if categories is None else categories,
            kitchen_settings() if settings is None else settings,
            work_types=work_types,
            options=EngineOptions(**opts),
        )
    return _make
