"""
Work-type catalog interface plus a static registry implementation.

The engine only calls the three WorkTypeCapability methods. It never caches
catalog answers on the catalog's behalf; hosts with a live catalog pass their
own object.
"""

from typing import Optional, Protocol

from .models import MeasurementType, parse_measurement_type


class WorkTypeCapability(Protocol):
    def resolve_measurement_type(self, category_key: Optional[str], work_type: str) -> Optional[str]:
        ...

    def is_valid_subtype(self, work_type: str, subtype: str) -> bool:
        ...

    def get_work_type_details(self, work_type: str) -> Optional[dict]:
        ...


# work_type -> details. "subtypes" empty means any subtype is accepted.
WORK_TYPE_REGISTRY: dict[str, dict] = {
    "floor-tile": {
        "label": "Floor Tile",
        "measurement_type": MeasurementType.SQUARE_FOOT,
        "subtypes": ["ceramic", "porcelain", "natural-stone", "vinyl"],
    },
    "wall-tile": {
        "label": "Wall Tile",
        "measurement_type": MeasurementType.SQUARE_FOOT,
        "subtypes": ["ceramic", "porcelain", "glass", "mosaic"],
    },
    "drywall": {
        "label": "Drywall",
        "measurement_type": MeasurementType.SQUARE_FOOT,
        "subtypes": ["standard", "moisture-resistant", "fire-rated"],
    },
    "paint": {
        "label": "Paint",
        "measurement_type": MeasurementType.SQUARE_FOOT,
        "subtypes": [],
    },
    "baseboard": {
        "label": "Baseboard",
        "measurement_type": MeasurementType.LINEAR_FOOT,
        "subtypes": ["mdf", "pine", "oak"],
    },
    "countertop-edge": {
        "label": "Countertop Edge",
        "measurement_type": MeasurementType.LINEAR_FOOT,
        "subtypes": [],
    },
    "cabinet": {
        "label": "Cabinet",
        "measurement_type": MeasurementType.BY_UNIT,
        "subtypes": ["base", "wall", "tall"],
    },
    "fixture": {
        "label": "Fixture",
        "measurement_type": MeasurementType.BY_UNIT,
        "subtypes": ["faucet", "toilet", "sink", "light"],
    },
}

# Custom categories (key prefix "custom_") accept any work type.
CUSTOM_CATEGORY_PREFIX = "custom_"


class StaticWorkTypeCatalog:
    """WorkTypeCapability backed by a plain dict registry."""

    def __init__(self, registry: dict = None):
        self.registry = registry if registry is not None else WORK_TYPE_REGISTRY

    def resolve_measurement_type(self, category_key, work_type):
        details = self.registry.get(work_type)
        if details is None:
            return None
        mtype = parse_measurement_type(details.get("measurement_type"))
        return mtype.value if mtype else None

    def is_valid_subtype(self, work_type, subtype):
        details = self.registry.get(work_type)
        if details is None:
            return False
        allowed = details.get("subtypes") or []
        return not allowed or subtype in allowed

    def get_work_type_details(self, work_type):
        return self.registry.get(work_type)

    def list_work_types(self) -> list[str]:
        return list(self.registry.keys())


def default_catalog() -> StaticWorkTypeCatalog:
    """Catalog over the built-in registry."""
    return StaticWorkTypeCatalog(WORK_TYPE_REGISTRY)
