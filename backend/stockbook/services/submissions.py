# Overview: Purchase form submissions; parsing, validation and the split into sub-variants.

"""
Purchase Submissions

One operator form submission covers one brand (and model or weight) and
enters a quantity per sub-variant:
- cylinder: per valve size (22mm, 20mm), one weight, refill or package
- stove: per burner count (single = 1, double = 2), one model
- regulator: per valve size (22mm, 20mm)

The split step yields one SubVariant per positive quantity; zero quantities
never produce a line.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..validation import (
    ValidationError,
    coerce_int,
    coerce_text,
    enforce_amount,
    enforce_quantity,
)
from .catalog_service import (
    CATEGORIES,
    CATEGORY_CYLINDER,
    CATEGORY_REGULATOR,
    CATEGORY_STOVE,
    CYLINDER_STOCK_TYPES,
    STOCK_TYPE_PACKAGE,
    STOCK_TYPE_REFILL,
    counter_for,
    normalize_name,
    normalize_token,
)


VALVE_SIZES = ("22mm", "20mm")
BURNER_COUNTS = (1, 2)

BURNER_KEYS = {
    "single": 1,
    "1": 1,
    "double": 2,
    "2": 2,
}

BURNER_LABELS = {1: "Single", 2: "Double"}

STOCK_TYPE_LABELS = {
    STOCK_TYPE_REFILL: "Refill",
    STOCK_TYPE_PACKAGE: "Package",
}


@dataclass
class PurchaseSubmission:
    category: str
    brand: str
    quantities: dict = field(default_factory=dict)
    lump_total: int | None = None
    weight: str | None = None
    stock_type: str = STOCK_TYPE_REFILL
    model: str | None = None

    @property
    def total_quantity(self) -> int:
        return sum(q for q in self.quantities.values() if q > 0)


@dataclass(frozen=True)
class SubVariant:
    """One positive-quantity slice of a submission, ready to resolve."""
    category: str
    quantity: int
    attributes: dict
    counter: str
    name: str
    details: str
    product_name: str
    price_identity: str
    variant_label: str
    size: str | None = None
    brand: str | None = None
    weight: str | None = None
    valve_size: str | None = None
    model: str | None = None
    burners: int | None = None
    stock_type: str | None = None


def _sub_variant_key(category: str, key: Any):
    """Canonical sub-variant key: a valve size string or a burner count."""
    if category == CATEGORY_STOVE:
        if isinstance(key, int) and not isinstance(key, bool):
            key = str(key)
        burners = BURNER_KEYS.get(normalize_token(key))
        if burners is None:
            raise ValidationError(f"Unknown burner type {key!r}. Use single or double")
        return burners

    valve_size = normalize_token(key)
    if valve_size not in VALVE_SIZES:
        raise ValidationError(
            f"Unknown valve size {key!r}. Must be one of: {', '.join(VALVE_SIZES)}"
        )
    return valve_size


def parse_submission(
    category: str,
    payload: dict | None,
    *,
    with_total: bool = True,
) -> PurchaseSubmission:
    """
    Build a submission from a JSON body.

    Expected shape:
        {"brand": "Acme", "weight": "12kg", "stock_type": "refill",
         "quantities": {"22mm": 30, "20mm": 20}, "lump_total": 5000}
    Stoves add "model" and key quantities by "single"/"double".
    with_total=False ignores lump_total entirely (quick-add has no cost).
    """
    payload = payload or {}
    if category not in CATEGORIES:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")

    raw_quantities = payload.get("quantities")
    if raw_quantities is None:
        raw_quantities = {}
    if not isinstance(raw_quantities, dict):
        raise ValidationError("quantities must be an object keyed by sub-variant")

    quantities = {}
    for key, value in raw_quantities.items():
        canonical = _sub_variant_key(category, key)
        if canonical in quantities:
            raise ValidationError(f"Duplicate quantity for {key!r}")
        quantities[canonical] = coerce_int(value, f"quantities.{key}", default=0)

    lump_total = payload.get("lump_total") if with_total else None
    if lump_total is not None:
        lump_total = coerce_int(lump_total, "lump_total")

    stock_type = coerce_text(payload.get("stock_type"), "stock_type") or STOCK_TYPE_REFILL

    return PurchaseSubmission(
        category=category,
        brand=normalize_name(coerce_text(payload.get("brand"), "brand")),
        quantities=quantities,
        lump_total=lump_total,
        weight=normalize_token(coerce_text(payload.get("weight"), "weight")) or None,
        stock_type=stock_type.lower(),
        model=normalize_name(coerce_text(payload.get("model"), "model")) or None,
    )


def validate_submission(submission: PurchaseSubmission, *, require_total: bool) -> None:
    """
    Reject a submission before anything is written.

    Raises:
        ValidationError: missing identity attribute, unknown sub-variant,
            negative or all-zero quantities, or (require_total) lump_total <= 0
    """
    category = submission.category
    if category not in CATEGORIES:
        raise ValidationError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
    if not normalize_name(submission.brand):
        raise ValidationError("brand is required")

    if category == CATEGORY_CYLINDER:
        if not normalize_token(submission.weight):
            raise ValidationError("weight is required for cylinders")
        if (submission.stock_type or "").lower() not in CYLINDER_STOCK_TYPES:
            raise ValidationError(
                f"Invalid stock_type. Must be one of: {', '.join(CYLINDER_STOCK_TYPES)}"
            )
    elif category == CATEGORY_STOVE:
        if not normalize_name(submission.model):
            raise ValidationError("model is required for stoves")

    allowed = BURNER_COUNTS if category == CATEGORY_STOVE else VALVE_SIZES
    for key, quantity in submission.quantities.items():
        if key not in allowed:
            raise ValidationError(f"Unknown sub-variant {key!r} for {category}")
        enforce_quantity(quantity, f"quantities.{key}")

    if submission.total_quantity <= 0:
        raise ValidationError("Enter a quantity for at least one variant")

    if require_total:
        if submission.lump_total is None:
            raise ValidationError("lump_total is required")
        enforce_amount(submission.lump_total, "lump_total")


def _cylinder_variant(submission: PurchaseSubmission, valve_size: str, quantity: int) -> SubVariant:
    brand = normalize_name(submission.brand)
    weight = normalize_token(submission.weight)
    stock_type = submission.stock_type.lower()
    label = STOCK_TYPE_LABELS[stock_type]
    return SubVariant(
        category=CATEGORY_CYLINDER,
        quantity=quantity,
        attributes={"brand": brand, "valve_size": valve_size, "weight": weight},
        counter=counter_for(CATEGORY_CYLINDER, stock_type),
        name=brand,
        details=f"{weight} • {valve_size} • {label}",
        product_name=f"{brand} LP Gas {weight} Cylinder ({valve_size}) {label}",
        price_identity=brand,
        variant_label=label,
        size=weight,
        brand=brand,
        weight=weight,
        valve_size=valve_size,
        stock_type=stock_type,
    )


def _stove_variant(submission: PurchaseSubmission, burners: int, quantity: int) -> SubVariant:
    brand = normalize_name(submission.brand)
    model = normalize_name(submission.model)
    label = f"{BURNER_LABELS[burners]} Burner"
    return SubVariant(
        category=CATEGORY_STOVE,
        quantity=quantity,
        attributes={"brand": brand, "model": model, "burners": burners},
        counter=counter_for(CATEGORY_STOVE),
        name=f"{brand} {model}",
        details=label,
        product_name=f"{brand} {model} - {label}",
        price_identity=f"{brand} {model}",
        variant_label=label,
        size=label,
        brand=brand,
        model=model,
        burners=burners,
    )


def _regulator_variant(submission: PurchaseSubmission, valve_size: str, quantity: int) -> SubVariant:
    brand = normalize_name(submission.brand)
    return SubVariant(
        category=CATEGORY_REGULATOR,
        quantity=quantity,
        attributes={"brand": brand, "valve_size": valve_size},
        counter=counter_for(CATEGORY_REGULATOR),
        name=f"{brand} Regulator",
        details=f"{valve_size} Valve",
        product_name=f"{brand} Regulator - {valve_size}",
        price_identity=brand,
        variant_label=valve_size,
        size=valve_size,
        brand=brand,
        valve_size=valve_size,
    )


_BUILDERS = {
    CATEGORY_CYLINDER: (VALVE_SIZES, _cylinder_variant),
    CATEGORY_STOVE: (BURNER_COUNTS, _stove_variant),
    CATEGORY_REGULATOR: (VALVE_SIZES, _regulator_variant),
}


def split_submission(submission: PurchaseSubmission) -> list[SubVariant]:
    """Sub-variants with quantity > 0, in fixed 22mm/20mm or single/double order."""
    keys, build = _BUILDERS[submission.category]
    variants = []
    for key in keys:
        quantity = submission.quantities.get(key, 0)
        if quantity > 0:
            variants.append(build(submission, key, quantity))
    return variants
