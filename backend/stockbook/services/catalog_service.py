# Overview: Service-layer operations for stock records; find-or-create and counter updates.

"""
Catalog Resolver

Every stock-keeping record is identified by its category plus the full
attribute tuple:
- cylinder: (brand, valve_size, weight)
- stove: (brand, model, burners)
- regulator: (brand, valve_size)

Brand and stove model compare case-insensitively after whitespace is
collapsed. Records are created lazily with all counters at zero and are never
deleted here.

Counter invariants:
- Counters are non-negative integers.
- Counters change only through apply_stock_delta, a server-side atomic
  increment (UPDATE ... SET c = c + :delta). Quick-add and checkout share it.
- With an idempotency key, the increment and its StockApplication marker
  commit together; replaying the same key changes nothing.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import CylinderStock, StoveStock, RegulatorStock, StockApplication
from ..validation import ValidationError
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)


CATEGORY_CYLINDER = "cylinder"
CATEGORY_STOVE = "stove"
CATEGORY_REGULATOR = "regulator"

CATEGORIES = (CATEGORY_CYLINDER, CATEGORY_STOVE, CATEGORY_REGULATOR)

CATEGORY_MODELS = {
    CATEGORY_CYLINDER: CylinderStock,
    CATEGORY_STOVE: StoveStock,
    CATEGORY_REGULATOR: RegulatorStock,
}

CATEGORY_COUNTERS = {
    CATEGORY_CYLINDER: ("refill_qty", "packaged_qty", "empty_qty", "damaged_qty"),
    CATEGORY_STOVE: ("qty",),
    CATEGORY_REGULATOR: ("qty",),
}

# Cylinder purchases land on refill or packaged stock
STOCK_TYPE_REFILL = "refill"
STOCK_TYPE_PACKAGE = "package"
CYLINDER_STOCK_TYPES = {
    STOCK_TYPE_REFILL: "refill_qty",
    STOCK_TYPE_PACKAGE: "packaged_qty",
}

_WHITESPACE = re.compile(r"\s+")


class CatalogWriteError(Exception):
    """Raised when a create-if-absent write for a stock record fails."""

    def __init__(self, message: str, *, category: str | None = None, identity: dict | None = None):
        super().__init__(message)
        self.category = category
        self.identity = identity or {}


class StockWriteError(Exception):
    """
    Raised when a counter update fails.

    failures/applied are filled by quick-add, which keeps processing sibling
    sub-variants and reports every outcome at once.
    """

    def __init__(
        self,
        message: str,
        *,
        category: str | None = None,
        record_id: int | None = None,
        counter: str | None = None,
        failures: list | None = None,
        applied: list | None = None,
    ):
        super().__init__(message)
        self.category = category
        self.record_id = record_id
        self.counter = counter
        self.failures = failures or []
        self.applied = applied or []


def normalize_name(value) -> str:
    """Strip and collapse internal whitespace: '  Acme   Gas ' -> 'Acme Gas'."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def normalize_token(value) -> str:
    """Size-like tokens drop all whitespace and lower-case: '22 MM' -> '22mm'."""
    if value is None:
        return ""
    return _WHITESPACE.sub("", str(value)).lower()


def model_for(category: str):
    model = CATEGORY_MODELS.get(category)
    if model is None:
        raise ValidationError(
            f"Invalid category. Must be one of: {', '.join(CATEGORIES)}"
        )
    return model


def counter_for(category: str, stock_type: str | None = None) -> str:
    """Counter a purchase of this category (and cylinder stock type) increments."""
    if category == CATEGORY_CYLINDER:
        counter = CYLINDER_STOCK_TYPES.get((stock_type or STOCK_TYPE_REFILL).lower())
        if counter is None:
            raise ValidationError(
                f"Invalid stock_type. Must be one of: {', '.join(CYLINDER_STOCK_TYPES)}"
            )
        return counter
    model_for(category)
    return "qty"


def _identity(category: str, attributes: dict) -> tuple[dict, dict]:
    """
    Split attributes into (lookup keys, display values).

    Lookup keys are what the unique constraint covers; display values are
    stored on create only.
    """
    attributes = attributes or {}
    brand = normalize_name(attributes.get("brand"))
    if not brand:
        raise ValidationError("brand is required")

    if category == CATEGORY_CYLINDER:
        valve_size = normalize_token(attributes.get("valve_size"))
        weight = normalize_token(attributes.get("weight"))
        if not valve_size:
            raise ValidationError("valve_size is required")
        if not weight:
            raise ValidationError("weight is required")
        keys = {"brand_key": brand.lower(), "valve_size": valve_size, "weight": weight}
        return keys, {"brand": brand}

    if category == CATEGORY_STOVE:
        model_name = normalize_name(attributes.get("model"))
        if not model_name:
            raise ValidationError("model is required")
        try:
            burners = int(attributes.get("burners"))
        except (TypeError, ValueError):
            raise ValidationError("burners must be an integer")
        if burners <= 0:
            raise ValidationError("burners must be positive")
        keys = {"brand_key": brand.lower(), "model_key": model_name.lower(), "burners": burners}
        return keys, {"brand": brand, "model": model_name}

    if category == CATEGORY_REGULATOR:
        valve_size = normalize_token(attributes.get("valve_size"))
        if not valve_size:
            raise ValidationError("valve_size is required")
        keys = {"brand_key": brand.lower(), "valve_size": valve_size}
        return keys, {"brand": brand}

    model_for(category)
    raise ValidationError(f"Unsupported category {category}")


def _find(model, keys: dict):
    return db.session.query(model).filter_by(**keys).first()


def resolve(category: str, attributes: dict) -> int:
    """
    Find or create the stock record for (category, attributes).

    Args:
        category: cylinder, stove or regulator
        attributes: identity attributes (brand plus the category's size fields)

    Returns:
        Stock record id

    Raises:
        ValidationError: Unknown category or missing identity attribute
        CatalogWriteError: The create write failed for a reason other than a
            concurrent create of the same identity
    """
    model = model_for(category)
    keys, display = _identity(category, attributes)

    existing = _find(model, keys)
    if existing is not None:
        if not existing.is_active:
            logger.info("Resolved inactive %s record %s", category, existing.id)
        return existing.id

    counters = {name: 0 for name in CATEGORY_COUNTERS[category]}
    record = model(**keys, **display, **counters, is_active=True)
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        # Another writer created the same identity first
        db.session.rollback()
        winner = _find(model, keys)
        if winner is not None:
            logger.info("Concurrent create of %s %s; using record %s", category, keys, winner.id)
            return winner.id
        raise CatalogWriteError(
            f"Could not create {category} record for {display.get('brand')}",
            category=category,
            identity={**keys, **display},
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Create of %s record %s failed: %s", category, keys, exc)
        raise CatalogWriteError(
            f"Could not create {category} record for {display.get('brand')}: {exc}",
            category=category,
            identity={**keys, **display},
        ) from exc

    logger.info("Created %s record %s for %s", category, record.id, keys)
    return record.id


def get_stock_record(category: str, record_id: int):
    """Stock record by id, or None."""
    model = model_for(category)
    return db.session.get(model, record_id)


def apply_stock_delta(
    category: str,
    record_id: int,
    counter: str,
    delta: int,
    *,
    idempotency_key: str | None = None,
    transaction_id: int | None = None,
    line_index: int | None = None,
    exchange_empties: bool = False,
) -> bool:
    """
    Atomically add delta to one counter of a stock record.

    Args:
        category: cylinder, stove or regulator
        record_id: Stock record id from resolve()
        counter: Counter column, e.g. refill_qty or qty
        delta: Signed change; the counter may never drop below zero
        idempotency_key: When given, the change is applied at most once
        transaction_id, line_index: Stored on the StockApplication marker
        exchange_empties: Cylinders only; also lowers empty_qty by delta,
            floored at zero, in the same statement

    Returns:
        True if the counter changed, False if the idempotency key was already used

    Raises:
        StockWriteError: Unknown counter, missing record, negative result, or
            the write kept failing after the bounded retries
    """
    model = model_for(category)
    if counter not in CATEGORY_COUNTERS[category]:
        raise StockWriteError(
            f"Unknown counter {counter} for {category}",
            category=category,
            record_id=record_id,
            counter=counter,
        )
    if exchange_empties and category != CATEGORY_CYLINDER:
        raise StockWriteError(
            "Only cylinder stock tracks empties",
            category=category,
            record_id=record_id,
            counter=counter,
        )

    column = getattr(model, counter)

    def _op() -> bool:
        if idempotency_key is not None:
            seen = (
                db.session.query(StockApplication.id)
                .filter_by(idempotency_key=idempotency_key)
                .first()
            )
            if seen is not None:
                return False

        values = {counter: column + delta, "version_id": model.version_id + 1}
        if exchange_empties and delta > 0:
            values["empty_qty"] = case(
                (model.empty_qty >= delta, model.empty_qty - delta),
                else_=0,
            )

        stmt = (
            update(model)
            .where(model.id == record_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(column + delta >= 0)

        result = db.session.execute(stmt)
        if not result.rowcount:
            db.session.rollback()
            raise StockWriteError(
                f"{category} record {record_id} not found or {counter} would go negative",
                category=category,
                record_id=record_id,
                counter=counter,
            )

        if idempotency_key is not None:
            db.session.add(StockApplication(
                idempotency_key=idempotency_key,
                transaction_id=transaction_id,
                line_index=line_index,
                category=category,
                stock_record_id=record_id,
                stock_counter=counter,
                delta=delta,
            ))

        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent writer applied this key; our increment is rolled back with it
            db.session.rollback()
            if idempotency_key is not None:
                logger.info("Stock application %s already recorded", idempotency_key)
                return False
            raise
        return True

    try:
        changed = run_with_retry(_op)
    except StockWriteError:
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Stock write %s %s.%s %+d failed: %s", category, record_id, counter, delta, exc)
        raise StockWriteError(
            f"Could not update {counter} on {category} record {record_id}: {exc}",
            category=category,
            record_id=record_id,
            counter=counter,
        ) from exc

    if changed:
        logger.debug("Applied %+d to %s %s.%s", delta, category, record_id, counter)
    return changed
