# Overview: Service-layer operations for the derived price catalog; keeps company cost in sync with purchases.

"""
Price Synchronizer

Purchase booking writes the supplier-side company_cost of the price catalog.
Retail, distributor and package prices belong to the pricing workflow and are
never written here.

LOOKUP: (category, variant_label, product_name ILIKE %identity%) over active
rows. Product names are assembled from brand plus descriptive suffixes that
differ slightly between booking and pricing, so the match is a substring
match rather than an exact key. Two brands whose names contain one another
can land on the same row.

FAILURES: never raised. A failed sync is logged as a warning and reported in
the result; stock correctness does not depend on catalog cosmetics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import PriceCatalogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceSyncResult:
    entry_id: int | None = None
    created: bool = False
    price_changed: bool = False
    old_cost: int | None = None
    failed: bool = False

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "created": self.created,
            "price_changed": self.price_changed,
            "old_cost": self.old_cost,
            "failed": self.failed,
        }


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_entry(category: str, display_identity: str, variant_label: str) -> PriceCatalogEntry | None:
    """Lowest-id active entry whose name contains display_identity."""
    pattern = f"%{_escape_like(display_identity)}%"
    matches = (
        db.session.query(PriceCatalogEntry)
        .filter(
            PriceCatalogEntry.category == category,
            PriceCatalogEntry.variant_label == variant_label,
            PriceCatalogEntry.is_active.is_(True),
            PriceCatalogEntry.product_name.ilike(pattern, escape="\\"),
        )
        .order_by(PriceCatalogEntry.id.asc())
        .limit(2)
        .all()
    )
    if len(matches) > 1:
        logger.warning(
            "Several %s price entries match %r (%s); using id %s",
            category, display_identity, variant_label, matches[0].id,
        )
    return matches[0] if matches else None


def sync_cost(
    category: str,
    display_identity: str,
    variant_label: str,
    unit_cost: int,
    *,
    product_name: str,
    size: str | None = None,
    stock_record_id: int | None = None,
) -> PriceSyncResult:
    """
    Find-or-create the catalog entry and set its company_cost.

    Args:
        category: cylinder, stove or regulator
        display_identity: Substring the entry name must contain (usually the brand)
        variant_label: Exact variant, e.g. Refill, "Double Burner", 22mm
        unit_cost: Cost from the purchase submission
        product_name: Full display name written on the entry
        size: Size column for newly created entries
        stock_record_id: Stock record that triggered the sync

    Returns:
        PriceSyncResult; failed=True when the write did not happen
    """
    try:
        entry = find_entry(category, display_identity, variant_label)

        if entry is not None:
            old_cost = entry.company_cost
            price_changed = old_cost != unit_cost and old_cost > 0
            entry.company_cost = unit_cost
            entry.product_name = product_name
            if stock_record_id is not None:
                entry.stock_record_id = stock_record_id
            db.session.commit()
            if price_changed:
                logger.info(
                    "Company cost for %s changed %s -> %s", product_name, old_cost, unit_cost
                )
            return PriceSyncResult(
                entry_id=entry.id,
                created=False,
                price_changed=price_changed,
                old_cost=old_cost,
            )

        entry = PriceCatalogEntry(
            category=category,
            product_name=product_name,
            variant_label=variant_label,
            size=size,
            stock_record_id=stock_record_id,
            company_cost=unit_cost,
            distributor_price=0,
            retail_price=0,
            package_price=0,
            is_active=True,
        )
        db.session.add(entry)
        db.session.commit()
        logger.info("Created price entry %s for %s", entry.id, product_name)
        return PriceSyncResult(entry_id=entry.id, created=True)

    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.warning("Price sync for %s (%s) failed: %s", product_name, variant_label, exc)
        return PriceSyncResult(failed=True)
