from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z


class PriceCatalogEntry(db.Model):
    """
    Derived price catalog row.

    OWNERSHIP:
    - company_cost and product_name are written by purchase booking
      (pricing_service.sync_cost).
    - distributor_price, retail_price and package_price belong to the pricing
      workflow and are never overwritten by purchase booking.

    LOOKUP: purchase booking matches rows loosely (product_name contains the
    brand identity) within (category, variant_label). At most one active row
    per key is expected; when several match, the lowest id is used.
    """
    __tablename__ = "price_catalog"
    __table_args__ = (
        db.Index("ix_price_catalog_category_variant", "category", "variant_label", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # cylinder, stove, regulator
    category = db.Column(db.String(32), nullable=False, index=True)

    # Denormalized display name, e.g. "Acme LP Gas 12kg Cylinder (22mm) Refill"
    product_name = db.Column(db.String(255), nullable=False)

    # Refill/Package, "Single Burner", "22mm"
    variant_label = db.Column(db.String(64), nullable=False)
    size = db.Column(db.String(64), nullable=True)

    # Last stock record that synced this row (informational)
    stock_record_id = db.Column(db.Integer, nullable=True)

    company_cost = db.Column(db.Integer, nullable=False, default=0)
    distributor_price = db.Column(db.Integer, nullable=False, default=0)
    retail_price = db.Column(db.Integer, nullable=False, default=0)
    package_price = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<PriceCatalogEntry id={self.id} name={self.product_name!r} variant={self.variant_label!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "product_name": self.product_name,
            "variant_label": self.variant_label,
            "size": self.size,
            "stock_record_id": self.stock_record_id,
            "company_cost": self.company_cost,
            "distributor_price": self.distributor_price,
            "retail_price": self.retail_price,
            "package_price": self.package_price,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
