from __future__ import annotations

from ..extensions import db
from stockbook.time_utils import to_utc_z


class CylinderStock(db.Model):
    """
    Gas cylinder stock counters for one (brand, valve size, weight).

    IDENTITY: brand_key is the normalized, lower-cased brand. Two rows may never
    share (brand_key, valve_size, weight); brand spelling differences in case or
    whitespace resolve to the same row.

    COUNTERS:
    - refill_qty: filled cylinders ready for exchange sales
    - packaged_qty: new cylinders sold with the shell
    - empty_qty: empties waiting to be refilled
    - damaged_qty: cylinders set aside as faulty

    Counters are only ever changed through atomic increments
    (catalog_service.apply_stock_delta), never read-then-write.
    """
    __tablename__ = "cylinder_stock"
    __table_args__ = (
        db.UniqueConstraint("brand_key", "valve_size", "weight", name="uq_cylinder_stock_identity"),
        db.CheckConstraint("refill_qty >= 0", name="ck_cylinder_refill_nonneg"),
        db.CheckConstraint("packaged_qty >= 0", name="ck_cylinder_packaged_nonneg"),
        db.CheckConstraint("empty_qty >= 0", name="ck_cylinder_empty_nonneg"),
        db.CheckConstraint("damaged_qty >= 0", name="ck_cylinder_damaged_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Display brand as first entered; brand_key is what identity uses
    brand = db.Column(db.String(128), nullable=False)
    brand_key = db.Column(db.String(128), nullable=False, index=True)
    valve_size = db.Column(db.String(16), nullable=False)
    weight = db.Column(db.String(16), nullable=False)

    refill_qty = db.Column(db.Integer, nullable=False, default=0)
    packaged_qty = db.Column(db.Integer, nullable=False, default=0)
    empty_qty = db.Column(db.Integer, nullable=False, default=0)
    damaged_qty = db.Column(db.Integer, nullable=False, default=0)

    # Hidden by a separate deactivation workflow; never deleted here
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
        return f"<CylinderStock id={self.id} brand={self.brand!r} {self.valve_size} {self.weight}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": "cylinder",
            "brand": self.brand,
            "valve_size": self.valve_size,
            "weight": self.weight,
            "counters": {
                "refill": self.refill_qty,
                "packaged": self.packaged_qty,
                "empty": self.empty_qty,
                "damaged": self.damaged_qty,
            },
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StoveStock(db.Model):
    """Gas stove stock for one (brand, model, burner count)."""
    __tablename__ = "stove_stock"
    __table_args__ = (
        db.UniqueConstraint("brand_key", "model_key", "burners", name="uq_stove_stock_identity"),
        db.CheckConstraint("qty >= 0", name="ck_stove_qty_nonneg"),
        db.CheckConstraint("burners > 0", name="ck_stove_burners_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    brand = db.Column(db.String(128), nullable=False)
    brand_key = db.Column(db.String(128), nullable=False, index=True)
    model = db.Column(db.String(128), nullable=False)
    model_key = db.Column(db.String(128), nullable=False)
    burners = db.Column(db.Integer, nullable=False)

    qty = db.Column(db.Integer, nullable=False, default=0)

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
        return f"<StoveStock id={self.id} brand={self.brand!r} model={self.model!r} burners={self.burners}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": "stove",
            "brand": self.brand,
            "model": self.model,
            "burners": self.burners,
            "counters": {"qty": self.qty},
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class RegulatorStock(db.Model):
    """Pressure regulator stock for one (brand, valve size)."""
    __tablename__ = "regulator_stock"
    __table_args__ = (
        db.UniqueConstraint("brand_key", "valve_size", name="uq_regulator_stock_identity"),
        db.CheckConstraint("qty >= 0", name="ck_regulator_qty_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    brand = db.Column(db.String(128), nullable=False)
    brand_key = db.Column(db.String(128), nullable=False, index=True)
    valve_size = db.Column(db.String(16), nullable=False)

    qty = db.Column(db.Integer, nullable=False, default=0)

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
        return f"<RegulatorStock id={self.id} brand={self.brand!r} {self.valve_size}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": "regulator",
            "brand": self.brand,
            "valve_size": self.valve_size,
            "counters": {"qty": self.qty},
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
