from __future__ import annotations

import json

from ..extensions import db
from stockbook.time_utils import to_utc_z


class PurchaseTransaction(db.Model):
    """
    Supplier purchase header, also the checkout intent record.

    WHY: The record store offers no transaction spanning headers, items, stock
    counters and the expense ledger. The header is written first and carries
    everything needed to finish the remaining steps later.

    COMMIT STATES:
    1. PENDING: header written, downstream steps running
    2. INCOMPLETE: a downstream step failed (failed_step, last_error set)
    3. COMPLETE: items, stock and expense all applied

    IMMUTABLE: amounts, supplier and line_payload never change once written.
    Only commit_state bookkeeping moves.
    """
    __tablename__ = "purchase_transactions"
    __table_args__ = (
        db.Index("ix_purchase_tx_commit_state", "commit_state"),
        db.Index("ix_purchase_tx_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number, e.g. "POB-20261019-0003"
    transaction_number = db.Column(db.String(64), nullable=False, unique=True)

    # Cart checkout key; a repeated checkout of the same cart resumes this header
    idempotency_key = db.Column(db.String(64), nullable=True, unique=True)

    supplier_name = db.Column(db.String(255), nullable=False)
    subtotal = db.Column(db.Integer, nullable=False)
    total = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default="cash")

    # completed | pending (credit purchase)
    payment_status = db.Column(db.String(16), nullable=False)

    commit_state = db.Column(db.String(16), nullable=False, default="PENDING")
    failed_step = db.Column(db.String(16), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    # JSON snapshot of the cart lines at checkout
    line_payload = db.Column(db.Text, nullable=False)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "PurchaseTransactionItem",
        backref=db.backref("purchase", lazy=True),
        lazy=True,
        order_by="PurchaseTransactionItem.line_index",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<PurchaseTransaction id={self.id} number={self.transaction_number!r} state={self.commit_state}>"

    @property
    def lines(self) -> list[dict]:
        return json.loads(self.line_payload or "[]")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_number": self.transaction_number,
            "supplier_name": self.supplier_name,
            "subtotal": self.subtotal,
            "total": self.total,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "commit_state": self.commit_state,
            "failed_step": self.failed_step,
            "last_error": self.last_error,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "version_id": self.version_id,
        }


class PurchaseTransactionItem(db.Model):
    """
    Snapshot of one cart line at checkout.

    IMMUTABLE: later stock corrections never rewrite purchase history.
    """
    __tablename__ = "purchase_transaction_items"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "line_index", name="uq_purchase_items_tx_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("purchase_transactions.id"), nullable=False, index=True)
    line_index = db.Column(db.Integer, nullable=False)

    category = db.Column(db.String(32), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)

    # Stock record the line was booked against (brand reference)
    stock_record_id = db.Column(db.Integer, nullable=False)
    stock_counter = db.Column(db.String(32), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Integer, nullable=False)
    total_price = db.Column(db.Integer, nullable=False)

    variant_label = db.Column(db.String(64), nullable=True)
    weight = db.Column(db.String(16), nullable=True)
    details = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "line_index": self.line_index,
            "category": self.category,
            "product_name": self.product_name,
            "stock_record_id": self.stock_record_id,
            "stock_counter": self.stock_counter,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "variant_label": self.variant_label,
            "weight": self.weight,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
        }


class StockApplication(db.Model):
    """
    Marker that a checkout line's stock delta was applied.

    Written in the same unit of work as the counter increment; the unique key
    makes a retried stock step a no-op.
    """
    __tablename__ = "purchase_stock_applications"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "line_index", name="uq_stock_applications_tx_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(64), nullable=False, unique=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("purchase_transactions.id"), nullable=True, index=True)
    line_index = db.Column(db.Integer, nullable=True)

    category = db.Column(db.String(32), nullable=False)
    stock_record_id = db.Column(db.Integer, nullable=False)
    stock_counter = db.Column(db.String(32), nullable=False)
    delta = db.Column(db.Integer, nullable=False)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "transaction_id": self.transaction_id,
            "line_index": self.line_index,
            "category": self.category,
            "stock_record_id": self.stock_record_id,
            "stock_counter": self.stock_counter,
            "delta": self.delta,
            "applied_at": to_utc_z(self.applied_at),
        }


class ExpenseEntry(db.Model):
    """
    Cash-outflow ledger row.

    Purchase booking writes exactly one per purchase transaction, summarizing
    every line; other expenses (transaction_id NULL) come from elsewhere.
    """
    __tablename__ = "expense_entries"
    __table_args__ = (
        db.Index("ix_expense_entries_date", "expense_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    category = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=False)
    expense_date = db.Column(db.Date, nullable=False)

    transaction_id = db.Column(db.Integer, db.ForeignKey("purchase_transactions.id"), nullable=True, unique=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "amount": self.amount,
            "description": self.description,
            "expense_date": self.expense_date.isoformat() if self.expense_date else None,
            "transaction_id": self.transaction_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
