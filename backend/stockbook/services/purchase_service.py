# Overview: Service-layer operations for supplier purchase booking; cart adds, checkout saga, quick-add.

"""
Purchase Booking

Two entry points change stock:
- Cart + checkout: add_to_cart resolves each sub-variant and syncs its price,
  checkout records a purchase transaction and applies stock and the expense.
- Quick-add: resolve + apply_stock_delta per sub-variant, nothing else.

Both go through catalog_service.apply_stock_delta, so the same quantities
leave the same counters behind.

CHECKOUT SAGA:
1. Allocate PREFIX-YYYYMMDD-NNNN from the day sequence
2. Insert the header; it stores the cart lines (line_payload) and is the
   intent record for everything below
3. Insert one item per line (skips lines already written)
4. Apply stock per line with key "{transaction_id}:{line_index}"
5. Insert the expense entry (skips if present) and mark COMPLETE

A failure at 2 leaves nothing behind and the cart intact. A failure at 3-5
keeps what already happened, marks the header INCOMPLETE and raises
CommitError(recorded=True). resume_purchase (or a repeated checkout of the
same cart) re-runs the remaining steps; each step is idempotent. Lines added
to the cart after the header was recorded are not part of that purchase and
stay in the cart.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import PurchaseTransaction, PurchaseTransactionItem
from ..time_utils import utcnow
from ..validation import ValidationError, coerce_text
from . import catalog_service, pricing_service
from .cart import CartLine, PurchaseCart
from .catalog_service import CATEGORY_CYLINDER, CatalogWriteError, StockWriteError, normalize_name
from .costing import cart_total, unit_cost
from .document_service import DocumentSequenceError, next_daily_number
from .expense_service import record_purchase_expense
from .submissions import (
    PurchaseSubmission,
    parse_submission,
    split_submission,
    validate_submission,
)

logger = logging.getLogger(__name__)


PURCHASE_DOCUMENT_TYPE = "PURCHASE"

PAYMENT_STATUS_COMPLETED = "completed"
PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUSES = (PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_PENDING)

COMMIT_PENDING = "PENDING"
COMMIT_INCOMPLETE = "INCOMPLETE"
COMMIT_COMPLETE = "COMPLETE"

STEP_HEADER = "header"
STEP_ITEMS = "items"
STEP_STOCK = "stock"
STEP_EXPENSE = "expense"

STEP_INDEX = {
    STEP_HEADER: 2,
    STEP_ITEMS: 3,
    STEP_STOCK: 4,
    STEP_EXPENSE: 5,
}


class CommitError(Exception):
    """
    A checkout step failed.

    recorded=False: the header was never written; nothing changed.
    recorded=True: the header exists; stock/expense state may be incomplete
    and the purchase shows up in list_incomplete_purchases().
    """

    def __init__(
        self,
        message: str,
        *,
        step: str,
        transaction_id: int | None = None,
        transaction_number: str | None = None,
        recorded: bool = False,
    ):
        super().__init__(message)
        self.step = step
        self.step_index = STEP_INDEX[step]
        self.transaction_id = transaction_id
        self.transaction_number = transaction_number
        self.recorded = recorded

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "step": self.step,
            "step_index": self.step_index,
            "transaction_id": self.transaction_id,
            "transaction_number": self.transaction_number,
            "recorded": self.recorded,
        }


class PurchaseNotFoundError(Exception):
    """Raised when a purchase transaction id does not exist."""
    pass


class CartNotFoundError(Exception):
    """Raised when a cart token is unknown or was discarded."""
    pass


@dataclass
class AddToCartResult:
    lines: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    price_updates: list = field(default_factory=list)
    unit_cost: int = 0

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "failures": self.failures,
            "price_updates": self.price_updates,
            "unit_cost": self.unit_cost,
        }


@dataclass
class CheckoutResult:
    transaction_id: int
    transaction_number: str
    total: int
    resumed: bool = False
    notices: list = field(default_factory=list)
    remaining_lines: int = 0

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "transaction_number": self.transaction_number,
            "total": self.total,
            "resumed": self.resumed,
            "notices": self.notices,
            "remaining_lines": self.remaining_lines,
        }


def _as_submission(category: str, payload, *, with_total: bool = True) -> PurchaseSubmission:
    if isinstance(payload, PurchaseSubmission):
        if payload.category != category:
            raise ValidationError(
                f"Submission category {payload.category} does not match {category}"
            )
        return payload
    return parse_submission(category, payload, with_total=with_total)


def _exchanges_empties(category: str, counter: str) -> bool:
    if category != CATEGORY_CYLINDER or counter != "refill_qty":
        return False
    return bool(current_app.config.get("EXCHANGE_EMPTIES_ON_REFILL", False))


def stock_idempotency_key(transaction_id: int, line_index: int) -> str:
    return f"{transaction_id}:{line_index}"


# =============================================================================
# Cart
# =============================================================================

def add_to_cart(cart: PurchaseCart, category: str, payload) -> AddToCartResult:
    """
    Split one submission into cart lines.

    Every sub-variant gets the same unit cost, lump_total / total quantity
    rounded half up. Per sub-variant: resolve the stock record, sync the
    company cost into the price catalog, build a CartLine.

    A CatalogWriteError on one sub-variant is reported in failures while its
    siblings continue. If none succeeded the first error is raised.

    Raises:
        ValidationError: nothing was written and the cart is unchanged
        CatalogWriteError: every sub-variant failed to resolve
    """
    submission = _as_submission(category, payload)
    validate_submission(submission, require_total=True)

    variants = split_submission(submission)
    cost = unit_cost(submission.lump_total, submission.total_quantity)

    result = AddToCartResult(unit_cost=cost)
    errors = []
    for variant in variants:
        try:
            record_id = catalog_service.resolve(variant.category, variant.attributes)
        except CatalogWriteError as exc:
            logger.error("Could not resolve %s %s: %s", variant.category, variant.attributes, exc)
            errors.append(exc)
            result.failures.append({
                "category": variant.category,
                "identity": variant.attributes,
                "name": variant.name,
                "details": variant.details,
                "error": str(exc),
            })
            continue

        sync = pricing_service.sync_cost(
            variant.category,
            variant.price_identity,
            variant.variant_label,
            cost,
            product_name=variant.product_name,
            size=variant.size,
            stock_record_id=record_id,
        )
        if sync.price_changed:
            result.price_updates.append({
                "product_name": variant.product_name,
                "old_cost": sync.old_cost,
                "new_cost": cost,
            })

        result.lines.append(CartLine(
            category=variant.category,
            stock_record_id=record_id,
            stock_counter=variant.counter,
            quantity=variant.quantity,
            unit_cost=cost,
            name=variant.name,
            details=variant.details,
            variant_label=variant.variant_label,
            brand=variant.brand,
            weight=variant.weight,
            valve_size=variant.valve_size,
            model=variant.model,
            burners=variant.burners,
            stock_type=variant.stock_type,
        ))

    if not result.lines and errors:
        raise errors[0]

    cart.add(result.lines)
    logger.info(
        "Cart %s: added %d line(s) for %s at unit cost %s",
        cart.token, len(result.lines), submission.brand, cost,
    )
    return result


def remove_from_cart(cart: PurchaseCart, line_id: str) -> bool:
    return cart.remove(line_id)


# =============================================================================
# Checkout
# =============================================================================

def _find_by_key(idempotency_key: str) -> PurchaseTransaction | None:
    return (
        db.session.query(PurchaseTransaction)
        .filter_by(idempotency_key=idempotency_key)
        .first()
    )


def _supplier_for(supplier_name, lines: list[CartLine]) -> str:
    supplier = normalize_name(coerce_text(supplier_name, "supplier_name"))
    if supplier:
        return supplier
    if lines and lines[0].name:
        return lines[0].name
    return current_app.config.get("DEFAULT_SUPPLIER_NAME", "Direct Purchase")


def _record_header(
    cart: PurchaseCart,
    lines: list[CartLine],
    supplier: str,
    payment_status: str,
    created_by: str | None,
) -> PurchaseTransaction:
    subtotal = cart_total(lines)
    prefix = current_app.config.get("PURCHASE_NUMBER_PREFIX", "POB")
    try:
        number = next_daily_number(PURCHASE_DOCUMENT_TYPE, prefix)
        purchase = PurchaseTransaction(
            transaction_number=number,
            idempotency_key=cart.checkout_key,
            supplier_name=supplier,
            subtotal=subtotal,
            total=subtotal,
            payment_method=current_app.config.get("PURCHASE_PAYMENT_METHOD", "cash"),
            payment_status=payment_status,
            commit_state=COMMIT_PENDING,
            line_payload=json.dumps([line.to_dict() for line in lines]),
            created_by=created_by,
            created_at=utcnow(),
        )
        db.session.add(purchase)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        # A concurrent checkout of the same cart recorded the header first
        winner = _find_by_key(cart.checkout_key)
        if winner is not None:
            logger.info("Checkout of cart %s already recorded as %s", cart.token, winner.transaction_number)
            return winner
        logger.error("Could not record purchase header for cart %s: %s", cart.token, exc)
        raise CommitError(
            f"Could not record purchase: {exc}", step=STEP_HEADER, recorded=False
        ) from exc
    except (SQLAlchemyError, DocumentSequenceError) as exc:
        db.session.rollback()
        logger.error("Could not record purchase header for cart %s: %s", cart.token, exc)
        raise CommitError(
            f"Could not record purchase: {exc}", step=STEP_HEADER, recorded=False
        ) from exc

    logger.info(
        "Recorded purchase %s (%d lines, total %s, %s)",
        purchase.transaction_number, len(lines), subtotal, payment_status,
    )
    return purchase


def _write_items(purchase: PurchaseTransaction, lines: list[CartLine]) -> None:
    present = {
        index for (index,) in
        db.session.query(PurchaseTransactionItem.line_index).filter_by(transaction_id=purchase.id)
    }
    for index, line in enumerate(lines):
        if index in present:
            continue
        db.session.add(PurchaseTransactionItem(
            transaction_id=purchase.id,
            line_index=index,
            category=line.category,
            product_name=line.name,
            stock_record_id=line.stock_record_id,
            stock_counter=line.stock_counter,
            quantity=line.quantity,
            unit_price=line.unit_cost,
            total_price=line.total,
            variant_label=line.variant_label,
            weight=line.weight,
            details=line.details,
        ))
    db.session.commit()


def _apply_stock(purchase: PurchaseTransaction, lines: list[CartLine]) -> None:
    for index, line in enumerate(lines):
        catalog_service.apply_stock_delta(
            line.category,
            line.stock_record_id,
            line.stock_counter,
            line.quantity,
            idempotency_key=stock_idempotency_key(purchase.id, index),
            transaction_id=purchase.id,
            line_index=index,
            exchange_empties=_exchanges_empties(line.category, line.stock_counter),
        )


def _write_expense(purchase: PurchaseTransaction, lines: list[CartLine]) -> None:
    record_purchase_expense(purchase, lines)
    purchase.commit_state = COMMIT_COMPLETE
    purchase.failed_step = None
    purchase.last_error = None
    purchase.completed_at = utcnow()
    db.session.commit()


_STEPS = (
    (STEP_ITEMS, _write_items),
    (STEP_STOCK, _apply_stock),
    (STEP_EXPENSE, _write_expense),
)


def _mark_incomplete(purchase_id: int, step: str, error: Exception) -> None:
    purchase = db.session.get(PurchaseTransaction, purchase_id)
    if purchase is None:
        return
    purchase.commit_state = COMMIT_INCOMPLETE
    purchase.failed_step = step
    purchase.last_error = str(error)[:2000]
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Could not mark purchase %s incomplete: %s", purchase_id, exc)


def _run_steps(purchase: PurchaseTransaction, *, resumed: bool = False) -> CheckoutResult:
    purchase_id = purchase.id
    number = purchase.transaction_number

    if purchase.commit_state != COMMIT_COMPLETE:
        lines = [CartLine.from_dict(data) for data in purchase.lines]
        for step, apply_step in _STEPS:
            try:
                apply_step(purchase, lines)
            except (SQLAlchemyError, StockWriteError) as exc:
                db.session.rollback()
                logger.error("Purchase %s: %s step failed: %s", number, step, exc)
                _mark_incomplete(purchase_id, step, exc)
                raise CommitError(
                    f"Purchase {number} was recorded but the {step} step failed; "
                    f"stock or expense may be incomplete: {exc}",
                    step=step,
                    transaction_id=purchase_id,
                    transaction_number=number,
                    recorded=True,
                ) from exc
        logger.info("Purchase %s complete", number)

    return CheckoutResult(
        transaction_id=purchase_id,
        transaction_number=number,
        total=purchase.total,
        resumed=resumed,
    )


def checkout(
    cart: PurchaseCart,
    supplier_name: str | None = None,
    payment_status: str = PAYMENT_STATUS_COMPLETED,
    *,
    created_by: str | None = None,
) -> CheckoutResult:
    """
    Book the cart as one purchase transaction.

    If an earlier checkout of this cart was recorded, that purchase is
    finished instead. Its recorded lines, supplier and payment status win;
    lines added since stay in the cart for the next checkout and every
    difference is listed in CheckoutResult.notices.

    Args:
        cart: Cart to check out; booked lines leave it only on full success
        supplier_name: Blank falls back to the first line's name, then
            DEFAULT_SUPPLIER_NAME
        payment_status: completed (paid) or pending (credit)
        created_by: Operator reference stored on the header and expense

    Returns:
        CheckoutResult with the transaction number and total

    Raises:
        ValidationError: empty cart or unknown payment status
        CommitError: a step failed; see CommitError.recorded
    """
    if cart is None or cart.is_empty:
        raise ValidationError("Cart is empty")
    status = (coerce_text(payment_status, "payment_status") or "").lower()
    if status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment_status. Must be one of: {', '.join(PAYMENT_STATUSES)}")

    lines = cart.lines
    purchase = _find_by_key(cart.checkout_key)
    resumed = purchase is not None
    notices = []
    if resumed:
        notices = _resume_notices(purchase, lines, supplier_name, status)
        for notice in notices:
            logger.warning("Cart %s: %s", cart.token, notice)
        logger.info("Checkout of cart %s resumes %s", cart.token, purchase.transaction_number)
    else:
        supplier = _supplier_for(supplier_name, lines)
        purchase = _record_header(cart, lines, supplier, status, created_by)

    result = _run_steps(purchase, resumed=resumed)

    cart.remove_lines(data.get("line_id") for data in purchase.lines)
    if not cart.is_empty:
        cart.renew_checkout_key()
    result.notices = notices
    result.remaining_lines = len(cart)
    return result


def _resume_notices(
    purchase: PurchaseTransaction,
    lines: list[CartLine],
    supplier_name,
    payment_status: str,
) -> list[str]:
    number = purchase.transaction_number
    recorded_ids = {data.get("line_id") for data in purchase.lines}
    cart_ids = {line.line_id for line in lines}
    notices = []

    added = len(cart_ids - recorded_ids)
    if added:
        notices.append(
            f"{added} line(s) added after {number} was recorded stay in the cart; "
            "check out again to book them"
        )
    dropped = len(recorded_ids - cart_ids)
    if dropped:
        notices.append(f"{dropped} line(s) removed from the cart were still booked on {number}")

    supplier = normalize_name(coerce_text(supplier_name, "supplier_name"))
    if supplier and supplier != purchase.supplier_name:
        notices.append(
            f"Supplier {supplier!r} ignored; {number} keeps {purchase.supplier_name!r}"
        )
    if payment_status != purchase.payment_status:
        notices.append(
            f"Payment status {payment_status!r} ignored; {number} keeps {purchase.payment_status!r}"
        )
    return notices


# =============================================================================
# Quick-add
# =============================================================================

def quick_add(category: str, payload) -> list[dict]:
    """
    Apply a submission straight to stock.

    No header, items, price sync or expense entry. Every sub-variant is
    attempted; failures are collected and raised together afterwards.

    Returns:
        One dict per applied sub-variant

    Raises:
        ValidationError: nothing was written
        StockWriteError: at least one sub-variant failed; failures and
            applied list every outcome
    """
    submission = _as_submission(category, payload, with_total=False)
    validate_submission(submission, require_total=False)

    variants = split_submission(submission)
    applied, failures = [], []
    for variant in variants:
        outcome = {
            "category": variant.category,
            "identity": variant.attributes,
            "name": variant.name,
            "details": variant.details,
            "counter": variant.counter,
            "quantity": variant.quantity,
        }
        try:
            record_id = catalog_service.resolve(variant.category, variant.attributes)
            outcome["stock_record_id"] = record_id
            catalog_service.apply_stock_delta(
                variant.category,
                record_id,
                variant.counter,
                variant.quantity,
                exchange_empties=_exchanges_empties(variant.category, variant.counter),
            )
        except (CatalogWriteError, StockWriteError) as exc:
            logger.error("Quick-add %s %s failed: %s", variant.category, variant.attributes, exc)
            failures.append({**outcome, "error": str(exc)})
            continue
        applied.append(outcome)

    if failures:
        raise StockWriteError(
            f"{len(failures)} of {len(variants)} stock update(s) failed",
            category=submission.category,
            failures=failures,
            applied=applied,
        )

    logger.info(
        "Quick-add %s: %d unit(s) of %s applied",
        submission.category, submission.total_quantity, submission.brand,
    )
    return applied


# =============================================================================
# Reconciliation
# =============================================================================

def get_purchase(transaction_id: int) -> PurchaseTransaction:
    purchase = db.session.get(PurchaseTransaction, transaction_id)
    if purchase is None:
        raise PurchaseNotFoundError(f"Purchase {transaction_id} not found")
    return purchase


def list_incomplete_purchases() -> list[PurchaseTransaction]:
    """Headers whose downstream steps have not all completed, oldest first."""
    return (
        db.session.query(PurchaseTransaction)
        .filter(PurchaseTransaction.commit_state != COMMIT_COMPLETE)
        .order_by(PurchaseTransaction.created_at.asc(), PurchaseTransaction.id.asc())
        .all()
    )


def resume_purchase(transaction_id: int) -> CheckoutResult:
    """
    Re-run the remaining steps of a recorded purchase.

    Already applied items, stock lines and the expense entry are skipped, so
    calling this on a complete purchase changes nothing.
    """
    purchase = get_purchase(transaction_id)
    logger.info("Resuming purchase %s (%s)", purchase.transaction_number, purchase.commit_state)
    return _run_steps(purchase, resumed=True)
