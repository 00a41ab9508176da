# Overview: Service-layer operations for the cash-expense ledger; one summary entry per purchase.

from __future__ import annotations

import logging
from collections import Counter

from ..extensions import db
from ..models import ExpenseEntry, PurchaseTransaction
from ..time_utils import business_date
from .catalog_service import CATEGORIES, CATEGORY_CYLINDER

logger = logging.getLogger(__name__)


EXPENSE_CATEGORY_LPG = "LPG Purchase"
EXPENSE_CATEGORY_INVENTORY = "Inventory Purchase"


def _get(line, name):
    if isinstance(line, dict):
        return line.get(name)
    return getattr(line, name)


def expense_category_for(lines) -> str:
    """
    Ledger category by majority line category.

    Ties go to the earlier category in cylinder, stove, regulator order.
    """
    counts = Counter(_get(line, "category") for line in lines)
    if not counts:
        return EXPENSE_CATEGORY_INVENTORY
    majority = max(CATEGORIES, key=lambda category: (counts.get(category, 0), -CATEGORIES.index(category)))
    return EXPENSE_CATEGORY_LPG if majority == CATEGORY_CYLINDER else EXPENSE_CATEGORY_INVENTORY


def describe_lines(lines) -> str:
    """'30× Acme, 20× Acme'"""
    return ", ".join(f"{_get(line, 'quantity')}× {_get(line, 'name')}" for line in lines)


def get_purchase_expense(transaction_id: int) -> ExpenseEntry | None:
    return db.session.query(ExpenseEntry).filter_by(transaction_id=transaction_id).first()


def record_purchase_expense(purchase: PurchaseTransaction, lines) -> ExpenseEntry:
    """
    Write the single expense entry for a purchase transaction.

    Idempotent per transaction: an existing entry is returned unchanged. The
    entry is added and flushed; the caller commits.
    """
    existing = get_purchase_expense(purchase.id)
    if existing is not None:
        logger.info("Expense for %s already recorded (id %s)", purchase.transaction_number, existing.id)
        return existing

    entry = ExpenseEntry(
        category=expense_category_for(lines),
        amount=purchase.total,
        description=f"{purchase.transaction_number}: {purchase.supplier_name} - {describe_lines(lines)}",
        expense_date=business_date(purchase.created_at),
        transaction_id=purchase.id,
        created_by=purchase.created_by,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
