# Overview: Per-unit cost derivation from an operator-entered lump total.

from __future__ import annotations

from typing import Iterable


def unit_cost(total_amount: int, total_quantity: int) -> int:
    """
    Average unit cost for one purchase submission.

    round(total_amount / total_quantity) with halves rounded up, or 0 when
    total_quantity <= 0. The same value is applied to every sub-variant split
    out of the submission; per-sub-variant costing is not supported.
    """
    if total_quantity <= 0:
        return 0
    # integer half-up: floor((t + q/2) / q) without float division
    return (2 * int(total_amount) + int(total_quantity)) // (2 * int(total_quantity))


def line_total(quantity: int, cost: int) -> int:
    return quantity * cost


def cart_total(lines: Iterable) -> int:
    """Sum of quantity x unit_cost over cart lines. No discounts or taxes."""
    return sum(line_total(line.quantity, line.unit_cost) for line in lines)
