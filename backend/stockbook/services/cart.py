# Overview: In-memory purchase cart; ordered lines with running totals, never persisted.

"""
Purchase Cart

WHY: An operator books a supplier purchase in several form submissions before
checking out. Lines live only in the process that serves the booking flow;
discarding the cart leaves no server-side trace.

INVARIANTS:
- Every accepted line has quantity > 0 and unit_cost >= 0.
- summary() is recomputed from the current lines on every call.
- checkout_key (the token until a checkout leaves lines behind) is the
  checkout idempotency key, so a retried checkout of the same cart finds its
  earlier header instead of booking twice.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Iterable

from .costing import cart_total, line_total


def generate_token() -> str:
    return secrets.token_hex(16)


def generate_line_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class CartLine:
    category: str
    stock_record_id: int
    stock_counter: str
    quantity: int
    unit_cost: int
    name: str
    details: str = ""
    variant_label: str | None = None
    brand: str | None = None
    weight: str | None = None
    valve_size: str | None = None
    model: str | None = None
    burners: int | None = None
    stock_type: str | None = None
    line_id: str = field(default_factory=generate_line_id)

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError("CartLine quantity must be positive")
        if self.unit_cost < 0:
            raise ValueError("CartLine unit_cost cannot be negative")

    @property
    def total(self) -> int:
        return line_total(self.quantity, self.unit_cost)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total"] = self.total
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**fields)


@dataclass(frozen=True)
class CartSummary:
    count: int
    total_quantity: int
    subtotal: int
    total: int

    def to_dict(self) -> dict:
        return asdict(self)


class PurchaseCart:
    """Ordered list of cart lines for one booking session."""

    def __init__(self, token: str | None = None):
        self.token = token or generate_token()
        self.checkout_key = self.token
        self._lines: list[CartLine] = []

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def add(self, lines: Iterable[CartLine]) -> list[CartLine]:
        added = list(lines)
        self._lines.extend(added)
        return added

    def remove(self, line_id: str) -> bool:
        """Drop one line. An unknown id changes nothing and returns False."""
        for index, line in enumerate(self._lines):
            if line.line_id == line_id:
                del self._lines[index]
                return True
        return False

    def remove_lines(self, line_ids: Iterable[str]) -> int:
        """Drop every line whose id is given; returns how many went."""
        drop = set(line_ids)
        kept = [line for line in self._lines if line.line_id not in drop]
        removed = len(self._lines) - len(kept)
        self._lines = kept
        return removed

    def clear(self) -> None:
        self._lines.clear()

    def renew_checkout_key(self) -> str:
        """Lines left after a booked checkout go to a new purchase next time."""
        self.checkout_key = generate_token()
        return self.checkout_key

    def summary(self) -> CartSummary:
        # No discounts or taxes at this layer
        subtotal = cart_total(self._lines)
        return CartSummary(
            count=len(self._lines),
            total_quantity=sum(line.quantity for line in self._lines),
            subtotal=subtotal,
            total=subtotal,
        )

    def to_dict(self) -> dict:
        return {
            "cart_id": self.token,
            "lines": [line.to_dict() for line in self._lines],
            "summary": self.summary().to_dict(),
        }


class CartRegistry:
    """
    Process-local carts keyed by token.

    Stored on app.extensions; a restart discards every open cart. A cart not
    touched for idle_ttl seconds is dropped the next time one is opened.
    idle_ttl=None keeps carts until discarded.
    """

    def __init__(self, idle_ttl: float | None = None, clock=time.monotonic):
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._carts: dict[str, PurchaseCart] = {}
        self._touched: dict[str, float] = {}
        self._lock = threading.Lock()

    def _expire(self, now: float) -> None:
        if self.idle_ttl is None:
            return
        stale = [t for t, seen in self._touched.items() if now - seen > self.idle_ttl]
        for token in stale:
            self._carts.pop(token, None)
            self._touched.pop(token, None)

    def open(self) -> PurchaseCart:
        cart = PurchaseCart()
        with self._lock:
            now = self._clock()
            self._expire(now)
            self._carts[cart.token] = cart
            self._touched[cart.token] = now
        return cart

    def get(self, token: str) -> PurchaseCart | None:
        with self._lock:
            now = self._clock()
            cart = self._carts.get(token)
            if cart is None:
                return None
            if self.idle_ttl is not None and now - self._touched[token] > self.idle_ttl:
                del self._carts[token]
                del self._touched[token]
                return None
            self._touched[token] = now
            return cart

    def discard(self, token: str) -> bool:
        with self._lock:
            self._touched.pop(token, None)
            return self._carts.pop(token, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._carts)
