# Overview: Flask API routes for supplier purchase booking; parses input and returns JSON responses.

"""
Purchase Booking Routes

Carts live in process memory (app.extensions["purchase_carts"]) and are
addressed by their token. Checkout, quick-add and reconciliation go to the
record store.

STATUS CODES:
- 400: validation error, nothing written
- 404: unknown cart or purchase
- 409: purchase recorded but a later step failed; body carries the step and
  the transaction number so the operator can reconcile
- 500: stock record or counter write failed
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import purchase_service
from ..services.catalog_service import CatalogWriteError, StockWriteError
from ..services.purchase_service import (
    CartNotFoundError,
    CommitError,
    PurchaseNotFoundError,
)
from ..validation import ValidationError


purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")


def _carts():
    return current_app.extensions["purchase_carts"]


def _get_cart(cart_id: str):
    cart = _carts().get(cart_id)
    if cart is None:
        raise CartNotFoundError(f"Cart {cart_id} not found")
    return cart


def _catalog_error(e: CatalogWriteError):
    return jsonify({
        "error": str(e),
        "category": e.category,
        "identity": e.identity,
    }), 500


@purchases_bp.post("/carts")
def open_cart_route():
    """Open an empty cart for one booking session."""
    cart = _carts().open()
    return jsonify({"cart": cart.to_dict()}), 201


@purchases_bp.get("/carts/<cart_id>")
def get_cart_route(cart_id: str):
    try:
        cart = _get_cart(cart_id)
    except CartNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"cart": cart.to_dict()})


@purchases_bp.delete("/carts/<cart_id>")
def discard_cart_route(cart_id: str):
    """Cancel the booking; the cart leaves no trace."""
    if not _carts().discard(cart_id):
        return jsonify({"error": f"Cart {cart_id} not found"}), 404
    return jsonify({"discarded": True})


@purchases_bp.post("/carts/<cart_id>/lines")
def add_to_cart_route(cart_id: str):
    """
    Split one submission into cart lines.

    Request body:
    {
        "category": "cylinder" | "stove" | "regulator",
        "brand": "Acme",
        "weight": "12kg",            (cylinder)
        "stock_type": "refill",      (cylinder: refill | package)
        "model": "Hotplate",         (stove)
        "quantities": {"22mm": 30, "20mm": 20},
        "lump_total": 5000
    }

    Returns 201 with the new lines, per-line failures, price updates and the cart.
    """
    try:
        cart = _get_cart(cart_id)
    except CartNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    data = request.get_json(silent=True) or {}
    category = data.get("category")
    if not category:
        return jsonify({"error": "category is required"}), 400

    try:
        result = purchase_service.add_to_cart(cart, category, data)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CatalogWriteError as e:
        return _catalog_error(e)

    return jsonify({**result.to_dict(), "cart": cart.to_dict()}), 201


@purchases_bp.delete("/carts/<cart_id>/lines/<line_id>")
def remove_from_cart_route(cart_id: str, line_id: str):
    try:
        cart = _get_cart(cart_id)
    except CartNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    removed = purchase_service.remove_from_cart(cart, line_id)
    return jsonify({"removed": removed, "cart": cart.to_dict()})


@purchases_bp.post("/carts/<cart_id>/checkout")
def checkout_route(cart_id: str):
    """
    Book the cart as one purchase transaction.

    Request body:
    {
        "supplier_name": "Acme Gas Ltd.",    (optional)
        "payment_status": "completed" | "pending",
        "created_by": "operator-1"           (optional)
    }

    On success the cart is discarded once empty. On 409 the purchase exists
    and the cart is kept; checking it out again resumes the same purchase.
    Lines added in between stay in the returned cart with notices.
    """
    try:
        cart = _get_cart(cart_id)
    except CartNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    data = request.get_json(silent=True) or {}

    try:
        result = purchase_service.checkout(
            cart,
            data.get("supplier_name"),
            data.get("payment_status", purchase_service.PAYMENT_STATUS_COMPLETED),
            created_by=data.get("created_by"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except CommitError as e:
        return jsonify(e.to_dict()), 409 if e.recorded else 500

    if cart.is_empty:
        _carts().discard(cart_id)
        return jsonify({"purchase": result.to_dict()}), 201
    return jsonify({"purchase": result.to_dict(), "cart": cart.to_dict()}), 201


@purchases_bp.post("/quick-add")
def quick_add_route():
    """
    Add stock directly without a purchase record.

    Same body as adding cart lines, without lump_total.
    """
    data = request.get_json(silent=True) or {}
    category = data.get("category")
    if not category:
        return jsonify({"error": "category is required"}), 400

    try:
        applied = purchase_service.quick_add(category, data)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except StockWriteError as e:
        return jsonify({
            "error": str(e),
            "failures": e.failures,
            "applied": e.applied,
        }), 500

    return jsonify({"applied": applied})


@purchases_bp.get("/incomplete")
def list_incomplete_route():
    """Purchases whose items, stock or expense step has not completed."""
    purchases = purchase_service.list_incomplete_purchases()
    return jsonify({
        "items": [p.to_dict() for p in purchases],
        "count": len(purchases),
    })


@purchases_bp.get("/<int:transaction_id>")
def get_purchase_route(transaction_id: int):
    try:
        purchase = purchase_service.get_purchase(transaction_id)
    except PurchaseNotFoundError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({
        "purchase": purchase.to_dict(),
        "items": [item.to_dict() for item in purchase.items],
    })


@purchases_bp.post("/<int:transaction_id>/resume")
def resume_purchase_route(transaction_id: int):
    try:
        result = purchase_service.resume_purchase(transaction_id)
    except PurchaseNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except CommitError as e:
        return jsonify(e.to_dict()), 409

    return jsonify({"purchase": result.to_dict()})
