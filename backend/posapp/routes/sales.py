# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/posapp/routes/sales.py
"""
Sales API routes

POST /api/sales is the checkout. Every role may ring up sales; cashiers
only see their own sales in listings, reports and receipts.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PosError
from ..services import checkout_service, reporting_service, sales_service
from ..decorators import require_auth


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _error(e: PosError):
    return jsonify(e.to_dict()), e.status_code


@sales_bp.post("")
@require_auth
def checkout_route():
    """
    Check out a cart.

    Body:
        items: [{"product_id": int, "quantity": int, "unit_price_cents"?: int}, ...]
        payment_method: CASH | CARD | DIGITAL_WALLET
        discount_pct, tax_pct: number in [0, 100] (optional)
        customer_name, customer_phone, notes (optional)
        amount_received_cents: int (optional, CASH only)

    Prices always come from the catalog; unit_price_cents is a display hint.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "ValidationError", "message": "Invalid JSON payload", "details": {}}), 400

    try:
        sale = checkout_service.checkout(
            data.get("items"),
            data.get("payment_method"),
            g.current_user.id,
            discount_pct=data.get("discount_pct"),
            tax_pct=data.get("tax_pct"),
            customer_name=data.get("customer_name"),
            customer_phone=data.get("customer_phone"),
            notes=data.get("notes"),
            amount_received_cents=data.get("amount_received_cents"),
        )
        return jsonify({"sale": sale.to_dict()}), 201
    except PosError as e:
        if e.status_code >= 500:
            current_app.logger.error("Checkout failed: %s", e.message)
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
@require_auth
def list_sales_route():
    try:
        result = sales_service.list_sales(
            user=g.current_user,
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order"),
        )
        return jsonify(result), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/search")
@require_auth
def search_sales_route():
    """
    Query params: q, sale_number, customer_name, customer_phone,
    payment_method, start, end (ISO-8601), min_amount_cents,
    max_amount_cents, user_id, page, limit, sort_by, sort_order
    """
    args = request.args
    try:
        result = sales_service.search_sales(
            user=g.current_user,
            q=args.get("q"),
            sale_number=args.get("sale_number"),
            customer_name=args.get("customer_name"),
            customer_phone=args.get("customer_phone"),
            payment_method=args.get("payment_method"),
            start=args.get("start"),
            end=args.get("end"),
            min_amount_cents=args.get("min_amount_cents", type=int),
            max_amount_cents=args.get("max_amount_cents", type=int),
            user_id=args.get("user_id", type=int),
            page=args.get("page", type=int),
            limit=args.get("limit", type=int),
            sort_by=args.get("sort_by"),
            sort_order=args.get("sort_order"),
        )
        return jsonify(result), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to search sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/today")
@require_auth
def today_sales_route():
    try:
        return jsonify(reporting_service.today_sales(g.current_user)), 200
    except Exception:
        current_app.logger.exception("Failed to fetch today's sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/analytics")
@require_auth
def analytics_route():
    try:
        result = reporting_service.analytics(request.args.get("period", "day"), g.current_user)
        return jsonify(result), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to fetch analytics")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id, g.current_user)
        return jsonify({"sale": sale.to_dict()}), 200
    except PosError as e:
        return _error(e)


@sales_bp.get("/<int:sale_id>/receipt")
@require_auth
def receipt_route(sale_id: int):
    try:
        return jsonify(reporting_service.receipt(sale_id, g.current_user)), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to generate receipt for sale %s", sale_id)
        return jsonify({"error": "Internal server error"}), 500
