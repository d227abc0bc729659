# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/posapp/routes/products.py
"""
Product catalog routes.

SECURITY: All routes require authentication.
- Reads are open to every role
- Writes (create, update, stock, delete) require ADMIN or MANAGER
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import PosError
from ..models import Product
from ..models.auth import ROLE_ADMIN, ROLE_MANAGER
from ..services import catalog_service
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_product,
    coerce_int,
)
from ..decorators import require_auth, require_role

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"code", "name", "description", "category", "image_url", "price_cents", "stock_qty"},
    required_on_create={"code", "name", "price_cents"},
)

# Stock is changed through PUT /<id>/stock only
PRODUCT_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"code", "name", "description", "category", "image_url", "price_cents"},
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _error(e: PosError):
    return jsonify(e.to_dict()), e.status_code


@products_bp.get("")
@require_auth
def list_products_route():
    """
    List active products.

    Query params: page, limit, sort_by, sort_order (asc|desc), search,
    category, min_price_cents, max_price_cents
    """
    try:
        result = catalog_service.list_products(
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
            sort_by=request.args.get("sort_by"),
            sort_order=request.args.get("sort_order"),
            search=request.args.get("search"),
            category=request.args.get("category"),
            min_price_cents=request.args.get("min_price_cents", type=int),
            max_price_cents=request.args.get("max_price_cents", type=int),
        )
        return jsonify(result), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/search")
@require_auth
def search_products_route():
    try:
        result = catalog_service.search_products(
            request.args.get("q"),
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
        )
        return jsonify(result), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to search products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/low-stock")
@require_auth
def low_stock_route():
    return jsonify(catalog_service.list_low_stock()), 200


@products_bp.get("/code/<string:code>")
@require_auth
def get_product_by_code_route(code: str):
    try:
        product = catalog_service.get_product_by_code(code)
        return jsonify(catalog_service.serialize(product)), 200
    except PosError as e:
        return _error(e)


@products_bp.get("/<int:product_id>")
@require_auth
def get_product_route(product_id: int):
    try:
        product = catalog_service.get_product(product_id)
        return jsonify(catalog_service.serialize(product)), 200
    except PosError as e:
        return _error(e)


@products_bp.get("/<int:product_id>/movements")
@require_auth
def stock_movements_route(product_id: int):
    try:
        result = catalog_service.get_stock_movements(
            product_id,
            page=request.args.get("page", type=int),
            limit=request.args.get("limit", type=int),
        )
        return jsonify(result), 200
    except PosError as e:
        return _error(e)


@products_bp.post("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def create_product_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
        created = catalog_service.create_product(patch=patch, user_id=g.current_user.id)
        return jsonify(catalog_service.serialize(created)), 201
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/<int:product_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_UPDATE_POLICY, partial=True)
        enforce_rules_product(patch)
        updated = catalog_service.update_product(product_id, patch)
        return jsonify(catalog_service.serialize(updated)), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/<int:product_id>/stock")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def set_stock_route(product_id: int):
    """Body: {"quantity": int, "reason": str}"""
    data = request.get_json(silent=True) or {}

    try:
        if data.get("quantity") is None:
            return jsonify({"error": "ValidationError", "message": "quantity is required", "details": {}}), 400
        quantity = coerce_int(data.get("quantity"), "quantity")
        product = catalog_service.set_stock(
            product_id, quantity, data.get("reason") or "Manual stock update", user_id=g.current_user.id
        )
        return jsonify(catalog_service.serialize(product)), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to update stock")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def delete_product_route(product_id: int):
    """Products with sales are retired rather than deleted."""
    try:
        result = catalog_service.delete_product(product_id)
        return jsonify({"ok": True, **result}), 200
    except PosError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to delete product")
        return jsonify({"error": "Internal server error"}), 500
