from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from flask import Blueprint, current_app, jsonify, request

from marketplace.clock import as_utc
from marketplace.database import get_uow
from marketplace.errors import MarketplaceError, ValidationError
from marketplace.models import Order, OrderLineItem, Payout

settlement_bp = Blueprint("settlement", __name__)

logger = logging.getLogger(__name__)


def _services():
    return current_app.extensions["marketplace"]


def _active_settings():
    """Platform settings as stored right now, so admin edits apply to the next computation."""
    return _services().platform_settings.load(get_uow())


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer", {key: value})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer", {key: value}) from exc


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _item_to_dict(item: OrderLineItem) -> Dict[str, Any]:
    return {
        "id": item.lineItemID,
        "order_id": item.orderID,
        "product_id": item.productID,
        "vendor_id": item.vendorID,
        "product_name": item.product_name,
        "unit_price": _json_value(item.unit_price),
        "quantity": item.quantity,
        "subtotal": _json_value(item.subtotal),
        "status": _json_value(item.status),
        "tracking_code": item.tracking_code,
        "carrier": item.carrier,
        "shipped_at": _json_value(item.shipped_at),
        "delivered_at": _json_value(item.delivered_at),
        "payout_id": item.payoutID,
    }


def _order_to_dict(order: Order, include_items: bool = True) -> Dict[str, Any]:
    payload = {
        "id": order.orderID,
        "order_number": order.order_number,
        "buyer_id": order.buyer_id,
        "subtotal": _json_value(order.subtotal),
        "shipping_cost": _json_value(order.shipping_cost),
        "total_amount": _json_value(order.total_amount),
        "payment_method": _json_value(order.payment_method),
        "payment_status": _json_value(order.payment_status),
        "status": _json_value(order.status),
        "created_at": _json_value(order.created_at),
        "delivered_at": _json_value(order.delivered_at),
        "cancelled_at": _json_value(order.cancelled_at),
    }
    if include_items:
        payload["items"] = [_item_to_dict(item) for item in order.items]
    return payload


def _payout_to_dict(payout: Payout) -> Dict[str, Any]:
    return {
        "id": payout.payoutID,
        "vendor_id": payout.vendorID,
        "amount": _json_value(payout.amount),
        "gross_amount": _json_value(payout.gross_amount),
        "commission_rate": _json_value(payout.commission_rate),
        "tier_at_payout": _json_value(payout.tier_at_payout),
        "period_start": _json_value(as_utc(payout.period_start)),
        "period_end": _json_value(as_utc(payout.period_end)),
        "status": _json_value(payout.status),
        "payment_method": payout.payment_method,
        "payment_reference": payout.payment_reference,
        "notes": payout.notes,
        "processed_at": _json_value(payout.processed_at),
    }


@settlement_bp.errorhandler(MarketplaceError)
def handle_marketplace_error(error: MarketplaceError):
    level = logging.WARNING if error.http_status < 500 else logging.ERROR
    logger.log(level, "Request rejected: %s", error.message, extra={"error_code": error.code})
    return jsonify(error.to_dict()), error.http_status


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------
@settlement_bp.route("/api/orders", methods=["POST"])
def api_create_order():
    data = _payload()
    order = _services().orders.create_order(
        get_uow(),
        buyer_id=_require_int(data, "buyer_id"),
        items=data.get("items") or [],
        delivery_info=data.get("delivery_info") or {},
        payment_method=data.get("payment_method"),
        payment_reference=data.get("payment_reference"),
    )
    return jsonify(_order_to_dict(order)), 201


@settlement_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def api_get_order(order_id: int):
    order = _services().orders.get_order(get_uow(), order_id)
    return jsonify(_order_to_dict(order))


@settlement_bp.route("/api/orders/<int:order_id>/cancel", methods=["POST"])
def api_cancel_order(order_id: int):
    order = _services().orders.cancel_order(get_uow(), order_id)
    return jsonify(_order_to_dict(order))


@settlement_bp.route("/api/order-items/<int:line_item_id>/ship", methods=["POST"])
def api_ship_line_item(line_item_id: int):
    data = _payload()
    uow = get_uow()
    item = _services().orders.ship_line_item(
        uow,
        line_item_id,
        tracking_code=data.get("tracking_code"),
        carrier=data.get("carrier"),
        settings=_active_settings(),
    )
    return jsonify(_item_to_dict(item))


@settlement_bp.route("/api/orders/<int:order_id>/confirm-delivery", methods=["POST"])
def api_confirm_delivery(order_id: int):
    order = _services().orders.confirm_delivery(get_uow(), order_id, settings=_active_settings())
    return jsonify(_order_to_dict(order))


@settlement_bp.route("/api/orders/<int:order_id>/payment", methods=["POST"])
def api_update_payment(order_id: int):
    data = _payload()
    orders = _services().orders
    decision = data.get("decision")
    if decision == "verify":
        order = orders.verify_payment(get_uow(), order_id)
    elif decision == "reject":
        order = orders.reject_payment(get_uow(), order_id)
    else:
        raise ValidationError("decision must be 'verify' or 'reject'", {"decision": decision})
    return jsonify(_order_to_dict(order, include_items=False))


# ----------------------------------------------------------------------
# Rewards and tiers
# ----------------------------------------------------------------------
@settlement_bp.route("/api/vendors/<int:vendor_id>/reviews", methods=["POST"])
def api_record_review(vendor_id: int):
    data = _payload()
    result = _services().rewards.record_review(
        get_uow(),
        vendor_id,
        review_id=_require_int(data, "review_id"),
        product_name=str(data.get("product_name") or ""),
        rating=data.get("rating"),
        settings=_active_settings(),
    )
    return jsonify({"rewarded": result is not None, "grant": result.to_dict() if result else None}), 201


@settlement_bp.route("/api/vendors/<int:vendor_id>/points", methods=["POST"])
def api_adjust_points(vendor_id: int):
    data = _payload()
    result = _services().rewards.adjust_points(
        get_uow(),
        vendor_id,
        delta=data.get("delta"),
        reason=data.get("reason"),
        actor_id=_require_int(data, "actor_id"),
        settings=_active_settings(),
    )
    return jsonify(result.to_dict())


@settlement_bp.route("/api/vendors/<int:vendor_id>/tier", methods=["GET"])
def api_tier_info(vendor_id: int):
    info = _services().rewards.get_tier_info(get_uow(), vendor_id, settings=_active_settings())
    return jsonify(info.to_dict())


@settlement_bp.route("/api/vendors/<int:vendor_id>/rewards", methods=["GET"])
def api_reward_history(vendor_id: int):
    history = _services().rewards.get_reward_history(
        get_uow(),
        vendor_id,
        action_type=request.args.get("action_type"),
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 20, type=int),
    )
    return jsonify(history)


@settlement_bp.route("/api/vendors/<int:vendor_id>/notifications", methods=["GET"])
def api_notifications(vendor_id: int):
    notifications = _services().notifications
    unread_only = request.args.get("unread") in {"1", "true", "yes"}
    return jsonify({
        "notifications": notifications.get_notifications(vendor_id, unread_only=unread_only),
        "unread_count": notifications.get_unread_count(vendor_id),
    })


# ----------------------------------------------------------------------
# Payouts
# ----------------------------------------------------------------------
@settlement_bp.route("/api/vendors/<int:vendor_id>/payouts/pending", methods=["GET"])
def api_pending_payout(vendor_id: int):
    projection = _services().payouts.project_pending_payout(get_uow(), vendor_id, settings=_active_settings())
    return jsonify(projection.to_dict())


@settlement_bp.route("/api/vendors/<int:vendor_id>/payouts", methods=["GET"])
def api_list_payouts(vendor_id: int):
    payouts = _services().payouts.list_payouts(get_uow(), vendor_id=vendor_id, status=request.args.get("status"))
    return jsonify({"payouts": [_payout_to_dict(payout) for payout in payouts]})


@settlement_bp.route("/api/vendors/<int:vendor_id>/payouts", methods=["POST"])
def api_process_payout(vendor_id: int):
    data = _payload()
    if data.get("amount") is None:
        raise ValidationError("amount is required")
    payout = _services().payouts.process_payout(
        get_uow(),
        vendor_id,
        amount=data["amount"],
        method=data.get("method"),
        reference=data.get("reference"),
        notes=data.get("notes"),
        settings=_active_settings(),
    )
    return jsonify(_payout_to_dict(payout)), 201


@settlement_bp.route("/api/payouts/batch", methods=["POST"])
def api_batch_settlement():
    payouts = _services().payouts.run_batch_settlement(get_uow(), settings=_active_settings())
    return jsonify({"created": len(payouts), "payouts": [_payout_to_dict(payout) for payout in payouts]}), 201


@settlement_bp.route("/api/payouts/<int:payout_id>/paid", methods=["POST"])
def api_mark_payout_paid(payout_id: int):
    data = _payload()
    payout = _services().payouts.mark_payout_paid(
        get_uow(),
        payout_id,
        method=data.get("method"),
        reference=data.get("reference"),
    )
    return jsonify(_payout_to_dict(payout))


@settlement_bp.route("/api/payouts/<int:payout_id>/failed", methods=["POST"])
def api_mark_payout_failed(payout_id: int):
    data = _payload()
    payout = _services().payouts.mark_payout_failed(get_uow(), payout_id, reason=data.get("reason") or "")
    return jsonify(_payout_to_dict(payout))


# ----------------------------------------------------------------------
# Platform settings
# ----------------------------------------------------------------------
@settlement_bp.route("/api/settings", methods=["GET"])
def api_get_settings():
    return jsonify(_services().platform_settings.get_all(get_uow()))


@settlement_bp.route("/api/settings/<key>", methods=["PUT"])
def api_update_setting(key: str):
    data = _payload()
    if "value" not in data:
        raise ValidationError("value is required", {"key": key})
    _services().platform_settings.update_setting(get_uow(), key, data["value"], data.get("description"))
    return jsonify({"key": key, "value": data["value"]})
