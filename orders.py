"""
Order placement and payment settlement.

Lifecycle:

    cart --create_order(cod)--> Processing            (stock, cart, coupon settled now)
    cart --create_order(eSewa)--> Pending
    Pending --settle_order--> Processing / Completed  (stock, cart, coupon settled once)
    Pending --cancel_order--> Cancelled / Failed      (no side effects)

A user has at most one Pending order: a new checkout cancels the previous one,
so a paid callback for it lands on a cancelled order and is flagged for
reconciliation instead of settling a second time.

settle_order and cancel_order are compare-and-swap updates on
order_status == Pending. Only the request that wins the swap performs side
effects; a replayed callback finds the order already moved and is a no-op.
"""
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import cart as carts
from coupons import apply_discount, claim_coupon, consume_coupon, find_valid_coupon, money, restore_coupon
from database import create_document, object_id, serialize
from errors import (
    EmptyCart,
    OrderNotFound,
    StorefrontError,
    ValidationError,
)
from esewa import EsewaGateway, amounts_match
from inventory import check_stock, release_stock, reserve_stock
from schemas import (
    CANCELLED,
    DELIVERED,
    METHOD_COD,
    METHOD_ESEWA,
    ORDER_STATUSES,
    PAYMENT_COD,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PENDING,
    PROCESSING,
    Order,
    PaymentIntent,
    ShippingInfo,
)
from settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Totals:
    cart_total: Decimal
    total_after_discount: Decimal
    delivery_charge: Decimal
    total_with_delivery: Decimal


def compute_totals(cart_total: Any, discount: Optional[int], delivery_charge: Any) -> Totals:
    base = money(cart_total)
    after = apply_discount(base, discount) if discount else base
    delivery = money(delivery_charge)
    return Totals(base, after, delivery, after + delivery)


def new_transaction_id(method: str) -> str:
    if method == METHOD_ESEWA:
        return f"ESW-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return uuid.uuid4().hex


def resolve_method(cod: bool, payment_method: Optional[str]) -> str:
    if cod:
        return METHOD_COD
    if payment_method and payment_method.strip().lower() == METHOD_ESEWA.lower():
        return METHOD_ESEWA
    if payment_method and payment_method.strip().upper() == METHOD_COD:
        return METHOD_COD
    raise ValidationError("Choose a payment method: cash on delivery or eSewa")


def _build_order(settings: Settings, user_id: str, shipping_info: ShippingInfo, lines: List[dict],
                 method: str, coupon: Optional[dict]) -> Tuple[Order, Totals]:
    totals = compute_totals(carts.cart_total(lines), coupon["discount"] if coupon else None,
                            settings.delivery_charge)
    if method == METHOD_COD:
        intent_status, order_status = PAYMENT_COD, PROCESSING
    else:
        intent_status, order_status = PAYMENT_PENDING, PENDING
    order = Order(
        user_id=user_id,
        products=lines,
        payment_intent=PaymentIntent(
            id=new_transaction_id(method),
            method=method,
            amount=float(totals.total_with_delivery),
            status=intent_status,
            currency=settings.currency,
        ),
        order_status=order_status,
        coupon_id=str(coupon["_id"]) if coupon else None,
        total_after_discount=float(totals.total_after_discount),
        delivery_charge=float(totals.delivery_charge),
        total_with_delivery=float(totals.total_with_delivery),
        shipping_info=shipping_info,
    )
    return order, totals


def _supersede_pending(db: Database, user_id: str) -> None:
    # a user has at most one order awaiting payment; the cart it was built from moves on
    for pending in db["order"].find({"user_id": user_id, "order_status": PENDING}, {"payment_intent.id": 1}):
        _, cancelled = cancel_order(db, pending["payment_intent"]["id"])
        if cancelled:
            logger.info("Order %s superseded by a new checkout", pending["_id"])


def create_order(db: Database, settings: Settings, gateway: EsewaGateway, user_id: str,
                 shipping_info: ShippingInfo, cod: bool = False, payment_method: Optional[str] = None,
                 coupon_applied: bool = False, coupon_code: Optional[str] = None) -> Dict[str, Any]:
    method = resolve_method(cod, payment_method)

    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("products"):
        raise EmptyCart()
    lines = [
        {"product_id": it["product_id"], "count": int(it["count"]),
         "color": it.get("color"), "price": float(it["price"])}
        for it in cart["products"]
    ]
    check_stock(db, lines)
    code = coupon_code if coupon_applied else None

    if method == METHOD_COD:
        return _place_cod_order(db, settings, user_id, shipping_info, lines, code)

    coupon = find_valid_coupon(db, code, user_id) if code else None
    if code and coupon is None:
        logger.warning("Ignoring invalid coupon %r for user %s", code, user_id)
    order, totals = _build_order(settings, user_id, shipping_info, lines, method, coupon)
    txn = order.payment_intent.id
    _supersede_pending(db, user_id)
    order_id = create_document(db, "order", order)
    logger.info("Order %s pending eSewa payment (transaction %s)", order_id, txn)
    return {
        "order_id": order_id,
        "transaction_id": txn,
        "payment_url": gateway.payment_url,
        "form_data": gateway.build_form(txn, totals.total_after_discount, totals.delivery_charge,
                                        totals.total_with_delivery),
    }


def _place_cod_order(db: Database, settings: Settings, user_id: str, shipping_info: ShippingInfo,
                     lines: List[dict], code: Optional[str]) -> Dict[str, Any]:
    # the coupon is taken before pricing, so two checkouts cannot both get its discount
    coupon = claim_coupon(db, code, user_id) if code else None
    if code and coupon is None:
        logger.warning("Ignoring invalid coupon %r for user %s", code, user_id)
    order, _ = _build_order(settings, user_id, shipping_info, lines, METHOD_COD, coupon)
    try:
        # stock before the order: if this loses a race, nothing has been written yet
        reserve_stock(db, lines)
        try:
            order_id = create_document(db, "order", order)
        except PyMongoError:
            release_stock(db, lines)
            raise
    except (StorefrontError, PyMongoError):
        if coupon is not None:
            restore_coupon(db, coupon)
        raise
    _supersede_pending(db, user_id)
    carts.empty(db, user_id)
    logger.info("Cash on delivery order %s placed for user %s", order_id, user_id)
    return {"order": get_order(db, order_id)}


def _settle_side_effects(db: Database, order: dict) -> None:
    problems = []
    try:
        reserve_stock(db, order.get("products", []))
    except (StorefrontError, PyMongoError) as exc:
        problems.append(getattr(exc, "message", None) or str(exc))
    carts.empty(db, order["user_id"])
    if order.get("coupon_id") and not consume_coupon(db, order["coupon_id"]):
        problems.append("Coupon was already used by another order")
    if problems:
        reason = "; ".join(problems)
        logger.error("Order %s paid but could not be fully settled: %s", order["_id"], reason)
        db["order"].update_one(
            {"_id": order["_id"]},
            {"$set": {"needs_reconciliation": True, "settlement_error": reason}},
        )


def settle_order(db: Database, transaction_id: str, transaction_code: Optional[str] = None) -> Tuple[dict, bool]:
    """Move a Pending order to Processing. Returns (order, settled_now)."""
    now = datetime.utcnow()
    order = db["order"].find_one_and_update(
        {"payment_intent.id": transaction_id, "order_status": PENDING},
        {"$set": {
            "order_status": PROCESSING,
            "payment_intent.status": PAYMENT_COMPLETED,
            "payment_intent.transaction_code": transaction_code,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one({"payment_intent.id": transaction_id})
        if existing is None:
            raise OrderNotFound(transaction_id)
        if existing.get("order_status") == CANCELLED:
            logger.error("Payment completed for cancelled order %s", existing["_id"])
            db["order"].update_one(
                {"_id": existing["_id"]},
                {"$set": {"needs_reconciliation": True,
                          "settlement_error": "Payment completed after the order was cancelled"}},
            )
            return db["order"].find_one({"_id": existing["_id"]}), False
        logger.info("Order %s already %s, ignoring repeated settlement", existing["_id"],
                    existing.get("order_status"))
        return existing, False
    _settle_side_effects(db, order)
    logger.info("Order %s settled via %s", order["_id"], order["payment_intent"].get("method"))
    return db["order"].find_one({"_id": order["_id"]}), True


def cancel_order(db: Database, transaction_id: str) -> Tuple[dict, bool]:
    """Move a Pending order to Cancelled. Returns (order, cancelled_now)."""
    order = db["order"].find_one_and_update(
        {"payment_intent.id": transaction_id, "order_status": PENDING},
        {"$set": {
            "order_status": CANCELLED,
            "payment_intent.status": PAYMENT_FAILED,
            "updated_at": datetime.utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one({"payment_intent.id": transaction_id})
        if existing is None:
            raise OrderNotFound(transaction_id)
        return existing, False
    logger.info("Order %s cancelled, payment failed", order["_id"])
    return order, True


def handle_payment_callback(db: Database, gateway: EsewaGateway, data: str) -> Tuple[dict, bool]:
    """Verify a success-leg callback and settle or cancel the order.

    Returns (order, paid). Nothing is written unless the signature checks out.
    """
    payload = gateway.verify(gateway.decode_callback(data))
    existing = db["order"].find_one({"payment_intent.id": payload.transaction_uuid})
    if existing is None:
        raise OrderNotFound(payload.transaction_uuid)
    if not amounts_match(payload.total_amount, existing["payment_intent"]["amount"]):
        raise ValidationError("Paid amount does not match the order total")
    if payload.is_complete:
        order, _ = settle_order(db, payload.transaction_uuid, payload.transaction_code or None)
        return order, order["payment_intent"]["status"] == PAYMENT_COMPLETED
    logger.warning("eSewa reported status %s for %s", payload.status, payload.transaction_uuid)
    order, _ = cancel_order(db, payload.transaction_uuid)
    return order, False


def get_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": object_id(order_id, "order id")})
    if not order:
        raise OrderNotFound(order_id)
    return serialize(order)


def get_user_order(db: Database, order_id: str, user: dict) -> dict:
    order = get_order(db, order_id)
    if order["user_id"] != str(user["_id"]) and user.get("role") != "admin":
        # other users' orders look absent
        raise OrderNotFound(order_id)
    return order


def list_user_orders(db: Database, user_id: str) -> List[dict]:
    cursor = db["order"].find({"user_id": user_id}).sort("created_at", -1)
    return [serialize(o) for o in cursor]


def list_all_orders(db: Database, status: Optional[str] = None) -> List[dict]:
    filt = {"order_status": status} if status else {}
    return [serialize(o) for o in db["order"].find(filt).sort("created_at", -1)]


def list_reconciliation(db: Database) -> List[dict]:
    return [serialize(o) for o in db["order"].find({"needs_reconciliation": True})]


def update_order_status(db: Database, order_id: str, status: str) -> dict:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {status}")
    oid = object_id(order_id, "order id")
    result = db["order"].update_one(
        {"_id": oid}, {"$set": {"order_status": status, "updated_at": datetime.utcnow()}}
    )
    if not result.matched_count:
        raise OrderNotFound(order_id)
    return get_order(db, order_id)


def delete_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one_and_delete({"_id": object_id(order_id, "order id")})
    if not order:
        raise OrderNotFound(order_id)
    logger.warning("Order %s deleted by admin", order_id)
    return serialize(order)


def revenue(db: Database) -> Dict[str, float]:
    totals = {"total": Decimal("0"), "esewa": Decimal("0"), "cod": Decimal("0")}
    for order in db["order"].find({"order_status": DELIVERED}):
        intent = order.get("payment_intent") or {}
        amount = Decimal(str(intent.get("amount") or 0))
        totals["total"] += amount
        if intent.get("method") == METHOD_ESEWA:
            totals["esewa"] += amount
        elif intent.get("method") == METHOD_COD:
            totals["cod"] += amount
    return {k: float(money(v)) for k, v in totals.items()}
