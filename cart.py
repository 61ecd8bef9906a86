"""
Shopping cart operations.

A cart belongs to exactly one user and is created on the first add. Each
line keeps the unit price seen when it was added; checkout never re-reads
catalog prices. Adding a product that is already in the cart replaces its
quantity instead of adding to it.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from coupons import apply_discount, find_valid_coupon, money
from database import object_id, serialize
from errors import CartNotFound, InsufficientStock, InvalidCoupon, NotFound, ProductNotFound, ValidationError
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)


def cart_total(lines: List[dict]) -> float:
    total = sum((Decimal(str(it["price"])) * int(it["count"]) for it in lines), Decimal("0"))
    return float(money(total))


def empty_cart_view(user_id: str) -> dict:
    return Cart(user_id=user_id).model_dump(exclude={"user_id"})


def get_cart(db: Database, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        return empty_cart_view(user_id)
    return serialize(cart)


def _save_lines(db: Database, user_id: str, lines: List[dict]) -> dict:
    # changing the lines invalidates any discount computed on the old total
    update = {
        "$set": {
            "products": lines,
            "cart_total": cart_total(lines),
            "total_after_discount": None,
            "updated_at": datetime.utcnow(),
        },
        "$setOnInsert": {"created_at": datetime.utcnow()},
    }
    try:
        cart = db["cart"].find_one_and_update(
            {"user_id": user_id}, update, upsert=True, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        # a concurrent first add created the cart; this write now updates it
        cart = db["cart"].find_one_and_update(
            {"user_id": user_id}, update, return_document=ReturnDocument.AFTER
        )
    return serialize(cart)


def add_or_update_item(db: Database, user_id: str, product_id: str, quantity: int,
                       color: Optional[str] = None) -> dict:
    if quantity is None or int(quantity) < 1:
        raise ValidationError("Quantity must be at least 1")
    quantity = int(quantity)
    product = db["product"].find_one({"_id": object_id(product_id, "product id")})
    if not product:
        raise ProductNotFound(product_id)
    available = int(product.get("quantity", 0))
    if available < quantity:
        raise InsufficientStock(product_id, product.get("title"), available)

    cart = db["cart"].find_one({"user_id": user_id})
    lines = list(cart.get("products", [])) if cart else []
    for line in lines:
        if line["product_id"] == product_id:
            line["count"] = quantity
            if color:
                line["color"] = color
            break
    else:
        lines.append(CartItem(
            product_id=product_id,
            count=quantity,
            color=color or product.get("color"),
            price=float(product.get("price", 0)),
        ).model_dump())
    return _save_lines(db, user_id, lines)


def remove_item(db: Database, user_id: str, product_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise CartNotFound()
    lines = [it for it in cart.get("products", []) if it["product_id"] != product_id]
    if len(lines) == len(cart.get("products", [])):
        raise NotFound(f"Product not in cart: {product_id}")
    return _save_lines(db, user_id, lines)


def empty(db: Database, user_id: str) -> None:
    result = db["cart"].delete_one({"user_id": user_id})
    if result.deleted_count:
        logger.info("Cart emptied for user %s", user_id)


def apply_coupon(db: Database, user_id: str, code: str) -> str:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise CartNotFound()
    coupon = find_valid_coupon(db, code, user_id)
    if not coupon:
        raise InvalidCoupon(code)
    total_after_discount = f"{apply_discount(cart.get('cart_total', 0), coupon['discount']):.2f}"
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"total_after_discount": total_after_discount, "updated_at": datetime.utcnow()}},
    )
    return total_after_discount
