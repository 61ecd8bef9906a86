"""Coupon lookup, discount arithmetic and admin CRUD."""
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import object_id, serialize
from errors import Conflict, CouponNotFound, ValidationError
from schemas import Coupon

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# fields an admin may change on an existing coupon
UPDATABLE_FIELDS = {"name", "expiry", "discount", "user_id"}


def money(value: Union[int, float, str, Decimal]) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def apply_discount(total: Union[int, float, str, Decimal], discount: int) -> Decimal:
    """total * (100 - discount) / 100, rounded half-up to two decimals."""
    return money(Decimal(str(total)) * (100 - int(discount)) / 100)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def naive_utc(value: datetime) -> datetime:
    # stored dates are naive UTC, like everything pymongo hands back
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _usable_by(name: str, user_id: Optional[str]) -> dict:
    # unexpired, and either unowned or owned by this user
    return {
        "name": name,
        "expiry": {"$gt": datetime.utcnow()},
        "$or": [{"user_id": None}, {"user_id": user_id}],
    }


def find_valid_coupon(db: Database, code: str, user_id: Optional[str] = None) -> Optional[dict]:
    name = normalize_code(code)
    if not name:
        return None
    return db["coupon"].find_one(_usable_by(name, user_id))


def claim_coupon(db: Database, code: str, user_id: Optional[str] = None) -> Optional[dict]:
    """Validate and consume a coupon in one step. Only one caller can win a given coupon."""
    name = normalize_code(code)
    if not name:
        return None
    coupon = db["coupon"].find_one_and_delete(_usable_by(name, user_id))
    if coupon is not None:
        logger.info("Coupon %s claimed by user %s", name, user_id)
    return coupon


def restore_coupon(db: Database, coupon: dict) -> None:
    """Put back a claimed coupon when the order that claimed it was not placed."""
    try:
        db["coupon"].insert_one(coupon)
    except DuplicateKeyError:
        logger.warning("Coupon %s already restored", coupon.get("name"))


def consume_coupon(db: Database, coupon_id: Any) -> bool:
    """Delete a used coupon. Returns False if someone else consumed it first."""
    if coupon_id is None:
        return False
    result = db["coupon"].delete_one({"_id": object_id(coupon_id, "coupon id")})
    if result.deleted_count:
        logger.info("Coupon %s consumed", coupon_id)
    return bool(result.deleted_count)


def _validate_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    if "name" in data:
        name = data["name"]
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Coupon name must be a non-empty string")
        clean["name"] = normalize_code(name)
    if "expiry" in data:
        expiry = data["expiry"]
        if isinstance(expiry, str):
            try:
                expiry = datetime.fromisoformat(expiry.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError("Expiry must be a valid date")
        if not isinstance(expiry, datetime):
            raise ValidationError("Expiry must be a valid date")
        clean["expiry"] = naive_utc(expiry)
    if "discount" in data:
        try:
            discount = int(data["discount"])
        except (TypeError, ValueError):
            raise ValidationError("Discount must be a number between 1 and 100")
        if discount < 1 or discount > 100:
            raise ValidationError("Discount must be a number between 1 and 100")
        clean["discount"] = discount
    if "user_id" in data:
        owner = data["user_id"] or None
        if owner is not None:
            owner = str(object_id(owner, "user id"))
        clean["user_id"] = owner
    return clean


def create_coupon(db: Database, name: str, expiry: Any, discount: Any, user_id: Optional[str] = None) -> dict:
    fields = _validate_fields({"name": name, "expiry": expiry, "discount": discount, "user_id": user_id})
    doc = Coupon(**fields).model_dump()
    if db["coupon"].find_one({"name": doc["name"]}):
        raise Conflict(f"Coupon already exists: {doc['name']}")
    now = datetime.utcnow()
    doc.update({"created_at": now, "updated_at": now})
    try:
        inserted = db["coupon"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict(f"Coupon already exists: {doc['name']}")
    return serialize(db["coupon"].find_one({"_id": inserted}))


def list_coupons(db: Database) -> List[dict]:
    return [serialize(c) for c in db["coupon"].find().sort("expiry", 1)]


def list_user_coupons(db: Database, user_id: str) -> List[dict]:
    filt = {
        "expiry": {"$gt": datetime.utcnow()},
        "$or": [{"user_id": None}, {"user_id": user_id}],
    }
    return [serialize(c) for c in db["coupon"].find(filt)]


def get_coupon(db: Database, coupon_id: str) -> dict:
    coupon = db["coupon"].find_one({"_id": object_id(coupon_id, "coupon id")})
    if not coupon:
        raise CouponNotFound(coupon_id)
    return serialize(coupon)


def update_coupon(db: Database, coupon_id: str, changes: Dict[str, Any]) -> dict:
    oid = object_id(coupon_id, "coupon id")
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    update = _validate_fields(changes)
    if "name" in update and db["coupon"].find_one({"name": update["name"], "_id": {"$ne": oid}}):
        raise Conflict(f"Coupon already exists: {update['name']}")
    update["updated_at"] = datetime.utcnow()
    try:
        result = db["coupon"].update_one({"_id": oid}, {"$set": update})
    except DuplicateKeyError:
        raise Conflict(f"Coupon already exists: {update['name']}")
    if not result.matched_count:
        raise CouponNotFound(coupon_id)
    return serialize(db["coupon"].find_one({"_id": oid}))


def delete_coupon(db: Database, coupon_id: str) -> dict:
    coupon = db["coupon"].find_one_and_delete({"_id": object_id(coupon_id, "coupon id")})
    if not coupon:
        raise CouponNotFound(coupon_id)
    return serialize(coupon)
