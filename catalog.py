"""
Product and sale-product storage.

Both collections share one shape; sale products add sale_price. Updates go
through an allow-list so a request body can only touch catalog fields.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database

from database import object_id, serialize
from errors import ProductNotFound, ValidationError
from schemas import Product, SaleProduct

MODELS = {"product": Product, "saleproduct": SaleProduct}

UPDATABLE_FIELDS = {
    "product": {"title", "description", "price", "category", "brand", "quantity", "color", "images", "tags"},
    "saleproduct": {"title", "description", "price", "sale_price", "category", "brand", "quantity",
                    "color", "images", "tags"},
}

SORTS = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "newest": ("created_at", -1),
    "rating": ("total_rating", -1),
    "best_selling": ("sold", -1),
}


def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


def _describe(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid input")


def create_product(db: Database, collection: str, data: Dict[str, Any]) -> dict:
    data = dict(data)
    data["slug"] = slugify(data.get("title") or "")
    data.pop("ratings", None)
    data.pop("total_rating", None)
    data.pop("sold", None)
    try:
        product = MODELS[collection](**data)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc))
    if not product.slug:
        raise ValidationError("Product title is required")
    if db[collection].find_one({"slug": product.slug}):
        product.slug = f"{product.slug}-{int(datetime.utcnow().timestamp())}"
    doc = product.model_dump()
    now = datetime.utcnow()
    doc.update({"created_at": now, "updated_at": now})
    inserted = db[collection].insert_one(doc).inserted_id
    return serialize(db[collection].find_one({"_id": inserted}))


def get_product(db: Database, collection: str, product_id: str) -> dict:
    product = db[collection].find_one({"_id": object_id(product_id, "product id")})
    if not product:
        raise ProductNotFound(product_id)
    return serialize(product)


def list_products(db: Database, collection: str, search: Optional[str] = None,
                  category: Optional[str] = None, brand: Optional[str] = None,
                  color: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, sort: Optional[str] = None,
                  page: int = 1, page_size: int = 12) -> dict:
    filt: Dict[str, Any] = {}
    if search:
        filt["title"] = {"$regex": re.escape(search), "$options": "i"}
    if category:
        filt["category"] = category
    if brand:
        filt["brand"] = brand
    if color:
        filt["color"] = color
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond

    page = max(1, page)
    page_size = min(max(1, page_size), 100)
    total = db[collection].count_documents(filt)
    cursor = db[collection].find(filt)
    if sort in SORTS:
        cursor = cursor.sort(*SORTS[sort])
    cursor = cursor.skip((page - 1) * page_size).limit(page_size)
    return {"items": [serialize(p) for p in cursor], "page": page, "page_size": page_size, "total": total}


def update_product(db: Database, collection: str, product_id: str, changes: Dict[str, Any]) -> dict:
    oid = object_id(product_id, "product id")
    unknown = set(changes) - UPDATABLE_FIELDS[collection]
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    current = db[collection].find_one({"_id": oid})
    if not current:
        raise ProductNotFound(product_id)
    merged = {k: v for k, v in current.items() if k in MODELS[collection].model_fields}
    merged.update(changes)
    try:
        validated = MODELS[collection](**merged)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc))
    update = {k: getattr(validated, k) for k in changes}
    if "title" in changes:
        update["slug"] = slugify(validated.title)
    update["updated_at"] = datetime.utcnow()
    db[collection].update_one({"_id": oid}, {"$set": update})
    return serialize(db[collection].find_one({"_id": oid}))


def delete_product(db: Database, collection: str, product_id: str) -> dict:
    product = db[collection].find_one_and_delete({"_id": object_id(product_id, "product id")})
    if not product:
        raise ProductNotFound(product_id)
    return serialize(product)


# accessory categories shown next to a product, keyed by its category (lowercase)
ACCESSORY_CATEGORIES = {
    "laptop": ["laptop bag", "mouse", "keyboard", "laptop stand", "headphones"],
    "smartphone": ["phone case", "screen protector", "charger", "earbuds", "power bank"],
    "camera": ["camera lens", "tripod", "camera bag", "memory card", "camera battery"],
    "headphones": ["headphone stand", "audio adapter", "earpads", "bluetooth transmitter"],
    "smartwatch": ["watch band", "watch charger", "screen protector"],
    "gaming console": ["game controller", "gaming headset", "console stand", "games"],
    "tablet": ["tablet case", "stylus", "tablet stand", "screen protector"],
    "desktop computer": ["monitor", "keyboard", "mouse", "speakers", "webcam"],
    "monitor": ["monitor stand", "hdmi cable", "monitor light", "webcam"],
    "printer": ["ink cartridge", "printer paper", "printer cable"],
    "speaker": ["audio cable", "speaker stand", "bluetooth adapter"],
    "router": ["ethernet cable", "wifi extender", "network switch"],
    "tv": ["tv mount", "hdmi cable", "remote control", "sound bar"],
    "keyboard": ["wrist rest", "keycaps", "keyboard cleaner"],
    "mouse": ["mouse pad", "mouse bungee"],
    "external hard drive": ["hard drive case", "usb cable", "data recovery software"],
    "graphics card": ["power supply", "pc case", "cooling system"],
    "processor": ["cooling fan", "thermal paste", "motherboard"],
    "motherboard": ["ram", "processor", "pc case"],
    "power bank": ["charging cable", "wireless charger"],
    "earbuds": ["earbuds case", "ear tips", "charging cable"],
    "smart home device": ["smart plug", "smart bulb", "smart switch"],
}
DEFAULT_ACCESSORY_CATEGORIES = ["charger", "case", "cable", "adapter", "stand"]


def accessory_categories(category: Optional[str]) -> List[str]:
    return ACCESSORY_CATEGORIES.get((category or "").strip().lower(), DEFAULT_ACCESSORY_CATEGORIES)


def _category_in(names: List[str]) -> Dict[str, Any]:
    pattern = "^(" + "|".join(re.escape(n) for n in names) + ")$"
    return {"$regex": pattern, "$options": "i"}


def recommend(db: Database, product_id: str, limit: int = 4) -> dict:
    """Best sellers that resemble a product, plus accessories from complementary categories."""
    oid = object_id(product_id, "product id")
    source = db["product"].find_one({"_id": oid})
    if not source:
        raise ProductNotFound(product_id)

    alike: List[Dict[str, Any]] = [{"category": source.get("category")}, {"brand": source.get("brand")}]
    if source.get("tags"):
        alike.append({"tags": {"$in": source["tags"]}})
    similar = db["product"].find({"_id": {"$ne": oid}, "$or": alike}).sort("sold", -1).limit(limit)
    accessories = db["product"].find(
        {"_id": {"$ne": oid}, "category": _category_in(accessory_categories(source.get("category")))}
    ).sort("sold", -1).limit(limit)
    return {
        "similar_products": [serialize(p) for p in similar],
        "accessories": [serialize(p) for p in accessories],
    }
