"""Star ratings for products and sale products."""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from pymongo.database import Database

from database import object_id, serialize
from errors import ProductNotFound, ValidationError
from schemas import Rating

# products show a whole-star average, sale products keep one decimal
ROUNDING = {
    "product": Decimal("1"),
    "saleproduct": Decimal("0.1"),
}


def average_rating(stars: List[int], collection: str = "product") -> float:
    if not stars:
        return 0
    mean = Decimal(sum(stars)) / Decimal(len(stars))
    rounded = mean.quantize(ROUNDING[collection], rounding=ROUND_HALF_UP)
    return int(rounded) if collection == "product" else float(rounded)


def rate(db: Database, collection: str, product_id: str, user_id: str, star: int,
         comment: Optional[str] = None) -> dict:
    try:
        star = int(star)
    except (TypeError, ValueError):
        raise ValidationError("Rating must be a whole number between 1 and 5")
    if star < 1 or star > 5:
        raise ValidationError("Rating must be between 1 and 5")

    oid = object_id(product_id, "product id")
    product = db[collection].find_one({"_id": oid})
    if not product:
        raise ProductNotFound(product_id)

    ratings = list(product.get("ratings", []))
    for entry in ratings:
        if entry.get("posted_by") == user_id:
            entry["star"] = star
            entry["comment"] = comment or ""
            break
    else:
        ratings.append(Rating(star=star, comment=comment or "", posted_by=user_id).model_dump())

    total_rating = average_rating([r["star"] for r in ratings], collection)
    db[collection].update_one(
        {"_id": oid},
        {"$set": {"ratings": ratings, "total_rating": total_rating, "updated_at": datetime.utcnow()}},
    )
    return serialize(db[collection].find_one({"_id": oid}))
