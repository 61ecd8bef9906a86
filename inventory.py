"""
Stock bookkeeping for products.

Every decrement is a conditional update (quantity >= count), so stock can
never go below zero even when two checkouts race for the last unit. A
multi-line reservation either applies to every line or, when one line
fails, rolls the already applied lines back before raising.
"""
import logging
from typing import Iterable, List, Mapping

from pymongo.database import Database

from database import object_id
from errors import InsufficientStock, ProductNotFound

logger = logging.getLogger(__name__)


def check_stock(db: Database, lines: Iterable[Mapping]) -> None:
    """Read-time check that every line can be covered. Writes nothing."""
    for line in lines:
        product = db["product"].find_one({"_id": object_id(line["product_id"], "product id")})
        if not product:
            raise ProductNotFound(line["product_id"])
        available = int(product.get("quantity", 0))
        if available < int(line["count"]):
            raise InsufficientStock(line["product_id"], product.get("title"), available)


def _apply(db: Database, product_id: str, count: int) -> bool:
    result = db["product"].update_one(
        {"_id": object_id(product_id, "product id"), "quantity": {"$gte": count}},
        {"$inc": {"quantity": -count, "sold": count}},
    )
    return result.modified_count == 1


def _revert(db: Database, product_id: str, count: int) -> None:
    db["product"].update_one(
        {"_id": object_id(product_id, "product id")},
        {"$inc": {"quantity": count, "sold": -count}},
    )


def reserve_stock(db: Database, lines: Iterable[Mapping]) -> None:
    """Decrement quantity and bump sold for every line, all or nothing."""
    applied: List[Mapping] = []
    for line in lines:
        count = int(line["count"])
        if _apply(db, line["product_id"], count):
            applied.append(line)
            continue
        for done in reversed(applied):
            _revert(db, done["product_id"], int(done["count"]))
        product = db["product"].find_one({"_id": object_id(line["product_id"], "product id")})
        if not product:
            raise ProductNotFound(line["product_id"])
        logger.warning("Stock reservation failed for product %s (wanted %d, have %s)",
                       line["product_id"], count, product.get("quantity"))
        raise InsufficientStock(line["product_id"], product.get("title"), product.get("quantity"))


def release_stock(db: Database, lines: Iterable[Mapping]) -> None:
    """Undo a reservation made by reserve_stock."""
    for line in lines:
        _revert(db, line["product_id"], int(line["count"]))
