"""User accounts: registration, login, profile and admin blocking."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import object_id, serialize
from errors import Conflict, Unauthorized, UserNotFound, ValidationError
from schemas import User
from security import create_token, hash_password, verify_password
from settings import Settings

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {"name", "mobile", "address"}


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "mobile": user.get("mobile"),
        "address": user.get("address"),
        "role": user.get("role", "user"),
        "is_blocked": user.get("is_blocked", False),
    }


def register(db: Database, settings: Settings, name: str, email: str, password: str,
             mobile: Optional[str] = None) -> dict:
    email = email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("Email already registered")
    doc = User(name=name, email=email, hashed_password=hash_password(password), mobile=mobile).model_dump()
    now = datetime.utcnow()
    doc.update({"created_at": now, "updated_at": now})
    try:
        inserted_id = db["user"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    user = db["user"].find_one({"_id": inserted_id})
    logger.info("Registered user %s", inserted_id)
    return {"token": create_token(user, settings), "user": public_user(user)}


def login(db: Database, settings: Settings, email: str, password: str) -> dict:
    user = db["user"].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("hashed_password", "")):
        raise Unauthorized("Invalid credentials")
    return {"token": create_token(user, settings), "user": public_user(user)}


def update_profile(db: Database, user: dict, changes: Dict[str, Any]) -> dict:
    unknown = set(changes) - PROFILE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    for key, value in changes.items():
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
    update = dict(changes)
    update["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": update})
    return public_user(db["user"].find_one({"_id": user["_id"]}))


def list_users(db: Database) -> List[dict]:
    return [serialize(u) for u in db["user"].find()]


def set_blocked(db: Database, user_id: str, blocked: bool) -> dict:
    oid = object_id(user_id, "user id")
    result = db["user"].update_one({"_id": oid}, {"$set": {"is_blocked": blocked, "updated_at": datetime.utcnow()}})
    if not result.matched_count:
        raise UserNotFound(user_id)
    logger.info("User %s %s", user_id, "blocked" if blocked else "unblocked")
    return public_user(db["user"].find_one({"_id": oid}))
