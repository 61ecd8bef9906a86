from datetime import datetime, timedelta
from typing import Optional

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

from database import get_db
from errors import Forbidden, Unauthorized
from settings import Settings, get_settings

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict, settings: Settings) -> str:
    now = datetime.utcnow()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": now + timedelta(minutes=settings.jwt_expires_min),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token. Authorization failed.")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("No token attached to header. Authorization required.")
    payload = decode_token(credentials.credentials, settings)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise Unauthorized("Invalid token payload. No user ID found.")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise Unauthorized("User not found. Authorization failed.")
    if user.get("is_blocked"):
        raise Forbidden("Your account is blocked. Please contact support.")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise Forbidden("Access denied. Admin privileges required.")
    return user
