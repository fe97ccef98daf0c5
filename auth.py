"""
Access gate: token issuance / verification and per-request identity.

Routes never look the caller up themselves. They depend on `get_identity`
(any authenticated user) or `require_admin`, and hand the resolved
`Identity` to the ledger.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Request
from loguru import logger
from pymongo.database import Database

from config import settings
from database import USERS, create_document, get_db, utcnow
from errors import Forbidden, Unauthenticated
from schemas import Role, User


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    name: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def owns(self, record: Dict[str, Any]) -> bool:
        return record.get("user_id") == self.user_id


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def create_token(email: str, name: Optional[str] = None, expires_minutes: Optional[int] = None) -> str:
    now = utcnow()
    minutes = expires_minutes if expires_minutes is not None else settings.jwt_expiration_minutes
    payload = {
        "email": normalize_email(email),
        "name": name,
        "iat": now,
        "exp": now + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.access_token_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.access_token_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise Unauthenticated("Token expired.") from e
    except jwt.InvalidTokenError as e:
        raise Unauthenticated("Invalid token.") from e


def upsert_user(database: Database, email: str, name: Optional[str] = None, role: Optional[str] = None) -> Dict[str, Any]:
    """Return the user with this email, creating it first when missing."""
    email = normalize_email(email)
    user = database[USERS].find_one({"email": email})
    if user:
        if role and user.get("role") != role:
            database[USERS].update_one({"_id": user["_id"]}, {"$set": {"role": role, "updated_at": utcnow()}})
            user = database[USERS].find_one({"_id": user["_id"]})
        return user
    doc = User(name=name or email.split("@")[0], email=email, role=role or Role.USER.value)
    create_document(database, USERS, doc)
    logger.info("Created user {} with role {}", email, doc.role)
    return database[USERS].find_one({"email": email})


def _token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if header:
        parts = header.split(" ")
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
            return parts[1]
        return None
    return request.cookies.get(settings.cookie_name)


def get_identity(request: Request, database: Database = Depends(get_db)) -> Identity:
    token = _token_from_request(request)
    if not token:
        raise Unauthenticated("Access denied. No token provided.")
    claims = decode_token(token)
    email = normalize_email(claims.get("email"))
    user = database[USERS].find_one({"email": email}) if email else None
    if not user:
        raise Unauthenticated("User not found.")
    return Identity(
        user_id=str(user["_id"]),
        email=user["email"],
        name=user.get("name") or "",
        role=user.get("role", Role.USER.value),
    )


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Access denied. Admin privileges required.")
    return identity
