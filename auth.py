"""
Identity & Access: password hashing, bearer tokens, login/register,
password changes and the FastAPI dependencies that gate routes by role.

The acting principal is always resolved at the boundary and passed into
services explicitly.
"""
import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Union

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import cart as cart_service
from database import create_document, get_db, get_documents, now, oid, serialize
from errors import (
    EmailExists,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    RoleMappingError,
    ShopError,
    TokenExpired,
    Unauthorized,
    WrongCurrentPassword,
)
from schemas import ROLE_PREFIX, AuthResponse, Role, User, UserOut, decode_role

logger = logging.getLogger(__name__)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", "1440"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    user_id: str
    email: str
    name: str
    role_claim: Optional[str] = None


# Login rate limiting (per client IP, sliding window)
class LoginRateLimiter:
    def __init__(self, max_attempts: int, window_sec: int, clock: Callable[[], float] = time.monotonic):
        self.max_attempts = max_attempts
        self.window_sec = window_sec
        self.clock = clock
        self._attempts: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def _sweep(self, stamp: float) -> None:
        # Buckets are append-only, so the last entry is the newest
        stale = [ip for ip, bucket in self._attempts.items() if not bucket or stamp - bucket[-1] > self.window_sec]
        for ip in stale:
            del self._attempts[ip]

    def check(self, ip: str) -> None:
        stamp = self.clock()
        with self._lock:
            self._sweep(stamp)
            bucket = [t for t in self._attempts.get(ip, []) if stamp - t <= self.window_sec]
            if len(bucket) >= self.max_attempts:
                self._attempts[ip] = bucket
                raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")
            bucket.append(stamp)
            self._attempts[ip] = bucket

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()


login_rate_limiter = LoginRateLimiter(
    max_attempts=int(os.getenv("LOGIN_RATE_LIMIT_MAX", "20")),
    window_sec=int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_SEC", str(60 * 15))),
)


# Passwords
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # unrecognized or malformed stored hash
        return False


# Tokens
def normalize_role_claim(role: Union[Role, str, None]) -> str:
    """USER -> ROLE_USER, ROLE_ADMIN -> ROLE_ADMIN, None -> ROLE_USER."""
    if role is None:
        return ROLE_PREFIX + Role.USER.value
    name = role.value if isinstance(role, Role) else str(role).strip()
    if not name:
        return ROLE_PREFIX + Role.USER.value
    name = name.upper()
    if name.startswith(ROLE_PREFIX):
        return name
    return ROLE_PREFIX + name


def create_access_token(email: str, role: Union[Role, str, None], expires_minutes: int = None) -> str:
    if expires_minutes is None:
        expires_minutes = TOKEN_EXPIRE_MIN
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode = {"sub": email, "role": normalize_role_claim(role), "exp": expire}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except ExpiredSignatureError:
        raise TokenExpired()
    except JWTError:
        raise InvalidToken()


def validate_token(database: Database, token: str) -> Principal:
    """Verify signature and expiry and that the subject is a known user."""
    payload = decode_access_token(token)
    email = payload.get("sub")
    if not email:
        raise InvalidToken()
    doc = database["users"].find_one({"email": email})
    if not doc:
        raise InvalidToken("User not found")
    return Principal(
        user_id=str(doc["_id"]),
        email=doc["email"],
        name=doc.get("name", ""),
        role_claim=payload.get("role"),
    )


def role_from_claim(claim: Optional[str]) -> Role:
    """Strict decode of a token role claim; anything but ROLE_<known> fails."""
    if not claim or not claim.startswith(ROLE_PREFIX):
        raise RoleMappingError()
    try:
        return Role(claim[len(ROLE_PREFIX):])
    except ValueError:
        raise RoleMappingError()


def authorize(principal: Principal, required_role: Optional[Role] = None) -> bool:
    """Exact-match role check; required_role=None admits any valid principal."""
    role = role_from_claim(principal.role_claim)
    if required_role is None:
        return True
    return role == required_role


def _auth_result(doc: dict) -> AuthResponse:
    role = decode_role(doc.get("role"))
    return AuthResponse(
        token=create_access_token(doc["email"], role),
        id=str(doc["_id"]),
        name=doc.get("name", ""),
        email=doc["email"],
        role=normalize_role_claim(role),
    )


# Operations
def login(database: Database, email: str, password: str) -> AuthResponse:
    doc = database["users"].find_one({"email": email})
    if not doc:
        pwd_context.dummy_verify()
        raise InvalidCredentials()
    if not verify_password(password, doc.get("password_hash")):
        raise InvalidCredentials()
    return _auth_result(doc)


def register(database: Database, name: str, email: str, password: str) -> AuthResponse:
    email_key = email.lower()
    if database["users"].find_one({"email_key": email_key}):
        raise EmailExists()
    user = User(
        name=name,
        email=email,
        email_key=email_key,
        password_hash=hash_password(password),
        role=Role.USER,
    )
    try:
        user_id = create_document(database, "users", user)
    except DuplicateKeyError:
        raise EmailExists()

    try:
        cart_service.get_or_create_cart(database, user_id)
    except (PyMongoError, ShopError):
        logger.warning("Failed to create cart for new user %s", user_id, exc_info=True)

    return _auth_result(database["users"].find_one({"_id": oid(user_id)}))


def change_password(database: Database, principal: Principal, current_password: str, new_password: str) -> None:
    doc = database["users"].find_one({"_id": oid(principal.user_id, "User")})
    if not doc:
        raise NotFound("User not found")
    if not verify_password(current_password, doc.get("password_hash")):
        raise WrongCurrentPassword()
    database["users"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": now()}},
    )


def _user_out(doc: dict) -> UserOut:
    return UserOut(
        id=doc["id"],
        name=doc.get("name", ""),
        email=doc["email"],
        role=decode_role(doc.get("role")).value.lower(),
        created_at=doc.get("created_at"),
        updated_at=doc.get("updated_at"),
    )


def get_profile(database: Database, principal: Principal) -> UserOut:
    doc = serialize(database["users"].find_one({"_id": oid(principal.user_id, "User")}))
    if not doc:
        raise NotFound("User not found")
    return _user_out(doc)


def update_profile(database: Database, principal: Principal, name: str) -> UserOut:
    result = database["users"].update_one(
        {"_id": oid(principal.user_id, "User")},
        {"$set": {"name": name, "updated_at": now()}},
    )
    if result.matched_count == 0:
        raise NotFound("User not found")
    return get_profile(database, principal)


def list_users(database: Database) -> List[UserOut]:
    return [_user_out(doc) for doc in get_documents(database, "users", newest_first=True)]


# Dependencies
def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    database: Database = Depends(get_db),
) -> Principal:
    if credentials is None:
        raise Unauthorized()
    try:
        principal = validate_token(database, credentials.credentials)
    except Unauthorized as exc:
        logger.debug("Bearer token rejected: %s", exc.message)
        raise Unauthorized()
    try:
        authorize(principal)
    except RoleMappingError:
        logger.error("Role claim %r for %s does not map to a known role", principal.role_claim, principal.email)
        raise
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not authorize(principal, Role.ADMIN):
        raise Forbidden("Admin only")
    return principal
