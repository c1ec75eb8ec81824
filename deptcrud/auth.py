from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import jwt
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import store
from .config import settings
from .responses import ApiError, json_success

log = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000


def hash_password(raw: str, salt: str | None = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", raw.encode("utf-8"), salt.encode("utf-8"), iterations
    ).hex()
    return f"pbkdf2_sha256${iterations}${salt}${digest}"


def verify_password(raw: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, digest = stored.split("$", 3)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    candidate = hash_password(raw, salt, int(iterations))
    return secrets.compare_digest(candidate.rsplit("$", 1)[1], digest)


@dataclass
class CurrentUser:
    user_id: int
    username: str
    email: str
    roles: list[str] = field(default_factory=list)


def issue_access_token(user: store.User, roles: list[str]) -> tuple[str, datetime]:
    now = store.utcnow()
    expires = now + timedelta(hours=settings.JWT_EXPIRATION_HOUR)
    claims = {
        "sub": user.username,
        "aud": settings.JWT_AUDIENCE,
        "iss": settings.JWT_ISSUER,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
        "email": user.email,
        "userid": user.id,
        "username": user.username,
        "roles": roles,
    }
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return token, expires.replace(microsecond=0)


def decode_access_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )


def require_auth(
    request: Request,
    authorization: str | None = Header(default=None),
) -> CurrentUser:
    if not authorization:
        raise ApiError(401, "No token provided", "Authorization header is missing")
    prefix = f"{settings.TOKEN_TYPE} "
    if not authorization.startswith(prefix):
        raise ApiError(401, "Invalid token format", f"Token must start with '{prefix}'")
    token = authorization[len(prefix):].strip()
    if not token:
        raise ApiError(401, "Invalid token format", "Token string is empty")
    try:
        claims = decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise ApiError(401, "Invalid token", str(exc)) from exc

    user = CurrentUser(
        user_id=int(claims.get("userid") or 0),
        username=str(claims.get("username", "")),
        email=str(claims.get("email", "")),
        roles=[str(r) for r in claims.get("roles") or []],
    )
    request.state.user = user
    return user


def require_roles(*allowed: str):
    """Dependency admitting callers holding any of ``allowed``."""

    def _check(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        if not allowed:
            return user
        if not user.roles:
            raise ApiError(403, "No roles found", "User does not have any roles")
        if any(role in allowed for role in user.roles):
            return user
        raise ApiError(403, "Access denied", "User does not have the required role")

    return _check


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=20)
    password: str = Field(min_length=8, max_length=20)


class RefreshTokenRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class TokenPair(_CamelModel):
    access_token: str
    refresh_token: str
    expiration_date: datetime
    token_type: str


def _check_account(user: store.User) -> None:
    if not user.is_enabled:
        raise ApiError(401, "Failed to login", "user is not enabled")
    if not user.is_account_non_expired:
        raise ApiError(401, "Failed to login", "user account is expired")
    if not user.is_account_non_locked:
        raise ApiError(401, "Failed to login", "user account is locked")
    if not user.is_credentials_non_expired:
        raise ApiError(401, "Failed to login", "user credentials are expired")
    if user.is_deleted:
        raise ApiError(401, "Failed to login", "user account is deleted")


def _issue_pair(user: store.User) -> TokenPair:
    roles = store.user_roles(user.id)
    access, expires = issue_access_token(user, roles)
    refresh = store.rotate_refresh_token(user.id, settings.JWT_REFRESH_TOKEN_EXPIRATION_HOUR)
    store.update_last_login(user.id, store.utcnow())
    return TokenPair(
        access_token=access,
        refresh_token=refresh.token,
        expiration_date=expires,
        token_type=settings.TOKEN_TYPE,
    )


def login(payload: LoginRequest) -> TokenPair:
    user = store.get_user_by_username(payload.username)
    if user is None:
        raise ApiError(401, "Failed to login", "user not found")
    _check_account(user)
    if not verify_password(payload.password, user.password):
        raise ApiError(401, "Failed to login", "invalid password")
    log.info("user %s logged in", user.username)
    return _issue_pair(user)


def refresh(payload: RefreshTokenRequest) -> TokenPair:
    stored = store.get_refresh_token(payload.refresh_token)
    if stored is None:
        raise ApiError(401, "Failed to refresh token", "refresh token not found")
    if store.as_utc(stored.expiry_date) <= store.utcnow():
        raise ApiError(401, "Failed to refresh token", "refresh token is expired")
    found = store.get_user(stored.user_id)
    if found is None:
        raise ApiError(401, "Failed to refresh token", "user not found")
    return _issue_pair(found[0])


def ensure_admin(username: str, password: str, email: str | None = None) -> None:
    """Create the bootstrap administrator when it does not exist yet."""

    if store.get_user_by_username(username) is not None:
        return
    user = store.User(
        username=username,
        password=hash_password(password),
        email=email or f"{username}@localhost",
        firstname=username.capitalize()[:20],
    )
    store.create_user(user, ["ROLE_ADMIN"], actor=None)
    log.info("created bootstrap admin %s", username)


def router(*dependencies) -> APIRouter:
    r = APIRouter(prefix="/auth", dependencies=list(dependencies))

    @r.post("/login")
    def post_login(request: Request, payload: LoginRequest):
        pair = login(payload)
        return json_success(request, 200, "Login successful", pair.model_dump(by_alias=True, mode="json"))

    @r.post("/refresh-token")
    def post_refresh(request: Request, payload: RefreshTokenRequest):
        pair = refresh(payload)
        return json_success(
            request, 200, "Token refreshed successfully", pair.model_dump(by_alias=True, mode="json")
        )

    return r
