from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import store
from .auth import CurrentUser, hash_password, require_roles
from .responses import ApiError, json_success

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserIn(_Camel):
    user_name: str = Field(min_length=3, max_length=20)
    password: str = Field(min_length=8)
    email: str = Field(max_length=100, pattern=EMAIL_PATTERN)
    first_name: str = Field(min_length=1, max_length=20)
    last_name: Optional[str] = Field(default=None, max_length=20)
    user_type: Literal["SERVICE_ACCOUNT", "USER_ACCOUNT"] = "USER_ACCOUNT"
    roles: list[str] = Field(default_factory=lambda: ["ROLE_USER"])


class UserOut(_Camel):
    id: int
    user_name: str
    email: str
    first_name: str
    last_name: Optional[str] = None
    is_enabled: bool
    is_account_non_expired: bool
    is_account_non_locked: bool
    is_credentials_non_expired: bool
    user_type: str
    last_login: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    roles: list[str] = Field(default_factory=list)


def _out(user: store.User, roles: list[str]) -> dict:
    return UserOut(
        id=user.id,
        user_name=user.username,
        email=user.email,
        first_name=user.firstname,
        last_name=user.lastname,
        is_enabled=user.is_enabled,
        is_account_non_expired=user.is_account_non_expired,
        is_account_non_locked=user.is_account_non_locked,
        is_credentials_non_expired=user.is_credentials_non_expired,
        user_type=user.user_type,
        last_login=user.last_login,
        created_by=user.created_by,
        created_at=user.created_at,
        roles=roles,
    ).model_dump(by_alias=True, exclude_none=True, mode="json")


def router(*dependencies) -> APIRouter:
    r = APIRouter(prefix="/users", dependencies=list(dependencies))
    admins = require_roles("ROLE_ADMIN")

    @r.get("")
    def list_all(request: Request, _: CurrentUser = Depends(admins)):
        items = [_out(u, roles) for u, roles in store.list_users()]
        return json_success(request, 200, "All Users retrieved successfully", items)

    @r.get("/{user_id}")
    def get_one(user_id: str, request: Request, _: CurrentUser = Depends(admins)):
        try:
            ident = int(user_id)
        except ValueError as exc:
            raise ApiError(400, "Invalid ID format", f"invalid user id: {user_id!r}") from exc
        found = store.get_user(ident)
        if found is None:
            raise ApiError(404, "User not found", "No user found with the given ID")
        return json_success(request, 200, "User retrieved successfully", _out(*found))

    @r.post("")
    def create(
        request: Request,
        payload: UserIn = Body(...),
        actor: CurrentUser = Depends(admins),
    ):
        user = store.User(
            username=payload.user_name,
            password=hash_password(payload.password),
            email=payload.email,
            firstname=payload.first_name,
            lastname=payload.last_name,
            user_type=payload.user_type,
        )
        try:
            created, roles = store.create_user(user, payload.roles, actor.user_id)
        except store.Conflict as exc:
            raise ApiError(409, "Failed to create user", str(exc)) from exc
        except store.NotFound as exc:
            raise ApiError(400, "Failed to create user", str(exc)) from exc
        return json_success(request, 201, "User created successfully", _out(created, roles))

    return r
