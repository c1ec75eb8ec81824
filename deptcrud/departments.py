from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import store
from .auth import CurrentUser, require_roles
from .responses import ApiError, json_success

NOT_FOUND = "No department found with the given ID"


class DepartmentIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(min_length=4, max_length=4)
    dept_name: str = Field(min_length=1, max_length=40)
    active: bool = False


class DepartmentUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    dept_name: str = Field(min_length=1, max_length=40)
    active: bool = False


class DepartmentOut(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: str
    dept_name: str
    active: bool
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_by: Optional[int] = None
    updated_at: Optional[datetime] = None


def _out(dept: store.Department) -> dict:
    return DepartmentOut.model_validate(dept).model_dump(
        by_alias=True, exclude_none=True, mode="json"
    )


def router(*dependencies) -> APIRouter:
    r = APIRouter(prefix="/departments", dependencies=list(dependencies))
    readers = require_roles("ROLE_ADMIN", "ROLE_USER")
    writers = require_roles("ROLE_ADMIN")

    @r.get("")
    def list_all(request: Request, _: CurrentUser = Depends(readers)):
        items = [_out(d) for d in store.list_departments()]
        return json_success(request, 200, "All Departments retrieved successfully", items)

    @r.get("/{dept_id}")
    def get_one(dept_id: str, request: Request, _: CurrentUser = Depends(readers)):
        dept = store.get_department(dept_id)
        if dept is None:
            raise ApiError(404, "Department not found", NOT_FOUND)
        return json_success(request, 200, "Department retrieved successfully", _out(dept))

    @r.post("")
    def create(
        request: Request,
        payload: DepartmentIn = Body(...),
        user: CurrentUser = Depends(writers),
    ):
        try:
            dept = store.create_department(
                payload.id, payload.dept_name, payload.active, user.user_id
            )
        except store.Conflict as exc:
            raise ApiError(409, "Failed to create department", str(exc)) from exc
        return json_success(request, 201, "Department created successfully", _out(dept))

    @r.put("/{dept_id}")
    def update(
        dept_id: str,
        request: Request,
        payload: DepartmentUpdate = Body(...),
        user: CurrentUser = Depends(writers),
    ):
        try:
            dept = store.update_department(
                dept_id, payload.dept_name, payload.active, user.user_id
            )
        except store.NotFound as exc:
            raise ApiError(404, "Department not found", NOT_FOUND) from exc
        except store.Conflict as exc:
            raise ApiError(409, "Failed to update department", str(exc)) from exc
        return json_success(request, 200, "Department updated successfully", _out(dept))

    @r.delete("/{dept_id}")
    def remove(dept_id: str, request: Request, user: CurrentUser = Depends(writers)):
        if not store.delete_department(dept_id, user.user_id):
            raise ApiError(404, "Department not found", NOT_FOUND)
        return json_success(request, 200, "Department deleted successfully", None)

    return r
