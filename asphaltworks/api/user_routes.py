from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic.alias_generators import to_snake

from asphaltworks.api.dependencies import get_admin_user, get_staff_user
from asphaltworks.api.routes import ok
from asphaltworks.api.schemas import (
    AdminCreateUserRequest,
    AdminResetPasswordRequest,
    AdminUpdateUserRequest,
    BulkUsersRequest,
    Envelope,
    UserResponse,
    UserStatsResponse,
    page_response,
)
from asphaltworks.service.runtime import get_runtime
from asphaltworks.storage.models import ListQuery, User

router = APIRouter(prefix="/api/users", tags=["users"])


def _user_query(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("createdAt", alias="sortBy", max_length=50),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
) -> ListQuery:
    return ListQuery(
        page=page,
        limit=limit,
        search=search or None,
        sort_by=to_snake(sort_by),
        sort_order=sort_order,
    )


def _user_page(page):
    return page_response(page, [UserResponse.from_user(u) for u in page.items])


@router.get("", response_model=Envelope)
async def list_users(
    query: ListQuery = Depends(_user_query),
    role: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    actor: User = Depends(get_staff_user),
):
    runtime = get_runtime()
    page = runtime.users.list(query, role=role, is_active=is_active)
    return ok(_user_page(page))


@router.get("/stats", response_model=Envelope)
async def user_stats(actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    return ok(UserStatsResponse(**runtime.users.stats()))


@router.get("/search", response_model=Envelope)
async def search_users(
    q: str = Query(..., max_length=100),
    limit: int = Query(10, ge=1, le=50),
    actor: User = Depends(get_staff_user),
):
    runtime = get_runtime()
    users = runtime.users.search(q, limit=limit)
    return ok({"users": [UserResponse.from_user(u) for u in users]})


@router.get("/role/{role}", response_model=Envelope)
async def users_by_role(
    role: str,
    query: ListQuery = Depends(_user_query),
    actor: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    return ok(_user_page(runtime.users.by_role(role, query)))


@router.post("/bulk/activate", response_model=Envelope)
async def bulk_activate(body: BulkUsersRequest, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    count = runtime.users.bulk_set_active(actor, body.user_ids, True)
    return ok({"updated": count}, f"{count} user(s) activated")


@router.post("/bulk/deactivate", response_model=Envelope)
async def bulk_deactivate(body: BulkUsersRequest, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    count = runtime.users.bulk_set_active(actor, body.user_ids, False)
    return ok({"updated": count}, f"{count} user(s) deactivated")


@router.post("/bulk/delete", response_model=Envelope)
async def bulk_delete(body: BulkUsersRequest, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    count = runtime.users.bulk_delete(actor, body.user_ids)
    return ok({"deleted": count}, f"{count} user(s) deleted")


@router.get("/{user_id}", response_model=Envelope)
async def get_user(user_id: str, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    return ok({"user": UserResponse.from_user(runtime.users.get(user_id))})


@router.post("", response_model=Envelope, status_code=201)
async def create_user(body: AdminCreateUserRequest, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    user = await runtime.users.create(actor, **body.model_dump())
    return ok({"user": UserResponse.from_user(user)}, "user created")


@router.put("/{user_id}", response_model=Envelope)
async def update_user(
    user_id: str, body: AdminUpdateUserRequest, actor: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = runtime.users.update(actor, user_id, body.model_dump(exclude_unset=True))
    return ok({"user": UserResponse.from_user(user)}, "user updated")


@router.delete("/{user_id}", response_model=Envelope)
async def delete_user(user_id: str, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    runtime.users.delete(actor, user_id)
    return ok(message="user deleted")


@router.post("/{user_id}/reset-password", response_model=Envelope)
async def admin_reset_password(
    user_id: str,
    body: Optional[AdminResetPasswordRequest] = None,
    actor: User = Depends(get_admin_user),
):
    runtime = get_runtime()
    body = body or AdminResetPasswordRequest()
    generated = await runtime.users.reset_password(
        actor, user_id, new_password=body.new_password, send_email=body.send_email
    )
    data = {"temporaryPassword": generated} if generated else None
    return ok(data, "password reset")


@router.patch("/{user_id}/toggle-status", response_model=Envelope)
async def toggle_status(user_id: str, actor: User = Depends(get_admin_user)):
    runtime = get_runtime()
    user = runtime.users.toggle_status(actor, user_id)
    state = "activated" if user.is_active else "deactivated"
    return ok({"user": UserResponse.from_user(user)}, f"user {state}")
