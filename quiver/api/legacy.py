"""
Legacy access API routes.

- POST   /api/legacy/check: look up a grant by email (flags the caller's record when it is their verified email)
- POST   /api/legacy/users: add or replace a grant (admin)
- DELETE /api/legacy/users/{email}: remove a grant (admin)
"""
from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from quiver.core.auth import AdminActor, AuthContext, get_admin_actor, get_optional_auth
from quiver.features.legacy.service import (
    add_legacy_user,
    check_legacy_access,
    remove_legacy_user,
)


router = APIRouter(prefix="/api/legacy", tags=["legacy"])


class LegacyCheckRequest(BaseModel):
    email: Optional[str] = None


class LegacyCheckResponse(BaseModel):
    has_legacy_access: bool
    granted_products: List[str]


class LegacyUserRequest(BaseModel):
    email: Optional[str] = None
    products: List[str] = []
    notes: Optional[str] = None


@router.post("/check", response_model=LegacyCheckResponse)
def legacy_check(
    request: LegacyCheckRequest,
    auth: Optional[AuthContext] = Depends(get_optional_auth),
):
    access = check_legacy_access(
        request.email,
        user_id=auth.user_id if auth else None,
        verified_email=auth.email if auth else None,
    )
    return {"has_legacy_access": access.has_legacy_access, "granted_products": access.granted_products}


@router.post("/users")
def legacy_add(request: LegacyUserRequest, actor: AdminActor = Depends(get_admin_actor)):
    add_legacy_user(request.email, request.products, notes=request.notes, added_by=actor.actor_id)
    return {"success": True}


@router.delete("/users/{email}")
def legacy_remove(email: str, actor: AdminActor = Depends(get_admin_actor)):
    removed = remove_legacy_user(email)
    return {"success": True, "removed": removed}
