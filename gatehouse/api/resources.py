from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from gatehouse.api.deps import authorize_request, require_feature
from gatehouse.api.schemas import (
    Envelope,
    PermissionCreateRequest,
    PermissionUpdateRequest,
    RoleCreateRequest,
    RoleUpdateRequest,
)
from gatehouse.config import AuthConfig
from gatehouse.service.authorization import (
    UNAUTHORIZED_MESSAGE,
    Resource,
    crud_permission_for_route,
    has_permission,
)
from gatehouse.service.errors import ForbiddenError
from gatehouse.service.resolver import Principal
from gatehouse.service.runtime import get_runtime


def crud_guard(resource: Resource):
    """Authorize with the permission derived from the request method and path."""

    async def _dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Optional[Principal]:
        runtime = get_runtime()
        require_feature(runtime.config.roles_and_permissions)
        slug = crud_permission_for_route(
            request.method, request.url.path, resource, runtime.config.api_path
        )
        if slug is None:
            raise ForbiddenError(UNAUTHORIZED_MESSAGE)
        return await authorize_request(request, authorization, [has_permission(slug)])

    return _dependency


def build_crud_router(config: AuthConfig) -> APIRouter:
    """Role and permission management, paths named after the configured resources."""
    role = Resource(config.role_resource)
    permission = Resource(config.permission_resource)
    roles_path = f"/{role.slug_plural}"
    permissions_path = f"/{permission.slug_plural}"
    router = APIRouter()

    @router.post(roles_path, response_model=Envelope, status_code=201, tags=["roles"])
    async def create_role(body: RoleCreateRequest, _=Depends(crud_guard(role))):
        created = get_runtime().access.create_role(
            body.name,
            body.slug,
            description=body.description,
            permission_ids=body.permission_ids,
        )
        return Envelope(status="ok", data=created.to_public())

    @router.get(roles_path, response_model=Envelope, tags=["roles"])
    async def list_roles(
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        _=Depends(crud_guard(role)),
    ):
        items = get_runtime().access.list_roles(limit=limit, offset=offset)
        return Envelope(status="ok", data={"items": [r.to_public() for r in items]})

    @router.get(roles_path + "/{item_id}", response_model=Envelope, tags=["roles"])
    async def show_role(item_id: str, _=Depends(crud_guard(role))):
        return Envelope(status="ok", data=get_runtime().access.get_role(item_id).to_public())

    @router.api_route(
        roles_path + "/{item_id}",
        methods=["PUT", "PATCH"],
        response_model=Envelope,
        tags=["roles"],
    )
    async def update_role(item_id: str, body: RoleUpdateRequest, _=Depends(crud_guard(role))):
        updated = get_runtime().access.update_role(item_id, body.model_dump(exclude_unset=True))
        return Envelope(status="ok", data=updated.to_public())

    @router.delete(roles_path + "/{item_id}", response_model=Envelope, tags=["roles"])
    async def delete_role(item_id: str, _=Depends(crud_guard(role))):
        return Envelope(status="ok", data={"success": get_runtime().access.delete_role(item_id)})

    @router.post(
        permissions_path, response_model=Envelope, status_code=201, tags=["permissions"]
    )
    async def create_permission(
        body: PermissionCreateRequest, _=Depends(crud_guard(permission))
    ):
        created = get_runtime().access.create_permission(
            body.name, body.slug, description=body.description
        )
        return Envelope(status="ok", data=created.to_public())

    @router.get(permissions_path, response_model=Envelope, tags=["permissions"])
    async def list_permissions(
        limit: int = Query(100, ge=1, le=500),
        offset: int = Query(0, ge=0),
        _=Depends(crud_guard(permission)),
    ):
        items = get_runtime().access.list_permissions(limit=limit, offset=offset)
        return Envelope(status="ok", data={"items": [p.to_public() for p in items]})

    @router.get(permissions_path + "/{item_id}", response_model=Envelope, tags=["permissions"])
    async def show_permission(item_id: str, _=Depends(crud_guard(permission))):
        found = get_runtime().access.get_permission(item_id)
        return Envelope(status="ok", data=found.to_public())

    @router.api_route(
        permissions_path + "/{item_id}",
        methods=["PUT", "PATCH"],
        response_model=Envelope,
        tags=["permissions"],
    )
    async def update_permission(
        item_id: str, body: PermissionUpdateRequest, _=Depends(crud_guard(permission))
    ):
        updated = get_runtime().access.update_permission(
            item_id, body.model_dump(exclude_unset=True)
        )
        return Envelope(status="ok", data=updated.to_public())

    @router.delete(permissions_path + "/{item_id}", response_model=Envelope, tags=["permissions"])
    async def delete_permission(item_id: str, _=Depends(crud_guard(permission))):
        deleted = get_runtime().access.delete_permission(item_id)
        return Envelope(status="ok", data={"success": deleted})

    return router
