from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence

from gatehouse.logging import get_logger
from gatehouse.service.authorization import CRUD_ACTIONS, Resource
from gatehouse.service.errors import ConflictError, NotFoundError
from gatehouse.service.resolver import AUTHENTICATED_ROLE, PUBLIC_ROLE
from gatehouse.storage.base import CredentialStore
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Permission, Role

logger = get_logger(__name__)


class AccessControlService:
    """Role and permission management shared by REST, operations and scripts."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    # roles
    def create_role(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        permission_ids: Optional[Sequence[str]] = None,
    ) -> Role:
        try:
            role = self.store.create_role(
                name, slug, description=description, permission_ids=permission_ids
            )
        except ConstraintViolation as exc:
            raise ConflictError(f"A role with slug {slug} already exists.", detail=exc.detail)
        logger.info("role_created", role_id=role.id, slug=slug)
        return role

    def list_roles(self, limit: int = 100, offset: int = 0) -> List[Role]:
        return self.store.list_roles(limit=limit, offset=offset)

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("Role not found.")
        return role

    def update_role(self, role_id: str, fields: dict[str, Any]) -> Role:
        try:
            role = self.store.update_role(role_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError("A role with this slug already exists.", detail=exc.detail)
        if not role:
            raise NotFoundError("Role not found.")
        return role

    def delete_role(self, role_id: str) -> bool:
        if not self.store.delete_role(role_id):
            raise NotFoundError("Role not found.")
        logger.info("role_deleted", role_id=role_id)
        return True

    # permissions
    def create_permission(
        self, name: str, slug: str, *, description: Optional[str] = None
    ) -> Permission:
        try:
            permission = self.store.create_permission(name, slug, description=description)
        except ConstraintViolation as exc:
            raise ConflictError(
                f"A permission with slug {slug} already exists.", detail=exc.detail
            )
        logger.info("permission_created", permission_id=permission.id, slug=slug)
        return permission

    def list_permissions(self, limit: int = 100, offset: int = 0) -> List[Permission]:
        return self.store.list_permissions(limit=limit, offset=offset)

    def get_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if not permission:
            raise NotFoundError("Permission not found.")
        return permission

    def update_permission(self, permission_id: str, fields: dict[str, Any]) -> Permission:
        try:
            permission = self.store.update_permission(permission_id, **fields)
        except ConstraintViolation as exc:
            raise ConflictError(
                "A permission with this slug already exists.", detail=exc.detail
            )
        if not permission:
            raise NotFoundError("Permission not found.")
        return permission

    def delete_permission(self, permission_id: str) -> bool:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError("Permission not found.")
        logger.info("permission_deleted", permission_id=permission_id)
        return True

    # seeding
    def ensure_permission(self, slug: str, name: Optional[str] = None) -> Permission:
        existing = self.store.get_permission_by_slug(slug)
        if existing:
            return existing
        return self.create_permission(name or slug, slug)

    def ensure_role(
        self, slug: str, name: Optional[str] = None, permission_slugs: Iterable[str] = ()
    ) -> Role:
        """Create ``slug`` if missing and grant it ``permission_slugs``."""
        permission_ids = [self.ensure_permission(p).id for p in permission_slugs]
        role = self.store.get_role_by_slug(slug)
        if not role:
            return self.create_role(name or slug.title(), slug, permission_ids=permission_ids)
        merged = list(dict.fromkeys([*role.permission_ids, *permission_ids]))
        if merged != role.permission_ids:
            role = self.update_role(role.id, {"permission_ids": merged})
        return role

    def seed_defaults(self, resources: Iterable[Resource]) -> dict[str, Role]:
        """Ensure ``public`` and ``authenticated`` exist, plus a full-access ``admin``."""
        admin_permissions = [
            resource.permission(action) for resource in resources for action in CRUD_ACTIONS
        ]
        return {
            PUBLIC_ROLE: self.ensure_role(PUBLIC_ROLE, "Public"),
            AUTHENTICATED_ROLE: self.ensure_role(AUTHENTICATED_ROLE, "Authenticated"),
            "admin": self.ensure_role("admin", "Admin", admin_permissions),
        }
