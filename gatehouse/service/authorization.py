from __future__ import annotations

import asyncio
import inspect
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from gatehouse.logging import get_logger
from gatehouse.service.errors import ForbiddenError
from gatehouse.service.resolver import AuthResolver, Principal

logger = get_logger(__name__)

Predicate = Callable[[Optional[Principal], Any], Union[bool, Awaitable[bool]]]

CRUD_ACTIONS = ("insert", "fetch", "show", "update", "delete")

BLOCKED_MESSAGE = "Your account is temporarily disabled."
UNAUTHORIZED_MESSAGE = "Unauthorized."


def _pluralize(word: str) -> str:
    if re.search(r"[^aeiou]y$", word):
        return word[:-1] + "ies"
    if re.search(r"(s|x|z|ch|sh)$", word):
        return word + "es"
    return word + "s"


def _words(name: str) -> list[str]:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return [w.lower() for w in re.split(r"[\s_\-]+", spaced) if w]


@dataclass(frozen=True)
class Resource:
    """Naming variants of a resource, e.g. ``Resource("TeamInvite")``.

    ``slug`` is ``team-invite``, ``slug_plural`` is ``team-invites`` and the
    snake-case names are ``team_invite`` / ``team_invites``.
    """

    name: str

    @property
    def slug(self) -> str:
        return "-".join(_words(self.name))

    @property
    def slug_plural(self) -> str:
        words = _words(self.name)
        return "-".join(words[:-1] + [_pluralize(words[-1])])

    @property
    def snake_name(self) -> str:
        return self.slug.replace("-", "_")

    @property
    def snake_plural(self) -> str:
        return self.slug_plural.replace("-", "_")

    def permission(self, action: str) -> str:
        return f"{action}:{self.slug}"


def crud_permission_for_route(
    method: str, path: str, resource: Resource, api_path: str = ""
) -> Optional[str]:
    """Permission slug guarding a REST call on ``resource``, or None."""
    prefix = "/" + "/".join(p for p in (api_path.strip("/"), resource.slug_plural) if p)
    path = "/" + path.strip("/")
    method = method.upper()
    is_collection = path == prefix
    is_member = path.startswith(prefix + "/") and "/" not in path[len(prefix) + 1 :]
    if not (is_collection or is_member):
        return None
    if method == "POST" and is_collection:
        return resource.permission("insert")
    if method == "GET":
        return resource.permission("fetch" if is_collection else "show")
    if method in {"PUT", "PATCH"}:
        return resource.permission("update")
    if method == "DELETE":
        return resource.permission("delete")
    return None


def crud_permission_for_operation(name: str, resource: Resource) -> Optional[str]:
    """Permission slug guarding a named operation such as ``insert_roles``."""
    names = {resource.snake_plural, resource.snake_name}
    for action in ("insert", "update", "delete"):
        prefix = f"{action}_"
        if name.startswith(prefix) and name[len(prefix) :] in names:
            return resource.permission(action)
    if name == resource.snake_plural:
        return resource.permission("fetch")
    if name == resource.snake_name:
        return resource.permission("show")
    return None


def authenticated(principal: Optional[Principal], context: Any = None) -> bool:
    return principal is not None and not principal.public


def any_principal(principal: Optional[Principal], context: Any = None) -> bool:
    return principal is not None


def has_permission(slug: str) -> Predicate:
    def _check(principal: Optional[Principal], context: Any = None) -> bool:
        return principal is not None and principal.can(slug)

    _check.__name__ = f"has_permission[{slug}]"
    return _check


async def _evaluate(predicate: Predicate, principal: Optional[Principal], context: Any) -> bool:
    result = predicate(principal, context)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


class AuthorizationPipeline:
    """Resolve, fall back to the public principal, check blocks, then predicates."""

    def __init__(self, resolver: AuthResolver) -> None:
        self.resolver = resolver

    async def authorize(
        self,
        authorization: Optional[str],
        session_user_id: Optional[str],
        predicates: Sequence[Predicate],
        context: Any = None,
    ) -> Optional[Principal]:
        principal = self.resolver.resolve(authorization, session_user_id)
        if principal is None:
            principal = self.resolver.public_principal()

        if principal is not None and not principal.public and principal.is_blocked:
            logger.warning("blocked_principal_rejected", user_id=principal.id)
            raise ForbiddenError(BLOCKED_MESSAGE)

        if predicates:
            results = await asyncio.gather(
                *(_evaluate(p, principal, context) for p in predicates),
                return_exceptions=True,
            )
            failed = [
                getattr(p, "__name__", repr(p))
                for p, r in zip(predicates, results)
                if isinstance(r, BaseException) or not r
            ]
            if failed:
                logger.info(
                    "authorization_denied",
                    user_id=principal.id if principal else None,
                    predicates=failed,
                )
                raise ForbiddenError(UNAUTHORIZED_MESSAGE)
        return principal
