"""Named-operation endpoint mirroring the REST surface.

Clients post ``{"operationName": "login_user", "variables": {...}}`` to
``/{api_path}/graphql``. Each operation carries its own predicates and runs
through the same authorization pipeline and flows as the REST routes. Which
operations exist depends on the configuration, e.g. ``refresh_token`` is only
offered when cookies are disabled.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, Union

from fastapi import APIRouter, Header, Request, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gatehouse.api.deps import apply_auth_cookies, authorize_request, clear_auth_cookies
from gatehouse.api.schemas import (
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OperationRequest,
    PageRequest,
    PermissionCreateRequest,
    PermissionUpdateRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleCreateRequest,
    RoleUpdateRequest,
    SocialAuthRequest,
    TwoFactorTokenRequest,
)
from gatehouse.config import AuthConfig
from gatehouse.logging import get_logger
from gatehouse.service.authorization import (
    Predicate,
    Resource,
    authenticated,
    crud_permission_for_operation,
    has_permission,
)
from gatehouse.service.errors import ValidationError
from gatehouse.service.flows import AuthResult
from gatehouse.service.resolver import Principal
from gatehouse.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


@dataclass
class OperationContext:
    runtime: Runtime
    request: Request
    response: Response
    variables: Dict[str, Any]
    principal: Optional[Principal] = None

    def var(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)


Handler = Callable[[OperationContext], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Operation:
    handler: Handler
    predicates: Tuple[Predicate, ...] = field(default_factory=tuple)


def _parse(model: Type[BaseModel], data: Any) -> BaseModel:
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            "Validation failed.",
            detail={
                "errors": [
                    {
                        "field": ".".join(str(p) for p in err.get("loc", ())) or "object",
                        "message": err.get("msg", "invalid value"),
                    }
                    for err in exc.errors()
                ]
            },
        )


def _signed_in(ctx: OperationContext, result: AuthResult) -> Dict[str, Any]:
    apply_auth_cookies(ctx.response, result, ctx.runtime.config)
    return result.payload


# -- auth operations ---------------------------------------------------------


async def _login_user(ctx: OperationContext):
    body = _parse(LoginRequest, ctx.variables)
    result = await ctx.runtime.flows.login(body.email, body.password, body.token)
    return _signed_in(ctx, result)


async def _logout_user(ctx: OperationContext):
    config = ctx.runtime.config
    outcome = await ctx.runtime.flows.logout(ctx.request.cookies.get(config.session_cookie_name))
    clear_auth_cookies(ctx.response, config)
    return outcome


async def _register_user(ctx: OperationContext):
    payload = ctx.var("object") or ctx.variables
    if not isinstance(payload, dict):
        raise ValidationError.for_field("object", "The object must be a map of fields.")
    body = _parse(RegisterRequest, payload)
    return _signed_in(ctx, await ctx.runtime.flows.register(body.model_dump()))


async def _request_password_reset(ctx: OperationContext):
    body = _parse(ForgotPasswordRequest, ctx.variables)
    return await ctx.runtime.flows.forgot_password(body.email)


async def _reset_password(ctx: OperationContext):
    body = _parse(ResetPasswordRequest, ctx.variables)
    return await ctx.runtime.flows.reset_password(body.token, body.password)


def _authenticated_user(ctx: OperationContext):
    return ctx.principal.user.to_public()


def _enable_two_factor_auth(ctx: OperationContext):
    return ctx.runtime.two_factor.enable(ctx.principal.user)["data_url"]


def _confirm_enable_two_factor_auth(ctx: OperationContext):
    body = _parse(TwoFactorTokenRequest, ctx.variables)
    user = ctx.runtime.two_factor.confirm(ctx.principal.user, body.token)
    return ctx.runtime.flows.user_payload(user)


def _disable_two_factor_auth(ctx: OperationContext):
    body = _parse(TwoFactorTokenRequest, ctx.variables)
    user = ctx.runtime.two_factor.disable(ctx.principal.user, body.token)
    return ctx.runtime.flows.user_payload(user)


async def _confirm_email(ctx: OperationContext):
    body = _parse(EmailVerificationRequest, ctx.variables)
    return await ctx.runtime.flows.confirm_email(ctx.principal.user, body.token)


async def _resend_verification_email(ctx: OperationContext):
    return await ctx.runtime.flows.resend_verification_email(ctx.principal.user)


def _social_auth(action: str) -> Handler:
    async def _handler(ctx: OperationContext):
        body = _parse(SocialAuthRequest, ctx.variables)
        result = await ctx.runtime.flows.social_auth(body.access_token, action)
        return _signed_in(ctx, result)

    return _handler


async def _refresh_token(ctx: OperationContext):
    body = _parse(RefreshTokenRequest, ctx.variables)
    result = await ctx.runtime.flows.refresh(body.refresh_token)
    return result.payload


# -- resource operations -----------------------------------------------------


@dataclass(frozen=True)
class _CrudBinding:
    create_model: Type[BaseModel]
    update_model: Type[BaseModel]
    create: Callable[[Runtime, BaseModel], Any]
    list_items: Callable[[Runtime, int, int], list]
    get: Callable[[Runtime, str], Any]
    update: Callable[[Runtime, str, Dict[str, Any]], Any]
    delete: Callable[[Runtime, str], bool]


_ROLE_BINDING = _CrudBinding(
    create_model=RoleCreateRequest,
    update_model=RoleUpdateRequest,
    create=lambda rt, body: rt.access.create_role(
        body.name, body.slug, description=body.description, permission_ids=body.permission_ids
    ),
    list_items=lambda rt, limit, offset: rt.access.list_roles(limit=limit, offset=offset),
    get=lambda rt, item_id: rt.access.get_role(item_id),
    update=lambda rt, item_id, fields: rt.access.update_role(item_id, fields),
    delete=lambda rt, item_id: rt.access.delete_role(item_id),
)

_PERMISSION_BINDING = _CrudBinding(
    create_model=PermissionCreateRequest,
    update_model=PermissionUpdateRequest,
    create=lambda rt, body: rt.access.create_permission(
        body.name, body.slug, description=body.description
    ),
    list_items=lambda rt, limit, offset: rt.access.list_permissions(limit=limit, offset=offset),
    get=lambda rt, item_id: rt.access.get_permission(item_id),
    update=lambda rt, item_id, fields: rt.access.update_permission(item_id, fields),
    delete=lambda rt, item_id: rt.access.delete_permission(item_id),
)


def _require_ids(ctx: OperationContext) -> list:
    ids = ctx.var("ids")
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        raise ValidationError.for_field("ids", "The ids must be a list of strings.")
    return ids


def _crud_handlers(resource: Resource, binding: _CrudBinding) -> Dict[str, Handler]:
    singular, plural = resource.snake_name, resource.snake_plural

    def _fetch(ctx: OperationContext):
        page = _parse(PageRequest, ctx.variables)
        items = binding.list_items(ctx.runtime, page.limit, page.offset)
        return [item.to_public() for item in items]

    def _show(ctx: OperationContext):
        return binding.get(ctx.runtime, ctx.var("id")).to_public()

    def _insert_one(ctx: OperationContext):
        body = _parse(binding.create_model, ctx.var("object"))
        return binding.create(ctx.runtime, body).to_public()

    def _insert_many(ctx: OperationContext):
        objects = ctx.var("objects") or []
        if not isinstance(objects, list):
            raise ValidationError.for_field("objects", "The objects must be a list.")
        bodies = [_parse(binding.create_model, obj) for obj in objects]
        return [binding.create(ctx.runtime, body).to_public() for body in bodies]

    def _update_one(ctx: OperationContext):
        fields = _parse(binding.update_model, ctx.var("object")).model_dump(exclude_unset=True)
        return binding.update(ctx.runtime, ctx.var("id"), fields).to_public()

    def _update_many(ctx: OperationContext):
        fields = _parse(binding.update_model, ctx.var("object")).model_dump(exclude_unset=True)
        return [
            binding.update(ctx.runtime, item_id, fields).to_public()
            for item_id in _require_ids(ctx)
        ]

    def _delete_one(ctx: OperationContext):
        return binding.delete(ctx.runtime, ctx.var("id"))

    def _delete_many(ctx: OperationContext):
        return [item_id for item_id in _require_ids(ctx) if binding.delete(ctx.runtime, item_id)]

    return {
        plural: _fetch,
        singular: _show,
        f"insert_{plural}": _insert_many,
        f"insert_{singular}": _insert_one,
        f"update_{plural}": _update_many,
        f"update_{singular}": _update_one,
        f"delete_{plural}": _delete_many,
        f"delete_{singular}": _delete_one,
    }


def available_operations(config: AuthConfig) -> Dict[str, Operation]:
    """Operations offered under ``config``, keyed by operation name."""
    signed_in = (authenticated,)
    operations: Dict[str, Operation] = {
        "login_user": Operation(_login_user),
        "register_user": Operation(_register_user),
        "request_password_reset": Operation(_request_password_reset),
        "reset_password": Operation(_reset_password),
        "authenticated_user": Operation(_authenticated_user, signed_in),
    }
    if config.disable_cookies:
        operations["refresh_token"] = Operation(_refresh_token)
    else:
        operations["logout_user"] = Operation(_logout_user)
    if config.two_factor_auth:
        operations.update(
            enable_two_factor_auth=Operation(_enable_two_factor_auth, signed_in),
            confirm_enable_two_factor_auth=Operation(_confirm_enable_two_factor_auth, signed_in),
            disable_two_factor_auth=Operation(_disable_two_factor_auth, signed_in),
        )
    if config.verify_emails:
        operations.update(
            confirm_email=Operation(_confirm_email, signed_in),
            resend_verification_email=Operation(_resend_verification_email, signed_in),
        )
    if config.social_auth_enabled:
        operations.update(
            social_auth_login=Operation(_social_auth("login")),
            social_auth_register=Operation(_social_auth("register")),
        )
    if config.roles_and_permissions:
        for resource, binding in (
            (Resource(config.role_resource), _ROLE_BINDING),
            (Resource(config.permission_resource), _PERMISSION_BINDING),
        ):
            for name, handler in _crud_handlers(resource, binding).items():
                slug = crud_permission_for_operation(name, resource)
                operations[name] = Operation(handler, (has_permission(slug),))
    return operations


@router.post("/graphql", response_model=Envelope, tags=["graphql"])
async def run_operation(
    body: OperationRequest,
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    operation = available_operations(runtime.config).get(body.operation_name)
    if operation is None:
        raise ValidationError.for_field(
            "operationName", f"Unknown operation {body.operation_name}."
        )
    principal = await authorize_request(request, authorization, operation.predicates)
    ctx = OperationContext(
        runtime=runtime,
        request=request,
        response=response,
        variables=body.variables,
        principal=principal,
    )
    result = operation.handler(ctx)
    if inspect.isawaitable(result):
        result = await result
    logger.info("operation_completed", operation=body.operation_name)
    return Envelope(status="ok", data={body.operation_name: result})
