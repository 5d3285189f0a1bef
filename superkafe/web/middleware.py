"""FastAPI middleware: correlation ids and tenant resolution."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import structlog
from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse

from superkafe.tenancy.resolver import (
    REJECTIONS,
    AuthenticatedCaller,
    TenantRejection,
    TenantResolver,
)
from superkafe.types import LogCategory, RejectionCode

if TYPE_CHECKING:
    from starlette.responses import Response
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = structlog.get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Adds a unique X-Request-ID header to every response.

    The id doubles as the correlation id shared by every log line the
    request produces.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response


def _coerce_caller(raw: Any) -> AuthenticatedCaller | None:
    """Accept the caller record upstream auth left on ``request.state``."""
    if raw is None or isinstance(raw, AuthenticatedCaller):
        return raw
    if isinstance(raw, dict):
        return AuthenticatedCaller(
            id=str(raw.get("id", "")),
            email=str(raw.get("email", "")),
            tenant_affiliation=raw.get("tenant_affiliation") or raw.get("tenant"),
        )
    msg = f"Unsupported caller record type {type(raw).__name__}"
    raise TypeError(msg)


class TenantResolverMiddleware:
    """Resolve the tenant before any route runs.

    Written as a plain ASGI middleware so the downstream application runs in
    the very context the tenant was installed into. Rejected requests are
    answered here and never reach a route.
    """

    def __init__(
        self,
        app: ASGIApp,
        resolver: TenantResolver | Callable[[], TenantResolver],
        header: str = "x-tenant-slug",
        fallback_header: str | None = "x-tenant-id",
        exempt_paths: Sequence[str] = (),
    ) -> None:
        self.app = app
        self._resolver = resolver
        self._header = header
        self._fallback_header = fallback_header
        self._exempt_paths = tuple(exempt_paths)

    @property
    def resolver(self) -> TenantResolver:
        if isinstance(self._resolver, TenantResolver):
            return self._resolver
        return self._resolver()

    def _is_exempt(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self._exempt_paths)

    def _identifier(self, request: Request) -> str | None:
        value = request.headers.get(self._header)
        if not value and self._fallback_header:
            value = request.headers.get(self._fallback_header)
        return value

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._is_exempt(scope["path"]):
            await self.app(scope, receive, send)
            return

        # A child task gets its own copy of the context, so the tenant installed
        # below is gone once this request finishes.
        await asyncio.create_task(self._handle(scope, receive, send))

    async def _reject(
        self, rejection: TenantRejection, scope: Scope, receive: Receive, send: Send
    ) -> None:
        response = JSONResponse(rejection.to_dict(), status_code=rejection.status_code)
        await response(scope, receive, send)

    async def _handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope)
        correlation_id = getattr(request.state, "request_id", None)
        try:
            caller = _coerce_caller(getattr(request.state, "caller", None))
        except TypeError as exc:
            logger.exception(
                "tenant_caller_invalid",
                category=LogCategory.TENANT_RESOLVER,
                correlation_id=correlation_id,
                error=str(exc),
            )
            await self._reject(
                REJECTIONS[RejectionCode.TENANT_RESOLUTION_ERROR], scope, receive, send
            )
            return

        metadata = {
            "path": request.url.path,
            "method": request.method,
            "ip": request.client.host if request.client else "unknown",
        }
        outcome = await self.resolver.resolve(
            self._identifier(request),
            caller=caller,
            metadata=metadata,
            correlation_id=correlation_id,
        )

        ctx = outcome.context
        if ctx is None:
            rejection = outcome.rejection or REJECTIONS[RejectionCode.TENANT_RESOLUTION_ERROR]
            await self._reject(rejection, scope, receive, send)
            return

        request.state.tenant = ctx

        async def send_with_tenant(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[self._header] = ctx.slug
            await send(message)

        await self.app(scope, receive, send_with_tenant)
