"""Tenant context carried through each operation's async call graph.

The active tenant lives in a ``ContextVar``. asyncio copies the current
context into every task, ``call_soon``/``call_later`` callback and
``gather`` child it creates, so a context installed at the start of a
request is visible everywhere that request's work runs and nowhere else.
There is no process-global fallback slot: if propagation does not hold,
``verify_context_propagation`` fails and the application refuses to start.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from superkafe.exceptions import (
    ContextPropagationError,
    InvalidTenantContextError,
    TenantContextMissingError,
)
from superkafe.types import LogCategory

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Immutable tenant identity for one operation."""

    tenant_id: str
    slug: str
    name: str = ""
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {"id": self.tenant_id, "slug": self.slug, "name": self.name}


_current_tenant: ContextVar[TenantContext | None] = ContextVar(
    "superkafe_tenant_context", default=None
)


def _ensure_valid(ctx: object) -> TenantContext:
    if not isinstance(ctx, TenantContext) or not ctx.tenant_id or not ctx.slug:
        logger.error(
            "context_init_failed",
            category=LogCategory.TENANT_CONTEXT,
            has_id=bool(getattr(ctx, "tenant_id", None)),
            has_slug=bool(getattr(ctx, "slug", None)),
        )
        msg = "Invalid tenant context: id and slug are required"
        raise InvalidTenantContextError(msg)
    return ctx


def set_tenant_context(ctx: TenantContext) -> Token[TenantContext | None]:
    """Install ``ctx`` for the rest of the current context and its children."""
    ctx = _ensure_valid(ctx)
    token = _current_tenant.set(ctx)
    structlog.contextvars.bind_contextvars(tenant_slug=ctx.slug)
    logger.info(
        "context_initialized",
        category=LogCategory.TENANT_CONTEXT,
        tenant_id=ctx.tenant_id,
        tenant_slug=ctx.slug,
        tenant_name=ctx.name,
        correlation_id=ctx.correlation_id,
    )
    return token


def get_tenant_context() -> TenantContext | None:
    """Return the active tenant context, or None when none was installed.

    A missing context is logged so bypassed code paths show up in audits.
    """
    ctx = _current_tenant.get()
    if ctx is None:
        logger.warning("context_missing", category=LogCategory.TENANT_CONTEXT)
    return ctx


def require_tenant_context() -> TenantContext:
    ctx = get_tenant_context()
    if ctx is None:
        msg = "No tenant context is active for this operation"
        raise TenantContextMissingError(msg)
    return ctx


async def run_with_tenant_context(
    ctx: TenantContext,
    fn: Callable[..., Awaitable[T] | T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run ``fn`` and everything it awaits or spawns under ``ctx``.

    The caller's own context is restored when ``fn`` finishes, including
    when it raises.
    """
    ctx = _ensure_valid(ctx)
    logger.debug(
        "run_with_context",
        category=LogCategory.TENANT_CONTEXT,
        tenant_id=ctx.tenant_id,
        tenant_slug=ctx.slug,
    )
    token = _current_tenant.set(ctx)
    try:
        with structlog.contextvars.bound_contextvars(tenant_slug=ctx.slug):
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                return await result
            return result
    finally:
        _current_tenant.reset(token)


@contextmanager
def tenant_scope(ctx: TenantContext) -> Iterator[TenantContext]:
    """Context-manager form for trusted internal jobs (workers, scripts)."""
    ctx = _ensure_valid(ctx)
    token = _current_tenant.set(ctx)
    try:
        with structlog.contextvars.bound_contextvars(tenant_slug=ctx.slug):
            yield ctx
    finally:
        _current_tenant.reset(token)


async def verify_context_propagation(workers: int = 8) -> None:
    """Prove that tenant contexts propagate and stay isolated under asyncio.

    Runs ``workers`` concurrent probes, each under its own context, and
    checks the value seen after a yield, inside gathered children, inside a
    nested task and inside a ``call_later`` callback.
    """

    async def _read_after_yield() -> TenantContext | None:
        await asyncio.sleep(0)
        return _current_tenant.get()

    async def _read_in_nested_task() -> TenantContext | None:
        return await asyncio.create_task(_read_after_yield())

    async def _probe(index: int) -> None:
        ctx = TenantContext(tenant_id=f"probe-{index}", slug=f"probe-{index}", name="probe")
        token = _current_tenant.set(ctx)
        try:
            observed = [_current_tenant.get()]
            observed.extend(await asyncio.gather(_read_after_yield(), _read_in_nested_task()))

            loop = asyncio.get_running_loop()
            future: asyncio.Future[TenantContext | None] = loop.create_future()
            loop.call_later(0, lambda: future.set_result(_current_tenant.get()))
            observed.append(await future)

            if any(seen is not ctx for seen in observed):
                msg = f"Tenant context leaked or was lost in probe {index}"
                raise ContextPropagationError(msg)
        finally:
            _current_tenant.reset(token)

    before = _current_tenant.get()
    await asyncio.gather(*(_probe(i) for i in range(workers)))
    if _current_tenant.get() is not before:
        msg = "Tenant context escaped its probe"
        raise ContextPropagationError(msg)
    logger.info("context_propagation_verified", category=LogCategory.TENANT_CONTEXT, probes=workers)
