"""Tenant-scoped data access for tenant-owned tables.

``TenantScopedRepository`` is the only path from business code to
tenant-owned rows. Every statement it builds is narrowed to the tenant in
the active ``TenantContext``:

* reads, counts, aggregates, updates and deletes AND ``tenant_id = <active>``
  onto whatever the caller asked for, so a caller filter can only narrow;
* creates are stamped with the active tenant, and a row pre-stamped with a
  different tenant is a programming error;
* with no active context nothing runs at all.

Updates and deletes that target another tenant's row report "not found"
(``None`` / ``False`` / ``0``), exactly like a row that does not exist.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog
from sqlalchemy import and_, delete, func, update
from sqlalchemy import select as sa_select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from superkafe.audit.logger import log_security_event
from superkafe.exceptions import (
    ConfigError,
    ScopedDataAccessError,
    TenantContextMissingError,
    TenantMismatchError,
)
from superkafe.models.database import TenantOwnedModel, _utc_now
from superkafe.tenancy.context import TenantContext, get_tenant_context
from superkafe.types import LogCategory

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=SQLModel)

Filters = Mapping[str, Any] | ColumnElement[bool] | Sequence[ColumnElement[bool]] | None

TENANT_COLUMN = "tenant_id"

_AGGREGATES = {
    "sum": func.sum,
    "avg": func.avg,
    "min": func.min,
    "max": func.max,
    "count": func.count,
}

_tenant_models: set[type[SQLModel]] = set()


def register_tenant_model(model: type[M]) -> type[M]:
    """Mark a table model as tenant-owned. Usable as a class decorator."""
    table = getattr(model, "__table__", None)
    if table is None or TENANT_COLUMN not in table.c:
        msg = f"{model.__name__} has no '{TENANT_COLUMN}' column and cannot be tenant-owned"
        raise ConfigError(msg)
    _tenant_models.add(model)
    return model


def is_tenant_owned(model: type[SQLModel]) -> bool:
    if model in _tenant_models:
        return True
    return issubclass(model, TenantOwnedModel) and hasattr(model, "__table__")


class TenantScopedRepository(Generic[M]):
    """CRUD over one tenant-owned table, always scoped to the active tenant."""

    def __init__(self, engine: AsyncEngine, model: type[M]) -> None:
        if not is_tenant_owned(model):
            msg = f"{model.__name__} is not a tenant-owned model"
            raise ConfigError(msg)
        self._engine = engine
        self._model = model
        self._table = model.__table__  # type: ignore[attr-defined]
        self._tenant_column = self._table.c[TENANT_COLUMN]
        self._pk_column = next(iter(self._table.primary_key.columns))

    @property
    def model(self) -> type[M]:
        return self._model

    # ------------------------------------------------------------------
    # Scoping
    # ------------------------------------------------------------------

    def _active_tenant(self, operation: str) -> TenantContext:
        ctx = get_tenant_context()
        if ctx is None:
            logger.error(
                "unscoped_query_blocked",
                category=LogCategory.TENANT_SCOPING,
                model=self._model.__name__,
                operation=operation,
            )
            msg = f"{operation} on {self._model.__name__} requires an active tenant context"
            raise TenantContextMissingError(msg)
        return ctx

    def _caller_conditions(self, filters: Filters) -> list[ColumnElement[bool]]:
        if filters is None:
            return []
        if isinstance(filters, Mapping):
            conditions: list[ColumnElement[bool]] = []
            for key, value in filters.items():
                if key not in self._table.c:
                    msg = f"Unknown filter field '{key}' for {self._model.__name__}"
                    raise ScopedDataAccessError(msg)
                column = self._table.c[key]
                if isinstance(value, (list, tuple, set, frozenset)):
                    conditions.append(column.in_(list(value)))
                elif value is None:
                    conditions.append(column.is_(None))
                else:
                    conditions.append(column == value)
            return conditions
        if isinstance(filters, ColumnElement):
            return [filters]
        if isinstance(filters, Sequence) and all(isinstance(f, ColumnElement) for f in filters):
            return list(filters)
        # text() and other raw clauses cannot be safely AND-ed with the tenant condition
        msg = f"Unsupported filter type {type(filters).__name__}"
        raise ScopedDataAccessError(msg)

    def scoped_condition(self, ctx: TenantContext, filters: Filters = None) -> ColumnElement[bool]:
        """``tenant_id = ctx.tenant_id AND (<caller filters>)``."""
        return and_(self._tenant_column == ctx.tenant_id, *self._caller_conditions(filters))

    def _log(self, operation: str, ctx: TenantContext, **fields: Any) -> None:
        logger.debug(
            "scoped_operation",
            category=LogCategory.TENANT_SCOPING,
            model=self._model.__name__,
            operation=operation,
            tenant_id=ctx.tenant_id,
            correlation_id=ctx.correlation_id,
            **fields,
        )

    @contextmanager
    def _guard(self, operation: str, ctx: TenantContext) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error(
                "scoped_operation_failed",
                category=LogCategory.TENANT_SCOPING,
                model=self._model.__name__,
                operation=operation,
                tenant_id=ctx.tenant_id,
                correlation_id=ctx.correlation_id,
                error=str(exc),
            )
            msg = f"{operation} on {self._model.__name__} failed"
            raise ScopedDataAccessError(msg) from exc

    def _reject_foreign_tenant(self, operation: str, ctx: TenantContext, value: Any) -> None:
        if value is None or str(value) == ctx.tenant_id:
            return
        log_security_event(
            "tenant_mismatch",
            model=self._model.__name__,
            operation=operation,
            context_tenant_id=ctx.tenant_id,
            context_tenant_slug=ctx.slug,
            record_tenant_id=str(value),
            correlation_id=ctx.correlation_id,
        )
        msg = f"Cannot {operation} {self._model.__name__} for a different tenant"
        raise TenantMismatchError(msg, expected=ctx.tenant_id, actual=str(value))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_many(
        self,
        filters: Filters = None,
        *,
        order_by: Any = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[M]:
        ctx = self._active_tenant("find_many")
        stmt = select(self._model).where(self.scoped_condition(ctx, filters))
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        self._log("find_many", ctx)
        with self._guard("find_many", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())

    async def find_one(self, filters: Filters = None) -> M | None:
        ctx = self._active_tenant("find_one")
        stmt = select(self._model).where(self.scoped_condition(ctx, filters)).limit(1)
        self._log("find_one", ctx)
        with self._guard("find_one", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                return result.scalars().first()

    async def get(self, record_id: Any) -> M | None:
        return await self.find_one(self._pk_column == record_id)

    async def count(self, filters: Filters = None) -> int:
        ctx = self._active_tenant("count")
        stmt = (
            sa_select(func.count())
            .select_from(self._table)
            .where(self.scoped_condition(ctx, filters))
        )
        self._log("count", ctx)
        with self._guard("count", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                return int(result.scalar_one())

    async def aggregate(
        self,
        column: str,
        function: str = "sum",
        filters: Filters = None,
        group_by: str | None = None,
    ) -> Any:
        """Aggregate ``column`` over the tenant's rows.

        Returns a scalar, or a ``{group: value}`` dict when ``group_by`` is given.
        """
        ctx = self._active_tenant("aggregate")
        if function not in _AGGREGATES:
            msg = f"Unsupported aggregate function '{function}'"
            raise ScopedDataAccessError(msg)
        for name in filter(None, (column, group_by)):
            if name not in self._table.c:
                msg = f"Unknown column '{name}' for {self._model.__name__}"
                raise ScopedDataAccessError(msg)

        value = _AGGREGATES[function](self._table.c[column])
        condition = self.scoped_condition(ctx, filters)
        self._log("aggregate", ctx, function=function, column=column, group_by=group_by)
        with self._guard("aggregate", ctx):
            async with AsyncSession(self._engine) as session:
                if group_by is None:
                    result = await session.execute(
                        sa_select(value).select_from(self._table).where(condition)
                    )
                    return result.scalar_one()
                group_column = self._table.c[group_by]
                result = await session.execute(
                    sa_select(group_column, value)
                    .select_from(self._table)
                    .where(condition)
                    .group_by(group_column)
                )
                return {key: agg for key, agg in result.all()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _stamp(self, ctx: TenantContext, data: M | Mapping[str, Any]) -> M:
        if isinstance(data, Mapping):
            self._reject_foreign_tenant("create", ctx, data.get(TENANT_COLUMN))
            values = {**data, TENANT_COLUMN: ctx.tenant_id}
            return self._model(**values)
        if not isinstance(data, self._model):
            msg = f"Expected {self._model.__name__} or a mapping, got {type(data).__name__}"
            raise ScopedDataAccessError(msg)
        self._reject_foreign_tenant("create", ctx, getattr(data, TENANT_COLUMN, None))
        setattr(data, TENANT_COLUMN, ctx.tenant_id)
        return data

    async def create(self, data: M | Mapping[str, Any] | None = None, **values: Any) -> M:
        ctx = self._active_tenant("create")
        record = self._stamp(ctx, data if data is not None else values)
        self._log("create", ctx)
        with self._guard("create", ctx):
            async with AsyncSession(self._engine) as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return record

    async def create_many(self, rows: Sequence[M | Mapping[str, Any]]) -> list[M]:
        ctx = self._active_tenant("create_many")
        records = [self._stamp(ctx, row) for row in rows]
        self._log("create_many", ctx, rows=len(records))
        with self._guard("create_many", ctx):
            async with AsyncSession(self._engine) as session:
                session.add_all(records)
                await session.commit()
                for record in records:
                    await session.refresh(record)
                return records

    def _update_values(self, ctx: TenantContext, values: Mapping[str, Any]) -> dict[str, Any]:
        self._reject_foreign_tenant("update", ctx, values.get(TENANT_COLUMN))
        cleaned = {k: v for k, v in values.items() if k != TENANT_COLUMN}
        for key in cleaned:
            if key not in self._table.c:
                msg = f"Unknown field '{key}' for {self._model.__name__}"
                raise ScopedDataAccessError(msg)
        if "updated_at" in self._table.c and "updated_at" not in cleaned:
            cleaned["updated_at"] = _utc_now()
        return cleaned

    async def update_one(self, record_id: Any, values: Mapping[str, Any]) -> M | None:
        ctx = self._active_tenant("update_one")
        changes = self._update_values(ctx, values)
        stmt = select(self._model).where(
            self.scoped_condition(ctx, self._pk_column == record_id)
        )
        self._log("update_one", ctx)
        with self._guard("update_one", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                record = result.scalars().first()
                if record is None:
                    return None
                for key, value in changes.items():
                    setattr(record, key, value)
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return record

    async def update_many(self, filters: Filters, values: Mapping[str, Any]) -> int:
        ctx = self._active_tenant("update_many")
        changes = self._update_values(ctx, values)
        stmt = (
            update(self._table)
            .where(self.scoped_condition(ctx, filters))
            .values(**changes)
        )
        self._log("update_many", ctx)
        with self._guard("update_many", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                await session.commit()
                return int(result.rowcount or 0)

    async def delete_one(self, record_id: Any) -> bool:
        ctx = self._active_tenant("delete_one")
        stmt = delete(self._table).where(
            self.scoped_condition(ctx, self._pk_column == record_id)
        )
        self._log("delete_one", ctx)
        with self._guard("delete_one", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                await session.commit()
                return bool(result.rowcount)

    async def delete_many(self, filters: Filters = None) -> int:
        ctx = self._active_tenant("delete_many")
        stmt = delete(self._table).where(self.scoped_condition(ctx, filters))
        self._log("delete_many", ctx)
        with self._guard("delete_many", ctx):
            async with AsyncSession(self._engine) as session:
                result = await session.execute(stmt)
                await session.commit()
                return int(result.rowcount or 0)
