"""
Record store abstraction over the backend's tables and views: a direct
SQLAlchemy implementation and an in-memory test implementation. The
PostgREST-backed store lives in ``receipt_portal.supabase_backend``.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Sequence

from sqlalchemy import MetaData, Table, insert, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from receipt_portal.errors import (
    AuthError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Filter:
    """A single column predicate (``eq`` or ``gte``)."""

    column: str
    op: str
    value: Any

    def matches(self, row: dict) -> bool:
        current = row.get(self.column)
        if self.op == "eq":
            return current == self.value
        if self.op == "gte":
            return current is not None and current >= self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


@dataclass(frozen=True)
class Embed:
    """A to-one related row fetched alongside each result row."""

    alias: str
    table: str
    columns: tuple[str, ...] = ("*",)
    foreign_key: Optional[str] = None

    @property
    def key(self) -> str:
        return self.foreign_key or f"{self.alias}_id"

    def select_clause(self) -> str:
        return f"{self.alias}:{self.table}({','.join(self.columns)})"


class RecordStore(Protocol):
    """Interface for row-level access to tables and views."""

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict]:
        ...

    async def select_one(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
    ) -> dict:
        ...

    async def insert(self, table: str, values: dict) -> dict:
        ...

    async def update(self, table: str, row_id: Any, values: dict) -> dict:
        ...

    async def rpc(self, function: str, params: dict) -> Any:
        ...


def _column_names(columns: str) -> list[str]:
    return [name.strip() for name in columns.split(",") if name.strip()]


def _project(row: dict, columns: Iterable[str]) -> dict:
    names = list(columns)
    if not names or "*" in names:
        return dict(row)
    return {name: row.get(name) for name in names}


def _no_rows(table: str) -> NotFoundError:
    return NotFoundError(
        "JSON object requested, multiple (or no) rows returned",
        code="PGRST116",
        details={"table": table},
    )


class InMemoryRecordStore:
    """Simple in-memory record store for development and tests.

    Views are plain tables here; seed them with the rows the remote view
    would produce.
    """

    def __init__(self):
        self.tables: Dict[str, list[dict]] = {}
        self.failures: Dict[tuple[str, str], GatewayError] = {}
        self.functions: Dict[str, Callable[..., Any]] = {}

    def seed(self, table: str, rows: Iterable[dict]) -> list[dict]:
        stored = self.tables.setdefault(table, [])
        for row in rows:
            stored.append(dict(row))
        return stored

    def deny(self, table: str, operation: str) -> None:
        """Simulate an access-policy denial for ``operation`` on ``table``."""
        self.failures[(table, operation)] = AuthError(
            f'permission denied for table "{table}"', code="42501"
        )

    def fail(self, table: str, operation: str, error: GatewayError) -> None:
        self.failures[(table, operation)] = error

    def register_function(self, name: str, func: Callable[..., Any]) -> None:
        """Register a server-side function; it is called as ``func(store, **params)``."""
        self.functions[name] = func

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.tables.clear()
        self.failures.clear()
        self.functions.clear()

    def _check(self, table: str, operation: str) -> None:
        error = self.failures.get((table, operation))
        if error is not None:
            raise error

    def _attach(self, row: dict, embed: Embed) -> None:
        target = row.get(embed.key)
        related = None
        for candidate in self.tables.get(embed.table, []):
            if candidate.get("id") == target:
                related = _project(candidate, embed.columns)
                break
        row[embed.alias] = related

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict]:
        self._check(table, "select")
        rows = [
            row
            for row in self.tables.get(table, [])
            if all(f.matches(row) for f in filters)
        ]
        if order_by:
            # Missing values sort like NULLs in Postgres: last ascending, first descending
            rows = sorted(
                rows,
                key=lambda row: (row.get(order_by) is None, row.get(order_by)),
                reverse=descending,
            )
        results = []
        for row in rows:
            result = _project(row, _column_names(columns))
            for relation in embed:
                self._attach(result, relation)
            results.append(result)
        return results

    async def select_one(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
    ) -> dict:
        rows = await self.select(table, columns=columns, filters=filters, embed=embed)
        if len(rows) != 1:
            raise _no_rows(table)
        return rows[0]

    async def insert(self, table: str, values: dict) -> dict:
        self._check(table, "insert")
        row = dict(values)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        self.tables.setdefault(table, []).append(row)
        return dict(row)

    async def update(self, table: str, row_id: Any, values: dict) -> dict:
        self._check(table, "update")
        for row in self.tables.get(table, []):
            if row.get("id") == row_id:
                row.update(values)
                return dict(row)
        raise _no_rows(table)

    async def rpc(self, function: str, params: dict) -> Any:
        self._check(function, "rpc")
        func = self.functions.get(function)
        if func is None:
            raise PersistenceError(
                f"Could not find the function public.{function}", code="PGRST202"
            )
        return func(self, **params)


IdentityProvider = Callable[[], Awaitable[Any]]


def request_identity(user: Any) -> tuple[str, dict]:
    """Database role and JWT claims the hosted API would use for ``user``."""
    if user is None:
        return "anon", {"role": "anon"}
    return "authenticated", {
        "sub": user.id,
        "email": user.email,
        "role": "authenticated",
    }


class SqlRecordStore:
    """
    SQLAlchemy-backed implementation over reflected tables and views.
    Accepts any async SQLAlchemy URL (e.g., postgresql+asyncpg, or
    sqlite+aiosqlite for tests).

    On Postgres every transaction runs as the signed-in caller: the role is
    switched to ``authenticated`` (or ``anon``) and the caller's claims are
    set in ``request.jwt.claims``, so row-level security and ``auth.uid()``
    see the same identity as they would through the hosted API.
    """

    def __init__(self, database_url: str, identity: Optional[IdentityProvider] = None):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlRecordStore")
        self.engine = create_async_engine(
            database_url,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.metadata = MetaData()
        self.identity = identity
        self.enforces_policies = self.engine.dialect.name == "postgresql"

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self.engine.begin() as conn:
                await self._apply_identity(conn)
                yield conn
        except IntegrityError as exc:
            code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
            raise ValidationError(str(exc.orig), code=code or "23000") from exc
        except DBAPIError as exc:
            code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
            if code == "42501":
                raise AuthError(str(exc.orig), code=code) from exc
            logger.exception("Database request failed")
            raise PersistenceError(str(exc.orig), code=code) from exc
        except SQLAlchemyError as exc:
            logger.exception("Database request failed")
            raise PersistenceError(str(exc)) from exc

    async def _apply_identity(self, conn) -> None:
        if not self.enforces_policies:
            return
        user = await self.identity() if self.identity else None
        role, claims = request_identity(user)
        await conn.execute(text(f"SET LOCAL ROLE {role}"))
        await conn.execute(
            text("SELECT set_config('request.jwt.claims', :claims, true)"),
            {"claims": json.dumps(claims)},
        )

    async def _table(self, name: str) -> Table:
        table = self.metadata.tables.get(name)
        if table is not None:
            return table
        try:
            async with self.engine.connect() as conn:
                return await conn.run_sync(
                    lambda sync_conn: Table(name, self.metadata, autoload_with=sync_conn)
                )
        except NoSuchTableError as exc:
            raise PersistenceError(
                f'relation "{name}" does not exist', code="42P01"
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception("Could not reflect %s", name)
            raise PersistenceError(str(exc)) from exc

    def _column(self, table: Table, name: str):
        if name not in table.c:
            raise PersistenceError(
                f"column {table.name}.{name} does not exist", code="42703"
            )
        return table.c[name]

    def _where(self, stmt, table: Table, filters: Sequence[Filter]):
        for f in filters:
            column = self._column(table, f.column)
            if f.op == "eq":
                stmt = stmt.where(column == f.value)
            elif f.op == "gte":
                stmt = stmt.where(column >= f.value)
            else:
                raise ValueError(f"Unsupported filter operator: {f.op}")
        return stmt

    async def _attach(self, conn, rows: list[dict], embed: Embed, table: Table) -> None:
        keys = {row.get(embed.key) for row in rows if row.get(embed.key) is not None}
        related: dict = {}
        if keys:
            stmt = select(table).where(self._column(table, "id").in_(list(keys)))
            result = await conn.execute(stmt)
            for match in result.mappings():
                related[match["id"]] = _project(dict(match), embed.columns)
        for row in rows:
            row[embed.alias] = related.get(row.get(embed.key))

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict]:
        # Reflect everything up front; the transaction holds the only connection
        source = await self._table(table)
        related = [(relation, await self._table(relation.table)) for relation in embed]
        names = _column_names(columns)
        if "*" in names:
            stmt = select(source)
        else:
            stmt = select(*[self._column(source, name) for name in names])
        stmt = self._where(stmt, source, filters)
        if order_by:
            column = self._column(source, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            rows = [dict(row) for row in result.mappings()]
            for relation, target in related:
                await self._attach(conn, rows, relation, target)
        return rows

    async def select_one(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
    ) -> dict:
        rows = await self.select(table, columns=columns, filters=filters, embed=embed)
        if len(rows) != 1:
            raise _no_rows(table)
        return rows[0]

    async def insert(self, table: str, values: dict) -> dict:
        target = await self._table(table)
        stmt = insert(target).values(**values).returning(*target.c)
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            return dict(result.mappings().one())

    async def update(self, table: str, row_id: Any, values: dict) -> dict:
        target = await self._table(table)
        stmt = (
            update(target)
            .where(self._column(target, "id") == row_id)
            .values(**values)
            .returning(*target.c)
        )
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            row = result.mappings().first()
        if row is None:
            raise _no_rows(table)
        return dict(row)

    async def rpc(self, function: str, params: dict) -> Any:
        if not _IDENTIFIER.match(function) or not all(
            _IDENTIFIER.match(name) for name in params
        ):
            raise ValidationError(f"Invalid function call: {function}")
        arguments = ", ".join(f"{name} => :{name}" for name in params)
        async with self._transaction() as conn:
            result = await conn.execute(
                text(f"SELECT * FROM {function}({arguments})"), params
            )
            return [dict(row) for row in result.mappings()]
