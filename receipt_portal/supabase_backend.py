"""
Supabase implementations of the gateway ports: hosted auth, PostgREST
tables and views, and storage buckets.

Each adapter translates the SDK's exceptions into ``receipt_portal.errors``
at the port boundary; nothing is retried.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from supabase import AsyncClient, PostgrestAPIError, StorageException, acreate_client
from supabase import AuthError as SupabaseAuthError

from receipt_portal.auth import AuthStateCallback, Subscription
from receipt_portal.errors import (
    AuthError,
    NotFoundError,
    PersistenceError,
    StorageError,
    ValidationError,
)
from receipt_portal.records import Embed, Filter
from receipt_portal.schemas import AuthResult, AuthSession, AuthUser
from receipt_portal.storage import ReceiptFile

logger = logging.getLogger(__name__)


async def create_supabase_client(url: Optional[str], key: Optional[str]) -> AsyncClient:
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required")
    return await acreate_client(url, key)


def _to_user(user: Any) -> Optional[AuthUser]:
    if user is None:
        return None
    return AuthUser.model_validate(user.model_dump())


def _to_session(session: Any) -> Optional[AuthSession]:
    if session is None:
        return None
    return AuthSession.model_validate(session.model_dump())


def _auth_error(exc: SupabaseAuthError) -> AuthError:
    return AuthError(
        getattr(exc, "message", None) or str(exc),
        code=getattr(exc, "code", None),
    )


def _record_error(exc: PostgrestAPIError) -> Exception:
    code = exc.code or ""
    message = exc.message or str(exc)
    details = {"details": exc.details, "hint": exc.hint}
    if code == "PGRST116":
        return NotFoundError(message, code=code, details=details)
    if code == "42501" or code.startswith("PGRST3"):
        return AuthError(message, code=code, details=details)
    if code.startswith("23") or code.startswith("22"):
        return ValidationError(message, code=code, details=details)
    return PersistenceError(message, code=code or None, details=details)


def _storage_error(exc: StorageException) -> StorageError:
    payload = exc.args[0] if exc.args else {}
    if isinstance(payload, dict):
        return StorageError(
            payload.get("message") or payload.get("error") or str(exc),
            code=str(payload.get("statusCode") or "") or None,
        )
    return StorageError(str(exc))


class SupabaseAuthenticator:
    """Authenticator backed by Supabase Auth."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def sign_up(self, email: str, password: str, metadata: dict) -> AuthResult:
        try:
            response = await self.client.auth.sign_up(
                {"email": email, "password": password, "options": {"data": metadata}}
            )
        except SupabaseAuthError as exc:
            raise _auth_error(exc) from exc
        return AuthResult(user=_to_user(response.user), session=_to_session(response.session))

    async def sign_in(self, email: str, password: str) -> AuthResult:
        try:
            response = await self.client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except SupabaseAuthError as exc:
            raise _auth_error(exc) from exc
        return AuthResult(user=_to_user(response.user), session=_to_session(response.session))

    async def sign_out(self) -> None:
        try:
            await self.client.auth.sign_out()
        except SupabaseAuthError as exc:
            raise _auth_error(exc) from exc

    async def get_user(self) -> Optional[AuthUser]:
        try:
            response = await self.client.auth.get_user()
        except SupabaseAuthError as exc:
            # An expired or revoked session reads as signed out
            logger.info("No usable auth session: %s", exc)
            return None
        if response is None:
            return None
        return _to_user(response.user)

    def on_auth_state_change(self, callback: AuthStateCallback) -> Subscription:
        def forward(event, session):
            callback(str(event), _to_session(session))

        subscription = self.client.auth.on_auth_state_change(forward)
        return Subscription(id=str(subscription.id), _unsubscribe=subscription.unsubscribe)


class SupabaseRecordStore:
    """Record store backed by PostgREST; access policies are enforced remotely."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def _execute(self, query):
        try:
            return await query.execute()
        except PostgrestAPIError as exc:
            raise _record_error(exc) from exc

    def _query(self, table: str, columns: str, filters: Sequence[Filter], embed: Sequence[Embed]):
        clause = ",".join([columns] + [relation.select_clause() for relation in embed])
        query = self.client.table(table).select(clause)
        for f in filters:
            if f.op == "eq":
                query = query.eq(f.column, f.value)
            elif f.op == "gte":
                query = query.gte(f.column, f.value)
            else:
                raise ValueError(f"Unsupported filter operator: {f.op}")
        return query

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
        query = self._query(table, columns, filters, embed)
        if order_by:
            query = query.order(order_by, desc=descending)
        response = await self._execute(query)
        return response.data or []

    async def select_one(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        embed: Sequence[Embed] = (),
    ) -> dict:
        response = await self._execute(self._query(table, columns, filters, embed).single())
        return response.data

    async def insert(self, table: str, values: dict) -> dict:
        response = await self._execute(self.client.table(table).insert(values))
        if not response.data:
            raise PersistenceError(f"Insert into {table} returned no row")
        return response.data[0]

    async def update(self, table: str, row_id: Any, values: dict) -> dict:
        response = await self._execute(
            self.client.table(table).update(values).eq("id", row_id)
        )
        if not response.data:
            # Rows hidden by row-level security look the same as missing rows
            raise NotFoundError(
                "JSON object requested, multiple (or no) rows returned",
                code="PGRST116",
                details={"table": table},
            )
        return response.data[0]

    async def rpc(self, function: str, params: dict) -> Any:
        response = await self._execute(self.client.rpc(function, params))
        return response.data


class SupabaseBlobStore:
    """Blob store backed by a Supabase storage bucket."""

    def __init__(self, client: AsyncClient, bucket: str = "receipts"):
        self.client = client
        self.bucket = bucket

    async def upload(self, path: str, receipt: ReceiptFile) -> str:
        try:
            response = await self.client.storage.from_(self.bucket).upload(
                path, receipt.content, {"content-type": receipt.content_type}
            )
        except StorageException as exc:
            raise _storage_error(exc) from exc
        return getattr(response, "path", None) or path

    async def public_url(self, path: str) -> str:
        return await self.client.storage.from_(self.bucket).get_public_url(path)

    async def remove(self, path: str) -> None:
        try:
            await self.client.storage.from_(self.bucket).remove([path])
        except StorageException as exc:
            raise _storage_error(exc) from exc
