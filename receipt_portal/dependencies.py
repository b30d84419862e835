"""
Dependency wiring: builds a gateway from settings.

The gateway is created once at process start and passed down explicitly;
nothing here is cached globally.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from receipt_portal.auth import InMemoryAuthenticator
from receipt_portal.config import Settings, get_settings
from receipt_portal.errors import NotFoundError
from receipt_portal.gateway import APPROVE_REGISTRATION_FUNCTION, BackendGateway
from receipt_portal.records import InMemoryRecordStore, RecordStore, SqlRecordStore
from receipt_portal.schemas import RegistrationStatus
from receipt_portal.storage import BlobStore, InMemoryBlobStore, S3BlobStore
from receipt_portal.supabase_backend import (
    SupabaseAuthenticator,
    SupabaseBlobStore,
    SupabaseRecordStore,
    create_supabase_client,
)


def approve_registration_in_memory(store: InMemoryRecordStore, registration_id) -> dict:
    """Stand-in for the database's privileged ``approve_registration`` function."""
    for row in store.tables.get("pending_registrations", []):
        if row.get("id") == registration_id:
            row["status"] = RegistrationStatus.APPROVED.value
            row["reviewed_at"] = datetime.now(timezone.utc).isoformat()
            return dict(row)
    raise NotFoundError(
        "Registration not found", details={"registration_id": registration_id}
    )


def create_in_memory_gateway() -> BackendGateway:
    records = InMemoryRecordStore()
    records.register_function(
        APPROVE_REGISTRATION_FUNCTION, approve_registration_in_memory
    )
    return BackendGateway(InMemoryAuthenticator(), records, InMemoryBlobStore())


async def create_gateway(settings: Optional[Settings] = None) -> BackendGateway:
    settings = settings or get_settings()
    if settings.use_in_memory_backends:
        return create_in_memory_gateway()

    client = await create_supabase_client(
        settings.supabase_url, settings.supabase_anon_key
    )

    authenticator = SupabaseAuthenticator(client)

    records: RecordStore
    if settings.database_url:
        records = SqlRecordStore(settings.database_url, identity=authenticator.get_user)
    else:
        records = SupabaseRecordStore(client)

    blobs: BlobStore
    if settings.storage_endpoint:
        blobs = S3BlobStore(
            bucket=settings.receipts_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint,
            access_key_id=settings.storage_access_key_id or "",
            secret_access_key=settings.storage_secret_access_key or "",
            public_base_url=settings.storage_public_url or "",
        )
    else:
        blobs = SupabaseBlobStore(client, settings.receipts_bucket)

    return BackendGateway(authenticator, records, blobs)
