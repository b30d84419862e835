"""
Backend gateway facades for the rebate-claims workflow.

Every operation is a thin pass-through to the ports (authenticator, record
store, blob store). Remote failures propagate unchanged; the only local
business rules are the rebate computation and the flagging threshold in
``ClaimsFacade.submit_claim``.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError as SchemaValidationError

from receipt_portal.auth import Authenticator, AuthStateCallback, Subscription
from receipt_portal.csv_export import claims_to_csv
from receipt_portal.errors import AuthError, NotFoundError, StorageError, ValidationError
from receipt_portal.records import Embed, RecordStore, eq, gte
from receipt_portal.schemas import (
    AuthResult,
    AuthUser,
    ClaimFilters,
    ClaimStatus,
    ClaimSubmission,
    DashboardStats,
    RegistrationStatus,
    SignUpMetadata,
)
from receipt_portal.storage import BlobStore, ReceiptFile

logger = logging.getLogger(__name__)

# Claims above this amount are flagged for manual review on submission.
FLAG_THRESHOLD = 300

APPROVE_REGISTRATION_FUNCTION = "approve_registration"

CONDO = Embed("condo", "condos")
CONDO_SUMMARY = Embed("condo", "condos", ("name", "tier"))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate(model, data, message: str):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except SchemaValidationError as exc:
        raise ValidationError(
            message, details={"errors": exc.errors(include_url=False)}
        ) from exc


class StorageFacade:
    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    async def get_receipt_url(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        return await self.blobs.public_url(path)

    async def upload_receipt(self, user_id: str, receipt: ReceiptFile) -> str:
        """Upload under ``{user_id}/{epoch_ms}-{filename}`` and return the stored path."""
        path = f"{user_id}/{int(time.time() * 1000)}-{receipt.filename}"
        return await self.blobs.upload(path, receipt)

    async def remove_receipt(self, path: str) -> None:
        await self.blobs.remove(path)


class AuthFacade:
    def __init__(self, authenticator: Authenticator, records: RecordStore):
        self.authenticator = authenticator
        self.records = records

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Union[SignUpMetadata, Mapping[str, Any]],
    ) -> AuthResult:
        details = _validate(SignUpMetadata, metadata, "Invalid sign-up details")
        result = await self.authenticator.sign_up(
            email, password, details.as_user_metadata()
        )
        logger.info("Signed up %s", email)
        return result

    async def sign_in(self, email: str, password: str) -> AuthResult:
        return await self.authenticator.sign_in(email, password)

    async def sign_out(self) -> None:
        await self.authenticator.sign_out()

    async def get_current_user(self) -> Optional[AuthUser]:
        return await self.authenticator.get_user()

    async def get_user_profile(self, user_id: str) -> dict:
        """Profile row with its condo embedded under ``condo``."""
        return await self.records.select_one(
            "profiles", filters=[eq("id", user_id)], embed=[CONDO]
        )

    def on_auth_state_change(self, callback: AuthStateCallback) -> Subscription:
        return self.authenticator.on_auth_state_change(callback)

    async def require_user(self) -> AuthUser:
        user = await self.get_current_user()
        if user is None:
            raise AuthError("Not authenticated")
        return user


class ClaimsFacade:
    def __init__(self, auth: AuthFacade, records: RecordStore, storage: StorageFacade):
        self.auth = auth
        self.records = records
        self.storage = storage

    async def submit_claim(
        self,
        claim_data: Union[ClaimSubmission, Mapping[str, Any]],
        receipt: Optional[ReceiptFile] = None,
    ) -> dict:
        """
        Submit a claim for the signed-in participant.

        The rebate rate is copied from the participant's condo and the rebate
        amount is always recomputed from it. The receipt is uploaded before
        the row is inserted; if the insert fails the upload is removed again
        and the insert error is re-raised.
        """
        user = await self.auth.require_user()
        submission = _validate(ClaimSubmission, claim_data, "Invalid claim")

        profile = await self.auth.get_user_profile(user.id)
        condo = profile.get("condo")
        if not condo or condo.get("rebate_rate") is None:
            raise NotFoundError(
                "No condo linked to profile", details={"user_id": user.id}
            )
        rebate_rate = float(condo["rebate_rate"])

        receipt_path = None
        if receipt is not None:
            receipt_path = await self.storage.upload_receipt(user.id, receipt)

        status = (
            ClaimStatus.FLAGGED
            if submission.amount > FLAG_THRESHOLD
            else ClaimStatus.PENDING
        )
        row = {
            "user_id": user.id,
            "condo_id": profile.get("condo_id"),
            "charge_date": submission.charge_date.isoformat(),
            "operator": submission.operator,
            "amount": submission.amount,
            "receipt_image_path": receipt_path,
            "rebate_rate": rebate_rate,
            "rebate_amount": submission.amount * rebate_rate,
            "status": status.value,
        }
        try:
            created = await self.records.insert("claims", row)
        except Exception:
            if receipt_path:
                await self._discard_receipt(receipt_path)
            raise
        logger.info(
            "Claim %s submitted by %s (%s)", created.get("id"), user.id, status.value
        )
        return created

    async def _discard_receipt(self, path: str) -> None:
        try:
            await self.storage.remove_receipt(path)
        except StorageError as exc:
            logger.warning("Could not remove orphaned receipt %s: %s", path, exc)

    async def get_user_claims(self, user_id: str) -> list[dict]:
        return await self.records.select(
            "claims",
            filters=[eq("user_id", user_id)],
            embed=[CONDO_SUMMARY],
            order_by="charge_date",
            descending=True,
        )

    async def get_all_claims(
        self, filters: Union[ClaimFilters, Mapping[str, Any], None] = None
    ) -> list[dict]:
        """Admin listing from the claims_with_details view, newest first."""
        criteria = _validate(ClaimFilters, filters, "Invalid claim filters")
        query = []
        if criteria.status and criteria.status != "all":
            query.append(eq("status", criteria.status))
        if criteria.condo:
            query.append(eq("condo_name", criteria.condo))
        return await self.records.select(
            "claims_with_details",
            filters=query,
            order_by="created_at",
            descending=True,
        )

    async def update_claim_status(
        self, claim_id: Any, status: Union[ClaimStatus, str], reason: Optional[str] = None
    ) -> dict:
        reviewer = await self.auth.require_user()
        try:
            new_status = ClaimStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown claim status: {status}") from exc

        row = await self.records.update(
            "claims",
            claim_id,
            {
                "status": new_status.value,
                "reviewed_by": reviewer.id,
                "reviewed_at": _utc_now(),
                "rejection_reason": reason if new_status is ClaimStatus.REJECTED else None,
            },
        )
        logger.info("Claim %s marked %s by %s", claim_id, new_status.value, reviewer.id)
        return row

    async def get_monthly_summary(self, user_id: str) -> list[dict]:
        return await self.records.select(
            "monthly_rebate_summary",
            filters=[eq("user_id", user_id)],
            order_by="month_year",
            descending=True,
        )

    async def get_ytd_rebate(self, user_id: str) -> float:
        """Sum of approved rebates charged since January 1 of this year."""
        year_start = f"{date.today().year}-01-01"
        rows = await self.records.select(
            "claims",
            columns="rebate_amount",
            filters=[
                eq("user_id", user_id),
                eq("status", ClaimStatus.APPROVED.value),
                gte("charge_date", year_start),
            ],
        )
        return sum((float(row["rebate_amount"]) for row in rows), 0.0)


class CondoFacade:
    def __init__(self, records: RecordStore):
        self.records = records

    async def get_all(self) -> list[dict]:
        return await self.records.select("condos", order_by="name")

    async def get_stats(self) -> list[dict]:
        return await self.records.select("condo_stats")


class AdminFacade:
    def __init__(self, auth: AuthFacade, claims: ClaimsFacade, records: RecordStore):
        self.auth = auth
        self.claims = claims
        self.records = records

    async def get_pending_registrations(self) -> list[dict]:
        return await self.records.select(
            "pending_registrations",
            filters=[eq("status", RegistrationStatus.PENDING.value)],
            embed=[CONDO_SUMMARY],
            order_by="created_at",
            descending=True,
        )

    async def approve_registration(self, registration_id: Any) -> dict:
        """
        Approve a pending registration through the privileged server function,
        which checks the caller's admin rights before touching the row.
        """
        reviewer = await self.auth.require_user()
        result = await self.records.rpc(
            APPROVE_REGISTRATION_FUNCTION, {"registration_id": registration_id}
        )
        if isinstance(result, list):
            if not result:
                raise NotFoundError(
                    "Registration not found",
                    details={"registration_id": registration_id},
                )
            result = result[0]
        logger.info("Registration %s approved by %s", registration_id, reviewer.id)
        return result

    async def export_claims_csv(
        self, filters: Union[ClaimFilters, Mapping[str, Any], None] = None
    ) -> str:
        return claims_to_csv(await self.claims.get_all_claims(filters))

    async def get_dashboard_stats(self) -> DashboardStats:
        # TODO: move these counts into a database view once claim volume grows
        rows = await self.records.select("claims", columns="status, rebate_amount")
        counts = Counter(row.get("status") for row in rows)
        payout = sum(
            (
                float(row["rebate_amount"])
                for row in rows
                if row.get("status") == ClaimStatus.APPROVED.value
            ),
            0.0,
        )
        return DashboardStats(
            pending=counts[ClaimStatus.PENDING.value],
            flagged=counts[ClaimStatus.FLAGGED.value],
            approved=counts[ClaimStatus.APPROVED.value],
            total_payout=payout,
        )


class BackendGateway:
    """Facades grouped by concern over one set of ports."""

    def __init__(self, authenticator: Authenticator, records: RecordStore, blobs: BlobStore):
        self.authenticator = authenticator
        self.records = records
        self.blobs = blobs
        self.storage = StorageFacade(blobs)
        self.auth = AuthFacade(authenticator, records)
        self.claims = ClaimsFacade(self.auth, records, self.storage)
        self.condos = CondoFacade(records)
        self.admin = AdminFacade(self.auth, self.claims, records)
