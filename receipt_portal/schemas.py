"""
Pydantic schemas for the receipt portal gateway.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ClaimStatus(str, Enum):
    PENDING = "pending"
    FLAGGED = "flagged"
    APPROVED = "approved"
    REJECTED = "rejected"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


class SignUpMetadata(BaseModel):
    name: str
    vehicle: str

    def as_user_metadata(self) -> dict:
        # condo_id is linked on the profile after sign-up, not here
        return {"name": self.name, "vehicle_number": self.vehicle}


class ClaimSubmission(BaseModel):
    """Fields a participant supplies for a claim.

    Rebate figures and status are derived during submission, so anything
    else the caller sends is dropped.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    charge_date: date = Field(..., alias="date")
    operator: str
    amount: float


class ClaimFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Optional[str] = None
    condo: Optional[str] = None


class DashboardStats(BaseModel):
    pending: int = 0
    flagged: int = 0
    approved: int = 0
    total_payout: float = Field(default=0.0, serialization_alias="totalPayout")


class AuthUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: Optional[str] = None
    user_metadata: dict = Field(default_factory=dict)


class AuthSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    user: Optional[AuthUser] = None


class AuthResult(BaseModel):
    user: Optional[AuthUser] = None
    session: Optional[AuthSession] = None
