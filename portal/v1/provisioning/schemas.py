"""
Install and setup Pydantic schemas.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InstallResponse(BaseModel):
    """Schema for install status responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    domain: str | None = None
    custom_domain: str | None = None
    error_message: str | None = None
    created_at: datetime
    provisioned_at: datetime | None = None
    activated_at: datetime | None = None
    pending_jobs: int = Field(default=0, description="Jobs still pending or running")


class SetupTokenStatus(BaseModel):
    """Schema for setup link validation."""

    valid: bool
    install_id: int
    expires_at: datetime


class SetupCompleteResponse(BaseModel):
    """Schema returned once setup has been completed."""

    install_id: int
    domain: str | None = None
    session_secret: str


class CheckoutRequest(BaseModel):
    """Schema for starting a checkout."""

    email: str = Field(..., min_length=3, max_length=254, description="Customer email")
    name: str = Field(..., min_length=1, max_length=100, description="Customer name")
    provider: str = Field(default="razorpay", description="Payment provider")


class CheckoutPrefill(BaseModel):
    name: str
    email: str


class CheckoutResponse(BaseModel):
    """Schema with everything the payment widget needs."""

    purchase_id: int
    provider: str
    order_id: str
    amount: int
    currency: str
    key_id: str
    prefill: CheckoutPrefill
    notes: dict[str, str] = Field(default_factory=dict)
