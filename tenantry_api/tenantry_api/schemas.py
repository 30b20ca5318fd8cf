"""Pydantic request and response models for the control-plane API.

The web client speaks camelCase, so every model serializes by alias.
Request bodies accept either the camelCase alias or the field name.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model exposing camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Auth schemas
# ---------------------------------------------------------------------------


class SignupRequest(CamelModel):
    email: EmailStr
    full_name: str = Field(..., min_length=1, max_length=256)
    workspace_name: str | None = Field(default=None, max_length=256)


class SignupResponse(CamelModel):
    success: bool
    tenant_slug: str
    redirect_url: str


class SigninRequest(CamelModel):
    email: EmailStr


class VerifyCodeRequest(CamelModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=16)
    purpose: str = "signup"


class ResendCodeRequest(CamelModel):
    email: EmailStr
    purpose: str = "signup"


class SuccessResponse(CamelModel):
    success: bool = True


class UserSummary(CamelModel):
    """Identity block returned alongside session and tenant tokens."""

    id: str
    email: str
    full_name: str
    role: str
    tenant_slug: str


class SessionTokenResponse(CamelModel):
    """Response for a verified one-time code."""

    token: str
    expires_in: int
    user: UserSummary
    stage: str
    redirect_url: str


class SessionInfoResponse(CamelModel):
    user: UserSummary
    tenant_status: str
    stage: str
    redirect_url: str


class TenantTokenResponse(CamelModel):
    """Auth Bridge response: a tenant-scoped token and who it was issued to."""

    token: str
    expires_in: int
    user: UserSummary


# ---------------------------------------------------------------------------
# Onboarding schemas
# ---------------------------------------------------------------------------


class StageAdvanceResponse(CamelModel):
    """Result of any onboarding step: where the client should go next."""

    success: bool
    redirect_url: str
    stage: str


class DataroomRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=256)


class UseCaseRequest(CamelModel):
    use_cases: list[str] = Field(..., min_length=1)


class WorkflowRequest(CamelModel):
    config: dict[str, Any] = Field(default_factory=dict)


class InviteEntry(CamelModel):
    """One row of the team form.  Rows left blank carry no email."""

    email: EmailStr | None = None
    role: str | None = None

    @field_validator("email", mode="before")
    @classmethod
    def _blank_as_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class TeamInviteRequest(CamelModel):
    invites: list[InviteEntry] = Field(default_factory=list)


class TeamInviteResponse(StageAdvanceResponse):
    invited_count: int = 0


class PlanSelectRequest(CamelModel):
    plan: str
    billing_cycle: str = "monthly"


class CheckoutResponse(CamelModel):
    """Either a processor checkout URL or, for free plans, the next route."""

    success: bool = True
    checkout_url: str | None = None
    session_id: str | None = None
    redirect_url: str | None = None
    stage: str | None = None


class CheckoutVerifyRequest(CamelModel):
    session_id: str = Field(..., min_length=1)


class PendingInvite(CamelModel):
    email: str
    role: str
    status: str
    expires_at: str


class OnboardingStatusResponse(CamelModel):
    stage: str
    redirect_url: str
    workspace_setup_step: int | None = None
    tenant_slug: str | None = None
    tenant_status: str | None = None
    dataroom_name: str | None = None
    use_cases: list[str] = Field(default_factory=list)
    workflow_config: dict[str, Any] | None = None
    selected_plan: str | None = None
    selected_billing: str | None = None
    timestamps: dict[str, str | None] = Field(default_factory=dict)
    pending_invites: list[PendingInvite] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Provisioning schemas
# ---------------------------------------------------------------------------


class ProvisioningStatusResponse(CamelModel):
    tenant_slug: str
    tenant_status: str
    stage: str
    redirect_url: str
    scheduled: bool = False


# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class SubscriptionResponse(CamelModel):
    """Subscription state after a read or mutation."""

    status: str
    cancel_at_period_end: bool
    plan: str
    billing_cycle: str
    current_period_end: str | None = None
    canceled_at: str | None = None
    has_processor_subscription: bool = False


class CancelRequest(CamelModel):
    immediate: bool = False


class PortalRequest(CamelModel):
    return_url: str | None = None


class PortalSessionResponse(CamelModel):
    url: str


class InvoiceSummary(CamelModel):
    """One processor invoice; ``amount`` is in major currency units."""

    id: str
    number: str | None = None
    status: str | None = None
    amount: float
    currency: str
    created_at: datetime | None = None
    due_date: datetime | None = None
    paid_at: datetime | None = None
    invoice_pdf: str | None = None
    hosted_invoice_url: str | None = None


class InvoiceListResponse(CamelModel):
    invoices: list[InvoiceSummary]
    message: str | None = None


# ---------------------------------------------------------------------------
# Data plane
# ---------------------------------------------------------------------------


class DataPlaneHealthResponse(CamelModel):
    tenant_slug: str
    status: str
    generation: int
