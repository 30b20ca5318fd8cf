"""SQLAlchemy 2.0 ORM table definitions for the tenantry control-plane store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by the repository layer and for ``create_all`` in local mode.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that stays UTC-aware when read from SQLite.

    SQLite has no timezone support and hands back naive datetimes; those are
    re-tagged as UTC so comparisons against :func:`_utcnow` never mix naive
    and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all control-plane tables."""


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Canonical registry of onboarded organizations.

    ``slug`` is assigned at signup and never changes.  The connection secret
    is stored only in sealed form; ``secret_generation`` is bumped on every
    rewrite so cached data-plane handles can detect staleness.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PROVISIONING")
    owner_email: Mapped[str] = mapped_column(String(320), nullable=False)
    connection_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    secret_generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bucket_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    provisioning_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    use_case: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PROVISIONING', 'ACTIVE', 'SUSPENDED')",
            name="ck_tenants_status",
        ),
        Index("ix_tenants_owner_email", "owner_email"),
    )


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class OnboardingSessionTable(Base):
    """Per-tenant onboarding progress (1:1 with :class:`TenantTable`).

    Each stage owns one payload column and one first-entry timestamp.  The
    ``stage`` column is only ever written through a compare-and-set update
    so it is monotonic under concurrent requests.  ``revision`` counts
    writes so a caller that read the row can detect any write since.
    """

    __tablename__ = "onboarding_sessions"

    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), primary_key=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="SIGNUP_STARTED")
    stage_payloads: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    dataroom_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    use_cases: Mapped[list[str] | None] = mapped_column(_JsonType, nullable=True)
    workflow_config: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    selected_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    selected_billing: Mapped[str | None] = mapped_column(String(16), nullable=True)

    signup_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    email_verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    dataroom_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    use_case_selected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    workflow_setup_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    users_invited_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    plan_selected_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    payment_completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    provisioning_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Local mirror of a tenant's subscription (1:1 with the tenant).

    ``cancel_at_period_end`` and ``status='canceled'`` are mutually
    exclusive; the check constraint enforces it at the storage layer too.
    """

    __tablename__ = "subscriptions"

    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), primary_key=True)
    plan: Mapped[str] = mapped_column(String(32), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processor_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    processor_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "NOT (cancel_at_period_end AND status = 'canceled')",
            name="ck_subscriptions_cancel_exclusive",
        ),
        Index("ix_subscriptions_processor_customer", "processor_customer_id"),
        Index("ix_subscriptions_processor_subscription", "processor_subscription_id"),
    )


# ---------------------------------------------------------------------------
# Users and memberships
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Platform user accounts.

    Authentication is passwordless: users prove ownership of their email
    address with a one-time code.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class TenantMembershipTable(Base):
    """(tenant, user) pairs with a role.

    The partial unique index allows at most one ``owner`` row per tenant.
    """

    __tablename__ = "tenant_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_memberships_tenant_user"),
        CheckConstraint("role IN ('owner', 'admin', 'member')", name="ck_memberships_role"),
        Index(
            "uq_memberships_single_owner",
            "tenant_id",
            unique=True,
            postgresql_where=text("role = 'owner'"),
            sqlite_where=text("role = 'owner'"),
        ),
        Index("ix_memberships_user", "user_id"),
    )


class PendingInviteTable(Base):
    """Invitations sent during the team step of onboarding."""

    __tablename__ = "pending_invites"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    invited_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_invites_tenant_email"),
        Index("ix_invites_tenant", "tenant_id"),
    )


class VerificationTokenTable(Base):
    """One-time email verification codes.

    Only a bcrypt hash of the code is stored.  ``consumed_at`` is set exactly
    once; a consumed, expired, or exhausted token never verifies again.
    """

    __tablename__ = "verification_tokens"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_verification_tokens_email_purpose", "email", "purpose"),)
