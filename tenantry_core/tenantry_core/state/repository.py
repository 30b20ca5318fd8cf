"""Repository classes providing access to the tenantry control-plane store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on a session-scope context manager).

State-machine and billing writes are compare-and-set ``UPDATE`` statements.
They return ``True`` only when the precondition in the ``WHERE`` clause still
held at write time, which lets concurrent writers degrade to no-ops instead
of clobbering each other.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry_core.onboarding.stages import OnboardingStage
from tenantry_core.state.tables import (
    OnboardingSessionTable,
    PendingInviteTable,
    SubscriptionTable,
    TenantMembershipTable,
    TenantTable,
    UserTable,
    UTCDateTime,
    VerificationTokenTable,
    _utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantRepository:
    """Read and write the ``tenants`` table.

    The slug column is written once by :meth:`create` and never updated.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, slug: str, name: str, owner_email: str) -> TenantTable:
        """Insert a new tenant in ``PROVISIONING`` status with no secret."""
        row = TenantTable(
            id=uuid.uuid4().hex,
            slug=slug,
            name=name,
            status="PROVISIONING",
            owner_email=owner_email.lower().strip(),
            secret_generation=0,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_id(self, tenant_id: str, *, refresh: bool = False) -> TenantTable | None:
        stmt = select(TenantTable).where(TenantTable.id == tenant_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_slug(self, slug: str) -> TenantTable | None:
        stmt = select(TenantTable).where(TenantTable.slug == slug).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def slug_exists(self, slug: str) -> bool:
        result = await self._session.execute(select(func.count()).select_from(TenantTable).where(TenantTable.slug == slug))
        return (result.scalar() or 0) > 0

    async def store_connection_secret(
        self,
        tenant_id: str,
        sealed_secret: str,
        *,
        bucket_name: str | None,
        provider: str,
    ) -> int:
        """Persist a sealed connection secret and activate the tenant.

        Bumps ``secret_generation`` in the same statement so any cached
        data-plane handle for the old secret becomes stale.

        Returns
        -------
        int
            The new secret generation.
        """
        await self._session.execute(
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(
                connection_secret_encrypted=sealed_secret,
                secret_generation=TenantTable.secret_generation + 1,
                bucket_name=bucket_name,
                provisioning_provider=provider,
                status="ACTIVE",
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(
            select(TenantTable.secret_generation).where(TenantTable.id == tenant_id)
        )
        return int(result.scalar_one())

    async def set_status(self, tenant_id: str, status: str) -> None:
        await self._session.execute(
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(status=status, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )

    async def set_use_case(self, tenant_id: str, use_case: str | None) -> None:
        await self._session.execute(
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(use_case=use_case, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )


# ---------------------------------------------------------------------------
# Onboarding sessions
# ---------------------------------------------------------------------------


class OnboardingRepository:
    """Compare-and-set access to ``onboarding_sessions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, tenant_id: str) -> OnboardingSessionTable:
        """Create the session at ``SIGNUP_STARTED`` with ``signup_at`` set."""
        row = OnboardingSessionTable(
            tenant_id=tenant_id,
            stage=OnboardingStage.SIGNUP_STARTED.value,
            stage_payloads={},
            revision=0,
            signup_at=_utcnow(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, tenant_id: str) -> OnboardingSessionTable | None:
        """Fetch the current row, bypassing any stale identity-map copy."""
        stmt = (
            select(OnboardingSessionTable)
            .where(OnboardingSessionTable.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def write_stage(
        self,
        tenant_id: str,
        *,
        expected: OnboardingStage,
        target: OnboardingStage,
        values: dict[str, Any] | None = None,
        expected_revision: int | None = None,
    ) -> bool:
        """Atomically move from *expected* to *target* and write stage data.

        The target stage's first-entry timestamp is set with ``COALESCE`` so
        re-entering a stage never resets it.  Nothing is written when the
        stored stage no longer equals *expected*, or when *expected_revision*
        is given and another write has landed since the caller's read.

        Parameters
        ----------
        tenant_id:
            Tenant whose session is written.
        expected:
            Stage the caller observed; acts as the compare-and-set guard.
        target:
            Stage to store.  Either *expected* or its successor.
        values:
            Extra column values (payload columns) written in the same statement.
        expected_revision:
            ``revision`` the caller read.  Required when *values* were derived
            from the row itself, such as a merged ``stage_payloads``.

        Returns
        -------
        bool
            ``True`` if the row was updated.
        """
        now = _utcnow()
        ts_column = getattr(OnboardingSessionTable, target.timestamp_field)
        payload: dict[str, Any] = dict(values or {})
        payload.update(
            {
                "stage": target.value,
                target.timestamp_field: func.coalesce(ts_column, literal(now, UTCDateTime())),
                "revision": OnboardingSessionTable.revision + 1,
                "updated_at": now,
            }
        )
        conditions = [
            OnboardingSessionTable.tenant_id == tenant_id,
            OnboardingSessionTable.stage == expected.value,
        ]
        if expected_revision is not None:
            conditions.append(OnboardingSessionTable.revision == expected_revision)
        result = await self._session.execute(
            update(OnboardingSessionTable)
            .where(*conditions)
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Read and compare-and-set the ``subscriptions`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_processor_subscription(self, processor_subscription_id: str) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.processor_subscription_id == processor_subscription_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_processor_customer(self, processor_customer_id: str) -> SubscriptionTable | None:
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.processor_customer_id == processor_customer_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def upsert_plan(self, tenant_id: str, plan: str, billing_cycle: str) -> SubscriptionTable:
        """Create the subscription on first plan selection or update its plan."""
        row = await self.get(tenant_id)
        if row is None:
            row = SubscriptionTable(
                tenant_id=tenant_id,
                plan=plan,
                billing_cycle=billing_cycle,
                status="active",
                cancel_at_period_end=False,
            )
            self._session.add(row)
        else:
            row.plan = plan
            row.billing_cycle = billing_cycle
        await self._session.flush()
        return row

    async def update_if(
        self,
        tenant_id: str,
        *,
        expected: dict[str, Any],
        values: dict[str, Any],
    ) -> bool:
        """Apply *values* only if every column in *expected* still matches.

        Returns ``True`` if the row was updated.
        """
        conditions = [SubscriptionTable.tenant_id == tenant_id]
        for column, value in expected.items():
            conditions.append(getattr(SubscriptionTable, column) == value)
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(*conditions)
            .values(**values, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_cancellation(self, tenant_id: str) -> bool:
        """Mark the subscription canceled unless it already is.

        Exactly one concurrent caller wins: on PostgreSQL the second
        ``UPDATE`` waits on the row lock and then re-evaluates the ``WHERE``
        clause against the committed ``canceled`` status.
        """
        now = _utcnow()
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(
                SubscriptionTable.tenant_id == tenant_id,
                SubscriptionTable.status != "canceled",
            )
            .values(
                status="canceled",
                cancel_at_period_end=False,
                canceled_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_processor_ids(
        self,
        tenant_id: str,
        *,
        customer_id: str | None,
        subscription_id: str | None,
    ) -> None:
        values: dict[str, Any] = {"updated_at": _utcnow()}
        if customer_id:
            values["processor_customer_id"] = customer_id
        if subscription_id:
            values["processor_subscription_id"] = subscription_id
        await self._session.execute(
            update(SubscriptionTable)
            .where(SubscriptionTable.tenant_id == tenant_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


# ---------------------------------------------------------------------------
# Users and memberships
# ---------------------------------------------------------------------------


class UserRepository:
    """CRUD operations for the ``users`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, email: str, full_name: str) -> UserTable:
        row = UserTable(
            id=uuid.uuid4().hex,
            email=email.lower().strip(),
            full_name=full_name.strip(),
            email_verified=False,
            is_active=True,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_email(self, email: str) -> UserTable | None:
        """Fetch a user by email address (case-insensitive)."""
        stmt = select(UserTable).where(UserTable.email == email.lower().strip())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def mark_verified(self, user_id: str) -> None:
        """Flag the email as verified and stamp the login time."""
        await self._session.execute(
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(email_verified=True, last_login_at=_utcnow())
            .execution_options(synchronize_session=False)
        )


class MembershipRepository:
    """Access to ``tenant_memberships``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, tenant_id: str, user_id: str, role: str = "member") -> TenantMembershipTable:
        row = TenantMembershipTable(tenant_id=tenant_id, user_id=user_id, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, tenant_id: str, user_id: str) -> TenantMembershipTable | None:
        stmt = select(TenantMembershipTable).where(
            TenantMembershipTable.tenant_id == tenant_id,
            TenantMembershipTable.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_primary_for_user(self, user_id: str) -> TenantMembershipTable | None:
        """Return the user's oldest membership (the tenant they signed up with)."""
        stmt = (
            select(TenantMembershipTable)
            .where(TenantMembershipTable.user_id == user_id)
            .order_by(TenantMembershipTable.created_at.asc(), TenantMembershipTable.id.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class InviteRepository:
    """Pending invitations created during onboarding."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_tenant(self, tenant_id: str) -> list[PendingInviteTable]:
        stmt = (
            select(PendingInviteTable)
            .where(PendingInviteTable.tenant_id == tenant_id)
            .order_by(PendingInviteTable.invited_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create_many(
        self,
        tenant_id: str,
        invites: list[tuple[str, str]],
        *,
        ttl: timedelta,
    ) -> list[PendingInviteTable]:
        """Insert ``(email, role)`` invites, skipping emails already invited.

        Duplicate emails within *invites* are collapsed to the first entry.

        Returns
        -------
        list[PendingInviteTable]
            Only the newly created rows.
        """
        existing = {row.email for row in await self.list_for_tenant(tenant_id)}
        expires_at = _utcnow() + ttl
        created: list[PendingInviteTable] = []
        for email, role in invites:
            normalized = email.lower().strip()
            if normalized in existing:
                continue
            existing.add(normalized)
            row = PendingInviteTable(
                id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                email=normalized,
                role=role,
                status="pending",
                expires_at=expires_at,
            )
            self._session.add(row)
            created.append(row)
        await self._session.flush()
        return created


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


class VerificationTokenRepository:
    """One-time code storage.

    Codes are hashed with bcrypt; the plaintext only ever exists in the
    outgoing email.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _hash_code(code: str) -> str:
        import bcrypt

        return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    @staticmethod
    def verify_code(code: str, code_hash: str) -> bool:
        """Constant-time comparison of a submitted code against its hash."""
        import bcrypt

        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))

    async def issue(self, email: str, purpose: str, code: str, *, ttl: timedelta) -> VerificationTokenTable:
        """Store a new code, discarding any earlier unconsumed code for the same purpose."""
        normalized = email.lower().strip()
        await self._session.execute(
            delete(VerificationTokenTable).where(
                VerificationTokenTable.email == normalized,
                VerificationTokenTable.purpose == purpose,
                VerificationTokenTable.consumed_at.is_(None),
            )
        )
        row = VerificationTokenTable(
            id=uuid.uuid4().hex,
            email=normalized,
            purpose=purpose,
            code_hash=self._hash_code(code),
            attempts=0,
            expires_at=_utcnow() + ttl,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_latest_unconsumed(self, email: str, purpose: str) -> VerificationTokenTable | None:
        stmt = (
            select(VerificationTokenTable)
            .where(
                VerificationTokenTable.email == email.lower().strip(),
                VerificationTokenTable.purpose == purpose,
                VerificationTokenTable.consumed_at.is_(None),
            )
            .order_by(VerificationTokenTable.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_failed_attempt(self, token_id: str) -> None:
        await self._session.execute(
            update(VerificationTokenTable)
            .where(VerificationTokenTable.id == token_id)
            .values(attempts=VerificationTokenTable.attempts + 1)
            .execution_options(synchronize_session=False)
        )

    async def consume(self, token_id: str, *, now: datetime | None = None) -> bool:
        """Mark the token consumed.  Returns ``False`` if it already was."""
        result = await self._session.execute(
            update(VerificationTokenTable)
            .where(
                VerificationTokenTable.id == token_id,
                VerificationTokenTable.consumed_at.is_(None),
            )
            .values(consumed_at=now or _utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
