"""Unit tests for the control-plane repositories.

These tests use an in-memory SQLite database via aiosqlite so they can run
without a PostgreSQL instance.

Covers:
- Tenant creation, secret storage and generation bumps
- Onboarding compare-and-set stage writes and first-set timestamps
- Subscription compare-and-set updates and cancellation claims
- Membership owner uniqueness
- Invite de-duplication and expiry
- Verification token hashing, consumption and attempt counting
"""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenantry_core.onboarding.stages import OnboardingStage
from tenantry_core.state.repository import (
    InviteRepository,
    MembershipRepository,
    OnboardingRepository,
    SubscriptionRepository,
    TenantRepository,
    UserRepository,
    VerificationTokenRepository,
)
from tenantry_core.state.sqlite_adapter import create_local_tables, get_local_engine
from tenantry_core.state.tables import _utcnow

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


async def _make_tenant(session: AsyncSession, slug: str = "acme"):
    return await TenantRepository(session).create(slug, "Acme Inc", "Owner@Acme.io")


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TestTenantRepository:
    @pytest.mark.asyncio
    async def test_create_starts_provisioning_without_secret(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)

        assert tenant.status == "PROVISIONING"
        assert tenant.connection_secret_encrypted is None
        assert tenant.secret_generation == 0
        assert tenant.owner_email == "owner@acme.io"

    @pytest.mark.asyncio
    async def test_slug_is_unique(self, async_session: AsyncSession):
        await _make_tenant(async_session, "acme")
        with pytest.raises(IntegrityError):
            await _make_tenant(async_session, "acme")

    @pytest.mark.asyncio
    async def test_slug_exists(self, async_session: AsyncSession):
        repo = TenantRepository(async_session)
        assert await repo.slug_exists("acme") is False
        await _make_tenant(async_session, "acme")
        assert await repo.slug_exists("acme") is True

    @pytest.mark.asyncio
    async def test_store_connection_secret_bumps_generation(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = TenantRepository(async_session)

        gen1 = await repo.store_connection_secret(tenant.id, "sealed-1", bucket_name="b", provider="mock")
        gen2 = await repo.store_connection_secret(tenant.id, "sealed-2", bucket_name="b", provider="mock")

        assert (gen1, gen2) == (1, 2)
        row = await repo.get_by_slug("acme")
        assert row is not None
        assert row.status == "ACTIVE"
        assert row.connection_secret_encrypted == "sealed-2"
        assert row.secret_generation == 2

    @pytest.mark.asyncio
    async def test_get_by_slug_missing(self, async_session: AsyncSession):
        assert await TenantRepository(async_session).get_by_slug("ghost-tenant") is None


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class TestOnboardingRepository:
    @pytest.mark.asyncio
    async def test_create_sets_signup_timestamp(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        row = await OnboardingRepository(async_session).create(tenant.id)

        assert row.stage == "SIGNUP_STARTED"
        assert row.signup_at is not None
        assert row.email_verified_at is None

    @pytest.mark.asyncio
    async def test_advance_writes_stage_and_timestamp(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = OnboardingRepository(async_session)
        await repo.create(tenant.id)

        ok = await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.SIGNUP_STARTED,
            target=OnboardingStage.EMAIL_VERIFIED,
        )

        assert ok is True
        row = await repo.get(tenant.id)
        assert row.stage == "EMAIL_VERIFIED"
        assert row.email_verified_at is not None
        assert row.email_verified_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_stale_expected_stage_writes_nothing(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = OnboardingRepository(async_session)
        await repo.create(tenant.id)

        ok = await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.EMAIL_VERIFIED,
            target=OnboardingStage.DATAROOM_CREATED,
            values={"dataroom_name": "Deals"},
        )

        assert ok is False
        row = await repo.get(tenant.id)
        assert row.stage == "SIGNUP_STARTED"
        assert row.dataroom_name is None
        assert row.dataroom_created_at is None

    @pytest.mark.asyncio
    async def test_reentry_keeps_first_timestamp(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = OnboardingRepository(async_session)
        await repo.create(tenant.id)
        await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.SIGNUP_STARTED,
            target=OnboardingStage.EMAIL_VERIFIED,
        )
        await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.EMAIL_VERIFIED,
            target=OnboardingStage.DATAROOM_CREATED,
            values={"dataroom_name": "First"},
        )
        first = (await repo.get(tenant.id)).dataroom_created_at

        ok = await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.DATAROOM_CREATED,
            target=OnboardingStage.DATAROOM_CREATED,
            values={"dataroom_name": "Second"},
        )

        assert ok is True
        row = await repo.get(tenant.id)
        assert row.dataroom_name == "Second"
        assert row.dataroom_created_at == first

    @pytest.mark.asyncio
    async def test_every_write_bumps_revision(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = OnboardingRepository(async_session)
        created = await repo.create(tenant.id)
        assert created.revision == 0

        await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.SIGNUP_STARTED,
            target=OnboardingStage.EMAIL_VERIFIED,
        )
        await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.EMAIL_VERIFIED,
            target=OnboardingStage.EMAIL_VERIFIED,
        )

        assert (await repo.get(tenant.id)).revision == 2

    @pytest.mark.asyncio
    async def test_stale_revision_writes_nothing(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = OnboardingRepository(async_session)
        await repo.create(tenant.id)
        await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.SIGNUP_STARTED,
            target=OnboardingStage.EMAIL_VERIFIED,
        )
        read = (await repo.get(tenant.id)).revision

        assert await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.EMAIL_VERIFIED,
            target=OnboardingStage.DATAROOM_CREATED,
            values={"stage_payloads": {"DATAROOM_CREATED": {"dataroom_name": "Fresh"}}},
            expected_revision=read,
        )
        ok = await repo.write_stage(
            tenant.id,
            expected=OnboardingStage.DATAROOM_CREATED,
            target=OnboardingStage.DATAROOM_CREATED,
            values={"stage_payloads": {}},
            expected_revision=read,
        )

        assert ok is False
        row = await repo.get(tenant.id)
        assert row.stage_payloads == {"DATAROOM_CREATED": {"dataroom_name": "Fresh"}}
        assert row.revision == read + 1


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptionRepository:
    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = SubscriptionRepository(async_session)

        created = await repo.upsert_plan(tenant.id, "starter", "monthly")
        assert created.status == "active"
        assert created.cancel_at_period_end is False

        updated = await repo.upsert_plan(tenant.id, "professional", "yearly")
        assert updated.plan == "professional"
        assert updated.billing_cycle == "yearly"

    @pytest.mark.asyncio
    async def test_update_if_honours_expected_values(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = SubscriptionRepository(async_session)
        await repo.upsert_plan(tenant.id, "starter", "monthly")

        assert await repo.update_if(
            tenant.id,
            expected={"status": "active", "cancel_at_period_end": False},
            values={"cancel_at_period_end": True},
        )
        assert not await repo.update_if(
            tenant.id,
            expected={"cancel_at_period_end": False},
            values={"cancel_at_period_end": True},
        )
        assert (await repo.get(tenant.id)).cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_claim_cancellation_only_once(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = SubscriptionRepository(async_session)
        await repo.upsert_plan(tenant.id, "starter", "monthly")
        await repo.update_if(tenant.id, expected={}, values={"cancel_at_period_end": True})

        assert await repo.claim_cancellation(tenant.id) is True
        assert await repo.claim_cancellation(tenant.id) is False

        row = await repo.get(tenant.id)
        assert row.status == "canceled"
        assert row.cancel_at_period_end is False
        assert row.canceled_at is not None

    @pytest.mark.asyncio
    async def test_canceled_with_cancel_at_period_end_is_rejected(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = SubscriptionRepository(async_session)
        await repo.upsert_plan(tenant.id, "starter", "monthly")

        with pytest.raises(IntegrityError):
            await repo.update_if(
                tenant.id,
                expected={},
                values={"status": "canceled", "cancel_at_period_end": True},
            )

    @pytest.mark.asyncio
    async def test_lookup_by_processor_ids(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = SubscriptionRepository(async_session)
        await repo.upsert_plan(tenant.id, "professional", "monthly")
        await repo.record_processor_ids(tenant.id, customer_id="cus_1", subscription_id="sub_1")

        assert (await repo.get_by_processor_subscription("sub_1")).tenant_id == tenant.id
        assert (await repo.get_by_processor_customer("cus_1")).tenant_id == tenant.id
        assert await repo.get_by_processor_subscription("sub_missing") is None


# ---------------------------------------------------------------------------
# Memberships and invites
# ---------------------------------------------------------------------------


class TestMembershipRepository:
    @pytest.mark.asyncio
    async def test_single_owner_per_tenant(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        users = UserRepository(async_session)
        alice = await users.create("alice@acme.io", "Alice")
        bob = await users.create("bob@acme.io", "Bob")
        repo = MembershipRepository(async_session)

        await repo.add(tenant.id, alice.id, "owner")
        with pytest.raises(IntegrityError):
            await repo.add(tenant.id, bob.id, "owner")

    @pytest.mark.asyncio
    async def test_primary_membership(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        alice = await UserRepository(async_session).create("alice@acme.io", "Alice")
        repo = MembershipRepository(async_session)
        await repo.add(tenant.id, alice.id, "owner")

        membership = await repo.get_primary_for_user(alice.id)
        assert membership.tenant_id == tenant.id
        assert membership.role == "owner"


class TestInviteRepository:
    @pytest.mark.asyncio
    async def test_duplicates_are_skipped(self, async_session: AsyncSession):
        tenant = await _make_tenant(async_session)
        repo = InviteRepository(async_session)

        first = await repo.create_many(
            tenant.id,
            [("a@acme.io", "member"), ("A@acme.io", "admin"), ("b@acme.io", "admin")],
            ttl=timedelta(days=7),
        )
        second = await repo.create_many(tenant.id, [("b@acme.io", "member")], ttl=timedelta(days=7))

        assert [i.email for i in first] == ["a@acme.io", "b@acme.io"]
        assert second == []
        invites = await repo.list_for_tenant(tenant.id)
        assert len(invites) == 2
        assert all(i.expires_at > _utcnow() + timedelta(days=6) for i in invites)


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


class TestVerificationTokenRepository:
    @pytest.mark.asyncio
    async def test_code_is_stored_hashed(self, async_session: AsyncSession):
        repo = VerificationTokenRepository(async_session)
        token = await repo.issue("a@acme.io", "signup", "123456", ttl=timedelta(minutes=10))

        assert token.code_hash != "123456"
        assert repo.verify_code("123456", token.code_hash)
        assert not repo.verify_code("654321", token.code_hash)

    @pytest.mark.asyncio
    async def test_reissue_replaces_unconsumed_code(self, async_session: AsyncSession):
        repo = VerificationTokenRepository(async_session)
        await repo.issue("a@acme.io", "signup", "111111", ttl=timedelta(minutes=10))
        second = await repo.issue("a@acme.io", "signup", "222222", ttl=timedelta(minutes=10))

        latest = await repo.get_latest_unconsumed("a@acme.io", "signup")
        assert latest.id == second.id

    @pytest.mark.asyncio
    async def test_consume_is_single_use(self, async_session: AsyncSession):
        repo = VerificationTokenRepository(async_session)
        token = await repo.issue("a@acme.io", "signup", "123456", ttl=timedelta(minutes=10))

        assert await repo.consume(token.id) is True
        assert await repo.consume(token.id) is False
        assert await repo.get_latest_unconsumed("a@acme.io", "signup") is None

    @pytest.mark.asyncio
    async def test_failed_attempts_accumulate(self, async_session: AsyncSession):
        repo = VerificationTokenRepository(async_session)
        token = await repo.issue("a@acme.io", "signup", "123456", ttl=timedelta(minutes=10))

        await repo.record_failed_attempt(token.id)
        await repo.record_failed_attempt(token.id)

        latest = await repo.get_latest_unconsumed("a@acme.io", "signup")
        assert latest.attempts == 2
