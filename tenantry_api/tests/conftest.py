"""Shared fixtures for Tenantry API tests.

Provides a file-backed SQLite control plane per test, seeded tenants, a
mocked payment gateway and email service, and an async httpx client bound
to the FastAPI app with dependency overrides.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Settings are read when the application module is imported, so the signing
# secret must be in the environment first.
_TEST_SESSION_SECRET = "test-session-secret-for-tenantry-tests"
_TEST_VAULT_KEY = "test-vault-key-for-tenantry-tests"
os.environ.setdefault("API_SESSION_SECRET", _TEST_SESSION_SECRET)
os.environ.setdefault("API_CREDENTIAL_ENCRYPTION_KEY", _TEST_VAULT_KEY)
os.environ.setdefault("API_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenantry_core.onboarding.stages import OnboardingStage
from tenantry_core.state.repository import (
    MembershipRepository,
    OnboardingRepository,
    SubscriptionRepository,
    TenantRepository,
    UserRepository,
)
from tenantry_core.state.sqlite_adapter import create_local_tables, get_local_engine

from tenantry_api.config import APISettings
from tenantry_api.dependencies import (
    build_token_manager,
    get_db_session,
    get_email_service,
    get_payment_gateway,
    get_settings,
    get_token_manager,
    get_vault,
)
from tenantry_api.main import create_app
from tenantry_api.security import CredentialVault, TokenKind, TokenManager
from tenantry_api.services.billing_service import TenantLockRegistry
from tenantry_api.services.email_service import EmailService
from tenantry_api.services.infra_client import MockInfraClient
from tenantry_api.services.payment_gateway import PaymentGateway
from tenantry_api.services.provisioning_service import ProvisioningService
from tenantry_api.services.tenant_router import TenantRouter

# ---------------------------------------------------------------------------
# Settings and crypto
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'control-plane.db'}",
        platform_env="dev",
        app_url="http://app.test",
        cors_origins=["http://app.test"],
        session_secret=_TEST_SESSION_SECRET,
        credential_encryption_key=_TEST_VAULT_KEY,
        billing_enabled=True,
        stripe_secret_key="sk_test_tenantry",
        stripe_webhook_secret="whsec_test_tenantry",
        stripe_price_id_professional_monthly="price_pro_monthly",
        stripe_price_id_professional_yearly="price_pro_yearly",
        stripe_price_id_enterprise_monthly="price_ent_monthly",
        mock_data_dir=str(tmp_path / "tenants"),
    )


@pytest.fixture(scope="session")
def vault() -> CredentialVault:
    """One vault per test run; key derivation is deliberately slow."""
    return CredentialVault(_TEST_VAULT_KEY)


@pytest.fixture()
def token_manager(test_settings: APISettings) -> TokenManager:
    return build_token_manager(test_settings)


@pytest.fixture()
def auth_headers(token_manager: TokenManager):
    """Return a factory producing ``Authorization`` headers for a seeded tenant."""

    def _headers(tenant: SimpleNamespace, *, role: str | None = None) -> dict[str, str]:
        token = token_manager.generate_token(
            TokenKind.SESSION,
            sub=tenant.user_id,
            email=tenant.email,
            tenant_id=tenant.tenant_id,
            tenant_slug=tenant.slug,
            role=role or tenant.role,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path: Path):
    """File-backed SQLite control plane so concurrent sessions share state."""
    engine = get_local_engine(tmp_path / "control-plane.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def mock_session() -> AsyncMock:
    """Return a mock AsyncSession for tests that never touch the database."""
    session = AsyncMock()
    session.add = MagicMock()
    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = None
    result_mock.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=result_mock)
    return session


@pytest.fixture()
def seed(session_factory: async_sessionmaker[AsyncSession]):
    """Return an async factory that commits a tenant with its owner.

    The tenant is left at *stage* with *tenant_status*; passing *plan*
    also creates its subscription.
    """

    async def _seed(
        slug: str = "acme",
        *,
        stage: OnboardingStage = OnboardingStage.EMAIL_VERIFIED,
        tenant_status: str = "PROVISIONING",
        role: str = "owner",
        plan: str | None = None,
        billing_cycle: str = "monthly",
        subscription: dict[str, Any] | None = None,
    ) -> SimpleNamespace:
        email = f"owner@{slug}.io"
        async with session_factory() as session:
            user = await UserRepository(session).create(email, f"{slug.title()} Owner")
            tenant = await TenantRepository(session).create(slug, f"{slug.title()} Inc", email)
            await MembershipRepository(session).add(tenant.id, user.id, role=role)
            onboarding = OnboardingRepository(session)
            await onboarding.create(tenant.id)
            if stage is not OnboardingStage.SIGNUP_STARTED:
                await onboarding.write_stage(tenant.id, expected=OnboardingStage.SIGNUP_STARTED, target=stage)
            if tenant_status != "PROVISIONING":
                await TenantRepository(session).set_status(tenant.id, tenant_status)
            if plan is not None:
                subs = SubscriptionRepository(session)
                await subs.upsert_plan(tenant.id, plan, billing_cycle)
                if subscription:
                    await subs.update_if(tenant.id, expected={}, values=subscription)
            await session.commit()
            return SimpleNamespace(
                tenant_id=tenant.id,
                user_id=user.id,
                slug=slug,
                email=email,
                role=role,
            )

    return _seed


@pytest.fixture()
def add_member(session_factory: async_sessionmaker[AsyncSession]):
    """Return an async factory adding a verified user to an existing tenant."""

    async def _add(tenant: SimpleNamespace, email: str, *, role: str = "member") -> SimpleNamespace:
        async with session_factory() as session:
            user = await UserRepository(session).create(email, email.split("@")[0])
            await MembershipRepository(session).add(tenant.tenant_id, user.id, role=role)
            await session.commit()
        return SimpleNamespace(
            tenant_id=tenant.tenant_id,
            user_id=user.id,
            slug=tenant.slug,
            email=email,
            role=role,
        )

    return _add


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_gateway() -> MagicMock:
    """Return a PaymentGateway double with every processor call mocked."""
    gateway = MagicMock(spec=PaymentGateway)
    gateway.configured = True
    gateway.cancel_at_period_end = AsyncMock(return_value={"id": "sub_123"})
    gateway.cancel_immediately = AsyncMock(return_value={"id": "sub_123", "status": "canceled"})
    gateway.resume = AsyncMock(return_value={"id": "sub_123"})
    gateway.change_price = AsyncMock(return_value={"id": "sub_123"})
    gateway.create_checkout_session = AsyncMock(
        return_value={"id": "cs_test_123", "url": "https://checkout.test/cs_test_123"}
    )
    gateway.retrieve_checkout_session = AsyncMock()
    gateway.create_portal_session = AsyncMock(return_value="https://billing.test/portal")
    gateway.list_invoices = AsyncMock(
        return_value=[
            {
                "id": "in_123",
                "number": "ACME-0001",
                "status": "paid",
                "amount": 49.0,
                "currency": "USD",
                "created_at": datetime(2026, 1, 1, tzinfo=UTC),
                "due_date": None,
                "paid_at": datetime(2026, 1, 1, 0, 5, tzinfo=UTC),
                "invoice_pdf": "https://billing.test/in_123.pdf",
                "hosted_invoice_url": "https://billing.test/in_123",
            }
        ]
    )
    gateway.construct_event = MagicMock()
    return gateway


@pytest.fixture()
def mock_email() -> AsyncMock:
    email = AsyncMock(spec=EmailService)
    email.enabled = False
    email.send_verification_code = AsyncMock(return_value=True)
    email.send_invite = AsyncMock(return_value=True)
    return email


@pytest.fixture()
def tenant_router(session_factory: async_sessionmaker[AsyncSession], vault: CredentialVault) -> TenantRouter:
    return TenantRouter(session_factory, vault)


@pytest.fixture()
def provisioning_service(
    session_factory: async_sessionmaker[AsyncSession],
    vault: CredentialVault,
    tenant_router: TenantRouter,
    tmp_path: Path,
) -> ProvisioningService:
    return ProvisioningService(
        session_factory,
        vault=vault,
        infra=MockInfraClient(tmp_path / "tenants"),
        tenant_router=tenant_router,
    )


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    vault: CredentialVault,
    token_manager: TokenManager,
    mock_gateway: MagicMock,
    mock_email: AsyncMock,
    tenant_router: TenantRouter,
    provisioning_service: ProvisioningService,
):
    """Create a FastAPI app wired to the test database and collaborators.

    ``ASGITransport`` does not run the lifespan, so the application-scoped
    components it would create are placed on ``app.state`` here.
    """
    application = create_app()

    async def _override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_vault] = lambda: vault
    application.dependency_overrides[get_token_manager] = lambda: token_manager
    application.dependency_overrides[get_payment_gateway] = lambda: mock_gateway
    application.dependency_overrides[get_email_service] = lambda: mock_email

    application.state.tenant_router = tenant_router
    application.state.tenant_locks = TenantLockRegistry()
    application.state.provisioning = provisioning_service

    yield application

    await provisioning_service.close()
    await tenant_router.close()


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app without a socket."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
