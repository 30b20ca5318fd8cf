"""Provisioning orchestrator: create a tenant's isolated resources.

The orchestrator runs only while the onboarding stage is PAYMENT_COMPLETED
or PROVISIONING.  It records PROVISIONING in its own committed transaction
before calling the infrastructure collaborator, so a failed or interrupted
run leaves the tenant resumable at PROVISIONING.  On success the connection
string is sealed by the vault, stored with a bumped secret generation, the
stage moves to ACTIVATED, and the router's cached handle is invalidated.

Runs are at-least-once.  A repeated run for the same tenant asks the
collaborator for the same resource name again, and the collaborator's
create-by-name contract makes that harmless.  A run for a tenant that is
already ACTIVATED with a stored secret is a no-op.

The service is application-scoped: it opens its own sessions from the
session factory and can be scheduled as a background task with
:meth:`ProvisioningService.schedule`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenantry_core.onboarding.stages import PROVISIONABLE_STAGES, OnboardingStage, parse_stage, route_for_stage
from tenantry_core.state.database import session_scope
from tenantry_core.state.repository import OnboardingRepository, TenantRepository

from tenantry_api.errors import Conflict, ControlPlaneError, NotFound, ProvisioningFailed
from tenantry_api.security import CredentialVault
from tenantry_api.services.infra_client import InfraClient, resource_name_for
from tenantry_api.services.tenant_router import TenantRouter

logger = logging.getLogger(__name__)


class ProvisioningService:
    """Drive tenants from PAYMENT_COMPLETED to ACTIVATED.

    Parameters
    ----------
    session_factory:
        Control-plane session factory.  Each phase of a run uses its own
        short transaction.
    vault:
        Seals the connection string before it is stored.
    infra:
        Infrastructure-automation collaborator.
    tenant_router:
        Data-plane router whose cached handle is invalidated after the
        secret is rewritten.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        vault: CredentialVault,
        infra: InfraClient,
        tenant_router: TenantRouter,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._infra = infra
        self._router = tenant_router
        self._tasks: set[asyncio.Task[dict[str, Any]]] = set()
        self._running: dict[str, asyncio.Task[dict[str, Any]]] = {}

    async def provision(self, tenant_id: str) -> dict[str, Any]:
        """Provision *tenant_id* and return ``{status, tenant_slug, redirect_url}``.

        Raises
        ------
        NotFound
            If the tenant or its onboarding session does not exist.
        Conflict
            If the tenant has not reached PAYMENT_COMPLETED.
        ProvisioningFailed
            If the collaborator call failed.  The stage stays at
            PROVISIONING and a later call resumes from there.
        """
        async with session_scope(self._session_factory) as session:
            tenant = await TenantRepository(session).get_by_id(tenant_id)
            onboarding_repo = OnboardingRepository(session)
            onboarding = await onboarding_repo.get(tenant_id)
            if tenant is None or onboarding is None:
                raise NotFound(f"Tenant '{tenant_id}' not found")
            slug = tenant.slug
            stage = parse_stage(onboarding.stage)

            if stage is OnboardingStage.ACTIVATED and tenant.connection_secret_encrypted:
                logger.info("Tenant %s already provisioned; nothing to do", slug)
                return self._result("already_provisioned", slug, stage)
            if stage not in PROVISIONABLE_STAGES and stage is not OnboardingStage.ACTIVATED:
                raise Conflict(f"Tenant is at {stage.value}; payment must complete before provisioning")

            if stage is OnboardingStage.PAYMENT_COMPLETED:
                await onboarding_repo.write_stage(
                    tenant_id,
                    expected=stage,
                    target=OnboardingStage.PROVISIONING,
                )

        name = resource_name_for(slug)
        logger.info("Provisioning tenant %s as %s", slug, name, extra={"tenant_slug": slug})
        try:
            resources = await self._infra.create_tenant_resources(name)
        except ProvisioningFailed:
            logger.error("Provisioning failed for tenant %s; stage left at PROVISIONING", slug)
            raise
        except Exception as exc:
            logger.error("Provisioning failed for tenant %s: %s", slug, type(exc).__name__)
            raise ProvisioningFailed(f"Provisioning failed for tenant '{slug}'") from exc

        sealed = self._vault.encrypt(resources.connection_string.get_secret_value())

        async with session_scope(self._session_factory) as session:
            generation = await TenantRepository(session).store_connection_secret(
                tenant_id,
                sealed,
                bucket_name=resources.bucket_name,
                provider=self._infra.provider,
            )
            onboarding_repo = OnboardingRepository(session)
            onboarding = await onboarding_repo.get(tenant_id)
            current = parse_stage(onboarding.stage) if onboarding is not None else OnboardingStage.PROVISIONING
            if current is OnboardingStage.PROVISIONING:
                await onboarding_repo.write_stage(
                    tenant_id,
                    expected=OnboardingStage.PROVISIONING,
                    target=OnboardingStage.ACTIVATED,
                )

        await self._router.invalidate(slug)
        logger.info("Tenant %s activated (secret generation %d)", slug, generation, extra={"tenant_slug": slug})
        return self._result("activated", slug, OnboardingStage.ACTIVATED)

    @staticmethod
    def _result(status: str, slug: str, stage: OnboardingStage) -> dict[str, Any]:
        return {
            "status": status,
            "tenant_slug": slug,
            "stage": stage.value,
            "redirect_url": route_for_stage(stage, slug),
        }

    # -- Background execution ------------------------------------------------

    def schedule(self, tenant_id: str) -> asyncio.Task[dict[str, Any]]:
        """Run :meth:`provision` as a background task and return it.

        While a run for *tenant_id* is in flight, the same task is returned
        instead of starting another.  Failures are logged, never raised
        into the scheduler.
        """
        existing = self._running.get(tenant_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self.provision(tenant_id), name=f"provision-{tenant_id}")
        self._tasks.add(task)
        self._running[tenant_id] = task
        task.add_done_callback(lambda t, tid=tenant_id: self._on_done(tid, t))
        return task

    def _on_done(self, tenant_id: str, task: asyncio.Task[dict[str, Any]]) -> None:
        self._tasks.discard(task)
        if self._running.get(tenant_id) is task:
            del self._running[tenant_id]
        if task.cancelled():
            logger.warning("Provisioning for tenant %s was cancelled", tenant_id)
            return
        exc = task.exception()
        if isinstance(exc, ControlPlaneError):
            logger.warning("Background provisioning for tenant %s failed: %s", tenant_id, exc.message)
        elif exc is not None:
            logger.error("Background provisioning for tenant %s crashed", tenant_id, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every scheduled run to finish (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.wait_idle()
        await self._infra.close()
