"""Onboarding state machine: step handlers over the stage model.

Every step goes through :meth:`OnboardingService.advance`, which

1. checks that the caller owns the tenant,
2. accepts the write only when the target is the current stage or its
   immediate successor (anything else is a successful no-op),
3. writes the stage, its payload columns and its first-entry timestamp in
   one compare-and-set ``UPDATE``, and
4. re-reads the stored stage and returns its canonical route.

A lost compare-and-set race is treated like an out-of-order call: nothing
is written and the caller is routed from whatever stage won.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from tenantry_core.onboarding.stages import (
    OnboardingStage,
    can_transition,
    parse_stage,
    route_for_stage,
    workspace_setup_step,
)
from tenantry_core.state.repository import (
    InviteRepository,
    MembershipRepository,
    OnboardingRepository,
    TenantRepository,
)
from tenantry_core.state.tables import OnboardingSessionTable

from tenantry_api.config import APISettings
from tenantry_api.errors import Forbidden, NotFound, ValidationError
from tenantry_api.services.email_service import EmailService

logger = logging.getLogger(__name__)

_MAX_NAME_LENGTH = 256
_MAX_USE_CASES = 20
_MAX_INVITES = 50
_INVITE_ROLES = frozenset({"admin", "member"})
_INVITE_EMAIL = TypeAdapter(EmailStr)


async def mark_payment_completed(session: AsyncSession, tenant_id: str) -> OnboardingStage | None:
    """Move a tenant from PLAN_SELECTED to PAYMENT_COMPLETED.

    Used by the free-plan checkout, the checkout verification endpoint and
    the processor webhook, so it runs without a user session.  Re-delivery
    is harmless: a tenant already past PLAN_SELECTED is left untouched.

    Returns
    -------
    OnboardingStage | None
        The stage stored after the write, or ``None`` if the tenant has no
        onboarding session.
    """
    repo = OnboardingRepository(session)
    row = await repo.get(tenant_id)
    if row is None:
        return None
    current = parse_stage(row.stage)
    if can_transition(current, OnboardingStage.PAYMENT_COMPLETED):
        if await repo.write_stage(tenant_id, expected=current, target=OnboardingStage.PAYMENT_COMPLETED):
            logger.info("Payment completed for tenant %s", tenant_id, extra={"tenant_id": tenant_id})
        row = await repo.get(tenant_id)
    return parse_stage(row.stage) if row is not None else None


def _stage_timestamps(row: OnboardingSessionTable) -> dict[str, str | None]:
    out: dict[str, str | None] = {}
    for stage in OnboardingStage:
        value = getattr(row, stage.timestamp_field)
        out[stage.timestamp_field] = value.isoformat() if value is not None else None
    return out


class OnboardingService:
    """Onboarding step handlers for one tenant and its owner.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings (invite lifetime).
    tenant_id:
        Tenant named by the caller's session.
    user_id:
        The caller; must hold the owner membership of *tenant_id*.
    notifier:
        Optional email service for invite delivery.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
        user_id: str,
        notifier: EmailService | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._user_id = user_id
        self._notifier = notifier
        self._repo = OnboardingRepository(session)

    async def _authorize(self) -> None:
        membership = await MembershipRepository(self._session).get(self._tenant_id, self._user_id)
        if membership is None or membership.role != "owner":
            logger.warning(
                "User %s attempted onboarding for tenant %s without ownership",
                self._user_id,
                self._tenant_id,
            )
            raise Forbidden("Only the workspace owner can complete onboarding")

    async def _load(self) -> OnboardingSessionTable:
        row = await self._repo.get(self._tenant_id)
        if row is None:
            raise NotFound("Onboarding session not found")
        return row

    async def _response(self, row: OnboardingSessionTable) -> dict[str, Any]:
        stage = parse_stage(row.stage)
        tenant = await TenantRepository(self._session).get_by_id(self._tenant_id)
        slug = tenant.slug if tenant is not None else None
        return {
            "success": True,
            "redirect_url": route_for_stage(stage, slug),
            "stage": stage.value,
        }

    # -- Transition ----------------------------------------------------------

    async def advance(
        self,
        target: OnboardingStage,
        *,
        values: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[bool, dict[str, Any]]:
        """Write *target* with its payload if the transition is legal.

        Parameters
        ----------
        target:
            Stage the step handler wants to record.
        values:
            Typed payload columns written in the same statement.
        payload:
            Free-form stage payload stored under ``stage_payloads[target]``.

        Returns
        -------
        tuple[bool, dict]
            Whether this call wrote the row, and the ``{success,
            redirect_url, stage}`` response for the stage now stored.
        """
        await self._authorize()
        row = await self._load()
        current = parse_stage(row.stage)

        written = False
        if can_transition(current, target):
            columns: dict[str, Any] = dict(values or {})
            if payload is not None:
                payloads = dict(row.stage_payloads or {})
                payloads[target.value] = payload
                columns["stage_payloads"] = payloads
            written = await self._repo.write_stage(
                self._tenant_id,
                expected=current,
                target=target,
                values=columns,
                expected_revision=row.revision,
            )
            if written:
                logger.info(
                    "Tenant %s onboarding %s -> %s",
                    self._tenant_id,
                    current.value,
                    target.value,
                    extra={"tenant_id": self._tenant_id, "stage": target.value},
                )
            else:
                logger.info("Stage write for tenant %s lost a concurrent update; re-reading", self._tenant_id)
            row = await self._load()
        else:
            logger.info(
                "Ignoring %s for tenant %s at stage %s",
                target.value,
                self._tenant_id,
                current.value,
            )

        return written, await self._response(row)

    # -- Step handlers -------------------------------------------------------

    async def create_dataroom(self, name: str) -> dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Workspace name is required")
        if len(name) > _MAX_NAME_LENGTH:
            raise ValidationError(f"Workspace name must be at most {_MAX_NAME_LENGTH} characters")
        _, response = await self.advance(
            OnboardingStage.DATAROOM_CREATED,
            values={"dataroom_name": name},
            payload={"dataroom_name": name},
        )
        return response

    async def select_use_cases(self, use_cases: list[str]) -> dict[str, Any]:
        cleaned = [uc.strip() for uc in use_cases if uc and uc.strip()]
        if not cleaned:
            raise ValidationError("Select at least one use case")
        if len(cleaned) > _MAX_USE_CASES:
            raise ValidationError(f"At most {_MAX_USE_CASES} use cases may be selected")
        written, response = await self.advance(
            OnboardingStage.USE_CASE_SELECTED,
            values={"use_cases": cleaned},
            payload={"use_cases": cleaned},
        )
        if written:
            await TenantRepository(self._session).set_use_case(self._tenant_id, cleaned[0][:128])
        return response

    async def setup_workflow(self, config: dict[str, Any] | None) -> dict[str, Any]:
        """Record the workflow configuration.  An empty config is valid."""
        config = dict(config or {})
        _, response = await self.advance(
            OnboardingStage.WORKFLOW_SETUP,
            values={"workflow_config": config},
            payload=config,
        )
        return response

    async def invite_team(self, invites: list[tuple[str, str | None]]) -> dict[str, Any]:
        """Record pending invites; an empty list skips the step.

        Duplicate emails (in the request or already invited) are skipped.
        Invite emails are best-effort and never fail the step.
        """
        if len(invites) > _MAX_INVITES:
            raise ValidationError(f"At most {_MAX_INVITES} invites per request")
        normalized: list[tuple[str, str]] = []
        for email, role in invites:
            email = (email or "").strip().lower()
            if not email:
                continue
            try:
                _INVITE_EMAIL.validate_python(email)
            except PydanticValidationError:
                raise ValidationError(f"Invalid email address '{email}'") from None
            role = (role or "member").strip().lower()
            if role not in _INVITE_ROLES:
                raise ValidationError(f"Invalid invite role '{role}'")
            normalized.append((email, role))

        written, response = await self.advance(
            OnboardingStage.USERS_INVITED,
            payload={"invited": [email for email, _ in normalized]},
        )

        created = []
        if written and normalized:
            created = await InviteRepository(self._session).create_many(
                self._tenant_id,
                normalized,
                ttl=timedelta(days=self._settings.invite_ttl_days),
            )
            logger.info("Created %d invite(s) for tenant %s", len(created), self._tenant_id)
            await self._send_invites([row.email for row in created])

        response["invited_count"] = len(created)
        return response

    async def _send_invites(self, emails: list[str]) -> None:
        if self._notifier is None or not emails:
            return
        row = await self._repo.get(self._tenant_id)
        tenant = await TenantRepository(self._session).get_by_id(self._tenant_id)
        workspace = (row.dataroom_name if row is not None else None) or (tenant.name if tenant else "your workspace")
        inviter = tenant.owner_email if tenant is not None else ""
        for email in emails:
            await self._notifier.send_invite(email, workspace_name=workspace, inviter_email=inviter)

    async def select_plan(self, plan: str, billing_cycle: str) -> tuple[bool, dict[str, Any]]:
        """Record the plan choice.  The caller updates the subscription when written."""
        return await self.advance(
            OnboardingStage.PLAN_SELECTED,
            values={"selected_plan": plan, "selected_billing": billing_cycle},
            payload={"plan": plan, "billing_cycle": billing_cycle},
        )

    async def complete_payment(self) -> dict[str, Any]:
        """Record a completed (or free) payment for the caller's tenant."""
        await self._authorize()
        await mark_payment_completed(self._session, self._tenant_id)
        return await self._response(await self._load())

    # -- Reads ---------------------------------------------------------------

    async def current_stage(self) -> OnboardingStage:
        return parse_stage((await self._load()).stage)

    async def get_status(self) -> dict[str, Any]:
        """Return the stage, route, wizard step, timestamps and pending invites."""
        membership = await MembershipRepository(self._session).get(self._tenant_id, self._user_id)
        if membership is None:
            raise Forbidden("Not a member of this tenant")
        row = await self._load()
        stage = parse_stage(row.stage)
        tenant = await TenantRepository(self._session).get_by_id(self._tenant_id)
        invites = await InviteRepository(self._session).list_for_tenant(self._tenant_id)
        return {
            "stage": stage.value,
            "redirect_url": route_for_stage(stage, tenant.slug if tenant else None),
            "workspace_setup_step": workspace_setup_step(stage),
            "tenant_slug": tenant.slug if tenant else None,
            "tenant_status": tenant.status if tenant else None,
            "dataroom_name": row.dataroom_name,
            "use_cases": row.use_cases or [],
            "workflow_config": row.workflow_config,
            "selected_plan": row.selected_plan,
            "selected_billing": row.selected_billing,
            "timestamps": _stage_timestamps(row),
            "pending_invites": [
                {"email": inv.email, "role": inv.role, "status": inv.status, "expires_at": inv.expires_at.isoformat()}
                for inv in invites
            ],
        }
