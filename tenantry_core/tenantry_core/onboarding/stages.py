"""Onboarding stage model: ordering, transitions, and canonical routes.

Stages form a closed, totally ordered enum.  A stage is reachable only from
itself (idempotent re-entry) or from its immediate predecessor.  Everything
in this module is pure so it can be used without a database session or lock.
"""

from __future__ import annotations

from enum import Enum


class OnboardingStage(str, Enum):
    """Ordered checkpoints in the tenant onboarding pipeline."""

    SIGNUP_STARTED = "SIGNUP_STARTED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    DATAROOM_CREATED = "DATAROOM_CREATED"
    USE_CASE_SELECTED = "USE_CASE_SELECTED"
    WORKFLOW_SETUP = "WORKFLOW_SETUP"
    USERS_INVITED = "USERS_INVITED"
    PLAN_SELECTED = "PLAN_SELECTED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PROVISIONING = "PROVISIONING"
    ACTIVATED = "ACTIVATED"

    @property
    def ordinal(self) -> int:
        return _ORDER[self]

    @property
    def timestamp_field(self) -> str:
        """Name of the ``onboarding_sessions`` column that records first entry."""
        return _TIMESTAMP_FIELDS[self]

    def successor(self) -> OnboardingStage | None:
        """Return the next stage, or ``None`` for the terminal stage."""
        idx = self.ordinal + 1
        if idx >= len(_STAGES):
            return None
        return _STAGES[idx]


_STAGES: tuple[OnboardingStage, ...] = tuple(OnboardingStage)
_ORDER: dict[OnboardingStage, int] = {stage: idx for idx, stage in enumerate(_STAGES)}

_TIMESTAMP_FIELDS: dict[OnboardingStage, str] = {
    OnboardingStage.SIGNUP_STARTED: "signup_at",
    OnboardingStage.EMAIL_VERIFIED: "email_verified_at",
    OnboardingStage.DATAROOM_CREATED: "dataroom_created_at",
    OnboardingStage.USE_CASE_SELECTED: "use_case_selected_at",
    OnboardingStage.WORKFLOW_SETUP: "workflow_setup_at",
    OnboardingStage.USERS_INVITED: "users_invited_at",
    OnboardingStage.PLAN_SELECTED: "plan_selected_at",
    OnboardingStage.PAYMENT_COMPLETED: "payment_completed_at",
    OnboardingStage.PROVISIONING: "provisioning_at",
    OnboardingStage.ACTIVATED: "activated_at",
}

# Explicit transition table: each stage maps to the set of stages that may
# write it.  Built from the total order so the two never disagree.
TRANSITIONS: dict[OnboardingStage, frozenset[OnboardingStage]] = {
    stage: frozenset({stage} if idx == 0 else {stage, _STAGES[idx - 1]}) for idx, stage in enumerate(_STAGES)
}

# Stages from which the provisioning orchestrator may run.
PROVISIONABLE_STAGES: frozenset[OnboardingStage] = frozenset(
    {OnboardingStage.PAYMENT_COMPLETED, OnboardingStage.PROVISIONING}
)


def parse_stage(raw: str) -> OnboardingStage:
    """Convert a stored or client-supplied value into an :class:`OnboardingStage`.

    Unknown values are rejected rather than coerced.

    Raises
    ------
    ValueError
        If *raw* is not the exact name of a stage.
    """
    try:
        return OnboardingStage(raw)
    except ValueError:
        raise ValueError(f"Unknown onboarding stage '{raw}'. Valid stages: {[s.value for s in _STAGES]}")


def can_transition(current: OnboardingStage, target: OnboardingStage) -> bool:
    """Return ``True`` if *target* may be written while the session is at *current*."""
    return current in TRANSITIONS[target]


# ---------------------------------------------------------------------------
# Canonical routes
# ---------------------------------------------------------------------------

_WORKSPACE_SETUP = "/workspace-setup"
_PRICING = "/pricing"
_PROVISIONING = "/provisioning"

_ROUTES: dict[OnboardingStage, str] = {
    OnboardingStage.SIGNUP_STARTED: "/verify-email",
    OnboardingStage.EMAIL_VERIFIED: _WORKSPACE_SETUP,
    OnboardingStage.DATAROOM_CREATED: _WORKSPACE_SETUP,
    OnboardingStage.USE_CASE_SELECTED: _WORKSPACE_SETUP,
    OnboardingStage.WORKFLOW_SETUP: _WORKSPACE_SETUP,
    OnboardingStage.USERS_INVITED: _PRICING,
    OnboardingStage.PLAN_SELECTED: _PRICING,
    OnboardingStage.PAYMENT_COMPLETED: _PROVISIONING,
    OnboardingStage.PROVISIONING: _PROVISIONING,
}

_WORKSPACE_SETUP_STEPS: dict[OnboardingStage, int] = {
    OnboardingStage.EMAIL_VERIFIED: 1,
    OnboardingStage.DATAROOM_CREATED: 2,
    OnboardingStage.USE_CASE_SELECTED: 3,
    OnboardingStage.WORKFLOW_SETUP: 3,
}


def route_for_stage(stage: OnboardingStage, tenant_slug: str | None = None) -> str:
    """Return the canonical client route for a tenant sitting at *stage*.

    The activated stage routes into the tenant's own workspace, which needs
    the slug; without one the caller is sent to the provisioning screen.
    """
    if stage is OnboardingStage.ACTIVATED:
        if tenant_slug:
            return f"/{tenant_slug}/Dashboard/Library"
        return _PROVISIONING
    return _ROUTES[stage]


def workspace_setup_step(stage: OnboardingStage) -> int | None:
    """Return the 1-based workspace-setup wizard step for *stage*, if any."""
    return _WORKSPACE_SETUP_STEPS.get(stage)
