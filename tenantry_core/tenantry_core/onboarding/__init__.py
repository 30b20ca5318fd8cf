"""Onboarding stage model shared by the API layer and the state store."""

from __future__ import annotations

from tenantry_core.onboarding.stages import (
    PROVISIONABLE_STAGES,
    TRANSITIONS,
    OnboardingStage,
    can_transition,
    parse_stage,
    route_for_stage,
    workspace_setup_step,
)

__all__ = [
    "OnboardingStage",
    "PROVISIONABLE_STAGES",
    "TRANSITIONS",
    "can_transition",
    "parse_stage",
    "route_for_stage",
    "workspace_setup_step",
]
