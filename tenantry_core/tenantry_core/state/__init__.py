"""Control-plane state persistence (PostgreSQL in production, SQLite locally)."""

from tenantry_core.state.database import get_engine, session_scope
from tenantry_core.state.repository import (
    InviteRepository,
    MembershipRepository,
    OnboardingRepository,
    SubscriptionRepository,
    TenantRepository,
    UserRepository,
    VerificationTokenRepository,
)

__all__ = [
    "InviteRepository",
    "MembershipRepository",
    "OnboardingRepository",
    "SubscriptionRepository",
    "TenantRepository",
    "UserRepository",
    "VerificationTokenRepository",
    "get_engine",
    "session_scope",
]
