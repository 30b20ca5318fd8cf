"""Transactional email delivery (verification codes and team invites).

Delivery is best-effort: every public method returns ``True`` on success
and ``False`` on any failure.  Errors are logged and never propagated, so a
mail outage can never block signup or onboarding.  Codes are never logged.
"""

from __future__ import annotations

import html
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class EmailService:
    """Thin async wrapper around an HTTP email API.

    Parameters
    ----------
    api_url:
        Endpoint accepting ``POST`` of ``{"from", "to", "subject", "html"}``.
        When empty, delivery is disabled and every send is a logged no-op.
    api_key:
        Bearer credential for the email API.
    sender:
        ``From`` header value.
    app_url:
        Public web app URL used in invite links.
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests inject one with a
        mock transport).  A client passed in is not closed by :meth:`close`.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        *,
        sender: str,
        app_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._sender = sender
        self._app_url = app_url.rstrip("/")
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), headers=headers)

    @property
    def enabled(self) -> bool:
        return bool(self._api_url)

    async def send_verification_code(self, email: str, code: str, *, purpose: str = "signup") -> bool:
        """Send a one-time code for signup or sign-in."""
        action = "verify your email" if purpose == "signup" else "sign in"
        body = (
            f"<p>Use this code to {action}:</p>"
            f"<p style='font-size:24px;letter-spacing:4px'><strong>{html.escape(code)}</strong></p>"
            "<p>The code expires in 10 minutes.</p>"
        )
        return await self._send(email, "Your Tenantry verification code", body)

    async def send_invite(self, email: str, *, workspace_name: str, inviter_email: str) -> bool:
        """Invite *email* to join *workspace_name*."""
        body = (
            f"<p>{html.escape(inviter_email)} invited you to join "
            f"<strong>{html.escape(workspace_name)}</strong> on Tenantry.</p>"
            f"<p><a href='{self._app_url}/signin'>Accept the invitation</a></p>"
        )
        return await self._send(email, f"You're invited to {workspace_name}", body)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool if this service owns it."""
        if self._owns_client:
            await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _send(self, to: str, subject: str, body: str) -> bool:
        if not self.enabled:
            logger.info("Email delivery disabled; skipping '%s' to %s", subject, to)
            return False

        payload: dict[str, Any] = {"from": self._sender, "to": [to], "subject": subject, "html": body}
        try:
            response = await self._client.post(self._api_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Email API returned %d for '%s': %s",
                exc.response.status_code,
                subject,
                exc.response.text[:200],
            )
            return False
        except httpx.RequestError as exc:
            logger.warning("Email API unreachable for '%s': %s", subject, exc)
            return False

        logger.info("Sent '%s' to %s", subject, to)
        return True
