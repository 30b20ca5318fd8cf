"""Clients for the infrastructure-automation collaborator.

The collaborator creates a tenant's isolated database and object-storage
bucket.  Its contract is ``create_tenant_resources(name)``, idempotent by
*name*: calling it twice for the same name returns the same resources
rather than creating a second set.  Two implementations exist:

- :class:`HTTPInfraClient` calls the infrastructure automation service,
  retrying transient failures with exponential backoff.
- :class:`MockInfraClient` places a SQLite database per tenant under a
  local directory, for development and tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Protocol

import httpx
from pydantic import BaseModel, SecretStr
from tenantry_core.retry import RetryConfig, async_retry_with_backoff

from tenantry_api.config import APISettings, ProvisioningProvider
from tenantry_api.errors import ProvisioningFailed

logger = logging.getLogger(__name__)

_RESOURCE_PREFIX = "tenantry-"
_MAX_RESOURCE_NAME = 40
_DIGEST_LENGTH = 8

# Longest slug whose resource name needs no shortening.
MAX_SLUG_LENGTH = _MAX_RESOURCE_NAME - len(_RESOURCE_PREFIX)


def resource_name_for(slug: str) -> str:
    """Return the deterministic infrastructure resource name for *slug*.

    Slugs up to :data:`MAX_SLUG_LENGTH` characters map one-to-one onto
    ``tenantry-{slug}``.  Longer slugs are shortened and suffixed with a
    digest of the full slug; signup never allocates such slugs, so a
    shortened name cannot coincide with another tenant's plain one.
    """
    name = f"{_RESOURCE_PREFIX}{slug}"
    if len(name) <= _MAX_RESOURCE_NAME:
        return name
    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    stem = slug[: MAX_SLUG_LENGTH - _DIGEST_LENGTH - 1].rstrip("-")
    return f"{_RESOURCE_PREFIX}{stem}-{digest}"


class TenantResources(BaseModel):
    """What the collaborator hands back for a provisioned tenant."""

    connection_string: SecretStr
    bucket_name: str


class InfraClient(Protocol):
    """Narrow interface the provisioning orchestrator depends on."""

    provider: str

    async def create_tenant_resources(self, name: str) -> TenantResources: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# HTTP provider
# ---------------------------------------------------------------------------


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, httpx.TransportError)


class HTTPInfraClient:
    """Call ``POST {base_url}/tenants`` on the infrastructure automation API.

    Parameters
    ----------
    base_url:
        Root URL of the automation service.
    api_token:
        Bearer credential; omitted from requests when empty.
    timeout:
        Per-attempt timeout in seconds.  Resource creation can take minutes.
    retry:
        Backoff policy for 5xx, 429, and transport errors.  4xx responses
        are not retried.
    client:
        Optional pre-built ``httpx.AsyncClient``.  A client passed in is
        not closed by :meth:`close`.
    """

    provider = ProvisioningProvider.HTTP.value

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        *,
        timeout: float = 120.0,
        retry: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._retry = retry or RetryConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
        )

    async def create_tenant_resources(self, name: str) -> TenantResources:
        """Create (or fetch, if it already exists) the resources for *name*.

        Raises
        ------
        ProvisioningFailed
            When the service rejects the request, stays unavailable after
            every retry, or returns a body without the expected fields.
        """

        async def _attempt() -> httpx.Response:
            response = await self._client.post("/tenants", json={"name": name})
            response.raise_for_status()
            return response

        try:
            response = await async_retry_with_backoff(
                _attempt,
                self._retry,
                (httpx.HTTPStatusError, httpx.TransportError),
                should_retry=_is_transient,
            )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Infrastructure API returned %d for %s: %s",
                exc.response.status_code,
                name,
                exc.response.text[:200],
            )
            raise ProvisioningFailed(f"Infrastructure service rejected resource creation for '{name}'") from exc
        except httpx.TransportError as exc:
            logger.error("Infrastructure API unreachable for %s: %s", name, exc)
            raise ProvisioningFailed("Infrastructure service is unreachable") from exc

        try:
            body = response.json()
            return TenantResources(
                connection_string=body["connectionString"],
                bucket_name=body["bucketName"],
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Infrastructure API returned an unusable body for %s", name)
            raise ProvisioningFailed("Infrastructure service returned an invalid response") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------


class MockInfraClient:
    """Local stand-in that gives each tenant its own SQLite database file.

    The file path is derived from the resource name, so repeated calls for
    the same name return the same connection string.
    """

    provider = ProvisioningProvider.MOCK.value

    def __init__(self, data_dir: str | Path, *, delay_seconds: float = 0.0) -> None:
        self._data_dir = Path(data_dir)
        self._delay = delay_seconds

    async def create_tenant_resources(self, name: str) -> TenantResources:
        if self._delay:
            await asyncio.sleep(self._delay)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        db_path = (self._data_dir / f"{name}.db").resolve()
        bucket_dir = self._data_dir / f"{name}-files"
        bucket_dir.mkdir(exist_ok=True)
        logger.info("Mock provisioning ready for %s", name)
        return TenantResources(
            connection_string=f"sqlite+aiosqlite:///{db_path}",
            bucket_name=bucket_dir.name,
        )

    async def close(self) -> None:
        return None


def build_infra_client(settings: APISettings) -> InfraClient:
    """Return the collaborator selected by ``API_PROVISIONING_PROVIDER``."""
    if settings.provisioning_provider == ProvisioningProvider.HTTP:
        return HTTPInfraClient(
            settings.infra_api_url,
            settings.infra_api_token.get_secret_value(),
            timeout=settings.infra_timeout,
            retry=RetryConfig(max_retries=settings.infra_max_retries),
        )
    return MockInfraClient(settings.mock_data_dir)
