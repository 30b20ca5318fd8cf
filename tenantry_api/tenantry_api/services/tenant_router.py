"""Data-plane router: tenant slug -> live database handle.

The router owns a bounded LRU cache of :class:`TenantHandle` objects keyed
by slug.  Every handle is tagged with the ``secret_generation`` it was
built from.  :meth:`TenantRouter.resolve` reads the tenant's current
generation from the directory on every call and rebuilds the handle when
the cached one is stale, so a secret rewritten by provisioning is never
served from cache.  Readers never take a lock: cold resolutions for the
same ``(slug, generation)`` share one in-flight establishment task.

One router exists per application.  ``create_app()`` stores it on
``app.state.tenant_router``; handlers reach it through ``TenantRouterDep``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker
from tenantry_core.state.database import get_engine
from tenantry_core.state.repository import TenantRepository

from tenantry_api.errors import NotFound, NotProvisioned, ServiceUnavailable
from tenantry_api.security import CredentialVault

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[AsyncEngine]]


@dataclass(frozen=True)
class TenantHandle:
    """A reusable connection pool to one tenant's isolated database."""

    slug: str
    tenant_id: str
    generation: int
    engine: AsyncEngine


@dataclass(frozen=True)
class _DirectoryEntry:
    tenant_id: str
    generation: int
    sealed_secret: str


def make_default_connector(connect_timeout: float = 10.0, pool_size: int = 5) -> Connector:
    """Return a connector that builds an engine and proves it with ``SELECT 1``."""

    async def _connect(url: str) -> AsyncEngine:
        engine = get_engine(url, pool_size=pool_size, max_overflow=pool_size, connect_timeout=connect_timeout)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, OSError) as exc:
            await engine.dispose()
            logger.warning("Tenant database unreachable: %s", type(exc).__name__)
            raise ServiceUnavailable("Tenant database is unreachable") from None
        return engine

    return _connect


class TenantRouter:
    """Resolve tenant slugs to cached, generation-checked database handles.

    Parameters
    ----------
    session_factory:
        Control-plane session factory used for directory lookups.
    vault:
        Opens the sealed connection secret.  A :class:`DecryptionError` is
        raised to the caller and nothing is cached.
    max_size:
        Maximum number of cached handles; the least recently used handle
        is evicted and its pool disposed.
    connector:
        Turns a plaintext connection string into a verified engine.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        *,
        max_size: int = 128,
        connector: Connector | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._session_factory = session_factory
        self._vault = vault
        self._max_size = max_size
        self._connector = connector or make_default_connector()
        self._cache: OrderedDict[str, TenantHandle] = OrderedDict()
        self._inflight: dict[tuple[str, int], asyncio.Task[TenantHandle]] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, slug: object) -> bool:
        return slug in self._cache

    def cached_generation(self, slug: str) -> int | None:
        """Return the generation of the cached handle for *slug*, if any."""
        handle = self._cache.get(slug)
        return handle.generation if handle is not None else None

    # -- Resolution ----------------------------------------------------------

    async def resolve(self, slug: str) -> TenantHandle:
        """Return a live handle for *slug*.

        Raises
        ------
        NotFound
            No ACTIVE tenant has this slug.
        NotProvisioned
            The tenant is active but has no connection secret.
        DecryptionError
            The stored secret failed authentication.
        ServiceUnavailable
            The tenant database could not be reached.
        """
        entry = await self._lookup(slug)

        cached = self._cache.get(slug)
        if cached is not None and cached.generation == entry.generation:
            self._cache.move_to_end(slug)
            return cached

        key = (slug, entry.generation)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._establish(slug, entry))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _lookup(self, slug: str) -> _DirectoryEntry:
        async with self._session_factory() as session:
            tenant = await TenantRepository(session).get_by_slug(slug)
            if tenant is None or tenant.status != "ACTIVE":
                raise NotFound(f"Tenant '{slug}' not found")
            if not tenant.connection_secret_encrypted:
                raise NotProvisioned(f"Tenant '{slug}' has not been provisioned")
            return _DirectoryEntry(
                tenant_id=tenant.id,
                generation=tenant.secret_generation,
                sealed_secret=tenant.connection_secret_encrypted,
            )

    async def _establish(self, slug: str, entry: _DirectoryEntry) -> TenantHandle:
        url = self._vault.decrypt(entry.sealed_secret)
        engine = await self._connector(url)
        handle = TenantHandle(slug=slug, tenant_id=entry.tenant_id, generation=entry.generation, engine=engine)

        current = self._cache.get(slug)
        if current is not None and current.generation > handle.generation:
            # A newer generation landed while this one was connecting.
            await engine.dispose()
            return current

        self._cache[slug] = handle
        self._cache.move_to_end(slug)
        logger.info("Data-plane handle established for %s (generation %d)", slug, entry.generation)

        if current is not None and current is not handle:
            await current.engine.dispose()
        while len(self._cache) > self._max_size:
            evicted_slug, evicted = self._cache.popitem(last=False)
            logger.debug("Evicting data-plane handle for %s", evicted_slug)
            await evicted.engine.dispose()
        return handle

    # -- Invalidation --------------------------------------------------------

    async def invalidate(self, slug: str) -> None:
        """Drop the cached handle for *slug* and dispose its pool.

        The cache entry is removed before the first ``await`` so every
        resolution that starts afterwards rebuilds the handle.
        """
        handle = self._cache.pop(slug, None)
        if handle is None:
            return
        logger.info("Invalidated data-plane handle for %s (generation %d)", slug, handle.generation)
        await handle.engine.dispose()

    async def _invalidate_handle(self, handle: TenantHandle) -> None:
        if self._cache.get(handle.slug) is handle:
            await self.invalidate(handle.slug)

    @asynccontextmanager
    async def connect(self, slug: str) -> AsyncIterator[AsyncConnection]:
        """Yield a connection to *slug*'s database.

        A connection-level failure while the connection is in use drops
        the cached handle, so the next resolution reconnects.
        """
        handle = await self.resolve(slug)
        try:
            async with handle.engine.connect() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Data-plane connection for %s failed: %s", slug, type(exc).__name__)
            await self._invalidate_handle(handle)
            raise ServiceUnavailable("Tenant database is unreachable") from None

    async def close(self) -> None:
        """Dispose every cached pool (call during shutdown)."""
        for task in list(self._inflight.values()):
            task.cancel()
        handles = list(self._cache.values())
        self._cache.clear()
        for handle in handles:
            await handle.engine.dispose()
        logger.info("Tenant router closed (%d handle(s) disposed)", len(handles))
