"""
Manager registry: one MemorySearchManager per tenant, plus the batch circuit
breakers shared by every manager using the same provider.
"""

import threading
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from sqlalchemy.engine import Engine

from agentmem.core.config import Settings
from agentmem.core.memory_config import MemorySearchConfig, resolve_memory_search_config
from agentmem.services.memory.embedder import BatchCircuitBreaker
from agentmem.services.memory.embeddings import ProviderSelection, create_embedding_provider
from agentmem.services.memory.errors import MemoryUnavailableError
from agentmem.services.memory.manager import MemorySearchManager, TenantLocks
from agentmem.services.memory.sessions import ChatHistoryReader
from agentmem.services.memory.sources import ContentLister
from agentmem.services.memory.types import Tenant

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[MemorySearchConfig], ProviderSelection]


class MemorySearchRegistry:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        provider_factory: Optional[ProviderFactory] = None,
        lister: Optional[ContentLister] = None,
        history: Optional[ChatHistoryReader] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.engine = engine
        self.settings = settings
        self.lister = lister
        self.history = history
        self._provider_factory = provider_factory or (
            lambda config: create_embedding_provider(config, settings, transport=transport)
        )
        self._managers: Dict[str, MemorySearchManager] = {}
        self._locks: Dict[str, TenantLocks] = {}
        self._breakers: Dict[str, BatchCircuitBreaker] = {}
        self._lock = threading.Lock()

    def breaker_for(self, provider_id: str) -> BatchCircuitBreaker:
        with self._lock:
            return self._breaker_for(provider_id)

    def _breaker_for(self, provider_id: str) -> BatchCircuitBreaker:
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            breaker = BatchCircuitBreaker(provider_id)
            self._breakers[provider_id] = breaker
        return breaker

    def resolve_config(self, overrides: Optional[Dict[str, Any]] = None) -> MemorySearchConfig:
        return resolve_memory_search_config(self.settings.get_memory_search_defaults(), overrides)

    def get_memory_search_manager(
        self,
        tenant: Tenant,
        overrides: Optional[Dict[str, Any]] = None,
        config: Optional[MemorySearchConfig] = None,
    ) -> MemorySearchManager:
        """Return the tenant's manager, creating and initializing it on first use.

        A tenant has at most one live manager. Calls without ``overrides`` or
        ``config`` reuse it as is; a call resolving to a different config replaces
        it, and the new manager shares the tenant's locks with the one it replaces.
        """
        explicit = overrides is not None or config is not None
        with self._lock:
            current = self._managers.get(tenant.key)
        if current is not None and not explicit:
            return current

        config = config or self.resolve_config(overrides)
        if not config.enabled:
            raise MemoryUnavailableError("memory search disabled")

        fingerprint = config.fingerprint()
        with self._lock:
            current = self._managers.get(tenant.key)
            if current is not None and current.config.fingerprint() == fingerprint:
                return current

            selection = self._provider_factory(config)
            locks = self._locks.setdefault(tenant.key, TenantLocks())
            manager = MemorySearchManager(
                tenant,
                config,
                selection,
                self.engine,
                lister=self.lister,
                history=self.history,
                breaker=self._breaker_for(selection.provider.id),
                locks=locks,
            )
            manager.initialize()
            manager.ensure_default_files()
            if current is not None:
                current.stop()
            manager.ensure_interval_sync()
            self._managers[tenant.key] = manager

        logger.info(
            "Memory search manager replaced" if current is not None else "Memory search manager created",
            tenant=tenant.key,
            provider=selection.provider.id,
            model=selection.provider.model,
            fallback_from=selection.fallback_from or None,
        )
        return manager

    def manager_for(self, tenant: Tenant) -> Optional[MemorySearchManager]:
        with self._lock:
            return self._managers.get(tenant.key)

    async def close(self) -> None:
        with self._lock:
            managers = list(self._managers.values())
            self._managers.clear()
        for manager in managers:
            await manager.close()
