"""Provider registries for clients and agents."""

from dataclasses import dataclass, field
from typing import Callable

from synergy_core.exceptions import ConfigurationError
from synergy_core.logging import get_logger
from synergy_core.providers.base import AgentBase, Provider, ProviderMetadata, is_configured
from synergy_core.storage import ProviderConfigStore, ProviderRecord

log = get_logger(__name__)

ProviderFactory = Callable[[], Provider]


def is_provider_configured(provider: Provider, record: ProviderRecord | None) -> bool:
    """Configured means no required inputs, or every required input is persisted."""
    record = record or ProviderRecord()
    return (
        is_configured(provider.get_credential_fields(), record.credentials)
        and is_configured(provider.get_config_fields(), record.config)
    )


@dataclass
class _Registration:
    metadata: ProviderMetadata
    factory: ProviderFactory
    dependencies: tuple[str, ...] = ()
    instance: Provider | None = field(default=None, repr=False)


class ProviderRegistry:
    """Catalog of provider factories with one lazily created instance per id."""

    kind = "client"

    def __init__(self):
        self._entries: dict[str, _Registration] = {}

    def _describe(self, factory: ProviderFactory) -> tuple[ProviderMetadata, tuple[str, ...], Provider | None]:
        """Read metadata and dependencies from the factory.

        Factories without class-level metadata are called once; that
        instance is returned so it can become the cached instance.
        """
        metadata = getattr(factory, "metadata", None)
        dependencies = getattr(factory, "dependencies", None)
        if isinstance(metadata, ProviderMetadata):
            return metadata, tuple(dependencies or ()), None
        instance = factory()
        deps = tuple(instance.get_dependencies()) if isinstance(instance, AgentBase) else ()
        return instance.get_metadata(), deps, instance

    def register(self, factory: ProviderFactory, metadata: ProviderMetadata | None = None) -> str:
        """Register a provider factory (usually the provider class).

        Args:
            factory: Zero-argument callable returning a provider instance
            metadata: Optional metadata override; read from the provider otherwise

        Returns:
            The registered provider id
        """
        described, dependencies, instance = self._describe(factory)
        metadata = metadata or described
        if metadata.id in self._entries:
            log.warning("Provider already registered, overwriting", kind=self.kind, provider=metadata.id)
        self._entries[metadata.id] = _Registration(
            metadata=metadata,
            factory=factory,
            dependencies=dependencies,
            instance=instance,
        )
        log.debug("Registered provider", kind=self.kind, provider=metadata.id)
        return metadata.id

    def unregister(self, provider_id: str) -> bool:
        """Remove a registration; a cached instance is dropped with it."""
        return self._entries.pop(provider_id, None) is not None

    def has(self, provider_id: str) -> bool:
        return provider_id in self._entries

    def get_instance(self, provider_id: str) -> Provider | None:
        """Return the cached instance, creating it on first use.

        Returns None for unregistered ids.
        """
        entry = self._entries.get(provider_id)
        if entry is None:
            log.warning("Provider not found", kind=self.kind, provider=provider_id)
            return None
        if entry.instance is None:
            entry.instance = entry.factory()
        return entry.instance

    def create_instance(self, provider_id: str) -> Provider | None:
        """Return a fresh, uncached instance."""
        entry = self._entries.get(provider_id)
        if entry is None:
            log.warning("Provider not found", kind=self.kind, provider=provider_id)
            return None
        return entry.factory()

    def get_metadata(self, provider_id: str) -> ProviderMetadata | None:
        entry = self._entries.get(provider_id)
        return entry.metadata if entry else None

    def get_all_ids(self) -> list[str]:
        return list(self._entries)

    def get_all_metadata(self) -> list[ProviderMetadata]:
        return [entry.metadata for entry in self._entries.values()]

    def search_by_tag(self, tag: str) -> list[ProviderMetadata]:
        needle = (tag or "").strip().lower()
        return [
            metadata
            for metadata in self.get_all_metadata()
            if any(needle in t.lower() for t in metadata.tags)
        ]

    def clear(self) -> None:
        self._entries.clear()


class AgentRegistry(ProviderRegistry):
    """Registry of agents, which declare the client ids they depend on."""

    kind = "agent"

    def get_dependencies(self, agent_id: str) -> list[str]:
        entry = self._entries.get(agent_id)
        return list(entry.dependencies) if entry else []

    def agents_depending_on(self, client_id: str) -> list[str]:
        return [
            agent_id
            for agent_id, entry in self._entries.items()
            if client_id in entry.dependencies
        ]

    async def can_resolve_dependencies(
        self,
        agent_id: str,
        clients: ProviderRegistry,
        store: ProviderConfigStore,
    ) -> bool:
        """True iff every declared client is registered and configured."""
        if not self.has(agent_id):
            return False
        for dep in self.get_dependencies(agent_id):
            client = clients.get_instance(dep)
            if client is None:
                log.info("Agent dependency not registered", agent=agent_id, dependency=dep)
                return False
            try:
                record = await store.get_client_record(dep)
            except ConfigurationError as e:
                log.warning("Agent dependency record unreadable", agent=agent_id, dependency=dep, error=str(e))
                return False
            if not is_provider_configured(client, record):
                log.info("Agent dependency not configured", agent=agent_id, dependency=dep)
                return False
        return True


# Global registries
_client_registry: ProviderRegistry | None = None
_agent_registry: AgentRegistry | None = None


def get_client_registry() -> ProviderRegistry:
    """Get the global client registry, populated with built-in clients."""
    global _client_registry
    if _client_registry is None:
        from synergy_core.providers import register_builtin_clients
        _client_registry = ProviderRegistry()
        register_builtin_clients(_client_registry)
    return _client_registry


def get_agent_registry() -> AgentRegistry:
    """Get the global agent registry, populated with built-in agents."""
    global _agent_registry
    if _agent_registry is None:
        from synergy_core.providers import register_builtin_agents
        _agent_registry = AgentRegistry()
        register_builtin_agents(_agent_registry)
    return _agent_registry

