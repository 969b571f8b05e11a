"""Build the model-facing tool catalog from the active working set."""

from dataclasses import dataclass, field
from typing import Collection

from synergy_core.config import get_config
from synergy_core.exceptions import DependencyResolutionError
from synergy_core.llm import ToolDefinition
from synergy_core.logging import get_logger
from synergy_core.providers.base import AgentBase, Provider
from synergy_core.providers.registry import AgentRegistry, ProviderRegistry, is_provider_configured
from synergy_core.storage import ProviderConfigStore, ProviderRecord

log = get_logger(__name__)


@dataclass(frozen=True)
class ToolBinding:
    """Resolved owner of one tool name."""

    name: str
    provider_id: str
    kind: str
    instance: Provider


@dataclass
class ToolCatalog:
    """Tool definitions for one model call plus the name -> owner map."""

    definitions: list[ToolDefinition] = field(default_factory=list)
    bindings: dict[str, ToolBinding] = field(default_factory=dict)
    provider_ids: list[str] = field(default_factory=list)
    owned: list[Provider] = field(default_factory=list, repr=False)

    def get(self, name: str) -> ToolBinding | None:
        return self.bindings.get(name)

    def names(self) -> list[str]:
        return [definition.name for definition in self.definitions]

    def __len__(self) -> int:
        return len(self.definitions)

    def add_provider(self, provider: Provider) -> None:
        """Add a provider's capabilities; names already bound are kept."""
        provider_id = provider.provider_id
        for capability in provider.get_capabilities():
            existing = self.bindings.get(capability.name)
            if existing is not None:
                log.warning(
                    "Duplicate tool name dropped",
                    tool=capability.name,
                    provider=provider_id,
                    kept=existing.provider_id,
                )
                continue
            self.bindings[capability.name] = ToolBinding(
                name=capability.name,
                provider_id=provider_id,
                kind=provider.kind,
                instance=provider,
            )
            self.definitions.append(capability.to_tool_definition())
        self.provider_ids.append(provider_id)

    async def close(self) -> None:
        """Destroy the instances created for this catalog alone."""
        owned, self.owned = self.owned, []
        for provider in owned:
            try:
                await provider.destroy()
            except Exception as e:
                log.warning("Failed to destroy provider", provider=provider.provider_id, error=str(e))


class ToolCatalogBuilder:
    """Turn provider ids into ready-to-dispatch tool bindings.

    Clients of the working set are processed before agents, each group in
    working-set order, so a client's tool wins a name collision with an
    agent's. A provider that fails any step is logged and omitted.

    Working-set ids are flat, and an agent may share its id with the client
    it wraps. Such an id is read as the client unless agent substitution
    picks the agent; the chosen kind is kept until the provider is loaded.
    """

    def __init__(
        self,
        clients: ProviderRegistry,
        agents: AgentRegistry,
        store: ProviderConfigStore,
        substitute_agents: bool | None = None,
        isolate_instances: bool | None = None,
    ):
        cfg = get_config()
        self.clients = clients
        self.agents = agents
        self.store = store
        self.substitute_agents = (
            cfg.catalog.substitute_agents if substitute_agents is None else substitute_agents
        )
        self.isolate_instances = (
            cfg.orchestration.isolate_provider_instances if isolate_instances is None else isolate_instances
        )

    def _instance(self, registry: ProviderRegistry, provider_id: str, catalog: ToolCatalog) -> Provider | None:
        """Shared registry instance, or a fresh one owned by ``catalog``."""
        if not self.isolate_instances:
            return registry.get_instance(provider_id)
        instance = registry.create_instance(provider_id)
        if instance is not None:
            catalog.owned.append(instance)
        return instance

    def _classify(self, ids: list[str]) -> list[tuple[str, str]]:
        entries: list[tuple[str, str]] = []
        for provider_id in ids:
            if self.clients.has(provider_id):
                entries.append(("client", provider_id))
            elif self.agents.has(provider_id):
                entries.append(("agent", provider_id))
            else:
                log.info("Unknown provider in working set", provider=provider_id)
        return entries

    async def build(self, active_ids: Collection[str], suppressed: Collection[str] = ()) -> ToolCatalog:
        """Build the catalog for the given working set.

        Args:
            active_ids: Provider ids in working-set order
            suppressed: Ids the user removed; never substituted in

        Returns:
            ToolCatalog with definitions and bindings
        """
        entries = self._classify(list(dict.fromkeys(active_ids)))
        if self.substitute_agents:
            entries = await self._substitute(entries, set(suppressed))

        catalog = ToolCatalog()
        for _, provider_id in [e for e in entries if e[0] == "client"]:
            try:
                client = await self._load_client(provider_id, catalog)
                if client is not None:
                    catalog.add_provider(client)
            except Exception as e:
                log.warning("Failed to load client tools", provider=provider_id, error=str(e))

        for _, provider_id in [e for e in entries if e[0] == "agent"]:
            try:
                agent = await self._load_agent(provider_id, catalog)
                if agent is not None:
                    catalog.add_provider(agent)
            except Exception as e:
                log.warning("Failed to load agent tools", provider=provider_id, error=str(e))

        log.info("Tool catalog built", providers=catalog.provider_ids, tools=len(catalog))
        return catalog

    async def _substitute(self, entries: list[tuple[str, str]], suppressed: set[str]) -> list[tuple[str, str]]:
        """Replace a client with a usable agent that wraps it."""
        result: list[tuple[str, str]] = []
        for kind, provider_id in entries:
            replacement = (kind, provider_id)
            if kind == "client":
                for agent_id in self.agents.agents_depending_on(provider_id):
                    if agent_id in suppressed:
                        continue
                    try:
                        usable = await self._agent_usable(agent_id)
                    except Exception as e:
                        log.warning("Agent substitution check failed", agent=agent_id, error=str(e))
                        usable = False
                    if usable:
                        log.debug("Substituting agent for client", client=provider_id, agent=agent_id)
                        replacement = ("agent", agent_id)
                        break
            if replacement not in result:
                result.append(replacement)
        return result

    async def _agent_usable(self, agent_id: str) -> bool:
        agent = self.agents.get_instance(agent_id)
        if agent is None:
            return False
        record = await self.store.get_agent_record(agent_id)
        if record is not None and not record.enabled:
            return False
        if not is_provider_configured(agent, record):
            return False
        return await self.agents.can_resolve_dependencies(agent_id, self.clients, self.store)

    async def _load_client(self, client_id: str, catalog: ToolCatalog) -> Provider | None:
        client = self._instance(self.clients, client_id, catalog)
        if client is None:
            return None
        record = await self.store.get_client_record(client_id)
        if record is not None and not record.enabled:
            log.info("Client disabled, skipping", provider=client_id)
            return None
        if not is_provider_configured(client, record):
            log.info("Client not configured, skipping", provider=client_id)
            return None
        record = record or ProviderRecord()
        client.set_credentials(record.credentials)
        client.set_config(record.config)
        return client

    async def _load_agent(self, agent_id: str, catalog: ToolCatalog) -> Provider | None:
        agent = self._instance(self.agents, agent_id, catalog)
        if agent is None:
            return None
        record = await self.store.get_agent_record(agent_id)
        if record is not None and not record.enabled:
            log.info("Agent disabled, skipping", provider=agent_id)
            return None
        if not is_provider_configured(agent, record):
            log.info("Agent not configured, skipping", provider=agent_id)
            return None
        if not await self.agents.can_resolve_dependencies(agent_id, self.clients, self.store):
            log.info("Agent dependencies not resolvable, skipping", provider=agent_id)
            return None

        record = record or ProviderRecord()
        agent.set_config(record.config)
        agent.set_credentials(record.credentials)
        if isinstance(agent, AgentBase):
            await self._resolve_dependencies(agent, catalog)
        return agent

    async def _resolve_dependencies(self, agent: AgentBase, catalog: ToolCatalog) -> None:
        """Credential, initialize and wire every dependency of an agent.

        Raises:
            DependencyResolutionError if any dependency cannot be made ready
        """
        for dep_id in agent.get_dependencies():
            client = self._instance(self.clients, dep_id, catalog)
            if client is None:
                raise DependencyResolutionError(agent.provider_id, dep_id, "not registered")
            try:
                dep_record = await self.store.get_client_record(dep_id) or ProviderRecord()
                client.set_credentials(dep_record.credentials)
                client.set_config(dep_record.config)
                await client.initialize()
            except Exception as e:
                raise DependencyResolutionError(agent.provider_id, dep_id, str(e)) from e
            agent.set_dependency(dep_id, client)
