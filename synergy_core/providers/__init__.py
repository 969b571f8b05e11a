"""Capability providers and their registries."""

from synergy_core.providers.base import (
    AgentBase,
    Capability,
    CapabilityParameter,
    CapabilityResult,
    ClientBase,
    FieldSpec,
    Provider,
    ProviderMetadata,
    is_configured,
)
from synergy_core.providers.browser import BrowserClient
from synergy_core.providers.jira import JiraAgent, JiraClient
from synergy_core.providers.registry import (
    AgentRegistry,
    ProviderRegistry,
    get_agent_registry,
    get_client_registry,
    is_provider_configured,
)


def register_builtin_clients(registry: ProviderRegistry) -> None:
    registry.register(BrowserClient)
    registry.register(JiraClient)


def register_builtin_agents(registry: AgentRegistry) -> None:
    registry.register(JiraAgent)


__all__ = [
    "AgentBase",
    "AgentRegistry",
    "BrowserClient",
    "Capability",
    "CapabilityParameter",
    "CapabilityResult",
    "ClientBase",
    "FieldSpec",
    "JiraAgent",
    "JiraClient",
    "Provider",
    "ProviderMetadata",
    "ProviderRegistry",
    "get_agent_registry",
    "get_client_registry",
    "is_configured",
    "is_provider_configured",
    "register_builtin_agents",
    "register_builtin_clients",
]
