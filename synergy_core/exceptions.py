"""Custom exceptions for Synergy Core."""


class SynergyError(Exception):
    """Base exception for Synergy Core."""

    pass


class ConfigurationError(SynergyError):
    """Configuration-related errors."""

    pass


class LLMError(SynergyError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderError(SynergyError):
    """Provider (client or agent) errors."""

    def __init__(self, provider_id: str, message: str):
        super().__init__(message)
        self.provider_id = provider_id


class ProviderNotFoundError(ProviderError):
    """Provider is not registered."""

    def __init__(self, provider_id: str):
        super().__init__(provider_id, f"Provider not found: {provider_id}")


class ProviderNotConfiguredError(ProviderError):
    """Provider is missing required credentials or config."""

    def __init__(self, provider_id: str, missing: list[str]):
        super().__init__(
            provider_id,
            f"Provider '{provider_id}' is not configured: missing {', '.join(missing)}",
        )
        self.missing = list(missing)


class DependencyResolutionError(ProviderError):
    """An agent dependency could not be resolved."""

    def __init__(self, provider_id: str, dependency_id: str, reason: str):
        super().__init__(
            provider_id,
            f"Agent '{provider_id}' cannot resolve dependency '{dependency_id}': {reason}",
        )
        self.dependency_id = dependency_id
        self.reason = reason


class CapabilityError(SynergyError):
    """Capability errors."""

    pass


class CapabilityNotFoundError(CapabilityError):
    """Capability name is not bound to any active provider."""

    def __init__(self, capability_name: str):
        super().__init__(f"Tool not found: {capability_name}")
        self.capability_name = capability_name


class CapabilityExecutionError(CapabilityError):
    """A provider raised instead of returning a failed result."""

    def __init__(self, capability_name: str, message: str):
        super().__init__(f"Tool '{capability_name}' failed: {message}")
        self.capability_name = capability_name


class OrchestrationError(SynergyError):
    """Orchestration run errors."""

    pass


class RunCancelledError(OrchestrationError):
    """Orchestration run was cancelled by the caller."""

    def __init__(self, run_id: str):
        super().__init__(f"Run cancelled: {run_id}")
        self.run_id = run_id
