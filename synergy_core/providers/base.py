"""Capability provider contract shared by clients and agents."""

import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator

from synergy_core.exceptions import DependencyResolutionError, ProviderNotConfiguredError
from synergy_core.llm import ToolDefinition
from synergy_core.logging import get_logger

log = get_logger(__name__)

CapabilityHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class CapabilityParameter(BaseModel):
    """One named parameter of a capability."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None


class Capability(BaseModel):
    """A named, independently invocable operation exposed by a provider."""

    name: str
    description: str = ""
    parameters: list[CapabilityParameter] = Field(default_factory=list)

    def to_tool_definition(self) -> ToolDefinition:
        """Flatten the ordered parameter list into a JSON schema object."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in self.parameters:
            prop: dict[str, Any] = {"type": param.type, "description": param.description}
            if param.default is not None:
                prop["default"] = param.default
            properties[param.name] = prop
            if param.required:
                required.append(param.name)
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters={"type": "object", "properties": properties, "required": required},
        )


class FieldSpec(BaseModel):
    """Credential or config input declared by a provider."""

    key: str
    label: str = ""
    type: str = "text"
    required: bool = False
    placeholder: str = ""
    help_text: str = ""
    options: list[dict[str, str]] = Field(default_factory=list)
    default: Any = None


class ProviderMetadata(BaseModel):
    """Static provider description, immutable once registered."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    author: str = ""
    icon: str | None = None
    homepage: str | None = None
    tags: tuple[str, ...] = ()


class CapabilityResult(BaseModel):
    """Result from capability execution."""

    success: bool = True
    data: Any = None
    error: str | None = None
    context_note: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "CapabilityResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            self.error = "Capability execution failed"
        return self


def missing_required_fields(fields: list[FieldSpec], values: Mapping[str, Any] | None) -> list[str]:
    """Return keys of required fields that have no non-empty value."""
    values = values or {}
    missing: list[str] = []
    for spec in fields:
        if not spec.required:
            continue
        value = values.get(spec.key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(spec.key)
    return missing


def is_configured(fields: list[FieldSpec], values: Mapping[str, Any] | None) -> bool:
    """A provider is configured when it needs nothing or has every required value."""
    return not missing_required_fields(fields, values)


class Provider(ABC):
    """Base class for every capability provider."""

    kind: str = "provider"
    metadata: ProviderMetadata

    def __init__(self):
        self._credentials: dict[str, Any] = {}
        self._config: dict[str, Any] = {}
        self._initialized = False

    @property
    def provider_id(self) -> str:
        return self.get_metadata().id

    def get_metadata(self) -> ProviderMetadata:
        return self.metadata

    def get_credential_fields(self) -> list[FieldSpec]:
        return []

    def get_config_fields(self) -> list[FieldSpec]:
        return []

    @abstractmethod
    def get_capabilities(self) -> list[Capability]:
        pass

    def set_credentials(self, credentials: Mapping[str, Any] | None) -> None:
        new = dict(credentials or {})
        if new != self._credentials:
            self._initialized = False
        self._credentials = new

    def get_credentials(self) -> dict[str, Any]:
        return dict(self._credentials)

    def set_config(self, config: Mapping[str, Any] | None) -> None:
        new = dict(config or {})
        if new != self._config:
            self._initialized = False
        self._config = new

    def get_config(self) -> dict[str, Any]:
        return dict(self._config)

    def config_value(self, key: str) -> Any:
        """Config value with the declared field default as fallback."""
        value = self._config.get(key)
        if value not in (None, ""):
            return value
        for spec in self.get_config_fields():
            if spec.key == key:
                return spec.default
        return None

    def missing_fields(self) -> list[str]:
        return (
            missing_required_fields(self.get_credential_fields(), self._credentials)
            + missing_required_fields(self.get_config_fields(), self._config)
        )

    @property
    def is_configured(self) -> bool:
        return not self.missing_fields()

    @property
    def is_ready(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Validate inputs and run the connectivity check.

        Safe to call repeatedly; each call re-validates and reconnects.

        Raises:
            ProviderNotConfiguredError if required inputs are missing
        """
        missing = self.missing_fields()
        if missing:
            self._initialized = False
            raise ProviderNotConfiguredError(self.provider_id, missing)
        self._initialized = False
        await self._connect()
        self._initialized = True
        log.debug("Provider initialized", provider=self.provider_id, kind=self.kind)

    async def _connect(self) -> None:
        """Connectivity check hook for subclasses."""
        return None

    @abstractmethod
    async def execute_capability(self, name: str, parameters: dict[str, Any]) -> CapabilityResult:
        pass

    async def _dispatch(
        self,
        handlers: Mapping[str, CapabilityHandler],
        name: str,
        parameters: dict[str, Any],
    ) -> CapabilityResult:
        """Run the handler for ``name`` and wrap its outcome with timing."""
        started = time.monotonic()
        handler = handlers.get(name)
        if handler is None:
            return CapabilityResult(
                success=False,
                error=f"Unknown capability: {name}",
                metadata={"duration_ms": 0},
            )
        try:
            result = await handler(dict(parameters or {}))
        except Exception as e:
            log.warning("Capability failed", provider=self.provider_id, capability=name, error=str(e))
            return CapabilityResult(
                success=False,
                error=str(e) or e.__class__.__name__,
                metadata={"duration_ms": int((time.monotonic() - started) * 1000)},
            )
        if isinstance(result, CapabilityResult):
            result.metadata.setdefault("duration_ms", int((time.monotonic() - started) * 1000))
            return result
        return CapabilityResult(
            success=True,
            data=result,
            metadata={"duration_ms": int((time.monotonic() - started) * 1000)},
        )

    async def destroy(self) -> None:
        self._initialized = False
        self._credentials = {}


class ClientBase(Provider):
    """A provider with no sub-dependencies, usually wrapping one external API."""

    kind = "client"


class AgentBase(Provider):
    """A provider composed from one or more client dependencies."""

    kind = "agent"
    dependencies: tuple[str, ...] = ()

    def __init__(self):
        super().__init__()
        self._dependencies: dict[str, Provider] = {}

    def get_dependencies(self) -> list[str]:
        return list(self.dependencies)

    def set_dependency(self, client_id: str, client: Provider) -> None:
        self._dependencies[client_id] = client

    def get_dependency(self, client_id: str) -> Provider | None:
        return self._dependencies.get(client_id)

    def has_dependencies(self) -> bool:
        return all(dep in self._dependencies for dep in self.get_dependencies())

    def require_dependency(self, client_id: str) -> Provider:
        client = self._dependencies.get(client_id)
        if client is None:
            raise DependencyResolutionError(self.provider_id, client_id, "not wired")
        return client

    async def destroy(self) -> None:
        await super().destroy()
        self._config = {}
        self._dependencies.clear()
