"""Configuration management for Synergy Core."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.synergy/config.yaml").expanduser()
DEFAULT_STORE_PATH = Path("~/.synergy/providers.db").expanduser()
LOCAL_CONFIG_FILENAME = "synergy.yaml"


class ModelConfig(BaseModel):
    """Primary language model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    timeout: float = 120.0


class NormalizerConfig(BaseModel):
    """Tool result shaping configuration."""

    compress_threshold: int = 50000
    truncate_budget: int = 20000
    aux_enabled: bool = True
    aux_provider: str = "ollama"
    aux_model: str = "llama3.2:1b"
    aux_base_url: str = ""
    aux_api_key: str = ""
    aux_max_tokens: int = 4096


class OrchestrationConfig(BaseModel):
    """Agentic loop configuration."""

    iteration_limit: int = 20
    max_tokens: int = 4096
    tool_timeout: float = 60.0
    isolate_provider_instances: bool = False


class SessionConfig(BaseModel):
    """Tool session configuration."""

    always_on: list[str] = ["browser"]
    pinned: list[str] = []
    max_tools: int = 20


class CatalogConfig(BaseModel):
    """Tool catalog configuration."""

    substitute_agents: bool = True


class StorageConfig(BaseModel):
    """Credential/config store configuration."""

    path: str = str(DEFAULT_STORE_PATH)


class ContextRuleConfig(BaseModel):
    """Custom page-context rule."""

    provider_id: str
    patterns: list[str] = Field(default_factory=list)
    domain_hints: list[str] = Field(default_factory=list)
    content_hints: list[str] = Field(default_factory=list)
    priority: int = 0


class ContextConfig(BaseModel):
    """Page context detection configuration."""

    cache_ttl_seconds: float = 30.0
    rules: list[ContextRuleConfig] = Field(default_factory=list)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"  # console, json or logfmt


class Config(BaseSettings):
    """Main configuration for Synergy Core."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SYNERGY_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from YAML; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_store_path(self) -> Path:
        """Resolve the provider store path."""
        return Path(self.storage.path).expanduser().resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
