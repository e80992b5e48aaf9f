"""Configuration management for codecrew."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.codecrew/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.codecrew/sessions.db").expanduser()
DEFAULT_CHECKPOINT_DB_PATH = Path("~/.codecrew/checkpoints.db").expanduser()
DEFAULT_TRUST_PATH = Path("~/.codecrew/trusted-tools.json").expanduser()
LOCAL_CONFIG_FILENAME = "codecrew.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 8192
    context_window: int = 65536
    api_key: str = ""
    base_url: str = ""


class AgentConfig(BaseModel):
    """Turn loop configuration."""

    max_tool_iterations: int = 25
    skip_confirmation: bool = False


class OrchestratorConfig(BaseModel):
    """Multi-agent coordination configuration."""

    default_strategy: Literal["parallel", "sequential", "priority-based", "pipeline"] = "pipeline"
    max_parallel: int = 5
    default_max_turns: int = 10
    aggregation: Literal["merge", "vote", "best", "summary"] = "merge"


class RecoveryConfig(BaseModel):
    """Error recovery configuration."""

    max_retries: int = 3
    base_timeout_ms: int = 120000
    provider_ring: list[str] = ["anthropic", "openai", "google"]
    # Upper bound on how long the coordinator sleeps for a wait_and_retry verdict.
    max_wait_ms: int = 60000


class TrustConfig(BaseModel):
    """Persisted tool trust configuration."""

    path: str = str(DEFAULT_TRUST_PATH)


class SessionConfig(BaseModel):
    """Session configuration."""

    path: str = str(DEFAULT_DB_PATH)
    auto_save: bool = True


class CheckpointConfig(BaseModel):
    """Checkpoint store configuration."""

    path: str = str(DEFAULT_CHECKPOINT_DB_PATH)
    max_versions: int = 5
    enabled: bool = True


class ToolsConfig(BaseModel):
    """Built-in tool limits."""

    shell_timeout: int = 60
    max_read_bytes: int = 100_000
    max_list_results: int = 200
    max_output_chars: int = 10_000


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for codecrew."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CREW_",
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
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables are layered by BaseSettings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
