"""Configuration management for Hobbes."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.hobbes/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.hobbes/sessions.db").expanduser()
DEFAULT_MEMORY_PATH = Path("~/.hobbes/tool_results.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

DEFAULT_PERSONA = "You are Hobbes, a helpful AI assistant."
DEFAULT_FORCE_TOOL_USE_INSTRUCTION = (
    "You must always use the provided tools to answer the user's request, even if you "
    "think you know the answer. Do not answer from your own knowledge base when tools "
    "are available. When using the fetch tool, you MUST provide markdown links as sources."
)

ToolCategoryName = Literal["read_only", "write", "execute", "mcp"]


class ModelConfig(BaseModel):
    """Model endpoint configuration."""

    provider: str = "gemini"
    chat_model: str = "gemini-2.5-pro"
    summary_model: str = "gemini-1.5-flash-latest"
    api_key: str = ""
    base_url: str = GEMINI_BASE_URL
    timeout: float = 120.0


class PromptConfig(BaseModel):
    """Prompt construction settings."""

    persona: str = DEFAULT_PERSONA
    force_tool_use_instruction: str | None = DEFAULT_FORCE_TOOL_USE_INSTRUCTION
    history_window: int = Field(default=4, ge=0)
    project_folder: str | None = None


class TurnConfig(BaseModel):
    """Turn orchestration limits."""

    max_followup_depth: int = Field(default=4, ge=0)
    malformed_retry_limit: int = Field(default=2, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    approval_timeout_seconds: float = Field(default=300.0, gt=0.0)
    compact_tool_history: bool = True


class PermissionConfig(BaseModel):
    """Tool permission policy and session budget."""

    auto_approval_enabled: bool = False
    granular_permissions: dict[ToolCategoryName, bool] = Field(default_factory=dict)
    max_requests: int = 10
    max_cost: float = 0.50
    cost_per_call: float = 0.0
    server_categories: dict[str, ToolCategoryName] = Field(default_factory=dict)


class ToolServerConfig(BaseModel):
    """One MCP tool server launched over stdio."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    description: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False
    require_approval: bool = False


class SessionConfig(BaseModel):
    """Session storage configuration."""

    path: str = str(DEFAULT_DB_PATH)
    default_name: str = "default"


class MemoryConfig(BaseModel):
    """Long-term tool result store."""

    enabled: bool = True
    path: str = str(DEFAULT_MEMORY_PATH)


class SummaryConfig(BaseModel):
    """Between-turn conversation summarizer."""

    enabled: bool = True
    recent_messages: int = Field(default=5, ge=1)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"  # "console" or "json"
    file: str = ""  # append here instead of stderr when set


class Config(BaseSettings):
    """Main configuration for Hobbes."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    permissions: PermissionConfig = Field(default_factory=PermissionConfig)
    tool_servers: list[ToolServerConfig] = Field(default_factory=list)
    session: SessionConfig = Field(default_factory=SessionConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="HOBBES_",
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
        """Load configuration; env vars take precedence over YAML values."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude_none=True)

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
