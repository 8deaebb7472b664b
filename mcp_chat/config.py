"""Configuration management for mcp-chat."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_chat.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.mcp-chat/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.mcp-chat/chats.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant with access to a variety of tools.

Today's date is {today}.

The tools are very powerful, and you can use them to answer the user's question.
So choose the tool that is most relevant to the user's question.

If tools are not available, say you don't know or if the user wants a tool they can add one from the server settings.

You can use multiple tools in a single response.
Always respond after using the tools for better user experience.
You can run multiple steps using all the tools.
Make sure to use the right tool to respond to the user's question.

## Response Format
- Markdown is supported.
- Respond according to tool's response.
- Use the tools to answer the user's question.
- If you don't know the answer, use the tools to find the answer or say you don't know.
"""


class ModelConfig(BaseModel):
    """Model configuration."""

    class AllowedModelConfig(BaseModel):
        """Model entry selectable per request."""

        id: str
        model: str = ""
        label: str = ""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    timeout: float = 120.0
    allowed: list[AllowedModelConfig] = Field(default_factory=list)


class ChatConfig(BaseModel):
    """Tool-use loop and output pacing configuration."""

    max_steps: int = 20
    smooth_delay_ms: int = 5
    chunking: Literal["line", "word"] = "line"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class McpConfig(BaseModel):
    """Per-request MCP tool provider configuration."""

    max_servers: int = 8
    connect_timeout: float = 10.0
    call_timeout: float = 60.0


class StorageConfig(BaseModel):
    """Chat storage configuration."""

    path: str = str(DEFAULT_DB_PATH)
    # When set, finished turns are posted to this server's /api/chat/messages instead of the local store
    persistence_url: str = ""


class WebConfig(BaseModel):
    """Web server configuration."""

    host: str = "127.0.0.1"
    port: int = 23180


class ClientConfig(BaseModel):
    """Chat client configuration."""

    base_url: str = "http://127.0.0.1:23180"
    throttle_ms: int = 500
    history_stale_seconds: float = 300.0
    timeout: float = 300.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for mcp-chat."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MCP_CHAT_",
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
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; env vars fill in what the file leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def model_ids(self) -> list[str]:
        """Model ids a client may select, default first."""
        ids = [self.model.model]
        for entry in self.model.allowed:
            if entry.id not in ids:
                ids.append(entry.id)
        return ids

    def resolve_model(self, selected: str | None) -> str:
        """Map a client-selected model id onto the backend model name."""
        key = (selected or "").strip()
        if not key:
            return self.model.model
        for entry in self.model.allowed:
            if entry.id == key:
                return entry.model or entry.id
        return key


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
