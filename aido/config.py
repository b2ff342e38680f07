"""Configuration management for aido."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.aido/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.aido/conversations.db").expanduser()
LOCAL_CONFIG_FILENAME = ".aido.yaml"


class ModelConfig(BaseModel):
    """Chat completion service configuration."""

    provider: str = "openai"
    api_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    timeout: float = 120.0
    retries: int = 2
    streaming: bool = False


class ToolArgConfig(BaseModel):
    """One argument of a config-declared command tool."""

    name: str
    type: Literal["string", "number", "integer", "boolean", "object", "array"] = "string"
    description: str = ""
    required: bool = False
    enum: list[str] | None = None


class CommandToolConfig(BaseModel):
    """A local executable exposed to the model as a tool."""

    name: str
    description: str = ""
    command: list[str]
    args: list[ToolArgConfig] = Field(default_factory=list)
    enabled: bool = True
    requires_confirmation: bool = False
    timeout: float | None = None


class ToolsConfig(BaseModel):
    """Tools configuration.

    `enabled` switches the built-in tools on. Entries under `custom` are
    enabled or disabled by their own `enabled` flag and are not looked up in
    the `enabled` list.
    """

    enabled: list[str] = ["ls", "cat", "grep", "run"]
    require_confirmation: list[str] = ["run"]
    timeout: float = 30.0
    max_output_chars: int = 10000
    custom: list[CommandToolConfig] = Field(default_factory=list)


class EngineConfig(BaseModel):
    """Agent loop bounds and policies."""

    max_turns: int = 10
    max_confirmation_denials: int = 3
    continuation_tools: Literal["inherit", "none", "all"] = "inherit"


class RecipesConfig(BaseModel):
    """Recipe directory configuration."""

    path: str = ""
    strict_tools: bool = True


class ConversationConfig(BaseModel):
    """Conversation store configuration."""

    path: str = str(DEFAULT_DB_PATH)


class UIConfig(BaseModel):
    """UI configuration."""

    colors: bool = True
    confirm_timeout: float | None = None


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for aido."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    recipes: RecipesConfig = Field(default_factory=RecipesConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    ui: UIConfig = Field(default_factory=UIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="AIDO_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    _source_path: Path | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Environment first, then YAML values passed as init kwargs; nested sections merge key by key."""
        return env_settings, dotenv_settings, init_settings, file_secret_settings

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
            config = cls()
        else:
            with open(config_path, encoding="utf-8") as f:
                data: dict[str, Any] = yaml.safe_load(f) or {}
            config = cls(**data)

        config._source_path = config_path
        return config

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        return cls.from_yaml(path)

    @property
    def source_path(self) -> Path:
        """Config file this instance was loaded from (or would be saved to)."""
        return self._source_path or DEFAULT_CONFIG_PATH

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else self.source_path
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def recipes_dir(self) -> Path:
        """Recipe directory: explicit path, else `recipes/` beside the config file."""
        if self.recipes.path:
            raw = Path(self.recipes.path).expanduser()
            if raw.is_absolute():
                return raw
            return (self.source_path.parent / raw).resolve()
        return self.source_path.parent / "recipes"


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
