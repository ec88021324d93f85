"""Configuration management for pocketcoder."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME = Path("~/.pocketcoder").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"
DEFAULT_DB_PATH = DEFAULT_HOME / "pocketcoder.db"
DEFAULT_KEY_PATH = DEFAULT_HOME / "secret.key"
DEFAULT_INSTRUCTIONS_DIR = DEFAULT_HOME / "instructions"
LOCAL_CONFIG_FILENAME = "config.yaml"


class AgentConfig(BaseModel):
    """Agentic loop configuration."""

    max_tool_rounds: int = 25
    temperature: float = 0.7
    max_tokens: int = 8192
    show_progress_markers: bool = True
    custom_instructions: str = ""
    instructions_dir: str = str(DEFAULT_INSTRUCTIONS_DIR)


class ToolsConfig(BaseModel):
    """Tool executor configuration."""

    command_timeout: int = 120
    shell: str = "/bin/sh"
    max_file_size: int = 512 * 1024
    max_output_chars: int = 32_000
    max_search_results: int = 50
    max_list_entries: int = 200
    excluded_dirs: list[str] = [
        ".git",
        "node_modules",
        "build",
        "__pycache__",
        ".venv",
        "venv",
    ]
    environment: dict[str, str] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Session and provider configuration storage."""

    path: str = str(DEFAULT_DB_PATH)


class CredentialsConfig(BaseModel):
    """Credential store configuration."""

    path: str = str(DEFAULT_DB_PATH)
    key: str = ""
    key_path: str = str(DEFAULT_KEY_PATH)
    refresh_margin_seconds: int = 60


class FailoverRuleConfig(BaseModel):
    """Hard-rejection rule that triggers an automatic provider switch."""

    registry_id: str
    error_marker: str
    preferred_registries: list[str] = Field(default_factory=list)
    label: str = ""


class FailoverConfig(BaseModel):
    """Failover configuration."""

    enabled: bool = True
    rules: list[FailoverRuleConfig] = Field(
        default_factory=lambda: [
            FailoverRuleConfig(
                registry_id="kimi-coding",
                error_marker="access_terminated_error",
                preferred_registries=["moonshot", "openrouter"],
                label="Kimi For Coding",
            )
        ]
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"  # console | json
    redact_keys: list[str] = Field(
        default_factory=lambda: [
            "api_key",
            "oauth_token",
            "access_token",
            "refresh_token",
            "authorization",
        ]
    )


class Config(BaseSettings):
    """Main configuration for pocketcoder."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    failover: FailoverConfig = Field(default_factory=FailoverConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="POCKETCODER_",
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
        """Load configuration from the default YAML location."""
        return cls.from_yaml()

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
