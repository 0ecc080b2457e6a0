"""Settings via pydantic-settings with COLLOQUY_ env prefix.

Anthropic credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) every other client of
the API reads, so a single .env file drives everything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COLLOQUY_", env_file=".env", extra="ignore")

    # Storage
    db_url: str = "sqlite+aiosqlite:///./colloquy.db"
    db_echo: bool = False
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    summary_model: str = ""  # empty -> same as model
    max_tokens: int = 4096
    system_prompt: str = "You are a helpful assistant."
    thinking_budget: int = 0  # 0 disables extended thinking (min 1024 otherwise)

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Context window
    window_budget: int = 90_000  # token-like units
    window_recent_turns: int = 10
    summary_max_chars: int = 5000
    cache_target_tokens: int = 180_000

    # Tool cycle
    max_tool_rounds: int = Field(10, ge=1)
    retry_backoff_seconds: float = 30.0
    duplicate_window_seconds: float = 2.0

    # Built-in tools
    builtin_tools_enabled: bool = True
    workspace_dir: str = "/tmp/colloquy-workspace"

    @model_validator(mode="after")
    def _validate_thinking(self) -> "Settings":
        if self.thinking_budget > 0:
            if self.thinking_budget < 1024:
                raise ValueError("thinking_budget must be >= 1024 (API minimum)")
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self

    @property
    def effective_summary_model(self) -> str:
        return self.summary_model or self.model
