"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_INSTRUCTIONS = "You are a helpful assistant. Follow the user's instructions carefully."


class ProviderConfig(BaseModel):
    """Credentials for one model backend."""

    api_key: str = ""
    api_base: str | None = None


class ProvidersConfig(BaseModel):
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)


class ResilienceConfig(BaseModel):
    """Timeout / retry / circuit-breaker settings applied to every provider call."""

    timeout: int = 120
    max_retries: int = 3
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: int = 60
    stream_idle_timeout: float = 60.0


class CompressionConfig(BaseModel):
    """Pinned-context compression service.

    The output bounds and aggressiveness are a fixed server-side policy; they
    are never taken from a request.
    """

    api_key: str = ""
    base_url: str = "https://api.thetokencompany.com"
    model: str = "bear-1"
    timeout: float = 6.0
    aggressiveness: float = 0.4
    max_output_tokens: int = 512
    min_output_tokens: int = 64
    disabled: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and not self.disabled


class MemoryConfig(BaseModel):
    """Long-term memory service (Zep-compatible HTTP API)."""

    api_key: str = ""
    base_url: str = "https://api.getzep.com/api/v2"
    timeout: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


class DatabaseConfig(BaseModel):
    url: str = ""
    echo: bool = False

    def resolved_url(self) -> str:
        if self.url:
            return self.url
        path = Path.home() / ".nexus" / "nexus.db"
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{path}"


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8787


class LoggingConfig(BaseModel):
    json_output: bool = True
    level: str = "INFO"


class LangfuseConfig(BaseModel):
    enabled: bool = False
    public_key: str = ""
    secret_key: str = ""
    host: str = ""


class ObservabilityConfig(BaseModel):
    langfuse: LangfuseConfig = Field(default_factory=LangfuseConfig)


class TurnConfig(BaseModel):
    """Model call limits used by the turn pipeline."""

    stream_max_tokens: int = 1024
    summary_max_tokens: int = 400
    summary_temperature: float = 0.2


class Config(BaseSettings):
    """Root configuration for nexus."""

    model_config = SettingsConfigDict(env_prefix="NEXUS_", env_nested_delimiter="__", extra="ignore")

    dev_user_id: str = "dev-user"
    system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
