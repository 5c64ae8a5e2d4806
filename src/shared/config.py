"""Configuration management for the tool gateway.

Supports an optional YAML configuration file with environment variable
overrides. Top-level variables are prefix-free (API_SERVER_PORT,
MCP_SERVER_URL, ANTHROPIC_API_KEY, ...); each concern below reads its own
prefixed group. Configuration is loaded once and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TracingSettings(BaseSettings):
    """OpenTelemetry tracing configuration."""
    enabled: bool = Field(default=False)
    service_name: str = Field(default="service")
    endpoint_address: str = Field(default="localhost:4317", description="OTLP gRPC collector")
    sampling_rate: float = Field(default=1.0, ge=0, le=1)
    batch_timeout: float = Field(default=5.0, gt=0, description="Seconds between batch exports")
    timeout: float = Field(default=5.0, gt=0, description="Exporter timeout in seconds")
    environment: str = Field(default="development")
    version: str = Field(default="0.1.0")

    model_config = SettingsConfigDict(
        env_prefix="TRACING_",
        env_file=".env",
        extra="ignore"
    )


class AuthSettings(BaseSettings):
    """Bearer token validation for protected routes."""
    enabled: bool = Field(default=False)
    domain: str = Field(default="", description="Identity provider domain")
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    callback_url: str = Field(default="")
    audience: str = Field(default="")
    token_ttl: float = Field(default=300.0, gt=0, description="JWKS fetch timeout in seconds")
    protect_ask: bool = Field(default=False, description="Also require a bearer token on /ask routes")

    model_config = SettingsConfigDict(
        env_prefix="AUTH_",
        env_file=".env",
        extra="ignore"
    )

    @property
    def issuer(self) -> str:
        return f"https://{self.domain}/"

    @property
    def jwks_url(self) -> str:
        return f"{self.issuer}.well-known/jwks.json"


class GoogleOAuthSettings(BaseSettings):
    """Third-party OAuth2 provider configuration (Google by default)."""
    enabled: bool = Field(default=False)
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    redirect_url: str = Field(default="http://localhost:8081/oauth/callback")
    scopes: list[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/gmail.readonly"]
    )
    state_cookie: str = Field(default="google_oauth_state")
    token_source_file: str = Field(default="", description="Empty keeps tokens in memory")
    auth_url: str = Field(default="https://accounts.google.com/o/oauth2/auth")
    token_url: str = Field(default="https://oauth2.googleapis.com/token")

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_",
        env_file=".env",
        extra="ignore"
    )


class MCPClientSettings(BaseSettings):
    """Connection knobs for the long-lived MCP client."""
    retry_delay: float = Field(default=3.0, gt=0)
    max_retries: int = Field(default=5, gt=0)
    health_check_interval: float = Field(default=15.0, gt=0)
    connection_timeout: float = Field(default=60.0, gt=0)
    request_timeout: float = Field(default=120.0, gt=0)
    tool_cache_ttl: float = Field(default=30.0, ge=0)
    client_name: str = Field(default="tool-gateway")

    model_config = SettingsConfigDict(
        env_prefix="MCP_CLIENT_",
        env_file=".env",
        extra="ignore"
    )


class OrchestratorSettings(BaseSettings):
    """Per-turn orchestration limits."""
    max_tool_iterations: int = Field(default=8, gt=0)
    max_history_messages: int = Field(default=20, gt=0)
    request_timeout: float = Field(default=120.0, gt=0)
    shutdown_timeout: int = Field(default=30, gt=0)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore"
    )


class ProviderCredentials(BaseSettings):
    """Ambient LLM credentials, read once at startup."""
    anthropic_api_key: Optional[str] = Field(default=None)
    openai_api_key: Optional[str] = Field(default=None)
    amazon_bedrock_api_key: Optional[str] = Field(default=None)
    deepseek_api_key: Optional[str] = Field(default=None)
    aws_region: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    api_server_host: str = Field(default="0.0.0.0")
    api_server_port: int = Field(default=8081)
    mcp_server_url: str = Field(default="http://localhost:8080/events")
    mcp_server_port: int = Field(default=8080)

    # Component settings
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    google: GoogleOAuthSettings = Field(default_factory=GoogleOAuthSettings)
    mcp_client: MCPClientSettings = Field(default_factory=MCPClientSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    credentials: ProviderCredentials = Field(default_factory=ProviderCredentials)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file, falling back to the environment."""
        data = load_yaml_config(path)
        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("GATEWAY_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
