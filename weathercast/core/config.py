"""
Configuration management for the weathercast server and client.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..mcp.errors import ConfigurationError
from ..mcp.protocol import LATEST_PROTOCOL_VERSION


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Forecast service (Google Gemini)
    google_api_key: Optional[SecretStr] = Field(default=None, description="API key for the forecast model")
    forecast_model: str = Field(default="gemini-2.0-flash", description="Model used to generate forecasts")
    forecast_base_url: str = Field(
        default="https://generativelanguage.googleapis.com",
        description="Base URL of the Generative Language API",
    )
    forecast_timeout_s: float = Field(default=30.0, gt=0, description="Timeout for one forecast request")

    # MCP
    protocol_version: str = Field(default=LATEST_PROTOCOL_VERSION)
    server_name: str = Field(default="Weather Forecast 🚀")
    server_version: str = Field(default="1.0.0")
    client_name: str = Field(default="weather-client")
    client_version: str = Field(default="v1.0.0")
    tool_call_timeout_s: float = Field(default=60.0, gt=0, description="Server-side bound on one tool call")
    request_timeout_s: float = Field(default=90.0, gt=0, description="Client-side bound on one request")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Render logs as JSON instead of console text")

    def require_api_key(self) -> str:
        """Return the forecast API key or raise ConfigurationError."""
        if self.google_api_key is None or not self.google_api_key.get_secret_value():
            raise ConfigurationError("GOOGLE_API_KEY environment variable is not set")
        return self.google_api_key.get_secret_value()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
