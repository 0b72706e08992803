"""Configuration management for the gateway.

Rules:
- YAML provides defaults for non-secret config.
- Secrets (admin key, OAuth client secret, Telegram token, ...) come from .env /
  environment variables and override YAML (nested keys use "__", e.g.
  OAUTH__CLIENT_SECRET).
- We do NOT inject YAML into os.environ.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class RiskConfig(BaseModel):
    """Risk rules applied to every signal before a command is queued."""

    max_open_positions: int = Field(default=3, ge=1, le=100)
    max_daily_loss_pct: float = Field(default=2.0, gt=0, le=100)
    min_confidence: float = Field(default=0.70, ge=0.0, le=1.0)
    max_spread_pips: float = Field(default=2.0, ge=0)
    fixed_volume: float = Field(default=0.01, gt=0)
    command_ttl_seconds: int = Field(default=30, ge=1, le=3600)


class StrategyConfig(BaseModel):
    """Trend signal engine periods."""

    fast_period: int = Field(default=20, ge=2, le=200)
    slow_period: int = Field(default=50, ge=3, le=500)
    atr_period: int = Field(default=14, ge=2, le=100)

    @field_validator("slow_period")
    @classmethod
    def validate_periods(cls, v: int, info) -> int:
        if "fast_period" in info.data and v <= info.data["fast_period"]:
            raise ValueError("slow_period must be greater than fast_period")
        return v


class StoreConfig(BaseModel):
    type: str = Field(default="memory")
    ea_token_ttl_hours: int = Field(default=24, ge=1, le=24 * 30)

    class SQLiteConfig(BaseModel):
        path: str = Field(default="data/tradegate.db")

    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)

    @field_validator("type")
    @classmethod
    def validate_store_type(cls, v: str) -> str:
        if str(v).lower() not in {"memory", "sqlite"}:
            raise ValueError("Store type must be 'memory' or 'sqlite'")
        return str(v).lower()


class EAConfig(BaseModel):
    connect_code: str = Field(default="MMBOT-ONE-TIME-CODE", min_length=1)


class AdminConfig(BaseModel):
    # Empty key: every admin request is rejected.
    api_key: str = Field(default="")


class OAuthConfig(BaseModel):
    provider: str = Field(default="openai")
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    auth_url: str = Field(default="https://auth.openai.com/oauth/authorize")
    token_url: str = Field(default="https://auth.openai.com/oauth/token")
    scopes: List[str] = Field(default=["models.read", "models.inference"])
    redirect_uri: str = Field(default="http://localhost:18080/oauth/openai/callback")
    refresh_skew_seconds: int = Field(default=120, ge=0, le=3600)
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    @field_validator("scopes", mode="before")
    @classmethod
    def split_scopes(cls, v: Any) -> Any:
        # env vars arrive as "a b" or "a,b"
        if isinstance(v, str):
            return [s for s in v.replace(",", " ").split() if s]
        return v


class WebhookConfig(BaseModel):
    url: str = Field(default="")
    timeout_seconds: float = Field(default=5.0, gt=0, le=300)
    max_retries: int = Field(default=3, ge=0, le=20)
    retry_base_seconds: float = Field(default=0.5, gt=0, le=60)
    retry_max_seconds: float = Field(default=5.0, gt=0, le=600)

    @field_validator("retry_max_seconds")
    @classmethod
    def validate_retry_max(cls, v: float, info) -> float:
        if "retry_base_seconds" in info.data and v < info.data["retry_base_seconds"]:
            raise ValueError("retry_max_seconds must be >= retry_base_seconds")
        return v


class TelegramConfig(BaseModel):
    bot_token: str = Field(default="")
    chat_id: str = Field(default="")

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=18080, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class GatewayConfig(BaseSettings):
    """Main configuration class for the gateway.

    YAML is the base layer; environment variables (and .env) are applied on
    top of it, so secrets never need to live in the YAML file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    risk: RiskConfig = Field(default_factory=RiskConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    ea: EAConfig = Field(default_factory=EAConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # env wins over the YAML values passed in as init kwargs
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "GatewayConfig":
        """Load configuration from YAML, then let the environment override it."""
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")

        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "GatewayConfig":
        try:
            return cls(**data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")


def load_config(config_path: Optional[Path] = None) -> GatewayConfig:
    """Load configuration from YAML + .env (env wins for secrets)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return GatewayConfig.from_yaml(config_path)

