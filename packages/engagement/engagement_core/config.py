"""
Configuration loading and validation.

Loads engagement core configuration from a YAML file. Secrets (the store's
project key, session tokens) are resolved from environment variables and are
never stored in config files.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    url: str = "http://localhost:54321"
    api_key_env: str = "ENGAGEMENT_STORE_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30
    read_retries: int = Field(default=3, ge=1)
    retry_base_seconds: float = Field(default=0.5, ge=0)

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class SessionConfig(BaseModel):
    """Where the CLI picks up a session issued by the identity provider."""

    user_id_env: str = "ENGAGEMENT_USER_ID"
    access_token_env: str = "ENGAGEMENT_ACCESS_TOKEN"

    @property
    def user_id(self) -> str | None:
        return os.environ.get(self.user_id_env)

    @property
    def access_token(self) -> str | None:
        return os.environ.get(self.access_token_env)


class TablesConfig(BaseModel):
    favorites: str = "user_favorites"
    favorite_lists: str = "favorite_lists"
    favorite_list_items: str = "favorite_list_items"
    event_rsvps: str = "event_rsvps"
    article_likes: str = "article_likes"
    user_roles: str = "user_roles"
    profiles: str = "profiles"


class RoutesConfig(BaseModel):
    auth_path: str = "/auth"
    pricing_path: str = "/pricing"


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True


class EngagementConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tables: TablesConfig = Field(default_factory=TablesConfig)
    routes: RoutesConfig = Field(default_factory=RoutesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> EngagementConfig:
    """Load and validate engagement configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return EngagementConfig.model_validate(raw)
