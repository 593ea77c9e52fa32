"""
Application configuration from environment variables.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

TLSPolicy = Literal["required", "fallback", "disabled"]


class AppConfig(BaseSettings):
    # Domain router
    proxy_routes_file: Optional[str] = None
    proxy_public_domain: str = "example.com"
    proxy_api_upstream: str = "localhost:3015"
    proxy_app_upstream: str = "localhost:3002"
    proxy_listen_host: str = "0.0.0.0"
    proxy_http_port: int = Field(default=80, ge=1, le=65535)
    proxy_https_port: int = Field(default=443, ge=1, le=65535)
    # Keep the plain listener up next to the TLS one
    proxy_serve_http: bool = True
    proxy_tls_cert: Optional[str] = None
    proxy_tls_key: Optional[str] = None
    proxy_tls_policy: TLSPolicy = "fallback"
    proxy_self_signed: bool = False
    proxy_change_origin: bool = True
    proxy_connect_timeout: float = Field(default=5.0, gt=0)
    # Longest wait between two reads from an upstream, response headers included.
    # None disables it.
    proxy_read_timeout: Optional[float] = Field(default=60.0, gt=0)
    proxy_reject_unmatched: bool = False
    proxy_stats_path: Optional[str] = None

    # Static asset server
    port: int = Field(default=3002, ge=1, le=65535)
    static_listen_host: str = "0.0.0.0"
    static_root: str = "."
    static_index: str = "index.html"
    static_api_base: str = "http://localhost:3015/api"
    static_version: str = "1.0.0"

    # Map provider passthrough
    tomtom_api_key: Optional[SecretStr] = None
    tomtom_base_url: str = "https://api.tomtom.com"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()
