from __future__ import annotations
from functools import cached_property
from pydantic_settings import BaseSettings
from pydantic import Field
import secrets

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")

    auth_jwks_url: str = Field(..., alias="AUTH_JWKS_URL")
    auth_jwks_ttl_seconds: int = Field(default=3600, alias="AUTH_JWKS_TTL_SECONDS")

    # Credentials
    credential_secret: str | None = Field(default=None, alias="CREDENTIAL_SECRET")
    credential_issuer: str = Field("gate-access-svc", alias="CREDENTIAL_ISSUER")
    visitor_default_validity_hours: int = Field(default=24, alias="VISITOR_DEFAULT_VALIDITY_HOURS")
    delivery_passcode_validity_hours: int = Field(default=24, alias="DELIVERY_PASSCODE_VALIDITY_HOURS")
    passcode_max_attempts: int = Field(default=10, alias="PASSCODE_MAX_ATTEMPTS")
    # when true a delivery must be marked arrived before it can be collected
    delivery_require_arrival: bool = Field(default=False, alias="DELIVERY_REQUIRE_ARRIVAL")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    credential_key_prefix: str = Field("cred:", alias="CREDENTIAL_KEY_PREFIX")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")

    # NATS
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_entry: str = Field("entries.transitioned", alias="NATS_SUBJECT_ENTRY")
    events_enabled: bool = Field(default=True, alias="EVENTS_ENABLED")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False

    @cached_property
    def credential_secret_effective(self) -> str:
        # generated once per process; tokens do not survive a restart without CREDENTIAL_SECRET
        return self.credential_secret or secrets.token_urlsafe(48)

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
