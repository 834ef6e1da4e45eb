from __future__ import annotations

import warnings
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    domain: str = "localhost"
    portal_base_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    db_url: str = "sqlite:////app/data/carelink.db"

    # Key encryption: remote key service, or a local development key
    key_service_url: str = ""
    key_service_token: str = ""
    key_service_timeout_seconds: float = 5.0
    dev_encryption_key: str = ""
    allow_local_encryption: bool = False

    @model_validator(mode="after")
    def _check_key_source(self) -> Settings:
        self.key_service_url = self.key_service_url.strip().rstrip("/")
        if self.key_service_url:
            return self
        if not self.dev_encryption_key.strip():
            raise ValueError(
                "Neither KEY_SERVICE_URL nor DEV_ENCRYPTION_KEY is set. Patient "
                "payloads cannot be encrypted. Configure the key service, or set "
                "DEV_ENCRYPTION_KEY together with ALLOW_LOCAL_ENCRYPTION=1 for "
                "development."
            )
        if not self.allow_local_encryption:
            raise ValueError(
                "DEV_ENCRYPTION_KEY is set without KEY_SERVICE_URL but "
                "ALLOW_LOCAL_ENCRYPTION is not enabled. Local key mode is only "
                "meant for development."
            )
        warnings.warn(
            "KEY_SERVICE_URL is empty; data keys are wrapped with a key derived "
            "from DEV_ENCRYPTION_KEY. Do not use this in production.",
            stacklevel=2,
        )
        return self

    # Access tokens and verification codes
    token_expiry_hours: int = 24
    code_expiry_minutes: int = 10
    code_max_attempts: int = 5

    # Provider sessions
    provider_session_ttl_minutes: int = 30
    provider_idle_timeout_minutes: int = 15

    # Admin sessions and login
    admin_password_hash: str = ""  # argon2 PHC string
    admin_session_ttl_hours: int = 8
    admin_idle_timeout_minutes: int = 30
    admin_cookie_secure: bool = True
    login_max_attempts: int = 5
    login_window_minutes: int = 15
    login_block_minutes: int = 30

    # Referrals
    referral_max_candidates: int = 5
    referral_expiry_hours_normal: int = 168  # 7 days
    referral_expiry_hours_urgent: int = 48

    # SMTP (verification codes, invite notifications)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_timeout_seconds: float = 10.0

    # Periodic cleanup of stale sessions, rate-limit records and invites
    sweep_interval_seconds: int = 60


@lru_cache
def get_settings() -> Settings:
    return Settings()
