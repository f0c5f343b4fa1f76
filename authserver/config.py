from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once at startup."""

    app_secret: str
    database_url: str = 'sqlite:///oauth.db'
    db_timeout_seconds: int = 5
    issuer: str = 'http://127.0.0.1:8000'
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 30 * 24 * 3600
    auth_code_ttl: int = 600
    rotate_refresh_tokens: bool = True
    login_max_attempts: int = 5
    login_window_seconds: int = 300
    client_cache_ttl: int = 30
    signing_key_kid: str = 'dev-1'
    log_level: str = 'INFO'
    audit_log_path: str | None = None

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            app_secret=os.environ.get('APP_SECRET') or os.urandom(32).hex(),
            database_url=os.environ.get('DATABASE_URL', 'sqlite:///oauth.db'),
            db_timeout_seconds=_env_int('DB_TIMEOUT_SECONDS', 5),
            issuer=os.environ.get('ISSUER', 'http://127.0.0.1:8000').rstrip('/'),
            access_token_ttl=_env_int('ACCESS_TOKEN_TTL', 3600),
            refresh_token_ttl=_env_int('REFRESH_TOKEN_TTL', 30 * 24 * 3600),
            auth_code_ttl=_env_int('AUTH_CODE_TTL', 600),
            rotate_refresh_tokens=_env_bool('ROTATE_REFRESH_TOKENS', True),
            login_max_attempts=_env_int('LOGIN_MAX_ATTEMPTS', 5),
            login_window_seconds=_env_int('LOGIN_WINDOW_SECONDS', 300),
            client_cache_ttl=_env_int('CLIENT_CACHE_TTL', 30),
            signing_key_kid=os.environ.get('SIGNING_KEY_KID', 'dev-1'),
            log_level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
            audit_log_path=os.environ.get('AUDIT_LOG_PATH') or None,
        )
