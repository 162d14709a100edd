import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration, built once at startup and handed to
    create_app(). Nothing else in the package reads the environment.
    """
    database_url: str = "sqlite:///./keygate.db"
    secret_key: str = "dev-secret-change-me"

    # single configured admin, used when admin_users has no match
    admin_username: str = "admin"
    admin_password: str = "admin123"
    admin_password_hash: Optional[str] = None
    admin_token_ttl: int = 7 * 24 * 3600
    cookie_secure: bool = False

    provider_timeout: float = 20.0
    provider_max_attempts: int = 3
    provider_backoff: float = 0.5

    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # concurrent transactions; defaults to db_pool_size
    db_gate_limit: Optional[int] = None

    import_chunk_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        settings = cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            secret_key=env.get("SECRET_KEY", cls.secret_key),
            admin_username=env.get("ADMIN_USERNAME", cls.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", cls.admin_password),
            admin_password_hash=env.get("ADMIN_PASSWORD_HASH") or None,
            admin_token_ttl=_int(env, "ADMIN_TOKEN_TTL_SECONDS",
                                 cls.admin_token_ttl),
            cookie_secure=_bool(env, "COOKIE_SECURE", cls.cookie_secure),
            provider_timeout=_float(env, "PROVIDER_TIMEOUT_SECONDS",
                                    cls.provider_timeout),
            provider_max_attempts=_int(env, "PROVIDER_MAX_ATTEMPTS",
                                       cls.provider_max_attempts),
            provider_backoff=_float(env, "PROVIDER_BACKOFF_SECONDS",
                                    cls.provider_backoff),
            db_pool_size=_int(env, "DB_POOL_SIZE", cls.db_pool_size),
            db_max_overflow=_int(env, "DB_MAX_OVERFLOW", cls.db_max_overflow),
            db_pool_timeout=_int(env, "DB_POOL_TIMEOUT", cls.db_pool_timeout),
            db_gate_limit=_int(env, "DB_GATE_LIMIT", 0) or None,
            import_chunk_size=_int(env, "IMPORT_CHUNK_SIZE",
                                   cls.import_chunk_size),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.admin_token_ttl <= 0:
            raise ValueError("ADMIN_TOKEN_TTL_SECONDS must be positive")
        if self.provider_timeout <= 0:
            raise ValueError("PROVIDER_TIMEOUT_SECONDS must be positive")
        if self.provider_max_attempts < 1:
            raise ValueError("PROVIDER_MAX_ATTEMPTS must be at least 1")
        if self.provider_backoff < 0:
            raise ValueError("PROVIDER_BACKOFF_SECONDS must not be negative")
        if self.db_pool_size < 1:
            raise ValueError("DB_POOL_SIZE must be at least 1")
        if self.db_gate_limit is not None and self.db_gate_limit < 1:
            raise ValueError("DB_GATE_LIMIT must be at least 1")
        if self.import_chunk_size < 1:
            raise ValueError("IMPORT_CHUNK_SIZE must be at least 1")
