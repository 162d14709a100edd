from datetime import datetime, timezone

import pytest

from keygate.config import Settings
from keygate.helpers import (
    generate_key_value, is_valid_url, start_of_day_ts, to_iso,
)
from keygate.infra.sql import normalize_async_url


def test_defaults_from_empty_env():
    s = Settings.from_env({})
    assert s == Settings()
    assert s.admin_token_ttl == 7 * 24 * 3600
    assert s.provider_max_attempts == 3
    assert s.db_gate_limit is None


def test_from_env_overrides():
    s = Settings.from_env({
        "DATABASE_URL": "postgres://u:p@db/keygate",
        "SECRET_KEY": "s",
        "ADMIN_USERNAME": "boss",
        "ADMIN_TOKEN_TTL_SECONDS": "60",
        "COOKIE_SECURE": "yes",
        "PROVIDER_TIMEOUT_SECONDS": "2.5",
        "PROVIDER_MAX_ATTEMPTS": "5",
        "IMPORT_CHUNK_SIZE": "10",
        "DB_POOL_SIZE": "20",
        "DB_GATE_LIMIT": "4",
        "LOG_LEVEL": "debug",
    })
    assert s.database_url == "postgres://u:p@db/keygate"
    assert s.admin_username == "boss"
    assert s.admin_token_ttl == 60
    assert s.cookie_secure is True
    assert s.provider_timeout == 2.5
    assert s.provider_max_attempts == 5
    assert s.import_chunk_size == 10
    assert s.db_pool_size == 20
    assert s.db_gate_limit == 4
    assert s.log_level == "DEBUG"


@pytest.mark.parametrize("env", [
    {"PROVIDER_MAX_ATTEMPTS": "many"},
    {"PROVIDER_MAX_ATTEMPTS": "0"},
    {"ADMIN_TOKEN_TTL_SECONDS": "-1"},
    {"PROVIDER_BACKOFF_SECONDS": "-0.1"},
    {"IMPORT_CHUNK_SIZE": "0"},
    {"DB_POOL_SIZE": "0"},
    {"DB_GATE_LIMIT": "-2"},
])
def test_from_env_rejects_bad_values(env):
    with pytest.raises(ValueError):
        Settings.from_env(env)


def test_normalize_async_url():
    assert normalize_async_url("sqlite:///./x.db") == \
        "sqlite+aiosqlite:///./x.db"
    assert normalize_async_url("postgres://h/db") == \
        "postgresql+asyncpg://h/db"
    assert normalize_async_url("postgresql://h/db") == \
        "postgresql+asyncpg://h/db"
    assert normalize_async_url("postgresql+asyncpg://h/db") == \
        "postgresql+asyncpg://h/db"


def test_helpers():
    assert is_valid_url("https://instagram.com/p/abc")
    assert is_valid_url("http://x.test")
    assert not is_valid_url("instagram.com")
    assert not is_valid_url("javascript:alert(1)")
    assert not is_valid_url(None)

    assert to_iso(None) is None
    assert to_iso(0) == "1970-01-01T00:00:00+00:00"

    ts = datetime(2024, 5, 6, 15, 30, tzinfo=timezone.utc).timestamp()
    midnight = datetime(2024, 5, 6, tzinfo=timezone.utc).timestamp()
    assert start_of_day_ts(ts) == midnight

    values = {generate_key_value() for _ in range(50)}
    assert len(values) == 50
    assert all(len(v) == 12 and v.isalnum() and v.upper() == v
               for v in values)
