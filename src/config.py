from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote_plus


SUPPORTED_APP_ENVS = {"SIT", "UAT"}


def _current_app_env() -> str:
    default_env = "UAT" if os.getenv("RAILWAY_ENVIRONMENT", "").strip() else "SIT"
    raw = os.getenv("APP_ENV", default_env).strip().upper()
    if not raw:
        return default_env
    if raw not in SUPPORTED_APP_ENVS:
        raise ValueError(f"Invalid APP_ENV: {raw}. Supported values: {sorted(SUPPORTED_APP_ENVS)}")
    return raw


def _get_first_set(*env_names: str) -> str:
    for env_name in env_names:
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    return ""


def _env_scoped(name: str, *fallbacks: str) -> str:
    return _get_first_set(f"{_current_app_env()}_{name}", name, *fallbacks)


def _normalize_database_url(raw_url: str) -> str:
    for prefix in ("postgres://", "postgresql+psycopg://"):
        if raw_url.startswith(prefix):
            return raw_url.replace(prefix, "postgresql+psycopg2://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return raw_url


def _with_sslmode_if_needed(db_url: str) -> str:
    if not db_url or "sslmode=" in db_url or not db_url.startswith("postgresql"):
        return db_url
    lowered = db_url.lower()
    if "localhost" in lowered or "127.0.0.1" in lowered:
        return db_url
    sep = "&" if "?" in db_url else "?"
    return f"{db_url}{sep}sslmode=require"


def _build_database_url() -> str:
    explicit = _env_scoped("DATABASE_URL", "DATABASE_PUBLIC_URL")
    if explicit:
        return _with_sslmode_if_needed(_normalize_database_url(explicit))

    host = _env_scoped("PGHOST")
    user = _env_scoped("PGUSER")
    database = _env_scoped("PGDATABASE")
    if host and user and database:
        port = _env_scoped("PGPORT") or "5432"
        pwd = quote_plus(_env_scoped("PGPASSWORD"))
        return _with_sslmode_if_needed(f"postgresql+psycopg2://{user}:{pwd}@{host}:{port}/{database}")

    # Local dev fallback when DATABASE_URL is not set.
    sqlite_file = Path(os.getenv("SQLITE_DB_PATH", "./push_tokens.db")).as_posix()
    if sqlite_file.startswith("/"):
        return f"sqlite:///{sqlite_file}"
    return f"sqlite:///./{sqlite_file.lstrip('./')}"


def _read_key_material(inline_env: str, path_env: str) -> str:
    inline = os.getenv(inline_env, "").strip()
    if inline:
        # Keys pasted into env files usually carry escaped newlines.
        return inline.replace("\\n", "\n")
    key_path = os.getenv(path_env, "").strip()
    if key_path and Path(key_path).is_file():
        return Path(key_path).read_text(encoding="utf-8")
    return ""


@dataclass(frozen=True)
class Settings:
    app_env: str = _current_app_env()
    app_name: str = os.getenv("APP_NAME", "push_dispatch_service")
    app_debug: bool = os.getenv("APP_DEBUG", "false").lower() == "true"
    app_host: str = os.getenv("APP_HOST", "0.0.0.0")
    app_port: int = int(os.getenv("APP_PORT", "8004"))

    database_url: str = _build_database_url()
    db_schema: str = _env_scoped("DB_SCHEMA") or "push_dispatch"

    push_batch_size: int = int(os.getenv("PUSH_BATCH_SIZE", "500"))
    push_batch_delay_ms: int = int(os.getenv("PUSH_BATCH_DELAY_MS", "100"))
    push_dispatch_timeout_seconds: float = float(os.getenv("PUSH_DISPATCH_TIMEOUT_SECONDS", "30"))
    push_per_token_concurrency: int = int(os.getenv("PUSH_PER_TOKEN_CONCURRENCY", "20"))
    push_cleanup_queue_size: int = int(os.getenv("PUSH_CLEANUP_QUEUE_SIZE", "1000"))
    push_http_timeout_seconds: float = float(os.getenv("PUSH_HTTP_TIMEOUT_SECONDS", "30"))

    apns_key_id: str = os.getenv("APNS_KEY_ID", "")
    apns_team_id: str = os.getenv("APNS_TEAM_ID", "")
    apns_bundle_id: str = os.getenv("APNS_BUNDLE_ID", "")
    apns_private_key: str = _read_key_material("APNS_PRIVATE_KEY", "APNS_PRIVATE_KEY_PATH")
    apns_use_sandbox: bool = os.getenv("APNS_USE_SANDBOX", "false").lower() == "true"

    fcm_project_id: str = os.getenv("FCM_PROJECT_ID", "")
    fcm_service_account_file: str = os.getenv("FCM_SERVICE_ACCOUNT_FILE", "")

    expo_access_token: str = os.getenv("EXPO_ACCESS_TOKEN", "")

    vapid_private_key: str = _read_key_material("VAPID_PRIVATE_KEY", "VAPID_PRIVATE_KEY_PATH")
    vapid_subject: str = os.getenv("VAPID_SUBJECT", "mailto:push@example.com")


settings = Settings()


def get_settings() -> Settings:
    return settings
