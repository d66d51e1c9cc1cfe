from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - SQLITE_DB_PATH: path to sqlite db file. Default './data/todo.db'
    - STATIC_DIR: directory with the browser frontend, mounted at '/' when it exists. Default './public'
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - LOG_LEVEL: root logging level name. Default 'INFO'
    - HOST / PORT: listen address used by the task-api entry point. Default 0.0.0.0:8080
    """

    sqlite_db_path: str
    static_dir: str
    cors_allow_origins: List[str]
    log_level: str
    host: str
    port: int


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_int(value: str, default: int) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return default


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    log_level = _get_env("LOG_LEVEL", "INFO").strip().upper()

    return Settings(
        sqlite_db_path=_get_env("SQLITE_DB_PATH", "./data/todo.db").strip(),
        static_dir=_get_env("STATIC_DIR", "./public").strip(),
        cors_allow_origins=_parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*")),
        log_level=log_level,
        host=_get_env("HOST", "0.0.0.0").strip(),
        port=_parse_int(_get_env("PORT", "8080"), 8080),
    )
