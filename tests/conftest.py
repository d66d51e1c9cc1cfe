from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from task_api.main import create_app
from task_api.settings import Settings


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings pointing at a fresh database under tmp_path.

    The static dir does not exist, so no frontend is mounted.
    """
    return Settings(
        sqlite_db_path=str(tmp_path / "data" / "todo.db"),
        static_dir=str(tmp_path / "public"),
        cors_allow_origins=["*"],
        log_level="WARNING",
        host="127.0.0.1",
        port=8080,
    )


@pytest.fixture()
def client(settings: Settings):
    # Entering the client runs the lifespan, which opens the database.
    with TestClient(create_app(settings)) as c:
        yield c
