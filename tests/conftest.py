from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from docqa.config import Settings, get_settings
from docqa.db import Base, get_engine
from docqa.main import app


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Settings:
    monkeypatch.setenv("DOCQA_DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'docqa-tests.db'}")
    monkeypatch.setenv("DOCQA_DB_ECHO", "false")
    monkeypatch.setenv("DOCQA_OBJECT_STORE_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("RAG_CHUNK_SIZE", "120")
    monkeypatch.setenv("RAG_CHUNK_OVERLAP", "20")
    monkeypatch.setenv("UPSTREAM_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("UPSTREAM_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("UPSTREAM_RETRY_MAX_SECONDS", "0")
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def client(engine: Engine) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
