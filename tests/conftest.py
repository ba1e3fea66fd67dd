from __future__ import annotations

import os
import tempfile
from typing import Any, Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from bookkeeping.core.cache import read_cache
from bookkeeping.core.database import Base, get_db
from bookkeeping.main import app
from bookkeeping.seed import ensure_system_accounts
from bookkeeping.services.account_service import AccountService

CLASS_BY_TYPE = {"asset": "real", "liability": "real", "income": "nominal", "expense": "nominal"}


@pytest.fixture(scope="session")
def test_db_url() -> Generator[str, Any, Any]:
    # temp-file SQLite so the developer database is never touched
    fd, path = tempfile.mkstemp(prefix="ledger_test_", suffix=".sqlite3")
    os.close(fd)
    url = f"sqlite:///{path}"
    yield url
    try:
        os.remove(path)
    except OSError:
        pass


@pytest.fixture(scope="session")
def engine(test_db_url: str):
    eng = create_engine(test_db_url, connect_args={"check_same_thread": False})

    @event.listens_for(eng, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(eng)
    return eng


@pytest.fixture(scope="function")
def db_session(engine) -> Generator[Any, Any, Any]:
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSessionLocal()
    # every test starts from an empty ledger plus the opening-balance equity account
    ensure_system_accounts(session)
    session.commit()

    try:
        yield session
    finally:
        session.close()
        with engine.begin() as conn:
            if engine.dialect.name == "sqlite":
                conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
            for tbl in reversed(Base.metadata.sorted_tables):
                conn.execute(tbl.delete())
            if engine.dialect.name == "sqlite":
                conn.exec_driver_sql("PRAGMA foreign_keys=ON")


@pytest.fixture(autouse=True)
def override_dependency(db_session):
    def _get_db_override():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db_override
    read_cache.invalidate()
    yield
    app.dependency_overrides.clear()
    read_cache.invalidate()


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def make_account(db_session):
    """Create an account through the service; class follows the type unless given."""

    def _make(name: str, type: str = "asset", **extra):
        payload = {
            "name": name,
            "type": type,
            "account_class": extra.pop("account_class", CLASS_BY_TYPE.get(type)),
            **extra,
        }
        return AccountService(db_session).create(payload)

    return _make
