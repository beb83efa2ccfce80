import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from db import Base, User, build_engine, build_session_factory
from object_storage import LocalObjectStorage
import main


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_file(tmp_path):
    return tmp_path / "test.sqlite3"


@pytest.fixture
def engine(db_file):
    # File-backed so separate sessions really use separate connections
    schema_engine = create_engine(f"sqlite:///{db_file}")
    Base.metadata.create_all(schema_engine)
    schema_engine.dispose()
    return build_engine(f"sqlite+aiosqlite:///{db_file}", echo=False, poolclass=NullPool)


@pytest.fixture
def run_sql(engine, db_file):
    """Executes a statement on the test database outside the app, for arranging state in API tests."""
    def run(statement):
        sync_engine = create_engine(f"sqlite:///{db_file}")
        try:
            with sync_engine.begin() as conn:
                conn.execute(statement)
        finally:
            sync_engine.dispose()
    return run


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    store = LocalObjectStorage(tmp_path / "storage", public_base_url="http://files.test", timeout=5)
    store.ensure_root()
    return store


@pytest.fixture
async def owner(db):
    user = User(id="owner-1", email="owner@example.com", first_name="Olga", last_name="Owner", role="user", is_approved=True)
    db.add(user); await db.commit(); await db.refresh(user)
    return user


@pytest.fixture
def client(session_factory, storage):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth_headers(user_id: str, **claims) -> dict:
    token = main.create_access_token({"sub": user_id, **claims})
    return {"Authorization": f"Bearer {token}"}


def sample_rows(count: int = 5):
    return [{"date": f"2024-01-{i + 1:02d}", "value": 100 + i, "p10": 80, "p50": 100, "p90": 120} for i in range(count)]
