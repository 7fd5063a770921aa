"""
Shared fixtures for the EnvGuard test suite.
Each test gets its own SQLite database and its own master key.
"""
import os

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

# Set env vars before any imports that read them
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///envguard-test.db")

from envguard.audit.audit_recorder import AuditRecorder  # noqa: E402
from envguard.auth.identity import CallerIdentity  # noqa: E402
from envguard.db.base import Base  # noqa: E402
from envguard.db import models  # noqa: E402,F401
from envguard.db.engine import create_engine, create_session_factory  # noqa: E402
from envguard.environments.environment_registry import EnvironmentRegistry  # noqa: E402
from envguard.utils.crypto import Cipher  # noqa: E402
from envguard.variables.variable_store import VariableStore  # noqa: E402


@pytest.fixture
def master_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def cipher(master_key):
    return Cipher(master_key)


@pytest.fixture
def caller():
    return CallerIdentity(id="user-001", username="alice")


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with all tables."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'envguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def recorder(session_factory):
    return AuditRecorder(session_factory, default_limit=50, max_limit=500)


@pytest.fixture
def registry(session_factory, recorder):
    return EnvironmentRegistry(session_factory, recorder)


@pytest.fixture
def store(session_factory, cipher, recorder):
    return VariableStore(session_factory, cipher, recorder, max_attempts=3)


@pytest_asyncio.fixture
async def prod(registry, caller):
    """The "prod" environment."""
    return await registry.create("prod", "Production", caller=caller)
