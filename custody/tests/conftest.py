"""
Shared fixtures for key-share custody tests.

Async stores run against a file-backed SQLite database (aiosqlite) so that
concurrent sessions behave like separate connections. The rotation
procedure runs on a sync in-memory SQLite session.
"""
# Load .env BEFORE any other imports so get_settings() sees the same values as the app
import os
from pathlib import Path
from dotenv import load_dotenv

_repo_root = Path(__file__).parent.parent.parent
load_dotenv(_repo_root / ".env")

# Generate test encryption key if not set
if not os.getenv("KEYSHARE_ENCRYPTION_KEY"):
    from cryptography.fernet import Fernet
    os.environ["KEYSHARE_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import sessionmaker

from custody.core.database.models import Base
from custody.core.database.encryption import ShareCipher, generate_encryption_key
from custody.core.keyshares.store import KeyShareStore
from custody.core.keyshares.mappings import KeyMappingStore


@pytest.fixture
def encryption_key():
    """Fresh primary key per test."""
    return generate_encryption_key()


@pytest.fixture
def cipher(encryption_key):
    return ShareCipher(encryption_key)


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """File-backed SQLite database with the custody schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory, cipher):
    return KeyShareStore(session_factory, cipher, timeout=5.0)


@pytest.fixture
def mapping_store(session_factory, cipher):
    return KeyMappingStore(session_factory, cipher, timeout=5.0)


@pytest.fixture
def sync_db():
    """In-memory SQLite session for the rotation procedure."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()
    engine.dispose()
