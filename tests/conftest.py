import pytest
from fastapi.testclient import TestClient
from main import create_app
from backup_server.core.config import Settings
from backup_server.core.security import create_access_token
from backup_server.database import create_db_engine, create_session_factory
from backup_server.models import Base
from backup_server.services.backup_service import BackupService

@pytest.fixture
def test_client_id():
    return "acme"

@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing storage and database at a per-test directory."""
    storage_dir = tmp_path / "backups"
    return Settings(
        STORAGE_DIR=storage_dir,
        TEMP_DIR=storage_dir / ".chunks",
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        CLIENT_CREDENTIALS={"acme": "acme-secret"},
        CLIENT_API_KEYS={"acme-api-key": "acme"},
        SESSION_IDLE_TIMEOUT_SECONDS=60,
        MAX_BACKUPS_PER_ENTRY=20,
        CHECKSUM_READ_SIZE=64 * 1024,
    )

@pytest.fixture
def backup_service(test_settings):
    """A BackupService with its own database and session table."""
    test_settings.ensure_directories()
    engine = create_db_engine(test_settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield BackupService(test_settings, create_session_factory(engine))
    engine.dispose()

@pytest.fixture
def test_token(test_client_id, test_settings):
    """Create a test JWT token."""
    return create_access_token(data={"sub": test_client_id}, settings=test_settings)

@pytest.fixture
def test_client(test_settings):
    """Create a test client for the FastAPI app."""
    with TestClient(create_app(test_settings)) as client:
        yield client

@pytest.fixture
def authenticated_client(test_client, test_token):
    """Create an authenticated test client."""
    test_client.headers.update({
        "Authorization": f"Bearer {test_token}"
    })
    return test_client
