import asyncio
import time
import pytest
from backup_server.core.exceptions import BackupNotFound, SessionNotFound, ValidationError
from backup_server.services.session_service import SessionState
from backup_server.utils.file_utils import normalize_file_name

@pytest.mark.asyncio
async def test_sequential_sessions_get_increasing_versions(backup_service):
    """Versions for one backup name are 1, 2, ..., N."""
    versions = []
    for i in range(5):
        session = await backup_service.start_upload("acme", "nightly", f"db{i}.bak", 10, 1)
        versions.append(session.version)

    assert versions == [1, 2, 3, 4, 5]

@pytest.mark.asyncio
async def test_versions_are_independent_per_backup_name(backup_service):
    first = await backup_service.start_upload("acme", "nightly", "db.bak", 10, 1)
    other = await backup_service.start_upload("acme", "weekly", "db.bak", 10, 1)
    foreign = await backup_service.start_upload("globex", "nightly", "db.bak", 10, 1)

    assert (first.version, other.version, foreign.version) == (1, 1, 1)

@pytest.mark.asyncio
async def test_concurrent_sessions_never_share_a_version(backup_service):
    sessions = await asyncio.gather(*[
        backup_service.start_upload("acme", "nightly", f"db{i}.bak", 10, 1)
        for i in range(10)
    ])

    versions = sorted(s.version for s in sessions)
    assert versions == list(range(1, 11))

@pytest.mark.asyncio
async def test_start_creates_pending_backup_and_isolated_folder(backup_service):
    first = await backup_service.start_upload("acme", "nightly", "db.bak", 100, 4, {"host": "srv1"})
    second = await backup_service.start_upload("acme", "nightly", "db.bak", 100, 4)

    backup = backup_service.gateway.find_backup("acme", "nightly", first.version)
    assert backup.status == "pending"
    assert backup.metadata["host"] == "srv1"
    assert "isoDate" in backup.metadata

    assert first.session_id != second.session_id
    assert first.temp_folder != second.temp_folder
    assert first.temp_folder.is_dir()

@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"backup_name": "", "file_name": "db.bak", "file_size": 10, "total_chunks": 1},
    {"backup_name": "nightly", "file_name": None, "file_size": 10, "total_chunks": 1},
    {"backup_name": "nightly", "file_name": "db.bak", "file_size": None, "total_chunks": 1},
    {"backup_name": "nightly", "file_name": "db.bak", "file_size": 10, "total_chunks": 0},
    {"backup_name": "nightly", "file_name": "db.bak", "file_size": -5, "total_chunks": 1},
    {"backup_name": "nightly", "file_name": "../etc/passwd", "file_size": 10, "total_chunks": 1},
])
async def test_start_rejects_invalid_fields(backup_service, kwargs):
    with pytest.raises(ValidationError):
        await backup_service.start_upload("acme", **kwargs)

    assert backup_service.gateway.max_version("acme", "nightly") is None

@pytest.mark.asyncio
async def test_start_rejects_malformed_checksum(backup_service):
    with pytest.raises(ValidationError):
        await backup_service.start_upload("acme", "nightly", "db.bak", 10, 1, checksum="not-a-digest")

def test_normalize_file_name():
    assert normalize_file_name("data\\db.bak") == "data/db.bak"
    assert normalize_file_name("dumps\\2026\\db.bak") == "dumps/2026/db.bak"
    assert normalize_file_name("a//b/c.txt") == "a/b/c.txt"

    placeholder = normalize_file_name("PROGRA~1.BAK")
    assert placeholder.startswith("file_")
    assert placeholder.endswith(".BAK")
    assert "~" not in placeholder

    with pytest.raises(ValidationError):
        normalize_file_name("/etc/passwd")
    with pytest.raises(ValidationError):
        normalize_file_name("C:\\Windows\\system.ini")

@pytest.mark.asyncio
async def test_receive_chunk_counts_distinct_indices(backup_service):
    session = await backup_service.start_upload("acme", "nightly", "db.bak", 30, 3)

    assert await backup_service.upload_chunk(session.session_id, 0, b"a" * 10) == (1, 3)
    assert await backup_service.upload_chunk(session.session_id, 2, b"c" * 10) == (2, 3)
    assert session.state == SessionState.RECEIVING
    assert session.missing_chunks == [1]

    assert await backup_service.upload_chunk(session.session_id, 1, b"b" * 10) == (3, 3)
    assert session.state == SessionState.COMPLETE

@pytest.mark.asyncio
async def test_resent_chunk_is_not_counted_twice(backup_service):
    session = await backup_service.start_upload("acme", "nightly", "db.bak", 50, 5)
    await backup_service.upload_chunk(session.session_id, 3, b"x" * 10)
    uploaded, total = await backup_service.upload_chunk(session.session_id, 3, b"x" * 10)

    assert (uploaded, total) == (1, 5)
    assert (session.temp_folder / "chunk_3").read_bytes() == b"x" * 10

@pytest.mark.asyncio
async def test_concurrent_resends_of_same_index(backup_service):
    session = await backup_service.start_upload("acme", "nightly", "db.bak", 20, 2)
    await asyncio.gather(*[
        backup_service.upload_chunk(session.session_id, 0, b"y" * 10) for _ in range(8)
    ])

    assert session.uploaded_chunks == 1
    assert not list(session.temp_folder.glob("*.part"))

@pytest.mark.asyncio
async def test_receive_chunk_unknown_session(backup_service):
    with pytest.raises(SessionNotFound):
        await backup_service.upload_chunk("does-not-exist", 0, b"data")

@pytest.mark.asyncio
async def test_receive_chunk_from_other_client_is_unknown(backup_service):
    session = await backup_service.start_upload("acme", "nightly", "db.bak", 10, 1)
    with pytest.raises(SessionNotFound):
        await backup_service.upload_chunk(session.session_id, 0, b"d" * 10, client_id="globex")

@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_index", [-1, 3, "abc", None])
async def test_receive_chunk_rejects_bad_index(backup_service, chunk_index):
    session = await backup_service.start_upload("acme", "nightly", "db.bak", 30, 3)
    with pytest.raises(ValidationError):
        await backup_service.upload_chunk(session.session_id, chunk_index, b"data")
    assert session.uploaded_chunks == 0

@pytest.mark.asyncio
async def test_idle_sessions_expire(backup_service, test_settings):
    session = await backup_service.start_upload("acme", "nightly", "db.bak", 20, 2)
    await backup_service.upload_chunk(session.session_id, 0, b"a" * 10)

    # Nothing is idle yet
    assert await backup_service.sessions.expire_idle_sessions() == 0

    later = time.monotonic() + test_settings.SESSION_IDLE_TIMEOUT_SECONDS + 1
    assert await backup_service.sessions.expire_idle_sessions(now=later) == 1

    assert session.state == SessionState.EXPIRED
    assert not session.temp_folder.exists()
    with pytest.raises(SessionNotFound):
        await backup_service.upload_chunk(session.session_id, 1, b"b" * 10)

    backup = backup_service.gateway.find_backup("acme", "nightly", session.version)
    assert backup.status == "failed"

    # The expired version is never handed out again
    retry = await backup_service.start_upload("acme", "nightly", "db.bak", 20, 2)
    assert retry.version == session.version + 1

@pytest.mark.asyncio
async def test_add_file_to_existing_version(backup_service):
    first = await backup_service.start_upload("acme", "nightly", "db.bak", 10, 1)
    second = await backup_service.start_upload("acme", "nightly", "logs.tar", 10, 1, version=first.version)

    assert second.version == first.version
    assert second.backup_id == first.backup_id

    with pytest.raises(ValidationError):
        await backup_service.start_upload("acme", "nightly", "db.bak", 10, 1, version=first.version)
    with pytest.raises(BackupNotFound):
        await backup_service.start_upload("acme", "nightly", "db.bak", 10, 1, version=42)
