import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from healer_core.database.session import create_schema, create_session_factory
from healer_core.exceptions import IncidentNotFound, PersistenceError, ValidationError
from healer_core.models import ManagedServer
from healer_core.repository.memory import InMemoryRepository
from healer_core.repository.sql import SqlRepository, SqlServerDirectory
from healer_core.schemas.incident import EventType, Incident, IncidentEvent, IncidentState
from healer_core.schemas.ledger import (
    ArtifactType,
    BackupArtifact,
    ChangeType,
    CommandExecution,
    Evidence,
    FileChange,
    VerificationResult,
)

from .conftest import FINGERPRINT


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def repo(request, engine):
    if request.param == "memory":
        return InMemoryRepository()
    return SqlRepository(create_session_factory(engine))


def transition_event(incident_id, to_state):
    return IncidentEvent(
        incident_id=incident_id,
        event_type=EventType.STATE_TRANSITION,
        phase=to_state,
        step=f"Transition to {to_state.value}",
        data={"to": to_state.value},
    )


async def new_incident(repo, **kwargs):
    return await repo.create_incident(
        Incident(site_id="site-1", server_id="srv-1", site_url="https://blog.example.com", **kwargs)
    )


@pytest.mark.asyncio
async def test_create_and_load(repo):
    created = await new_incident(repo, max_fix_attempts=3)
    loaded = await repo.load_incident(created.id)

    assert loaded.id == created.id
    assert loaded.state == IncidentState.NEW
    assert loaded.max_fix_attempts == 3
    assert loaded.escalation_reason is None


@pytest.mark.asyncio
async def test_unknown_incident(repo):
    with pytest.raises(IncidentNotFound):
        await repo.load_incident("does-not-exist")
    with pytest.raises(IncidentNotFound):
        await repo.list_timeline("does-not-exist")


@pytest.mark.asyncio
async def test_state_change_is_compare_and_set(repo):
    incident = await new_incident(repo)

    updated, event = await repo.save_incident_state(
        incident.id, IncidentState.NEW, IncidentState.DISCOVERY, {},
        transition_event(incident.id, IncidentState.DISCOVERY),
    )
    assert updated.state == IncidentState.DISCOVERY
    assert event.sequence == 1

    with pytest.raises(PersistenceError):
        await repo.save_incident_state(
            incident.id, IncidentState.NEW, IncidentState.DISCOVERY, {},
            transition_event(incident.id, IncidentState.DISCOVERY),
        )
    assert (await repo.load_incident(incident.id)).state == IncidentState.DISCOVERY
    assert len(await repo.list_timeline(incident.id)) == 1


@pytest.mark.asyncio
async def test_state_change_rejects_unknown_fields_and_attempt_overflow(repo):
    incident = await new_incident(repo, max_fix_attempts=2)
    event = transition_event(incident.id, IncidentState.DISCOVERY)

    with pytest.raises(PersistenceError):
        await repo.save_incident_state(incident.id, IncidentState.NEW, IncidentState.DISCOVERY, {"site_url": "x"}, event)
    with pytest.raises(PersistenceError):
        await repo.save_incident_state(incident.id, IncidentState.NEW, IncidentState.DISCOVERY, {"fix_attempts": 3}, event)
    assert (await repo.load_incident(incident.id)).state == IncidentState.NEW


@pytest.mark.asyncio
async def test_appends_share_one_increasing_sequence(repo):
    incident = await new_incident(repo)
    records = [
        await repo.append_event(IncidentEvent(
            incident_id=incident.id, event_type=EventType.STEP, phase=IncidentState.NEW, step="created",
        )),
        await repo.append_command(CommandExecution(
            incident_id=incident.id, server_id="srv-1", command="true", exit_code=0,
        )),
        await repo.append_evidence(Evidence(
            incident_id=incident.id, evidence_type="page", content_hash="a" * 64, key="baseline:page",
            metadata={"status_code": 500},
        )),
        await repo.append_backup(BackupArtifact(
            incident_id=incident.id, artifact_type=ArtifactType.FILE, original_path="/var/www/html/wp-config.php",
            stored_path="/backups/x.bak", checksum="b" * 64, size=12,
        )),
        await repo.append_file_change(FileChange(
            incident_id=incident.id, path="/var/www/html/wp-config.php", change_type=ChangeType.MODIFIED,
            checksum="c" * 64, fix_attempt=1,
        )),
        await repo.append_verification(VerificationResult(
            incident_id=incident.id, passed=False, reason="HTTP 500", fix_attempt=1,
        )),
    ]

    assert [r.sequence for r in records] == [1, 2, 3, 4, 5, 6]
    stamps = [r.created_at if isinstance(r, BackupArtifact) else r.timestamp for r in records]
    assert stamps == sorted(stamps)
    assert (await repo.list_evidence(incident.id, key="baseline:page"))[0].metadata == {"status_code": 500}
    assert (await repo.list_backups(incident.id))[0].artifact_type == ArtifactType.FILE
    assert (await repo.list_file_changes(incident.id))[0].change_type == ChangeType.MODIFIED
    assert not (await repo.list_verifications(incident.id))[0].passed
    assert (await repo.list_commands(incident.id))[0].command == "true"


@pytest.mark.asyncio
async def test_duplicate_evidence_key_rejected(repo):
    incident = await new_incident(repo)
    evidence = Evidence(incident_id=incident.id, evidence_type="page", content_hash="a" * 64, key="baseline:page")
    await repo.append_evidence(evidence)

    with pytest.raises(PersistenceError):
        await repo.append_evidence(evidence.model_copy(update={"id": "other-id"}))
    assert len(await repo.list_evidence(incident.id)) == 1


@pytest.mark.asyncio
async def test_unbound_records_rejected(repo):
    with pytest.raises(PersistenceError):
        await repo.append_command(CommandExecution(server_id="srv-1", command="true", exit_code=0))
    with pytest.raises(PersistenceError):
        await repo.append_verification(VerificationResult(passed=True, reason="ok"))


@pytest.mark.asyncio
async def test_timeline_filters(repo):
    incident = await new_incident(repo)
    await repo.save_incident_state(
        incident.id, IncidentState.NEW, IncidentState.DISCOVERY, {},
        transition_event(incident.id, IncidentState.DISCOVERY),
    )
    await repo.append_event(IncidentEvent(
        incident_id=incident.id, event_type=EventType.PHASE_STARTED, phase=IncidentState.DISCOVERY, step="start",
    ))

    assert len(await repo.list_timeline(incident.id, event_type=EventType.PHASE_STARTED)) == 1
    assert len(await repo.list_timeline(incident.id, phase=IncidentState.DISCOVERY)) == 2
    assert [e.sequence for e in await repo.list_timeline(incident.id, after_sequence=1)] == [2]


@pytest.mark.asyncio
async def test_active_incidents_exclude_terminal(repo):
    active = await new_incident(repo)
    done = await new_incident(repo)
    for from_state, to_state in (
        (IncidentState.NEW, IncidentState.DISCOVERY),
        (IncidentState.DISCOVERY, IncidentState.ESCALATED),
    ):
        await repo.save_incident_state(
            done.id, from_state, to_state, {"escalation_reason": "test"}, transition_event(done.id, to_state)
        )

    assert [i.id for i in await repo.list_active_incidents()] == [active.id]


@pytest.mark.asyncio
async def test_sql_server_directory(engine, cipher):
    factory = create_session_factory(engine)
    async with factory() as session:
        async with session.begin():
            session.add(ManagedServer(
                id="srv-9", name="web09", hostname="web09.example.com", port=2222, username="deploy",
                auth_type="password", encrypted_credentials=cipher.encrypt_document({"password": "pw-value-1234"}),
                host_key_fingerprint=FINGERPRINT,
            ))
    directory = SqlServerDirectory(factory)

    info = await directory.get_server("srv-9")
    assert info.port == 2222
    assert info.host_key_fingerprint == FINGERPRINT
    assert "pw-value-1234" not in repr(info)
    with pytest.raises(ValidationError):
        await directory.get_server("srv-missing")
