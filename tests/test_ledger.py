from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from healer_core.exceptions import (
    LedgerConsistencyViolation,
    PersistenceError,
    RollbackFailed,
    ValidationError,
)
from healer_core.ledger.service import LedgerService
from healer_core.ledger.store import BackupStore
from healer_core.schemas.ledger import ArtifactType, BackupArtifact, ChangeType, FileChange
from healer_core.utils import sha256_hex

from .conftest import WP_CONFIG

T0 = datetime(2024, 5, 1, 12, 0, 0)
CONFIG = "/var/www/html/wp-config.php"
PLUGINS = "/var/www/html/wp-content/plugins"


def backup(path, at, sequence, artifact_type=ArtifactType.FILE, **kwargs):
    return BackupArtifact(
        incident_id="inc-1",
        artifact_type=artifact_type,
        original_path=path,
        stored_path=f"/backups/inc-1/{sequence}.bak",
        checksum="0" * 64,
        size=10,
        sequence=sequence,
        created_at=at,
        **kwargs,
    )


def change(path, at, sequence, change_type=ChangeType.MODIFIED):
    return FileChange(
        incident_id="inc-1", path=path, change_type=change_type, checksum="1" * 64,
        sequence=sequence, timestamp=at,
    )


def planner(settings, backups, changes):
    repo = AsyncMock()
    repo.list_backups.return_value = backups
    repo.list_file_changes.return_value = changes
    return LedgerService(repo, AsyncMock(), AsyncMock(), settings)


# ------------------------------------------------------------------ #
#  Planning                                                            #
# ------------------------------------------------------------------ #

@pytest.mark.asyncio
async def test_plan_orders_newest_change_first(settings):
    b1 = backup(CONFIG, T0, 1)
    b2 = backup("/var/www/html/.htaccess", T0, 2)
    c1 = change(CONFIG, T0 + timedelta(seconds=5), 3)
    c2 = change("/var/www/html/.htaccess", T0 + timedelta(seconds=9), 4)

    plan = await planner(settings, [b1, b2], [c1, c2]).plan_rollback("inc-1")

    assert [(s.change.id, s.backup.id) for s in plan] == [(c2.id, b2.id), (c1.id, b1.id)]


@pytest.mark.asyncio
async def test_plan_picks_latest_backup_before_the_change(settings):
    early = backup(CONFIG, T0, 1)
    latest = backup(CONFIG, T0 + timedelta(seconds=3), 2)
    after = backup(CONFIG, T0 + timedelta(seconds=30), 4)
    c = change(CONFIG, T0 + timedelta(seconds=10), 3)

    plan = await planner(settings, [early, after, latest], [c]).plan_rollback("inc-1")

    assert plan[0].backup.id == latest.id


@pytest.mark.asyncio
async def test_plan_breaks_timestamp_ties_by_sequence(settings):
    first = backup(CONFIG, T0, 1)
    second = backup(CONFIG, T0, 2)
    c_old = change(CONFIG, T0, 3)
    c_new = change(CONFIG, T0, 4)

    plan = await planner(settings, [second, first], [c_old, c_new]).plan_rollback("inc-1")

    assert [s.change.id for s in plan] == [c_new.id, c_old.id]
    assert all(s.backup.id == second.id for s in plan)


@pytest.mark.asyncio
async def test_plan_prefers_exact_backup_over_covering_archive(settings):
    plugin_file = f"{PLUGINS}/akismet/akismet.php"
    exact = backup(plugin_file, T0, 1)
    archive = backup(PLUGINS, T0 + timedelta(seconds=2), 2, ArtifactType.DIRECTORY)
    c = change(plugin_file, T0 + timedelta(seconds=5), 3)

    plan = await planner(settings, [exact, archive], [c]).plan_rollback("inc-1")

    assert plan[0].backup.id == exact.id


@pytest.mark.asyncio
async def test_covering_archive_used_when_no_exact_backup(settings):
    archive = backup(PLUGINS, T0, 1, ArtifactType.DIRECTORY)
    sibling = backup("/var/www/html/wp-content/plugins-old", T0, 2, ArtifactType.DIRECTORY)
    c = change(f"{PLUGINS}/akismet/akismet.php", T0 + timedelta(seconds=1), 3, ChangeType.DELETED)

    plan = await planner(settings, [archive, sibling], [c]).plan_rollback("inc-1")

    assert plan[0].backup.id == archive.id


@pytest.mark.asyncio
async def test_change_without_prior_backup_is_a_consistency_violation(settings):
    late = backup(CONFIG, T0 + timedelta(seconds=10), 2)
    c = change(CONFIG, T0, 1)

    with pytest.raises(LedgerConsistencyViolation):
        await planner(settings, [late], [c]).plan_rollback("inc-1")


@pytest.mark.asyncio
async def test_empty_ledger_plans_nothing(ledger, incident):
    assert await ledger.plan_rollback(incident.id) == []


# ------------------------------------------------------------------ #
#  Capture and replay                                                  #
# ------------------------------------------------------------------ #

@pytest.mark.asyncio
async def test_file_rollback_restores_backed_up_bytes(ledger, executor, wp_host, incident):
    async with executor.session("srv-1") as session:
        saved = await ledger.capture_file_backup(incident.id, session, CONFIG)
        broken = WP_CONFIG.replace(b"wordpress", b"typo")
        await executor.write_file(session, CONFIG, broken)
        await ledger.record_file_change(incident.id, CONFIG, ChangeType.MODIFIED, sha256_hex(broken), fix_attempt=1)

        restored = await ledger.execute_rollback(incident.id, session)

    assert saved.checksum == sha256_hex(WP_CONFIG)
    assert wp_host.files[CONFIG] == WP_CONFIG
    assert restored[0]["checksum"] == saved.checksum
    assert restored[0]["backup_id"] == saved.id


@pytest.mark.asyncio
async def test_backup_of_missing_file_is_skipped(ledger, executor, wp_host, incident):
    async with executor.session("srv-1") as session:
        assert await ledger.capture_file_backup(incident.id, session, "/var/www/html/nope.php") is None
        assert await ledger.capture_directory_backup(incident.id, session, "/var/www/html/nope") is None
    assert await ledger.list_backups(incident.id) == []


@pytest.mark.asyncio
async def test_directory_rollback_restores_tree_and_removes_moved_copy(ledger, executor, wp_host, incident):
    disabled = f"{PLUGINS}.wph-disabled-test"
    async with executor.session("srv-1") as session:
        archive = await ledger.capture_directory_backup(incident.id, session, PLUGINS)
        moved = await ledger.run_template(incident.id, session, "mv {{source}} {{target}}", source=PLUGINS, target=disabled)
        assert moved.ok
        await ledger.record_file_change(
            incident.id, PLUGINS, ChangeType.MOVED, None, fix_attempt=1, metadata={"moved_to": disabled}
        )
        assert f"{PLUGINS}/akismet/akismet.php" not in wp_host.files

        await ledger.execute_rollback(incident.id, session)

    assert archive.artifact_type == ArtifactType.DIRECTORY
    assert wp_host.files[f"{PLUGINS}/akismet/akismet.php"] == b"<?php // akismet"
    assert not any(p.startswith(disabled) for p in wp_host.files)
    assert not any(p.startswith("/tmp/wp-autohealer/") for p in wp_host.files)


@pytest.mark.asyncio
async def test_rollback_is_idempotent(ledger, executor, wp_host, incident):
    async with executor.session("srv-1") as session:
        await ledger.capture_file_backup(incident.id, session, CONFIG)
        await executor.write_file(session, CONFIG, b"<?php broken")
        await ledger.record_file_change(incident.id, CONFIG, ChangeType.MODIFIED, sha256_hex(b"<?php broken"))

        first = await ledger.execute_rollback(incident.id, session)
        await executor.write_file(session, CONFIG, b"<?php edited after rollback")
        second = await ledger.execute_rollback(incident.id, session)

    assert len(first) == 1
    assert second == []
    assert wp_host.files[CONFIG] == b"<?php edited after rollback"


@pytest.mark.asyncio
async def test_corrupt_stored_backup_halts_rollback(ledger, executor, wp_host, incident):
    async with executor.session("srv-1") as session:
        saved = await ledger.capture_file_backup(incident.id, session, CONFIG)
        await executor.write_file(session, CONFIG, b"<?php broken")
        await ledger.record_file_change(incident.id, CONFIG, ChangeType.MODIFIED, sha256_hex(b"<?php broken"))
        Path(saved.stored_path).write_bytes(b"tampered")

        with pytest.raises(RollbackFailed):
            await ledger.execute_rollback(incident.id, session)

    assert wp_host.files[CONFIG] == b"<?php broken"


@pytest.mark.asyncio
async def test_change_altered_content(ledger, executor, wp_host, incident):
    async with executor.session("srv-1") as session:
        await ledger.capture_file_backup(incident.id, session, CONFIG)
    same = await ledger.record_file_change(incident.id, CONFIG, ChangeType.MODIFIED, sha256_hex(WP_CONFIG))
    different = await ledger.record_file_change(incident.id, CONFIG, ChangeType.MODIFIED, sha256_hex(b"x"))

    assert not await ledger.change_altered_content(same)
    assert await ledger.change_altered_content(different)


# ------------------------------------------------------------------ #
#  Evidence                                                            #
# ------------------------------------------------------------------ #

@pytest.mark.asyncio
async def test_evidence_is_redacted_but_hashed_raw(ledger, incident):
    raw = "PHP Fatal error in wp-config: define( 'DB_PASSWORD', 'db-Pa55word-value' );"
    evidence = await ledger.record_evidence(incident.id, "php_error_log", raw, phase="BASELINE", key="baseline:error_log")

    assert "db-Pa55word-value" not in evidence.content
    assert evidence.content_hash == sha256_hex(raw)
    assert (await ledger.find_evidence(incident.id, "baseline:error_log")).id == evidence.id
    assert await ledger.find_evidence(incident.id, "baseline:page") is None


@pytest.mark.asyncio
async def test_evidence_keys_are_unique(ledger, incident):
    await ledger.record_evidence(incident.id, "disk_usage", "30%", key="observability:disk_usage")
    with pytest.raises(PersistenceError):
        await ledger.record_evidence(incident.id, "disk_usage", "31%", key="observability:disk_usage")


# ------------------------------------------------------------------ #
#  Backup store                                                        #
# ------------------------------------------------------------------ #

@pytest.mark.asyncio
async def test_store_round_trip_and_limits(tmp_path):
    store = BackupStore(str(tmp_path / "store"), max_bytes=16)
    stored_path, checksum, size = await store.save("inc-1", b"hello")

    assert await store.load(stored_path) == b"hello"
    assert checksum == sha256_hex(b"hello")
    assert size == 5

    with pytest.raises(ValidationError):
        await store.save("inc-1", b"x" * 17)

    outside = tmp_path / "elsewhere.bak"
    outside.write_bytes(b"x")
    with pytest.raises(RollbackFailed):
        await store.load(str(outside))
    with pytest.raises(RollbackFailed):
        await store.load(str(tmp_path / "store" / "inc-1" / "missing.bak"))
