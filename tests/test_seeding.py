# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Tests for the seeding module."""

from __future__ import annotations

import pytest
from conftest import (
    ASYNC,
    AUTOMATIC,
    MANUAL,
    SYNC,
    FakeBackupService,
    FakeGateway,
    FakeGrantor,
    make_ag,
)
from errors import ConfigurationError, SeedingError, SqlCmdError
from gateway import CREATE_ANY_DATABASE
from models import BackupSet
from seeding import BackupRestoreCoordinator, SeedingModeConfigurator

# ---------------------------------------------------------------------------
# SeedingModeConfigurator
# ---------------------------------------------------------------------------


class TestSeedingModeConfigurator:
    def test_switches_every_replica_and_grants(
        self, gateway: FakeGateway, grantor: FakeGrantor
    ) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL), ("SQL3", ASYNC, MANUAL))

        changed = SeedingModeConfigurator(gateway, grantor).configure(ag, AUTOMATIC)

        assert [r.name for r in changed] == ["SQL1", "SQL2", "SQL3"]
        assert all(r.seeding_mode is AUTOMATIC for r in ag.replicas)
        assert [g[0] for g in grantor.grants] == ["SQL1", "SQL2", "SQL3"]
        assert all(g[1:] == ("ag1", CREATE_ANY_DATABASE) for g in grantor.grants)

    def test_replicas_already_matching_are_untouched(
        self, gateway: FakeGateway, grantor: FakeGrantor
    ) -> None:
        ag = make_ag(("SQL2", SYNC, AUTOMATIC), ("SQL3", ASYNC, MANUAL), primary_seeding=AUTOMATIC)

        changed = SeedingModeConfigurator(gateway, grantor).configure(ag, AUTOMATIC)

        assert [r.name for r in changed] == ["SQL3"]
        assert gateway.calls_to("set_seeding_mode") == ["SQL3"]
        assert grantor.grants == [("SQL3", "ag1", CREATE_ANY_DATABASE)]

    def test_manual_mode_needs_no_grant(self, gateway: FakeGateway, grantor: FakeGrantor) -> None:
        ag = make_ag(("SQL2", SYNC, AUTOMATIC))

        SeedingModeConfigurator(gateway, grantor).configure(ag, MANUAL)

        assert gateway.seeding_changes == [("SQL2", MANUAL)]
        assert grantor.grants == []

    def test_failure_on_one_replica_still_attempts_the_rest(
        self, gateway: FakeGateway, grantor: FakeGrantor
    ) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL), ("SQL3", ASYNC, MANUAL), primary_seeding=AUTOMATIC)
        gateway.errors[("set_seeding_mode", "SQL2")] = SqlCmdError("denied")

        with pytest.raises(ConfigurationError) as excinfo:
            SeedingModeConfigurator(gateway, grantor).configure(ag, AUTOMATIC)

        assert list(excinfo.value.failures) == ["SQL2"]
        assert gateway.calls_to("set_seeding_mode") == ["SQL2", "SQL3"]
        assert ag.replica("SQL2").seeding_mode is MANUAL
        assert ag.replica("SQL3").seeding_mode is AUTOMATIC

    def test_grant_failure_is_a_configuration_error(
        self, gateway: FakeGateway, grantor: FakeGrantor
    ) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL), primary_seeding=AUTOMATIC)
        grantor.errors["SQL2"] = SqlCmdError("no permission")

        with pytest.raises(ConfigurationError, match="SQL2"):
            SeedingModeConfigurator(gateway, grantor).configure(ag, AUTOMATIC)
        # The mode change itself is not rolled back
        assert ag.replica("SQL2").seeding_mode is AUTOMATIC


# ---------------------------------------------------------------------------
# BackupRestoreCoordinator
# ---------------------------------------------------------------------------


class TestBackupRestoreCoordinator:
    def test_nothing_to_restore_takes_no_backup(self, backups: FakeBackupService) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL))

        result = BackupRestoreCoordinator(backups).ensure_seeded(ag, "db1", [], shared_path="/b")

        assert result is None
        assert backups.backups == []
        assert backups.restores == []

    def test_one_backup_many_restores(self, backups: FakeBackupService) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL), ("SQL3", ASYNC, MANUAL))

        result = BackupRestoreCoordinator(backups).ensure_seeded(
            ag, "db1", ["sql2", "SQL3"], shared_path="/b"
        )

        assert backups.backups == [("SQL1", "db1", "/b")]
        assert [r[0] for r in backups.restores] == ["SQL2", "SQL3"]
        assert result is not None
        assert result.full_backup_path == "/b/db1.bak"

    def test_supplied_backup_set_is_reused(self, backups: FakeBackupService) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL))
        supplied = BackupSet("db1", "/old/db1.bak", "/old/db1.trn")

        result = BackupRestoreCoordinator(backups).ensure_seeded(
            ag, "db1", ["SQL2"], existing_backup_set=supplied
        )

        assert result is supplied
        assert backups.backups == []
        assert backups.restores == [("SQL2", "/old/db1.bak")]

    def test_automatic_replicas_are_not_restored(self, backups: FakeBackupService) -> None:
        ag = make_ag(("SQL2", SYNC, AUTOMATIC), ("SQL3", ASYNC, MANUAL))

        BackupRestoreCoordinator(backups).ensure_seeded(ag, "db1", ["SQL2", "SQL3"], shared_path="/b")

        assert [r[0] for r in backups.restores] == ["SQL3"]

    def test_backup_failure(self, backups: FakeBackupService) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL))
        backups.backup_error = SqlCmdError("disk full")

        with pytest.raises(SeedingError, match="Backup of db1 failed") as excinfo:
            BackupRestoreCoordinator(backups).ensure_seeded(ag, "db1", ["SQL2"], shared_path="/b")

        assert "SQL1" in excinfo.value.failures
        assert backups.restores == []

    def test_restore_failure_still_attempts_the_rest(self, backups: FakeBackupService) -> None:
        ag = make_ag(("SQL2", SYNC, MANUAL), ("SQL3", ASYNC, MANUAL))
        backups.restore_errors["SQL2"] = SqlCmdError("media error")

        with pytest.raises(SeedingError) as excinfo:
            BackupRestoreCoordinator(backups).ensure_seeded(
                ag, "db1", ["SQL2", "SQL3"], shared_path="/b"
            )

        assert list(excinfo.value.failures) == ["SQL2"]
        assert [r[0] for r in backups.restores] == ["SQL2", "SQL3"]
