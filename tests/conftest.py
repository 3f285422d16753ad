# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Shared pytest fixtures for ag-join tests."""

from __future__ import annotations

import copy
import json
import subprocess
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from gateway import PrerequisiteResult
from models import (
    AvailabilityDatabase,
    AvailabilityGroup,
    AvailabilityMode,
    BackupSet,
    LifecycleState,
    Replica,
    ReplicaRole,
    SeedingMode,
    SeedingProgress,
    SynchronizationState,
)

ASYNC = AvailabilityMode.ASYNCHRONOUS_COMMIT
SYNC = AvailabilityMode.SYNCHRONOUS_COMMIT
MANUAL = SeedingMode.MANUAL
AUTOMATIC = SeedingMode.AUTOMATIC

# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove ag-join-specific environment variables.

    This prevents host environment from leaking into tests.
    """
    env_vars = [
        "AG_NAME",
        "PRIMARY_SERVER",
        "DATABASES",
        "SEEDING_MODE",
        "SHARED_PATH",
        "REPLICA_SERVERS",
        "SQLCMD_EXECUTABLE",
        "SQLCMD_USERNAME",
        "SQLCMD_PASSWORD",
        "SQLCMD_TIMEOUT",
        "TRUST_SERVER_CERTIFICATE",
        "PERMISSION_SERVICE_URL",
        "PERMISSION_SERVICE_TOKEN",
        "EXISTENCE_TIMEOUT",
        "SYNCHRONIZATION_TIMEOUT",
        "POLL_INTERVAL_MS",
        "REPORT_SEEDING_PROGRESS",
        "DEBUG",
        "GITHUB_OUTPUT",
        "GITHUB_STEP_SUMMARY",
        "GITHUB_ACTIONS",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture()
def github_output(tmp_path: Path) -> Path:
    """Create a temporary file for $GITHUB_OUTPUT."""
    f = tmp_path / "github_output"
    f.touch()
    return f


@pytest.fixture()
def github_summary(tmp_path: Path) -> Path:
    """Create a temporary file for $GITHUB_STEP_SUMMARY."""
    f = tmp_path / "github_summary"
    f.touch()
    return f


# ---------------------------------------------------------------------------
# Topology helpers
# ---------------------------------------------------------------------------


def make_ag(
    *secondaries: tuple[str, AvailabilityMode, SeedingMode],
    name: str = "ag1",
    primary: str = "SQL1",
    primary_seeding: SeedingMode = MANUAL,
) -> AvailabilityGroup:
    """Build a group with a synchronous primary and the given secondaries."""
    replicas = [
        Replica(
            name=primary,
            availability_mode=SYNC,
            seeding_mode=primary_seeding,
            role=ReplicaRole.PRIMARY,
        )
    ]
    for replica_name, mode, seeding in secondaries:
        replicas.append(Replica(name=replica_name, availability_mode=mode, seeding_mode=seeding))
    return AvailabilityGroup(name=name, replicas=replicas)


def make_db(
    replica: str,
    state: LifecycleState = LifecycleState.EXISTING,
    joined: bool = False,
    sync: SynchronizationState = SynchronizationState.NOT_SYNCHRONIZING,
    name: str = "db1",
) -> AvailabilityDatabase:
    return AvailabilityDatabase(
        name=name,
        replica_name=replica,
        lifecycle_state=state,
        is_joined=joined,
        synchronization_state=sync,
    )


@pytest.fixture()
def sample_ag() -> AvailabilityGroup:
    """Primary SQL1 with a sync (SQL2) and an async (SQL3) manual secondary."""
    return make_ag(("SQL2", SYNC, MANUAL), ("SQL3", ASYNC, MANUAL))


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGateway:
    """Scripted in-memory :class:`gateway.ReplicaGateway`.

    * ``current`` – what ``get_database`` returns per replica name.
    * ``created`` – what ``create_database`` returns per replica name
      (default: a ``CREATING`` handle on the primary, ``PENDING``
      elsewhere).
    * ``refreshes`` – successive states returned by ``refresh``; the
      last one repeats.  An exception in the script is raised in its
      place.  Without a script the handle is returned as is.
    * ``progress`` – successive ``seeding_progress`` results.
    * ``errors`` – exception to raise per ``(method, replica)``.

    Every call is recorded in ``calls`` as ``(method, replica)``.
    """

    def __init__(self) -> None:
        self.current: dict[str, AvailabilityDatabase | None] = {}
        self.created: dict[str, AvailabilityDatabase] = {}
        self.refreshes: dict[str, list[AvailabilityDatabase | Exception]] = {}
        self.progress: dict[str, list[SeedingProgress | None]] = {}
        self.errors: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.seeding_changes: list[tuple[str, SeedingMode]] = []

    def script(self, replica: str, *states: AvailabilityDatabase | Exception) -> None:
        self.refreshes[replica] = list(states)

    def calls_to(self, method: str) -> list[str]:
        return [name for m, name in self.calls if m == method]

    def _record(self, method: str, replica: str) -> None:
        self.calls.append((method, replica))
        error = self.errors.get((method, replica))
        if error is not None:
            raise error

    def get_database(self, replica: Replica, ag_name: str, database: str):
        self._record("get_database", replica.name)
        return self.current.get(replica.name)

    def create_database(self, replica: Replica, ag_name: str, database: str):
        self._record("create_database", replica.name)
        if replica.name in self.created:
            return self.created[replica.name]
        state = LifecycleState.CREATING if replica.is_primary else LifecycleState.PENDING
        return make_db(replica.name, state=state, name=database)

    def refresh(self, replica: Replica, ag_name: str, database: AvailabilityDatabase):
        self._record("refresh", replica.name)
        script = self.refreshes.get(replica.name)
        if not script:
            return database
        state = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(state, Exception):
            raise state
        return state

    def join(self, replica: Replica, ag_name: str, database: str) -> None:
        self._record("join", replica.name)

    def set_seeding_mode(
        self, primary: Replica, ag_name: str, replica: Replica, mode: SeedingMode
    ) -> None:
        self._record("set_seeding_mode", replica.name)
        self.seeding_changes.append((replica.name, mode))

    def seeding_progress(self, replica: Replica, database: str):
        self._record("seeding_progress", replica.name)
        script = self.progress.get(replica.name)
        if not script:
            return None
        if len(script) > 1:
            return script.pop(0)
        return script[0]


class FakeBackupService:
    def __init__(self) -> None:
        self.backups: list[tuple[str, str, str]] = []
        self.restores: list[tuple[str, str]] = []
        self.backup_error: Exception | None = None
        self.restore_errors: dict[str, Exception] = {}

    def backup(self, primary: Replica, database: str, path: str) -> BackupSet:
        self.backups.append((primary.name, database, path))
        if self.backup_error is not None:
            raise self.backup_error
        return BackupSet(
            database=database,
            full_backup_path=f"{path}/{database}.bak",
            log_backup_path=f"{path}/{database}.trn",
        )

    def restore(self, backup_set: BackupSet, replica: Replica, path: str) -> None:
        self.restores.append((replica.name, backup_set.full_backup_path))
        error = self.restore_errors.get(replica.name)
        if error is not None:
            raise error


class FakeGrantor:
    def __init__(self) -> None:
        self.grants: list[tuple[str, str, str]] = []
        self.errors: dict[str, Exception] = {}

    def grant_permission(self, replica: Replica, ag_name: str, permission: str) -> None:
        self.grants.append((replica.name, ag_name, permission))
        error = self.errors.get(replica.name)
        if error is not None:
            raise error


class FakePrerequisiteCheck:
    """Returns a fresh copy of *ag* for every database."""

    def __init__(
        self,
        ag: AvailabilityGroup,
        replicas_needing_restore: list[str] | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.ag = ag
        self.replicas_needing_restore = list(replicas_needing_restore or [])
        self.errors = dict(errors or {})
        self.checked: list[str] = []

    def check(self, ag_name, database, seeding_mode=None, shared_path=""):
        self.checked.append(database)
        if database in self.errors:
            raise self.errors[database]
        return PrerequisiteResult(
            availability_group=copy.deepcopy(self.ag),
            database=database,
            replicas_needing_restore=list(self.replicas_needing_restore),
        )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def backups() -> FakeBackupService:
    return FakeBackupService()


@pytest.fixture()
def grantor() -> FakeGrantor:
    return FakeGrantor()


# ---------------------------------------------------------------------------
# Subprocess mock helpers
# ---------------------------------------------------------------------------


def make_completed_process(
    stdout: str = "",
    stderr: str = "",
    returncode: int = 0,
) -> subprocess.CompletedProcess[str]:
    """Create a mock subprocess.CompletedProcess."""
    return subprocess.CompletedProcess(
        args=["sqlcmd"],
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
    )


@pytest.fixture()
def mock_subprocess_run():
    """Patch subprocess.run and return the mock.

    The default return value is a successful sqlcmd run with empty
    stdout/stderr.  Tests can override ``mock.return_value`` or use
    ``mock.side_effect`` for sequences of calls.
    """
    with patch("subprocess.run") as mock:
        mock.return_value = make_completed_process()
        yield mock


# ---------------------------------------------------------------------------
# Requests mock helpers
# ---------------------------------------------------------------------------


class MockResponse:
    """Minimal mock for requests.Response."""

    def __init__(
        self,
        status_code: int = 200,
        text: str = "",
        url: str = "",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.text = text
        self.url = url or ""
        self.headers = headers or {}
        self.content = text.encode("utf-8")

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        return json.loads(self.text)
