# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Collaborator contracts consumed by the join orchestrator.

Each collaborator is a :class:`typing.Protocol` so that the T-SQL
implementations in :mod:`sql_gateway`, the HTTP permission client in
:mod:`permission_api` and the in-memory fakes used by the tests are
interchangeable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from models import (
    AvailabilityDatabase,
    AvailabilityGroup,
    BackupSet,
    Replica,
    SeedingMode,
    SeedingProgress,
)

# Permission granted to replicas that must create databases themselves
# when seeding automatically.
CREATE_ANY_DATABASE = "CREATE ANY DATABASE"


@dataclass
class PrerequisiteResult:
    """Everything the orchestrator needs to know before touching a database.

    ``replicas_needing_restore`` names the secondaries that have no
    local copy of the database and therefore need manual seeding.
    """

    availability_group: AvailabilityGroup
    database: str
    replicas_needing_restore: list[str] = field(default_factory=list)
    backup_set: BackupSet | None = None


class PrerequisiteCheck(Protocol):
    def check(
        self,
        ag_name: str,
        database: str,
        seeding_mode: SeedingMode | None = None,
        shared_path: str = "",
    ) -> PrerequisiteResult:
        """Validate *database* and load the group topology.

        Raises :class:`errors.PrerequisiteError` when the database is
        not eligible.
        """
        ...


class BackupService(Protocol):
    def backup(self, primary: Replica, database: str, path: str) -> BackupSet: ...

    def restore(self, backup_set: BackupSet, replica: Replica, path: str) -> None: ...


class PermissionGrantor(Protocol):
    def grant_permission(self, replica: Replica, ag_name: str, permission: str) -> None: ...


class ReplicaGateway(Protocol):
    """Per-replica operations on availability databases.

    Every read goes to the live server; implementations must not cache
    state between calls.
    """

    def get_database(
        self, replica: Replica, ag_name: str, database: str
    ) -> AvailabilityDatabase | None:
        """Return the current view of *database* on *replica*, or ``None``."""
        ...

    def create_database(
        self, replica: Replica, ag_name: str, database: str
    ) -> AvailabilityDatabase:
        """Create (primary) or retrieve (secondary) the availability database."""
        ...

    def refresh(self, replica: Replica, ag_name: str, database: AvailabilityDatabase) -> AvailabilityDatabase: ...

    def join(self, replica: Replica, ag_name: str, database: str) -> None: ...

    def set_seeding_mode(
        self, primary: Replica, ag_name: str, replica: Replica, mode: SeedingMode
    ) -> None: ...

    def seeding_progress(self, replica: Replica, database: str) -> SeedingProgress | None: ...
