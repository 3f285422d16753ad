# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""T-SQL implementations of the orchestrator's collaborators.

Every class here talks to SQL Server exclusively through
:class:`sqlcmd.SqlCmdRunner` and reads state from the HADR catalog
views on each call:

- :class:`SqlReplicaGateway` – availability database state, create,
  join, seeding mode, automatic seeding progress
- :class:`SqlBackupService` – full + log backup and ``NORECOVERY``
  restores
- :class:`SqlPermissionGrantor` – ``GRANT CREATE ANY DATABASE`` on the
  availability group
- :class:`SqlPrerequisiteCheck` – topology load and eligibility checks
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from errors import PrerequisiteError, SqlCmdError
from gateway import CREATE_ANY_DATABASE, PrerequisiteResult
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
from sqlcmd import SqlCmdRunner, quote_literal, quote_name

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

_AVAILABILITY_DATABASE_SQL = """
SELECT adc.database_name,
       CASE WHEN d.database_id IS NULL THEN 0 ELSE 1 END,
       ISNULL(drs.synchronization_state_desc, '')
FROM sys.availability_groups AS ag
JOIN sys.availability_databases_cluster AS adc ON adc.group_id = ag.group_id
LEFT JOIN sys.databases AS d ON d.group_database_id = adc.group_database_id
LEFT JOIN sys.dm_hadr_database_replica_states AS drs
    ON drs.group_database_id = adc.group_database_id AND drs.is_local = 1
WHERE ag.name = {ag} AND adc.database_name = {db};
"""

_SEEDING_PROGRESS_SQL = """
SELECT TOP (1) ISNULL(transferred_size_bytes, 0),
       ISNULL(database_size_bytes, 0),
       ISNULL(CONVERT(varchar(33), estimate_time_complete_utc, 126), ''),
       ISNULL(REPLACE(failure_message, '|', '/'), '')
FROM sys.dm_hadr_physical_seeding_stats
WHERE local_database_name = {db}
ORDER BY start_time_utc DESC;
"""

_TOPOLOGY_SQL = """
SELECT ar.replica_server_name,
       ar.availability_mode_desc,
       ar.seeding_mode_desc,
       ISNULL(ars.role_desc, '')
FROM sys.availability_groups AS ag
JOIN sys.availability_replicas AS ar ON ar.group_id = ag.group_id
LEFT JOIN sys.dm_hadr_availability_replica_states AS ars
    ON ars.replica_id = ar.replica_id
WHERE ag.name = {ag}
ORDER BY ar.replica_server_name;
"""

_SOURCE_DATABASE_SQL = """
SELECT d.state_desc,
       d.recovery_model_desc,
       ISNULL(ag.name, '')
FROM sys.databases AS d
LEFT JOIN sys.availability_databases_cluster AS adc
    ON adc.group_database_id = d.group_database_id
LEFT JOIN sys.availability_groups AS ag ON ag.group_id = adc.group_id
WHERE d.name = {db};
"""

_DATABASE_EXISTS_SQL = "SELECT COUNT(*) FROM sys.databases WHERE name = {db};"

_SYNC_STATE_MAP = {
    "SYNCHRONIZED": SynchronizationState.SYNCHRONIZED,
    "SYNCHRONIZING": SynchronizationState.SYNCHRONIZING,
}

# Permissions this grantor knows how to express in T-SQL
_GRANTABLE = {CREATE_ANY_DATABASE}


def _parse_sync_state(desc: str) -> SynchronizationState:
    """Map ``synchronization_state_desc`` onto the three states we track.

    ``REVERTING`` and ``INITIALIZING`` are transitional and count as not
    synchronizing.
    """
    return _SYNC_STATE_MAP.get(desc.strip().upper(), SynchronizationState.NOT_SYNCHRONIZING)


def _parse_availability_mode(desc: str) -> AvailabilityMode:
    try:
        return AvailabilityMode(desc.strip().upper())
    except ValueError:
        # Treated as not joinable; target_synchronization_state rejects it
        logger.warning("Unrecognised availability mode '%s'", desc)
        return AvailabilityMode.CONFIGURATION_ONLY


def join_path(base: str, filename: str) -> str:
    """Join *filename* onto a Windows, UNC or POSIX *base* directory."""
    sep = "\\" if "\\" in base else "/"
    return base.rstrip("\\/") + sep + filename


def _backup_file(path: str, filename: str) -> str:
    if not path or "\\" in filename or "/" in filename:
        return filename
    return join_path(path, filename)


# ---------------------------------------------------------------------------
# Replica gateway
# ---------------------------------------------------------------------------


class SqlReplicaGateway:
    """:class:`gateway.ReplicaGateway` backed by the HADR catalog views."""

    def __init__(self, runner: SqlCmdRunner) -> None:
        self.runner = runner

    def get_database(
        self, replica: Replica, ag_name: str, database: str
    ) -> AvailabilityDatabase | None:
        rows = self.runner.query(
            replica.server,
            _AVAILABILITY_DATABASE_SQL.format(
                ag=quote_literal(ag_name), db=quote_literal(database)
            ),
        )
        if not rows:
            return None
        row = rows[0] + ["", "", ""]
        return AvailabilityDatabase(
            name=row[0] or database,
            replica_name=replica.name,
            lifecycle_state=LifecycleState.EXISTING,
            is_joined=row[1] == "1",
            synchronization_state=_parse_sync_state(row[2]),
        )

    def create_database(
        self, replica: Replica, ag_name: str, database: str
    ) -> AvailabilityDatabase:
        """Add *database* to the group on the primary.

        On a secondary the availability database appears once the
        primary has added it, so this only reads the current view.
        """
        if replica.is_primary:
            logger.info("Adding %s to availability group %s on %s", database, ag_name, replica.name)
            self.runner.execute(
                replica.server,
                f"ALTER AVAILABILITY GROUP {quote_name(ag_name)} "
                f"ADD DATABASE {quote_name(database)};",
            )
            current = self.get_database(replica, ag_name, database)
            return current or AvailabilityDatabase(
                name=database,
                replica_name=replica.name,
                lifecycle_state=LifecycleState.CREATING,
            )
        current = self.get_database(replica, ag_name, database)
        return current or AvailabilityDatabase(name=database, replica_name=replica.name)

    def refresh(
        self, replica: Replica, ag_name: str, database: AvailabilityDatabase
    ) -> AvailabilityDatabase:
        current = self.get_database(replica, ag_name, database.name)
        if current is not None:
            return current
        # Not visible yet: keep CREATING once a create was issued
        state = (
            LifecycleState.CREATING
            if database.lifecycle_state is LifecycleState.CREATING
            else LifecycleState.PENDING
        )
        return AvailabilityDatabase(
            name=database.name, replica_name=replica.name, lifecycle_state=state
        )

    def join(self, replica: Replica, ag_name: str, database: str) -> None:
        logger.info("Joining %s to availability group %s on %s", database, ag_name, replica.name)
        self.runner.execute(
            replica.server,
            f"ALTER DATABASE {quote_name(database)} "
            f"SET HADR AVAILABILITY GROUP = {quote_name(ag_name)};",
        )

    def set_seeding_mode(
        self, primary: Replica, ag_name: str, replica: Replica, mode: SeedingMode
    ) -> None:
        self.runner.execute(
            primary.server,
            f"ALTER AVAILABILITY GROUP {quote_name(ag_name)} "
            f"MODIFY REPLICA ON {quote_literal(replica.name)} "
            f"WITH (SEEDING_MODE = {mode.value});",
        )

    def seeding_progress(self, replica: Replica, database: str) -> SeedingProgress | None:
        rows = self.runner.query(
            replica.server, _SEEDING_PROGRESS_SQL.format(db=quote_literal(database))
        )
        if not rows:
            return None
        row = rows[0] + ["", "", "", ""]
        return SeedingProgress(
            transferred_bytes=_to_int(row[0]),
            total_bytes=_to_int(row[1]),
            estimated_completion=row[2],
            failure_message=row[3],
        )


# ---------------------------------------------------------------------------
# Backup / restore
# ---------------------------------------------------------------------------


class SqlBackupService:
    """:class:`gateway.BackupService` using ``BACKUP``/``RESTORE`` statements.

    Restores omit ``MOVE`` clauses so each replica reuses the source's
    folder structure.
    """

    def __init__(self, runner: SqlCmdRunner, timeout: int = 86400) -> None:
        self.runner = runner
        self.timeout = timeout

    def backup(self, primary: Replica, database: str, path: str) -> BackupSet:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        full_path = join_path(path, f"{database}_{stamp}.bak")
        log_path = join_path(path, f"{database}_{stamp}.trn")

        logger.info("Taking full backup of %s to %s", database, full_path)
        self.runner.execute(
            primary.server,
            f"BACKUP DATABASE {quote_name(database)} "
            f"TO DISK = {quote_literal(full_path)} WITH INIT, CHECKSUM;",
            timeout=self.timeout,
        )
        logger.info("Taking log backup of %s to %s", database, log_path)
        self.runner.execute(
            primary.server,
            f"BACKUP LOG {quote_name(database)} "
            f"TO DISK = {quote_literal(log_path)} WITH INIT, CHECKSUM;",
            timeout=self.timeout,
        )
        return BackupSet(database=database, full_backup_path=full_path, log_backup_path=log_path)

    def restore(self, backup_set: BackupSet, replica: Replica, path: str) -> None:
        """Restore *backup_set* WITH NORECOVERY on *replica*.

        Backup files given as bare file names are looked up in *path*;
        full paths are used as they are.
        """
        db = quote_name(backup_set.database)
        full_backup = _backup_file(path, backup_set.full_backup_path)
        log_backup = _backup_file(path, backup_set.log_backup_path)
        logger.info("Restoring %s to %s (NORECOVERY)", backup_set.database, replica.name)
        self.runner.execute(
            replica.server,
            f"RESTORE DATABASE {db} FROM DISK = "
            f"{quote_literal(full_backup)} WITH NORECOVERY;",
            timeout=self.timeout,
        )
        self.runner.execute(
            replica.server,
            f"RESTORE LOG {db} FROM DISK = "
            f"{quote_literal(log_backup)} WITH NORECOVERY;",
            timeout=self.timeout,
        )


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class SqlPermissionGrantor:
    """:class:`gateway.PermissionGrantor` issuing the grant on the replica itself."""

    def __init__(self, runner: SqlCmdRunner) -> None:
        self.runner = runner

    def grant_permission(self, replica: Replica, ag_name: str, permission: str) -> None:
        normalised = " ".join(permission.upper().split())
        if normalised not in _GRANTABLE:
            raise SqlCmdError(
                f"Unsupported availability group permission: {permission}",
                server=replica.server,
            )
        logger.info("Granting %s on %s to %s", normalised, ag_name, replica.name)
        self.runner.execute(
            replica.server,
            f"ALTER AVAILABILITY GROUP {quote_name(ag_name)} GRANT {normalised};",
        )


# ---------------------------------------------------------------------------
# Prerequisites
# ---------------------------------------------------------------------------


class SqlPrerequisiteCheck:
    """:class:`gateway.PrerequisiteCheck` reading topology from the primary.

    *replica_servers* maps lower-cased replica names to the address used
    to reach them, for replicas whose server name is not resolvable as is.
    """

    def __init__(
        self,
        runner: SqlCmdRunner,
        primary_server: str,
        replica_servers: dict[str, str] | None = None,
    ) -> None:
        self.runner = runner
        self.primary_server = primary_server
        self.replica_servers = {k.lower(): v for k, v in (replica_servers or {}).items()}

    def check(
        self,
        ag_name: str,
        database: str,
        seeding_mode: SeedingMode | None = None,
        shared_path: str = "",
    ) -> PrerequisiteResult:
        try:
            ag = self.load_availability_group(ag_name)
            self._check_source_database(ag, database)
            needing_restore = self._replicas_needing_restore(ag, database, seeding_mode)
        except SqlCmdError as exc:
            raise PrerequisiteError(
                f"Prerequisite query failed for {database}: {exc}", database=database
            ) from exc

        if needing_restore and not shared_path:
            raise PrerequisiteError(
                f"{database} must be restored on {', '.join(needing_restore)} "
                "but no shared backup path was given",
                database=database,
            )
        return PrerequisiteResult(
            availability_group=ag,
            database=database,
            replicas_needing_restore=needing_restore,
        )

    def load_availability_group(self, ag_name: str) -> AvailabilityGroup:
        rows = self.runner.query(self.primary_server, _TOPOLOGY_SQL.format(ag=quote_literal(ag_name)))
        if not rows:
            raise PrerequisiteError(
                f"Availability group {ag_name} not found on {self.primary_server}"
            )
        replicas: list[Replica] = []
        for row in rows:
            name, mode, seeding, role = (row + ["", "", "", ""])[:4]
            replicas.append(
                Replica(
                    name=name,
                    availability_mode=_parse_availability_mode(mode),
                    seeding_mode=(
                        SeedingMode.AUTOMATIC
                        if seeding.strip().upper() == "AUTOMATIC"
                        else SeedingMode.MANUAL
                    ),
                    role=(
                        ReplicaRole.PRIMARY
                        if role.strip().upper() == "PRIMARY"
                        else ReplicaRole.SECONDARY
                    ),
                    server=self.replica_servers.get(name.lower(), name),
                )
            )
        ag = AvailabilityGroup(name=ag_name, replicas=replicas)
        if not any(r.is_primary for r in replicas):
            raise PrerequisiteError(
                f"{self.primary_server} does not host the primary replica of {ag_name}"
            )
        return ag

    def _check_source_database(self, ag: AvailabilityGroup, database: str) -> None:
        rows = self.runner.query(
            ag.primary.server, _SOURCE_DATABASE_SQL.format(db=quote_literal(database))
        )
        if not rows:
            raise PrerequisiteError(
                f"Database {database} does not exist on {ag.primary.name}", database=database
            )
        state, recovery, member_of = (rows[0] + ["", "", ""])[:3]
        if state.upper() != "ONLINE":
            raise PrerequisiteError(
                f"Database {database} is {state or 'not online'} on {ag.primary.name}",
                database=database,
            )
        if recovery.upper() != "FULL":
            raise PrerequisiteError(
                f"Database {database} uses the {recovery or 'unknown'} recovery model "
                "(FULL is required)",
                database=database,
            )
        if member_of and member_of.lower() != ag.name.lower():
            raise PrerequisiteError(
                f"Database {database} already belongs to availability group {member_of}",
                database=database,
            )

    def _replicas_needing_restore(
        self,
        ag: AvailabilityGroup,
        database: str,
        seeding_mode: SeedingMode | None,
    ) -> list[str]:
        needing: list[str] = []
        for replica in ag.secondaries:
            effective = seeding_mode or replica.seeding_mode
            if effective is SeedingMode.AUTOMATIC:
                continue
            count = self.runner.scalar(
                replica.server, _DATABASE_EXISTS_SQL.format(db=quote_literal(database))
            )
            if _to_int(count) == 0:
                needing.append(replica.name)
        return needing


def _to_int(raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        return 0
