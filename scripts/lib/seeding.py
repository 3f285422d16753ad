# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Seeding preparation: replica seeding modes and manual backup/restore.

Both stages run before any availability database is created.  Each one
attempts every replica even when some fail, then raises a single
phase-wide error so the orchestrator can abort the database without
touching the rest of the batch.
"""

from __future__ import annotations

import logging

from errors import AgJoinError, ConfigurationError, SeedingError
from gateway import CREATE_ANY_DATABASE, BackupService, PermissionGrantor, ReplicaGateway
from models import AvailabilityGroup, BackupSet, Replica, SeedingMode

logger = logging.getLogger(__name__)


class SeedingModeConfigurator:
    """Bring every replica's seeding mode in line with the requested one.

    Replicas switched to automatic seeding are also granted permission to
    create databases at the availability group level.  The new mode stays
    on the replica whatever happens to the database afterwards.
    """

    def __init__(self, gateway: ReplicaGateway, grantor: PermissionGrantor) -> None:
        self.gateway = gateway
        self.grantor = grantor

    def configure(self, ag: AvailabilityGroup, requested_mode: SeedingMode) -> list[Replica]:
        """Apply *requested_mode* and return the replicas that were changed.

        Raises :class:`ConfigurationError` if any replica could not be
        switched or granted.
        """
        primary = ag.primary
        changed: list[Replica] = []
        failures: dict[str, str] = {}

        for replica in ag.replicas:
            if replica.seeding_mode is requested_mode:
                logger.debug("%s already uses %s seeding", replica.name, requested_mode.value)
                continue
            try:
                self.gateway.set_seeding_mode(primary, ag.name, replica, requested_mode)
                replica.seeding_mode = requested_mode
                changed.append(replica)
                logger.info("Seeding mode of %s set to %s", replica.name, requested_mode.value)
                if requested_mode is SeedingMode.AUTOMATIC:
                    self.grantor.grant_permission(replica, ag.name, CREATE_ANY_DATABASE)
            except AgJoinError as exc:
                failures[replica.name] = str(exc)
                logger.error("Could not configure seeding on %s: %s", replica.name, exc)

        if failures:
            raise ConfigurationError(
                f"Seeding mode configuration failed on {', '.join(failures)}",
                failures=failures,
            )
        return changed


class BackupRestoreCoordinator:
    """Seed manually-seeded replicas from a single full + log backup set."""

    def __init__(self, backups: BackupService) -> None:
        self.backups = backups

    def ensure_seeded(
        self,
        ag: AvailabilityGroup,
        database: str,
        replicas_needing_restore: list[str],
        existing_backup_set: BackupSet | None = None,
        shared_path: str = "",
    ) -> BackupSet | None:
        """Restore *database* in ``NORECOVERY`` on every replica that needs it.

        Only replicas named in *replicas_needing_restore* and still using
        manual seeding are restored.  A backup is taken only when no
        *existing_backup_set* was supplied and at least one replica
        needs it.  Returns the backup set used, if any.

        Raises :class:`SeedingError` if the backup or any restore failed.
        """
        targets = self._targets(ag, replicas_needing_restore)
        if not targets:
            logger.debug("No replica of %s needs a manual restore", database)
            return existing_backup_set

        backup_set = existing_backup_set
        if backup_set is None:
            try:
                backup_set = self.backups.backup(ag.primary, database, shared_path)
            except AgJoinError as exc:
                raise SeedingError(
                    f"Backup of {database} failed: {exc}",
                    failures={ag.primary.name: str(exc)},
                ) from exc
            logger.info("Backup set for %s ready: %s", database, backup_set.full_backup_path)
        else:
            logger.info("Reusing supplied backup set %s", backup_set.full_backup_path)

        failures: dict[str, str] = {}
        for replica in targets:
            try:
                self.backups.restore(backup_set, replica, shared_path)
                logger.info("Restored %s on %s ✅", database, replica.name)
            except AgJoinError as exc:
                failures[replica.name] = str(exc)
                logger.error("Restore of %s on %s failed: %s", database, replica.name, exc)

        if failures:
            raise SeedingError(
                f"Restore of {database} failed on {', '.join(failures)}",
                failures=failures,
            )
        return backup_set

    @staticmethod
    def _targets(ag: AvailabilityGroup, names: list[str]) -> list[Replica]:
        wanted = {n.lower() for n in names}
        return [
            r
            for r in ag.secondaries
            if r.name.lower() in wanted and r.seeding_mode is SeedingMode.MANUAL
        ]
