# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Add databases to an availability group and wait for them to synchronize.

For each database the pipeline runs strictly in order:

1. Prerequisite check (external) – loads the topology; any error skips
   the database without mutating anything.
2. Seeding mode configuration – only when a mode was requested.
3. Backup/restore – for manually-seeded replicas that lack the database.
4. Primary join – create the availability database, wait for EXISTING.
5. Secondary joins – per replica; failures are isolated.
6. Convergence – one combined wait over every joined secondary.

A phase-wide failure (steps 1–4) aborts the current database only; the
batch always moves on to the next one.  Every database yields exactly
one :class:`JoinOutcome`.  No failed step is retried automatically;
only state reads are repeated while waiting.

Usage::

    orchestrator = JoinOrchestrator(
        prerequisites, gateway, backups, grantor, OrchestratorConfig()
    )
    outcomes = orchestrator.add_databases("ag1", ["db1", "db2"])
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from config import OrchestratorConfig
from convergence import ConvergenceMonitor
from errors import AgJoinError
from gateway import BackupService, PermissionGrantor, PrerequisiteCheck, ReplicaGateway
from join import PrimaryJoinController, SecondaryJoinController
from logging_utils import log_group
from models import BackupSet, JoinOutcome, JoinStatus, ReplicaJoinRecord, SeedingMode
from seeding import BackupRestoreCoordinator, SeedingModeConfigurator

logger = logging.getLogger(__name__)


class JoinOrchestrator:
    """Coordinates every stage of joining databases to an availability group.

    Stage components can be injected for testing; by default they are
    built from the collaborators and *config*.
    """

    def __init__(
        self,
        prerequisites: PrerequisiteCheck,
        gateway: ReplicaGateway,
        backups: BackupService,
        grantor: PermissionGrantor,
        config: OrchestratorConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.prerequisites = prerequisites
        self.gateway = gateway
        self.configurator = SeedingModeConfigurator(gateway, grantor)
        self.coordinator = BackupRestoreCoordinator(backups)
        self.primary_controller = PrimaryJoinController(
            gateway,
            existence_timeout=self.config.existence_timeout,
            poll_interval=self.config.poll_interval,
            clock=clock,
            sleep=sleep,
        )
        self.secondary_controller = SecondaryJoinController(
            gateway,
            existence_timeout=self.config.existence_timeout,
            poll_interval=self.config.poll_interval,
            clock=clock,
            sleep=sleep,
        )
        self.monitor = ConvergenceMonitor(
            gateway,
            synchronization_timeout=self.config.synchronization_timeout,
            poll_interval=self.config.poll_interval,
            report_seeding_progress=self.config.report_seeding_progress,
            clock=clock,
            sleep=sleep,
        )

    # ---------- public API ----------

    def add_databases(
        self,
        ag_name: str,
        databases: Iterable[str],
        seeding_mode: SeedingMode | None = None,
        shared_path: str = "",
        backup_set: BackupSet | None = None,
    ) -> list[JoinOutcome]:
        """Run the join pipeline for each database, one after another."""
        names = list(databases)
        logger.info("Adding %d database(s) to availability group %s", len(names), ag_name)
        outcomes = [
            self.add_database(
                ag_name,
                name,
                seeding_mode=seeding_mode,
                shared_path=shared_path,
                backup_set=backup_set if backup_set and backup_set.database == name else None,
            )
            for name in names
        ]
        failed = [o for o in outcomes if not o.succeeded]
        logger.info(
            "Join summary: %d database(s), %d failed",
            len(outcomes),
            len(failed),
        )
        return outcomes

    def add_database(
        self,
        ag_name: str,
        database: str,
        seeding_mode: SeedingMode | None = None,
        shared_path: str = "",
        backup_set: BackupSet | None = None,
    ) -> JoinOutcome:
        """Join *database* to *ag_name* on every replica."""
        outcome = JoinOutcome(database=database, availability_group=ag_name)
        with log_group(f"Adding {database} to {ag_name}"):
            try:
                self._run(outcome, seeding_mode, shared_path, backup_set)
            except AgJoinError as exc:
                outcome.abort(exc)
                logger.error("%s: %s", database, exc)
            status = outcome.finalize()
            if status is JoinStatus.SUCCESS or status is JoinStatus.SKIPPED:
                logger.info("%s: %s ✅", database, status.value)
            else:
                logger.error("%s: %s ❌", database, status.value)
        return outcome

    # ---------- pipeline stages ----------

    def _run(
        self,
        outcome: JoinOutcome,
        seeding_mode: SeedingMode | None,
        shared_path: str,
        backup_set: BackupSet | None,
    ) -> None:
        database = outcome.database
        prereq = self.prerequisites.check(
            outcome.availability_group, database, seeding_mode, shared_path
        )
        ag = prereq.availability_group

        outcome.primary = ReplicaJoinRecord(replica=ag.primary)
        outcome.secondaries = [ReplicaJoinRecord(replica=r) for r in ag.secondaries]

        if seeding_mode is not None:
            self.configurator.configure(ag, seeding_mode)

        self.coordinator.ensure_seeded(
            ag,
            database,
            prereq.replicas_needing_restore,
            existing_backup_set=backup_set or prereq.backup_set,
            shared_path=shared_path,
        )

        self.primary_controller.join_primary(ag, database, outcome.primary)

        for record in outcome.secondaries:
            self.secondary_controller.join_secondary(ag, database, record)

        try:
            self.monitor.wait_for_convergence(ag.name, database, outcome.secondaries)
        except AgJoinError as exc:
            # Replicas left unconverged by an aborted wait count as failed
            for record in outcome.secondaries:
                if record.awaiting_convergence:
                    record.fail(f"convergence wait aborted: {exc}")
            outcome.error = str(exc)
            outcome.error_kind = type(exc).__name__
