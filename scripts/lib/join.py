# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Primary and secondary join controllers.

Both controllers create the availability database object once and then
poll its lifecycle state until the server reports it as ``EXISTING``.
Only the observation is retried, never the create call.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from errors import AgJoinError, JoinTimeoutError, WaitTimeoutError
from gateway import ReplicaGateway
from models import (
    AvailabilityDatabase,
    AvailabilityGroup,
    Replica,
    ReplicaJoinRecord,
    SeedingMode,
    target_synchronization_state,
)
from polling import PollDriver

logger = logging.getLogger(__name__)


class _ExistencePoller:
    """Refresh a handle until its lifecycle state is ``EXISTING``."""

    def __init__(
        self,
        gateway: ReplicaGateway,
        replica: Replica,
        ag_name: str,
        database: AvailabilityDatabase,
    ) -> None:
        self.gateway = gateway
        self.replica = replica
        self.ag_name = ag_name
        self.database = database
        self._first = True

    def poll(self) -> tuple[AvailabilityDatabase, bool]:
        # The handle returned by create is checked before any refresh
        if not self._first:
            self.database = self.gateway.refresh(self.replica, self.ag_name, self.database)
        self._first = False
        return self.database, self.database.exists


class _LifecycleWaiter:
    """Shared create-then-wait-for-existence behaviour."""

    def __init__(
        self,
        gateway: ReplicaGateway,
        existence_timeout: float,
        poll_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.existence_timeout = existence_timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    def wait_for_existence(
        self, replica: Replica, ag_name: str, database: AvailabilityDatabase
    ) -> AvailabilityDatabase:
        """Poll until *database* exists on *replica*; raise :class:`JoinTimeoutError`."""
        driver = PollDriver(
            timeout=self.existence_timeout,
            interval=self.poll_interval,
            clock=self.clock,
            sleep=self.sleep,
        )
        poller = _ExistencePoller(self.gateway, replica, ag_name, database)
        try:
            return driver.run(poller, description=f"{database.name} to exist on {replica.name}")
        except WaitTimeoutError as exc:
            raise JoinTimeoutError(
                f"{database.name} did not reach EXISTING on {replica.name} "
                f"within {self.existence_timeout:g}s",
                replica=replica.name,
                elapsed=exc.elapsed,
                last_state=exc.last_state,
            ) from exc


class PrimaryJoinController(_LifecycleWaiter):
    """Add the database to the availability group on the primary."""

    def join_primary(self, ag: AvailabilityGroup, database: str, record: ReplicaJoinRecord) -> None:
        """Create the availability database on the primary and wait for it.

        A database that is already a member of the group is skipped
        without any mutating call.  Raises :class:`JoinTimeoutError` or
        a gateway error; the record is marked failed before re-raising
        since a primary failure aborts the whole database.
        """
        primary = record.replica
        try:
            current = self.gateway.get_database(primary, ag.name, database)
            if current is not None and current.exists:
                record.database = current
                record.skip(f"{database} is already a member of {ag.name}")
                logger.info("%s is already in %s on primary %s, skipping", database, ag.name, primary.name)
                return

            logger.info("Creating availability database %s on primary %s", database, primary.name)
            created = self.gateway.create_database(primary, ag.name, database)
            record.database = self.wait_for_existence(primary, ag.name, created)
        except AgJoinError as exc:
            record.fail(exc)
            raise
        record.succeed()
        logger.info("%s exists on primary %s ✅", database, primary.name)


class SecondaryJoinController(_LifecycleWaiter):
    """Create or retrieve the availability database on one secondary and join it."""

    def join_secondary(self, ag: AvailabilityGroup, database: str, record: ReplicaJoinRecord) -> None:
        """Drive *record*'s replica to the joined state.

        Failures are recorded on *record* rather than raised so that
        sibling replicas are still attempted.  On success the record
        carries the handle and the target synchronization state used by
        the convergence wait.
        """
        replica = record.replica
        try:
            current = self.gateway.get_database(replica, ag.name, database)
            if current is not None and current.is_joined:
                record.database = current
                record.already_joined = True
                record.target_state = None
                record.skip(f"{database} already joined on {replica.name}")
                logger.info("%s already joined on %s, skipping", database, replica.name)
                return

            target = target_synchronization_state(replica)

            handle = current or self.gateway.create_database(replica, ag.name, database)
            handle = self.wait_for_existence(replica, ag.name, handle)

            if replica.seeding_mode is SeedingMode.MANUAL:
                self.gateway.join(replica, ag.name, database)
                handle = self.gateway.refresh(replica, ag.name, handle)
            else:
                logger.info(
                    "%s uses automatic seeding; the join happens once seeding completes",
                    replica.name,
                )
        except AgJoinError as exc:
            record.fail(exc)
            logger.error("Joining %s on %s failed: %s", database, replica.name, exc)
            return

        record.database = handle
        record.target_state = target
        record.succeed()
        logger.info(
            "%s ready on %s (target %s)", database, replica.name, target.value
        )
