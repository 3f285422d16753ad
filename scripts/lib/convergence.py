# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Wait for secondaries to reach their target synchronization state.

All secondaries are checked in **one combined loop**: every tick
refreshes each pending replica's handle (fixed order), then evaluates
``is_joined and synchronization_state == target``.  The loop ends when:

1. every pending replica has converged → success;
2. automatic seeding reports a failure for any replica →
   :class:`SeedingEngineError`, immediately;
3. the synchronization timeout elapses → :class:`ConvergenceTimeoutError`.

Replicas that were already joined before the operation have no target
state and are never waited on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from errors import AgJoinError, ConvergenceTimeoutError, SeedingEngineError, WaitTimeoutError
from gateway import ReplicaGateway
from models import ReplicaJoinRecord, SeedingMode
from polling import PollDriver

logger = logging.getLogger(__name__)

# Log a progress line at most this often while waiting
_PROGRESS_LOG_INTERVAL = 30.0


class _ConvergenceTick:
    """Poller for one tick over every pending replica.

    A failed read of one replica is remembered and retried on the next
    tick; it never stops the other replicas from being observed.
    """

    def __init__(
        self,
        monitor: ConvergenceMonitor,
        ag_name: str,
        database: str,
        records: list[ReplicaJoinRecord],
    ) -> None:
        self.monitor = monitor
        self.ag_name = ag_name
        self.database = database
        self.records = records
        self.last_errors: dict[str, str] = {}

    def poll(self) -> tuple[list[ReplicaJoinRecord], bool]:
        pending: list[ReplicaJoinRecord] = []
        for record in self.records:
            if not record.awaiting_convergence:
                continue
            try:
                self.monitor.observe(self.ag_name, self.database, record)
            except SeedingEngineError:
                raise
            except AgJoinError as exc:
                self.last_errors[record.name] = str(exc)
                logger.warning("  %s: state unavailable, retrying: %s", record.name, exc)
            else:
                self.last_errors.pop(record.name, None)
            if not record.converged:
                pending.append(record)
        self.monitor.log_progress(self.database, pending)
        return pending, not pending


class ConvergenceMonitor:
    """Poll every secondary until it converges, fails fatally, or times out."""

    def __init__(
        self,
        gateway: ReplicaGateway,
        synchronization_timeout: float,
        poll_interval: float,
        report_seeding_progress: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.synchronization_timeout = synchronization_timeout
        self.poll_interval = poll_interval
        self.report_seeding_progress = report_seeding_progress
        self.clock = clock
        self.sleep = sleep
        self._last_progress_log: float | None = None

    def wait_for_convergence(
        self, ag_name: str, database: str, records: list[ReplicaJoinRecord]
    ) -> None:
        """Block until every record with a target state has converged.

        Records without a target state (already joined) or already
        failed are excluded.  On timeout the records still pending are
        marked failed before :class:`ConvergenceTimeoutError` is raised;
        on a seeding failure the failing record is marked failed before
        :class:`SeedingEngineError` is raised.
        """
        waiting = [r for r in records if r.awaiting_convergence]
        if not waiting:
            logger.info("No secondary of %s needs to be waited on", database)
            return

        logger.info(
            "Waiting up to %gs for %s to synchronize on %s",
            self.synchronization_timeout,
            database,
            ", ".join(f"{r.name} ({r.target_state.value})" for r in waiting if r.target_state),
        )
        self._last_progress_log = None
        driver = PollDriver(
            timeout=self.synchronization_timeout,
            interval=self.poll_interval,
            clock=self.clock,
            sleep=self.sleep,
        )
        tick = _ConvergenceTick(self, ag_name, database, waiting)
        try:
            driver.run(tick, description=f"{database} to converge")
        except WaitTimeoutError as exc:
            pending = [r for r in waiting if not r.converged and not r.failed]
            for record in pending:
                reason = (
                    f"not {record.target_state.value if record.target_state else 'converged'} "
                    f"after {self.synchronization_timeout:g}s"
                )
                last_error = tick.last_errors.get(record.name)
                record.fail(f"{reason} (last error: {last_error})" if last_error else reason)
            raise ConvergenceTimeoutError(
                f"{database} did not synchronize on {', '.join(r.name for r in pending)} "
                f"within {self.synchronization_timeout:g}s",
                pending=[r.name for r in pending],
                elapsed=exc.elapsed,
            ) from exc

        logger.info("%s synchronized on all secondaries ✅", database)

    # ------------------------------------------------------------------
    # Per-replica observation
    # ------------------------------------------------------------------

    def observe(self, ag_name: str, database: str, record: ReplicaJoinRecord) -> None:
        """Refresh *record* and update its ``converged`` flag."""
        replica = record.replica
        record.database = self.gateway.refresh(replica, ag_name, record.database)

        if replica.seeding_mode is SeedingMode.AUTOMATIC and not self._is_converged(record):
            progress = self.gateway.seeding_progress(replica, database)
            if progress is not None and progress.failed:
                record.fail(f"automatic seeding failed: {progress.failure_message}")
                raise SeedingEngineError(
                    f"Automatic seeding of {database} to {replica.name} failed: "
                    f"{progress.failure_message}",
                    replica=replica.name,
                    failure_message=progress.failure_message,
                )
            if progress is not None and self.report_seeding_progress:
                logger.debug(
                    "  %s: seeded %d/%d bytes (%d%%), estimated completion %s",
                    replica.name,
                    progress.transferred_bytes,
                    progress.total_bytes,
                    progress.percent_complete,
                    progress.estimated_completion or "unknown",
                )
                if self._should_log_progress():
                    logger.info(
                        "  %s: %d%% seeded (%d of %d bytes), ETA %s",
                        replica.name,
                        progress.percent_complete,
                        progress.transferred_bytes,
                        progress.total_bytes,
                        progress.estimated_completion or "unknown",
                    )

        if self._is_converged(record):
            record.converged = True
            logger.info(
                "  %s: %s ✅",
                replica.name,
                record.database.synchronization_state.value,
            )

    def log_progress(self, database: str, pending: list[ReplicaJoinRecord]) -> None:
        if not pending or not self._should_log_progress(consume=True):
            return
        for record in pending:
            db = record.database
            logger.info(
                "  Still waiting on %s: joined=%s state=%s target=%s",
                record.name,
                db.is_joined if db else False,
                db.synchronization_state.value if db else "UNKNOWN",
                record.target_state.value if record.target_state else "-",
            )

    @staticmethod
    def _is_converged(record: ReplicaJoinRecord) -> bool:
        db = record.database
        return (
            db is not None
            and db.is_joined
            and db.synchronization_state is record.target_state
        )

    def _should_log_progress(self, consume: bool = False) -> bool:
        now = self.clock()
        due = (
            self._last_progress_log is None
            or now - self._last_progress_log >= _PROGRESS_LOG_INTERVAL
        )
        if due and consume:
            self._last_progress_log = now
        return due
