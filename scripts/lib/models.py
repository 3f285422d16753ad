# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Typed model of availability groups and of a single join operation.

``AvailabilityGroup`` and ``Replica`` describe the running cluster as
loaded by the prerequisite check.  Everything else lives only for the
duration of one database's join: the per-replica
:class:`ReplicaJoinRecord` is built once and updated in place by every
stage, and :class:`JoinOutcome` aggregates the records into the one
result reported per database.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from errors import InvariantViolation

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AvailabilityMode(str, Enum):
    """Commit mode of a replica, as reported by ``availability_mode_desc``."""

    ASYNCHRONOUS_COMMIT = "ASYNCHRONOUS_COMMIT"
    SYNCHRONOUS_COMMIT = "SYNCHRONOUS_COMMIT"
    CONFIGURATION_ONLY = "CONFIGURATION_ONLY"


class SeedingMode(str, Enum):
    """How a secondary obtains its initial copy of a database."""

    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"

    @classmethod
    def parse(cls, value: str) -> SeedingMode:
        """Parse a case-insensitive seeding mode name."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(
                f"Invalid seeding mode '{value}' (expected manual or automatic)"
            ) from None


class ReplicaRole(str, Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


class LifecycleState(str, Enum):
    """Whether the server recognises the availability database yet."""

    PENDING = "PENDING"
    CREATING = "CREATING"
    EXISTING = "EXISTING"


class SynchronizationState(str, Enum):
    NOT_SYNCHRONIZING = "NOT_SYNCHRONIZING"
    SYNCHRONIZING = "SYNCHRONIZING"
    SYNCHRONIZED = "SYNCHRONIZED"


class JoinStatus(str, Enum):
    """Outcome of a join, per replica and per database."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"


# ---------------------------------------------------------------------------
# Cluster topology
# ---------------------------------------------------------------------------


@dataclass
class Replica:
    """One server instance participating in an availability group.

    ``server`` is the address used to reach the instance; it defaults to
    the replica name when the two coincide.
    """

    name: str
    availability_mode: AvailabilityMode
    seeding_mode: SeedingMode = SeedingMode.MANUAL
    role: ReplicaRole = ReplicaRole.SECONDARY
    server: str = ""

    def __post_init__(self) -> None:
        if not self.server:
            self.server = self.name

    @property
    def is_primary(self) -> bool:
        return self.role is ReplicaRole.PRIMARY


@dataclass
class AvailabilityGroup:
    """An availability group with its ordered replicas."""

    name: str
    replicas: list[Replica] = field(default_factory=list)

    @property
    def primary(self) -> Replica:
        """Return the primary replica.

        Raises :class:`InvariantViolation` if the group does not have
        exactly one primary.
        """
        primaries = [r for r in self.replicas if r.is_primary]
        if len(primaries) != 1:
            raise InvariantViolation(
                f"Availability group {self.name} has {len(primaries)} primary "
                "replicas (expected exactly one)"
            )
        return primaries[0]

    @property
    def secondaries(self) -> list[Replica]:
        return [r for r in self.replicas if not r.is_primary]

    def replica(self, name: str) -> Replica:
        """Return the replica called *name* (case-insensitive)."""
        for candidate in self.replicas:
            if candidate.name.lower() == name.lower():
                return candidate
        raise KeyError(name)


# ---------------------------------------------------------------------------
# Per-operation values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AvailabilityDatabase:
    """Point-in-time view of a database on one replica."""

    name: str
    replica_name: str
    lifecycle_state: LifecycleState = LifecycleState.PENDING
    is_joined: bool = False
    synchronization_state: SynchronizationState = SynchronizationState.NOT_SYNCHRONIZING

    def __post_init__(self) -> None:
        if self.is_joined and self.lifecycle_state is not LifecycleState.EXISTING:
            raise InvariantViolation(
                f"{self.name} reported joined on {self.replica_name} "
                f"while {self.lifecycle_state.value}",
                replica=self.replica_name,
            )

    @property
    def exists(self) -> bool:
        return self.lifecycle_state is LifecycleState.EXISTING


@dataclass(frozen=True)
class BackupSet:
    """A full backup followed immediately by a log backup."""

    database: str
    full_backup_path: str
    log_backup_path: str


@dataclass(frozen=True)
class SeedingProgress:
    """Automatic seeding progress as reported by the server."""

    transferred_bytes: int = 0
    total_bytes: int = 0
    estimated_completion: str = ""
    failure_message: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.failure_message)

    @property
    def percent_complete(self) -> int:
        if self.total_bytes <= 0:
            return 0
        return min(self.transferred_bytes * 100 // self.total_bytes, 100)


def target_synchronization_state(replica: Replica) -> SynchronizationState:
    """Return the state a joined *replica* must reach to count as converged.

    Asynchronous-commit replicas converge at ``SYNCHRONIZING``;
    synchronous-commit replicas at ``SYNCHRONIZED``.  Any other mode
    raises :class:`InvariantViolation`.
    """
    if replica.availability_mode is AvailabilityMode.ASYNCHRONOUS_COMMIT:
        return SynchronizationState.SYNCHRONIZING
    if replica.availability_mode is AvailabilityMode.SYNCHRONOUS_COMMIT:
        return SynchronizationState.SYNCHRONIZED
    raise InvariantViolation(
        f"Replica {replica.name} has unsupported availability mode "
        f"{getattr(replica.availability_mode, 'value', replica.availability_mode)}",
        replica=replica.name,
    )


# ---------------------------------------------------------------------------
# Join bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class ReplicaJoinRecord:
    """Mutable per-replica state threaded through every join stage.

    ``target_state`` stays ``None`` for replicas that were already
    joined before the operation, which excludes them from the
    convergence wait.
    """

    replica: Replica
    database: AvailabilityDatabase | None = None
    target_state: SynchronizationState | None = None
    status: JoinStatus = JoinStatus.PENDING
    error: str = ""
    already_joined: bool = False
    converged: bool = False

    @property
    def name(self) -> str:
        return self.replica.name

    @property
    def failed(self) -> bool:
        return self.status is JoinStatus.FAILURE

    @property
    def awaiting_convergence(self) -> bool:
        return (
            self.target_state is not None
            and self.database is not None
            and not self.failed
            and not self.converged
        )

    def fail(self, error: object) -> None:
        self.status = JoinStatus.FAILURE
        self.error = str(error)

    def skip(self, reason: str = "") -> None:
        self.status = JoinStatus.SKIPPED
        self.error = reason

    def succeed(self) -> None:
        self.status = JoinStatus.SUCCESS
        self.error = ""


@dataclass(frozen=True)
class ReplicaResult:
    """One reported row: the final state of a database on a replica."""

    database: str
    replica: str
    role: str
    lifecycle_state: str
    is_joined: bool
    synchronization_state: str
    status: JoinStatus
    error: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "database": self.database,
            "replica": self.replica,
            "role": self.role,
            "lifecycle_state": self.lifecycle_state,
            "is_joined": self.is_joined,
            "synchronization_state": self.synchronization_state,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class JoinOutcome:
    """Aggregated result of adding one database to an availability group."""

    database: str
    availability_group: str
    status: JoinStatus = JoinStatus.PENDING
    error: str = ""
    error_kind: str = ""
    primary: ReplicaJoinRecord | None = None
    secondaries: list[ReplicaJoinRecord] = field(default_factory=list)

    @property
    def records(self) -> list[ReplicaJoinRecord]:
        head = [self.primary] if self.primary is not None else []
        return head + list(self.secondaries)

    @property
    def succeeded(self) -> bool:
        return self.status in (JoinStatus.SUCCESS, JoinStatus.SKIPPED)

    def abort(self, exc: BaseException) -> None:
        """Mark the whole database failed because a phase-wide step failed."""
        self.status = JoinStatus.FAILURE
        self.error = str(exc)
        self.error_kind = type(exc).__name__

    def finalize(self) -> JoinStatus:
        """Derive the aggregate status from the per-replica records."""
        if self.status is JoinStatus.FAILURE:
            return self.status
        attempted = [r for r in self.records if r.status is not JoinStatus.PENDING]
        failed = [r for r in attempted if r.failed]
        if failed and len(failed) == len(attempted):
            self.status = JoinStatus.FAILURE
        elif failed:
            self.status = JoinStatus.PARTIAL_FAILURE
        elif attempted and all(r.status is JoinStatus.SKIPPED for r in attempted):
            self.status = JoinStatus.SKIPPED
        else:
            self.status = JoinStatus.SUCCESS
        if failed and not self.error:
            self.error = "; ".join(f"{r.name}: {r.error}" for r in failed)
        return self.status

    def results(self) -> Iterator[ReplicaResult]:
        """Yield one :class:`ReplicaResult` per attempted replica."""
        for record in self.records:
            if record.status is JoinStatus.PENDING:
                continue
            db = record.database
            yield ReplicaResult(
                database=self.database,
                replica=record.name,
                role=record.replica.role.value,
                lifecycle_state=db.lifecycle_state.value if db else LifecycleState.PENDING.value,
                is_joined=db.is_joined if db else False,
                synchronization_state=(
                    db.synchronization_state.value
                    if db
                    else SynchronizationState.NOT_SYNCHRONIZING.value
                ),
                status=record.status,
                error=record.error,
            )
