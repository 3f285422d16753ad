# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Domain-specific exception hierarchy for ag-join.

All exceptions raised by ag-join library modules inherit from
:class:`AgJoinError`, making it easy to catch every anticipated failure
at the CLI entry-point level while still allowing callers to handle
specific categories (prerequisites, seeding, join timeouts, …)
individually.
"""

from __future__ import annotations


class AgJoinError(Exception):
    """Base exception for all ag-join errors."""


class ConfigError(AgJoinError):
    """Invalid or missing configuration."""


class SqlCmdError(AgJoinError):
    """A ``sqlcmd`` invocation failed.

    Attributes:
        server: Server the command was sent to.
        returncode: Exit code returned by the sqlcmd process.
        stderr: Diagnostic output captured from the process.
    """

    def __init__(
        self,
        message: str,
        server: str = "",
        returncode: int = 1,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.server = server
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr:
            return f"{base}\nstderr: {self.stderr.strip()}"
        return base


class PermissionServiceError(AgJoinError):
    """The permission service rejected or failed a grant request.

    Attributes:
        status_code: HTTP status code, or ``None`` if no response arrived.
        response_text: Raw response body for diagnostics.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class PermissionServiceAuthError(PermissionServiceError):
    """The permission service refused our credentials."""


class PrerequisiteError(AgJoinError):
    """The database cannot be added to the availability group.

    Raised by the prerequisite check; the database is skipped without
    any state being mutated.
    """

    def __init__(self, message: str, database: str = "") -> None:
        super().__init__(message)
        self.database = database


class InvariantViolation(AgJoinError):
    """A replica is in a state the join procedure cannot handle."""

    def __init__(self, message: str, replica: str = "") -> None:
        super().__init__(message)
        self.replica = replica


class _PhaseError(AgJoinError):
    """A phase failed on one or more replicas.

    Attributes:
        failures: Mapping of replica name to the error message recorded
            for it.
    """

    def __init__(self, message: str, failures: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.failures = dict(failures or {})


class ConfigurationError(_PhaseError):
    """Changing the seeding mode or granting permissions failed."""


class SeedingError(_PhaseError):
    """A backup or a restore failed while seeding replicas manually."""


class WaitTimeoutError(AgJoinError):
    """A poll loop did not observe its target state before the ceiling.

    Attributes:
        elapsed: Wall-clock seconds spent waiting.
        last_state: The final state observed before giving up.
    """

    def __init__(
        self,
        message: str,
        elapsed: float = 0.0,
        last_state: object = None,
    ) -> None:
        super().__init__(message)
        self.elapsed = elapsed
        self.last_state = last_state


class JoinTimeoutError(WaitTimeoutError):
    """An availability database never reached the ``EXISTING`` state."""

    def __init__(
        self,
        message: str,
        replica: str = "",
        elapsed: float = 0.0,
        last_state: object = None,
    ) -> None:
        super().__init__(message, elapsed=elapsed, last_state=last_state)
        self.replica = replica


class ConvergenceTimeoutError(WaitTimeoutError):
    """Secondaries did not reach their target synchronization state in time.

    Attributes:
        pending: Names of the replicas that had not converged.
    """

    def __init__(
        self,
        message: str,
        pending: list[str] | None = None,
        elapsed: float = 0.0,
    ) -> None:
        super().__init__(message, elapsed=elapsed)
        self.pending = list(pending or [])


class SeedingEngineError(AgJoinError):
    """Automatic seeding reported a failure for a replica."""

    def __init__(self, message: str, replica: str = "", failure_message: str = "") -> None:
        super().__init__(message)
        self.replica = replica
        self.failure_message = failure_message
