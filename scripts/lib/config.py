# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Configuration parsing and validation for ag-join.

Replaces ad-hoc environment variable reads with typed, validated
dataclasses.  :class:`OrchestratorConfig` carries the timing knobs the
join orchestrator is constructed with; :class:`JobConfig` aggregates
everything an entry script needs (target group, databases, sqlcmd
credentials, permission service).

Usage::

    from config import JobConfig

    config = JobConfig.from_environment()
    problems = config.validate()
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from errors import ConfigError
from models import SeedingMode

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_EXISTENCE_TIMEOUT = 60
DEFAULT_SYNCHRONIZATION_TIMEOUT = 86400
DEFAULT_POLL_INTERVAL_MS = 100


# ---------------------------------------------------------------------------
# Orchestrator configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrchestratorConfig:
    """Timing options for the join orchestrator.

    ``existence_timeout`` bounds the wait for an availability database
    to be recognised on a replica (expected to be near-instant);
    ``synchronization_timeout`` bounds the wait for secondaries to catch
    up, which is limited only by replication throughput.
    """

    existence_timeout: float = DEFAULT_EXISTENCE_TIMEOUT
    synchronization_timeout: float = DEFAULT_SYNCHRONIZATION_TIMEOUT
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    report_seeding_progress: bool = True

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_environment(cls) -> OrchestratorConfig:
        env = os.environ.get
        return cls(
            existence_timeout=parse_interval_to_seconds(
                env("EXISTENCE_TIMEOUT", str(DEFAULT_EXISTENCE_TIMEOUT))
            ),
            synchronization_timeout=parse_interval_to_seconds(
                env("SYNCHRONIZATION_TIMEOUT", str(DEFAULT_SYNCHRONIZATION_TIMEOUT))
            ),
            poll_interval_ms=_parse_int(
                env("POLL_INTERVAL_MS", str(DEFAULT_POLL_INTERVAL_MS)),
                "POLL_INTERVAL_MS",
            ),
            report_seeding_progress=_str_to_bool(env("REPORT_SEEDING_PROGRESS", "true")),
        )

    def validate(self) -> list[str]:
        """Return a list of validation error messages (empty if valid)."""
        errors: list[str] = []
        if self.existence_timeout < 0:
            errors.append(f"existence_timeout must be >= 0: got {self.existence_timeout}")
        if self.synchronization_timeout < 0:
            errors.append(
                f"synchronization_timeout must be >= 0: got {self.synchronization_timeout}"
            )
        if self.poll_interval_ms <= 0:
            errors.append(f"poll_interval_ms must be > 0: got {self.poll_interval_ms}")
        return errors


# ---------------------------------------------------------------------------
# Job configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobConfig:
    """Global configuration for one ``add-database`` run.

    Aggregates environment variables into a single validated object.
    """

    ag_name: str = ""
    primary_server: str = ""
    databases: list[str] = field(default_factory=list)
    seeding_mode: SeedingMode | None = None
    shared_path: str = ""

    # Replica name → server address overrides
    replica_servers: dict[str, str] = field(default_factory=dict)

    # sqlcmd
    sqlcmd_executable: str = "sqlcmd"
    sqlcmd_username: str = ""
    sqlcmd_password: str = ""
    sqlcmd_timeout: int = 300
    trust_server_certificate: bool = True

    # Permission service (optional; T-SQL grants are used when unset)
    permission_service_url: str = ""
    permission_service_token: str = ""

    debug: bool = False

    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_environment(cls) -> JobConfig:
        """Parse configuration from environment variables."""
        env = os.environ.get

        raw_mode = env("SEEDING_MODE", "").strip()
        try:
            seeding_mode = SeedingMode.parse(raw_mode) if raw_mode else None
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        return cls(
            ag_name=env("AG_NAME", "").strip(),
            primary_server=env("PRIMARY_SERVER", "").strip(),
            databases=parse_database_list(env("DATABASES", "")),
            seeding_mode=seeding_mode,
            shared_path=env("SHARED_PATH", "").strip(),
            replica_servers=parse_replica_servers(env("REPLICA_SERVERS", "")),
            sqlcmd_executable=env("SQLCMD_EXECUTABLE", "sqlcmd"),
            sqlcmd_username=env("SQLCMD_USERNAME", ""),
            sqlcmd_password=env("SQLCMD_PASSWORD", ""),
            sqlcmd_timeout=_parse_int(env("SQLCMD_TIMEOUT", "300"), "SQLCMD_TIMEOUT"),
            trust_server_certificate=_str_to_bool(env("TRUST_SERVER_CERTIFICATE", "true")),
            permission_service_url=env("PERMISSION_SERVICE_URL", "").strip(),
            permission_service_token=env("PERMISSION_SERVICE_TOKEN", ""),
            debug=_str_to_bool(env("DEBUG", "false")),
            orchestrator=OrchestratorConfig.from_environment(),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Return a list of validation error messages (empty if valid)."""
        errors: list[str] = []

        if not self.ag_name:
            errors.append("AG_NAME is required")
        if not self.primary_server:
            errors.append("PRIMARY_SERVER is required")
        if not self.databases:
            errors.append("DATABASES is empty – at least one database is required")

        for name in [self.ag_name, *self.databases]:
            if name and len(name) > 128:
                errors.append(f"Identifier too long (max 128 characters): '{name[:32]}…'")

        if self.sqlcmd_password and not self.sqlcmd_username:
            errors.append("SQLCMD_USERNAME required when SQLCMD_PASSWORD is set")

        if self.permission_service_url and not re.match(
            r"^https?://", self.permission_service_url
        ):
            errors.append(
                f"PERMISSION_SERVICE_URL must be an http(s) URL: "
                f"got '{self.permission_service_url}'"
            )

        errors.extend(self.orchestrator.validate())
        return errors


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

_INTERVAL_RE = re.compile(r"^(\d+)([smhSMH]?)$")


def parse_interval_to_seconds(interval: str) -> int:
    """Parse a time interval string (e.g. ``"60s"``, ``"5m"``, ``"24h"``) to seconds.

    Plain integers (e.g. ``"60"``) are treated as seconds.

    Raises :class:`ConfigError` for invalid formats.
    """
    m = _INTERVAL_RE.match(interval.strip())
    if not m:
        raise ConfigError(
            f"Invalid interval '{interval}'. "
            "Expected format: <integer>[s|m|h], e.g. 60s, 5m, 24h"
        )
    value = int(m.group(1))
    unit = m.group(2).lower()
    if unit == "m":
        return value * 60
    if unit == "h":
        return value * 3600
    return value


def parse_database_list(raw: str) -> list[str]:
    """Split a comma- or newline-separated database list, dropping blanks and duplicates."""
    seen: set[str] = set()
    result: list[str] = []
    for item in re.split(r"[,\n]", raw):
        name = item.strip()
        if name and name.lower() not in seen:
            seen.add(name.lower())
            result.append(name)
    return result


def parse_replica_servers(raw: str) -> dict[str, str]:
    """Parse the ``REPLICA_SERVERS`` JSON object (replica name → address)."""
    if not raw.strip():
        return {}
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"REPLICA_SERVERS is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("REPLICA_SERVERS must be a JSON object")
    result: dict[str, str] = {}
    for name, server in data.items():
        if not isinstance(server, str) or not server.strip():
            logger.warning("Ignoring empty server address for replica %s", name)
            continue
        result[str(name).lower()] = server.strip()
    return result


def _str_to_bool(value: str) -> bool:
    """Convert a string to bool (``"true"`` → True, anything else → False)."""
    return value.strip().lower() == "true"


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer: got '{value}'") from exc
