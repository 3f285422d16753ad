#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Add databases to a SQL Server Always On availability group.

For each requested database this script runs the full join pipeline
and gates the workflow on the result:

1. Check prerequisites and load the group topology from the primary.
2. Switch replicas to the requested seeding mode (if any) and grant
   ``CREATE ANY DATABASE`` to automatically-seeded replicas.
3. Back up and restore the database on manually-seeded replicas that
   lack a local copy.
4. Add the database on the primary, then create/join it on every
   secondary.
5. Wait until every newly-joined secondary has synchronized.

Databases are processed one at a time; a failure on one never stops
the rest of the batch.  The exit code is non-zero if any database ended
in ``FAILURE`` or ``PARTIAL_FAILURE``.

Usage::

    # From a workflow step
    AG_NAME=ag1 PRIMARY_SERVER=sql1 DATABASES=db1,db2 \
        python scripts/add-database.py

    # Locally, overriding the environment
    python scripts/add-database.py --ag ag1 --database db1 \
        --seeding-mode automatic --debug
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Path setup – ensure ``scripts/lib`` is importable
# ---------------------------------------------------------------------------
SCRIPT_DIR = Path(__file__).parent.resolve()
LIB_DIR = SCRIPT_DIR / "lib"
sys.path.insert(0, str(LIB_DIR))

from config import JobConfig  # noqa: E402
from errors import AgJoinError, ConfigError  # noqa: E402
from gateway import PermissionGrantor  # noqa: E402
from logging_utils import setup_logging  # noqa: E402
from models import JoinStatus, SeedingMode  # noqa: E402
from orchestrator import JoinOrchestrator  # noqa: E402
from outputs import emit_join_outputs  # noqa: E402
from permission_api import PermissionServiceClient  # noqa: E402
from sql_gateway import (  # noqa: E402
    SqlBackupService,
    SqlPermissionGrantor,
    SqlPrerequisiteCheck,
    SqlReplicaGateway,
)
from sqlcmd import SqlCmdRunner  # noqa: E402

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Add databases to an Always On availability group.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--ag", help="Availability group name (default: $AG_NAME)")
    parser.add_argument(
        "--primary-server",
        help="Address of the instance hosting the primary (default: $PRIMARY_SERVER)",
    )
    parser.add_argument(
        "--database",
        "-d",
        action="append",
        dest="databases",
        help="Database to add; repeat for several (default: $DATABASES)",
    )
    parser.add_argument(
        "--seeding-mode",
        choices=["manual", "automatic"],
        type=str.lower,
        help="Seeding mode to apply to every replica (default: $SEEDING_MODE, unchanged)",
    )
    parser.add_argument(
        "--shared-path",
        help="Directory reachable by every replica for backup files (default: $SHARED_PATH)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging (default: $DEBUG)",
    )
    return parser.parse_args(argv)


def apply_overrides(config: JobConfig, args: argparse.Namespace) -> JobConfig:
    """Return *config* with any command-line values taking precedence."""
    overrides: dict[str, object] = {}
    if args.ag:
        overrides["ag_name"] = args.ag.strip()
    if args.primary_server:
        overrides["primary_server"] = args.primary_server.strip()
    if args.databases:
        overrides["databases"] = [d.strip() for d in args.databases if d.strip()]
    if args.seeding_mode:
        overrides["seeding_mode"] = SeedingMode.parse(args.seeding_mode)
    if args.shared_path:
        overrides["shared_path"] = args.shared_path.strip()
    if args.debug:
        overrides["debug"] = True
    return dataclasses.replace(config, **overrides) if overrides else config


def build_grantor(config: JobConfig, runner: SqlCmdRunner) -> PermissionGrantor:
    """Use the permission service when configured, T-SQL grants otherwise."""
    if config.permission_service_url:
        logger.info("Granting permissions through %s", config.permission_service_url)
        return PermissionServiceClient(
            config.permission_service_url, token=config.permission_service_token
        )
    return SqlPermissionGrantor(runner)


def build_orchestrator(config: JobConfig) -> JoinOrchestrator:
    runner = SqlCmdRunner(
        executable=config.sqlcmd_executable,
        username=config.sqlcmd_username,
        password=config.sqlcmd_password,
        trust_server_certificate=config.trust_server_certificate,
        timeout=config.sqlcmd_timeout,
    )
    return JoinOrchestrator(
        SqlPrerequisiteCheck(runner, config.primary_server, config.replica_servers),
        SqlReplicaGateway(runner),
        SqlBackupService(runner, timeout=int(config.orchestrator.synchronization_timeout)),
        build_grantor(config, runner),
        config.orchestrator,
    )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def run(argv: list[str] | None = None) -> int:
    """Add every configured database to the availability group.

    Environment Variables
    ---------------------
    AG_NAME, PRIMARY_SERVER, DATABASES
        Target group, the instance hosting its primary, and the
        comma-separated databases to add.
    SEEDING_MODE, SHARED_PATH
        Optional seeding mode to apply and the backup directory used
        for manual seeding.
    SQLCMD_USERNAME, SQLCMD_PASSWORD
        SQL authentication; integrated authentication when unset.
    PERMISSION_SERVICE_URL, PERMISSION_SERVICE_TOKEN
        Optional HTTP permission service for AG-level grants.
    EXISTENCE_TIMEOUT, SYNCHRONIZATION_TIMEOUT, POLL_INTERVAL_MS
        Wait ceilings and poll interval.

    Returns
    -------
    int
        Exit code: 0 if every database succeeded or was skipped, 1
        otherwise.
    """
    args = parse_args(argv)
    config = apply_overrides(JobConfig.from_environment(), args)
    setup_logging(
        debug=config.debug,
        secrets=[config.sqlcmd_password, config.permission_service_token],
    )

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error("  %s", problem)
        raise ConfigError(f"Invalid configuration ({len(problems)} problem(s))")

    logger.info("Availability group join configuration:")
    logger.info("  Availability group:  %s", config.ag_name)
    logger.info("  Primary server:      %s", config.primary_server)
    logger.info("  Databases:           %s", ", ".join(config.databases))
    logger.info(
        "  Seeding mode:        %s",
        config.seeding_mode.value if config.seeding_mode else "unchanged",
    )
    logger.info("  Shared path:         %s", config.shared_path or "-")
    logger.info("  Existence timeout:   %gs", config.orchestrator.existence_timeout)
    logger.info("  Sync timeout:        %gs", config.orchestrator.synchronization_timeout)
    logger.info("  Poll interval:       %dms", config.orchestrator.poll_interval_ms)
    logger.info("")

    orchestrator = build_orchestrator(config)
    outcomes = orchestrator.add_databases(
        config.ag_name,
        config.databases,
        seeding_mode=config.seeding_mode,
        shared_path=config.shared_path,
    )
    emit_join_outputs(outcomes)

    for outcome in outcomes:
        logger.info("  %s: %s", outcome.database, outcome.status.value)

    failed = [
        o
        for o in outcomes
        if o.status in (JoinStatus.FAILURE, JoinStatus.PARTIAL_FAILURE)
    ]
    if failed:
        logger.error(
            "%d of %d database(s) failed: %s",
            len(failed),
            len(outcomes),
            ", ".join(o.database for o in failed),
        )
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point with structured error handling."""
    try:
        return run(argv)
    except AgJoinError as exc:
        logger.error(str(exc))
        print(f"::error::{exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
