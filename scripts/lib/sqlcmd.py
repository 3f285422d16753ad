# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Thin wrapper around the ``sqlcmd`` CLI via :mod:`subprocess`.

All T-SQL sent to replicas goes through this single module, providing:

- Structured error handling via :class:`SqlCmdError`
- Consistent timeout management
- Debug logging of every statement
- Row parsing of ``-h -1 -W -s "|"`` output

We use the ``sqlcmd`` CLI rather than an ODBC driver binding so that
the only host requirement is the SQL Server command-line tools.  The
password is passed through the ``SQLCMDPASSWORD`` environment variable,
never on the command line.

Usage::

    from sqlcmd import SqlCmdRunner

    runner = SqlCmdRunner(username="sa", password="…")
    rows = runner.query("sql1", "SELECT name FROM sys.databases")
    runner.execute("sql1", "ALTER AVAILABILITY GROUP [ag1] ADD DATABASE [db1]")
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess

from errors import SqlCmdError

logger = logging.getLogger(__name__)

# Column separator requested from sqlcmd; T-SQL identifiers we read back
# never contain it.
COLUMN_SEPARATOR = "|"


def quote_name(identifier: str) -> str:
    """Return *identifier* as a bracket-delimited T-SQL identifier."""
    return "[" + identifier.replace("]", "]]") + "]"


def quote_literal(value: str) -> str:
    """Return *value* as an ``N'…'`` Unicode string literal."""
    return "N'" + value.replace("'", "''") + "'"


class SqlCmdRunner:
    """Thin wrapper around the ``sqlcmd`` CLI.

    Every public method translates its arguments into a ``sqlcmd …``
    command, runs it via :func:`subprocess.run`, and either returns the
    result or raises :class:`SqlCmdError` with full diagnostic context.
    """

    def __init__(
        self,
        executable: str = "sqlcmd",
        username: str = "",
        password: str = "",
        trust_server_certificate: bool = True,
        timeout: int = 300,
    ) -> None:
        self.executable = executable
        self.username = username
        self.password = password
        self.trust_server_certificate = trust_server_certificate
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Low-level command execution
    # ------------------------------------------------------------------

    def build_command(self, server: str, sql: str, database: str = "master") -> list[str]:
        """Return the argument vector for running *sql* on *server*."""
        cmd = [
            self.executable,
            "-S",
            server,
            "-d",
            database,
            "-b",
            "-h",
            "-1",
            "-W",
            "-s",
            COLUMN_SEPARATOR,
        ]
        if self.username:
            cmd.extend(["-U", self.username])
        else:
            cmd.append("-E")
        if self.trust_server_certificate:
            cmd.append("-C")
        cmd.extend(["-Q", f"SET NOCOUNT ON; {sql}"])
        return cmd

    def run(
        self,
        server: str,
        sql: str,
        *,
        database: str = "master",
        timeout: int | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *sql* on *server* and return the completed process.

        Raises
        ------
        SqlCmdError
            If *check* is True and sqlcmd exited non-zero, if the
            process did not complete within *timeout* seconds, or if
            the executable is missing.
        """
        cmd = self.build_command(server, sql, database)
        effective_timeout = timeout if timeout is not None else self.timeout
        logger.debug("Running on %s: %s", server, shlex.join(cmd[:-2]))
        logger.debug("  SQL: %s", sql)

        env = dict(os.environ)
        if self.password:
            env["SQLCMDPASSWORD"] = self.password

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            raise SqlCmdError(
                f"sqlcmd on {server} timed out after {effective_timeout}s",
                server=server,
                returncode=-1,
                stderr=str(exc),
            ) from exc
        except FileNotFoundError as exc:
            raise SqlCmdError(
                f"{self.executable} executable not found – are the SQL Server "
                "command-line tools installed?",
                server=server,
                returncode=-1,
                stderr=str(exc),
            ) from exc

        if check and result.returncode != 0:
            # sqlcmd writes server errors (Msg …) to stdout
            detail = (result.stderr or result.stdout).strip()
            raise SqlCmdError(
                f"sqlcmd on {server} failed (exit {result.returncode}): {detail}",
                server=server,
                returncode=result.returncode,
                stderr=result.stderr or result.stdout,
            )

        logger.debug(
            "sqlcmd on %s exited %d (stdout=%d bytes)",
            server,
            result.returncode,
            len(result.stdout),
        )
        return result

    # ------------------------------------------------------------------
    # Convenience helpers
    # ------------------------------------------------------------------

    def execute(
        self,
        server: str,
        sql: str,
        *,
        database: str = "master",
        timeout: int | None = None,
    ) -> None:
        """Run a statement whose output is not needed."""
        self.run(server, sql, database=database, timeout=timeout)

    def query(
        self,
        server: str,
        sql: str,
        *,
        database: str = "master",
        timeout: int | None = None,
    ) -> list[list[str]]:
        """Run a query and return its rows as lists of column strings."""
        result = self.run(server, sql, database=database, timeout=timeout)
        return parse_rows(result.stdout)

    def scalar(self, server: str, sql: str, *, database: str = "master") -> str:
        """Return the first column of the first row, or ``""``."""
        rows = self.query(server, sql, database=database)
        if not rows or not rows[0]:
            return ""
        return rows[0][0]


def parse_rows(stdout: str) -> list[list[str]]:
    """Split headerless ``sqlcmd -W -s "|"`` output into rows.

    Blank lines are dropped and ``NULL`` columns become ``""``.
    """
    rows: list[list[str]] = []
    for line in stdout.splitlines():
        if not line.strip():
            continue
        columns = [col.strip() for col in line.split(COLUMN_SEPARATOR)]
        rows.append(["" if col == "NULL" else col for col in columns])
    return rows
