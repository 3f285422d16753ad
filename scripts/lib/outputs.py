# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Step outputs and job summary for the join results.

Everything written to ``$GITHUB_OUTPUT`` and ``$GITHUB_STEP_SUMMARY``
goes through this module.  Join results are published twice: as a
machine-readable ``join_results`` JSON output and as one Markdown table
per database in the step summary.

Usage::

    from outputs import emit_join_outputs

    emit_join_outputs(outcomes)
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from typing import Any

from models import JoinOutcome, JoinStatus

logger = logging.getLogger(__name__)

_STATUS_EMOJI = {
    JoinStatus.SUCCESS: "✅",
    JoinStatus.SKIPPED: "⏭️",
    JoinStatus.PARTIAL_FAILURE: "⚠️",
    JoinStatus.FAILURE: "❌",
    JoinStatus.PENDING: "⏳",
}


# ---------------------------------------------------------------------------
# Runner files
# ---------------------------------------------------------------------------


def _append(env_var: str, text: str) -> bool:
    """Append *text* to the file named by *env_var*.

    Returns False when the variable is unset (a local run) or the file
    cannot be written; neither stops the job.
    """
    path = os.environ.get(env_var)
    if not path:
        logger.debug("%s not set; dropping %s", env_var, _truncate(text))
        return False
    try:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(text)
    except OSError as exc:
        logger.warning("Failed to write to %s: %s", env_var, exc)
        return False
    return True


def write_output(name: str, value: str) -> None:
    """Publish a step output.

    Values spanning several lines use the ``name<<EOF`` delimiter form.
    """
    if "\n" in value:
        entry = f"{name}<<EOF\n{value}\nEOF\n"
    else:
        entry = f"{name}={value}\n"
    if _append("GITHUB_OUTPUT", entry):
        logger.debug("Set output %s (%d chars)", name, len(value))


def write_summary(markdown: str) -> None:
    """Add *markdown* to the step summary, newline-terminated."""
    if not markdown.endswith("\n"):
        markdown += "\n"
    _append("GITHUB_STEP_SUMMARY", markdown)


def write_json_output(name: str, value: Any) -> None:
    write_output(name, json.dumps(value, separators=(",", ":")))


# ---------------------------------------------------------------------------
# Join results
# ---------------------------------------------------------------------------


def join_results(outcomes: Iterable[JoinOutcome]) -> list[dict[str, Any]]:
    """Build the ``join_results`` structure: one entry per database."""
    return [
        {
            "database": outcome.database,
            "availability_group": outcome.availability_group,
            "status": outcome.status.value,
            "error": outcome.error,
            "error_kind": outcome.error_kind,
            "replicas": [result.to_dict() for result in outcome.results()],
        }
        for outcome in outcomes
    ]


def render_outcome_table(outcome: JoinOutcome) -> str:
    """Render the Markdown summary block for one database."""
    emoji = _STATUS_EMOJI.get(outcome.status, "")
    lines = [
        f"### {outcome.database} → {outcome.availability_group}: "
        f"{outcome.status.value} {emoji}".rstrip(),
        "",
    ]
    if outcome.error:
        kind = f"{outcome.error_kind}: " if outcome.error_kind else ""
        lines.extend([f"> {kind}{_one_line(outcome.error)}", ""])

    rows = list(outcome.results())
    if rows:
        lines.extend(
            [
                "| Replica | Role | Lifecycle | Joined | Synchronization | Status |",
                "|---------|------|-----------|--------|-----------------|--------|",
            ]
        )
        for row in rows:
            lines.append(
                f"| {row.replica} | {row.role} | {row.lifecycle_state} | "
                f"{'yes' if row.is_joined else 'no'} | {row.synchronization_state} | "
                f"{row.status.value} {_STATUS_EMOJI.get(row.status, '')} |"
            )
        lines.append("")
    return "\n".join(lines)


def emit_join_outputs(outcomes: list[JoinOutcome]) -> list[dict[str, Any]]:
    """Write ``join_results`` and the per-database summary tables.

    Returns the ``join_results`` structure for callers that need it.
    """
    results = join_results(outcomes)
    write_json_output("join_results", results)

    failed = [o.database for o in outcomes if not o.succeeded]
    write_output("failed_databases", ",".join(failed))

    lines = ["**Availability group join** 🗄️", ""]
    lines.extend(render_outcome_table(outcome) for outcome in outcomes)
    write_summary("\n".join(lines))
    return results


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _one_line(text: str) -> str:
    return " ".join(text.split()).replace("|", "\\|")


def _truncate(text: str, maxlen: int = 120) -> str:
    """Return *text* truncated to *maxlen* characters for log messages."""
    if len(text) <= maxlen:
        return text
    return text[:maxlen] + "…"
