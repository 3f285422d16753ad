# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Structured logging setup for ag-join scripts.

Provides a single :func:`setup_logging` entry point that configures the
root logger with a consistent format, GitHub Actions annotations when
running in CI, ``DEBUG`` environment variable support and masking of
credentials (sqlcmd password, permission service token).

Usage::

    from logging_utils import setup_logging
    setup_logging()                          # reads DEBUG from env
    setup_logging(debug=True, secrets=[pw])  # force debug, mask pw
"""

from __future__ import annotations

import logging
import os
import sys
import time
from collections.abc import Iterable

MASK = "***"

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _is_ci() -> bool:
    return os.environ.get("GITHUB_ACTIONS") == "true"


class _GitHubActionsFormatter(logging.Formatter):
    """Prefix warning and error records with a runner annotation line.

    The runner shows ``::warning::`` and ``::error::`` lines against the
    job, so a failed replica is visible without opening the log.
    """

    _GH_LEVEL_MAP = {
        logging.WARNING: "warning",
        logging.ERROR: "error",
        logging.CRITICAL: "error",
    }

    def __init__(self) -> None:
        super().__init__(fmt=_FORMAT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        gh_level = self._GH_LEVEL_MAP.get(record.levelno)
        if gh_level:
            # Annotations are single-line; keep only the first line
            first_line = record.getMessage().splitlines()[0] if record.getMessage() else ""
            return f"::{gh_level}::{first_line}\n{formatted}"
        return formatted


class _SecretMaskFilter(logging.Filter):
    """Replace known secret values in every record with :data:`MASK`."""

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self.secrets:
            masked = masked.replace(secret, MASK)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(debug: bool | None = None, secrets: Iterable[str] = ()) -> None:
    """Configure logging for ag-join scripts.

    Parameters
    ----------
    debug:
        Force ``DEBUG`` (*True*) or ``INFO`` (*False*) on the root
        logger.  *None* defers to the ``DEBUG`` environment variable,
        where only ``"true"`` (any case) enables debug output.
    secrets:
        Values that must never appear in log output.  In CI they are
        also registered with ``::add-mask::`` so the runner hides them
        from anything else the step prints.

    Safe to call more than once; each call replaces the root handlers.
    """
    if debug is None:
        debug = os.environ.get("DEBUG", "false").lower() == "true"

    level = logging.DEBUG if debug else logging.INFO
    secrets = [s for s in secrets if s]

    handler = logging.StreamHandler(sys.stderr)
    if _is_ci():
        handler.setFormatter(_GitHubActionsFormatter())
        for secret in secrets:
            print(f"::add-mask::{secret}", file=sys.stderr)
    else:
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
    handler.addFilter(_SecretMaskFilter(secrets))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)


def log_group(title: str) -> _LogGroup:
    """Context manager that frames a block of log output.

    Usage::

        with log_group("Adding db1 to ag1"):
            logger.info("db1 exists on primary SQL1")
            logger.info("db1 ready on SQL2")

    In GitHub Actions the block becomes a collapsible group; elsewhere
    the title is printed as a plain header.  Either way the time spent
    inside the block is logged when it closes.
    """
    return _LogGroup(title)


class _LogGroup:
    """Context manager for GitHub Actions collapsible log groups."""

    _logger = logging.getLogger(__name__)

    def __init__(self, title: str) -> None:
        self._title = title
        self._is_ci = _is_ci()
        self._started = 0.0

    def __enter__(self) -> None:
        self._started = time.monotonic()
        if self._is_ci:
            print(f"::group::{self._title}", file=sys.stderr)
        else:
            print(f"\n{'=' * 40}", file=sys.stderr)
            print(f"  {self._title}", file=sys.stderr)
            print(f"{'=' * 40}", file=sys.stderr)

    def __exit__(self, *_args: object) -> None:
        self._logger.debug("%s took %.1fs", self._title, time.monotonic() - self._started)
        if self._is_ci:
            print("::endgroup::", file=sys.stderr)
