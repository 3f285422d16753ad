# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Poll-until-done driver shared by every wait loop.

A *poller* knows what to check: each call to :meth:`Poller.poll`
observes the live state once and reports ``(state, done)``.  The
:class:`PollDriver` owns how long to wait: it sleeps a fixed interval
between observations and raises :class:`WaitTimeoutError` once the
ceiling elapses.  Clock and sleep are injectable so tests never block.

Usage::

    driver = PollDriver(timeout=60, interval=0.1)
    final_state = driver.run(poller, description="db1 on SQL2")
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from errors import WaitTimeoutError

logger = logging.getLogger(__name__)

StateT = TypeVar("StateT")
StateT_co = TypeVar("StateT_co", covariant=True)


class Poller(Protocol[StateT_co]):
    """Something that can observe a state once and say whether it is final."""

    def poll(self) -> tuple[StateT_co, bool]: ...


@dataclass
class FunctionPoller(Generic[StateT]):
    """Adapt an ``observe`` callable and a ``done`` predicate into a poller."""

    observe: Callable[[], StateT]
    done: Callable[[StateT], bool]

    def poll(self) -> tuple[StateT, bool]:
        state = self.observe()
        return state, self.done(state)


@dataclass
class PollDriver:
    """Drive a :class:`Poller` until it reports done or *timeout* elapses.

    The poller is observed once before the first timeout check, so a
    zero timeout fails on the first unfinished observation without
    sleeping.
    """

    timeout: float
    interval: float
    clock: Callable[[], float] = field(default=time.monotonic)
    sleep: Callable[[float], None] = field(default=time.sleep)

    def run(self, poller: Poller[StateT], description: str = "") -> StateT:
        """Return the final state, or raise :class:`WaitTimeoutError`."""
        started = self.clock()
        attempts = 0
        while True:
            state, done = poller.poll()
            attempts += 1
            if done:
                logger.debug(
                    "%s reached its target after %d poll(s)",
                    description or "poll",
                    attempts,
                )
                return state
            elapsed = self.clock() - started
            if elapsed >= self.timeout:
                raise WaitTimeoutError(
                    f"Timed out after {elapsed:.1f}s waiting for "
                    f"{description or 'poll target'}",
                    elapsed=elapsed,
                    last_state=state,
                )
            self.sleep(self.interval)
