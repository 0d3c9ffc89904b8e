"""
Cancellable fixed-interval polling.

Both waits of a maintenance run (Job completion and pod readiness) are built on
poll_until(). Without a timeout or cancel event it polls forever.
"""

import threading
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

import pendulum
from loguru import logger


class WaitOutcome(Enum):
    """How a wait ended when it did not raise."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def poll_until(
    check: Callable[[], bool],
    interval: float,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    description: str = "condition",
    log=logger,
) -> WaitOutcome:
    """
    Call check() every interval seconds until it returns True.

    Exceptions raised by check() propagate immediately.

    Args:
        check: Callable returning True once the awaited state is reached
        interval: Seconds to sleep between attempts
        timeout: Optional upper bound in seconds (None waits forever)
        cancel: Optional event; setting it ends the wait at the next wakeup
        description: Human readable name of the awaited state, for logging
        log: Logger to write progress to

    Returns:
        WaitOutcome.READY, TIMED_OUT or CANCELLED
    """
    if cancel is None:
        cancel = threading.Event()

    deadline = pendulum.now() + timedelta(seconds=timeout) if timeout is not None else None
    attempt = 0

    while True:
        if cancel.is_set():
            log.warning(f"Wait for {description} cancelled")
            return WaitOutcome.CANCELLED

        attempt += 1
        if check():
            log.debug(f"{description} reached after {attempt} attempt(s)")
            return WaitOutcome.READY

        sleep_for = interval
        if deadline is not None:
            remaining = (deadline - pendulum.now()).total_seconds()
            if remaining <= 0:
                log.warning(f"Timed out waiting for {description} after {timeout}s")
                return WaitOutcome.TIMED_OUT
            sleep_for = min(interval, remaining)

        log.debug(f"Waiting {sleep_for:.0f}s for {description} (attempt {attempt})")
        if cancel.wait(sleep_for):
            log.warning(f"Wait for {description} cancelled")
            return WaitOutcome.CANCELLED
