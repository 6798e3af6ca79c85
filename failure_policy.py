"""Failure handling shared by store writes and notification delivery.

Writes and outbound HTTP calls never fail silently: each goes through a named
FailurePolicy that says how often to retry and whether the caller carries on
once the attempts are used up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

log = logging.getLogger("soa_monitor")

T = TypeVar("T")


class ConfigError(Exception):
    """Fatal configuration problem. Aborts a tick before any zone is touched."""


class PersistenceError(Exception):
    """A store write failed after every attempt the policy allowed."""

    def __init__(self, zone: str, operation: str, cause: Exception) -> None:
        super().__init__(f"{operation} failed for {zone}: {cause}")
        self.zone = zone
        self.operation = operation
        self.cause = cause


@dataclass(frozen=True)
class FailurePolicy:
    name: str
    retries: int = 0
    continue_on_failure: bool = True

    @property
    def attempts(self) -> int:
        return max(0, self.retries) + 1

    def run(self, operation: str, zone: str, fn: Callable[[], T],
            errors: tuple[type[BaseException], ...] = (Exception,)) -> T | None:
        """Call fn, retrying on `errors`.

        Returns fn's value. When every attempt fails, either returns None
        (continue_on_failure) or raises PersistenceError with the zone context.
        """
        last: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except errors as e:
                last = e
                log.warning(f"  {self.name}: {operation} for {zone} failed "
                            f"(attempt {attempt}/{self.attempts}): {e}")
        if self.continue_on_failure:
            return None
        raise PersistenceError(zone, operation, last)


# Store writes: one retry, then surface the error on the zone's result.
STORE_POLICY = FailurePolicy("store", retries=1, continue_on_failure=False)

# Notifications: one-shot, a failed channel never stops the others.
DELIVERY_POLICY = FailurePolicy("delivery", retries=0, continue_on_failure=True)
