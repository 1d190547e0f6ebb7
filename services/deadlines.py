"""Monotonic deadlines for bounded waits on the checkout path."""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class Deadline:
    """Monotonic deadline tracker.

    ``Deadline(seconds=16)`` caps a readiness poll so a slow storefront never
    holds the buyer's request past the budget, independent of how many
    attempts remain; ``remaining()`` trims the last sleep to fit.
    """

    seconds: float

    def __post_init__(self) -> None:
        self._deadline = time.monotonic() + max(0.0, float(self.seconds))

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._deadline

    def remaining(self) -> float:
        return max(0.0, self._deadline - time.monotonic())
