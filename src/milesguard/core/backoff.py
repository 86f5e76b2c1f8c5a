"""Exponential backoff helpers."""

from __future__ import annotations

from typing import Callable, Optional

BackoffFunction = Callable[[int], Optional[float]]


def exponential_delay(base: float, attempt: int, cap: Optional[float] = None) -> float:
    """Return ``base * 2**attempt``, limited to ``cap`` when one is given."""

    delay = base * (2 ** max(attempt, 0))
    if cap is not None:
        return min(delay, cap)
    return delay


def exponential_backoff(base: float, cap: float, max_attempts: int) -> BackoffFunction:
    """Build a capped backoff function.

    The returned callable maps a zero-based attempt number to a delay in
    seconds, or ``None`` once ``attempt >= max_attempts`` to signal that no
    further attempts are allowed.
    """

    if base <= 0:
        raise ValueError("base must be positive")
    if cap < base:
        raise ValueError("cap must be greater than or equal to base")

    def delay(attempt: int) -> Optional[float]:
        if attempt >= max_attempts:
            return None
        return exponential_delay(base, attempt, cap)

    return delay
