"""Respawn backoff and crash-window accounting."""

from __future__ import annotations

from typing import TYPE_CHECKING

from poolforge._internal.config import BACKOFF_STRATEGIES

if TYPE_CHECKING:
    from poolforge._internal.config import PoolConfig


class BackoffPolicy:
    """Respawn delay as a function of consecutive crashes.

    ``delay(n)`` is monotonically non-decreasing in ``n`` and never exceeds
    ``maximum``:

    - exponential: ``base * 2 ** (n - 1)``
    - linear: ``base * n``

    Attributes:
        strategy: ``"exponential"`` or ``"linear"``.
        base: Delay after the first crash, in seconds.
        maximum: Upper bound on the delay, in seconds.
    """

    def __init__(
        self,
        strategy: str = "exponential",
        base: float = 0.5,
        maximum: float = 30.0,
    ) -> None:
        """Initialize the policy.

        Raises:
            ValueError: If the strategy is unknown, base is not positive,
                or maximum is below base.
        """
        if strategy not in BACKOFF_STRATEGIES:
            msg = f"unknown backoff strategy: {strategy!r}"
            raise ValueError(msg)
        if base <= 0:
            msg = f"base must be positive, got {base}"
            raise ValueError(msg)
        if maximum < base:
            msg = f"maximum must be >= base, got {maximum} < {base}"
            raise ValueError(msg)
        self.strategy = strategy
        self.base = base
        self.maximum = maximum

    @classmethod
    def from_config(cls, config: PoolConfig) -> BackoffPolicy:
        return cls(config.backoff_strategy, config.backoff_base, config.backoff_max)

    def delay(self, consecutive_crashes: int) -> float:
        """Return the respawn delay in seconds for the given crash count.

        Args:
            consecutive_crashes: Crash count including the current one.
                Values below 1 are treated as 1.
        """
        n = max(1, consecutive_crashes)
        if self.strategy == "linear":
            raw = self.base * n
        else:
            # Cap the exponent so huge crash counts cannot overflow.
            raw = self.base * 2 ** min(n - 1, 64)
        return min(raw, self.maximum)

    def describe(self) -> str:
        return f"{self.strategy} backoff (base={self.base}s, max={self.maximum}s)"


def register_crash(
    crash_times: tuple[float, ...],
    now: float,
    window: float,
) -> tuple[float, ...]:
    """Add a crash at ``now`` and forget crashes older than ``window``.

    Args:
        crash_times: Existing crash timestamps, oldest first.
        now: Time of the new crash.
        window: Restart window duration in seconds.

    Returns:
        Crash timestamps within ``(now - window, now]``, oldest first.
    """
    cutoff = now - window
    return (*(t for t in crash_times if t > cutoff), now)


def exceeds_budget(crash_times: tuple[float, ...], max_restarts: int) -> bool:
    """Return True if a slot crashed more often than its restart budget."""
    return len(crash_times) > max_restarts
