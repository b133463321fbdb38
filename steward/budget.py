"""
STEWARD Budget Guard

Cross-call counters for cost, wall time, and attempt/repair/fix usage.

Every mutation is check-then-commit under one lock: the next snapshot
is computed off to the side and swapped in only when every ceiling
holds. A charge that fails, for any reason, leaves the last committed
snapshot in place.
"""

from __future__ import annotations

import math
import threading
import time
from typing import Callable

from loguru import logger
from pydantic import BaseModel, ConfigDict

from steward.config_loader import LimitsConfig

_EPSILON = 1e-9


class BudgetExceeded(Exception):
    """A charge would cross a configured ceiling. Nothing was recorded."""

    def __init__(self, ceiling: str, requested: float, limit: float, snapshot: "BudgetSnapshot"):
        self.ceiling = ceiling
        self.requested = requested
        self.limit = limit
        self.snapshot = snapshot
        super().__init__(
            f"Budget ceiling '{ceiling}' would be crossed: "
            f"requested total {requested:g} > limit {limit:g}"
        )


class BudgetSnapshot(BaseModel):
    """Immutable view of spend and ceilings at one instant."""

    model_config = ConfigDict(frozen=True)

    cost_usd: float = 0.0
    wall_ms: int = 0
    model_ms: int = 0
    attempts: int = 0
    repairs: int = 0
    fixes: int = 0

    max_cost_usd: float
    max_wall_ms: int
    max_attempts: int
    max_repairs: int
    max_fixes: int
    shared_loop_budget: int | None = None

    @property
    def cost_left(self) -> float:
        return max(0.0, self.max_cost_usd - self.cost_usd)

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def repairs_left(self) -> int:
        if self.shared_loop_budget is not None:
            return max(0, self.shared_loop_budget - self.repairs - self.fixes)
        return max(0, self.max_repairs - self.repairs)

    @property
    def fixes_left(self) -> int:
        if self.shared_loop_budget is not None:
            return max(0, self.shared_loop_budget - self.repairs - self.fixes)
        return max(0, self.max_fixes - self.fixes)

    def to_dict(self) -> dict:
        return self.model_dump()


def _validate_amount(name: str, value: float) -> None:
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"Budget charge '{name}' must be a finite, non-negative number (got {value!r})")


class BudgetGuard:
    """
    Single point of mutual exclusion for one Attempt's spend.

    Safe to share between concurrent reviewer tasks and worker threads.
    """

    def __init__(self, limits: LimitsConfig, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._snapshot = BudgetSnapshot(
            max_cost_usd=limits.max_cost_usd,
            max_wall_ms=limits.max_wall_ms,
            max_attempts=limits.max_attempts,
            max_repairs=limits.max_repairs,
            max_fixes=limits.max_fixes,
            shared_loop_budget=limits.shared_loop_budget,
        )

    def _elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def remaining(self) -> BudgetSnapshot:
        """Return the last committed snapshot. Pure read."""
        return self._snapshot

    def ensure_available(self, cost_usd: float = 0.0, wall_ms: int = 0) -> BudgetSnapshot:
        """
        Pre-call check: refuse to start work that cannot fit.

        Raises BudgetExceeded without recording anything.
        """
        _validate_amount("cost_usd", cost_usd)
        _validate_amount("wall_ms", wall_ms)
        with self._lock:
            current = self._snapshot
            elapsed = max(current.wall_ms, self._elapsed_ms())
            if current.cost_usd + cost_usd > current.max_cost_usd + _EPSILON:
                raise BudgetExceeded("cost_usd", current.cost_usd + cost_usd, current.max_cost_usd, current)
            if elapsed + wall_ms > current.max_wall_ms:
                raise BudgetExceeded("wall_ms", elapsed + wall_ms, current.max_wall_ms, current)
            return current

    def charge(
        self,
        cost_usd: float = 0.0,
        duration_ms: int = 0,
        *,
        attempts: int = 0,
        repairs: int = 0,
        fixes: int = 0,
    ) -> BudgetSnapshot:
        """
        Atomically record spend.

        Raises BudgetExceeded if any ceiling would be crossed, and ValueError
        for negative or non-finite amounts. In both cases, and for any other
        failure while building the next snapshot, the previous snapshot stays
        committed.
        """
        with self._lock:
            current = self._snapshot
            try:
                for name, value in (
                    ("cost_usd", cost_usd),
                    ("duration_ms", duration_ms),
                    ("attempts", attempts),
                    ("repairs", repairs),
                    ("fixes", fixes),
                ):
                    _validate_amount(name, value)

                proposed = current.model_copy(update={
                    "cost_usd": current.cost_usd + cost_usd,
                    "wall_ms": max(current.wall_ms, self._elapsed_ms()),
                    "model_ms": current.model_ms + int(duration_ms),
                    "attempts": current.attempts + attempts,
                    "repairs": current.repairs + repairs,
                    "fixes": current.fixes + fixes,
                })
                self._check_ceilings(proposed)
            except BudgetExceeded as e:
                logger.warning(f"[BUDGET] Rejected charge: {e}")
                raise
            except Exception:
                logger.error(
                    f"[BUDGET] Charge aborted mid-update; keeping last committed "
                    f"snapshot (cost=${current.cost_usd:.4f}, attempts={current.attempts})"
                )
                raise

            self._snapshot = proposed
            return proposed

    @staticmethod
    def _check_ceilings(s: BudgetSnapshot) -> None:
        if s.cost_usd > s.max_cost_usd + _EPSILON:
            raise BudgetExceeded("cost_usd", s.cost_usd, s.max_cost_usd, s)
        if s.wall_ms > s.max_wall_ms:
            raise BudgetExceeded("wall_ms", s.wall_ms, s.max_wall_ms, s)
        if s.attempts > s.max_attempts:
            raise BudgetExceeded("attempts", s.attempts, s.max_attempts, s)
        if s.shared_loop_budget is not None:
            if s.repairs + s.fixes > s.shared_loop_budget:
                raise BudgetExceeded("loop_pool", s.repairs + s.fixes, s.shared_loop_budget, s)
        else:
            if s.repairs > s.max_repairs:
                raise BudgetExceeded("repairs", s.repairs, s.max_repairs, s)
            if s.fixes > s.max_fixes:
                raise BudgetExceeded("fixes", s.fixes, s.max_fixes, s)
