"""Fitness bookkeeping: payoff-to-fitness maps and the fitness ledger.

The ledger owns the per-slot score, fitness and interaction arrays of one
population together with the aggregates derived from them:
  - sum_fitness: running total over occupied slots, updated in O(1)
  - min_fitness / max_fitness: fitness bounds from the payoff range
  - max_eff_score_idx: slot with the highest fitness (-1 = not tracked)

Every change to a score goes through one of the ledger's operations so
the aggregates never drift from the arrays. Fitness-proportional picks
use rejection sampling bounded by the tracked maximum for populations of
at least REJECTION_MIN_SIZE slots and a cumulative scan otherwise.

Fitness maps (score s, baseline b, selection strength w):
  none         f = s
  static       f = b + w s
  convex       f = b + w (s - b)
  exponential  f = b exp(w s)
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np

from evoibs.rng import random01, random0n
from evoibs.types import (
    ACCOUNTING_TOL,
    NEUTRAL_TOL,
    REJECTION_MIN_SIZE,
    VACANT_INTERACTIONS,
    AccountingError,
    FitnessMapType,
)

ArrayOrFloat = Union[float, np.ndarray]


# ═══════════════════════════════════════════════════════════════════════
# PAYOFF-TO-FITNESS MAP
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class FitnessMap:
    """Monotone map from scores to fitness."""
    kind: FitnessMapType = FitnessMapType.NONE
    baseline: float = 1.0
    selection: float = 1.0

    def map(self, score: ArrayOrFloat) -> ArrayOrFloat:
        b, w = self.baseline, self.selection
        if self.kind == FitnessMapType.STATIC:
            return b + w * score
        if self.kind == FitnessMapType.CONVEX:
            return b + w * (score - b)
        if self.kind == FitnessMapType.EXPONENTIAL:
            return b * np.exp(w * score)
        return score


# ═══════════════════════════════════════════════════════════════════════
# LEDGER
# ═══════════════════════════════════════════════════════════════════════

class FitnessLedger:
    """Scores, fitness and interaction counts of `n` slots.

    Args:
        n: Number of slots.
        fitness_map: Payoff-to-fitness map (identity if None).
        averaged: Average payoffs over interactions (True) or accumulate.
        track_max: Track the highest-fitness slot for rejection sampling.
            Disabled under constant selection, where max_fitness bounds
            the rejection step instead.
    """

    def __init__(
        self,
        n: int,
        fitness_map: Optional[FitnessMap] = None,
        averaged: bool = True,
        track_max: bool = True,
    ):
        self.n = n
        self.map = fitness_map if fitness_map is not None else FitnessMap()
        self.averaged = averaged
        self.scores = np.zeros(n, dtype=np.float64)
        self.fitness = np.zeros(n, dtype=np.float64)
        self.interactions = np.zeros(n, dtype=np.int32)
        self.vacant = np.zeros(n, dtype=bool)
        self.n_occupied = n
        self.sum_fitness = 0.0
        self.min_score = 0.0
        self.max_score = 0.0
        self.min_fitness = 0.0
        self.max_fitness = 0.0
        self.max_eff_score_idx = 0 if track_max else -1
        self._bulk = False

    # ── bounds ────────────────────────────────────────────────────────

    def set_score_range(self, min_score: float, max_score: float) -> None:
        """Set the score bounds and derive the fitness bounds."""
        self.min_score = float(min_score)
        self.max_score = float(max_score)
        self.min_fitness = float(self.map.map(self.min_score))
        self.max_fitness = float(self.map.map(self.max_score))

    @property
    def is_neutral(self) -> bool:
        return abs(self.max_fitness - self.min_fitness) < NEUTRAL_TOL

    @property
    def tracks_max(self) -> bool:
        return self.max_eff_score_idx >= 0

    def disable_max_tracking(self) -> None:
        self.max_eff_score_idx = -1

    def enable_max_tracking(self) -> None:
        self.max_eff_score_idx = 0
        self.set_max_eff_score_idx()

    # ── score updates ─────────────────────────────────────────────────

    def update_score_at(self, idx: int, new_score: float, incr: int = 1) -> None:
        """Add (incr > 0) or remove (incr < 0) a payoff contribution.

        Args:
            idx: Slot index.
            new_score: Payoff of the contribution (total over `|incr|`
                interactions).
            incr: Change in the number of interactions.
        """
        if incr < 0:
            new_score = -new_score
        before = self.scores[idx]
        count = int(self.interactions[idx])
        if self.averaged:
            after = (before * count + new_score) / max(1, count + incr)
        else:
            after = before + new_score
        self.scores[idx] = after
        self.interactions[idx] = count + incr
        self._update_eff_score_range(idx, before, after)
        self._update_fitness_at(idx)

    def adjust_score_at(self, idx: int, delta: float) -> None:
        """Shift a score in place without changing its interaction count."""
        before = self.scores[idx]
        after = before + delta
        self.scores[idx] = after
        self._update_eff_score_range(idx, before, after)
        self._update_fitness_at(idx)

    def set_score_at(self, idx: int, score: float, interactions: int) -> None:
        before = self.scores[idx]
        self.scores[idx] = score
        self.interactions[idx] = interactions
        self._update_eff_score_range(idx, before, score)
        self._update_fitness_at(idx)

    def reset_score_at(self, idx: int) -> None:
        """Zero a slot's score before it accrues a new round of interactions."""
        if self.vacant[idx]:
            return
        before = self.scores[idx]
        self.scores[idx] = 0.0
        self.interactions[idx] = 0
        self._update_eff_score_range(idx, before, 0.0)
        self._update_fitness_at(idx)

    def reset_scores(self) -> None:
        """Zero the scores of all occupied slots."""
        occ = ~self.vacant
        self.scores[occ] = 0.0
        self.fitness[occ] = self.map.map(0.0)
        self.interactions[occ] = 0
        self.recompute_sum()
        self.set_max_eff_score_idx()

    def vacate_at(self, idx: int) -> None:
        """Mark a slot vacant: score = fitness = 0, interactions = -1."""
        if self.vacant[idx]:
            return
        self.sum_fitness -= self.fitness[idx]
        self.scores[idx] = 0.0
        self.fitness[idx] = 0.0
        self.interactions[idx] = VACANT_INTERACTIONS
        self.vacant[idx] = True
        self.n_occupied -= 1
        if self.sum_fitness < 0.0 or self.n_occupied == 0:
            # drift below zero can only be rounding
            self.recompute_sum()
        if idx == self.max_eff_score_idx:
            self.set_max_eff_score_idx()

    def occupy_at(self, idx: int) -> None:
        """Mark a vacant slot occupied with a zeroed score."""
        if not self.vacant[idx]:
            return
        self.vacant[idx] = False
        self.n_occupied += 1
        self.scores[idx] = 0.0
        self.interactions[idx] = 0
        self.fitness[idx] = 0.0
        self._update_fitness_at(idx)
        if self.tracks_max and (self.n_occupied == 1 or self.vacant[self.max_eff_score_idx]):
            self.max_eff_score_idx = idx
        else:
            self._update_eff_score_range(idx, -np.inf, 0.0)

    def swap_scores_at(self, a: int, b: int) -> None:
        """Exchange the ledger entries of two slots (diffusion)."""
        for arr in (self.scores, self.fitness, self.interactions, self.vacant):
            arr[a], arr[b] = arr[b], arr[a]
        if self.max_eff_score_idx == a:
            self.max_eff_score_idx = b
        elif self.max_eff_score_idx == b:
            self.max_eff_score_idx = a

    def apply_type_scores(
        self,
        type_scores: np.ndarray,
        traits: np.ndarray,
        interactions: int,
    ) -> None:
        """Fill all occupied slots from a per-trait score table.

        Used for well-mixed populations where a slot's score depends only
        on its trait and the trait frequencies.
        """
        occ = ~self.vacant
        type_fitness = self.map.map(np.asarray(type_scores, dtype=np.float64))
        self.scores[occ] = type_scores[traits[occ]]
        self.fitness[occ] = type_fitness[traits[occ]]
        self.interactions[occ] = interactions
        self.sum_fitness = float(self.fitness[occ].sum())
        self.set_max_eff_score_idx()

    @contextmanager
    def bulk_update(self):
        """Defer extremal tracking across a batch of updates.

        Used for synchronous score recomputation; the maximum and the
        running total are refreshed once on exit.
        """
        self._bulk = True
        try:
            yield self
        finally:
            self._bulk = False
            self.recompute_sum()
            self.set_max_eff_score_idx()

    def restore(
        self,
        scores: np.ndarray,
        fitness: np.ndarray,
        interactions: np.ndarray,
        vacant: np.ndarray,
        max_eff_score_idx: int,
        sum_fitness: Optional[float] = None,
    ) -> None:
        """Overwrite all per-slot arrays (checkpoint restore).

        The running total is taken from `sum_fitness` when given so that
        a resumed run continues bit-identically; otherwise it is recomputed.
        """
        if len(scores) != self.n:
            raise ValueError(f"expected {self.n} slots, got {len(scores)}")
        self.scores[:] = scores
        self.fitness[:] = fitness
        self.interactions[:] = interactions
        self.vacant[:] = vacant
        self.n_occupied = int((~self.vacant).sum())
        if sum_fitness is None:
            self.recompute_sum()
        else:
            self.sum_fitness = float(sum_fitness)
        self.max_eff_score_idx = int(max_eff_score_idx)

    # ── aggregates ────────────────────────────────────────────────────

    def _update_fitness_at(self, idx: int) -> None:
        after = float(self.map.map(self.scores[idx]))
        diff = after - self.fitness[idx]
        self.fitness[idx] = after
        if -diff > self.sum_fitness:
            self.recompute_sum()
            return
        self.sum_fitness += diff

    def _update_eff_score_range(self, idx: int, before: float, after: float) -> None:
        if self._bulk or self.max_eff_score_idx < 0:
            return
        if after > before:
            if after > self.scores[self.max_eff_score_idx]:
                self.max_eff_score_idx = idx
            return
        if idx == self.max_eff_score_idx and after < before:
            self.set_max_eff_score_idx()

    def set_max_eff_score_idx(self) -> None:
        """Rescan for the highest-scoring occupied slot."""
        if self.max_eff_score_idx < 0:
            return
        if self.n_occupied == 0:
            self.max_eff_score_idx = 0
            return
        masked = np.where(self.vacant, -np.inf, self.scores)
        self.max_eff_score_idx = int(np.argmax(masked))

    def recompute_sum(self) -> None:
        self.sum_fitness = float(self.fitness[~self.vacant].sum())

    @property
    def total_fitness(self) -> float:
        return self.sum_fitness

    def mean_fitness(self) -> float:
        if self.n_occupied == 0:
            return 0.0
        return self.sum_fitness / self.n_occupied

    def check_accounting(self) -> List[str]:
        """Recompute the ledger invariants; return a list of discrepancies."""
        problems = []
        occ = ~self.vacant
        actual = float(self.fitness[occ].sum())
        if abs(actual - self.sum_fitness) >= ACCOUNTING_TOL * max(1.0, self.sum_fitness):
            problems.append(
                f"sum_fitness is {self.sum_fitness} but occupied slots add up to {actual}"
            )
        if int(occ.sum()) != self.n_occupied:
            problems.append(
                f"n_occupied is {self.n_occupied} but {int(occ.sum())} slots are occupied"
            )
        vac = self.vacant
        if np.any(self.scores[vac] != 0.0) or np.any(self.fitness[vac] != 0.0):
            problems.append("vacant slots carry non-zero score or fitness")
        if np.any(self.interactions[vac] != VACANT_INTERACTIONS):
            problems.append("vacant slots must have interaction count -1")
        expected = self.map.map(self.scores[occ])
        if not np.allclose(expected, self.fitness[occ], rtol=1e-10, atol=1e-12):
            problems.append("fitness does not match mapped scores")
        if self.tracks_max and self.n_occupied > 0:
            best = float(np.max(self.scores[occ]))
            if self.scores[self.max_eff_score_idx] < best - NEUTRAL_TOL:
                problems.append(
                    f"max_eff_score_idx {self.max_eff_score_idx} does not hold "
                    f"the highest score {best}"
                )
        return problems

    # ═══════════════════════════════════════════════════════════════════
    # SAMPLING
    # ═══════════════════════════════════════════════════════════════════

    def pick_focal(
        self,
        rng: np.random.Generator,
        exclude: Optional[int] = None,
    ) -> int:
        """Uniformly random occupied slot, optionally excluding one.

        Returns:
            Slot index, or -1 if no eligible slot exists.
        """
        n = self.n
        if self.n_occupied == n:
            if exclude is None:
                return random0n(rng, n)
            if n < 2:
                return -1
            k = random0n(rng, n - 1)
            return k + 1 if k >= exclude else k
        n_eligible = self.n_occupied
        if exclude is not None and not self.vacant[exclude]:
            n_eligible -= 1
        if n_eligible <= 0:
            return -1
        k = random0n(rng, n_eligible)
        eligible = np.flatnonzero(~self.vacant)
        if exclude is not None:
            eligible = eligible[eligible != exclude]
        return int(eligible[k])

    def pick_fit_focal(
        self,
        rng: np.random.Generator,
        exclude: Optional[int] = None,
    ) -> int:
        """Fitness-proportional occupied slot, optionally excluding one.

        Neutral fitness falls back to a uniform pick.

        Returns:
            Slot index, or -1 if no eligible slot exists.

        Raises:
            AccountingError: If sampling fails to resolve.
        """
        if self.is_neutral:
            return self.pick_focal(rng, exclude)
        if self.n >= REJECTION_MIN_SIZE:
            return self._pick_rejection(rng, exclude)
        return self._pick_cumulative(rng, exclude)

    def _rejection_bound(self, exclude: Optional[int]) -> float:
        if self.max_eff_score_idx < 0:
            return self.max_fitness
        if exclude is not None and exclude == self.max_eff_score_idx:
            return self._second_highest_fitness(exclude)
        return float(self.fitness[self.max_eff_score_idx])

    def _second_highest_fitness(self, exclude: int) -> float:
        top = self.fitness[exclude]
        best = -np.inf
        for i in range(self.n):
            if i == exclude or self.vacant[i]:
                continue
            f = self.fitness[i]
            if f > best:
                best = f
                if top - best < NEUTRAL_TOL:
                    break
        return float(best)

    def _pick_rejection(
        self,
        rng: np.random.Generator,
        exclude: Optional[int],
    ) -> int:
        bound = self._rejection_bound(exclude)
        if not bound > 0.0:
            return self.pick_focal(rng, exclude)
        n = self.n
        max_tries = 1000 * n
        for _ in range(max_tries):
            if exclude is None:
                a = random0n(rng, n)
            else:
                a = random0n(rng, n - 1)
                if a >= exclude:
                    a += 1
            if self.vacant[a]:
                continue
            if random01(rng) * bound <= self.fitness[a]:
                return a
        raise AccountingError(
            f"rejection sampling exhausted after {max_tries} draws "
            f"(bound={bound}, sum_fitness={self.sum_fitness})"
        )

    def _pick_cumulative(
        self,
        rng: np.random.Generator,
        exclude: Optional[int],
    ) -> int:
        fit = self.fitness
        total = self.sum_fitness
        if exclude is not None:
            fit = fit.copy()
            total -= fit[exclude]
            fit[exclude] = 0.0
        if total <= 0.0:
            return self.pick_focal(rng, exclude)
        hit = random01(rng) * total
        cum = np.cumsum(fit)
        idx = int(np.searchsorted(cum, hit, side='right'))
        if idx < self.n:
            return idx
        # hit overshot the scanned total: tolerate rounding only
        if hit - cum[-1] < ACCOUNTING_TOL * max(1.0, total):
            return int(np.flatnonzero(fit > 0.0)[-1])
        raise AccountingError(
            f"fitness-proportional pick failed: hit={hit} exceeds "
            f"scanned total {cum[-1]} (sum_fitness={self.sum_fitness})"
        )
