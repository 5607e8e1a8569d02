"""Trait representations.

A trait representation tells the engine how many traits exist, which
payoffs they earn and how fast payoffs can vary:
  - n_traits, names, vacant (index of the 'empty slot' trait or None)
  - group_size: 2 for pairwise games, larger for group games
  - payoff_range(): (min, max) payoff over occupied interactions
  - is_static(): payoff depends on the own trait only
  - dependent_trait(): trait that absorbs the remainder of frequencies
  - pair_scores(): payoffs of one focal against counted opponents
  - group_scores(): payoff of every trait in one group
  - mixed_scores(): per-trait payoffs in a well-mixed population
  - set_opponent(): link the model of another interacting species
  - best_response(): optional, model specific

Discrete representations:
  - MatrixGame: pairwise interactions with a payoff matrix; rectangular
    when two species with different trait sets interact
  - PublicGoodsGame: linear public goods game, optionally with loners
  - ConstantFitness: static per-trait scores (e.g. the Moran process with
    a mutant of relative fitness r)

Continuous representation (n_traits counts the entries of a trait vector):
  - ContinuousSnowdrift: quadratic benefits and costs of investments
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from evoibs.types import NEUTRAL_TOL, ConfigurationError, UnsupportedUpdateError


class TraitModel:
    """Base class: collaborator interface consumed by the population."""

    group_size = 2

    def __init__(
        self,
        names: Sequence[str],
        vacant: Optional[int] = None,
        dependent: Optional[int] = None,
    ):
        if len(names) < 1:
            raise ValueError("at least one trait is required")
        for label, idx in (('vacant', vacant), ('dependent', dependent)):
            if idx is not None and not 0 <= idx < len(names):
                raise ValueError(f"{label} trait {idx} outside 0..{len(names) - 1}")
        self.names: List[str] = list(names)
        self.vacant = vacant
        self._dependent = dependent

    @property
    def n_traits(self) -> int:
        return len(self.names)

    def occupied_traits(self) -> List[int]:
        return [t for t in range(self.n_traits) if t != self.vacant]

    def dependent_trait(self) -> Optional[int]:
        return self._dependent

    def is_static(self) -> bool:
        return False

    def is_pairwise(self) -> bool:
        return self.group_size == 2

    def payoff_range(self) -> Tuple[float, float]:
        raise NotImplementedError

    def is_neutral(self) -> bool:
        lo, hi = self.payoff_range()
        return abs(hi - lo) < NEUTRAL_TOL

    def set_opponent(self, other: 'TraitModel') -> None:
        """Link the model of the species interaction partners belong to."""
        if other is not self:
            raise ConfigurationError(
                f"{type(self).__name__} does not define interactions between species"
            )

    def static_scores(self) -> np.ndarray:
        raise UnsupportedUpdateError(
            f"{type(self).__name__} has no static scores"
        )

    def pair_scores(
        self,
        my_trait: int,
        trait_count: np.ndarray,
        trait_score: np.ndarray,
    ) -> float:
        raise UnsupportedUpdateError(
            f"{type(self).__name__} does not define pairwise interactions"
        )

    def group_scores(self, trait_count: np.ndarray) -> np.ndarray:
        raise UnsupportedUpdateError(
            f"{type(self).__name__} does not define group interactions"
        )

    def mixed_scores(self, trait_count: np.ndarray, averaged: bool = True) -> np.ndarray:
        raise UnsupportedUpdateError(
            f"{type(self).__name__} does not define well-mixed scores"
        )

    def best_response(self, my_trait: int, trait_count: np.ndarray) -> int:
        raise UnsupportedUpdateError(
            f"best-response update is not defined for {type(self).__name__}"
        )


# ═══════════════════════════════════════════════════════════════════════
# PAIRWISE MATRIX GAME
# ═══════════════════════════════════════════════════════════════════════

class MatrixGame(TraitModel):
    """Two-player game: payoffs[i, j] is the payoff of trait i against j.

    Within one species the matrix is square. Against another species
    column j refers to trait j of that species, and the partners' payoffs
    come from the other species' matrix (see set_opponent()). Rows and
    columns of vacant traits are ignored.
    """

    def __init__(
        self,
        names: Sequence[str],
        payoffs,
        vacant: Optional[int] = None,
        dependent: Optional[int] = None,
    ):
        super().__init__(names, vacant, dependent)
        payoffs = np.asarray(payoffs, dtype=np.float64)
        n = self.n_traits
        if payoffs.ndim != 2 or payoffs.shape[0] != n:
            raise ValueError(
                f"payoff matrix must be {n}x{n} for traits {self.names} "
                f"({n} rows against another species), got shape {payoffs.shape}"
            )
        self.payoffs = payoffs.copy()
        if vacant is not None:
            self.payoffs[vacant, :] = 0.0
            if self.is_square:
                self.payoffs[:, vacant] = 0.0
        self._partner_payoffs = self.payoffs
        self._partner_vacant = vacant

    @property
    def is_square(self) -> bool:
        return self.payoffs.shape[0] == self.payoffs.shape[1]

    def set_opponent(self, other: TraitModel) -> None:
        if other is self:
            if not self.is_square:
                raise ConfigurationError(
                    f"payoff matrix of shape {self.payoffs.shape} needs an opponent species"
                )
            self._partner_payoffs = self.payoffs
            self._partner_vacant = self.vacant
            return
        if not isinstance(other, MatrixGame):
            raise ConfigurationError(
                f"matrix game cannot interact with {type(other).__name__}"
            )
        n, m = self.payoffs.shape
        if other.payoffs.shape != (m, n):
            raise ConfigurationError(
                f"payoff matrices of shapes {self.payoffs.shape} and "
                f"{other.payoffs.shape} do not describe the same interaction"
            )
        self._partner_payoffs = other.payoffs
        self._partner_vacant = other.vacant
        if other.vacant is not None:
            self.payoffs[:, other.vacant] = 0.0

    def payoff_range(self) -> Tuple[float, float]:
        rows = self.occupied_traits()
        cols = [t for t in range(self.payoffs.shape[1]) if t != self._partner_vacant]
        sub = self.payoffs[np.ix_(rows, cols)]
        return float(sub.min()), float(sub.max())

    def pair_scores(
        self,
        my_trait: int,
        trait_count: np.ndarray,
        trait_score: np.ndarray,
    ) -> float:
        """Total payoff of `my_trait` against `trait_count` opponents.

        Fills trait_score[t] with the payoff an opponent of trait t earns
        from this interaction.
        """
        trait_score[:] = self._partner_payoffs[:, my_trait]
        return float(self.payoffs[my_trait] @ trait_count)

    def mixed_scores(self, trait_count: np.ndarray, averaged: bool = True) -> np.ndarray:
        """Per-trait payoff against everybody else in a well-mixed population."""
        counts = np.asarray(trait_count, dtype=np.float64).copy()
        if self.vacant is not None:
            counts[self.vacant] = 0.0
        n_occ = counts.sum()
        totals = self.payoffs @ counts - np.diag(self.payoffs)
        if n_occ <= 1.0:
            return np.zeros(self.n_traits)
        scores = totals / (n_occ - 1.0) if averaged else totals
        if self.vacant is not None:
            scores[self.vacant] = 0.0
        return scores

    def best_response(self, my_trait: int, trait_count: np.ndarray) -> int:
        """Trait with the highest payoff against the counted neighbours.

        The current trait is kept when it is among the best.
        """
        expected = self.payoffs @ np.asarray(trait_count, dtype=np.float64)
        if self.vacant is not None:
            expected[self.vacant] = -np.inf
        top = expected.max()
        if expected[my_trait] >= top - NEUTRAL_TOL:
            return my_trait
        return int(np.argmax(expected))


# ═══════════════════════════════════════════════════════════════════════
# PUBLIC GOODS GAME
# ═══════════════════════════════════════════════════════════════════════

class PublicGoodsGame(TraitModel):
    """Linear public goods game in groups of `group_size`.

    Cooperators pay `cost` into a common pool, which is multiplied by
    `interest` and shared equally among all participants; defectors pay
    nothing. The optional third trait abstains: loners earn
    `loner_payoff`, and so does everybody in a group with fewer than two
    participants. Traits are ordered cooperator, defector[, loner]. Initial
    frequencies leave the remainder to the loners unless another
    dependent trait is given.
    """

    COOPERATE, DEFECT, LONER = 0, 1, 2

    def __init__(
        self,
        names: Sequence[str],
        interest: float = 3.0,
        cost: float = 1.0,
        loner_payoff: float = 1.0,
        group_size: int = 5,
        dependent: Optional[int] = None,
    ):
        super().__init__(names, None, dependent)
        if self.n_traits not in (2, 3):
            raise ValueError(
                f"public goods game needs cooperators, defectors and optional "
                f"loners, got traits {self.names}"
            )
        if group_size < 2:
            raise ValueError(f"group_size must be >= 2, got {group_size}")
        self.interest = float(interest)
        self.cost = float(cost)
        self.loner_payoff = float(loner_payoff)
        self.group_size = int(group_size)
        self.has_loners = self.n_traits == 3
        if dependent is None and self.has_loners:
            self._dependent = self.LONER

    def group_scores(self, trait_count: np.ndarray) -> np.ndarray:
        """Payoff of each trait in a group with `trait_count` members."""
        C, D, L = self.COOPERATE, self.DEFECT, self.LONER
        x = int(trait_count[C])
        y = int(trait_count[D])
        scores = np.zeros(self.n_traits, dtype=np.float64)
        if self.has_loners:
            scores[L] = self.loner_payoff
        n = x + y
        if n < 2:
            scores[C] = scores[D] = self.loner_payoff
            return scores
        b = x * self.cost * self.interest / n
        scores[C] = b - self.cost
        scores[D] = b
        return scores

    def pair_scores(
        self,
        my_trait: int,
        trait_count: np.ndarray,
        trait_score: np.ndarray,
    ) -> float:
        pair = np.zeros(self.n_traits, dtype=np.int64)
        total = 0.0
        for t in range(self.n_traits):
            pair[:] = 0
            pair[my_trait] += 1
            pair[t] += 1
            scores = self.group_scores(pair)
            trait_score[t] = scores[t]
            total += trait_count[t] * scores[my_trait]
        return float(total)

    def payoff_range(self) -> Tuple[float, float]:
        n = self.group_size
        counts = np.zeros(self.n_traits, dtype=np.int64)
        lo, hi = np.inf, -np.inf
        for z in range(n + 1 if self.has_loners else 1):
            for x in range(n - z + 1):
                counts[self.COOPERATE] = x
                counts[self.DEFECT] = n - z - x
                if self.has_loners:
                    counts[self.LONER] = z
                present = self.group_scores(counts)[counts > 0]
                lo = min(lo, float(present.min()))
                hi = max(hi, float(present.max()))
        return lo, hi

    def mixed_scores(self, trait_count: np.ndarray, averaged: bool = True) -> np.ndarray:
        """Expected payoffs when groups are drawn at random from everybody.

        Hauert et al. (2002), Science 296:1129, with finite population
        corrections for a population of m individuals.
        """
        C, D, L = self.COOPERATE, self.DEFECT, self.LONER
        x = int(trait_count[C])
        y = int(trait_count[D])
        z = int(trait_count[L]) if self.has_loners else 0
        m = x + y + z
        n = self.group_size
        if m <= n:
            return self.group_scores(trait_count)
        scores = np.zeros(self.n_traits, dtype=np.float64)
        sigma = self.loner_payoff
        if self.has_loners:
            scores[L] = sigma
        m1 = m - 1
        if z >= m1:
            scores[C] = scores[D] = sigma
            return scores
        # probability that all n - 1 co-players are loners
        alone = 1.0
        for i in range(n - 1):
            alone *= max(0, z - i) / (m1 - i)
        scores[C] = scores[D] = sigma * alone
        if x == 0:
            return scores
        zn = alone * (z - n + 1) / m
        mz = x + y
        r, c = self.interest, self.cost
        b = r * c * (1.0 - m * (1.0 - zn) / (n * mz)) / (mz - 1)
        scores[D] += b * x
        scores[C] += (r - 1.0) * (1.0 - alone) * c - b * y
        return scores


# ═══════════════════════════════════════════════════════════════════════
# CONSTANT FITNESS
# ═══════════════════════════════════════════════════════════════════════

class ConstantFitness(TraitModel):
    """Static scores: each trait earns a fixed score regardless of others."""

    def __init__(
        self,
        names: Sequence[str],
        scores,
        vacant: Optional[int] = None,
        dependent: Optional[int] = None,
    ):
        super().__init__(names, vacant, dependent)
        scores = np.asarray(scores, dtype=np.float64)
        if scores.shape != (self.n_traits,):
            raise ValueError(
                f"static scores must have {self.n_traits} entries, got {scores.shape}"
            )
        self._scores = scores.copy()
        if vacant is not None:
            self._scores[vacant] = 0.0

    def is_static(self) -> bool:
        return True

    def static_scores(self) -> np.ndarray:
        return self._scores

    def payoff_range(self) -> Tuple[float, float]:
        occ = self._scores[self.occupied_traits()]
        return float(occ.min()), float(occ.max())

    def mixed_scores(self, trait_count: np.ndarray, averaged: bool = True) -> np.ndarray:
        return self._scores.copy()


# ═══════════════════════════════════════════════════════════════════════
# CONTINUOUS INVESTMENT GAME
# ═══════════════════════════════════════════════════════════════════════

class ContinuousSnowdrift(TraitModel):
    """Continuous snowdrift game on cooperative investments.

    An x-investor meeting a y-investor earns B(x + y) - C(x) with
    B(s) = b1 s + b2 s^2 and C(x) = c1 x + c2 x^2. Traits are vectors
    with one investment per name, each bounded by [trait_min, trait_max];
    payoffs add up over the entries.

    Reference: Doebeli, Hauert & Killingback (2004) The evolutionary
    origin of cooperators and defectors, Science 306:859.
    """

    GRID_STEPS = 101

    def __init__(
        self,
        names: Sequence[str] = ('investment',),
        benefit: Sequence[float] = (6.0, -1.4),
        cost: Sequence[float] = (4.56, -1.6),
        trait_min=0.0,
        trait_max=1.0,
    ):
        super().__init__(names)
        d = self.n_traits
        self.benefit = tuple(float(v) for v in benefit)
        self.cost = tuple(float(v) for v in cost)
        if len(self.benefit) != 2 or len(self.cost) != 2:
            raise ValueError("benefit and cost take two coefficients each")
        self.trait_min = np.broadcast_to(np.asarray(trait_min, dtype=np.float64), (d,)).copy()
        self.trait_max = np.broadcast_to(np.asarray(trait_max, dtype=np.float64), (d,)).copy()
        if np.any(self.trait_min >= self.trait_max):
            raise ValueError(
                f"trait_min {self.trait_min.tolist()} must lie below "
                f"trait_max {self.trait_max.tolist()}"
            )

    def _benefit(self, s):
        b1, b2 = self.benefit
        return b1 * s + b2 * s * s

    def _cost(self, x):
        c1, c2 = self.cost
        return c1 * x + c2 * x * x

    def payoff(self, me: np.ndarray, you: np.ndarray) -> float:
        return float(np.sum(self._benefit(me + you) - self._cost(me)))

    def pair_scores(
        self,
        my_trait: np.ndarray,
        partner_traits: np.ndarray,
        partner_scores: np.ndarray,
    ) -> float:
        """Total payoff of `my_trait` against each row of `partner_traits`.

        Fills partner_scores[i] with the payoff partner i earns.
        """
        shared = self._benefit(partner_traits + my_trait).sum(axis=1)
        partner_scores[:len(partner_traits)] = shared - self._cost(partner_traits).sum(axis=1)
        return float((shared - self._cost(my_trait).sum()).sum())

    def payoff_range(self) -> Tuple[float, float]:
        """Payoff bounds, sampled on a grid over the trait range."""
        lo = hi = 0.0
        for k in range(self.n_traits):
            grid = np.linspace(self.trait_min[k], self.trait_max[k], self.GRID_STEPS)
            me, you = np.meshgrid(grid, grid, indexing='ij')
            pay = self._benefit(me + you) - self._cost(me)
            lo += float(pay.min())
            hi += float(pay.max())
        return lo, hi


def build_trait_model(
    names: Sequence[str],
    payoffs=None,
    static_scores=None,
    vacant: Optional[int] = None,
    dependent: Optional[int] = None,
    public_goods: Optional[Dict[str, float]] = None,
    continuous: Optional[Dict] = None,
) -> TraitModel:
    """Construct the representation described by a species config entry."""
    given = [k for k, v in (('payoffs', payoffs), ('static_scores', static_scores),
                            ('public_goods', public_goods), ('continuous', continuous))
             if v is not None]
    if len(given) > 1:
        raise ValueError(f"give only one of {given}")
    if continuous is not None:
        if vacant is not None:
            raise ValueError("continuous traits do not support a vacant trait")
        return ContinuousSnowdrift(names, **continuous)
    if public_goods is not None:
        if vacant is not None:
            raise ValueError("public goods games do not support a vacant trait")
        return PublicGoodsGame(names, dependent=dependent, **public_goods)
    if static_scores is not None:
        return ConstantFitness(names, static_scores, vacant, dependent)
    if payoffs is None:
        # neutral game: every interaction pays 1
        payoffs = np.ones((len(names), len(names)))
    return MatrixGame(names, payoffs, vacant, dependent)
