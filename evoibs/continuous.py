"""Populations with continuous traits.

Every slot carries a vector of d real-valued traits bounded by the trait
model's [trait_min, trait_max]. Offspring and mutants inherit the parent's
vector with Gaussian perturbations of standard deviation mutation_sdev
(in trait units); draws that leave the bounds are redrawn.

Scores depend on the exact trait values, so there is no per-trait payoff
table: scores are always recomputed by playing the sampled partners.
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np

from evoibs.population import Population
from evoibs.rng import next_gaussian, random0n
from evoibs.types import NEUTRAL_TOL, ConfigurationError, InitType, PlayerUpdateType


class ContinuousPopulation(Population):
    """Population of real-valued trait vectors.

    Takes the arguments of Population plus:
        mutation_sdev: Standard deviation of Gaussian mutations.
    """

    typed_scores = False

    def __init__(self, *args, mutation_sdev: float = 0.01, **kwargs):
        super().__init__(*args, **kwargs)
        if mutation_sdev < 0.0:
            raise ValueError(f"mutation_sdev must be >= 0, got {mutation_sdev}")
        self.mutation_sdev = float(mutation_sdev)
        self.n_dims = self.model.n_traits
        self.trait_min = np.asarray(self.model.trait_min, dtype=np.float64)
        self.trait_max = np.asarray(self.model.trait_max, dtype=np.float64)
        self.traits = np.zeros((self.size, self.n_dims), dtype=np.float64)
        self.traits_next = np.zeros((self.size, self.n_dims), dtype=np.float64)

    def check(self) -> None:
        if self.player_update.kind == PlayerUpdateType.BEST_RESPONSE:
            raise ConfigurationError(
                f"{self.name}: best-response updates need discrete traits"
            )
        super().check()

    def _check_interactions(self) -> None:
        if self.interspecific:
            raise ConfigurationError(
                f"{self.name}: continuous traits only interact within the species"
            )
        super()._check_interactions()

    # ═══════════════════════════════════════════════════════════════════
    # TRAITS
    # ═══════════════════════════════════════════════════════════════════

    def _reset_traits(self) -> None:
        self.traits[:] = 0.0
        self.traits_next[:] = 0.0

    def _vector(self, values, default: np.ndarray) -> np.ndarray:
        """Trait vector from `values` (one per dimension, or one for all)."""
        if len(values) == 0:
            return default.copy()
        vec = np.broadcast_to(np.asarray(values, dtype=np.float64), (self.n_dims,)).copy()
        if np.any(vec < self.trait_min) or np.any(vec > self.trait_max):
            raise ConfigurationError(
                f"{self.name}: initial trait {vec.tolist()} outside "
                f"[{self.trait_min.tolist()}, {self.trait_max.tolist()}]"
            )
        return vec

    def _initial_traits(self) -> np.ndarray:
        n, d = self.size, self.n_dims
        args = self.init_args
        lo, hi = self.trait_min, self.trait_max
        if self.init_type == InitType.UNIFORM:
            return lo + (hi - lo) * self.rng.random((n, d))
        if self.init_type == InitType.MONO:
            return np.tile(self._vector(args[:d], lo), (n, 1))
        if self.init_type == InitType.MUTANT:
            resident = self._vector(args[:d], lo)
            if len(args) > d:
                mutant = self._vector(args[d:2 * d], resident)
            else:
                mutant = self.mutate(resident)
            traits = np.tile(resident, (n, 1))
            traits[random0n(self.rng, n)] = mutant
            return traits
        if self.init_type == InitType.GAUSSIAN:
            mean = self._vector(args[:d], 0.5 * (lo + hi))
            sdev = np.broadcast_to(
                np.asarray(args[d:2 * d] if len(args) > d else [self.mutation_sdev],
                           dtype=np.float64), (d,))
            return np.clip(mean + sdev * self.rng.standard_normal((n, d)), lo, hi)
        raise ConfigurationError(
            f"{self.name}: {self.init_type.name.lower()} initialisation needs discrete traits"
        )

    def same_trait(self, a, b) -> bool:
        return bool(np.all(np.abs(np.asarray(a) - np.asarray(b)) < NEUTRAL_TOL))

    def _trait_of(self, me: int) -> np.ndarray:
        return self.traits[me].copy()

    def commit_trait_at(self, me: int) -> None:
        self.traits[me] = self.traits_next[me]

    def mutate(self, trait) -> np.ndarray:
        """Gaussian perturbation of every entry, redrawn until inside the bounds."""
        new = np.array(trait, dtype=np.float64)
        if self.mutation_sdev <= 0.0:
            return new
        for k in range(self.n_dims):
            while True:
                value = next_gaussian(self.rng, new[k], self.mutation_sdev)
                if self.trait_min[k] <= value <= self.trait_max[k]:
                    break
            new[k] = value
        return new

    # ═══════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════

    def is_monomorphic(self) -> bool:
        return bool(np.all(np.abs(self.traits - self.traits[0]) < NEUTRAL_TOL))

    def get_mean_trait(self, buffer: Optional[np.ndarray] = None) -> np.ndarray:
        """Mean and standard deviation of every trait entry, interleaved."""
        if buffer is None:
            buffer = np.zeros(2 * self.n_dims, dtype=np.float64)
        buffer[0::2] = self.traits.mean(axis=0)
        buffer[1::2] = self.traits.std(axis=0)
        return buffer

    def get_mean_fitness(self, buffer: Optional[np.ndarray] = None) -> np.ndarray:
        """Mean and standard deviation of fitness."""
        if buffer is None:
            buffer = np.zeros(2, dtype=np.float64)
        buffer[0] = self.ledger.mean_fitness()
        buffer[1] = float(self.ledger.fitness.std())
        return buffer

    def get_status(self) -> str:
        stats = self.get_mean_trait()
        return ", ".join(
            f"{name}: {stats[2 * k]:.4g} ± {stats[2 * k + 1]:.4g}"
            for k, name in enumerate(self.model.names)
        )

    def check_consistency(self) -> List[str]:
        problems = self.ledger.check_accounting()
        if np.any(self.traits < self.trait_min) or np.any(self.traits > self.trait_max):
            problems.append("traits outside their bounds")
        return problems

    # ═══════════════════════════════════════════════════════════════════
    # SCORING
    # ═══════════════════════════════════════════════════════════════════

    def _play_pass(self, me: int, out: bool) -> None:
        members = self._sample_partners(me, out)
        k = len(members)
        if k == 0:
            return
        partner_scores = np.empty(k, dtype=np.float64)
        score = self.model.pair_scores(self.traits[me], self.traits[members], partner_scores)
        self.ledger.update_score_at(me, score, k)
        for j, s in zip(members, partner_scores):
            self.ledger.update_score_at(j, s, 1)

    def _ephemeral_score_at(self, me: int) -> None:
        self.ledger.reset_score_at(me)
        members = self._sample_partners(me)
        k = len(members)
        if k == 0:
            return
        partner_scores = np.empty(k, dtype=np.float64)
        score = self.model.pair_scores(self.traits[me], self.traits[members], partner_scores)
        self.ledger.update_score_at(me, score, k)
