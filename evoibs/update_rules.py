"""Update rules: decide whether a focal individual adopts a reference trait.

Every rule is a function of the focal fitness, the fitness values of the
sampled reference group and the rule parameters (noise, error). It returns
the position within the group of the model to imitate, or None when the
focal individual keeps its trait. Rules never touch population state.

Under neutral selection every rule except imitate-better reduces to a
uniform choice among the focal individual and its group (choosing the
focal means no change); imitate-better becomes a no-op.

Best-response depends on the trait representation and is resolved by
TraitModel.best_response, not here.

References:
  - Szabo & Fath (2007) Evolutionary games on graphs, Phys Rep 446:97
  - Traulsen, Nowak & Pacheco (2006) Stochastic dynamics of invasion and
    fixation, Phys Rev E 74:011909 (Fermi/thermal update)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from evoibs.rng import random01, random0n
from evoibs.types import NEUTRAL_TOL, AccountingError, PlayerUpdateType

# prefer(best_pos, candidate_pos) -> True if the candidate wins a tie
TieBreak = Callable[[int, int], bool]


@dataclass
class PlayerUpdate:
    """Configured update rule of one population."""
    kind: PlayerUpdateType = PlayerUpdateType.IMITATE
    noise: float = 1.0
    error: float = 0.0


# ═══════════════════════════════════════════════════════════════════════
# NEUTRAL
# ═══════════════════════════════════════════════════════════════════════

def neutral_choice(n_group: int, rng: np.random.Generator) -> Optional[int]:
    """Uniform over the group plus the focal individual (last slot)."""
    hit = random0n(rng, n_group + 1)
    return None if hit == n_group else hit


# ═══════════════════════════════════════════════════════════════════════
# DETERMINISTIC RULES
# ═══════════════════════════════════════════════════════════════════════

def best(
    focal_fit: float,
    group_fit: Sequence[float],
    prefer: Optional[TieBreak] = None,
) -> Optional[int]:
    """Adopt the strictly fittest candidate.

    A tie with the focal individual keeps the focal trait; ties between
    candidates are resolved by `prefer` (first candidate wins otherwise).
    """
    best_pos = None
    best_fit = focal_fit + NEUTRAL_TOL
    for i, f in enumerate(group_fit):
        score = f
        if abs(best_fit - score) < NEUTRAL_TOL:
            if best_pos is not None and prefer is not None and prefer(best_pos, i):
                score += NEUTRAL_TOL
            else:
                score -= NEUTRAL_TOL
        if best_fit > score:
            continue
        best_fit = f
        best_pos = i
    return best_pos


def best_random(
    focal_fit: float,
    group_fit: Sequence[float],
    rng: np.random.Generator,
) -> Optional[int]:
    """Adopt the fittest candidate; a fair coin decides every tie."""
    best_pos = None
    best_fit = focal_fit
    for i, f in enumerate(group_fit):
        if f > best_fit:
            best_fit = f
            best_pos = i
            continue
        if abs(f - best_fit) < NEUTRAL_TOL and random01(rng) < 0.5:
            best_pos = i
    return best_pos


# ═══════════════════════════════════════════════════════════════════════
# STOCHASTIC RULES
# ═══════════════════════════════════════════════════════════════════════

def proportional(
    focal_fit: float,
    group_fit: Sequence[float],
    min_fitness: float,
    rng: np.random.Generator,
) -> Optional[int]:
    """Choose focal or a candidate proportional to fitness - min_fitness."""
    n = len(group_fit)
    weights = np.asarray(group_fit, dtype=np.float64) - min_fitness
    mine = focal_fit - min_fitness
    total = mine + float(weights.sum())
    if total <= 0.0:
        # everybody sits at the minimum
        return neutral_choice(n, rng)
    choice = random01(rng) * total
    if choice <= mine:
        return None
    choice -= mine
    for i in range(n):
        if choice <= weights[i]:
            return i
        choice -= weights[i]
    raise AccountingError(
        f"proportional update failed to resolve (total={total}, residual={choice})"
    )


def _switch_from_probs(probs: np.ndarray, rng: np.random.Generator) -> Optional[int]:
    """Resolve independent per-candidate switching probabilities.

    No switch happens with probability prod(1 - p); otherwise candidate i
    is chosen with probability proportional to p_i.
    """
    norm = float(probs.sum())
    if norm <= 0.0:
        return None
    n_prob = float(np.prod(1.0 - probs))
    choice = random01(rng)
    if choice >= 1.0 - n_prob:
        return None
    if len(probs) == 1:
        return 0
    scale = (1.0 - n_prob) / norm
    cum = np.cumsum(probs) * scale
    for i in range(len(probs)):
        if choice < cum[i]:
            return i
    raise AccountingError(
        f"imitation update failed to resolve (choice={choice}, total={cum[-1]})"
    )


def _hard_probs(
    focal_fit: float,
    group_fit: Sequence[float],
    error: float,
    tie_prob: float,
) -> np.ndarray:
    diff = np.asarray(group_fit, dtype=np.float64) - focal_fit
    return np.where(diff > 0.0, 1.0 - error, np.where(diff < 0.0, error, tie_prob))


def imitate(
    focal_fit: float,
    group_fit: Sequence[float],
    noise: float,
    error: float,
    fitness_span: float,
    rng: np.random.Generator,
    better_only: bool = False,
) -> Optional[int]:
    """Replicator-type imitation.

    The probability to switch to candidate j grows linearly with the
    fitness difference, scaled by noise and the fitness span, and is
    clamped to [error, 1 - error]. `better_only` gives zero weight (down
    to `error`) to candidates that are not fitter.
    """
    if noise <= 0.0:
        tie = error if better_only else 0.5
        probs = _hard_probs(focal_fit, group_fit, error, tie)
        return _switch_from_probs(probs, rng)
    inoise = 1.0 / noise
    shift = 0.0
    if not better_only:
        inoise *= 0.5
        shift = 0.5
    inoise /= fitness_span
    diff = np.asarray(group_fit, dtype=np.float64) - focal_fit
    probs = np.clip(diff * inoise + shift, error, 1.0 - error)
    return _switch_from_probs(probs, rng)


def thermal(
    focal_fit: float,
    group_fit: Sequence[float],
    noise: float,
    error: float,
    rng: np.random.Generator,
) -> Optional[int]:
    """Fermi update: switching probability 1 / (1 + exp(-(f_j - f_i) / noise))."""
    if noise <= 0.0:
        probs = _hard_probs(focal_fit, group_fit, error, 0.5)
        return _switch_from_probs(probs, rng)
    probs = np.empty(len(group_fit), dtype=np.float64)
    for i, f in enumerate(group_fit):
        # 1/(2 + expm1(x)) == 1/(1 + exp(x)) without cancellation near 0
        x = -(f - focal_fit) / noise
        probs[i] = 0.0 if x > 700.0 else 1.0 / (2.0 + math.expm1(x))
    return _switch_from_probs(np.clip(probs, error, 1.0 - error), rng)


# ═══════════════════════════════════════════════════════════════════════
# DISPATCH
# ═══════════════════════════════════════════════════════════════════════

def apply_rule(
    update: PlayerUpdate,
    focal_fit: float,
    group_fit: Sequence[float],
    min_fitness: float,
    max_fitness: float,
    rng: np.random.Generator,
    neutral: bool = False,
    prefer: Optional[TieBreak] = None,
) -> Optional[int]:
    """Run the configured rule; return the group position to imitate or None.

    Raises:
        ValueError: For BEST_RESPONSE, which the trait representation resolves.
    """
    n = len(group_fit)
    if n == 0:
        return None
    kind = update.kind
    if kind == PlayerUpdateType.BEST_RESPONSE:
        raise ValueError("best-response is resolved by the trait representation")
    if neutral:
        if kind == PlayerUpdateType.IMITATE_BETTER:
            return None
        return neutral_choice(n, rng)
    if kind == PlayerUpdateType.BEST:
        return best(focal_fit, group_fit, prefer)
    if kind == PlayerUpdateType.BEST_RANDOM:
        return best_random(focal_fit, group_fit, rng)
    if kind == PlayerUpdateType.PROPORTIONAL:
        return proportional(focal_fit, group_fit, min_fitness, rng)
    if kind == PlayerUpdateType.IMITATE_BETTER:
        return imitate(focal_fit, group_fit, update.noise, update.error,
                       max_fitness - min_fitness, rng, better_only=True)
    if kind == PlayerUpdateType.IMITATE:
        return imitate(focal_fit, group_fit, update.noise, update.error,
                       max_fitness - min_fitness, rng)
    if kind == PlayerUpdateType.THERMAL:
        return thermal(focal_fit, group_fit, update.noise, update.error, rng)
    raise ValueError(f"unknown player update {kind!r}")
