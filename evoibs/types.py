"""Core data types for evoibs.

This module is the SINGLE SOURCE OF TRUTH for:
  - The closed variant sets (update rules, population update types,
    sampling, migration, species selection, scoring, fitness maps,
    initialisation) as IntEnums
  - Numerical tolerances shared by the ledger, the rules and the scheduler
  - The exception taxonomy (configuration, accounting, unsupported)
  - Inter-module data transfer objects (PopulationState, SimulationState)

All modules import these types from here.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Type, TypeVar

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# TOLERANCES
# ═══════════════════════════════════════════════════════════════════════

NEUTRAL_TOL = 1e-8          # fitness spread below which selection is neutral
ACCOUNTING_TOL = 1e-6       # relative tolerance of the fitness-sum invariant
REJECTION_MIN_SIZE = 100    # rejection sampling only for N >= this
VACANT_INTERACTIONS = -1    # interaction count stored for vacant slots


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class PlayerUpdateType(IntEnum):
    """Decision procedure mapping a focal individual and its group to an
    adoption decision."""
    BEST_RESPONSE  = 0   # supplied by the trait representation
    BEST           = 1   # strictly best; ties with the focal keep the focal trait
    BEST_RANDOM    = 2   # best, fair coin on ties
    PROPORTIONAL   = 3   # proportional to fitness - min_fitness
    IMITATE_BETTER = 4   # replicator, only improving candidates
    IMITATE        = 5   # replicator, symmetric
    THERMAL        = 6   # Fermi / logistic


class PopulationUpdateType(IntEnum):
    """Scheduling discipline of one population."""
    SYNC             = 0   # prepare all, then commit all
    ONCE             = 1   # every slot once per step, random order
    ASYNC            = 2   # one uniformly picked slot per event
    MORAN_BIRTHDEATH = 3
    MORAN_DEATHBIRTH = 4
    MORAN_IMITATE    = 5
    ECOLOGY          = 6   # variable population size via a vacant trait

    @property
    def is_moran(self) -> bool:
        return self in (PopulationUpdateType.MORAN_BIRTHDEATH,
                        PopulationUpdateType.MORAN_DEATHBIRTH,
                        PopulationUpdateType.MORAN_IMITATE)

    @property
    def is_sync(self) -> bool:
        return self == PopulationUpdateType.SYNC


class SamplingType(IntEnum):
    """How a reference or interaction group is drawn from the neighbours."""
    NONE   = 0
    ALL    = 1
    RANDOM = 2


class MigrationType(IntEnum):
    NONE        = 0
    DIFFUSION   = 1   # two neighbours swap places
    BIRTH_DEATH = 2   # fit source displaces a random neighbour
    DEATH_BIRTH = 3   # random slot repopulated by a fit neighbour


class SpeciesUpdateType(IntEnum):
    """Scheme for choosing the focal species in multi-species runs."""
    SIZE    = 0   # population size x update rate
    FITNESS = 1   # total fitness x update rate
    RATE    = 2   # update rate only
    TURNS   = 3   # round robin, skipping empty species
    UNIFORM = 4


class ScoringType(IntEnum):
    """When scores are reset."""
    RESET_ALWAYS    = 0   # after every update
    RESET_ON_CHANGE = 1   # only when the trait changed
    EPHEMERAL       = 2   # scores computed on demand, never stored


class FitnessMapType(IntEnum):
    NONE        = 0   # f = s
    STATIC      = 1   # f = b + w s
    CONVEX      = 2   # f = b + w (s - b)
    EXPONENTIAL = 3   # f = b exp(w s)


class InitType(IntEnum):
    UNIFORM   = 0   # traits drawn uniformly
    FREQUENCY = 1   # traits drawn with given frequencies
    MONO      = 2   # everyone carries one trait
    MUTANT    = 3   # monomorphic resident plus a single mutant
    GAUSSIAN  = 4   # continuous traits drawn around a mean


class Event(IntEnum):
    """Elementary event kinds of the asynchronous multi-species loop."""
    REPLICATION = 0
    MUTATION    = 1
    MIGRATION   = 2


E = TypeVar('E', bound=IntEnum)


def enum_from_name(enum_cls: Type[E], name: str) -> E:
    """Look up an enum member by its case-insensitive name.

    Accepts 'imitate-better', 'imitate_better' and 'IMITATE_BETTER'.

    Raises:
        ValueError: If no member carries that name.
    """
    key = str(name).strip().upper().replace('-', '_').replace(' ', '_')
    try:
        return enum_cls[key]
    except KeyError:
        valid = sorted(m.name.lower() for m in enum_cls)
        raise ValueError(
            f"unknown {enum_cls.__name__} '{name}', expected one of {valid}"
        ) from None


# ═══════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════

class ConfigurationError(ValueError):
    """Inconsistent configuration without a safe default."""


class AccountingError(RuntimeError):
    """A sampling loop failed to resolve or a ledger invariant is violated.

    Always fatal: it signals an inconsistency in the fitness bookkeeping.
    """


class UnsupportedUpdateError(NotImplementedError):
    """Requested update has no definition for the trait representation."""


# ═══════════════════════════════════════════════════════════════════════
# DATA TRANSFER OBJECTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PopulationState:
    """Per-slot arrays sufficient to resume a population bit-identically.

    Produced by Population.get_state() and consumed by
    Population.set_state() and the snapshot module.
    """
    name: str
    traits: np.ndarray          # int32 trait index per slot, or (N, d) float64 trait vectors
    scores: np.ndarray          # float64
    fitness: np.ndarray         # float64
    interactions: np.ndarray    # int32, -1 for vacant slots
    tags: np.ndarray            # float64
    max_eff_score_idx: int = -1
    sum_fitness: Optional[float] = None
    migration_events: int = 0
    # slots not yet visited in the current ONCE pass, in queue order
    remain: Optional[np.ndarray] = None
    # network adjacency in CSR form (indptr, indices), None when well-mixed
    adjacency: Optional[tuple] = field(default=None, repr=False)


@dataclass
class SimulationState:
    """Everything a Simulation needs to resume: clocks, RNG and populations."""
    time: float
    realtime: float
    n_events: int
    turn: int
    rng_state: dict
    populations: List[PopulationState] = field(default_factory=list)
