"""Populations: traits, scoring, updates, mutation, migration.

A population holds N slots on a network. Each slot carries a trait and a
lineage tag; scores and fitness live in the population's FitnessLedger
and are only changed through ledger operations.

Population implements everything that never looks inside a trait
(scheduling, sampling, update rules, Moran and ecological events,
migration, state). Subclasses supply the trait arithmetic:
  - DiscretePopulation: integer trait indices, one may mark vacant slots
  - ContinuousPopulation (evoibs.continuous): real-valued trait vectors

Scoring strategies, chosen by check():
  - lookup table: well-mixed interactions with every other slot, or
    constant (static) fitness. Scores depend on the trait only.
  - adjust: complete pairwise interactions on an undirected network
    with scores reset after every update. Neighbour scores are patched
    in place when a trait changes.
  - recompute: the changed slot is reset and plays its games again.
  - ephemeral: scores are computed right before they are needed.

Interaction partners come from `opponent`, which is the population
itself unless set_opponent() links another species. A focal individual
then plays members of the other species and both ledgers are credited.

Elementary updates:
  - update_player_async_at: imitation/best-response of one focal slot
  - update_moran_*: coupled birth and death events
  - update_ecology_at: birth into a vacant slot or death of an occupant
  - step_sync / update_scores: synchronous sweep and score recomputation
  - do_migration: diffusion, birth-death or death-birth migration

References:
  - Nowak (2006) Evolutionary Dynamics, ch. 6 (Moran process)
  - Ohtsuki et al. (2006) A simple rule for the evolution of cooperation
    on graphs, Nature 441:502 (birth-death vs death-birth)
  - Hauert et al. (2002) Volunteering as Red Queen mechanism for
    cooperation in public goods games, Science 296:1129
"""

from __future__ import annotations

import warnings
from typing import List, Optional, Sequence, Tuple

import numpy as np

from evoibs.fitness import FitnessLedger, FitnessMap
from evoibs.group import GroupSampler
from evoibs.network import Network, make_network, well_mixed
from evoibs.rng import next_binomial, random01, random0n
from evoibs.traits import TraitModel, build_trait_model
from evoibs.types import (
    NEUTRAL_TOL,
    ConfigurationError,
    FitnessMapType,
    InitType,
    MigrationType,
    PlayerUpdateType,
    PopulationState,
    PopulationUpdateType,
    SamplingType,
    ScoringType,
    UnsupportedUpdateError,
    enum_from_name,
)
from evoibs.update_rules import PlayerUpdate, apply_rule


class Population:
    """One species: N slots on a network, trait arithmetic left to subclasses.

    Args:
        name: Species name (used in status strings).
        model: Trait representation (payoffs, static scores, best response).
        network: Interaction and competition network; its size is N.
        rng: The run's random stream.
        player_update: Individual update rule.
        population_update: Scheduling discipline.
        interaction: Sampler for interaction partners.
        reference: Sampler for reference (model) individuals.
        scoring: When scores are reset.
        averaged: Average payoffs over interactions instead of accumulating.
        fitness_map: Payoff-to-fitness map.
        mutation_probability: Per-update probability of a mutation.
        mutation_temperature: Mutations accompany updates (True) or occur
            as separate events chosen by the scheduler (False).
        migration: Migration type.
        p_migration: Probability that an event is a migration event.
        sync_fraction: Fraction of slots updated per synchronous sweep.
        death_rate: Death rate for ecological updates.
        update_rate: Species update rate (multi-species runs).
        mono_stop: Report convergence in monomorphic states even when
            vacant slots exist.
        init_type: Initial configuration.
        init_args: Arguments of the initial configuration.
    """

    # scores depend on the trait through a per-trait payoff table
    typed_scores = True

    def __init__(
        self,
        name: str,
        model: TraitModel,
        network: Network,
        rng: np.random.Generator,
        player_update: Optional[PlayerUpdate] = None,
        population_update: PopulationUpdateType = PopulationUpdateType.ASYNC,
        interaction: Optional[GroupSampler] = None,
        reference: Optional[GroupSampler] = None,
        scoring: ScoringType = ScoringType.RESET_ON_CHANGE,
        averaged: bool = True,
        fitness_map: Optional[FitnessMap] = None,
        mutation_probability: float = 0.0,
        mutation_temperature: bool = True,
        migration: MigrationType = MigrationType.NONE,
        p_migration: float = 0.0,
        sync_fraction: float = 1.0,
        death_rate: float = 1.0,
        update_rate: float = 1.0,
        mono_stop: bool = False,
        init_type: InitType = InitType.UNIFORM,
        init_args: Sequence[float] = (),
    ):
        self.name = name
        self.model = model
        self.network = network
        self.rng = rng
        self.size = network.size()
        self.player_update = player_update if player_update is not None else PlayerUpdate()
        self.population_update = population_update
        self.interaction = interaction if interaction is not None else GroupSampler(SamplingType.ALL)
        self.reference = reference if reference is not None else GroupSampler(SamplingType.RANDOM, 1)
        self.scoring = scoring
        self.averaged = averaged
        self.fitness_map = fitness_map if fitness_map is not None else FitnessMap()
        self.mutation_probability = mutation_probability
        self.mutation_temperature = mutation_temperature
        self.migration = migration
        self.p_migration = p_migration
        self.sync_fraction = sync_fraction
        self.death_rate = death_rate
        self.update_rate = update_rate
        self.mono_stop = mono_stop
        self.init_type = init_type
        self.init_args = list(init_args)

        self.vacant = model.vacant
        self.traits = np.zeros(self.size, dtype=np.int32)
        self.traits_next = np.zeros(self.size, dtype=np.int32)
        self.tags = np.arange(self.size, dtype=np.float64)
        self._remain = np.zeros(0, dtype=np.int32)
        self._n_remain = 0

        self.opponent: Population = self
        self.coupled = False
        self._interaction_net = network
        self.lookup_table = False
        self.adjust_scores = False
        self.migration_events = 0
        self.ledger = FitnessLedger(self.size, self.fitness_map, averaged)

    def set_opponent(self, opponent: 'Population') -> None:
        """Draw interaction partners from `opponent` instead of this population.

        Both species are marked as coupled: their scores can no longer be
        recomputed one population at a time.
        """
        self.opponent = opponent
        if opponent is not self:
            self.coupled = True
            opponent.coupled = True

    @property
    def interspecific(self) -> bool:
        return self.opponent is not self

    # ═══════════════════════════════════════════════════════════════════
    # CHECK / RESET / INIT
    # ═══════════════════════════════════════════════════════════════════

    def check(self) -> None:
        """Resolve inconsistent settings before a run.

        Safe defaults are substituted with a UserWarning that names the
        substitution; combinations without one raise ConfigurationError.
        """
        net = self.network
        pu = self.population_update

        if net.is_well_mixed() and self.reference.is_sampling(SamplingType.ALL):
            _warn(f"{self.name}: reference sampling 'all' in well-mixed population "
                  f"- changed to 'random' with {self.reference.n_samples} sample(s).")
            self.reference.sampling = SamplingType.RANDOM

        if self.migration != MigrationType.NONE and (net.is_well_mixed() or not net.is_undirected()):
            _warn(f"{self.name}: migration requires an undirected, structured network "
                  f"- migration disabled.")
            self.migration = MigrationType.NONE
            self.p_migration = 0.0
        if self.migration == MigrationType.NONE:
            self.p_migration = 0.0

        if not 0.0 < self.sync_fraction <= 1.0:
            clamped = min(max(self.sync_fraction, 1.0 / self.size), 1.0)
            _warn(f"{self.name}: sync_fraction {self.sync_fraction} outside (0, 1] "
                  f"- clamped to {clamped}.")
            self.sync_fraction = clamped

        if pu.is_moran:
            if self.scoring == ScoringType.EPHEMERAL:
                _warn(f"{self.name}: Moran updates need stored scores "
                      f"- scoring changed to 'reset_on_change'.")
                self.scoring = ScoringType.RESET_ON_CHANGE
            if not (self.reference.is_sampling(SamplingType.RANDOM) and self.reference.n_samples == 1):
                _warn(f"{self.name}: Moran updates compare against a single reference "
                      f"- reference sampling changed to 'random' with 1 sample.")
                self.reference.sampling = SamplingType.RANDOM
                self.reference.n_samples = 1

        self._check_interactions()

        pairwise = self.model.is_pairwise()
        if not pairwise:
            n_others = self.model.group_size - 1
            if (self.interaction.is_sampling(SamplingType.RANDOM)
                    and self.interaction.n_samples != n_others):
                _warn(f"{self.name}: groups of {self.model.group_size} need {n_others} "
                      f"random interaction partner(s) - changed from "
                      f"{self.interaction.n_samples}.")
                self.interaction.n_samples = n_others
            if not self.averaged:
                _warn(f"{self.name}: group interactions need averaged scores "
                      f"- forcing averaged scores.")
                self.averaged = True

        static = self.model.is_static()
        self.lookup_table = static or (
            self.typed_scores
            and not self.coupled
            and net.is_well_mixed()
            and self.interaction.is_sampling(SamplingType.ALL)
        )
        self.adjust_scores = (
            self.typed_scores
            and pairwise
            and not self.lookup_table
            and not self.coupled
            and self.interaction.is_sampling(SamplingType.ALL)
            and self.scoring == ScoringType.RESET_ALWAYS
            and net.is_undirected()
        )
        if (not self.averaged and not self.adjust_scores and not self.lookup_table
                and self.scoring != ScoringType.EPHEMERAL):
            _warn(f"{self.name}: accumulated scores may result in unbounded fitness "
                  f"- forcing averaged scores.")
            self.averaged = True

        self.ledger = FitnessLedger(self.size, self.fitness_map, self.averaged,
                                    track_max=not static)
        self._update_score_range()

        if pu.is_moran and self.ledger.min_fitness < 0.0:
            selection = self.fitness_map.selection
            if self.fitness_map.kind == FitnessMapType.NONE:
                selection = 1.0
            # lowest score maps to zero fitness
            baseline = -selection * self.ledger.min_score
            _warn(f"{self.name}: Moran updates require fitness >= 0 "
                  f"(fitness range [{self.ledger.min_fitness:.6g}, "
                  f"{self.ledger.max_fitness:.6g}]) - changed baseline fitness to "
                  f"{baseline:.6g} with static payoff-to-fitness map.")
            self.fitness_map = FitnessMap(FitnessMapType.STATIC, baseline, selection)
            self.ledger.map = self.fitness_map
            self._update_score_range()
            if self.ledger.min_fitness < -NEUTRAL_TOL:
                raise ConfigurationError(
                    f"{self.name}: adjustment of selection failed (minimal fitness "
                    f"{self.ledger.min_fitness:.6g} should be non-negative)"
                )

    def _check_interactions(self) -> None:
        """Choose the network interaction partners are sampled from.

        Structured interactions with another species pair slot i with the
        neighbours of i in the other species, plus its slot i. That needs
        equal sizes; otherwise the other species is sampled well-mixed.
        """
        opp = self.opponent
        self._interaction_net = self.network
        if opp is self:
            return
        if self.network.is_well_mixed() and opp.network.is_well_mixed():
            self._interaction_net = well_mixed(opp.size)
        elif opp.size != self.size:
            _warn(f"{self.name}: structured interactions with species '{opp.name}' "
                  f"need equal sizes ({self.size} vs {opp.size}) "
                  f"- interactions changed to well-mixed.")
            self._interaction_net = well_mixed(opp.size)

    def _update_score_range(self) -> None:
        lo, hi = self.model.payoff_range()
        if not self.averaged:
            if self.model.is_static():
                k = 1
            elif self.lookup_table:
                k = self.size - 1
            else:
                k = 2 * self.interaction.max_size(self._interaction_net, self.interspecific)
            lo, hi = min(lo, lo * k), max(hi, hi * k)
        self.ledger.set_score_range(lo, hi)

    def reset(self) -> None:
        """Clear traits, scores and counters ahead of init()."""
        self._reset_traits()
        self.tags = np.arange(self.size, dtype=np.float64)
        self.migration_events = 0
        self._n_remain = 0
        self.ledger.vacant[:] = False
        self.ledger.n_occupied = self.size
        self.ledger.reset_scores()

    def init(self) -> None:
        """Draw the initial configuration and compute all scores."""
        self.init_traits()
        self.update_scores()

    def init_traits(self) -> None:
        """Draw the initial configuration without scoring it."""
        self.traits[:] = self._initial_traits()
        self.traits_next[:] = self.traits
        self._recount_traits()
        for i in range(self.size):
            self._sync_vacancy_at(i)

    # ── trait hooks ───────────────────────────────────────────────────

    def _reset_traits(self) -> None:
        raise NotImplementedError

    def _initial_traits(self) -> np.ndarray:
        raise NotImplementedError

    def _recount_traits(self) -> None:
        pass

    def same_trait(self, a, b) -> bool:
        raise NotImplementedError

    def _trait_of(self, me: int):
        raise NotImplementedError

    def commit_trait_at(self, me: int) -> None:
        raise NotImplementedError

    def mutate(self, trait):
        raise NotImplementedError

    def _play_pass(self, me: int, out: bool) -> None:
        raise NotImplementedError

    def _ephemeral_score_at(self, me: int) -> None:
        raise NotImplementedError

    def _best_response_at(self, me: int, refs: np.ndarray) -> None:
        raise UnsupportedUpdateError(
            f"best-response update is not defined for {type(self.model).__name__}"
        )

    def _tie_break(self, me: int, refs: np.ndarray):
        return None

    # ═══════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════

    def is_vacant_at(self, idx: int) -> bool:
        return self.vacant is not None and self.traits[idx] == self.vacant

    @property
    def population_size(self) -> int:
        """Number of occupied slots."""
        return self.size

    def is_monomorphic(self) -> bool:
        raise NotImplementedError

    def check_convergence(self) -> bool:
        """Absorbed: monomorphic without mutation (with vacancies only
        extinction, unless mono_stop is set)."""
        if self.population_size == 0:
            return True
        absorbed = self.is_monomorphic() and self.mutation_probability <= 0.0
        return absorbed and (self.vacant is None or self.mono_stop)

    def check_consistency(self) -> List[str]:
        """Ledger invariants; empty when consistent."""
        return self.ledger.check_accounting()

    # ═══════════════════════════════════════════════════════════════════
    # TRAITS
    # ═══════════════════════════════════════════════════════════════════

    def _differs(self, me: int) -> bool:
        """The prepared trait of `me` differs from its current one."""
        return not self.same_trait(self.traits_next[me], self.traits[me])

    def update_from_model_at(self, me: int, model: int) -> None:
        """Prepare slot `me` to adopt the trait and tag of slot `model`."""
        self.traits_next[me] = self.traits[model]
        self.tags[me] = self.tags[model]

    def maybe_mutate_at(self, me: int) -> bool:
        """Mutation accompanying an update of slot `me`."""
        if not self.mutation_temperature or self.mutation_probability <= 0.0:
            return False
        if random01(self.rng) >= self.mutation_probability:
            return False
        self.traits_next[me] = self.mutate(self.traits_next[me])
        return True

    def maybe_mutate_moran(self, source: int, dest: int) -> bool:
        """Mutation of the offspring that `source` places into `dest`."""
        return self.maybe_mutate_at(dest)

    def mutate_at(self, me: int) -> bool:
        """Mutation event: slot `me` switches to a random different trait."""
        if me < 0 or self.is_vacant_at(me):
            return False
        old = self._trait_of(me)
        self.traits_next[me] = self.mutate(self.traits[me])
        changed = self._differs(me)
        self.commit_trait_at(me)
        self._update_score_after(me, old, changed)
        return changed

    # ═══════════════════════════════════════════════════════════════════
    # SCORING
    # ═══════════════════════════════════════════════════════════════════

    def _sync_vacancy_at(self, i: int) -> None:
        if self.is_vacant_at(i):
            self.ledger.vacate_at(i)
        else:
            self.ledger.occupy_at(i)

    def _occupied(self, members: np.ndarray) -> np.ndarray:
        if self.vacant is None or len(members) == 0:
            return members
        return members[self.traits[members] != self.vacant]

    def _sample_partners(self, me: int, out: bool = True) -> np.ndarray:
        """Occupied interaction partners of `me` in the opponent population."""
        opp = self.opponent
        members = self.interaction.sample_at(
            me, self._interaction_net, self.rng, out=out, include_self=opp is not self)
        return opp._occupied(members)

    def play_game_at(self, me: int, both_directions: bool = True) -> None:
        """Interact with the sampled partners of `me`.

        The focal slot collects the payoffs of all its interactions, every
        partner collects the payoff of its share. On directed networks
        `both_directions` adds the interactions with in-neighbours.
        """
        if self.is_vacant_at(me):
            return
        self._play_pass(me, out=True)
        if (both_directions and not self._interaction_net.is_undirected()
                and self.interaction.is_sampling(SamplingType.ALL)):
            self._play_pass(me, out=False)

    def play_all_games(self) -> None:
        """Every slot plays its interaction group once."""
        for i in range(self.size):
            self.play_game_at(i, both_directions=False)

    def _update_score_after(self, me: int, old, changed: bool) -> None:
        """Bring the ledger up to date after slot `me` was committed."""
        if changed:
            self._sync_vacancy_at(me)
        if self.scoring == ScoringType.EPHEMERAL or self.is_vacant_at(me):
            return
        if changed or self.scoring == ScoringType.RESET_ALWAYS:
            self.ledger.reset_score_at(me)
            self.play_game_at(me)

    def update_scores(self) -> None:
        """Reset and recompute the scores of the whole population."""
        with self.ledger.bulk_update():
            self.ledger.reset_scores()
            self.play_all_games()

    # ═══════════════════════════════════════════════════════════════════
    # INDIVIDUAL UPDATES
    # ═══════════════════════════════════════════════════════════════════

    def update_player_at(self, me: int) -> bool:
        """Decide the next trait of `me` into traits_next.

        Returns:
            True if the decision differs from the current trait.
        """
        self.traits_next[me] = self.traits[me]
        refs = self._occupied(self.reference.sample_at(me, self.network, self.rng, out=False))
        if len(refs) == 0:
            return False
        if self.scoring == ScoringType.EPHEMERAL and not self.lookup_table:
            self._ephemeral_score_at(me)
            for j in refs:
                self._ephemeral_score_at(j)
        kind = self.player_update.kind
        if kind == PlayerUpdateType.BEST_RESPONSE:
            self._best_response_at(me, refs)
            return self._differs(me)
        ledger = self.ledger
        pos = apply_rule(
            self.player_update,
            float(ledger.fitness[me]),
            ledger.fitness[refs],
            ledger.min_fitness,
            ledger.max_fitness,
            self.rng,
            neutral=ledger.is_neutral,
            prefer=self._tie_break(me, refs) if kind == PlayerUpdateType.BEST else None,
        )
        if pos is None:
            return False
        self.update_from_model_at(me, int(refs[pos]))
        return self._differs(me)

    def update_player_async_at(self, me: int) -> bool:
        """Update one slot and commit immediately. Returns True on change."""
        if me < 0 or self.is_vacant_at(me):
            return False
        old = self._trait_of(me)
        self.update_player_at(me)
        self.maybe_mutate_at(me)
        changed = self._differs(me)
        self.commit_trait_at(me)
        self._update_score_after(me, old, changed)
        return changed

    def pick_neighbor_site_at(self, me: int) -> int:
        """Uniformly random in-neighbour of `me` (vacant or not), -1 if none."""
        if self.network.is_well_mixed():
            if self.size < 2:
                return -1
            k = random0n(self.rng, self.size - 1)
            return k + 1 if k >= me else k
        nb = self.network.neighbors_in(me)
        if len(nb) == 0:
            return -1
        return int(nb[random0n(self.rng, len(nb))])

    def pick_fit_neighbor_at(self, me: int, with_self: bool = False) -> int:
        """Fitness-weighted occupied in-neighbour of `me`.

        With `with_self` the focal slot competes as well.

        Returns:
            Slot index, or -1 when no candidate exists.
        """
        ledger = self.ledger
        if self.network.is_well_mixed():
            if with_self:
                return ledger.pick_fit_focal(self.rng)
            return ledger.pick_fit_focal(self.rng, exclude=me)
        cands = self._occupied(self.network.neighbors_in(me))
        if with_self and not self.is_vacant_at(me):
            cands = np.concatenate(([me], cands)).astype(np.int32)
        n = len(cands)
        if n == 0:
            return -1
        if n == 1:
            return int(cands[0])
        if ledger.is_neutral:
            return int(cands[random0n(self.rng, n)])
        fit = ledger.fitness[cands]
        total = float(fit.sum())
        if total <= NEUTRAL_TOL:
            return int(cands[random0n(self.rng, n)])
        hit = random01(self.rng) * total
        for i in range(n):
            hit -= fit[i]
            if hit < 0.0:
                return int(cands[i])
        return int(cands[n - 1])

    def migrate_moran(self, source: int, dest: int) -> bool:
        """Offspring of `source` replaces the occupant of `dest`."""
        old = self._trait_of(dest)
        self.update_from_model_at(dest, source)
        self.maybe_mutate_moran(source, dest)
        changed = self._differs(dest)
        self.commit_trait_at(dest)
        self._update_score_after(dest, old, changed)
        return changed

    def update_moran_birth_death(self) -> int:
        parent = self.ledger.pick_fit_focal(self.rng)
        if parent < 0:
            return parent
        if self.network.is_well_mixed():
            dest = self.ledger.pick_focal(self.rng, exclude=parent)
        else:
            nb = self.network.neighbors_out(parent)
            if len(nb) == 0:
                return parent
            dest = int(nb[random0n(self.rng, len(nb))])
        if dest >= 0:
            self.migrate_moran(parent, dest)
        return parent

    def update_moran_death_birth(self) -> int:
        dest = self.ledger.pick_focal(self.rng)
        if dest < 0:
            return dest
        source = self.pick_fit_neighbor_at(dest)
        if source >= 0:
            self.migrate_moran(source, dest)
        return dest

    def update_moran_imitate(self) -> int:
        me = self.ledger.pick_focal(self.rng)
        if me < 0:
            return me
        source = self.pick_fit_neighbor_at(me, with_self=True)
        if source >= 0 and source != me:
            self.migrate_moran(source, me)
        return me

    def ecology_time_increment(self) -> float:
        """Time unit that keeps birth and death probabilities below one."""
        return 1.0 / max(self.ledger.max_fitness, self.death_rate, NEUTRAL_TOL)

    def update_ecology_at(self, me: int) -> int:
        """Birth into vacant `me` from a neighbour, or death of its occupant."""
        if self.vacant is None:
            raise UnsupportedUpdateError(
                f"{self.name}: ecological updates are not defined without a vacant trait"
            )
        dt = self.ecology_time_increment()
        if self.is_vacant_at(me):
            parent = self.pick_neighbor_site_at(me)
            if parent < 0 or self.is_vacant_at(parent):
                return me
            if random01(self.rng) < self.ledger.fitness[parent] * dt:
                self.update_from_model_at(me, parent)
                self.maybe_mutate_at(me)
                self.commit_trait_at(me)
                self._update_score_after(me, self.vacant, True)
            return me
        if random01(self.rng) < self.death_rate * dt:
            old = self._trait_of(me)
            self.traits_next[me] = self.vacant
            self.commit_trait_at(me)
            self._update_score_after(me, old, True)
        return me

    # ═══════════════════════════════════════════════════════════════════
    # STEPS
    # ═══════════════════════════════════════════════════════════════════

    def step(self) -> int:
        """One elementary event of an asynchronous discipline.

        With probability p_migration a migration event takes the place
        of the update.

        Returns:
            The focal slot (-1 if no update took place).
        """
        if self.wants_migration():
            self.do_migration()
            return -1
        return self.replicate()

    def wants_migration(self) -> bool:
        return self.p_migration > 0.0 and random01(self.rng) < self.p_migration

    def replicate(self) -> int:
        """Run the configured update once; returns the focal slot."""
        pu = self.population_update
        if pu == PopulationUpdateType.ASYNC:
            me = self.ledger.pick_focal(self.rng)
            self.update_player_async_at(me)
            return me
        if pu == PopulationUpdateType.ONCE:
            me = self._next_once()
            self.update_player_async_at(me)
            return me
        if pu == PopulationUpdateType.MORAN_BIRTHDEATH:
            return self.update_moran_birth_death()
        if pu == PopulationUpdateType.MORAN_DEATHBIRTH:
            return self.update_moran_death_birth()
        if pu == PopulationUpdateType.MORAN_IMITATE:
            return self.update_moran_imitate()
        if pu == PopulationUpdateType.ECOLOGY:
            return self.update_ecology_at(random0n(self.rng, self.size))
        raise ValueError(f"{self.name}: {pu.name} updates are not elementary events")

    def _next_once(self) -> int:
        """Draw from a shrinking array so every slot is visited once per pass."""
        if self._n_remain == 0:
            self._remain = np.arange(self.size, dtype=np.int32)
            self._n_remain = self.size
        k = random0n(self.rng, self._n_remain)
        me = int(self._remain[k])
        self._n_remain -= 1
        self._remain[k] = self._remain[self._n_remain]
        return me

    def sync_count(self) -> int:
        """Number of slots a synchronous sweep updates."""
        if self.sync_fraction >= 1.0:
            return self.size
        return max(1, int(round(self.sync_fraction * self.size)))

    def step_sync(self) -> int:
        """Decide all (or sync_fraction of the) slots, then commit together.

        Scores are not recomputed here; call update_scores() afterwards.

        Returns:
            Number of slots updated.
        """
        n = self.size
        m = self.sync_count()
        if m == n:
            focal = np.arange(n, dtype=np.int32)
        else:
            pool = np.arange(n, dtype=np.int32)
            for i in range(m):
                j = i + random0n(self.rng, n - i)
                pool[i], pool[j] = pool[j], pool[i]
            focal = pool[:m]
        self.traits_next[:] = self.traits
        for me in focal:
            if self.is_vacant_at(me):
                continue
            self.update_player_at(me)
            self.maybe_mutate_at(me)
        for me in focal:
            if self._differs(me):
                self.commit_trait_at(me)
                self._sync_vacancy_at(me)
        return len(focal)

    # ═══════════════════════════════════════════════════════════════════
    # MIGRATION
    # ═══════════════════════════════════════════════════════════════════

    def do_migration(self) -> None:
        """One migration event of the configured type."""
        self.migration_events += 1
        mt = self.migration
        if mt == MigrationType.DIFFUSION:
            migrant = random0n(self.rng, self.size)
            nb = self.network.neighbors_out(migrant)
            if len(nb) == 0:
                return
            self.swap_at(migrant, int(nb[random0n(self.rng, len(nb))]))
        elif mt == MigrationType.BIRTH_DEATH:
            source = self.ledger.pick_fit_focal(self.rng)
            if source < 0:
                return
            nb = self.network.neighbors_out(source)
            if len(nb) == 0:
                return
            self.migrate_moran(source, int(nb[random0n(self.rng, len(nb))]))
        elif mt == MigrationType.DEATH_BIRTH:
            dest = random0n(self.rng, self.size)
            source = self.pick_fit_neighbor_at(dest)
            if source >= 0:
                self.migrate_moran(source, dest)

    def swap_at(self, a: int, b: int) -> None:
        """Two individuals exchange places, carrying trait and tag along."""
        self.tags[a], self.tags[b] = self.tags[b], self.tags[a]
        if self.same_trait(self.traits[a], self.traits[b]):
            return
        self.traits[[a, b]] = self.traits[[b, a]]
        self.traits_next[[a, b]] = self.traits[[a, b]]
        self.ledger.swap_scores_at(a, b)

    def migrate_sync(self) -> int:
        """Binomially many migration events after a synchronous sweep."""
        if self.p_migration <= 0.0:
            return 0
        n_mig = next_binomial(self.rng, self.size, self.p_migration)
        for _ in range(n_mig):
            self.do_migration()
        return n_mig

    # ═══════════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════════

    def get_state(self) -> PopulationState:
        return PopulationState(
            name=self.name,
            traits=self.traits.copy(),
            scores=self.ledger.scores.copy(),
            fitness=self.ledger.fitness.copy(),
            interactions=self.ledger.interactions.copy(),
            tags=self.tags.copy(),
            max_eff_score_idx=self.ledger.max_eff_score_idx,
            sum_fitness=self.ledger.sum_fitness,
            migration_events=self.migration_events,
            remain=self._remain[:self._n_remain].copy(),
            adjacency=self.network.encode(),
        )

    def set_state(self, state: PopulationState) -> None:
        """Restore traits, ledger arrays and the ONCE queue saved by get_state()."""
        if len(state.traits) != self.size:
            raise ConfigurationError(
                f"{self.name}: state holds {len(state.traits)} slots, population has {self.size}"
            )
        self.traits[:] = state.traits
        self.traits_next[:] = state.traits
        self.tags[:] = state.tags
        self._recount_traits()
        if self.vacant is None:
            vacant = np.zeros(self.size, dtype=bool)
        else:
            vacant = self.traits == self.vacant
        self.ledger.restore(state.scores, state.fitness, state.interactions,
                            vacant, state.max_eff_score_idx, state.sum_fitness)
        self.migration_events = state.migration_events
        remain = state.remain if state.remain is not None else np.zeros(0, dtype=np.int32)
        self._remain = np.array(remain, dtype=np.int32)
        self._n_remain = len(self._remain)


# ═══════════════════════════════════════════════════════════════════════
# DISCRETE TRAITS
# ═══════════════════════════════════════════════════════════════════════

class DiscretePopulation(Population):
    """Population whose slots carry integer trait indices.

    Takes the arguments of Population. Pairwise games are scored with
    per-trait counts; group games (model.group_size > 2) play the focal
    together with its interaction partners.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        n_traits = self.model.n_traits
        self.trait_count = np.zeros(n_traits, dtype=np.int64)
        self._trait_score = np.zeros(n_traits, dtype=np.float64)
        self._trait_score_old = np.zeros(n_traits, dtype=np.float64)

    def _check_interactions(self) -> None:
        super()._check_interactions()
        opp = self.opponent
        if not isinstance(opp, DiscretePopulation):
            raise ConfigurationError(
                f"{self.name}: species '{opp.name}' does not carry discrete traits"
            )
        self.model.set_opponent(opp.model)
        n_partner = opp.model.n_traits
        self._trait_score = np.zeros(n_partner, dtype=np.float64)
        self._trait_score_old = np.zeros(n_partner, dtype=np.float64)

    def _reset_traits(self) -> None:
        self.traits[:] = 0
        self.traits_next[:] = 0
        self.trait_count[:] = 0

    def _initial_traits(self) -> np.ndarray:
        occupied = self.model.occupied_traits()
        n = self.size
        args = self.init_args
        if self.init_type == InitType.MONO:
            resident = int(args[0]) if args else occupied[0]
            return np.full(n, resident, dtype=np.int32)
        if self.init_type == InitType.MUTANT:
            resident = int(args[0]) if len(args) > 0 else occupied[0]
            mutant = int(args[1]) if len(args) > 1 else occupied[(occupied.index(resident) + 1) % len(occupied)]
            traits = np.full(n, resident, dtype=np.int32)
            traits[random0n(self.rng, n)] = mutant
            return traits
        if self.init_type == InitType.FREQUENCY:
            freqs = self._init_frequencies()
            cum = np.cumsum(freqs)
            traits = np.empty(n, dtype=np.int32)
            for i in range(n):
                traits[i] = min(int(np.searchsorted(cum, random01(self.rng) * cum[-1], side='right')),
                                len(freqs) - 1)
            return traits
        if self.init_type == InitType.GAUSSIAN:
            raise ConfigurationError(f"{self.name}: gaussian initialisation needs continuous traits")
        traits = np.empty(n, dtype=np.int32)
        for i in range(n):
            traits[i] = occupied[random0n(self.rng, len(occupied))]
        return traits

    def _init_frequencies(self) -> np.ndarray:
        n_traits = self.model.n_traits
        freqs = np.zeros(n_traits, dtype=np.float64)
        given = np.asarray(self.init_args[:n_traits], dtype=np.float64)
        freqs[:len(given)] = given
        if np.any(freqs < 0):
            raise ConfigurationError(f"{self.name}: initial frequencies must be >= 0")
        dep = self.model.dependent_trait()
        if dep is not None:
            freqs[dep] = max(0.0, 1.0 - (freqs.sum() - freqs[dep]))
        total = freqs.sum()
        if total <= 0.0:
            raise ConfigurationError(
                f"{self.name}: initial frequencies {self.init_args} sum to zero"
            )
        return freqs / total

    def _recount_traits(self) -> None:
        self.trait_count[:] = np.bincount(self.traits, minlength=self.model.n_traits)

    # ── queries ───────────────────────────────────────────────────────

    @property
    def population_size(self) -> int:
        """Number of occupied slots."""
        if self.vacant is None:
            return self.size
        return self.size - int(self.trait_count[self.vacant])

    def is_monomorphic(self) -> bool:
        pop_size = self.population_size
        if pop_size == 0:
            return True
        for t in self.model.occupied_traits():
            if self.trait_count[t] == pop_size:
                return True
        return False

    def get_mean_trait(self, buffer: Optional[np.ndarray] = None) -> np.ndarray:
        """Trait frequencies (vacant slots included as their own trait)."""
        if buffer is None:
            buffer = np.zeros(self.model.n_traits, dtype=np.float64)
        buffer[:] = self.trait_count / self.size
        return buffer

    def get_mean_fitness(self, buffer: Optional[np.ndarray] = None) -> np.ndarray:
        """Mean fitness per trait followed by the population mean.

        Traits without carriers (and the vacant trait) report NaN.
        """
        n_traits = self.model.n_traits
        if buffer is None:
            buffer = np.zeros(n_traits + 1, dtype=np.float64)
        sums = np.bincount(self.traits, weights=self.ledger.fitness, minlength=n_traits)
        for t in range(n_traits):
            if t == self.vacant or self.trait_count[t] == 0:
                buffer[t] = np.nan
            else:
                buffer[t] = sums[t] / self.trait_count[t]
        buffer[n_traits] = self.ledger.mean_fitness()
        return buffer

    def get_status(self) -> str:
        freqs = self.get_mean_trait()
        return ", ".join(
            f"{name}: {100.0 * f:.2f}%" for name, f in zip(self.model.names, freqs)
        )

    def check_consistency(self) -> List[str]:
        """Ledger invariants plus trait bookkeeping; empty when consistent."""
        problems = self.ledger.check_accounting()
        counts = np.bincount(self.traits, minlength=self.model.n_traits)
        if not np.array_equal(counts, self.trait_count):
            problems.append(f"trait counts {self.trait_count.tolist()} but traits "
                            f"add up to {counts.tolist()}")
        if self.vacant is not None:
            vac = self.traits == self.vacant
            if not np.array_equal(vac, self.ledger.vacant):
                problems.append("vacancy flags of the ledger do not match traits")
        return problems

    # ── traits ────────────────────────────────────────────────────────

    def same_trait(self, a, b) -> bool:
        return bool(a == b)

    def _trait_of(self, me: int) -> int:
        return int(self.traits[me])

    def commit_trait_at(self, me: int) -> None:
        old = self.traits[me]
        new = self.traits_next[me]
        if old == new:
            return
        self.traits[me] = new
        self.trait_count[old] -= 1
        self.trait_count[new] += 1

    def mutate(self, trait) -> int:
        """Uniformly random different trait; vacant slots never mutate."""
        trait = int(trait)
        if trait == self.vacant:
            return trait
        others = [t for t in self.model.occupied_traits() if t != trait]
        if not others:
            return trait
        return others[random0n(self.rng, len(others))]

    # ── scoring ───────────────────────────────────────────────────────

    def _count_traits(self, members: np.ndarray) -> np.ndarray:
        counts = np.bincount(self.traits[members], minlength=self.model.n_traits)
        if self.vacant is not None:
            counts[self.vacant] = 0
        return counts

    def _play_pass(self, me: int, out: bool) -> None:
        members = self._sample_partners(me, out)
        n_inter = len(members)
        if n_inter == 0:
            return
        if not self.model.is_pairwise():
            score, n_inter = self._group_payoff(me, members, credit=True)
            self.ledger.update_score_at(me, score, n_inter)
            return
        opp = self.opponent
        counts = opp._count_traits(members)
        score = self.model.pair_scores(int(self.traits[me]), counts, self._trait_score)
        self.ledger.update_score_at(me, score, n_inter)
        for j in members:
            opp.ledger.update_score_at(j, self._trait_score[opp.traits[j]], 1)

    def _group_payoff(self, me: int, members: np.ndarray, credit: bool) -> Tuple[float, int]:
        """Payoff of `me` from group interactions with `members`.

        If the members fit into one group, the focal plays a single game.
        Otherwise it plays one game per member with a sliding window of
        group_size - 1 consecutive members, so that every member takes
        part in group_size - 1 games. With `credit` the members collect
        one interaction per game they take part in.

        Returns:
            Total payoff of the focal slot and its number of interactions.
        """
        my = int(self.traits[me])
        k = len(members)
        n_others = self.model.group_size - 1
        ledger = self.ledger
        if k <= n_others:
            counts = self._count_traits(members)
            counts[my] += 1
            scores = self.model.group_scores(counts)
            if credit:
                for j in members:
                    ledger.update_score_at(j, scores[self.traits[j]], 1)
            return float(scores[my]), 1
        total = 0.0
        offsets = np.arange(n_others)
        for i in range(k):
            window = members[(i + offsets) % k]
            counts = self._count_traits(window)
            counts[my] += 1
            scores = self.model.group_scores(counts)
            total += scores[my]
            if credit:
                for j in window:
                    ledger.update_score_at(j, scores[self.traits[j]], 1)
        return float(total), k

    def _ephemeral_score_at(self, me: int) -> None:
        if self.is_vacant_at(me):
            return
        self.ledger.reset_score_at(me)
        members = self._sample_partners(me)
        if len(members) == 0:
            return
        if not self.model.is_pairwise():
            score, n_inter = self._group_payoff(me, members, credit=False)
            self.ledger.update_score_at(me, score, n_inter)
            return
        counts = self.opponent._count_traits(members)
        score = self.model.pair_scores(int(self.traits[me]), counts, self._trait_score)
        self.ledger.update_score_at(me, score, len(members))

    def adjust_scores_at(self, me: int, old: int, new: int) -> None:
        """Patch the scores of `me` and its neighbours after a trait change.

        Every undirected edge contributes two interactions to each end,
        matching a full recomputation by update_scores().
        """
        ledger = self.ledger
        payoffs_of = self._trait_score
        members = self._occupied(self.network.neighbors_out(me))
        counts = self._count_traits(members)
        n_inter = len(members)
        if new == self.vacant:
            self.model.pair_scores(old, counts, payoffs_of)
            ledger.vacate_at(me)
            for j in members:
                ledger.update_score_at(j, 2.0 * payoffs_of[self.traits[j]], -2)
            return
        if old == self.vacant:
            ledger.occupy_at(me)
            score = 2.0 * self.model.pair_scores(new, counts, payoffs_of)
            ledger.update_score_at(me, score, 2 * n_inter)
            for j in members:
                ledger.update_score_at(j, 2.0 * payoffs_of[self.traits[j]], 2)
            return
        old_payoffs = self._trait_score_old
        old_total = 2.0 * self.model.pair_scores(old, counts, old_payoffs)
        new_total = 2.0 * self.model.pair_scores(new, counts, payoffs_of)
        delta = new_total - old_total
        if self.averaged and n_inter > 0:
            delta /= 2 * n_inter
        ledger.adjust_score_at(me, delta)
        for j in members:
            t = self.traits[j]
            d = 2.0 * (payoffs_of[t] - old_payoffs[t])
            if self.averaged:
                d /= max(1, int(ledger.interactions[j]))
            ledger.adjust_score_at(j, d)

    def _refresh_lookup_scores(self) -> None:
        if self.model.is_static():
            self.ledger.apply_type_scores(self.model.static_scores(), self.traits, 0)
            return
        type_scores = self.model.mixed_scores(self.trait_count, self.averaged)
        self.ledger.apply_type_scores(type_scores, self.traits, max(0, self.population_size - 1))

    def _update_score_after(self, me: int, old, changed: bool) -> None:
        new = int(self.traits[me])
        if self.lookup_table:
            if changed:
                self._sync_vacancy_at(me)
                if self.model.is_static():
                    if new != self.vacant:
                        self.ledger.set_score_at(me, self.model.static_scores()[new], 0)
                else:
                    self._refresh_lookup_scores()
            return
        if self.adjust_scores:
            if changed:
                self.adjust_scores_at(me, old, new)
            return
        super()._update_score_after(me, old, changed)

    def update_scores(self) -> None:
        """Reset and recompute the scores of the whole population."""
        if self.lookup_table:
            self._refresh_lookup_scores()
            return
        super().update_scores()

    # ── updates ───────────────────────────────────────────────────────

    def _tie_break(self, me: int, refs: np.ndarray):
        my = int(self.traits[me])
        n = self.model.n_traits

        def prefer(best_pos: int, cand_pos: int) -> bool:
            cand = int(self.traits[refs[cand_pos]])
            if cand == my:
                return True
            best = int(self.traits[refs[best_pos]])
            return (my - cand) % n < (my - best) % n

        return prefer

    def _best_response_at(self, me: int, refs: np.ndarray) -> None:
        """Best response to the reference group, or to the interaction
        partners when these belong to another species."""
        if self.interspecific:
            counts = self.opponent._count_traits(self._sample_partners(me))
        else:
            counts = self._count_traits(refs)
        self.traits_next[me] = self.model.best_response(int(self.traits[me]), counts)

    def swap_at(self, a: int, b: int) -> None:
        if not self.adjust_scores:
            super().swap_at(a, b)
            return
        ta, tb = int(self.traits[a]), int(self.traits[b])
        self.tags[a], self.tags[b] = self.tags[b], self.tags[a]
        if ta == tb:
            return
        self.traits_next[a] = tb
        self.commit_trait_at(a)
        self.adjust_scores_at(a, ta, tb)
        self.traits_next[b] = ta
        self.commit_trait_at(b)
        self.adjust_scores_at(b, tb, ta)


def _warn(message: str) -> None:
    warnings.warn(message, UserWarning, stacklevel=3)


def _population_kwargs(section) -> dict:
    return dict(
        player_update=PlayerUpdate(
            enum_from_name(PlayerUpdateType, section.player_update),
            section.noise, section.error),
        population_update=enum_from_name(PopulationUpdateType, section.population_update),
        interaction=GroupSampler(
            enum_from_name(SamplingType, section.interaction_sampling),
            section.interaction_samples),
        reference=GroupSampler(
            enum_from_name(SamplingType, section.reference_sampling),
            section.reference_samples),
        scoring=enum_from_name(ScoringType, section.scoring),
        averaged=not section.accumulated_scores,
        fitness_map=FitnessMap(
            enum_from_name(FitnessMapType, section.fitness_map),
            section.map_baseline, section.map_selection),
        mutation_probability=section.mutation_probability,
        mutation_temperature=section.mutation_temperature,
        migration=enum_from_name(MigrationType, section.migration),
        p_migration=section.migration_probability,
        sync_fraction=section.sync_fraction,
        death_rate=section.death_rate,
        update_rate=section.update_rate,
        mono_stop=section.mono_stop,
        init_type=enum_from_name(InitType, section.init),
        init_args=section.init_args,
    )


def build_population(
    section,
    rng: np.random.Generator,
) -> Population:
    """Construct a population from a config.SpeciesSection.

    Opponents are linked by the caller once every species exists.
    """
    model = build_trait_model(section.traits, section.payoffs, section.static_scores,
                              section.vacant, section.dependent,
                              public_goods=section.public_goods,
                              continuous=section.continuous)
    network = make_network(section.geometry, section.size)
    kwargs = _population_kwargs(section)
    if section.continuous is not None:
        from evoibs.continuous import ContinuousPopulation
        return ContinuousPopulation(section.name, model, network, rng,
                                    mutation_sdev=section.mutation_sdev, **kwargs)
    return DiscretePopulation(section.name, model, network, rng, **kwargs)
