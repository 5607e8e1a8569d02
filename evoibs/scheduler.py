"""Event scheduler and species coordinator.

A Simulation drives one or more Populations:
  - step(dt): advance by dt generations (or until convergence / halting)
  - synchronous runs: every population prepares, commits, migrates and
    recomputes its scores once per sweep
  - asynchronous runs: per elementary event the coordinator picks the
    focal species, then the event kind (replication, separate mutation
    or migration); N_total rate-weighted events make one generation

Two clocks advance together:
  - time: generations, 1 / sum(N_s * rate_s) per asynchronous event and
    n_updated / N_total per synchronous sweep
  - realtime: exponential waiting times with rate sum(F_s * rate_s),
    where F_s is the total fitness of species s; +inf as soon as any
    population admits negative fitness

Convergence (all populations absorbed) is reported by a negative return
value of step(). A step ends once less than half an event (or sweep)
of its increment remains, and always runs at least one.

References:
  - Gillespie (1977) Exact stochastic simulation of coupled chemical
    reactions, J Phys Chem 81:2340 (waiting times)
"""

from __future__ import annotations

import contextlib
import warnings
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from evoibs.config import SimulationConfig, config_to_yaml
from evoibs.perf import PerfMonitor
from evoibs.population import Population, build_population
from evoibs.rng import (
    create_rng,
    next_binomial,
    next_exponential,
    next_geometric,
    random01,
    random0n,
    restore_rng_state,
    rng_state_snapshot,
)
from evoibs.types import (
    Event,
    PopulationUpdateType,
    SimulationState,
    SpeciesUpdateType,
    enum_from_name,
)
from evoibs.utils import timer


class Simulation:
    """Multi-species driver with the caller API step/reset/init.

    Args:
        populations: One Population per species, all sharing `rng`.
        rng: The run's random stream.
        species_update: Scheme for picking the focal species.
        time_step: Default increment of step().
        max_time: Halting time in generations (None = unbounded).
        optimize_homo: Skip the waiting time in homogeneous states.
        perf: Optional phase timer.
    """

    def __init__(
        self,
        populations: List[Population],
        rng: np.random.Generator,
        species_update: SpeciesUpdateType = SpeciesUpdateType.SIZE,
        time_step: float = 1.0,
        max_time: Optional[float] = None,
        optimize_homo: bool = False,
        perf: Optional[PerfMonitor] = None,
    ):
        if not populations:
            raise ValueError("at least one population is required")
        self.populations = populations
        self.rng = rng
        self.species_update = species_update
        self.time_step = time_step
        self.max_time = max_time
        self.optimize_homo = optimize_homo
        self.perf = perf if perf is not None else PerfMonitor(enabled=False)
        self.config: Optional[SimulationConfig] = None

        self._initial_rng_state = rng_state_snapshot(rng)
        self.time = 0.0
        self.realtime = 0.0
        self.n_events = 0
        self.event_counts = {e: 0 for e in Event}
        self.turn = 0
        self.is_sync = False
        self.converged = False
        self._fitness_fallback_warned = False

    @classmethod
    def from_config(
        cls,
        config: SimulationConfig,
        perf: Optional[PerfMonitor] = None,
    ) -> 'Simulation':
        """Build, check, reset and initialise a run from a validated config."""
        sim_cfg = config.simulation
        rng = create_rng(sim_cfg.seed)
        populations = [build_population(sp, rng) for sp in config.species]
        by_name = {p.name: p for p in populations}
        for sp, pop in zip(config.species, populations):
            if sp.opponent is not None:
                pop.set_opponent(by_name[sp.opponent])
        if perf is None:
            perf = PerfMonitor(enabled=sim_cfg.monitor_perf)
        sim = cls(
            populations,
            rng,
            species_update=enum_from_name(SpeciesUpdateType, sim_cfg.species_update),
            time_step=sim_cfg.time_step,
            max_time=sim_cfg.max_time,
            optimize_homo=sim_cfg.optimize_homo,
            perf=perf,
        )
        sim.config = config
        sim.check()
        sim.reset()
        sim.init()
        return sim

    # ═══════════════════════════════════════════════════════════════════
    # CHECK / RESET / INIT
    # ═══════════════════════════════════════════════════════════════════

    def check(self) -> None:
        """Check every population, then the run as a whole.

        Mixing synchronous and asynchronous disciplines across species is
        resolved by synchronising all of them.
        """
        sync = [p.population_update.is_sync for p in self.populations]
        if any(sync) and not all(sync):
            names = [p.name for p in self.populations if not p.population_update.is_sync]
            warnings.warn(
                f"species {names} update asynchronously while others update "
                f"synchronously - forcing synchronous updates for all species.",
                UserWarning, stacklevel=2,
            )
            for p in self.populations:
                p.population_update = PopulationUpdateType.SYNC
        for p in self.populations:
            p.check()
        self.is_sync = self.populations[0].population_update.is_sync

        if self.optimize_homo:
            ecology = [p.name for p in self.populations
                       if p.population_update == PopulationUpdateType.ECOLOGY]
            if ecology:
                warnings.warn(
                    f"optimize_homo is not validated for ecological updates "
                    f"(species {ecology}) - optimization disabled.",
                    UserWarning, stacklevel=2,
                )
                self.optimize_homo = False

    def reset(self) -> None:
        """Rewind clocks and counters; the random stream restarts from its seed."""
        restore_rng_state(self.rng, self._initial_rng_state)
        self.time = 0.0
        self.realtime = 0.0
        self.n_events = 0
        self.event_counts = {e: 0 for e in Event}
        self.turn = 0
        self.converged = False
        self._fitness_fallback_warned = False
        for p in self.populations:
            p.reset()

    def init(self) -> None:
        """Draw every initial configuration, then score all populations."""
        for p in self.populations:
            p.init_traits()
        self.update_scores()
        self.converged = self.check_convergence()

    # ═══════════════════════════════════════════════════════════════════
    # CLOCKS
    # ═══════════════════════════════════════════════════════════════════

    @property
    def total_size(self) -> int:
        return sum(p.size for p in self.populations)

    @property
    def slack(self) -> float:
        return 1.0 / self.total_size

    def _time_increment(self) -> float:
        """Generations per asynchronous event."""
        return 1.0 / sum(p.size * p.update_rate for p in self.populations)

    def _step_increment(self) -> float:
        """Generations per event (asynchronous) or per sweep (synchronous)."""
        if self.is_sync:
            return sum(p.sync_count() for p in self.populations) / self.total_size
        return self._time_increment()

    def _realtime_rate(self) -> float:
        """Total rate-weighted fitness, or -1 when realtime is undefined."""
        for p in self.populations:
            if p.ledger.min_fitness < 0.0:
                return -1.0
        return sum(p.ledger.total_fitness * p.update_rate for p in self.populations)

    def _advance_realtime(self, n_events: int = 1) -> None:
        if self.realtime == np.inf:
            return
        rate = self._realtime_rate()
        if rate <= 0.0:
            self.realtime = np.inf
        elif n_events == 1:
            self.realtime += next_exponential(self.rng, rate)
        elif n_events > 1:
            self.realtime += float(self.rng.gamma(n_events, 1.0 / rate))

    # ═══════════════════════════════════════════════════════════════════
    # STEP
    # ═══════════════════════════════════════════════════════════════════

    def step(self, dt: Optional[float] = None) -> float:
        """Advance the run by `dt` generations (default: time_step).

        At least one event (or sweep) takes place, even when `dt` is
        shorter than its time increment.

        Raises:
            ValueError: If `dt` is not positive.

        Returns:
            The time actually elapsed. A negative value signals that all
            populations are absorbed; its magnitude is the elapsed time
            (at least the slack 1/N_total). 0.0 once the halting time has
            been reached.
        """
        if dt is None:
            dt = self.time_step
        if dt <= 0.0:
            raise ValueError(f"time increment must be positive, got {dt}")
        start = self.time
        slack = self.slack
        if self.converged or self.check_convergence():
            self.converged = True
            return -max(0.0, slack)
        # stop once less than half an event (or sweep) remains
        half = 0.5 * self._step_increment()
        target = start + dt
        if self.max_time is not None:
            if self.max_time - self.time < half:
                return 0.0
            target = min(target, self.max_time)

        with self.perf.track('sync_sweeps' if self.is_sync else 'async_events'):
            while True:
                if self.is_sync:
                    self.sync_sweep()
                elif not self._skip_homogeneous(target):
                    self.async_event()
                if self.check_convergence():
                    self.converged = True
                    return -max(self.time - start, slack)
                if target - self.time < half:
                    break
        return self.time - start

    def sync_sweep(self) -> None:
        """Prepare and commit all populations, migrate, then rescore."""
        n_updated = 0
        for p in self.populations:
            n_updated += p.step_sync()
        for p in self.populations:
            if not p.mutation_temperature and p.mutation_probability > 0.0:
                n_mut = next_binomial(self.rng, p.size, p.mutation_probability)
                for _ in range(n_mut):
                    p.mutate_at(random0n(self.rng, p.size))
                self.event_counts[Event.MUTATION] += n_mut
        for p in self.populations:
            self.event_counts[Event.MIGRATION] += p.migrate_sync()
        with self.perf.track('scores'):
            self.update_scores()
        self.event_counts[Event.REPLICATION] += n_updated
        self.n_events += n_updated
        self.perf.count('sync_sweeps', n_updated)
        self._advance_realtime(n_updated)
        self.time += n_updated / self.total_size

    def update_scores(self) -> None:
        """Reset and recompute the scores of every population.

        Species that interact with each other credit each other's ledgers,
        so their ledgers are all reset before any of them plays.
        """
        coupled = [p for p in self.populations if p.coupled]
        for p in self.populations:
            if not p.coupled:
                p.update_scores()
        if not coupled:
            return
        with contextlib.ExitStack() as stack:
            for p in coupled:
                stack.enter_context(p.ledger.bulk_update())
            for p in coupled:
                p.ledger.reset_scores()
            for p in coupled:
                p.play_all_games()

    def async_event(self) -> None:
        """One elementary event of the focal species."""
        pop = self.pick_species()
        if pop is not None:
            event = self.pick_event(pop)
            if event == Event.MIGRATION:
                pop.do_migration()
            elif event == Event.MUTATION:
                pop.mutate_at(pop.ledger.pick_focal(self.rng))
            else:
                pop.replicate()
            self.event_counts[event] += 1
        self.n_events += 1
        self.perf.count('async_events', 1)
        self._advance_realtime()
        self.time += self._time_increment()

    def _skip_homogeneous(self, target: float) -> bool:
        """Jump to the next mutation in a monomorphic single-species state.

        Returns:
            True if the jump replaced the regular event.
        """
        if not self.optimize_homo or len(self.populations) != 1:
            return False
        pop = self.populations[0]
        p = pop.mutation_probability
        if p <= 0.0 or not pop.is_monomorphic() or pop.population_size == 0:
            return False
        gincr = self._time_increment()
        with self.perf.track('homo_skips'):
            skip = next_geometric(self.rng, p)
            remaining = max(1, int((target - self.time) / gincr + 0.5))
            if skip >= remaining:
                # the next mutation falls beyond this step
                self._advance_realtime(remaining)
                self.n_events += remaining
                self.time += remaining * gincr
                return True
            self._advance_realtime(skip + 1)
            self.n_events += skip + 1
            self.time += (skip + 1) * gincr
            pop.mutate_at(pop.ledger.pick_focal(self.rng))
            self.event_counts[Event.MUTATION] += 1
        return True

    # ═══════════════════════════════════════════════════════════════════
    # SPECIES COORDINATOR
    # ═══════════════════════════════════════════════════════════════════

    def pick_species(self) -> Optional[Population]:
        """Focal species of the next event (None if all are empty)."""
        pops = self.populations
        if len(pops) == 1:
            return pops[0]
        su = self.species_update
        if su == SpeciesUpdateType.TURNS:
            for _ in range(len(pops)):
                pop = pops[self.turn]
                self.turn = (self.turn + 1) % len(pops)
                if pop.population_size > 0:
                    return pop
            return None
        if su == SpeciesUpdateType.UNIFORM:
            alive = [p for p in pops if p.population_size > 0]
            if not alive:
                return None
            return alive[random0n(self.rng, len(alive))]
        if su == SpeciesUpdateType.FITNESS and any(p.ledger.min_fitness <= 0.0 for p in pops):
            if not self._fitness_fallback_warned:
                warnings.warn(
                    "fitness-based species selection requires positive fitness "
                    "- falling back to rate-based selection.",
                    UserWarning, stacklevel=2,
                )
                self._fitness_fallback_warned = True
            su = SpeciesUpdateType.RATE
        weights = np.empty(len(pops), dtype=np.float64)
        for i, p in enumerate(pops):
            if su == SpeciesUpdateType.FITNESS:
                weights[i] = p.ledger.total_fitness * p.update_rate
            elif su == SpeciesUpdateType.RATE:
                weights[i] = p.update_rate if p.population_size > 0 else 0.0
            else:
                weights[i] = p.population_size * p.update_rate
        total = float(weights.sum())
        if total <= 0.0:
            return None
        hit = random01(self.rng) * total
        for i in range(len(pops)):
            hit -= weights[i]
            if hit < 0.0:
                return pops[i]
        return pops[int(np.flatnonzero(weights > 0.0)[-1])]

    def pick_event(self, pop: Population) -> Event:
        if pop.wants_migration():
            return Event.MIGRATION
        p = pop.mutation_probability
        if not pop.mutation_temperature and p > 0.0 and random01(self.rng) < p:
            return Event.MUTATION
        return Event.REPLICATION

    # ═══════════════════════════════════════════════════════════════════
    # OUTPUTS
    # ═══════════════════════════════════════════════════════════════════

    def check_convergence(self) -> bool:
        return all(p.check_convergence() for p in self.populations)

    def get_status(self) -> str:
        """Trait frequencies, e.g. 'A: 45.00%, B: 55.00%' (species separated by '; ')."""
        if len(self.populations) == 1:
            return self.populations[0].get_status()
        return "; ".join(f"{p.name}: {p.get_status()}" for p in self.populations)

    def get_mean_trait(self, buffer: Optional[np.ndarray] = None, species: int = 0) -> np.ndarray:
        return self.populations[species].get_mean_trait(buffer)

    def get_mean_fitness(self, buffer: Optional[np.ndarray] = None, species: int = 0) -> np.ndarray:
        return self.populations[species].get_mean_fitness(buffer)

    def check_consistency(self) -> List[str]:
        """Ledger and trait bookkeeping problems of all populations."""
        problems = []
        for p in self.populations:
            problems.extend(f"{p.name}: {msg}" for msg in p.check_consistency())
        return problems

    # ═══════════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════════

    def get_state(self) -> SimulationState:
        return SimulationState(
            time=self.time,
            realtime=self.realtime,
            n_events=self.n_events,
            turn=self.turn,
            rng_state=rng_state_snapshot(self.rng),
            populations=[p.get_state() for p in self.populations],
        )

    def set_state(self, state: SimulationState) -> None:
        """Resume from get_state() output; populations are matched by name."""
        by_name = {ps.name: ps for ps in state.populations}
        missing = [p.name for p in self.populations if p.name not in by_name]
        if missing:
            raise ValueError(f"saved state has no data for species {missing}")
        for p in self.populations:
            p.set_state(by_name[p.name])
        self.time = state.time
        self.realtime = state.realtime
        self.n_events = state.n_events
        self.turn = state.turn
        restore_rng_state(self.rng, state.rng_state)
        self.converged = self.check_convergence()


# ═══════════════════════════════════════════════════════════════════════
# BATCH RUN
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class RunResult:
    """Outcome of run_simulation()."""
    final_time: float = 0.0
    final_realtime: float = 0.0
    n_events: int = 0
    converged: bool = False
    status: str = ""
    # (n_samples,) sample times and (n_samples, n_traits) frequencies of species 0
    times: Optional[np.ndarray] = None
    mean_traits: Optional[np.ndarray] = None
    config_yaml: str = ""
    timings: dict = field(default_factory=dict)


def run_simulation(config: SimulationConfig, recorder=None) -> RunResult:
    """Run a configuration until convergence or its halting time.

    Args:
        config: Validated configuration; simulation.max_time must be set.
        recorder: Optional TrajectoryRecorder sampled after every step.

    Returns:
        RunResult with the final clocks and, if recorded, the trajectory.
    """
    if config.simulation.max_time is None:
        raise ValueError("run_simulation requires simulation.max_time")
    sim = Simulation.from_config(config)
    result = RunResult(config_yaml=config_to_yaml(config))
    if recorder is not None:
        recorder.capture(sim)
    with timer(result.timings, 'wall_s'):
        while True:
            elapsed = sim.step(config.output.snapshot_interval)
            if recorder is not None and elapsed != 0.0:
                recorder.capture(sim)
            if elapsed <= 0.0:
                break
    result.final_time = sim.time
    result.final_realtime = sim.realtime
    result.n_events = sim.n_events
    result.converged = sim.converged
    result.status = sim.get_status()
    if recorder is not None and recorder.times:
        result.times = np.array(recorder.times)
        result.mean_traits = np.array(recorder.mean_traits[0])
    if sim.perf.enabled:
        result.timings.update(sim.perf.summary())
    return result
