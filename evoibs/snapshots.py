"""Persisted run state and trajectory recording.

save_state() writes everything needed to resume a Simulation
bit-identically into one compressed .npz file:
  - per species: traits, scores, fitness, interactions, tags, the
    pending slots of an unfinished ONCE pass and the network adjacency
    (CSR indptr/indices, absent when well-mixed)
  - clocks (time, realtime, event count, species turn)
  - the bit-generator state (as JSON text)
  - the SHA-256 of the run configuration, when one is supplied

load_state() restores such a file into a Simulation built from the same
configuration; a mismatching network or configuration hash is rejected.

TrajectoryRecorder samples trait frequencies and mean fitness over time.

Usage:
    save_state("run.npz", sim, config)
    ...
    sim = Simulation.from_config(config)
    load_state("run.npz", sim, config)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from evoibs.config import SimulationConfig, config_to_yaml
from evoibs.types import PopulationState, SimulationState
from evoibs.utils import config_hash

PathLike = Union[str, Path]


def _species_prefix(i: int) -> str:
    return f"s{i}_"


def save_state(
    path: PathLike,
    sim,
    config: Optional[SimulationConfig] = None,
) -> None:
    """Write the full state of `sim` to a compressed npz file.

    Args:
        path: Output file (parent directories are created).
        sim: Simulation to save.
        config: Configuration to fingerprint (defaults to sim.config).
    """
    state: SimulationState = sim.get_state()
    if config is None:
        config = sim.config
    arrays: Dict[str, np.ndarray] = {}
    names = []
    for i, ps in enumerate(state.populations):
        prefix = _species_prefix(i)
        names.append(ps.name)
        arrays[f"{prefix}traits"] = ps.traits
        arrays[f"{prefix}scores"] = ps.scores
        arrays[f"{prefix}fitness"] = ps.fitness
        arrays[f"{prefix}interactions"] = ps.interactions
        arrays[f"{prefix}tags"] = ps.tags
        arrays[f"{prefix}counters"] = np.array(
            [ps.max_eff_score_idx, ps.migration_events], dtype=np.int64)
        arrays[f"{prefix}sum_fitness"] = np.array(
            [np.nan if ps.sum_fitness is None else ps.sum_fitness], dtype=np.float64)
        arrays[f"{prefix}remain"] = (
            np.zeros(0, dtype=np.int32) if ps.remain is None else ps.remain)
        if ps.adjacency is not None:
            indptr, indices = ps.adjacency
            arrays[f"{prefix}indptr"] = indptr
            arrays[f"{prefix}indices"] = indices

    arrays['meta_species'] = np.array(names)
    arrays['meta_clock'] = np.array([state.time, state.realtime], dtype=np.float64)
    arrays['meta_counters'] = np.array([state.n_events, state.turn], dtype=np.int64)
    arrays['meta_rng'] = np.array(json.dumps(state.rng_state))
    arrays['meta_config_hash'] = np.array(
        config_hash(config_to_yaml(config)) if config is not None else '')

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **arrays)


def read_state(path: PathLike) -> SimulationState:
    """Read a file written by save_state() into a SimulationState."""
    with np.load(path) as data:
        names = [str(n) for n in data['meta_species']]
        populations = []
        for i, name in enumerate(names):
            prefix = _species_prefix(i)
            max_idx, migrations = (int(v) for v in data[f"{prefix}counters"])
            sum_fitness = float(data[f"{prefix}sum_fitness"][0])
            adjacency = None
            if f"{prefix}indptr" in data.files:
                adjacency = (data[f"{prefix}indptr"], data[f"{prefix}indices"])
            remain = None
            if f"{prefix}remain" in data.files:
                remain = data[f"{prefix}remain"]
            populations.append(PopulationState(
                name=name,
                traits=data[f"{prefix}traits"],
                scores=data[f"{prefix}scores"],
                fitness=data[f"{prefix}fitness"],
                interactions=data[f"{prefix}interactions"],
                tags=data[f"{prefix}tags"],
                max_eff_score_idx=max_idx,
                sum_fitness=None if np.isnan(sum_fitness) else sum_fitness,
                migration_events=migrations,
                remain=remain,
                adjacency=adjacency,
            ))
        time, realtime = (float(v) for v in data['meta_clock'])
        n_events, turn = (int(v) for v in data['meta_counters'])
        rng_state = json.loads(str(data['meta_rng']))
    return SimulationState(
        time=time,
        realtime=realtime,
        n_events=n_events,
        turn=turn,
        rng_state=rng_state,
        populations=populations,
    )


def stored_config_hash(path: PathLike) -> str:
    with np.load(path) as data:
        return str(data['meta_config_hash'])


def load_state(
    path: PathLike,
    sim,
    config: Optional[SimulationConfig] = None,
) -> None:
    """Restore a saved state into `sim`.

    Raises:
        ValueError: If the configuration fingerprint or a network
            adjacency does not match the running simulation.
    """
    if config is None:
        config = sim.config
    stored = stored_config_hash(path)
    if stored and config is not None and stored != config_hash(config_to_yaml(config)):
        raise ValueError(f"state in {path} was saved with a different configuration")
    state = read_state(path)
    for pop, ps in zip(sim.populations, state.populations):
        if not _same_adjacency(pop.network.encode(), ps.adjacency):
            raise ValueError(
                f"network of species '{pop.name}' differs from the saved adjacency"
            )
    sim.set_state(state)


def _same_adjacency(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return np.array_equal(a[0], b[0]) and np.array_equal(a[1], b[1])


# ═══════════════════════════════════════════════════════════════════════
# TRAJECTORY
# ═══════════════════════════════════════════════════════════════════════

class TrajectoryRecorder:
    """Time series of trait frequencies and mean fitness per species.

    When enabled=False, capture() is a no-op.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.times: List[float] = []
        self.realtimes: List[float] = []
        # per species: list of arrays, one per capture
        self.mean_traits: Dict[int, List[np.ndarray]] = {}
        self.mean_fitness: Dict[int, List[np.ndarray]] = {}

    def capture(self, sim) -> None:
        if not self.enabled:
            return
        self.times.append(sim.time)
        self.realtimes.append(sim.realtime)
        for i, pop in enumerate(sim.populations):
            self.mean_traits.setdefault(i, []).append(pop.get_mean_trait())
            self.mean_fitness.setdefault(i, []).append(pop.get_mean_fitness())

    def __len__(self) -> int:
        return len(self.times)

    def save(self, path: PathLike) -> None:
        """Save as npz: times, realtimes, s{i}_traits, s{i}_fitness."""
        if not self.times:
            return
        arrays = {
            'times': np.array(self.times, dtype=np.float64),
            'realtimes': np.array(self.realtimes, dtype=np.float64),
        }
        for i in self.mean_traits:
            arrays[f"s{i}_traits"] = np.array(self.mean_traits[i])
            arrays[f"s{i}_fitness"] = np.array(self.mean_fitness[i])
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(path, **arrays)

    @classmethod
    def load(cls, path: PathLike) -> 'TrajectoryRecorder':
        recorder = cls(enabled=False)
        with np.load(path) as data:
            recorder.times = data['times'].tolist()
            recorder.realtimes = data['realtimes'].tolist()
            i = 0
            while f"s{i}_traits" in data.files:
                recorder.mean_traits[i] = list(data[f"s{i}_traits"])
                recorder.mean_fitness[i] = list(data[f"s{i}_fitness"])
                i += 1
        return recorder
