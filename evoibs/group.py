"""Reference and interaction groups.

A GroupSampler is a reusable buffer owned by a population. For every
event it is refilled from the network neighbours of the focal slot:
  - SamplingType.ALL: every neighbour
  - SamplingType.RANDOM: `n_samples` neighbours drawn without replacement
  - SamplingType.NONE: empty group

In well-mixed populations the whole population (minus the focal slot)
acts as the neighbourhood. On directed networks callers sample
out-neighbours and in-neighbours in separate passes (`out=False`).
Interactions with another species sample that species' slots with
`include_self`: slot i of the other species then counts as a neighbour
of focal slot i, and in well-mixed populations no slot is excluded.
An empty group means that no event takes place.
"""

from __future__ import annotations

import numpy as np

from evoibs.network import Network
from evoibs.rng import random0n
from evoibs.types import SamplingType


class GroupSampler:
    """Sampling buffer for one kind of group (reference or interaction)."""

    def __init__(self, sampling: SamplingType = SamplingType.ALL, n_samples: int = 1):
        if n_samples < 1 and sampling == SamplingType.RANDOM:
            raise ValueError(f"random sampling needs n_samples >= 1, got {n_samples}")
        self.sampling = sampling
        self.n_samples = n_samples
        self.focal = -1
        self.group = np.zeros(0, dtype=np.int32)
        self.size = 0

    @property
    def members(self) -> np.ndarray:
        return self.group[:self.size]

    def is_sampling(self, sampling: SamplingType) -> bool:
        return self.sampling == sampling

    def max_size(self, network: Network, include_self: bool = False) -> int:
        """Upper bound on the group size for the given network."""
        if self.sampling == SamplingType.NONE:
            return 0
        _, max_deg, _ = network.degree_stats()
        if include_self:
            max_deg += 1
        if self.sampling == SamplingType.RANDOM:
            return min(self.n_samples, max_deg)
        return max_deg

    def sample_at(
        self,
        focal: int,
        network: Network,
        rng: np.random.Generator,
        out: bool = True,
        include_self: bool = False,
    ) -> np.ndarray:
        """Fill the buffer with the group of `focal`.

        Args:
            focal: Focal slot index.
            network: Neighbourhood structure.
            rng: Random stream.
            out: Sample out-neighbours (True) or in-neighbours (False).
            include_self: Slot `focal` is a candidate like its neighbours.

        Returns:
            View of the sampled member indices.
        """
        self.focal = focal
        if self.sampling == SamplingType.NONE:
            group = np.zeros(0, dtype=np.int32)
        elif network.is_well_mixed():
            group = self._sample_well_mixed(focal, network.size(), rng, include_self)
        else:
            nb = network.neighbors_out(focal) if out else network.neighbors_in(focal)
            if include_self:
                nb = np.append(nb, np.int32(focal)).astype(np.int32)
            group = self._sample_neighbors(nb, rng)
        self.group = group
        self.size = len(group)
        return self.members

    def _sample_well_mixed(
        self,
        focal: int,
        n: int,
        rng: np.random.Generator,
        include_self: bool = False,
    ) -> np.ndarray:
        n_cands = n if include_self else n - 1
        if self.sampling == SamplingType.ALL or self.n_samples >= n_cands:
            nb = np.arange(n_cands, dtype=np.int32)
            if not include_self:
                nb[focal:] += 1
            return nb
        picks = []
        while len(picks) < self.n_samples:
            k = random0n(rng, n_cands)
            if not include_self and k >= focal:
                k += 1
            if k not in picks:
                picks.append(k)
        return np.array(picks, dtype=np.int32)

    def _sample_neighbors(self, nb: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        k = len(nb)
        if self.sampling == SamplingType.ALL or k <= self.n_samples:
            return nb.copy()
        if self.n_samples == 1:
            return np.array([nb[random0n(rng, k)]], dtype=np.int32)
        # partial Fisher-Yates
        pool = nb.copy()
        for i in range(self.n_samples):
            j = i + random0n(rng, k - i)
            pool[i], pool[j] = pool[j], pool[i]
        return pool[:self.n_samples].copy()
