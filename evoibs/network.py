"""Interaction and competition networks.

The engine consumes a network as an opaque adjacency abstraction:
  - neighbors_out(i), neighbors_in(i): neighbour index arrays
  - degree(i): number of out-neighbours
  - is_well_mixed(), is_undirected(), size()

A handful of constructors cover the topologies needed to run and test
the engine (well-mixed, ring, directed ring, periodic square lattice,
arbitrary edge lists). Generation and rewiring of complex graphs is
left to callers, which build a Network from an edge list.

Adjacency is stored as per-node int32 arrays and can be encoded to CSR
form (indptr, indices) for persistence.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# NETWORK
# ═══════════════════════════════════════════════════════════════════════

class Network:
    """Adjacency of a population of `n` nodes.

    Well-mixed networks store no adjacency: every other node is a
    neighbour, and samplers draw directly from the population.
    """

    def __init__(
        self,
        n: int,
        out_neighbors: Optional[List[np.ndarray]] = None,
        in_neighbors: Optional[List[np.ndarray]] = None,
        well_mixed: bool = False,
        kind: str = 'custom',
    ):
        if n < 1:
            raise ValueError(f"network size must be >= 1, got {n}")
        self.n = n
        self.kind = kind
        self._well_mixed = well_mixed
        if well_mixed:
            self._out = None
            self._in = None
            self._undirected = True
            return
        if out_neighbors is None or len(out_neighbors) != n:
            raise ValueError(
                f"out_neighbors must list {n} nodes, got "
                f"{None if out_neighbors is None else len(out_neighbors)}"
            )
        self._out = [np.asarray(nb, dtype=np.int32) for nb in out_neighbors]
        if in_neighbors is None:
            in_neighbors = _transpose(self._out, n)
        self._in = [np.asarray(nb, dtype=np.int32) for nb in in_neighbors]
        self._undirected = all(
            np.array_equal(np.sort(self._out[i]), np.sort(self._in[i]))
            for i in range(n)
        )

    # ── adjacency queries ─────────────────────────────────────────────

    def neighbors_out(self, i: int) -> np.ndarray:
        if self._well_mixed:
            return _all_but(self.n, i)
        return self._out[i]

    def neighbors_in(self, i: int) -> np.ndarray:
        if self._well_mixed:
            return _all_but(self.n, i)
        return self._in[i]

    def degree(self, i: int) -> int:
        """Out-degree of node i."""
        if self._well_mixed:
            return self.n - 1
        return len(self._out[i])

    def in_degree(self, i: int) -> int:
        if self._well_mixed:
            return self.n - 1
        return len(self._in[i])

    def is_well_mixed(self) -> bool:
        return self._well_mixed

    def is_undirected(self) -> bool:
        return self._undirected

    def size(self) -> int:
        return self.n

    def degree_stats(self) -> Tuple[int, int, float]:
        """Return (min, max, mean) out-degree."""
        if self._well_mixed:
            return self.n - 1, self.n - 1, float(self.n - 1)
        degrees = np.array([len(nb) for nb in self._out])
        return int(degrees.min()), int(degrees.max()), float(degrees.mean())

    # ── persistence ───────────────────────────────────────────────────

    def encode(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Out-adjacency in CSR form, or None for well-mixed networks."""
        if self._well_mixed:
            return None
        indptr = np.zeros(self.n + 1, dtype=np.int64)
        indptr[1:] = np.cumsum([len(nb) for nb in self._out])
        if indptr[-1] > 0:
            indices = np.concatenate(self._out).astype(np.int32)
        else:
            indices = np.zeros(0, dtype=np.int32)
        return indptr, indices

    @classmethod
    def decode(
        cls,
        n: int,
        adjacency: Optional[Tuple[np.ndarray, np.ndarray]],
        kind: str = 'custom',
    ) -> 'Network':
        """Rebuild a network from encode() output."""
        if adjacency is None:
            return cls(n, well_mixed=True, kind='well_mixed')
        indptr, indices = adjacency
        if len(indptr) != n + 1:
            raise ValueError(
                f"adjacency indptr must have {n + 1} entries, got {len(indptr)}"
            )
        out = [indices[indptr[i]:indptr[i + 1]].copy() for i in range(n)]
        return cls(n, out, kind=kind)

    def __repr__(self) -> str:
        return (f"Network(kind={self.kind!r}, n={self.n}, "
                f"undirected={self._undirected})")


def _all_but(n: int, i: int) -> np.ndarray:
    nb = np.arange(n - 1, dtype=np.int32)
    nb[i:] += 1
    return nb


def _transpose(out: Sequence[np.ndarray], n: int) -> List[np.ndarray]:
    incoming: List[list] = [[] for _ in range(n)]
    for i, nb in enumerate(out):
        for j in nb:
            incoming[int(j)].append(i)
    return [np.array(lst, dtype=np.int32) for lst in incoming]


# ═══════════════════════════════════════════════════════════════════════
# CONSTRUCTORS
# ═══════════════════════════════════════════════════════════════════════

def well_mixed(n: int) -> Network:
    return Network(n, well_mixed=True, kind='well_mixed')


def ring(n: int) -> Network:
    """Undirected cycle: every node linked to its two nearest nodes."""
    if n < 3:
        raise ValueError(f"ring requires at least 3 nodes, got {n}")
    out = [np.array([(i - 1) % n, (i + 1) % n], dtype=np.int32)
           for i in range(n)]
    return Network(n, out, kind='ring')


def directed_ring(n: int) -> Network:
    """Directed cycle: node i links to node i+1 only."""
    if n < 2:
        raise ValueError(f"directed ring requires at least 2 nodes, got {n}")
    out = [np.array([(i + 1) % n], dtype=np.int32) for i in range(n)]
    return Network(n, out, kind='directed_ring')


def square_lattice(n: int) -> Network:
    """Periodic square lattice with von Neumann (4-cell) neighbourhood.

    Args:
        n: Number of nodes; must be a perfect square with side >= 3.
    """
    side = math.isqrt(n)
    if side * side != n or side < 3:
        raise ValueError(
            f"square lattice requires a perfect square >= 9 nodes, got {n}"
        )
    out = []
    for i in range(n):
        x, y = i % side, i // side
        out.append(np.array([
            y * side + (x - 1) % side,
            y * side + (x + 1) % side,
            ((y - 1) % side) * side + x,
            ((y + 1) % side) * side + x,
        ], dtype=np.int32))
    return Network(n, out, kind='square')


def from_edges(
    n: int,
    edges: Iterable[Tuple[int, int]],
    directed: bool = False,
) -> Network:
    """Build a network from (source, target) pairs.

    Undirected edges are stored in both directions; duplicates and
    self-loops are dropped.
    """
    out: List[set] = [set() for _ in range(n)]
    for a, b in edges:
        a, b = int(a), int(b)
        if not (0 <= a < n and 0 <= b < n):
            raise ValueError(f"edge ({a}, {b}) outside 0..{n - 1}")
        if a == b:
            continue
        out[a].add(b)
        if not directed:
            out[b].add(a)
    return Network(
        n,
        [np.array(sorted(s), dtype=np.int32) for s in out],
        kind='directed' if directed else 'undirected',
    )


def make_network(kind: str, n: int) -> Network:
    """Construct a network by name ('well_mixed', 'ring',
    'directed_ring' or 'square')."""
    builders = {
        'well_mixed': well_mixed,
        'ring': ring,
        'directed_ring': directed_ring,
        'square': square_lattice,
    }
    if kind not in builders:
        raise ValueError(
            f"unknown geometry '{kind}', expected one of {sorted(builders)}"
        )
    return builders[kind](n)
