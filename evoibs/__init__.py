"""evoibs: Individual-based simulations of evolutionary dynamics.

A stochastic, event-driven engine for populations of agents carrying
discrete or continuous traits:
  - Fitness-proportional sampling with incremental fitness accounting
  - Imitation, best-response, Moran and ecological update rules
  - Well-mixed, lattice and arbitrary (directed) interaction networks
  - Pairwise, public goods and continuous snowdrift games
  - Migration, multi-species coordination and interacting species
  - Bit-exact replay from a seeded random stream
"""

__version__ = "0.1.0"
