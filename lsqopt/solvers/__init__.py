"""Step-computation strategies used by the optimization loop."""

from .base import SolverBase, Workspace
from .gd import GDSolverOptions, SolverGD
from .gn import GNSolverOptions, SolverGN
from .lm import LMSolverOptions, SolverLM

__all__ = [
    "GDSolverOptions",
    "GNSolverOptions",
    "LMSolverOptions",
    "SolverBase",
    "SolverGD",
    "SolverGN",
    "SolverLM",
    "Workspace",
]
