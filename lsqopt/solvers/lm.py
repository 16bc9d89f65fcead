"""Levenberg-Marquardt: Gauss-Newton with an adaptive diagonal damping.

The damping ``lambda`` blends Gauss-Newton (small ``lambda``) and a short
gradient descent step (large ``lambda``). It reacts to the step outcomes
reported by the optimization loop through the step hooks: an accepted step
shrinks it by ``good_factor``; a rejected step multiplies it by ``nu`` and
doubles ``nu``, so consecutive rejections grow the damping geometrically
faster. ``nu`` falls back to ``bad_factor`` after every accepted step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np

from ..linalg import is_sparse, sparse_identity
from .gn import GNSolverOptions, SolverGN


@dataclass(frozen=True)
class LMSolverOptions(GNSolverOptions):
    """Levenberg-Marquardt options.

    Args:
        damping_init: Initial damping.
        damping_range: Bounds of the damping.
        good_factor: Damping multiplier after an accepted step.
        bad_factor: Damping multiplier after the first rejected or failed
            step; each further consecutive rejection doubles it.
    """

    damping_init: float = 1e-4
    damping_range: Tuple[float, float] = (1e-9, 1e9)
    good_factor: float = 1.0 / 3.0
    bad_factor: float = 2.0

    def __post_init__(self) -> None:
        super().__post_init__()
        low, high = self.damping_range
        if not 0 <= low <= high:
            raise ValueError("damping_range must satisfy 0 <= low <= high")
        if not 0 < self.good_factor <= 1 or self.bad_factor < 1:
            raise ValueError("good_factor must be in (0, 1] and bad_factor >= 1")


class SolverLM(SolverGN):
    """Levenberg-Marquardt, solving ``(H + lambda I) dx = -g``."""

    def __init__(self, options: Optional[LMSolverOptions] = None, dims: Optional[int] = None) -> None:
        options = options if options is not None else LMSolverOptions()
        super().__init__(options, dims)
        self.damping = self._bounded(options.damping_init)
        self.nu = options.bad_factor

    def _bounded(self, damping: float) -> float:
        low, high = self.options.damping_range
        return float(min(max(damping, low), high))

    def reset(self) -> None:
        super().reset()
        self.damping = self._bounded(self.options.damping_init)
        self.nu = self.options.bad_factor

    def system_matrix(self) -> Any:
        H = self.workspace.H
        if is_sparse(H):
            return (H + self.damping * sparse_identity(H.shape[0])).tocsc()
        return H + self.damping * np.eye(H.shape[0])

    def good_step(self, quality: float = 0.0) -> None:
        self.damping = self._bounded(self.damping * self.options.good_factor)
        self.nu = self.options.bad_factor

    def bad_step(self, quality: float = 0.0) -> None:
        self.damping = self._bounded(self.damping * self.nu)
        # nu stops growing once the damping is pinned at its upper bound
        if self.damping < self.options.damping_range[1]:
            self.nu *= 2.0

    def failed_step(self) -> None:
        self.bad_step()

    def state_string(self) -> str:
        return f"λ:{self.damping:.2e} ν:{self.nu:g}"


__all__ = ["LMSolverOptions", "SolverLM"]
