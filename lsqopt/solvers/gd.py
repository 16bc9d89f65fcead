"""First-order solver: the step is ``-lr * gradient``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from ..core import SolverOptions
from ..traits import ParamsTrait
from .base import ResidualsFunc, SolverBase, Workspace, count_positional_params


@dataclass(frozen=True)
class GDSolverOptions(SolverOptions):
    """Gradient descent options.

    Args:
        lr: Learning rate. The step is ``-lr * gradient``.
    """

    lr: float = 1.0

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.lr <= 0:
            raise ValueError("lr must be positive")


class SolverGD(SolverBase):
    """Gradient descent.

    The residual callback is called as ``func(x, grad)``, or as
    ``func(x, grad, None)`` when it also accepts a Hessian accumulator. It
    adds the gradient of the error into ``grad`` and returns a scalar error,
    an ``(error, num_residuals)`` pair or a vector of residuals.
    """

    def __init__(self, options: Optional[GDSolverOptions] = None, dims: Optional[int] = None) -> None:
        super().__init__(options if options is not None else GDSolverOptions(), dims)

    def _allocate(self, dims: int) -> Workspace:
        return Workspace(grad=np.zeros(dims))

    def _call(self, func: ResidualsFunc, x: Any) -> Any:
        if count_positional_params(func) == 2:
            return func(x, self.workspace.grad)
        return func(x, self.workspace.grad, None)

    def build(self, x: Any, func: ResidualsFunc, trait: Optional[ParamsTrait] = None) -> bool:
        """Rebuild the gradient at ``x``.

        Returns False when the callback produced no residuals.
        """
        self.resize_if_needed(x, trait)
        self.clear()
        ok = self._accumulate(self._call(func, x))
        self.clamp_gradient()
        return ok

    def solve(self) -> Optional[np.ndarray]:
        if self.cost.num_residuals == 0:
            return None
        return -self.options.lr * self.workspace.grad


__all__ = ["GDSolverOptions", "SolverGD"]
