"""Shared contract of every step-computation strategy.

A solver owns a :class:`Workspace` (gradient and optionally Hessian) that it
rebuilds from the residual callback at each evaluation, and turns it into a
step with :meth:`SolverBase.solve`. Expected numerical failures are reported
by returning ``None`` / ``False``; misuse of the interface (wrong
dimensions) raises.
"""

from __future__ import annotations

import inspect
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from ..core import Cost, SolverOptions, as_cost
from ..logging import get_logger
from ..traits import DYNAMIC, ParamsTrait, resolve_trait

logger = get_logger(__name__)

ResidualsFunc = Callable[..., Any]


def count_positional_params(func: Callable) -> int:
    """Number of positional parameters ``func`` accepts (-1 for ``*args``)."""
    sig = inspect.signature(func)
    count = 0
    for param in sig.parameters.values():
        if param.kind == inspect.Parameter.VAR_POSITIONAL:
            return -1
        if param.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            count += 1
    return count


@dataclass
class Workspace:
    """Gradient and Hessian buffers reused across iterations.

    ``static`` workspaces were sized at construction and refuse to change
    dimension; dynamic ones follow the parameters. ``grad_finite`` is
    measured before gradient clipping, which would otherwise hide an Inf.
    """

    grad: np.ndarray
    H: Any = None
    static: bool = False
    grad_finite: bool = True

    @property
    def dims(self) -> int:
        return int(self.grad.shape[0])

    def copy(self) -> "Workspace":
        H = None if self.H is None else self.H.copy()
        return Workspace(
            grad=self.grad.copy(), H=H, static=self.static, grad_finite=self.grad_finite
        )


class SolverBase(ABC):
    """Base class of all solvers.

    Args:
        options: Solver options.
        dims: Dimension of the parameters when known at construction. The
            workspace is then static and mismatching parameters raise.
    """

    def __init__(self, options: Optional[SolverOptions] = None, dims: Optional[int] = None) -> None:
        self.options = options if options is not None else SolverOptions()
        if dims is not None and dims < 0:
            raise ValueError("Dimensions cannot be dynamic here")
        self.cost = Cost()
        self.workspace = self._allocate(0 if dims is None else dims)
        self.workspace.static = dims is not None

    # -- workspace --------------------------------------------------------

    @abstractmethod
    def _allocate(self, dims: int) -> Workspace:
        """Return a zeroed workspace of dimension ``dims``."""

    def resize(self, dims: int) -> bool:
        """Resize the workspace, returns True if it was resized."""
        if dims == DYNAMIC or dims < 0:
            raise ValueError("Dimensions cannot be dynamic here")
        if self.workspace.static:
            if dims != self.workspace.dims:
                raise ValueError(
                    f"Static and dynamic dimensions must match: {self.workspace.dims} != {dims}"
                )
            return False
        if dims == self.workspace.dims:
            return False
        self.workspace = self._allocate(dims)
        return True

    def resize_if_needed(self, x: Any, trait: Optional[ParamsTrait] = None) -> bool:
        dims = resolve_trait(x, trait).check_dims(x)
        if dims != self.workspace.dims and self.options.log.enable:
            logger.debug("Need to resize the system to %d", dims)
        return self.resize(dims)

    def clear(self) -> None:
        self.workspace.grad.fill(0.0)
        self.workspace.grad_finite = True

    def reset(self) -> None:
        self.clear()
        self.cost = Cost()

    def stash(self) -> Workspace:
        """Snapshot of the current system."""
        return self.workspace.copy()

    def restore(self, snapshot: Workspace, cost: Optional[Cost] = None) -> None:
        self.workspace = snapshot.copy()
        if cost is not None:
            self.cost = Cost(cost.cost, cost.num_residuals)

    # -- numerical hygiene ------------------------------------------------

    @staticmethod
    def clamp(v: np.ndarray, bound: float) -> bool:
        """Clip ``v`` in place to ``[-bound, bound]`` if ``bound`` is not 0.

        Returns True if the clipping was applied.
        """
        if bound == 0:
            return False
        np.clip(v, -bound, bound, out=v)
        return True

    def clamp_gradient(self) -> bool:
        """Record whether the gradient is finite, then clip it."""
        grad = self.workspace.grad
        self.workspace.grad_finite = bool(np.all(np.isfinite(grad)))
        return self.clamp(grad, self.options.grad_clipping)

    def normalize_cost(self, cost: Cost) -> Cost:
        """Apply square root, half scaling and averaging, in that order."""
        opts = self.options.cost
        if not opts.use_squared_norm:
            cost.cost = math.sqrt(cost.cost) if cost.cost >= 0 else math.nan
        if opts.downscale_by_2:
            cost.cost *= 0.5
        if opts.normalize and cost.num_residuals > 0:
            cost.cost /= cost.num_residuals
        return cost

    def _accumulate(self, output: Any) -> bool:
        err, count = as_cost(output)
        self.cost = self.normalize_cost(Cost(err, count))
        return count > 0

    def is_finite(self) -> bool:
        """True if the gradient (and Hessian) contain no NaN or Inf."""
        grad = self.workspace.grad
        return self.workspace.grad_finite and bool(np.all(np.isfinite(grad)))

    # -- strategy interface -----------------------------------------------

    @abstractmethod
    def build(self, x: Any, func: ResidualsFunc, trait: Optional[ParamsTrait] = None) -> bool:
        """Accumulate residuals at ``x``, returns True on success."""

    @abstractmethod
    def solve(self) -> Optional[np.ndarray]:
        """Return the step, or None when the system cannot be solved."""

    def good_step(self, quality: float = 0.0) -> None:
        pass

    def bad_step(self, quality: float = 0.0) -> None:
        pass

    def failed_step(self) -> None:
        pass

    def state_string(self) -> str:
        return ""

    def dims(self) -> int:
        return self.workspace.dims

    @property
    def gradient(self) -> np.ndarray:
        return self.workspace.grad

    def gradient_norm(self) -> float:
        return float(np.linalg.norm(self.workspace.grad))

    def gradient_squared_norm(self) -> float:
        grad = self.workspace.grad
        return float(grad @ grad)

    @property
    def first_order(self) -> bool:
        return self.workspace.H is None


__all__ = ["ResidualsFunc", "SolverBase", "Workspace", "count_positional_params"]
