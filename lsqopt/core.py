"""Core types shared across solvers and the optimization loop.

The module standardizes the cost bookkeeping, the option snapshots and the
result container so that every solver and every entry point of the package
talks about the same data. Options are frozen dataclasses: a run works on an
immutable copy of its configuration.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

import numpy as np

Array = np.ndarray

FLOAT_EPSILON = float(np.finfo(np.float64).eps)

DIFF_METHODS = ("auto", "numeric")


@dataclass
class Cost:
    """Accumulated error and number of residuals of one evaluation."""

    cost: float = 0.0
    num_residuals: int = 0


@dataclass(frozen=True)
class CostOptions:
    """Transforms applied to the accumulated error, in this order.

    Args:
        use_squared_norm: Keep the accumulated error as is. When False its
            square root is taken, turning a sum of squares into a norm.
        downscale_by_2: Multiply the error by 0.5.
        normalize: Divide the error by the number of residuals.
    """

    use_squared_norm: bool = True
    downscale_by_2: bool = False
    normalize: bool = False


@dataclass(frozen=True)
class LogOptions:
    """Per-iteration logging toggles."""

    enable: bool = True
    print_x: bool = False


@dataclass(frozen=True)
class SolverOptions:
    """Options common to every solver.

    Args:
        grad_clipping: Clip every gradient component to
            ``[-grad_clipping, grad_clipping]``. Disabled when 0.
        cost: Cost normalization applied to each evaluation.
        log: Logging toggles for solver events.
    """

    grad_clipping: float = 0.0
    cost: CostOptions = field(default_factory=CostOptions)
    log: LogOptions = field(default_factory=LogOptions)

    def __post_init__(self) -> None:
        if self.grad_clipping < 0:
            raise ValueError("grad_clipping must be non-negative")


@dataclass(frozen=True)
class OptimizerOptions:
    """Configuration of one optimization run.

    Caps and thresholds set to 0 are disabled.

    Args:
        max_iters: Maximum number of iterations.
        min_error: Stop once an accepted error falls below this value.
        min_delta_norm2: Stop once an accepted step has a smaller squared norm.
        min_grad_norm2: Stop once the gradient at an accepted point has a
            smaller squared norm.
        max_total_failures: Overall number of rejected steps tolerated.
        max_consec_failures: Number of consecutive rejected steps tolerated.
        max_duration_ms: Wall-clock budget, checked between iterations.
        export_H: Store the Hessian of the last accepted step in the output.
        diff_method: Differentiation used when the callback only returns
            residuals: ``"auto"`` (torch autograd) or ``"numeric"``.
        log: Per-iteration logging toggles.
        solver: Solver options; each entry point picks a default when None.
    """

    max_iters: int = 100
    min_error: float = 0.0
    min_delta_norm2: float = 0.0
    min_grad_norm2: float = 1e-12
    max_total_failures: int = 0
    max_consec_failures: int = 3
    max_duration_ms: float = 0.0
    export_H: bool = True
    diff_method: str = "auto"
    log: LogOptions = field(default_factory=LogOptions)
    solver: Optional[SolverOptions] = None

    def __post_init__(self) -> None:
        if self.max_iters < 0:
            raise ValueError("max_iters must be non-negative")
        if self.max_total_failures < 0 or self.max_consec_failures < 0:
            raise ValueError("failure caps must be non-negative")
        if min(self.min_error, self.min_delta_norm2, self.min_grad_norm2) < 0:
            raise ValueError("convergence thresholds must be non-negative")
        if self.max_duration_ms < 0:
            raise ValueError("max_duration_ms must be non-negative")
        if self.diff_method not in DIFF_METHODS:
            raise ValueError(
                f"Unknown diff_method {self.diff_method!r}, expected one of {DIFF_METHODS}"
            )


class StopReason(Enum):
    """Why an optimization run ended."""

    MAX_ITERS = "max_iters"
    MIN_ERROR = "min_error"
    MIN_DELTA_NORM = "min_delta_norm"
    MIN_GRAD_NORM = "min_grad_norm"
    MAX_FAILS = "max_fails"
    MAX_CONSEC_FAILS = "max_consec_fails"
    TIMED_OUT = "timed_out"
    USER_STOPPED = "user_stopped"
    # Failures
    SYSTEM_HAS_NANS = "system_has_nans"
    SOLVER_FAILED = "solver_failed"
    NO_RESIDUALS = "no_residuals"


_FAILURES = (StopReason.SYSTEM_HAS_NANS, StopReason.SOLVER_FAILED, StopReason.NO_RESIDUALS)
_CONVERGED = (StopReason.MIN_ERROR, StopReason.MIN_DELTA_NORM, StopReason.MIN_GRAD_NORM)

_DESCRIPTIONS = {
    StopReason.MAX_ITERS: "Reached the maximum number of iterations ({max_iters}).",
    StopReason.MIN_ERROR: "Error fell below the minimum error ({min_error:.2e}).",
    StopReason.MIN_DELTA_NORM: "Step squared norm fell below {min_delta_norm2:.2e}.",
    StopReason.MIN_GRAD_NORM: "Gradient squared norm fell below {min_grad_norm2:.2e}.",
    StopReason.MAX_FAILS: "Failed to decrease the error {num_failures} times.",
    StopReason.MAX_CONSEC_FAILS: (
        "Failed to decrease the error {num_consec_failures} times in a row."
    ),
    StopReason.TIMED_OUT: "Ran out of time ({max_duration_ms} ms).",
    StopReason.USER_STOPPED: "Stopped by the user callback.",
    StopReason.SYSTEM_HAS_NANS: "Residuals, gradient or Hessian contain NaN or Inf.",
    StopReason.SOLVER_FAILED: "Failed to solve the linear system.",
    StopReason.NO_RESIDUALS: "The system has no residuals.",
}


@dataclass
class Output:
    """Result of an optimization run.

    Attributes:
        x: Final parameters. Mutable parameters are also updated in place;
            immutable ones (Python scalars) are only available here.
        last_err: Error of the last accepted point. Only decreases.
        stop_reason: Terminal classification of the run.
        num_residuals: Residual count of the last evaluation.
        num_iters: Number of iterations executed.
        num_failures: Total number of rejected or failed steps.
        num_consec_failures: Number of rejected steps since the last accepted one.
        last_H: Hessian approximation of the last accepted step, when exported.
        errs: Evaluated error of every iteration.
        deltas2: Step squared norm of every iteration.
        successes: Acceptance flag of every iteration.
        duration_ms: Wall-clock time of the run.
    """

    x: Any = None
    last_err: float = math.inf
    stop_reason: StopReason = StopReason.MAX_ITERS
    num_residuals: int = 0
    num_iters: int = 0
    num_failures: int = 0
    num_consec_failures: int = 0
    last_H: Optional[Any] = None
    errs: List[float] = field(default_factory=list)
    deltas2: List[float] = field(default_factory=list)
    successes: List[bool] = field(default_factory=list)
    duration_ms: float = 0.0

    def record(self, err: float, delta2: float, success: bool) -> None:
        """Append one iteration to the history."""
        self.errs.append(float(err))
        self.deltas2.append(float(delta2))
        self.successes.append(bool(success))
        self.num_iters = len(self.errs)

    @property
    def succeeded(self) -> bool:
        return self.stop_reason not in _FAILURES

    @property
    def converged(self) -> bool:
        return self.stop_reason in _CONVERGED

    def stop_reason_description(self, options: Optional[OptimizerOptions] = None) -> str:
        """Return a human-readable explanation of ``stop_reason``."""
        if options is None:
            options = OptimizerOptions()
        return _DESCRIPTIONS[self.stop_reason].format(
            max_iters=options.max_iters,
            min_error=options.min_error,
            min_delta_norm2=options.min_delta_norm2,
            min_grad_norm2=options.min_grad_norm2,
            max_duration_ms=options.max_duration_ms,
            num_failures=self.num_failures,
            num_consec_failures=self.num_consec_failures,
        )


def as_cost(output: Any) -> Tuple[float, int]:
    """Normalize a residual callback output to ``(error, num_residuals)``.

    A bare scalar counts as one residual, a pair is taken as is and a vector
    (or matrix) of residuals contributes its Euclidean norm and its size.
    """
    if isinstance(output, tuple):
        if len(output) != 2:
            raise ValueError("A residual callback tuple must be (error, num_residuals)")
        err, count = output
        return float(err), int(count)
    if np.isscalar(output) or (isinstance(output, np.ndarray) and output.ndim == 0):
        return float(output), 1
    residuals = np.asarray(output, dtype=float)
    return float(np.linalg.norm(residuals)), int(residuals.size)


__all__ = [
    "Array",
    "Cost",
    "CostOptions",
    "DIFF_METHODS",
    "FLOAT_EPSILON",
    "LogOptions",
    "OptimizerOptions",
    "Output",
    "SolverOptions",
    "StopReason",
    "as_cost",
]
