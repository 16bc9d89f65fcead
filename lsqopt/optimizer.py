"""The optimization loop driving a solver.

Each iteration solves the system built at the last accepted parameters,
applies the step through the parameter trait, rebuilds the system at the
candidate and accepts it iff its error is strictly lower than the best error
so far. A rejected candidate is rolled back, together with the solver's
workspace, to the last accepted state.

Example
-------
>>> from lsqopt import gauss_newton
>>> def loss(x, grad, H):
...     res = x - 2.0
...     grad[0] += res
...     H[0, 0] += 1.0
...     return abs(res)
>>> out = gauss_newton(1.0, loss)
>>> out.succeeded, round(out.x, 6)
(True, 2.0)
"""

from __future__ import annotations

import math
import time
from typing import Any, Callable, Optional

from .core import OptimizerOptions, Output, StopReason
from .diff import resolve_residuals
from .logging import get_logger
from .solvers.base import SolverBase
from .solvers.gd import GDSolverOptions, SolverGD
from .solvers.gn import GNSolverOptions, SolverGN
from .solvers.lm import LMSolverOptions, SolverLM
from .traits import ParamsTrait, resolve_trait

logger = get_logger(__name__)

UserCallback = Callable[[Any, Output], Optional[bool]]


class Optimizer:
    """Minimize the error accumulated by a residual callback.

    Args:
        solver: Step-computation strategy. It is owned by the optimizer for
            the duration of a run and reset at the start of each one.
        options: Run configuration.
        trait: Parameter trait; resolved from the parameters when None.
    """

    def __init__(
        self,
        solver: SolverBase,
        options: Optional[OptimizerOptions] = None,
        trait: Optional[ParamsTrait] = None,
    ) -> None:
        self.solver = solver
        self.options = options if options is not None else OptimizerOptions()
        self.trait = trait

    def __call__(
        self, x: Any, func: Callable[..., Any], callback: Optional[UserCallback] = None
    ) -> Output:
        return self.run(x, func, callback)

    def _log_step(self, it: int, good: bool, x: Any, trait: ParamsTrait, dx_norm2: float,
                  err: float, derr: float) -> None:
        if not self.options.log.enable:
            return
        solver = self.solver
        status = "accepted" if good else "rejected"
        x_str = f" x:[{trait.to_string(x)}]" if self.options.log.print_x else ""
        logger.info(
            "#%d %s:%s |dx|:%.2e err:%.5f n:%d derr:%.3e |grad|^2:%.3e %s",
            it,
            status,
            x_str,
            math.sqrt(dx_norm2),
            err,
            solver.cost.num_residuals,
            derr,
            solver.gradient_squared_norm(),
            solver.state_string(),
        )

    def run(
        self, x: Any, func: Callable[..., Any], callback: Optional[UserCallback] = None
    ) -> Output:
        """Optimize ``x`` in place (when mutable) and return the run's :class:`Output`."""
        options = self.options
        solver = self.solver
        trait = resolve_trait(x, self.trait)
        func = resolve_residuals(func, options.diff_method, self.trait)
        solver.reset()
        start = time.perf_counter()

        out = Output(x=x)
        if trait.check_dims(x) == 0:
            out.record(0.0, 0.0, False)
            out.stop_reason = StopReason.NO_RESIDUALS
            logger.warning("No parameters to optimize, stopping")
            return self._finish(out, start)

        x_last_good = trait.copy(x)
        built = solver.build(x, func, trait)
        out.num_residuals = solver.cost.num_residuals
        err = solver.cost.cost

        if out.num_residuals == 0:
            out.record(0.0, 0.0, False)
            out.stop_reason = StopReason.NO_RESIDUALS
            logger.warning("#0: No residuals, stopping")
            return self._finish(out, start)
        if not math.isfinite(err) or not solver.is_finite():
            out.record(err, 0.0, False)
            out.stop_reason = StopReason.SYSTEM_HAS_NANS
            logger.warning("#0: Residuals or Jacobians have NaNs or Infs, stopping")
            return self._finish(out, start)
        if not built:
            out.record(err, 0.0, False)
            out.stop_reason = StopReason.SOLVER_FAILED
            logger.warning("#0: Failed to build the system, stopping")
            return self._finish(out, start)
        out.last_err = err

        for it in range(options.max_iters):
            dx = solver.solve()
            if dx is None:
                solver.failed_step()
                out.num_failures += 1
                out.num_consec_failures += 1
                out.record(err, 0.0, False)
                out.stop_reason = StopReason.SOLVER_FAILED
                logger.warning("#%d: Failed to solve the linear system", it)
                break

            dx_norm2 = float(dx @ dx)
            if not math.isfinite(dx_norm2):
                out.record(err, dx_norm2, False)
                out.stop_reason = StopReason.SYSTEM_HAS_NANS
                logger.warning("#%d: Step has NaNs or Infs", it)
                break

            snapshot = solver.stash()
            snapshot_cost = solver.cost
            x = trait.pluseq(x, dx)
            built = solver.build(x, func, trait)
            new_err = solver.cost.cost
            out.num_residuals = solver.cost.num_residuals

            failure = None
            recorded = (new_err, dx_norm2)
            if out.num_residuals == 0:
                failure = StopReason.SOLVER_FAILED
                recorded = (0.0, 0.0)
            elif not math.isfinite(new_err) or not solver.is_finite():
                failure = StopReason.SYSTEM_HAS_NANS
            elif not built:
                failure = StopReason.SOLVER_FAILED
            if failure is not None:
                x = trait.assign(x, x_last_good)
                solver.restore(snapshot, snapshot_cost)
                out.num_failures += 1
                out.num_consec_failures += 1
                out.record(*recorded, False)
                out.stop_reason = failure
                logger.warning("#%d: %s", it, out.stop_reason_description(options))
                break

            derr = new_err - out.last_err
            good = new_err < out.last_err
            out.record(new_err, dx_norm2, good)
            if good:
                x_last_good = trait.copy(x)
                out.last_err = new_err
                out.num_consec_failures = 0
                if options.export_H and snapshot.H is not None:
                    out.last_H = snapshot.H.copy()
                solver.good_step(-derr)
                err = new_err
                self._log_step(it, True, x, trait, dx_norm2, new_err, derr)

                if new_err < options.min_error:
                    out.stop_reason = StopReason.MIN_ERROR
                    break
                if options.min_delta_norm2 > 0 and dx_norm2 < options.min_delta_norm2:
                    out.stop_reason = StopReason.MIN_DELTA_NORM
                    break
                if (
                    options.min_grad_norm2 > 0
                    and solver.gradient_squared_norm() < options.min_grad_norm2
                ):
                    out.stop_reason = StopReason.MIN_GRAD_NORM
                    break
            else:
                self._log_step(it, False, x, trait, dx_norm2, new_err, derr)
                x = trait.assign(x, x_last_good)
                solver.restore(snapshot, snapshot_cost)
                solver.bad_step(-derr)
                out.num_failures += 1
                out.num_consec_failures += 1
                if (
                    options.max_consec_failures > 0
                    and out.num_consec_failures >= options.max_consec_failures
                ):
                    out.stop_reason = StopReason.MAX_CONSEC_FAILS
                    break
                if (
                    options.max_total_failures > 0
                    and out.num_failures >= options.max_total_failures
                ):
                    out.stop_reason = StopReason.MAX_FAILS
                    break

            out.x = x
            if callback is not None and callback(x, out):
                out.stop_reason = StopReason.USER_STOPPED
                break
            elapsed_ms = (time.perf_counter() - start) * 1e3
            if options.max_duration_ms > 0 and elapsed_ms > options.max_duration_ms:
                out.stop_reason = StopReason.TIMED_OUT
                break

        out.x = x
        return self._finish(out, start)

    def _finish(self, out: Output, start: float) -> Output:
        out.duration_ms = (time.perf_counter() - start) * 1e3
        if self.options.log.enable:
            logger.info(
                "Stopped after %d iterations: %s",
                out.num_iters,
                out.stop_reason_description(self.options),
            )
        return out


def _run(
    solver: SolverBase,
    x: Any,
    func: Callable[..., Any],
    options: OptimizerOptions,
    callback: Optional[UserCallback],
    trait: Optional[ParamsTrait],
) -> Output:
    return Optimizer(solver, options, trait).run(x, func, callback)


def gradient_descent(
    x: Any,
    func: Callable[..., Any],
    options: Optional[OptimizerOptions] = None,
    callback: Optional[UserCallback] = None,
    trait: Optional[ParamsTrait] = None,
) -> Output:
    """Minimize with first-order steps ``-lr * gradient``.

    ``func(x, grad)`` adds the gradient of the error into ``grad`` and
    returns the error (see :class:`~lsqopt.solvers.SolverGD`).
    """
    options = options if options is not None else OptimizerOptions()
    solver_options = options.solver if options.solver is not None else GDSolverOptions()
    return _run(SolverGD(solver_options), x, func, options, callback, trait)


def gauss_newton(
    x: Any,
    func: Callable[..., Any],
    options: Optional[OptimizerOptions] = None,
    callback: Optional[UserCallback] = None,
    trait: Optional[ParamsTrait] = None,
) -> Output:
    """Minimize a nonlinear least-squares error with Gauss-Newton steps.

    ``func(x, grad, H)`` accumulates ``J^T r`` and ``J^T J``; a callback
    taking only ``x`` returns residuals and is differentiated automatically.
    """
    options = options if options is not None else OptimizerOptions()
    solver_options = options.solver if options.solver is not None else GNSolverOptions()
    return _run(SolverGN(solver_options), x, func, options, callback, trait)


def levenberg_marquardt(
    x: Any,
    func: Callable[..., Any],
    options: Optional[OptimizerOptions] = None,
    callback: Optional[UserCallback] = None,
    trait: Optional[ParamsTrait] = None,
) -> Output:
    """Minimize a nonlinear least-squares error with damped Gauss-Newton steps."""
    options = options if options is not None else OptimizerOptions()
    solver_options = options.solver if options.solver is not None else LMSolverOptions()
    return _run(SolverLM(solver_options), x, func, options, callback, trait)


_METHODS = {
    "gd": gradient_descent,
    "gn": gauss_newton,
    "lm": levenberg_marquardt,
}


def optimize(
    x: Any,
    func: Callable[..., Any],
    options: Optional[OptimizerOptions] = None,
    method: str = "lm",
    callback: Optional[UserCallback] = None,
    trait: Optional[ParamsTrait] = None,
) -> Output:
    """Dispatch to ``"gd"``, ``"gn"`` or ``"lm"`` (default)."""
    try:
        minimize = _METHODS[method]
    except KeyError:
        raise ValueError(f"Unknown method {method!r}, expected one of {sorted(_METHODS)}") from None
    return minimize(x, func, options, callback, trait)


__all__ = [
    "Optimizer",
    "gauss_newton",
    "gradient_descent",
    "levenberg_marquardt",
    "optimize",
]
