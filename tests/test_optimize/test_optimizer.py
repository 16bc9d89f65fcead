import time

import numpy as np
import pytest

from lsqopt import (
    Optimizer,
    OptimizerOptions,
    Output,
    StopReason,
    gauss_newton,
    gradient_descent,
    optimize,
)
from lsqopt.solvers import (
    GDSolverOptions,
    GNSolverOptions,
    LMSolverOptions,
    SolverGN,
    SolverLM,
)


def slow_quadratic(x, grad):
    grad += x - 2.0
    return float(0.5 * np.sum((x - 2.0) ** 2))


def assert_history_consistent(out):
    assert out.num_iters == len(out.errs) == len(out.deltas2) == len(out.successes)


def test_history_and_monotonic_error():
    options = OptimizerOptions(max_iters=5, solver=GDSolverOptions(lr=0.1))
    out = gradient_descent(np.zeros(2), slow_quadratic, options)
    assert out.stop_reason == StopReason.MAX_ITERS
    assert out.num_iters == 5
    assert_history_consistent(out)
    assert all(out.successes)
    assert all(b < a for a, b in zip(out.errs, out.errs[1:]))
    assert out.last_err == out.errs[-1]
    assert out.duration_ms >= 0.0


def test_rejected_steps_roll_back(shifted_residual):
    # A Hessian ten times too small makes every Gauss-Newton step overshoot
    x = np.zeros(1)
    out = gauss_newton(x, shifted_residual([2.0], hessian_scale=0.1))
    assert out.stop_reason == StopReason.MAX_CONSEC_FAILS
    assert out.succeeded
    assert out.successes == [False, False, False]
    assert out.num_failures == 3
    assert out.num_consec_failures == 3
    assert out.x is x
    np.testing.assert_array_equal(x, [0.0])
    assert out.last_err == pytest.approx(2.0)
    assert_history_consistent(out)


def test_max_total_failures(shifted_residual):
    options = OptimizerOptions(max_consec_failures=0, max_total_failures=2)
    out = gauss_newton(np.zeros(1), shifted_residual([2.0], hessian_scale=0.1), options)
    assert out.stop_reason == StopReason.MAX_FAILS
    assert out.num_iters == 2


def test_nan_at_start():
    x = np.array([1.0, 2.0])

    def func(x, grad, H):
        H += np.eye(2)
        return np.array([np.nan, 1.0])

    out = gauss_newton(x, func)
    assert out.stop_reason == StopReason.SYSTEM_HAS_NANS
    assert not out.succeeded
    assert out.num_iters == 1
    np.testing.assert_array_equal(x, [1.0, 2.0])


def test_nan_after_step_restores_last_good():
    x = np.zeros(1)

    def func(x, grad, H):
        res = x - 2.0
        grad += res
        H += np.eye(1)
        if x[0] > 1.5:
            return np.array([np.nan])
        return res

    out = gauss_newton(x, func)
    assert out.stop_reason == StopReason.SYSTEM_HAS_NANS
    np.testing.assert_array_equal(x, [0.0])
    assert out.last_err == pytest.approx(2.0)
    assert out.successes == [False]


def test_no_residuals_at_start():
    out = gauss_newton(np.ones(2), lambda x, grad, H: np.empty(0))
    assert out.stop_reason == StopReason.NO_RESIDUALS
    assert out.errs == [0.0]
    assert out.num_iters == 1
    assert not out.succeeded


def test_no_parameters():
    out = gauss_newton(np.empty(0), lambda x, grad, H: np.ones(1))
    assert out.stop_reason == StopReason.NO_RESIDUALS
    assert out.num_iters == 1


def test_indefinite_hessian_fails_solver():
    x = np.array([1.0])

    def func(x, grad, H):
        grad += 1.0
        H -= 1.0
        return x

    out = gauss_newton(x, func)
    assert out.stop_reason == StopReason.SOLVER_FAILED
    assert out.num_iters == 1
    np.testing.assert_array_equal(x, [1.0])


def test_zero_residuals_after_step_record_empty_iteration():
    x = np.zeros(1)

    def func(x, grad, H):
        if x[0] > 1.5:
            return np.empty(0)
        res = x - 2.0
        grad += res
        H += np.eye(1)
        return res

    out = gauss_newton(x, func)
    assert out.stop_reason == StopReason.SOLVER_FAILED
    assert out.errs == [0.0]
    assert out.deltas2 == [0.0]
    np.testing.assert_array_equal(x, [0.0])
    assert out.last_err == pytest.approx(2.0)


def test_clipped_infinite_gradient_at_start():
    x = np.zeros(1)

    def func(x, grad, H):
        grad += np.inf
        H += 1.0
        return x - 2.0

    options = OptimizerOptions(solver=GNSolverOptions(grad_clipping=1.0))
    out = gauss_newton(x, func, options)
    assert out.stop_reason == StopReason.SYSTEM_HAS_NANS
    assert out.num_iters == 1
    np.testing.assert_array_equal(x, [0.0])


def test_clipped_infinite_gradient_after_step():
    x = np.zeros(1)

    def func(x, grad, H):
        res = x - 2.0
        grad += np.inf if x[0] > 0.5 else res
        H += 1.0
        return res

    # The clipped first step lands on x = 1, where the error would improve
    options = OptimizerOptions(solver=GNSolverOptions(grad_clipping=1.0))
    out = gauss_newton(x, func, options)
    assert out.stop_reason == StopReason.SYSTEM_HAS_NANS
    assert out.successes == [False]
    np.testing.assert_array_equal(x, [0.0])


def test_reused_solver_starts_from_configured_damping(shifted_residual):
    solver = SolverLM()
    optimizer = Optimizer(solver)
    overshoot = shifted_residual([1.0, 2.0], hessian_scale=0.1)
    seen = []

    def func(x, grad, H):
        seen.append(solver.damping)
        return overshoot(x, grad, H)

    optimizer(np.zeros(2), func)
    assert solver.damping != LMSolverOptions().damping_init

    seen.clear()
    optimizer(np.zeros(2), func)
    assert seen[0] == LMSolverOptions().damping_init


def test_timeout():
    def func(x, grad):
        time.sleep(0.005)
        return slow_quadratic(x, grad)

    options = OptimizerOptions(max_duration_ms=1.0, solver=GDSolverOptions(lr=0.1))
    out = gradient_descent(np.zeros(2), func, options)
    assert out.stop_reason == StopReason.TIMED_OUT
    assert out.num_iters == 1


def test_user_callback_stops():
    seen = []

    def callback(x, out):
        seen.append(out.num_iters)
        return out.num_iters == 2

    options = OptimizerOptions(solver=GDSolverOptions(lr=0.1))
    out = gradient_descent(np.zeros(2), slow_quadratic, options, callback=callback)
    assert out.stop_reason == StopReason.USER_STOPPED
    assert seen == [1, 2]
    assert out.num_iters == 2


def test_min_error(shifted_residual):
    options = OptimizerOptions(min_error=1e-3)
    out = gauss_newton(np.zeros(2), shifted_residual([1.0, 1.0]), options)
    assert out.stop_reason == StopReason.MIN_ERROR
    assert out.converged


def test_min_delta_norm(shifted_residual):
    options = OptimizerOptions(min_delta_norm2=1e-6, min_grad_norm2=0.0)
    out = gauss_newton(np.zeros(1), shifted_residual([1.0], hessian_scale=2.0), options)
    assert out.stop_reason == StopReason.MIN_DELTA_NORM
    assert out.deltas2[-1] < 1e-6


def test_optimizer_object_reuses_solver(shifted_residual):
    optimizer = Optimizer(SolverGN(), OptimizerOptions())
    first = optimizer(np.zeros(2), shifted_residual([1.0, 2.0]))
    second = optimizer(np.zeros(3), shifted_residual([1.0, 2.0, 3.0]))
    assert first.converged and second.converged
    assert optimizer.solver.dims() == 3


def test_optimize_dispatch(shifted_residual):
    for method in ("gd", "gn", "lm"):
        x = np.zeros(2)
        out = optimize(x, shifted_residual([1.0, -1.0]), method=method)
        assert out.succeeded
        np.testing.assert_allclose(x, [1.0, -1.0], atol=1e-5)


def test_optimize_unknown_method(shifted_residual):
    with pytest.raises(ValueError):
        optimize(np.zeros(2), shifted_residual([1.0, 1.0]), method="bfgs")


def test_invalid_options():
    with pytest.raises(ValueError):
        OptimizerOptions(max_iters=-1)
    with pytest.raises(ValueError):
        OptimizerOptions(diff_method="symbolic")


def test_stop_reason_description():
    out = Output(stop_reason=StopReason.MAX_ITERS)
    assert "10" in out.stop_reason_description(OptimizerOptions(max_iters=10))
    out = Output(stop_reason=StopReason.MAX_CONSEC_FAILS, num_consec_failures=3)
    assert "3 times in a row" in out.stop_reason_description()
