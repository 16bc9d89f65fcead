"""Differentiation collaborators turning a residual function into an accumulator.

The solvers consume callbacks of the form ``func(x, grad, H)`` that add
``J^T r`` to ``grad`` and ``J^T J`` to ``H``. Callers that only write
``residuals(x)`` get such a callback from :func:`auto_diff_residuals` (torch
autograd) or :func:`num_diff_residuals` (central finite differences).
Derivatives are taken in the tangent space of the parameters: the Jacobian
column ``i`` is the derivative of ``residuals(x [+] t e_i)`` at ``t = 0``
where ``[+]`` is the trait's manifold update.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import numpy as np
import torch

from .core import DIFF_METHODS
from .linalg import is_sparse, sparse_zeros
from .logging import get_logger
from .solvers.base import count_positional_params
from .traits import ParamsTrait, resolve_trait

logger = get_logger(__name__)

Residuals = Callable[[Any], Any]


def _residual_vector(output: Any) -> np.ndarray:
    if isinstance(output, tuple):
        raise ValueError("Residual functions must return residuals, not (error, count) pairs")
    if isinstance(output, torch.Tensor):
        output = output.detach().cpu().numpy()
    return np.atleast_1d(np.asarray(output, dtype=float)).reshape(-1)


def _add_normal_equations(grad: Any, H: Any, J: np.ndarray, res: np.ndarray) -> None:
    if grad is not None:
        grad += J.T @ res
    if H is not None:
        JtJ = J.T @ J
        if is_sparse(H):
            H[:, :] = H.toarray() + JtJ
        else:
            H += JtJ


def approx_jacobian(
    residuals: Residuals,
    x: Any,
    trait: Optional[ParamsTrait] = None,
    eps: float = 1e-6,
) -> np.ndarray:
    """Central-difference Jacobian of ``residuals`` in the tangent space of ``x``.

    Parameters
    ----------
    residuals:
        Function returning a residual vector given parameters.
    x:
        Point where the Jacobian is approximated. It is never modified.
    trait:
        Parameter trait of ``x``; resolved from its type when None.
    eps:
        Perturbation size for finite differences.
    """
    if eps <= 0:
        raise ValueError("eps must be positive")
    trait = resolve_trait(x, trait)
    dims = trait.check_dims(x)
    columns = []
    for i in range(dims):
        ei = np.zeros(dims)
        ei[i] = eps
        r_plus = _residual_vector(residuals(trait.pluseq(trait.copy(x), ei)))
        r_minus = _residual_vector(residuals(trait.pluseq(trait.copy(x), -ei)))
        columns.append((r_plus - r_minus) / (2.0 * eps))
    if not columns:
        return np.zeros((_residual_vector(residuals(x)).size, 0))
    return np.stack(columns, axis=1)


def num_diff_residuals(
    residuals: Residuals, trait: Optional[ParamsTrait] = None, eps: float = 1e-6
) -> Callable[..., np.ndarray]:
    """Wrap ``residuals(x)`` into an accumulator using finite differences."""
    if eps <= 0:
        raise ValueError("eps must be positive")

    def accumulate(x: Any, grad: Any, H: Any = None) -> np.ndarray:
        res = _residual_vector(residuals(x))
        if grad is None and H is None:
            return res
        J = approx_jacobian(residuals, x, trait, eps)
        _add_normal_equations(grad, H, J, res)
        return res

    return accumulate


def auto_diff_residuals(
    residuals: Residuals,
    trait: Optional[ParamsTrait] = None,
    dtype: torch.dtype = torch.float64,
) -> Callable[..., np.ndarray]:
    """Wrap ``residuals(x)`` into an accumulator using torch autograd.

    ``residuals`` receives the parameters cast to torch (through the trait's
    ``cast``) and must compute its output with torch operations.
    """

    def accumulate(x: Any, grad: Any, H: Any = None) -> np.ndarray:
        tr = resolve_trait(x, trait)
        dims = tr.check_dims(x)

        def forward(delta: torch.Tensor) -> torch.Tensor:
            out = residuals(tr.pluseq(tr.cast(x, dtype), delta))
            return torch.atleast_1d(torch.as_tensor(out, dtype=dtype)).reshape(-1)

        delta0 = torch.zeros(dims, dtype=dtype)
        with torch.no_grad():
            res = forward(delta0).cpu().numpy()
        if grad is None and H is None:
            return res
        J = torch.autograd.functional.jacobian(forward, delta0)
        J = J.detach().cpu().numpy().reshape(res.size, dims)
        _add_normal_equations(grad, H, J, res)
        return res

    return accumulate


def check_residuals_gradient(
    x: Any,
    func: Callable[..., Any],
    trait: Optional[ParamsTrait] = None,
    eps: float = 1e-6,
    tol: float = 1e-4,
    sparse: bool = False,
) -> bool:
    """Compare a hand-written accumulator with finite differences.

    ``func(x, grad, H)`` must return its residual vector and tolerate
    ``grad = H = None``. Returns True when both ``grad`` and ``H`` match
    ``J^T r`` and ``J^T J`` within ``tol``.
    """
    trait = resolve_trait(x, trait)
    dims = trait.check_dims(x)
    grad = np.zeros(dims)
    H = sparse_zeros(dims) if sparse else np.zeros((dims, dims))
    func(x, grad, H)

    def residuals(z: Any) -> np.ndarray:
        return _residual_vector(func(z, None, None))

    res = residuals(x)
    J = approx_jacobian(residuals, x, trait, eps)
    H_dense = H.toarray() if is_sparse(H) else np.asarray(H)
    grad_ok = np.allclose(grad, J.T @ res, rtol=tol, atol=tol)
    H_ok = np.allclose(H_dense, J.T @ J, rtol=tol, atol=tol)
    if not grad_ok:
        logger.warning("Gradient mismatch: %s vs numerical %s", grad, J.T @ res)
    if not H_ok:
        logger.warning("Hessian mismatch:\n%s\nvs numerical\n%s", H_dense, J.T @ J)
    return bool(grad_ok and H_ok)


def resolve_residuals(
    func: Callable[..., Any],
    method: str = "auto",
    trait: Optional[ParamsTrait] = None,
) -> Callable[..., Any]:
    """Return an accumulator for ``func``.

    A callback taking a single positional argument only computes residuals
    and is wrapped with the requested differentiation; any other callback is
    assumed to accumulate its own gradient and is returned unchanged.
    """
    if method not in DIFF_METHODS:
        raise ValueError(f"Unknown differentiation method {method!r}")
    if count_positional_params(func) != 1:
        return func
    if method == "numeric":
        return num_diff_residuals(func, trait)
    return auto_diff_residuals(func, trait)


__all__ = [
    "approx_jacobian",
    "auto_diff_residuals",
    "check_residuals_gradient",
    "num_diff_residuals",
    "resolve_residuals",
]
