"""Gauss-Newton solver: solves ``H dx = -g`` with ``H ~ J^T J`` and ``g = J^T r``."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from ..core import FLOAT_EPSILON, SolverOptions
from ..linalg import (
    fill_lower_from_upper,
    inv_cov,
    is_sparse,
    require_scipy,
    safe_inverse,
    solve_ldlt,
    sparse_zeros,
)
from ..logging import get_logger
from ..traits import ParamsTrait
from .base import ResidualsFunc, SolverBase, Workspace

logger = get_logger(__name__)


@dataclass(frozen=True)
class GNSolverOptions(SolverOptions):
    """Gauss-Newton options.

    Args:
        use_ldlt: Solve with a symmetric positive definite factorization.
            When False a dense inverse is used instead. Sparse systems always
            use the factorization.
        H_is_full: Whether the callback fills the whole Hessian or only its
            upper triangle.
        check_min_H_diag: Reject a build whose Hessian has a diagonal
            coefficient smaller than this in magnitude. Disabled when 0.
        sparse: Store the Hessian as a SciPy sparse matrix.
    """

    use_ldlt: bool = True
    H_is_full: bool = True
    check_min_H_diag: float = 0.0
    sparse: bool = False


class SolverGN(SolverBase):
    """Gauss-Newton.

    The residual callback is called as ``func(x, grad, H)`` and adds
    ``J^T r`` into ``grad`` and ``J^T J`` into ``H``. With ``sparse=True``
    ``H`` is a ``scipy.sparse.lil_matrix`` that supports item assignment.
    """

    def __init__(self, options: Optional[GNSolverOptions] = None, dims: Optional[int] = None) -> None:
        options = options if options is not None else GNSolverOptions()
        if options.sparse:
            require_scipy()
            if not options.use_ldlt:
                logger.warning("LDLT must be used with sparse matrices")
        super().__init__(options, dims)

    def _allocate(self, dims: int) -> Workspace:
        return Workspace(grad=np.zeros(dims), H=self._zero_hessian(dims))

    def _zero_hessian(self, dims: int) -> Any:
        if self.options.sparse:
            return sparse_zeros(dims)
        return np.zeros((dims, dims))

    def clear(self) -> None:
        super().clear()
        if is_sparse(self.workspace.H):
            self.workspace.H = self._zero_hessian(self.workspace.dims)
        else:
            self.workspace.H.fill(0.0)

    def build(self, x: Any, func: ResidualsFunc, trait: Optional[ParamsTrait] = None) -> bool:
        """Rebuild gradient and Hessian at ``x``, returns True on success."""
        self.resize_if_needed(x, trait)
        self.clear()
        if not self._accumulate(func(x, self.workspace.grad, self.workspace.H)):
            return False

        self.clamp_gradient()

        min_diag = self.options.check_min_H_diag
        if min_diag > 0 and np.any(np.abs(self.workspace.H.diagonal()) < min_diag):
            if self.options.log.enable:
                logger.warning("Hessian has very low diagonal coefficients")
            return False

        if not self.options.H_is_full:
            self.workspace.H = fill_lower_from_upper(self.workspace.H)
        return True

    def is_finite(self) -> bool:
        H = self.workspace.H
        values = H.tocsr().data if is_sparse(H) else H
        return super().is_finite() and bool(np.all(np.isfinite(values)))

    def system_matrix(self) -> Any:
        """Matrix actually factorized by :meth:`solve`."""
        return self.workspace.H

    def solve(self) -> Optional[np.ndarray]:
        if self.cost.num_residuals == 0:
            return None
        H = self.system_matrix()
        grad = self.workspace.grad
        if self.options.use_ldlt or is_sparse(H):
            dx = solve_ldlt(H, grad)
            return None if dx is None else -dx
        if self.workspace.dims == 1:
            h = float(H[0, 0])
            if h > FLOAT_EPSILON:
                return -grad / h
            return np.zeros_like(grad)
        inv = safe_inverse(H)
        return None if inv is None else -inv @ grad

    @property
    def hessian(self) -> Any:
        """Latest Hessian approximation, without damping."""
        return self.workspace.H

    def max_std_dev(self, use_damped: bool = True) -> float:
        """Square root of the largest variance of ``H^-1``.

        ``use_damped`` reads it off the damped system matrix (what the solver
        factorizes), otherwise off the undamped Hessian.
        """
        H = self.system_matrix() if use_damped else self.hessian
        cov = inv_cov(H)
        if cov is None:
            return math.nan
        return math.sqrt(float(np.max(np.diag(cov))))


__all__ = ["GNSolverOptions", "SolverGN"]
