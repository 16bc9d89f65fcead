"""Linear algebra helpers for the normal equations.

Dense systems are factorized with NumPy's Cholesky decomposition. Sparse
systems (SciPy sparse matrices) use SuperLU in symmetric mode with diagonal
pivoting, whose pivots are the ``D`` of an ``L D L^T`` factorization; the
matrix is positive definite iff every pivot is positive. SciPy is optional
and only required for sparse Hessians.
"""

from __future__ import annotations

from typing import Any, Optional

import numpy as np

try:
    import scipy.sparse as sp
    from scipy.sparse.linalg import splu

    HAS_SCIPY = True
except ImportError:  # pragma: no cover - SciPy is optional
    HAS_SCIPY = False
    sp = None
    splu = None

Array = np.ndarray


def require_scipy() -> None:
    if not HAS_SCIPY:
        raise ImportError("Sparse Hessians require SciPy (pip install 'lsqopt[sparse]')")


def is_sparse(mat: Any) -> bool:
    return HAS_SCIPY and sp.issparse(mat)


def is_pos_def(mat: Array, tol: float = 1e-12) -> bool:
    """Check if a matrix is positive definite via eigenvalues."""
    if is_sparse(mat):
        mat = mat.toarray()
    sym = 0.5 * (mat + mat.T)
    eigvals = np.linalg.eigvalsh(sym)
    return bool(np.all(eigvals > tol))


def fill_lower_from_upper(mat: Any) -> Any:
    """Mirror the strict upper triangle of ``mat`` into its lower triangle.

    Dense matrices are updated in place; sparse matrices are returned as a
    new CSC matrix.
    """
    if is_sparse(mat):
        upper = sp.triu(mat, format="csc")
        return (upper + sp.triu(mat, k=1, format="csc").T).tocsc()
    rows, cols = np.tril_indices(mat.shape[0], k=-1)
    mat[rows, cols] = mat[cols, rows]
    return mat


class _SparseLDLT:
    """Sparse symmetric factorization exposing ``solve`` like ``cho_solve``."""

    def __init__(self, mat: Any) -> None:
        self._lu = splu(
            sp.csc_matrix(mat),
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options={"SymmetricMode": True},
        )
        self.symmetric = bool(np.array_equal(self._lu.perm_r, self._lu.perm_c))
        self.pivots = self._lu.U.diagonal()

    def is_positive(self) -> bool:
        return self.symmetric and bool(np.all(self.pivots > 0))

    def solve(self, rhs: Array) -> Array:
        return self._lu.solve(rhs)


def _factorize_sparse(mat: Any) -> Optional[_SparseLDLT]:
    require_scipy()
    try:
        ldlt = _SparseLDLT(mat)
    except RuntimeError:
        # SuperLU reports exactly singular factors this way
        return None
    if not ldlt.symmetric:
        # Row pivoting broke the symmetric structure, fall back to a dense check
        return ldlt if is_pos_def(mat) else None
    return ldlt if ldlt.is_positive() else None


def solve_ldlt(mat: Any, rhs: Array) -> Optional[Array]:
    """Solve ``mat @ x = rhs`` for a symmetric positive definite ``mat``.

    Returns None when ``mat`` is not positive definite.
    """
    rhs = np.asarray(rhs, dtype=float)
    if is_sparse(mat):
        ldlt = _factorize_sparse(mat)
        return None if ldlt is None else np.asarray(ldlt.solve(rhs), dtype=float)
    try:
        chol = np.linalg.cholesky(mat)
    except np.linalg.LinAlgError:
        return None
    y = np.linalg.solve(chol, rhs)
    return np.linalg.solve(chol.T, y)


def sparse_zeros(dims: int) -> Any:
    """Empty sparse matrix supporting item assignment."""
    require_scipy()
    return sp.lil_matrix((dims, dims))


def sparse_identity(dims: int) -> Any:
    require_scipy()
    return sp.identity(dims, format="csc")


def safe_inverse(mat: Array) -> Optional[Array]:
    """Dense inverse, or None for a singular matrix."""
    try:
        return np.linalg.inv(mat)
    except np.linalg.LinAlgError:
        return None


def inv_cov(mat: Any) -> Optional[Array]:
    """Inverse of a symmetric positive definite matrix, as a dense array.

    Used to read the parameter covariance off a Hessian approximation.
    Returns None when ``mat`` is not positive definite.
    """
    n = mat.shape[0]
    return solve_ldlt(mat, np.eye(n))


__all__ = [
    "Array",
    "HAS_SCIPY",
    "fill_lower_from_upper",
    "inv_cov",
    "is_pos_def",
    "is_sparse",
    "require_scipy",
    "safe_inverse",
    "solve_ldlt",
    "sparse_identity",
    "sparse_zeros",
]
