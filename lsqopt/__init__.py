"""lsqopt - nonlinear least-squares and unconstrained minimization.

Example
-------
>>> import numpy as np
>>> import torch
>>> from lsqopt import levenberg_marquardt
>>> target = torch.tensor([3.0, 2.0, 1.0], dtype=torch.float64)
>>> x = np.zeros(3)
>>> out = levenberg_marquardt(x, lambda z: z - target)  # differentiated by torch
>>> out.succeeded and np.allclose(x, target.numpy())
True
"""

__version__ = "0.1.0"

from .core import (
    Cost,
    CostOptions,
    LogOptions,
    OptimizerOptions,
    Output,
    SolverOptions,
    StopReason,
)
from .diff import (
    approx_jacobian,
    auto_diff_residuals,
    check_residuals_gradient,
    num_diff_residuals,
)
from .optimizer import (
    Optimizer,
    gauss_newton,
    gradient_descent,
    levenberg_marquardt,
    optimize,
)
from .solvers import (
    GDSolverOptions,
    GNSolverOptions,
    LMSolverOptions,
    SolverBase,
    SolverGD,
    SolverGN,
    SolverLM,
)
from .traits import (
    DYNAMIC,
    ParamsTrait,
    get_params_trait,
    params_trait,
    register_params_trait,
)

__all__ = [
    "Cost",
    "CostOptions",
    "DYNAMIC",
    "GDSolverOptions",
    "GNSolverOptions",
    "LMSolverOptions",
    "LogOptions",
    "Optimizer",
    "OptimizerOptions",
    "Output",
    "ParamsTrait",
    "SolverBase",
    "SolverGD",
    "SolverGN",
    "SolverLM",
    "SolverOptions",
    "StopReason",
    "approx_jacobian",
    "auto_diff_residuals",
    "check_residuals_gradient",
    "gauss_newton",
    "get_params_trait",
    "gradient_descent",
    "levenberg_marquardt",
    "num_diff_residuals",
    "optimize",
    "params_trait",
    "register_params_trait",
]
