from local_replanner.planning.limits import KinodynamicLimits
from local_replanner.planning.polynomial_trajectory import (
    PolynomialTrajectory,
    PolynomialTrajectoryGenerator,
)
from local_replanner.planning.uniform_bspline import UniformBSpline3D, basis_matrix
from local_replanner.planning.bspline_optimizer import (
    BSplineOptimizer,
    ControlPointState,
    OptimizationResult,
)

__all__ = [
    "KinodynamicLimits",
    "PolynomialTrajectory",
    "PolynomialTrajectoryGenerator",
    "UniformBSpline3D",
    "basis_matrix",
    "BSplineOptimizer",
    "ControlPointState",
    "OptimizationResult",
]
