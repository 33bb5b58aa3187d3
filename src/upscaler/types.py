import enum
import typing

import numpy as np
from scipy.sparse import csr_array, csr_matrix
from scipy.sparse.linalg import LinearOperator
from typing_extensions import TypeAlias


__all__ = [
    "Axis",
    "FlowDirection",
    "BoundaryConditionType",
    "FloatOrArray",
    "PermeabilityTensor",
    "Vector3",
    "Preconditioner",
    "PreconditionerFactory",
    "Solver",
    "SolverFunc",
]

FlowDirection: TypeAlias = int
"""Axis index (0 = x, 1 = y, 2 = z) along which the block is driven."""

FloatOrArray = typing.Union[float, np.typing.NDArray[np.floating]]
PermeabilityTensor = np.typing.NDArray[np.floating]
"""Dense 3x3 tensor. No symmetry is assumed."""
Vector3 = typing.Tuple[float, float, float]

DIMENSION = 3
"""Spatial dimension of every block handled by upscaler."""


class Axis(enum.IntEnum):
    """Cartesian axes of a block."""

    X = 0
    Y = 1
    Z = 2


BoundaryConditionType = typing.Literal["fixed", "linear", "periodic", "fully_periodic"]
"""
Boundary condition families used to drive an upscaling run

- "fixed": Dirichlet pressure on the flow-axis ends, sealed lateral faces
- "linear": Dirichlet pressure with a linear profile on every boundary face
- "periodic": Dirichlet pressure on the flow-axis ends, periodic lateral faces
- "fully_periodic": periodic everywhere, pressure jump across the flow-axis pair
"""


PreconditionerStr = typing.Literal["ilu", "amg", "diagonal"]
PreconditionerFactory = typing.Callable[
    [typing.Union[csr_array, csr_matrix]], LinearOperator
]
Preconditioner = typing.Union[
    LinearOperator, PreconditionerStr, PreconditionerFactory, str
]

SolverStr = typing.Literal["bicgstab", "gmres", "lgmres", "cg", "direct"]


class SolverFunc(typing.Protocol):
    """
    Protocol for an (iterative) linear solver function.

    Matches the keyword interface of `scipy.sparse.linalg` solvers and returns
    the solution together with an info flag (0 on success).
    """

    def __call__(
        self,
        A: typing.Any,
        b: typing.Any,
        x0: typing.Optional[typing.Any],
        *,
        rtol: float,
        atol: float,
        maxiter: typing.Optional[int],
        M: typing.Optional[typing.Any],
        callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    ) -> typing.Tuple[np.typing.NDArray, int]: ...


Solver = typing.Union[SolverFunc, SolverStr, str]

