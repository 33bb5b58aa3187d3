"""Sparse linear solvers and preconditioners for the pressure system."""

import logging
import typing

import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_array, csr_matrix, diags  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    bicgstab,
    cg,
    gmres,
    lgmres,
    spilu,
    spsolve,
)

from upscaler._precision import get_floating_point_info
from upscaler.errors import PreconditionerError, SolverError, ValidationError
from upscaler.types import (
    Preconditioner,
    PreconditionerFactory,
    Solver,
    SolverFunc,
)


__all__ = [
    "build_amg_preconditioner",
    "build_diagonal_preconditioner",
    "build_ilu_preconditioner",
    "solve_linear_system",
]

logger = logging.getLogger(__name__)


def build_amg_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix], cycle: str = "V", **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Algebraic Multigrid (AMG) preconditioner using PyAMG.

    :param A_csr: The coefficient matrix in CSR format.
    :param cycle: Multigrid cycle type ('V', 'W', 'F').
    :param kwargs: Additional arguments for `pyamg.smoothed_aggregation_solver`.
    :return: A SciPy `LinearOperator` that represents the AMG preconditioner.
    """
    ml_solver = pyamg.smoothed_aggregation_solver(csr_matrix(A_csr), **kwargs)
    return ml_solver.aspreconditioner(cycle=cycle)


def build_diagonal_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix],
) -> LinearOperator:
    """
    Creates a diagonal (Jacobi) preconditioner from the coefficient matrix.

    :param A_csr: The coefficient matrix in CSR format.
    :return: A SciPy `LinearOperator` that represents the diagonal preconditioner.
    """
    diag_elements = A_csr.diagonal()
    # Precision-adaptive threshold so float32 systems behave too
    epsilon = get_floating_point_info().eps
    threshold = max(1e-30, 100 * epsilon * float(np.max(np.abs(diag_elements), initial=0.0)))
    diag_elements = np.where(np.abs(diag_elements) < threshold, 1.0, diag_elements)
    M_diag = diags(1.0 / diag_elements, format="csr")
    return LinearOperator(shape=A_csr.shape, matvec=M_diag.dot)  # type: ignore[arg-type]


def build_ilu_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix], **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Incomplete LU (ILU) preconditioner using `spilu`.

    :param A_csr: The coefficient matrix in CSR format. It is converted to
        CSC, the format `spilu` works on.
    :return: A SciPy `LinearOperator` that solves the preconditioned system.
    """
    A_csc = A_csr.tocsc()
    kwargs.setdefault("drop_tol", 1e-5)
    kwargs.setdefault("fill_factor", 10)
    ilu_factor = spilu(A_csc, **kwargs)
    return LinearOperator(shape=A_csc.shape, matvec=ilu_factor.solve)  # type: ignore[arg-type]


def _spsolve(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any],
    *,
    rtol: float,
    atol: float,
    maxiter: typing.Optional[int],
    M: typing.Optional[typing.Any],
    callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
) -> typing.Tuple[np.typing.NDArray, int]:
    return spsolve(A, b), 0


def _lgmres(
    A: typing.Any,
    b: typing.Any,
    x0: typing.Optional[typing.Any],
    *,
    rtol: float,
    atol: float,
    maxiter: typing.Optional[int],
    M: typing.Optional[typing.Any],
    callback: typing.Optional[typing.Callable[[np.typing.NDArray], None]],
    inner_m: int = 30,
    outer_k: int = 3,
) -> typing.Tuple[np.typing.NDArray, int]:
    """
    LGMRES solver with configurable inner/outer iteration parameters.

    :param inner_m: Number of inner GMRES iterations per restart.
    :param outer_k: Number of vectors to carry between inner GMRES iterations.
    """
    return lgmres(  # type: ignore[return-value]
        A,
        b,
        x0=x0,
        M=M,
        rtol=rtol,
        atol=atol,
        maxiter=maxiter,
        callback=callback,
        inner_m=inner_m,
        outer_k=outer_k,
    )


_PRECONDITIONER_FACTORIES: typing.Dict[str, PreconditionerFactory] = {
    "amg": build_amg_preconditioner,
    "ilu": build_ilu_preconditioner,
    "diagonal": build_diagonal_preconditioner,
}
"""Preconditioner factories selectable by name."""

_SOLVER_FUNCS: typing.Dict[str, SolverFunc] = {
    "bicgstab": bicgstab,
    "gmres": gmres,
    "lgmres": _lgmres,
    "cg": cg,
    "direct": _spsolve,
}
"""Solver functions selectable by name."""


def _lookup(registry: typing.Mapping[str, typing.Any], name: str, kind: str) -> typing.Any:
    try:
        return registry[name]
    except KeyError:
        raise ValidationError(
            f"Unknown {kind}: {name!r}. Available: {sorted(registry)}"
        ) from None


def _get_preconditioner(
    A_csr: typing.Union[csr_array, csr_matrix],
    preconditioner: typing.Optional[Preconditioner],
) -> typing.Optional[LinearOperator]:
    if preconditioner is None or isinstance(preconditioner, LinearOperator):
        return preconditioner
    if isinstance(preconditioner, str):
        return _lookup(_PRECONDITIONER_FACTORIES, preconditioner, "preconditioner")(A_csr)
    if callable(preconditioner):
        factory = typing.cast(PreconditionerFactory, preconditioner)
        return factory(A_csr)
    raise ValidationError(f"Invalid preconditioner specification: {preconditioner!r}")


def _get_solver_func(solver: Solver) -> SolverFunc:
    if isinstance(solver, str):
        return _lookup(_SOLVER_FUNCS, solver, "solver")
    if callable(solver):
        return typing.cast(SolverFunc, solver)
    raise ValidationError(f"Unknown solver type: {solver!r}")


def _get_solver_funcs(
    solver: typing.Union[Solver, typing.Iterable[Solver]],
) -> typing.List[SolverFunc]:
    if isinstance(solver, (list, tuple)):
        if not solver:
            raise ValidationError("At least one solver must be given.")
        return [_get_solver_func(s) for s in solver]
    return [_get_solver_func(typing.cast(Solver, solver))]


def _solver_name(func: SolverFunc) -> str:
    return getattr(func, "__name__", repr(func)).lstrip("_")


def solve_linear_system(
    A_csr: typing.Union[csr_array, csr_matrix],
    b: np.typing.NDArray,
    max_iterations: int,
    rtol: typing.Optional[float] = None,
    atol: typing.Optional[float] = None,
    solver: typing.Union[Solver, typing.Iterable[Solver]] = "bicgstab",
    preconditioner: typing.Optional[Preconditioner] = "ilu",
    fallback_to_direct: bool = False,
) -> typing.Tuple[np.typing.NDArray, typing.Optional[LinearOperator]]:
    """
    Solves the linear system A·x = b, trying each solver in turn.

    :param A_csr: Coefficient matrix in CSR format.
    :param b: Right-hand side vector.
    :param max_iterations: Maximum number of iterations for each iterative solver.
    :param rtol: Relative tolerance for convergence. Defaults to 1e-8.
    :param atol: Absolute tolerance for convergence. Defaults to a small fraction of ‖b‖.
    :param solver: Solver or sequence of solvers ("bicgstab", "gmres", "lgmres", "cg",
        "direct"), or custom callable(s). A sequence is tried in order until one converges.
    :param preconditioner: Preconditioner name ("ilu", "amg", "diagonal"), factory,
        operator, or None.
    :param fallback_to_direct: Whether to fall back to `spsolve` when all iterative solvers fail.
    :return: A tuple (x, M) of the solution vector and the preconditioner used.
    :raises PreconditionerError: If the preconditioner cannot be built.
    :raises SolverError: If no solver converges.
    """
    solver_funcs = _get_solver_funcs(solver)
    is_direct = all(func is _spsolve for func in solver_funcs)
    if is_direct:
        M = None
    else:
        try:
            M = _get_preconditioner(A_csr, preconditioner)
        except ValidationError:
            raise
        except Exception as exc:
            raise PreconditionerError(f"Error building preconditioner: {exc}") from exc

    b_norm = float(np.linalg.norm(b))
    rtol = rtol if rtol is not None else 1e-8
    atol = atol if atol is not None else float(1e-14 * b_norm)

    for func in solver_funcs:
        x, info = func(
            A_csr,
            b,
            None,
            M=M,
            rtol=rtol,
            atol=atol,
            maxiter=max_iterations,
            callback=None,
        )
        if info == 0:
            logger.debug(f"Solver {_solver_name(func)!r} converged.")
            return np.ascontiguousarray(x), M
        logger.warning(
            f"Solver {_solver_name(func)!r} failed to converge within {max_iterations} iterations. Info: {info}"
        )

    if not fallback_to_direct or _spsolve in solver_funcs:
        raise SolverError(
            f"All solvers failed to converge within {max_iterations} iterations."
        )

    logger.warning("Falling back to direct solver (spsolve).")
    try:
        x = spsolve(A_csr, b)
    except Exception as exc:
        logger.error(f"Direct solver failed: {exc}")
        raise SolverError(
            "All iterative solvers and direct solver failed to solve the system."
        ) from exc
    if not np.all(np.isfinite(x)):
        raise SolverError("Direct solver returned a non-finite solution.")
    return np.ascontiguousarray(x), None
