"""Incompressible two-point flux approximation (TPFA) pressure solver."""

import logging
import typing

import attrs
import numba  # type: ignore[import-untyped]
import numpy as np
import numpy.typing as npt
from scipy.sparse import coo_matrix  # type: ignore[import-untyped]

from upscaler._precision import get_dtype
from upscaler.boundary_conditions import BoundaryConditions, FlowConditionType
from upscaler.errors import PreconditionerError, SolverError, ValidationError
from upscaler.grids import FACES_PER_CELL, CartesianGrid
from upscaler.linear_solvers import solve_linear_system
from upscaler.properties import PropertiesLike
from upscaler.types import DIMENSION, Preconditioner, Solver


__all__ = ["FlowSolution", "IncompressiblePressureSolver"]

logger = logging.getLogger(__name__)

FACE_INTERIOR = 0
FACE_DIRICHLET = 1
FACE_NEUMANN = 2
FACE_PERIODIC = 3


@attrs.frozen
class FlowSolution:
    """
    Pressure and face fluxes of a solved flow field.

    Fluxes are stored per half-face and are positive out of the owning cell.
    """

    grid: CartesianGrid = attrs.field(repr=False)
    cell_pressure: npt.NDArray[np.floating]
    """Pressure of each cell (Pa)."""
    face_fluxes: npt.NDArray[np.floating]
    """Outward volumetric flux through every local face (m³/s), shape (num_cells, 6)."""

    def __attrs_post_init__(self) -> None:
        for array in (self.cell_pressure, self.face_fluxes):
            array.flags.writeable = False

    def pressure(self, cell: int) -> float:
        return float(self.cell_pressure[cell])

    def outflux(self, cell: int, local_face: int) -> float:
        """Flux leaving `cell` through `local_face` (m³/s)."""
        return float(self.face_fluxes[cell, local_face])

    def boundary_fluxes(self) -> npt.NDArray[np.floating]:
        """Outward flux through every boundary face, indexed by boundary id."""
        return self.face_fluxes[self.grid.boundary_cells, self.grid.boundary_local_faces]

    def net_cell_outflux(self) -> npt.NDArray[np.floating]:
        """Sum of outward fluxes of each cell; equals the source term of a converged solve."""
        return self.face_fluxes.sum(axis=1)

    def estimate_cell_velocity(self) -> npt.NDArray[np.floating]:
        """
        Darcy velocity estimate of every cell, shape (num_cells, 3).

        Along each axis the velocity is the mean of the flux through the plus
        face and the flux into the cell through the minus face, divided by the
        face area.
        """
        velocity = np.empty((self.grid.num_cells, DIMENSION), dtype=self.face_fluxes.dtype)
        for axis in range(DIMENSION):
            minus, plus = 2 * axis, 2 * axis + 1
            velocity[:, axis] = (
                self.face_fluxes[:, plus] - self.face_fluxes[:, minus]
            ) / (2.0 * self.grid.face_areas[:, minus])
        return velocity


@numba.njit(cache=True)
def compute_face_transmissibilities(
    connections: np.ndarray,
    face_kinds: np.ndarray,
    half_transmissibilities: np.ndarray,
) -> np.ndarray:
    """
    Face transmissibilities from cell half transmissibilities.

    Faces coupling two cells (interior or periodic) use the harmonic
    combination of both half transmissibilities. Dirichlet faces use the
    half transmissibility of their cell. Neumann faces get zero.

    :param connections: Cell across each local face, -1 when uncoupled, shape (n, 6)
    :param face_kinds: Kind of each local face (interior, Dirichlet, Neumann, periodic)
    :param half_transmissibilities: Mobility-weighted half transmissibility of each local face
    :return: Transmissibility of each local face, shape (n, 6)
    """
    num_cells = connections.shape[0]
    transmissibilities = np.zeros_like(half_transmissibilities)
    for cell in range(num_cells):
        for face in range(6):
            kind = face_kinds[cell, face]
            if kind == FACE_DIRICHLET:
                transmissibilities[cell, face] = half_transmissibilities[cell, face]
            elif kind == FACE_INTERIOR or kind == FACE_PERIODIC:
                other = connections[cell, face]
                t1 = half_transmissibilities[cell, face]
                # Face seen from the other cell has the opposite orientation
                t2 = half_transmissibilities[other, face ^ 1]
                total = t1 + t2
                if total > 0.0:
                    transmissibilities[cell, face] = t1 * t2 / total
    return transmissibilities


@numba.njit(cache=True)
def compute_tpfa_system_arrays(
    connections: np.ndarray,
    face_kinds: np.ndarray,
    face_values: np.ndarray,
    transmissibilities: np.ndarray,
    source: np.ndarray,
) -> typing.Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Sparse triplets and right-hand side of `Σ_faces F = q`.

    With `F = T (p_cell - p_other - jump)` on coupled faces, `F = T (p_cell - p_b)`
    on Dirichlet faces, and the prescribed outward flux on Neumann faces.

    :return: Tuple of (rows, cols, values, rhs)
    """
    num_cells = connections.shape[0]
    max_entries = num_cells * (1 + 6)
    rows = np.empty(max_entries, dtype=np.int64)
    cols = np.empty(max_entries, dtype=np.int64)
    values = np.empty(max_entries, dtype=transmissibilities.dtype)
    rhs = source.copy()
    count = 0
    for cell in range(num_cells):
        diagonal = 0.0
        for face in range(6):
            kind = face_kinds[cell, face]
            trans = transmissibilities[cell, face]
            if kind == FACE_NEUMANN:
                rhs[cell] -= face_values[cell, face]
            elif kind == FACE_DIRICHLET:
                diagonal += trans
                rhs[cell] += trans * face_values[cell, face]
            else:
                diagonal += trans
                rows[count] = cell
                cols[count] = connections[cell, face]
                values[count] = -trans
                count += 1
                if kind == FACE_PERIODIC:
                    rhs[cell] += trans * face_values[cell, face]
        rows[count] = cell
        cols[count] = cell
        values[count] = diagonal
        count += 1
    return rows[:count], cols[:count], values[:count], rhs


class IncompressiblePressureSolver:
    """
    Cell-centred TPFA solver for incompressible flow driven by boundary conditions.

    `init` caches the geometric part of the transmissibilities and the face
    coupling implied by a boundary condition topology. `solve` then only
    evaluates mobilities, assembles and solves.

    Example usage:
    ```python
    solver = IncompressiblePressureSolver()
    solver.init(grid, properties, gravity=0.0, boundary_conditions=bcs)
    solution = solver.solve(properties, saturation, bcs)
    solution.boundary_fluxes()
    ```
    """

    def __init__(
        self,
        max_iterations: int = 500,
        preconditioner: typing.Optional[Preconditioner] = "ilu",
        fallback_to_direct: bool = True,
    ) -> None:
        self.max_iterations = max_iterations
        self.preconditioner = preconditioner
        self.fallback_to_direct = fallback_to_direct
        self._grid: typing.Optional[CartesianGrid] = None
        self._topology: typing.Optional[typing.Tuple[bytes, bytes]] = None
        self._geometric_factors: typing.Optional[np.ndarray] = None
        self._connections: typing.Optional[np.ndarray] = None
        self._face_kinds: typing.Optional[np.ndarray] = None
        self._solution: typing.Optional[FlowSolution] = None

    @staticmethod
    def _topology_key(
        boundary_conditions: BoundaryConditions,
    ) -> typing.Tuple[bytes, bytes]:
        return boundary_conditions.flow_types.tobytes(), boundary_conditions.partners.tobytes()

    def is_initialized_for(
        self, grid: CartesianGrid, boundary_conditions: BoundaryConditions
    ) -> bool:
        """Whether `init` was last called with this grid and boundary topology."""
        return self._grid is grid and self._topology == self._topology_key(
            boundary_conditions
        )

    def init(
        self,
        grid: CartesianGrid,
        properties: PropertiesLike,
        gravity: typing.Union[float, typing.Sequence[float]],
        boundary_conditions: BoundaryConditions,
    ) -> None:
        """
        Cache geometry and face coupling for a grid and boundary topology.

        :param grid: The block.
        :param properties: Properties supplying the cell permeabilities.
        :param gravity: Gravity magnitude or vector. Only zero is supported.
        :param boundary_conditions: Conditions whose topology the solver is set up for.
        """
        if properties.num_cells != grid.num_cells:
            raise ValidationError(
                f"Grid has {grid.num_cells} cells but properties cover {properties.num_cells}."
            )
        if len(boundary_conditions) != grid.num_boundary_faces:
            raise ValidationError(
                f"Expected conditions for {grid.num_boundary_faces} boundary faces, "
                f"got {len(boundary_conditions)}."
            )
        if np.any(np.asarray(gravity, dtype=np.float64) != 0.0):
            logger.warning("Gravity not yet handled by the flow solver; ignoring it.")

        axes = np.arange(FACES_PER_CELL) // 2
        half_lengths = 0.5 * grid.cell_sizes[:, axes]
        self._geometric_factors = (
            properties.permeability[:, axes] * grid.face_areas / half_lengths
        )

        connections = grid.neighbours.copy()
        face_kinds = np.zeros((grid.num_cells, FACES_PER_CELL), dtype=np.int8)
        cells, faces = grid.boundary_cells, grid.boundary_local_faces
        flow_types = boundary_conditions.flow_types
        face_kinds[cells, faces] = np.select(
            [
                flow_types == FlowConditionType.DIRICHLET,
                flow_types == FlowConditionType.NEUMANN,
                flow_types == FlowConditionType.PERIODIC,
            ],
            [FACE_DIRICHLET, FACE_NEUMANN, FACE_PERIODIC],
        )
        periodic = flow_types == FlowConditionType.PERIODIC
        connections[cells[periodic], faces[periodic]] = grid.boundary_cells[
            boundary_conditions.partners[periodic]
        ]
        self._connections = connections
        self._face_kinds = face_kinds
        self._grid = grid
        self._topology = self._topology_key(boundary_conditions)
        self._solution = None
        logger.debug(
            f"Initialised pressure solver for {grid.num_cells} cells, "
            f"{int(np.count_nonzero(periodic))} periodic boundary faces."
        )

    @property
    def solution(self) -> FlowSolution:
        """Most recent flow solution."""
        if self._solution is None:
            raise ValidationError("The pressure system has not been solved yet.")
        return self._solution

    def solve(
        self,
        properties: PropertiesLike,
        saturation: npt.NDArray[np.floating],
        boundary_conditions: BoundaryConditions,
        source: typing.Optional[npt.NDArray[np.floating]] = None,
        residual_tolerance: float = 1e-8,
        linsolver_verbosity: int = 0,
        linsolver_type: typing.Union[Solver, typing.Sequence[Solver]] = "bicgstab",
    ) -> FlowSolution:
        """
        Solve for pressure and face fluxes.

        :param properties: Properties supplying the total mobility of each cell.
        :param saturation: Water saturation of each cell.
        :param boundary_conditions: Boundary conditions with the topology given to `init`.
        :param source: Volumetric source of each cell (m³/s). Defaults to zero.
        :param residual_tolerance: Relative residual tolerance of the linear solve.
        :param linsolver_verbosity: Above zero, log a summary of the solve.
        :param linsolver_type: Linear solver name(s) tried in order.
        :return: The flow solution, also kept as `solution`.
        :raises SolverError: If the linear system cannot be solved.
        """
        grid = self._grid
        if grid is None:
            raise ValidationError("Call `init` before solving the pressure system.")
        if self._topology != self._topology_key(boundary_conditions):
            raise ValidationError(
                "Boundary condition topology differs from the one the pressure solver was initialised with."
            )
        saturation = np.asarray(saturation)
        if saturation.shape != (grid.num_cells,):
            raise ValidationError(
                f"Expected {grid.num_cells} saturations, got shape {saturation.shape}."
            )
        dtype = get_dtype()
        if source is None:
            source = np.zeros(grid.num_cells, dtype=dtype)
        else:
            source = np.asarray(source, dtype=dtype)

        mobility = np.asarray(
            properties.total_mobility(np.arange(grid.num_cells), saturation),
            dtype=dtype,
        )
        half_transmissibilities = mobility[:, None] * self._geometric_factors
        face_values = np.zeros((grid.num_cells, FACES_PER_CELL), dtype=dtype)
        face_values[grid.boundary_cells, grid.boundary_local_faces] = (
            boundary_conditions.flow_values
        )

        transmissibilities = compute_face_transmissibilities(
            self._connections, self._face_kinds, half_transmissibilities
        )
        rows, cols, values, rhs = compute_tpfa_system_arrays(
            self._connections, self._face_kinds, face_values, transmissibilities, source
        )
        if not boundary_conditions.has_dirichlet_pressure:
            # Pressure is only defined up to a constant; pin cell 0 to zero
            keep = (rows != 0) & (cols != 0)
            rows = np.append(rows[keep], 0)
            cols = np.append(cols[keep], 0)
            values = np.append(values[keep], 1.0)
            rhs[0] = 0.0

        A_csr = coo_matrix(
            (values, (rows, cols)), shape=(grid.num_cells, grid.num_cells)
        ).tocsr()
        try:
            pressure, _ = solve_linear_system(
                A_csr=A_csr,
                b=rhs,
                max_iterations=self.max_iterations,
                rtol=residual_tolerance,
                solver=linsolver_type,
                preconditioner=self.preconditioner,
                fallback_to_direct=self.fallback_to_direct,
            )
        except (SolverError, PreconditionerError) as exc:
            logger.error(f"Pressure solve failed: {exc}")
            raise

        if linsolver_verbosity > 0:
            residual = np.linalg.norm(A_csr @ pressure - rhs)
            reference = max(float(np.linalg.norm(rhs)), np.finfo(float).tiny)
            logger.info(
                f"Pressure solve on {grid.num_cells} cells: relative residual {residual / reference:.3e}"
            )

        face_fluxes = self._compute_face_fluxes(
            pressure.astype(dtype, copy=False), transmissibilities, face_values
        )
        self._solution = FlowSolution(
            grid=grid, cell_pressure=pressure.astype(dtype, copy=False), face_fluxes=face_fluxes
        )
        if linsolver_verbosity > 0:
            imbalance = np.abs(self._solution.net_cell_outflux() - source).max()
            logger.info(f"Largest cell flux imbalance {imbalance:.3e} m³/s")
        return self._solution

    def _compute_face_fluxes(
        self,
        pressure: np.ndarray,
        transmissibilities: np.ndarray,
        face_values: np.ndarray,
    ) -> np.ndarray:
        kinds = self._face_kinds
        coupled = (kinds == FACE_INTERIOR) | (kinds == FACE_PERIODIC)
        other_pressure = pressure[np.where(coupled, self._connections, 0)]
        jumps = np.where(kinds == FACE_PERIODIC, face_values, 0.0)
        cell_pressure = pressure[:, None]
        return np.select(
            [coupled, kinds == FACE_DIRICHLET, kinds == FACE_NEUMANN],
            [
                transmissibilities * (cell_pressure - other_pressure - jumps),
                transmissibilities * (cell_pressure - face_values),
                face_values,
            ],
            default=0.0,
        )
