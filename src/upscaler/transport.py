"""Explicit first-order upwind transport of water saturation."""

import logging
import math
import typing

import attrs
import numba  # type: ignore[import-untyped]
import numpy as np
import numpy.typing as npt

from upscaler._precision import get_dtype
from upscaler.boundary_conditions import BoundaryConditions, SaturationConditionType
from upscaler.config import Config
from upscaler.constants import c
from upscaler.errors import ValidationError
from upscaler.grids import FACES_PER_CELL, CartesianGrid
from upscaler.pressure import FlowSolution
from upscaler.properties import ReservoirProperties


__all__ = ["TransportStepMeta", "ExplicitTransportSolver"]

logger = logging.getLogger(__name__)


@attrs.frozen
class TransportStepMeta:
    """Summary of one call to `ExplicitTransportSolver.transport_solve`."""

    substeps: int
    """Number of explicit sub-steps taken."""
    substep_size: float
    """Size of each sub-step (s)."""
    max_stable_step: float
    """Largest step the CFL condition allows (s). Infinite for a stagnant field."""
    water_inflow: float
    """Water volume entering through non-periodic boundary faces during the step (m³)."""
    water_outflow: float
    """Water volume leaving through non-periodic boundary faces during the step (m³)."""


@numba.njit(cache=True)
def compute_net_water_outflux(
    face_fluxes: np.ndarray,
    fractional_flow: np.ndarray,
    upwind_cells: np.ndarray,
    boundary_fractional_flow: np.ndarray,
) -> typing.Tuple[np.ndarray, float, float]:
    """
    Net upwinded water flux leaving each cell.

    Outflow faces carry the cell's own fractional flow. Inflow faces carry the
    fractional flow of the upwind cell when there is one (interior neighbour
    or periodic partner), otherwise the prescribed boundary fractional flow.

    :param face_fluxes: Outward total flux of every local face (m³/s), shape (n, 6)
    :param fractional_flow: Water fractional flow of each cell
    :param upwind_cells: Cell feeding each local face on inflow, -1 for Dirichlet boundary faces
    :param boundary_fractional_flow: Fractional flow entering through Dirichlet boundary faces
    :return: Tuple of (net water outflux per cell, boundary water inflow rate, boundary water outflow rate)
    """
    num_cells = face_fluxes.shape[0]
    net_outflux = np.zeros(num_cells, dtype=face_fluxes.dtype)
    boundary_inflow = 0.0
    boundary_outflow = 0.0
    for cell in range(num_cells):
        total = 0.0
        for face in range(6):
            flux = face_fluxes[cell, face]
            upwind = upwind_cells[cell, face]
            if flux >= 0.0:
                water = flux * fractional_flow[cell]
                if upwind < 0:
                    boundary_outflow += water
            elif upwind >= 0:
                water = flux * fractional_flow[upwind]
            else:
                water = flux * boundary_fractional_flow[cell, face]
                boundary_inflow -= water
            total += water
        net_outflux[cell] = total
    return net_outflux, boundary_inflow, boundary_outflow


class ExplicitTransportSolver:
    """
    First-order upwind, explicit Euler transport of water saturation.

    A transport step of length `time` is split into sub-steps satisfying the
    CFL condition `dt * max|df/ds| * Σ outflux <= cfl_fraction * pore volume`.
    Saturations are clipped to [0, 1] after every sub-step.
    """

    def __init__(self) -> None:
        self.cfl_fraction = 0.5
        self.min_substeps = 1
        self._grid: typing.Optional[CartesianGrid] = None
        self._properties: typing.Optional[ReservoirProperties] = None
        self._pore_volumes: typing.Optional[np.ndarray] = None
        self._upwind_cells: typing.Optional[np.ndarray] = None
        self._dirichlet_saturations: typing.Optional[np.ndarray] = None
        self._max_fractional_flow_derivative: typing.Optional[np.ndarray] = None

    def init(self, config: Config) -> None:
        """Read the transport settings from `config`."""
        self.cfl_fraction = config.cfl_fraction
        self.min_substeps = config.min_transport_substeps

    def init_obj(
        self,
        grid: CartesianGrid,
        properties: ReservoirProperties,
        boundary_conditions: BoundaryConditions,
    ) -> None:
        """
        Cache topology and rock data for a run.

        :param grid: The block.
        :param properties: Reservoir properties of the block.
        :param boundary_conditions: Conditions supplying boundary saturations and periodic pairing.
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
        self._grid = grid
        self._properties = properties
        self._pore_volumes = properties.pore_volumes(grid)

        cells, faces = grid.boundary_cells, grid.boundary_local_faces
        periodic = boundary_conditions.saturation_types == SaturationConditionType.PERIODIC
        upwind_cells = grid.neighbours.copy()
        upwind_cells[cells[periodic], faces[periodic]] = grid.boundary_cells[
            boundary_conditions.partners[periodic]
        ]
        self._upwind_cells = upwind_cells

        dirichlet_saturations = np.zeros((grid.num_cells, FACES_PER_CELL))
        dirichlet_saturations[cells[~periodic], faces[~periodic]] = (
            boundary_conditions.saturation_values[~periodic]
        )
        self._dirichlet_saturations = dirichlet_saturations

        samples = np.linspace(0.0, 1.0, int(c.FRACTIONAL_FLOW_DERIVATIVE_SAMPLES))
        derivative_by_rock = np.zeros(properties.num_rock_types)
        for rock_type in range(properties.num_rock_types):
            members = np.flatnonzero(properties.rock_types == rock_type)
            if members.size == 0:
                continue
            fractional_flow = np.asarray(
                properties.fractional_flow(int(members[0]), samples)
            )
            derivative_by_rock[rock_type] = float(
                np.max(np.abs(np.gradient(fractional_flow, samples)))
            )
        self._max_fractional_flow_derivative = derivative_by_rock[properties.rock_types]

    def _boundary_fractional_flow(self) -> np.ndarray:
        grid = self._grid
        boundary = np.zeros((grid.num_cells, FACES_PER_CELL))  # type: ignore[union-attr]
        dirichlet = self._upwind_cells < 0  # type: ignore[operator]
        cells = np.nonzero(dirichlet)[0]
        if cells.size:
            boundary[dirichlet] = self._properties.fractional_flow(  # type: ignore[union-attr]
                cells, self._dirichlet_saturations[dirichlet]  # type: ignore[index]
            )
        return boundary

    def stable_step(self, flow_solution: FlowSolution) -> float:
        """Largest explicit step (s) allowed by the CFL condition."""
        outflow = np.clip(flow_solution.face_fluxes, 0.0, None).sum(axis=1)
        speed = outflow * self._max_fractional_flow_derivative
        active = speed > 0.0
        if not np.any(active):
            return math.inf
        return float(np.min(self._pore_volumes[active] / speed[active]))  # type: ignore[index]

    def transport_solve(
        self,
        saturation: npt.NDArray[np.floating],
        time: float,
        gravity: typing.Union[float, typing.Sequence[float]],
        flow_solution: FlowSolution,
        injection: typing.Optional[npt.NDArray[np.floating]] = None,
    ) -> TransportStepMeta:
        """
        Advance `saturation` in place by `time` seconds.

        :param saturation: Water saturation of each cell, updated in place.
        :param time: Step length (s).
        :param gravity: Gravity magnitude or vector. Only zero is supported.
        :param flow_solution: Flow field driving the transport.
        :param injection: Water source of each cell (m³/s). Defaults to zero.
        :return: Step summary.
        """
        if self._grid is None:
            raise ValidationError("Call `init_obj` before transporting saturations.")
        grid = self._grid
        if saturation.shape != (grid.num_cells,):
            raise ValidationError(
                f"Expected {grid.num_cells} saturations, got shape {saturation.shape}."
            )
        if time < 0.0:
            raise ValidationError(f"Transport step must be non-negative, got {time}.")
        if np.any(np.asarray(gravity, dtype=np.float64) != 0.0):
            logger.warning("Gravity not yet handled by the transport solver; ignoring it.")
        dtype = get_dtype()
        if injection is None:
            injection = np.zeros(grid.num_cells, dtype=dtype)

        max_stable_step = self.stable_step(flow_solution)
        if math.isinf(max_stable_step):
            substeps = self.min_substeps
        else:
            substeps = max(
                self.min_substeps,
                int(math.ceil(time / (self.cfl_fraction * max_stable_step))),
            )
        substep_size = time / substeps
        boundary_fractional_flow = self._boundary_fractional_flow()
        face_fluxes = np.ascontiguousarray(flow_solution.face_fluxes, dtype=dtype)
        cells = np.arange(grid.num_cells)

        water_inflow = 0.0
        water_outflow = 0.0
        for _ in range(substeps):
            fractional_flow = np.asarray(
                self._properties.fractional_flow(cells, saturation),  # type: ignore[union-attr]
                dtype=dtype,
            )
            net_outflux, inflow_rate, outflow_rate = compute_net_water_outflux(
                face_fluxes, fractional_flow, self._upwind_cells, boundary_fractional_flow
            )
            saturation += substep_size * (injection - net_outflux) / self._pore_volumes
            np.clip(saturation, 0.0, 1.0, out=saturation)
            water_inflow += inflow_rate * substep_size
            water_outflow += outflow_rate * substep_size

        logger.debug(
            f"Transport step of {time:.4g} s in {substeps} sub-step(s); "
            f"CFL-limited step {max_stable_step:.4g} s."
        )
        return TransportStepMeta(
            substeps=substeps,
            substep_size=substep_size,
            max_stable_step=max_stable_step,
            water_inflow=water_inflow,
            water_outflow=water_outflow,
        )
