"""Steady-state relative permeability upscaling."""

import logging
import typing
import warnings

import attrs
import numpy as np
import numpy.typing as npt

from upscaler._precision import get_dtype
from upscaler.boundary_conditions import BoundaryConditions
from upscaler.config import Config
from upscaler.diagnostics import (
    DiagnosticSink,
    VTKDiagnosticWriter,
    compute_capillary_pressure,
    compute_phase_velocities,
)
from upscaler.errors import BoundaryConditionError, InvariantError, ValidationError
from upscaler.grids import CartesianGrid
from upscaler.pressure import FlowSolution
from upscaler.properties import FixedMobilityProperties, ReservoirProperties
from upscaler.single_phase import SinglePhaseUpscaler
from upscaler.tensors import as_tensor, inverse3x3, matprod
from upscaler.transport import ExplicitTransportSolver
from upscaler.types import DIMENSION, FlowDirection, PermeabilityTensor


__all__ = [
    "PhaseFlows",
    "InOutFlows",
    "integrate_boundary_flows",
    "SteadyStateUpscaler",
]

logger = logging.getLogger(__name__)


def _warn_saturation_out_of_range(name: str, values: npt.ArrayLike) -> None:
    """
    Issues a warning if saturations lie outside [0, 1]. Transport clips the
    field after its first step, so such values only affect the first pressure solve.
    """
    values = np.asarray(values, dtype=np.float64)
    if np.all((values >= 0.0) & (values <= 1.0)):
        return
    warnings.warn(
        f"{name} spans [{values.min():.4g}, {values.max():.4g}], outside the physical range [0, 1].",
        UserWarning,
    )


@attrs.frozen
class PhaseFlows:
    """Boundary flow totals of one phase (m³/s)."""

    inflow: float
    """Total inflow. Signed like the face fluxes, so never positive."""
    outflow: float
    """Total outflow. Never negative."""

    def as_pair(self) -> typing.Tuple[float, float]:
        return self.inflow, self.outflow


@attrs.frozen
class InOutFlows:
    """Result of the boundary flux accounting of a flow field."""

    water: PhaseFlows
    oil: PhaseFlows
    cell_water_inflows: npt.NDArray[np.floating] = attrs.field(repr=False)
    """Water inflow through the boundary faces of each cell (signed, m³/s)."""
    cell_water_outflows: npt.NDArray[np.floating] = attrs.field(repr=False)
    """Water outflow through the boundary faces of each cell (m³/s)."""
    fractional_flow_by_boundary_id: typing.Mapping[int, float] = attrs.field(repr=False)
    """Fractional flow leaving through each periodic outflow face."""
    periodic_inflow_fractional_flow: typing.Mapping[int, float] = attrs.field(repr=False)
    """Fractional flow used on each periodic inflow face, keyed by its own boundary id."""

    def as_pairs(
        self,
    ) -> typing.Tuple[typing.Tuple[float, float], typing.Tuple[float, float]]:
        """((water_in, water_out), (oil_in, oil_out))"""
        return self.water.as_pair(), self.oil.as_pair()

    @property
    def imbalance(self) -> float:
        """Sum of all inflows and outflows. Zero for a conservative flow field without sources."""
        return (
            self.water.inflow + self.water.outflow + self.oil.inflow + self.oil.outflow
        )


def integrate_boundary_flows(
    grid: CartesianGrid,
    properties: ReservoirProperties,
    boundary_conditions: BoundaryConditions,
    flow_solution: FlowSolution,
    saturation: npt.NDArray[np.floating],
) -> InOutFlows:
    """
    Integrate water and oil flows through the boundary of the block.

    Runs two sweeps over the boundary faces. The first handles outflow faces
    (flux >= 0) with the fractional flow of the face's own cell, and records
    that fractional flow for periodic faces. The second handles inflow faces:
    Dirichlet faces use the fractional flow at the boundary saturation,
    periodic faces use the value recorded for their partner face. All
    periodic outflow is therefore known before any periodic inflow is looked up.

    :param grid: The block.
    :param properties: Reservoir properties.
    :param boundary_conditions: Boundary conditions of the flow field.
    :param flow_solution: The flow field.
    :param saturation: Water saturation of each cell.
    :return: The flow totals and per-cell/per-face details.
    :raises InvariantError: If a periodic face carries a saturation jump, or an
        inflow face is neither Dirichlet nor periodic.
    :raises BoundaryConditionError: If a periodic inflow face's partner has no recorded fractional flow.
    """
    if saturation.shape != (grid.num_cells,):
        raise ValidationError(
            f"Expected {grid.num_cells} saturations, got shape {saturation.shape}."
        )
    if len(boundary_conditions) != grid.num_boundary_faces:
        raise ValidationError(
            f"Expected conditions for {grid.num_boundary_faces} boundary faces, "
            f"got {len(boundary_conditions)}."
        )

    water_in = water_out = oil_in = oil_out = 0.0
    cell_inflows = np.zeros(grid.num_cells)
    cell_outflows = np.zeros(grid.num_cells)
    fractional_flow_by_bid: typing.Dict[int, float] = {}
    periodic_inflow: typing.Dict[int, float] = {}

    # Outflow first, so every periodic partner value exists before inflow needs it
    for face in grid.iter_boundary_faces():
        flux = flow_solution.outflux(face.cell, face.local_index)
        if flux < 0.0:
            continue
        fractional_flow = float(
            properties.fractional_flow(face.cell, saturation[face.cell])
        )
        if boundary_conditions.saturation_condition(face.boundary_id).is_periodic():
            fractional_flow_by_bid[face.boundary_id] = fractional_flow
        cell_outflows[face.cell] += flux * fractional_flow
        water_out += flux * fractional_flow
        oil_out += flux * (1.0 - fractional_flow)

    for face in grid.iter_boundary_faces():
        flux = flow_solution.outflux(face.cell, face.local_index)
        if flux >= 0.0:
            continue
        condition = boundary_conditions.saturation_condition(face.boundary_id)
        if condition.is_periodic():
            if condition.saturation_difference != 0.0:
                raise InvariantError(
                    f"Periodic boundary face {face.boundary_id} has saturation difference "
                    f"{condition.saturation_difference}; only zero is supported."
                )
            partner = boundary_conditions.periodic_partner(face.boundary_id)
            if partner not in fractional_flow_by_bid:
                raise BoundaryConditionError(
                    f"Could not find periodic partner fractional flow. "
                    f"Face bid = {face.boundary_id} and partner bid = {partner}."
                )
            fractional_flow = fractional_flow_by_bid[partner]
            periodic_inflow[face.boundary_id] = fractional_flow
        elif condition.is_dirichlet():
            fractional_flow = float(
                properties.fractional_flow(face.cell, condition.saturation)
            )
        else:
            raise InvariantError(
                f"Inflow boundary face {face.boundary_id} is neither Dirichlet nor periodic."
            )
        cell_inflows[face.cell] += flux * fractional_flow
        water_in += flux * fractional_flow
        oil_in += flux * (1.0 - fractional_flow)

    return InOutFlows(
        water=PhaseFlows(inflow=water_in, outflow=water_out),
        oil=PhaseFlows(inflow=oil_in, outflow=oil_out),
        cell_water_inflows=cell_inflows,
        cell_water_outflows=cell_outflows,
        fractional_flow_by_boundary_id=fractional_flow_by_bid,
        periodic_inflow_fractional_flow=periodic_inflow,
    )


class SteadyStateUpscaler(SinglePhaseUpscaler):
    """
    Upscales relative permeabilities by running a block to steady state.

    For a flow direction, the block is driven by a pressure drop with fluid of
    a fixed water saturation entering through the inflow boundary. A fixed
    number of transport and pressure steps moves the saturation field towards
    steady state. The final field defines phase mobilities, from which
    effective permeability tensors are extracted and converted into relative
    permeability tensors using the single-phase upscaled permeability.

    Example usage:
    ```python
    upscaler = SteadyStateUpscaler()
    upscaler.init(grid, properties, Config(simulation_steps=20, stepsize=0.05))
    K = upscaler.upscale_single_phase()
    krw, kro = upscaler.upscale_steady_state(
        flow_direction=0,
        initial_saturation=np.full(grid.num_cells, 0.2),
        boundary_saturation=0.6,
        pressure_drop=1e5,
        upscaled_perm=K,
    )
    upscaler.last_saturation_upscaled(0)
    ```
    """

    def __init__(self) -> None:
        super().__init__()
        self.transport_solver = ExplicitTransportSolver()
        self.diagnostic_sink: typing.Optional[DiagnosticSink] = None
        self._boundary_conditions: typing.Optional[BoundaryConditions] = None
        self._last_saturations: typing.List[npt.NDArray[np.floating]] = [
            np.empty(0) for _ in range(DIMENSION)
        ]
        self._run_count = 0

    def init(
        self,
        grid: CartesianGrid,
        properties: ReservoirProperties,
        config: typing.Optional[Config] = None,
        diagnostic_sink: typing.Optional[DiagnosticSink] = None,
    ) -> None:
        """
        Bind a block, its properties and a configuration.

        Viscosity and density overrides in `config` are applied to `properties`.

        :param grid: The block.
        :param properties: Reservoir properties of the block.
        :param config: Run configuration. Defaults to `Config()`.
        :param diagnostic_sink: Receiver of per-iteration fields when `output_vtk` is set.
            Defaults to a `VTKDiagnosticWriter` in `config.output_directory`.
        """
        super().init(grid, properties, config)
        config = self.config
        self.transport_solver.init(config)

        water_viscosity, oil_viscosity = properties.viscosities
        properties.set_viscosities(
            config.viscosity1 if config.viscosity1 is not None else water_viscosity,
            config.viscosity2 if config.viscosity2 is not None else oil_viscosity,
        )
        water_density, oil_density = properties.densities
        properties.set_densities(
            config.density1 if config.density1 is not None else water_density,
            config.density2 if config.density2 is not None else oil_density,
        )

        if diagnostic_sink is None and config.output_vtk:
            diagnostic_sink = VTKDiagnosticWriter(grid, config.output_directory)
        self.diagnostic_sink = diagnostic_sink
        self._boundary_conditions = None
        self._last_saturations = [np.empty(0) for _ in range(DIMENSION)]

    def compute_phase_mobilities(
        self, saturation: npt.NDArray[np.floating]
    ) -> typing.Tuple[npt.NDArray[np.floating], npt.NDArray[np.floating]]:
        """
        Water and oil mobility of each cell, floored at `relperm_threshold / viscosity`.

        :param saturation: Water saturation of each cell.
        :return: (water_mobility, oil_mobility)
        """
        grid = self._require_init()
        properties = typing.cast(ReservoirProperties, self.properties)
        water_viscosity, oil_viscosity = properties.viscosities
        water_mobility, oil_mobility = properties.phase_mobilities(
            np.arange(grid.num_cells), saturation
        )
        threshold = self.config.relperm_threshold
        return (
            np.maximum(water_mobility, threshold / water_viscosity),
            np.maximum(oil_mobility, threshold / oil_viscosity),
        )

    def upscale_steady_state(
        self,
        flow_direction: FlowDirection,
        initial_saturation: npt.ArrayLike,
        boundary_saturation: float,
        pressure_drop: float,
        upscaled_perm: npt.ArrayLike,
        run_label: typing.Optional[str] = None,
    ) -> typing.Tuple[PermeabilityTensor, PermeabilityTensor]:
        """
        Run the block towards steady state and upscale relative permeabilities.

        The pressure is solved once, then `simulation_steps` times a transport
        step is followed by a pressure solve with the updated saturation. There
        is no convergence check.

        :param flow_direction: Axis (0, 1 or 2) the block is driven along.
        :param initial_saturation: Initial water saturation of each cell.
        :param boundary_saturation: Water saturation of injected fluid.
        :param pressure_drop: Pressure difference across the block (Pa).
        :param upscaled_perm: Single-phase upscaled permeability tensor of the block (m²).
        :param run_label: Label of the run in diagnostic step identifiers.
            Defaults to a count of the runs made by this upscaler.
        :return: (k_rw, k_ro) upscaled relative permeability tensors.
        :raises ValidationError: On bad input.
        :raises ComputationError: If `upscaled_perm` is singular.
        """
        grid = self._require_init()
        properties = typing.cast(ReservoirProperties, self.properties)
        config = self.config
        if flow_direction not in range(DIMENSION):
            raise ValidationError(
                f"Flow direction must be 0, 1 or 2, got {flow_direction!r}."
            )
        saturation = np.array(initial_saturation, dtype=get_dtype(), copy=True)
        if saturation.shape != (grid.num_cells,):
            raise ValidationError(
                f"Initial saturation must have one entry per cell ({grid.num_cells}), "
                f"got shape {saturation.shape}."
            )
        _warn_saturation_out_of_range("Initial saturation", saturation)
        _warn_saturation_out_of_range("Boundary saturation", boundary_saturation)
        inverse_perm = inverse3x3(as_tensor(upscaled_perm))

        self._run_count += 1
        label = str(run_label) if run_label is not None else str(self._run_count)
        source = np.zeros(grid.num_cells, dtype=get_dtype())
        injection = np.zeros(grid.num_cells, dtype=get_dtype())
        gravity = np.zeros(DIMENSION)
        logger.info(
            f"Steady-state run {label!r} along axis {flow_direction}: "
            f"boundary saturation {boundary_saturation}, pressure drop {pressure_drop} Pa, "
            f"{config.simulation_steps} step(s) of {config.stepsize} day(s)."
        )

        boundary_conditions = self.setup_conditions(
            flow_direction, pressure_drop, boundary_saturation
        )
        self._boundary_conditions = boundary_conditions
        if flow_direction == 0 or not self.pressure_solver.is_initialized_for(
            grid, boundary_conditions
        ):
            self.pressure_solver.init(grid, properties, gravity, boundary_conditions)
        self.transport_solver.init_obj(grid, properties, boundary_conditions)

        solve_kwargs = dict(
            source=source,
            residual_tolerance=config.residual_tolerance,
            linsolver_verbosity=config.linsolver_verbosity,
            linsolver_type=config.linsolver_type,
        )
        self.pressure_solver.solve(
            properties, saturation, boundary_conditions, **solve_kwargs
        )
        for iteration in range(config.simulation_steps):
            # Transport uses the previous pressure solution; pressure then catches up
            self.transport_solver.transport_solve(
                saturation,
                config.stepsize_in_seconds,
                gravity,
                self.pressure_solver.solution,
                injection,
            )
            solution = self.pressure_solver.solve(
                properties, saturation, boundary_conditions, **solve_kwargs
            )
            if config.print_inoutflows:
                flows = self.compute_in_out_flows(solution, saturation, boundary_conditions)
                (water_in, water_out), (oil_in, oil_out) = flows
                print(
                    f"Pressure step {iteration}: water flow [in] {water_in:.6e} [out] {water_out:.6e}; "
                    f"oil flow [in] {oil_in:.6e} [out] {oil_out:.6e}"
                )
            if config.output_vtk:
                self._write_diagnostics(
                    f"{config.output_prefix}-{label}-{flow_direction}-{iteration}",
                    saturation,
                    solution,
                )

        water_mobility, oil_mobility = self.compute_phase_mobilities(saturation)
        effective_water_perm = self.upscale_effective_perm(
            FixedMobilityProperties(base=properties, mobility=water_mobility)
        )
        effective_oil_perm = self.upscale_effective_perm(
            FixedMobilityProperties(base=properties, mobility=oil_mobility)
        )

        # effective perm = λ·K, so λ = effective perm · inv(K); and λ = kr / μ
        water_viscosity, oil_viscosity = properties.viscosities
        k_rw = matprod(effective_water_perm, inverse_perm) * water_viscosity
        k_ro = matprod(effective_oil_perm, inverse_perm) * oil_viscosity

        saturation.flags.writeable = False
        self._last_saturations[flow_direction] = saturation
        logger.info(
            f"Steady-state run {label!r} along axis {flow_direction} finished: "
            f"krw[{flow_direction},{flow_direction}] = {k_rw[flow_direction, flow_direction]:.6g}, "
            f"kro[{flow_direction},{flow_direction}] = {k_ro[flow_direction, flow_direction]:.6g}"
        )
        return k_rw, k_ro

    def _write_diagnostics(
        self,
        step_id: str,
        saturation: npt.NDArray[np.floating],
        flow_solution: FlowSolution,
    ) -> None:
        if self.diagnostic_sink is None:
            return
        properties = typing.cast(ReservoirProperties, self.properties)
        cell_velocity = flow_solution.estimate_cell_velocity()
        water_velocity, oil_velocity = compute_phase_velocities(
            properties, saturation, cell_velocity
        )
        cell_data = {
            "velocity": cell_velocity,
            "phase velocity [water]": water_velocity,
            "phase velocity [oil]": oil_velocity,
            "saturation": saturation.copy(),
            "pressure": np.array(flow_solution.cell_pressure),
            "capillary pressure": compute_capillary_pressure(properties, saturation),
        }
        try:
            self.diagnostic_sink.write(step_id, cell_data)
        except Exception:
            logger.exception(f"Diagnostic output for step {step_id!r} failed; continuing.")

    def compute_in_out_flows(
        self,
        flow_solution: FlowSolution,
        saturation: npt.NDArray[np.floating],
        boundary_conditions: typing.Optional[BoundaryConditions] = None,
    ) -> typing.Tuple[typing.Tuple[float, float], typing.Tuple[float, float]]:
        """
        Water and oil flows through the block boundary.

        :param flow_solution: The flow field.
        :param saturation: Water saturation of each cell.
        :param boundary_conditions: Conditions of the flow field. Defaults to those of the latest run.
        :return: ((water_in, water_out), (oil_in, oil_out)), inflows signed negative.
        """
        return self.integrate_boundary_flows(
            flow_solution, saturation, boundary_conditions
        ).as_pairs()

    def integrate_boundary_flows(
        self,
        flow_solution: FlowSolution,
        saturation: npt.NDArray[np.floating],
        boundary_conditions: typing.Optional[BoundaryConditions] = None,
    ) -> InOutFlows:
        grid = self._require_init()
        if boundary_conditions is None:
            boundary_conditions = self._boundary_conditions
        if boundary_conditions is None:
            raise ValidationError(
                "No boundary conditions given and no steady-state run has been made yet."
            )
        return integrate_boundary_flows(
            grid,
            typing.cast(ReservoirProperties, self.properties),
            boundary_conditions,
            flow_solution,
            np.asarray(saturation),
        )

    def last_saturations(self) -> typing.Tuple[npt.NDArray[np.floating], ...]:
        """Final saturation field of the latest run along each axis. Empty before any run."""
        return tuple(self._last_saturations)

    def last_saturation_upscaled(self, flow_direction: FlowDirection) -> float:
        """
        Pore-volume weighted average of the latest saturation field along an axis.

        :param flow_direction: Axis of the run.
        :return: `Σ(V·φ·s) / Σ(V·φ)`.
        :raises ValidationError: If no run has been made along the axis.
        """
        grid = self._require_init()
        if flow_direction not in range(DIMENSION):
            raise ValidationError(
                f"Flow direction must be 0, 1 or 2, got {flow_direction!r}."
            )
        saturation = self._last_saturations[flow_direction]
        if saturation.size == 0:
            raise ValidationError(
                f"No steady-state run has been made along axis {flow_direction}."
            )
        pore_volumes = typing.cast(ReservoirProperties, self.properties).pore_volumes(grid)
        return float(np.sum(pore_volumes * saturation) / np.sum(pore_volumes))
