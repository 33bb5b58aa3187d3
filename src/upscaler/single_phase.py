"""Single-phase (effective) permeability upscaling of a block."""

import logging
import typing

import numpy as np

from upscaler.boundary_conditions import BoundaryConditions, setup_upscaling_conditions
from upscaler.config import Config
from upscaler.errors import ValidationError
from upscaler.grids import CartesianGrid
from upscaler.pressure import FlowSolution, IncompressiblePressureSolver
from upscaler.properties import FixedMobilityProperties, PropertiesLike, ReservoirProperties
from upscaler.types import DIMENSION, PermeabilityTensor


__all__ = ["SinglePhaseUpscaler"]

logger = logging.getLogger(__name__)


class SinglePhaseUpscaler:
    """
    Computes effective permeability tensors of a Cartesian block.

    For each pressure-drop direction `j` the block is driven with a unit
    pressure drop, and the mean Darcy velocity `u_i` through the plus-side
    faces of every axis `i` gives the tensor column
    `K[i, j] = u_i * L_j / Δp`. The mobility seen by the pressure solver is
    folded into the result, so properties with a fixed per-cell mobility
    yield a mobility-weighted tensor.

    Example usage:
    ```python
    upscaler = SinglePhaseUpscaler()
    upscaler.init(grid, properties, Config(boundary_condition_type="fixed"))
    upscaler.upscale_single_phase()  # 3x3 permeability tensor (m²)
    ```
    """

    def __init__(self) -> None:
        self.grid: typing.Optional[CartesianGrid] = None
        self.properties: typing.Optional[ReservoirProperties] = None
        self.config = Config()
        self.pressure_solver = IncompressiblePressureSolver()

    def init(
        self,
        grid: CartesianGrid,
        properties: ReservoirProperties,
        config: typing.Optional[Config] = None,
    ) -> None:
        """
        Bind a block and its properties.

        :param grid: The block.
        :param properties: Reservoir properties of the block.
        :param config: Run configuration. Defaults to `Config()`.
        """
        if properties.num_cells != grid.num_cells:
            raise ValidationError(
                f"Grid has {grid.num_cells} cells but properties cover {properties.num_cells}."
            )
        self.grid = grid
        self.properties = properties
        self.config = config if config is not None else Config()
        self.pressure_solver = IncompressiblePressureSolver(
            max_iterations=self.config.linsolver_max_iterations,
            preconditioner=self.config.preconditioner,
            fallback_to_direct=self.config.fallback_to_direct,
        )

    def _require_init(self) -> CartesianGrid:
        if self.grid is None or self.properties is None:
            raise ValidationError("Call `init` before upscaling.")
        return self.grid

    def setup_conditions(
        self,
        flow_direction: int,
        pressure_drop: float,
        boundary_saturation: float,
    ) -> BoundaryConditions:
        grid = self._require_init()
        return setup_upscaling_conditions(
            grid,
            boundary_condition_type=self.config.boundary_condition_type,
            flow_direction=flow_direction,
            pressure_drop=pressure_drop,
            boundary_saturation=boundary_saturation,
            twodim_hack=self.config.twodim_hack,
        )

    def solve_pressure(
        self,
        properties: PropertiesLike,
        saturation: np.ndarray,
        boundary_conditions: BoundaryConditions,
    ) -> FlowSolution:
        grid = self._require_init()
        if not self.pressure_solver.is_initialized_for(grid, boundary_conditions):
            self.pressure_solver.init(
                grid, properties, gravity=0.0, boundary_conditions=boundary_conditions
            )
        return self.pressure_solver.solve(
            properties,
            saturation,
            boundary_conditions,
            source=None,
            residual_tolerance=self.config.residual_tolerance,
            linsolver_verbosity=self.config.linsolver_verbosity,
            linsolver_type=self.config.linsolver_type,
        )

    def upscale_single_phase(self) -> PermeabilityTensor:
        """Effective absolute permeability tensor (m²), using unit mobility everywhere."""
        grid = self._require_init()
        unit_mobility = FixedMobilityProperties(
            base=self.properties,  # type: ignore[arg-type]
            mobility=np.ones(grid.num_cells),
        )
        return self.upscale_effective_perm(unit_mobility)

    def upscale_effective_perm(self, properties: PropertiesLike) -> PermeabilityTensor:
        """
        Effective permeability tensor of the block as seen through `properties`.

        :param properties: Properties whose total mobility weights the cell permeabilities,
            typically a `FixedMobilityProperties`.
        :return: The 3x3 effective tensor. Units are m² times the mobility units.
        """
        grid = self._require_init()
        pressure_drop = 1.0
        saturation = np.zeros(grid.num_cells)
        lengths = grid.lengths
        areas = grid.cross_section_areas
        plus_sides = [grid.boundary_faces_on(axis, side=1) for axis in range(DIMENSION)]

        tensor = np.zeros((DIMENSION, DIMENSION))
        for flow_direction in range(DIMENSION):
            if flow_direction == 2 and self.config.twodim_hack:
                # No flow along z; keep the tensor invertible with the mobility weighted mean of kz
                mobility = np.asarray(
                    properties.total_mobility(np.arange(grid.num_cells), saturation)
                )
                tensor[2, 2] = float(
                    np.average(
                        mobility * properties.permeability[:, 2],
                        weights=grid.cell_volumes,
                    )
                )
                continue
            boundary_conditions = self.setup_conditions(
                flow_direction, pressure_drop, boundary_saturation=1.0
            )
            solution = self.solve_pressure(properties, saturation, boundary_conditions)
            boundary_fluxes = solution.boundary_fluxes()
            for axis in range(DIMENSION):
                velocity = boundary_fluxes[plus_sides[axis]].sum() / areas[axis]
                tensor[axis, flow_direction] = (
                    velocity * lengths[flow_direction] / pressure_drop
                )
        logger.debug(f"Effective permeability tensor:\n{tensor}")
        return tensor
