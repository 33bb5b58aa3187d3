import logging
import math

import numpy as np
import pytest

from upscaler.boundary_conditions import setup_upscaling_conditions
from upscaler.config import Config
from upscaler.constants import c
from upscaler.errors import ValidationError
from upscaler.grids import CartesianGrid
from upscaler.pressure import FlowSolution, IncompressiblePressureSolver
from upscaler.properties import ReservoirProperties
from upscaler.transport import ExplicitTransportSolver


def _flow(grid, properties, bcs, saturation):
    pressure_solver = IncompressiblePressureSolver()
    pressure_solver.init(grid, properties, 0.0, bcs)
    return pressure_solver.solve(properties, saturation, bcs, linsolver_type="direct")


def _transport_solver(grid, properties, bcs, config=None):
    solver = ExplicitTransportSolver()
    solver.init(config or Config())
    solver.init_obj(grid, properties, bcs)
    return solver


def test_water_volume_balance(small_grid, homogeneous_properties):
    bcs = setup_upscaling_conditions(small_grid, "fixed", 0, 1e5, 0.7)
    saturation = np.full(small_grid.num_cells, 0.3)
    solution = _flow(small_grid, homogeneous_properties, bcs, saturation)
    solver = _transport_solver(small_grid, homogeneous_properties, bcs)

    before = saturation.copy()
    meta = solver.transport_solve(saturation, c.SECONDS_PER_DAY, 0.0, solution)

    pore_volumes = homogeneous_properties.pore_volumes(small_grid)
    stored = float(np.sum(pore_volumes * (saturation - before)))
    assert meta.water_inflow > 0.0
    assert stored == pytest.approx(meta.water_inflow - meta.water_outflow, rel=1e-9)
    assert np.all(saturation >= 0.3 - 1e-12)
    assert np.all(saturation <= 0.7 + 1e-12)
    # The inflow end fills first
    inlet = small_grid.index(0, 0, 0)
    outlet = small_grid.index(3, 0, 0)
    assert saturation[inlet] > saturation[outlet]


def test_substeps_respect_cfl_limit(small_grid, homogeneous_properties):
    bcs = setup_upscaling_conditions(small_grid, "fixed", 0, 1e5, 0.7)
    saturation = np.full(small_grid.num_cells, 0.3)
    solution = _flow(small_grid, homogeneous_properties, bcs, saturation)
    solver = _transport_solver(
        small_grid, homogeneous_properties, bcs, Config(cfl_fraction=0.25)
    )
    time = 10 * c.SECONDS_PER_DAY
    meta = solver.transport_solve(saturation, time, 0.0, solution)
    assert meta.substeps > 1
    assert meta.substep_size * meta.substeps == pytest.approx(time)
    assert meta.substep_size <= 0.25 * meta.max_stable_step * (1.0 + 1e-12)


def test_stagnant_field_leaves_saturation_unchanged(small_grid, homogeneous_properties):
    bcs = setup_upscaling_conditions(small_grid, "fixed", 0, 0.0, 0.7)
    solution = FlowSolution(
        grid=small_grid,
        cell_pressure=small_grid.zeros(),
        face_fluxes=np.zeros((small_grid.num_cells, 6)),
    )
    solver = _transport_solver(
        small_grid, homogeneous_properties, bcs, Config(min_transport_substeps=3)
    )
    saturation = np.linspace(0.1, 0.9, small_grid.num_cells)
    before = saturation.copy()
    meta = solver.transport_solve(saturation, 1e5, 0.0, solution)
    np.testing.assert_array_equal(saturation, before)
    assert math.isinf(meta.max_stable_step)
    assert meta.substeps == 3


def test_saturation_is_clipped_to_unit_interval(small_grid, homogeneous_properties):
    bcs = setup_upscaling_conditions(small_grid, "fixed", 0, 0.0, 0.7)
    solution = FlowSolution(
        grid=small_grid,
        cell_pressure=small_grid.zeros(),
        face_fluxes=np.zeros((small_grid.num_cells, 6)),
    )
    solver = _transport_solver(small_grid, homogeneous_properties, bcs)
    saturation = np.full(small_grid.num_cells, 0.5)
    injection = np.zeros(small_grid.num_cells)
    injection[0] = 10.0
    injection[1] = -10.0
    solver.transport_solve(saturation, 1.0, 0.0, solution, injection)
    assert saturation[0] == 1.0
    assert saturation[1] == 0.0
    assert saturation[2] == 0.5


def test_periodic_inflow_takes_partner_saturation(corey_model):
    grid = CartesianGrid.uniform((3, 1, 1))
    properties = ReservoirProperties.homogeneous(
        grid, porosity=0.2, permeability=1e-13, relperm_model=corey_model
    )
    bcs = setup_upscaling_conditions(grid, "fully_periodic", 0, 1e5, 0.0)
    saturation = np.array([0.2, 0.2, 0.8])
    solution = _flow(grid, properties, bcs, saturation)
    solver = _transport_solver(grid, properties, bcs)

    pore_volumes = properties.pore_volumes(grid)
    water_before = float(np.sum(pore_volumes * saturation))
    meta = solver.transport_solve(saturation, 0.1 * solver.stable_step(solution), 0.0, solution)

    assert saturation[0] > 0.2
    assert saturation[2] < 0.8
    assert saturation[1] == pytest.approx(0.2)
    assert float(np.sum(pore_volumes * saturation)) == pytest.approx(water_before, rel=1e-12)
    assert meta.water_inflow == 0.0
    assert meta.water_outflow == 0.0


def test_transport_guards(small_grid, homogeneous_properties, caplog):
    solution = FlowSolution(
        grid=small_grid,
        cell_pressure=small_grid.zeros(),
        face_fluxes=np.zeros((small_grid.num_cells, 6)),
    )
    saturation = np.full(small_grid.num_cells, 0.5)
    solver = ExplicitTransportSolver()
    with pytest.raises(ValidationError):
        solver.transport_solve(saturation, 1.0, 0.0, solution)

    bcs = setup_upscaling_conditions(small_grid, "fixed", 0, 0.0, 0.7)
    solver.init_obj(small_grid, homogeneous_properties, bcs)
    with pytest.raises(ValidationError):
        solver.transport_solve(saturation, -1.0, 0.0, solution)
    with pytest.raises(ValidationError):
        solver.transport_solve(np.zeros(5), 1.0, 0.0, solution)
    with caplog.at_level(logging.WARNING, logger="upscaler.transport"):
        solver.transport_solve(saturation, 1.0, (0.0, 0.0, -9.81), solution)
    assert "Gravity not yet handled" in caplog.text
