import numpy as np
import pytest

from upscaler.boundary_conditions import setup_upscaling_conditions
from upscaler.errors import BoundaryConditionError, InvariantError, ValidationError
from upscaler.grids import CartesianGrid
from upscaler.pressure import FlowSolution, IncompressiblePressureSolver
from upscaler.properties import ReservoirProperties
from upscaler.steady_state import integrate_boundary_flows


def _solve(grid, properties, bcs, saturation):
    pressure_solver = IncompressiblePressureSolver()
    pressure_solver.init(grid, properties, 0.0, bcs)
    return pressure_solver.solve(properties, saturation, bcs, linsolver_type="direct")


@pytest.fixture
def heterogeneous_properties(small_grid, corey_model, rng):
    return ReservoirProperties(
        porosity=np.full(small_grid.num_cells, 0.2),
        permeability=1e-13 * rng.lognormal(0.0, 1.0, size=(small_grid.num_cells, 3)),
        relperm_models=corey_model,
    )


@pytest.mark.parametrize("condition_type", ["fixed", "linear", "periodic", "fully_periodic"])
def test_total_boundary_flow_balances(small_grid, heterogeneous_properties, rng, condition_type):
    saturation = rng.uniform(0.1, 0.9, size=small_grid.num_cells)
    bcs = setup_upscaling_conditions(small_grid, condition_type, 0, 1e5, 0.6)
    solution = _solve(small_grid, heterogeneous_properties, bcs, saturation)
    flows = integrate_boundary_flows(
        small_grid, heterogeneous_properties, bcs, solution, saturation
    )
    throughput = flows.water.outflow + flows.oil.outflow
    assert throughput > 0.0
    assert flows.water.inflow <= 0.0 and flows.oil.inflow <= 0.0
    assert flows.imbalance == pytest.approx(0.0, abs=1e-9 * throughput)
    assert flows.cell_water_inflows.sum() == pytest.approx(flows.water.inflow)
    assert flows.cell_water_outflows.sum() == pytest.approx(flows.water.outflow)


def test_periodic_inflow_uses_partner_outflow(small_grid, heterogeneous_properties, rng):
    saturation = rng.uniform(0.1, 0.9, size=small_grid.num_cells)
    bcs = setup_upscaling_conditions(small_grid, "fully_periodic", 0, 1e5, 0.6)
    solution = _solve(small_grid, heterogeneous_properties, bcs, saturation)
    flows = integrate_boundary_flows(
        small_grid, heterogeneous_properties, bcs, solution, saturation
    )
    assert flows.periodic_inflow_fractional_flow
    for bid, fractional_flow in flows.periodic_inflow_fractional_flow.items():
        partner = bcs.periodic_partner(bid)
        partner_cell = small_grid.boundary_cells[partner]
        assert fractional_flow == flows.fractional_flow_by_boundary_id[partner]
        assert fractional_flow == pytest.approx(
            heterogeneous_properties.fractional_flow(partner_cell, saturation[partner_cell])
        )


def test_dirichlet_inflow_uses_boundary_saturation(small_grid, homogeneous_properties):
    saturation = np.full(small_grid.num_cells, 0.3)
    bcs = setup_upscaling_conditions(small_grid, "fixed", 0, 1e5, 0.9)
    solution = _solve(small_grid, homogeneous_properties, bcs, saturation)
    flows = integrate_boundary_flows(
        small_grid, homogeneous_properties, bcs, solution, saturation
    )
    inflow = solution.boundary_fluxes()[small_grid.boundary_faces_on(0, 0)].sum()
    assert flows.water.inflow == pytest.approx(inflow)
    assert flows.oil.inflow == pytest.approx(0.0, abs=1e-12 * abs(inflow))
    assert flows.fractional_flow_by_boundary_id == {}
    assert flows.periodic_inflow_fractional_flow == {}
    (water_in, _), (oil_in, _) = flows.as_pairs()
    assert water_in == flows.water.inflow
    assert oil_in == flows.oil.inflow


@pytest.fixture
def single_cell(corey_model):
    grid = CartesianGrid.uniform((1, 1, 1))
    properties = ReservoirProperties.homogeneous(
        grid, porosity=0.2, permeability=1e-13, relperm_model=corey_model
    )
    bcs = setup_upscaling_conditions(grid, "fully_periodic", 0, 1.0, 0.5)
    return grid, properties, bcs


def _manual_solution(grid, x_fluxes):
    face_fluxes = np.zeros((1, 6))
    face_fluxes[0, :2] = x_fluxes
    return FlowSolution(grid=grid, cell_pressure=np.zeros(1), face_fluxes=face_fluxes)


def test_missing_partner_outflow_raises(single_cell):
    grid, properties, bcs = single_cell
    solution = _manual_solution(grid, [-1.0, -1.0])
    with pytest.raises(BoundaryConditionError, match="Face bid = 0 and partner bid = 1"):
        integrate_boundary_flows(grid, properties, bcs, solution, np.array([0.5]))


def test_periodic_saturation_jump_raises(single_cell):
    grid, properties, bcs = single_cell
    bcs = bcs.with_saturation_conditions(bcs.saturation_types, np.full(6, 0.1))
    solution = _manual_solution(grid, [-1.0, 1.0])
    with pytest.raises(InvariantError):
        integrate_boundary_flows(grid, properties, bcs, solution, np.array([0.5]))


def test_self_periodic_cell_balances(single_cell):
    grid, properties, bcs = single_cell
    solution = _manual_solution(grid, [-2.0, 2.0])
    flows = integrate_boundary_flows(grid, properties, bcs, solution, np.array([0.5]))
    fractional_flow = properties.fractional_flow(0, 0.5)
    assert flows.water.outflow == pytest.approx(2.0 * fractional_flow)
    assert flows.water.inflow == pytest.approx(-2.0 * fractional_flow)
    assert flows.imbalance == pytest.approx(0.0)


def test_saturation_shape_is_checked(single_cell):
    grid, properties, bcs = single_cell
    solution = _manual_solution(grid, [-1.0, 1.0])
    with pytest.raises(ValidationError):
        integrate_boundary_flows(grid, properties, bcs, solution, np.array([0.5, 0.5]))
