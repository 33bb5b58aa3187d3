import logging

import numpy as np
import pytest

from upscaler.config import Config
from upscaler.diagnostics import MemoryDiagnosticSink
from upscaler.errors import ComputationError, ValidationError
from upscaler.grids import CartesianGrid
from upscaler.properties import FixedMobilityProperties, ReservoirProperties
from upscaler.relperm import CoreyRelPermModel
from upscaler.steady_state import SteadyStateUpscaler

PRESSURE_DROP = 1e5


class FailingSink:
    def __init__(self):
        self.calls = 0

    def write(self, step_id, cell_data):
        self.calls += 1
        raise OSError("disk full")


@pytest.fixture
def upscaler(small_grid, homogeneous_properties, direct_config):
    upscaler = SteadyStateUpscaler()
    upscaler.init(small_grid, homogeneous_properties, direct_config)
    return upscaler


def _run(upscaler, flow_direction=0, initial=0.1, boundary=0.9, **kwargs):
    grid = upscaler.grid
    return upscaler.upscale_steady_state(
        flow_direction=flow_direction,
        initial_saturation=np.full(grid.num_cells, initial),
        boundary_saturation=boundary,
        pressure_drop=PRESSURE_DROP,
        upscaled_perm=kwargs.pop("upscaled_perm", upscaler.upscale_single_phase()),
        **kwargs,
    )


def test_single_cell_end_to_end():
    grid = CartesianGrid.uniform((1, 1, 1))
    properties = ReservoirProperties.homogeneous(
        grid, porosity=1.0, permeability=1e-12, relperm_model=CoreyRelPermModel()
    )
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        grid,
        properties,
        Config(boundary_condition_type="fixed", simulation_steps=1, linsolver_type="direct"),
    )
    permeability = upscaler.upscale_single_phase()
    np.testing.assert_allclose(np.diag(permeability), 1e-12, rtol=1e-10)

    k_rw, k_ro = upscaler.upscale_steady_state(
        flow_direction=0,
        initial_saturation=[0.0],
        boundary_saturation=0.0,
        pressure_drop=PRESSURE_DROP,
        upscaled_perm=permeability,
    )
    np.testing.assert_allclose(k_ro, np.eye(3), atol=1e-10)
    np.testing.assert_allclose(k_rw, 1e-4 * np.eye(3), atol=1e-12)
    assert upscaler.last_saturation_upscaled(0) == 0.0


def test_uniform_saturation_reproduces_cell_relative_permeability(upscaler):
    k_rw, k_ro = _run(upscaler, initial=0.5, boundary=0.5)
    np.testing.assert_allclose(k_rw, 0.25 * np.eye(3), atol=1e-8)
    np.testing.assert_allclose(k_ro, 0.25 * np.eye(3), atol=1e-8)
    np.testing.assert_allclose(upscaler.last_saturations()[0], 0.5)


def test_zero_steps_uses_initial_saturation(small_grid, homogeneous_properties):
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid,
        homogeneous_properties,
        Config(boundary_condition_type="fixed", simulation_steps=0, linsolver_type="direct"),
    )
    initial = np.linspace(0.2, 0.8, small_grid.num_cells)
    upscaler.upscale_steady_state(
        0, initial, 0.9, PRESSURE_DROP, upscaler.upscale_single_phase()
    )
    np.testing.assert_array_equal(upscaler.last_saturations()[0], initial)


def test_injection_raises_water_saturation(upscaler):
    k_rw, k_ro = _run(upscaler, initial=0.1, boundary=0.9)
    average = upscaler.last_saturation_upscaled(0)
    assert 0.1 < average <= 1.0
    assert k_rw[0, 0] > 1e-4
    assert k_ro[0, 0] > 0.0


@pytest.mark.parametrize("condition_type", ["fixed", "periodic", "linear", "fully_periodic"])
def test_runs_along_every_axis(small_grid, homogeneous_properties, condition_type):
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid,
        homogeneous_properties,
        Config(boundary_condition_type=condition_type, simulation_steps=2),
    )
    permeability = upscaler.upscale_single_phase()
    for flow_direction in range(3):
        k_rw, k_ro = _run(
            upscaler, flow_direction=flow_direction, upscaled_perm=permeability
        )
        assert k_rw[flow_direction, flow_direction] > 0.0
        assert k_ro[flow_direction, flow_direction] > 0.0
        average = upscaler.last_saturation_upscaled(flow_direction)
        assert 0.0 <= average <= 1.0
    assert all(saturation.size == small_grid.num_cells for saturation in upscaler.last_saturations())


def test_relative_permeability_right_multiplies_inverse(small_grid, corey_model, direct_config):
    properties = ReservoirProperties.homogeneous(
        small_grid,
        porosity=0.2,
        permeability=(2e-13, 1e-13, 5e-14),
        relperm_model=corey_model,
    )
    upscaler = SteadyStateUpscaler()
    upscaler.init(small_grid, properties, direct_config)
    upscaled_perm = np.array(
        [[2e-13, 3e-14, 0.0], [3e-14, 1e-13, 1e-14], [0.0, 1e-14, 5e-14]]
    )
    k_rw, k_ro = _run(upscaler, initial=0.5, boundary=0.5, upscaled_perm=upscaled_perm)

    water_mobility, oil_mobility = upscaler.compute_phase_mobilities(
        upscaler.last_saturations()[0]
    )
    inverse = np.linalg.inv(upscaled_perm)
    water_viscosity, oil_viscosity = properties.viscosities
    for k_r, mobility, viscosity in (
        (k_rw, water_mobility, water_viscosity),
        (k_ro, oil_mobility, oil_viscosity),
    ):
        effective_perm = upscaler.upscale_effective_perm(
            FixedMobilityProperties(base=properties, mobility=mobility)
        )
        np.testing.assert_allclose(k_r, effective_perm @ inverse * viscosity, rtol=1e-8, atol=1e-12)
        assert not np.allclose(k_r, inverse @ effective_perm * viscosity, rtol=1e-3)


def test_mobility_floor(upscaler, homogeneous_properties):
    water_viscosity, oil_viscosity = homogeneous_properties.viscosities
    n = upscaler.grid.num_cells
    water, oil = upscaler.compute_phase_mobilities(np.full(n, 0.1))
    np.testing.assert_allclose(water, 1e-4 / water_viscosity)
    np.testing.assert_allclose(oil, 1.0 / oil_viscosity)
    water, oil = upscaler.compute_phase_mobilities(np.full(n, 0.9))
    np.testing.assert_allclose(water, 1.0 / water_viscosity)
    np.testing.assert_allclose(oil, 1e-4 / oil_viscosity)


def test_history_is_overwritten_per_direction(upscaler):
    permeability = upscaler.upscale_single_phase()
    _run(upscaler, boundary=0.5, upscaled_perm=permeability)
    first = upscaler.last_saturations()[0]
    _run(upscaler, boundary=0.9, upscaled_perm=permeability)
    second = upscaler.last_saturations()[0]
    assert second is not first
    assert not np.array_equal(first, second)
    assert upscaler.last_saturations()[1].size == 0
    with pytest.raises(ValueError):
        second[0] = 0.0


def test_average_saturation_is_pore_volume_weighted(small_grid, corey_model):
    porosity = np.linspace(0.1, 0.4, small_grid.num_cells)
    properties = ReservoirProperties(
        porosity=porosity, permeability=1e-13, relperm_models=corey_model
    )
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid,
        properties,
        Config(boundary_condition_type="fixed", simulation_steps=2, linsolver_type="direct"),
    )
    _run(upscaler, initial=0.2, boundary=0.8)
    saturation = upscaler.last_saturations()[0]
    pore_volumes = small_grid.cell_volumes * porosity
    assert upscaler.last_saturation_upscaled(0) == pytest.approx(
        np.sum(pore_volumes * saturation) / np.sum(pore_volumes)
    )


def test_empty_history_slot_raises(upscaler):
    with pytest.raises(ValidationError):
        upscaler.last_saturation_upscaled(1)
    with pytest.raises(ValidationError):
        upscaler.last_saturation_upscaled(3)


def test_invalid_run_inputs(upscaler):
    permeability = upscaler.upscale_single_phase()
    with pytest.raises(ValidationError):
        upscaler.upscale_steady_state(0, np.full(5, 0.2), 0.5, PRESSURE_DROP, permeability)
    with pytest.raises(ValidationError):
        _run(upscaler, flow_direction=3, upscaled_perm=permeability)
    with pytest.raises(ComputationError):
        _run(upscaler, upscaled_perm=np.zeros((3, 3)))
    assert all(saturation.size == 0 for saturation in upscaler.last_saturations())


def test_out_of_range_saturation_warns(upscaler):
    with pytest.warns(UserWarning, match="Boundary saturation"):
        _run(upscaler, initial=0.2, boundary=1.2)
    with pytest.warns(UserWarning, match="Initial saturation"):
        _run(upscaler, initial=-0.1, boundary=0.5)
    saturation = upscaler.last_saturations()[0]
    assert saturation.min() >= 0.0 and saturation.max() <= 1.0


def test_requires_init():
    with pytest.raises(ValidationError):
        SteadyStateUpscaler().upscale_steady_state(0, [0.1], 0.5, 1.0, np.eye(3))


def test_config_overrides_fluid_properties(small_grid, homogeneous_properties):
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid, homogeneous_properties, Config(viscosity1=2e-3, density2=750.0)
    )
    assert homogeneous_properties.water_viscosity == pytest.approx(2e-3)
    assert homogeneous_properties.oil_density == pytest.approx(750.0)


def test_diagnostics_step_ids(small_grid, homogeneous_properties, direct_config):
    sink = MemoryDiagnosticSink()
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid, homogeneous_properties, direct_config.evolve(output_vtk=True), sink
    )
    _run(upscaler, run_label="run")
    _run(upscaler, flow_direction=1)
    assert sink.step_ids == [
        "output-steadystate-run-0-0",
        "output-steadystate-run-0-1",
        "output-steadystate-run-0-2",
        "output-steadystate-2-1-0",
        "output-steadystate-2-1-1",
        "output-steadystate-2-1-2",
    ]
    _, fields = sink.snapshots[0]
    n = small_grid.num_cells
    assert fields["saturation"].shape == (n,)
    assert fields["pressure"].shape == (n,)
    assert fields["capillary pressure"].shape == (n,)
    for name in ("velocity", "phase velocity [water]", "phase velocity [oil]"):
        assert fields[name].shape == (n, 3)
    np.testing.assert_allclose(
        fields["phase velocity [water]"] + fields["phase velocity [oil]"],
        fields["velocity"],
    )


def test_no_diagnostics_unless_enabled(small_grid, homogeneous_properties, direct_config):
    sink = MemoryDiagnosticSink()
    upscaler = SteadyStateUpscaler()
    upscaler.init(small_grid, homogeneous_properties, direct_config, sink)
    _run(upscaler)
    assert sink.snapshots == []


def test_failing_sink_does_not_change_results(
    small_grid, homogeneous_properties, direct_config, caplog
):
    reference = SteadyStateUpscaler()
    reference.init(small_grid, homogeneous_properties, direct_config)
    expected = _run(reference)

    sink = FailingSink()
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid, homogeneous_properties, direct_config.evolve(output_vtk=True), sink
    )
    with caplog.at_level(logging.ERROR, logger="upscaler.steady_state"):
        result = _run(upscaler)
    assert sink.calls == direct_config.simulation_steps
    assert "Diagnostic output for step" in caplog.text
    np.testing.assert_allclose(result[0], expected[0])
    np.testing.assert_allclose(result[1], expected[1])


def test_print_inoutflows_prints_each_step(
    small_grid, homogeneous_properties, direct_config, capsys
):
    upscaler = SteadyStateUpscaler()
    upscaler.init(
        small_grid, homogeneous_properties, direct_config.evolve(print_inoutflows=True)
    )
    _run(upscaler)
    lines = capsys.readouterr().out.splitlines()
    assert [line.split(":")[0] for line in lines] == [
        "Pressure step 0",
        "Pressure step 1",
        "Pressure step 2",
    ]
    assert "water flow [in]" in lines[0]


def test_compute_in_out_flows(upscaler):
    with pytest.raises(ValidationError):
        upscaler.integrate_boundary_flows(None, np.zeros(upscaler.grid.num_cells))

    saturation = np.full(upscaler.grid.num_cells, 0.4)
    bcs = upscaler.setup_conditions(0, PRESSURE_DROP, 0.9)
    solution = upscaler.solve_pressure(upscaler.properties, saturation, bcs)
    (water_in, water_out), (oil_in, oil_out) = upscaler.compute_in_out_flows(
        solution, saturation, bcs
    )
    assert water_in < 0.0 < water_out
    assert oil_in == pytest.approx(0.0, abs=1e-12 * water_out)
    assert water_in + water_out + oil_in + oil_out == pytest.approx(0.0, abs=1e-9 * water_out)
