import numpy as np
import pytest

from upscaler.config import Config
from upscaler.errors import ValidationError
from upscaler.grids import CartesianGrid
from upscaler.properties import FixedMobilityProperties, ReservoirProperties
from upscaler.single_phase import SinglePhaseUpscaler


def _upscaler(grid, properties, **config):
    config.setdefault("linsolver_type", "direct")
    upscaler = SinglePhaseUpscaler()
    upscaler.init(grid, properties, Config(**config))
    return upscaler


@pytest.mark.parametrize("condition_type", ["fixed", "linear", "periodic", "fully_periodic"])
def test_homogeneous_block_recovers_cell_permeability(small_grid, corey_model, condition_type):
    permeability = np.array([3e-13, 2e-13, 1e-13])
    properties = ReservoirProperties.homogeneous(
        small_grid, porosity=0.2, permeability=permeability, relperm_model=corey_model
    )
    upscaler = _upscaler(small_grid, properties, boundary_condition_type=condition_type)
    tensor = upscaler.upscale_single_phase()
    np.testing.assert_allclose(np.diag(tensor), permeability, rtol=1e-8)
    off_diagonal = tensor - np.diag(np.diag(tensor))
    np.testing.assert_allclose(off_diagonal, 0.0, atol=1e-8 * permeability.max())


def test_layered_block_gives_arithmetic_and_harmonic_means(corey_model):
    grid = CartesianGrid.uniform((3, 2, 2))
    k_bottom, k_top = 1e-13, 4e-13
    permeability = np.where(
        np.array([grid.ijk(cell)[2] for cell in range(grid.num_cells)]) == 0,
        k_bottom,
        k_top,
    )
    properties = ReservoirProperties(
        porosity=np.full(grid.num_cells, 0.2),
        permeability=permeability,
        relperm_models=corey_model,
    )
    tensor = _upscaler(grid, properties, boundary_condition_type="fixed").upscale_single_phase()
    arithmetic = 0.5 * (k_bottom + k_top)
    harmonic = 2.0 / (1.0 / k_bottom + 1.0 / k_top)
    assert tensor[0, 0] == pytest.approx(arithmetic, rel=1e-8)
    assert tensor[1, 1] == pytest.approx(arithmetic, rel=1e-8)
    assert tensor[2, 2] == pytest.approx(harmonic, rel=1e-8)


def test_effective_permeability_scales_with_mobility(small_grid, homogeneous_properties):
    upscaler = _upscaler(small_grid, homogeneous_properties, boundary_condition_type="fixed")
    reference = upscaler.upscale_single_phase()
    doubled = upscaler.upscale_effective_perm(
        FixedMobilityProperties(
            base=homogeneous_properties, mobility=np.full(small_grid.num_cells, 2.0)
        )
    )
    np.testing.assert_allclose(doubled, 2.0 * reference, rtol=1e-8, atol=1e-25)


def test_twodim_hack_uses_mean_vertical_permeability(corey_model):
    grid = CartesianGrid.uniform((3, 3, 1))
    permeability = np.tile([1e-13, 1e-13, 5e-14], (grid.num_cells, 1))
    permeability[0, 2] = 2e-13
    properties = ReservoirProperties(
        porosity=np.full(grid.num_cells, 0.2),
        permeability=permeability,
        relperm_models=corey_model,
    )
    upscaler = _upscaler(grid, properties, boundary_condition_type="periodic", twodim_hack=True)
    tensor = upscaler.upscale_single_phase()
    assert tensor[2, 2] == pytest.approx(permeability[:, 2].mean())
    assert tensor[0, 0] == pytest.approx(1e-13, rel=1e-8)
    np.testing.assert_allclose(tensor[2, :2], 0.0)


def test_iterative_solver_matches_direct(small_grid, corey_model, rng):
    properties = ReservoirProperties(
        porosity=np.full(small_grid.num_cells, 0.2),
        permeability=1e-13 * rng.lognormal(0.0, 0.5, size=small_grid.num_cells),
        relperm_models=corey_model,
    )
    direct = _upscaler(small_grid, properties).upscale_single_phase()
    iterative = _upscaler(
        small_grid, properties, linsolver_type="bicgstab", residual_tolerance=1e-10
    ).upscale_single_phase()
    np.testing.assert_allclose(iterative, direct, rtol=1e-6, atol=1e-6 * direct.max())


def test_requires_init(small_grid, homogeneous_properties):
    upscaler = SinglePhaseUpscaler()
    with pytest.raises(ValidationError):
        upscaler.upscale_single_phase()
    other_grid = CartesianGrid.uniform((2, 2, 2))
    with pytest.raises(ValidationError):
        upscaler.init(other_grid, homogeneous_properties)
