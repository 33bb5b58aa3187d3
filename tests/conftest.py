import numpy as np
import pytest

from upscaler.config import Config
from upscaler.grids import CartesianGrid
from upscaler.properties import ReservoirProperties
from upscaler.relperm import CoreyRelPermModel


@pytest.fixture
def corey_model():
    return CoreyRelPermModel(
        irreducible_water_saturation=0.1, residual_oil_saturation=0.1
    )


@pytest.fixture
def small_grid():
    return CartesianGrid.uniform((4, 3, 2), cell_dimension=(1.0, 2.0, 0.5))


@pytest.fixture
def homogeneous_properties(small_grid, corey_model):
    return ReservoirProperties.homogeneous(
        small_grid, porosity=0.2, permeability=1e-13, relperm_model=corey_model
    )


@pytest.fixture
def direct_config():
    return Config(
        boundary_condition_type="fixed", linsolver_type="direct", simulation_steps=3
    )


@pytest.fixture
def rng():
    return np.random.default_rng(42)
