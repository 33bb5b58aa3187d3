import numpy as np
import pytest

from upscaler.capillary_pressures import (
    BrooksCoreyCapillaryPressureModel,
    TwoPhaseCapillaryPressureTable,
)
from upscaler.errors import ValidationError
from upscaler.properties import FixedMobilityProperties, ReservoirProperties
from upscaler.relperm import CoreyRelPermModel, TwoPhaseRelPermTable


def test_corey_end_points(corey_model):
    assert corey_model.get_relative_permeabilities(0.1) == pytest.approx((0.0, 1.0))
    assert corey_model.get_relative_permeabilities(0.9) == pytest.approx((1.0, 0.0))
    krw, kro = corey_model.get_relative_permeabilities(0.5)
    assert isinstance(krw, float)
    assert krw == pytest.approx(0.25)
    assert kro == pytest.approx(0.25)


def test_corey_is_vectorised(corey_model):
    saturation = np.linspace(0.0, 1.0, 11)
    krw, kro = corey_model.get_relative_permeabilities(saturation)
    assert krw.shape == kro.shape == saturation.shape
    assert np.all(np.diff(krw) >= 0.0)
    assert np.all(np.diff(kro) <= 0.0)


def test_corey_rejects_overlapping_end_points():
    with pytest.raises(ValidationError):
        CoreyRelPermModel(irreducible_water_saturation=0.6, residual_oil_saturation=0.5)


def test_table_interpolates_model(corey_model):
    table = corey_model.to_table(num_points=201)
    krw, kro = table.get_relative_permeabilities(0.5)
    assert krw == pytest.approx(0.25, rel=1e-3)
    assert kro == pytest.approx(0.25, rel=1e-3)
    assert table.get_water_relative_permeability(-1.0) == pytest.approx(0.0)


def test_table_validation():
    with pytest.raises(ValidationError):
        TwoPhaseRelPermTable([0.0, 1.0], [0.0, 1.0], [1.0])
    with pytest.raises(ValidationError):
        TwoPhaseRelPermTable([1.0, 0.0], [0.0, 1.0], [1.0, 0.0])
    with pytest.raises(ValidationError):
        TwoPhaseRelPermTable([0.0, 1.0], [-0.1, 1.0], [1.0, 0.0])


def test_brooks_corey_capillary_pressure():
    model = BrooksCoreyCapillaryPressureModel(
        irreducible_water_saturation=0.1,
        residual_oil_saturation=0.1,
        entry_pressure=5e3,
        pore_size_distribution_index=2.0,
    )
    assert model(0.9) == pytest.approx(5e3)
    assert model(0.1) == pytest.approx(5e5)
    curve = model(np.linspace(0.15, 0.9, 10))
    assert np.all(np.diff(curve) < 0.0)


def test_capillary_pressure_table():
    table = TwoPhaseCapillaryPressureTable([0.0, 1.0], [1e4, 0.0])
    assert table(0.25) == pytest.approx(7.5e3)
    np.testing.assert_allclose(table(np.array([0.0, 2.0])), [1e4, 0.0])


def test_fractional_flow_end_points(homogeneous_properties):
    assert homogeneous_properties.fractional_flow(0, 0.1) == pytest.approx(0.0)
    assert homogeneous_properties.fractional_flow(0, 0.9) == pytest.approx(1.0)
    fractions = homogeneous_properties.fractional_flow(np.arange(3), np.array([0.2, 0.5, 0.8]))
    assert fractions.shape == (3,)
    assert np.all(np.diff(fractions) > 0.0)


def test_rock_types_select_models(small_grid, corey_model):
    other = CoreyRelPermModel(water_exponent=1.0, oil_exponent=1.0)
    rock_types = np.zeros(small_grid.num_cells, dtype=int)
    rock_types[1] = 1
    properties = ReservoirProperties(
        porosity=np.full(small_grid.num_cells, 0.25),
        permeability=np.full(small_grid.num_cells, 1e-12),
        relperm_models=[corey_model, other],
        rock_types=rock_types,
    )
    krw, kro = properties.relative_permeabilities(np.array([0, 1]), 0.5)
    np.testing.assert_allclose(krw, [0.25, 0.5])
    np.testing.assert_allclose(kro, [0.25, 0.5])
    assert properties.permeability.shape == (small_grid.num_cells, 3)
    np.testing.assert_allclose(properties.pore_volumes(small_grid), 0.25)
    assert properties.capillary_pressure(0, 0.5) == 0.0


def test_mobilities_use_viscosities(homogeneous_properties):
    homogeneous_properties.set_viscosities(1e-3, 2e-3)
    water, oil = homogeneous_properties.phase_mobilities(0, 0.5)
    assert water == pytest.approx(0.25 / 1e-3)
    assert oil == pytest.approx(0.25 / 2e-3)
    assert homogeneous_properties.total_mobility(0, 0.5) == pytest.approx(water + oil)
    with pytest.raises(ValidationError):
        homogeneous_properties.set_viscosities(0.0, 1e-3)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"porosity": 0.0},
        {"porosity": 1.5},
        {"permeability": -1e-13},
        {"permeability": [1e-13, 1e-13]},
        {"rock_types": [1] * 24},
    ],
)
def test_invalid_properties_raise(small_grid, corey_model, kwargs):
    kwargs = dict(kwargs)
    values = dict(
        porosity=np.full(small_grid.num_cells, kwargs.pop("porosity", 0.2)),
        permeability=kwargs.pop("permeability", 1e-13),
        relperm_models=corey_model,
    )
    values.update(kwargs)
    with pytest.raises(ValidationError):
        ReservoirProperties(**values)


def test_fixed_mobility_properties(homogeneous_properties):
    mobility = np.arange(homogeneous_properties.num_cells, dtype=float)
    fixed = FixedMobilityProperties(base=homogeneous_properties, mobility=mobility)
    assert fixed.total_mobility(3, 0.9) == 3.0
    np.testing.assert_allclose(fixed.total_mobility(np.arange(4), np.zeros(4)), [0, 1, 2, 3])
    assert fixed.permeability is homogeneous_properties.permeability
    with pytest.raises(ValidationError):
        FixedMobilityProperties(base=homogeneous_properties, mobility=np.ones(3))
