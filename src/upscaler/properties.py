"""Rock and fluid properties of a block."""

import logging
import typing

import attrs
import numpy as np
import numpy.typing as npt

from upscaler.capillary_pressures import CapillaryPressureModel
from upscaler.constants import c
from upscaler.errors import ValidationError
from upscaler.grids import CartesianGrid
from upscaler.relperm import RelPermModel
from upscaler.types import DIMENSION, FloatOrArray


__all__ = ["ReservoirProperties", "FixedMobilityProperties", "PropertiesLike"]

logger = logging.getLogger(__name__)

CellIndex = typing.Union[int, npt.NDArray[np.integer]]


def _as_models(value: typing.Any) -> typing.Tuple[typing.Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _positive(
    instance: typing.Any, attribute: "attrs.Attribute[typing.Any]", value: float
) -> None:
    if not np.isfinite(value) or value <= 0.0:
        raise ValidationError(f"`{attribute.name}` must be positive, got {value!r}.")


class PropertiesLike(typing.Protocol):
    """Read interface shared by `ReservoirProperties` and `FixedMobilityProperties`."""

    num_cells: int
    porosity: npt.NDArray[np.floating]
    permeability: npt.NDArray[np.floating]

    @property
    def viscosities(self) -> typing.Tuple[float, float]: ...

    def total_mobility(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray: ...

    def fractional_flow(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray: ...


@attrs.define(eq=False)
class ReservoirProperties:
    """
    Per-cell rock properties and per-phase fluid properties.

    Phase 1 is water and phase 2 is oil. Each cell has a rock type selecting
    its relative permeability model and, optionally, its capillary pressure
    model. Mobility and fractional flow methods take a cell index (or an
    array of them) and a water saturation broadcastable against it.

    Example usage:
    ```python
    from upscaler.grids import CartesianGrid
    from upscaler.properties import ReservoirProperties
    from upscaler.relperm import CoreyRelPermModel

    grid = CartesianGrid.uniform((4, 4, 1))
    properties = ReservoirProperties.homogeneous(
        grid,
        porosity=0.25,
        permeability=1e-13,
        relperm_model=CoreyRelPermModel(irreducible_water_saturation=0.1),
    )
    properties.fractional_flow(0, 0.5)
    ```
    """

    porosity: npt.NDArray[np.floating] = attrs.field(
        converter=lambda v: np.atleast_1d(np.asarray(v, dtype=np.float64))
    )
    """Porosity of each cell, in (0, 1]."""
    permeability: npt.NDArray[np.floating] = attrs.field(
        converter=lambda v: np.asarray(v, dtype=np.float64)
    )
    """Diagonal permeability (kx, ky, kz) of each cell (m²), shape (num_cells, 3)."""
    relperm_models: typing.Tuple[RelPermModel, ...] = attrs.field(converter=_as_models)
    """Relative permeability model of each rock type."""
    rock_types: typing.Optional[npt.NDArray[np.integer]] = attrs.field(default=None)
    """Rock type of each cell. Defaults to rock type 0 everywhere."""
    capillary_pressure_models: typing.Tuple[CapillaryPressureModel, ...] = attrs.field(
        default=None, converter=_as_models
    )
    """Capillary pressure model of each rock type, if any."""
    water_viscosity: float = attrs.field(
        default=c.DEFAULT_WATER_VISCOSITY, converter=float, validator=_positive
    )
    """Water viscosity (Pa·s)."""
    oil_viscosity: float = attrs.field(
        default=c.DEFAULT_OIL_VISCOSITY, converter=float, validator=_positive
    )
    """Oil viscosity (Pa·s)."""
    water_density: float = attrs.field(
        default=c.DEFAULT_WATER_DENSITY, converter=float, validator=_positive
    )
    """Water density (kg/m³)."""
    oil_density: float = attrs.field(
        default=c.DEFAULT_OIL_DENSITY, converter=float, validator=_positive
    )
    """Oil density (kg/m³)."""

    def __attrs_post_init__(self) -> None:
        num_cells = self.porosity.size
        if self.porosity.ndim != 1 or num_cells == 0:
            raise ValidationError("Porosity must be a non-empty 1D array.")
        if np.any(~np.isfinite(self.porosity)) or np.any(
            (self.porosity <= 0.0) | (self.porosity > 1.0)
        ):
            raise ValidationError("Porosity must lie in (0, 1].")

        permeability = self.permeability
        if permeability.ndim == 0:
            permeability = np.full((num_cells, DIMENSION), float(permeability))
        elif permeability.ndim == 1 and permeability.size == num_cells:
            permeability = np.repeat(permeability[:, None], DIMENSION, axis=1)
        elif permeability.ndim == 1 and permeability.size == DIMENSION:
            permeability = np.tile(permeability, (num_cells, 1))
        if permeability.shape != (num_cells, DIMENSION):
            raise ValidationError(
                f"Permeability must have shape ({num_cells}, {DIMENSION}), got {self.permeability.shape}."
            )
        if np.any(~np.isfinite(permeability)) or np.any(permeability <= 0.0):
            raise ValidationError("Permeability must be finite and strictly positive.")
        self.permeability = permeability

        if not self.relperm_models:
            raise ValidationError("At least one relative permeability model is required.")
        if self.rock_types is None:
            self.rock_types = np.zeros(num_cells, dtype=np.intp)
        else:
            self.rock_types = np.asarray(self.rock_types, dtype=np.intp).ravel()
        if self.rock_types.size != num_cells:
            raise ValidationError(
                f"Expected {num_cells} rock types, got {self.rock_types.size}."
            )
        if np.any(self.rock_types < 0) or np.any(
            self.rock_types >= len(self.relperm_models)
        ):
            raise ValidationError(
                f"Rock types must index the {len(self.relperm_models)} relative permeability model(s)."
            )
        if self.capillary_pressure_models and len(self.capillary_pressure_models) != len(
            self.relperm_models
        ):
            raise ValidationError(
                "Provide one capillary pressure model per rock type, or none at all."
            )

    @classmethod
    def homogeneous(
        cls,
        grid: CartesianGrid,
        porosity: float,
        permeability: typing.Union[float, typing.Sequence[float]],
        relperm_model: RelPermModel,
        capillary_pressure_model: typing.Optional[CapillaryPressureModel] = None,
        **kwargs: typing.Any,
    ) -> "ReservoirProperties":
        """
        Build properties with the same rock in every cell of `grid`.

        :param grid: The block.
        :param porosity: Porosity.
        :param permeability: Isotropic permeability (m²) or (kx, ky, kz).
        :param relperm_model: Relative permeability model.
        :param capillary_pressure_model: Optional capillary pressure model.
        :param kwargs: Fluid properties passed through to the constructor.
        """
        permeability = np.broadcast_to(
            np.asarray(permeability, dtype=np.float64), (DIMENSION,)
        )
        return cls(
            porosity=np.full(grid.num_cells, porosity),
            permeability=np.tile(permeability, (grid.num_cells, 1)),
            relperm_models=(relperm_model,),
            capillary_pressure_models=(
                (capillary_pressure_model,) if capillary_pressure_model else None
            ),
            **kwargs,
        )

    @property
    def num_cells(self) -> int:
        return int(self.porosity.size)

    @property
    def num_rock_types(self) -> int:
        return len(self.relperm_models)

    @property
    def viscosities(self) -> typing.Tuple[float, float]:
        return self.water_viscosity, self.oil_viscosity

    @property
    def densities(self) -> typing.Tuple[float, float]:
        return self.water_density, self.oil_density

    def set_viscosities(self, water_viscosity: float, oil_viscosity: float) -> None:
        for name, value in (("water", water_viscosity), ("oil", oil_viscosity)):
            if not np.isfinite(value) or value <= 0.0:
                raise ValidationError(f"{name.capitalize()} viscosity must be positive, got {value!r}.")
        self.water_viscosity = float(water_viscosity)
        self.oil_viscosity = float(oil_viscosity)

    def set_densities(self, water_density: float, oil_density: float) -> None:
        for name, value in (("water", water_density), ("oil", oil_density)):
            if not np.isfinite(value) or value <= 0.0:
                raise ValidationError(f"{name.capitalize()} density must be positive, got {value!r}.")
        self.water_density = float(water_density)
        self.oil_density = float(oil_density)

    def pore_volumes(self, grid: CartesianGrid) -> npt.NDArray[np.floating]:
        if grid.num_cells != self.num_cells:
            raise ValidationError(
                f"Grid has {grid.num_cells} cells but properties cover {self.num_cells}."
            )
        return grid.cell_volumes * self.porosity

    def relative_permeabilities(
        self, cell: CellIndex, saturation: FloatOrArray
    ) -> typing.Tuple[FloatOrArray, FloatOrArray]:
        """
        Relative permeabilities (krw, kro) of the given cell(s).

        :param cell: Cell index or array of cell indices.
        :param saturation: Water saturation, broadcastable against `cell`.
        :return: (krw, kro), scalars when both inputs are scalars.
        """
        cells, saturations = np.broadcast_arrays(
            np.asarray(cell, dtype=np.intp), np.asarray(saturation, dtype=np.float64)
        )
        rock_types = self.rock_types[cells]  # type: ignore[index]
        krw = np.empty(saturations.shape, dtype=np.float64)
        kro = np.empty(saturations.shape, dtype=np.float64)
        for rock_type in np.unique(rock_types):
            mask = rock_types == rock_type
            water, oil = self.relperm_models[rock_type].get_relative_permeabilities(
                saturations[mask]
            )
            krw[mask] = water
            kro[mask] = oil
        if krw.ndim == 0:
            return float(krw), float(kro)
        return krw, kro

    def water_mobility(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray:
        krw, _ = self.relative_permeabilities(cell, saturation)
        return krw / self.water_viscosity

    def oil_mobility(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray:
        _, kro = self.relative_permeabilities(cell, saturation)
        return kro / self.oil_viscosity

    def phase_mobilities(
        self, cell: CellIndex, saturation: FloatOrArray
    ) -> typing.Tuple[FloatOrArray, FloatOrArray]:
        krw, kro = self.relative_permeabilities(cell, saturation)
        return krw / self.water_viscosity, kro / self.oil_viscosity

    def total_mobility(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray:
        water, oil = self.phase_mobilities(cell, saturation)
        return water + oil

    def fractional_flow(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray:
        """
        Water fractional flow `λw / (λw + λo)` of the given cell(s).

        Cells with no mobile phase get a fractional flow of zero.
        """
        water, oil = self.phase_mobilities(cell, saturation)
        total = np.asarray(water + oil)
        fraction = np.divide(
            water, total, out=np.zeros_like(total, dtype=np.float64), where=total > 0.0
        )
        if fraction.ndim == 0:
            return float(fraction)
        return fraction

    def capillary_pressure(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray:
        """Oil/water capillary pressure (Pa) of the given cell(s). Zero without models."""
        cells, saturations = np.broadcast_arrays(
            np.asarray(cell, dtype=np.intp), np.asarray(saturation, dtype=np.float64)
        )
        pressure = np.zeros(saturations.shape, dtype=np.float64)
        if self.capillary_pressure_models:
            rock_types = self.rock_types[cells]  # type: ignore[index]
            for rock_type in np.unique(rock_types):
                mask = rock_types == rock_type
                pressure[mask] = self.capillary_pressure_models[
                    rock_type
                ].get_capillary_pressure(saturations[mask])
        if pressure.ndim == 0:
            return float(pressure)
        return pressure


@attrs.frozen(eq=False)
class FixedMobilityProperties:
    """
    View of reservoir properties with the total mobility frozen per cell.

    Used to extract an effective permeability for one phase: the pressure
    solver sees `mobility[cell]` whatever the saturation.
    """

    base: typing.Union[ReservoirProperties, "FixedMobilityProperties"]
    """Properties providing everything but the mobility."""
    mobility: npt.NDArray[np.floating] = attrs.field(
        converter=lambda v: np.asarray(v, dtype=np.float64)
    )
    """Fixed mobility of each cell (1/(Pa·s))."""

    def __attrs_post_init__(self) -> None:
        if self.mobility.shape != (self.base.num_cells,):
            raise ValidationError(
                f"Expected {self.base.num_cells} mobilities, got shape {self.mobility.shape}."
            )
        if np.any(~np.isfinite(self.mobility)) or np.any(self.mobility < 0.0):
            raise ValidationError("Mobilities must be finite and non-negative.")

    @property
    def num_cells(self) -> int:
        return self.base.num_cells

    @property
    def porosity(self) -> npt.NDArray[np.floating]:
        return self.base.porosity

    @property
    def permeability(self) -> npt.NDArray[np.floating]:
        return self.base.permeability

    @property
    def viscosities(self) -> typing.Tuple[float, float]:
        return self.base.viscosities

    def total_mobility(self, cell: CellIndex, saturation: FloatOrArray = 0.0) -> FloatOrArray:
        cells = np.asarray(cell, dtype=np.intp)
        mobility = np.broadcast_to(
            self.mobility[cells], np.broadcast(cells, np.asarray(saturation)).shape
        ).copy()
        if mobility.ndim == 0:
            return float(mobility)
        return mobility

    def fractional_flow(self, cell: CellIndex, saturation: FloatOrArray) -> FloatOrArray:
        return self.base.fractional_flow(cell, saturation)
