"""Oil/water capillary pressure models and tables."""

import typing

import attrs
import numpy as np
import numpy.typing as npt

from upscaler.errors import ValidationError
from upscaler.types import FloatOrArray


__all__ = [
    "CapillaryPressureModel",
    "TwoPhaseCapillaryPressureTable",
    "BrooksCoreyCapillaryPressureModel",
    "compute_brooks_corey_capillary_pressure",
]


class CapillaryPressureModel(typing.Protocol):
    def get_capillary_pressure(self, water_saturation: FloatOrArray) -> FloatOrArray: ...


@attrs.frozen
class TwoPhaseCapillaryPressureTable:
    """
    Oil/water capillary pressure lookup table.

    Interpolates `Pc = Po - Pw` (Pa) linearly in water saturation using
    `np.interp`, with constant extrapolation outside the tabulated range.
    """

    water_saturation: npt.NDArray[np.floating] = attrs.field(converter=np.asarray)
    """Water saturation values, monotonically increasing."""
    capillary_pressure: npt.NDArray[np.floating] = attrs.field(converter=np.asarray)
    """Capillary pressure values (Pa) corresponding to saturations."""

    def __attrs_post_init__(self) -> None:
        """Validate table data."""
        if len(self.water_saturation) != len(self.capillary_pressure):
            raise ValidationError(
                f"Saturation and pressure arrays must have same length. "
                f"Got {len(self.water_saturation)} vs {len(self.capillary_pressure)}"
            )
        if len(self.water_saturation) < 2:
            raise ValidationError("At least 2 points required for interpolation")

        if not np.all(np.diff(self.water_saturation) >= 0):
            raise ValidationError("Water saturation must be monotonically increasing")

    def get_capillary_pressure(self, water_saturation: FloatOrArray) -> FloatOrArray:
        """
        Get capillary pressure at given water saturation(s).

        :param water_saturation: Water saturation (scalar or array).
        :return: Capillary pressure value(s) - type matches input type.
        """
        is_scalar = np.isscalar(water_saturation)
        saturation = np.atleast_1d(water_saturation)
        capillary_pressure = np.interp(
            x=saturation.ravel(),
            xp=self.water_saturation,  # type: ignore[arg-type]
            fp=self.capillary_pressure,  # type: ignore[arg-type]
            left=self.capillary_pressure[0],
            right=self.capillary_pressure[-1],
        ).reshape(saturation.shape)
        return float(capillary_pressure[0]) if is_scalar else capillary_pressure

    def __call__(self, water_saturation: FloatOrArray) -> FloatOrArray:
        return self.get_capillary_pressure(water_saturation)


def compute_brooks_corey_capillary_pressure(
    water_saturation: FloatOrArray,
    irreducible_water_saturation: float,
    residual_oil_saturation: float,
    entry_pressure: float,
    pore_size_distribution_index: float,
    max_capillary_pressure: typing.Optional[float] = None,
) -> FloatOrArray:
    """
    Computes oil/water capillary pressure using the Brooks-Corey model.

    `Pc = Pd * Se**(-1/λ)` with the effective saturation
    `Se = (Sw - Swc) / (1 - Swc - Sor)` clipped to [0, 1]. At or below the
    irreducible saturation the curve is singular; it is capped at
    `max_capillary_pressure` (default 100 × entry pressure).

    :param water_saturation: Water saturation (scalar or array).
    :param irreducible_water_saturation: Irreducible water saturation (Swc).
    :param residual_oil_saturation: Residual oil saturation (Sor).
    :param entry_pressure: Displacement/entry pressure Pd (Pa).
    :param pore_size_distribution_index: Pore size distribution index λ.
    :param max_capillary_pressure: Cap applied where the curve is singular (Pa).
    :return: Capillary pressure `Po - Pw` (Pa), matching the input shape.
    """
    sw = np.asarray(water_saturation, dtype=np.float64)
    movable_range = 1.0 - irreducible_water_saturation - residual_oil_saturation
    if movable_range <= 0.0:
        raise ValidationError(
            "Irreducible water and residual oil saturations leave no movable saturation range."
        )
    cap = (
        max_capillary_pressure
        if max_capillary_pressure is not None
        else 100.0 * entry_pressure
    )
    effective_saturation = np.clip(
        (sw - irreducible_water_saturation) / movable_range, 0.0, 1.0
    )
    with np.errstate(divide="ignore"):
        capillary_pressure = np.where(
            effective_saturation > 0.0,
            entry_pressure
            * np.power(
                np.maximum(effective_saturation, 1e-300),
                -1.0 / pore_size_distribution_index,
            ),
            cap,
        )
    capillary_pressure = np.minimum(capillary_pressure, cap)
    if sw.ndim == 0:
        return float(capillary_pressure)
    return capillary_pressure


@attrs.frozen
class BrooksCoreyCapillaryPressureModel:
    """
    Brooks-Corey oil/water capillary pressure model.

    Implements the Brooks-Corey model: Pc = Pd * (Se)^(-1/λ)
    """

    irreducible_water_saturation: float = attrs.field(
        default=0.0, converter=float, validator=attrs.validators.ge(0.0)
    )
    """Irreducible water saturation (Swc)."""
    residual_oil_saturation: float = attrs.field(
        default=0.0, converter=float, validator=attrs.validators.ge(0.0)
    )
    """Residual oil saturation (Sor)."""
    entry_pressure: float = attrs.field(
        default=1.0e4, converter=float, validator=attrs.validators.ge(0.0)
    )
    """Entry pressure (Pa)."""
    pore_size_distribution_index: float = attrs.field(
        default=2.0, converter=float, validator=attrs.validators.gt(0.0)
    )
    """Pore size distribution index (λ)."""
    max_capillary_pressure: typing.Optional[float] = None
    """Cap on capillary pressure near the irreducible saturation (Pa)."""

    def get_capillary_pressure(self, water_saturation: FloatOrArray) -> FloatOrArray:
        return compute_brooks_corey_capillary_pressure(
            water_saturation=water_saturation,
            irreducible_water_saturation=self.irreducible_water_saturation,
            residual_oil_saturation=self.residual_oil_saturation,
            entry_pressure=self.entry_pressure,
            pore_size_distribution_index=self.pore_size_distribution_index,
            max_capillary_pressure=self.max_capillary_pressure,
        )

    def __call__(self, water_saturation: FloatOrArray) -> FloatOrArray:
        return self.get_capillary_pressure(water_saturation)
