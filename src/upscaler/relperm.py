"""Two-phase (water/oil) relative permeability models."""

import typing

import attrs
import numpy as np
import numpy.typing as npt

from upscaler.errors import ValidationError
from upscaler.types import FloatOrArray


__all__ = [
    "RelPermModel",
    "TwoPhaseRelPermTable",
    "compute_corey_two_phase_relative_permeabilities",
    "CoreyRelPermModel",
]


class RelPermModel(typing.Protocol):
    """Anything that maps water saturation to (krw, kro)."""

    def get_relative_permeabilities(
        self, water_saturation: FloatOrArray
    ) -> typing.Tuple[FloatOrArray, FloatOrArray]: ...


@attrs.frozen
class TwoPhaseRelPermTable:
    """
    Water/oil relative permeability lookup table.

    Interpolates relative permeabilities linearly in water saturation using
    `np.interp`. Values outside the tabulated range are held at the end points.
    """

    water_saturation: npt.NDArray[np.floating] = attrs.field(converter=np.asarray)
    """Water saturation values, monotonically increasing in [0, 1]."""
    water_relative_permeability: npt.NDArray[np.floating] = attrs.field(
        converter=np.asarray
    )
    """Water relative permeability at each saturation value."""
    oil_relative_permeability: npt.NDArray[np.floating] = attrs.field(
        converter=np.asarray
    )
    """Oil relative permeability at each saturation value."""

    def __attrs_post_init__(self) -> None:
        """Validate table data."""
        if len(self.water_saturation) != len(self.water_relative_permeability):
            raise ValidationError(
                f"Saturation and water kr arrays must have same length. "
                f"Got {len(self.water_saturation)} vs {len(self.water_relative_permeability)}"
            )
        if len(self.water_saturation) != len(self.oil_relative_permeability):
            raise ValidationError(
                f"Saturation and oil kr arrays must have same length. "
                f"Got {len(self.water_saturation)} vs {len(self.oil_relative_permeability)}"
            )
        if len(self.water_saturation) < 2:
            raise ValidationError("At least 2 points required for interpolation")

        # np.interp needs increasing abscissae
        if not np.all(np.diff(self.water_saturation) >= 0):
            raise ValidationError("Water saturation must be monotonically increasing")
        if np.any(self.water_relative_permeability < 0) or np.any(
            self.oil_relative_permeability < 0
        ):
            raise ValidationError("Relative permeabilities must be non-negative")

    def _interpolate(
        self, water_saturation: FloatOrArray, values: npt.NDArray[np.floating]
    ) -> FloatOrArray:
        saturation = np.asarray(water_saturation, dtype=np.float64)
        result = np.interp(
            x=saturation,
            xp=self.water_saturation,  # type: ignore[arg-type]
            fp=values,  # type: ignore[arg-type]
            left=values[0],
            right=values[-1],
        )
        if saturation.ndim == 0:
            return float(result)
        return result

    def get_water_relative_permeability(
        self, water_saturation: FloatOrArray
    ) -> FloatOrArray:
        return self._interpolate(water_saturation, self.water_relative_permeability)

    def get_oil_relative_permeability(
        self, water_saturation: FloatOrArray
    ) -> FloatOrArray:
        return self._interpolate(water_saturation, self.oil_relative_permeability)

    def get_relative_permeabilities(
        self, water_saturation: FloatOrArray
    ) -> typing.Tuple[FloatOrArray, FloatOrArray]:
        """
        Get both water and oil relative permeabilities.

        :param water_saturation: Water saturation (scalar or array).
        :return: Tuple of (krw, kro), matching the input shape.
        """
        return (
            self.get_water_relative_permeability(water_saturation),
            self.get_oil_relative_permeability(water_saturation),
        )


def compute_corey_two_phase_relative_permeabilities(
    water_saturation: FloatOrArray,
    irreducible_water_saturation: float,
    residual_oil_saturation: float,
    water_exponent: float,
    oil_exponent: float,
    max_water_relperm: float = 1.0,
    max_oil_relperm: float = 1.0,
) -> typing.Tuple[FloatOrArray, FloatOrArray]:
    """
    Computes Corey-type water and oil relative permeabilities.

    With the normalised saturation `S = (Sw - Swc) / (1 - Swc - Sor)` clipped to
    [0, 1], `krw = krw_max * S**nw` and `kro = kro_max * (1 - S)**no`.

    :param water_saturation: Water saturation (scalar or array).
    :param irreducible_water_saturation: Irreducible water saturation (Swc).
    :param residual_oil_saturation: Residual oil saturation (Sor).
    :param water_exponent: Corey exponent for water.
    :param oil_exponent: Corey exponent for oil.
    :param max_water_relperm: Water end point relative permeability.
    :param max_oil_relperm: Oil end point relative permeability.
    :return: (water_relative_permeability, oil_relative_permeability)
    """
    sw = np.asarray(water_saturation, dtype=np.float64)
    movable_range = 1.0 - irreducible_water_saturation - residual_oil_saturation
    if movable_range <= 0.0:
        raise ValidationError(
            "Irreducible water and residual oil saturations leave no movable saturation range."
        )
    normalized = np.clip((sw - irreducible_water_saturation) / movable_range, 0.0, 1.0)
    krw = max_water_relperm * normalized**water_exponent
    kro = max_oil_relperm * (1.0 - normalized) ** oil_exponent
    if sw.ndim == 0:
        return float(krw), float(kro)
    return krw, kro


@attrs.frozen
class CoreyRelPermModel:
    """
    Corey-type two-phase relative permeability model.

    Example usage:
    ```python
    from upscaler.relperm import CoreyRelPermModel

    model = CoreyRelPermModel(irreducible_water_saturation=0.2, residual_oil_saturation=0.2)
    krw, kro = model.get_relative_permeabilities(0.5)
    ```
    """

    irreducible_water_saturation: float = attrs.field(
        default=0.0,
        converter=float,
        validator=[attrs.validators.ge(0.0), attrs.validators.lt(1.0)],
    )
    """Irreducible water saturation (Swc)."""
    residual_oil_saturation: float = attrs.field(
        default=0.0,
        converter=float,
        validator=[attrs.validators.ge(0.0), attrs.validators.lt(1.0)],
    )
    """Residual oil saturation (Sor)."""
    water_exponent: float = attrs.field(
        default=2.0, converter=float, validator=attrs.validators.gt(0.0)
    )
    """Corey exponent for water relative permeability."""
    oil_exponent: float = attrs.field(
        default=2.0, converter=float, validator=attrs.validators.gt(0.0)
    )
    """Corey exponent for oil relative permeability."""
    max_water_relperm: float = attrs.field(
        default=1.0, converter=float, validator=attrs.validators.ge(0.0)
    )
    """Water relative permeability at residual oil saturation."""
    max_oil_relperm: float = attrs.field(
        default=1.0, converter=float, validator=attrs.validators.ge(0.0)
    )
    """Oil relative permeability at irreducible water saturation."""

    def __attrs_post_init__(self) -> None:
        if self.irreducible_water_saturation + self.residual_oil_saturation >= 1.0:
            raise ValidationError(
                "Sum of irreducible water and residual oil saturations must be below 1."
            )

    def get_relative_permeabilities(
        self, water_saturation: FloatOrArray
    ) -> typing.Tuple[FloatOrArray, FloatOrArray]:
        return compute_corey_two_phase_relative_permeabilities(
            water_saturation=water_saturation,
            irreducible_water_saturation=self.irreducible_water_saturation,
            residual_oil_saturation=self.residual_oil_saturation,
            water_exponent=self.water_exponent,
            oil_exponent=self.oil_exponent,
            max_water_relperm=self.max_water_relperm,
            max_oil_relperm=self.max_oil_relperm,
        )

    def to_table(self, num_points: int = 101) -> TwoPhaseRelPermTable:
        """Sample the model into a lookup table."""
        saturation = np.linspace(0.0, 1.0, num_points)
        krw, kro = self.get_relative_permeabilities(saturation)
        return TwoPhaseRelPermTable(
            water_saturation=saturation,
            water_relative_permeability=krw,
            oil_relative_permeability=kro,
        )
