"""Physical constants and unit conversion factors"""

import typing

import attrs


__all__ = ["Constant", "Constants", "c"]


@attrs.frozen(slots=True)
class Constant:
    """
    A constant value with optional description and metadata.

    Wraps a constant value and records what it represents and its units.
    """

    value: typing.Any
    """The actual value of the constant."""

    description: typing.Optional[str] = None
    """Optional description of what this constant represents."""

    unit: typing.Optional[str] = None
    """Optional unit of measurement for this constant."""


# All values are SI. The upscaling core works in Pa, m², Pa·s and seconds.
DEFAULT_CONSTANTS: typing.Dict[str, typing.Union[typing.Any, Constant]] = {
    # Time Conversions
    "SECONDS_PER_DAY": Constant(
        value=86400.0, description="Number of seconds in a day", unit="s/day"
    ),
    # Permeability
    "MILLIDARCY": Constant(
        value=9.869232667160128e-16,
        description="One millidarcy in square metres",
        unit="m²",
    ),
    # Fluid Defaults
    "DEFAULT_WATER_VISCOSITY": Constant(
        value=1e-3, description="Default water viscosity", unit="Pa·s"
    ),
    "DEFAULT_OIL_VISCOSITY": Constant(
        value=3e-3, description="Default oil viscosity", unit="Pa·s"
    ),
    "DEFAULT_WATER_DENSITY": Constant(
        value=1000.0, description="Default water density", unit="kg/m³"
    ),
    "DEFAULT_OIL_DENSITY": Constant(
        value=800.0, description="Default oil density", unit="kg/m³"
    ),
    # Numerics
    "FRACTIONAL_FLOW_DERIVATIVE_SAMPLES": Constant(
        value=201,
        description="Number of saturation samples used to bound the fractional flow derivative",
        unit="points",
    ),
}


class Constants:
    """
    Physical constants and conversion factors used in upscaling runs.

    Values are read with dot notation.
    """

    __slots__ = ("_store",)

    def __init__(self) -> None:
        self._store: typing.Dict[str, Constant] = {
            name: value if isinstance(value, Constant) else Constant(value=value)
            for name, value in DEFAULT_CONSTANTS.items()
        }

    def __getattr__(self, name: str) -> typing.Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._store[name].value
        except KeyError:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            ) from None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(constants={len(self._store)})"


c = Constants()
"""Global access to physical constants and conversion factors."""
