import logging
import typing

import attrs

from upscaler.constants import c
from upscaler.errors import ValidationError
from upscaler.types import BoundaryConditionType, Preconditioner, Solver

__all__ = ["Config"]

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on", "y", "t"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", "n", "f"})


def _to_bool(value: typing.Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValidationError(f"Cannot interpret {value!r} as a boolean.")
    return bool(value)


def _to_optional_float(value: typing.Any) -> typing.Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in {"", "none", "default"}:
        return None
    return float(value)


def _to_optional_str(value: typing.Any) -> typing.Optional[str]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in {"", "none"}:
        return None
    return value


def _to_solver(
    value: typing.Any,
) -> typing.Union[Solver, typing.Tuple[Solver, ...]]:
    if isinstance(value, str) and "," in value:
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, list):
        return tuple(value)
    return value


def _optional_positive(
    instance: typing.Any, attribute: "attrs.Attribute[typing.Any]", value: typing.Any
) -> None:
    if value is not None and value <= 0:
        raise ValidationError(f"`{attribute.name}` must be positive, got {value!r}.")


@attrs.frozen
class Config:
    """Steady-state upscaling run configuration and parameters."""

    output_vtk: bool = attrs.field(default=False, converter=_to_bool)
    """Whether to emit diagnostic cell fields after every pressure/transport iteration."""
    print_inoutflows: bool = attrs.field(default=False, converter=_to_bool)
    """Whether to print the boundary in/out flows of each phase after every iteration."""
    simulation_steps: int = attrs.field(
        default=10, converter=int, validator=attrs.validators.ge(0)
    )
    """
    Fixed number of transport/pressure iterations run towards steady state.

    There is no convergence check. The run is an approximation of steady state
    whose quality is governed by this count and `stepsize`.
    """
    stepsize: float = attrs.field(
        default=0.1, converter=float, validator=attrs.validators.gt(0.0)
    )
    """Transport step size in days."""
    relperm_threshold: float = attrs.field(
        default=1.0e-4, converter=float, validator=attrs.validators.ge(0.0)
    )
    """
    Floor applied to relative permeabilities when building phase mobilities
    for effective permeability extraction. Mobilities are floored at
    `relperm_threshold / viscosity` of the phase.
    """
    viscosity1: typing.Optional[float] = attrs.field(
        default=None, converter=_to_optional_float, validator=_optional_positive
    )
    """Water viscosity override (Pa·s). Defaults to the value held by the reservoir properties."""
    viscosity2: typing.Optional[float] = attrs.field(
        default=None, converter=_to_optional_float, validator=_optional_positive
    )
    """Oil viscosity override (Pa·s). Defaults to the value held by the reservoir properties."""
    density1: typing.Optional[float] = attrs.field(
        default=None, converter=_to_optional_float, validator=_optional_positive
    )
    """Water density override (kg/m³)."""
    density2: typing.Optional[float] = attrs.field(
        default=None, converter=_to_optional_float, validator=_optional_positive
    )
    """Oil density override (kg/m³)."""
    boundary_condition_type: BoundaryConditionType = attrs.field(
        default="periodic",
        validator=attrs.validators.in_(
            ("fixed", "linear", "periodic", "fully_periodic")
        ),
    )
    """Family of boundary conditions used to drive the block ('fixed', 'linear', 'periodic', 'fully_periodic')."""
    twodim_hack: bool = attrs.field(default=False, converter=_to_bool)
    """Seal the z faces of the block, for blocks that are one cell thick."""
    residual_tolerance: float = attrs.field(
        default=1e-8,
        converter=float,
        validator=attrs.validators.and_(
            attrs.validators.gt(0.0), attrs.validators.le(1e-2)
        ),
    )
    """Relative residual tolerance for the pressure linear solver."""
    linsolver_verbosity: int = attrs.field(
        default=0, converter=int, validator=attrs.validators.ge(0)
    )
    """Linear solver verbosity. Values above zero log a summary of every pressure solve."""
    linsolver_type: typing.Union[Solver, typing.Tuple[Solver, ...]] = attrs.field(
        default="bicgstab", converter=_to_solver
    )
    """Linear solver(s) to use for the pressure system, tried in order."""
    preconditioner: typing.Optional[Preconditioner] = attrs.field(
        default="ilu", converter=_to_optional_str
    )
    """Preconditioner to use for iterative pressure solves."""
    linsolver_max_iterations: int = attrs.field(
        default=500,
        converter=int,
        validator=attrs.validators.and_(
            attrs.validators.ge(1), attrs.validators.le(5000)
        ),
    )
    """Maximum number of iterations allowed for each iterative pressure solve."""
    fallback_to_direct: bool = attrs.field(default=True, converter=_to_bool)
    """Whether to fall back to a direct solve when all iterative solvers fail."""
    cfl_fraction: float = attrs.field(
        default=0.5,
        converter=float,
        validator=attrs.validators.and_(
            attrs.validators.gt(0.0), attrs.validators.le(1.0)
        ),
    )
    """
    Safety factor applied to the explicit transport CFL limit.

    Lowering this value increases stability at the cost of more transport sub-steps.
    """
    min_transport_substeps: int = attrs.field(
        default=1, converter=int, validator=attrs.validators.ge(1)
    )
    """Minimum number of sub-steps taken by each transport step."""
    output_directory: str = attrs.field(default=".", converter=str)
    """Directory diagnostic files are written to."""
    output_prefix: str = attrs.field(default="output-steadystate", converter=str)
    """Prefix of the step identifiers handed to the diagnostic sink."""

    @property
    def stepsize_in_seconds(self) -> float:
        """Transport step size converted to seconds."""
        return self.stepsize * c.SECONDS_PER_DAY

    def evolve(self, **changes: typing.Any) -> "Config":
        """Return a copy of this configuration with `changes` applied."""
        return attrs.evolve(self, **changes)

    @classmethod
    def from_parameters(cls, parameters: typing.Mapping[str, typing.Any]) -> "Config":
        """
        Build a configuration from a flat parameter mapping.

        Values may be strings (as read from `key=value` tokens or parameter files);
        they are converted to the field types. Keys that are not configuration
        fields are ignored, so one mapping can feed several consumers.

        :param parameters: Mapping of parameter names to values.
        :return: The configuration.
        :raises ValidationError: If a value cannot be converted or fails validation.
        """
        names = {field.name for field in attrs.fields(cls)}
        known = {}
        for key, value in parameters.items():
            if key in names:
                known[key] = value
            else:
                logger.debug(f"Ignoring parameter {key!r}; not a configuration field.")
        try:
            return cls(**known)
        except ValidationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid upscaling parameters: {exc}") from exc
