"""Boundary conditions for driving a Cartesian block along one axis."""

import enum
import logging
import typing

import attrs
import numpy as np
import numpy.typing as npt

from upscaler.errors import BoundaryConditionError, ValidationError
from upscaler.grids import CartesianGrid
from upscaler.types import DIMENSION, BoundaryConditionType, FlowDirection


__all__ = [
    "Boundary",
    "FlowConditionType",
    "SaturationConditionType",
    "FlowCondition",
    "SaturationCondition",
    "BoundaryConditions",
    "setup_upscaling_conditions",
]

logger = logging.getLogger(__name__)


class Boundary(enum.Enum):
    """Enumeration of possible boundary directions."""

    LEFT = "left"
    """The negative X direction (left/west face)."""
    RIGHT = "right"
    """The positive X direction (right/east face)."""
    FRONT = "front"
    """The negative Y direction (front/south face)."""
    BACK = "back"
    """The positive Y direction (back/north face)."""
    BOTTOM = "bottom"
    """The negative Z direction (bottom face)."""
    TOP = "top"
    """The positive Z direction (top face)."""

    @property
    def local_face(self) -> int:
        """Local face index of this boundary in a cell."""
        return _BOUNDARY_ORDER.index(self)

    @property
    def axis(self) -> int:
        return self.local_face // 2

    @property
    def opposite(self) -> "Boundary":
        local_face = self.local_face
        return _BOUNDARY_ORDER[local_face + 1 if local_face % 2 == 0 else local_face - 1]

    @classmethod
    def from_local_face(cls, local_face: int) -> "Boundary":
        return _BOUNDARY_ORDER[local_face]

    @classmethod
    def on_axis(cls, axis: int) -> typing.Tuple["Boundary", "Boundary"]:
        """(minus, plus) boundaries of `axis`."""
        return _BOUNDARY_ORDER[2 * axis], _BOUNDARY_ORDER[2 * axis + 1]


_BOUNDARY_ORDER = (
    Boundary.LEFT,
    Boundary.RIGHT,
    Boundary.FRONT,
    Boundary.BACK,
    Boundary.BOTTOM,
    Boundary.TOP,
)


class FlowConditionType(enum.IntEnum):
    DIRICHLET = 0
    """Prescribed boundary pressure (Pa)."""
    NEUMANN = 1
    """Prescribed outward flux (m³/s). Zero means a sealed face."""
    PERIODIC = 2
    """Coupled to the partner face, with a pressure jump (Pa)."""


class SaturationConditionType(enum.IntEnum):
    DIRICHLET = 0
    """Fixed water saturation of fluid entering through the face."""
    PERIODIC = 1
    """Fluid entering through the face is what leaves through the partner face."""


@attrs.frozen(slots=True)
class FlowCondition:
    """Pressure/flux condition of a single boundary face."""

    type: FlowConditionType
    value: float
    """Pressure for Dirichlet, outward flux for Neumann, pressure jump for periodic faces."""

    def is_dirichlet(self) -> bool:
        return self.type is FlowConditionType.DIRICHLET

    def is_neumann(self) -> bool:
        return self.type is FlowConditionType.NEUMANN

    def is_periodic(self) -> bool:
        return self.type is FlowConditionType.PERIODIC

    @property
    def pressure(self) -> float:
        if not self.is_dirichlet():
            raise ValidationError("Only Dirichlet flow conditions carry a pressure.")
        return self.value

    @property
    def pressure_difference(self) -> float:
        if not self.is_periodic():
            raise ValidationError("Only periodic flow conditions carry a pressure jump.")
        return self.value

    @property
    def outflux(self) -> float:
        if not self.is_neumann():
            raise ValidationError("Only Neumann flow conditions carry a flux.")
        return self.value


@attrs.frozen(slots=True)
class SaturationCondition:
    """Saturation condition of a single boundary face."""

    type: SaturationConditionType
    value: float
    """Boundary saturation for Dirichlet faces, saturation difference for periodic faces."""

    def is_dirichlet(self) -> bool:
        return self.type is SaturationConditionType.DIRICHLET

    def is_periodic(self) -> bool:
        return self.type is SaturationConditionType.PERIODIC

    @property
    def saturation(self) -> float:
        if not self.is_dirichlet():
            raise ValidationError("Only Dirichlet saturation conditions carry a saturation.")
        return self.value

    @property
    def saturation_difference(self) -> float:
        if not self.is_periodic():
            raise ValidationError(
                "Only periodic saturation conditions carry a saturation difference."
            )
        return self.value


def _frozen_array(dtype: typing.Any) -> typing.Callable[[typing.Any], np.ndarray]:
    def convert(value: typing.Any) -> np.ndarray:
        array = np.array(value, dtype=dtype, copy=True).ravel()
        array.flags.writeable = False
        return array

    return convert


@attrs.frozen
class BoundaryConditions:
    """
    Flow and saturation conditions for every boundary face of a grid.

    Arrays are indexed by boundary id. Periodic faces carry the boundary id of
    their partner in `partners`; all other faces carry -1. The pairing is
    validated on construction: every periodic face has exactly one partner,
    the partner is periodic and points back.
    """

    flow_types: npt.NDArray[np.int8] = attrs.field(converter=_frozen_array(np.int8))
    """`FlowConditionType` value of each face."""
    flow_values: npt.NDArray[np.floating] = attrs.field(
        converter=_frozen_array(np.float64)
    )
    """Pressure, outward flux or pressure jump of each face."""
    saturation_types: npt.NDArray[np.int8] = attrs.field(
        converter=_frozen_array(np.int8)
    )
    """`SaturationConditionType` value of each face."""
    saturation_values: npt.NDArray[np.floating] = attrs.field(
        converter=_frozen_array(np.float64)
    )
    """Boundary saturation or saturation difference of each face."""
    partners: npt.NDArray[np.intp] = attrs.field(converter=_frozen_array(np.intp))
    """Periodic partner boundary id of each face, -1 if not periodic."""

    def __attrs_post_init__(self) -> None:
        size = self.flow_types.size
        for name in ("flow_values", "saturation_types", "saturation_values", "partners"):
            if getattr(self, name).size != size:
                raise ValidationError(
                    f"`{name}` has {getattr(self, name).size} entries, expected {size}."
                )
        if np.any(~np.isin(self.flow_types, [t.value for t in FlowConditionType])):
            raise ValidationError("Unknown flow condition type in `flow_types`.")
        if np.any(
            ~np.isin(self.saturation_types, [t.value for t in SaturationConditionType])
        ):
            raise ValidationError("Unknown saturation condition type in `saturation_types`.")
        self._validate_pairing()

    def _validate_pairing(self) -> None:
        size = len(self)
        flow_periodic = self.flow_types == FlowConditionType.PERIODIC
        saturation_periodic = self.saturation_types == SaturationConditionType.PERIODIC
        for boundary_id in range(size):
            partner = int(self.partners[boundary_id])
            is_periodic = flow_periodic[boundary_id] or saturation_periodic[boundary_id]
            if not is_periodic:
                if partner >= 0:
                    raise BoundaryConditionError(
                        f"Boundary face {boundary_id} is not periodic but is paired with face {partner}."
                    )
                continue
            if (
                self.flow_types[boundary_id] == FlowConditionType.DIRICHLET
                and saturation_periodic[boundary_id]
            ):
                raise BoundaryConditionError(
                    f"Boundary face {boundary_id} cannot be both Dirichlet and periodic."
                )
            if not 0 <= partner < size:
                raise BoundaryConditionError(
                    f"Periodic boundary face {boundary_id} has no partner face (got {partner})."
                )
            if partner == boundary_id:
                raise BoundaryConditionError(
                    f"Periodic boundary face {boundary_id} is paired with itself."
                )
            if int(self.partners[partner]) != boundary_id:
                raise BoundaryConditionError(
                    f"Periodic pairing is not reciprocal: face {boundary_id} points to {partner}, "
                    f"which points to {int(self.partners[partner])}."
                )
            if (
                flow_periodic[boundary_id] != flow_periodic[partner]
                or saturation_periodic[boundary_id] != saturation_periodic[partner]
            ):
                raise BoundaryConditionError(
                    f"Periodic boundary faces {boundary_id} and {partner} disagree on their condition types."
                )

    def __len__(self) -> int:
        return int(self.flow_types.size)

    def _check_id(self, boundary_id: int) -> int:
        boundary_id = int(boundary_id)
        if not 0 <= boundary_id < len(self):
            raise BoundaryConditionError(
                f"Unknown boundary id {boundary_id}. There are {len(self)} boundary faces."
            )
        return boundary_id

    def flow_condition(self, boundary_id: int) -> FlowCondition:
        boundary_id = self._check_id(boundary_id)
        return FlowCondition(
            type=FlowConditionType(int(self.flow_types[boundary_id])),
            value=float(self.flow_values[boundary_id]),
        )

    def saturation_condition(self, boundary_id: int) -> SaturationCondition:
        boundary_id = self._check_id(boundary_id)
        return SaturationCondition(
            type=SaturationConditionType(int(self.saturation_types[boundary_id])),
            value=float(self.saturation_values[boundary_id]),
        )

    def periodic_partner(self, boundary_id: int) -> int:
        """
        Partner boundary id of a periodic face.

        :raises BoundaryConditionError: If the face is not periodic.
        """
        boundary_id = self._check_id(boundary_id)
        partner = int(self.partners[boundary_id])
        if partner < 0:
            raise BoundaryConditionError(
                f"Boundary face {boundary_id} is not periodic and has no partner."
            )
        return partner

    @property
    def has_dirichlet_pressure(self) -> bool:
        return bool(np.any(self.flow_types == FlowConditionType.DIRICHLET))

    def with_saturation_conditions(
        self,
        saturation_types: npt.ArrayLike,
        saturation_values: npt.ArrayLike,
    ) -> "BoundaryConditions":
        """Copy of this set with the saturation conditions replaced."""
        return attrs.evolve(
            self,
            saturation_types=saturation_types,
            saturation_values=saturation_values,
        )


def setup_upscaling_conditions(
    grid: CartesianGrid,
    boundary_condition_type: BoundaryConditionType,
    flow_direction: FlowDirection,
    pressure_drop: float,
    boundary_saturation: float,
    twodim_hack: bool = False,
) -> BoundaryConditions:
    """
    Build the boundary conditions that drive flow through `grid` along one axis.

    Flow goes from the minus side to the plus side of `flow_direction`. The
    minus end is held at `pressure_drop` and the plus end at zero; fluid
    entering through Dirichlet faces has water saturation `boundary_saturation`.

    :param grid: The block.
    :param boundary_condition_type: One of "fixed", "linear", "periodic" or "fully_periodic".
    :param flow_direction: Axis (0, 1 or 2) the block is driven along.
    :param pressure_drop: Pressure difference across the block (Pa).
    :param boundary_saturation: Water saturation of injected fluid.
    :param twodim_hack: Seal the z faces, for blocks one cell thick.
    :return: The boundary conditions, one entry per boundary face.
    :raises ValidationError: On an invalid flow direction or condition type.
    :raises BoundaryConditionError: If a periodic face has no geometric partner.
    """
    if flow_direction not in range(DIMENSION):
        raise ValidationError(
            f"Flow direction must be 0, 1 or 2, got {flow_direction!r}."
        )
    if boundary_condition_type not in ("fixed", "linear", "periodic", "fully_periodic"):
        raise ValidationError(
            f"Unknown boundary condition type {boundary_condition_type!r}."
        )
    if twodim_hack and flow_direction == 2:
        raise ValidationError("Cannot seal the z faces when flowing along z.")

    num_faces = grid.num_boundary_faces
    axes = grid.boundary_local_faces // 2
    sides = grid.boundary_local_faces % 2
    on_flow_axis = axes == flow_direction
    end_pressure = np.where(sides == 0, pressure_drop, 0.0)

    flow_types = np.full(num_faces, FlowConditionType.DIRICHLET, dtype=np.int8)
    flow_values = np.zeros(num_faces)
    saturation_types = np.full(num_faces, SaturationConditionType.DIRICHLET, dtype=np.int8)
    saturation_values = np.full(num_faces, float(boundary_saturation))
    periodic = np.zeros(num_faces, dtype=bool)

    if boundary_condition_type == "periodic":
        flow_values[on_flow_axis] = end_pressure[on_flow_axis]
        periodic = ~on_flow_axis
    elif boundary_condition_type == "fixed":
        flow_values[on_flow_axis] = end_pressure[on_flow_axis]
        flow_types[~on_flow_axis] = FlowConditionType.NEUMANN
    elif boundary_condition_type == "linear":
        length = grid.lengths[flow_direction]
        position = grid.boundary_face_centers[:, flow_direction]
        flow_values[:] = pressure_drop * (1.0 - position / length)
    else:
        periodic[:] = True
        flow_values[on_flow_axis] = np.where(
            sides[on_flow_axis] == 0, pressure_drop, -pressure_drop
        )

    if twodim_hack:
        sealed = axes == 2
        periodic[sealed] = False
        flow_types[sealed] = FlowConditionType.NEUMANN
        flow_values[sealed] = 0.0

    partners = np.full(num_faces, -1, dtype=np.intp)
    for boundary_id in np.flatnonzero(periodic):
        partners[boundary_id] = grid.periodic_partner(int(boundary_id))
    flow_types[periodic] = FlowConditionType.PERIODIC
    saturation_types[periodic] = SaturationConditionType.PERIODIC
    saturation_values[periodic] = 0.0
    if boundary_condition_type == "periodic":
        flow_values[periodic] = 0.0

    logger.debug(
        f"Built {boundary_condition_type!r} boundary conditions along axis {flow_direction}: "
        f"{int(np.count_nonzero(flow_types == FlowConditionType.DIRICHLET))} Dirichlet, "
        f"{int(np.count_nonzero(flow_types == FlowConditionType.NEUMANN))} Neumann, "
        f"{int(np.count_nonzero(periodic))} periodic faces."
    )
    return BoundaryConditions(
        flow_types=flow_types,
        flow_values=flow_values,
        saturation_types=saturation_types,
        saturation_values=saturation_values,
        partners=partners,
    )
