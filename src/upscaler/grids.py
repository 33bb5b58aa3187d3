"""Structured Cartesian blocks and their cell/face topology."""

import typing

import attrs
import numpy as np
import numpy.typing as npt

from upscaler._precision import get_dtype
from upscaler.errors import BoundaryConditionError, ValidationError
from upscaler.types import DIMENSION, Vector3


__all__ = ["Face", "CartesianGrid", "FACES_PER_CELL"]

FACES_PER_CELL = 2 * DIMENSION
"""Local faces of a hexahedral cell: (-x, +x, -y, +y, -z, +z)."""


def _as_spacing(value: typing.Any) -> npt.NDArray[np.floating]:
    spacing = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if spacing.ndim != 1 or spacing.size == 0:
        raise ValidationError("Cell spacing must be a non-empty 1D sequence.")
    if np.any(~np.isfinite(spacing)) or np.any(spacing <= 0.0):
        raise ValidationError("Cell spacing must be finite and strictly positive.")
    return spacing


@attrs.frozen(slots=True)
class Face:
    """
    One face of a cell, seen from that cell.

    The local index encodes the orientation: `axis = local_index // 2` and
    `side = local_index % 2` (0 for the minus side, 1 for the plus side).
    """

    cell: int
    """Index of the cell the face belongs to."""
    local_index: int
    """Local face index in 0..5."""
    neighbour: int
    """Index of the cell across the face, or -1 on the block boundary."""
    boundary_id: int
    """Stable boundary id of the face, or -1 for interior faces."""
    area: float
    """Face area (m²)."""

    @property
    def axis(self) -> int:
        return self.local_index // 2

    @property
    def side(self) -> int:
        return self.local_index % 2

    @property
    def is_boundary(self) -> bool:
        return self.neighbour < 0


@attrs.frozen
class CartesianGrid:
    """
    Tensor-product Cartesian block.

    Cells are ordered C-style, `cell = (i * ny + j) * nz + k`. Every boundary
    face carries a boundary id, assigned in cell order and, within a cell, in
    local face order. Ids are therefore stable for a given block shape.

    Example usage:
    ```python
    from upscaler.grids import CartesianGrid

    grid = CartesianGrid.uniform(shape=(10, 10, 5), cell_dimension=(1.0, 1.0, 0.5))
    grid.num_cells  # 500
    grid.num_boundary_faces  # 2 * (50 + 50 + 100)
    ```
    """

    x_spacing: npt.NDArray[np.floating] = attrs.field(converter=_as_spacing)
    """Cell widths along x (m)."""
    y_spacing: npt.NDArray[np.floating] = attrs.field(converter=_as_spacing)
    """Cell widths along y (m)."""
    z_spacing: npt.NDArray[np.floating] = attrs.field(converter=_as_spacing)
    """Cell widths along z (m)."""

    cell_sizes: npt.NDArray[np.floating] = attrs.field(init=False, repr=False)
    """Per-cell (dx, dy, dz), shape (num_cells, 3)."""
    cell_volumes: npt.NDArray[np.floating] = attrs.field(init=False, repr=False)
    """Per-cell bulk volume (m³)."""
    cell_centers: npt.NDArray[np.floating] = attrs.field(init=False, repr=False)
    """Per-cell centroid coordinates, shape (num_cells, 3)."""
    face_areas: npt.NDArray[np.floating] = attrs.field(init=False, repr=False)
    """Area of every local face, shape (num_cells, 6)."""
    neighbours: npt.NDArray[np.intp] = attrs.field(init=False, repr=False)
    """Cell across every local face, -1 on the boundary, shape (num_cells, 6)."""
    boundary_ids: npt.NDArray[np.intp] = attrs.field(init=False, repr=False)
    """Boundary id of every local face, -1 in the interior, shape (num_cells, 6)."""
    boundary_cells: npt.NDArray[np.intp] = attrs.field(init=False, repr=False)
    """Cell owning each boundary face, indexed by boundary id."""
    boundary_local_faces: npt.NDArray[np.intp] = attrs.field(init=False, repr=False)
    """Local face index of each boundary face, indexed by boundary id."""

    def __attrs_post_init__(self) -> None:
        nx, ny, nz = self.shape
        i, j, k = np.meshgrid(
            np.arange(nx), np.arange(ny), np.arange(nz), indexing="ij"
        )
        i, j, k = i.ravel(), j.ravel(), k.ravel()
        dx = self.x_spacing[i]
        dy = self.y_spacing[j]
        dz = self.z_spacing[k]
        cell_sizes = np.stack([dx, dy, dz], axis=1)

        x_edges = np.concatenate([[0.0], np.cumsum(self.x_spacing)])
        y_edges = np.concatenate([[0.0], np.cumsum(self.y_spacing)])
        z_edges = np.concatenate([[0.0], np.cumsum(self.z_spacing)])
        cell_centers = np.stack(
            [x_edges[i] + 0.5 * dx, y_edges[j] + 0.5 * dy, z_edges[k] + 0.5 * dz],
            axis=1,
        )

        num_cells = nx * ny * nz
        neighbours = np.full((num_cells, FACES_PER_CELL), -1, dtype=np.intp)
        index = (i * ny + j) * nz + k
        neighbours[:, 0] = np.where(i > 0, index - ny * nz, -1)
        neighbours[:, 1] = np.where(i < nx - 1, index + ny * nz, -1)
        neighbours[:, 2] = np.where(j > 0, index - nz, -1)
        neighbours[:, 3] = np.where(j < ny - 1, index + nz, -1)
        neighbours[:, 4] = np.where(k > 0, index - 1, -1)
        neighbours[:, 5] = np.where(k < nz - 1, index + 1, -1)

        face_areas = np.empty((num_cells, FACES_PER_CELL), dtype=np.float64)
        face_areas[:, 0] = face_areas[:, 1] = dy * dz
        face_areas[:, 2] = face_areas[:, 3] = dx * dz
        face_areas[:, 4] = face_areas[:, 5] = dx * dy

        is_boundary = neighbours < 0
        flat_ids = np.cumsum(is_boundary.ravel()) - 1
        boundary_ids = np.where(
            is_boundary, flat_ids.reshape(is_boundary.shape), -1
        ).astype(np.intp)
        boundary_cells, boundary_local_faces = np.nonzero(is_boundary)

        for name, value in (
            ("cell_sizes", cell_sizes),
            ("cell_volumes", dx * dy * dz),
            ("cell_centers", cell_centers),
            ("face_areas", face_areas),
            ("neighbours", neighbours),
            ("boundary_ids", boundary_ids),
            ("boundary_cells", boundary_cells.astype(np.intp)),
            ("boundary_local_faces", boundary_local_faces.astype(np.intp)),
        ):
            value.flags.writeable = False
            object.__setattr__(self, name, value)

    @classmethod
    def uniform(
        cls,
        shape: typing.Tuple[int, int, int],
        cell_dimension: Vector3 = (1.0, 1.0, 1.0),
    ) -> "CartesianGrid":
        """
        Build a block of identical cells.

        :param shape: Number of cells along (x, y, z).
        :param cell_dimension: Cell size (dx, dy, dz) in metres.
        :return: The grid.
        """
        if len(shape) != DIMENSION or any(int(n) < 1 for n in shape):
            raise ValidationError(
                f"Grid shape must be three positive integers, got {shape!r}."
            )
        if len(cell_dimension) != DIMENSION:
            raise ValidationError(
                f"Cell dimension must have three entries, got {cell_dimension!r}."
            )
        return cls(
            x_spacing=np.full(int(shape[0]), cell_dimension[0]),
            y_spacing=np.full(int(shape[1]), cell_dimension[1]),
            z_spacing=np.full(int(shape[2]), cell_dimension[2]),
        )

    @property
    def shape(self) -> typing.Tuple[int, int, int]:
        return (self.x_spacing.size, self.y_spacing.size, self.z_spacing.size)

    @property
    def dimension(self) -> int:
        return DIMENSION

    @property
    def num_cells(self) -> int:
        nx, ny, nz = self.shape
        return nx * ny * nz

    @property
    def num_boundary_faces(self) -> int:
        return int(self.boundary_cells.size)

    @property
    def lengths(self) -> npt.NDArray[np.floating]:
        """Extent of the block along each axis (m)."""
        return np.array(
            [self.x_spacing.sum(), self.y_spacing.sum(), self.z_spacing.sum()]
        )

    @property
    def cross_section_areas(self) -> npt.NDArray[np.floating]:
        """Area of the block cross-section normal to each axis (m²)."""
        lx, ly, lz = self.lengths
        return np.array([ly * lz, lx * lz, lx * ly])

    @property
    def total_volume(self) -> float:
        return float(self.cell_volumes.sum())

    @property
    def boundary_face_areas(self) -> npt.NDArray[np.floating]:
        return self.face_areas[self.boundary_cells, self.boundary_local_faces]

    @property
    def boundary_face_centers(self) -> npt.NDArray[np.floating]:
        """Centroid of every boundary face, indexed by boundary id."""
        centers = self.cell_centers[self.boundary_cells].copy()
        axes = self.boundary_local_faces // 2
        signs = np.where(self.boundary_local_faces % 2 == 1, 0.5, -0.5)
        rows = np.arange(centers.shape[0])
        centers[rows, axes] += (
            signs * self.cell_sizes[self.boundary_cells, axes]
        )
        return centers

    def index(self, i: int, j: int, k: int) -> int:
        """Convert (i, j, k) to a cell index."""
        nx, ny, nz = self.shape
        if not (0 <= i < nx and 0 <= j < ny and 0 <= k < nz):
            raise ValidationError(f"Cell ({i}, {j}, {k}) lies outside a {self.shape} grid.")
        return (i * ny + j) * nz + k

    def ijk(self, cell: int) -> typing.Tuple[int, int, int]:
        """Convert a cell index to (i, j, k)."""
        _, ny, nz = self.shape
        i, remainder = divmod(int(cell), ny * nz)
        j, k = divmod(remainder, nz)
        return i, j, k

    def is_boundary(self, cell: int, local_face: int) -> bool:
        return bool(self.neighbours[cell, local_face] < 0)

    def face(self, cell: int, local_face: int) -> Face:
        return Face(
            cell=int(cell),
            local_index=int(local_face),
            neighbour=int(self.neighbours[cell, local_face]),
            boundary_id=int(self.boundary_ids[cell, local_face]),
            area=float(self.face_areas[cell, local_face]),
        )

    def cell_faces(self, cell: int) -> typing.Iterator[Face]:
        """Iterate over the six faces of `cell` in local face order."""
        for local_face in range(FACES_PER_CELL):
            yield self.face(cell, local_face)

    def iter_boundary_faces(self) -> typing.Iterator[Face]:
        """Iterate over all boundary faces in boundary id order."""
        for cell, local_face in zip(self.boundary_cells, self.boundary_local_faces):
            yield self.face(cell, local_face)

    def boundary_face(self, boundary_id: int) -> Face:
        if not 0 <= boundary_id < self.num_boundary_faces:
            raise BoundaryConditionError(
                f"Unknown boundary id {boundary_id}. The grid has {self.num_boundary_faces} boundary faces."
            )
        return self.face(
            self.boundary_cells[boundary_id], self.boundary_local_faces[boundary_id]
        )

    def boundary_faces_on(self, axis: int, side: int) -> npt.NDArray[np.intp]:
        """Boundary ids of all faces on one side (0 minus, 1 plus) of the block along `axis`."""
        return np.flatnonzero(self.boundary_local_faces == 2 * axis + side)

    def periodic_partner(self, boundary_id: int) -> int:
        """
        Geometric counterpart of a boundary face on the opposite side of the block.

        The partner has the same transverse cell indices and lies on the
        opposite side along the same axis.

        :param boundary_id: Boundary id of the face.
        :return: Boundary id of the partner face.
        :raises BoundaryConditionError: If no matching face exists.
        """
        face = self.boundary_face(boundary_id)
        ijk = list(self.ijk(face.cell))
        ijk[face.axis] = 0 if face.side == 1 else self.shape[face.axis] - 1
        partner_cell = self.index(*ijk)
        partner_local_face = 2 * face.axis + (1 - face.side)
        partner_id = int(self.boundary_ids[partner_cell, partner_local_face])
        if partner_id < 0:
            raise BoundaryConditionError(
                f"Boundary face {boundary_id} has no periodic partner; "
                f"face {partner_local_face} of cell {partner_cell} is not on the boundary."
            )
        if not np.isclose(
            self.face_areas[partner_cell, partner_local_face], face.area
        ):
            raise BoundaryConditionError(
                f"Boundary faces {boundary_id} and {partner_id} do not match geometrically "
                f"(areas {face.area} and {self.face_areas[partner_cell, partner_local_face]})."
            )
        return partner_id

    def zeros(self) -> npt.NDArray[np.floating]:
        """A per-cell array of zeros in the working precision."""
        return np.zeros(self.num_cells, dtype=get_dtype())
