"""Per-iteration diagnostic output of cell fields."""

import logging
import pathlib
import typing

import attrs
import meshio  # type: ignore[import-untyped]
import numpy as np
import numpy.typing as npt

from upscaler.errors import DiagnosticsError
from upscaler.grids import CartesianGrid
from upscaler.properties import ReservoirProperties
from upscaler.types import DIMENSION


__all__ = [
    "DiagnosticSink",
    "VTKDiagnosticWriter",
    "build_hexahedra",
    "MemoryDiagnosticSink",
    "compute_phase_velocities",
    "compute_capillary_pressure",
]

logger = logging.getLogger(__name__)

CellData = typing.Mapping[str, npt.NDArray[np.floating]]


class DiagnosticSink(typing.Protocol):
    """Receives named cell fields after each iteration of a run."""

    def write(self, step_id: str, cell_data: CellData) -> None: ...


def compute_phase_velocities(
    properties: ReservoirProperties,
    saturation: npt.NDArray[np.floating],
    cell_velocity: npt.NDArray[np.floating],
) -> typing.Tuple[npt.NDArray[np.floating], npt.NDArray[np.floating]]:
    """
    Split the total cell velocity into water and oil parts by fractional flow.

    :param properties: Reservoir properties.
    :param saturation: Water saturation of each cell.
    :param cell_velocity: Total Darcy velocity of each cell, shape (num_cells, 3).
    :return: (water_velocity, oil_velocity), each of shape (num_cells, 3).
    """
    fractional_flow = np.asarray(
        properties.fractional_flow(np.arange(saturation.size), saturation)
    )[:, None]
    return fractional_flow * cell_velocity, (1.0 - fractional_flow) * cell_velocity


def compute_capillary_pressure(
    properties: ReservoirProperties, saturation: npt.NDArray[np.floating]
) -> npt.NDArray[np.floating]:
    """Capillary pressure (Pa) of each cell at the given saturation."""
    return np.asarray(
        properties.capillary_pressure(np.arange(saturation.size), saturation)
    )


def build_hexahedra(
    grid: CartesianGrid,
) -> typing.Tuple[npt.NDArray[np.floating], npt.NDArray[np.intp]]:
    """
    Corner points and hexahedron connectivity of a Cartesian grid.

    Points are numbered like cells, `(i * (ny + 1) + j) * (nz + 1) + k`, and
    each hexahedron lists its bottom face counter-clockwise then its top face,
    as VTK expects.

    :param grid: The grid.
    :return: (points, cells) with shapes (num_points, 3) and (num_cells, 8).
    """
    nx, ny, nz = grid.shape
    edges = [
        np.concatenate([[0.0], np.cumsum(spacing)])
        for spacing in (grid.x_spacing, grid.y_spacing, grid.z_spacing)
    ]
    x, y, z = np.meshgrid(*edges, indexing="ij")
    points = np.stack([x.ravel(), y.ravel(), z.ravel()], axis=1)

    i, j, k = np.meshgrid(np.arange(nx), np.arange(ny), np.arange(nz), indexing="ij")
    i, j, k = i.ravel(), j.ravel(), k.ravel()

    def corner(di: int, dj: int, dk: int) -> npt.NDArray[np.intp]:
        return ((i + di) * (ny + 1) + (j + dj)) * (nz + 1) + (k + dk)

    cells = np.stack(
        [
            corner(0, 0, 0),
            corner(1, 0, 0),
            corner(1, 1, 0),
            corner(0, 1, 0),
            corner(0, 0, 1),
            corner(1, 0, 1),
            corner(1, 1, 1),
            corner(0, 1, 1),
        ],
        axis=1,
    )
    return points, cells


@attrs.define
class MemoryDiagnosticSink:
    """Keeps copies of every snapshot written to it."""

    snapshots: typing.List[typing.Tuple[str, typing.Dict[str, np.ndarray]]] = attrs.field(
        factory=list
    )

    def write(self, step_id: str, cell_data: CellData) -> None:
        self.snapshots.append(
            (step_id, {name: np.array(values, copy=True) for name, values in cell_data.items()})
        )

    @property
    def step_ids(self) -> typing.List[str]:
        return [step_id for step_id, _ in self.snapshots]

    def clear(self) -> None:
        self.snapshots.clear()


class VTKDiagnosticWriter:
    """
    Writes cell fields as VTK unstructured hexahedron meshes, one file per step.

    Arrays with one value per cell are written as scalar cell data, arrays of
    shape (num_cells, 3) as vector cell data. Cells keep the grid's own ordering.
    """

    def __init__(
        self, grid: CartesianGrid, directory: typing.Union[str, pathlib.Path] = "."
    ) -> None:
        self.grid = grid
        self.directory = pathlib.Path(directory)
        self.points, self.cells = build_hexahedra(grid)

    def path_for(self, step_id: str) -> pathlib.Path:
        return self.directory / f"{step_id}.vtk"

    def _check_field(self, name: str, values: npt.ArrayLike) -> np.ndarray:
        num_cells = self.grid.num_cells
        values = np.asarray(values, dtype=np.float64)
        if values.shape not in ((num_cells,), (num_cells, DIMENSION)):
            raise DiagnosticsError(
                f"Cell field {name!r} has shape {values.shape}; expected ({num_cells},) or ({num_cells}, 3)."
            )
        return values

    def write(self, step_id: str, cell_data: CellData) -> None:
        """
        Write `cell_data` to `<directory>/<step_id>.vtk`.

        Spaces in field names are replaced by underscores, since legacy VTK
        names cannot contain them.

        :raises DiagnosticsError: If a field has the wrong shape or the file cannot be written.
        """
        fields = {
            name.replace(" ", "_"): [self._check_field(name, values)]
            for name, values in cell_data.items()
        }
        mesh = meshio.Mesh(self.points, [("hexahedron", self.cells)], cell_data=fields)
        path = self.path_for(step_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            meshio.write(path, mesh, file_format="vtk", binary=False)
        except OSError as exc:
            raise DiagnosticsError(f"Cannot write diagnostics to {str(path)!r}: {exc}") from exc
        logger.debug(f"Wrote diagnostics to {str(path)!r}")
