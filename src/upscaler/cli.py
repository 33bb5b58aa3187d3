"""Command line driver: `python -m upscaler key=value ...`."""

import argparse
import logging
import sys
import typing

import numpy as np

from upscaler.config import Config
from upscaler.constants import c
from upscaler.errors import UpscalerError, ValidationError
from upscaler.grids import CartesianGrid
from upscaler.properties import ReservoirProperties
from upscaler.relperm import CoreyRelPermModel
from upscaler.steady_state import SteadyStateUpscaler


__all__ = ["parse_parameters", "build_parser", "main"]

logger = logging.getLogger(__name__)

BLOCK_DEFAULTS: typing.Dict[str, str] = {
    "nx": "5",
    "ny": "5",
    "nz": "1",
    "dx": "1.0",
    "dy": "1.0",
    "dz": "1.0",
    "porosity": "0.2",
    "permeability_mD": "100.0",
    "swc": "0.1",
    "sor": "0.1",
    "nw": "2.0",
    "no": "2.0",
    "pressure_drop": "1e5",
    "initial_saturation": "",
    "flow_directions": "0,1,2",
    "boundary_saturations": "0.2,0.5,0.8",
}
"""Block and run parameters understood besides the `Config` fields."""


def parse_parameters(tokens: typing.Sequence[str]) -> typing.Dict[str, str]:
    """
    Parse `key=value` tokens into a mapping.

    :raises ValidationError: On a token without `=` or with an empty key.
    """
    parameters: typing.Dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValidationError(f"Expected a key=value parameter, got {token!r}.")
        parameters[key] = value.strip()
    return parameters


def _float_list(value: str) -> typing.List[float]:
    return [float(part) for part in value.split(",") if part.strip()]


def _int_list(value: str) -> typing.List[int]:
    return [int(part) for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="upscaler",
        description=(
            "Upscale steady-state relative permeabilities of a homogeneous Cartesian block. "
            "Parameters are given as key=value, e.g. nx=10 simulation_steps=20 "
            "boundary_condition_type=fixed."
        ),
    )
    parser.add_argument(
        "parameters",
        nargs="*",
        metavar="key=value",
        help=f"Block parameters ({', '.join(BLOCK_DEFAULTS)}) or configuration fields.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (-v for INFO, -vv for DEBUG).",
    )
    return parser


def _build_case(
    parameters: typing.Mapping[str, str],
) -> typing.Tuple[CartesianGrid, ReservoirProperties]:
    try:
        shape = (int(parameters["nx"]), int(parameters["ny"]), int(parameters["nz"]))
        cell_dimension = (
            float(parameters["dx"]),
            float(parameters["dy"]),
            float(parameters["dz"]),
        )
        relperm_model = CoreyRelPermModel(
            irreducible_water_saturation=float(parameters["swc"]),
            residual_oil_saturation=float(parameters["sor"]),
            water_exponent=float(parameters["nw"]),
            oil_exponent=float(parameters["no"]),
        )
        grid = CartesianGrid.uniform(shape, cell_dimension)
        properties = ReservoirProperties.homogeneous(
            grid,
            porosity=float(parameters["porosity"]),
            permeability=float(parameters["permeability_mD"]) * c.MILLIDARCY,
            relperm_model=relperm_model,
        )
    except ValidationError:
        raise
    except ValueError as exc:
        raise ValidationError(f"Invalid block parameters: {exc}") from exc
    return grid, properties


def _format_tensor(tensor: np.ndarray) -> str:
    return np.array2string(tensor, precision=6, suppress_small=True)


def main(argv: typing.Optional[typing.Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        parameters = {**BLOCK_DEFAULTS, **parse_parameters(args.parameters)}
        config = Config.from_parameters(parameters)
        grid, properties = _build_case(parameters)
        flow_directions = _int_list(parameters["flow_directions"])
        boundary_saturations = _float_list(parameters["boundary_saturations"])
        pressure_drop = float(parameters["pressure_drop"])
        initial_saturation = (
            float(parameters["initial_saturation"])
            if parameters["initial_saturation"]
            else float(parameters["swc"])
        )

        upscaler = SteadyStateUpscaler()
        upscaler.init(grid, properties, config)
        upscaled_perm = upscaler.upscale_single_phase()
        print(f"Upscaled permeability (mD):\n{_format_tensor(upscaled_perm / c.MILLIDARCY)}")

        for boundary_saturation in boundary_saturations:
            for flow_direction in flow_directions:
                k_rw, k_ro = upscaler.upscale_steady_state(
                    flow_direction=flow_direction,
                    initial_saturation=np.full(grid.num_cells, initial_saturation),
                    boundary_saturation=boundary_saturation,
                    pressure_drop=pressure_drop,
                    upscaled_perm=upscaled_perm,
                )
                average = upscaler.last_saturation_upscaled(flow_direction)
                print(
                    f"\nBoundary saturation {boundary_saturation}, flow direction {flow_direction}, "
                    f"average saturation {average:.6f}"
                )
                print(f"k_rw:\n{_format_tensor(k_rw)}")
                print(f"k_ro:\n{_format_tensor(k_ro)}")
    except (UpscalerError, ValueError) as exc:
        logger.error(f"Upscaling failed: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
