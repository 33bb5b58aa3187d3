import numpy as np


__all__ = ["get_dtype", "get_floating_point_info"]

_upscaler_dtype: np.typing.DTypeLike = np.float64
"""
Floating point type of every pressure, flux and saturation array.

Tensor inversion of nearly anisotropic blocks loses too many digits in
single precision, so upscaling always runs in double precision.
"""


def get_dtype() -> np.typing.DTypeLike:
    """Data type used for computations in upscaler."""
    return _upscaler_dtype


def get_floating_point_info() -> np.finfo:
    """
    Get the floating point information for the data type used in upscaler computations.

    :return: The floating point information.
    """
    return np.finfo(get_dtype())  # type: ignore
