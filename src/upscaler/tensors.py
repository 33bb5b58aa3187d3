"""Dense 3x3 tensor algebra."""

import numpy as np
import numpy.typing as npt

from upscaler.errors import ComputationError, ValidationError
from upscaler.types import DIMENSION, PermeabilityTensor


__all__ = ["as_tensor", "inverse3x3", "matprod"]


def as_tensor(value: npt.ArrayLike) -> PermeabilityTensor:
    """Convert `value` to a 3x3 float tensor, raising `ValidationError` on any other shape."""
    tensor = np.asarray(value, dtype=np.float64)
    if tensor.shape != (DIMENSION, DIMENSION):
        raise ValidationError(f"Expected a 3x3 tensor, got shape {tensor.shape}.")
    if not np.all(np.isfinite(tensor)):
        raise ValidationError("Tensor entries must be finite.")
    return tensor


def inverse3x3(tensor: npt.ArrayLike) -> PermeabilityTensor:
    """
    Inverse of a 3x3 tensor.

    :param tensor: The tensor to invert.
    :return: The inverse.
    :raises ComputationError: If the tensor is singular or too badly conditioned to invert.
    """
    matrix = as_tensor(tensor)
    scale = float(np.max(np.abs(matrix)))
    if scale == 0.0:
        raise ComputationError("Cannot invert the zero tensor.")
    # Condition number on the scaled matrix so SI permeabilities (~1e-13) are not flagged
    condition = np.linalg.cond(matrix / scale)
    if not np.isfinite(condition) or condition > 1.0 / np.finfo(np.float64).eps:
        raise ComputationError(
            f"Tensor is singular to working precision (condition number {condition:.3e})."
        )
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError as exc:
        raise ComputationError(f"Cannot invert tensor: {exc}") from exc


def matprod(left: npt.ArrayLike, right: npt.ArrayLike) -> PermeabilityTensor:
    """Matrix product `left · right` of two 3x3 tensors."""
    return as_tensor(left) @ as_tensor(right)

