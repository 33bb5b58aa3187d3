class UpscalerError(Exception):
    """Base class for all upscaler-related errors."""

    pass


class ValidationError(UpscalerError, ValueError):
    """Raised when input data fails validation checks."""

    pass


class BoundaryConditionError(ValidationError):
    """Raised when boundary faces cannot be paired or resolved consistently."""

    pass


class InvariantError(UpscalerError, AssertionError):
    """Raised when an internal invariant is violated, e.g. a saturation jump across a periodic pair."""

    pass


class PreconditionerError(UpscalerError):
    """Raised when there is an error related to preconditioners."""

    pass


class SolverError(UpscalerError):
    """Raised when a solver fails to converge within the specified iterations."""

    pass


class ComputationError(UpscalerError):
    """Raised when there is an error during numerical computations."""

    pass


class DiagnosticsError(UpscalerError):
    """Raised when diagnostic output cannot be written."""

    pass
