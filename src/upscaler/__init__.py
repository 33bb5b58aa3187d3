"""
*upscaler*

Steady-state relative permeability upscaling of Cartesian reservoir blocks.
"""

from ._precision import *  # noqa
from .constants import *  # noqa
from .errors import *  # noqa
from .types import *  # noqa
from .config import *  # noqa
from .grids import *  # noqa
from .boundary_conditions import *  # noqa
from .relperm import *  # noqa
from .capillary_pressures import *  # noqa
from .properties import *  # noqa
from .linear_solvers import *  # noqa
from .pressure import *  # noqa
from .transport import *  # noqa
from .tensors import *  # noqa
from .single_phase import *  # noqa
from .diagnostics import *  # noqa
from .steady_state import *  # noqa

__version__ = "0.1.0"
