from . import lax
from .dtype import DType, dtypes
from .errors import (
    BackendUnavailableError,
    ExecutionError,
    LifetimeError,
    ShapeError,
    StitchError,
)
from .shape import ShapeTracker, View
from .alu import AluExp, AluOp
from .backend import Backend, BufferHandle, CpuBackend
# get_backend(), init() etc. pick a backend by name, see STITCH_BACKEND
from .backend_selection import *
from .ndarray import NDArray, array, ones, ones_like, where, zeros, zeros_like
