"""Element types understood by expressions and backends."""
import enum

import numpy as np


class DType(enum.Enum):
    Bool = "bool"
    Int32 = "int32"
    Float32 = "float32"

    @property
    def itemsize(self):
        return _ITEMSIZE[self]

    @property
    def numpy(self):
        """ The numpy dtype used to view raw buffer bytes. """
        return np.dtype(_NUMPY[self])

    @property
    def priority(self):
        return _PRIORITY[self]

    def coerce(self, value):
        """ Convert a python scalar to this dtype's python representation. """
        if self is DType.Bool:
            return bool(value)
        if self is DType.Int32:
            # two's complement wrap, like int32 arithmetic on a device
            return (int(value) + 2**31) % 2**32 - 2**31
        return float(np.float32(value))

    def __repr__(self):
        return f"dtypes.{self.value}"


_ITEMSIZE = {DType.Bool: 1, DType.Int32: 4, DType.Float32: 4}
_NUMPY = {DType.Bool: "bool", DType.Int32: "int32", DType.Float32: "float32"}
_PRIORITY = {DType.Bool: 0, DType.Int32: 1, DType.Float32: 2}


def promote(a: DType, b: DType) -> DType:
    """ Result dtype of a binary arithmetic op: bool < int32 < float32. """
    return a if a.priority >= b.priority else b


def from_numpy(dtype) -> DType:
    dtype = np.dtype(dtype)
    if dtype == np.bool_:
        return DType.Bool
    if np.issubdtype(dtype, np.integer):
        return DType.Int32
    if np.issubdtype(dtype, np.floating):
        return DType.Float32
    raise TypeError(f"Unsupported dtype: {dtype}")


def as_dtype(dtype) -> DType:
    if dtype is None:
        return DType.Float32
    if isinstance(dtype, DType):
        return dtype
    if isinstance(dtype, str):
        return DType(dtype)
    return from_numpy(dtype)


class dtypes:
    float32 = DType.Float32
    int32 = DType.Int32
    bool = DType.Bool
    default_float = DType.Float32
