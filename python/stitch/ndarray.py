"""Array front end.

An ``NDArray`` is a buffer handle on some backend plus the ``ShapeTracker``
describing how the buffer is viewed. Movement operations only produce a new
tracker over the same buffer; arithmetic builds an expression over accessors
and runs it on the backend into a fresh buffer.

Buffers are reference counted by hand. Every ``NDArray`` owns one reference,
taken when it is created and dropped by ``dispose()``. Views and ``ref`` take
their own reference, so each array must be disposed independently.
"""
import numbers

import numpy as np

from .alu import GIDX, AluExp, AluOp
from .backend import Backend
from .backend_selection import default_backend, get_backend
from .dtype import DType, as_dtype, from_numpy
from .errors import LifetimeError, ShapeError
from .shape import ShapeTracker, broadcast_shapes, ceildiv, normalize_axis, prod


def _resolve_backend(backend) -> Backend:
    if backend is None:
        return default_backend()
    if isinstance(backend, str):
        return get_backend(backend)
    return backend


class NDArray:
    """A view of a reference counted buffer on one backend.

    Supports ``bool``, ``int32`` and ``float32`` elements; numpy input of
    other integer or floating types is converted on upload.
    """

    def __init__(self, data, backend=None, dtype=None):
        """ Upload a copy of ``data`` (an NDArray, numpy array or nested sequence). """
        if isinstance(data, NDArray):
            data = data.numpy()
        array = np.asarray(data)
        if dtype is None:
            dtype = from_numpy(array.dtype)
        dtype = as_dtype(dtype)
        backend = _resolve_backend(backend)
        array = np.asarray(array, dtype=dtype.numpy, order="C")
        handle = backend.malloc(array.nbytes, array.tobytes())
        self._init(backend, handle, ShapeTracker.from_shape(array.shape), dtype)

    def _init(self, backend, handle, tracker, dtype):
        self._backend = backend
        self._handle = handle
        self._tracker = tracker
        self._dtype = dtype
        self._disposed = False

    @staticmethod
    def make(backend, handle, tracker, dtype):
        """Wrap an existing handle without taking a new reference.

        The caller transfers one reference it already owns.
        """
        array = NDArray.__new__(NDArray)
        array._init(backend, handle, tracker, dtype)
        return array

    ### Properties and string representations

    @property
    def shape(self):
        return self._tracker.shape

    @property
    def dtype(self) -> DType:
        return self._dtype

    @property
    def ndim(self):
        return self._tracker.ndim

    @property
    def size(self):
        return self._tracker.size

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def tracker(self) -> ShapeTracker:
        return self._tracker

    @property
    def handle(self):
        self._check_live()
        return self._handle

    def __repr__(self):
        if self._disposed:
            return f"NDArray(<disposed>, shape={self.shape}, dtype={self.dtype.value})"
        return f"NDArray({self.numpy()}, dtype={self.dtype.value}, backend={self.backend.name})"

    def __str__(self):
        return self.numpy().__str__()

    ### Lifetime

    def _check_live(self):
        if self._disposed:
            raise LifetimeError("array was used after dispose()", slot=self._handle.slot)

    @property
    def ref(self) -> "NDArray":
        """ A new array over the same buffer and view, holding its own reference. """
        return self._view(self._tracker)

    def dispose(self):
        """ Drop this array's reference to its buffer. """
        self._check_live()
        self._disposed = True
        self._backend.dec_ref(self._handle)

    def _view(self, tracker) -> "NDArray":
        self._check_live()
        self._backend.inc_ref(self._handle)
        return NDArray.make(self._backend, self._handle, tracker, self._dtype)

    ### Readback

    def _host_bytes(self):
        if self._tracker.contiguous:
            return self._backend.read(self._handle)
        tmp = self.compact()
        try:
            return tmp._backend.read(tmp._handle)
        finally:
            tmp.dispose()

    def _to_numpy(self, raw):
        count = self.size * self._dtype.itemsize
        return np.frombuffer(raw[:count], dtype=self._dtype.numpy).reshape(self.shape).copy()

    def numpy(self) -> np.ndarray:
        """ Copy the logical contents to a numpy array, waiting for pending work. """
        self._check_live()
        return self._to_numpy(self._host_bytes())

    async def numpy_async(self) -> np.ndarray:
        """ Same as ``numpy()`` without blocking the event loop while work is pending. """
        self._check_live()
        if self._tracker.contiguous:
            return self._to_numpy(await self._backend.read_async(self._handle))
        tmp = self.compact()
        try:
            raw = await tmp._backend.read_async(tmp._handle)
        finally:
            tmp.dispose()
        return self._to_numpy(raw)

    def tolist(self):
        return self.numpy().tolist()

    ### Movement operations, sharing the buffer

    def reshape(self, new_shape):
        if isinstance(new_shape, int):
            new_shape = (new_shape,)
        new_shape = list(new_shape)
        if new_shape.count(-1) > 1:
            raise ShapeError("can only specify one unknown dimension")
        if -1 in new_shape:
            known = prod(s for s in new_shape if s != -1)
            if known == 0 or self.size % known:
                raise ShapeError(f"cannot reshape {self.shape} to {tuple(new_shape)}")
            new_shape[new_shape.index(-1)] = self.size // known
        return self._view(self._tracker.reshape(new_shape))

    def permute(self, new_axes):
        return self._view(self._tracker.permute(new_axes))

    @property
    def T(self):
        return self.permute(tuple(range(self.ndim))[::-1])

    def broadcast_to(self, new_shape):
        return self._view(_broadcast_tracker(self._tracker, tuple(new_shape)))

    def pad(self, axes):
        """ Zero padding of ``axes[i] = (before, after)`` on every axis. """
        return self._view(self._tracker.pad(axes))

    def shrink(self, axes):
        return self._view(self._tracker.shrink(axes))

    def flip(self, axes):
        if isinstance(axes, int):
            axes = (axes,)
        return self._view(self._tracker.flip(axes))

    def moveaxis(self, src, dst):
        return self._view(self._tracker.moveaxis(src, dst))

    def __getitem__(self, idxs):
        """Integers and slices with positive steps, one per leading axis.

        Integer indices drop their axis; everything stays a view of the same
        buffer.
        """
        if not isinstance(idxs, tuple):
            idxs = (idxs,)
        if len(idxs) > self.ndim:
            raise IndexError(f"too many indices for array with {self.ndim} dimensions")
        st = self._tracker
        keep = []
        for axis, idx in enumerate(idxs):
            n = st.shape[axis]
            if isinstance(idx, slice):
                st = _slice_axis(st, axis, idx)
                keep.append(st.shape[axis])
            elif isinstance(idx, numbers.Integral):
                i = int(idx) + n if idx < 0 else int(idx)
                if not 0 <= i < n:
                    raise IndexError(f"index {idx} is out of bounds for axis {axis} with size {n}")
                st = st.shrink([(i, i + 1) if a == axis else (0, s) for a, s in enumerate(st.shape)])
            else:
                raise IndexError(f"unsupported index {idx!r}")
        keep.extend(st.shape[len(idxs):])
        return self._view(st.reshape(keep))

    ### Compute, each result in a new buffer

    def _run(self, exp, shape, inputs) -> "NDArray":
        """ Evaluate ``exp`` (over ``gidx``) reading ``inputs`` into a new buffer of ``shape``. """
        size = prod(shape)
        handle = self._backend.malloc(size * exp.dtype.itemsize)
        try:
            self._backend.execute(exp, inputs, [handle])
        except BaseException:
            self._backend.dec_ref(handle)
            raise
        return NDArray.make(self._backend, handle, ShapeTracker.from_shape(shape), exp.dtype)

    def _accessor(self, gid, tracker, size):
        index = AluExp.special(DType.Int32, GIDX, size)
        return AluExp.accessor(gid, self._dtype, tracker, index)

    def _elementwise(self, fn, *others) -> "NDArray":
        """Apply ``fn`` to accessors of ``self`` and ``others`` after broadcasting.

        Scalars in ``others`` become constants.
        """
        self._check_live()
        arrays = [self] + [o for o in others if isinstance(o, NDArray)]
        for a in arrays:
            a._check_live()
            if a._backend is not self._backend:
                raise ValueError(f"arrays live on different backends: {self._backend!r} and {a._backend!r}")
        shape = broadcast_shapes(*(a.shape for a in arrays))
        size = prod(shape)
        args = []
        inputs = []
        for x in (self,) + others:
            if isinstance(x, NDArray):
                gid = len(inputs)
                inputs.append(x._handle)
                args.append(x._accessor(gid, _broadcast_tracker(x._tracker, shape), size))
            else:
                args.append(_scalar(x, self._dtype))
        return self._run(fn(*args), shape, inputs)

    def __add__(self, other):
        return self._elementwise(AluExp.add, other)

    def __radd__(self, other):
        return self._elementwise(lambda a, b: AluExp.add(b, a), other)

    def __sub__(self, other):
        return self._elementwise(lambda a, b: AluExp.add(a, _negate(b)), other)

    def __rsub__(self, other):
        return self._elementwise(lambda a, b: AluExp.add(b, _negate(a)), other)

    def __mul__(self, other):
        return self._elementwise(AluExp.mul, other)

    def __rmul__(self, other):
        return self._elementwise(lambda a, b: AluExp.mul(b, a), other)

    def __neg__(self):
        return self._elementwise(_negate)

    def __lt__(self, other):
        return self._elementwise(AluExp.cmplt, other)

    def __gt__(self, other):
        return self._elementwise(AluExp.cmpgt, other)

    def maximum(self, other):
        return self._elementwise(AluExp.max, other)

    def sin(self):
        return self._elementwise(AluExp.sin)

    def cos(self):
        return self._elementwise(AluExp.cos)

    def astype(self, dtype):
        dtype = as_dtype(dtype)
        return self._elementwise(lambda a: AluExp.cast(dtype, a))

    def compact(self) -> "NDArray":
        """ Copy the view into a new contiguous buffer. """
        return self._elementwise(lambda a: a)

    ### Reductions

    def _reduce(self, op, axis, keepdims):
        self._check_live()
        if axis is None:
            axes = tuple(range(self.ndim))
        elif isinstance(axis, (tuple, list)):
            axes = tuple(normalize_axis(a, self.ndim) for a in axis)
        else:
            axes = (normalize_axis(axis, self.ndim),)
        if len(set(axes)) != len(axes):
            raise ShapeError(f"duplicate axis in {axis}")
        kept = [a for a in range(self.ndim) if a not in axes]
        out_shape = [self.shape[a] for a in kept]
        n = prod(self.shape[a] for a in axes)
        if op is AluOp.Max and n == 0:
            raise ShapeError("max() of an empty axis has no identity")

        st = self._tracker.permute(kept + list(axes)).reshape(out_shape + [n])
        size = prod(out_shape)
        index = AluExp.special(DType.Int32, GIDX, size) * n + AluExp.ridx(n)
        exp = AluExp.reduce(AluExp.accessor(0, self._dtype, st, index), n, op)
        out = self._run(exp, out_shape, [self._handle])
        if keepdims:
            full = [1 if a in axes else s for a, s in enumerate(self.shape)]
            view = out.reshape(full)
            out.dispose()
            return view
        return out

    def sum(self, axis=None, keepdims=False):
        return self._reduce(AluOp.Add, axis, keepdims)

    def max(self, axis=None, keepdims=False):
        return self._reduce(AluOp.Max, axis, keepdims)


def _negate(a: AluExp) -> AluExp:
    if a.dtype is DType.Bool:
        a = AluExp.cast(DType.Int32, a)
    return AluExp.neg(a)


def _scalar(value, dtype: DType) -> AluExp:
    if isinstance(value, (bool, np.bool_)):
        return AluExp.bool(value)
    if isinstance(value, numbers.Integral):
        return AluExp.const(DType.Float32 if dtype is DType.Float32 else DType.Int32, value)
    if isinstance(value, numbers.Real):
        return AluExp.f32(value)
    raise TypeError(f"unsupported operand {value!r}")


def _broadcast_tracker(st: ShapeTracker, shape) -> ShapeTracker:
    if len(shape) < st.ndim:
        raise ShapeError(f"cannot broadcast {st.shape} to {shape}")
    if st.shape == tuple(shape):
        return st
    st = st.reshape((1,) * (len(shape) - st.ndim) + st.shape)
    return st.expand(shape)


def _slice_axis(st: ShapeTracker, axis, sl: slice) -> ShapeTracker:
    n = st.shape[axis]
    start, stop, step = sl.indices(n)
    if step <= 0:
        raise IndexError("slices with non-positive steps are not supported")
    stop = max(stop, start)

    def pairs(pair):
        return [pair if a == axis else (0, s) for a, s in enumerate(st.shape)]

    st = st.shrink(pairs((start, stop)))
    if step == 1:
        return st
    # (L) -pad-> (m*step) -> (m, step) -shrink-> (m, 1) -> (m)
    length = stop - start
    m = ceildiv(length, step)
    st = st.pad([(0, m * step - length) if a == axis else (0, 0) for a in range(st.ndim)])
    shape = list(st.shape)
    st = st.reshape(shape[:axis] + [m, step] + shape[axis + 1:])
    st = st.shrink([(0, 1) if a == axis + 1 else (0, s) for a, s in enumerate(st.shape)])
    return st.reshape(shape[:axis] + [m] + shape[axis + 1:])


def array(a, dtype=None, backend=None):
    """ Convenience methods to match numpy a bit more closely."""
    return NDArray(a, backend=backend, dtype=dtype)


def zeros(shape, dtype=None, backend=None):
    dtype = as_dtype(dtype)
    return NDArray(np.zeros(shape, dtype=dtype.numpy), backend=backend, dtype=dtype)


def ones(shape, dtype=None, backend=None):
    dtype = as_dtype(dtype)
    return NDArray(np.ones(shape, dtype=dtype.numpy), backend=backend, dtype=dtype)


def zeros_like(a, dtype=None):
    return zeros(a.shape, dtype=a.dtype if dtype is None else dtype, backend=a.backend)


def ones_like(a, dtype=None):
    return ones(a.shape, dtype=a.dtype if dtype is None else dtype, backend=a.backend)


def where(cond, x, y):
    """Pick ``x`` where ``cond`` is true and ``y`` elsewhere, broadcasting all three.

    ``x`` and ``y`` may be python scalars; a non-bool ``cond`` is tested
    against zero.
    """
    if not isinstance(cond, NDArray):
        raise TypeError(f"where() condition must be an NDArray, got {type(cond).__name__}")

    def select(c, a, b):
        return AluExp.where(AluExp.cast(DType.Bool, c), a, b)

    return cond._elementwise(select, x, y)
