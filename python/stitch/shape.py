"""Zero-copy views over flat buffers.

A ``View`` maps a multi-dimensional index onto an offset in a flat buffer
using a shape, per-axis strides, a base offset and an optional mask of valid
index ranges (positions outside the mask are padding and read as zero).

A ``ShapeTracker`` is a stack of views. The first view addresses the backing
buffer and every later view addresses the flat (row-major) index space of the
view below it. Movement operations rewrite the top view when the result is
still a single strided view, and push a new view otherwise, e.g. reshaping a
permuted or broadcast array.
"""
import operator
from dataclasses import dataclass
from functools import reduce
from typing import Optional, Sequence, Tuple

from . import alu
from .errors import ShapeError

Pair = Tuple[int, int]


def prod(x):
    return reduce(operator.mul, x, 1)


def compact_strides(shape):
    """ Row-major strides of a contiguous array with the given shape. """
    stride = 1
    res = []
    for i in range(1, len(shape) + 1):
        res.append(stride)
        stride *= shape[-i]
    return tuple(res[::-1])


def normalize_axis(axis, ndim):
    if not -ndim <= axis < ndim:
        raise ShapeError(f"axis {axis} is out of range for {ndim} dimensions")
    return axis % ndim


def unravel(flat, shape):
    """ Row-major multi-index of ``flat`` within ``shape``. """
    idx = []
    for s in reversed(shape):
        idx.append(flat % s if s else 0)
        flat = flat // s if s else 0
    return tuple(idx[::-1])


def unravel_alu(shape, flat):
    """ Same as ``unravel`` but on an int32 expression. """
    idxs = []
    acc = 1
    for axis in range(len(shape) - 1, -1, -1):
        s = shape[axis]
        if s == 1:
            idxs.append(alu.AluExp.i32(0))
            continue
        i = flat // acc if acc != 1 else flat
        if axis > 0:
            i = i % s
        idxs.append(i)
        acc *= s
    return tuple(idxs[::-1])


@dataclass(frozen=True)
class View:
    shape: Tuple[int, ...]
    strides: Tuple[int, ...]
    offset: int = 0
    mask: Optional[Tuple[Pair, ...]] = None

    @staticmethod
    def create(shape, strides=None, offset=0, mask=None):
        shape = tuple(int(s) for s in shape)
        strides = compact_strides(shape) if strides is None else tuple(strides)
        # size-1 axes never move the offset
        strides = tuple(0 if s == 1 else st for s, st in zip(shape, strides))
        if mask is not None:
            mask = tuple((int(a), int(b)) for a, b in mask)
            if all(m == (0, s) for m, s in zip(mask, shape)):
                mask = None
        return View(shape, strides, int(offset), mask)

    @property
    def contiguous(self):
        return (
            self.offset == 0
            and self.mask is None
            and self.strides == View.create(self.shape).strides
        )

    def _mask(self):
        return self.mask if self.mask is not None else tuple((0, s) for s in self.shape)

    def index(self, idx):
        """ Offset for a full multi-index, or None inside the padded region. """
        if self.mask is not None:
            for i, (a, b) in zip(idx, self.mask):
                if not a <= i < b:
                    return None
        return self.offset + sum(i * st for i, st in zip(idx, self.strides))

    def to_alu(self, idxs):
        """ (offset, valid) expressions for per-axis index expressions. """
        exp = alu.AluExp.i32(self.offset)
        for i, st in zip(idxs, self.strides):
            if st != 0:
                exp = exp + i * st
        valid = alu.AluExp.bool(True)
        if self.mask is not None:
            for i, s, (a, b) in zip(idxs, self.shape, self.mask):
                if a >= b:
                    return exp, alu.AluExp.bool(False)
                if a > 0:
                    valid = valid & alu.AluExp.cmpgt(i, alu.AluExp.i32(a - 1))
                if b < s:
                    valid = valid & alu.AluExp.cmplt(i, alu.AluExp.i32(b))
        return exp, valid

    def permute(self, order):
        return View.create(
            [self.shape[i] for i in order],
            [self.strides[i] for i in order],
            self.offset,
            None if self.mask is None else [self.mask[i] for i in order],
        )

    def pad(self, arg):
        offset = self.offset - sum(lo * st for (lo, _), st in zip(arg, self.strides))
        shape = [s + lo + hi for s, (lo, hi) in zip(self.shape, arg)]
        mask = [(a + lo, b + lo) for (a, b), (lo, _) in zip(self._mask(), arg)]
        return View.create(shape, self.strides, offset, mask)

    def shrink(self, arg):
        offset = self.offset + sum(lo * st for (lo, _), st in zip(arg, self.strides))
        shape = [hi - lo for lo, hi in arg]
        mask = []
        for (a, b), (lo, hi) in zip(self._mask(), arg):
            a, b = max(a, lo) - lo, min(b, hi) - lo
            mask.append((a, b) if a < b else (0, 0))
        return View.create(shape, self.strides, offset, mask)

    def expand(self, new_shape):
        strides = []
        mask = []
        for s, ns, st, m in zip(self.shape, new_shape, self.strides, self._mask()):
            if s == ns:
                strides.append(st)
                mask.append(m)
            else:
                strides.append(0)
                mask.append((0, ns) if m == (0, 1) else (0, 0))
        return View.create(new_shape, strides, self.offset, mask)

    def flip(self, axes):
        strides = list(self.strides)
        offset = self.offset
        mask = list(self._mask())
        for i in axes:
            s = self.shape[i]
            if s == 0:
                continue
            offset += (s - 1) * strides[i]
            strides[i] = -strides[i]
            a, b = mask[i]
            mask[i] = (s - b, s - a)
        return View.create(self.shape, strides, offset, mask)

    def reshape(self, new_shape):
        """ Reshape in place of this view, or None when a new view is needed. """
        if self.contiguous:
            return View.create(new_shape)
        old = [(s, st, m) for s, st, m in zip(self.shape, self.strides, self._mask()) if s != 1]
        if [s for s, _, _ in old] != [s for s in new_shape if s != 1]:
            return None
        if any(m == (0, 0) for s, m in zip(self.shape, self._mask()) if s == 1):
            return None
        strides = []
        mask = []
        it = iter(old)
        for s in new_shape:
            if s == 1:
                strides.append(0)
                mask.append((0, 1))
            else:
                _, st, m = next(it)
                strides.append(st)
                mask.append(m)
        return View.create(new_shape, strides, self.offset, mask)


@dataclass(frozen=True)
class ShapeTracker:
    views: Tuple[View, ...]

    @staticmethod
    def from_shape(shape):
        for s in shape:
            if int(s) != s or s < 0:
                raise ShapeError(f"invalid shape {tuple(shape)}")
        return ShapeTracker((View.create(shape),))

    @property
    def shape(self):
        return self.views[-1].shape

    @property
    def ndim(self):
        return len(self.shape)

    @property
    def size(self):
        return prod(self.shape)

    @property
    def contiguous(self):
        return len(self.views) == 1 and self.views[0].contiguous

    def __repr__(self):
        return f"ShapeTracker(shape={self.shape}, views={len(self.views)})"

    def _replace_top(self, view):
        return ShapeTracker(self.views[:-1] + (view,))

    ### Addressing

    def address(self, idx) -> Optional[int]:
        """ Backing offset of a logical multi-index, or None if it is padding. """
        idx = tuple(idx)
        if len(idx) != self.ndim:
            raise ShapeError(f"index {idx} does not match shape {self.shape}")
        for i, (x, s) in enumerate(zip(idx, self.shape)):
            if not 0 <= x < s:
                raise ShapeError(f"index {x} out of range for axis {i} of size {s}")
        for k in range(len(self.views) - 1, -1, -1):
            off = self.views[k].index(idx)
            if off is None:
                return None
            if k > 0:
                idx = unravel(off, self.views[k - 1].shape)
        return off

    def address_flat(self, flat: int) -> Optional[int]:
        """ ``address`` of the row-major position ``flat``. """
        if not 0 <= flat < self.size:
            raise IndexError(f"position {flat} out of range for a view of {self.size} elements")
        return self.address(unravel(flat, self.shape))

    def to_alu(self, flat):
        """ Lower addressing of a flat logical index into (offset, valid) expressions. """
        valid = alu.AluExp.bool(True)
        idx = flat
        for view in reversed(self.views):
            exp, v = view.to_alu(unravel_alu(view.shape, idx))
            idx = exp
            valid = valid & v
        return idx, valid

    def offset_range(self) -> Optional[Pair]:
        """ Smallest and largest backing offset that can be read, None if none can. """
        base = self.views[0]
        if prod(base.shape) == 0 or self.size == 0:
            return None
        lo = hi = base.offset
        for st, (a, b) in zip(base.strides, base._mask()):
            if a >= b:
                return None
            if st >= 0:
                lo += st * a
                hi += st * (b - 1)
            else:
                lo += st * (b - 1)
                hi += st * a
        return lo, hi

    ### Movement operations, each returning a new tracker

    def reshape(self, new_shape):
        new_shape = tuple(int(s) for s in new_shape)
        if any(s < 0 for s in new_shape):
            raise ShapeError(f"reshape() got negative dimension in {new_shape}")
        if prod(new_shape) != self.size:
            raise ShapeError(f"cannot reshape {self.shape} ({self.size} elements) to {new_shape}")
        if new_shape == self.shape:
            return self
        view = self.views[-1].reshape(new_shape)
        if view is not None:
            return self._replace_top(view)
        return ShapeTracker(self.views + (View.create(new_shape),))

    def permute(self, order):
        order = tuple(order)
        if sorted(order) != list(range(self.ndim)):
            raise ShapeError(f"permute() order {order} is not a permutation of {self.ndim} axes")
        return self._replace_top(self.views[-1].permute(order))

    def moveaxis(self, src: int, dst: int):
        n = self.ndim
        if not (-n <= src < n and -n <= dst < n):
            raise ShapeError(f"moveaxis({src}, {dst}) out of range for {n} axes")
        src, dst = src % n, dst % n
        order = [i for i in range(n) if i != src]
        order.insert(dst, src)
        return self.permute(order)

    def pad(self, arg: Sequence[Pair]):
        arg = self._pairs(arg, "pad")
        if any(lo < 0 or hi < 0 for lo, hi in arg):
            raise ShapeError(f"pad() widths must be non-negative, got {arg}")
        if all(p == (0, 0) for p in arg):
            return self
        return self._replace_top(self.views[-1].pad(arg))

    def shrink(self, arg: Sequence[Pair]):
        arg = self._pairs(arg, "shrink")
        for i, ((lo, hi), s) in enumerate(zip(arg, self.shape)):
            if not 0 <= lo <= hi <= s:
                raise ShapeError(f"shrink() range {(lo, hi)} invalid for axis {i} of size {s}")
        if all(p == (0, s) for p, s in zip(arg, self.shape)):
            return self
        return self._replace_top(self.views[-1].shrink(arg))

    def expand(self, new_shape):
        new_shape = tuple(int(s) for s in new_shape)
        if len(new_shape) != self.ndim:
            raise ShapeError(f"expand() to {new_shape} needs {self.ndim} axes")
        for s, ns in zip(self.shape, new_shape):
            if s != ns and s != 1:
                raise ShapeError(f"cannot expand {self.shape} to {new_shape}")
        if new_shape == self.shape:
            return self
        return self._replace_top(self.views[-1].expand(new_shape))

    def repeat(self, reps):
        """ Tile every axis ``reps[i]`` times, like ``np.tile``. """
        reps = tuple(int(r) for r in reps)
        if len(reps) != self.ndim or any(r < 1 for r in reps):
            raise ShapeError(f"repeat() needs one positive count per axis, got {reps}")
        base = self.shape
        st = self.reshape([x for s in base for x in (1, s)])
        st = st.expand([x for r, s in zip(reps, base) for x in (r, s)])
        return st.reshape([r * s for r, s in zip(reps, base)])

    def flip(self, axes):
        axes = tuple(normalize_axis(a, self.ndim) for a in axes)
        return self._replace_top(self.views[-1].flip(axes))

    def _pairs(self, arg, name):
        arg = tuple((int(lo), int(hi)) for lo, hi in arg)
        if len(arg) != self.ndim:
            raise ShapeError(f"{name}() needs {self.ndim} (low, high) pairs, got {len(arg)}")
        return arg


def broadcast_shapes(*shapes):
    """ Numpy-style broadcast of several shapes. """
    ndim = max(len(s) for s in shapes)
    out = []
    for i in range(ndim):
        dims = {s[i - ndim + len(s)] for s in shapes if i - ndim + len(s) >= 0} - {1}
        if len(dims) > 1:
            raise ShapeError(f"shapes {shapes} cannot be broadcast together")
        out.append(dims.pop() if dims else 1)
    return tuple(out)


def ceildiv(a, b):
    return -(-a // b)


__all__ = [
    "View",
    "ShapeTracker",
    "prod",
    "compact_strides",
    "unravel",
    "broadcast_shapes",
    "ceildiv",
]
