"""Convolution lowered onto view operations.

A general dilated convolution of ``x`` with shape ``[B, C, *X]`` and a filter
of shape ``[Co, C, *K]`` is written as views only: dilate ``x``, pad it, pool
it into ``[B, C, *O, *K]`` windows, then move the channels next to the window
axes. The resulting trackers broadcast against each other so that a single
multiply followed by a sum over the last axis computes the convolution.

Transposing a convolution, for the gradient with respect to either operand,
is again a convolution:

Gradient of the activations, ``x' = conv(y', filter)``:
  - input and output channels swap, and the kernel is flipped
  - stride and lhs_dilation swap, rhs_dilation stays
  - low padding becomes ``dilated kernel - 1 - low``, high padding absorbs
    whatever the forward stride dropped

Gradient of the filter, ``filter' = conv(x, y')``:
  - batch is swapped with the input channels of ``x`` and the output
    channels of ``y'``
  - stride and rhs_dilation swap, lhs_dilation stays
  - low padding stays, high padding absorbs the dropped tail

Either rule can ask for negative padding, which ``prepare_conv`` realises as
a shrink of the input view.
"""
from dataclasses import dataclass
from typing import Sequence, Tuple

from .errors import ShapeError
from .shape import ShapeTracker, ceildiv, prod

Pair = Tuple[int, int]


@dataclass(frozen=True)
class ConvParams:
    strides: Tuple[int, ...]
    padding: Tuple[Pair, ...]
    lhs_dilation: Tuple[int, ...]
    rhs_dilation: Tuple[int, ...]

    @staticmethod
    def create(n, strides=None, padding=None, lhs_dilation=None, rhs_dilation=None):
        """ Parameters for ``n`` spatial axes, with unit strides/dilations and no padding by default. """
        return ConvParams(
            strides=(1,) * n if strides is None else tuple(strides),
            padding=((0, 0),) * n if padding is None else tuple(tuple(p) for p in padding),
            lhs_dilation=(1,) * n if lhs_dilation is None else tuple(lhs_dilation),
            rhs_dilation=(1,) * n if rhs_dilation is None else tuple(rhs_dilation),
        )


def _positive_int(value):
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def check_conv_shape(lhs_shape, rhs_shape, params: ConvParams):
    """Validate a convolution and return its output shape.

    The output is ``[batch, out_channels, *spatial]``.
    """
    lhs_shape, rhs_shape = tuple(lhs_shape), tuple(rhs_shape)
    if len(lhs_shape) != len(rhs_shape):
        raise ShapeError(
            f"conv() requires inputs with the same number of dimensions, "
            f"got {len(lhs_shape)} and {len(rhs_shape)}"
        )
    n = len(lhs_shape) - 2
    if n < 0:
        raise ShapeError("conv() requires at least 2D inputs")
    for name in ("strides", "padding", "lhs_dilation", "rhs_dilation"):
        if len(getattr(params, name)) != n:
            raise ShapeError(f"conv() {name} has {len(getattr(params, name))} entries, expected {n}")
    if lhs_shape[1] != rhs_shape[1]:
        raise ShapeError(f"conv() input channels: {lhs_shape[1]} != {rhs_shape[1]}")

    for i in range(n):
        if not _positive_int(params.strides[i]):
            raise ShapeError(f"conv() strides[{i}] must be a positive integer")
        pad = params.padding[i]
        if len(pad) != 2 or not all(isinstance(p, int) and p >= 0 for p in pad):
            raise ShapeError(f"conv() padding[{i}] must be a pair of non-negative integers")
        if not _positive_int(params.lhs_dilation[i]):
            raise ShapeError(f"conv() lhs_dilation[{i}] must be a positive integer")
        if not _positive_int(params.rhs_dilation[i]):
            raise ShapeError(f"conv() rhs_dilation[{i}] must be a positive integer")
        if rhs_shape[i + 2] <= 0:
            raise ShapeError("conv() kernel size must be positive")
    return conv_output_shape(lhs_shape, rhs_shape, params)


def conv_output_shape(lhs_shape, rhs_shape, params: ConvParams):
    """Output shape of a convolution whose parameters are already well formed.

    Unlike ``check_conv_shape`` the padding may be negative.
    """
    out = [lhs_shape[0], rhs_shape[0]]
    for i, (x, k) in enumerate(zip(lhs_shape[2:], rhs_shape[2:])):
        lo, hi = params.padding[i]
        kernel = (k - 1) * params.rhs_dilation[i] + 1
        size = max((x - 1) * params.lhs_dilation[i] + 1, 0) + lo + hi
        if kernel > size:
            raise ShapeError(f"conv() kernel size {kernel} > input size {size} in dimension {i}")
        out.append(ceildiv(size - kernel + 1, params.strides[i]))
    return out


def _per_axis(value, n, name):
    if isinstance(value, int):
        return (value,) * n
    value = tuple(value)
    if len(value) != n:
        raise ShapeError(f"pool() {name} has {len(value)} entries, expected {n}")
    return value


def pool(st: ShapeTracker, ks: Sequence[int], strides=1, dilation=1) -> ShapeTracker:
    """Split the last ``len(ks)`` axes into sliding windows.

    The result has shape ``[*noop, *o, *ks]``, with the window axes last,
    where ``o = ceil((i - d*(k-1)) / s)`` for input extent ``i``. Windows are
    made by repeating the input and shrinking it so that consecutive rows are
    offset by the dilation, so no data is padded or copied:

        [1, 2, 3, 4, 5] -> [1, 2, 3, 4, 5]
                           [2, 3, 4, 5, 1]
                           [3, 4, 5, 1, 2]

    The stride then keeps every s-th column.
    """
    ks = tuple(ks)
    if st.ndim < len(ks):
        raise ShapeError("pool() called with too many dimensions")
    strides = _per_axis(strides, len(ks), "strides")
    dilation = _per_axis(dilation, len(ks), "dilation")

    noop = st.shape[:st.ndim - len(ks)]
    keep = [(0, x) for x in noop]
    i_ = st.shape[len(noop):]
    o_ = [ceildiv(i - d * (k - 1), s) for i, d, k, s in zip(i_, dilation, ks, strides)]
    if any(o <= 0 for o in o_):
        raise ShapeError(f"pool() window {ks} with dilation {dilation} does not fit input {i_}")

    # Scale the row length i*f + d so that the stride shrink below fits.
    f_ = []
    for o, s, i, d, k in zip(o_, strides, i_, dilation, ks):
        if o * s <= i - d * (k - 1):
            f_.append(1)
        else:
            f_.append(max(2, ceildiv(o * s - d, i)))
    kidf = list(zip(ks, i_, dilation, f_))

    st = st.repeat([1] * len(noop) + [ceildiv(k * (i * f + d), i) for k, i, d, f in kidf])
    st = st.shrink(keep + [(0, k * (i * f + d)) for k, i, d, f in kidf])
    st = st.reshape(list(noop) + [x for k, i, d, f in kidf for x in (k, i * f + d)])

    kos = list(zip(ks, o_, strides))
    for (k, i, d, f), (_, o, s) in zip(kidf, kos):
        assert o * s <= i * f + d, "stride shrink does not fit"
    st = st.shrink(keep + [p for k, o, s in kos for p in ((0, k), (0, o * s))])
    st = st.reshape(list(noop) + [x for k, o, s in kos for x in (k, o, s)])
    st = st.shrink(keep + [p for k, o, s in kos for p in ((0, k), (0, o), (0, 1))])
    st = st.reshape(list(noop) + [x for k, o, s in kos for x in (k, o)])

    m = len(noop)
    return st.permute(
        list(range(m))
        + [m + 2 * j + 1 for j in range(len(ks))]
        + [m + 2 * j for j in range(len(ks))]
    )


def apply_dilation(st: ShapeTracker, dilation: Sequence[int]) -> ShapeTracker:
    """Insert ``dilation - 1`` zeros between elements of every spatial axis of ``[a, b, *k]``."""
    if all(s == 1 for s in dilation):
        return st
    # (k) -> (k,1) -pad-> (k,s) -> (k*s) -shrink-> ((k-1)*s+1)
    a, b, *k_ = st.shape
    st = st.reshape([a, b] + [x for k in k_ for x in (k, 1)])
    st = st.pad([(0, 0), (0, 0)] + [p for s in dilation for p in ((0, 0), (0, s - 1))])
    st = st.reshape([a, b] + [k * s for k, s in zip(k_, dilation)])
    return st.shrink([(0, a), (0, b)] + [(0, max((k - 1) * s + 1, 0)) for k, s in zip(k_, dilation)])


def _pad_or_shrink(st: ShapeTracker, padding) -> ShapeTracker:
    st = st.pad([(0, 0), (0, 0)] + [(max(lo, 0), max(hi, 0)) for lo, hi in padding])
    cut = [(max(-lo, 0), s - max(-hi, 0)) for (lo, hi), s in zip(padding, st.shape[2:])]
    return st.shrink([(0, st.shape[0]), (0, st.shape[1])] + cut)


def prepare_conv(st_x: ShapeTracker, st_y: ShapeTracker, params: ConvParams):
    """Lower a convolution into two broadcastable trackers.

    Returns ``[batch, 1, *out, C*prod(ks)]`` for the input and
    ``[out_channels, 1, ..., C*prod(ks)]`` for the filter. Shapes are not
    validated here, see ``check_conv_shape``.
    """
    n = st_x.ndim - 2

    st_x = apply_dilation(st_x, params.lhs_dilation)
    ks = st_y.shape[2:]
    st_x = _pad_or_shrink(st_x, params.padding)
    st_x = pool(st_x, ks, params.strides, params.rhs_dilation)

    # move input channels next to the window axes, to be reduced together
    batch, channels = st_x.shape[0], st_x.shape[1]
    out = st_x.shape[2:n + 2]
    st_x = st_x.moveaxis(1, n + 1).reshape([batch, 1] + list(out) + [channels * prod(ks)])
    st_y = st_y.reshape([st_y.shape[0]] + [1] * n + [st_y.shape[1] * prod(ks)])
    return st_x, st_y


def conv_transpose_lhs_params(lhs_shape, rhs_shape, params: ConvParams) -> ConvParams:
    """Parameters of ``conv(y', flip(filter))`` giving the gradient of the activations.

    The filter of that convolution is the forward filter with its two channel
    axes swapped and its spatial axes flipped.
    """
    out_shape = conv_output_shape(lhs_shape, rhs_shape, params)
    padding = []
    for i, (x, k, o) in enumerate(zip(lhs_shape[2:], rhs_shape[2:], out_shape[2:])):
        lo, _ = params.padding[i]
        dk = (k - 1) * params.rhs_dilation[i] + 1
        lhs_dilated = max((x - 1) * params.lhs_dilation[i] + 1, 0)
        out_dilated = max((o - 1) * params.strides[i] + 1, 0)
        before = dk - lo - 1
        after = lhs_dilated + dk - 1 - out_dilated - before
        padding.append((before, after))
    return ConvParams(
        strides=params.lhs_dilation,
        padding=tuple(padding),
        lhs_dilation=params.strides,
        rhs_dilation=params.rhs_dilation,
    )


def conv_transpose_rhs_params(lhs_shape, rhs_shape, params: ConvParams) -> ConvParams:
    """Parameters of ``conv(x, y')`` giving the gradient of the filter.

    Both operands enter with batch and channels swapped, and the result has
    shape ``[C, Co, *K]`` before being transposed back.
    """
    out_shape = conv_output_shape(lhs_shape, rhs_shape, params)
    padding = []
    for i, (x, k, o) in enumerate(zip(lhs_shape[2:], rhs_shape[2:], out_shape[2:])):
        lo, _ = params.padding[i]
        dk = (k - 1) * params.rhs_dilation[i] + 1
        lhs_dilated = max((x - 1) * params.lhs_dilation[i] + 1, 0)
        out_dilated = max((o - 1) * params.strides[i] + 1, 0)
        padding.append((lo, (out_dilated - lhs_dilated) + (dk - lo - 1)))
    return ConvParams(
        strides=params.rhs_dilation,
        padding=tuple(padding),
        lhs_dilation=params.lhs_dilation,
        rhs_dilation=params.strides,
    )


def same_padding(lhs_shape, rhs_shape, strides, lhs_dilation, rhs_dilation):
    """ Padding pairs so that the output extent is ``ceil(input / stride)``. """
    padding = []
    for i, (x, k) in enumerate(zip(lhs_shape[2:], rhs_shape[2:])):
        size = max((x - 1) * lhs_dilation[i] + 1, 0)
        dk = (k - 1) * rhs_dilation[i] + 1
        out = ceildiv(size, strides[i])
        total = max((out - 1) * strides[i] + dk - size, 0)
        padding.append((total // 2, total - total // 2))
    return tuple(padding)
