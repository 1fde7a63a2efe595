"""Convolution on NDArrays, with its two transposes.

Every convolution runs as one fused kernel: both operands are viewed through
``prepare_conv``, broadcast to ``[batch, out_channels, *out, reduction]`` and
multiplied inside a single sum over the reduction axis.
"""
import logging

from .alu import GIDX, AluExp
from .convolution import (
    ConvParams,
    check_conv_shape,
    conv_output_shape,
    conv_transpose_lhs_params,
    conv_transpose_rhs_params,
    prepare_conv,
    same_padding,
)
from .dtype import DType
from .errors import ShapeError
from .ndarray import NDArray
from .shape import ShapeTracker, prod

logger = logging.getLogger(__name__)


def _params(lhs_shape, rhs_shape, strides, padding, lhs_dilation, rhs_dilation) -> ConvParams:
    n = len(lhs_shape) - 2
    if isinstance(padding, str):
        params = ConvParams.create(n, strides, None, lhs_dilation, rhs_dilation)
        mode = padding.upper()
        if mode == "VALID":
            return params
        if mode != "SAME":
            raise ShapeError(f"conv() padding must be 'VALID', 'SAME' or pairs, got {padding!r}")
        if len(lhs_shape) != len(rhs_shape) or n < 0:
            # let check_conv_shape report the rank problem
            return params
        pads = same_padding(lhs_shape, rhs_shape, params.strides, params.lhs_dilation, params.rhs_dilation)
        return ConvParams(params.strides, pads, params.lhs_dilation, params.rhs_dilation)
    return ConvParams.create(n, strides, padding, lhs_dilation, rhs_dilation)


def _conv(lhs: NDArray, st_x: ShapeTracker, rhs: NDArray, st_y: ShapeTracker, params, out_shape) -> NDArray:
    """ Run the fused multiply-reduce kernel of an already validated convolution. """
    if lhs.backend is not rhs.backend:
        raise ValueError(f"conv() operands live on different backends: {lhs.backend!r} and {rhs.backend!r}")
    backend = lhs.backend
    st_x, st_y = prepare_conv(st_x, st_y, params)
    reduction = st_x.shape[-1]
    full = list(out_shape) + [reduction]
    st_x = st_x.expand(full)
    st_y = st_y.reshape([1] + list(st_y.shape)).expand(full)

    size = prod(out_shape)
    index = AluExp.special(DType.Int32, GIDX, size) * reduction + AluExp.ridx(reduction)
    body = AluExp.accessor(0, lhs.dtype, st_x, index) * AluExp.accessor(1, rhs.dtype, st_y, index)
    exp = AluExp.reduce(body, reduction)
    logger.debug("conv %s x %s -> %s, reducing %d", lhs.shape, rhs.shape, tuple(out_shape), reduction)

    handle = backend.malloc(size * exp.dtype.itemsize)
    try:
        backend.execute(exp, [lhs.handle, rhs.handle], [handle])
    except BaseException:
        backend.dec_ref(handle)
        raise
    return NDArray.make(backend, handle, ShapeTracker.from_shape(out_shape), exp.dtype)


def conv_general_dilated(lhs, rhs, strides=None, padding=None, lhs_dilation=None, rhs_dilation=None):
    """General dilated convolution.

    ``lhs`` has shape ``[batch, in_channels, *spatial]`` and ``rhs`` has shape
    ``[out_channels, in_channels, *kernel]``. ``padding`` is a sequence of
    ``(low, high)`` pairs, ``"VALID"`` or ``"SAME"``.
    """
    params = _params(lhs.shape, rhs.shape, strides, padding, lhs_dilation, rhs_dilation)
    out_shape = check_conv_shape(lhs.shape, rhs.shape, params)
    return _conv(lhs, lhs.tracker, rhs, rhs.tracker, params, out_shape)


def _swap01(st: ShapeTracker) -> ShapeTracker:
    return st.permute([1, 0] + list(range(2, st.ndim)))


def _forward(lhs_shape, rhs_shape, cotangent, strides, padding, lhs_dilation, rhs_dilation):
    params = _params(lhs_shape, rhs_shape, strides, padding, lhs_dilation, rhs_dilation)
    out_shape = check_conv_shape(lhs_shape, rhs_shape, params)
    if tuple(cotangent.shape) != tuple(out_shape):
        raise ShapeError(f"cotangent has shape {cotangent.shape}, convolution output is {tuple(out_shape)}")
    return params


def conv_transpose_lhs(cotangent, rhs, lhs_shape, strides=None, padding=None, lhs_dilation=None, rhs_dilation=None):
    """ Gradient of ``conv_general_dilated`` with respect to ``lhs`` of shape ``lhs_shape``. """
    lhs_shape = tuple(lhs_shape)
    params = _forward(lhs_shape, rhs.shape, cotangent, strides, padding, lhs_dilation, rhs_dilation)
    t_params = conv_transpose_lhs_params(lhs_shape, rhs.shape, params)
    kernel = _swap01(rhs.tracker).flip(range(2, rhs.ndim))
    out_shape = conv_output_shape(cotangent.shape, kernel.shape, t_params)
    assert tuple(out_shape) == lhs_shape, (out_shape, lhs_shape)
    return _conv(cotangent, cotangent.tracker, rhs, kernel, t_params, out_shape)


def conv_transpose_rhs(lhs, cotangent, rhs_shape, strides=None, padding=None, lhs_dilation=None, rhs_dilation=None):
    """ Gradient of ``conv_general_dilated`` with respect to ``rhs`` of shape ``rhs_shape``. """
    rhs_shape = tuple(rhs_shape)
    params = _forward(lhs.shape, rhs_shape, cotangent, strides, padding, lhs_dilation, rhs_dilation)
    t_params = conv_transpose_rhs_params(lhs.shape, rhs_shape, params)
    st_x, st_g = _swap01(lhs.tracker), _swap01(cotangent.tracker)
    out_shape = conv_output_shape(st_x.shape, st_g.shape, t_params)
    assert tuple(out_shape) == (rhs_shape[1], rhs_shape[0]) + rhs_shape[2:], (out_shape, rhs_shape)
    out = _conv(lhs, st_x, cotangent, st_g, t_params, out_shape)
    grad = out.permute([1, 0] + list(range(2, out.ndim)))
    out.dispose()
    return grad
