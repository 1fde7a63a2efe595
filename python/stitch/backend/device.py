"""Accelerated backend built on PyTorch tensors.

Buffers are flat ``uint8`` tensors on the target device and are reinterpreted
with ``Tensor.view(dtype)`` when read or written. Expressions are lowered to
flat loads and evaluated for all output positions at once. Work is submitted
to a single ordered worker, so ``execute`` returns before the result exists;
``read`` waits for the pending work of the buffer it reads.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import torch

from ..alu import GIDX, RIDX, AluExp, AluOp
from ..dtype import DType
from ..errors import ExecutionError
from .base import Backend
from .readback import ReadbackStrategy, make_readback

logger = logging.getLogger(__name__)

# index variable of a single lowered accessor
_POSITION = "position"

TORCH_DTYPES = {
    DType.Bool: torch.bool,
    DType.Int32: torch.int32,
    DType.Float32: torch.float32,
}


def default_device() -> str:
    return "cuda" if torch.cuda.is_available() else "cpu"


class DeviceBackend(Backend):
    name = "device"

    def __init__(self, device: Optional[str] = None, readback="auto"):
        super().__init__()
        self.device = torch.device(device if device is not None else default_device())
        if self.device.type == "cuda" and not torch.cuda.is_available():
            raise RuntimeError("CUDA was requested but is not available")
        self.readback = readback if isinstance(readback, ReadbackStrategy) else make_readback(readback)
        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stitch-device")
        self._outstanding = []
        logger.info("device backend on %s with %s readback", self.device, self.readback.name)

    def __repr__(self):
        return f"DeviceBackend(device={str(self.device)!r}, readback={self.readback.name!r})"

    def synchronize(self):
        """ Wait for every submitted kernel, raising the first failure, even for released buffers. """
        outstanding, self._outstanding = self._outstanding, []
        for future in outstanding:
            future.result()

    def close(self):
        self._queue.shutdown(wait=True)

    def _alloc(self, size, initial):
        if initial is None or size == 0:
            return torch.zeros(size, dtype=torch.uint8, device=self.device)
        host = torch.frombuffer(bytearray(initial), dtype=torch.uint8)
        return host.to(self.device)

    def _read_storage(self, slot):
        return self.readback.read_bytes(slot.data)

    def _run(self, kernel, inputs, outputs):
        buffers = {gid: inputs[gid].data for gid in kernel.input_dtypes}
        targets = [slot.data for slot in outputs]
        future = self._queue.submit(self._launch, kernel, buffers, targets)
        # keep failures around for synchronize()
        self._outstanding = [f for f in self._outstanding if not f.done() or f.exception() is not None]
        self._outstanding.append(future)
        for slot in outputs:
            slot.pending = future

    def _launch(self, kernel, buffers, targets):
        views = {
            gid: _typed(buffers[gid], dtype) for gid, dtype in kernel.input_dtypes.items()
        }
        results = []
        for exp in kernel.exps:
            evaluator = _Evaluator(self.device, views, kernel.size)
            results.append(evaluator.run(exp))
        for target, exp, result in zip(targets, kernel.exps, results):
            if kernel.size:
                _typed(target, exp.dtype)[:kernel.size].copy_(result)
        if self.device.type == "cuda":
            torch.cuda.synchronize(self.device)


def _typed(data: torch.Tensor, dtype: DType) -> torch.Tensor:
    count = data.numel() // dtype.itemsize
    return data[:count * dtype.itemsize].view(TORCH_DTYPES[dtype])


class _Evaluator:
    """ Vectorised evaluation of a lowered expression over every output position. """

    def __init__(self, device, buffers, size):
        self.device = device
        self.buffers = buffers
        self.size = size

    def run(self, exp: AluExp) -> torch.Tensor:
        gidx = torch.arange(self.size, dtype=torch.int32, device=self.device)
        out = self._eval(exp, {GIDX: gidx}, {})
        return torch.broadcast_to(out, (self.size,)).to(TORCH_DTYPES[exp.dtype])

    def _const(self, exp):
        return torch.tensor(exp.arg, dtype=TORCH_DTYPES[exp.dtype], device=self.device)

    def _eval(self, exp, env, memo):
        key = id(exp)
        if key in memo:
            return memo[key]
        op = exp.op
        if op is AluOp.Const:
            out = self._const(exp)
        elif op is AluOp.Special:
            out = env[exp.arg[0]]
        elif op is AluOp.Reduce:
            out = self._reduce(exp, env)
        elif op is AluOp.Accessor:
            out = self._access(exp, self._eval(exp.src[0], env, memo))
        else:
            src = [self._eval(s, env, memo) for s in exp.src]
            out = self._apply(exp, src)
        memo[key] = out
        return out

    def _access(self, exp, index):
        """ Read through the accessor's view, lowered to a guarded flat load. """
        gid, st = exp.arg
        if index.numel():
            lo, hi = int(index.min()), int(index.max())
            if lo < 0 or hi >= st.size:
                raise ExecutionError(
                    f"accessor {gid} reads positions {lo}..{hi} of a view with {st.size} elements"
                )
        position = AluExp.special(DType.Int32, _POSITION, st.size)
        low = AluExp.accessor(gid, exp.dtype, st, position).lower()
        return self._eval(low, {_POSITION: index}, {})

    def _reduce(self, exp, env):
        rop, n = exp.arg
        size = env[GIDX].shape[0]
        inner = {
            GIDX: env[GIDX].unsqueeze(1),
            RIDX: torch.arange(n, dtype=torch.int32, device=self.device).unsqueeze(0),
        }
        body = torch.broadcast_to(self._eval(exp.src[0], inner, {}), (size, n))
        if rop is AluOp.Add:
            out = body.sum(dim=-1)
        elif n == 0:
            out = torch.full((size,), float("-inf"), device=self.device)
        else:
            out = body.amax(dim=-1)
        return out.to(TORCH_DTYPES[exp.dtype])

    def _apply(self, exp, src):
        op = exp.op
        if op is AluOp.GlobalIndex:
            return self._load(exp.arg, src[0])
        if op is AluOp.Neg:
            return -src[0]
        if op is AluOp.Sin:
            return torch.sin(src[0])
        if op is AluOp.Cos:
            return torch.cos(src[0])
        if op is AluOp.Cast:
            return src[0].to(TORCH_DTYPES[exp.dtype])
        if op is AluOp.Where:
            return torch.where(*src)
        a, b = src
        is_bool = exp.src[0].dtype is DType.Bool
        if op is AluOp.Add:
            return torch.logical_or(a, b) if is_bool else a + b
        if op is AluOp.Mul:
            return torch.logical_and(a, b) if is_bool else a * b
        if op is AluOp.Idiv:
            return torch.div(a, b, rounding_mode="floor")
        if op is AluOp.Mod:
            return torch.remainder(a, b)
        if op is AluOp.Max:
            return torch.maximum(a, b)
        if op is AluOp.Cmplt:
            return a < b
        if op is AluOp.Cmpgt:
            return a > b
        if op is AluOp.And:
            return torch.logical_and(a, b)
        raise ExecutionError(f"device backend cannot evaluate {op}")

    def _load(self, gid, index):
        buf = self.buffers[gid]
        n = buf.numel()
        if index.numel() == 0:
            return torch.zeros(index.shape, dtype=buf.dtype, device=self.device)
        lo, hi = int(index.min()), int(index.max())
        if lo < 0 or hi >= n:
            raise ExecutionError(f"load[{gid}] index range {lo}..{hi} out of range for {n} elements")
        return buf[index.long()]
