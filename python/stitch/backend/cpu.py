"""Reference backend: host memory, one python evaluation per output element."""
import numpy as np

from ..alu import GIDX, compile_exp
from ..errors import ExecutionError
from .base import Backend


class CpuBackend(Backend):
    """Synchronous executor defining the reference semantics.

    Accessors are evaluated through ``ShapeTracker.address`` directly rather
    than through lowered index arithmetic, so it doubles as a check of
    ``ShapeTracker.to_alu`` when compared with the device backend.
    """

    name = "cpu"

    def _alloc(self, size, initial):
        return bytearray(size) if initial is None else bytearray(initial)

    def _read_storage(self, slot):
        return bytes(slot.data)

    def _run(self, kernel, inputs, outputs):
        buffers = {}
        for gid, dtype in kernel.input_dtypes.items():
            buffers[gid] = _as_array(inputs[gid].data, dtype.numpy)

        results = []
        for exp in kernel.exps:
            fn = compile_exp(exp)
            out = np.empty(kernel.size, dtype=exp.dtype.numpy)
            env = {}
            try:
                for i in range(kernel.size):
                    env[GIDX] = i
                    out[i] = fn(env, buffers)
            except IndexError as e:
                raise ExecutionError(str(e)) from e
            results.append(out)

        # all outputs are computed before any is written
        for slot, out in zip(outputs, results):
            if not out.nbytes:
                continue
            view = np.frombuffer(slot.data, dtype=np.uint8, count=out.nbytes)
            view[:] = out.view(np.uint8)


def _as_array(data, dtype):
    if not data:
        return np.empty(0, dtype=dtype)
    return np.frombuffer(data, dtype=dtype, count=len(data) // dtype.itemsize)
