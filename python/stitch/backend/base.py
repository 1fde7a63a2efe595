"""Execution contract shared by every backend.

Buffers live in a per-backend slot table and callers only ever hold a
``BufferHandle``: the owning backend's token plus the slot index. Slot indices
are never reused, so a handle whose reference count reached zero fails the
table lookup with ``LifetimeError`` instead of aliasing newer memory.
"""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ..alu import GIDX, RIDX, AluExp, AluOp
from ..errors import ExecutionError, LifetimeError

logger = logging.getLogger(__name__)

_backend_tokens = itertools.count(1)


@dataclass(frozen=True)
class BufferHandle:
    owner: int
    slot: int

    def __repr__(self):
        return f"BufferHandle(slot={self.slot})"


class Slot:
    """ One entry of a backend's buffer table. """

    __slots__ = ("data", "size", "refcount", "pending")

    def __init__(self, data, size):
        self.data = data
        self.size = size
        self.refcount = 1
        self.pending = None


@dataclass(frozen=True)
class Kernel:
    """A validated unit of work.

    ``exps[i]`` is written to output ``i`` at positions ``0..size-1``;
    ``input_dtypes`` maps each accessed buffer slot to its element type.
    """
    exps: Tuple[AluExp, ...]
    size: int
    input_dtypes: Dict[int, object]


class Backend:
    """Base class of all executors.

    Subclasses provide storage through ``_alloc``/``_read_storage``/``_free``
    and evaluation through ``_run``; everything observable by callers
    (refcounts, validation, error types) is handled here so that all
    backends behave the same.
    """

    name = None

    def __init__(self):
        self._token = next(_backend_tokens)
        self._slots: Dict[int, Slot] = {}
        self._slot_ids = itertools.count()

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r})"

    ### Storage hooks

    def _alloc(self, size: int, initial: Optional[bytes]):
        raise NotImplementedError()

    def _read_storage(self, slot: Slot) -> bytes:
        raise NotImplementedError()

    def _free(self, slot: Slot) -> None:
        slot.data = None

    def _run(self, kernel: Kernel, inputs: List[Slot], outputs: List[Slot]) -> None:
        raise NotImplementedError()

    ### Buffer lifetime

    def malloc(self, size: int, initial: Optional[bytes] = None) -> BufferHandle:
        """Reserve ``size`` bytes, optionally filled with ``initial``.

        The returned handle starts with a reference count of one.
        """
        size = int(size)
        if size < 0:
            raise ExecutionError(f"cannot allocate {size} bytes")
        if initial is not None:
            initial = bytes(memoryview(initial).cast("B"))
            if len(initial) != size:
                raise ExecutionError(f"initial data has {len(initial)} bytes, expected {size}")
        slot_id = next(self._slot_ids)
        self._slots[slot_id] = Slot(self._alloc(size, initial), size)
        logger.debug("%s: malloc slot %d (%d bytes)", self.name, slot_id, size)
        return BufferHandle(self._token, slot_id)

    allocate = malloc

    def inc_ref(self, handle: BufferHandle) -> None:
        self._lookup(handle).refcount += 1

    def dec_ref(self, handle: BufferHandle) -> None:
        slot = self._lookup(handle)
        slot.refcount -= 1
        if slot.refcount == 0:
            del self._slots[handle.slot]
            self._free(slot)
            logger.debug("%s: released slot %d", self.name, handle.slot)

    def refcount(self, handle: BufferHandle) -> int:
        return self._lookup(handle).refcount

    def size(self, handle: BufferHandle) -> int:
        return self._lookup(handle).size

    def live_buffers(self) -> int:
        return len(self._slots)

    def _lookup(self, handle: BufferHandle) -> Slot:
        if not isinstance(handle, BufferHandle):
            raise TypeError(f"expected a BufferHandle, got {type(handle).__name__}")
        if handle.owner != self._token:
            raise ExecutionError(f"{handle!r} belongs to a different backend than {self!r}")
        slot = self._slots.get(handle.slot)
        if slot is None:
            raise LifetimeError(
                f"buffer slot {handle.slot} was used after its reference count reached zero",
                slot=handle.slot,
            )
        return slot

    ### Readback

    def read(self, handle: BufferHandle) -> bytes:
        """ Host copy of the buffer, after all work writing it has finished. """
        slot = self._lookup(handle)
        if slot.pending is not None:
            slot.pending.result()
        return self._read_storage(slot)

    async def read_async(self, handle: BufferHandle) -> bytes:
        slot = self._lookup(handle)
        if slot.pending is not None:
            await asyncio.wrap_future(slot.pending)
        return self.read(handle)

    def synchronize(self) -> None:
        for slot in list(self._slots.values()):
            if slot.pending is not None:
                slot.pending.result()

    ### Execution

    def execute(
        self,
        exp: Union[AluExp, Sequence[AluExp]],
        inputs: Sequence[BufferHandle],
        outputs: Sequence[BufferHandle],
    ) -> None:
        """Evaluate ``exp`` at every output position.

        Accessor slot ``i`` reads ``inputs[i]`` and the ``gidx`` special is
        bound to each output position. Everything is validated before work
        is issued. Passing the same buffer as input and output is undefined.
        """
        exps = (exp,) if isinstance(exp, AluExp) else tuple(exp)
        if len(exps) != len(outputs):
            raise ExecutionError(f"{len(exps)} expressions for {len(outputs)} outputs")
        in_slots = [self._lookup(h) for h in inputs]
        out_slots = [self._lookup(h) for h in outputs]

        input_dtypes = {}
        size = None
        for e in exps:
            _check_reductions(e)
            # nothing is evaluated over an empty range, so index bounds do not apply
            empty = any(n == 0 for n in e.specials().values())
            for name, n in e.specials().items():
                if name == GIDX:
                    if size is not None and size != n:
                        raise ExecutionError(f"outputs disagree on extent: {size} != {n}")
                    size = n
                elif name != RIDX:
                    raise ExecutionError(f"unbound special variable {name!r}")
            for acc in e.accessors():
                gid = acc.arg[0] if acc.op is AluOp.Accessor else acc.arg
                if gid >= len(in_slots):
                    raise ExecutionError(f"expression reads buffer {gid}, only {len(in_slots)} bound")
                if input_dtypes.setdefault(gid, acc.dtype) is not acc.dtype:
                    raise ExecutionError(
                        f"buffer {gid} accessed as both {input_dtypes[gid]} and {acc.dtype}"
                    )
                _check_bounds(acc, in_slots[gid], check_index=not empty)
        if size is None:
            size = min((s.size // e.dtype.itemsize for s, e in zip(out_slots, exps)), default=0)
        for i, (slot, e) in enumerate(zip(out_slots, exps)):
            if slot.size < size * e.dtype.itemsize:
                raise ExecutionError(
                    f"output {i} holds {slot.size} bytes, needs {size * e.dtype.itemsize}"
                )
        if any(h in outputs for h in inputs):
            logger.debug("%s: execute with aliased input and output buffers", self.name)

        kernel = Kernel(exps, size, input_dtypes)
        logger.debug("%s: execute %d output(s) over %d positions", self.name, len(exps), size)
        self._run(kernel, in_slots, out_slots)


def _check_reductions(exp: AluExp, depth: int = 0) -> None:
    if exp.op is AluOp.Reduce:
        if depth > 0:
            raise ExecutionError("nested reductions are not supported")
        depth += 1
    elif exp.op is AluOp.Special and exp.arg[0] == RIDX and depth == 0:
        raise ExecutionError("ridx used outside of a reduction")
    for s in exp.src:
        _check_reductions(s, depth)


def _check_bounds(acc: AluExp, slot: Slot, check_index: bool = True) -> None:
    itemsize = acc.dtype.itemsize
    if slot.size % itemsize:
        raise ExecutionError(f"buffer of {slot.size} bytes is not a whole number of {acc.dtype}")
    if acc.op is not AluOp.Accessor:
        return
    count = slot.size // itemsize
    reach = acc.arg[1].offset_range()
    if reach is not None and (reach[0] < 0 or reach[1] >= count):
        raise ExecutionError(
            f"view {acc.arg[1]!r} reads offsets {reach[0]}..{reach[1]} "
            f"of a buffer with {count} elements"
        )
    if check_index:
        span = acc.src[0].bounds()
        size = acc.arg[1].size
        if span is not None and (span[0] < 0 or span[1] >= size):
            raise ExecutionError(
                f"accessor {acc.arg[0]} reads positions {span[0]}..{span[1]} of a view with {size} elements"
            )
