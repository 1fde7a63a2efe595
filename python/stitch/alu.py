"""Scalar expression IR executed once per output element by a backend.

Leaves are constants, special variables bound by the executor (``gidx`` for
the output position, ``ridx`` for the position inside a reduction) and buffer
reads. A read is first written as an ``Accessor`` holding the ShapeTracker
through which the buffer is viewed; ``lower()`` rewrites every accessor into a
guarded ``GlobalIndex`` so that backends only need flat loads.
"""
import enum
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .dtype import DType, promote


class AluOp(enum.Enum):
    # leaves
    Const = "const"
    Special = "special"
    Accessor = "accessor"
    GlobalIndex = "global_index"
    # unary
    Neg = "neg"
    Sin = "sin"
    Cos = "cos"
    Cast = "cast"
    # binary
    Add = "add"
    Mul = "mul"
    Idiv = "idiv"
    Mod = "mod"
    Max = "max"
    Cmplt = "cmplt"
    Cmpgt = "cmpgt"
    And = "and"
    # ternary
    Where = "where"
    # reduction marker
    Reduce = "reduce"


UNARY_OPS = {AluOp.Neg, AluOp.Sin, AluOp.Cos, AluOp.Cast}
BINARY_OPS = {
    AluOp.Add, AluOp.Mul, AluOp.Idiv, AluOp.Mod, AluOp.Max,
    AluOp.Cmplt, AluOp.Cmpgt, AluOp.And,
}
REDUCE_OPS = {AluOp.Add, AluOp.Max}

GIDX = "gidx"
RIDX = "ridx"


@dataclass(frozen=True)
class AluExp:
    op: AluOp
    dtype: DType
    src: Tuple["AluExp", ...] = ()
    arg: Any = None

    def __repr__(self):
        if self.op is AluOp.Const:
            return f"{self.arg!r}:{self.dtype.value}"
        if self.op is AluOp.Special:
            return f"{self.arg[0]}<{self.arg[1]}>"
        if self.op is AluOp.Accessor:
            return f"load[{self.arg[0]}]({self.src[0]!r}, {self.arg[1]!r})"
        if self.op is AluOp.GlobalIndex:
            return f"load[{self.arg}]({self.src[0]!r})"
        args = ", ".join(repr(s) for s in self.src)
        if self.op is AluOp.Reduce:
            return f"reduce_{self.arg[0].value}<{self.arg[1]}>({args})"
        return f"{self.op.value}({args})"

    ### Leaves

    @staticmethod
    def const(dtype: DType, value) -> "AluExp":
        return AluExp(AluOp.Const, dtype, (), dtype.coerce(value))

    @staticmethod
    def f32(value) -> "AluExp":
        return AluExp.const(DType.Float32, value)

    @staticmethod
    def i32(value) -> "AluExp":
        return AluExp.const(DType.Int32, value)

    @staticmethod
    def bool(value) -> "AluExp":
        return AluExp.const(DType.Bool, value)

    @staticmethod
    def special(dtype: DType, name: str, n: int) -> "AluExp":
        """ Variable bound by the executor, ranging over ``0..n-1``. """
        if dtype is not DType.Int32:
            raise TypeError(f"special variable {name!r} must be int32")
        return AluExp(AluOp.Special, dtype, (), (name, int(n)))

    @staticmethod
    def accessor(gid: int, dtype: DType, st, index: "AluExp") -> "AluExp":
        """Read buffer slot ``gid`` through tracker ``st`` at flat logical ``index``.

        Positions in the padded region of ``st`` read as zero.
        """
        if index.dtype is not DType.Int32:
            raise TypeError("accessor index must be int32")
        if gid < 0:
            raise ValueError(f"buffer slot must be non-negative, got {gid}")
        return AluExp(AluOp.Accessor, dtype, (index,), (int(gid), st))

    @staticmethod
    def global_index(gid: int, dtype: DType, index: "AluExp") -> "AluExp":
        if index.dtype is not DType.Int32:
            raise TypeError("global index must be int32")
        return AluExp(AluOp.GlobalIndex, dtype, (index,), int(gid))

    ### Unary

    @staticmethod
    def neg(a: "AluExp") -> "AluExp":
        if a.dtype is DType.Bool:
            raise TypeError("neg() is not defined for bool")
        if a.op is AluOp.Const:
            return AluExp.const(a.dtype, -a.arg)
        return AluExp(AluOp.Neg, a.dtype, (a,))

    @staticmethod
    def sin(a: "AluExp") -> "AluExp":
        return AluExp(AluOp.Sin, DType.Float32, (AluExp.cast(DType.Float32, a),))

    @staticmethod
    def cos(a: "AluExp") -> "AluExp":
        return AluExp(AluOp.Cos, DType.Float32, (AluExp.cast(DType.Float32, a),))

    @staticmethod
    def cast(dtype: DType, a: "AluExp") -> "AluExp":
        if a.dtype is dtype:
            return a
        if a.op is AluOp.Const:
            return AluExp.const(dtype, a.arg)
        return AluExp(AluOp.Cast, dtype, (a,))

    ### Binary

    @staticmethod
    def _binary(op: AluOp, a: "AluExp", b: "AluExp", out: DType = None) -> "AluExp":
        dtype = promote(a.dtype, b.dtype)
        a, b = AluExp.cast(dtype, a), AluExp.cast(dtype, b)
        out = dtype if out is None else out
        if a.op is AluOp.Const and b.op is AluOp.Const:
            return AluExp.const(out, _PY_BINARY[op](dtype)(a.arg, b.arg))
        return AluExp(op, out, (a, b))

    @staticmethod
    def add(a: "AluExp", b: "AluExp") -> "AluExp":
        if _is_const(a, 0):
            return AluExp.cast(promote(a.dtype, b.dtype), b)
        if _is_const(b, 0):
            return AluExp.cast(promote(a.dtype, b.dtype), a)
        return AluExp._binary(AluOp.Add, a, b)

    @staticmethod
    def mul(a: "AluExp", b: "AluExp") -> "AluExp":
        dtype = promote(a.dtype, b.dtype)
        if _is_const(a, 1):
            return AluExp.cast(dtype, b)
        if _is_const(b, 1):
            return AluExp.cast(dtype, a)
        if dtype is DType.Int32 and (_is_const(a, 0) or _is_const(b, 0)):
            return AluExp.i32(0)
        return AluExp._binary(AluOp.Mul, a, b)

    @staticmethod
    def idiv(a: "AluExp", b: "AluExp") -> "AluExp":
        _require_int("idiv", a, b)
        if _is_const(b, 1):
            return a
        return AluExp._binary(AluOp.Idiv, a, b)

    @staticmethod
    def mod(a: "AluExp", b: "AluExp") -> "AluExp":
        _require_int("mod", a, b)
        if _is_const(b, 1):
            return AluExp.i32(0)
        return AluExp._binary(AluOp.Mod, a, b)

    @staticmethod
    def max(a: "AluExp", b: "AluExp") -> "AluExp":
        return AluExp._binary(AluOp.Max, a, b)

    @staticmethod
    def cmplt(a: "AluExp", b: "AluExp") -> "AluExp":
        return AluExp._binary(AluOp.Cmplt, a, b, DType.Bool)

    @staticmethod
    def cmpgt(a: "AluExp", b: "AluExp") -> "AluExp":
        return AluExp._binary(AluOp.Cmpgt, a, b, DType.Bool)

    @staticmethod
    def and_(a: "AluExp", b: "AluExp") -> "AluExp":
        if a.dtype is not DType.Bool or b.dtype is not DType.Bool:
            raise TypeError("and() requires bool operands")
        for x, y in ((a, b), (b, a)):
            if x.op is AluOp.Const:
                return y if x.arg else AluExp.bool(False)
        return AluExp(AluOp.And, DType.Bool, (a, b))

    ### Ternary and reduction

    @staticmethod
    def where(cond: "AluExp", a: "AluExp", b: "AluExp") -> "AluExp":
        if cond.dtype is not DType.Bool:
            raise TypeError("where() condition must be bool")
        dtype = promote(a.dtype, b.dtype)
        a, b = AluExp.cast(dtype, a), AluExp.cast(dtype, b)
        if cond.op is AluOp.Const:
            return a if cond.arg else b
        return AluExp(AluOp.Where, dtype, (cond, a, b))

    @staticmethod
    def ridx(n: int) -> "AluExp":
        """ Position inside the innermost reduction of extent ``n``. """
        return AluExp.special(DType.Int32, RIDX, n)

    @staticmethod
    def reduce(body: "AluExp", n: int, op: AluOp = AluOp.Add) -> "AluExp":
        """ Fold ``body`` over ``ridx`` in ``0..n-1`` with ``op``. """
        if op not in REDUCE_OPS:
            raise ValueError(f"unsupported reduction {op}")
        if body.dtype is DType.Bool:
            body = AluExp.cast(DType.Int32, body)
        return AluExp(AluOp.Reduce, body.dtype, (body,), (op, int(n)))

    ### Operator sugar

    def _lift(self, other):
        if isinstance(other, AluExp):
            return other
        if isinstance(other, bool):
            return AluExp.bool(other)
        if isinstance(other, int) and self.dtype is not DType.Float32:
            return AluExp.i32(other)
        return AluExp.f32(other)

    def __add__(self, other):
        return AluExp.add(self, self._lift(other))

    def __radd__(self, other):
        return AluExp.add(self._lift(other), self)

    def __mul__(self, other):
        return AluExp.mul(self, self._lift(other))

    def __rmul__(self, other):
        return AluExp.mul(self._lift(other), self)

    def __neg__(self):
        return AluExp.neg(self)

    def __floordiv__(self, other):
        return AluExp.idiv(self, self._lift(other))

    def __mod__(self, other):
        return AluExp.mod(self, self._lift(other))

    def __and__(self, other):
        return AluExp.and_(self, self._lift(other))

    ### Traversal

    def nodes(self) -> List["AluExp"]:
        """ Every distinct node, children before parents. """
        seen = set()
        order = []

        def visit(exp):
            if id(exp) in seen:
                return
            seen.add(id(exp))
            for s in exp.src:
                visit(s)
            order.append(exp)

        visit(self)
        return order

    def specials(self) -> Dict[str, int]:
        return {e.arg[0]: e.arg[1] for e in self.nodes() if e.op is AluOp.Special}

    def accessors(self) -> List["AluExp"]:
        return [e for e in self.nodes() if e.op in (AluOp.Accessor, AluOp.GlobalIndex)]

    def bounds(self) -> Optional[Tuple[int, int]]:
        """Inclusive range of an integer expression over every binding of its specials.

        Returns None when the range is not known statically, e.g. for values
        loaded from a buffer.
        """
        memo = {}

        def go(e):
            key = id(e)
            if key not in memo:
                memo[key] = _bounds(e, [go(s) for s in e.src])
            return memo[key]

        return go(self)

    def substitute(self, fn: Callable[["AluExp"], "AluExp"]) -> "AluExp":
        """ Rebuild bottom-up, replacing each node ``e`` with ``fn(e)`` (or keeping it on None). """
        memo = {}

        def go(exp):
            key = id(exp)
            if key not in memo:
                src = tuple(go(s) for s in exp.src)
                same = all(a is b for a, b in zip(src, exp.src))
                node = exp if same else AluExp(exp.op, exp.dtype, src, exp.arg)
                new = fn(node)
                memo[key] = node if new is None else new
            return memo[key]

        return go(self)

    def lower(self) -> "AluExp":
        """Replace accessors with guarded global loads.

        ``load[g](st, i)`` becomes ``where(valid, load[g](where(valid, offset, 0)), 0)``
        where ``offset`` and ``valid`` come from ``st.to_alu(i)``.
        """
        def rewrite(exp):
            if exp.op is not AluOp.Accessor:
                return None
            gid, st = exp.arg
            offset, valid = st.to_alu(exp.src[0])
            # masked positions load element 0 so every index stays in bounds
            load = AluExp.global_index(gid, exp.dtype, AluExp.where(valid, offset, AluExp.i32(0)))
            return AluExp.where(valid, load, AluExp.const(exp.dtype, 0))

        return self.substitute(rewrite)

    ### Reference evaluation

    def evaluate(self, specials: Dict[str, int], buffers: Sequence[Sequence] = ()):
        """Evaluate at one point.

        ``specials`` binds special variable names to integers, ``buffers``
        gives the flat element sequence for each buffer slot.
        """
        return compile_exp(self)(dict(specials), buffers)


def _is_const(exp: AluExp, value) -> bool:
    return exp.op is AluOp.Const and exp.arg == value


def _bounds(e: AluExp, src):
    op = e.op
    if op is AluOp.Const:
        return (int(e.arg), int(e.arg)) if e.dtype is not DType.Float32 else None
    if op is AluOp.Special:
        return 0, max(e.arg[1] - 1, 0)
    if op in (AluOp.Cmplt, AluOp.Cmpgt, AluOp.And):
        return 0, 1
    if any(s is None for s in src):
        return None
    if op is AluOp.Cast:
        return src[0] if e.src[0].dtype is not DType.Float32 else None
    if op is AluOp.Neg:
        return -src[0][1], -src[0][0]
    if op is AluOp.Where:
        (_, (alo, ahi), (blo, bhi)) = src
        return min(alo, blo), max(ahi, bhi)
    if op not in BINARY_OPS:
        return None
    (alo, ahi), (blo, bhi) = src
    if op is AluOp.Add:
        return alo + blo, ahi + bhi
    if op is AluOp.Mul:
        corners = [alo * blo, alo * bhi, ahi * blo, ahi * bhi]
        return min(corners), max(corners)
    if op is AluOp.Max:
        return max(alo, blo), max(ahi, bhi)
    if blo == bhi and blo > 0:
        # floor division and modulo by a positive constant
        if op is AluOp.Idiv:
            return alo // blo, ahi // blo
        if op is AluOp.Mod:
            return 0, blo - 1
    return None


def _require_int(name, a, b):
    if a.dtype is not DType.Int32 or b.dtype is not DType.Int32:
        raise TypeError(f"{name}() requires int32 operands, got {a.dtype} and {b.dtype}")


def _py_add(dtype):
    return (lambda a, b: a or b) if dtype is DType.Bool else (lambda a, b: a + b)


def _py_mul(dtype):
    return (lambda a, b: a and b) if dtype is DType.Bool else (lambda a, b: a * b)


_PY_BINARY = {
    AluOp.Add: _py_add,
    AluOp.Mul: _py_mul,
    AluOp.Idiv: lambda dtype: lambda a, b: a // b,
    AluOp.Mod: lambda dtype: lambda a, b: a % b,
    AluOp.Max: lambda dtype: max,
    AluOp.Cmplt: lambda dtype: lambda a, b: a < b,
    AluOp.Cmpgt: lambda dtype: lambda a, b: a > b,
    AluOp.And: lambda dtype: lambda a, b: a and b,
}


def compile_exp(exp: AluExp):
    """Turn an expression into a python closure ``fn(specials, buffers)``.

    Shared subtrees compile once. Accessors go through the tracker's own
    ``address_flat``, so this path does not depend on ``lower()``.
    """
    memo = {}

    def build(e: AluExp):
        key = id(e)
        if key in memo:
            return memo[key]
        op = e.op
        src = [build(s) for s in e.src]
        if op is AluOp.Const:
            value = e.arg
            fn = lambda env, bufs: value
        elif op is AluOp.Special:
            name = e.arg[0]
            fn = lambda env, bufs: env[name]
        elif op is AluOp.Accessor:
            gid, st = e.arg
            zero = e.dtype.coerce(0)
            coerce = e.dtype.coerce
            (idx,) = src

            def fn(env, bufs):
                off = st.address_flat(idx(env, bufs))
                return zero if off is None else coerce(bufs[gid][off])
        elif op is AluOp.GlobalIndex:
            gid = e.arg
            coerce = e.dtype.coerce
            (idx,) = src

            def fn(env, bufs):
                i = idx(env, bufs)
                if not 0 <= i < len(bufs[gid]):
                    raise IndexError(f"load[{gid}] index {i} out of range for {len(bufs[gid])} elements")
                return coerce(bufs[gid][i])
        elif op is AluOp.Neg:
            (a,) = src
            coerce = e.dtype.coerce
            fn = lambda env, bufs: coerce(-a(env, bufs))
        elif op is AluOp.Sin:
            (a,) = src
            fn = lambda env, bufs: math.sin(a(env, bufs))
        elif op is AluOp.Cos:
            (a,) = src
            fn = lambda env, bufs: math.cos(a(env, bufs))
        elif op is AluOp.Cast:
            (a,) = src
            coerce = e.dtype.coerce
            fn = lambda env, bufs: coerce(a(env, bufs))
        elif op in BINARY_OPS:
            a, b = src
            f = _PY_BINARY[op](e.src[0].dtype)
            if e.dtype is DType.Int32:
                coerce = e.dtype.coerce
                fn = lambda env, bufs: coerce(f(a(env, bufs), b(env, bufs)))
            else:
                fn = lambda env, bufs: f(a(env, bufs), b(env, bufs))
        elif op is AluOp.Where:
            c, a, b = src
            fn = lambda env, bufs: a(env, bufs) if c(env, bufs) else b(env, bufs)
        elif op is AluOp.Reduce:
            rop, n = e.arg
            (body,) = src
            f = _PY_BINARY[rop](e.dtype)
            init = e.dtype.coerce(0) if rop is AluOp.Add else -math.inf
            wrap = e.dtype.coerce if e.dtype is DType.Int32 and rop is AluOp.Add else None

            def fn(env, bufs):
                acc = init
                for r in range(n):
                    env[RIDX] = r
                    acc = f(acc, body(env, bufs))
                env.pop(RIDX, None)
                return acc if wrap is None else wrap(acc)
        else:
            raise ValueError(f"cannot evaluate {op}")
        memo[key] = fn
        return fn

    return build(exp)
