import math

import numpy as np
import pytest

from stitch.alu import GIDX, RIDX, AluExp, AluOp
from stitch.dtype import DType, dtypes, promote
from stitch.shape import ShapeTracker


def gidx(n):
    return AluExp.special(DType.Int32, GIDX, n)


class TestDtypes:
    def test_promotion_order(self):
        assert promote(dtypes.bool, dtypes.int32) is DType.Int32
        assert promote(dtypes.int32, dtypes.float32) is DType.Float32
        assert promote(dtypes.bool, dtypes.bool) is DType.Bool

    def test_itemsize(self):
        assert DType.Bool.itemsize == 1
        assert DType.Float32.itemsize == 4

    def test_float_constants_round_to_float32(self):
        assert AluExp.f32(0.1).arg == float(np.float32(0.1))


class TestConstruction:
    def test_binary_inserts_cast(self):
        e = AluExp.add(gidx(4), AluExp.f32(0.5))
        assert e.dtype is DType.Float32
        assert e.src[0].op is AluOp.Cast

    def test_comparison_is_bool(self):
        assert AluExp.cmplt(gidx(4), AluExp.i32(2)).dtype is DType.Bool
        assert AluExp.cmpgt(AluExp.f32(1.0), gidx(4)).dtype is DType.Bool

    def test_idiv_requires_int(self):
        with pytest.raises(TypeError):
            AluExp.idiv(AluExp.f32(1.0), gidx(3))
        with pytest.raises(TypeError):
            AluExp.mod(gidx(3), AluExp.f32(2.0))

    def test_neg_of_bool(self):
        with pytest.raises(TypeError):
            AluExp.neg(AluExp.cmplt(gidx(3), AluExp.i32(1)))

    def test_sin_promotes(self):
        assert AluExp.sin(gidx(3)).dtype is DType.Float32

    def test_where_requires_bool(self):
        with pytest.raises(TypeError):
            AluExp.where(gidx(3), AluExp.f32(1.0), AluExp.f32(0.0))

    def test_special_must_be_int(self):
        with pytest.raises(TypeError):
            AluExp.special(DType.Float32, "x", 3)

    def test_constant_folding(self):
        assert AluExp.add(AluExp.i32(2), AluExp.i32(3)) == AluExp.i32(5)
        g = gidx(4)
        assert AluExp.add(g, AluExp.i32(0)) is g
        assert AluExp.mul(AluExp.i32(1), g) is g
        assert g * 0 == AluExp.i32(0)

    def test_expressions_are_hashable(self):
        a = AluExp.add(gidx(4), AluExp.i32(1))
        b = AluExp.add(gidx(4), AluExp.i32(1))
        assert a == b
        assert hash(a) == hash(b)

    def test_specials(self):
        e = AluExp.reduce(gidx(3) * 4 + AluExp.ridx(4), 4)
        assert e.specials() == {GIDX: 3, RIDX: 4}


class TestEvaluate:
    def test_arithmetic(self):
        e = (gidx(10) * 3 + 1) % 4
        assert [e.evaluate({GIDX: i}) for i in range(5)] == [(3 * i + 1) % 4 for i in range(5)]

    def test_floor_division(self):
        e = AluExp.idiv(gidx(10) + (-7), AluExp.i32(2))
        assert e.evaluate({GIDX: 0}) == -4

    def test_where(self):
        e = AluExp.where(AluExp.cmplt(gidx(4), AluExp.i32(2)), AluExp.f32(1.0), AluExp.f32(-1.0))
        assert [e.evaluate({GIDX: i}) for i in range(4)] == [1.0, 1.0, -1.0, -1.0]

    def test_bool_arithmetic(self):
        t = AluExp.cmplt(gidx(4), AluExp.i32(2))
        f = AluExp.cmpgt(gidx(4), AluExp.i32(2))
        assert AluExp.add(t, f).evaluate({GIDX: 3}) is True
        assert AluExp.mul(t, f).evaluate({GIDX: 1}) is False

    def test_trig(self):
        e = AluExp.cos(AluExp.cast(DType.Float32, gidx(2)))
        assert e.evaluate({GIDX: 1}) == pytest.approx(math.cos(1.0))

    def test_reduce_sum_and_max(self):
        body = AluExp.cast(DType.Float32, AluExp.ridx(5))
        assert AluExp.reduce(body, 5).evaluate({}) == 10.0
        assert AluExp.reduce(body, 5, AluOp.Max).evaluate({}) == 4.0

    def test_reduce_bool_counts(self):
        body = AluExp.cmplt(AluExp.ridx(6), AluExp.i32(4))
        e = AluExp.reduce(body, 6)
        assert e.dtype is DType.Int32
        assert e.evaluate({}) == 4

    def test_int32_wraps(self):
        top = 2**31 - 1
        assert AluExp.i32(top) + 1 == AluExp.i32(-(2**31))
        e = gidx(4) + top
        assert e.evaluate({GIDX: 2}) == -(2**31) + 1
        assert AluExp.neg(gidx(4) + (-(2**31))).evaluate({GIDX: 0}) == -(2**31)
        assert (gidx(4) * 65536 * 65536).evaluate({GIDX: 3}) == 0

    def test_accessor_reads_through_view(self):
        st = ShapeTracker.from_shape((2, 3)).permute((1, 0))
        e = AluExp.accessor(0, DType.Float32, st, gidx(6))
        buf = [float(x) for x in range(6)]
        assert [e.evaluate({GIDX: i}, [buf]) for i in range(6)] == [0.0, 3.0, 1.0, 4.0, 2.0, 5.0]


class TestLower:
    @pytest.mark.parametrize(
        "st",
        [
            ShapeTracker.from_shape((2, 3)),
            ShapeTracker.from_shape((2, 3)).pad(((1, 0), (0, 2))),
            ShapeTracker.from_shape((2, 3)).flip((1,)).permute((1, 0)).reshape((6,)),
            ShapeTracker.from_shape((3,)).reshape((1, 3)).expand((2, 3)),
        ],
        ids=["contiguous", "padded", "flipped", "broadcast"],
    )
    def test_lowered_loads_match_accessor(self, st):
        buf = [float(x) + 1.0 for x in range(6)]
        e = AluExp.accessor(0, DType.Float32, st, gidx(st.size)) * 2.0
        low = e.lower()
        assert not any(n.op is AluOp.Accessor for n in low.nodes())
        assert any(n.op is AluOp.GlobalIndex for n in low.nodes())
        for i in range(st.size):
            assert low.evaluate({GIDX: i}, [buf]) == e.evaluate({GIDX: i}, [buf])

    def test_lower_without_accessors_is_identity(self):
        e = gidx(4) + 1
        assert e.lower() is e

    def test_global_index_out_of_range(self):
        e = AluExp.global_index(0, DType.Float32, gidx(4))
        with pytest.raises(IndexError):
            e.evaluate({GIDX: 3}, [[1.0, 2.0]])


class TestBounds:
    def test_index_arithmetic(self):
        assert gidx(10).bounds() == (0, 9)
        assert (gidx(10) * 3 + 1).bounds() == (1, 28)
        assert AluExp.idiv(gidx(10), AluExp.i32(4)).bounds() == (0, 2)
        assert (gidx(10) % 4).bounds() == (0, 3)
        assert AluExp.neg(gidx(5)).bounds() == (-4, 0)

    def test_where_takes_the_union(self):
        cond = AluExp.cmplt(gidx(8), AluExp.i32(4))
        assert AluExp.where(cond, gidx(8), AluExp.i32(20)).bounds() == (0, 20)

    def test_unknown_ranges(self):
        load = AluExp.global_index(0, DType.Int32, gidx(4))
        assert load.bounds() is None
        assert (load + 1).bounds() is None
        assert AluExp.idiv(gidx(4), gidx(4) + 1).bounds() is None
        assert AluExp.f32(1.5).bounds() is None
