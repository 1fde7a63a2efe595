import asyncio

import numpy as np
import pytest

import stitch
from stitch import NDArray, dtypes
from stitch.errors import LifetimeError, ShapeError


def live(backend):
    return backend.live_buffers()


class TestCreation:
    def test_from_list(self, backend):
        a = NDArray([1.0, 2.0, 3.0], backend=backend)
        assert a.shape == (3,)
        assert a.dtype is dtypes.float32
        np.testing.assert_array_equal(a.numpy(), [1, 2, 3])
        a.dispose()

    def test_dtype_inference(self, backend):
        a = NDArray(np.arange(4), backend=backend)
        b = NDArray([True, False], backend=backend)
        assert a.dtype is dtypes.int32
        assert b.dtype is dtypes.bool
        assert b.numpy().tolist() == [True, False]
        a.dispose()
        b.dispose()

    def test_backend_by_name(self):
        a = stitch.array([[1, 2], [3, 4]], dtype="float32", backend="cpu")
        assert a.backend is stitch.get_backend("cpu")
        assert a.ndim == 2 and a.size == 4
        a.dispose()

    def test_scalar(self, backend):
        a = NDArray(2.5, backend=backend)
        assert a.shape == ()
        assert float(a.numpy()) == 2.5
        a.dispose()

    def test_scalar_keeps_zero_dims(self, backend):
        for value in (3.0, np.float32(3.0), np.array(7, dtype=np.int32)):
            a = stitch.array(value, backend=backend)
            assert a.shape == () and a.size == 1
            assert a.numpy().shape == ()
            a.dispose()

    def test_zeros_and_ones(self, backend):
        z = stitch.zeros((2, 3), backend=backend)
        o = stitch.ones((2, 3), dtype="int32", backend=backend)
        np.testing.assert_array_equal(z.numpy(), np.zeros((2, 3)))
        np.testing.assert_array_equal(o.numpy(), np.ones((2, 3)))
        z.dispose()
        o.dispose()

    def test_like(self, backend):
        a = NDArray(np.arange(6, dtype=np.int32).reshape(2, 3), backend=backend)
        z, o = stitch.zeros_like(a), stitch.ones_like(a, dtype="float32")
        assert z.shape == o.shape == (2, 3)
        assert z.dtype is dtypes.int32 and o.dtype is dtypes.float32
        assert z.backend is backend and o.backend is backend
        np.testing.assert_array_equal(z.numpy(), np.zeros((2, 3)))
        np.testing.assert_array_equal(o.numpy(), np.ones((2, 3)))
        for x in (a, z, o):
            x.dispose()


class TestMovement:
    def setup_method(self):
        self.ref = np.arange(24, dtype=np.float32).reshape(2, 3, 4)

    @pytest.mark.parametrize(
        "op, expected",
        [
            (lambda a: a.reshape((6, 4)), lambda x: x.reshape(6, 4)),
            (lambda a: a.reshape((4, -1)), lambda x: x.reshape(4, -1)),
            (lambda a: a.permute((2, 0, 1)), lambda x: x.transpose(2, 0, 1)),
            (lambda a: a.permute((1, 0, 2)).reshape((3, 8)), lambda x: x.transpose(1, 0, 2).reshape(3, 8)),
            (lambda a: a.pad(((0, 1), (1, 0), (2, 2))), lambda x: np.pad(x, ((0, 1), (1, 0), (2, 2)))),
            (lambda a: a.shrink(((1, 2), (0, 3), (1, 3))), lambda x: x[1:2, 0:3, 1:3]),
            (lambda a: a.flip((0, 2)), lambda x: x[::-1, :, ::-1]),
            (lambda a: a.moveaxis(2, 0), lambda x: np.moveaxis(x, 2, 0)),
            (lambda a: a[1], lambda x: x[1]),
            (lambda a: a[:, 1:, ::2], lambda x: x[:, 1:, ::2]),
            (lambda a: a[-1, ::2, 1:4:2], lambda x: x[-1, ::2, 1:4:2]),
            (lambda a: a[1:, :2, ::3], lambda x: x[1:, :2, ::3]),
            (lambda a: a.reshape((4, 6))[:, 1::4], lambda x: x.reshape(4, 6)[:, 1::4]),
            (lambda a: a[0, 0:0], lambda x: x[0, 0:0]),
            (lambda a: a[:, 2][:, 1:], lambda x: x[:, 2][:, 1:]),
            (lambda a: a.T, lambda x: x.T),
        ],
    )
    def test_views_match_numpy(self, backend, op, expected):
        a = NDArray(self.ref, backend=backend)
        v = op(a)
        np.testing.assert_array_equal(v.numpy(), expected(self.ref))
        v.dispose()
        a.dispose()

    def test_broadcast_to(self, backend):
        a = NDArray([[1.0], [2.0]], backend=backend)
        b = a.broadcast_to((3, 2, 4))
        np.testing.assert_array_equal(b.numpy(), np.broadcast_to([[1.0], [2.0]], (3, 2, 4)))
        with pytest.raises(ShapeError):
            a.broadcast_to((3, 4))
        b.dispose()
        a.dispose()

    def test_views_share_the_buffer(self, backend):
        a = NDArray(self.ref, backend=backend)
        v = a.permute((2, 1, 0))
        assert v.handle == a.handle
        assert backend.refcount(a.handle) == 2
        v.dispose()
        assert backend.refcount(a.handle) == 1
        a.dispose()

    def test_bad_index(self, backend):
        a = NDArray(self.ref, backend=backend)
        with pytest.raises(IndexError):
            a[2]
        with pytest.raises(IndexError):
            a[0, 0, 0, 0]
        with pytest.raises(IndexError):
            a[::-1]
        a.dispose()


class TestCompute:
    def test_arithmetic(self, backend):
        a = NDArray([1.0, 2.0, 3.0], backend=backend)
        b = NDArray([4.0, 5.0, 6.0], backend=backend)
        results = [a * b, a + b, a - b, -a, 2 - a, a * 0.5 + 1]
        expected = [[4, 10, 18], [5, 7, 9], [-3, -3, -3], [-1, -2, -3], [1, 0, -1], [1.5, 2, 2.5]]
        for r, e in zip(results, expected):
            np.testing.assert_allclose(r.numpy(), e)
            r.dispose()
        a.dispose()
        b.dispose()

    def test_broadcasting(self, backend):
        a = NDArray(np.arange(6, dtype=np.float32).reshape(2, 3), backend=backend)
        b = NDArray([10.0, 20.0, 30.0], backend=backend)
        c = a + b
        np.testing.assert_array_equal(c.numpy(), np.arange(6).reshape(2, 3) + [10, 20, 30])
        for x in (a, b, c):
            x.dispose()

    def test_comparisons(self, backend):
        a = NDArray([1.0, 2.0, 3.0], backend=backend)
        lt, gt = a < 2, a > 2
        assert lt.dtype is dtypes.bool
        assert lt.numpy().tolist() == [True, False, False]
        assert gt.numpy().tolist() == [False, False, True]
        for x in (a, lt, gt):
            x.dispose()

    def test_trig_and_cast(self, backend):
        x = np.linspace(-2, 2, 7).astype(np.float32)
        a = NDArray(x, backend=backend)
        s, c = a.sin(), a.cos()
        i = a.astype("int32")
        np.testing.assert_allclose(s.numpy(), np.sin(x), rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(c.numpy(), np.cos(x), rtol=1e-5, atol=1e-6)
        np.testing.assert_array_equal(i.numpy(), x.astype(np.int32))
        for y in (a, s, c, i):
            y.dispose()

    def test_int_arithmetic_stays_int(self, backend):
        a = NDArray([1, 2, 3], backend=backend)
        b = a * 2 + 1
        assert b.dtype is dtypes.int32
        assert b.numpy().tolist() == [3, 5, 7]
        a.dispose()
        b.dispose()

    def test_int32_overflow_wraps(self, backend):
        a = NDArray(np.array([2**31 - 1, -(2**31)], dtype=np.int32), backend=backend)
        b, c = a + 1, -a
        assert b.numpy().tolist() == [-(2**31), -(2**31) + 1]
        assert c.numpy().tolist() == [-(2**31) + 1, -(2**31)]
        for x in (a, b, c):
            x.dispose()

    def test_where(self, backend):
        x = np.array([[1.0, -2.0, 3.0], [-4.0, 5.0, -6.0]], dtype=np.float32)
        a = NDArray(x, backend=backend)
        zero = stitch.zeros_like(a)
        mask = a > 0
        relu = stitch.where(mask, a, zero)
        picked = stitch.where(mask, 1, -1.5)
        np.testing.assert_array_equal(relu.numpy(), np.where(x > 0, x, 0))
        np.testing.assert_array_equal(picked.numpy(), np.where(x > 0, 1, -1.5))
        assert relu.dtype is dtypes.float32
        for y in (a, zero, mask, relu, picked):
            y.dispose()

    def test_where_broadcasts_and_tests_against_zero(self, backend):
        c = NDArray([0, 2, 0], backend=backend)
        row = NDArray([[10.0], [20.0]], backend=backend)
        out = stitch.where(c, row, 0.0)
        assert out.shape == (2, 3)
        np.testing.assert_array_equal(out.numpy(), [[0, 10, 0], [0, 20, 0]])
        with pytest.raises(TypeError):
            stitch.where([True, False, True], row, 0.0)
        for y in (c, row, out):
            y.dispose()

    def test_operands_on_different_backends(self, cpu_backend, device_backend):
        a = NDArray([1.0], backend=cpu_backend)
        b = NDArray([1.0], backend=device_backend)
        with pytest.raises(ValueError):
            a + b
        a.dispose()
        b.dispose()

    def test_compact(self, backend):
        a = NDArray(np.arange(6, dtype=np.float32).reshape(2, 3), backend=backend)
        t = a.permute((1, 0))
        c = t.compact()
        assert c.tracker.contiguous
        assert c.handle != a.handle
        np.testing.assert_array_equal(c.numpy(), np.arange(6).reshape(2, 3).T)
        for x in (a, t, c):
            x.dispose()


class TestReductions:
    def setup_method(self):
        self.ref = np.arange(24, dtype=np.float32).reshape(2, 3, 4) - 10

    @pytest.mark.parametrize("axis", [None, 0, 1, 2, (0, 2), -1])
    @pytest.mark.parametrize("keepdims", [False, True])
    def test_sum(self, backend, axis, keepdims):
        a = NDArray(self.ref, backend=backend)
        s = a.sum(axis=axis, keepdims=keepdims)
        np.testing.assert_allclose(s.numpy(), self.ref.sum(axis=axis, keepdims=keepdims))
        s.dispose()
        a.dispose()

    def test_axis_out_of_range(self, backend):
        a = NDArray(self.ref[0], backend=backend)
        with pytest.raises(ShapeError):
            a.sum(axis=5)
        with pytest.raises(ShapeError):
            a.max(axis=-3)
        with pytest.raises(ShapeError):
            a.flip(7)
        with pytest.raises(ShapeError):
            a.flip((-3,))
        a.dispose()

    def test_max(self, backend):
        a = NDArray(self.ref, backend=backend)
        m = a.max(axis=1)
        np.testing.assert_array_equal(m.numpy(), self.ref.max(axis=1))
        m.dispose()
        a.dispose()

    def test_sum_of_view(self, backend):
        a = NDArray(self.ref, backend=backend)
        p = a.pad(((0, 0), (1, 1), (0, 0))).flip((2,))
        s = p.sum(axis=1)
        np.testing.assert_allclose(s.numpy(), np.pad(self.ref, ((0, 0), (1, 1), (0, 0)))[:, :, ::-1].sum(axis=1))
        for x in (a, p, s):
            x.dispose()

    def test_bool_sum_counts(self, backend):
        a = NDArray([1.0, 5.0, 3.0, 7.0], backend=backend)
        mask = a > 2
        n = mask.sum()
        assert n.dtype is dtypes.int32
        assert int(n.numpy()) == 3
        for x in (a, mask, n):
            x.dispose()


class TestLifetime:
    def test_dispose_releases_buffer(self, backend):
        before = live(backend)
        a = NDArray([1.0, 2.0], backend=backend)
        assert live(backend) == before + 1
        a.dispose()
        assert live(backend) == before

    def test_use_after_dispose(self, backend):
        a = NDArray([1.0, 2.0, 3.0], backend=backend)
        a.dispose()
        with pytest.raises(LifetimeError):
            a.numpy()
        with pytest.raises(LifetimeError):
            a.dispose()
        with pytest.raises(LifetimeError):
            a + 1.0
        with pytest.raises(ReferenceError):
            a.reshape((3, 1))

    def test_ref_keeps_buffer_alive(self, backend):
        a = NDArray([1.0, 2.0, 3.0, 4.0], backend=backend)
        b = a.ref
        a.dispose()
        np.testing.assert_array_equal(b.numpy(), [1, 2, 3, 4])
        with pytest.raises(LifetimeError):
            a.sum()
        b.dispose()
        with pytest.raises(LifetimeError):
            b.numpy()

    def test_temporaries_are_released(self, backend):
        before = live(backend)
        a = NDArray(np.ones((3, 4), dtype=np.float32), backend=backend)
        t = a.permute((1, 0))
        t.numpy()
        s = a.sum(axis=0, keepdims=True)
        s.numpy()
        for x in (a, t, s):
            x.dispose()
        assert live(backend) == before


def test_numpy_async(backend):
    a = NDArray(np.arange(6, dtype=np.float32).reshape(2, 3), backend=backend)
    t = a.permute((1, 0))
    b = t * 3.0

    async def main():
        return await t.numpy_async(), await b.numpy_async()

    got_t, got_b = asyncio.run(main())
    np.testing.assert_array_equal(got_t, np.arange(6).reshape(2, 3).T)
    np.testing.assert_array_equal(got_b, 3 * np.arange(6).reshape(2, 3).T)
    for x in (a, t, b):
        x.dispose()
