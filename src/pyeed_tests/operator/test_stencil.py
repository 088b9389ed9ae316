import numpy as np
import pytest

import pyeed.info.error as pee
import pyeed.math.tensor as pemt
import pyeed.operator as peo
import pyeed.runtime as pert
import pyeed_tests.conftest as ct


def laplacian(x: np.ndarray, sampling) -> np.ndarray:
    # Reference discrete Laplacian with mirror boundaries.
    h = np.broadcast_to(sampling, x.ndim)
    xp_ = np.pad(x, 1, mode="symmetric")
    center = tuple(slice(1, -1) for _ in range(x.ndim))
    out = np.zeros_like(x)
    for ax in range(x.ndim):
        fwd = list(center)
        bwd = list(center)
        fwd[ax] = slice(2, None)
        bwd[ax] = slice(None, -2)
        out += (xp_[tuple(fwd)] - 2 * x + xp_[tuple(bwd)]) / h[ax] ** 2
    return out


def random_spd_field(dim_shape, seed=0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    D = len(dim_shape)
    G = rng.standard_normal((*dim_shape, D, D))
    S = G @ np.swapaxes(G, -1, -2) + np.eye(D)
    return pemt.to_packed(S)


class TestStabilityBound:
    @pytest.mark.parametrize(
        ["sampling", "lambda_max", "ndim", "tau"],
        [
            [1, 1, 2, 0.25],
            [(1, 1), 1, None, 0.25],
            [0.5, 2, 3, 0.25 / 12],
            [(2, 0.5, 1), 1, None, 0.25 / 6],
        ],
    )
    def test_value(self, sampling, lambda_max, ndim, tau):
        assert np.isclose(peo.stability_bound(sampling, lambda_max, ndim), tau)

    @pytest.mark.parametrize("lambda_max", [0, -1])
    def test_invalid(self, lambda_max):
        with pytest.raises(pee.ConfigurationError):
            peo.stability_bound(1, lambda_max, 2)


class TestDivergenceStencil:
    @pytest.mark.parametrize("dim_shape", [(9, 10), (5, 6, 7)])
    def test_flat_image(self, xp, dim_shape):
        # Constant images are fixed points: the update is exactly 0.
        op = peo.DivergenceStencil(dim_shape)
        x = xp.full(dim_shape, 3.5)
        T = xp.asarray(random_spd_field(dim_shape))
        out = ct.to_numpy(op(ct.chunk_array(x), ct.chunk_array(T)))
        assert np.all(out == 0)

    @pytest.mark.parametrize("dim_shape", [(9, 10), (5, 6, 7)])
    @pytest.mark.parametrize("sampling", [1, 0.5])
    def test_isotropic_laplacian(self, xp, dim_shape, sampling):
        rng = np.random.default_rng(1)
        x = rng.standard_normal(dim_shape)
        T = pemt.identity(dim_shape)

        op = peo.DivergenceStencil(dim_shape, sampling=sampling)
        out = op(ct.chunk_array(xp.asarray(x)), ct.chunk_array(xp.asarray(T)))
        assert ct.allclose(out, laplacian(x, sampling), np.float64)

    def test_conservative(self):
        # Zero-flux boundaries: the diagonal part of the update sums to 0.
        dim_shape = (12, 13)
        rng = np.random.default_rng(2)
        x = rng.standard_normal(dim_shape)
        T = random_spd_field(dim_shape, seed=3)
        T[1] = 0  # no mixed terms

        out = peo.DivergenceStencil(dim_shape)(x, T)
        assert np.isclose(out.sum(), 0, atol=1e-10)

    def test_mixed_terms(self):
        # u = x0 * x1, D = [[0, 1], [1, 0]] -> div(D grad u) = d0(x0) + d1(x1) = 2 in the interior.
        dim_shape = (8, 9)
        x = np.outer(np.arange(8.0), np.arange(9.0))
        T = np.zeros((3, *dim_shape))
        T[1] = 1

        out = peo.DivergenceStencil(dim_shape)(x, T)
        assert np.allclose(out[1:-1, 1:-1], 2)

    @pytest.mark.parametrize("max_workers", [2, 3, 64])
    def test_threading_deterministic(self, max_workers):
        dim_shape = (17, 11, 6)
        rng = np.random.default_rng(4)
        x = rng.standard_normal(dim_shape)
        T = random_spd_field(dim_shape, seed=5)

        seq = peo.DivergenceStencil(dim_shape, max_workers=1)(x, T)
        par = peo.DivergenceStencil(dim_shape, max_workers=max_workers)(x, T)
        assert np.array_equal(seq, par)

    def test_dask_matches_numpy(self):
        import dask.array as da

        dim_shape = (10, 12)
        rng = np.random.default_rng(6)
        x = rng.standard_normal(dim_shape)
        T = random_spd_field(dim_shape, seed=7)

        op = peo.DivergenceStencil(dim_shape, sampling=(1, 2))
        out = op(da.from_array(x, chunks=5), da.from_array(T, chunks=(1, 5, 6)))
        assert isinstance(out, da.Array)
        assert np.allclose(out.compute(), op(x, T))

    def test_out_buffer(self):
        dim_shape = (6, 7)
        rng = np.random.default_rng(8)
        x = rng.standard_normal(dim_shape)
        T = random_spd_field(dim_shape, seed=9)
        op = peo.DivergenceStencil(dim_shape, max_workers=2)

        buffer = np.full(dim_shape, np.nan)
        out = op(x, T, out=buffer)
        assert out is buffer
        assert np.allclose(out, op(x, T))

    def test_precision(self, width):
        dim_shape = (6, 7)
        x = np.random.default_rng(10).standard_normal(dim_shape)
        T = pemt.identity(dim_shape)
        with pert.Precision(width):
            out = peo.DivergenceStencil(dim_shape)(x, T)
        assert out.dtype == width.value

    def test_shape_mismatch(self):
        op = peo.DivergenceStencil((6, 7))
        with pytest.raises(pee.ShapeMismatchError):
            op(np.zeros((7, 6)), pemt.identity((6, 7)))
        with pytest.raises(pee.ShapeMismatchError):
            op(np.zeros((6, 7)), np.zeros((2, 6, 7)))

    @pytest.mark.parametrize("max_workers", [0, -1, "a"])
    def test_invalid_workers(self, max_workers):
        with pytest.raises(pee.ConfigurationError):
            peo.DivergenceStencil((6, 7), max_workers=max_workers)
