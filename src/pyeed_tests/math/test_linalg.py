import numpy as np
import pytest

import pyeed.info.error as pee
import pyeed.math.linalg as peml
import pyeed.runtime as pert
import pyeed_tests.conftest as ct


def random_symmetric(shape, ndim, seed=0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    A = rng.standard_normal((*shape, ndim, ndim))
    return (A + np.swapaxes(A, -1, -2)) / 2


def to_xp(xp, A):
    x = xp.asarray(A)
    return ct.chunk_array(x)


class TestEigh:
    @pytest.mark.parametrize("ndim", [1, 2, 3, 4])
    @pytest.mark.parametrize("order", [peml.EigenOrder.VALUE, peml.EigenOrder.MAGNITUDE, peml.EigenOrder.NONE])
    def test_reconstruct(self, xp, width, ndim, order):
        A = random_symmetric((5, 4), ndim)
        with pert.Precision(width):
            w, V = peml.eigh(to_xp(xp, A), order=order)
            B = peml.reconstruct(w, V)
        assert w.shape == (5, 4, ndim)
        assert V.shape == (5, 4, ndim, ndim)
        assert w.dtype == width.value
        assert ct.allclose(B, A, width.value)

    def test_orthonormal(self, xp):
        A = random_symmetric((6,), 3, seed=1)
        _, V = peml.eigh(to_xp(xp, A))
        V = ct.to_numpy(V)
        VtV = np.swapaxes(V, -1, -2) @ V
        assert np.allclose(VtV, np.eye(3), atol=1e-10)

    def test_matches_numpy(self):
        A = random_symmetric((10,), 3, seed=2)
        w, V = peml.eigh(A, order=peml.EigenOrder.VALUE)
        w_gt, V_gt = np.linalg.eigh(A)
        assert np.allclose(w, w_gt)
        # eigenvectors are defined up to sign
        dot = np.abs(np.sum(V * V_gt, axis=-2))
        assert np.allclose(dot, 1)

    def test_eigenpairs(self):
        A = random_symmetric((7,), 2, seed=3)
        w, V = peml.eigh(A)
        AV = A @ V
        assert np.allclose(AV, V * w[..., np.newaxis, :])

    @pytest.mark.parametrize(
        ["order", "key"],
        [
            [peml.EigenOrder.VALUE, lambda w: w],
            [peml.EigenOrder.MAGNITUDE, lambda w: np.abs(w)],
        ],
    )
    def test_order(self, xp, order, key):
        A = random_symmetric((20,), 3, seed=4)
        w, _ = peml.eigh(to_xp(xp, A), order=order)
        k = key(ct.to_numpy(w))
        assert np.all(np.diff(k, axis=-1) >= 0)

    def test_diagonal_native_order(self):
        # Already-diagonal matrices need no rotation: solver order == diagonal order.
        A = np.diag([3.0, -5.0, 1.0])
        w, V = peml.eigh(A, order=peml.EigenOrder.NONE)
        assert np.allclose(w, [3, -5, 1])
        assert np.allclose(V, np.eye(3))

    def test_zero_matrix(self, xp):
        A = np.zeros((4, 2, 2))
        w, V = peml.eigh(to_xp(xp, A))
        assert ct.allclose(w, 0, np.float64)
        assert ct.allclose(V, np.broadcast_to(np.eye(2), (4, 2, 2)), np.float64)

    def test_non_finite_isolated(self, xp):
        A = random_symmetric((4,), 2, seed=5)
        A[1, 0, 1] = A[1, 1, 0] = np.nan
        A[2, 0, 0] = np.inf
        w, V = peml.eigh(to_xp(xp, A))
        w, V = ct.to_numpy(w), ct.to_numpy(V)

        ok = np.all(np.isfinite(w), axis=-1)
        assert ok.tolist() == [True, False, False, True]
        assert np.all(np.isnan(V[~ok]))
        B = ct.to_numpy(peml.reconstruct(w[ok], V[ok]))
        assert np.allclose(B, A[ok])

    def test_not_converged(self):
        A = random_symmetric((3,), 4, seed=6)
        w, _ = peml.eigh(A, max_sweeps=1)
        # 1 sweep is not enough for dense 4x4 matrices: failure is reported per matrix.
        assert np.all(np.isnan(w))

    def test_invalid_shape(self):
        with pytest.raises(pee.ShapeMismatchError):
            peml.eigh(np.zeros((3, 2, 3)))

    def test_invalid_sweeps(self):
        with pytest.raises(pee.ConfigurationError):
            peml.eigh(np.eye(2), max_sweeps=0)


class TestReorder:
    def test_pure_permutation(self, xp):
        # Re-ordering VALUE -> MAGNITUDE must be identical to a direct MAGNITUDE decomposition.
        A = random_symmetric((10,), 3, seed=7)
        w_v, V_v = peml.eigh(to_xp(xp, A), order=peml.EigenOrder.VALUE)
        w_m, V_m = peml.eigh(to_xp(xp, A), order=peml.EigenOrder.MAGNITUDE)
        w_r, V_r = peml.reorder(w_v, V_v, peml.EigenOrder.MAGNITUDE)

        assert np.array_equal(ct.to_numpy(w_r), ct.to_numpy(w_m))
        assert np.array_equal(ct.to_numpy(V_r), ct.to_numpy(V_m))

    def test_pairs_preserved(self):
        A = random_symmetric((10,), 3, seed=8)
        w, V = peml.eigh(A, order=peml.EigenOrder.VALUE)
        w2, V2 = peml.reorder(w, V, peml.EigenOrder.MAGNITUDE)

        assert np.allclose(np.sort(w2, axis=-1), w)
        assert np.allclose(A @ V2, V2 * w2[..., np.newaxis, :])

    def test_none_is_noop(self):
        A = random_symmetric((3,), 2, seed=9)
        w, V = peml.eigh(A)
        w2, V2 = peml.reorder(w, V, peml.EigenOrder.NONE)
        assert w2 is w
        assert V2 is V

    def test_stable_ties(self):
        w = np.array([[1.0, -1.0, 0.5]])
        V = np.eye(3)[np.newaxis]
        w2, V2 = peml.reorder(w, V, peml.EigenOrder.MAGNITUDE)
        assert w2.tolist() == [[0.5, 1.0, -1.0]]
        assert np.array_equal(V2[0], np.eye(3)[:, [2, 0, 1]])


class TestSymEig:
    def test_value(self):
        A = np.array([[2.0, 1.0], [1.0, 2.0]])
        w, V = peml.sym_eig(A)
        assert np.allclose(w, [1, 3])
        assert np.allclose(np.abs(V[:, 1]), [1 / np.sqrt(2)] * 2)

    def test_not_square(self):
        with pytest.raises(pee.ConfigurationError):
            peml.sym_eig(np.zeros((2, 3)))

    def test_failure(self):
        A = np.array([[1.0, np.nan], [np.nan, 1.0]])
        with pytest.raises(pee.NumericError):
            peml.sym_eig(A)

    def test_failure_is_arithmetic_error(self):
        A = np.array([[np.inf, 0], [0, 1.0]])
        with pytest.raises(ArithmeticError):
            peml.sym_eig(A)
