import warnings

import numpy as np
import pytest

import pyeed.info.error as pee
import pyeed.info.warning as pew
import pyeed.math.linalg as peml
import pyeed.math.tensor as pemt
import pyeed.operator as peo
import pyeed.runtime as pert
import pyeed_tests.conftest as ct


def random_psd_field(dim_shape, seed=0, scale=1.0) -> np.ndarray:
    # (N_triu, M1,...,MD) packed PSD tensors.
    rng = np.random.default_rng(seed)
    D = len(dim_shape)
    G = rng.standard_normal((*dim_shape, D, D)) * scale
    S = G @ np.swapaxes(G, -1, -2)
    return pemt.to_packed(S)


class TestWeickertConstant:
    def test_m4(self):
        assert np.isclose(peo.weickert_constant(4), peo.WEICKERT_C4, rtol=1e-4)

    @pytest.mark.parametrize("m", [2, 3, 8])
    def test_root(self, m):
        c = peo.weickert_constant(m)
        assert np.isclose(1 - np.exp(-c) * (1 + 2 * m * c), 0, atol=1e-10)

    def test_invalid(self):
        with pytest.raises(pee.ConfigurationError):
            peo.weickert_constant(0)


class TestEdgeEnhancingDiffusivity:
    @pytest.fixture
    def g(self) -> peo.EdgeEnhancingDiffusivity:
        return peo.EdgeEnhancingDiffusivity(threshold=2)

    def test_zero(self, xp, g):
        assert ct.allclose(g(xp.zeros(3)), 1, np.float64)

    def test_at_threshold(self, g):
        assert np.isclose(g(np.r_[2.0])[0], 1 - np.exp(-peo.WEICKERT_C4))

    def test_range_monotone(self, xp, width, g):
        xi = np.r_[0, np.logspace(-3, 8, 200)]
        with pert.Precision(width):
            out = g(xp.asarray(xi))
            assert out.dtype == width.value
        out = ct.to_numpy(out)
        assert np.all(out > 0)
        assert np.all(out <= 1)
        assert np.all(np.diff(out) <= 0)

    def test_no_overflow(self, g):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            out = g(np.r_[1e-300, 1e-30, 1e300])
        assert np.allclose(out[:2], 1)
        assert out[2] == np.finfo(np.float64).eps

    def test_non_finite(self, g):
        out = g(np.r_[np.nan, -1.0])
        assert np.all(out == 1)

    def test_other_exponent(self):
        g = peo.EdgeEnhancingDiffusivity(threshold=1, m=2)
        assert g.cm == peo.weickert_constant(2)
        assert np.isclose(g(np.r_[1.0])[0], 1 - np.exp(-g.cm))

    @pytest.mark.parametrize("threshold", [0, -1, "a"])
    def test_invalid_threshold(self, threshold):
        with pytest.raises(pee.ConfigurationError):
            peo.EdgeEnhancingDiffusivity(threshold=threshold)


class TestDiffusionCoeffEdgeEnhancing:
    dim_shape = (6, 7)

    @pytest.fixture
    def coeff(self) -> peo.DiffusionCoeffEdgeEnhancing:
        st = peo.StructureTensor(self.dim_shape, sigma=1)
        return peo.DiffusionCoeffEdgeEnhancing(self.dim_shape, structure_tensor=st, contrast=2, threshold=0.5)

    def test_eigenvectors_preserved(self, xp, coeff):
        S = random_psd_field(self.dim_shape, seed=1)
        field = coeff.from_structure(ct.chunk_array(xp.asarray(S)))
        T = ct.to_numpy(pemt.to_full(field.tensor))
        mu = ct.to_numpy(field.eigvals)

        w, V = peml.eigh(pemt.to_full(S))
        assert np.allclose(T @ V, V * mu[..., np.newaxis, :])

        # only the dominant eigenvalue is damped.
        dominant = np.argmax(w, axis=-1)[..., np.newaxis] == np.arange(2)
        g = coeff.diffusivity(np.max(w, axis=-1))
        assert np.allclose(mu[dominant], 2 * g.ravel())
        assert np.allclose(mu[~dominant], 2)

    def test_eigvals_bounds(self, coeff):
        S = random_psd_field(self.dim_shape, seed=2, scale=10)
        field = coeff.from_structure(S)
        assert np.all(field.eigvals > 0)
        assert np.all(field.eigvals <= coeff.contrast)
        assert field.lambda_max <= coeff.contrast
        assert field.n_fallback == 0

    def test_symmetric_psd(self, coeff):
        S = random_psd_field(self.dim_shape, seed=3)
        T = pemt.to_full(coeff.from_structure(S).tensor)
        assert np.allclose(T, np.swapaxes(T, -1, -2))
        assert np.all(np.linalg.eigvalsh(T) > 0)

    def test_flat_region_isotropic(self, xp, coeff):
        S = xp.zeros((3, *self.dim_shape))
        field = coeff.from_structure(S)
        eye = pemt.identity(self.dim_shape, scale=2)
        assert ct.allclose(field.tensor, eye, np.float64)
        assert np.isclose(field.lambda_max, 2)

    def test_fallback(self, coeff):
        S = random_psd_field(self.dim_shape, seed=4)
        S[:, 2, 3] = np.nan
        with pytest.warns(pew.NumericWarning):
            field = coeff.from_structure(S)

        assert field.n_fallback == 1
        T = pemt.to_full(field.tensor)
        assert np.allclose(T[2, 3], 2 * np.eye(2))
        assert np.all(np.isfinite(field.tensor))
        assert np.isfinite(field.lambda_max)

    def test_apply(self, coeff):
        image = np.zeros(self.dim_shape)
        image[:, 4:] = 10
        field = coeff(image)
        assert field.tensor.shape == (3, *self.dim_shape)
        assert field.eigvals.shape == (*self.dim_shape, 2)
        # strong vertical edge: diffusion across it (axis 1) is suppressed.
        T = pemt.to_full(field.tensor)
        assert T[3, 4, 1, 1] < 1e-3 * T[3, 4, 0, 0]

    def test_precision(self, width, coeff):
        S = random_psd_field(self.dim_shape, seed=5)
        with pert.Precision(width):
            field = coeff.from_structure(S)
        assert field.tensor.dtype == width.value
        assert field.eigvals.dtype == width.value

    def test_shape_mismatch(self, coeff):
        with pytest.raises(pee.ShapeMismatchError):
            coeff.from_structure(np.zeros((3, 7, 6)))

    def test_structure_tensor_mismatch(self):
        st = peo.StructureTensor((5, 5), sigma=1)
        with pytest.raises(pee.ShapeMismatchError):
            peo.DiffusionCoeffEdgeEnhancing((5, 6), structure_tensor=st)

    @pytest.mark.parametrize("contrast", [0, -2])
    def test_invalid_contrast(self, contrast):
        with pytest.raises(pee.ConfigurationError):
            peo.DiffusionCoeffEdgeEnhancing((5, 5), contrast=contrast)

    @pytest.mark.parametrize("order", list(peml.EigenOrder))
    def test_order_independent(self, order):
        S = random_psd_field(self.dim_shape, seed=6)
        ref = peo.DiffusionCoeffEdgeEnhancing(self.dim_shape, contrast=2, threshold=0.5)
        op = peo.DiffusionCoeffEdgeEnhancing(self.dim_shape, contrast=2, threshold=0.5, order=order)
        assert np.allclose(op.from_structure(S).tensor, ref.from_structure(S).tensor)


class TestPrincipalDirection:
    def test_value(self, xp):
        # S = diag(1, 4) everywhere: dominant direction along axis 1.
        S = xp.asarray(np.stack([np.full((3, 4), 1.0), np.zeros((3, 4)), np.full((3, 4), 4.0)]))
        lam, v = peo.principal_direction(S)
        assert ct.allclose(lam, 4, np.float64)
        assert ct.allclose(np.abs(ct.to_numpy(v[1])), 1, np.float64)
        assert ct.allclose(v[0], 0, np.float64)

    def test_flat(self):
        S = np.zeros((6, 2, 2, 2))
        lam, v = peo.principal_direction(S)
        assert v.shape == (3, 2, 2, 2)
        assert np.all(v == 0)

    def test_unit_norm(self):
        S = random_psd_field((5, 5), seed=7)
        lam, v = peo.principal_direction(S)
        assert np.allclose(np.linalg.norm(v, axis=0), 1)

        w, _ = peml.eigh(pemt.to_full(S))
        assert np.allclose(lam, w[..., -1])
