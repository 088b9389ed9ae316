import collections
import functools
import warnings

import numpy as np
import scipy.optimize as sciop

import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.info.warning as pew
import pyeed.math.linalg as peml
import pyeed.math.tensor as pemt
import pyeed.operator.filter as pef
import pyeed.runtime as pert
import pyeed.util as peu

__all__ = [
    "DiffusionCoeffEdgeEnhancing",
    "DiffusionTensorField",
    "EdgeEnhancingDiffusivity",
    "principal_direction",
    "weickert_constant",
    "WEICKERT_C4",
]

#: Normalization constant :math:`C_{m}` of the edge-enhancing diffusivity for :math:`m = 4`.
WEICKERT_C4 = 3.31488

DiffusionTensorField = collections.namedtuple(
    "DiffusionTensorField",
    [
        "tensor",  # (D(D+1)/2, M1,...,MD) packed diffusion tensors
        "eigvals",  # (M1,...,MD, D) diffusion-tensor eigenvalues
        "lambda_max",  # largest diffusion-tensor eigenvalue over the field
        "n_fallback",  # number of voxels which fell back to the isotropic tensor
    ],
)


@functools.cache
def weickert_constant(m: pet.Integer = 4) -> float:
    r"""
    Normalization constant :math:`C_{m}` of the edge-enhancing diffusivity.

    :math:`C_{m}` is the root of :math:`1 - e^{-c} (1 + 2mc)`, i.e. the value for which the flux :math:`s \, g(s^{2})`
    is increasing for :math:`s < C` and decreasing for :math:`s > C`.  (Weickert, Anisotropic Diffusion in Image
    Processing, 1998.)
    """
    try:
        assert int(m) >= 1
        m = int(m)
    except Exception:
        raise pee.ConfigurationError(f"m: expected positive integer, got {m}.")

    func = lambda c: 1 - np.exp(-c) * (1 + 2 * m * c)
    return float(sciop.brentq(func, 1e-2, 100))


class EdgeEnhancingDiffusivity:
    r"""
    Edge-enhancing diffusivity function.

    .. math::

       g(\xi) =
       \begin{cases}
          1 & \xi \le 0, \\
          1 - \exp\left( -C_{m} / (\xi / C)^{m} \right) & \xi > 0,
       \end{cases}

    where :math:`C > 0` is the edge threshold.  Diffusion across an edge is suppressed once :math:`\xi \gg C`.

    Properties:

    * :math:`g(\xi) \in (0, 1]`: values are floored at the working-precision `eps`;
    * :math:`g(0) = 1`;
    * :math:`g` is non-increasing.

    Non-finite inputs map to 1.
    """

    # exponent value beyond which 1 - exp(-x) == 1 in floating point.
    _EXP_CAP = 50

    def __init__(self, threshold: pet.Real = 1, m: pet.Integer = 4):
        """
        Parameters
        ----------
        threshold: Real
            Edge threshold :math:`C > 0`.
        m: Integer
            Exponent of the diffusivity.
        """
        try:
            assert threshold > 0
            self._threshold = float(threshold)
        except Exception:
            raise pee.ConfigurationError(f"threshold: expected positive real, got {threshold}.")
        self._m = int(m)
        self._cm = WEICKERT_C4 if (self._m == 4) else weickert_constant(self._m)

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def cm(self) -> float:
        return self._cm

    @pert.enforce_precision(i="xi")
    def __call__(self, xi: pet.NDArray) -> pet.NDArray:
        xp = peu.get_array_module(xi)
        eps = np.finfo(xi.dtype).eps

        # 1/q is capped such that C_m q^m <= _EXP_CAP: no overflow, and g == 1 above the cap anyway.
        q_cap = (self._EXP_CAP / self._cm) ** (1 / self._m)
        ratio = xi / self._threshold
        q = 1 / xp.maximum(ratio, 1 / q_cap)
        g = -xp.expm1(-self._cm * (q**self._m))

        g = xp.where(ratio > 0, g, 1)  # also catches NaNs
        g = xp.clip(g, eps, 1)
        return g


class DiffusionCoeffEdgeEnhancing:
    r"""
    Edge-enhancing diffusion tensor field.

    Let :math:`S = \sum_{k} e_{k} \mathbf{v}_{k} \mathbf{v}_{k}^{T}` be the eigen-decomposition of the structure tensor
    at some voxel, and :math:`\xi = \max_{k} e_{k}` the edge indicator.  The diffusion tensor at that voxel is

    .. math::

       D = \sum_{k} \mu_{k} \mathbf{v}_{k} \mathbf{v}_{k}^{T},
       \qquad
       \mu_{k} =
       \begin{cases}
          \lambda_{E} \, g(\xi) & \mathbf{v}_{k} \text{ is the dominant eigenvector (i.e. across the edge)}, \\
          \lambda_{E} & \text{otherwise (i.e. along the edge)},
       \end{cases}

    where :math:`g` is the :py:class:`~pyeed.operator.EdgeEnhancingDiffusivity` and :math:`\lambda_{E} > 0` the
    contrast parameter.  All diffusion-tensor eigenvalues therefore lie in :math:`(0, \lambda_{E}]`.

    Voxels whose eigen-decomposition failed get the isotropic tensor :math:`\lambda_{E} I`: they are counted and
    reported via :py:class:`~pyeed.info.warning.NumericWarning`, but never abort the computation.

    Example
    -------
    .. code-block:: python3

       import numpy as np
       from pyeed.operator import DiffusionCoeffEdgeEnhancing, StructureTensor

       image = np.random.default_rng(0).normal(size=(32, 32))
       st = StructureTensor((32, 32), sigma=1)
       coeff = DiffusionCoeffEdgeEnhancing((32, 32), structure_tensor=st, contrast=1, threshold=0.5)
       field = coeff(image)  # field.tensor: (3, 32, 32)
    """

    def __init__(
        self,
        dim_shape: pet.NDArrayShape,
        structure_tensor: pef.StructureTensor = None,
        contrast: pet.Real = 1,
        threshold: pet.Real = 1,
        order: peml.EigenOrder = peml.EigenOrder.VALUE,
        m: pet.Integer = 4,
    ):
        r"""
        Parameters
        ----------
        dim_shape: NDArrayShape
            (M1,...,MD) grid shape.
        structure_tensor: StructureTensor
            Structure tensor operator.  Defaults to :py:class:`~pyeed.operator.StructureTensor` with unit scale.
        contrast: Real
            Contrast parameter :math:`\lambda_{E} > 0`: maximal diffusivity.
        threshold: Real
            Edge threshold :math:`C > 0` of the diffusivity.
        order: EigenOrder
            Ordering policy of the structure-tensor eigenpairs.
        m: Integer
            Exponent of the diffusivity.
        """
        self.dim_shape = peu.as_canonical_shape(dim_shape)
        if structure_tensor is None:
            structure_tensor = pef.StructureTensor(self.dim_shape)
        if structure_tensor.dim_shape != self.dim_shape:
            msg = f"structure_tensor.dim_shape={structure_tensor.dim_shape} inconsistent with dim_shape={self.dim_shape}."
            raise pee.ShapeMismatchError(msg)
        self.structure_tensor = structure_tensor

        try:
            assert contrast > 0
            self._contrast = float(contrast)
        except Exception:
            raise pee.ConfigurationError(f"contrast: expected positive real, got {contrast}.")
        self.diffusivity = EdgeEnhancingDiffusivity(threshold=threshold, m=m)
        self._order = peml.EigenOrder(order)

    @property
    def contrast(self) -> float:
        return self._contrast

    @property
    def ndim(self) -> int:
        return len(self.dim_shape)

    def _eigendecompose_struct_tensor(self, S: pet.NDArray) -> tuple[pet.NDArray, pet.NDArray]:
        # (N_triu, M1,...,MD) -> (M1,...,MD, D), (M1,...,MD, D, D)
        return peml.eigh(pemt.to_full(S), order=self._order)

    def _compute_intensities(self, w: pet.NDArray) -> pet.NDArray:
        # Edge-enhancing rule: only the dominant eigenvector is damped.
        # The dominant eigenvector is located via argmax: valid for any ordering policy.
        xp = peu.get_array_module(w)
        xi = xp.max(w, axis=-1)  # (M1,...,MD)
        dominant = xp.argmax(w, axis=-1)[..., np.newaxis] == xp.arange(self.ndim)  # (M1,...,MD, D)
        mu_dom = self._contrast * self.diffusivity(xi)
        mu = xp.where(dominant, mu_dom[..., np.newaxis], self._contrast)
        return mu

    def _assemble_tensors(self, mu: pet.NDArray, V: pet.NDArray) -> pet.NDArray:
        return pemt.to_packed(peml.reconstruct(mu, V))

    @pert.enforce_precision(i="S")
    def from_structure(self, S: pet.NDArray) -> DiffusionTensorField:
        """
        Build the diffusion tensor field from a (pre-computed) structure tensor field.

        Parameters
        ----------
        S: NDArray
            (D(D+1)/2, M1,...,MD) packed structure tensor field.

        Returns
        -------
        field: DiffusionTensorField
        """
        peu.check_shape(S, self.structure_tensor.codim_shape, name="structure tensor")
        xp = peu.get_array_module(S)

        w, V = self._eigendecompose_struct_tensor(S)
        ok = xp.all(xp.isfinite(w), axis=-1)  # (M1,...,MD)

        mu = self._compute_intensities(w)
        mu = xp.where(ok[..., np.newaxis], mu, self._contrast)
        tensor = self._assemble_tensors(mu, V)
        eye = pemt.identity(self.dim_shape, scale=self._contrast, like=S[0])
        tensor = xp.where(ok, tensor, eye)

        tensor, mu, ok = peu.compute(tensor, mu, ok, mode="persist")
        n_fallback, lambda_max = peu.compute(xp.sum(~ok), xp.max(mu))
        n_fallback, lambda_max = int(n_fallback), float(lambda_max)
        if n_fallback > 0:
            msg = f"Eigen-decomposition failed at {n_fallback} voxel(s): isotropic tensor used there."
            warnings.warn(msg, pew.NumericWarning)

        return DiffusionTensorField(
            tensor=tensor,
            eigvals=mu,
            lambda_max=lambda_max,
            n_fallback=n_fallback,
        )

    def apply(self, arr: pet.NDArray) -> DiffusionTensorField:
        """
        Build the diffusion tensor field of an image.

        Parameters
        ----------
        arr: NDArray
            (M1,...,MD) image.

        Returns
        -------
        field: DiffusionTensorField
        """
        return self.from_structure(self.structure_tensor(arr))

    def __call__(self, arr: pet.NDArray) -> DiffusionTensorField:
        return self.apply(arr)


@pert.enforce_precision(i="S")
def principal_direction(
    S: pet.NDArray,
    order: peml.EigenOrder = peml.EigenOrder.VALUE,
    tol: pet.Real = 1e-4,
) -> tuple[pet.NDArray, pet.NDArray]:
    """
    Dominant eigenpair of a structure tensor field.

    Parameters
    ----------
    S: NDArray
        (D(D+1)/2, M1,...,MD) packed structure tensor field.
    order: EigenOrder
        Ordering policy used by the eigen-solver.  Does not affect the output: the dominant eigenpair is selected by
        value.
    tol: Real
        Voxels whose dominant eigenvalue is not larger than `tol` (flat regions) or whose decomposition failed get a
        null direction.

    Returns
    -------
    lam: NDArray
        (M1,...,MD) dominant eigenvalue.
    v: NDArray
        (D, M1,...,MD) unit eigenvector associated with `lam`, i.e. the local gradient orientation.
    """
    xp = peu.get_array_module(S)
    w, V = peml.eigh(pemt.to_full(S), order=order)
    D = w.shape[-1]

    onehot = xp.argmax(w, axis=-1)[..., np.newaxis] == xp.arange(D)
    lam = xp.sum(xp.where(onehot, w, 0), axis=-1)
    v = xp.sum(xp.where(onehot[..., np.newaxis, :], V, 0), axis=-1)  # (M1,...,MD, D)

    valid = lam > tol  # also excludes NaNs
    v = xp.where(valid[..., np.newaxis], v, 0)
    return lam, xp.moveaxis(v, -1, 0)
