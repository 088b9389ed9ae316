import collections.abc as cabc
import typing as typ

import numpy as np

import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.math.tensor as pemt
import pyeed.runtime as pert
import pyeed.util as peu

try:
    import scipy.ndimage._filters as scif
except ImportError:
    import scipy.ndimage.filters as scif

__all__ = [
    "BOUNDARY_MODE",
    "correlate1d",
    "gaussian_kernel",
    "GaussianFilter",
    "Gradient",
    "StructureTensor",
]

#: Boundary policy shared by all stages (half-sample mirror, i.e. zero-flux).
BOUNDARY_MODE = "symmetric"

ScaleSpec = typ.Union[pet.Real, cabc.Sequence[pet.Real]]


def _to_canonical_form(x, ndim: int, name: str, strict: bool) -> tuple[float, ...]:
    # Broadcast per-axis scales; strict=True forbids 0.
    try:
        x = tuple(map(float, peu.broadcast_seq(x, ndim)))
    except (TypeError, ValueError) as e:
        raise pee.ConfigurationError(f"{name}: expected {ndim} reals, got {x}.") from e
    ok = all((_ > 0) if strict else (_ >= 0) for _ in x)
    if not ok:
        bound = "positive" if strict else "non-negative"
        raise pee.ConfigurationError(f"{name}: expected {bound} values, got {x}.")
    return x


def gaussian_kernel(
    sigma: pet.Real,
    order: pet.Integer = 0,
    truncate: pet.Real = 3.0,
    sampling: pet.Real = 1.0,
) -> np.ndarray:
    """
    1D correlation weights of a sampled Gaussian (derivative).

    Parameters
    ----------
    sigma: Real
        Standard deviation, in physical units.
    order: Integer
        0 for smoothing (weights sum to 1), 1 for the first derivative.
    truncate: Real
        Kernel half-width, in units of `sigma`.
    sampling: Real
        Grid spacing.

    Returns
    -------
    kernel: numpy.ndarray
        (2r+1,) weights, centered.  Derivative weights are scaled by the grid spacing.
    """
    sigma_pix = sigma / sampling
    radius = max(int(truncate * float(sigma_pix) + 0.5), int(order))
    kernel = np.flip(scif._gaussian_kernel1d(sigma_pix, int(order), radius))
    kernel = kernel / sampling**order
    return kernel


def correlate1d(
    arr: pet.NDArray,
    weights: np.ndarray,
    axis: pet.Integer,
    mode: str = BOUNDARY_MODE,
) -> pet.NDArray:
    r"""
    Correlate an array with centered 1D weights along one axis.

    .. math::

       y[n] = \sum_{k=-r}^{r} w[k + r] \, x[n + k]

    Out-of-bound samples are obtained by padding `arr` with :py:func:`numpy.pad`-compatible `mode`, hence the
    function works for all array backends.
    """
    xp = peu.get_array_module(arr)
    axis = axis % arr.ndim
    r = (len(weights) - 1) // 2
    if r == 0:
        return arr * float(weights[0])

    pad_width = [(0, 0)] * arr.ndim
    pad_width[axis] = (r, r)
    padded = xp.pad(arr, pad_width, mode=mode)

    n = arr.shape[axis]
    out = None
    for k, w in enumerate(weights):
        sl = [slice(None)] * arr.ndim
        sl[axis] = slice(k, k + n)
        term = float(w) * padded[tuple(sl)]
        out = term if (out is None) else (out + term)
    return out


class _Filter:
    # Shape-aware callable: (M1,...,MD) -> codim_shape.

    def __init__(self, dim_shape: pet.NDArrayShape, codim_shape: pet.NDArrayShape):
        self.dim_shape = peu.as_canonical_shape(dim_shape)
        self.codim_shape = peu.as_canonical_shape(codim_shape)

    @property
    def dim_rank(self) -> int:
        return len(self.dim_shape)

    def apply(self, arr: pet.NDArray) -> pet.NDArray:
        raise NotImplementedError

    def __call__(self, arr: pet.NDArray) -> pet.NDArray:
        return self.apply(arr)


class GaussianFilter(_Filter):
    """
    Separable, normalized Gaussian smoothing.

    Example
    -------
    .. code-block:: python3

       import numpy as np
       from pyeed.operator import GaussianFilter

       image = np.zeros((11, 11))
       image[5, 5] = 1
       out = GaussianFilter((11, 11), sigma=2)(image)  # out.sum() == 1
    """

    def __init__(
        self,
        dim_shape: pet.NDArrayShape,
        sigma: ScaleSpec = 1.0,
        truncate: ScaleSpec = 3.0,
        sampling: pet.Sampling = 1,
        mode: str = BOUNDARY_MODE,
    ):
        """
        Parameters
        ----------
        dim_shape: NDArrayShape
            (M1,...,MD) grid shape.
        sigma: Real, list[Real]
            Standard deviation(s) of the Gaussian, in physical units.  Axes with ``sigma == 0`` are not smoothed.
        truncate: Real, list[Real]
            Truncate the kernel(s) at this many standard deviations.
        sampling: Real, list[Real]
            Grid spacing.
        mode: str
            Boundary condition.  (See :py:func:`numpy.pad` for details.)
        """
        super().__init__(dim_shape=dim_shape, codim_shape=dim_shape)
        D = self.dim_rank
        self._sigma = _to_canonical_form(sigma, D, "sigma", strict=False)
        self._truncate = _to_canonical_form(truncate, D, "truncate", strict=True)
        self._sampling = peu.sanitize_sampling(sampling, D)
        self._mode = mode

        self._kernel = [None] * D
        for i, (s, t, h) in enumerate(zip(self._sigma, self._truncate, self._sampling)):
            if s > 0:
                self._kernel[i] = gaussian_kernel(s, order=0, truncate=t, sampling=h)

    @pert.enforce_precision(i="arr")
    def apply(self, arr: pet.NDArray) -> pet.NDArray:
        peu.check_shape(arr, self.dim_shape)
        out = arr
        for axis, kernel in enumerate(self._kernel):
            if kernel is not None:
                out = correlate1d(out, kernel, axis=axis, mode=self._mode)
        return out


class Gradient(_Filter):
    r"""
    Gradient of a scalar field: (M1,...,MD) -> (D, M1,...,MD).

    * ``sigma > 0``: Gaussian-derivative filters, i.e. :math:`\partial_{i} (G_{\sigma} * f)`;
    * ``sigma == 0``: central finite differences :math:`(f[n+1] - f[n-1]) / 2h`.
    """

    def __init__(
        self,
        dim_shape: pet.NDArrayShape,
        sigma: ScaleSpec = 0,
        truncate: ScaleSpec = 3.0,
        sampling: pet.Sampling = 1,
        mode: str = BOUNDARY_MODE,
    ):
        dim_shape = peu.as_canonical_shape(dim_shape)
        super().__init__(dim_shape=dim_shape, codim_shape=(len(dim_shape), *dim_shape))
        D = self.dim_rank
        sigma = _to_canonical_form(sigma, D, "sigma", strict=False)
        truncate = _to_canonical_form(truncate, D, "truncate", strict=True)
        self._sampling = peu.sanitize_sampling(sampling, D)
        self._mode = mode

        # _kernel[i][j]: weights applied along axis j to compute the i-th partial derivative.
        self._kernel = [[None] * D for _ in range(D)]
        for i in range(D):
            for j, (s, t, h) in enumerate(zip(sigma, truncate, self._sampling)):
                order = int(i == j)
                if s > 0:
                    self._kernel[i][j] = gaussian_kernel(s, order=order, truncate=t, sampling=h)
                elif order == 1:
                    self._kernel[i][j] = np.r_[-0.5, 0, 0.5] / h

    @pert.enforce_precision(i="arr")
    def apply(self, arr: pet.NDArray) -> pet.NDArray:
        peu.check_shape(arr, self.dim_shape)
        xp = peu.get_array_module(arr)
        grad = []
        for kernels in self._kernel:
            g = arr
            for axis, kernel in enumerate(kernels):
                if kernel is not None:
                    g = correlate1d(g, kernel, axis=axis, mode=self._mode)
            grad.append(g)
        return xp.stack(grad, axis=0)


class StructureTensor(_Filter):
    r"""
    Structure tensor of a scalar field.

    .. math::

       \mathbf{T}_{\sigma}(f) = G_{\sigma} * \left( \nabla f_{\rho} \nabla f_{\rho}^{T} \right),

    where :math:`\nabla f_{\rho}` denotes the gradient of :math:`f` computed at derivative scale :math:`\rho`
    (`gradient_sigma`), and :math:`G_{\sigma}` is a Gaussian of integration scale :math:`\sigma`.

    The output is a packed symmetric tensor field of shape (D(D+1)/2, M1,...,MD).  (See :py:mod:`pyeed.math.tensor`.)
    Every component is symmetric positive semi-definite by construction.

    Example
    -------
    .. code-block:: python3

       import numpy as np
       from pyeed.operator import StructureTensor

       image = np.zeros((32, 32))
       image[:, 16:] = 1                              # vertical edge
       S = StructureTensor((32, 32), sigma=1)(image)  # (3, 32, 32): (S_00, S_01, S_11)
    """

    def __init__(
        self,
        dim_shape: pet.NDArrayShape,
        sigma: ScaleSpec = 1.0,
        gradient_sigma: ScaleSpec = None,
        truncate: ScaleSpec = 3.0,
        sampling: pet.Sampling = 1,
        mode: str = BOUNDARY_MODE,
    ):
        """
        Parameters
        ----------
        dim_shape: NDArrayShape
            (M1,...,MD) grid shape.
        sigma: Real, list[Real]
            Integration scale (> 0), in physical units.
        gradient_sigma: Real, list[Real]
            Derivative scale (>= 0), in physical units.  Defaults to ``sigma / 2``.  Use 0 for central differences.
        truncate: Real, list[Real]
            Truncate Gaussian kernels at this many standard deviations.
        sampling: Real, list[Real]
            Grid spacing.
        mode: str
            Boundary condition.  (See :py:func:`numpy.pad` for details.)
        """
        dim_shape = peu.as_canonical_shape(dim_shape)
        D = len(dim_shape)
        super().__init__(dim_shape=dim_shape, codim_shape=(pemt.ntriu(D), *dim_shape))

        sigma = _to_canonical_form(sigma, D, "sigma", strict=True)
        if gradient_sigma is None:
            gradient_sigma = tuple(_ / 2 for _ in sigma)
        self.directions = pemt.triu_pairs(D)
        self.grad = Gradient(
            dim_shape=dim_shape,
            sigma=gradient_sigma,
            truncate=truncate,
            sampling=sampling,
            mode=mode,
        )
        self.smooth = GaussianFilter(
            dim_shape=dim_shape,
            sigma=sigma,
            truncate=truncate,
            sampling=sampling,
            mode=mode,
        )

    @pert.enforce_precision(i="arr")
    def apply(self, arr: pet.NDArray) -> pet.NDArray:
        peu.check_shape(arr, self.dim_shape)
        xp = peu.get_array_module(arr)
        grad = self.grad(arr)
        return xp.stack(
            [self.smooth(grad[i] * grad[j]) for (i, j) in self.directions],
            axis=0,
        )
