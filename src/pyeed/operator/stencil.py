import concurrent.futures as cf
import os

import numpy as np

import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.math.tensor as pemt
import pyeed.operator.filter as pef
import pyeed.runtime as pert
import pyeed.util as peu

__all__ = [
    "DivergenceStencil",
    "stability_bound",
]


def stability_bound(
    sampling: pet.Sampling,
    lambda_max: pet.Real,
    ndim: pet.Integer = None,
) -> float:
    r"""
    Largest stable time step of the explicit scheme.

    .. math::

       \Delta t_{\max} = \frac{\min_{i} h_{i}^{2}}{2 D \lambda_{\max}}

    Parameters
    ----------
    sampling: Real, list[Real]
        Grid spacing.
    lambda_max: Real
        Upper bound on the diffusion-tensor eigenvalues (> 0).
    ndim: Integer
        Number of spatial dimensions D.  Inferred from `sampling` if omitted.
    """
    if ndim is None:
        ndim = len(peu.broadcast_seq(sampling))
    h = peu.sanitize_sampling(sampling, ndim)
    try:
        assert lambda_max > 0
    except Exception:
        raise pee.ConfigurationError(f"lambda_max: expected positive real, got {lambda_max}.")
    return min(h) ** 2 / (2 * ndim * float(lambda_max))


class DivergenceStencil:
    r"""
    Finite-difference approximation of :math:`\text{div}(\mathbf{D} \nabla u)`.

    * Diagonal terms :math:`\partial_{i}(D_{ii} \partial_{i} u)` are discretized with fluxes at half-points, using the
      average of :math:`D_{ii}` at both neighbours.
    * Mixed terms :math:`\partial_{i}(D_{ij} \partial_{j} u)`, :math:`i \ne j`, are discretized with central differences
      in both directions.

    This is the 9-point stencil in 2D, and the 19-point stencil in 3D.

    Boundaries are handled by padding image and tensor field with the shared boundary mode, i.e. zero flux across the
    domain border by default.

    NUMPY/CUPY inputs are processed in slabs along the first axis, which are distributed over a thread pool.  Each slab
    only reads the (frozen) padded inputs and only writes its own slice of the output buffer.  DASK inputs are
    evaluated lazily, i.e. partitioned by chunks.
    """

    def __init__(
        self,
        dim_shape: pet.NDArrayShape,
        sampling: pet.Sampling = 1,
        mode: str = pef.BOUNDARY_MODE,
        max_workers: pet.Integer = None,
    ):
        """
        Parameters
        ----------
        dim_shape: NDArrayShape
            (M1,...,MD) grid shape.
        sampling: Real, list[Real]
            Grid spacing.
        mode: str
            Boundary condition.  (See :py:func:`numpy.pad` for details.)
        max_workers: Integer
            Number of threads used for NUMPY/CUPY inputs.  Defaults to the number of CPUs.  Use 1 for sequential
            execution.
        """
        self.dim_shape = peu.as_canonical_shape(dim_shape)
        D = len(self.dim_shape)
        self.codim_shape = (pemt.ntriu(D), *self.dim_shape)
        self._sampling = peu.sanitize_sampling(sampling, D)
        self._mode = mode

        if max_workers is None:
            max_workers = os.cpu_count() or 1
        try:
            assert int(max_workers) >= 1
            self._max_workers = min(int(max_workers), self.dim_shape[0])
        except Exception:
            raise pee.ConfigurationError(f"max_workers: expected positive integer, got {max_workers}.")

    @property
    def sampling(self) -> tuple[float, ...]:
        return self._sampling

    def _pad(self, arr: pet.NDArray, tensor: pet.NDArray) -> tuple[pet.NDArray, pet.NDArray]:
        xp = peu.get_array_module(arr)
        D = arr.ndim
        up = xp.pad(arr, [(1, 1)] * D, mode=self._mode)
        Dp = xp.pad(tensor, [(0, 0)] + [(1, 1)] * D, mode=self._mode)
        return up, Dp

    def _divergence(self, up: pet.NDArray, Dp: pet.NDArray, lo: int, hi: int, out: pet.NDArray = None):
        # Evaluate div(D grad u) at rows [lo, hi) of the first axis.
        #
        # up: (M1+2,...,MD+2) padded image.
        # Dp: (N_triu, M1+2,...,MD+2) padded packed tensor field.
        # out: (hi-lo, M2,...,MD) buffer to accumulate into, or None.
        D = len(self.dim_shape)
        h = self._sampling

        def window(P, offset: dict[int, int]):
            # View of padded array `P` shifted by `offset` (axis -> +-1) over the evaluation region.
            sl = []
            for ax, n in enumerate(self.dim_shape):
                o = offset.get(ax, 0)
                if ax == 0:
                    sl.append(slice(lo + 1 + o, hi + 1 + o))
                else:
                    sl.append(slice(1 + o, 1 + o + n))
            return P[(Ellipsis, *sl)]

        terms = []
        for i in range(D):
            Dii = Dp[pemt.triu_index(i, i, D)]
            u0, u_p, u_m = window(up, {}), window(up, {i: 1}), window(up, {i: -1})
            d0, d_p, d_m = window(Dii, {}), window(Dii, {i: 1}), window(Dii, {i: -1})
            flux_p = 0.5 * (d_p + d0) * (u_p - u0)
            flux_m = 0.5 * (d0 + d_m) * (u0 - u_m)
            terms.append((flux_p - flux_m) / (h[i] ** 2))

            for j in range(D):
                if j == i:
                    continue
                Dij = Dp[pemt.triu_index(i, j, D)]
                fwd = window(Dij, {i: 1}) * (window(up, {i: 1, j: 1}) - window(up, {i: 1, j: -1}))
                bwd = window(Dij, {i: -1}) * (window(up, {i: -1, j: 1}) - window(up, {i: -1, j: -1}))
                terms.append((fwd - bwd) / (4 * h[i] * h[j]))

        if out is None:
            out = terms[0]
            for t in terms[1:]:
                out = out + t
        else:
            out[...] = 0
            for t in terms:
                out += t
        return out

    def _apply_dask(self, arr: pet.NDArray, tensor: pet.NDArray, out: pet.NDArray = None) -> pet.NDArray:
        peu.check_shape(arr, self.dim_shape, name="image")
        peu.check_shape(tensor, self.codim_shape, name="diffusion tensor")
        up, Dp = self._pad(arr, tensor)
        return self._divergence(up, Dp, 0, self.dim_shape[0])

    @pert.enforce_precision(i=("arr", "tensor"))
    @peu.redirect("arr", DASK=_apply_dask)
    def apply(self, arr: pet.NDArray, tensor: pet.NDArray, out: pet.NDArray = None) -> pet.NDArray:
        r"""
        Evaluate :math:`\text{div}(\mathbf{D} \nabla u)`.

        Parameters
        ----------
        arr: NDArray
            (M1,...,MD) image :math:`u`.
        tensor: NDArray
            (D(D+1)/2, M1,...,MD) packed diffusion tensor field :math:`\mathbf{D}`.
        out: NDArray
            Optional (M1,...,MD) update buffer.  It is cleared, then filled.  Ignored for DASK inputs.

        Returns
        -------
        div: NDArray
            (M1,...,MD) divergence.  (`out` if provided.)
        """
        peu.check_shape(arr, self.dim_shape, name="image")
        peu.check_shape(tensor, self.codim_shape, name="diffusion tensor")
        xp = peu.get_array_module(arr)
        if out is None:
            out = xp.empty_like(arr)
        else:
            peu.check_shape(out, self.dim_shape, name="update buffer")

        up, Dp = self._pad(arr, tensor)
        edges = np.unique(np.linspace(0, self.dim_shape[0], self._max_workers + 1).astype(int))
        slabs = list(zip(edges[:-1], edges[1:]))
        fn = lambda lh: self._divergence(up, Dp, lh[0], lh[1], out=out[lh[0] : lh[1]])

        if len(slabs) > 1:
            with cf.ThreadPoolExecutor(max_workers=len(slabs)) as executor:
                list(executor.map(fn, slabs))  # propagates exceptions
        else:
            fn(slabs[0])
        return out

    def __call__(self, arr: pet.NDArray, tensor: pet.NDArray, out: pet.NDArray = None) -> pet.NDArray:
        return self.apply(arr, tensor, out=out)
