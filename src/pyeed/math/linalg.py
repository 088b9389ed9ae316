import enum

import numpy as np

import pyeed.info.deps as ped
import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.runtime as pert
import pyeed.util as peu

__all__ = [
    "EigenOrder",
    "eigh",
    "reconstruct",
    "reorder",
    "sym_eig",
]


@enum.unique
class EigenOrder(enum.Enum):
    """
    Ordering policy of eigenpairs.

    * VALUE: ascending eigenvalues.
    * MAGNITUDE: ascending absolute eigenvalues.
    * NONE: order in which the solver produced them.

    Ties always keep the solver's order, i.e. sorting is stable.
    """

    VALUE = enum.auto()
    MAGNITUDE = enum.auto()
    NONE = enum.auto()


#: Convergence threshold on the off-diagonal Frobenius norm, relative to :math:`\|A\|_{F}` and in units of `eps`.
JACOBI_TOL = 100


def _sort_key(w: pet.NDArray, order: EigenOrder) -> pet.NDArray:
    xp = peu.get_array_module(w)
    if order == EigenOrder.VALUE:
        return w
    elif order == EigenOrder.MAGNITUDE:
        return xp.abs(w)
    else:
        raise ValueError(f"No sort key for {order}.")


def _reorder(w: pet.NDArray, V: pet.NDArray, order: EigenOrder) -> tuple[pet.NDArray, pet.NDArray]:
    # NUMPY/CUPY-only.
    if order == EigenOrder.NONE:
        return w, V
    xp = peu.get_array_module(w)
    idx = xp.argsort(_sort_key(w, order), axis=-1, kind="stable")  # (..., D)
    w = xp.take_along_axis(w, idx, axis=-1)
    V = xp.take_along_axis(V, idx[..., np.newaxis, :], axis=-1)
    return w, V


def _jacobi(A: pet.NDArray, max_sweeps: int) -> tuple[pet.NDArray, pet.NDArray]:
    # Batched cyclic Jacobi eigen-solver (NUMPY/CUPY).
    #
    # Parameters
    # ----------
    # A: (N, D, D) symmetric matrices. [modified in-place]
    #
    # Returns
    # -------
    # w: (N, D) eigenvalues, solver order.  NaN if matrix did not converge.
    # V: (N, D, D) eigenvectors as columns.  NaN if matrix did not converge.
    xp = peu.get_array_module(A)
    N, D = A.shape[0], A.shape[-1]
    eps = np.finfo(A.dtype).eps

    finite = xp.all(xp.isfinite(A), axis=(-2, -1))  # (N,)
    A[~finite] = 0
    A += xp.swapaxes(A, -1, -2)
    A *= 0.5
    V = xp.zeros_like(A)
    for i in range(D):
        V[:, i, i] = 1
    off_mask = xp.asarray(1 - np.eye(D), dtype=A.dtype)

    def off_norm(B):
        return xp.sqrt(xp.sum((B * off_mask) ** 2, axis=(-2, -1)))

    tol = JACOBI_TOL * eps * xp.sqrt(xp.sum(A**2, axis=(-2, -1)))  # (N,)
    converged = off_norm(A) <= tol
    for _ in range(max_sweeps):
        if bool(xp.all(converged)):
            break
        for p in range(D - 1):
            for q in range(p + 1, D):
                app, aqq, apq = A[:, p, p], A[:, q, q], A[:, p, q]

                # pairs which are already small enough are left untouched: (c, s) = (1, 0).
                active = xp.abs(apq) > (tol / D)
                apq_safe = xp.where(active, apq, 1)
                theta = (aqq - app) / (2 * apq_safe)
                sign = xp.where(theta >= 0, 1, -1).astype(A.dtype)
                t = sign / (xp.abs(theta) + xp.hypot(theta, 1))
                t = xp.where(active, t, 0)
                c = 1 / xp.sqrt(t * t + 1)
                s = t * c

                c1, s1 = c[:, np.newaxis], s[:, np.newaxis]
                for B in (A, V):  # right-multiplication by rotation
                    Bp, Bq = B[:, :, p].copy(), B[:, :, q].copy()
                    B[:, :, p] = c1 * Bp - s1 * Bq
                    B[:, :, q] = s1 * Bp + c1 * Bq
                Ap, Aq = A[:, p, :].copy(), A[:, q, :].copy()  # left-multiplication by transposed rotation
                A[:, p, :] = c1 * Ap - s1 * Aq
                A[:, q, :] = s1 * Ap + c1 * Aq
                A[:, p, q] = xp.where(active, 0, A[:, p, q])
                A[:, q, p] = A[:, p, q]
        converged = off_norm(A) <= tol

    ok = finite & converged
    w = xp.diagonal(A, axis1=-2, axis2=-1).copy()
    w[~ok] = np.nan
    V[~ok] = np.nan
    return w, V


def _eigh_block(A: pet.NDArray, order: EigenOrder, max_sweeps: int) -> pet.NDArray:
    # (..., D, D) -> (..., D+1, D) packed [V; w]
    xp = peu.get_array_module(A)
    sh, D = A.shape[:-2], A.shape[-1]
    w, V = _jacobi(A.reshape(-1, D, D).copy(), max_sweeps)
    w, V = _reorder(w, V, order)
    out = xp.concatenate([V, w[:, np.newaxis, :]], axis=-2)
    return out.reshape(*sh, D + 1, D)


def _reorder_block(wV: pet.NDArray, order: EigenOrder) -> pet.NDArray:
    # (..., D+1, D) -> (..., D+1, D)
    xp = peu.get_array_module(wV)
    D = wV.shape[-1]
    w, V = _reorder(wV[..., D, :], wV[..., :D, :], order)
    return xp.concatenate([V, w[..., np.newaxis, :]], axis=-2)


def _unpack(wV: pet.NDArray) -> tuple[pet.NDArray, pet.NDArray]:
    D = wV.shape[-1]
    return wV[..., D, :], wV[..., :D, :]


def _single_chunk_matrix_axes(A: pet.NDArray) -> pet.NDArray:
    return A.rechunk({A.ndim - 2: -1, A.ndim - 1: -1})


def _eigh_dask(A: pet.NDArray, order: EigenOrder, max_sweeps: int) -> tuple[pet.NDArray, pet.NDArray]:
    A = _single_chunk_matrix_axes(A)
    D = A.shape[-1]
    wV = A.map_blocks(
        _eigh_block,
        order=order,
        max_sweeps=max_sweeps,
        chunks=(*A.chunks[:-2], (D + 1,), (D,)),
        dtype=A.dtype,
        meta=A._meta,
    )
    return _unpack(wV)


@pert.enforce_precision(i="A")
def eigh(
    A: pet.NDArray,
    order: EigenOrder = EigenOrder.VALUE,
    max_sweeps: pet.Integer = 30,
) -> tuple[pet.NDArray, pet.NDArray]:
    r"""
    Eigen-decomposition of (a stack of) real symmetric matrices.

    Parameters
    ----------
    A: NDArray
        (..., D, D) symmetric matrices.  Only the symmetric part :math:`(A + A^{T}) / 2` is decomposed.
    order: EigenOrder
        Ordering policy of eigenpairs.
    max_sweeps: Integer
        Maximum number of cyclic Jacobi sweeps per matrix.

    Returns
    -------
    w: NDArray
        (..., D) eigenvalues.
    V: NDArray
        (..., D, D) eigenvectors: ``V[..., :, k]`` is the unit eigenvector associated with ``w[..., k]``.

    Notes
    -----
    * Cyclic Jacobi rotations are applied to all matrices in lock-step.  A matrix is converged once the Frobenius norm
      of its off-diagonal part falls below ``100 * eps * ||A||_F``.
    * Matrices which do not converge within `max_sweeps` sweeps, or which hold non-finite entries, get NaN eigenvalues
      and eigenvectors.  No exception is raised: ``xp.isfinite(w).all(axis=-1)`` is the per-matrix success mask.
    * DASK inputs are decomposed chunk-wise.  The matrix axes are re-chunked to a single block.
    """
    if (A.ndim < 2) or (A.shape[-1] != A.shape[-2]):
        raise pee.ShapeMismatchError(f"Expected (..., D, D) matrices, got shape {A.shape}.")
    try:
        assert int(max_sweeps) >= 1
        max_sweeps = int(max_sweeps)
    except Exception:
        raise pee.ConfigurationError(f"max_sweeps: expected positive integer, got {max_sweeps}.")
    order = EigenOrder(order)

    ndi = ped.NDArrayInfo.from_obj(A)
    if ndi == ped.NDArrayInfo.DASK:
        w, V = _eigh_dask(A, order, max_sweeps)
    else:
        w, V = _unpack(_eigh_block(A, order, max_sweeps))
    return w, V


def _reorder_dask(w: pet.NDArray, V: pet.NDArray, order: EigenOrder) -> tuple[pet.NDArray, pet.NDArray]:
    xp = peu.get_array_module(w)
    wV = xp.concatenate([V, w[..., np.newaxis, :]], axis=-2)
    wV = _single_chunk_matrix_axes(wV)
    wV = wV.map_blocks(_reorder_block, order=order, dtype=wV.dtype, meta=wV._meta)
    return _unpack(wV)


@peu.redirect("w", DASK=_reorder_dask)
def reorder(
    w: pet.NDArray,
    V: pet.NDArray,
    order: EigenOrder,
) -> tuple[pet.NDArray, pet.NDArray]:
    """
    Re-order eigenpairs.

    This is a pure permutation: eigenvalues and eigenvectors are never re-computed, and eigenvalue `k` stays attached
    to eigenvector column `k`.

    Parameters
    ----------
    w: NDArray
        (..., D) eigenvalues.
    V: NDArray
        (..., D, D) eigenvectors (as columns).
    order: EigenOrder
        Target ordering policy.  :py:attr:`EigenOrder.NONE` is a no-op.

    Returns
    -------
    w2: NDArray
        (..., D) permuted eigenvalues.
    V2: NDArray
        (..., D, D) permuted eigenvectors.
    """
    return _reorder(w, V, EigenOrder(order))


def reconstruct(w: pet.NDArray, V: pet.NDArray) -> pet.NDArray:
    r"""
    Assemble :math:`V \, \text{diag}(w) \, V^{T}`.

    Parameters
    ----------
    w: NDArray
        (..., D) eigenvalues.
    V: NDArray
        (..., D, D) eigenvectors (as columns).

    Returns
    -------
    A: NDArray
        (..., D, D) symmetric matrices.
    """
    xp = peu.get_array_module(V)
    A = (V * w[..., np.newaxis, :]) @ xp.swapaxes(V, -1, -2)
    return A


def sym_eig(
    A: pet.NDArray,
    order: EigenOrder = EigenOrder.VALUE,
) -> tuple[pet.NDArray, pet.NDArray]:
    """
    Eigen-decomposition of a single real symmetric matrix.

    Parameters
    ----------
    A: NDArray
        (D, D) symmetric matrix.
    order: EigenOrder
        Ordering policy of eigenpairs.

    Returns
    -------
    w: NDArray
        (D,) eigenvalues.
    V: NDArray
        (D, D) eigenvectors (as columns).

    Raises
    ------
    NumericError
        If the decomposition did not converge.
    """
    if (A.ndim != 2) or (A.shape[0] != A.shape[1]):
        raise pee.ConfigurationError(f"Expected a square matrix, got shape {A.shape}.")
    w, V = eigh(A, order=order)
    xp = peu.get_array_module(w)
    if not bool(peu.compute(xp.all(xp.isfinite(w)))):
        raise pee.NumericError("Eigen-decomposition did not converge.")
    return w, V
