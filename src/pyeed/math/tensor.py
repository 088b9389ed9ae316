r"""
Packed storage of symmetric rank-2 tensor fields.

A field of symmetric :math:`D \times D` tensors over a grid of shape `dim_shape` is stored as an NDArray of shape
``(D(D+1)/2, *dim_shape)``.  Component `k` holds entry :math:`(i, j)`, :math:`i \le j`, where pairs are enumerated
row-major over the upper triangle: :math:`(0,0), (0,1), \ldots, (0,D-1), (1,1), \ldots, (D-1,D-1)`.  The lower
triangle is never stored.
"""

import functools
import itertools

import numpy as np

import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.runtime as pert
import pyeed.util as peu

__all__ = [
    "identity",
    "ntriu",
    "to_full",
    "to_packed",
    "triu_index",
    "triu_pairs",
]


def ntriu(ndim: pet.Integer) -> int:
    """Number of independent entries of a symmetric (ndim, ndim) tensor."""
    return ndim * (ndim + 1) // 2


@functools.cache
def triu_pairs(ndim: pet.Integer) -> tuple[tuple[int, int], ...]:
    """(i, j) index pairs of packed components, in storage order."""
    return tuple(itertools.combinations_with_replacement(range(ndim), 2))


def triu_index(i: pet.Integer, j: pet.Integer, ndim: pet.Integer) -> int:
    """
    Position of entry (i, j) in packed storage.

    Symmetric: ``triu_index(i, j, D) == triu_index(j, i, D)``.
    """
    if not ((0 <= i < ndim) and (0 <= j < ndim)):
        raise IndexError(f"Entry ({i}, {j}) out of range for a ({ndim}, {ndim}) tensor.")
    if i > j:
        i, j = j, i
    return triu_pairs(ndim).index((i, j))


def _infer_ndim(n_comp: int) -> int:
    ndim = 1
    while ntriu(ndim) < n_comp:
        ndim += 1
    if ntriu(ndim) != n_comp:
        raise pee.ShapeMismatchError(f"{n_comp} components do not describe a packed symmetric tensor.")
    return ndim


def to_full(packed: pet.NDArray) -> pet.NDArray:
    """
    Expand a packed tensor field to dense matrices.

    Parameters
    ----------
    packed: NDArray
        (D(D+1)/2, M1,...,MD) packed field.

    Returns
    -------
    full: NDArray
        (M1,...,MD, D, D) symmetric matrices, i.e. matrix axes last as expected by linear-algebra routines.
    """
    xp = peu.get_array_module(packed)
    ndim = _infer_ndim(packed.shape[0])

    rows = []
    for i in range(ndim):
        row = [packed[triu_index(i, j, ndim)] for j in range(ndim)]
        rows.append(xp.stack(row, axis=-1))
    full = xp.stack(rows, axis=-2)
    return full


def to_packed(full: pet.NDArray) -> pet.NDArray:
    """
    Pack dense symmetric matrices.

    Parameters
    ----------
    full: NDArray
        (M1,...,MD, D, D) matrices.  Only the upper triangle is read.

    Returns
    -------
    packed: NDArray
        (D(D+1)/2, M1,...,MD) packed field.
    """
    if (full.ndim < 2) or (full.shape[-1] != full.shape[-2]):
        raise pee.ShapeMismatchError(f"Expected (..., D, D) matrices, got shape {full.shape}.")
    xp = peu.get_array_module(full)
    ndim = full.shape[-1]
    packed = xp.stack([full[..., i, j] for (i, j) in triu_pairs(ndim)], axis=0)
    return packed


def identity(dim_shape: pet.NDArrayShape, scale: pet.Real = 1, like: pet.NDArray = None) -> pet.NDArray:
    """
    Packed field of scaled identity tensors.

    Parameters
    ----------
    dim_shape: NDArrayShape
        Grid shape (M1,...,MD).
    scale: Real
        Value of the diagonal entries.
    like: NDArray
        Optional array from which backend, dtype and chunking (DASK) are inherited.  Defaults to a NumPy array of the
        runtime precision.

    Returns
    -------
    eye: NDArray
        (D(D+1)/2, M1,...,MD) packed field.
    """
    dim_shape = peu.as_canonical_shape(dim_shape)
    ndim = len(dim_shape)
    if like is None:
        like = np.zeros(dim_shape, dtype=pert.getPrecision().value)
    xp = peu.get_array_module(like)

    comp = []
    for i, j in triu_pairs(ndim):
        z = xp.zeros_like(like)
        comp.append(z + scale if i == j else z)
    return xp.stack(comp, axis=0)
