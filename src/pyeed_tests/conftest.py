import types

import numpy as np
import pytest

import pyeed.info.deps as ped
import pyeed.info.ptype as pet
import pyeed.runtime as pert
import pyeed.util as peu


@pytest.fixture(params=ped.supported_array_modules())
def xp(request) -> types.ModuleType:
    # Every array namespace usable in this install.
    return request.param


@pytest.fixture(params=pert.Width)
def width(request) -> pert.Width:
    return request.param


@pytest.fixture
def workdir(tmp_path):
    # Solver output directory, not created yet.
    return tmp_path / "solver"


# Absolute tolerance per float width: a few ulps above the rounding error accumulated by the stencils.
_ATOL = {
    pert.Width.SINGLE.value: 2e-4,
    pert.Width.DOUBLE.value: 1e-8,
}


def to_numpy(x) -> np.ndarray:
    """
    Host-side NumPy view of an array or a scalar.
    """
    if isinstance(x, ped.supported_array_types()):
        x = peu.to_NUMPY(x)
    return np.asarray(x)


def isclose(a, b, as_dtype: pet.DType) -> np.ndarray:
    """
    Element-wise closeness of `a` and `b`, with a tolerance suited to `as_dtype`.

    Non-float dtypes are compared with the double-precision tolerance.
    """
    atol = _ATOL.get(np.dtype(as_dtype), _ATOL[pert.Width.DOUBLE.value])
    return np.isclose(to_numpy(a), to_numpy(b), atol=atol)


def allclose(a, b, as_dtype: pet.DType) -> bool:
    return bool(np.all(isclose(a, b, as_dtype)))


def chunk_array(x: pet.NDArray) -> pet.NDArray:
    """
    Split DASK arrays in (up to) 2 chunks per axis, so that halo exchanges are exercised.  Other arrays are returned
    as-is.
    """
    if ped.NDArrayInfo.from_obj(x) is not ped.NDArrayInfo.DASK:
        return x
    return x.rechunk(tuple(max(n // 2, 1) for n in x.shape))
