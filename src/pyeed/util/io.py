import os
import pathlib as plib

import dask.array as da
import numpy as np
import zarr

import pyeed.info.deps as ped
import pyeed.info.ptype as pet
import pyeed.util.array_module as peam

__all__ = [
    "save_zarr",
    "load_zarr",
]


def _write(path: plib.Path, array: np.ndarray):
    # mode="w" replaces any store left by a previous checkpoint.
    z = zarr.open(str(path), mode="w", shape=array.shape, dtype=array.dtype)
    z[...] = array


def save_zarr(filedir: pet.Path, kw_in: dict[str, pet.NDArray]) -> None:
    """
    Save arrays to Zarr stores inside `filedir`, one store per key.

    DASK arrays are streamed chunk-wise to a store named ``dask_<key>``, all other arrays are moved to host memory first.
    Structured (record) arrays, such as solver histories, are split field-wise into stores named ``<key>.<field>``.
    Existing stores are overwritten, so repeated calls on the same `filedir` always hold the latest arrays.

    Parameters
    ----------
    filedir : Path
        The directory path where the stores will be written.
    kw_in : dict[str, NDArray]
        A dictionary where keys are the store names and values are the arrays to be saved.  None-valued entries are
        skipped.
    """
    filedir = plib.Path(filedir)
    filedir.mkdir(parents=True, exist_ok=True)

    for filename, array in kw_in.items():
        if array is None:
            continue
        ndi = ped.NDArrayInfo.from_obj(array)
        if ndi == ped.NDArrayInfo.DASK:
            array.to_zarr(
                str(filedir / ("dask_" + filename)),
                overwrite=True,
                compute=True,
            )
        else:
            array = peam.to_NUMPY(array)
            if array.dtype.names is not None:
                for field in array.dtype.names:
                    _write(filedir / f"{filename}.{field}", np.ascontiguousarray(array[field]))
            else:
                _write(filedir / filename, array)


def load_zarr(filepath: pet.Path) -> dict[str, pet.NDArray]:
    """
    Load arrays from Zarr stores within a specified directory.

    Stores prefixed with "dask_" are loaded lazily as DASK arrays, all others as NumPy arrays.

    Parameters
    ----------
    filepath : Path
        The directory path from where the Zarr stores will be loaded.

    Returns
    -------
    kw_out : dict[str, NDArray]
        A dictionary where keys are the store names (with "dask_" prefix removed if present) and values are the loaded
        arrays.
    """
    filepath = plib.Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"The directory {filepath} does not exist.")

    if not filepath.is_dir():
        raise NotADirectoryError(f"{filepath} is not a directory.")

    kw_out = {}
    for file in sorted(os.listdir(filepath)):
        if file.startswith("dask_"):
            kw_out[file.removeprefix("dask_")] = da.from_zarr(str(filepath / file))
        else:
            kw_out[file] = np.asarray(zarr.load(str(filepath / file)))
    return kw_out
