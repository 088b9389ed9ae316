import collections.abc as cabc
import functools
import inspect

import dask

import pyeed.info.deps as ped
import pyeed.info.ptype as pet

__all__ = [
    "compute",
    "get_array_module",
    "redirect",
    "to_NUMPY",
]


def get_array_module(x, fallback: pet.ArrayModule = None) -> pet.ArrayModule:
    """
    Array namespace (numpy, dask.array, cupy) to manipulate `x` with.

    Parameters
    ----------
    x: object
        Image, tensor field, or any other array.
    fallback: ArrayModule
        Namespace returned if `x` is not an array.  If unspecified, non-arrays raise :py:class:`ValueError`.
    """
    try:
        return ped.NDArrayInfo.from_obj(x).module()
    except ValueError:
        if fallback is None:
            raise
        return fallback


def redirect(
    i: str,
    **kwargs: cabc.Mapping[str, cabc.Callable],
) -> cabc.Callable:
    """
    Route a function to a backend-specific implementation depending on the backend of one of its parameters.

    Most of pyeed is written once against the array API.  Code paths which cannot be (for example chunk-wise
    evaluation of DASK inputs) are implemented separately and registered here.

    Parameters
    ----------
    i: str
        Name of the array parameter to inspect.
    kwargs: ~collections.abc.Mapping
        (backend name, callable) pairs, with backend names taken from :py:class:`~pyeed.info.deps.NDArrayInfo`.
        Callables are invoked with the arguments of the decorated function, so they must share its signature.
        (Methods dispatch to methods.)

    Example
    -------
    .. code-block:: python3

       def _apply_dask(self, arr):
           return arr.map_overlap(...)

       @redirect("arr", DASK=_apply_dask)
       def apply(self, arr):
           ...  # NUMPY and CUPY inputs
    """

    def decorator(func: cabc.Callable) -> cabc.Callable:
        sig = inspect.signature(func)
        if i not in sig.parameters:
            raise ValueError(f"{func.__qualname__}() has no parameter {i}.")

        @functools.wraps(func)
        def wrapper(*args, **kw):
            try:
                bound = sig.bind(*args, **kw)
            except TypeError as e:
                raise ValueError(f"Could not parameterize {func.__qualname__}().") from e
            bound.apply_defaults()

            ndi = ped.NDArrayInfo.from_obj(bound.arguments[i])
            target = kwargs.get(ndi.name, func)
            return target(*bound.args, **bound.kwargs)

        return wrapper

    return decorator


def compute(*args, mode: str = "compute", **kwargs):
    r"""
    Evaluate (`mode` = "compute") or materialize in memory (`mode` = "persist") DASK arrays among `args`.

    Non-DASK arguments are returned as-is.  A single argument is returned unpacked.

    Parameters
    ----------
    \*args: object
    mode: str
    \*\*kwargs: dict
        Forwarded to :py:func:`dask.compute` or :py:func:`dask.persist`.
    """
    evaluators = dict(compute=dask.compute, persist=dask.persist)
    try:
        func = evaluators[mode.strip().lower()]
    except (AttributeError, KeyError):
        raise ValueError(f"mode: expected one of {set(evaluators)}, got {mode}.")

    out = func(*args, **kwargs)
    return out[0] if (len(args) == 1) else out


def to_NUMPY(x: pet.NDArray) -> pet.NDArray:
    """
    Copy an array to host memory as a NumPy array.  NumPy inputs are returned as-is.
    """
    ndi = ped.NDArrayInfo.from_obj(x)
    if ndi is ped.NDArrayInfo.DASK:
        return compute(x)
    elif ndi is ped.NDArrayInfo.CUPY:
        return x.get()
    else:
        return x
