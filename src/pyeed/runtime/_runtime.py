import collections.abc as cabc
import contextlib
import enum
import functools
import inspect
import numbers as nb

import numpy as np

import pyeed.info.ptype as pet

__all__ = [
    "Width",
    "coerce",
    "enforce_precision",
    "EnforcePrecision",
    "getCoerceState",
    "getPrecision",
    "Precision",
]


@enum.unique
class Width(enum.Enum):
    """
    Floating-point widths images and tensor fields may be computed in.
    """

    SINGLE = np.dtype(np.single)
    DOUBLE = np.dtype(np.double)

    def eps(self) -> float:
        """
        Gap between 1 and the next representable float.
        """
        return float(np.finfo(self.value).eps)

    @classmethod
    def from_dtype(cls, dtype: pet.DType) -> "Width":
        """
        Width matching `dtype`, or the runtime precision if `dtype` is not a supported float.
        """
        try:
            return cls(np.dtype(dtype))
        except ValueError:
            return getPrecision()


# Process-wide runtime settings.  Module-level so that stencil worker threads see them too.
_state = dict(
    width=Width.DOUBLE,
    coerce=True,
)


class _Override(contextlib.AbstractContextManager):
    # Set a runtime setting for the duration of a with-block.
    _key: str = None

    def __init__(self, value):
        self._value = value
        self._saved = None

    def __enter__(self):
        self._saved = _state[self._key]
        _state[self._key] = self._value
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        _state[self._key] = self._saved
        return False


class Precision(_Override):
    """
    Compute in the given floating-point width inside a with-block.

    Example
    -------
    .. code-block:: python3

       import pyeed.runtime as pert
       from pyeed.opt.solver import edge_enhancing_diffusion

       with pert.Precision(pert.Width.SINGLE):
           out = edge_enhancing_diffusion(image)  # float32 tensors, float32 output
    """

    _key = "width"

    def __init__(self, width: Width):
        super().__init__(Width(width))


class EnforcePrecision(_Override):
    """
    Enable/disable the casts performed by :py:func:`~pyeed.runtime.coerce` inside a with-block.  [Default: enabled.]

    With casts disabled, arrays flow through the pipeline in whatever dtype the caller provided.
    """

    _key = "coerce"

    def __init__(self, state: bool):
        super().__init__(bool(state))


def getPrecision() -> Width:
    """
    Current runtime floating-point width.
    """
    return _state["width"]


def getCoerceState() -> bool:
    """
    True if :py:func:`~pyeed.runtime.coerce` casts its inputs.
    """
    return _state["coerce"]


def coerce(x):
    """
    Cast a scalar or an array to the runtime floating-point width.

    Parameters
    ----------
    x: Real, NDArray

    Returns
    -------
    y: Real, NDArray
        `x` in the runtime width.  Arrays are not copied if they already have it.

    Raises
    ------
    TypeError
        If `x` is not real-valued.
    """
    if not getCoerceState():
        return x

    dtype = getPrecision().value
    if isinstance(x, pet.Real):
        return np.array(x, dtype=dtype)[()]

    src = getattr(x, "dtype", None)
    if (src is None) or (not np.can_cast(src, dtype, casting="same_kind")):
        raise TypeError(f"Cannot cast {type(x).__name__}[{src}] to {dtype}.")
    return x.astype(dtype, copy=False)


def _coerce_output(out):
    if out is None:
        return None
    elif isinstance(out, tuple):
        # counters (n_fallback, ...) keep their integer type.
        keep = lambda f: (f is None) or isinstance(f, (bool, nb.Integral))
        fields = [f if keep(f) else coerce(f) for f in out]
        return out._make(fields) if hasattr(out, "_make") else tuple(fields)
    else:
        return coerce(out)


def enforce_precision(
    i: pet.VarName = frozenset(),
    o: bool = True,
    allow_None: bool = True,
) -> cabc.Callable:
    """
    Decorator casting array parameters and outputs of a function to the runtime floating-point width.

    Parameters
    ----------
    i: VarName
        Parameters to cast via :py:func:`~pyeed.runtime.coerce`.  None-valued parameters are passed through if
        `allow_None` is True (default), and rejected otherwise.
    o: bool
        Cast the output as well.  Tuple outputs (named or not) are cast field-wise, integer fields excepted.
    allow_None: bool

    Example
    -------
    .. code-block:: python3

       @pert.enforce_precision(i="image")
       def smooth(image, sigma=1):
           ...
    """
    names = (i,) if isinstance(i, str) else tuple(i)

    def decorator(func: cabc.Callable) -> cabc.Callable:
        sig = inspect.signature(func)
        if unknown := [k for k in names if k not in sig.parameters]:
            raise ValueError(f"{func.__qualname__}() has no parameter(s) {unknown}.")

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            bound = sig.bind(*args, **kwargs)
            bound.apply_defaults()
            for k in names:
                if bound.arguments[k] is not None:
                    bound.arguments[k] = coerce(bound.arguments[k])
                elif not allow_None:
                    raise ValueError(f"{func.__qualname__}(): parameter {k} cannot be None.")

            out = func(*bound.args, **bound.kwargs)
            return _coerce_output(out) if o else out

        return wrapper

    return decorator
