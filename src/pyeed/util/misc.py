import collections.abc as cabc

import pyeed.info.error as pee
import pyeed.info.ptype as pet

__all__ = [
    "as_canonical_shape",
    "broadcast_seq",
    "check_shape",
    "sanitize_sampling",
]


def broadcast_seq(x, N: int = None) -> tuple:
    """
    Broadcast `x` to a tuple of length `N`.

    If `N` is omitted, then no broadcasting takes place, only tupling.
    """
    if isinstance(x, cabc.Iterable):
        y = tuple(x)
    else:
        y = (x,)

    if N is not None:
        if len(y) == 1:
            y *= N  # broadcast
        if len(y) != N:
            raise ValueError(f"Expected {N} values, got {len(y)}.")

    return y


def as_canonical_shape(x: pet.NDArrayShape) -> tuple[int, ...]:
    """
    Transform a lone integer into a valid tuple-based shape specifier.
    """
    if isinstance(x, cabc.Iterable):
        x = tuple(x)
    else:
        x = (x,)
    sh = tuple(map(int, x))
    if not all(_ > 0 for _ in sh):
        raise pee.ConfigurationError(f"dim_shape: expected positive axis sizes, got {sh}.")
    return sh


def check_shape(arr: pet.NDArray, shape: tuple[int, ...], name: str = "arr"):
    """
    Raise :py:class:`~pyeed.info.error.ShapeMismatchError` if `arr` does not have the expected shape.
    """
    if tuple(arr.shape) != tuple(shape):
        raise pee.ShapeMismatchError(f"{name}: expected shape {tuple(shape)}, got {tuple(arr.shape)}.")


def sanitize_sampling(sampling: pet.Sampling, ndim: int) -> tuple[float, ...]:
    """
    Broadcast per-axis physical spacing to `ndim` positive floats.

    Raises
    ------
    ConfigurationError
        If the spacing cannot be broadcast, or is not strictly positive.
    """
    try:
        h = tuple(map(float, broadcast_seq(sampling, ndim)))
    except (TypeError, ValueError) as e:
        raise pee.ConfigurationError(f"sampling: expected {ndim} positive reals, got {sampling}.") from e
    if not all(_ > 0 for _ in h):
        raise pee.ConfigurationError(f"sampling: expected positive spacing, got {h}.")
    return h
