import collections.abc as cabc
import numbers as nb
import pathlib as plib
import typing as typ

import numpy.typing as npt

import pyeed.info.deps as ped

#: Dense array types an image may be stored in.
NDArray = typ.TypeVar("NDArray", *ped.supported_array_types())

#: Array namespaces matching :py:attr:`~pyeed.info.ptype.NDArray`.
ArrayModule = typ.TypeVar(
    "ArrayModule",
    *[typ.Literal[_] for _ in ped.supported_array_modules()],
)

Integer = nb.Integral
Real = nb.Real  #: Alias of :py:class:`numbers.Real`.
DType = npt.DTypeLike  #: :py:attr:`~pyeed.info.ptype.NDArray` dtype specifier.
NDArrayShape = typ.Union[Integer, tuple[Integer, ...]]  #: Image shape specifier.
Path = typ.Union[str, plib.Path]  #: Path-like object.
VarName = typ.Union[str, cabc.Collection[str]]  #: Variable name(s).
Sampling = typ.Union[Real, cabc.Sequence[Real]]  #: Per-axis physical spacing.
