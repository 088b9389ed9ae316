import enum
import importlib
import importlib.util
import types

#: True if CuPy is installed and a GPU can be reached.
CUPY_ENABLED: bool = False
if importlib.util.find_spec("cupy") is not None:
    try:
        import cupy

        CUPY_ENABLED = bool(cupy.is_available())
    except Exception:  # missing drivers/runtime
        CUPY_ENABLED = False


@enum.unique
class NDArrayInfo(enum.Enum):
    """
    Array backends an image may live on.

    Each member's value is the import name of its array namespace.  Structure tensors, diffusion tensors and diffused
    images always live on the backend of the image they were derived from.
    """

    NUMPY = "numpy"
    DASK = "dask.array"
    CUPY = "cupy"

    def enabled(self) -> bool:
        """True if the backend can be used in the current install."""
        return (self is not NDArrayInfo.CUPY) or CUPY_ENABLED

    def module(self) -> types.ModuleType:
        """Array namespace of the backend."""
        if not self.enabled():
            raise ValueError(f"{self.name} backend is not available.")
        return importlib.import_module(self.value)

    def type(self) -> type:
        """Array type of the backend."""
        xp = self.module()
        return xp.Array if (self is NDArrayInfo.DASK) else xp.ndarray

    def is_lazy(self) -> bool:
        """True if arrays are task graphs evaluated on demand, hence immutable."""
        return self is NDArrayInfo.DASK

    @classmethod
    def from_obj(cls, obj) -> "NDArrayInfo":
        """Backend of array `obj`."""
        for ndi in supported_backends():
            if isinstance(obj, ndi.type()):
                return ndi
        raise ValueError(f"No known array type to match {type(obj)}.")


def supported_backends() -> tuple[NDArrayInfo, ...]:
    """Backends usable in the current install."""
    return tuple(ndi for ndi in NDArrayInfo if ndi.enabled())


def supported_array_types() -> tuple[type, ...]:
    return tuple(ndi.type() for ndi in supported_backends())


def supported_array_modules() -> tuple[types.ModuleType, ...]:
    return tuple(ndi.module() for ndi in supported_backends())


__all__ = [
    "CUPY_ENABLED",
    "NDArrayInfo",
    "supported_array_modules",
    "supported_array_types",
    "supported_backends",
]
