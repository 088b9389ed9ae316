# Custom warnings used inside pyeed.


class PyeedWarning(UserWarning):
    """
    Parent class of all warnings raised in pyeed.
    """


class NumericWarning(PyeedWarning):
    """
    Some voxels could not be processed numerically and were replaced by a safe default.
    """


class StabilityWarning(PyeedWarning):
    """
    A user-provided time step exceeded the explicit-scheme stability bound and was clamped.
    """
