# Custom exceptions used inside pyeed.


class PyeedError(Exception):
    """
    Parent class of all exceptions raised in pyeed.
    """


class ConfigurationError(PyeedError, ValueError):
    """
    Invalid parameterization: non-positive scales/thresholds/spacing, illegal cadence, unstable time step, ...

    Always raised before any image data is modified.
    """


class NumericError(PyeedError, ArithmeticError):
    """
    A numerical routine (e.g. an eigen-decomposition) failed to converge.

    Field-wide computations recover per voxel and never raise this error: only single-matrix helpers do.
    """


class ShapeMismatchError(PyeedError, ValueError):
    """
    Image, structure-tensor and diffusion-tensor shapes disagree.
    """
