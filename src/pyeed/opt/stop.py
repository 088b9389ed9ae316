import collections.abc as cabc
import datetime as dt

import numpy as np

import pyeed.abc as pea
import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.util as peu

__all__ = [
    "MaxDuration",
    "MaxIter",
    "RelError",
]


class MaxIter(pea.StoppingCriterion):
    """
    Stop after a fixed number of iterations.

    ``MaxIter(n=0)`` stops before the first iteration: the solver returns (a copy of) its initial image.

    AND-ing with another criterion enforces a minimum number of iterations:

    .. code-block:: python3

       sc = MaxIter(n=5) & RelError(eps=1e-3)  # at least 5 iterations, then until the image settles
    """

    def __init__(self, n: pet.Integer):
        """
        Parameters
        ----------
        n: Integer
            Number of iterations (>= 0).
        """
        try:
            assert int(n) == n
            assert int(n) >= 0
        except Exception:
            raise pee.ConfigurationError(f"n: expected non-negative integer, got {n}.")
        self._n = int(n)
        self._calls = 0

    def stop(self, state: cabc.Mapping) -> bool:
        self._calls += 1
        return self._calls > self._n

    def info(self) -> cabc.Mapping[str, float]:
        return dict(N_iter=self._calls)

    def clear(self):
        self._calls = 0


class MaxDuration(pea.StoppingCriterion):
    """
    Stop once a wall-clock budget is spent.

    Time is checked between iterations: a running iteration always completes.
    """

    def __init__(self, t: dt.timedelta):
        """
        Parameters
        ----------
        t: ~datetime.timedelta
            Positive duration.
        """
        if not (isinstance(t, dt.timedelta) and (t > dt.timedelta())):
            raise pee.ConfigurationError(f"t: expected positive duration, got {t}.")
        self._t_max = t
        self.clear()

    def stop(self, state: cabc.Mapping) -> bool:
        self._elapsed = dt.datetime.now() - self._t_start
        return self._elapsed > self._t_max

    def info(self) -> cabc.Mapping[str, float]:
        return dict(duration=self._elapsed.total_seconds())

    def clear(self):
        self._t_start = dt.datetime.now()
        self._elapsed = dt.timedelta()


def _norm(x: pet.NDArray, ord: pet.Real, rank: int) -> pet.NDArray:
    # `ord`-norm over the last `rank` axes.
    xp = peu.get_array_module(x)
    axis = tuple(range(-rank, 0))
    a = xp.abs(x)
    if ord == np.inf:
        return a.max(axis=axis)
    elif ord == 0:
        return (a > 0).sum(axis=axis)
    else:
        return (a**ord).sum(axis=axis) ** (1 / ord)


class RelError(pea.StoppingCriterion):
    r"""
    Stop once a variable of the math state no longer changes noticeably between evaluations:

    .. math::

       \| x_{k} - x_{k-1} \| \le \varepsilon \| x_{k-1} \|.

    For diffusion this means the image has settled.  The first evaluation never stops: there is nothing to compare to.
    """

    def __init__(
        self,
        eps: pet.Real,
        var: str = "x",
        rank: pet.Integer = 1,
        norm: pet.Real = 2,
        satisfy_all: bool = True,
    ):
        """
        Parameters
        ----------
        eps: Real
            Positive relative threshold.
        var: str
            Name of the monitored array in :py:attr:`~pyeed.abc.Solver._mstate`.
        rank: Integer
            Number of trailing axes the norm is computed over.  Leading axes are treated as a batch.
        norm: Real
            Order of the norm (>= 0, may be ``numpy.inf``).
        satisfy_all: bool
            With a batch, stop if all (True, default) or any (False) batch entries satisfy the threshold.
        """
        if not (eps > 0):
            raise pee.ConfigurationError(f"eps: expected positive threshold, got {eps}.")
        if not (norm >= 0):
            raise pee.ConfigurationError(f"norm: expected non-negative order, got {norm}.")
        self._eps = eps
        self._var = var
        self._rank = int(rank)
        self._norm = norm
        self._satisfy_all = bool(satisfy_all)
        self.clear()

    def stop(self, state: cabc.Mapping) -> bool:
        x = state[self._var]
        x_prev, self._x_prev = self._x_prev, x.copy()
        if x_prev is None:
            self._val = np.zeros(x.shape[: x.ndim - self._rank])
            return False

        xp = peu.get_array_module(x)
        num = _norm(x - x_prev, self._norm, self._rank)
        den = _norm(x_prev, self._norm, self._rank)
        rule = xp.all if self._satisfy_all else xp.any
        decision = rule(num <= self._eps * den)

        num, den, decision = peu.compute(num, den, decision)
        num, den = peu.to_NUMPY(num), peu.to_NUMPY(den)
        with np.errstate(divide="ignore", invalid="ignore"):
            val = num / den
        self._val = np.where(np.isnan(val), 0, val)  # 0/0: nothing changed
        return bool(decision)

    def info(self) -> cabc.Mapping[str, float]:
        key = f"RelError[{self._var}]"
        if self._val.size == 1:
            return {key: float(self._val.max())}
        else:
            return {
                f"{key}_min": float(self._val.min()),
                f"{key}_max": float(self._val.max()),
            }

    def clear(self):
        self._x_prev = None
        self._val = np.zeros(())
