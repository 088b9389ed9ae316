import collections.abc as cabc
import datetime as dt
import logging
import operator
import pathlib as plib
import shutil
import sys
import tempfile
import typing as typ

import dask
import numpy as np

import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.util as peu

__all__ = [
    "Solver",
    "StoppingCriterion",
]


class StoppingCriterion:
    """
    Decide when a time-marching scheme must stop, by inspecting its math state between iterations.

    Every decision comes with statistics (:py:meth:`~pyeed.abc.StoppingCriterion.info`) which the solver logs and
    stores in its history.  Criteria compose with ``|`` (stop as soon as one fires) and ``&`` (stop once both fire).
    """

    def stop(self, state: cabc.Mapping[str]) -> bool:
        """
        Parameters
        ----------
        state: ~collections.abc.Mapping
            Math state of the solver, i.e. :py:attr:`~pyeed.abc.Solver._mstate`.  Values may be buffered to compare
            successive iterates.

        Returns
        -------
        s: bool
            True if no further iteration should be performed.
        """
        raise NotImplementedError

    def info(self) -> cabc.Mapping[str, float]:
        """
        Statistics of the last :py:meth:`~pyeed.abc.StoppingCriterion.stop` call.
        """
        raise NotImplementedError

    def clear(self):
        """
        Forget buffered state so the criterion can drive another run.
        """
        pass

    def __or__(self, other: "StoppingCriterion") -> "StoppingCriterion":
        return _Compound(self, other, operator.or_)

    def __and__(self, other: "StoppingCriterion") -> "StoppingCriterion":
        return _Compound(self, other, operator.and_)


class _Compound(StoppingCriterion):
    def __init__(self, lhs: StoppingCriterion, rhs: StoppingCriterion, op: cabc.Callable[[bool, bool], bool]):
        self._parts = (lhs, rhs)
        self._op = op

    def stop(self, state: cabc.Mapping) -> bool:
        # Both sides see every state, even if the first one already decided.
        lhs, rhs = [sc.stop(state) for sc in self._parts]
        return self._op(lhs, rhs)

    def info(self) -> cabc.Mapping[str, float]:
        lhs, rhs = self._parts
        return {**lhs.info(), **rhs.info()}

    def clear(self):
        for sc in self._parts:
            sc.clear()


def _as_rate(value, name: str, multiple_of: int = 1) -> int:
    try:
        assert int(value) == value
        assert int(value) >= 1
        assert int(value) % multiple_of == 0
    except Exception:
        raise pee.ConfigurationError(f"{name}: expected positive multiple of {multiple_of}, got {value}.")
    return int(value)


class Solver:
    r"""
    Time-marching driver :math:`x_{k} \to x_{k+1}`, stopped by a :py:class:`~pyeed.abc.StoppingCriterion`.

    The driver owns everything which is not mathematics:

    * a working directory holding the run's log file (``solver.log``) and checkpoints (``data.zarr``);
    * logging of stopping-criterion statistics and solver diagnostics every `verbosity` iterations;
    * a history of stopping-criterion statistics, returned by :py:meth:`~pyeed.abc.Solver.stats`;
    * checkpoints of the `log_var` variables every `writeback_rate` iterations.

    Sub-classes implement :py:meth:`~pyeed.abc.Solver.m_init` and :py:meth:`~pyeed.abc.Solver.m_step`, and may
    override :py:meth:`~pyeed.abc.Solver.default_stop_crit`, :py:meth:`~pyeed.abc.Solver.diagnostics` and
    :py:meth:`~pyeed.abc.Solver.solution`.

    Exceptions raised during an iteration are logged with traceback, then propagate to the caller.  The math state
    keeps the last fully-committed iterate.

    Examples
    --------
    .. code-block:: python3

       ### 1. Run until the stopping criterion fires.
       >>> slvr.fit(x0=image, stop_crit=MaxIter(20))
       >>> data, history = slvr.stats()

       ### 2. Step through iterations; leaving the loop ends the run at an iteration boundary.
       >>> for data in slvr.steps(x0=image, stop_crit=MaxIter(1000)):
       ...     if converged(data["x"]):
       ...         break
    """

    _mstate: dict[str, typ.Any]  #: Mathematical state.
    _astate: dict[str, typ.Any]  #: State of the current (or last) run.

    def __init__(
        self,
        *,
        folder: pet.Path = None,
        exist_ok: bool = False,
        stop_rate: pet.Integer = 1,
        writeback_rate: pet.Integer = None,
        verbosity: pet.Integer = None,
        show_progress: bool = True,
        log_var: pet.VarName = frozenset(),
    ):
        """
        Parameters
        ----------
        folder: Path
            Working directory.  A fresh temporary directory is created if unspecified.
        exist_ok: bool
            If False (default), raise :py:class:`FileExistsError` if `folder` already exists.  Otherwise its content
            is discarded.
        stop_rate: Integer
            Evaluate the stopping criterion every `stop_rate` iterations.
        writeback_rate: Integer
            Checkpoint cadence: None (default) never writes to disk, 0 writes once the run ends, and any multiple of
            `stop_rate` writes at that interval as well.
        verbosity: Integer
            Log every `verbosity` iterations (a multiple of `stop_rate`).  Defaults to `stop_rate`.
        show_progress: bool
            Also log to stdout during :py:meth:`~pyeed.abc.Solver.fit`.
        log_var: VarName
            Math-state variables reported by :py:meth:`~pyeed.abc.Solver.stats` and written in checkpoints.
        """
        if folder is None:
            folder = plib.Path(tempfile.mkdtemp(prefix="pyeed_"))
        else:
            try:
                folder = plib.Path(folder).expanduser().resolve()
            except TypeError:
                raise pee.ConfigurationError(f"folder: expected path-like, got {type(folder)}.")
            if folder.exists() and (not exist_ok):
                raise FileExistsError(f"{folder} already exists.")
            shutil.rmtree(folder, ignore_errors=True)
            folder.mkdir(parents=True)

        stop_rate = _as_rate(stop_rate, "stop_rate")
        if writeback_rate not in (None, 0):
            writeback_rate = _as_rate(writeback_rate, "writeback_rate", multiple_of=stop_rate)
        if verbosity is None:
            verbosity = stop_rate
        verbosity = _as_rate(verbosity, "verbosity", multiple_of=stop_rate)
        log_var = (log_var,) if isinstance(log_var, str) else log_var

        self._mstate = dict()
        self._astate = dict(
            workdir=folder,
            stop_rate=stop_rate,
            wb_rate=writeback_rate,
            log_rate=verbosity,
            stdout=bool(show_progress),
            log_var=frozenset(log_var),
            # per-run ----------------------
            idx=0,
            history=[],
            stop_crit=None,
            logger=None,
        )

    def fit(self, **kwargs):
        """
        Run the scheme until the stopping criterion fires.

        Parameters
        ----------
        stop_crit: StoppingCriterion
            Defaults to :py:meth:`~pyeed.abc.Solver.default_stop_crit` if unspecified.
        kwargs
            Forwarded to :py:meth:`~pyeed.abc.Solver.m_init`.  (See sub-class documentation.)
        """
        stop_crit = kwargs.pop("stop_crit", None)
        for _ in self._run(stop_crit, self._astate["stdout"], kwargs):
            pass

    def steps(self, **kwargs) -> cabc.Generator:
        """
        Run the scheme one iteration per :py:func:`next` call.

        Takes the same parameters as :py:meth:`~pyeed.abc.Solver.fit`.  Each call yields the `log_var` variables after
        the iteration.  The generator is exhausted once the stopping criterion fires.  Closing it early (e.g. leaving a
        for-loop) ends the run after the last completed iteration.
        """
        stop_crit = kwargs.pop("stop_crit", None)
        yield from self._run(stop_crit, False, kwargs)

    def m_init(self, **kwargs):
        """
        Set the initial math state from the parameters given to :py:meth:`~pyeed.abc.Solver.fit`.

        Only :py:attr:`~pyeed.abc.Solver._mstate` may be modified.
        """
        raise NotImplementedError

    def m_step(self):
        """
        Perform one iteration.

        Only :py:attr:`~pyeed.abc.Solver._mstate` may be modified.
        """
        raise NotImplementedError

    def default_stop_crit(self) -> StoppingCriterion:
        """
        Stopping criterion used if none is given to :py:meth:`~pyeed.abc.Solver.fit`.
        """
        raise NotImplementedError("No default stopping criterion defined.")

    def diagnostics(self) -> cabc.Mapping[str, typ.Any]:
        """
        Solver-specific values appended to each log record.  Must only read :py:attr:`~pyeed.abc.Solver._mstate`.
        """
        return dict()

    def solution(self):
        """
        Result of the scheme.  (Sub-class dependent.)
        """
        raise NotImplementedError

    def stats(self) -> tuple[dict[str, typ.Any], typ.Optional[np.ndarray]]:
        """
        Query solver state.

        Returns
        -------
        data: dict
            Values of the `log_var` variables after the last iteration.  (None if unknown.)
        history: numpy.ndarray, None
            (N_eval,) records: field ``iteration`` plus one field per stopping-criterion statistic, sampled every
            `stop_rate` iterations.
        """
        data = {k: self._mstate.get(k) for k in self._astate["log_var"]}

        records = self._astate["history"]
        if len(records) == 0:
            return data, None
        names = list(records[-1][1])
        values = np.array([[info[k] for k in names] for _, info in records])
        dtype = [("iteration", np.int64)] + [(k, values.dtype) for k in names]
        history = np.array(
            [(idx, *v) for (idx, _), v in zip(records, values.tolist())],
            dtype=dtype,
        )
        return data, history

    @property
    def workdir(self) -> pet.Path:
        """
        Absolute path to the working directory.
        """
        return self._astate["workdir"]

    @property
    def logfile(self) -> pet.Path:
        return self.workdir / "solver.log"

    @property
    def datafile(self) -> pet.Path:
        """
        Directory holding checkpoints of `log_var` variables and of the history.
        """
        return self.workdir / "data.zarr"

    @property
    def logger(self) -> logging.Logger:
        """
        Logger of the current (or last) run.
        """
        return self._astate["logger"]

    def writeback(self):
        """
        Checkpoint `log_var` variables and history to :py:attr:`~pyeed.abc.Solver.datafile`.
        """
        data, history = self.stats()
        peu.save_zarr(self.datafile, {"history": history, **data})

    def _run(self, stop_crit: StoppingCriterion, stdout: bool, kwargs: dict) -> cabc.Generator:
        if stop_crit is None:
            stop_crit = self.default_stop_crit()
        stop_crit.clear()

        self._mstate.clear()
        self._astate.update(
            idx=0,
            history=[],
            stop_crit=stop_crit,
            logger=self._open_logger(stdout),
        )
        try:
            self.m_init(**kwargs)
            self._persist()
            while self._step():
                data, _ = self.stats()
                yield data
        finally:
            self._close_logger()

    def _step(self) -> bool:
        # Returns False once the run is over.
        ast = self._astate  # shorthand
        idx = ast["idx"]
        evaluate = idx % ast["stop_rate"] == 0
        try:
            if evaluate:
                done = ast["stop_crit"].stop(self._mstate)
                ast["history"].append((idx, ast["stop_crit"].info()))
                if done:
                    self._log_iteration()
                    self.logger.info(f"[{dt.datetime.now()}] Stopping Criterion satisfied -> END")
                    if ast["wb_rate"] is not None:
                        self.writeback()
                    return False
            if idx % ast["log_rate"] == 0:
                self._log_iteration()
            if ast["wb_rate"] and (idx % ast["wb_rate"] == 0):
                self.writeback()

            self.m_step()
            ast["idx"] += 1
            if evaluate:
                self._persist()
            return True
        except Exception:
            self.logger.exception(f"[{dt.datetime.now()}] Something went wrong at iteration {idx} -> EXCEPTION RAISED")
            raise

    def _log_iteration(self):
        ast = self._astate
        lines = [f"[{dt.datetime.now()}] Iteration {ast['idx']:>_d}"]
        if len(ast["history"]) > 0:
            _, info = ast["history"][-1]
            lines.extend(f"\t{k}: {v}" for (k, v) in info.items())
        lines.extend(f"\t{k}: {v}" for (k, v) in self.diagnostics().items())
        self.logger.info("\n".join(lines))

    def _persist(self):
        # Materialize DASK arrays of the math state so that iterations do not grow an ever-longer task graph.
        lazy = [k for (k, v) in self._mstate.items() if dask.is_dask_collection(v)]
        if len(lazy) > 0:
            values = dask.persist(*[self._mstate[k] for k in lazy])
            self._mstate.update(zip(lazy, values))

    def _open_logger(self, stdout: bool) -> logging.Logger:
        logger = logging.getLogger(str(self.workdir))
        logger.handlers.clear()
        logger.setLevel("DEBUG")
        logger.propagate = False

        fmt = logging.Formatter(fmt="{levelname} -- {message}", style="{")
        handlers = [logging.FileHandler(self.logfile, mode="w")]
        if stdout:
            handlers.append(logging.StreamHandler(sys.stdout))
        for h in handlers:
            h.setFormatter(fmt)
            logger.addHandler(h)
        return logger

    def _close_logger(self):
        # Loggers are never garbage-collected once registered: drop ours at the end of each run.
        logger = self._astate["logger"]
        for h in list(logger.handlers):
            h.close()
            logger.removeHandler(h)
        logging.Logger.manager.loggerDict.pop(logger.name, None)
