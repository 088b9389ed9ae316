import contextlib
import math
import pathlib as plib
import tempfile
import warnings

import pyeed.abc as pea
import pyeed.info.deps as ped
import pyeed.info.error as pee
import pyeed.info.ptype as pet
import pyeed.info.warning as pew
import pyeed.math.linalg as peml
import pyeed.operator as peo
import pyeed.runtime as pert
import pyeed.util as peu

__all__ = [
    "DiffusionIntegrator",
    "edge_enhancing_diffusion",
]


class DiffusionIntegrator(pea.Solver):
    r"""
    Edge-enhancing anisotropic diffusion, integrated with an explicit (forward Euler) scheme.

    DiffusionIntegrator evolves an image :math:`u` according to

    .. math::

       \frac{\partial u}{\partial t} = \text{div}\left( \mathbf{D}(\mathbf{T}_{\sigma}(u)) \, \nabla u \right),
       \qquad
       u^{(k+1)} = u^{(k)} + \tau \, \text{div}\left( \mathbf{D}^{(k)} \nabla u^{(k)} \right),

    where :math:`\mathbf{T}_{\sigma}` is the :py:class:`~pyeed.operator.StructureTensor` and :math:`\mathbf{D}` the
    :py:class:`~pyeed.operator.DiffusionCoeffEdgeEnhancing` tensor field.  Noise is smoothed along edges, while diffusion
    across edges is suppressed.

    Remarks
    -------
    * Each iteration has two phases: (1) the update :math:`\text{div}(\mathbf{D} \nabla u)` is computed from the frozen
      image into a separate buffer; (2) the buffer is committed to the image.  No voxel update ever reads a partially
      updated image.

    * The diffusion tensor is rebuilt from the current image every `recompute_rate` iterations.  With the default
      `recompute_rate` = 1, iteration :math:`k+1` always uses the tensor of the image obtained at iteration :math:`k`.

    * All diffusion-tensor eigenvalues are bounded by the contrast parameter :math:`\lambda_{E}`.  The scheme is
      therefore stable for

      .. math::

         \tau \le \tau_{\max} = \frac{\min_{i} h_{i}^{2}}{2 D \lambda_{E}},

      a bound which is known before the first iteration.

    * :py:class:`~pyeed.opt.stop.MaxIter` is the default stopping criterion (10 iterations).

    Parameters (``__init__()``)
    ---------------------------
    * **dim_shape** (:py:attr:`~pyeed.info.ptype.NDArrayShape`)
      --
      (M1,...,MD) image shape.
    * **sampling** (:py:attr:`~pyeed.info.ptype.Real`, list[Real])
      --
      Grid spacing.
    * **sigma** (:py:attr:`~pyeed.info.ptype.Real`)
      --
      Integration scale of the structure tensor (> 0).
    * **gradient_sigma** (:py:attr:`~pyeed.info.ptype.Real`, :py:obj:`None`)
      --
      Derivative scale of the structure tensor (>= 0).  Defaults to ``sigma / 2``.
    * **contrast** (:py:attr:`~pyeed.info.ptype.Real`)
      --
      Contrast parameter :math:`\lambda_{E} > 0`.
    * **threshold** (:py:attr:`~pyeed.info.ptype.Real`)
      --
      Edge threshold :math:`C > 0`.
    * **order** (:py:class:`~pyeed.math.EigenOrder`)
      --
      Ordering policy of structure-tensor eigenpairs.
    * **truncate** (:py:attr:`~pyeed.info.ptype.Real`)
      --
      Truncate Gaussian kernels at this many standard deviations.
    * **mode** (:py:obj:`str`)
      --
      Boundary condition shared by all stages.  Defaults to zero-flux.
    * **max_workers** (:py:attr:`~pyeed.info.ptype.Integer`, :py:obj:`None`)
      --
      Number of threads used to evaluate the divergence stencil.
    * **\*\*kwargs** (:py:class:`~collections.abc.Mapping`)
      --
      Other keyword parameters passed on to :py:meth:`pyeed.abc.Solver.__init__`.

    Parameters (``fit()``)
    ----------------------
    * **x0** (:py:attr:`~pyeed.info.ptype.NDArray`)
      --
      (M1,...,MD) initial image.  Never modified.
    * **tau** (:py:attr:`~pyeed.info.ptype.Real`, :py:obj:`None`)
      --
      Time step.  Defaults to :math:`\tau_{\max}` if unspecified.
    * **recompute_rate** (:py:attr:`~pyeed.info.ptype.Integer`)
      --
      Number of iterations between two diffusion-tensor rebuilds (>= 1).
    * **strict** (:py:obj:`bool`)
      --
      Behaviour if :math:`\tau > \tau_{\max}`: raise :py:class:`~pyeed.info.error.ConfigurationError` (True, default),
      or clamp :math:`\tau` to :math:`\tau_{\max}` and emit a :py:class:`~pyeed.info.warning.StabilityWarning` (False).
    * **\*\*kwargs** (:py:class:`~collections.abc.Mapping`)
      --
      Other keyword parameters passed on to :py:meth:`pyeed.abc.Solver.fit`.
    """

    def __init__(
        self,
        dim_shape: pet.NDArrayShape,
        sampling: pet.Sampling = 1,
        sigma: pet.Real = 1.0,
        gradient_sigma: pet.Real = None,
        contrast: pet.Real = 1,
        threshold: pet.Real = 1,
        order: peml.EigenOrder = peml.EigenOrder.VALUE,
        truncate: pet.Real = 3.0,
        mode: str = peo.BOUNDARY_MODE,
        max_workers: pet.Integer = None,
        **kwargs,
    ):
        kwargs.update(
            log_var=kwargs.get("log_var", ("x",)),
        )
        super().__init__(**kwargs)

        self._dim_shape = peu.as_canonical_shape(dim_shape)
        self._sampling = peu.sanitize_sampling(sampling, len(self._dim_shape))

        self._structure = peo.StructureTensor(
            dim_shape=self._dim_shape,
            sigma=sigma,
            gradient_sigma=gradient_sigma,
            truncate=truncate,
            sampling=self._sampling,
            mode=mode,
        )
        self._coeff = peo.DiffusionCoeffEdgeEnhancing(
            dim_shape=self._dim_shape,
            structure_tensor=self._structure,
            contrast=contrast,
            threshold=threshold,
            order=order,
        )
        self._stencil = peo.DivergenceStencil(
            dim_shape=self._dim_shape,
            sampling=self._sampling,
            mode=mode,
            max_workers=max_workers,
        )

    @property
    def tau_max(self) -> float:
        """
        Largest stable time step.
        """
        return peo.stability_bound(self._sampling, self._coeff.contrast, ndim=len(self._dim_shape))

    def m_init(
        self,
        x0: pet.NDArray,
        tau: pet.Real = None,
        recompute_rate: pet.Integer = 1,
        strict: bool = True,
    ):
        peu.check_shape(x0, self._dim_shape, name="x0")
        mst = self._mstate  # shorthand

        tau_max = self.tau_max
        if tau is None:
            tau = tau_max
        else:
            try:
                assert tau > 0
                assert math.isfinite(tau)
                tau = float(tau)
            except Exception:
                raise pee.ConfigurationError(f"tau must be positive, got {tau}.")
            if tau > tau_max:
                msg = f"tau={tau} exceeds the stability bound tau_max={tau_max}."
                if strict:
                    raise pee.ConfigurationError(msg)
                warnings.warn(f"{msg} Clamped to tau_max.", pew.StabilityWarning)
                tau = tau_max

        try:
            assert int(recompute_rate) == recompute_rate
            assert int(recompute_rate) >= 1
            recompute_rate = int(recompute_rate)
        except Exception:
            raise pee.ConfigurationError(f"recompute_rate: expected positive integer, got {recompute_rate}.")

        x = pert.coerce(x0).copy()
        lazy = ped.NDArrayInfo.from_obj(x).is_lazy()
        xp = peu.get_array_module(x)
        mst.update(
            x=x,
            tau=tau,
            recompute_rate=recompute_rate,
            buffer=None if lazy else xp.empty_like(x),  # update buffer, allocated once per run
            structure_tensor=None,
            diffusion_tensor=None,
            stale=True,  # diffusion tensor must be (re)built before next update
            since_refresh=0,
            n_refresh=0,
            n_fallback=0,
            lambda_max=math.nan,
        )
        self.logger.info(f"tau={tau} (tau_max={tau_max}), recompute_rate={recompute_rate}")

    def _refresh(self):
        mst = self._mstate
        S = self._structure(mst["x"])
        field = self._coeff.from_structure(S)
        mst.update(
            structure_tensor=S,
            diffusion_tensor=field.tensor,
            n_fallback=field.n_fallback,
            lambda_max=float(field.lambda_max),
            stale=False,
            since_refresh=0,
            n_refresh=mst["n_refresh"] + 1,
        )
        msg = f"Diffusion tensor rebuilt: lambda_max={mst['lambda_max']}, n_fallback={mst['n_fallback']}"
        self.logger.debug(msg)

    def m_step(self):
        mst = self._mstate  # shorthand
        if mst["stale"]:
            self._refresh()

        # phase 1: compute update from frozen image
        update = self._stencil(mst["x"], mst["diffusion_tensor"], out=mst["buffer"])

        # phase 2: commit
        if mst["buffer"] is None:
            mst["x"] = mst["x"] + mst["tau"] * update
        else:
            update *= mst["tau"]
            mst["x"] += update

        mst["since_refresh"] += 1
        if mst["since_refresh"] >= mst["recompute_rate"]:
            mst["stale"] = True

    def default_stop_crit(self) -> pea.StoppingCriterion:
        from pyeed.opt.stop import MaxIter

        return MaxIter(n=10)

    def diagnostics(self) -> dict:
        mst = self._mstate
        return dict(
            tau=mst.get("tau"),
            n_refresh=mst.get("n_refresh"),
            n_fallback=mst.get("n_fallback"),
            lambda_max=mst.get("lambda_max"),
        )

    def solution(self) -> pet.NDArray:
        """
        Returns
        -------
        x: NDArray
            (M1,...,MD) diffused image.
        """
        return self._mstate.get("x")


def edge_enhancing_diffusion(
    image: pet.NDArray,
    sampling: pet.Sampling = 1,
    sigma: pet.Real = 1.0,
    gradient_sigma: pet.Real = None,
    contrast: pet.Real = 1,
    threshold: pet.Real = 1,
    tau: pet.Real = None,
    n_iter: pet.Integer = 10,
    recompute_rate: pet.Integer = 1,
    order: peml.EigenOrder = peml.EigenOrder.VALUE,
    strict: bool = True,
    max_workers: pet.Integer = None,
    **kwargs,
) -> pet.NDArray:
    r"""
    Edge-enhancing diffusion of an image.

    One-call interface to :py:class:`~pyeed.opt.solver.DiffusionIntegrator`.

    Parameters
    ----------
    image: NDArray
        (M1,...,MD) image.  Never modified.
    sampling: Real, list[Real]
        Grid spacing.
    sigma: Real
        Integration scale of the structure tensor.
    gradient_sigma: Real
        Derivative scale of the structure tensor.  Defaults to ``sigma / 2``.
    contrast: Real
        Contrast parameter :math:`\lambda_{E}`.
    threshold: Real
        Edge threshold :math:`C`.
    tau: Real
        Time step.  Defaults to the stability bound.
    n_iter: Integer
        Number of iterations (>= 0).  ``n_iter = 0`` returns a copy of `image`.
    recompute_rate: Integer
        Number of iterations between two diffusion-tensor rebuilds.
    order: EigenOrder
        Ordering policy of structure-tensor eigenpairs.
    strict: bool
        Raise if `tau` exceeds the stability bound (True), or clamp it (False).
    max_workers: Integer
        Number of threads used to evaluate the divergence stencil.
    kwargs: ~collections.abc.Mapping
        Other keyword parameters passed on to :py:meth:`pyeed.abc.Solver.__init__`.  Without a `folder`, the run
        happens in a temporary directory which is removed on return, together with its log file and checkpoints.

    Returns
    -------
    out: NDArray
        (M1,...,MD) diffused image, same backend as `image`, runtime precision.
    """
    from pyeed.opt.stop import MaxIter

    stop_crit = MaxIter(n=n_iter)
    kwargs.update(show_progress=kwargs.get("show_progress", False))
    with contextlib.ExitStack() as stack:
        if kwargs.get("folder") is None:
            tmp = stack.enter_context(tempfile.TemporaryDirectory(prefix="pyeed_"))
            kwargs.update(folder=plib.Path(tmp) / "run")
        slvr = DiffusionIntegrator(
            dim_shape=image.shape,
            sampling=sampling,
            sigma=sigma,
            gradient_sigma=gradient_sigma,
            contrast=contrast,
            threshold=threshold,
            order=order,
            max_workers=max_workers,
            **kwargs,
        )
        slvr.fit(
            x0=image,
            tau=tau,
            recompute_rate=recompute_rate,
            strict=strict,
            stop_crit=stop_crit,
        )
        return slvr.solution()
