"""
Edge-enhancing anisotropic diffusion of N-dimensional scalar images.

Sub-packages:

* :py:mod:`pyeed.math`: symmetric-tensor storage and batched eigen-decomposition;
* :py:mod:`pyeed.operator`: structure tensors, diffusion tensors and the divergence stencil;
* :py:mod:`pyeed.opt`: explicit time integration and stopping criteria.
"""
