"""Diffusion kernel for the explicit Fokker-Planck integrator.

The motion model is pure diffusion on a regular grid:

    dp/dt = D * (d²p/dx² + d²p/dy²)

discretized with the classical 5-point Laplacian and an explicit Euler scheme.
One outer time step is split into ``n_hops`` sub-steps of length ``Δ = 1 / n_hops``
so that the scheme remains stable:

    4 * D * Δ / h² < 1

Each sub-step is then a single 3x3 convolution with the stencil::

    [
        [0, r,        0],
        [r, 1 - 4 r,  r],
        [0, r,        0],
    ]

where ``r = D * Δ / h²``.
"""

from __future__ import annotations

import logging
import math

import torch

logger = logging.getLogger(__name__)

# Keeps the number of hops strictly inside the stability region
STABILITY_MARGIN = 0.99


class KernelStabilityError(RuntimeError):
    """The diffusion stencil violates the explicit scheme stability condition."""


def stability_number(diffusion: float, resolution: float, n_hops: int) -> float:
    """Compute ``4 * D * Δ / h²`` with ``Δ = 1 / n_hops``.

    The explicit scheme is stable iff this number is strictly lower than 1.
    """
    return 4 * diffusion / n_hops / resolution**2


def make_kernel(
    diffusion: float,
    resolution: float,
    *,
    dtype: torch.dtype = torch.float32,
    device: torch.device | str | None = None,
) -> tuple[torch.Tensor, int]:
    """Compute the diffusion stencil and the number of sub-steps per time step.

    Example:
        >>> kernel, n_hops = make_kernel(0.1, 1.0)
        >>> n_hops
        1
        >>> kernel[0, 0]
        tensor([[0.0000, 0.1000, 0.0000],
                [0.1000, 0.6000, 0.1000],
                [0.0000, 0.1000, 0.0000]])

    Args:
        diffusion (float): Diffusion coefficient ``D`` (in cell units² per time step once divided by ``h²``).
        resolution (float): Spatial resolution ``h`` of the grid.
        dtype (torch.dtype): Precision of the returned kernel.
            Default: torch.float32
        device (torch.device | str | None): Device of the returned kernel.
            Default: None (default torch device)

    Returns:
        torch.Tensor: Convolution kernel, in the ``conv2d`` weight layout.
            Shape: ``(1, 1, 3, 3)``
        int: Number of sub-steps (hops) per outer time step.

    Raises:
        ValueError: If ``diffusion`` or ``resolution`` is not strictly positive.
        KernelStabilityError: If the resulting stencil is unstable (should never happen).
    """
    if not diffusion > 0:
        raise ValueError(f"The diffusion coefficient must be positive. Found {diffusion}")
    if not resolution > 0:
        raise ValueError(f"The spatial resolution must be positive. Found {resolution}")

    n_hops = math.ceil(4 * diffusion / (resolution**2 * STABILITY_MARGIN))
    if stability_number(diffusion, resolution, n_hops) >= 1:
        raise KernelStabilityError(
            f"Unstable diffusion stencil: 4*D*Δ/h² = {stability_number(diffusion, resolution, n_hops)} >= 1 "
            f"(D={diffusion}, h={resolution}, n_hops={n_hops})"
        )

    rate = diffusion / n_hops / resolution**2

    # Identity + rate * 5-point laplacian. Computed in float64 then casted.
    kernel = torch.zeros(3, 3, dtype=torch.float64)
    kernel[1, 1] = 1.0
    kernel += rate * torch.tensor([[0.0, 1.0, 0.0], [1.0, -4.0, 1.0], [0.0, 1.0, 0.0]], dtype=torch.float64)

    logger.debug("Diffusion kernel: D=%g, h=%g -> n_hops=%d, rate=%g", diffusion, resolution, n_hops, rate)

    return kernel.reshape(1, 1, 3, 3).to(dtype=dtype, device=device), n_hops
