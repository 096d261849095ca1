"""Torch-GridTrack: Grid-based filtering and smoothing of diffusing agents in PyTorch.

torch-gridtrack estimates where a mobile agent (typically a tagged fish) is located over
time, on a 2D grid, from noisy and intermittent observations (depth, acoustic receivers...).
The motion model is a diffusion (discretized Fokker-Planck equation) constrained to water
cells, and each sensor contributes a likelihood over the grid.

It computes:
- the **filtered** distributions P(s_t | y_{1:t}) and the log-likelihood of the observations,
- the **smoothed** distributions P(s_t | y_{1:T}) and the **residence** distribution (expected
  fraction of time spent in each cell).

This is the discrete-state analogue of the Kalman filter and Rauch-Tung-Striebel smoother.

Key features
------------
- **Explicit diffusion**: a stable 3x3 stencil applied ``n_hops`` times per time step with ``conv2d``.
- **Memory bounded**: only a few time steps are saved, the smoother recomputes the others.
- **Runs on CPU or GPU**: every computation follows the device and dtype of the kernel.

Getting started
---------------
The core API consists of:
- :func:`~torch_gridtrack.make_kernel` to build the diffusion stencil.
- :class:`~torch_gridtrack.GridFilter` with :meth:`~torch_gridtrack.GridFilter.predict`,
  :meth:`~torch_gridtrack.GridFilter.update`, :meth:`~torch_gridtrack.GridFilter.filter`,
  and :meth:`~torch_gridtrack.GridFilter.smooth`.
- :func:`~torch_gridtrack.track` to run everything at once.

Notes on shapes
---------------
Distributions are ``(nx, ny)`` tensors. Saved distributions are stacked along a leading
time dimension: ``(S, nx, ny)`` for ``S`` saved times.
"""

from .config import TrackingConfig
from .grid_filter import (
    FilterResult,
    GridFilter,
    IncompatibleObservationError,
    ObservationModel,
    SmootherResult,
    divzero,
)
from .kernel import KernelStabilityError, make_kernel
from .schedule import SaveSchedule
from .tracking import TrackingResult, build_kernel, run_filter, run_smoother, track

__all__ = [
    "FilterResult",
    "GridFilter",
    "IncompatibleObservationError",
    "KernelStabilityError",
    "ObservationModel",
    "SaveSchedule",
    "SmootherResult",
    "TrackingConfig",
    "TrackingResult",
    "build_kernel",
    "divzero",
    "make_kernel",
    "run_filter",
    "run_smoother",
    "track",
]
__version__ = "0.1.0"
