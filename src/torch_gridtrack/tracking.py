"""Functional entry points.

These wrap :class:`~torch_gridtrack.GridFilter` with a flat signature: grid, kernel and
sensors are given at each call. ``track`` runs the whole pipeline (kernel, filter, smoother).
"""

from __future__ import annotations

import dataclasses
from typing import Any, Iterable, Sequence

import torch

from .grid_filter import FilterResult, GridFilter, ObservationModel, ProgressCallback, SmootherResult
from .kernel import make_kernel
from .schedule import ScheduleLike


def build_kernel(diffusion: float, resolution: float, precision: torch.dtype = torch.float32):
    """Alias of :func:`make_kernel` with a positional precision."""
    return make_kernel(diffusion, resolution, dtype=precision)


def run_filter(
    initial_field: torch.Tensor,
    kernel: torch.Tensor,
    bathymetry: torch.Tensor,
    observations: Sequence[Any],
    observation_models: Sequence[ObservationModel],
    distances: Iterable[torch.Tensor] | torch.Tensor,
    *,
    n_hops: int,
    tsave: ScheduleLike,
    progress: ProgressCallback | None = None,
    show_progress=False,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Run the forward filter (see :meth:`GridFilter.filter`).

    Returns:
        torch.Tensor: Filtered distributions at each saved time.
            Shape: ``(S, nx, ny)``
        torch.Tensor: Log-likelihood increments at each saved time.
            Shape: ``(S,)``
    """
    grid_filter = GridFilter(kernel, n_hops, bathymetry, observations, observation_models, distances)
    result = grid_filter.filter(initial_field, tsave, progress=progress, show_progress=show_progress)
    return result.fields, result.log_likelihoods


def run_smoother(
    filtered_fields: torch.Tensor,
    kernel: torch.Tensor,
    bathymetry: torch.Tensor,
    observations: Sequence[Any],
    observation_models: Sequence[ObservationModel],
    distances: Iterable[torch.Tensor] | torch.Tensor,
    *,
    n_hops: int,
    tsave: ScheduleLike,
    progress: ProgressCallback | None = None,
    show_progress=False,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Run the backward smoother (see :meth:`GridFilter.smooth`).

    Returns:
        torch.Tensor: Smoothed distributions at each saved time.
            Shape: ``(S, nx, ny)``
        torch.Tensor: Residence distribution.
            Shape: ``(nx, ny)``
    """
    grid_filter = GridFilter(kernel, n_hops, bathymetry, observations, observation_models, distances)
    result = grid_filter.smooth(filtered_fields, tsave, progress=progress, show_progress=show_progress)
    return result.fields, result.residence


@dataclasses.dataclass
class TrackingResult:
    """Filtered (and optionally smoothed) distributions of a tracked agent.

    Attributes:
        filtered (FilterResult): Output of the forward filter.
        smoothed (SmootherResult | None): Output of the smoother (None if not requested).
    """

    filtered: FilterResult
    smoothed: SmootherResult | None = None

    @property
    def log_likelihood(self) -> torch.Tensor:
        """Log-likelihood of all the observations (sum of the log normalizers of the filter)."""
        return self.filtered.log_likelihood


def track(
    initial_field: torch.Tensor,
    bathymetry: torch.Tensor,
    observations: Sequence[Any],
    observation_models: Sequence[ObservationModel],
    distances: Iterable[torch.Tensor] | torch.Tensor,
    *,
    diffusion: float,
    resolution: float,
    tsave: ScheduleLike,
    dtype: torch.dtype = torch.float32,
    device: torch.device | str | None = None,
    smooth=True,
    progress: ProgressCallback | None = None,
    show_progress=False,
) -> TrackingResult:
    """Estimate the location distribution of an agent over time.

    Builds the diffusion kernel from ``diffusion`` and ``resolution``, filters the
    observations, then smooths the filtered distributions (unless ``smooth=False``).

    Args:
        initial_field (torch.Tensor): Initial distribution at ``tsave[0]``.
            Shape: ``(nx, ny)``
        bathymetry (torch.Tensor): Depth of each cell (negative for land).
            Shape: ``(nx, ny)``
        observations (Sequence[Any]): Signals of each sensor.
        observation_models (Sequence[ObservationModel]): Likelihood model of each sensor.
        distances (Iterable[torch.Tensor] | torch.Tensor): Distance array of each sensor.
            Shape: ``(nx, ny)`` each (or ``(K, nx, ny)``)
        diffusion (float): Diffusion coefficient.
        resolution (float): Spatial resolution of the grid.
        tsave (SaveSchedule | Sequence[int]): Saved time indices.
        dtype (torch.dtype): Precision of the computations.
            Default: torch.float32
        device (torch.device | str | None): Device used for the computations.
            Default: None (default torch device)
        smooth (bool): Also run the smoother.
            Default: True
        progress (Callable[[int], None] | None): Called with the time index after each filter step,
            then with the earlier time index of each smoothed interval.
            Default: None
        show_progress (bool): Display progress bars.
            Default: False

    Returns:
        TrackingResult: Filtered and smoothed distributions.
    """
    kernel, n_hops = make_kernel(diffusion, resolution, dtype=dtype, device=device)
    grid_filter = GridFilter(kernel, n_hops, bathymetry, observations, observation_models, distances)

    filtered = grid_filter.filter(initial_field, tsave, progress=progress, show_progress=show_progress)
    if not smooth:
        return TrackingResult(filtered)

    return TrackingResult(filtered, grid_filter.smooth(filtered, progress=progress, show_progress=show_progress))
