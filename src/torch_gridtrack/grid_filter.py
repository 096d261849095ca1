from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Iterable, Sequence, Union, overload

import torch
import torch.nn.functional as F
import tqdm.auto as tqdm

from .schedule import SaveSchedule, ScheduleLike, as_schedule

logger = logging.getLogger(__name__)

# Vectorized likelihood: (signals, t, bathymetry, distance) -> tensor broadcastable to the grid
ObservationModel = Callable[[Any, int, torch.Tensor, torch.Tensor], Union[torch.Tensor, float]]

# Called once per outer iteration with the current time index (or interval start for the smoother)
ProgressCallback = Callable[[int], None]


class IncompatibleObservationError(RuntimeError):
    """All the probability mass vanished (or exploded) at a given time step.

    This happens when the observations are incompatible with the motion model,
    for instance when a sensor rules out every cell reachable from the previous distribution.

    Attributes:
        time (int): Time index where the normalization failed.
        normalizer (float): The offending normalization constant.
    """

    def __init__(self, time: int, normalizer: float) -> None:
        super().__init__(
            f"No solution at time point {time} (normalizer: {normalizer}). Check for data incompatibilities."
        )
        self.time = time
        self.normalizer = normalizer


def divzero(dividend: torch.Tensor, divisor: torch.Tensor) -> torch.Tensor:
    """Elementwise division where a division by zero yields zero.

    Non-zero divisors that are too small relative to the dividend would produce infinite
    values: the quotient is clamped to the largest representable float instead.

    Args:
        dividend (torch.Tensor): Numerator.
        divisor (torch.Tensor): Denominator. Broadcastable with ``dividend``.

    Returns:
        torch.Tensor: ``0`` where ``divisor == 0``, ``min(dividend / divisor, finfo.max)`` elsewhere.
    """
    quotient = dividend / divisor
    quotient = quotient.clamp(max=torch.finfo(quotient.dtype).max)
    return torch.where(divisor == 0, torch.zeros_like(quotient), quotient)


def _is_valid_normalizer(normalizer: torch.Tensor) -> bool:
    return bool(torch.isfinite(normalizer)) and bool(normalizer > 0)


@dataclasses.dataclass
class FilterResult:
    """Output of the forward filter.

    Attributes:
        fields: Filtered distributions P(s_t | y_{1:t}) at each saved time.
            Shape: ``(S, nx, ny)``
        log_likelihoods: Log-likelihood increments log P(y_{t_{j-1}+1:t_j} | y_{1:t_{j-1}}) for each saved time.
            The first one (initial distribution) is always 0.
            Shape: ``(S,)``
        schedule: Saved time indices.
    """

    fields: torch.Tensor
    log_likelihoods: torch.Tensor
    schedule: SaveSchedule

    @property
    def log_likelihood(self) -> torch.Tensor:
        """Total log-likelihood of the observations, log P(y_{1:T})."""
        return self.log_likelihoods.sum()

    def at(self, t: int) -> torch.Tensor:
        """Filtered distribution at the saved time ``t``."""
        return self.fields[self.schedule.index(t)]

    def to(self, fmt) -> FilterResult:
        """Convert the result to a specific device or dtype."""
        return FilterResult(self.fields.to(fmt), self.log_likelihoods.to(fmt), self.schedule)

    def __len__(self) -> int:
        return len(self.schedule)


@dataclasses.dataclass
class SmootherResult:
    """Output of the backward smoother.

    Attributes:
        fields: Smoothed distributions P(s_t | y_{1:T}) at each saved time.
            Shape: ``(S, nx, ny)``
        residence: Normalized sum of the smoothed distributions over every time step
            (saved or not), i.e. the expected fraction of time spent in each cell.
            Shape: ``(nx, ny)``
        schedule: Saved time indices.
    """

    fields: torch.Tensor
    residence: torch.Tensor
    schedule: SaveSchedule

    def at(self, t: int) -> torch.Tensor:
        """Smoothed distribution at the saved time ``t``."""
        return self.fields[self.schedule.index(t)]

    def to(self, fmt) -> SmootherResult:
        """Convert the result to a specific device or dtype."""
        return SmootherResult(self.fields.to(fmt), self.residence.to(fmt), self.schedule)

    def __len__(self) -> int:
        return len(self.schedule)


class GridFilter:
    """Bayesian filter and smoother for an agent diffusing on a 2D grid.

    The hidden state s_t is the grid cell occupied by the agent at time t. Between two
    time steps, the agent diffuses (discretized Fokker-Planck equation, see :func:`make_kernel`)
    and cannot stand on land (negative bathymetry). At each time step, several sensors
    independently observe the agent:

        P(s_t | s_{t-1}) = diffusion kernel (n_hops sub-steps) restricted to water
        P(y_t | s_t)     = prod_k model_k(signals_k, t, bathymetry, distance_k)

    The filter computes P(s_t | y_{1:t}) (and the likelihood of the observations), the
    smoother computes P(s_t | y_{1:T}) by a forward-backward recursion. This is the discrete
    state analogue of the Kalman filter and Rauch-Tung-Striebel smoother.

    Only the distributions at a few saved times are stored. The smoother recomputes the
    filter between two saved times to recover the missing intermediate states.

    Computations run on the device and with the dtype of ``kernel``. Every other tensor is
    converted accordingly at construction (use :meth:`to` to switch afterwards).

    Attributes:
        kernel (torch.Tensor): Diffusion stencil (conv2d weight layout).
            Shape: ``(1, 1, 3, 3)``
        n_hops (int): Number of stencil applications per time step.
        bathymetry (torch.Tensor): Depth of each cell. Negative values are land.
            Shape: ``(nx, ny)``
        observations (list[Any]): Signals of each sensor, given as is to the matching model.
        observation_models (list[ObservationModel]): Likelihood of each sensor. Each model is called
            as ``model(signals, t, bathymetry, distance)`` and must return non-negative values
            broadcastable to ``(nx, ny)``.
        distances (list[torch.Tensor]): Distance of each cell to the reference of each sensor.
            Shape: ``(nx, ny)`` each
        land (torch.Tensor): Boolean mask of forbidden cells.
            Shape: ``(nx, ny)``
    """

    def __init__(
        self,
        kernel: torch.Tensor,
        n_hops: int,
        bathymetry: torch.Tensor,
        observations: Sequence[Any] = (),
        observation_models: Sequence[ObservationModel] = (),
        distances: Iterable[torch.Tensor] | torch.Tensor = (),
    ) -> None:
        if kernel.dim() == 2:  # noqa: PLR2004
            kernel = kernel[None, None]
        if kernel.shape != (1, 1, 3, 3):
            raise ValueError(f"Expected a 3x3 diffusion kernel. Found shape {tuple(kernel.shape)}")
        if n_hops < 1:
            raise ValueError(f"The number of hops per time step must be positive. Found {n_hops}")

        self.kernel = kernel
        self.n_hops = int(n_hops)

        self.bathymetry = torch.as_tensor(bathymetry).to(dtype=kernel.dtype, device=kernel.device)
        if self.bathymetry.dim() != 2:  # noqa: PLR2004
            raise ValueError(f"Expected a 2D bathymetry. Found shape {tuple(self.bathymetry.shape)}")

        self.observations = list(observations)
        self.observation_models = list(observation_models)
        self.distances = [torch.as_tensor(d).to(dtype=kernel.dtype, device=kernel.device) for d in distances]

        if not len(self.observations) == len(self.observation_models) == len(self.distances):
            raise ValueError(
                "Each sensor requires signals, a likelihood model and a distance array. "
                f"Found {len(self.observations)} signals, {len(self.observation_models)} models "
                f"and {len(self.distances)} distances."
            )
        for distance in self.distances:
            if distance.shape != self.bathymetry.shape:
                raise ValueError(
                    f"Distance arrays must match the grid shape {self.shape}. Found {tuple(distance.shape)}"
                )

        self.land = self.bathymetry < 0

        # Backward operator: K = rot180(H). The diffusion stencil is symmetric so K = H,
        # but an advection term would break this symmetry.
        self._adjoint_kernel = kernel.flip(-2, -1)

    @property
    def shape(self) -> tuple[int, int]:
        """Grid shape ``(nx, ny)``."""
        return tuple(self.bathymetry.shape)  # type: ignore[return-value]

    @property
    def n_observations(self) -> int:
        """Number of sensors."""
        return len(self.observations)

    @property
    def device(self) -> torch.device:
        """Device of the filter."""
        return self.kernel.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the filter."""
        return self.kernel.dtype

    @overload
    def to(self, dtype: torch.dtype) -> GridFilter: ...

    @overload
    def to(self, device: torch.device) -> GridFilter: ...

    def to(self, fmt):
        """Convert a grid filter to a specific device or dtype.

        Tensor signals are also converted (integer signals keep their dtype).

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            GridFilter: The filter with the right format
        """

        def convert(signals):
            if not isinstance(signals, torch.Tensor):
                return signals
            if isinstance(fmt, torch.dtype) and not signals.is_floating_point():
                return signals
            return signals.to(fmt)

        return GridFilter(
            self.kernel.to(fmt),
            self.n_hops,
            self.bathymetry.to(fmt),
            [convert(signals) for signals in self.observations],
            self.observation_models,
            [distance.to(fmt) for distance in self.distances],
        )

    def _diffuse(self, field: torch.Tensor, kernel: torch.Tensor) -> torch.Tensor:
        shape = field.shape
        field = field.reshape(-1, 1, *shape[-2:])

        # One explicit Euler sub-step of the diffusion equation per convolution (zero-padded borders)
        for _ in range(self.n_hops):
            field = F.conv2d(field, kernel, padding=1)

        return field.reshape(shape).masked_fill_(self.land, 0)

    def predict(self, field: torch.Tensor) -> torch.Tensor:
        """Propagate a distribution one time step forward (transition operator).

        Applies the diffusion stencil ``n_hops`` times, then removes any mass on land.
        The result is not normalized.

        Args:
            field (torch.Tensor): Distribution at time t-1.
                Shape: ``(..., nx, ny)``

        Returns:
            torch.Tensor: Predicted (unnormalized) distribution at time t, a new tensor.
                Shape: ``(..., nx, ny)``
        """
        return self._diffuse(field, self.kernel)

    def propagate_back(self, message: torch.Tensor) -> torch.Tensor:
        """Propagate a backward message one time step back in time.

        This is the adjoint of :meth:`predict`: the rotated stencil is applied ``n_hops`` times
        and land cells are set to zero.

        Args:
            message (torch.Tensor): Backward message at time t.
                Shape: ``(..., nx, ny)``

        Returns:
            torch.Tensor: Backward message at time t-1, a new tensor.
                Shape: ``(..., nx, ny)``
        """
        return self._diffuse(message, self._adjoint_kernel)

    def update(self, field: torch.Tensor, t: int) -> tuple[torch.Tensor, torch.Tensor]:
        """Incorporate the observations of time ``t`` (in place).

        The field is multiplied by the likelihood of each sensor (in order), then normalized.
        The normalization constant Z is the likelihood of the observations at time t given
        the previous ones.

        Args:
            field (torch.Tensor): Predicted distribution at time t. Modified in place.
                Shape: ``(nx, ny)``
            t (int): Time index of the observations.

        Returns:
            torch.Tensor: The updated (normalized) distribution, i.e. ``field``.
                Shape: ``(nx, ny)``
            torch.Tensor: log(Z), the log-likelihood increment.
                Shape: ``()``

        Raises:
            IncompatibleObservationError: If Z is not finite or is zero.
        """
        for signals, model, distance in zip(self.observations, self.observation_models, self.distances):
            likelihood = model(signals, t, self.bathymetry, distance)
            field.mul_(torch.as_tensor(likelihood, dtype=self.dtype, device=self.device))

        normalizer = field.sum()
        if not _is_valid_normalizer(normalizer):
            raise IncompatibleObservationError(t, normalizer.item())

        field.div_(normalizer)
        return field, normalizer.log()

    def initial_field(self, initial: torch.Tensor) -> torch.Tensor:
        """Prepare an initial distribution: a normalized copy without mass on land.

        Args:
            initial (torch.Tensor): Initial (possibly unnormalized) distribution.
                Shape: ``(nx, ny)``

        Returns:
            torch.Tensor: Normalized initial distribution (new tensor).
                Shape: ``(nx, ny)``
        """
        field = torch.as_tensor(initial).to(dtype=self.dtype, device=self.device).clone()
        if field.shape != self.shape:
            raise ValueError(f"The initial distribution must match the grid shape {self.shape}. Found {field.shape}")

        field.masked_fill_(self.land, 0)
        total = field.sum()
        if not _is_valid_normalizer(total):
            raise ValueError(f"The initial distribution has no valid mass on water cells (total: {total.item()})")

        return field.div_(total)

    def filter(
        self,
        initial: torch.Tensor,
        tsave: ScheduleLike,
        *,
        progress: ProgressCallback | None = None,
        show_progress=False,
    ) -> FilterResult:
        """Run the forward filter from the first to the last saved time.

        The initial distribution is the (filtered) distribution at ``tsave[0]``. Then for
        each t in ``tsave[0] + 1, ..., tsave[-1]``: predict, update with the observations
        at t, and store the distribution (and the accumulated log-likelihood) when t is saved.

        Args:
            initial (torch.Tensor): Initial distribution at time ``tsave[0]``. It is masked
                and normalized on entry (the given tensor is not modified).
                Shape: ``(nx, ny)``
            tsave (SaveSchedule | Sequence[int]): Strictly increasing saved time indices.
            progress (Callable[[int], None] | None): Called with t after each time step.
            show_progress (bool): Display a progress bar.
                Default: False

        Returns:
            FilterResult: Filtered distributions and log-likelihood increments at each saved time.
        """
        schedule = as_schedule(tsave)
        field = self.initial_field(initial)

        fields = torch.empty((len(schedule), *self.shape), dtype=self.dtype, device=self.device)
        log_likelihoods = torch.zeros(len(schedule), dtype=self.dtype, device=self.device)
        fields[0] = field

        log_p = torch.zeros((), dtype=self.dtype, device=self.device)
        for t in tqdm.trange(schedule.start + 1, schedule.stop + 1, desc="Filtering", disable=not show_progress):
            field, log_z = self.update(self.predict(field), t)
            log_p += log_z

            if t in schedule:
                i = schedule.index(t)
                fields[i] = field
                log_likelihoods[i] = log_p
                log_p = torch.zeros_like(log_p)

            if progress is not None:
                progress(t)

        result = FilterResult(fields, log_likelihoods, schedule)
        logger.info(
            "Filtered %d time steps on a %dx%d grid (n_hops=%d, sensors=%d): log-likelihood=%.6g",
            schedule.stop - schedule.start,
            *self.shape,
            self.n_hops,
            self.n_observations,
            result.log_likelihood.item(),
        )
        return result

    def smooth(
        self,
        filtered: FilterResult | torch.Tensor,
        tsave: ScheduleLike | None = None,
        *,
        progress: ProgressCallback | None = None,
        show_progress=False,
    ) -> SmootherResult:
        """Run the backward smoother over filtered distributions.

        Intervals between consecutive saved times are processed from the last to the first.
        For each interval [t_a, t_b]:

        1. The filter is recomputed from t_a to t_b, keeping every predicted distribution
           P(s_t | y_{1:t-1}) and updated distribution P(s_t | y_{1:t}).
        2. Going back from t_b, the smoothed distribution is computed as

               P(s_{t-1} | y_{1:T}) ∝ P(s_{t-1} | y_{1:t-1}) * H^T [P(s_t | y_{1:T}) / P(s_t | y_{1:t-1})]

           where cells with a null prediction carry no backward information (see :func:`divzero`).

        Every smoothed distribution (saved or not) is accumulated into the residence distribution.

        Args:
            filtered (FilterResult | torch.Tensor): Output of :meth:`filter`, or the filtered
                distributions at each saved time.
                Shape: ``(S, nx, ny)``
            tsave (SaveSchedule | Sequence[int] | None): Saved time indices. Required if
                ``filtered`` is a tensor, otherwise it defaults to ``filtered.schedule``.
            progress (Callable[[int], None] | None): Called with t_a after each interval.
            show_progress (bool): Display a progress bar.
                Default: False

        Returns:
            SmootherResult: Smoothed distributions at each saved time and the residence distribution.
        """
        if isinstance(filtered, FilterResult):
            schedule = filtered.schedule if tsave is None else as_schedule(tsave)
            fields = filtered.fields
        else:
            if tsave is None:
                raise ValueError("The save schedule is required to smooth raw filtered distributions")
            schedule = as_schedule(tsave)
            fields = torch.as_tensor(filtered)

        fields = fields.to(dtype=self.dtype, device=self.device)
        if fields.shape != (len(schedule), *self.shape):
            raise ValueError(
                f"Expected filtered distributions of shape {(len(schedule), *self.shape)}. Found {tuple(fields.shape)}"
            )

        smoothed = torch.empty_like(fields)
        smoothed[-1] = fields[-1]  # Nothing observed after the last time: smoothed = filtered
        residence = fields[-1].clone()

        # Reconstruction buffers, shared by all intervals
        longest = max((t_b - t_a for _, t_a, t_b in schedule.intervals()), default=0)
        predicted = torch.empty((longest + 1, *self.shape), dtype=self.dtype, device=self.device)
        updated = torch.empty_like(predicted)

        intervals = list(schedule.intervals())[::-1]
        for j, t_a, t_b in tqdm.tqdm(intervals, desc="Smoothing", disable=not show_progress):
            length = t_b - t_a
            logger.debug("Smoothing interval %d: [%d, %d]", j, t_a, t_b)

            # 1) Recompute the filter inside the interval
            updated[0] = fields[j]
            for i in range(1, length + 1):
                predicted[i] = self.predict(updated[i - 1])
                updated[i] = predicted[i]
                self.update(updated[i], t_a + i)

            # 2) Backward recursion
            message = smoothed[j + 1].clone()
            for i in range(length, 0, -1):
                message = self.propagate_back(divzero(message, predicted[i]))
                message.mul_(updated[i - 1])

                normalizer = message.sum()
                if not _is_valid_normalizer(normalizer):
                    raise IncompatibleObservationError(t_a + i - 1, normalizer.item())
                message.div_(normalizer)

                residence += message

            # Inner times are never saved: only t_a is
            smoothed[j] = message

            if progress is not None:
                progress(t_a)

        residence /= residence.sum()

        logger.info("Smoothed %d intervals on a %dx%d grid", len(intervals), *self.shape)
        return SmootherResult(smoothed, residence, schedule)

    def __repr__(self) -> str:
        """Convert the grid filter into a readable string."""
        weights = self.kernel[0, 0]
        return "\n".join(
            [
                f"Grid Filter (Grid: {self.shape[0]}x{self.shape[1]}, Sensors: {self.n_observations})",
                f"Diffusion: center = {weights[1, 1].item():.4f}  &  edge = {weights[0, 1].item():.4f}"
                f"  &  hops = {self.n_hops}",
                f"Land: {int(self.land.sum().item())} / {self.land.numel()} cells",
            ]
        )
