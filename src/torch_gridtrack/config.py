"""Run configuration, loadable from YAML.

Example of configuration file::

    diffusion: 0.1
    resolution: 1.0
    tsave:
      start: 1
      stop: 200
      step: 10
    dtype: float64
    device: cpu
    smooth: true
"""

from __future__ import annotations

import collections.abc
import dataclasses
import os
from typing import Any, Iterable, Sequence

import torch
import yaml

from .grid_filter import ObservationModel, ProgressCallback
from .kernel import make_kernel
from .schedule import SaveSchedule
from .tracking import TrackingResult, track

DTYPES = {
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
    "float32": torch.float32,
    "float64": torch.float64,
}


@dataclasses.dataclass
class TrackingConfig:
    """Parameters of a tracking run.

    Attributes:
        diffusion (float): Diffusion coefficient D.
        resolution (float): Spatial resolution h of the grid.
        tsave (list[int] | dict[str, int]): Saved time indices, either explicit or as a
            ``{start, stop, step}`` mapping (see :meth:`SaveSchedule.regular`).
        dtype (str): Name of the torch floating dtype used for computations.
            Default: "float32"
        device (str): Torch device used for computations.
            Default: "cpu"
        smooth (bool): Run the smoother after the filter.
            Default: True
        show_progress (bool): Display progress bars.
            Default: False
    """

    diffusion: float
    resolution: float
    tsave: list[int] | dict[str, int]
    dtype: str = "float32"
    device: str = "cpu"
    smooth: bool = True
    show_progress: bool = False

    def __post_init__(self) -> None:
        if not self.diffusion > 0:
            raise ValueError(f"The diffusion coefficient must be positive. Found {self.diffusion}")
        if not self.resolution > 0:
            raise ValueError(f"The spatial resolution must be positive. Found {self.resolution}")
        if self.dtype not in DTYPES:
            raise ValueError(f"Unsupported dtype {self.dtype!r}. Choose among {list(DTYPES)}")

        self.schedule()  # Validate the schedule early

    @property
    def torch_dtype(self) -> torch.dtype:
        return DTYPES[self.dtype]

    @property
    def torch_device(self) -> torch.device:
        return torch.device(self.device)

    def schedule(self) -> SaveSchedule:
        """Build the save schedule."""
        if isinstance(self.tsave, dict):
            unknown = set(self.tsave) - {"start", "stop", "step"}
            if unknown:
                raise ValueError(f"Unknown schedule keys: {sorted(unknown)}")
            if "stop" not in self.tsave:
                raise ValueError(f"A regular schedule requires a stop time. Found {self.tsave}")
            return SaveSchedule.regular(self.tsave.get("start", 1), self.tsave["stop"], self.tsave.get("step", 1))

        if isinstance(self.tsave, (str, bytes)) or not isinstance(self.tsave, collections.abc.Sequence):
            raise ValueError(f"Expected a list of time indices or a mapping. Found {self.tsave!r}")

        return SaveSchedule(self.tsave)

    def make_kernel(self) -> tuple[torch.Tensor, int]:
        """Build the diffusion kernel with the configured precision and device."""
        return make_kernel(self.diffusion, self.resolution, dtype=self.torch_dtype, device=self.torch_device)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingConfig:
        """Create a config from a mapping, rejecting unknown keys."""
        fields = {field.name for field in dataclasses.fields(cls)}
        unknown = set(data) - fields
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | os.PathLike) -> TrackingConfig:
        """Load a config from a YAML file."""
        with open(path, encoding="utf-8") as file:
            data: dict[str, Any] | None = yaml.safe_load(file)

        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping at the top level of {path}")

        return cls.from_dict(data)

    def run(
        self,
        initial_field: torch.Tensor,
        bathymetry: torch.Tensor,
        observations: Sequence[Any] = (),
        observation_models: Sequence[ObservationModel] = (),
        distances: Iterable[torch.Tensor] | torch.Tensor = (),
        progress: ProgressCallback | None = None,
    ) -> TrackingResult:
        """Track an agent with this configuration (see :func:`~torch_gridtrack.track`)."""
        return track(
            initial_field,
            bathymetry,
            observations,
            observation_models,
            distances,
            diffusion=self.diffusion,
            resolution=self.resolution,
            tsave=self.schedule(),
            dtype=self.torch_dtype,
            device=self.torch_device,
            smooth=self.smooth,
            progress=progress,
            show_progress=self.show_progress,
        )

    def to_yaml(self) -> str:
        return yaml.safe_dump(dataclasses.asdict(self), sort_keys=False)
