"""Save schedule: the time indices at which filtered/smoothed fields are stored."""

from __future__ import annotations

from typing import Iterable, Iterator, Sequence, Union

import torch


def _as_time_index(t) -> int:
    index = int(t)
    if index != t:
        raise ValueError(f"Time indices must be integers. Found {t!r}")
    return index


class SaveSchedule(Sequence[int]):
    """Strictly increasing sequence of time indices where results are persisted.

    Time indices are integers, the first one is the time of the initial distribution.
    The last one (``stop``) is the last time step processed by the filter.

    The mapping from a time index to its position in the schedule is built once
    and stored in a dict.

    Attributes:
        times (tuple[int, ...]): Saved time indices.
    """

    def __init__(self, times: Iterable[int]) -> None:
        self.times = tuple(_as_time_index(t) for t in times)

        if not self.times:
            raise ValueError("The save schedule must contain at least one time index")

        for previous, current in zip(self.times[:-1], self.times[1:]):
            if current <= previous:
                raise ValueError(f"The save schedule must be strictly increasing. Found {previous} then {current}")

        self._index = {t: i for i, t in enumerate(self.times)}

    @classmethod
    def regular(cls, start: int, stop: int, step=1) -> SaveSchedule:
        """Build a regular schedule from ``start`` to ``stop`` (always included).

        Example:
            >>> SaveSchedule.regular(1, 10, 4).times
            (1, 5, 9, 10)

        Args:
            start (int): First time index (initial distribution).
            stop (int): Last time index.
            step (int): Number of time steps between two saves.
                Default: 1

        Returns:
            SaveSchedule: The regular schedule.
        """
        if step < 1:
            raise ValueError(f"The step must be a positive integer. Found {step}")
        if stop < start:
            raise ValueError(f"Cannot build a schedule from {start} to {stop}")

        times = list(range(start, stop + 1, step))
        if times[-1] != stop:
            times.append(stop)
        return cls(times)

    @property
    def start(self) -> int:
        """Time of the initial distribution."""
        return self.times[0]

    @property
    def stop(self) -> int:
        """Last time index (tmax)."""
        return self.times[-1]

    def index(self, t: int) -> int:  # type: ignore[override]
        """Position of the time index ``t`` in the schedule.

        Raises:
            KeyError: If ``t`` is not a saved time.
        """
        return self._index[t]

    def intervals(self) -> Iterator[tuple[int, int, int]]:
        """Iterate over consecutive saved times.

        Yields:
            tuple[int, int, int]: ``(j, times[j], times[j + 1])`` for each interval.
        """
        for j in range(len(self.times) - 1):
            yield j, self.times[j], self.times[j + 1]

    def __contains__(self, t: object) -> bool:
        return t in self._index

    def __getitem__(self, idx):
        return self.times[idx]

    def __len__(self) -> int:
        return len(self.times)

    def __iter__(self) -> Iterator[int]:
        return iter(self.times)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SaveSchedule):
            return self.times == other.times
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.times)

    def __repr__(self) -> str:
        return f"SaveSchedule({list(self.times)})"


ScheduleLike = Union[SaveSchedule, Sequence[int], range, torch.Tensor]


def as_schedule(tsave: ScheduleLike) -> SaveSchedule:
    """Convert ``tsave`` into a :class:`SaveSchedule` (no copy if it already is one)."""
    if isinstance(tsave, SaveSchedule):
        return tsave
    if isinstance(tsave, torch.Tensor):
        return SaveSchedule(tsave.tolist())
    return SaveSchedule(tsave)
