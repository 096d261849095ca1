"""Example tracking a simulated tagged fish with a depth sensor and an acoustic receiver"""

import argparse
import logging
from typing import Tuple

import torch
import yaml

import torch_gridtrack


def make_basin(nx: int, ny: int) -> torch.Tensor:
    """Build a synthetic bathymetry: a bowl shaped basin with an island and land on the borders.

    Returns:
        torch.Tensor: Depth of each cell (negative for land)
            Shape: (nx, ny)
    """
    x = torch.linspace(-1, 1, nx)[:, None]
    y = torch.linspace(-1, 1, ny)[None]
    depth = 100 * (1 - x**2 - y**2)  # Deepest at the center, land in the corners

    island = ((x - 0.3) ** 2 + (y + 0.2) ** 2) < 0.02
    return torch.where(island, torch.full_like(depth, -10.0), depth)


def simulate(
    bathymetry: torch.Tensor, n: int, diffusion: float, receiver: Tuple[int, int], detection_range: float
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Simulate a random walk restricted to water, with its depth and acoustic detections.

    Returns:
        torch.Tensor: Positions of the fish (cell indices)
            Shape: (n, 2)
        torch.Tensor: Observed depth (fraction of the sea floor depth, with noise)
            Shape: (n,)
        torch.Tensor: Acoustic detections (1 if detected, else 0)
            Shape: (n,)
    """
    nx, ny = bathymetry.shape
    position = torch.tensor([nx // 2, ny // 2])
    positions = torch.empty((n, 2), dtype=torch.long)
    depths = torch.empty(n)
    detections = torch.empty(n)

    for t in range(n):
        if t:
            step = torch.round(torch.randn(2) * (2 * diffusion) ** 0.5).long()
            candidate = (position + step).clamp(torch.tensor([0, 0]), torch.tensor([nx - 1, ny - 1]))
            if bathymetry[candidate[0], candidate[1]] >= 0:
                position = candidate

        positions[t] = position
        floor = bathymetry[position[0], position[1]]
        depths[t] = floor * torch.rand(()).item()
        distance = ((position - torch.tensor(receiver)).float() ** 2).sum().sqrt()
        detections[t] = float(distance <= detection_range)

    return positions, depths, detections


def depth_model(signals: torch.Tensor, t: int, bathymetry: torch.Tensor, distance: torch.Tensor) -> torch.Tensor:
    """The fish cannot be deeper than the sea floor (with a small tolerance)"""
    return (bathymetry >= signals[t - 1] - 1.0).to(bathymetry.dtype)


def make_receiver_model(detection_range: float):
    def receiver_model(signals: torch.Tensor, t: int, bathymetry: torch.Tensor, distance: torch.Tensor):
        in_range = (distance <= detection_range).to(bathymetry.dtype)
        if signals[t - 1] > 0:
            return 0.9 * in_range
        return 1 - 0.9 * in_range

    return receiver_model


def main(config: torch_gridtrack.TrackingConfig, size: int, detection_range: float):
    torch.manual_seed(0)

    bathymetry = make_basin(size, size)
    receiver = (size // 2, size // 2 + size // 5)
    schedule = config.schedule()

    positions, depths, detections = simulate(bathymetry, schedule.stop, config.diffusion, receiver, detection_range)

    x = torch.arange(size)[:, None].float()
    y = torch.arange(size)[None].float()
    receiver_distance = ((x - receiver[0]) ** 2 + (y - receiver[1]) ** 2).sqrt()

    initial = torch.zeros(size, size)
    initial[positions[0, 0], positions[0, 1]] = 1.0

    result = config.run(
        initial,
        bathymetry,
        [depths, detections],
        [depth_model, make_receiver_model(detection_range)],
        [torch.zeros(size, size), receiver_distance],
    )

    def mean_error(fields: torch.Tensor) -> float:
        """Mean distance between the expected and the true positions at saved times"""
        fields = fields.to(torch.float64).cpu()
        expected_x = (fields * x.double()).sum(dim=(-2, -1))
        expected_y = (fields * y.double()).sum(dim=(-2, -1))
        truth = positions[[t - 1 for t in schedule]].double()
        return ((expected_x - truth[:, 0]) ** 2 + (expected_y - truth[:, 1]) ** 2).sqrt().mean().item()

    summary = {
        "log_likelihood": result.log_likelihood.item(),
        "filter_error": mean_error(result.filtered.fields),
    }
    if result.smoothed is not None:
        summary["smoother_error"] = mean_error(result.smoothed.fields)
        summary["residence_max"] = result.smoothed.residence.max().item()

    print(yaml.dump(summary))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Grid filtering example, tracking a simulated tagged fish")
    parser.add_argument(
        "--config",
        default=None,
        help="YAML configuration file (see torch_gridtrack.config). Default to a small built-in configuration.",
    )
    parser.add_argument("--size", default=60, type=int, help="Size of the square grid")
    parser.add_argument("--detection-range", default=5.0, type=float, help="Detection range of the receiver")
    parser.add_argument("--verbose", action="store_true", help="Log debug information")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.config:
        tracking_config = torch_gridtrack.TrackingConfig.from_yaml(args.config)
    else:
        tracking_config = torch_gridtrack.TrackingConfig(
            diffusion=0.5, resolution=1.0, tsave={"start": 1, "stop": 300, "step": 10}, show_progress=True
        )

    main(tracking_config, args.size, args.detection_range)
