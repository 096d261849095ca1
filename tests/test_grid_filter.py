import math

import pytest
import torch

from torch_gridtrack import GridFilter, IncompatibleObservationError, divzero, make_kernel


def point_mass(nx: int, ny: int, i: int, j: int, dtype=torch.float32) -> torch.Tensor:
    field = torch.zeros(nx, ny, dtype=dtype)
    field[i, j] = 1.0
    return field


def constant_model(value: float):
    def model(signals, t, bathymetry, distance):
        return torch.full_like(bathymetry, value)

    return model


def test_divzero():
    a = torch.tensor([0.0, 2.0, 3.0, 0.0, 1.0])
    b = torch.tensor([0.0, 0.0, 2.0, 5.0, 4.0])

    assert torch.equal(divzero(a, b), torch.tensor([0.0, 0.0, 1.5, 0.0, 0.25]))


def test_divzero_clamps_overflow():
    a = torch.tensor([1e30, 1.0])
    b = torch.tensor([1e-30, 1e-30])

    quotient = divzero(a, b)

    assert torch.isfinite(quotient).all()
    assert quotient[0] == torch.finfo(torch.float32).max
    assert torch.isclose(quotient[1], torch.tensor(1e30))


def test_predict_single_hop():
    kernel, n_hops = make_kernel(0.1, 1.0)
    grid_filter = GridFilter(kernel, n_hops, torch.ones(5, 5))

    predicted = grid_filter.predict(point_mass(5, 5, 2, 2))

    expected = torch.zeros(5, 5)
    expected[2, 2] = 0.6
    expected[1, 2] = expected[3, 2] = expected[2, 1] = expected[2, 3] = 0.1

    assert torch.allclose(predicted, expected)


def test_predict_several_hops_matches_repeated_convolution():
    kernel, n_hops = make_kernel(1.0, 1.0)
    grid_filter = GridFilter(kernel, n_hops, torch.ones(15, 15))
    single_hop = GridFilter(kernel, 1, torch.ones(15, 15))

    field = point_mass(15, 15, 7, 7)
    expected = field
    for _ in range(n_hops):
        expected = single_hop.predict(expected)

    predicted = grid_filter.predict(field)

    assert n_hops == 5
    assert torch.allclose(predicted, expected)
    assert torch.isclose(predicted.sum(), torch.tensor(1.0))  # No mass reached the borders


def test_predict_leaks_mass_at_borders_and_land():
    kernel, n_hops = make_kernel(0.1, 1.0)
    bathymetry = torch.ones(5, 5)
    bathymetry[0, 1] = -1.0

    grid_filter = GridFilter(kernel, n_hops, bathymetry)
    predicted = grid_filter.predict(point_mass(5, 5, 0, 0))

    assert predicted[0, 1] == 0
    assert torch.isclose(predicted.sum(), torch.tensor(0.6 + 0.1))  # Only center + [1, 0] remain


def test_predict_supports_batches():
    kernel, n_hops = make_kernel(0.3, 1.0)
    grid_filter = GridFilter(kernel, n_hops, torch.ones(6, 7))
    fields = torch.rand(3, 6, 7)

    predicted = grid_filter.predict(fields)

    assert predicted.shape == (3, 6, 7)
    for k in range(3):
        assert torch.allclose(predicted[k], grid_filter.predict(fields[k]))


def test_propagate_back_equals_predict_for_diffusion():
    kernel, n_hops = make_kernel(0.7, 1.0)
    bathymetry = torch.randn(8, 9)
    grid_filter = GridFilter(kernel, n_hops, bathymetry)
    field = torch.rand(8, 9)

    assert torch.allclose(grid_filter.propagate_back(field), grid_filter.predict(field))


def test_propagate_back_is_the_adjoint_of_predict():
    kernel = torch.rand(1, 1, 3, 3, dtype=torch.float64)  # Non symmetric stencil
    bathymetry = torch.randn(6, 6, dtype=torch.float64)
    grid_filter = GridFilter(kernel, 2, bathymetry)
    water = (~grid_filter.land).to(torch.float64)

    x = torch.rand(6, 6, dtype=torch.float64) * water
    y = torch.rand(6, 6, dtype=torch.float64) * water

    # <Hx, y> = <x, H^T y> on water cells
    assert torch.isclose((grid_filter.predict(x) * y).sum(), (x * grid_filter.propagate_back(y)).sum())


def test_update_normalizes_in_place():
    kernel, n_hops = make_kernel(0.1, 1.0)
    grid_filter = GridFilter(kernel, n_hops, torch.ones(4, 4), [None], [constant_model(0.5)], [torch.zeros(4, 4)])
    field = torch.full((4, 4), 1 / 16)

    updated, log_z = grid_filter.update(field, 2)

    assert updated is field
    assert torch.allclose(field, torch.full((4, 4), 1 / 16))
    assert torch.isclose(log_z, torch.tensor(math.log(0.5)))


def test_update_multiplies_every_sensor():
    kernel, n_hops = make_kernel(0.1, 1.0)
    distances = torch.stack([torch.arange(9.0).reshape(3, 3), torch.ones(3, 3)])

    def distance_model(signals, t, bathymetry, distance):
        return signals * distance

    def time_model(signals, t, bathymetry, distance):
        return signals[t] * distance

    grid_filter = GridFilter(
        kernel, n_hops, torch.ones(3, 3), [2.0, torch.tensor([0.0, 0.0, 3.0])], [distance_model, time_model], distances
    )

    field = torch.full((3, 3), 1 / 9)
    updated, log_z = grid_filter.update(field.clone(), 2)

    unnormalized = field * 2.0 * distances[0] * 3.0
    assert torch.allclose(updated, unnormalized / unnormalized.sum())
    assert torch.isclose(log_z, unnormalized.sum().log())


@pytest.mark.parametrize("value", [0.0, math.nan, math.inf])
def test_update_raises_on_incompatible_observations(value: float):
    kernel, n_hops = make_kernel(0.1, 1.0)
    grid_filter = GridFilter(kernel, n_hops, torch.ones(4, 4), [None], [constant_model(value)], [torch.zeros(4, 4)])

    with pytest.raises(IncompatibleObservationError) as error:
        grid_filter.update(torch.full((4, 4), 1 / 16), 7)

    assert error.value.time == 7
    assert "time point 7" in str(error.value)


def test_initial_field_is_masked_and_normalized():
    kernel, n_hops = make_kernel(0.1, 1.0)
    bathymetry = torch.ones(3, 3)
    bathymetry[0, 0] = -1.0
    grid_filter = GridFilter(kernel, n_hops, bathymetry)
    initial = torch.full((3, 3), 2.0)

    field = grid_filter.initial_field(initial)

    assert field[0, 0] == 0
    assert torch.isclose(field.sum(), torch.tensor(1.0))
    assert (initial == 2.0).all()  # Not modified

    with pytest.raises(ValueError):
        grid_filter.initial_field(point_mass(3, 3, 0, 0))

    with pytest.raises(ValueError):
        grid_filter.initial_field(torch.ones(4, 4))


def test_constructor_checks_sensors():
    kernel, n_hops = make_kernel(0.1, 1.0)

    with pytest.raises(ValueError):
        GridFilter(kernel, n_hops, torch.ones(4, 4), [None], [], [])

    with pytest.raises(ValueError):
        GridFilter(kernel, n_hops, torch.ones(4, 4), [None], [constant_model(1.0)], [torch.zeros(3, 3)])

    with pytest.raises(ValueError):
        GridFilter(torch.ones(1, 1, 5, 5), n_hops, torch.ones(4, 4))

    with pytest.raises(ValueError):
        GridFilter(kernel, 0, torch.ones(4, 4))

    with pytest.raises(ValueError):
        GridFilter(kernel, n_hops, torch.ones(4))


def test_constructor_accepts_2d_kernel_and_converts_inputs():
    kernel, n_hops = make_kernel(0.1, 1.0, dtype=torch.float64)
    bathymetry = torch.ones(4, 5, dtype=torch.int32)
    grid_filter = GridFilter(kernel[0, 0], n_hops, bathymetry, [None], [constant_model(1.0)], torch.zeros(1, 4, 5))

    assert grid_filter.kernel.shape == (1, 1, 3, 3)
    assert grid_filter.bathymetry.dtype == torch.float64
    assert grid_filter.distances[0].dtype == torch.float64
    assert grid_filter.shape == (4, 5)
    assert grid_filter.n_observations == 1


def test_to_convert_dtype():
    kernel, n_hops = make_kernel(0.1, 1.0)
    signals = torch.arange(10)
    grid_filter = GridFilter(kernel, n_hops, torch.ones(4, 4), [signals], [constant_model(1.0)], [torch.zeros(4, 4)])

    grid_filter64 = grid_filter.to(torch.float64)

    assert grid_filter64.dtype == torch.float64
    assert grid_filter64.bathymetry.dtype == torch.float64
    assert grid_filter64.distances[0].dtype == torch.float64
    assert grid_filter64.observations[0].dtype == torch.int64  # Integer signals are kept
    assert grid_filter64.n_hops == n_hops

    # And it should not affect the original filter
    assert grid_filter.dtype == torch.float32
    assert grid_filter.bathymetry.dtype == torch.float32


def test_repr():
    kernel, n_hops = make_kernel(0.1, 1.0)
    bathymetry = torch.ones(5, 6)
    bathymetry[0, :2] = -1.0
    grid_filter = GridFilter(kernel, n_hops, bathymetry, [None], [constant_model(1.0)], [torch.zeros(5, 6)])

    lines = str(grid_filter).split("\n")

    assert lines[0] == "Grid Filter (Grid: 5x6, Sensors: 1)"
    assert lines[1] == "Diffusion: center = 0.6000  &  edge = 0.1000  &  hops = 1"
    assert lines[2] == "Land: 2 / 30 cells"
