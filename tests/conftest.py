import pytest
import torch


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


@pytest.fixture
def centered_point_mass() -> torch.Tensor:
    """Point mass at the center of a 5x5 grid."""
    field = torch.zeros(5, 5)
    field[2, 2] = 1.0
    return field


def pytest_runtest_setup(item):
    # Skip GPU tests (marked with @pytest.mark.cuda) on cpu-only machines
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
