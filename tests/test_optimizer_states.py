"""Unit tests for optimizer state classes."""

import pytest
import torch

from torch_dofs.optimizers.state import LBFGSState, OptimState


@pytest.fixture
def optim_data() -> dict:
    """Optimizer state data."""
    return {
        "x": torch.tensor([0.0, 1.0, 2.0], dtype=torch.float64),
        "gradient": torch.tensor([0.1, -0.3, 0.2], dtype=torch.float64),
        "energy": 1.5,
    }


def test_optim_state_init(optim_data: dict) -> None:
    """Test OptimState initialization."""
    state = OptimState(**optim_data)
    assert torch.equal(state.x, optim_data["x"])
    assert torch.equal(state.gradient, optim_data["gradient"])
    assert state.energy == 1.5
    assert state.n_iter == 0


def test_optim_state_fmax(optim_data: dict) -> None:
    """Test fmax is the sup-norm of the gradient."""
    assert OptimState(**optim_data).fmax == pytest.approx(0.3)

    optim_data["gradient"] = torch.zeros(0, dtype=torch.float64)
    assert OptimState(**optim_data).fmax == 0.0


def test_optim_state_is_keyword_only(optim_data: dict) -> None:
    """Test positional construction is rejected."""
    with pytest.raises(TypeError):
        OptimState(*optim_data.values())


def test_lbfgs_state_defaults(optim_data: dict) -> None:
    """Test LBFGSState default values."""
    empty = torch.zeros((0, 3), dtype=torch.float64)
    state = LBFGSState(**optim_data, s_history=empty, y_history=empty.clone())

    assert state.step_size == 1.0
    assert state.alpha == 0.0
    assert state.s_history.shape == (0, 3)
    assert isinstance(state, OptimState)
