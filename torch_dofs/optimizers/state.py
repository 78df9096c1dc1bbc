"""Optimizer state classes."""

from dataclasses import dataclass

import torch


@dataclass(kw_only=True)
class OptimState:
    """State of an optimization in dof space.

    The atomistic state is owned by the caller; this class only tracks the
    quantities the optimizer needs between iterations.

    Attributes:
        x (torch.Tensor): Current dof vector
        gradient (torch.Tensor): Energy gradient at ``x``
        energy (float): Energy at ``x``
        n_iter (int): Number of completed iterations
    """

    x: torch.Tensor
    gradient: torch.Tensor
    energy: float
    n_iter: int = 0

    @property
    def fmax(self) -> float:
        """Largest gradient component in absolute value."""
        if self.gradient.numel() == 0:
            return 0.0
        return self.gradient.abs().max().item()


@dataclass(kw_only=True)
class LBFGSState(OptimState):
    """State class for L-BFGS optimization.

    Extends OptimState with the limited history of dof and gradient differences.

    Attributes:
        s_history (torch.Tensor): Dof differences, shape (n_history, n_dofs)
        y_history (torch.Tensor): Gradient differences, shape (n_history, n_dofs)
        step_size (float): Damping factor applied to the search direction
        alpha (float): Fixed inverse Hessian stiffness, 0 for dynamic scaling
    """

    s_history: torch.Tensor
    y_history: torch.Tensor
    step_size: float = 1.0
    alpha: float = 0.0
