"""Optimizers driving a state through a constraint's dof mapping."""

from torch_dofs.optimizers.lbfgs import lbfgs_init, lbfgs_step, minimize
from torch_dofs.optimizers.state import LBFGSState, OptimState


__all__ = ["LBFGSState", "OptimState", "lbfgs_init", "lbfgs_step", "minimize"]
