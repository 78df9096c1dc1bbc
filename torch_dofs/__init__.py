"""torch-dofs package base module."""

from torch_dofs._version import __version__

# state and energy models
from torch_dofs.state import AtomsState
from torch_dofs.io import atoms_to_state, state_to_atoms
from torch_dofs.models import EinsteinModel, LennardJonesModel, ModelInterface

# constraints and the optimizer interface
from torch_dofs.constraints import (
    ConfigurationError,
    DofConstraint,
    FixedCell,
    VariableCell,
    analyze_mask,
    dofs,
    energy,
    gradient,
    project,
    project_matrix,
    set_dofs,
)

# optimization and testing
from torch_dofs.optimizers import LBFGSState, minimize
from torch_dofs.testing import fdtest, fdtest_state

__all__ = [
    "__version__",
    "AtomsState",
    "atoms_to_state",
    "state_to_atoms",
    "EinsteinModel",
    "LennardJonesModel",
    "ModelInterface",
    "ConfigurationError",
    "DofConstraint",
    "FixedCell",
    "VariableCell",
    "analyze_mask",
    "dofs",
    "energy",
    "gradient",
    "project",
    "project_matrix",
    "set_dofs",
    "LBFGSState",
    "minimize",
    "fdtest",
    "fdtest_state",
]
