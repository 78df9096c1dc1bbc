"""Core interface for energy models.

Every model is a ``torch.nn.Module`` that maps an
:class:`~torch_dofs.state.AtomsState` to a dictionary of tensors. Models report
the potential energy as a 0-d tensor and, when enabled, forces with shape
(n_atoms, 3) and the Cauchy stress with shape (3, 3). The stress follows the
convention ``sigma = (1 / V) dE/d(eps)`` for a homogeneous strain ``eps`` applied
to positions and cell together.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import torch

from torch_dofs.typing import ModelOutput


if TYPE_CHECKING:
    from torch_dofs.state import AtomsState


class ModelInterface(torch.nn.Module, ABC):
    """Abstract base class for energy models.

    Subclasses set ``_device``, ``_dtype``, ``_compute_forces`` and
    ``_compute_stress`` in their constructor and implement :meth:`forward`.

    Examples:
        >>> model = LennardJonesModel(sigma=3.405, epsilon=0.0104, cutoff=8.5)
        >>> state.model = model
        >>> state.energy()
    """

    _device: torch.device
    _dtype: torch.dtype
    _compute_forces: bool = True
    _compute_stress: bool = False

    @property
    def device(self) -> torch.device:
        """The device of the model."""
        return self._device

    @property
    def dtype(self) -> torch.dtype:
        """The data type used by the model."""
        return self._dtype

    @property
    def compute_forces(self) -> bool:
        """Whether the model computes forces."""
        return self._compute_forces

    @property
    def compute_stress(self) -> bool:
        """Whether the model computes the stress tensor."""
        return self._compute_stress

    @abstractmethod
    def forward(self, state: "AtomsState") -> ModelOutput:
        """Calculate energy, and optionally forces and stress, for a state.

        Args:
            state: Atomistic state to evaluate

        Returns:
            Dictionary with key ``energy`` and, when enabled, ``forces`` and
            ``stress``
        """
