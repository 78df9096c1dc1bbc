"""Atomistic state container.

The state holds a single periodic (or open) system: atom positions, the cell and
per-atom metadata. An energy model can be attached to it, in which case energy,
forces and stress are evaluated on demand and cached until the positions or the
cell change.

The cell is stored in column-vector convention, i.e. ``cell[:, i]`` is the i-th
lattice vector. With this convention the cell is the deformation matrix ``F``
that maps fractional coordinates to Cartesian positions, ``x = F @ s``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import torch

from torch_dofs.typing import ModelKey, ModelOutput


if TYPE_CHECKING:
    from torch_dofs.models.interface import ModelInterface


@dataclass
class AtomsState:
    """State representation for a single atomistic system.

    Attributes:
        positions (torch.Tensor): Atomic positions with shape (n_atoms, 3)
        masses (torch.Tensor): Atomic masses with shape (n_atoms,)
        cell (torch.Tensor): Unit cell with shape (3, 3), lattice vectors as columns
        pbc (bool): Whether the system is periodic
        atomic_numbers (torch.Tensor): Atomic numbers with shape (n_atoms,)
        model (ModelInterface | None): Energy model used by ``energy``, ``forces``
            and ``stress``

    Properties:
        n_atoms (int): Number of atoms in the system
        volume (torch.Tensor): Volume of the cell
        row_vector_cell (torch.Tensor): Cell with lattice vectors as rows
        device (torch.device): Device of the positions tensor
        dtype (torch.dtype): Data type of the positions tensor
    """

    positions: torch.Tensor
    masses: torch.Tensor
    cell: torch.Tensor
    pbc: bool
    atomic_numbers: torch.Tensor
    model: ModelInterface | None = field(default=None, repr=False, compare=False)
    _results: ModelOutput = field(
        default_factory=dict, init=False, repr=False, compare=False
    )
    _cached_inputs: tuple[torch.Tensor, torch.Tensor] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Validate shapes of the state tensors."""
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            shape = tuple(self.positions.shape)
            raise ValueError(f"positions must have shape (n_atoms, 3), got {shape}")
        n_atoms = self.positions.shape[0]

        if self.cell.ndim == 3 and self.cell.shape[0] == 1:
            self.cell = self.cell.squeeze(0)
        if self.cell.shape != (3, 3):
            raise ValueError(f"cell must have shape (3, 3), got {tuple(self.cell.shape)}")

        for name in ("masses", "atomic_numbers"):
            value = getattr(self, name)
            if value.shape != (n_atoms,):
                raise ValueError(
                    f"{name} must have shape ({n_atoms},), got {tuple(value.shape)}"
                )

    @property
    def n_atoms(self) -> int:
        """Number of atoms in the system."""
        return self.positions.shape[0]

    @property
    def device(self) -> torch.device:
        """The device where the tensor data is located."""
        return self.positions.device

    @property
    def dtype(self) -> torch.dtype:
        """The data type of the positions tensor."""
        return self.positions.dtype

    @property
    def row_vector_cell(self) -> torch.Tensor:
        """Unit cell with lattice vectors as rows, the ASE convention."""
        return self.cell.mT

    @property
    def volume(self) -> torch.Tensor:
        """Volume of the cell."""
        return torch.linalg.det(self.cell).abs()

    @property
    def deformation(self) -> torch.Tensor:
        """Deformation matrix of the cell.

        In the column-vector convention the deformation matrix and the cell are the
        same object, so this is an alias that makes the intent explicit at call sites.
        """
        return self.cell

    def set_positions(self, new_positions: torch.Tensor) -> None:
        """Replace the atomic positions.

        Args:
            new_positions: Positions with shape (n_atoms, 3)
        """
        if new_positions.shape != self.positions.shape:
            raise ValueError(
                f"positions must have shape {tuple(self.positions.shape)}, "
                f"got {tuple(new_positions.shape)}"
            )
        self.positions = new_positions.to(device=self.device, dtype=self.dtype)

    def set_deformation(self, new_deformation: torch.Tensor) -> None:
        """Replace the cell by a new deformation matrix.

        Positions are not touched; callers that want atoms to follow the cell have
        to move them explicitly.

        Args:
            new_deformation: Deformation matrix with shape (3, 3)
        """
        if new_deformation.shape != (3, 3):
            raise ValueError(
                f"deformation must have shape (3, 3), got {tuple(new_deformation.shape)}"
            )
        self.cell = new_deformation.to(device=self.device, dtype=self.dtype)

    def _calculate(self, key: ModelKey) -> torch.Tensor:
        if self.model is None:
            raise RuntimeError(f"cannot compute {key}: no model attached to the state")

        cached = self._cached_inputs
        if (
            cached is None
            or key not in self._results
            or not torch.equal(cached[0], self.positions)
            or not torch.equal(cached[1], self.cell)
        ):
            self._results = self.model(self)
            self._cached_inputs = (self.positions.clone(), self.cell.clone())

        if key not in self._results:
            raise RuntimeError(f"model {type(self.model).__name__} did not compute {key}")
        return self._results[key]

    def energy(self) -> torch.Tensor:
        """Potential energy of the system as a 0-d tensor."""
        return self._calculate("energy")

    def forces(self) -> torch.Tensor:
        """Forces on the atoms with shape (n_atoms, 3)."""
        return self._calculate("forces")

    def gradient(self) -> torch.Tensor:
        """Gradient of the energy with respect to positions, i.e. the negative forces."""
        return -self.forces()

    def stress(self) -> torch.Tensor:
        """Cauchy stress with shape (3, 3).

        The stress is ``(1 / V) dE/d(eps)`` for a homogeneous strain ``eps`` that
        deforms positions and cell together.
        """
        return self._calculate("stress")

    def clone(self) -> AtomsState:
        """Create a deep copy of the state tensors, sharing the attached model."""
        return AtomsState(
            positions=self.positions.clone(),
            masses=self.masses.clone(),
            cell=self.cell.clone(),
            pbc=self.pbc,
            atomic_numbers=self.atomic_numbers.clone(),
            model=self.model,
        )
