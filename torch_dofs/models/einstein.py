"""Einstein model where each atom is treated as an independent 3D harmonic oscillator.

Contrary to other models, the model energies depend on an absolute reference position,
so the model can only be used on systems that the model was initialized with.
The energy does not depend on the cell other than through the minimum image
convention, which makes it a convenient model for fixed-cell relaxations.
"""

import torch

from torch_dofs.models.interface import ModelInterface
from torch_dofs.state import AtomsState
from torch_dofs.typing import ModelOutput


class EinsteinModel(ModelInterface):
    """Einstein model where each atom is treated as an independent 3D harmonic oscillator.
    Each atom has its own frequency.

    For this model:
    E  = sum_i 0.5 * k_i * (x_i - x0_i)^2
    F  = -k_i * (x_i - x0_i)
    k_i = m_i * omega_i^2
    """

    def __init__(
        self,
        equilibrium_position: torch.Tensor,  # shape [N, 3]
        frequencies: torch.Tensor,  # shape [N]
        masses: torch.Tensor | None = None,  # shape [N] or None
        reference_energy: float = 0.0,
        *,
        device: torch.device | None = None,
        dtype: torch.dtype = torch.float64,
        compute_forces: bool = True,
        compute_stress: bool = True,
    ) -> None:
        """Initialize the Einstein model.

        Args:
            equilibrium_position: Tensor of shape [N, 3] with equilibrium positions.
            frequencies: Tensor of shape [N] with frequencies for each atom
                (same frequency in all 3 directions).
            masses: Optional tensor of shape [N] with masses for each atom.
                If None, all masses are set to 1.
            reference_energy: Reference energy value to add to the computed energy.
            device: Device to use for the model (default: CPU).
            dtype: Data type for the model (default: torch.float64).
            compute_forces: Whether to compute forces in the model.
            compute_stress: Whether to compute stress in the model.
        """
        super().__init__()
        self._device = device or torch.device("cpu")
        self._dtype = dtype
        self._compute_forces = compute_forces
        self._compute_stress = compute_stress

        equilibrium_position = torch.as_tensor(
            equilibrium_position, device=self._device, dtype=self._dtype
        )
        frequencies = torch.as_tensor(frequencies, device=self._device, dtype=self._dtype)
        if frequencies.ndim == 0:
            frequencies = frequencies.unsqueeze(0)
        if frequencies.ndim != 1:
            raise ValueError("frequencies must be a 1D tensor")
        if frequencies.shape[0] != equilibrium_position.shape[0]:
            raise ValueError("frequencies shape must match equilibrium_position shape")
        if frequencies.min() < 0:
            raise ValueError("frequencies must be non-negative")

        if masses is None:
            masses = torch.ones(
                equilibrium_position.shape[0], dtype=self._dtype, device=self._device
            )
        else:
            masses = masses.to(self._device, self._dtype)

        self.register_buffer("masses", masses)  # [N]
        self.register_buffer("x0", equilibrium_position)  # [N, 3]
        self.register_buffer("frequencies", frequencies)  # [N]
        self.register_buffer(
            "reference_energy",
            torch.tensor(reference_energy, dtype=self._dtype, device=self._device),
        )

    @classmethod
    def from_state_and_frequencies(
        cls,
        state: AtomsState,
        frequencies: torch.Tensor | float,
        *,
        reference_energy: float = 0.0,
        compute_forces: bool = True,
        compute_stress: bool = True,
        device: torch.device | None = None,
        dtype: torch.dtype = torch.float64,
    ) -> "EinsteinModel":
        """Create an EinsteinModel centred on the positions of a state.

        Args:
            state: State containing the reference structure.
            frequencies: Tensor of shape [N] with frequencies for each atom
                (same frequency in all 3 directions) or a scalar.
            reference_energy: Reference energy value.
            compute_forces: Whether to compute forces in the model.
            compute_stress: Whether to compute stress in the model.
            device: Device to use for the model (default: CPU).
            dtype: Data type for the model (default: torch.float64).

        Returns:
            EinsteinModel: An instance of the EinsteinModel.
        """
        equilibrium_position = state.positions.clone().to(dtype=dtype, device=device)

        frequencies = torch.as_tensor(frequencies, dtype=dtype, device=device)
        if frequencies.ndim == 0:
            frequencies = frequencies.repeat(state.n_atoms)
        if frequencies.shape[0] != state.n_atoms:
            raise ValueError(
                "frequencies must be a scalar or a tensor of shape [N] "
                "where N is the number of atoms"
            )

        return cls(
            equilibrium_position=equilibrium_position,
            frequencies=frequencies,
            masses=state.masses,
            reference_energy=reference_energy,
            compute_forces=compute_forces,
            compute_stress=compute_stress,
            device=device,
            dtype=dtype,
        )

    def forward(self, state: AtomsState) -> ModelOutput:
        """Calculate energy, forces and stress for the Einstein model.

        Args:
            state: Atomistic state with the same atoms the model was built for

        Returns:
            Dictionary containing energy, and forces and stress when enabled
        """
        if state.n_atoms != self.x0.shape[0]:
            raise ValueError(
                f"EinsteinModel was built for {self.x0.shape[0]} atoms, "
                f"got a state with {state.n_atoms}"
            )
        pos = state.positions.to(self._device, self._dtype)  # [N, 3]
        cell = state.cell.to(self._device, self._dtype)

        disp = pos - self.x0
        if state.pbc:
            # minimum image: subtract whole lattice vectors
            frac = torch.linalg.solve(cell, disp.mT).mT
            disp = disp - torch.round(frac) @ cell.mT

        # Spring constants: k = m * omega^2
        spring_constants = self.masses * (self.frequencies**2)  # [N]

        # Energy: E = 0.5 * k * x^2
        energy = 0.5 * (spring_constants * (disp**2).sum(dim=1)).sum()
        energy = energy + self.reference_energy

        # Forces: F = -k * x
        forces = -spring_constants.unsqueeze(-1) * disp  # [N, 3]

        results: ModelOutput = {"energy": energy}
        if self._compute_forces:
            results["forces"] = forces
        if self._compute_stress:
            # x0 does not follow the strain, so disp changes by eps @ (pos - image)
            image = pos - self.x0 - disp
            virial = -forces.mT @ (pos - image)
            results["stress"] = virial / torch.linalg.det(cell).abs()
        return results
