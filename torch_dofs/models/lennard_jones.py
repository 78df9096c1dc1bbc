"""Lennard-Jones pair potential.

The energy is summed over all pairs of atoms and their periodic images within the
cutoff, with the pair energy shifted to zero at the cutoff:

    E = 1/2 sum_{i, j, n} [phi(|x_j - x_i + F n|) - phi(r_c)]
    phi(r) = 4 epsilon [(sigma / r)^12 - (sigma / r)^6]

Forces and stress are obtained by differentiating the energy with autograd, the
stress through a homogeneous strain applied to positions and cell.

The implementation is dense over atom pairs and image shifts and is intended for
small cells.
"""

import torch

from torch_dofs.models.interface import ModelInterface
from torch_dofs.state import AtomsState
from torch_dofs.typing import ModelOutput


def lennard_jones_pair(
    dr: torch.Tensor,
    sigma: float | torch.Tensor = 1.0,
    epsilon: float | torch.Tensor = 1.0,
) -> torch.Tensor:
    """Calculate the Lennard-Jones pair energy.

    Args:
        dr: Pairwise distances, any shape
        sigma: Length scale where the potential crosses zero
        epsilon: Depth of the potential well

    Returns:
        Pair energies with the same shape as ``dr``
    """
    idr6 = (sigma / dr) ** 6
    return 4 * epsilon * (idr6**2 - idr6)


def image_shifts(
    cell: torch.Tensor, cutoff: float, *, pbc: bool = True
) -> torch.Tensor:
    """Integer lattice shifts that can bring a wrapped pair within the cutoff.

    For a displacement whose fractional coordinates lie in [-1/2, 1/2], an image
    shift ``n`` along lattice direction ``a`` only matters if
    ``|n_a| < cutoff / d_a + 1/2`` where ``d_a`` is the spacing between lattice
    planes.

    Args:
        cell: Cell with lattice vectors as columns, shape (3, 3)
        cutoff: Interaction cutoff
        pbc: Whether the system is periodic

    Returns:
        Integer shifts with shape (n_shifts, 3), the zero shift included
    """
    if not pbc:
        return torch.zeros((1, 3), dtype=torch.long, device=cell.device)
    inv_cell = torch.linalg.inv(cell.detach())
    n_max = torch.ceil(cutoff * torch.linalg.norm(inv_cell, dim=1) + 0.5).long()
    ranges = [torch.arange(-n, n + 1, device=cell.device) for n in n_max.tolist()]
    return torch.cartesian_prod(*ranges)


class LennardJonesModel(ModelInterface):
    """Lennard-Jones potential energy model.

    Attributes:
        sigma (torch.Tensor): Length parameter
        epsilon (torch.Tensor): Energy parameter
        cutoff (float): Interaction cutoff, defaults to 2.5 * sigma
    """

    def __init__(
        self,
        sigma: float = 1.0,
        epsilon: float = 1.0,
        cutoff: float | None = None,
        *,
        device: torch.device | None = None,
        dtype: torch.dtype = torch.float64,
        compute_forces: bool = True,
        compute_stress: bool = True,
    ) -> None:
        """Initialize the Lennard-Jones model.

        Args:
            sigma: Length scale where the pair potential crosses zero
            epsilon: Depth of the potential well
            cutoff: Interaction cutoff, defaults to 2.5 * sigma
            device: Device to use for the model (default: CPU)
            dtype: Data type for the model (default: torch.float64)
            compute_forces: Whether to compute forces
            compute_stress: Whether to compute stress
        """
        super().__init__()
        self._device = device or torch.device("cpu")
        self._dtype = dtype
        self._compute_forces = compute_forces
        self._compute_stress = compute_stress

        if sigma <= 0 or epsilon < 0:
            raise ValueError("sigma must be positive and epsilon non-negative")
        self.cutoff = float(cutoff if cutoff is not None else 2.5 * sigma)
        if self.cutoff <= 0:
            raise ValueError("cutoff must be positive")

        tensor_args = {"device": self._device, "dtype": self._dtype}
        self.register_buffer("sigma", torch.tensor(sigma, **tensor_args))
        self.register_buffer("epsilon", torch.tensor(epsilon, **tensor_args))

    def _energy(
        self, positions: torch.Tensor, cell: torch.Tensor, *, pbc: bool
    ) -> torch.Tensor:
        n_atoms = positions.shape[0]
        # dr[i, j] = x_j - x_i
        dr = positions.unsqueeze(0) - positions.unsqueeze(1)
        if pbc:
            frac = torch.linalg.solve(cell, dr.reshape(-1, 3).mT).mT
            dr = dr - (torch.round(frac).detach() @ cell.mT).reshape(dr.shape)

        shifts = image_shifts(cell, self.cutoff, pbc=pbc)
        offsets = shifts.to(cell.dtype) @ cell.mT
        vectors = dr.unsqueeze(0) + offsets[:, None, None, :]

        is_self = (shifts == 0).all(dim=1)[:, None, None] & torch.eye(
            n_atoms, dtype=torch.bool, device=positions.device
        )
        dist_sq = (vectors**2).sum(dim=-1)
        # keep sqrt differentiable on the excluded self pairs
        dist = torch.where(is_self, torch.ones_like(dist_sq), dist_sq).sqrt()
        within = (dist < self.cutoff) & ~is_self

        e_cut = lennard_jones_pair(
            torch.tensor(self.cutoff, dtype=dist.dtype, device=dist.device),
            self.sigma,
            self.epsilon,
        )
        pair_energies = lennard_jones_pair(dist, self.sigma, self.epsilon) - e_cut
        return 0.5 * torch.where(within, pair_energies, 0.0).sum()

    def forward(self, state: AtomsState) -> ModelOutput:
        """Compute energy, forces and stress.

        Args:
            state: Atomistic state to evaluate

        Returns:
            Dictionary with ``energy`` and, when enabled, ``forces`` and ``stress``
        """
        positions = state.positions.detach().to(self._device, self._dtype)
        cell = state.cell.detach().to(self._device, self._dtype)
        strain = torch.zeros((3, 3), device=self._device, dtype=self._dtype)

        with torch.enable_grad():
            positions.requires_grad_(self._compute_forces)
            strain.requires_grad_(self._compute_stress)
            deform = torch.eye(3, device=self._device, dtype=self._dtype) + strain
            energy = self._energy(positions @ deform.mT, deform @ cell, pbc=state.pbc)

            inputs = [t for t in (positions, strain) if t.requires_grad]
            grads = torch.autograd.grad(energy, inputs) if inputs else ()

        results: ModelOutput = {"energy": energy.detach()}
        grads = list(grads)
        if self._compute_forces:
            results["forces"] = -grads.pop(0)
        if self._compute_stress:
            volume = torch.linalg.det(cell).abs()
            results["stress"] = grads.pop(0) / volume
        return results
