"""Conversion between ASE Atoms and torch-dofs states.

ASE stores the cell with lattice vectors as rows, torch-dofs with lattice vectors
as columns, so the cell is transposed on the way in and on the way out.
"""

import numpy as np
import torch
from ase import Atoms
from ase.data import chemical_symbols

from torch_dofs.state import AtomsState


def atoms_to_state(
    atoms: Atoms,
    device: torch.device | None = None,
    dtype: torch.dtype = torch.float64,
) -> AtomsState:
    """Create a state from an ASE Atoms object.

    Args:
        atoms: ASE Atoms object
        device: Device to create tensors on
        dtype: Data type for floating point tensors

    Returns:
        AtomsState: State with positions, cell, masses and atomic numbers

    Raises:
        ValueError: If the Atoms object is only partially periodic
    """
    if any(atoms.pbc) and not all(atoms.pbc):
        raise ValueError(
            f"Mixed periodic boundary conditions are not supported, got {atoms.pbc}"
        )
    return AtomsState(
        positions=torch.tensor(atoms.positions, dtype=dtype, device=device),
        masses=torch.tensor(atoms.get_masses(), dtype=dtype, device=device),
        cell=torch.tensor(np.asarray(atoms.cell.array).T, dtype=dtype, device=device),
        pbc=bool(all(atoms.pbc)),
        atomic_numbers=torch.tensor(
            atoms.get_atomic_numbers(), dtype=torch.int, device=device
        ),
    )


def state_to_atoms(state: AtomsState) -> Atoms:
    """Convert a state to an ASE Atoms object.

    Args:
        state (AtomsState): State containing positions, cell, and atomic numbers

    Returns:
        Atoms: ASE Atoms object

    Notes:
        - Output positions and cell will be in Å
        - Output masses will be in amu
    """
    positions = state.positions.detach().cpu().numpy()
    cell = state.row_vector_cell.detach().cpu().numpy()
    atomic_numbers = state.atomic_numbers.detach().cpu().numpy()

    atoms = Atoms(
        symbols=[chemical_symbols[z] for z in atomic_numbers],
        positions=positions,
        cell=cell,
        pbc=state.pbc,
    )
    atoms.set_masses(state.masses.detach().cpu().numpy())
    return atoms
