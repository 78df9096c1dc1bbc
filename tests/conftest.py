import pytest
import torch
from ase import Atoms
from ase.build import bulk

from torch_dofs.io import atoms_to_state
from torch_dofs.models.einstein import EinsteinModel
from torch_dofs.models.lennard_jones import LennardJonesModel
from torch_dofs.state import AtomsState


DEVICE = torch.device("cpu")
DTYPE = torch.float64

AR_SIGMA = 3.405
AR_EPSILON = 0.0104


@pytest.fixture
def device() -> torch.device:
    return DEVICE


@pytest.fixture
def dtype() -> torch.dtype:
    return DTYPE


@pytest.fixture
def ar_atoms() -> Atoms:
    """Create a face-centered cubic (FCC) Argon structure."""
    return bulk("Ar", "fcc", a=5.26, cubic=True)


@pytest.fixture
def cu_atoms() -> Atoms:
    """Create crystalline copper using ASE."""
    return bulk("Cu", "fcc", a=3.58, cubic=True)


@pytest.fixture
def lj_model(device: torch.device, dtype: torch.dtype) -> LennardJonesModel:
    """Create a Lennard-Jones model with reasonable parameters for Ar."""
    return LennardJonesModel(
        sigma=AR_SIGMA,
        epsilon=AR_EPSILON,
        cutoff=2.5 * AR_SIGMA,
        device=device,
        dtype=dtype,
        compute_forces=True,
        compute_stress=True,
    )


@pytest.fixture
def ar_state(
    ar_atoms: Atoms,
    lj_model: LennardJonesModel,
    device: torch.device,
    dtype: torch.dtype,
) -> AtomsState:
    """Conventional 4-atom Ar cell with a Lennard-Jones model attached."""
    state = atoms_to_state(ar_atoms, device, dtype)
    state.model = lj_model
    return state


@pytest.fixture
def ar_sheared_state(ar_state: AtomsState) -> AtomsState:
    """Ar cell with a sheared, non-symmetric cell and rattled positions.

    Atoms follow the shear so the structure stays close to fcc.
    """
    generator = torch.Generator().manual_seed(0)
    deform = torch.tensor(
        [[1.01, 0.03, 0.0], [0.0, 0.99, 0.02], [0.01, 0.0, 1.0]], dtype=DTYPE
    )
    ar_state.set_positions(ar_state.positions @ deform.mT)
    ar_state.set_deformation(deform @ ar_state.cell)
    noise = 0.05 * torch.rand(ar_state.positions.shape, generator=generator, dtype=DTYPE)
    ar_state.set_positions(ar_state.positions + noise)
    return ar_state


@pytest.fixture
def ar_supercell_state(
    ar_atoms: Atoms, lj_model: LennardJonesModel, device: torch.device, dtype: torch.dtype
) -> AtomsState:
    """Create a face-centered cubic (FCC) Argon structure with 2x2x2 supercell."""
    state = atoms_to_state(ar_atoms.repeat([2, 2, 2]), device, dtype)
    state.model = lj_model
    return state


@pytest.fixture
def dimer_state(device: torch.device, dtype: torch.dtype) -> AtomsState:
    """Two atoms in a large cubic box."""
    return AtomsState(
        positions=torch.tensor(
            [[1.0, 1.0, 1.0], [2.2, 1.1, 0.9]], device=device, dtype=dtype
        ),
        masses=torch.ones(2, device=device, dtype=dtype),
        cell=10.0 * torch.eye(3, device=device, dtype=dtype),
        pbc=True,
        atomic_numbers=torch.tensor([18, 18], device=device, dtype=torch.int),
    )


@pytest.fixture
def einstein_state(ar_state: AtomsState) -> AtomsState:
    """Ar cell with an Einstein model centred on the ideal lattice, then rattled."""
    ar_state.model = EinsteinModel.from_state_and_frequencies(
        ar_state, 0.5, dtype=ar_state.dtype, device=ar_state.device
    )
    generator = torch.Generator().manual_seed(1)
    noise = 0.05 * (
        torch.rand(ar_state.positions.shape, generator=generator, dtype=DTYPE) - 0.5
    )
    ar_state.set_positions(ar_state.positions + noise)
    return ar_state
