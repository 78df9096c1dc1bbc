import itertools

import pytest
import torch

import torch_dofs as td
from tests.conftest import DTYPE
from torch_dofs.constraints import (
    N_CELL_DOFS,
    ConfigurationError,
    FixedCell,
    VariableCell,
    analyze_mask,
    flatten_cell,
    flatten_positions,
    unflatten_cell,
    unflatten_positions,
)
from torch_dofs.state import AtomsState


def _central_difference(
    state: AtomsState, constraint: td.DofConstraint, x: torch.Tensor, h: float = 1e-5
) -> torch.Tensor:
    numeric = torch.empty_like(x)
    for n in range(len(x)):
        x_plus, x_minus = x.clone(), x.clone()
        x_plus[n] += h
        x_minus[n] -= h
        e_plus = td.energy(state, constraint, x_plus)
        e_minus = td.energy(state, constraint, x_minus)
        numeric[n] = (e_plus - e_minus) / (2 * h)
    return numeric


class TestAnalyzeMask:
    """Resolution of free/clamp/mask into free flat coordinate indices."""

    @pytest.mark.parametrize(
        "given",
        [
            combo
            for n_given in (2, 3)
            for combo in itertools.combinations(("free", "clamp", "mask"), n_given)
        ],
    )
    def test_exclusivity(self, given: tuple[str, ...]):
        kwargs = {
            "free": [0],
            "clamp": [1],
            "mask": torch.ones((3, 3), dtype=torch.bool),
        }
        with pytest.raises(ConfigurationError, match="only one of"):
            analyze_mask(3, **{key: kwargs[key] for key in given})

    def test_default_all_free(self):
        assert torch.equal(analyze_mask(5), torch.arange(15))

    def test_free_atoms(self):
        assert analyze_mask(4, free=[1, 3]).tolist() == [3, 4, 5, 9, 10, 11]

    def test_clamp_atoms(self):
        assert analyze_mask(4, clamp=[0, 2]).tolist() == [3, 4, 5, 9, 10, 11]

    def test_clamp_and_free_agree(self):
        assert torch.equal(
            analyze_mask(6, clamp=[0, 5]), analyze_mask(6, free=[1, 2, 3, 4])
        )

    def test_boolean_atom_mask(self):
        ifree = analyze_mask(3, free=torch.tensor([True, False, True]))
        assert ifree.tolist() == [0, 1, 2, 6, 7, 8]

    def test_coordinate_mask_layout(self):
        """Mask rows are atoms, columns are Cartesian axes."""
        mask = torch.zeros((3, 3), dtype=torch.bool)
        mask[:, 2] = True
        mask[1, 0] = True
        assert analyze_mask(3, mask=mask).tolist() == [2, 3, 5, 8]

    def test_clamp_everything(self):
        assert analyze_mask(2, clamp=[0, 1]).numel() == 0

    @pytest.mark.parametrize(
        ("kwargs", "match"),
        [
            ({"free": [0, 4]}, "must lie in"),
            ({"clamp": [-1]}, "must lie in"),
            ({"free": [1, 1]}, "duplicates"),
            ({"clamp": [0.0, 1.0]}, "must be integers"),
            ({"free": [[0, 1]]}, "wrong number of dimensions"),
            ({"free": torch.tensor([True, False])}, "boolean mask must have length"),
            ({"mask": torch.ones((3, 4), dtype=torch.bool)}, "mask must have shape"),
            ({"mask": torch.ones((4, 3))}, "must be a boolean tensor"),
        ],
    )
    def test_invalid_input(self, kwargs: dict, match: str):
        with pytest.raises(ConfigurationError, match=match):
            analyze_mask(4, **kwargs)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):  # noqa: PT011
            analyze_mask(2, free=[0], clamp=[1])


def test_flatten_convention():
    positions = torch.arange(12, dtype=DTYPE).reshape(4, 3)
    flat = flatten_positions(positions)
    assert flat[3 * 2 + 1] == positions[2, 1]
    assert torch.equal(unflatten_positions(flat), positions)

    matrix = torch.arange(9, dtype=DTYPE).reshape(3, 3)
    assert flatten_cell(matrix)[3 * 1 + 2] == matrix[1, 2]
    assert torch.equal(unflatten_cell(flatten_cell(matrix)), matrix)


class TestFixedCell:
    """Position-only dof mapping."""

    def test_default_free(self, ar_state: AtomsState):
        constraint = FixedCell(ar_state)
        assert torch.equal(constraint.ifree, torch.arange(3 * ar_state.n_atoms))
        assert constraint.n_dofs == 3 * ar_state.n_atoms
        assert torch.equal(td.dofs(ar_state, constraint), ar_state.positions.reshape(-1))

    def test_exclusivity(self, ar_state: AtomsState):
        with pytest.raises(ConfigurationError):
            FixedCell(ar_state, free=[0], clamp=[1])

    def test_round_trip(self, ar_sheared_state: AtomsState):
        constraint = FixedCell(ar_sheared_state, clamp=[1, 2])
        positions = ar_sheared_state.positions.clone()
        cell = ar_sheared_state.cell.clone()
        td.set_dofs(ar_sheared_state, constraint, td.dofs(ar_sheared_state, constraint))
        assert torch.equal(ar_sheared_state.positions, positions)
        assert torch.equal(ar_sheared_state.cell, cell)

    def test_clamped_atom_never_moves(self, dimer_state: AtomsState):
        constraint = FixedCell(dimer_state, clamp=[1])
        positions = dimer_state.positions.clone()

        x = td.dofs(dimer_state, constraint)
        assert x.shape == (3,)
        x[0] += 0.1
        td.set_dofs(dimer_state, constraint, x)

        expected = positions.clone()
        expected[0, 0] += 0.1
        assert torch.allclose(dimer_state.positions, expected, atol=1e-14)
        assert torch.equal(dimer_state.positions[1], positions[1])

    def test_set_dofs_keeps_current_clamped_values(self, dimer_state: AtomsState):
        """Clamped coordinates come from the live state, not from construction."""
        mask = torch.tensor([[True, True, False], [False, False, False]])
        constraint = FixedCell(dimer_state, mask=mask)
        moved = dimer_state.positions.clone()
        moved[0, 2] = 5.0
        dimer_state.set_positions(moved)

        td.set_dofs(dimer_state, constraint, torch.tensor([0.5, 0.6], dtype=DTYPE))
        assert dimer_state.positions[0].tolist() == [0.5, 0.6, 5.0]

    def test_cell_untouched(self, ar_state: AtomsState):
        constraint = FixedCell(ar_state)
        cell = ar_state.cell.clone()
        td.set_dofs(ar_state, constraint, td.dofs(ar_state, constraint) + 0.01)
        assert torch.equal(ar_state.cell, cell)

    def test_gradient_is_masked_negative_forces(self, ar_sheared_state: AtomsState):
        constraint = FixedCell(ar_sheared_state, free=[0, 3])
        grad = td.gradient(ar_sheared_state, constraint)
        forces = ar_sheared_state.forces()
        expected = torch.cat([-forces[0], -forces[3]])
        assert torch.allclose(grad, expected)

    def test_gradient_matches_finite_differences(self, ar_sheared_state: AtomsState):
        constraint = FixedCell(ar_sheared_state, clamp=[2])
        x = td.dofs(ar_sheared_state, constraint)
        grad = td.gradient(ar_sheared_state, constraint)
        numeric = _central_difference(ar_sheared_state, constraint, x)
        assert torch.allclose(grad, numeric, atol=1e-8)

    def test_project_is_noop(self, ar_state: AtomsState):
        constraint = FixedCell(ar_state)
        positions = ar_state.positions.clone()
        assert td.project(ar_state, constraint) is ar_state
        assert torch.equal(ar_state.positions, positions)

    def test_project_matrix(self, ar_state: AtomsState):
        constraint = FixedCell(ar_state, clamp=[1])
        n = 3 * ar_state.n_atoms
        matrix = torch.arange(n * n, dtype=DTYPE).reshape(n, n)
        projected = td.project_matrix(constraint, matrix)

        assert projected.shape == (constraint.n_dofs, constraint.n_dofs)
        ifree = constraint.ifree.tolist()
        for a, i in enumerate(ifree):
            for b, j in enumerate(ifree):
                assert projected[a, b] == matrix[i, j]

    def test_project_matrix_rejects_non_square(self, ar_state: AtomsState):
        constraint = FixedCell(ar_state)
        with pytest.raises(ValueError, match="square"):
            constraint.project_matrix(torch.zeros((12, 11), dtype=DTYPE))

    def test_wrong_length(self, ar_state: AtomsState):
        constraint = FixedCell(ar_state, clamp=[0])
        with pytest.raises(ValueError, match="dof vector of length 9"):
            td.set_dofs(ar_state, constraint, torch.zeros(12, dtype=DTYPE))

    def test_from_free_indices(self, ar_state: AtomsState):
        constraint = FixedCell.from_free_indices(torch.tensor([0, 4, 8]))
        assert constraint.n_dofs == 3
        assert td.dofs(ar_state, constraint).tolist() == [
            ar_state.positions[0, 0].item(),
            ar_state.positions[1, 1].item(),
            ar_state.positions[2, 2].item(),
        ]

    def test_from_free_indices_rejects_negative(self):
        with pytest.raises(ConfigurationError, match="non-negative"):
            FixedCell.from_free_indices(torch.tensor([-1]))

    def test_repr(self, ar_supercell_state: AtomsState):
        constraint = FixedCell(ar_supercell_state, free=[0])
        assert repr(constraint) == "FixedCell(ifree=[0, 1, 2])"
        assert "..." in repr(FixedCell(ar_supercell_state))


class TestVariableCell:
    """Joint position and cell dof mapping."""

    def test_identity_at_construction(self, ar_sheared_state: AtomsState):
        constraint = VariableCell(ar_sheared_state, clamp=[3])
        x = td.dofs(ar_sheared_state, constraint)

        assert x.shape == (constraint.n_free + N_CELL_DOFS,)
        assert torch.allclose(x[:-9], torch.zeros_like(x[:-9]), atol=1e-12)
        assert torch.equal(x[-9:], ar_sheared_state.cell.reshape(-1))

    def test_round_trip(self, ar_sheared_state: AtomsState):
        constraint = VariableCell(ar_sheared_state, clamp=[0])
        generator = torch.Generator().manual_seed(2)
        x = 0.1 * torch.randn(constraint.n_dofs, generator=generator, dtype=DTYPE)
        x[-9:] += ar_sheared_state.cell.reshape(-1)

        td.set_dofs(ar_sheared_state, constraint, x)
        assert torch.allclose(td.dofs(ar_sheared_state, constraint), x, atol=1e-12)

    def test_set_dofs_updates_cell(self, ar_state: AtomsState):
        constraint = VariableCell(ar_state)
        x = td.dofs(ar_state, constraint)
        new_cell = ar_state.cell * 1.05
        x[-9:] = flatten_cell(new_cell)
        td.set_dofs(ar_state, constraint, x)
        assert torch.allclose(ar_state.cell, new_cell)

    def test_clamped_atom_follows_cell(self, ar_sheared_state: AtomsState):
        constraint = VariableCell(ar_sheared_state, clamp=[1])
        X0 = ar_sheared_state.positions.clone()
        F0 = ar_sheared_state.cell.clone()

        x = torch.zeros(constraint.n_dofs, dtype=DTYPE)
        x[-9:] = flatten_cell(2 * F0)
        td.set_dofs(ar_sheared_state, constraint, x)

        assert torch.allclose(ar_sheared_state.positions[1], 2 * X0[1], atol=1e-12)
        assert torch.allclose(ar_sheared_state.positions, 2 * X0, atol=1e-12)
        assert torch.allclose(ar_sheared_state.cell, 2 * F0)

    def test_clamped_atom_has_no_residual(self, ar_state: AtomsState):
        constraint = VariableCell(ar_state, clamp=[2])
        x = td.dofs(ar_state, constraint)
        x[:-9] = 0.3
        td.set_dofs(ar_state, constraint, x)
        U = constraint.residual_displacements(ar_state)
        assert torch.allclose(U[2], torch.zeros(3, dtype=DTYPE), atol=1e-12)
        assert torch.allclose(U[[0, 1, 3]], torch.full((3, 3), 0.3, dtype=DTYPE))

    def test_reference_is_fixed(self, ar_state: AtomsState):
        constraint = VariableCell(ar_state)
        X0 = constraint.reference_positions
        F0 = constraint.reference_deformation
        td.set_dofs(ar_state, constraint, td.dofs(ar_state, constraint) + 0.05)
        assert torch.equal(constraint.reference_positions, X0)
        assert torch.equal(constraint.reference_deformation, F0)

        # the properties hand out copies
        constraint.reference_deformation.zero_()
        assert torch.equal(constraint.reference_deformation, F0)

    def test_gradient_at_reference_is_stress_times_inverse_transpose(
        self, ar_sheared_state: AtomsState
    ):
        constraint = VariableCell(ar_sheared_state)
        grad = td.gradient(ar_sheared_state, constraint)
        F = ar_sheared_state.cell
        stress = ar_sheared_state.stress()
        expected = ar_sheared_state.volume * stress @ torch.linalg.inv(F).mT
        assert torch.allclose(grad[-9:], expected.reshape(-1), atol=1e-12)

    @pytest.mark.parametrize("clamp", [None, [0], [1, 3]])
    def test_gradient_matches_finite_differences(
        self, ar_sheared_state: AtomsState, clamp: list[int] | None
    ):
        """Holds away from the reference, with residual displacements present."""
        constraint = VariableCell(ar_sheared_state, clamp=clamp)
        generator = torch.Generator().manual_seed(3)
        x = td.dofs(ar_sheared_state, constraint)
        x = x + 0.02 * torch.rand(x.shape, generator=generator, dtype=DTYPE)
        td.set_dofs(ar_sheared_state, constraint, x)

        grad = td.gradient(ar_sheared_state, constraint)
        numeric = _central_difference(ar_sheared_state, constraint, x)
        assert torch.allclose(grad, numeric, atol=1e-8)

    @pytest.mark.parametrize("c_axis", [0.0, 1e-300, 1e-16])
    def test_singular_reference(self, dimer_state: AtomsState, c_axis: float):
        singular = torch.diag(torch.tensor([5.0, 5.0, c_axis], dtype=DTYPE))
        dimer_state.set_deformation(singular)
        with pytest.raises(ConfigurationError, match="singular"):
            VariableCell(dimer_state)

    def test_wrong_length(self, ar_state: AtomsState):
        constraint = VariableCell(ar_state)
        with pytest.raises(ValueError, match="dof vector of length 21"):
            td.set_dofs(ar_state, constraint, torch.zeros(12, dtype=DTYPE))

    def test_wrong_atom_count(self, ar_state: AtomsState, dimer_state: AtomsState):
        constraint = VariableCell(ar_state)
        with pytest.raises(ValueError, match="built for 4 atoms"):
            td.dofs(dimer_state, constraint)

    def test_project_is_noop(self, ar_state: AtomsState):
        constraint = VariableCell(ar_state)
        assert td.project(ar_state, constraint) is ar_state

    def test_project_matrix_not_supported(self, ar_state: AtomsState):
        constraint = VariableCell(ar_state)
        with pytest.raises(NotImplementedError):
            td.project_matrix(constraint, torch.eye(12, dtype=DTYPE))


def test_energy_writes_dofs(ar_state: AtomsState):
    constraint = FixedCell(ar_state)
    x = td.dofs(ar_state, constraint) + 0.01
    e = td.energy(ar_state, constraint, x)
    assert isinstance(e, float)
    assert torch.equal(td.dofs(ar_state, constraint), x)
    assert e == ar_state.energy().item()
