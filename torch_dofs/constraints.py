"""Constraints mapping atomistic states to optimizer degrees of freedom.

A constraint turns an :class:`~torch_dofs.state.AtomsState` into a flat vector of
degrees of freedom (dofs) that a generic unconstrained optimizer can work with,
writes such a vector back into the state and transforms energy gradients into
the same dof space.

Two constraints are implemented:

* :class:`FixedCell` relaxes positions only, optionally with a subset of
  coordinates clamped. The cell never changes.
* :class:`VariableCell` relaxes positions and the cell jointly. Positions are
  described relative to a reference configuration ``(X0, F0)`` captured when the
  constraint is created: ``x_i = F F0^{-1} x0_i + u_i``. The dofs are the free
  entries of the residual displacements ``u_i`` followed by the 9 entries of
  ``F``. Clamped coordinates keep ``u = 0`` and therefore still follow the cell.

All flattening goes through :func:`flatten_positions`, :func:`unflatten_positions`,
:func:`flatten_cell` and :func:`unflatten_cell`. Coordinate ``k`` of atom ``i``
lives at flat index ``3 * i + k`` and ``F[a, b]`` at ``3 * a + b``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import torch


if TYPE_CHECKING:
    from torch_dofs.state import AtomsState
    from torch_dofs.typing import IndexLike


N_CELL_DOFS = 9


class ConfigurationError(ValueError):
    """Raised when a constraint cannot be built from the given arguments."""


def flatten_positions(positions: torch.Tensor) -> torch.Tensor:
    """Flatten an (n_atoms, 3) tensor so that atom i, axis k sits at ``3 * i + k``."""
    return positions.reshape(-1)


def unflatten_positions(flat: torch.Tensor) -> torch.Tensor:
    """Inverse of :func:`flatten_positions`."""
    return flat.reshape(-1, 3)


def flatten_cell(matrix: torch.Tensor) -> torch.Tensor:
    """Flatten a 3x3 matrix row by row."""
    return matrix.reshape(N_CELL_DOFS)


def unflatten_cell(flat: torch.Tensor) -> torch.Tensor:
    """Inverse of :func:`flatten_cell`."""
    return flat.reshape(3, 3)


def _as_atom_indices(
    indices: IndexLike, n_atoms: int, name: str, device: torch.device | None
) -> torch.Tensor:
    """Validate a list of atom indices and convert it to a long tensor."""
    indices = torch.atleast_1d(torch.as_tensor(indices, device=device))
    if indices.ndim > 1:
        raise ConfigurationError(
            f"{name} has wrong number of dimensions. "
            f"Got {indices.ndim}, expected ndim <= 1"
        )

    if indices.dtype == torch.bool:
        if len(indices) != n_atoms:
            raise ConfigurationError(
                f"{name} given as a boolean mask must have length {n_atoms}, "
                f"got {len(indices)}"
            )
        indices = torch.where(indices)[0]
    elif len(indices) == 0:
        indices = torch.empty(0, dtype=torch.long, device=device)
    elif torch.is_floating_point(indices) or torch.is_complex(indices):
        raise ConfigurationError(
            f"{name} must be integers or boolean mask, not dtype={indices.dtype}"
        )

    if len(torch.unique(indices)) < len(indices):
        raise ConfigurationError(
            f"The {name} array contains duplicates. "
            "Perhaps you want to specify a mask instead, but "
            "forgot the mask= keyword."
        )
    if len(indices) > 0 and (indices.min() < 0 or indices.max() >= n_atoms):
        raise ConfigurationError(
            f"{name} must lie in [0, {n_atoms}), got values from "
            f"{indices.min().item()} to {indices.max().item()}"
        )
    return indices.long()


def analyze_mask(
    n_atoms: int,
    *,
    free: IndexLike | None = None,
    clamp: IndexLike | None = None,
    mask: torch.Tensor | None = None,
    device: torch.device | None = None,
) -> torch.Tensor:
    """Resolve a free/clamp/mask specification into free flat coordinate indices.

    At most one of the keyword arguments may be given:

    * none: every coordinate of every atom is free
    * ``free``: atom indices whose three coordinates are free
    * ``clamp``: atom indices whose three coordinates are clamped
    * ``mask``: boolean tensor of shape (n_atoms, 3), True for free coordinates

    Args:
        n_atoms: Number of atoms in the system
        free: Free atom indices (not dof indices)
        clamp: Clamped atom indices (not dof indices)
        mask: Per-coordinate mask with the same layout as the positions
        device: Device of the returned tensor

    Returns:
        Sorted long tensor of free flat coordinate indices

    Raises:
        ConfigurationError: If more than one specification is given, the mask has
            the wrong shape or dtype, or an index list is invalid. The mask is
            indexed ``mask[atom, axis]``; a transposed (3, n_atoms) mask is only
            rejected when n_atoms != 3, for three atoms both layouts share a shape
    """
    given = [
        name
        for name, arg in (("free", free), ("clamp", clamp), ("mask", mask))
        if arg is not None
    ]
    if len(given) > 1:
        raise ConfigurationError(
            f"only one of `free`, `clamp`, `mask` may be provided, got {given}"
        )
    if not given:
        return torch.arange(3 * n_atoms, device=device)

    if clamp is not None:
        clamp = _as_atom_indices(clamp, n_atoms, "clamp", device)
        keep = torch.ones(n_atoms, dtype=torch.bool, device=device)
        keep[clamp] = False
        free = torch.where(keep)[0]

    if free is not None:
        free = _as_atom_indices(free, n_atoms, "free", device)
        mask = torch.zeros((n_atoms, 3), dtype=torch.bool, device=device)
        mask[free] = True
    else:
        mask = torch.as_tensor(mask, device=device)
        if mask.dtype != torch.bool:
            raise ConfigurationError(f"mask must be a boolean tensor, got {mask.dtype}")
        if mask.shape != (n_atoms, 3):
            raise ConfigurationError(
                f"mask must have shape ({n_atoms}, 3), got {tuple(mask.shape)}"
            )

    return torch.where(flatten_positions(mask))[0]


class DofConstraint(ABC):
    """Base class for dof mappings.

    A constraint owns the set of free flat coordinate indices and implements the
    four operations an optimizer needs: ``dofs``, ``set_dofs``, ``gradient`` and
    ``project``. ``gradient`` must return the derivative of the energy with
    respect to the vector returned by ``dofs``, in the same order.
    """

    def __init__(self, ifree: torch.Tensor) -> None:
        """Initialize the constraint from free flat coordinate indices.

        Args:
            ifree: Free flat coordinate indices, see :func:`analyze_mask`
        """
        ifree = torch.as_tensor(ifree)
        if ifree.ndim != 1 or (len(ifree) > 0 and torch.is_floating_point(ifree)):
            raise ConfigurationError("free indices must be a 1D integer tensor")
        if len(torch.unique(ifree)) < len(ifree):
            raise ConfigurationError("free indices contain duplicates")
        if len(ifree) > 0 and ifree.min() < 0:
            raise ConfigurationError(
                f"free indices must be non-negative, got {ifree.min().item()}"
            )
        self.ifree = ifree.long()

    @property
    def n_free(self) -> int:
        """Number of free atomic coordinates."""
        return len(self.ifree)

    @property
    @abstractmethod
    def n_dofs(self) -> int:
        """Length of the dof vector."""

    @abstractmethod
    def dofs(self, state: AtomsState) -> torch.Tensor:
        """Read the dof vector from the state.

        Args:
            state: Atomistic state

        Returns:
            Dof vector of length ``n_dofs``
        """

    @abstractmethod
    def set_dofs(self, state: AtomsState, x: torch.Tensor) -> AtomsState:
        """Write a dof vector into the state in place.

        Args:
            state: Atomistic state to modify
            x: Dof vector of length ``n_dofs``

        Returns:
            The modified state
        """

    @abstractmethod
    def gradient(self, state: AtomsState) -> torch.Tensor:
        """Energy gradient with respect to the dofs at the current state.

        Args:
            state: Atomistic state with an attached model

        Returns:
            Gradient vector of length ``n_dofs``
        """

    def project(self, state: AtomsState) -> AtomsState:
        """Project the state onto the constraint manifold.

        Both implemented constraints are linear in the positions, so there is
        nothing to project and the state is returned unchanged.
        """
        return state

    def project_matrix(self, matrix: torch.Tensor) -> torch.Tensor:
        """Restrict a (3N, 3N) matrix to dof space."""
        raise NotImplementedError(
            f"{type(self).__name__} does not support matrix projection"
        )

    def _check_length(self, x: torch.Tensor) -> None:
        if x.ndim != 1 or len(x) != self.n_dofs:
            raise ValueError(
                f"{type(self).__name__} expects a dof vector of length {self.n_dofs}, "
                f"got shape {tuple(x.shape)}"
            )

    def _check_state(self, state: AtomsState) -> None:
        if self.ifree.numel() > 0 and self.ifree.max() >= 3 * state.n_atoms:
            raise ValueError(
                f"{type(self).__name__} has free indices up to {self.ifree.max()}, "
                f"but state only has {3 * state.n_atoms} coordinates"
            )

    def __repr__(self) -> str:
        """String representation of the constraint."""
        if len(self.ifree) <= 10:
            ifree_str = self.ifree.tolist()
        else:
            ifree_str = f"{self.ifree[:5].tolist()}...{self.ifree[-5:].tolist()}"
        return f"{type(self).__name__}(ifree={ifree_str})"


class FixedCell(DofConstraint):
    """Position-only relaxation with a fixed cell.

    The dofs are the free entries of the flattened positions. Clamped
    coordinates keep whatever value the state holds when ``set_dofs`` is called.

    Examples:
        All atoms free:
        >>> constraint = FixedCell(state)

        Clamp the first two atoms:
        >>> constraint = FixedCell(state, clamp=[0, 1])

        Only allow motion along z:
        >>> mask = torch.zeros(state.n_atoms, 3, dtype=torch.bool)
        >>> mask[:, 2] = True
        >>> constraint = FixedCell(state, mask=mask)
    """

    def __init__(
        self,
        state: AtomsState,
        *,
        free: IndexLike | None = None,
        clamp: IndexLike | None = None,
        mask: torch.Tensor | None = None,
    ) -> None:
        """Build the constraint for a state.

        Args:
            state: Atomistic state the constraint will act on
            free: Free atom indices
            clamp: Clamped atom indices
            mask: Boolean (n_atoms, 3) mask of free coordinates

        Raises:
            ConfigurationError: See :func:`analyze_mask`
        """
        super().__init__(
            analyze_mask(
                state.n_atoms, free=free, clamp=clamp, mask=mask, device=state.device
            )
        )

    @classmethod
    def from_free_indices(cls, ifree: torch.Tensor) -> FixedCell:
        """Create the constraint from precomputed free flat coordinate indices."""
        constraint = cls.__new__(cls)
        DofConstraint.__init__(constraint, ifree)
        return constraint

    @property
    def n_dofs(self) -> int:
        """Length of the dof vector."""
        return self.n_free

    def dofs(self, state: AtomsState) -> torch.Tensor:
        """Free entries of the flattened positions."""
        self._check_state(state)
        return flatten_positions(state.positions)[self.ifree].clone()

    def set_dofs(self, state: AtomsState, x: torch.Tensor) -> AtomsState:
        """Overwrite the free coordinates of the state, keeping clamped ones."""
        self._check_length(x)
        self._check_state(state)
        flat = flatten_positions(state.positions).clone()
        flat[self.ifree] = x.to(device=flat.device, dtype=flat.dtype)
        state.set_positions(unflatten_positions(flat))
        return state

    def gradient(self, state: AtomsState) -> torch.Tensor:
        """Free entries of the flattened negative forces."""
        self._check_state(state)
        return flatten_positions(state.gradient())[self.ifree].clone()

    def project_matrix(self, matrix: torch.Tensor) -> torch.Tensor:
        """Restrict a (3N, 3N) matrix, e.g. a Hessian approximation, to the free rows
        and columns, in the order of :meth:`dofs`.

        Args:
            matrix: Square matrix indexed by flat coordinates

        Returns:
            Matrix of shape (n_dofs, n_dofs)
        """
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"matrix must be square, got shape {tuple(matrix.shape)}")
        if self.ifree.numel() > 0 and self.ifree.max() >= matrix.shape[0]:
            raise ValueError(
                f"matrix of size {matrix.shape[0]} is too small for free index "
                f"{self.ifree.max().item()}"
            )
        ifree = self.ifree.to(matrix.device)
        return matrix[ifree][:, ifree]


class VariableCell(DofConstraint):
    """Joint relaxation of positions and cell.

    On construction the current positions ``X0`` and deformation ``F0`` are stored
    as reference. Dofs are understood *relative* to this reference: a dof vector
    represents a pair ``(U, F)`` of residual displacements and a deformation
    matrix, and the positions are

        ``x_i = F F0^{-1} x0_i + u_i``

    Only free coordinates carry a residual displacement. Clamped coordinates have
    ``u = 0`` and therefore still move with the cell. The reference is never
    updated; to re-reference, build a new constraint.

    The dof vector is ``[flatten(U)[ifree]; flatten_cell(F)]``.
    """

    def __init__(
        self,
        state: AtomsState,
        *,
        free: IndexLike | None = None,
        clamp: IndexLike | None = None,
        mask: torch.Tensor | None = None,
    ) -> None:
        """Build the constraint and snapshot the reference configuration.

        Args:
            state: Atomistic state the constraint will act on
            free: Free atom indices
            clamp: Clamped atom indices
            mask: Boolean (n_atoms, 3) mask of free coordinates

        Raises:
            ConfigurationError: See :func:`analyze_mask`, or if the current
                deformation matrix is singular or ill-conditioned
        """
        super().__init__(
            analyze_mask(
                state.n_atoms, free=free, clamp=clamp, mask=mask, device=state.device
            )
        )
        F0 = state.deformation.detach().clone()
        if not torch.isfinite(F0).all():
            raise ConfigurationError("reference deformation contains non-finite values")
        cond = torch.linalg.cond(F0).item()
        if not cond < 1 / torch.finfo(F0.dtype).eps:
            raise ConfigurationError(
                f"reference deformation is singular or ill-conditioned, cond = {cond:.3e}"
            )
        F0_inv = torch.linalg.inv(F0)
        self._X0 = state.positions.detach().clone()
        self._F0 = F0
        self._F0_inv = F0_inv

    @property
    def reference_positions(self) -> torch.Tensor:
        """Copy of the reference positions X0."""
        return self._X0.clone()

    @property
    def reference_deformation(self) -> torch.Tensor:
        """Copy of the reference deformation F0."""
        return self._F0.clone()

    @property
    def n_dofs(self) -> int:
        """Length of the dof vector."""
        return self.n_free + N_CELL_DOFS

    def _check_state(self, state: AtomsState) -> None:
        if state.n_atoms != self._X0.shape[0]:
            raise ValueError(
                f"VariableCell was built for {self._X0.shape[0]} atoms, "
                f"but state has {state.n_atoms}"
            )

    def _affine(self, deformation: torch.Tensor) -> torch.Tensor:
        """Map ``A = F F0^{-1}`` taking the reference cell onto ``deformation``."""
        return deformation @ self._F0_inv.to(deformation)

    def residual_displacements(self, state: AtomsState) -> torch.Tensor:
        """Displacements not explained by affine transport of the reference.

        Returns:
            ``U = X - X0 A^T`` with shape (n_atoms, 3)
        """
        self._check_state(state)
        A = self._affine(state.deformation)
        return state.positions - self._X0.to(state.positions) @ A.mT

    def dofs(self, state: AtomsState) -> torch.Tensor:
        """Free residual displacements followed by the flattened deformation."""
        U = self.residual_displacements(state)
        return torch.cat(
            [flatten_positions(U)[self.ifree], flatten_cell(state.deformation)]
        )

    def set_dofs(self, state: AtomsState, x: torch.Tensor) -> AtomsState:
        """Write positions and cell encoded by ``x`` into the state."""
        self._check_length(x)
        self._check_state(state)
        x = x.to(device=state.device, dtype=state.dtype)

        F = unflatten_cell(x[-N_CELL_DOFS:]).clone()
        A = self._affine(F)
        flat = flatten_positions(self._X0.to(F) @ A.mT).clone()
        flat[self.ifree] += x[:-N_CELL_DOFS]

        state.set_positions(unflatten_positions(flat))
        state.set_deformation(F)
        return state

    def gradient(self, state: AtomsState) -> torch.Tensor:
        """Gradient with respect to ``[u_free; F]``.

        With ``G`` the negative forces, ``W = V sigma`` the energy derivative with
        respect to homogeneous strain and ``U`` the residual displacements, the
        derivative with respect to ``F`` along the dof parametrization is

            ``dE/dF = (W - G^T U) F^{-T}``

        which reduces to ``W F^{-T}`` when all residual displacements vanish.
        """
        G = state.gradient()
        U = self.residual_displacements(state)
        F = state.deformation
        W = state.volume * state.stress()
        S = torch.linalg.solve(F, (W - G.mT @ U).mT).mT
        return torch.cat([flatten_positions(G)[self.ifree], flatten_cell(S)])

    def project(self, state: AtomsState) -> AtomsState:
        """No-op.

        Volume- or shape-preserving cell constraints would project here; none are
        implemented, so the state is returned unchanged.
        """
        return state


def dofs(state: AtomsState, constraint: DofConstraint) -> torch.Tensor:
    """Dof vector of ``state`` under ``constraint``."""
    return constraint.dofs(state)


def set_dofs(
    state: AtomsState, constraint: DofConstraint, x: torch.Tensor
) -> AtomsState:
    """Write the dof vector ``x`` into ``state`` in place and return it."""
    return constraint.set_dofs(state, x)


def gradient(state: AtomsState, constraint: DofConstraint) -> torch.Tensor:
    """Energy gradient in dof space, same length and order as :func:`dofs`."""
    return constraint.gradient(state)


def project(state: AtomsState, constraint: DofConstraint) -> AtomsState:
    """Project ``state`` onto the constraint manifold."""
    return constraint.project(state)


def project_matrix(constraint: DofConstraint, matrix: torch.Tensor) -> torch.Tensor:
    """Restrict a (3N, 3N) matrix to the free coordinates of ``constraint``."""
    return constraint.project_matrix(matrix)


def energy(state: AtomsState, constraint: DofConstraint, x: torch.Tensor) -> float:
    """Energy at dof vector ``x``.

    The dofs are written into ``state``, which is left in the configuration
    described by ``x``.
    """
    constraint.set_dofs(state, x)
    return state.energy().item()
