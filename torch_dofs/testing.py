"""Finite-difference checks of energy gradients.

* :func:`fdtest`: first-order finite-difference test for a scalar function
* :func:`fdtest_state`: the same test through the dof mapping of a constraint
"""

import warnings
from collections.abc import Callable

import torch

from torch_dofs.constraints import DofConstraint, energy, gradient, set_dofs
from torch_dofs.state import AtomsState


FD_EXPONENTS = range(2, 12)


def fdtest(
    f: Callable[[torch.Tensor], float],
    df: Callable[[torch.Tensor], torch.Tensor],
    x: torch.Tensor,
    *,
    verbose: bool = True,
) -> bool:
    """First-order finite-difference test for a scalar function.

    Forward differences with step ``h = 0.1**p`` for ``p = 2, ..., 11`` are
    compared to the analytic gradient in the sup-norm. For a consistent gradient
    the error first decreases linearly with ``h`` and then grows again once
    round-off dominates. The test passes when the smallest error is at least
    three orders of magnitude below the largest.

    Args:
        f: Scalar function
        df: Gradient of ``f``
        x: Point at which to test, not modified
        verbose: Print the error table

    Returns:
        Whether the test passed
    """
    x = x.detach().clone()
    E = f(x)
    dE = df(x).detach().clone()
    errors = []

    if verbose:
        print("---------|----------- ")
        print("    h    | error ")
        print("---------|----------- ")
    for p in FD_EXPONENTS:
        h = 0.1**p
        dEh = torch.empty_like(dE)
        for n in range(len(dE)):
            x[n] += h
            dEh[n] = (f(x) - E) / h
            x[n] -= h
        errors.append((dE - dEh).abs().max().item())
        if verbose:
            print(f" {h:1.1e} | {errors[-1]:4.2e}  ")
    if verbose:
        print("---------|----------- ")

    if min(errors) <= 1e-3 * max(errors):
        if verbose:
            print("passed")
        return True

    warnings.warn(
        "It seems the finite-difference test has failed, which indicates "
        "that there is an inconsistency between the function and gradient "
        "evaluation. Please double-check this manually / visually. (It is "
        "also possible that the function being tested is poorly scaled.)",
        UserWarning,
        stacklevel=2,
    )
    return False


def fdtest_state(
    state: AtomsState,
    constraint: DofConstraint,
    *,
    rattle: float = 0.01,
    seed: int | None = None,
    verbose: bool = True,
) -> bool:
    """Finite-difference test of ``gradient`` against ``energy`` for a constraint.

    The dofs are perturbed by uniform noise of amplitude ``rattle`` to move away
    from equilibrium before testing. The positions and cell of ``state`` are
    restored afterwards.

    Args:
        state: State with an attached model
        constraint: Constraint defining the dof mapping
        rattle: Amplitude of the random perturbation of the dofs
        seed: Seed for the perturbation
        verbose: Print the error table

    Returns:
        Whether the test passed
    """
    positions, cell = state.positions.clone(), state.cell.clone()
    generator = torch.Generator(device=state.device)
    if seed is not None:
        generator.manual_seed(seed)

    x = constraint.dofs(state)
    x = x + rattle * torch.rand(
        x.shape, generator=generator, device=x.device, dtype=x.dtype
    )

    def _gradient(x: torch.Tensor) -> torch.Tensor:
        set_dofs(state, constraint, x)
        return gradient(state, constraint)

    try:
        return fdtest(
            lambda x: energy(state, constraint, x), _gradient, x, verbose=verbose
        )
    finally:
        state.set_positions(positions)
        state.set_deformation(cell)
