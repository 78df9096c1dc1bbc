"""L-BFGS (Limited-memory BFGS) optimizer over dof vectors.

The optimizer only talks to the atomistic state through a constraint: it reads
the dof vector and its gradient, proposes a new dof vector and writes it back.
L-BFGS is a quasi-Newton method that approximates the inverse Hessian using a
limited history of dof and gradient differences. A backtracking line search on
the energy keeps the iteration monotone up to round-off, and steps that the line
search cannot accept are rejected.
"""

import warnings
from typing import Any

import torch
from tqdm import tqdm

from torch_dofs.constraints import DofConstraint, dofs, energy, gradient, set_dofs
from torch_dofs.optimizers.state import LBFGSState
from torch_dofs.state import AtomsState


def lbfgs_init(
    state: AtomsState,
    constraint: DofConstraint,
    *,
    step_size: float = 1.0,
    alpha: float | None = None,
) -> LBFGSState:
    r"""Create an initial LBFGSState for a state and constraint.

    Args:
        state: Atomistic state with an attached model
        constraint: Constraint defining the dof mapping
        step_size: Damping factor applied to the search direction
        alpha: Initial inverse Hessian stiffness guess. If provided, fixes
            $H_0 = 1/\alpha$ for all steps. If None (default), $H_0$ is scaled
            dynamically with $\gamma_k = (s^T y) / (y^T y)$.

    Returns:
        LBFGSState with an empty history
    """
    x = dofs(state, constraint)
    g = gradient(state, constraint)
    empty = torch.zeros((0, len(x)), device=x.device, dtype=x.dtype)
    return LBFGSState(
        x=x,
        gradient=g,
        energy=state.energy().item(),
        s_history=empty,
        y_history=empty.clone(),
        step_size=step_size,
        alpha=0.0 if alpha is None else alpha,
    )


def _two_loop(opt_state: LBFGSState, precond: torch.Tensor | None) -> torch.Tensor:
    """Apply the L-BFGS inverse Hessian approximation to the current gradient.

    Only pairs with positive curvature ``<y, s>`` are stored in the history.
    """
    q = opt_state.gradient.clone()
    n_history = opt_state.s_history.shape[0]
    rhos, alphas = [], []

    # First loop (from newest to oldest)
    for i in range(n_history - 1, -1, -1):
        s_i, y_i = opt_state.s_history[i], opt_state.y_history[i]
        rho = 1.0 / torch.dot(y_i, s_i)
        alpha = rho * torch.dot(s_i, q)
        q = q - alpha * y_i
        rhos.append(rho)
        alphas.append(alpha)

    if precond is not None:
        z = torch.linalg.solve(precond, q)
    elif opt_state.alpha > 0:
        z = q / opt_state.alpha
    elif n_history > 0:
        s_last, y_last = opt_state.s_history[-1], opt_state.y_history[-1]
        z = torch.dot(s_last, y_last) / torch.dot(y_last, y_last) * q
    else:
        z = q

    # Second loop (from oldest to newest)
    for i in range(n_history):
        s_i, y_i = opt_state.s_history[i], opt_state.y_history[i]
        rho, alpha = rhos[n_history - 1 - i], alphas[n_history - 1 - i]
        beta = rho * torch.dot(y_i, z)
        z = z + s_i * (alpha - beta)

    return z


def _clear_history(opt_state: LBFGSState) -> None:
    opt_state.s_history = opt_state.s_history[:0]
    opt_state.y_history = opt_state.y_history[:0]


def lbfgs_step(
    state: AtomsState,
    constraint: DofConstraint,
    opt_state: LBFGSState,
    *,
    max_history: int = 10,
    max_step: float = 0.2,
    curvature_eps: float = 1e-10,
    energy_tol: float = 1e-12,
    precond: torch.Tensor | None = None,
    max_backtracks: int = 10,
) -> LBFGSState:
    """Advance one L-BFGS iteration.

    Algorithm:
        1) Two-loop recursion with up to ``max_history`` pairs (s_i, y_i) to
           compute the search direction d = -H g
        2) Scale by ``step_size`` and cap the largest dof change at ``max_step``
        3) Backtrack until the Armijo condition holds. Close to a minimum the
           energy change drops below round-off, so a trial point whose energy
           agrees with the current one within ``energy_tol`` is accepted when it
           lowers the largest gradient component instead
        4) If no trial point is accepted, the state is restored to the current
           dofs, the history is cleared and the step is rejected
        5) Curvature check and history update: accept (s, y) if
           <y, s> > eps |s| |y|, otherwise clear the history

    Args:
        state: Atomistic state, left at the new configuration
        constraint: Constraint defining the dof mapping
        opt_state: Current optimizer state, updated in place
        max_history: Number of (s, y) pairs retained
        max_step: Cap on the largest component of the dof update
        curvature_eps: Relative threshold on <y, s> for accepting history pairs
        energy_tol: Relative energy tolerance below which energy differences are
            treated as round-off
        precond: Optional (n_dofs, n_dofs) preconditioner approximating the
            Hessian, replaces the initial inverse Hessian guess
        max_backtracks: Maximum number of step halvings in the line search

    Returns:
        The updated LBFGSState
    """
    g = opt_state.gradient
    d = -_two_loop(opt_state, precond)

    # fall back to steepest descent if the history produced an ascent direction
    if torch.dot(d, g) >= 0:
        d = -g
        _clear_history(opt_state)

    step = opt_state.step_size * d
    largest = step.abs().max() if step.numel() > 0 else step.new_zeros(())
    if largest > max_step:
        step = step * (max_step / largest)

    slope = torch.dot(g, step).item()
    round_off = energy_tol * max(1.0, abs(opt_state.energy))
    t = 1.0
    for _ in range(max_backtracks):
        new_x = opt_state.x + t * step
        new_energy = energy(state, constraint, new_x)
        if new_energy <= opt_state.energy + 1e-4 * t * slope:
            new_g = gradient(state, constraint)
            break
        if abs(new_energy - opt_state.energy) <= round_off:
            new_g = gradient(state, constraint)
            if new_g.abs().max().item() < opt_state.fmax:
                break
        t *= 0.5
    else:
        set_dofs(state, constraint, opt_state.x)
        _clear_history(opt_state)
        opt_state.n_iter += 1
        return opt_state

    s_new = new_x - opt_state.x
    y_new = new_g - g
    if torch.dot(s_new, y_new) <= curvature_eps * s_new.norm() * y_new.norm():
        _clear_history(opt_state)
        s_hist, y_hist = opt_state.s_history, opt_state.y_history
    else:
        s_hist = torch.cat([opt_state.s_history, s_new.unsqueeze(0)])[-max_history:]
        y_hist = torch.cat([opt_state.y_history, y_new.unsqueeze(0)])[-max_history:]

    opt_state.x = new_x
    opt_state.gradient = new_g
    opt_state.energy = new_energy
    opt_state.s_history = s_hist
    opt_state.y_history = y_hist
    opt_state.n_iter += 1
    return opt_state


def minimize(
    state: AtomsState,
    constraint: DofConstraint,
    *,
    gtol: float = 1e-6,
    max_steps: int = 1000,
    step_size: float = 1.0,
    alpha: float | None = None,
    max_history: int = 10,
    max_step: float = 0.2,
    precond: torch.Tensor | None = None,
    pbar: bool | dict[str, Any] = False,
) -> LBFGSState:
    """Relax a state under a constraint with L-BFGS.

    Iterates until the largest gradient component in dof space drops to ``gtol``
    or ``max_steps`` iterations have been taken. The state is left in the last
    configuration.

    Args:
        state: Atomistic state with an attached model
        constraint: Constraint defining the dof mapping
        gtol: Convergence threshold on the sup-norm of the dof gradient
        max_steps: Maximum number of iterations
        step_size: Damping factor, see :func:`lbfgs_init`
        alpha: Fixed inverse Hessian stiffness, see :func:`lbfgs_init`
        max_history: Number of (s, y) pairs retained
        max_step: Cap on the largest component of a dof update
        precond: Optional (n_dofs, n_dofs) preconditioner, e.g. obtained with
            :func:`~torch_dofs.constraints.project_matrix`
        pbar: Show a progress bar. If a dict is passed, it's passed to ``tqdm``
            as kwargs.

    Returns:
        Final LBFGSState
    """
    opt_state = lbfgs_init(state, constraint, step_size=step_size, alpha=alpha)

    tqdm_pbar = None
    if pbar:
        pbar_kwargs = pbar if isinstance(pbar, dict) else {}
        pbar_kwargs.setdefault("desc", "Minimize")
        pbar_kwargs.setdefault("disable", None)
        tqdm_pbar = tqdm(total=max_steps, **pbar_kwargs)

    while opt_state.fmax > gtol and opt_state.n_iter < max_steps:
        lbfgs_step(
            state,
            constraint,
            opt_state,
            max_history=max_history,
            max_step=max_step,
            precond=precond,
        )
        if tqdm_pbar is not None:
            tqdm_pbar.update(1)
            tqdm_pbar.set_postfix(energy=opt_state.energy, fmax=opt_state.fmax)

    if tqdm_pbar is not None:
        tqdm_pbar.close()

    if opt_state.fmax > gtol:
        warnings.warn(
            f"L-BFGS did not converge in {max_steps} steps, "
            f"max gradient component {opt_state.fmax:.3e} > gtol = {gtol:.1e}",
            UserWarning,
            stacklevel=2,
        )
    return opt_state
