"""QP Subproblem Solver for the SLSQP step kernel.

This module solves the Quadratic Programming subproblem that arises at each
SLSQP iteration:

    minimize    (1/2) d^T B d + g^T d
    subject to  A_eq d = b_eq
                A_ineq d >= b_ineq

where B is the (dense, positive definite) BFGS approximation held by the
kernel and the inequality rows include the variable bounds.

A **primal active-set** method handles the inequality constraints. Each
active-set step treats the active inequalities as equalities and solves the
KKT system of the resulting equality-constrained QP directly. The active set
can be warm-started from the previous SLSQP iteration.

For inequality constraints A d >= b, the Lagrangian is:
    L(d, lambda) = (1/2) d^T B d + g^T d - lambda^T (A d - b)

with lambda >= 0 for active constraints.
"""

from typing import NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped


class QPState(eqx.Module):
    """State for the Active Set QP solver."""

    d: Float[Array, " n"]
    active_set: Bool[Array, " m_ineq"]
    multipliers_eq: Float[Array, " m_eq"]
    multipliers_ineq: Float[Array, " m_ineq"]
    iteration: Int[Array, ""]
    converged: Bool[Array, ""]


class QPResult(NamedTuple):
    """Result from the QP solver."""

    d: Float[Array, " n"]
    multipliers_eq: Float[Array, " m_eq"]
    multipliers_ineq: Float[Array, " m_ineq"]
    active_set: Bool[Array, " m_ineq"]
    converged: Bool[Array, ""]
    iterations: Int[Array, ""]


def _solve_kkt(
    B: Float[Array, "n n"],
    g: Float[Array, " n"],
    A: Float[Array, "m n"],
    b: Float[Array, " m"],
    active_mask: Bool[Array, " m"],
) -> tuple[Float[Array, " n"], Float[Array, " m"]]:
    """Solve the equality-constrained QP for the active rows of A.

    Solves:
        minimize    (1/2) d^T B d + g^T d
        subject to  A[active] d = b[active]

    through its KKT system

        [ B        -A_act^T ] [ d      ]   [ -g    ]
        [ A_act     R       ] [ lambda ] = [ b_act ]

    Inactive rows of A are zeroed and get a unit diagonal in R, so their
    multipliers come out as zero and the system keeps a fixed size. The
    system is solved in the least-squares sense: dependent or incompatible
    active rows give the closest compromise instead of NaNs, and the caller
    detects the resulting infeasibility.

    Returns:
        Tuple of (d, multipliers) with one multiplier per row of A (0 for
        inactive rows).
    """
    n = B.shape[0]

    if A.shape[0] == 0:
        d, _, _, _ = jnp.linalg.lstsq(B, -g)
        return d, jnp.zeros((0,), dtype=d.dtype)

    A_masked = jnp.where(active_mask[:, None], A, 0.0)
    b_masked = jnp.where(active_mask, b, 0.0)
    reg = jnp.diag(jnp.where(active_mask, 0.0, 1.0))

    K = jnp.block([[B, -A_masked.T], [A_masked, reg]])
    rhs = jnp.concatenate([-g, b_masked])

    sol, _, _, _ = jnp.linalg.lstsq(K, rhs)
    sol = jnp.where(jnp.all(jnp.isfinite(sol)), sol, jnp.zeros_like(sol))

    d = sol[:n]
    multipliers = jnp.where(active_mask, sol[n:], 0.0)
    return d, multipliers


@eqx.filter_jit
@jaxtyped(typechecker=beartype)
def solve_qp(
    B: Float[Array, "n n"],
    g: Float[Array, " n"],
    A_eq: Float[Array, "m_eq n"],
    b_eq: Float[Array, " m_eq"],
    A_ineq: Float[Array, "m_ineq n"],
    b_ineq: Float[Array, " m_ineq"],
    active_set: Bool[Array, " m_ineq"] | None = None,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> QPResult:
    """Solve a QP with equality and inequality constraints.

    At each active-set iteration the equality-constrained QP for the current
    working set is solved; then the most violated inactive inequality is
    added, or failing that the active inequality with the most negative
    multiplier is dropped, until neither exists.

    Args:
        B: Positive definite Hessian of the QP objective.
        g: Linear term of the objective (gradient).
        A_eq: Equality constraint matrix (m_eq x n).
        b_eq: Equality constraint RHS (m_eq,).
        A_ineq: Inequality constraint matrix (m_ineq x n).
        b_ineq: Inequality constraint RHS (m_ineq,).
        active_set: Initial working set of inequality constraints, e.g. the
            final active set of the previous SQP iteration. Defaults to empty.
        max_iter: Maximum active-set iterations.
        tol: Feasibility and optimality tolerance.

    Returns:
        QPResult containing the solution, multipliers, final active set and
        convergence info.
    """
    m_eq = A_eq.shape[0]
    m_ineq = A_ineq.shape[0]

    # No inequality constraints: a single KKT solve is exact
    if m_ineq == 0:
        eq_mask = jnp.ones(m_eq, dtype=bool)
        d, mult_eq = _solve_kkt(B, g, A_eq, b_eq, eq_mask)
        return QPResult(
            d=d,
            multipliers_eq=mult_eq,
            multipliers_ineq=jnp.zeros((0,), dtype=g.dtype),
            active_set=jnp.zeros((0,), dtype=bool),
            converged=jnp.array(True),
            iterations=jnp.array(1),
        )

    A_combined = jnp.concatenate([A_eq, A_ineq], axis=0)
    b_combined = jnp.concatenate([b_eq, b_ineq])

    if active_set is None:
        active_set = jnp.zeros(m_ineq, dtype=bool)

    init_state = QPState(
        d=jnp.zeros_like(g),
        active_set=active_set,
        multipliers_eq=jnp.zeros((m_eq,), dtype=g.dtype),
        multipliers_ineq=jnp.zeros((m_ineq,), dtype=g.dtype),
        iteration=jnp.array(0),
        converged=jnp.array(False),
    )

    def cond_fn(state: QPState) -> Bool[Array, ""]:
        return ~state.converged & (state.iteration < max_iter)

    def body_fn(state: QPState) -> QPState:
        combined_mask = jnp.concatenate([jnp.ones(m_eq, dtype=bool), state.active_set])
        d_new, mult_all = _solve_kkt(B, g, A_combined, b_combined, combined_mask)

        mult_eq_new = mult_all[:m_eq]
        mult_ineq_new = mult_all[m_eq:]

        # Most violated inactive inequality
        residuals = A_ineq @ d_new - b_ineq
        violated = (residuals < -tol) & ~state.active_set
        any_violated = jnp.any(violated)
        violation_scores = jnp.where(violated, -residuals, -jnp.inf)
        most_violated_idx = jnp.argmax(violation_scores)

        # Most negative multiplier among the active inequalities
        negative_mult = (mult_ineq_new < -tol) & state.active_set
        any_negative = jnp.any(negative_mult)
        mult_scores = jnp.where(state.active_set, mult_ineq_new, jnp.inf)
        most_negative_idx = jnp.argmin(mult_scores)

        new_active = jax.lax.cond(
            any_violated,
            lambda: state.active_set.at[most_violated_idx].set(True),
            lambda: jax.lax.cond(
                any_negative,
                lambda: state.active_set.at[most_negative_idx].set(False),
                lambda: state.active_set,
            ),
        )

        return QPState(
            d=d_new,
            active_set=new_active,
            multipliers_eq=mult_eq_new,
            multipliers_ineq=mult_ineq_new,
            iteration=state.iteration + 1,
            converged=~any_violated & ~any_negative,
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    return QPResult(
        d=final_state.d,
        multipliers_eq=final_state.multipliers_eq,
        multipliers_ineq=final_state.multipliers_ineq,
        active_set=final_state.active_set,
        converged=final_state.converged,
        iterations=final_state.iteration,
    )
