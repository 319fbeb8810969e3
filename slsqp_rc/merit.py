"""L1 Merit Function for the SLSQP step kernel.

This module implements the weighted L1-exact penalty merit function used to
globalize the SQP iteration:

    φ(x; μ) = f(x) + Σ_j μ_j * viol_j(x)

where viol_j = |c_j(x)| for equality constraints and max(0, -c_j(x)) for
inequality constraints, and μ_j ≥ 0 are per-constraint penalty weights.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from slsqp_rc.types import Scalar


@jaxtyped(typechecker=beartype)
def constraint_violation(
    c: Float[Array, " m"],
    meq: int,
) -> Float[Array, " m"]:
    """Per-constraint violation.

    Args:
        c: Constraint values, equality constraints first.
        meq: Number of equality constraints.

    Returns:
        ``|c_j|`` for the first ``meq`` entries, ``max(0, -c_j)`` for the rest.
    """
    is_eq = jnp.arange(c.shape[0]) < meq
    return jnp.where(is_eq, jnp.abs(c), jnp.maximum(0.0, -c))


@jaxtyped(typechecker=beartype)
def compute_merit(
    f_val: Scalar,
    c: Float[Array, " m"],
    meq: int,
    penalty: Float[Array, " m"],
) -> Scalar:
    """Compute the weighted L1-exact penalty merit function value.

    Args:
        f_val: Objective function value f(x).
        c: Constraint values c(x), equality constraints first.
        meq: Number of equality constraints.
        penalty: Penalty weights μ, one per constraint.

    Returns:
        Merit function value φ(x; μ).
    """
    return f_val + jnp.sum(penalty * constraint_violation(c, meq))


@jaxtyped(typechecker=beartype)
def update_penalty_weights(
    penalty: Float[Array, " m"],
    multipliers: Float[Array, " m"],
) -> Float[Array, " m"]:
    """Update the penalty weights from the latest Lagrange multipliers.

    Each weight moves towards the magnitude of its multiplier but never drops
    below it:

        μ_j <- max(|λ_j|, (μ_j + |λ_j|) / 2)

    Args:
        penalty: Current penalty weights.
        multipliers: Lagrange multipliers from the QP subproblem.

    Returns:
        Updated penalty weights.
    """
    abs_mult = jnp.abs(multipliers)
    return jnp.maximum(abs_mult, 0.5 * (penalty + abs_mult))
