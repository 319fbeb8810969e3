"""BFGS Hessian Approximation for the SLSQP step kernel.

The kernel keeps a dense quasi-Newton approximation B of the Hessian of the
Lagrangian. Between calls it lives in the ``hessian`` workspace segment as
the packed lower triangle (row by row), which takes n(n+1)/2 entries instead
of n^2.

Powell's damping is applied to each (s, y) pair before the update so that B
stays positive definite even when the curvature condition s^T y > 0 does
not hold (common in constrained optimization).
"""

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped


def pack_lower(B: Float[Array, "n n"]) -> Float[Array, " p"]:
    """Pack the lower triangle of a symmetric matrix row by row."""
    rows, cols = np.tril_indices(B.shape[0])
    return B[rows, cols]


def unpack_lower(packed: Float[Array, " p"], n: int) -> Float[Array, "n n"]:
    """Rebuild the symmetric n x n matrix from its packed lower triangle."""
    rows, cols = np.tril_indices(n)
    L = jnp.zeros((n, n)).at[rows, cols].set(packed[: rows.shape[0]])
    return L + L.T - jnp.diag(jnp.diag(L))


def packed_identity(n: int) -> np.ndarray:
    """Packed lower triangle of the n x n identity."""
    rows, cols = np.tril_indices(n)
    return (rows == cols).astype(np.float64)


@jaxtyped(typechecker=beartype)
def bfgs_update(
    B: Float[Array, "n n"],
    s: Float[Array, " n"],
    y: Float[Array, " n"],
    damping_threshold: float = 0.2,
    skip_threshold: float = 1e-12,
) -> Float[Array, "n n"]:
    """Powell-damped BFGS update of the Hessian approximation.

    Powell's damping modifies y to ensure the curvature condition:
        s^T r >= threshold * s^T B s

    with the damped gradient difference:
        r = theta * y + (1 - theta) * B s

    where theta in [0, 1] is chosen to satisfy the condition above. The
    update is then the standard

        B+ = B + r r^T / (s^T r) - (B s)(B s)^T / (s^T B s)

    If the step is too small, s^T B s is not positive or any quantity is not
    finite, B is returned unchanged.

    Args:
        B: Current Hessian approximation (symmetric positive definite).
        s: Step vector s = x_{k+1} - x_k.
        y: Lagrangian gradient difference y = nabla L_{k+1} - nabla L_k.
        damping_threshold: Powell damping threshold (default 0.2).
        skip_threshold: Minimum step norm and curvature for an update.

    Returns:
        Updated Hessian approximation.
    """
    Bs = B @ s
    sTBs = jnp.dot(s, Bs)
    sTy = jnp.dot(s, y)

    should_skip = (
        (jnp.linalg.norm(s) < skip_threshold)
        | (sTBs <= skip_threshold)
        | ~jnp.isfinite(sTBs)
        | ~jnp.isfinite(sTy)
    )

    def do_update():
        use_damping = sTy < damping_threshold * sTBs
        theta = jax.lax.cond(
            use_damping,
            lambda: (1.0 - damping_threshold) * sTBs / (sTBs - sTy),
            lambda: jnp.array(1.0, dtype=sTBs.dtype),
        )
        theta = jnp.clip(theta, 0.0, 1.0)
        r = theta * y + (1.0 - theta) * Bs
        sTr = jnp.dot(s, r)
        B_new = B + jnp.outer(r, r) / sTr - jnp.outer(Bs, Bs) / sTBs
        # Keep exact symmetry despite rounding
        B_new = 0.5 * (B_new + B_new.T)
        return jnp.where(jnp.all(jnp.isfinite(B_new)), B_new, B)

    return jax.lax.cond(should_skip, lambda: B, do_update)


@jaxtyped(typechecker=beartype)
def compute_lagrangian_gradient(
    grad_f: Float[Array, " n"],
    jac: Float[Array, "m n"],
    multipliers: Float[Array, " m"],
) -> Float[Array, " n"]:
    """Compute the gradient of the Lagrangian function.

    The Lagrangian is:
        L(x, lambda) = f(x) - lambda^T c(x)

    Its gradient with respect to x is:
        nabla_x L = nabla f(x) - J^T lambda

    Bound constraints are left out: their gradients are constant, so they
    cancel in the difference used by the BFGS update.

    Args:
        grad_f: Gradient of objective function nabla f(x).
        jac: Jacobian of the constraints (m x n), equalities first.
        multipliers: Lagrange multipliers of the constraints.

    Returns:
        Gradient of Lagrangian nabla_x L.
    """
    if jac.shape[0] == 0:
        return grad_f
    return grad_f - jac.T @ multipliers
