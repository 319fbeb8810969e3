"""Reference SLSQP step kernel.

`SLSQPKernel` implements the reverse-communication contract expected by
`SLSQPSession.optimize`. Each call receives the function and derivative
values the previous call asked for, advances the method, and returns the
mode code telling the driver what to evaluate next:

- ``mode = 0`` on entry starts a new optimization (f, c, g, a are given).
- ``mode = 1`` on return asks for f and c at the new ``x``.
- ``mode = -1`` on return asks for g and a at the new ``x``.
- ``mode = 0`` on return signals convergence; 2..9 are terminal failures.

At each iteration the kernel:

1. Solves the QP subproblem with the BFGS approximation B of the Lagrangian
   Hessian and the linearized constraints (bounds included), warm-starting
   the active set from the previous iteration.
2. Updates the L1 merit penalty weights from the QP multipliers.
3. Runs a line search on the merit function, one trial point per call
   (Armijo backtracking, or golden-section search for the exact mode).
4. After the gradients at the accepted point arrive, applies a
   Powell-damped BFGS update to B.

Everything that must survive between calls is kept in the session-owned
workspace (arrays) and in `KernelState` (scalars).
"""

import logging

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np

from slsqp_rc.hessian import (
    bfgs_update,
    compute_lagrangian_gradient,
    pack_lower,
    packed_identity,
    unpack_lower,
)
from slsqp_rc.linesearch import Exact, LineSearchMode
from slsqp_rc.merit import (
    compute_merit,
    constraint_violation,
    update_penalty_weights,
)
from slsqp_rc.qp_solver import QPResult, solve_qp
from slsqp_rc.reporting import SLSQPError
from slsqp_rc.types import ExitMode, FloatMatrix, FloatVector, KernelStatus
from slsqp_rc.workspace import Workspace, packed_size

_log = logging.getLogger(__name__)


class KernelState:
    """Scalars the kernel carries from one call to the next.

    Attributes:
        iteration: Number of SQP iterations started.
        max_iter: Iteration cap taken from the first call.
        f0: Objective value at the start of the line search.
        t0: Merit function value at the start of the line search.
        h3: Directional derivative of the merit function along the current
            (scaled) step.
        line_steps: Trial points tried in the current inexact line search.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.iteration = 0
        self.max_iter = 0
        self.f0 = 0.0
        self.t0 = 0.0
        self.h3 = 0.0
        self.line_steps = 0

    def __repr__(self) -> str:
        return (
            f"KernelState(iteration={self.iteration}, max_iter={self.max_iter}, "
            f"f0={self.f0}, t0={self.t0}, h3={self.h3}, "
            f"line_steps={self.line_steps})"
        )


class _Problem:
    """Per-call view of the kernel arguments and workspace segments."""

    def __init__(self, m, meq, n, x, xl, xu, f, c, g, a, workspace: Workspace):
        self.m = m
        self.meq = meq
        self.n = n
        self.x = x
        self.xl = xl
        self.xu = xu
        self.f = float(f)
        self.c = np.asarray(c[:m], dtype=np.float64)
        self.g = np.asarray(g[:n], dtype=np.float64)
        self.a = np.asarray(a[:m, :n], dtype=np.float64)

        self.penalty = workspace.view("penalty", m)
        self.hessian = workspace.view("hessian", packed_size(n))
        self.x0 = workspace.view("x0", n)
        self.multipliers = workspace.view("multipliers", m)
        self.bound_multipliers = workspace.view("multipliers", 2 * n, offset=m)
        self.step = workspace.view("step", n)
        self.lagrangian_gradient = workspace.view("lagrangian_gradient", n)
        self.previous_lagrangian_gradient = workspace.view(
            "previous_lagrangian_gradient", n
        )
        self.active_set = workspace.int_view("active_set")
        self.workspace = workspace

    def merit(self) -> float:
        return float(
            compute_merit(
                jnp.asarray(self.f),
                jnp.asarray(self.c),
                self.meq,
                jnp.asarray(self.penalty),
            )
        )

    def violation(self) -> float:
        return float(jnp.sum(constraint_violation(jnp.asarray(self.c), self.meq)))

    def weighted_violation(self) -> float:
        """Penalty-weighted constraint violation, the merit minus f."""
        return self.merit() - self.f

    def lagrangian_gradient_at_x(self) -> np.ndarray:
        return np.asarray(
            compute_lagrangian_gradient(
                jnp.asarray(self.g),
                jnp.asarray(self.a),
                jnp.asarray(self.multipliers),
            )
        )

    def move_to(self, alpha: float) -> None:
        """Set x = x0 + alpha * step, kept inside the bounds."""
        self.x[:] = self.x0 + alpha * self.step
        _enforce_bounds(self.x, self.xl, self.xu)


def _enforce_bounds(x: np.ndarray, xl: np.ndarray, xu: np.ndarray) -> None:
    # NaN or infinite bounds mean "unbounded"
    lower = np.where(np.isfinite(xl), xl, -np.inf)
    upper = np.where(np.isfinite(xu), xu, np.inf)
    np.clip(x, lower, upper, out=x)


class SLSQPKernel(eqx.Module):
    """Reference step kernel for `SLSQPSession`.

    Attributes:
        qp_max_iter: Maximum active-set iterations per QP subproblem.
        qp_tol: Feasibility and multiplier-sign tolerance of the QP solver.
        infeasibility_tol: Relative tolerance on the linearized constraints
            after the QP solve; larger residuals mean the constraints are
            incompatible (mode 4).
        min_step: Smallest step-length factor of the line search.
        armijo_factor: Sufficient decrease factor of the inexact line search.
        max_line_steps: Trial points after which the inexact line search
            accepts the current point.
        exact_line_search_tol: Bracket width at which the exact line search
            stops.
        exact_line_search_max_evals: Merit evaluations per exact line search.

    Example:
        >>> from slsqp_rc import SLSQPKernel, SLSQPSession
        >>> session = SLSQPSession(kernel=SLSQPKernel(qp_max_iter=200))
    """

    qp_max_iter: int = eqx.field(static=True, default=100)
    qp_tol: float = 1e-10
    infeasibility_tol: float = 1e-6
    min_step: float = 0.1
    armijo_factor: float = 0.1
    max_line_steps: int = eqx.field(static=True, default=10)
    exact_line_search_tol: float = 1e-3
    exact_line_search_max_evals: int = eqx.field(static=True, default=30)

    def __call__(
        self,
        m: int,
        meq: int,
        la: int,
        n: int,
        x: FloatVector,
        xl: FloatVector,
        xu: FloatVector,
        f: float,
        c: FloatVector,
        g: FloatVector,
        a: FloatMatrix,
        accuracy: float,
        iter_budget: int,
        mode: int,
        workspace: Workspace,
        state: KernelState,
        line_search: LineSearchMode,
    ) -> KernelStatus:
        """Advance the method by one reverse-communication step.

        Args:
            m: Total number of constraints.
            meq: Number of equality constraints.
            la: Leading dimension of ``c`` and ``a``, ``max(1, m)``.
            n: Number of variables.
            x: Current point, updated in place.
            xl: Lower bounds (non-finite entries mean unbounded).
            xu: Upper bounds (non-finite entries mean unbounded).
            f: Objective value at ``x``.
            c: Constraint values at ``x`` (length ``la``).
            g: Objective gradient at ``x``.
            a: Constraint Jacobian at ``x`` (``la`` x ``n``).
            accuracy: Convergence tolerance; negative selects the exact line
                search.
            iter_budget: Iteration cap on a ``mode = 0`` entry.
            mode: Mode code on entry.
            workspace: Session workspace, updated in place.
            state: Kernel scalars, updated in place.
            line_search: Line-search mode; must be `Exact` when ``accuracy``
                is negative.

        Returns:
            The new mode, the number of iterations performed so far and the
            accuracy.

        Raises:
            ValueError: If ``mode`` is not 0, 1 or -1, or the accuracy asks
                for an exact line search without its state.
            SLSQPError: If JAX runs in 32-bit mode.
        """
        if not jax.config.jax_enable_x64:
            raise SLSQPError(
                "SLSQPKernel needs 64-bit JAX arrays; enable them with "
                "jax.config.update(\"jax_enable_x64\", True) before optimizing"
            )

        exact = accuracy < 0
        if exact and not isinstance(line_search, Exact):
            raise ValueError("negative accuracy requires an Exact line search")

        if mode == ExitMode.SUCCESS:
            if meq > n:
                return KernelStatus(ExitMode.TOO_MANY_EQUALITIES, 0, accuracy)
            state.reset()
            state.max_iter = iter_budget
            problem = _Problem(m, meq, n, x, xl, xu, f, c, g, a, workspace)
            problem.hessian[:] = packed_identity(n)
            problem.penalty[:] = 0.0
            problem.multipliers[:] = 0.0
            problem.active_set[:] = 0
            new_mode = self._iterate(problem, state, accuracy, line_search)
        elif mode == ExitMode.FUNCTION_REQUIRED:
            problem = _Problem(m, meq, n, x, xl, xu, f, c, g, a, workspace)
            new_mode = self._line_search(problem, state, accuracy, line_search)
        elif mode == ExitMode.GRADIENT_REQUIRED:
            problem = _Problem(m, meq, n, x, xl, xu, f, c, g, a, workspace)
            self._update_hessian(problem)
            new_mode = self._iterate(problem, state, accuracy, line_search)
        else:
            raise ValueError(f"invalid mode on entry: {mode}")

        iterations = min(state.iteration, state.max_iter)
        _log.debug("kernel: mode %d -> %d (iteration %d)", mode, new_mode, iterations)
        return KernelStatus(new_mode, iterations, accuracy)

    def _iterate(
        self,
        problem: _Problem,
        state: KernelState,
        accuracy: float,
        line_search: LineSearchMode,
    ) -> int:
        """Start a new SQP iteration at the current point."""
        m, meq, n = problem.m, problem.meq, problem.n
        acc = abs(accuracy)

        state.iteration += 1
        if state.iteration > state.max_iter:
            return ExitMode.ITERATION_LIMIT

        if meq > 0 and np.linalg.matrix_rank(problem.a[:meq]) < meq:
            return ExitMode.RANK_DEFICIENT_EQUALITIES

        B = np.asarray(unpack_lower(jnp.asarray(problem.hessian), n))
        if not np.all(np.isfinite(B)):
            return ExitMode.SINGULAR_E
        try:
            np.linalg.cholesky(B)
        except np.linalg.LinAlgError:
            return ExitMode.SINGULAR_E

        result, A, b, bound_rows = self._solve_subproblem(problem, B)
        if not bool(result.converged):
            return ExitMode.LSQ_ITERATION_LIMIT

        d = np.asarray(result.d, dtype=np.float64)
        multipliers = np.concatenate(
            [
                np.asarray(result.multipliers_eq, dtype=np.float64),
                np.asarray(result.multipliers_ineq, dtype=np.float64),
            ]
        )
        if not self._linearization_feasible(A, b, d, problem.meq):
            return ExitMode.INCOMPATIBLE_CONSTRAINTS

        problem.multipliers[:] = multipliers[:m]
        problem.bound_multipliers[:] = 0.0
        problem.bound_multipliers[bound_rows] = multipliers[m:]

        violation = problem.violation()
        gs = float(np.dot(problem.g, d))
        if abs(gs) < acc and violation < acc:
            return ExitMode.SUCCESS

        problem.penalty[:] = np.asarray(
            update_penalty_weights(
                jnp.asarray(problem.penalty), jnp.asarray(problem.multipliers)
            )
        )
        h1 = problem.weighted_violation()
        state.h3 = gs - h1
        if state.h3 >= 0.0:
            return ExitMode.POSITIVE_DIRECTIONAL_DERIVATIVE

        problem.x0[:] = problem.x
        problem.step[:] = d
        problem.previous_lagrangian_gradient[:] = problem.lagrangian_gradient_at_x()
        state.f0 = problem.f
        state.t0 = problem.f + h1
        state.line_steps = 0

        if isinstance(line_search, Exact):
            alpha = line_search.search.start(
                self.min_step,
                1.0,
                self.exact_line_search_tol,
                self.exact_line_search_max_evals,
            )
            problem.move_to(alpha)
        else:
            self._scale_step(problem, state, 1.0)
        return ExitMode.FUNCTION_REQUIRED

    def _solve_subproblem(
        self, problem: _Problem, B: np.ndarray
    ) -> tuple[QPResult, np.ndarray, np.ndarray, np.ndarray]:
        """Assemble and solve the QP for the search direction.

        The stacked constraint rows (equalities, general inequalities, finite
        lower bounds, finite upper bounds) and their right-hand side are built
        in the ``subproblem`` workspace segment.

        Returns:
            The `QPResult`, the constraint rows and right-hand side (views
            into the workspace), and the positions of the bound rows within
            the ``2 * n`` bound multipliers.
        """
        m, meq, n = problem.m, problem.meq, problem.n
        x = problem.x

        lower_idx = np.flatnonzero(np.isfinite(problem.xl))
        upper_idx = np.flatnonzero(np.isfinite(problem.xu))
        rows = m + lower_idx.size + upper_idx.size

        A = problem.workspace.view("subproblem", (rows, n))
        b = problem.workspace.view("subproblem", rows, offset=rows * n)
        A[:] = 0.0
        A[:m] = problem.a
        b[:m] = -problem.c
        # Lower bounds: d >= xl - x
        A[m + np.arange(lower_idx.size), lower_idx] = 1.0
        b[m : m + lower_idx.size] = problem.xl[lower_idx] - x[lower_idx]
        # Upper bounds: -d >= x - xu
        offset = m + lower_idx.size
        A[offset + np.arange(upper_idx.size), upper_idx] = -1.0
        b[offset:] = x[upper_idx] - problem.xu[upper_idx]

        # Active-set flags: [general inequalities | lower bounds | upper bounds]
        n_ineq = m - meq
        flag_idx = np.concatenate(
            [np.arange(n_ineq), n_ineq + lower_idx, n_ineq + n + upper_idx]
        )
        warm_start = problem.active_set[flag_idx] != 0

        result = solve_qp(
            jnp.asarray(B),
            jnp.asarray(problem.g),
            jnp.asarray(A[:meq]),
            jnp.asarray(b[:meq]),
            jnp.asarray(A[meq:]),
            jnp.asarray(b[meq:]),
            active_set=jnp.asarray(warm_start),
            max_iter=self.qp_max_iter,
            tol=self.qp_tol,
        )

        problem.active_set[:] = 0
        problem.active_set[flag_idx] = np.asarray(result.active_set, dtype=np.int64)

        bound_rows = np.concatenate([lower_idx, n + upper_idx])
        return result, A, b, bound_rows

    def _linearization_feasible(
        self, A: np.ndarray, b: np.ndarray, d: np.ndarray, meq: int
    ) -> bool:
        """Check the QP solution against the linearized constraints."""
        if b.size == 0:
            return True
        residual = A @ d - b
        tol = self.infeasibility_tol * (1.0 + float(np.max(np.abs(b))))
        eq_ok = meq == 0 or float(np.max(np.abs(residual[:meq]))) <= tol
        ineq_ok = b.size == meq or float(np.min(residual[meq:])) >= -tol
        return eq_ok and ineq_ok

    def _scale_step(self, problem: _Problem, state: KernelState, alpha: float) -> None:
        """Scale the step by ``alpha`` and move to the new trial point."""
        state.line_steps += 1
        state.h3 *= alpha
        problem.step *= alpha
        problem.move_to(1.0)

    def _line_search(
        self,
        problem: _Problem,
        state: KernelState,
        accuracy: float,
        line_search: LineSearchMode,
    ) -> int:
        """Process f and c at a trial point."""
        t = problem.merit()

        if isinstance(line_search, Exact):
            search = line_search.search
            alpha = search.update(t)
            if alpha is not None:
                problem.move_to(alpha)
                return ExitMode.FUNCTION_REQUIRED
            problem.step *= search.alpha
        else:
            h1 = t - state.t0
            sufficient = h1 <= self.armijo_factor * state.h3
            if not sufficient and state.line_steps <= self.max_line_steps:
                alpha = max(state.h3 / (2.0 * (state.h3 - h1)), self.min_step)
                self._scale_step(problem, state, alpha)
                return ExitMode.FUNCTION_REQUIRED

        return self._check_convergence(problem, state, accuracy)

    def _check_convergence(
        self, problem: _Problem, state: KernelState, accuracy: float
    ) -> int:
        acc = abs(accuracy)
        violation = problem.violation()
        step_norm = float(np.linalg.norm(problem.x - problem.x0))
        if violation < acc and (abs(problem.f - state.f0) < acc or step_norm < acc):
            return ExitMode.SUCCESS
        return ExitMode.GRADIENT_REQUIRED

    def _update_hessian(self, problem: _Problem) -> None:
        """BFGS update with the gradients at the accepted point."""
        n = problem.n
        problem.lagrangian_gradient[:] = problem.lagrangian_gradient_at_x()
        s = problem.x - problem.x0
        y = problem.lagrangian_gradient - problem.previous_lagrangian_gradient
        B = unpack_lower(jnp.asarray(problem.hessian), n)
        B_new = bfgs_update(B, jnp.asarray(s), jnp.asarray(y))
        problem.hessian[:] = np.asarray(pack_lower(B_new))

