"""SLSQP session and reverse-communication driver.

`SLSQPSession` owns everything one optimization needs: the problem
dimensions and bounds, the user's evaluators, the kernel workspace and the
kernel state. Its life cycle is:

1. `SLSQPSession.initialize` validates the problem and allocates the
   workspace. Invalid input is reported and leaves the session unusable
   (and un-allocated) until a later `initialize` succeeds.
2. `SLSQPSession.optimize` runs the reverse-communication loop: it calls the
   step kernel once per pass and, depending on the mode code it returns,
   evaluates the objective and constraints (mode 1), their derivatives
   (mode -1), or stops (any other mode).
3. `SLSQPSession.destroy` releases everything. It is idempotent and runs
   automatically at the start of `initialize`.

The kernel never calls user code; all evaluations happen here, on the
caller's thread.
"""

import logging
from typing import Any, NamedTuple, cast

import equinox as eqx
import numpy as np

from slsqp_rc.kernel import KernelState, SLSQPKernel
from slsqp_rc.linesearch import (
    Exact,
    LineSearch,
    LineSearchMode,
    line_search_from_code,
)
from slsqp_rc.reporting import MessageReporter
from slsqp_rc.types import (
    ExitMode,
    FloatVector,
    GradientFn,
    ObjectiveFn,
    ReportFn,
    StepKernel,
    exit_message,
)
from slsqp_rc.workspace import Workspace

_log = logging.getLogger(__name__)


class SessionConfig(eqx.Module):
    """Validated problem definition of an initialized session.

    Attributes:
        n: Number of variables.
        m: Total number of constraints.
        meq: Number of equality constraints (stored first in ``c``).
        max_iter: Maximum number of SQP iterations.
        accuracy: Convergence tolerance as given by the caller.
        lower_bound: Lower bounds on ``x``; non-finite entries mean unbounded.
        upper_bound: Upper bounds on ``x``; non-finite entries mean unbounded.
        line_search: `Inexact` or `Exact` line search.
    """

    n: int = eqx.field(static=True)
    m: int = eqx.field(static=True)
    meq: int = eqx.field(static=True)
    max_iter: int = eqx.field(static=True)
    accuracy: float
    lower_bound: np.ndarray
    upper_bound: np.ndarray
    line_search: LineSearchMode

    @property
    def kernel_accuracy(self) -> float:
        """Accuracy as passed to the kernel; the sign selects the line search."""
        if isinstance(self.line_search, Exact):
            return -abs(self.accuracy)
        return abs(self.accuracy)


class OptimizeStatus(NamedTuple):
    """Outcome of `SLSQPSession.optimize`.

    Attributes:
        status: Final mode code (see `ExitMode`); 0 on success.
        iterations: Number of SQP iterations reported by the kernel.
    """

    status: int
    iterations: int

    @property
    def success(self) -> bool:
        return self.status == ExitMode.SUCCESS

    @property
    def message(self) -> str:
        return exit_message(self.status)


class SLSQPSession:
    """Reverse-communication SLSQP optimizer session.

    Attributes:
        reporter: Destination of diagnostic messages.
        kernel: Step kernel called by `optimize`.
        config: Problem definition, or None when not initialized.
        workspace: Kernel workspace, or None when not initialized.
        kernel_state: Kernel scalars, or None when not initialized.
        objective_fn: Objective and constraint evaluator.
        gradient_fn: Gradient and Jacobian evaluator.
        report_fn: Optional per-iteration callback.
        iteration: Number of iteration reports issued by the running or last
            `optimize` call.

    Example:
        >>> import jax
        >>> import numpy as np
        >>> from slsqp_rc import SLSQPSession
        >>>
        >>> jax.config.update("jax_enable_x64", True)
        >>>
        >>> def objective(x):
        ...     return float(x @ x), np.array([x[0] + x[1] - 1.0])
        >>>
        >>> def gradient(x):
        ...     return 2.0 * x, np.array([[1.0, 1.0]])
        >>>
        >>> session = SLSQPSession()
        >>> session.initialize(
        ...     2, 1, 1, 50, 1e-8, objective, gradient,
        ...     np.full(2, -10.0), np.full(2, 10.0),
        ... )
        True
        >>> x = np.array([2.0, 0.0])
        >>> status, iterations = session.optimize(x)
    """

    def __init__(
        self,
        reporter: MessageReporter | None = None,
        kernel: StepKernel | None = None,
    ):
        self.reporter = reporter if reporter is not None else MessageReporter()
        self.kernel: StepKernel = kernel if kernel is not None else SLSQPKernel()
        self._clear()

    def __repr__(self) -> str:
        if self.config is None:
            return "SLSQPSession(uninitialized)"
        return (
            f"SLSQPSession(n={self.n}, m={self.m}, meq={self.meq}, "
            f"max_iter={self.max_iter}, accuracy={self.accuracy}, "
            f"line_search={type(self.line_search).__name__})"
        )

    def _clear(self) -> None:
        self.config: SessionConfig | None = None
        self.workspace: Workspace | None = None
        self.kernel_state: KernelState | None = None
        self.objective_fn: ObjectiveFn | None = None
        self.gradient_fn: GradientFn | None = None
        self.report_fn: ReportFn | None = None
        self.iteration = 0

    # Problem scalars read as zero when the session is not initialized
    @property
    def is_initialized(self) -> bool:
        return self.config is not None

    @property
    def n(self) -> int:
        return self.config.n if self.config is not None else 0

    @property
    def m(self) -> int:
        return self.config.m if self.config is not None else 0

    @property
    def meq(self) -> int:
        return self.config.meq if self.config is not None else 0

    @property
    def max_iter(self) -> int:
        return self.config.max_iter if self.config is not None else 0

    @property
    def accuracy(self) -> float:
        return self.config.accuracy if self.config is not None else 0.0

    @property
    def lower_bound(self) -> np.ndarray | None:
        return self.config.lower_bound if self.config is not None else None

    @property
    def upper_bound(self) -> np.ndarray | None:
        return self.config.upper_bound if self.config is not None else None

    @property
    def line_search(self) -> LineSearchMode | None:
        return self.config.line_search if self.config is not None else None

    @property
    def l_w(self) -> int:
        """Length of the real workspace (0 when not initialized)."""
        return self.workspace.l_w if self.workspace is not None else 0

    @property
    def l_jw(self) -> int:
        """Length of the integer workspace (0 when not initialized)."""
        return self.workspace.l_jw if self.workspace is not None else 0

    def initialize(
        self,
        n: int,
        m: int,
        meq: int,
        max_iter: int,
        accuracy: float,
        objective_fn: ObjectiveFn,
        gradient_fn: GradientFn,
        lower_bound: Any,
        upper_bound: Any,
        line_search_mode: int = LineSearch.INEXACT,
        report_fn: ReportFn | None = None,
        reporter: MessageReporter | None = None,
    ) -> bool:
        """Validate a problem definition and allocate the workspace.

        The checks run in order and the first failure is reported:

        1. both bound vectors have ``n`` entries;
        2. ``0 <= meq <= m``;
        3. ``m >= 0``;
        4. ``n >= 1``;
        5. ``lower_bound <= upper_bound`` elementwise;
        6. ``line_search_mode`` is 1 (inexact) or 2 (exact).

        Args:
            n: Number of variables.
            m: Total number of constraints.
            meq: Number of equality constraints.
            max_iter: Maximum number of SQP iterations.
            accuracy: Convergence tolerance.
            objective_fn: ``objective_fn(x) -> (f, c)``.
            gradient_fn: ``gradient_fn(x) -> (g, a)``.
            lower_bound: Lower bounds on ``x`` (use -inf or NaN for none).
            upper_bound: Upper bounds on ``x`` (use inf or NaN for none).
            line_search_mode: `LineSearch.INEXACT` (1) or `LineSearch.EXACT`
                (2).
            report_fn: Optional ``report_fn(iteration, x, f, c)`` called for
                the initial guess, every new iterate and the solution.
            reporter: Replaces the session's message reporter before
                validation starts.

        Returns:
            True if the session is ready for `optimize`.
        """
        self.destroy()
        if reporter is not None:
            self.reporter = reporter

        xl = np.array(lower_bound, dtype=np.float64, ndmin=1)
        xu = np.array(upper_bound, dtype=np.float64, ndmin=1)

        if xl.ndim != 1 or xl.shape != xu.shape or xl.size != n:
            self.reporter.report("error: invalid upper or lower bound vector size")
            return False
        if meq < 0 or meq > m:
            self.reporter.report("error: invalid meq value:", meq)
            return False
        if m < 0:
            self.reporter.report("error: invalid m value:", m)
            return False
        if n < 1:
            self.reporter.report("error: invalid n value:", n)
            return False
        # NaN compares false, so NaN bounds pass as "unbounded"
        if np.any(xl > xu):
            self.reporter.report("error: lower bounds must be <= upper bounds.")
            return False

        line_search = line_search_from_code(line_search_mode)
        if line_search is None:
            self.reporter.report(
                "error: invalid linesearch_mode (must be 1 or 2):", line_search_mode
            )
            self.destroy()
            return False

        self.config = SessionConfig(
            n=n,
            m=m,
            meq=meq,
            max_iter=max_iter,
            accuracy=accuracy,
            lower_bound=xl,
            upper_bound=xu,
            line_search=line_search,
        )
        self.objective_fn = objective_fn
        self.gradient_fn = gradient_fn
        self.report_fn = report_fn
        self.workspace = Workspace(n, m, meq)
        self.kernel_state = KernelState()

        _log.debug(
            "initialized session: n=%d m=%d meq=%d l_w=%d l_jw=%d",
            n,
            m,
            meq,
            self.workspace.l_w,
            self.workspace.l_jw,
        )
        return True

    def destroy(self) -> None:
        """Release the workspace, bounds and evaluators.

        Safe to call on a session that was never initialized or is already
        destroyed. The reporter and the kernel are kept.
        """
        # Reporter and kernel are construction-time settings, not problem state
        self._clear()

    def optimize(self, x: FloatVector) -> OptimizeStatus:
        """Run the optimization from ``x``, updating it in place.

        Args:
            x: Initial guess on entry, final iterate on return. Must be a
                1-D float numpy array with ``n`` entries.

        Returns:
            The final mode code (0 on success) and the number of iterations.
            A size mismatch returns `ExitMode.INVALID_X_SIZE` without any
            evaluation.

        Raises:
            FatalError: If the session is not initialized.
            TypeError: If ``x`` is not a writeable numpy array of floats.
            SLSQPError: If the default kernel finds JAX in 32-bit mode.
        """
        if self.config is None or self.workspace is None:
            self.reporter.report(
                "error: optimize called on an uninitialized session", fatal=True
            )
        cfg = cast(SessionConfig, self.config)
        workspace = cast(Workspace, self.workspace)

        if not isinstance(x, np.ndarray):
            raise TypeError("x must be a numpy array; it is updated in place")
        if not np.issubdtype(x.dtype, np.floating):
            raise TypeError(f"x must have a floating dtype, got {x.dtype}")
        if not x.flags.writeable:
            raise TypeError("x must be writeable; it is updated in place")
        if x.ndim != 1 or x.size != cfg.n:
            self.reporter.report(exit_message(ExitMode.INVALID_X_SIZE))
            return OptimizeStatus(ExitMode.INVALID_X_SIZE, 0)

        n, m, meq = cfg.n, cfg.m, cfg.meq
        la = max(1, m)
        accuracy = cfg.kernel_accuracy
        iter_budget = cfg.max_iter
        mode = ExitMode.SUCCESS

        # Padded so that m = 0 still gives well-defined buffers
        f = 0.0
        c = np.zeros(la)
        g = np.zeros(n)
        a = np.zeros((la, n))

        self.iteration = 0
        while True:
            if mode in (ExitMode.SUCCESS, ExitMode.FUNCTION_REQUIRED):
                f_val, c_val = self.objective_fn(x)
                f = float(f_val)
                if m > 0:
                    c[:m] = np.asarray(c_val, dtype=np.float64).reshape(m)

            if mode in (ExitMode.SUCCESS, ExitMode.GRADIENT_REQUIRED):
                g_val, a_val = self.gradient_fn(x)
                g[:] = np.asarray(g_val, dtype=np.float64).reshape(n)
                if m > 0:
                    a[:m] = np.asarray(a_val, dtype=np.float64).reshape(m, n)
                # The initial guess is reported as iteration 0
                self._report_iteration(x, f, c[:m])
                self.iteration += 1

            mode, iter_budget, accuracy = self.kernel(
                m,
                meq,
                la,
                n,
                x,
                cfg.lower_bound,
                cfg.upper_bound,
                f,
                c,
                g,
                a,
                accuracy,
                iter_budget,
                mode,
                workspace,
                self.kernel_state,
                cfg.line_search,
            )
            _log.debug("optimize: kernel returned mode %d", mode)

            if mode in (ExitMode.FUNCTION_REQUIRED, ExitMode.GRADIENT_REQUIRED):
                continue
            if mode == ExitMode.SUCCESS:
                self._report_iteration(x, f, c[:m])
            self.reporter.report(exit_message(mode))
            break

        return OptimizeStatus(mode, iter_budget)

    def _report_iteration(self, x: np.ndarray, f: float, c: np.ndarray) -> None:
        if self.report_fn is not None:
            self.report_fn(self.iteration, x.copy(), f, c.copy())
