"""Type definitions for SLSQP-RC.

This module contains the callable signatures exchanged between the session,
the user's evaluators and the step kernel, together with the mode codes of
the reverse-communication protocol.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

import numpy as np
from jaxtyping import Array, Float
from numpy.typing import NDArray

if TYPE_CHECKING:
    from slsqp_rc.linesearch import LineSearchMode
    from slsqp_rc.workspace import Workspace

# Type alias for scalar results of the kernel's JAX computations
Scalar = Float[Array, ""]

# Caller-facing arrays are plain float64 numpy buffers mutated in place
FloatVector = NDArray[np.float64]
FloatMatrix = NDArray[np.float64]

# Objective evaluator: objective_fn(x) -> (f, c)
# c has m entries, equality residuals first (c_eq(x) = 0, c_ineq(x) >= 0)
ObjectiveFn = Callable[[FloatVector], tuple[float, Any]]

# Gradient evaluator: gradient_fn(x) -> (g, a)
# g = ∇f(x) with n entries, a[i, j] = dc_i/dx_j with shape (m, n)
GradientFn = Callable[[FloatVector], tuple[Any, Any]]

# Iteration sink: report_fn(iteration, x, f, c)
ReportFn = Callable[[int, FloatVector, float, FloatVector], None]


class ExitMode:
    """Mode codes exchanged between the driver and the step kernel."""

    GRADIENT_REQUIRED = -1
    SUCCESS = 0
    FUNCTION_REQUIRED = 1
    TOO_MANY_EQUALITIES = 2
    LSQ_ITERATION_LIMIT = 3
    INCOMPATIBLE_CONSTRAINTS = 4
    SINGULAR_E = 5
    SINGULAR_C = 6
    RANK_DEFICIENT_EQUALITIES = 7
    POSITIVE_DIRECTIONAL_DERIVATIVE = 8
    ITERATION_LIMIT = 9

    # Driver-only sentinel: size(x) does not match the session
    INVALID_X_SIZE = -100


EXIT_MESSAGES = {
    ExitMode.SUCCESS: "required accuracy for solution obtained",
    ExitMode.TOO_MANY_EQUALITIES: "number of equality contraints larger than n",
    ExitMode.LSQ_ITERATION_LIMIT: "more than 3*n iterations in lsq subproblem",
    ExitMode.INCOMPATIBLE_CONSTRAINTS: "inequality constraints incompatible",
    ExitMode.SINGULAR_E: "singular matrix e in lsq subproblem",
    ExitMode.SINGULAR_C: "singular matrix c in lsq subproblem",
    ExitMode.RANK_DEFICIENT_EQUALITIES: (
        "rank-deficient equality constraint subproblem hfti"
    ),
    ExitMode.POSITIVE_DIRECTIONAL_DERIVATIVE: (
        "positive directional derivative for linesearch"
    ),
    ExitMode.ITERATION_LIMIT: "more than max_iter iterations in slsqp",
    ExitMode.INVALID_X_SIZE: "invalid size(x) in optimize",
}

UNKNOWN_ERROR_MESSAGE = "unknown slsqp error"


def exit_message(mode: int) -> str:
    """Human-readable description of a terminal mode code."""
    return EXIT_MESSAGES.get(mode, UNKNOWN_ERROR_MESSAGE)


class KernelStatus(NamedTuple):
    """The in/out scalars of one step-kernel call.

    Attributes:
        mode: Mode code after the call (see `ExitMode`).
        iter_budget: Iteration cap on entry, iterations performed on return.
        accuracy: Kernel-facing accuracy; a negative value selects the
            exact line search.
    """

    mode: int
    iter_budget: int
    accuracy: float


class StepKernel(Protocol):
    """Contract of the numerical step kernel.

    The kernel never calls user code. It mutates ``x``, the workspace and the
    state objects in place and returns the updated scalars; the returned mode
    tells the driver which data to supply before the next call.
    """

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
        workspace: "Workspace",
        state: Any,
        line_search: "LineSearchMode",
    ) -> KernelStatus: ...
