"""Line-search modes for the SLSQP step kernel.

The kernel supports two step-length strategies, selected at the kernel
boundary by the sign of the accuracy parameter:

1. Inexact (default, positive accuracy): Armijo-type backtracking on the L1
   merit function with quadratic interpolation. It needs no state beyond the
   kernel's own.
2. Exact (negative accuracy): minimization of the merit function over the
   step length by golden-section search. The search is driven by reverse
   communication as well, so its progress lives in a `GoldenSectionSearch`
   object that only exists for this mode.

The mode is the tagged variant ``Inexact() | Exact(search)``, tying the exact
mode to the state it requires.
"""

import enum
import math
from typing import ClassVar

import equinox as eqx


class LineSearch(enum.IntEnum):
    """Line-search mode codes accepted by `SLSQPSession.initialize`."""

    INEXACT = 1
    EXACT = 2


# 1/phi, the golden-section shrink factor
_INV_PHI = (math.sqrt(5.0) - 1.0) / 2.0


class GoldenSectionSearch:
    """Golden-section minimization of a scalar function by reverse communication.

    `start` returns the first trial point. After the caller evaluates the
    function there, it passes the value to `update`, which returns the next
    trial point, or None once the bracket is smaller than the tolerance. The
    last trial point handed out is always the best one found, so the caller's
    current iterate is the minimizer when the search finishes.

    Attributes:
        lower: Lower end of the current bracket.
        upper: Upper end of the current bracket.
        alpha: The last trial point handed out.
        evaluations: Number of values received so far.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.lower = 0.0
        self.upper = 0.0
        self.tol = 0.0
        self.max_evals = 0
        self.left = 0.0
        self.right = 0.0
        self.f_left = math.inf
        self.f_right = math.inf
        self.alpha = 0.0
        self.best_alpha = 0.0
        self.best_value = math.inf
        self.evaluations = 0
        self._pending = ""
        self._bracketed = False

    def __repr__(self) -> str:
        return (
            f"GoldenSectionSearch(lower={self.lower}, upper={self.upper}, "
            f"alpha={self.alpha}, evaluations={self.evaluations})"
        )

    def start(self, lower: float, upper: float, tol: float, max_evals: int) -> float:
        """Begin a search on ``[lower, upper]`` and return the first trial point."""
        self.reset()
        self.lower = lower
        self.upper = upper
        self.tol = tol
        self.max_evals = max_evals
        width = upper - lower
        self.left = upper - _INV_PHI * width
        self.right = lower + _INV_PHI * width
        return self._request("left", self.left)

    def update(self, value: float) -> float | None:
        """Receive the function value at `alpha` and return the next trial point.

        Returns:
            The next trial point, or None when the search is finished.
        """
        self.evaluations += 1
        if value < self.best_value:
            self.best_value = value
            self.best_alpha = self.alpha

        if self._pending == "final":
            self._pending = ""
            return None
        if self._pending == "left":
            self.f_left = value
        else:
            self.f_right = value

        if not self._bracketed:
            if self._pending == "left":
                # Initial bracket: the right interior point is still unknown
                return self._request("right", self.right)
            self._bracketed = True

        if (
            self.upper - self.lower < self.tol
            or self.evaluations >= self.max_evals
        ):
            return self._finish()

        if self.f_left < self.f_right:
            self.upper = self.right
            self.right, self.f_right = self.left, self.f_left
            self.left = self.upper - _INV_PHI * (self.upper - self.lower)
            return self._request("left", self.left)

        self.lower = self.left
        self.left, self.f_left = self.right, self.f_right
        self.right = self.lower + _INV_PHI * (self.upper - self.lower)
        return self._request("right", self.right)

    def _request(self, side: str, alpha: float) -> float:
        self._pending = side
        self.alpha = alpha
        return alpha

    def _finish(self) -> float | None:
        if self.alpha == self.best_alpha:
            self._pending = ""
            return None
        # Move the caller back to the best point seen
        return self._request("final", self.best_alpha)


class Inexact(eqx.Module):
    """Armijo-type backtracking line search (no auxiliary state)."""

    code: ClassVar[LineSearch] = LineSearch.INEXACT


class Exact(eqx.Module):
    """Exact line search by golden-section minimization of the merit function.

    Attributes:
        search: The golden-section search driven by the kernel.
    """

    search: GoldenSectionSearch = eqx.field(default_factory=GoldenSectionSearch)

    code: ClassVar[LineSearch] = LineSearch.EXACT


LineSearchMode = Inexact | Exact


def line_search_from_code(code: object) -> LineSearchMode | None:
    """Build the line-search mode for a mode code, or None if unrecognized."""
    try:
        mode = LineSearch(code)
    except (ValueError, TypeError):
        return None
    if mode is LineSearch.EXACT:
        return Exact()
    return Inexact()
