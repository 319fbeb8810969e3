"""Workspace sizing and layout for the SLSQP step kernel.

The kernel keeps everything it needs between reverse-communication calls in
two flat buffers owned by the session: a real workspace of length ``L_W`` and
an integer workspace of length ``L_JW``. With ``n1 = n + 1`` and
``mineq = m - meq + 2 * n1``:

    L_W  = n1*(n1+1) + meq*(n1+1) + mineq*(n1+1)      (least squares)
         + (n1-meq+1)*(mineq+2) + 2*mineq             (inequality LS)
         + (n1+mineq)*(n1-meq) + 2*meq + n1           (equality LS)
         + n1*n/2 + 2*m + 3*n + 3*n1 + 1              (outer iteration)
    L_JW = mineq

Instead of handing out raw offsets, `Workspace` partitions the real buffer
into named segments and returns bounds-checked numpy views into them. The
segment lengths always add up to exactly ``L_W``.
"""

from collections.abc import Sequence

import numpy as np

# Segments of the real workspace, in buffer order. "subproblem" takes
# whatever the outer-iteration segments leave over.
REAL_SEGMENTS = (
    "subproblem",
    "penalty",
    "hessian",
    "x0",
    "multipliers",
    "step",
    "lagrangian_gradient",
    "previous_lagrangian_gradient",
)

INT_SEGMENTS = ("active_set", "spare")


def real_workspace_size(n: int, m: int, meq: int) -> int:
    """Length of the real workspace for a problem of the given dimensions.

    The value is returned as computed; it can be negative when ``meq > n``,
    in which case the session allocates an empty buffer and the kernel
    rejects the problem before using it.

    Args:
        n: Number of variables.
        m: Total number of constraints.
        meq: Number of equality constraints.

    Returns:
        ``L_W``.
    """
    n1 = n + 1
    mineq = m - meq + 2 * n1
    return (
        n1 * (n1 + 1)
        + meq * (n1 + 1)
        + mineq * (n1 + 1)
        + (n1 - meq + 1) * (mineq + 2)
        + 2 * mineq
        + (n1 + mineq) * (n1 - meq)
        + 2 * meq
        + n1
        + n1 * n // 2
        + 2 * m
        + 3 * n
        + 3 * n1
        + 1
    )


def int_workspace_size(n: int, m: int, meq: int) -> int:
    """Length ``L_JW`` of the integer workspace."""
    return m - meq + 2 * (n + 1)


def packed_size(n: int) -> int:
    """Number of entries in the packed lower triangle of an n x n matrix."""
    return (n + 1) * n // 2


def _real_segment_lengths(n: int, m: int, meq: int) -> dict[str, int]:
    n1 = n + 1
    la = max(1, m)
    lengths = {
        "penalty": la,
        "hessian": packed_size(n) + 1,
        "x0": n,
        "multipliers": 2 * n + la,
        "step": n1,
        "lagrangian_gradient": n1,
        "previous_lagrangian_gradient": n1,
    }
    lengths["subproblem"] = real_workspace_size(n, m, meq) - sum(lengths.values())
    return lengths


def _partition(lengths: dict[str, int], order: Sequence[str]) -> dict[str, slice]:
    segments = {}
    offset = 0
    for name in order:
        segments[name] = slice(offset, offset + lengths[name])
        offset += lengths[name]
    return segments


class Workspace:
    """Real and integer scratch buffers with named, bounds-checked views.

    Attributes:
        n: Number of variables.
        m: Total number of constraints.
        meq: Number of equality constraints.
        real: Real buffer, length ``max(L_W, 0)``.
        integer: Integer buffer, length ``max(L_JW, 0)``.
        l_w: ``L_W`` as given by `real_workspace_size`.
        l_jw: ``L_JW`` as given by `int_workspace_size`.
    """

    def __init__(self, n: int, m: int, meq: int):
        self.n = n
        self.m = m
        self.meq = meq
        self.l_w = real_workspace_size(n, m, meq)
        self.l_jw = int_workspace_size(n, m, meq)
        self.real = np.zeros(max(self.l_w, 0), dtype=np.float64)
        self.integer = np.zeros(max(self.l_jw, 0), dtype=np.int64)

        real_lengths = _real_segment_lengths(n, m, meq)
        if min(real_lengths.values()) < 0:
            # Only happens for meq > n; the kernel never gets this far.
            self._real_segments = {}
        else:
            self._real_segments = _partition(real_lengths, REAL_SEGMENTS)

        int_lengths = {"active_set": m - meq + 2 * n, "spare": 2}
        self._int_segments = _partition(int_lengths, INT_SEGMENTS)

    def __repr__(self) -> str:
        return (
            f"Workspace(n={self.n}, m={self.m}, meq={self.meq}, "
            f"l_w={self.l_w}, l_jw={self.l_jw})"
        )

    @property
    def is_partitioned(self) -> bool:
        """Whether the real buffer is large enough for the named segments."""
        return bool(self._real_segments)

    def segment_length(self, name: str) -> int:
        seg = self._lookup(self._real_segments, name)
        return seg.stop - seg.start

    def view(
        self, name: str, shape: int | tuple[int, ...] | None = None, offset: int = 0
    ) -> np.ndarray:
        """Return a view into a named segment of the real workspace.

        Args:
            name: Segment name, one of `REAL_SEGMENTS`.
            shape: Shape of the view. Defaults to the rest of the segment
                after ``offset``.
            offset: Start of the view relative to the segment start.

        Returns:
            A numpy view; writes go straight into the workspace.

        Raises:
            IndexError: If the view would extend past the segment.
        """
        return self._view(self.real, self._real_segments, name, shape, offset)

    def int_view(
        self, name: str, shape: int | tuple[int, ...] | None = None, offset: int = 0
    ) -> np.ndarray:
        """Return a view into a named segment of the integer workspace."""
        return self._view(self.integer, self._int_segments, name, shape, offset)

    def zero(self) -> None:
        self.real[:] = 0.0
        self.integer[:] = 0

    @staticmethod
    def _lookup(segments: dict[str, slice], name: str) -> slice:
        try:
            return segments[name]
        except KeyError:
            raise IndexError(
                f"workspace has no segment {name!r} "
                f"(available: {', '.join(segments) or 'none'})"
            ) from None

    def _view(
        self,
        buffer: np.ndarray,
        segments: dict[str, slice],
        name: str,
        shape: int | tuple[int, ...] | None,
        offset: int,
    ) -> np.ndarray:
        seg = self._lookup(segments, name)
        available = seg.stop - seg.start - offset
        if offset < 0 or available < 0:
            raise IndexError(f"offset {offset} outside workspace segment {name!r}")
        if shape is None:
            shape = (available,)
        elif isinstance(shape, int):
            shape = (shape,)
        size = int(np.prod(shape, dtype=np.int64))
        if size > available:
            raise IndexError(
                f"view of {size} entries exceeds workspace segment {name!r} "
                f"({available} available after offset {offset})"
            )
        start = seg.start + offset
        return buffer[start : start + size].reshape(shape)
