"""Tests for the session life cycle and the reverse-communication driver.

The driver is exercised with scripted kernels that return a fixed sequence
of mode codes, so the evaluation pattern can be checked call by call.
"""

import io

import numpy as np
import pytest

from slsqp_rc import (
    Exact,
    ExitMode,
    FatalError,
    Inexact,
    KernelStatus,
    LineSearch,
    MessageReporter,
    OptimizeStatus,
    SLSQPSession,
)


class ScriptedKernel:
    """Step kernel that replays a list of mode codes."""

    def __init__(self, modes, iterations=None):
        self.modes = list(modes)
        self.iterations = iterations
        self.calls = []

    def __call__(
        self, m, meq, la, n, x, xl, xu, f, c, g, a, accuracy, iter_budget, mode,
        workspace, state, line_search,
    ):
        self.calls.append(
            {
                "mode": mode,
                "la": la,
                "f": f,
                "c": c.copy(),
                "g": g.copy(),
                "a": a.copy(),
                "accuracy": accuracy,
                "iter_budget": iter_budget,
                "workspace": workspace,
                "line_search": line_search,
            }
        )
        new_mode = self.modes.pop(0)
        if new_mode == ExitMode.FUNCTION_REQUIRED:
            x += 1.0
        iterations = iter_budget if self.iterations is None else self.iterations
        return KernelStatus(new_mode, iterations, accuracy)


class Recorder:
    """Counts evaluator calls and collects iteration reports."""

    def __init__(self, m=1):
        self.m = m
        self.objective_calls = 0
        self.gradient_calls = 0
        self.reports = []

    def objective(self, x):
        self.objective_calls += 1
        return float(x @ x), np.arange(1.0, self.m + 1.0)

    def gradient(self, x):
        self.gradient_calls += 1
        return 2.0 * x, np.ones((self.m, x.size))

    def report(self, iteration, x, f, c):
        self.reports.append((iteration, x, f, c))


def _make_session(modes, m=1, meq=0, line_search_mode=LineSearch.INEXACT, **kwargs):
    sink = io.StringIO()
    kernel = ScriptedKernel(modes, **kwargs)
    recorder = Recorder(m)
    session = SLSQPSession(reporter=MessageReporter(sink=sink), kernel=kernel)
    assert session.initialize(
        2,
        m,
        meq,
        25,
        1e-6,
        recorder.objective,
        recorder.gradient,
        np.full(2, -10.0),
        np.full(2, 10.0),
        line_search_mode=line_search_mode,
        report_fn=recorder.report,
    )
    return session, kernel, recorder, sink


def _initialize(session, n=2, m=1, meq=0, lower=None, upper=None, mode=1):
    lower = np.zeros(n) if lower is None else lower
    upper = np.ones(n) if upper is None else upper
    return session.initialize(
        n, m, meq, 10, 1e-6, lambda x: (0.0, np.zeros(m)),
        lambda x: (np.zeros(n), np.zeros((m, n))), lower, upper,
        line_search_mode=mode,
    )


class TestInitialize:
    def test_success_allocates_workspace(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        assert _initialize(session, n=3, m=2, meq=1)
        assert session.is_initialized
        assert (session.n, session.m, session.meq) == (3, 2, 1)
        assert session.max_iter == 10
        assert session.l_w == 209
        assert session.l_jw == 9
        assert session.workspace.real.shape == (209,)
        assert not session.workspace.real.any()
        assert isinstance(session.line_search, Inexact)
        assert session.kernel_state is not None

    def test_exact_mode_creates_search_state(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        assert _initialize(session, mode=LineSearch.EXACT)
        assert isinstance(session.line_search, Exact)

    def test_bounds_are_copied(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        lower = np.zeros(2)
        assert _initialize(session, lower=lower)
        lower[0] = 5.0
        assert session.lower_bound[0] == 0.0

    def test_nan_bounds_mean_unbounded(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        assert _initialize(session, lower=np.array([np.nan, 0.0]), upper=np.array([-1.0, np.nan]))

    @pytest.mark.parametrize(
        "kwargs, message",
        [
            (
                {"lower": np.zeros(3)},
                "error: invalid upper or lower bound vector size",
            ),
            (
                {"upper": np.ones(1)},
                "error: invalid upper or lower bound vector size",
            ),
            ({"meq": -1}, "error: invalid meq value: -1"),
            ({"m": 1, "meq": 2}, "error: invalid meq value: 2"),
            (
                {"n": 0, "lower": np.zeros(0), "upper": np.zeros(0)},
                "error: invalid n value: 0",
            ),
            (
                {"lower": np.array([0.0, 2.0]), "upper": np.array([1.0, 1.0])},
                "error: lower bounds must be <= upper bounds.",
            ),
            ({"mode": 3}, "error: invalid linesearch_mode (must be 1 or 2): 3"),
        ],
    )
    def test_validation_failure(self, kwargs, message):
        sink = io.StringIO()
        session = SLSQPSession(reporter=MessageReporter(sink=sink))

        assert not _initialize(session, **kwargs)

        assert sink.getvalue() == message + "\n"
        assert not session.is_initialized
        assert session.workspace is None
        assert session.kernel_state is None
        assert (session.n, session.m, session.meq, session.l_w) == (0, 0, 0, 0)

    def test_meq_checked_before_n(self):
        sink = io.StringIO()
        session = SLSQPSession(reporter=MessageReporter(sink=sink))
        assert not _initialize(
            session, n=0, meq=5, lower=np.zeros(0), upper=np.zeros(0)
        )
        assert sink.getvalue() == "error: invalid meq value: 5\n"

    def test_failure_discards_previous_problem(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        assert _initialize(session)
        assert not _initialize(session, meq=-1)
        assert not session.is_initialized

    def test_reinitialize_after_failure(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        assert not _initialize(session, mode=0)
        assert _initialize(session, n=4)
        assert session.n == 4

    def test_reporter_argument_replaces_reporter(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        sink = io.StringIO()
        assert not session.initialize(
            1, 0, 0, 10, 1e-6, None, None, [0.0, 0.0], [1.0, 1.0],
            reporter=MessageReporter(sink=sink),
        )
        assert sink.getvalue() == "error: invalid upper or lower bound vector size\n"
        assert session.reporter.sink is sink


class TestDestroy:
    def test_destroy_resets_state(self):
        reporter = MessageReporter(sink=None)
        kernel = ScriptedKernel([])
        session = SLSQPSession(reporter=reporter, kernel=kernel)
        assert _initialize(session)

        session.destroy()

        assert not session.is_initialized
        assert session.workspace is None
        assert session.objective_fn is None
        assert session.gradient_fn is None
        assert session.report_fn is None
        assert session.lower_bound is None
        assert (session.n, session.m, session.meq, session.max_iter) == (0, 0, 0, 0)
        assert session.accuracy == 0.0
        assert session.reporter is reporter
        assert session.kernel is kernel

    def test_destroy_is_idempotent(self):
        session = SLSQPSession(reporter=MessageReporter(sink=None))
        session.destroy()
        assert _initialize(session)
        session.destroy()
        session.destroy()
        assert not session.is_initialized


class TestOptimizeDriver:
    def test_immediate_convergence(self):
        session, kernel, recorder, sink = _make_session([ExitMode.SUCCESS])
        x = np.array([1.0, 2.0])

        status = session.optimize(x)

        assert status == OptimizeStatus(ExitMode.SUCCESS, 25)
        assert status.success
        assert recorder.objective_calls == 1
        assert recorder.gradient_calls == 1
        assert [r[0] for r in recorder.reports] == [0, 1]
        assert sink.getvalue() == "required accuracy for solution obtained\n"
        assert [call["mode"] for call in kernel.calls] == [0]

    def test_evaluation_pattern(self):
        session, kernel, recorder, _ = _make_session(
            [ExitMode.FUNCTION_REQUIRED, ExitMode.GRADIENT_REQUIRED, ExitMode.SUCCESS]
        )
        x = np.array([0.0, 0.0])

        status = session.optimize(x)

        assert status.status == ExitMode.SUCCESS
        assert [call["mode"] for call in kernel.calls] == [0, 1, -1]
        assert recorder.objective_calls == 2
        assert recorder.gradient_calls == 2
        assert [r[0] for r in recorder.reports] == [0, 1, 2]
        # The scripted kernel moved x once, before the second evaluation
        np.testing.assert_array_equal(x, [1.0, 1.0])
        np.testing.assert_array_equal(recorder.reports[0][1], [0.0, 0.0])
        np.testing.assert_array_equal(recorder.reports[1][1], [1.0, 1.0])
        assert recorder.reports[1][2] == 2.0
        assert session.iteration == 2

    def test_function_only_passes_do_not_report(self):
        session, kernel, recorder, _ = _make_session(
            [ExitMode.FUNCTION_REQUIRED, ExitMode.FUNCTION_REQUIRED, ExitMode.ITERATION_LIMIT]
        )
        session.optimize(np.zeros(2))
        assert recorder.objective_calls == 3
        assert recorder.gradient_calls == 1
        assert [r[0] for r in recorder.reports] == [0]

    @pytest.mark.parametrize(
        "mode, message",
        [
            (2, "number of equality contraints larger than n"),
            (3, "more than 3*n iterations in lsq subproblem"),
            (4, "inequality constraints incompatible"),
            (5, "singular matrix e in lsq subproblem"),
            (6, "singular matrix c in lsq subproblem"),
            (7, "rank-deficient equality constraint subproblem hfti"),
            (8, "positive directional derivative for linesearch"),
            (9, "more than max_iter iterations in slsqp"),
            (42, "unknown slsqp error"),
            (-7, "unknown slsqp error"),
        ],
    )
    def test_terminal_modes(self, mode, message):
        session, kernel, recorder, sink = _make_session([mode])

        status = session.optimize(np.zeros(2))

        assert status.status == mode
        assert not status.success
        assert status.message == message
        assert sink.getvalue() == message + "\n"
        assert len(kernel.calls) == 1
        # Only the initial guess is reported
        assert [r[0] for r in recorder.reports] == [0]

    def test_iterations_come_from_kernel(self):
        session, kernel, _, _ = _make_session([ExitMode.SUCCESS], iterations=7)
        status = session.optimize(np.zeros(2))
        assert status.iterations == 7
        assert kernel.calls[0]["iter_budget"] == 25

    def test_accuracy_sign_selects_line_search(self):
        session, kernel, _, _ = _make_session([ExitMode.SUCCESS])
        session.optimize(np.zeros(2))
        assert kernel.calls[0]["accuracy"] == 1e-6
        assert isinstance(kernel.calls[0]["line_search"], Inexact)

        session, kernel, _, _ = _make_session(
            [ExitMode.SUCCESS], line_search_mode=LineSearch.EXACT
        )
        session.optimize(np.zeros(2))
        assert kernel.calls[0]["accuracy"] == -1e-6
        assert isinstance(kernel.calls[0]["line_search"], Exact)

    def test_kernel_buffers(self):
        session, kernel, _, _ = _make_session([ExitMode.SUCCESS], m=2, meq=1)
        session.optimize(np.array([1.0, -1.0]))
        call = kernel.calls[0]
        assert call["la"] == 2
        assert call["f"] == 2.0
        np.testing.assert_array_equal(call["c"], [1.0, 2.0])
        np.testing.assert_array_equal(call["g"], [2.0, -2.0])
        np.testing.assert_array_equal(call["a"], np.ones((2, 2)))
        assert call["workspace"] is session.workspace

    def test_unconstrained_buffers_are_padded(self):
        session, kernel, recorder, _ = _make_session([ExitMode.SUCCESS], m=0)
        session.optimize(np.zeros(2))
        call = kernel.calls[0]
        assert call["la"] == 1
        assert call["c"].shape == (1,)
        assert call["a"].shape == (1, 2)
        # Reports only carry the m real constraint values
        assert recorder.reports[0][3].shape == (0,)

    def test_invalid_x_size(self):
        session, kernel, recorder, sink = _make_session([ExitMode.SUCCESS])
        x = np.array([1.0, 2.0, 3.0])

        status = session.optimize(x)

        assert status == OptimizeStatus(ExitMode.INVALID_X_SIZE, 0)
        assert status.status == -100
        assert sink.getvalue() == "invalid size(x) in optimize\n"
        np.testing.assert_array_equal(x, [1.0, 2.0, 3.0])
        assert kernel.calls == []
        assert recorder.objective_calls == recorder.gradient_calls == 0
        assert recorder.reports == []

    def test_x_must_be_array(self):
        session, _, _, _ = _make_session([ExitMode.SUCCESS])
        with pytest.raises(TypeError):
            session.optimize([0.0, 0.0])

    @pytest.mark.parametrize("dtype", [np.int64, np.int32, bool, complex])
    def test_x_must_have_float_dtype(self, dtype):
        session, kernel, recorder, _ = _make_session([ExitMode.SUCCESS])
        x = np.array([2, 2], dtype=dtype)

        with pytest.raises(TypeError, match="floating dtype"):
            session.optimize(x)

        np.testing.assert_array_equal(x, np.array([2, 2], dtype=dtype))
        assert kernel.calls == []
        assert recorder.objective_calls == recorder.gradient_calls == 0
        assert recorder.reports == []

    def test_x_must_be_writeable(self):
        session, kernel, recorder, _ = _make_session([ExitMode.SUCCESS])
        x = np.array([1.0, 2.0])
        x.flags.writeable = False

        with pytest.raises(TypeError, match="writeable"):
            session.optimize(x)

        assert kernel.calls == []
        assert recorder.objective_calls == 0

    def test_float32_x_is_accepted(self):
        session, kernel, recorder, _ = _make_session([ExitMode.SUCCESS])
        status = session.optimize(np.zeros(2, dtype=np.float32))
        assert status.success
        assert recorder.objective_calls == 1

    def test_uninitialized_session_is_fatal(self):
        sink = io.StringIO()
        session = SLSQPSession(reporter=MessageReporter(sink=sink))
        with pytest.raises(FatalError):
            session.optimize(np.zeros(2))
        assert "uninitialized" in sink.getvalue()

    def test_destroyed_session_is_fatal(self):
        session, _, _, _ = _make_session([ExitMode.SUCCESS])
        session.destroy()
        with pytest.raises(FatalError):
            session.optimize(np.zeros(2))

    def test_evaluator_errors_propagate(self):
        def failing_objective(x):
            raise RuntimeError("evaluation failed")

        session = SLSQPSession(
            reporter=MessageReporter(sink=None), kernel=ScriptedKernel([0])
        )
        assert session.initialize(
            1, 0, 0, 5, 1e-6, failing_objective, lambda x: (x, None),
            [-1.0], [1.0],
        )
        with pytest.raises(RuntimeError, match="evaluation failed"):
            session.optimize(np.zeros(1))
