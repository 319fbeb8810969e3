"""SLSQP-RC: reverse-communication Sequential Least Squares Programming.

This package provides a session-based SLSQP optimizer whose numerical step
kernel never calls user code. `SLSQPSession.optimize` drives the kernel
through explicit mode codes and evaluates the caller's objective,
constraints and derivatives whenever the kernel asks for them. A reference
kernel built on JAX (dense BFGS, active-set QP, L1 merit line search) is
included; any callable honouring the `StepKernel` protocol can replace it.
"""

from slsqp_rc.kernel import KernelState, SLSQPKernel
from slsqp_rc.linesearch import (
    Exact,
    GoldenSectionSearch,
    Inexact,
    LineSearch,
    LineSearchMode,
)
from slsqp_rc.reporting import FatalError, MessageReporter, SLSQPError
from slsqp_rc.session import OptimizeStatus, SessionConfig, SLSQPSession
from slsqp_rc.types import (
    ExitMode,
    GradientFn,
    KernelStatus,
    ObjectiveFn,
    ReportFn,
    StepKernel,
    exit_message,
)
from slsqp_rc.workspace import Workspace, int_workspace_size, real_workspace_size

__all__ = [
    # Session
    "SLSQPSession",
    "SessionConfig",
    "OptimizeStatus",
    # Types
    "ExitMode",
    "exit_message",
    "ObjectiveFn",
    "GradientFn",
    "ReportFn",
    "StepKernel",
    "KernelStatus",
    # Kernel
    "SLSQPKernel",
    "KernelState",
    # Line search
    "LineSearch",
    "LineSearchMode",
    "Inexact",
    "Exact",
    "GoldenSectionSearch",
    # Workspace
    "Workspace",
    "real_workspace_size",
    "int_workspace_size",
    # Reporting
    "MessageReporter",
    "SLSQPError",
    "FatalError",
]
