"""
solver_core: the boundary to the external optimisation engine.

Public API:
    SolverRequest / SolverResult : the fixed request/response contract
    Solver                       : the pluggable Solve capability
    FunctionSolver, ModuleSolver, SubprocessSolver : bindings
    SolverError (+ subclasses)   : every failure here is fatal to a cycle

Usage:
    from solver_core import ModuleSolver, SolverRequest

    solver = ModuleSolver("energy_solver.main:start_solver")
    raw = solver.solve(request)      # str | bytes | dict, parsed by the bridge
"""

from solver_core.backends import (
    FunctionSolver,
    ModuleSolver,
    RawResponse,
    Solver,
    SolverError,
    SolverInvocationError,
    SolverResponseError,
    SolverTimeoutError,
    SubprocessSolver,
    resolve_entrypoint,
)
from solver_core.contract import ARRAY_DTYPE, FUNCTION_ARRAYS, NODE_ARRAYS, SolverRequest, SolverResult

__all__ = [
    "ARRAY_DTYPE",
    "FUNCTION_ARRAYS",
    "NODE_ARRAYS",
    "FunctionSolver",
    "ModuleSolver",
    "RawResponse",
    "Solver",
    "SolverError",
    "SolverInvocationError",
    "SolverRequest",
    "SolverResponseError",
    "SolverResult",
    "SolverTimeoutError",
    "SubprocessSolver",
    "resolve_entrypoint",
]
