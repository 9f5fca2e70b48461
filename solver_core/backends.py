"""
solver_core/backends.py
───────────────────────
Pluggable bindings for the external Solve capability.

Every backend implements one operation:

    Solver.solve(request: SolverRequest) -> str | bytes | dict

returning the raw response document. Parsing and validation happen in the
bridge (allocator/control_plane/solver_bridge.py), never here, so swapping
the binding mechanism does not touch the control loop.

Available bindings
───────────────────
  FunctionSolver    → an in-process callable speaking the positional contract.
  ModuleSolver      → same, resolved from a "package.module:function" entrypoint
                      (the embedded-interpreter style binding).
  SubprocessSolver  → an external command; request JSON on stdin, response
                      JSON on stdout.
"""

from __future__ import annotations

import importlib
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from solver_core.contract import SolverRequest

logger = logging.getLogger(__name__)

RawResponse = Union[str, bytes, Dict[str, Any]]


# ── Exceptions ────────────────────────────────────────────────────────────────

class SolverError(Exception):
    """
    Base class for every failure across the solver boundary.

    All subclasses are fatal to the solve cycle: there is no retry and no
    partial acceptance of a response.
    """


class SolverInvocationError(SolverError):
    """The backend could not be loaded, started, or raised while solving."""


class SolverResponseError(SolverError):
    """The response document was unparsable or did not match the contract."""


class SolverTimeoutError(SolverError):
    """The backend did not answer within the configured timeout."""


# ── Capability ────────────────────────────────────────────────────────────────

class Solver(ABC):
    """The opaque, synchronous Solve capability."""

    @abstractmethod
    def solve(self, request: SolverRequest) -> RawResponse:
        """Run one solve and return the raw response document."""


class FunctionSolver(Solver):
    """
    Calls a Python callable with the fixed positional contract.

    The callable receives (n_nodes, n_functions, *nine int32 arrays) and must
    return the response as a JSON string, bytes, or an already-decoded dict.
    """

    def __init__(self, func: Callable[..., RawResponse]) -> None:
        self._func = func

    def solve(self, request: SolverRequest) -> RawResponse:
        args = request.as_positional()
        try:
            return self._func(*args)
        except SolverError:
            raise
        except Exception as e:
            raise SolverInvocationError(
                f"solver callable {self._name} raised {e.__class__.__name__}: {e}"
            ) from e

    @property
    def _name(self) -> str:
        return getattr(self._func, "__qualname__", repr(self._func))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._name})"


class ModuleSolver(FunctionSolver):
    """
    In-process solver loaded from an entrypoint string.

    Usage:
        solver = ModuleSolver("energy_solver.main:start_solver")

    The module is imported once, at construction. A bad entrypoint fails fast
    with SolverInvocationError so a misconfigured solver node never starts
    ticking.
    """

    def __init__(self, entrypoint: str) -> None:
        self.entrypoint = entrypoint
        super().__init__(resolve_entrypoint(entrypoint))

    def __repr__(self) -> str:
        return f"ModuleSolver({self.entrypoint!r})"


class SubprocessSolver(Solver):
    """
    External solver process.

    The request is written to stdin as JSON (SolverRequest.model_dump_json),
    the response is read from stdout. A non-zero exit status is an invocation
    failure; stderr is included in the error message.
    """

    def __init__(
        self,
        command: Sequence[str],
        timeout_s: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        if not command:
            raise ValueError("SubprocessSolver needs a non-empty command")
        self.command: List[str] = list(command)
        self.timeout_s = timeout_s
        self.env = env

    def solve(self, request: SolverRequest) -> RawResponse:
        logger.debug("Starting solver process %s", self.command)
        try:
            completed = subprocess.run(
                self.command,
                input=request.model_dump_json(),
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                env=self.env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SolverTimeoutError(
                f"solver process {self.command[0]} exceeded {self.timeout_s}s"
            ) from e
        except OSError as e:
            raise SolverInvocationError(
                f"could not start solver process {self.command[0]}: {e}"
            ) from e

        if completed.returncode != 0:
            raise SolverInvocationError(
                f"solver process {self.command[0]} exited with status "
                f"{completed.returncode}: {completed.stderr.strip()}"
            )
        return completed.stdout

    def __repr__(self) -> str:
        return f"SubprocessSolver({self.command!r})"


# ── Helpers ───────────────────────────────────────────────────────────────────

def resolve_entrypoint(entrypoint: str) -> Callable[..., RawResponse]:
    """
    Resolve "package.module:attr.path" to a callable.

    Raises:
        SolverInvocationError: malformed string, import failure, missing
                               attribute, or a target that is not callable.
    """
    module_name, sep, attr_path = entrypoint.partition(":")
    if not sep or not module_name or not attr_path:
        raise SolverInvocationError(
            f"solver entrypoint {entrypoint!r} must look like 'package.module:function'"
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise SolverInvocationError(f"cannot import solver module {module_name!r}: {e}") from e

    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise SolverInvocationError(
                f"solver module {module_name!r} has no attribute {attr_path!r}"
            ) from e

    if not callable(target):
        raise SolverInvocationError(f"solver entrypoint {entrypoint!r} is not callable")
    return target
