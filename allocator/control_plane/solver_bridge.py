"""
allocator/control_plane/solver_bridge.py
─────────────────────────────────────────
SolverBridge: the only place the controller crosses into the optimisation
engine.

    solve(node_info, function_info) → SolverResult

Steps
──────
  1. Marshal the two snapshot halves into a SolverRequest (lengths checked).
  2. Run the backend on a worker thread and wait at most timeout_s.
  3. Parse the raw document into a SolverResult and check it covers every
     function.
  4. Log the interesting parts of the result.

Every failure is a SolverError and fatal to the cycle. A timed-out call keeps
running on its worker thread until the backend returns; Python offers no way
to cancel it. The next solve gets a fresh worker.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from pydantic import ValidationError

from allocator.shared.models import FunctionInfo, NodeInfo
from solver_core import (
    RawResponse,
    Solver,
    SolverError,
    SolverInvocationError,
    SolverRequest,
    SolverResponseError,
    SolverResult,
    SolverTimeoutError,
)

logger = logging.getLogger(__name__)


class SolverBridge:
    """
    Synchronous, bounded call to a Solver backend.

    Args:
        solver:    Any Solver implementation.
        timeout_s: Seconds to wait for the backend. None waits forever.
    """

    def __init__(self, solver: Solver, timeout_s: Optional[float] = None) -> None:
        self.solver = solver
        self.timeout_s = timeout_s

    def solve(self, node_info: NodeInfo, function_info: FunctionInfo) -> SolverResult:
        """
        Raises:
            SolverInvocationError: backend failed to run.
            SolverTimeoutError:    no answer within timeout_s.
            SolverResponseError:   answer is not a valid result for this request.
        """
        request = self.build_request(node_info, function_info)
        logger.info(
            "Calling solver %r with %d nodes and %d functions",
            self.solver, request.node_count, request.function_count,
        )
        raw = self._call(request)
        result = self.parse_response(raw, request.function_count)
        self._log_result(result)
        return result

    @staticmethod
    def build_request(node_info: NodeInfo, function_info: FunctionInfo) -> SolverRequest:
        try:
            return SolverRequest(
                node_count=len(node_info),
                function_count=len(function_info),
                node_memory=node_info.total_memory_mb,
                node_capacity=node_info.computational_capacity,
                maximum_capacity=node_info.maximum_capacity,
                node_ipc=node_info.ipc,
                node_power=node_info.power_consumption,
                function_memory=function_info.memory_mb,
                function_workload=function_info.workload,
                function_deadline=function_info.deadline,
                function_invocations=function_info.invocations,
            )
        except ValidationError as e:
            raise SolverInvocationError(f"cannot build solver request: {e}") from e

    @staticmethod
    def parse_response(raw: RawResponse, function_count: int) -> SolverResult:
        """
        Validate a raw response document.

        FunctionsCapacity must have at least function_count entries; a shorter
        list would leave functions without a capacity and is rejected whole.
        """
        try:
            if isinstance(raw, dict):
                result = SolverResult.model_validate(raw)
            elif isinstance(raw, (str, bytes, bytearray)):
                result = SolverResult.model_validate_json(raw)
            else:
                raise SolverResponseError(
                    f"solver returned {type(raw).__name__}, expected a JSON document"
                )
        except ValidationError as e:
            raise SolverResponseError(f"cannot parse solver response: {e}") from e

        if len(result.functions_capacity) < function_count:
            raise SolverResponseError(
                f"FunctionsCapacity has {len(result.functions_capacity)} entries "
                f"for {function_count} functions"
            )
        return result

    # ── Internals ─────────────────────────────────────────────────────────────

    def _call(self, request: SolverRequest) -> RawResponse:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="solver")
        try:
            future = executor.submit(self.solver.solve, request)
            try:
                return future.result(timeout=self.timeout_s)
            except FutureTimeoutError as e:
                raise SolverTimeoutError(
                    f"solver {self.solver!r} did not answer within {self.timeout_s}s"
                ) from e
            except SolverError:
                raise
            except Exception as e:
                raise SolverInvocationError(
                    f"solver {self.solver!r} raised {e.__class__.__name__}: {e}"
                ) from e
        finally:
            # never join a possibly stuck worker
            executor.shutdown(wait=False)

    def _log_result(self, result: SolverResult) -> None:
        logger.info(
            "Solver finished: status=%s walltime=%.3fs objective=%s",
            result.solver_status_name, result.solver_walltime, result.objective_value,
        )
        logger.info("Active nodes: %s", result.active_nodes_indexes)
        logger.info("Function capacities: %s", result.functions_capacity)
        for index in sorted(result.nodes_instances):
            logger.info("Node %d instances: %s", index, result.nodes_instances[index])
        logger.debug("Raw solver result: %s", json.dumps(result.model_dump(by_alias=True)))
