"""
allocator/registry/functions.py
───────────────────────────────
Function registry: names, metadata lookup, and persistence of the derived
cpu_demand field written by the planner.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import ValidationError

from allocator.coordination.store import CoordinationError, CoordinationStore
from allocator.registry.nodes import RegistryError
from allocator.shared.models import FunctionMetadata

logger = logging.getLogger(__name__)

DEFAULT_FUNCTION_PREFIX = "functions/"


class FunctionRegistry(ABC):

    @abstractmethod
    def list_names(self) -> List[str]:
        """Names of every registered function."""

    @abstractmethod
    def get(self, name: str) -> Optional[FunctionMetadata]:
        """Metadata for name, or None if it is not registered."""

    @abstractmethod
    def save(self, metadata: FunctionMetadata) -> None:
        """Persist metadata. Raises RegistryError."""


class InMemoryFunctionRegistry(FunctionRegistry):

    def __init__(self, functions: Optional[List[FunctionMetadata]] = None) -> None:
        self._functions: Dict[str, FunctionMetadata] = {f.name: f for f in functions or []}

    def list_names(self) -> List[str]:
        return list(self._functions)

    def get(self, name: str) -> Optional[FunctionMetadata]:
        f = self._functions.get(name)
        return f.model_copy() if f is not None else None

    def save(self, metadata: FunctionMetadata) -> None:
        self._functions[metadata.name] = metadata.model_copy()


class StoreFunctionRegistry(FunctionRegistry):
    """
    Functions kept in the coordination store:

        functions/<name>  →  FunctionMetadata JSON

    Store failures are raised as RegistryError. A record that does not parse
    is reported as missing (None) with a warning.
    """

    def __init__(self, store: CoordinationStore, prefix: str = DEFAULT_FUNCTION_PREFIX) -> None:
        self._store = store
        self.prefix = prefix

    def list_names(self) -> List[str]:
        try:
            keys = self._store.get_prefix(self.prefix)
        except CoordinationError as e:
            raise RegistryError(f"cannot list functions: {e}") from e
        return [k[len(self.prefix):] for k in keys if len(k) > len(self.prefix)]

    def get(self, name: str) -> Optional[FunctionMetadata]:
        try:
            payload = self._store.get(self.prefix + name)
        except CoordinationError as e:
            raise RegistryError(f"cannot read function {name!r}: {e}") from e
        if payload is None:
            return None
        try:
            return FunctionMetadata.model_validate_json(payload)
        except ValidationError as e:
            logger.warning("Function record %s is malformed: %s", name, e)
            return None

    def save(self, metadata: FunctionMetadata) -> None:
        try:
            self._store.put(self.prefix + metadata.name, metadata.model_dump_json())
        except CoordinationError as e:
            raise RegistryError(f"cannot save function {metadata.name!r}: {e}") from e
