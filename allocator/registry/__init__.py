"""
allocator/registry: node and function inventories read by the snapshot builder.
"""

from allocator.registry.functions import (
    FunctionRegistry,
    InMemoryFunctionRegistry,
    StoreFunctionRegistry,
)
from allocator.registry.nodes import (
    InMemoryNodeRegistry,
    NodeHeartbeat,
    NodeRegistry,
    RegistryError,
    StoreNodeRegistry,
)

__all__ = [
    "FunctionRegistry",
    "InMemoryFunctionRegistry",
    "InMemoryNodeRegistry",
    "NodeHeartbeat",
    "NodeRegistry",
    "RegistryError",
    "StoreFunctionRegistry",
    "StoreNodeRegistry",
]
