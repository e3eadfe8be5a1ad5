"""Provider boundary and the in-memory reference provider."""

from shepherd_worker.provider.base import (
    OPERATION_METHODS,
    CallContext,
    InfrastructureProvider,
    ProviderResult,
    ProviderTarget,
    ResultStatus,
    execute_operation,
    target_for,
)
from shepherd_worker.provider.memory import InMemoryProvider

__all__ = [
    "OPERATION_METHODS",
    "CallContext",
    "InMemoryProvider",
    "InfrastructureProvider",
    "ProviderResult",
    "ProviderTarget",
    "ResultStatus",
    "execute_operation",
    "target_for",
]
