"""Interactive inference session management.

Key components:
- catalog: ModelCatalog resolving model names to launch descriptors
- supervisor: ProcessSupervisor owning one inference subprocess
- router: InputRouter serializing queries into a session's stdin
- aggregator: OutputAggregator framing stdout into responses
- registry: SessionRegistry mapping model names to live sessions
- protocol: Shared data model
- errors: Error taxonomy
"""

from .catalog import ModelCatalog
from .errors import (
    CatalogError,
    ClosedChannel,
    ModelNotFound,
    ProcessTerminated,
    QueryCancelled,
    QueryTimeout,
    SessionError,
    SpawnError,
)
from .protocol import ModelDescriptor, ProcessState, Query, Response, SessionState
from .registry import Session, SessionRegistry, get_registry, reset_registry

__all__ = [
    "ModelCatalog",
    "CatalogError",
    "ClosedChannel",
    "ModelNotFound",
    "ProcessTerminated",
    "QueryCancelled",
    "QueryTimeout",
    "SessionError",
    "SpawnError",
    "ModelDescriptor",
    "ProcessState",
    "Query",
    "Response",
    "SessionState",
    "Session",
    "SessionRegistry",
    "get_registry",
    "reset_registry",
]
