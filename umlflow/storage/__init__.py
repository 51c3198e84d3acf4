"""Definition storage layer."""

from .definition_store import WorkflowDefinitionStore, InMemoryWorkflowDefinitionStore

__all__ = [
    "WorkflowDefinitionStore",
    "InMemoryWorkflowDefinitionStore",
]
