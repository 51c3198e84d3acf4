"""Data models for the workflow engine."""

from .core import (
    WorkflowNode,
    Transition,
    StartPoint,
    WorkflowDefinition,
    ChoiceOption,
    WorkflowStatePayload,
    ParseResult,
    ActionDescriptor,
    DispatchStatus,
    DispatchResult,
)

__all__ = [
    "WorkflowNode",
    "Transition",
    "StartPoint",
    "WorkflowDefinition",
    "ChoiceOption",
    "WorkflowStatePayload",
    "ParseResult",
    "ActionDescriptor",
    "DispatchStatus",
    "DispatchResult",
]
