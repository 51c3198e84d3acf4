"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    DiagramParseError,
    WorkflowNotFoundError,
    InstanceStateError,
    ActionRegistryError,
    ActionDispatchError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .parser import ActivityDiagramParser, parse_activity_diagram, parse_activity_diagram_with_report
from .state_calculator import calculate_start_node, calculate_current_payload
from .instance_manager import InMemoryWorkflowInstanceManager
from .action_registry import ActionHandlerRegistry, ActionHandlerContext, WorkflowActionHandler
from .action_dispatcher import ActionDispatcher

__all__ = [
    "WorkflowEngineError",
    "DiagramParseError",
    "WorkflowNotFoundError",
    "InstanceStateError",
    "ActionRegistryError",
    "ActionDispatchError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "ActivityDiagramParser",
    "parse_activity_diagram",
    "parse_activity_diagram_with_report",
    "calculate_start_node",
    "calculate_current_payload",
    "InMemoryWorkflowInstanceManager",
    "ActionHandlerRegistry",
    "ActionHandlerContext",
    "WorkflowActionHandler",
    "ActionDispatcher",
]
