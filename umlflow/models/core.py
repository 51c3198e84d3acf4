"""Core Pydantic models for the activity-diagram workflow engine."""

from enum import Enum
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WorkflowNode(BaseModel):
    """A single activity, decision, join or terminal node of a compiled diagram."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the node within its definition")
    label: str = Field(..., description="Human-readable label shown to the user")
    json_metadata: Optional[str] = Field(None, description="Raw JSON object text carrying action metadata")
    note_markdown: Optional[str] = Field(None, description="Free-form note text attached to the node")

    @field_validator('id')
    @classmethod
    def validate_id_not_empty(cls, id_value):
        """Ensure node ID is not empty."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value


class Transition(BaseModel):
    """A directed, optionally conditioned edge between two nodes."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Transition identifier, unique within a definition")
    from_node_id: str = Field(..., description="Source node ID")
    to_node_id: str = Field(..., description="Target node ID")
    condition: Optional[str] = Field(None, description="Guard label shown for this branch")

    @property
    def has_condition(self) -> bool:
        """Whether the transition carries a non-blank condition."""
        return bool(self.condition and self.condition.strip())


class StartPoint(BaseModel):
    """Marks a node as an entry point of the workflow."""
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., description="ID of the entry node")


class WorkflowDefinition(BaseModel):
    """Complete compiled workflow graph."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier of the workflow")
    name: str = Field(..., description="Name of the workflow")
    nodes: List[WorkflowNode] = Field(default_factory=list, description="Nodes in source order")
    transitions: List[Transition] = Field(default_factory=list, description="Transitions in creation order")
    start_points: List[StartPoint] = Field(default_factory=list, description="Declared entry points")

    @model_validator(mode='after')
    def validate_graph_references(self):
        """Ensure node IDs are unique and every reference resolves to a node."""
        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")

        known = set(node_ids)
        for transition in self.transitions:
            if transition.from_node_id not in known:
                raise ValueError(f"Transition {transition.id} references non-existent source node: {transition.from_node_id}")
            if transition.to_node_id not in known:
                raise ValueError(f"Transition {transition.id} references non-existent target node: {transition.to_node_id}")

        for start_point in self.start_points:
            if start_point.node_id not in known:
                raise ValueError(f"Start point references non-existent node: {start_point.node_id}")

        return self

    def get_node(self, node_id: Optional[str]) -> Optional[WorkflowNode]:
        """Look up a node by ID."""
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def find_node_by_label(self, label: str) -> Optional[WorkflowNode]:
        """Look up the first node carrying the given label."""
        for node in self.nodes:
            if node.label == label:
                return node
        return None

    def outgoing_transitions(self, node_id: Optional[str]) -> List[Transition]:
        """Return outgoing transitions of a node in creation order."""
        return [t for t in self.transitions if t.from_node_id == node_id]


class ChoiceOption(BaseModel):
    """One selectable branch of a choice payload."""
    index: int = Field(..., description="Position of the option among the node's outgoing transitions")
    display_text: str = Field(..., description="Text shown for the option")
    target_node_id: str = Field(..., description="Node reached when this option is chosen")
    condition: Optional[str] = Field(None, description="Condition carried by the underlying transition")


class WorkflowStatePayload(BaseModel):
    """User-facing prompt derived from the current node."""
    is_choice: bool = Field(..., description="Whether the user must pick a branch")
    text: Optional[str] = Field(None, description="Prompt text")
    choices: List[ChoiceOption] = Field(default_factory=list, description="Selectable options for a choice")
    node_label: Optional[str] = Field(None, description="Label of the current node")


class ParseResult(BaseModel):
    """Compiled definition together with the parser's side channel."""
    definition: WorkflowDefinition = Field(..., description="Compiled workflow definition")
    warnings: List[str] = Field(default_factory=list, description="Constructs skipped or repaired during parsing")
    skinparams: Dict[str, str] = Field(default_factory=dict, description="Collected skinparam settings")
    pragmas: List[Tuple[str, Optional[str]]] = Field(default_factory=list, description="Collected pragma directives")
    style_blocks: List[str] = Field(default_factory=list, description="Raw contents of style blocks")


class ActionDescriptor(BaseModel):
    """Action name and string parameters extracted from node metadata."""
    action: str = Field(..., description="Registered handler name")
    params: Dict[str, str] = Field(default_factory=dict, description="Handler parameters before template resolution")


class DispatchStatus(str, Enum):
    """Outcome of dispatching a node's action."""
    COMPLETED = "completed"
    NO_ACTION = "no_action"
    UNKNOWN_ACTION = "unknown_action"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class DispatchResult(BaseModel):
    """Result of a single action dispatch."""
    status: DispatchStatus = Field(..., description="Dispatch outcome")
    action_name: Optional[str] = Field(None, description="Name of the dispatched action")
    parameters: Dict[str, str] = Field(default_factory=dict, description="Resolved parameters passed to the handler")
    updates: Dict[str, str] = Field(default_factory=dict, description="Variable updates applied to the instance")
    error: Optional[str] = Field(None, description="Error message for unsuccessful dispatches")

    @property
    def success(self) -> bool:
        """Whether the handler ran to completion."""
        return self.status == DispatchStatus.COMPLETED
