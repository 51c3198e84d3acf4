"""State calculation over compiled workflow definitions.

Every function here is pure: definitions are never mutated, so any number of
callers may evaluate the same definition concurrently.
"""

from typing import List, Optional

from ..models.core import ChoiceOption, Transition, WorkflowDefinition, WorkflowStatePayload
from .logging import get_logger
from .metadata import try_parse_json_object

logger = get_logger(__name__)

START_NODE_LABEL = "start"


def get_outgoing_transitions(definition: WorkflowDefinition, node_id: Optional[str]) -> List[Transition]:
    """Return transitions leaving ``node_id`` in creation order."""
    return definition.outgoing_transitions(node_id)


def is_choice_node(definition: WorkflowDefinition, node_id: Optional[str]) -> bool:
    """A node is a choice when it branches or guards its single path with a condition."""
    outgoing = get_outgoing_transitions(definition, node_id)
    return len(outgoing) > 1 or any(t.has_condition for t in outgoing)


def calculate_start_node(definition: WorkflowDefinition) -> Optional[str]:
    """Pick the node an instance starts at.

    The first declared start point is used, falling back to the first node.
    A start node that is blank or literally labelled ``start`` with exactly one
    outgoing transition is skipped over, one hop only.

    Args:
        definition: Compiled workflow definition

    Returns:
        The starting node ID, or None for a definition without nodes
    """
    if definition.start_points:
        start = definition.start_points[0].node_id
    elif definition.nodes:
        start = definition.nodes[0].id
    else:
        return None

    node = definition.get_node(start)
    label = (node.label if node else "") or ""
    skippable = not label.strip() or label.strip().lower() == START_NODE_LABEL

    outgoing = get_outgoing_transitions(definition, start)
    if skippable and len(outgoing) == 1:
        target = outgoing[0].to_node_id
        logger.debug(f"Start node '{start}' advanced to '{target}'")
        return target

    return start


def _action_hint(note: str) -> Optional[str]:
    payload = try_parse_json_object(note)
    if payload is None:
        return None
    action = payload.get("action")
    if isinstance(action, str):
        return f"Action: {action}"
    return None


def calculate_current_payload(definition: WorkflowDefinition, current_node_id: Optional[str]) -> WorkflowStatePayload:
    """Build the user-facing payload for the node an instance is at.

    Args:
        definition: Compiled workflow definition
        current_node_id: Node the instance currently points at

    Returns:
        A choice payload listing every outgoing transition, or a text payload
        showing the action hint, the note, or the label
    """
    node = definition.get_node(current_node_id)
    outgoing = get_outgoing_transitions(definition, current_node_id)
    label = node.label if node else None
    note = node.note_markdown if node else None

    if is_choice_node(definition, current_node_id):
        choices = []
        for index, transition in enumerate(outgoing):
            target = definition.get_node(transition.to_node_id)
            choices.append(ChoiceOption(
                index=index,
                display_text=target.label if target is not None and target.label else transition.to_node_id,
                target_node_id=transition.to_node_id,
                condition=transition.condition,
            ))
        return WorkflowStatePayload(is_choice=True, text=note, choices=choices, node_label=label)

    text = None
    if note and note.strip():
        text = _action_hint(note) or note
    else:
        text = label

    return WorkflowStatePayload(is_choice=False, text=text, choices=[], node_label=label)
