"""Helpers for JSON action metadata embedded in diagram notes."""

import json
from typing import Any, Dict, Optional, Tuple

from ..models.core import ActionDescriptor, WorkflowNode

NOTE_METADATA_SEPARATOR = "|"


def try_parse_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse text as a JSON object.

    Returns:
        The decoded object, or None when the text is empty, not valid JSON,
        or valid JSON of another type.
    """
    if not text or not text.strip():
        return None
    candidate = text.strip()
    if not candidate.startswith("{"):
        return None
    try:
        value = json.loads(candidate)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def split_note_metadata(text: str) -> Tuple[Optional[str], str]:
    """Split ``<json>|<markdown>`` note text.

    Returns:
        ``(json_text, note_text)``. When the part before the first ``|`` is not
        a JSON object, ``json_text`` is None and the whole text is the note.
    """
    if NOTE_METADATA_SEPARATOR not in text:
        return None, text

    head, _, tail = text.partition(NOTE_METADATA_SEPARATOR)
    head = head.strip()
    if try_parse_json_object(head) is None:
        return None, text
    return head, tail.strip()


def stringify_param(value: Any) -> str:
    """Render a JSON parameter value as the string handed to handlers."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value)


def descriptor_from_object(payload: Dict[str, Any]) -> Optional[ActionDescriptor]:
    """Build an ActionDescriptor from a decoded metadata object."""
    action = payload.get("action")
    if not isinstance(action, str) or not action.strip():
        return None

    raw_params = payload.get("params")
    params: Dict[str, str] = {}
    if isinstance(raw_params, dict):
        params = {str(key): stringify_param(value) for key, value in raw_params.items()}

    return ActionDescriptor(action=action.strip(), params=params)


def extract_action_descriptor(node: Optional[WorkflowNode]) -> Optional[ActionDescriptor]:
    """Find the action a node carries, preferring json_metadata over a JSON note."""
    if node is None:
        return None

    for source in (node.json_metadata, node.note_markdown):
        payload = try_parse_json_object(source)
        if payload is not None:
            descriptor = descriptor_from_object(payload)
            if descriptor is not None:
                return descriptor
    return None
