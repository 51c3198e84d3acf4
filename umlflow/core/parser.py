"""Compiler from PlantUML-style activity diagrams to workflow definitions."""

import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from ..models.core import ParseResult, StartPoint, Transition, WorkflowDefinition, WorkflowNode
from .exceptions import DiagramParseError
from .logging import get_logger
from .metadata import split_note_metadata

logger = get_logger(__name__)

DEFAULT_WORKFLOW_NAME = "ImportedWorkflow"
START_LABEL = "Start"
STOP_LABEL = "Stop"
PSEUDO_STATE = "[*]"

_FLAGS = re.IGNORECASE

_BLOCK_COMMENT = re.compile(r"/'.*?'/", re.DOTALL)
_STYLE_OPEN = re.compile(r"^<style\b", _FLAGS)
_STYLE_CLOSE = re.compile(r"</style>", _FLAGS)
_SKINPARAM_BLOCK = re.compile(r"^skinparam\s+(\S+)\s*\{\s*$", _FLAGS)
_SKINPARAM = re.compile(r"^skinparam\s+(\S+)\s+(.*?);?$", _FLAGS)
_PRAGMA = re.compile(r"^!\s*pragma\s+(\S+)(?:\s+(.*))?$", _FLAGS)
_IGNORED_DIRECTIVE = re.compile(
    r"^(?:title|header|footer|caption|scale|hide|show|left\s+to\s+right\s+direction|top\s+to\s+bottom\s+direction|!\w+)\b",
    _FLAGS,
)
_LEGEND_OPEN = re.compile(r"^legend\b", _FLAGS)
_LEGEND_CLOSE = re.compile(r"^end\s?legend$", _FLAGS)

_NOTE_SHORTHAND = re.compile(r"^note(?:\s+(left|right|top|bottom))?\s*:\s*(.*)$", _FLAGS)
_NOTE_INLINE = re.compile(r"^note\s+(?:(left|right|top|bottom)\s+)?(?:of\s+)?(.+?)\s*:\s*(.*)$", _FLAGS)
_NOTE_BLOCK = re.compile(r"^(?:floating\s+)?note\s+(left|right|top|bottom)(?:\s+of\s+(.+?))?\s*$", _FLAGS)
_NOTE_END = re.compile(r"^end\s?note;?$", _FLAGS)

_START = re.compile(r"^start;?$", _FLAGS)
_STOP = re.compile(r"^(stop|end|kill|detach);?$", _FLAGS)

_IF = re.compile(
    r"^if\s*\((.*?)\)\s*(?:is\s*\((.*?)\)\s*|equals\s*\((.*?)\)\s*)?then(?:\s*\((.*?)\))?;?$",
    _FLAGS,
)
_ELSE = re.compile(
    r"^else\s*(?:if\s*\((.*?)\)\s*(?:is\s*\((.*?)\)\s*)?then)?(?:\s*\((.*?)\))?;?$",
    _FLAGS,
)
_ENDIF = re.compile(r"^end\s?if;?$", _FLAGS)

_REPEAT_WHILE = re.compile(
    r"^repeat\s*while\s*\((.*?)\)(?:\s*is\s*\((.*?)\))?(?:\s*not\s*\((.*?)\))?\s*;?$",
    _FLAGS,
)
_REPEAT = re.compile(r"^repeat(?:\s+(?:#[^:\s]+\s*)?:(.*?);?)?$", _FLAGS)

_ARROW = re.compile(
    r"^(?P<left>.*?)\s*(?P<arrow><-(?:\[[^\]]*\])?-*|-(?:\[[^\]]*\])?-*>)\s*(?P<right>.*)$"
)
_QUOTED = re.compile(r'"[^"]*"')

_ACTION = re.compile(r"^(?:#(?P<color>[^:\s]+)\s*)?:(?P<text>.*?);?$", re.DOTALL)
_ACTION_OPEN = re.compile(r"^(?:#[^:\s]+\s*)?:")
_STEREOTYPE = re.compile(r"<<\s*(\w+)\s*>>")

# Lines that end a multi-line action collection without belonging to it
_STATEMENT = re.compile(
    r"^(?:(?:start|stop|end|kill|detach|else|endif|end\s?if|repeat|end\s?note)\s*;?$"
    r"|if\s*\(|else\s*if\s*\(|repeat\s*while\s*\(|note\s+(?:left|right|top|bottom)\b"
    r"|skinparam\s|!|<style|@|(?:#[^:\s]+\s*)?:)",
    _FLAGS,
)

_UNSUPPORTED = re.compile(r"^(?:fork|split|partition|while|endwhile|backward|\||\})", _FLAGS)


@dataclass
class BranchRecord:
    """One branch of an open if/else construct."""
    label: Optional[str]
    condition: Optional[str]
    entry_node_id: Optional[str] = None
    last_node_id: Optional[str] = None
    terminated: bool = False


@dataclass
class BranchFrame:
    """Open if/elseif/else construct."""
    order: int
    decision_node_id: str
    condition: str
    branches: List[BranchRecord] = field(default_factory=list)

    @property
    def current_branch(self) -> BranchRecord:
        return self.branches[-1]


@dataclass
class LoopFrame:
    """Open repeat/repeat-while construct."""
    order: int
    entry_node_id: str
    condition: Optional[str] = None
    first_node_id: Optional[str] = None
    last_node_id: Optional[str] = None


Frame = Union[BranchFrame, LoopFrame]


def make_node_id(label: str, index: int) -> str:
    """Build a synthetic node id from a label and a per-parse index."""
    slug = re.sub(r"\s+", "_", label or "")
    slug = re.sub(r"[^A-Za-z0-9_]+", "_", slug)
    if not slug:
        return f"node_{index}"
    return f"{slug}_{index}"


def normalize_label(raw: str) -> str:
    """Trim whitespace and the ``:``/``;`` action delimiters from a label."""
    label = raw.strip()
    if label.startswith(":"):
        label = label[1:].strip()
    if label.endswith(";"):
        label = label[:-1].strip()
    return label


def _is_arrow_statement(line: str, match) -> bool:
    """Whether an arrow-bearing line is a transition rather than an action label.

    ``:A --> :B;`` and ``:A --> [*];`` name two endpoints, while ``:Go -> next;``
    is a single action whose label happens to contain an arrow token.
    """
    if not _ACTION_OPEN.match(line) or not line.endswith(";"):
        return True
    right = match.group("right").strip()
    return right.startswith(":") or normalize_label(right) == PSEUDO_STATE


class ActivityDiagramParser:
    """Single-pass compiler for activity-diagram documents.

    Each call to :meth:`parse` starts from a clean slate, so parsing the same
    text twice yields identical node ids, transition ids and topology.
    """

    def __init__(self, text: Optional[str]):
        if text is None or not text.strip():
            raise DiagramParseError("Diagram text is empty")
        self._text = text
        self._reset()

    def _reset(self) -> None:
        self._nodes: Dict[str, WorkflowNode] = {}
        self._synthetic_ids: set = set()
        self._transitions: List[Transition] = []
        self._start_points: List[StartPoint] = []
        self._counters: Dict[str, int] = {}
        self._frame_order = 0
        self._current: Optional[str] = None
        self._branch_stack: List[BranchFrame] = []
        self._loop_stack: List[LoopFrame] = []
        self._warnings: List[str] = []
        self._skinparams: Dict[str, str] = {}
        self._pragmas: List[Tuple[str, Optional[str]]] = []
        self._style_blocks: List[str] = []

    @property
    def warnings(self) -> List[str]:
        """Diagnostics recorded by the most recent parse."""
        return list(self._warnings)

    @property
    def skinparams(self) -> Dict[str, str]:
        return dict(self._skinparams)

    @property
    def pragmas(self) -> List[Tuple[str, Optional[str]]]:
        return list(self._pragmas)

    @property
    def style_blocks(self) -> List[str]:
        return list(self._style_blocks)

    def parse(self, definition_id: Optional[str] = None, name: Optional[str] = None) -> WorkflowDefinition:
        """Compile the document into a workflow definition.

        Args:
            definition_id: Identifier for the definition, a fresh UUID when omitted
            name: Workflow name, ``ImportedWorkflow`` when omitted

        Returns:
            The compiled, validated definition

        Raises:
            DiagramParseError: If the document produces no nodes
        """
        self._reset()
        lines = self._prepare_lines(self._text)

        i = 0
        while i < len(lines):
            i = self._parse_statement(lines, i) + 1

        self._close_open_frames()

        if not self._nodes:
            raise DiagramParseError(
                "Diagram contains no workflow nodes",
                warnings=self._warnings,
            )

        definition = WorkflowDefinition(
            id=definition_id or str(uuid.uuid4()),
            name=name or DEFAULT_WORKFLOW_NAME,
            nodes=list(self._nodes.values()),
            transitions=list(self._transitions),
            start_points=list(self._start_points),
        )

        logger.debug(
            f"Parsed workflow '{definition.name}': {len(definition.nodes)} nodes, "
            f"{len(definition.transitions)} transitions, {len(self._warnings)} warnings"
        )
        return definition

    def parse_with_report(self, definition_id: Optional[str] = None, name: Optional[str] = None) -> ParseResult:
        """Compile the document and return the definition with its side channel."""
        definition = self.parse(definition_id, name)
        return ParseResult(
            definition=definition,
            warnings=self.warnings,
            skinparams=self.skinparams,
            pragmas=self.pragmas,
            style_blocks=self.style_blocks,
        )

    # Lexing

    @staticmethod
    def _prepare_lines(text: str) -> List[Tuple[int, str]]:
        text = _BLOCK_COMMENT.sub("", text)
        prepared = []
        for number, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line:
                continue
            lowered = line.lower()
            if lowered.startswith("@startuml") or lowered.startswith("@enduml"):
                continue
            if line.startswith("'") or line.startswith("//"):
                continue
            prepared.append((number, line))
        return prepared

    def _warn(self, line_number: int, message: str) -> None:
        warning = f"line {line_number}: {message}"
        self._warnings.append(warning)
        logger.debug(f"Diagram warning: {warning}")

    # Statements

    def _parse_statement(self, lines: List[Tuple[int, str]], i: int) -> int:
        """Handle the statement starting at ``lines[i]``; return the last consumed index."""
        number, line = lines[i]

        if _STYLE_OPEN.match(line):
            return self._consume_style(lines, i)

        match = _SKINPARAM_BLOCK.match(line)
        if match:
            return self._consume_skinparam_block(lines, i, match.group(1).strip())

        match = _SKINPARAM.match(line)
        if match:
            self._skinparams[match.group(1).strip()] = match.group(2).strip()
            return i

        match = _PRAGMA.match(line)
        if match:
            value = match.group(2).strip() if match.group(2) is not None else None
            self._pragmas.append((match.group(1).strip(), value))
            return i

        if _LEGEND_OPEN.match(line):
            return self._skip_until(lines, i, _LEGEND_CLOSE)

        if _IGNORED_DIRECTIVE.match(line):
            return i

        match = _NOTE_SHORTHAND.match(line)
        if match:
            if self._current is None:
                self._warn(number, "note has no node to attach to")
            else:
                self._attach_note(self._current, match.group(2).strip())
            return i

        match = _NOTE_INLINE.match(line)
        if match:
            target_id = self._get_or_create_node(match.group(2))
            self._attach_note(target_id, match.group(3).strip())
            return i

        match = _NOTE_BLOCK.match(line)
        if match:
            return self._consume_block_note(lines, i, match.group(2))

        if _START.match(line):
            node_id = self._get_or_create_node(START_LABEL)
            self._start_points.append(StartPoint(node_id=node_id))
            self._current = node_id
            return i

        if _STOP.match(line):
            self._handle_stop()
            return i

        match = _IF.match(line)
        if match:
            self._open_branch(match.group(1).strip(), match.group(4))
            return i

        match = _ELSE.match(line)
        if match:
            if not self._branch_stack:
                self._warn(number, "else without an open if")
                return i
            self._close_loops_newer_than(self._branch_stack[-1].order, number)
            condition = match.group(1).strip() if match.group(1) is not None else "else"
            label = match.group(3).strip() if match.group(3) is not None else None
            frame = self._branch_stack[-1]
            frame.branches.append(BranchRecord(label=label, condition=condition))
            self._current = frame.decision_node_id
            return i

        if _ENDIF.match(line):
            if not self._branch_stack:
                self._warn(number, "endif without an open if")
                return i
            self._close_loops_newer_than(self._branch_stack[-1].order, number)
            self._close_branch(self._branch_stack.pop())
            return i

        match = _REPEAT_WHILE.match(line)
        if match:
            if not self._loop_stack:
                self._warn(number, "repeat while without an open repeat")
                return i
            self._close_branches_newer_than(self._loop_stack[-1].order, number)
            frame = self._loop_stack.pop()
            frame.condition = match.group(1).strip()
            self._close_loop(frame)
            return i

        match = _REPEAT.match(line)
        if match:
            self._open_loop(match.group(1))
            return i

        if _UNSUPPORTED.match(line):
            self._warn(number, f"unsupported construct skipped: {line}")
            return i

        match = _ARROW.match(line)
        if match and _is_arrow_statement(line, match):
            self._handle_arrow(number, match)
            return i

        if _ACTION_OPEN.match(line) and line.endswith(";"):
            self._handle_action(number, line)
            return i

        if match:
            self._handle_arrow(number, match)
            return i

        if _ACTION_OPEN.match(line):
            last = self._find_action_end(lines, i)
            text = "\n".join(text for _, text in lines[i:last + 1])
            self._handle_action(number, text)
            return last

        self._warn(number, f"unrecognized construct skipped: {line}")
        return i

    def _consume_style(self, lines: List[Tuple[int, str]], i: int) -> int:
        block = []
        j = i
        while j < len(lines):
            block.append(lines[j][1])
            if _STYLE_CLOSE.search(lines[j][1]):
                break
            j += 1
        else:
            self._warn(lines[i][0], "style block is not closed")
            j = len(lines) - 1
        self._style_blocks.append("\n".join(block))
        return j

    def _consume_skinparam_block(self, lines: List[Tuple[int, str]], i: int, group: str) -> int:
        j = i + 1
        while j < len(lines):
            text = lines[j][1]
            if text.startswith("}"):
                return j
            parts = text.rstrip(";").split(None, 1)
            if len(parts) == 2:
                self._skinparams[f"{group}.{parts[0]}"] = parts[1].strip()
            j += 1
        self._warn(lines[i][0], f"skinparam block '{group}' is not closed")
        return len(lines) - 1

    @staticmethod
    def _skip_until(lines: List[Tuple[int, str]], i: int, closer) -> int:
        j = i + 1
        while j < len(lines):
            if closer.match(lines[j][1]):
                return j
            j += 1
        return len(lines) - 1

    def _consume_block_note(self, lines: List[Tuple[int, str]], i: int, target: Optional[str]) -> int:
        number = lines[i][0]
        body = []
        j = i + 1
        while j < len(lines) and not _NOTE_END.match(lines[j][1]):
            body.append(lines[j][1])
            j += 1
        if j >= len(lines):
            self._warn(number, "note block is not closed")
            j = len(lines) - 1

        text = "\n".join(body).strip()
        if target:
            self._attach_note(self._get_or_create_node(target), text)
        elif self._current is not None:
            self._attach_note(self._current, text)
        else:
            self._warn(number, "note has no node to attach to")
        return j

    @staticmethod
    def _find_action_end(lines: List[Tuple[int, str]], i: int) -> int:
        """Index of the line closing a multi-line action, or ``i`` if none does."""
        j = i + 1
        while j < len(lines):
            text = lines[j][1]
            if _STATEMENT.match(text) or (_ARROW.match(text) and not text.endswith(";")):
                return i
            if text.endswith(";"):
                return j
            j += 1
        return i

    def _handle_action(self, number: int, text: str) -> None:
        match = _ACTION.match(text)
        if not match:
            self._warn(number, f"malformed action skipped: {text}")
            return

        raw_label = match.group("text")
        stereotypes = _STEREOTYPE.findall(raw_label)
        label = normalize_label(_STEREOTYPE.sub("", raw_label))
        if not label:
            self._warn(number, "action without a label skipped")
            return

        node_id = self._get_or_create_node(label)
        self._attach(node_id)

        for stereotype in stereotypes:
            node = self._nodes[node_id]
            suffix = f"<<{stereotype}>>"
            note = f"{node.note_markdown}\n{suffix}" if node.note_markdown else suffix
            self._nodes[node_id] = node.model_copy(update={"note_markdown": note})

    def _handle_arrow(self, number: int, match) -> None:
        left = normalize_label(_QUOTED.sub("", match.group("left")))
        right = normalize_label(_QUOTED.sub("", match.group("right")))
        if not left or not right:
            self._warn(number, "arrow with a missing endpoint skipped")
            return

        if match.group("arrow").startswith("<"):
            left, right = right, left

        if left == PSEUDO_STATE:
            target_id = self._get_or_create_node(right)
            self._start_points.append(StartPoint(node_id=target_id))
            self._current = target_id
            return

        from_id = self._get_or_create_node(left)
        to_id = self._get_or_create_node(STOP_LABEL if right == PSEUDO_STATE else right)
        self._add_transition(from_id, to_id)
        self._current = to_id

    def _handle_stop(self) -> None:
        node_id = self._get_or_create_node(STOP_LABEL)
        frame = self._innermost_frame()
        if self._current is None and frame is None:
            self._current = node_id
            return
        self._attach(node_id)
        if isinstance(frame, BranchFrame):
            frame.current_branch.terminated = True

    # Branches and loops

    def _next_order(self) -> int:
        self._frame_order += 1
        return self._frame_order

    def _innermost_frame(self) -> Optional[Frame]:
        branch = self._branch_stack[-1] if self._branch_stack else None
        loop = self._loop_stack[-1] if self._loop_stack else None
        if branch is None:
            return loop
        if loop is None:
            return branch
        return branch if branch.order > loop.order else loop

    def _attach(self, node_id: str) -> None:
        """Link a node after the innermost construct's last node and make it current."""
        frame = self._innermost_frame()
        if isinstance(frame, BranchFrame):
            branch = frame.current_branch
            if branch.entry_node_id is None:
                self._add_transition(frame.decision_node_id, node_id, branch.condition)
                branch.entry_node_id = node_id
            else:
                self._add_transition(branch.last_node_id, node_id)
            branch.last_node_id = node_id
            branch.terminated = False
        elif isinstance(frame, LoopFrame):
            if frame.first_node_id is None:
                self._add_transition(frame.entry_node_id, node_id)
                frame.first_node_id = node_id
            else:
                self._add_transition(frame.last_node_id, node_id)
            frame.last_node_id = node_id
        elif self._current is not None:
            self._add_transition(self._current, node_id)
        self._current = node_id

    def _advance_to(self, node_id: str) -> None:
        """Move the innermost construct's last node to an already linked node."""
        frame = self._innermost_frame()
        if isinstance(frame, BranchFrame):
            frame.current_branch.last_node_id = node_id
        elif isinstance(frame, LoopFrame):
            frame.last_node_id = node_id
        self._current = node_id

    def _open_branch(self, condition: str, label: Optional[str]) -> None:
        decision_id = self._create_synthetic_node(f"if: {condition}", "if")
        self._attach(decision_id)
        frame = BranchFrame(order=self._next_order(), decision_node_id=decision_id, condition=condition)
        frame.branches.append(BranchRecord(label=label.strip() if label else None, condition=condition))
        self._branch_stack.append(frame)
        self._current = decision_id

    def _close_branch(self, frame: BranchFrame) -> None:
        join_id = self._create_synthetic_node("join", "join")
        for branch in frame.branches:
            if branch.entry_node_id is None:
                self._add_transition(frame.decision_node_id, join_id, branch.condition)
            elif not branch.terminated:
                self._add_transition(branch.last_node_id, join_id)
        self._advance_to(join_id)

    def _open_loop(self, inline_label: Optional[str]) -> None:
        entry_id = self._create_synthetic_node("loop_entry", "loop_entry")
        self._attach(entry_id)
        self._loop_stack.append(LoopFrame(order=self._next_order(), entry_node_id=entry_id))
        self._current = entry_id
        if inline_label and normalize_label(inline_label):
            self._attach(self._get_or_create_node(normalize_label(inline_label)))

    def _close_loop(self, frame: LoopFrame) -> None:
        exit_id = self._create_synthetic_node("after_loop", "after_loop")
        if frame.last_node_id is None:
            self._add_transition(frame.entry_node_id, exit_id)
        else:
            self._add_transition(frame.last_node_id, frame.entry_node_id, frame.condition)
            self._add_transition(frame.last_node_id, exit_id)
        self._advance_to(exit_id)

    def _close_loops_newer_than(self, order: int, number: int) -> None:
        while self._loop_stack and self._loop_stack[-1].order > order:
            self._warn(number, "repeat closed implicitly by an enclosing branch")
            self._close_loop(self._loop_stack.pop())

    def _close_branches_newer_than(self, order: int, number: int) -> None:
        while self._branch_stack and self._branch_stack[-1].order > order:
            self._warn(number, "if closed implicitly by an enclosing repeat")
            self._close_branch(self._branch_stack.pop())

    def _close_open_frames(self) -> None:
        while True:
            frame = self._innermost_frame()
            if frame is None:
                return
            if isinstance(frame, BranchFrame):
                self._warnings.append(f"unterminated if ({frame.condition}) closed at end of diagram")
                self._close_branch(self._branch_stack.pop())
            else:
                self._warnings.append("unterminated repeat closed at end of diagram")
                self._close_loop(self._loop_stack.pop())

    # Graph construction

    def _fresh_id(self, label: str, category: str) -> str:
        """Next unused id for ``label`` from the counter of its category."""
        while True:
            index = self._counters.get(category, 0)
            self._counters[category] = index + 1
            node_id = make_node_id(label, index)
            if node_id not in self._nodes:
                return node_id

    def _create_synthetic_node(self, label: str, category: str) -> str:
        node_id = self._fresh_id(label, category)
        self._nodes[node_id] = WorkflowNode(id=node_id, label=label)
        self._synthetic_ids.add(node_id)
        return node_id

    def _get_or_create_node(self, token: str) -> str:
        label = normalize_label(token)
        for node in self._nodes.values():
            if node.label == label and node.id not in self._synthetic_ids:
                return node.id

        if label and label not in self._nodes:
            node_id = label
        else:
            node_id = self._fresh_id(label, "node")

        self._nodes[node_id] = WorkflowNode(id=node_id, label=label)
        return node_id

    def _attach_note(self, node_id: str, text: str) -> None:
        if not text:
            return
        node = self._nodes[node_id]
        json_text, note = split_note_metadata(text)

        update = {}
        if json_text is not None:
            update["json_metadata"] = json_text
        if note:
            update["note_markdown"] = f"{node.note_markdown}\n{note}" if node.note_markdown else note
        if update:
            self._nodes[node_id] = node.model_copy(update=update)

    def _add_transition(self, from_id: Optional[str], to_id: Optional[str], condition: Optional[str] = None) -> None:
        if not from_id or not to_id:
            return
        if from_id == to_id and not (condition and condition.strip()):
            return
        self._transitions.append(Transition(
            id=f"t_{len(self._transitions)}",
            from_node_id=from_id,
            to_node_id=to_id,
            condition=condition,
        ))


def parse_activity_diagram(
    text: Optional[str],
    definition_id: Optional[str] = None,
    name: Optional[str] = None,
) -> WorkflowDefinition:
    """Compile activity-diagram text into a workflow definition."""
    return ActivityDiagramParser(text).parse(definition_id, name)


def parse_activity_diagram_with_report(
    text: Optional[str],
    definition_id: Optional[str] = None,
    name: Optional[str] = None,
) -> ParseResult:
    """Compile activity-diagram text, keeping warnings and styling side data."""
    return ActivityDiagramParser(text).parse_with_report(definition_id, name)
