"""Light nodes: ``transform`` reshapes data, ``gate`` picks a branch.

Neither node calls out of process, so both run without the execution lock.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from railgraph.graph.validator import validate_simple_schema
from railgraph.schemas.graph import Graph, GraphNode, TransformMode
from railgraph.utils.values import get_by_path, replace_input_placeholder, stringify

logger = logging.getLogger(__name__)

_JSON_DECISION = re.compile(r'"DECISION"\s*:\s*"(PASS|REJECT)"')
_REJECT_WORD = re.compile(r"\bREJECT\b")
_PASS_WORD = re.compile(r"\bPASS\b")


@dataclass
class LightNodeResult:
    ok: bool
    output: Any = None
    error: str | None = None
    message: str | None = None
    skip_node_ids: set[str] = field(default_factory=set)


def execute_transform(node: GraphNode, value: Any) -> LightNodeResult:
    config = node.transform

    if config.mode == TransformMode.PICK:
        return LightNodeResult(ok=True, output=get_by_path(value, config.pick_path))

    if config.mode == TransformMode.MERGE:
        merge = config.merge if config.merge is not None else {}
        if isinstance(value, dict) and isinstance(merge, dict):
            return LightNodeResult(ok=True, output={**value, **merge})
        return LightNodeResult(ok=True, output={"input": value, "merge": merge})

    rendered = replace_input_placeholder(config.template or "{{input}}", stringify(value))
    return LightNodeResult(ok=True, output={"text": rendered})


def _decision_at(value: Any, path: str) -> Any:
    found = get_by_path(value, path)
    if found is None and path == "DECISION":
        found = get_by_path(value, "decision")
    if found is None and path == "decision":
        found = get_by_path(value, "DECISION")
    return found


def execute_gate(node: GraphNode, value: Any, graph: Graph) -> LightNodeResult:
    """
    Route to the PASS or REJECT child.

    The decision is read at ``decision_path``; when absent it is inferred
    from a ``"DECISION": "..."`` fragment or a bare PASS/REJECT keyword.
    PASS targets ``pass_node_id`` (default: first child), REJECT targets
    ``reject_node_id`` (default: second child). Every other child is
    returned in ``skip_node_ids``.
    """
    config = node.gate
    notes: list[str] = []

    if config.schema_:
        schema_errors = validate_simple_schema(config.schema_, value)
        if schema_errors:
            return LightNodeResult(
                ok=False, error=f"schema validation failed: {'; '.join(schema_errors)}"
            )

    raw = _decision_at(value, config.decision_path)
    decision = str(raw if raw is not None else "").upper()
    if decision not in ("PASS", "REJECT"):
        text = stringify(value).upper()
        json_match = _JSON_DECISION.search(text)
        if json_match:
            decision = json_match.group(1)
            notes.append(f"DECISION={decision} inferred from JSON text")
        elif _REJECT_WORD.search(text):
            decision = "REJECT"
            notes.append("REJECT inferred from keyword")
        elif _PASS_WORD.search(text):
            decision = "PASS"
            notes.append("PASS inferred from keyword")

    if decision not in ("PASS", "REJECT"):
        return LightNodeResult(
            ok=False, error=f"gate decision must be PASS or REJECT, got {raw!r}"
        )

    children = graph.children_of(node.id)
    if decision == "PASS":
        target = config.pass_node_id or (children[0] if children else None)
    else:
        target = config.reject_node_id or (children[1] if len(children) > 1 else None)

    skipped = {child for child in children if child != target}
    message = f"gate decision={decision}, target={target or 'none'}"
    if notes:
        message = f"{message} ({'; '.join(notes)})"
    logger.info(message)

    return LightNodeResult(
        ok=True,
        output={"decision": decision, "target": target, "notes": notes},
        message=message,
        skip_node_ids=skipped,
    )
