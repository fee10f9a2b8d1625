"""Prompt rendering for turn nodes."""

from typing import Any

from railgraph.runtime.evidence import render_synthesis_input
from railgraph.schemas.evidence import SynthesisPacket
from railgraph.schemas.graph import GraphNode
from railgraph.utils.values import replace_input_placeholder, stringify


def input_text(node_input: Any) -> str:
    if isinstance(node_input, SynthesisPacket):
        return render_synthesis_input(node_input)
    return stringify(node_input).strip()


def render_prompt(node: GraphNode, node_input: Any) -> str:
    """Fill the node's prompt template with its input, prefixed by its role."""
    config = node.turn
    text = input_text(node_input)
    template = config.prompt_template or "{{input}}"
    if "{{input}}" in template:
        body = replace_input_placeholder(template, text)
    else:
        body = f"{template}\n\n{text}" if text else template
    if config.role:
        return f"[ROLE]\n{config.role}\n\n{body}"
    return body
