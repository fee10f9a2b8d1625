"""
Graph Schema - the nodes and edges a run executes.

Node kinds:
- turn: one call to an executor (LLM backend, local model, or a web
  provider that may need a human to paste the answer)
- transform: reshapes its input (pick a path, merge constants, render a template)
- gate: routes to a PASS or REJECT child and skips the other branch

Edges carry no conditions. A node runs once all of its sources are terminal.
"""

from collections import deque
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class NodeType(StrEnum):
    TURN = "turn"
    TRANSFORM = "transform"
    GATE = "gate"


class ExecutorKind(StrEnum):
    """Backend family a turn node runs on."""

    LLM = "llm"  # Hosted model through litellm
    LOCAL = "local"  # Local model server (ollama)
    WEB = "web"  # Web chat provider, automated or human-in-the-loop

    @property
    def requires_execution_lock(self) -> bool:
        """Web turns wait on a human or a browser, not on a rate-limited API."""
        return self is not ExecutorKind.WEB


class WebProvider(StrEnum):
    GEMINI = "gemini"
    GPT = "gpt"
    GROK = "grok"
    PERPLEXITY = "perplexity"
    CLAUDE = "claude"


class WebResultMode(StrEnum):
    BRIDGE_ASSISTED = "bridge_assisted"  # Browser automation, manual fallback
    MANUAL_PASTE_TEXT = "manual_paste_text"
    MANUAL_PASTE_JSON = "manual_paste_json"


class QualityProfile(StrEnum):
    GENERIC = "generic"
    CODE_IMPLEMENTATION = "code_implementation"
    RESEARCH_EVIDENCE = "research_evidence"
    DESIGN_PLANNING = "design_planning"
    SYNTHESIS_FINAL = "synthesis_final"


class TransformMode(StrEnum):
    PICK = "pick"
    MERGE = "merge"
    TEMPLATE = "template"


class TurnConfig(BaseModel):
    """Configuration of a ``turn`` node."""

    executor: ExecutorKind = ExecutorKind.LLM
    provider: WebProvider | None = Field(
        default=None, description="Web provider; required when executor is 'web'"
    )
    model: str | None = None
    role: str = ""
    prompt_template: str = "{{input}}"
    system_prompt: str = ""
    quality_profile: QualityProfile | None = None
    quality_threshold: int | None = None
    quality_commands: list[str] = Field(default_factory=list)
    quality_command_enabled: bool = False
    output_schema: dict[str, Any] | None = None
    web_result_mode: WebResultMode = WebResultMode.BRIDGE_ASSISTED
    cwd: str | None = None

    model_config = {"extra": "allow"}


class TransformConfig(BaseModel):
    """Configuration of a ``transform`` node."""

    mode: TransformMode = TransformMode.PICK
    pick_path: str = ""
    merge: Any = Field(default_factory=dict)
    template: str = "{{input}}"

    model_config = {"extra": "allow"}


class GateConfig(BaseModel):
    """Configuration of a ``gate`` node."""

    decision_path: str = "DECISION"
    pass_node_id: str | None = None
    reject_node_id: str | None = None
    schema_: dict[str, Any] | None = Field(default=None, alias="schema")

    model_config = {"extra": "allow", "populate_by_name": True}


_CONFIG_TYPES: dict[NodeType, type[BaseModel]] = {
    NodeType.TURN: TurnConfig,
    NodeType.TRANSFORM: TransformConfig,
    NodeType.GATE: GateConfig,
}


class GraphNode(BaseModel):
    """A node in the graph. ``config`` is parsed according to ``type``."""

    id: str
    type: NodeType
    label: str = ""
    config: TurnConfig | TransformConfig | GateConfig

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def _coerce_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        node_type = data.get("type")
        config = data.get("config")
        try:
            config_type = _CONFIG_TYPES[NodeType(node_type)]
        except ValueError:
            return data
        if config is None or isinstance(config, dict):
            data = {**data, "config": config_type.model_validate(config or {})}
        return data

    @property
    def requires_execution_lock(self) -> bool:
        if self.type != NodeType.TURN:
            return False
        return self.turn.executor.requires_execution_lock

    @property
    def turn(self) -> TurnConfig:
        if not isinstance(self.config, TurnConfig):
            raise TypeError(f"node '{self.id}' is not a turn node")
        return self.config

    @property
    def transform(self) -> TransformConfig:
        if not isinstance(self.config, TransformConfig):
            raise TypeError(f"node '{self.id}' is not a transform node")
        return self.config

    @property
    def gate(self) -> GateConfig:
        if not isinstance(self.config, GateConfig):
            raise TypeError(f"node '{self.id}' is not a gate node")
        return self.config

    @property
    def role_label(self) -> str:
        if isinstance(self.config, TurnConfig) and self.config.role:
            return self.config.role
        return self.label or self.id


class GraphEdge(BaseModel):
    """Directed connection ``(from_node_id, out) -> (to_node_id, in)``."""

    from_node_id: str
    from_port: str = "out"
    to_node_id: str
    to_port: str = "in"

    model_config = {"extra": "allow"}


class Graph(BaseModel):
    """A complete workflow graph."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def children_of(self, node_id: str) -> list[str]:
        """Distinct child ids in edge order."""
        seen: list[str] = []
        for edge in self.edges:
            if edge.from_node_id == node_id and edge.to_node_id not in seen:
                seen.append(edge.to_node_id)
        return seen

    def sink_node_ids(self) -> list[str]:
        sources = {edge.from_node_id for edge in self.edges}
        return [node.id for node in self.nodes if node.id not in sources]

    def validate_graph(self) -> list[str]:
        """Validate the graph structure. Returns a list of errors, empty when valid."""
        errors: list[str] = []

        if not self.nodes:
            errors.append("Graph has no nodes")
            return errors

        node_ids: set[str] = set()
        for node in self.nodes:
            if node.id in node_ids:
                errors.append(f"Duplicate node id '{node.id}'")
            node_ids.add(node.id)
            if (
                node.type == NodeType.TURN
                and node.turn.executor == ExecutorKind.WEB
                and node.turn.provider is None
            ):
                errors.append(f"Node '{node.id}' uses the web executor without a provider")

        pairs: set[tuple[str, str]] = set()
        for edge in self.edges:
            src, dst = edge.from_node_id, edge.to_node_id
            if src not in node_ids:
                errors.append(f"Edge {src}->{dst} references missing source '{src}'")
            if dst not in node_ids:
                errors.append(f"Edge {src}->{dst} references missing target '{dst}'")
            if src == dst:
                errors.append(f"Edge {src}->{dst} is a self-loop")
                continue
            if (src, dst) in pairs:
                errors.append(f"Duplicate edge {src}->{dst}")
            elif (dst, src) in pairs:
                errors.append(f"Edge {src}->{dst} reverses existing edge {dst}->{src}")
            pairs.add((src, dst))

        for node in self.nodes:
            if node.type != NodeType.GATE:
                continue
            children = self.children_of(node.id)
            for target in (node.gate.pass_node_id, node.gate.reject_node_id):
                if target and target not in children:
                    errors.append(f"Gate '{node.id}' routes to '{target}' which is not its child")

        if not errors:
            cycle = self._find_cycle_members()
            if cycle:
                errors.append(f"Graph contains a cycle through: {', '.join(sorted(cycle))}")

        return errors

    def _find_cycle_members(self) -> set[str]:
        indegree = {node.id: 0 for node in self.nodes}
        adjacency: dict[str, list[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            adjacency[edge.from_node_id].append(edge.to_node_id)
            indegree[edge.to_node_id] += 1

        ready = deque(node_id for node_id, degree in indegree.items() if degree == 0)
        visited: set[str] = set()
        while ready:
            node_id = ready.popleft()
            visited.add(node_id)
            for child in adjacency[node_id]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    ready.append(child)
        return set(indegree) - visited
