"""Node execution: prompts, light nodes, turn runs, schema checks and quality scoring."""

from railgraph.graph.prompt import input_text, render_prompt
from railgraph.graph.quality import QualityEvaluator, infer_quality_profile
from railgraph.graph.transform import LightNodeResult, execute_gate, execute_transform
from railgraph.graph.turn import TurnOutcome, TurnRunner
from railgraph.graph.validator import OutputValidator, ValidationResult, validate_simple_schema

__all__ = [
    "LightNodeResult",
    "OutputValidator",
    "QualityEvaluator",
    "TurnOutcome",
    "TurnRunner",
    "ValidationResult",
    "execute_gate",
    "execute_transform",
    "infer_quality_profile",
    "input_text",
    "render_prompt",
    "validate_simple_schema",
]
