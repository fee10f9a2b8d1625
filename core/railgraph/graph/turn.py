"""
Turn Runner - executes a turn node through its executor capability.

A turn with an ``output_schema`` gets a correction loop: when the output's
schema target does not validate, the executor is called again with a
follow-up input carrying the original input, the previous output, the
schema and the numbered errors. Usage is summed across all attempts.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from railgraph.config import RuntimeConfig
from railgraph.errors import (
    CancelSignal,
    ExecutorCancelledError,
    ExecutorError,
    PauseSignal,
    SchemaValidationError,
)
from railgraph.graph.prompt import input_text
from railgraph.graph.validator import OutputValidator
from railgraph.llm.provider import ExecutionContext, ExecutorRegistry, ExecutorResult
from railgraph.schemas.graph import GraphNode
from railgraph.schemas.run import UsageStats
from railgraph.utils.values import clip_text, extract_final_answer, stringify, try_parse_json

logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    """Result of one turn node, after any schema retries."""

    ok: bool
    output: Any = None
    error: str | None = None
    usage: UsageStats = field(default_factory=UsageStats)
    provider_id: str = ""
    cancelled: bool = False
    attempts: int = 0
    schema_errors: list[str] = field(default_factory=list)


def normalize_turn_output(output: Any) -> dict:
    """Shape an executor output as a dict carrying at least ``text`` and ``raw``."""
    if isinstance(output, dict):
        row = dict(output)
        row["text"] = extract_final_answer(output)
        row.setdefault("raw", output.get("data"))
        return row
    return {"text": stringify(output), "raw": output}


def extract_schema_target(output: dict) -> Any:
    """Pick the value an output schema applies to: artifact payload, then raw, then parsed text."""
    artifact = output.get("artifact")
    if isinstance(artifact, dict) and artifact.get("payload") is not None:
        return artifact["payload"]
    raw = output.get("raw")
    if isinstance(raw, str):
        parsed = try_parse_json(raw)
        if parsed is not None:
            return parsed
    elif raw is not None:
        return raw
    parsed = try_parse_json(str(output.get("text") or ""))
    return parsed if parsed is not None else output.get("text")


def build_schema_retry_input(
    original_input: Any, previous_output: Any, schema: dict, errors: list[str]
) -> str:
    numbered = "\n".join(f"{i}. {error}" for i, error in enumerate(errors, start=1))
    return "\n\n".join(
        [
            f"[ORIGINAL INPUT]\n{clip_text(input_text(original_input))}",
            f"[PREVIOUS OUTPUT]\n{clip_text(previous_output)}",
            f"[OUTPUT SCHEMA (JSON)]\n{json.dumps(schema, ensure_ascii=False, indent=2)}",
            f"[SCHEMA ERRORS]\n{numbered}",
            "[INSTRUCTION]\nPlease correct the schema errors above and reply with JSON only "
            "that satisfies the output schema.",
        ]
    )


class TurnRunner:
    """Runs turn nodes against the executor registry."""

    def __init__(self, registry: ExecutorRegistry, config: RuntimeConfig | None = None):
        self.registry = registry
        self.config = config or RuntimeConfig()
        self.validator = OutputValidator()

    async def run(
        self, node: GraphNode, node_input: Any, context: ExecutionContext
    ) -> TurnOutcome:
        try:
            executor = self.registry.get(node.turn.executor)
        except ExecutorError as e:
            return TurnOutcome(ok=False, error=str(e))

        usage = UsageStats()
        result = await self._invoke(executor, node, node_input, context, 0)
        usage = usage + result.usage
        if not result.ok:
            return TurnOutcome(
                ok=False,
                error=result.error or "executor failed",
                usage=usage,
                provider_id=result.provider_id,
                cancelled=result.cancelled,
                attempts=1,
            )

        output = normalize_turn_output(result.output)
        schema = node.turn.output_schema
        if not schema or not self.config.output_schema_enabled:
            return TurnOutcome(
                ok=True, output=output, usage=usage, provider_id=result.provider_id, attempts=1
            )

        validation = self.validator.validate_schema(schema, extract_schema_target(output))
        attempts = 1
        max_retry = max(0, self.config.output_schema_max_retry)
        while not validation.success and attempts <= max_retry:
            context.log(
                f"output schema check failed ({len(validation.errors)} error(s)), "
                f"retry {attempts}/{max_retry}"
            )
            retry_input = build_schema_retry_input(
                node_input, output.get("text"), schema, validation.errors
            )
            result = await self._invoke(executor, node, retry_input, context, attempts)
            usage = usage + result.usage
            attempts += 1
            if not result.ok:
                return TurnOutcome(
                    ok=False,
                    error=f"output schema retry failed: {result.error}",
                    usage=usage,
                    provider_id=result.provider_id,
                    cancelled=result.cancelled,
                    attempts=attempts,
                    schema_errors=validation.errors,
                )
            output = normalize_turn_output(result.output)
            validation = self.validator.validate_schema(schema, extract_schema_target(output))

        if not validation.success:
            logger.warning(f"Schema retries exhausted for {node.id} after {attempts} attempt(s)")
            return TurnOutcome(
                ok=False,
                error=str(SchemaValidationError(validation.errors)),
                output=output,
                usage=usage,
                provider_id=result.provider_id,
                attempts=attempts,
                schema_errors=validation.errors,
            )

        if attempts > 1:
            context.log(f"output schema satisfied after {attempts} attempt(s)")
        return TurnOutcome(
            ok=True, output=output, usage=usage, provider_id=result.provider_id, attempts=attempts
        )

    async def _invoke(
        self,
        executor,
        node: GraphNode,
        node_input: Any,
        context: ExecutionContext,
        attempt: int,
    ) -> ExecutorResult:
        context.attempt = attempt
        try:
            return await executor.execute(node, node_input, context)
        except (PauseSignal, CancelSignal) as e:
            return ExecutorResult(ok=False, error=str(e), cancelled=True)
        except ExecutorError as e:
            return ExecutorResult(
                ok=False,
                error=str(e),
                provider_id=e.provider_id or "",
                cancelled=isinstance(e, ExecutorCancelledError),
            )

    async def cancel(self, node: GraphNode) -> None:
        if node.turn.executor in self.registry:
            await self.registry.get(node.turn.executor).cancel(node.id)
