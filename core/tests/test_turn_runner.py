"""Tests for TurnRunner: output normalization and the schema retry loop."""

import json

import pytest
from conftest import FakeExecutor

from railgraph.errors import CancelSignal, ExecutorCancelledError, ExecutorError, PauseSignal
from railgraph.llm.provider import ExecutionContext, ExecutorRegistry, ExecutorResult
from railgraph.graph.turn import (
    TurnRunner,
    build_schema_retry_input,
    extract_schema_target,
    normalize_turn_output,
)
from railgraph.schemas.graph import GraphNode

SCHEMA = {"type": "object", "required": ["answer"], "properties": {"answer": {"type": "string"}}}


def _node(**config) -> GraphNode:
    return GraphNode.model_validate({"id": "n", "type": "turn", "config": config})


def _context(runtime_config, logs: list[str] | None = None) -> ExecutionContext:
    sink = logs if logs is not None else []
    return ExecutionContext(run_id="run_test", config=runtime_config, log=sink.append)


class TestNormalization:
    def test_string_output(self):
        assert normalize_turn_output("hello") == {"text": "hello", "raw": "hello"}

    def test_dict_output_keeps_fields(self):
        output = normalize_turn_output({"completion": {"text": "hi"}, "data": {"x": 1}})
        assert output["text"] == "hi"
        assert output["raw"] == {"x": 1}

    def test_schema_target_prefers_artifact_payload(self):
        output = {"text": "{}", "raw": {"a": 1}, "artifact": {"payload": {"answer": "x"}}}
        assert extract_schema_target(output) == {"answer": "x"}

    def test_schema_target_parses_text(self):
        assert extract_schema_target({"text": '{"answer": "x"}', "raw": None}) == {"answer": "x"}

    def test_retry_input_sections(self):
        text = build_schema_retry_input("Q?", "bad", SCHEMA, ["$.answer: required"])
        assert "[ORIGINAL INPUT]\nQ?" in text
        assert "[PREVIOUS OUTPUT]\nbad" in text
        assert "[OUTPUT SCHEMA (JSON)]" in text
        assert "1. $.answer: required" in text
        assert "[INSTRUCTION]" in text


class TestSchemaRetry:
    @pytest.mark.asyncio
    async def test_valid_output_needs_one_attempt(self, runtime_config):
        fake = FakeExecutor({"n": json.dumps({"answer": "42"})})
        runner = TurnRunner(ExecutorRegistry([fake]), runtime_config)

        outcome = await runner.run(_node(output_schema=SCHEMA), "Q?", _context(runtime_config))

        assert outcome.ok
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_retry_fixes_output_and_sums_usage(self, runtime_config):
        fake = FakeExecutor({"n": lambda node_input, attempt: "nope" if attempt == 0 else '{"answer": "ok"}'})
        runner = TurnRunner(ExecutorRegistry([fake]), runtime_config)
        logs: list[str] = []

        outcome = await runner.run(_node(output_schema=SCHEMA), "Q?", _context(runtime_config, logs))

        assert outcome.ok
        assert outcome.attempts == 2
        assert outcome.usage.total_tokens == 30
        assert "[SCHEMA ERRORS]" in fake.calls[1][1]
        assert any("retry 1/1" in line for line in logs)

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, runtime_config):
        fake = FakeExecutor({"n": "never json"})
        runner = TurnRunner(ExecutorRegistry([fake]), runtime_config)

        outcome = await runner.run(_node(output_schema=SCHEMA), "Q?", _context(runtime_config))

        assert not outcome.ok
        assert outcome.attempts == 2
        assert outcome.error.startswith("output schema validation failed")
        assert outcome.schema_errors
        assert outcome.usage.total_tokens == 30

    @pytest.mark.asyncio
    async def test_failed_retry_call(self, runtime_config):
        fake = FakeExecutor(
            {
                "n": lambda node_input, attempt: "nope"
                if attempt == 0
                else ExecutorResult(ok=False, error="rate limited")
            }
        )
        runner = TurnRunner(ExecutorRegistry([fake]), runtime_config)

        outcome = await runner.run(_node(output_schema=SCHEMA), "Q?", _context(runtime_config))

        assert not outcome.ok
        assert outcome.error == "output schema retry failed: rate limited"

    @pytest.mark.asyncio
    async def test_schema_check_disabled(self, runtime_config):
        runtime_config.output_schema_enabled = False
        fake = FakeExecutor({"n": "free text"})
        runner = TurnRunner(ExecutorRegistry([fake]), runtime_config)

        outcome = await runner.run(_node(output_schema=SCHEMA), "Q?", _context(runtime_config))

        assert outcome.ok
        assert len(fake.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_executor(self, runtime_config):
        runner = TurnRunner(ExecutorRegistry([]), runtime_config)

        outcome = await runner.run(_node(), "Q?", _context(runtime_config))

        assert not outcome.ok
        assert "no executor registered" in outcome.error


class TestExecutorInterrupts:
    """Interrupts raised by an executor come back as cancelled outcomes."""

    @staticmethod
    def _raising(error: Exception):
        def respond(node_input, attempt):
            raise error

        return FakeExecutor({"n": respond})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ExecutorCancelledError("stopped by user request", provider_id="gpt"),
            PauseSignal(),
            CancelSignal(),
        ],
    )
    async def test_interrupt_is_cancelled(self, runtime_config, error):
        runner = TurnRunner(ExecutorRegistry([self._raising(error)]), runtime_config)

        outcome = await runner.run(_node(), "Q?", _context(runtime_config))

        assert not outcome.ok
        assert outcome.cancelled
        assert outcome.error == str(error)

    @pytest.mark.asyncio
    async def test_plain_executor_error_is_not_cancelled(self, runtime_config):
        error = ExecutorError("quota exhausted", provider_id="gpt")
        runner = TurnRunner(ExecutorRegistry([self._raising(error)]), runtime_config)

        outcome = await runner.run(_node(), "Q?", _context(runtime_config))

        assert not outcome.ok
        assert not outcome.cancelled
        assert outcome.provider_id == "gpt"
