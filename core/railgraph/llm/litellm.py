"""LiteLLM executor - hosted models through LiteLLM's unified interface.

Any model string LiteLLM understands works here, e.g.
``anthropic/claude-sonnet-4-20250514``, ``gpt-4o-mini`` or ``gemini/gemini-1.5-pro``.
The node's ``model`` overrides the configured default.
"""

import asyncio
import logging
import time
from typing import Any

import litellm

from railgraph.graph.prompt import render_prompt
from railgraph.llm.provider import ExecutionContext, ExecutorCapability, ExecutorResult
from railgraph.schemas.graph import ExecutorKind, GraphNode
from railgraph.schemas.run import UsageStats

logger = logging.getLogger(__name__)


def _usage_from_response(response: Any) -> UsageStats:
    usage = getattr(response, "usage", None)
    if usage is None:
        return UsageStats()
    input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
    output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
    total = int(getattr(usage, "total_tokens", 0) or 0) or input_tokens + output_tokens
    return UsageStats(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)


class LiteLLMExecutor(ExecutorCapability):
    """Executor for ``llm`` turn nodes."""

    kind = ExecutorKind.LLM

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._inflight: dict[str, asyncio.Task] = {}

    def _build_kwargs(self, node: GraphNode, prompt: str, context: ExecutionContext) -> dict:
        config = context.config
        messages: list[dict[str, str]] = []
        if node.turn.system_prompt:
            messages.append({"role": "system", "content": node.turn.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": node.turn.model or self.model or config.model,
            "messages": messages,
            "temperature": self.temperature if self.temperature is not None else config.temperature,
            "max_tokens": self.max_tokens or config.max_tokens,
        }
        api_key = self.api_key or config.api_key
        if api_key:
            kwargs["api_key"] = api_key
        api_base = self.api_base or config.api_base
        if api_base:
            kwargs["api_base"] = api_base
        return kwargs

    async def execute(
        self, node: GraphNode, node_input: Any, context: ExecutionContext
    ) -> ExecutorResult:
        prompt = render_prompt(node, node_input)
        kwargs = self._build_kwargs(node, prompt, context)
        model = kwargs["model"]

        start = time.monotonic()
        call = asyncio.create_task(litellm.acompletion(**kwargs))
        self._inflight[node.id] = call
        try:
            response = await call
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return ExecutorResult(
                ok=False, error="llm call cancelled", provider_id=model, cancelled=True
            )
        except Exception as e:
            logger.warning(f"LiteLLM call failed for {node.id} ({model}): {e}")
            return ExecutorResult(ok=False, error=f"{type(e).__name__}: {e}", provider_id=model)
        finally:
            self._inflight.pop(node.id, None)

        content = response.choices[0].message.content or ""
        usage = _usage_from_response(response)
        logger.info(
            f"LLM turn completed with {model}",
            extra={
                "node_id": node.id,
                "latency_ms": int((time.monotonic() - start) * 1000),
                "tokens_used": usage.total_tokens,
            },
        )
        return ExecutorResult(
            ok=True,
            output={"text": content, "model": model},
            usage=usage,
            provider_id=model,
            raw_response=response,
        )

    async def cancel(self, node_id: str) -> None:
        call = self._inflight.get(node_id)
        if call is not None and not call.done():
            call.cancel()
