"""Local model executor talking to an Ollama server over HTTP."""

import logging
from typing import Any

import httpx

from railgraph.graph.prompt import render_prompt
from railgraph.llm.provider import ExecutionContext, ExecutorCapability, ExecutorResult
from railgraph.schemas.graph import ExecutorKind, GraphNode
from railgraph.schemas.run import UsageStats

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 300.0


class OllamaExecutor(ExecutorCapability):
    """Executor for ``local`` turn nodes via ``POST /api/generate``."""

    kind = ExecutorKind.LOCAL

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.model = model
        self.timeout_s = timeout_s
        self._transport = transport
        self._clients: dict[str, httpx.AsyncClient] = {}

    async def execute(
        self, node: GraphNode, node_input: Any, context: ExecutionContext
    ) -> ExecutorResult:
        base_url = (self.base_url or context.config.ollama_base_url).rstrip("/")
        model = node.turn.model or self.model or context.config.ollama_model
        payload: dict[str, Any] = {
            "model": model,
            "prompt": render_prompt(node, node_input),
            "stream": False,
        }
        if node.turn.system_prompt:
            payload["system"] = node.turn.system_prompt

        client = httpx.AsyncClient(
            base_url=base_url, timeout=self.timeout_s, transport=self._transport
        )
        self._clients[node.id] = client
        try:
            response = await client.post("/api/generate", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            return ExecutorResult(ok=False, error="ollama request timed out", provider_id="ollama")
        except httpx.HTTPStatusError as e:
            return ExecutorResult(
                ok=False,
                error=f"ollama returned HTTP {e.response.status_code}",
                provider_id="ollama",
            )
        except httpx.RequestError as e:
            if client.is_closed:
                return ExecutorResult(
                    ok=False,
                    error="ollama request cancelled",
                    provider_id="ollama",
                    cancelled=True,
                )
            return ExecutorResult(ok=False, error=f"ollama unreachable: {e}", provider_id="ollama")
        finally:
            self._clients.pop(node.id, None)
            await client.aclose()

        input_tokens = int(data.get("prompt_eval_count") or 0)
        output_tokens = int(data.get("eval_count") or 0)
        return ExecutorResult(
            ok=True,
            output={"text": str(data.get("response") or ""), "model": model},
            usage=UsageStats(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            provider_id="ollama",
            raw_response=data,
        )

    async def cancel(self, node_id: str) -> None:
        client = self._clients.get(node_id)
        if client is not None:
            await client.aclose()
