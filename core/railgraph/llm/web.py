"""Web provider executor.

Web turns target a chat UI (Gemini, ChatGPT, Grok, Perplexity, Claude).
When a browser-automation capability is available and the node asks for
``bridge_assisted`` mode, the answer is collected automatically; otherwise,
or when automation fails, the turn is handed to the human provider queue
and waits for a pasted answer. A pause or cancel sweep of that ticket is
raised as PauseSignal or CancelSignal.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from railgraph.errors import interrupt_signal, is_pause_signal
from railgraph.graph.prompt import render_prompt
from railgraph.llm.provider import ExecutionContext, ExecutorCapability, ExecutorResult
from railgraph.runtime.human_queue import normalize_web_evidence_output
from railgraph.schemas.graph import ExecutorKind, GraphNode, WebResultMode

logger = logging.getLogger(__name__)


class BrowserAutomation(ABC):
    """Opaque browser-automation transport for web providers."""

    @abstractmethod
    async def run(self, provider: str, prompt: str, timeout_s: float) -> dict[str, Any]:
        """Submit ``prompt`` to ``provider`` and return its answer ({text, meta, ...})."""

    async def cancel(self, provider: str) -> None:
        return None

    def is_available(self, provider: str) -> bool:
        return True


class WebProviderExecutor(ExecutorCapability):
    """Executor for ``web`` turn nodes, with human-in-the-loop fallback."""

    kind = ExecutorKind.WEB

    def __init__(self, automation: BrowserAutomation | None = None):
        self._automation = automation
        self._active_providers: dict[str, str] = {}

    async def execute(
        self, node: GraphNode, node_input: Any, context: ExecutionContext
    ) -> ExecutorResult:
        config = node.turn
        provider = str(config.provider or "web")
        prompt = render_prompt(node, node_input)

        automation = self._automation
        if (
            config.web_result_mode == WebResultMode.BRIDGE_ASSISTED
            and automation is not None
            and automation.is_available(provider)
        ):
            result = await self._run_automation(automation, node, provider, prompt, context)
            if result.ok or result.cancelled:
                return result
            context.log(f"automation failed for {provider}, falling back to manual input")
            logger.warning(f"Web automation failed for {provider}: {result.error}")

        return await self._run_manual(node, provider, prompt, context)

    async def _run_automation(
        self,
        automation: BrowserAutomation,
        node: GraphNode,
        provider: str,
        prompt: str,
        context: ExecutionContext,
    ) -> ExecutorResult:
        self._active_providers[node.id] = provider
        context.log(f"sending prompt to {provider} via browser automation")
        try:
            raw = await asyncio.wait_for(
                automation.run(provider, prompt, context.config.web_timeout_s),
                timeout=context.config.web_timeout_s,
            )
        except TimeoutError:
            return ExecutorResult(
                ok=False, error=f"{provider} automation timed out", provider_id=provider
            )
        except Exception as e:
            error = str(e)
            return ExecutorResult(
                ok=False, error=error, provider_id=provider, cancelled=is_pause_signal(error)
            )
        finally:
            self._active_providers.pop(node.id, None)

        output = normalize_web_evidence_output(provider, raw, WebResultMode.BRIDGE_ASSISTED)
        if not output["text"]:
            return ExecutorResult(
                ok=False, error=f"{provider} returned no text", provider_id=provider
            )
        return ExecutorResult(ok=True, output=output, provider_id=provider)

    async def _run_manual(
        self, node: GraphNode, provider: str, prompt: str, context: ExecutionContext
    ) -> ExecutorResult:
        if context.human_queue is None:
            return ExecutorResult(
                ok=False, error="no human provider queue available", provider_id=provider
            )

        mode = node.turn.web_result_mode
        if mode == WebResultMode.BRIDGE_ASSISTED:
            mode = WebResultMode.MANUAL_PASTE_TEXT
        ticket = context.human_queue.request(node.id, provider, prompt, mode)
        await context.notify_waiting_user(
            f"waiting for {provider} response (ticket {ticket.ticket_id})"
        )

        result = await ticket.wait()
        if result.ok:
            return ExecutorResult(ok=True, output=result.output, provider_id=provider)
        signal = interrupt_signal(result.error)
        if signal is not None:
            raise signal
        return ExecutorResult(
            ok=False,
            error=result.error,
            provider_id=provider,
            cancelled=is_pause_signal(result.error),
        )

    async def cancel(self, node_id: str) -> None:
        provider = self._active_providers.get(node_id)
        if provider and self._automation is not None:
            await self._automation.cancel(provider)

    def is_available(self, provider: str | None = None) -> bool:
        # The manual path is always there.
        return True
