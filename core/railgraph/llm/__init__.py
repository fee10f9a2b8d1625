"""Executor capabilities for turn nodes."""

from railgraph.llm.litellm import LiteLLMExecutor
from railgraph.llm.ollama import OllamaExecutor
from railgraph.llm.provider import (
    ExecutionContext,
    ExecutorCapability,
    ExecutorRegistry,
    ExecutorResult,
)
from railgraph.llm.web import BrowserAutomation, WebProviderExecutor

__all__ = [
    "BrowserAutomation",
    "ExecutionContext",
    "ExecutorCapability",
    "ExecutorRegistry",
    "ExecutorResult",
    "LiteLLMExecutor",
    "OllamaExecutor",
    "WebProviderExecutor",
]


def default_registry(automation: BrowserAutomation | None = None) -> ExecutorRegistry:
    """Registry with the LiteLLM, Ollama and web executors."""
    return ExecutorRegistry([LiteLLMExecutor(), OllamaExecutor(), WebProviderExecutor(automation)])
