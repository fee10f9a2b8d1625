"""Shared railgraph configuration.

Reads ``~/.railgraph/configuration.json`` once per call site so the CLI,
the control server and the executors agree on models, keys and runtime
limits. Environment variables override the file for the few settings that
are commonly changed per invocation.
"""

import json
import os
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

RAILGRAPH_HOME = Path.home() / ".railgraph"
RAILGRAPH_CONFIG_FILE = RAILGRAPH_HOME / "configuration.json"

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"


class MultiAgentMode(StrEnum):
    """How many heavy (LLM) node executions may run at once."""

    OFF = "off"
    BALANCED = "balanced"
    MAX = "max"

    @property
    def max_concurrency(self) -> int:
        return {MultiAgentMode.OFF: 1, MultiAgentMode.BALANCED: 2, MultiAgentMode.MAX: 4}[self]


def get_railgraph_config() -> dict[str, Any]:
    """Load configuration from ~/.railgraph/configuration.json."""
    if not RAILGRAPH_CONFIG_FILE.exists():
        return {}
    try:
        with open(RAILGRAPH_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the preferred litellm model string (e.g. 'anthropic/claude-sonnet-4-20250514')."""
    llm = get_railgraph_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_railgraph_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_multi_agent_mode() -> MultiAgentMode:
    raw = os.environ.get("RAILGRAPH_MULTI_AGENT_MODE") or get_railgraph_config().get(
        "runtime", {}
    ).get("multi_agent_mode", "off")
    try:
        return MultiAgentMode(str(raw).lower())
    except ValueError:
        return MultiAgentMode.OFF


def get_storage_path() -> Path:
    raw = os.environ.get("RAILGRAPH_STORAGE_PATH") or get_railgraph_config().get(
        "storage", {}
    ).get("path")
    return Path(raw).expanduser() if raw else RAILGRAPH_HOME / "runs"


def _runtime_setting(key: str, default: Any) -> Any:
    return get_railgraph_config().get("runtime", {}).get(key, default)


# ---------------------------------------------------------------------------
# RuntimeConfig – shared by orchestrator, executors and CLI
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Runtime configuration loaded from ~/.railgraph/configuration.json."""

    multi_agent_mode: MultiAgentMode = field(default_factory=get_multi_agent_mode)
    output_schema_enabled: bool = field(
        default_factory=lambda: bool(_runtime_setting("output_schema_enabled", True))
    )
    output_schema_max_retry: int = field(
        default_factory=lambda: int(_runtime_setting("output_schema_max_retry", 1))
    )
    node_log_limit: int = 400
    # Finished runs kept in memory; older ones are served from the run store.
    finished_run_retention: int = 16
    quality_default_threshold: int = 70
    quality_command_timeout_s: float = 300.0
    require_command_approval: bool = field(
        default_factory=lambda: bool(_runtime_setting("require_command_approval", True))
    )
    web_timeout_s: float = 180.0
    storage_path: Path = field(default_factory=get_storage_path)

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None

    ollama_base_url: str = field(
        default_factory=lambda: get_railgraph_config()
        .get("ollama", {})
        .get("base_url", "http://127.0.0.1:11434")
    )
    ollama_model: str = field(
        default_factory=lambda: get_railgraph_config().get("ollama", {}).get("model", "llama3.1:8b")
    )

    @property
    def max_concurrency(self) -> int:
        return self.multi_agent_mode.max_concurrency
