"""
Quality Evaluator - rubric scoring for turn outputs.

Scores start at 100 and lose points for each failed check:

    non_empty (required)            -40
    minimum_length (>= 120 chars)   -10
    profile checks                  -20 (required) / -10 (optional)
    local_commands (code profile)   -30

The score is rounded to a step of 10 and compared with the node's
threshold (clamped to 10..100, default 70). Below threshold the node ends
``low_quality`` instead of ``done``.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from railgraph.config import RuntimeConfig
from railgraph.runtime.approval import ApprovalBroker
from railgraph.schemas.approval import ApprovalActionType
from railgraph.schemas.graph import ExecutorKind, GraphNode, QualityProfile
from railgraph.schemas.run import NodeMetric, QualityCheck, QualityReport, QualitySummary
from railgraph.utils.values import extract_final_answer

logger = logging.getLogger(__name__)

THRESHOLD_MIN = 10
THRESHOLD_MAX = 100
THRESHOLD_STEP = 10
DEFAULT_THRESHOLD = 70
MIN_LENGTH = 120
OUTPUT_TAIL_CHARS = 1200

_CODE_SIGNAL = re.compile(r"impl|code|test|lint|build|refactor|fix|bug")
_RESEARCH_SIGNAL = re.compile(r"research|evidence|search|fact|source|verif")
_DESIGN_SIGNAL = re.compile(r"design|plan|architecture|requirement")
_FINAL_SIGNAL = re.compile(r"final|synth|judge|evaluat")

_SOURCE_PATTERN = re.compile(r"source|http|https|reference|citation", re.IGNORECASE)
_UNCERTAINTY_PATTERN = re.compile(
    r"limitation|uncertain|risk|caveat|counter|assumption|constraint", re.IGNORECASE
)
_CODE_PLAN_PATTERN = re.compile(
    r"file|test|lint|build|patch|module|class|function", re.IGNORECASE
)
DESIGN_KEYWORDS = ("goal", "constraint", "risk", "priority", "architecture", "scope", "milestone")
SYNTHESIS_KEYWORDS = ("conclusion", "evidence", "limitation", "next step", "action", "checklist")


def normalize_threshold(value: Any) -> int:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = DEFAULT_THRESHOLD
    clamped = max(THRESHOLD_MIN, min(THRESHOLD_MAX, parsed))
    return int(round(clamped / THRESHOLD_STEP) * THRESHOLD_STEP)


def normalize_score(value: float) -> int:
    clamped = max(0, min(100, value))
    return int(round(clamped / THRESHOLD_STEP) * THRESHOLD_STEP)


def infer_quality_profile(node: GraphNode) -> QualityProfile:
    """Explicit profile wins; web turns are research; otherwise role/prompt/id signals decide."""
    config = node.turn
    if config.quality_profile is not None:
        return config.quality_profile
    if config.executor == ExecutorKind.WEB:
        return QualityProfile.RESEARCH_EVIDENCE

    signal = f"{config.role} {config.prompt_template} {node.id}".lower()
    if _CODE_SIGNAL.search(signal):
        return QualityProfile.CODE_IMPLEMENTATION
    if _RESEARCH_SIGNAL.search(signal):
        return QualityProfile.RESEARCH_EVIDENCE
    if _DESIGN_SIGNAL.search(signal):
        return QualityProfile.DESIGN_PLANNING
    if _FINAL_SIGNAL.search(signal):
        return QualityProfile.SYNTHESIS_FINAL
    return QualityProfile.GENERIC


def summarize_quality_metrics(metrics: dict[str, NodeMetric]) -> QualitySummary:
    rows = list(metrics.values())
    if not rows:
        return QualitySummary()
    pass_nodes = sum(1 for row in rows if row.decision == "PASS")
    return QualitySummary(
        avg_score=round(sum(row.score for row in rows) / len(rows), 2),
        pass_rate=round(pass_nodes / len(rows) * 100, 2),
        total_nodes=len(rows),
        pass_nodes=pass_nodes,
    )


@dataclass
class CommandResult:
    name: str
    exit_code: int
    stdout_tail: str
    stderr_tail: str
    elapsed_ms: int


def _tail(data: bytes, max_chars: int = OUTPUT_TAIL_CHARS) -> str:
    text = data.decode("utf-8", errors="replace")
    return text[-max_chars:]


async def run_quality_commands(
    commands: list[str], cwd: str | None, timeout_s: float
) -> list[CommandResult]:
    """Run shell commands in order, stopping at the first non-zero exit."""
    results: list[CommandResult] = []
    for raw in commands:
        command = raw.strip()
        if not command:
            continue
        started = time.monotonic()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except TimeoutError:
            process.kill()
            await process.wait()
            stdout, stderr = b"", f"timed out after {timeout_s:.0f}s".encode()
        exit_code = process.returncode if process.returncode is not None else -1
        results.append(
            CommandResult(
                name=command,
                exit_code=exit_code,
                stdout_tail=_tail(stdout),
                stderr_tail=_tail(stderr),
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
        )
        if exit_code != 0:
            break
    return results


class _Scorer:
    def __init__(self):
        self.score = 100
        self.checks: list[QualityCheck] = []
        self.failures: list[str] = []

    def add(
        self,
        check_id: str,
        label: str,
        kind: str,
        required: bool,
        passed: bool,
        penalty: int,
        detail: str | None = None,
    ) -> None:
        if not passed:
            self.score = max(0, self.score - penalty)
            if required:
                self.failures.append(label)
        self.checks.append(
            QualityCheck(
                id=check_id,
                label=label,
                kind=kind,
                required=required,
                passed=passed,
                score_delta=0 if passed else -penalty,
                detail=detail,
            )
        )


class QualityEvaluator:
    """Scores a turn node's accepted output against its profile rubric."""

    def __init__(self, config: RuntimeConfig | None = None):
        self.config = config or RuntimeConfig()

    async def evaluate(
        self,
        node: GraphNode,
        output: Any,
        approvals: ApprovalBroker | None = None,
    ) -> QualityReport:
        """
        Score `output` for `node`.

        Raises:
            ApprovalDeniedError: Quality commands needed approval and the gate refused them
        """
        config = node.turn
        profile = infer_quality_profile(node)
        threshold = normalize_threshold(
            config.quality_threshold
            if config.quality_threshold is not None
            else self.config.quality_default_threshold
        )
        full_text = extract_final_answer(output)
        lowered = full_text.lower()
        scorer = _Scorer()
        warnings: list[str] = []

        scorer.add("non_empty", "response is not empty", "structure", True,
                   bool(full_text.strip()), 40)
        scorer.add("minimum_length", "minimum explanation length", "structure", False,
                   len(full_text.strip()) >= MIN_LENGTH, 10,
                   f"fewer than {MIN_LENGTH} characters is treated as too thin")

        if profile == QualityProfile.RESEARCH_EVIDENCE:
            scorer.add("source_signal", "cites sources or evidence", "evidence", True,
                       bool(_SOURCE_PATTERN.search(full_text)), 20)
            scorer.add("uncertainty_signal", "states limits or uncertainty", "consistency", False,
                       bool(_UNCERTAINTY_PATTERN.search(full_text)), 10)
        elif profile == QualityProfile.DESIGN_PLANNING:
            hits = sum(1 for key in DESIGN_KEYWORDS if key in lowered)
            scorer.add("design_sections", "covers core design sections", "structure", True,
                       hits >= 3, 20, "needs 3+ of goal/constraint/risk/priority/...")
        elif profile == QualityProfile.SYNTHESIS_FINAL:
            hits = sum(1 for key in SYNTHESIS_KEYWORDS if key in lowered)
            scorer.add("final_structure", "final answer structure", "structure", True,
                       hits >= 3, 20, "needs 3+ of conclusion/evidence/limitation/next step")
        elif profile == QualityProfile.CODE_IMPLEMENTATION:
            scorer.add("code_plan_signal", "mentions files, tests or build plan", "structure",
                       True, bool(_CODE_PLAN_PATTERN.search(full_text)), 20)
            if config.quality_command_enabled:
                await self._check_commands(node, scorer, warnings, approvals)

        score = normalize_score(scorer.score)
        return QualityReport(
            profile=str(profile),
            threshold=threshold,
            score=score,
            decision="PASS" if score >= threshold else "REJECT",
            checks=scorer.checks,
            failures=scorer.failures,
            warnings=warnings,
        )

    async def _check_commands(
        self,
        node: GraphNode,
        scorer: _Scorer,
        warnings: list[str],
        approvals: ApprovalBroker | None,
    ) -> None:
        commands = [c.strip() for c in node.turn.quality_commands if c.strip()]
        if not commands:
            warnings.append("quality commands are enabled but the command list is empty")
            return

        label = "local quality commands pass"
        try:
            if approvals is not None and self.config.require_command_approval:
                await approvals.require(
                    node.id,
                    ApprovalActionType.COMMAND_EXECUTION,
                    "\n".join(commands),
                    metadata={"cwd": node.turn.cwd},
                )
            results = await run_quality_commands(
                commands, node.turn.cwd, self.config.quality_command_timeout_s
            )
        except OSError as e:
            scorer.add("local_commands", label, "local_command", True, False, 30, str(e))
            return

        failed = next((r for r in results if r.exit_code != 0), None)
        scorer.add(
            "local_commands", label, "local_command", True, failed is None, 30,
            f"{failed.name} failed (exit={failed.exit_code})" if failed else "all commands passed",
        )
        for result in results:
            if result.exit_code != 0 and result.stderr_tail.strip():
                warnings.append(f"[{result.name}] {result.stderr_tail}")
        logger.info(
            f"Quality commands for {node.id}: {len(results)} run, "
            f"{'failed' if failed else 'passed'}"
        )
