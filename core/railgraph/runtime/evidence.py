"""
Evidence, Conflict Ledger & Run Memory.

Each accepted node output becomes an immutable EvidenceEnvelope, appended
to that node's list in completion order. The same call refreshes the
node's responsibility memory, so the two never drift apart.

Join and final nodes do not read raw upstream text. They get a
SynthesisPacket holding the latest envelope per source, the conflict
ledger computed across those envelopes, and the run memory.
"""

import re
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from railgraph.schemas.evidence import (
    Claim,
    ConfidenceBand,
    ConflictClaim,
    ConflictEntry,
    EvidenceEnvelope,
    NodeResponsibilityMemory,
    SynthesisPacket,
    VerificationStatus,
)
from railgraph.schemas.graph import GraphNode
from railgraph.utils.values import extract_final_answer, get_by_path, normalize_whitespace

SUMMARY_MAX_CHARS = 280
MAX_CLAIMS = 24

_URL = re.compile(r"https?://[^\s)\]>\"']+")
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9])")
_KEY_VALUE = re.compile(r"^(?P<key>[^:]{2,60}):\s*(?P<value>\S.*)$")
_COPULA = re.compile(
    r"^(?P<key>.{2,80}?)\s+(?:is|are|was|were|will be|equals|reached|totals?)\s+(?P<value>\S.*)$",
    re.IGNORECASE,
)
_TOPIC_STOPWORDS = frozenset(
    {"the", "a", "an", "of", "in", "on", "for", "our", "its", "their", "this", "that", "current"}
)


def _topic_key(raw: str) -> str | None:
    words = [w for w in re.findall(r"[a-z0-9]+", raw.lower()) if w not in _TOPIC_STOPWORDS]
    if not words:
        return None
    return " ".join(words[:4])


def _normalize_value(raw: str) -> str:
    return normalize_whitespace(raw).lower().rstrip(".;,!")


def extract_claims(text: str) -> list[Claim]:
    """Split output text into claims and infer a topic key where the sentence has one."""
    claims: list[Claim] = []
    for line in text.splitlines():
        line = _BULLET.sub("", line).strip()
        if not line or line.startswith("#"):
            continue
        for sentence in _SENTENCE_SPLIT.split(line):
            sentence = sentence.strip()
            if len(sentence) < 8 or len(sentence) > 400:
                continue
            match = _KEY_VALUE.match(sentence)
            if match and match.group("key").strip().lower() in ("http", "https"):
                match = None
            match = match or _COPULA.match(sentence)
            topic = value = None
            if match:
                topic = _topic_key(match.group("key"))
                value = _normalize_value(match.group("value")) if topic else None
            claims.append(Claim(text=sentence, topic=topic, value=value))
            if len(claims) >= MAX_CLAIMS:
                return claims
    return claims


def _extract_citations(payload: Any, text: str) -> list[str]:
    citations: list[str] = []
    meta_citations = get_by_path(payload, "meta.citations")
    if isinstance(meta_citations, list):
        citations.extend(str(c).strip() for c in meta_citations if str(c).strip())
    source_url = get_by_path(payload, "meta.source_url")
    if isinstance(source_url, str) and source_url:
        citations.append(source_url)
    citations.extend(_URL.findall(text))
    deduped: list[str] = []
    for citation in citations:
        if citation not in deduped:
            deduped.append(citation)
    return deduped[:8]


def _confidence(payload: Any, text: str, citations: list[str]) -> tuple[float, list[str]]:
    issues: list[str] = []
    if not text.strip():
        issues.append("empty output")
    if get_by_path(payload, "meta.needs_verification") is True:
        issues.append("pasted manually; needs verification")

    declared = str(get_by_path(payload, "meta.confidence") or "").lower()
    score = {"high": 0.85, "medium": 0.6, "low": 0.35}.get(declared, 0.5)
    if citations:
        score += 0.15
    else:
        issues.append("no citations")
    score -= 0.1 * len([i for i in issues if i != "no citations"])
    return round(min(1.0, max(0.05, score)), 2), issues


def _band(confidence: float) -> ConfidenceBand:
    if confidence >= 0.75:
        return ConfidenceBand.HIGH
    if confidence >= 0.5:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


def build_envelope(
    node: GraphNode,
    output: Any,
    provider: str,
    summary: str | None = None,
    captured_at: datetime | None = None,
) -> EvidenceEnvelope:
    """Wrap one accepted output into an immutable envelope."""
    text = extract_final_answer(output)
    citations = _extract_citations(output, text)
    confidence, issues = _confidence(output, text, citations)
    if not text.strip():
        verification = VerificationStatus.UNPARSED
    elif citations:
        verification = VerificationStatus.VERIFIED
    else:
        verification = VerificationStatus.UNVERIFIED

    return EvidenceEnvelope(
        envelope_id=f"{node.id}:{uuid.uuid4().hex[:10]}",
        node_id=node.id,
        role_label=node.role_label,
        provider=provider,
        captured_at=captured_at or datetime.now(UTC),
        payload=output,
        summary=summary or normalize_whitespace(text)[:SUMMARY_MAX_CHARS],
        claims=tuple(extract_claims(text)),
        citations=tuple(citations),
        confidence=confidence,
        confidence_band=_band(confidence),
        verification_status=verification,
        data_issues=tuple(issues),
    )


def build_conflict_ledger(envelopes: Iterable[EvidenceEnvelope]) -> list[ConflictEntry]:
    """
    Group claims by topic and report topics where sources disagree.

    Callers pass the latest envelope per source. A topic is a conflict when
    at least two sources state it with different normalized values.
    """
    by_topic: dict[str, dict[str, ConflictClaim]] = {}
    topic_order: list[str] = []
    for envelope in envelopes:
        for claim in envelope.claims:
            if not claim.topic or claim.value is None:
                continue
            if claim.topic not in by_topic:
                by_topic[claim.topic] = {}
                topic_order.append(claim.topic)
            by_topic[claim.topic].setdefault(
                envelope.node_id,
                ConflictClaim(
                    node_id=envelope.node_id,
                    role_label=envelope.role_label,
                    value=claim.value,
                    text=claim.text,
                ),
            )

    ledger: list[ConflictEntry] = []
    for topic in topic_order:
        claims = list(by_topic[topic].values())
        if len(claims) < 2 or len({c.value for c in claims}) < 2:
            continue
        ledger.append(
            ConflictEntry(topic=topic, claims=claims, sources=[c.node_id for c in claims])
        )
    return ledger


def compute_final_confidence(
    envelopes: list[EvidenceEnvelope], conflicts: list[ConflictEntry]
) -> float:
    """Mean envelope confidence, lowered by 0.05 per unresolved conflict."""
    if not envelopes:
        return 0.0
    mean = sum(e.confidence for e in envelopes) / len(envelopes)
    return round(min(1.0, max(0.0, mean - 0.05 * len(conflicts))), 2)


class EvidenceStore:
    """Per-run evidence envelopes and responsibility memory."""

    def __init__(self):
        self._by_node: dict[str, list[EvidenceEnvelope]] = {}
        self._memory: dict[str, NodeResponsibilityMemory] = {}

    def append(
        self,
        node: GraphNode,
        output: Any,
        provider: str,
        summary: str | None = None,
    ) -> EvidenceEnvelope:
        envelope = build_envelope(node, output, provider, summary)
        self._by_node.setdefault(node.id, []).append(envelope)

        previous = self._memory.get(node.id)
        refs = [*previous.envelope_refs] if previous else []
        refs.append(envelope.envelope_id)
        self._memory[node.id] = NodeResponsibilityMemory(
            node_id=node.id,
            role_label=envelope.role_label,
            latest_summary=envelope.summary,
            envelope_refs=refs,
            updated_at=envelope.captured_at,
        )
        return envelope

    def envelopes(self, node_id: str) -> list[EvidenceEnvelope]:
        return list(self._by_node.get(node_id, []))

    def latest(self, node_id: str) -> EvidenceEnvelope | None:
        envelopes = self._by_node.get(node_id)
        return envelopes[-1] if envelopes else None

    def memory(self, node_id: str) -> NodeResponsibilityMemory | None:
        return self._memory.get(node_id)

    def by_node_snapshot(self) -> dict[str, list[EvidenceEnvelope]]:
        return {node_id: list(envelopes) for node_id, envelopes in self._by_node.items()}

    def memory_snapshot(self) -> dict[str, NodeResponsibilityMemory]:
        return dict(self._memory)

    def build_synthesis_packet(
        self,
        question: str,
        source_node_ids: list[str],
        upstream: dict[str, Any],
    ) -> SynthesisPacket:
        packets = [e for e in (self.latest(node_id) for node_id in source_node_ids) if e]
        return SynthesisPacket(
            question=question,
            evidence_packets=packets,
            conflicts=build_conflict_ledger(packets),
            run_memory=list(self._memory.values()),
            upstream=upstream,
        )


def render_synthesis_input(packet: SynthesisPacket) -> str:
    """Render a synthesis packet as prompt text."""
    sections: list[str] = []
    if packet.question.strip():
        sections.append(f"[QUESTION]\n{packet.question.strip()}")

    packet_blocks = []
    for envelope in packet.evidence_packets:
        lines = [f"### evidence:{envelope.node_id}"]
        if envelope.role_label:
            lines.append(f"- role: {envelope.role_label}")
        lines.append(f"- verification: {envelope.verification_status}")
        lines.append(f"- confidence: {envelope.confidence:.2f} ({envelope.confidence_band})")
        citations = list(envelope.citations[:4])
        lines.append(f"- citations: {' | '.join(citations) if citations else '(none)'}")
        if envelope.data_issues:
            lines.append(f"- data issues: {' | '.join(envelope.data_issues[:6])}")
        if envelope.claims:
            lines.append("- claims:")
            lines.extend(f"  - {claim.text}" for claim in envelope.claims[:8])
        elif envelope.summary:
            lines.append(f"- summary: {envelope.summary}")
        packet_blocks.append("\n".join(lines))
    if packet_blocks:
        sections.append("[EVIDENCE PACKETS]\n" + "\n\n".join(packet_blocks))

    if packet.conflicts:
        conflict_lines = [
            f"- {entry.topic}: " + ", ".join(f"{c.node_id}:{c.value}" for c in entry.claims)
            for entry in packet.conflicts
        ]
        sections.append("[UNRESOLVED CONFLICTS]\n" + "\n".join(conflict_lines))

    if packet.run_memory:
        memory_lines = [
            f"- {m.node_id} ({m.role_label}): {m.latest_summary or '(no summary)'}"
            for m in packet.run_memory
        ]
        sections.append("[RUN MEMORY]\n" + "\n".join(memory_lines))

    return "\n\n".join(sections)
