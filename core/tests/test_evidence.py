"""Tests for evidence envelopes, the conflict ledger and synthesis packets."""

from railgraph.runtime.evidence import (
    EvidenceStore,
    build_conflict_ledger,
    build_envelope,
    compute_final_confidence,
    extract_claims,
    render_synthesis_input,
)
from railgraph.schemas.evidence import ConfidenceBand, VerificationStatus
from railgraph.schemas.graph import GraphNode


def _node(node_id: str, role: str = "") -> GraphNode:
    return GraphNode.model_validate({"id": node_id, "type": "turn", "config": {"role": role}})


class TestClaims:
    def test_copula_and_key_value_topics(self):
        claims = extract_claims("- Revenue is 10 million.\nMarket share: 12%\n# heading")

        topics = {c.topic: c.value for c in claims}
        assert topics["revenue"] == "10 million"
        assert topics["market share"] == "12%"

    def test_url_lines_are_not_key_values(self):
        claims = extract_claims("https://example.org/report")
        assert all(c.topic != "https" for c in claims)


class TestEnvelope:
    def test_citations_raise_confidence(self):
        envelope = build_envelope(
            _node("a", role="analyst"),
            {"text": "See https://example.org for the figures."},
            provider="fake",
        )
        assert envelope.citations == ("https://example.org",)
        assert envelope.verification_status == VerificationStatus.VERIFIED
        assert envelope.confidence == 0.65
        assert envelope.role_label == "analyst"

    def test_manual_paste_needs_verification(self):
        envelope = build_envelope(
            _node("w"),
            {"text": "pasted", "meta": {"needs_verification": True, "confidence": "low"}},
            provider="gpt",
        )
        assert envelope.verification_status == VerificationStatus.UNVERIFIED
        assert "pasted manually; needs verification" in envelope.data_issues
        assert envelope.confidence_band == ConfidenceBand.LOW

    def test_empty_output_is_unparsed(self):
        envelope = build_envelope(_node("e"), {"text": ""}, provider="fake")
        assert envelope.verification_status == VerificationStatus.UNPARSED


class TestConflicts:
    def test_disagreeing_sources(self):
        a = build_envelope(_node("a"), "Revenue is 10 million.", provider="x")
        b = build_envelope(_node("b"), "Revenue is 12 million.", provider="y")
        c = build_envelope(_node("c"), "Revenue is 10 million.", provider="z")

        ledger = build_conflict_ledger([a, b, c])

        assert len(ledger) == 1
        assert ledger[0].topic == "revenue"
        assert ledger[0].sources == ["a", "b", "c"]

    def test_agreeing_sources(self):
        a = build_envelope(_node("a"), "Revenue is 10 million.", provider="x")
        b = build_envelope(_node("b"), "revenue is 10 million", provider="y")
        assert build_conflict_ledger([a, b]) == []

    def test_confidence_penalized_per_conflict(self):
        a = build_envelope(_node("a"), "Revenue is 10 million.", provider="x")
        b = build_envelope(_node("b"), "Revenue is 12 million.", provider="y")
        ledger = build_conflict_ledger([a, b])

        assert compute_final_confidence([a, b], ledger) == 0.45
        assert compute_final_confidence([], []) == 0.0


class TestEvidenceStore:
    def test_memory_tracks_envelope_refs(self):
        store = EvidenceStore()
        first = store.append(_node("a"), "first answer", provider="x")
        second = store.append(_node("a"), "second answer", provider="x")

        memory = store.memory("a")
        assert memory.envelope_refs == [first.envelope_id, second.envelope_id]
        assert memory.latest_summary == "second answer"
        assert store.latest("a") is second

    def test_synthesis_packet_uses_latest_per_source(self):
        store = EvidenceStore()
        store.append(_node("a"), "Revenue is 10 million.", provider="x")
        store.append(_node("b"), "Revenue is 12 million.", provider="y")

        packet = store.build_synthesis_packet("What is revenue?", ["a", "b"], {"a": 1, "b": 2})

        assert [e.node_id for e in packet.evidence_packets] == ["a", "b"]
        assert packet.conflicts[0].topic == "revenue"
        rendered = render_synthesis_input(packet)
        assert "[QUESTION]\nWhat is revenue?" in rendered
