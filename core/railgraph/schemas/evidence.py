"""Evidence envelopes, conflict ledger entries and responsibility memory."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ConfidenceBand(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class VerificationStatus(StrEnum):
    VERIFIED = "verified"  # Output cites sources
    UNVERIFIED = "unverified"  # Text without sources, or pasted by a human
    UNPARSED = "unparsed"  # Nothing usable could be extracted


class Claim(BaseModel):
    """One assertion extracted from an output, keyed by an inferred topic."""

    text: str
    topic: str | None = None
    value: str | None = None

    model_config = {"frozen": True}


class EvidenceEnvelope(BaseModel):
    """Immutable snapshot of one accepted node output."""

    envelope_id: str
    node_id: str
    role_label: str
    provider: str
    captured_at: datetime
    payload: Any = None
    summary: str = ""
    claims: tuple[Claim, ...] = ()
    citations: tuple[str, ...] = ()
    confidence: float = 0.5
    confidence_band: ConfidenceBand = ConfidenceBand.MEDIUM
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    data_issues: tuple[str, ...] = ()

    model_config = {"frozen": True}


class ConflictClaim(BaseModel):
    node_id: str
    role_label: str = ""
    value: str
    text: str


class ConflictEntry(BaseModel):
    """A topic on which at least two upstream sources disagree."""

    topic: str
    claims: list[ConflictClaim] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class NodeResponsibilityMemory(BaseModel):
    """Latest accepted summary of a node, with references to its envelopes."""

    node_id: str
    role_label: str
    latest_summary: str
    envelope_refs: list[str] = Field(default_factory=list)
    updated_at: datetime


class SynthesisPacket(BaseModel):
    """Structured input handed to join and final nodes instead of raw upstream text."""

    question: str
    evidence_packets: list[EvidenceEnvelope] = Field(default_factory=list)
    conflicts: list[ConflictEntry] = Field(default_factory=list)
    run_memory: list[NodeResponsibilityMemory] = Field(default_factory=list)
    upstream: dict[str, Any] = Field(default_factory=dict)
