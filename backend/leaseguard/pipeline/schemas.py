"""Typed contracts for everything the model produces or the ledger stores.

Model-facing models accept the camelCase keys the prompts ask for
(``tenantLiable``) as well as snake_case attribute names.  Persisted documents
are dumped with ``exclude_none=True``; the storage collaborator rejects
documents that contain unset optional fields.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from leaseguard.config import EVALUATION_SUMMARY_MAX_CHARS

Priority = Literal["high", "medium", "low"]
Phase = Literal["intake", "checkout"]
Completeness = Literal["complete", "partial", "missing"]
Severity = Literal["none", "minor", "moderate", "major"]
GapSeverity = Literal["none", "minor", "moderate", "severe"]
StateGrade = Literal["A+", "A", "B", "C", "D", "F"]
Confidence = Literal["high", "medium", "low"]
CaseStrength = Literal["strong", "moderate", "weak"]
BlockKind = Literal["text", "heading", "evidence_comparison", "timeline", "recommendation"]

PHASES: tuple[str, ...] = ("intake", "checkout")

_SEVERITY_ALIASES = {"severe": "major", "significant": "major", "slight": "minor", "small": "minor"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        """JSON-safe dict with camelCase keys and no unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ═══════════════════════════════════════════════════
# Lease contract
# ═══════════════════════════════════════════════════

class InspectionItem(CamelModel):
    """One thing to photograph at intake and checkout."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    priority: Priority = "medium"
    reason: str = ""
    room: str | None = None
    description: str | None = None
    photo_angles: tuple[str, ...] = ()
    recommended_photos: int | None = None
    contract_reference: str | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, v):
        v = _lower(v)
        return v if v in ("high", "medium", "low") else "medium"


class InfoEntry(CamelModel):
    label: str
    value: str = ""
    icon: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v):
        return "" if v is None else str(v)


class ClauseAnnotation(CamelModel):
    section: str = ""
    text: str = ""
    status: Literal["clean", "warning", "risk"] = "clean"
    note: str | None = None
    legal_reference: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        v = _lower(v)
        return v if v in ("clean", "warning", "risk") else "warning"


class Responsibilities(CamelModel):
    tenant: list[str] = Field(default_factory=list)
    lessor: list[str] = Field(default_factory=list)


class Irregularity(CamelModel):
    issue: str
    severity: Literal["minor", "moderate", "severe"] = "moderate"
    legal_basis: str = ""
    clause_text: str | None = None
    location: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v):
        v = _lower(v)
        if v == "major":
            return "severe"
        return v if v in ("minor", "moderate", "severe") else "moderate"


class Benchmark(CamelModel):
    compared_to_standard: str = ""
    key_differences: list[str] = Field(default_factory=list)
    tenant_advantages: list[str] = Field(default_factory=list)
    tenant_disadvantages: list[str] = Field(default_factory=list)


class LeaseAnalysis(CamelModel):
    """Result of the initial contract analysis."""

    asset_type: str = "Property"
    asset_name: str = ""
    risk_score: int = Field(default=50, ge=0, le=100)
    info: list[InfoEntry] = Field(default_factory=list)
    clauses: list[ClauseAnnotation] = Field(default_factory=list)
    responsibilities: Responsibilities = Field(default_factory=Responsibilities)
    irregularities: list[Irregularity] = Field(default_factory=list)
    inspection_items: list[InspectionItem] = Field(min_length=1)
    benchmark: Benchmark | None = None
    recommendations: list[str] = Field(default_factory=list)
    is_fallback: bool = False

    @field_validator("risk_score", mode="before")
    @classmethod
    def _clamp_risk(cls, v):
        if isinstance(v, (int, float)):
            return max(0, min(100, int(v)))
        return v

    @field_validator("irregularities", mode="before")
    @classmethod
    def _wrap_plain_irregularities(cls, v):
        if isinstance(v, list):
            return [{"issue": item} if isinstance(item, str) else item for item in v]
        return v


# ═══════════════════════════════════════════════════
# Damage comparison
# ═══════════════════════════════════════════════════

class DamageAnalysis(CamelModel):
    """One comparison pass for one item.  Never mutated; a new pass supersedes it."""

    model_config = ConfigDict(frozen=True)

    has_damage: bool
    severity: Severity
    is_normal_wear: bool
    tenant_liable: bool
    description: str = ""
    liability_reasoning: str = ""
    state_grade: StateGrade | None = None
    photos_analyzed: int | None = None
    damage_types: tuple[str, ...] = ()
    specific_issues: tuple[str, ...] = ()
    repair_estimate: Literal["none", "low", "medium", "high"] | None = None
    same_location: bool | None = None
    location_confidence: Confidence | None = None
    analyzed_at: datetime = Field(default_factory=utcnow)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v):
        v = _lower(v)
        return _SEVERITY_ALIASES.get(v, v)

    @field_validator("state_grade", mode="before")
    @classmethod
    def _normalize_grade(cls, v):
        if isinstance(v, str):
            v = v.strip().upper()
            return v if v in ("A+", "A", "B", "C", "D", "F") else None
        return v

    @field_validator("location_confidence", "repair_estimate", mode="before")
    @classmethod
    def _lower_enums(cls, v):
        return _lower(v)


class PhotoMatch(CamelModel):
    """Quick same-location check for a freshly captured checkout photo."""

    model_config = ConfigDict(frozen=True)

    is_match: bool
    confidence: Confidence
    reason: str = ""
    recommendation: Literal["accept", "retake", "warning"]

    @field_validator("confidence", "recommendation", mode="before")
    @classmethod
    def _lower_enums(cls, v):
        return _lower(v)


# ═══════════════════════════════════════════════════
# Stage 1: case context
# ═══════════════════════════════════════════════════

class LeaseSummary(CamelModel):
    asset_type: str = ""
    asset_name: str = ""
    risk_score: int | None = None
    info: list[InfoEntry] = Field(default_factory=list)
    clauses: list[ClauseAnnotation] = Field(default_factory=list)
    responsibilities: Responsibilities = Field(default_factory=Responsibilities)
    irregularities: list[Any] = Field(default_factory=list)


class MissingPhotos(CamelModel):
    intake_missing: bool = False
    checkout_missing: bool = False
    details: str = ""


class EvidenceItemContext(CamelModel):
    item_id: str
    item_name: str = ""
    description: str = ""
    priority: Priority = "medium"
    intake_photos: list[str] = Field(default_factory=list)
    checkout_photos: list[str] = Field(default_factory=list)
    intake_photo_count: int = 0
    checkout_photo_count: int = 0
    missing_photos: MissingPhotos = Field(default_factory=MissingPhotos)
    documentation_completeness: Completeness = "missing"
    intake_timestamp: str | None = None
    checkout_timestamp: str | None = None
    damage_analysis: dict[str, Any] | None = None
    relevance_to_query: Confidence = "medium"
    concerns: list[str] = Field(default_factory=list)

    @field_validator("priority", "relevance_to_query", mode="before")
    @classmethod
    def _normalize_tier(cls, v):
        v = _lower(v)
        return v if v in ("high", "medium", "low") else "medium"

    @field_validator("documentation_completeness", mode="before")
    @classmethod
    def _lower_completeness(cls, v):
        return _lower(v)


class LegalReference(CamelModel):
    article: str
    topic: str = ""
    relevance: str = ""


class KeyFactors(CamelModel):
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    critical_evidence: list[str] = Field(default_factory=list)
    timeline_facts: list[str] = Field(default_factory=list)


class CaseContext(CamelModel):
    case_id: str = ""
    user_query: str = ""
    lease_context: LeaseSummary
    evidence_items: list[EvidenceItemContext] = Field(default_factory=list)
    legal_references: list[LegalReference] = Field(default_factory=list)
    key_factors: KeyFactors = Field(default_factory=KeyFactors)


# ═══════════════════════════════════════════════════
# Stage 2: defense report
# ═══════════════════════════════════════════════════

class ReportBlock(CamelModel):
    model_config = ConfigDict(frozen=True)

    kind: BlockKind
    content: str
    level: int | None = None
    photo_refs: tuple[str, ...] = ()


class DefenseReport(CamelModel):
    model_config = ConfigDict(frozen=True)

    markdown: str = Field(min_length=1)
    blocks: tuple[ReportBlock, ...] = ()
    photo_refs: tuple[str, ...] = ()
    citations: tuple[str, ...] = ()
    generated_at: datetime = Field(default_factory=utcnow)


# ═══════════════════════════════════════════════════
# Stage 3: case evaluation
# ═══════════════════════════════════════════════════

class EvidenceGap(CamelModel):
    model_config = ConfigDict(frozen=True)

    description: str
    severity: GapSeverity = "moderate"
    item_id: str | None = None


class EstimatedOutcome(CamelModel):
    model_config = ConfigDict(frozen=True)

    deposit_return: Literal["full", "partial", "minimal"] | None = None
    likely_deduction: str | None = None
    reasoning: str = ""

    @field_validator("deposit_return", mode="before")
    @classmethod
    def _lower_enum(cls, v):
        return _lower(v)


class MissingEvidenceImpact(CamelModel):
    model_config = ConfigDict(frozen=True)

    items_with_missing_photos: int = 0
    severity_of_gaps: GapSeverity = "none"
    impact_on_case: str = ""

    @field_validator("severity_of_gaps", mode="before")
    @classmethod
    def _lower_enum(cls, v):
        return _lower(v)


class NextSteps(CamelModel):
    model_config = ConfigDict(frozen=True)

    immediate: str = ""
    if_disputed: str = ""
    escalation: str = ""


class CaseEvaluation(CamelModel):
    """Terminal artifact of a pipeline run."""

    model_config = ConfigDict(frozen=True)

    win_probability: int | None = Field(default=None, ge=0, le=100)
    confidence: Confidence = "low"
    summary: str = ""
    case_strength: CaseStrength | None = None
    key_strength: str = ""
    key_weakness: str = ""
    estimated_outcome: EstimatedOutcome | None = None
    risk_factors: tuple[str, ...] = ()
    missing_evidence_impact: MissingEvidenceImpact | None = None
    gaps: tuple[EvidenceGap, ...] = ()
    recommendations: tuple[str, ...] = ()
    next_steps: NextSteps | None = None
    is_placeholder: bool = False

    @field_validator("win_probability", mode="before")
    @classmethod
    def _coerce_probability(cls, v):
        if isinstance(v, str):
            v = v.strip().rstrip("%").strip()
            try:
                v = float(v)
            except ValueError:
                return None
        if isinstance(v, float):
            v = round(v)
        if isinstance(v, int) and not isinstance(v, bool):
            return max(0, min(100, v))
        return v

    @field_validator("confidence", "case_strength", mode="before")
    @classmethod
    def _lower_enums(cls, v):
        return _lower(v)

    @field_validator("summary", mode="before")
    @classmethod
    def _cap_summary(cls, v):
        if isinstance(v, str) and len(v) > EVALUATION_SUMMARY_MAX_CHARS:
            return v[: EVALUATION_SUMMARY_MAX_CHARS - 3].rstrip() + "..."
        return v
