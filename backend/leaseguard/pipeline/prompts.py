"""Prompt Composer: turns lease data, ledger content and prior stage output into prompts.

The legal rubric (article catalogue, normal-wear examples, report headings,
evaluation rubric, offline answers) lives in ``prompts/legal_catalogue.json``
and the prose in jinja2 templates beside it.  Composition is pure: the same
inputs always produce the same prompt text.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from jinja2 import Environment, FileSystemLoader, StrictUndefined
from pydantic import BaseModel

from leaseguard.config import (
    DEFAULT_JURISDICTION, LEGAL_CATALOGUE_PATH, PROMPTS_DIR,
    STAGE_MAX_TOKENS, STAGE_TEMPERATURE,
)
from leaseguard.pipeline.schemas import (
    CaseContext, CaseEvaluation, DamageAnalysis, LeaseAnalysis, PhotoMatch,
)

logger = logging.getLogger(__name__)

_ARTICLE_NUMBER_RE = re.compile(r"Art\.?\s*(\d+[a-z]?)", re.IGNORECASE)

CLAIM_DEADLINE_DAYS = 30


def article_key(token: str) -> str | None:
    """'OR Art. 267' / 'Art. 267 CO' / 'art 267' -> '267'."""
    m = _ARTICLE_NUMBER_RE.search(token or "")
    return m.group(1).lower() if m else None


class LegalCatalogue:
    """Versioned legal reference data consumed by the composer and fallbacks."""

    def __init__(self, data: dict):
        self.data = data
        self.version: str = data.get("version", "unversioned")
        self.article_groups: list[dict] = data.get("articleGroups", [])
        self._by_key: dict[str, dict] = {}
        for group in self.article_groups:
            for entry in group.get("articles", []):
                key = article_key(entry["article"])
                if key and key not in self._by_key:
                    self._by_key[key] = {**entry, "group": group.get("title", "")}

    @classmethod
    def load(cls, path: Path | str = LEGAL_CATALOGUE_PATH) -> "LegalCatalogue":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        catalogue = cls(data)
        logger.debug(f"Loaded legal catalogue v{catalogue.version} ({len(catalogue._by_key)} articles)")
        return catalogue

    @property
    def articles(self) -> list[dict]:
        return list(self._by_key.values())

    def find_article(self, token: str) -> dict | None:
        key = article_key(token)
        return self._by_key.get(key) if key else None

    @property
    def report_sections(self) -> list[str]:
        return list(self.data.get("reportSections", []))

    @property
    def evaluation_rubric(self) -> dict:
        return self.data.get("evaluationRubric", {})

    @property
    def fallback_answers(self) -> dict:
        return self.data["fallbackAnswers"]

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass(frozen=True)
class ComposedPrompt:
    """Everything the gateway needs for one call."""

    stage: str
    system: str
    user: str
    image_refs: tuple[str, ...] = ()
    image_labels: tuple[str, ...] = ()
    temperature: float | None = None
    max_tokens: int | None = None


# ═══════════════════════════════════════════════════════════════════
# Output contract hints
# ═══════════════════════════════════════════════════════════════════

def _skeleton(prop: dict, defs: dict, exclude: frozenset = frozenset()) -> Any:
    if "$ref" in prop:
        prop = defs.get(prop["$ref"].rsplit("/", 1)[-1], {})
    if "anyOf" in prop:
        options = [p for p in prop["anyOf"] if p.get("type") != "null"]
        prop = options[0] if options else {}
        return _skeleton(prop, defs)
    if "enum" in prop:
        return "|".join(str(v) for v in prop["enum"])

    ptype = prop.get("type", "string")
    if ptype == "object":
        props = prop.get("properties", {})
        return {k: _skeleton(v, defs) for k, v in props.items() if k not in exclude}
    if ptype == "array":
        return [_skeleton(prop.get("items") or {}, defs)]
    if ptype == "integer":
        return "<integer>"
    if ptype == "number":
        return "<number>"
    if ptype == "boolean":
        return "<true|false>"
    return "..."


def build_schema_hint(model: type[BaseModel], exclude: Iterable[str] = ()) -> str:
    """JSON skeleton listing the exact field set of *model* (camelCase keys).

    Enum-valued fields show their allowed values joined with ``|``.
    """
    schema = model.model_json_schema(by_alias=True)
    skeleton = _skeleton(schema, schema.get("$defs", {}), frozenset(exclude))
    return json.dumps(skeleton, indent=2, ensure_ascii=False)


# ═══════════════════════════════════════════════════════════════════
# Timeline
# ═══════════════════════════════════════════════════════════════════

def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def build_timeline(lease: dict, ledger) -> list[dict]:
    """Key dates of the tenancy from lease data and actual capture timestamps."""
    timeline = []
    intake_at = ledger.first_capture("intake")
    checkout_at = ledger.first_capture("checkout")
    intake_count = sum(r.photo_count for r in ledger.records() if r.phase == "intake")
    checkout_count = sum(r.photo_count for r in ledger.records() if r.phase == "checkout")

    start = _as_date(lease.get("startDate"))
    if start:
        timeline.append({"date": start.isoformat(),
                         "event": "Lease commencement - Property received in documented condition"})
    elif intake_at:
        timeline.append({"date": intake_at.date().isoformat(),
                         "event": "Approximate lease commencement (based on intake inspection)"})

    if intake_at:
        timeline.append({
            "date": intake_at.date().isoformat(),
            "time": intake_at.strftime("%H:%M:%S"),
            "event": f"Intake inspection completed - {intake_count} photo(s) documented",
        })

    if checkout_at:
        timeline.append({
            "date": checkout_at.date().isoformat(),
            "time": checkout_at.strftime("%H:%M:%S"),
            "event": f"Checkout inspection completed - {checkout_count} photo(s) documented",
        })
        deadline = checkout_at.date() + timedelta(days=CLAIM_DEADLINE_DAYS)
        timeline.append({"date": deadline.isoformat(),
                         "event": "Deadline for landlord claims (30 days per OR Art. 267)"})

    end = _as_date(lease.get("endDate"))
    if end:
        timeline.append({"date": end.isoformat(), "event": "Lease termination date"})

    return sorted(timeline, key=lambda e: (e["date"], e.get("time", "")))


# ═══════════════════════════════════════════════════════════════════
# Composer
# ═══════════════════════════════════════════════════════════════════

def _dumps(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


class PromptComposer:
    """Builds every prompt the system sends.

    Usage:
        composer = PromptComposer(LegalCatalogue.load())
        prompt = composer.compose_context(lease, ledger, "Can they keep my deposit?")
    """

    def __init__(
        self,
        catalogue: LegalCatalogue | None = None,
        templates_dir: Path | str = PROMPTS_DIR,
        jurisdiction: str = DEFAULT_JURISDICTION,
    ):
        self.catalogue = catalogue or LegalCatalogue.load()
        self.jurisdiction = jurisdiction
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["tojson_pretty"] = _dumps

    def _render(self, template: str, **context) -> str:
        context.setdefault("catalogue", self.catalogue.data)
        context.setdefault("jurisdiction", self.jurisdiction)
        return self.env.get_template(template).render(**context).strip()

    # ── Defense pipeline stages ──

    def compose_context(
        self,
        lease: dict,
        ledger,
        user_query: str,
        jurisdiction: str | None = None,
        tenant: dict | None = None,
        case_id: str = "",
    ) -> ComposedPrompt:
        system = self._render(
            "context_system.txt",
            jurisdiction=jurisdiction or self.jurisdiction,
            tenant=tenant,
            schema_hint=build_schema_hint(CaseContext),
        )
        user = self._render(
            "context_user.txt",
            user_query=user_query,
            case_id=case_id,
            lease=lease,
            evidence=ledger.snapshot(),
            gaps=ledger.missing_documentation_report(),
            timeline=build_timeline(lease, ledger),
        )
        return ComposedPrompt("Context", system, user,
                              temperature=STAGE_TEMPERATURE, max_tokens=STAGE_MAX_TOKENS)

    def compose_report(
        self,
        context: CaseContext,
        ledger,
        lease: dict | None = None,
        jurisdiction: str | None = None,
        tenant: dict | None = None,
    ) -> ComposedPrompt:
        photo_refs = ledger.all_photo_refs()
        system = self._render(
            "report_system.txt",
            jurisdiction=jurisdiction or self.jurisdiction,
            tenant=tenant,
            lease=lease or {},
            timeline=build_timeline(lease or {}, ledger),
            ledger_listing=ledger.get_prompt_context(),
            report_sections=self.catalogue.report_sections,
        )
        user = self._render(
            "report_user.txt",
            context=context.to_document(),
            user_query=context.user_query,
        )
        return ComposedPrompt("Report", system, user, image_refs=tuple(photo_refs),
                              temperature=STAGE_TEMPERATURE, max_tokens=STAGE_MAX_TOKENS)

    def compose_evaluation(self, report_markdown: str) -> ComposedPrompt:
        system = self._render(
            "evaluation_system.txt",
            rubric=self.catalogue.evaluation_rubric,
            schema_hint=build_schema_hint(CaseEvaluation, exclude=("gaps", "isPlaceholder")),
        )
        user = self._render("evaluation_user.txt", report=report_markdown)
        return ComposedPrompt("Evaluation", system, user,
                              temperature=STAGE_TEMPERATURE, max_tokens=STAGE_MAX_TOKENS)

    # ── Photo comparison ──

    def compose_quick_match(self, item_name: str, before_ref: str, after_ref: str) -> ComposedPrompt:
        user = self._render("quick_match.txt", item_name=item_name,
                            schema_hint=build_schema_hint(PhotoMatch))
        return ComposedPrompt("Quick Match", "", user, image_refs=(before_ref, after_ref))

    def _photo_labels(self, before_refs: list[str], after_refs: list[str]) -> tuple[str, ...]:
        return tuple(
            [f"--- BEFORE Photo {i} ---" for i in range(1, len(before_refs) + 1)]
            + [f"--- AFTER Photo {i} ---" for i in range(1, len(after_refs) + 1)]
        )

    def compose_comparison(self, item_name: str, before_refs: list[str],
                           after_refs: list[str]) -> ComposedPrompt:
        user = self._render(
            "comparison.txt",
            item_name=item_name,
            before_count=len(before_refs),
            after_count=len(after_refs),
            normal_wear=self.catalogue.get("normalWear", {}),
            schema_hint=build_schema_hint(DamageAnalysis, exclude=("stateGrade", "analyzedAt")),
        )
        return ComposedPrompt("Comparison", "", user,
                              image_refs=tuple(before_refs) + tuple(after_refs),
                              image_labels=self._photo_labels(before_refs, after_refs),
                              temperature=STAGE_TEMPERATURE)

    def compose_deterioration(self, item_name: str, before_refs: list[str],
                              after_refs: list[str]) -> ComposedPrompt:
        user = self._render(
            "deterioration.txt",
            item_name=item_name,
            before_count=len(before_refs),
            after_count=len(after_refs),
            schema_hint=build_schema_hint(
                DamageAnalysis,
                exclude=("damageTypes", "specificIssues", "repairEstimate", "analyzedAt"),
            ),
        )
        return ComposedPrompt("Deterioration", "", user,
                              image_refs=tuple(before_refs) + tuple(after_refs),
                              image_labels=self._photo_labels(before_refs, after_refs),
                              temperature=STAGE_TEMPERATURE)

    # ── Lease analysis and assistant ──

    def compose_lease_analysis(self, document_text: str, jurisdiction: str | None = None,
                               tenant: dict | None = None) -> ComposedPrompt:
        jurisdiction = jurisdiction or self.jurisdiction
        system = self._render(
            "lease_analysis_system.txt",
            jurisdiction=jurisdiction,
            schema_hint=build_schema_hint(LeaseAnalysis, exclude=("isFallback",)),
        )
        user = self._render("lease_analysis_user.txt", jurisdiction=jurisdiction,
                            tenant=tenant, document_text=document_text)
        return ComposedPrompt("Lease Analysis", system, user,
                              temperature=STAGE_TEMPERATURE, max_tokens=STAGE_MAX_TOKENS)

    def compose_question(self, lease: dict, question: str,
                         jurisdiction: str | None = None) -> ComposedPrompt:
        system = self._render("lease_question_system.txt",
                              jurisdiction=jurisdiction or self.jurisdiction, lease=lease)
        return ComposedPrompt("Lease Question", system, question.strip())

    def compose_article_explanation(self, article: str) -> ComposedPrompt:
        entry = self.catalogue.find_article(article)
        user = self._render("article_explanation.txt", article=article, entry=entry)
        return ComposedPrompt("Article Explanation", "", user)
