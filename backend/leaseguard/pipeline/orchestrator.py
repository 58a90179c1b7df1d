"""Defense pipeline: three dependent model calls turned into a validated defense.

  Context     lease + ledger snapshot + user query   -> CaseContext      (fatal on failure)
  Report      CaseContext + every photo reference     -> DefenseReport    (fatal on failure)
  Evaluation  report markdown                         -> CaseEvaluation   (neutral placeholder on failure)

Stages run strictly in order; a later stage never starts before the earlier
one produced a validated output.  An aborted run carries only the
StageFailure, never a partial report.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from leaseguard.pipeline.errors import Stage, StageFailure
from leaseguard.pipeline.evidence_ledger import EvidenceLedger
from leaseguard.pipeline.llm_client import LLMProgressCallback, ModelGateway, _noop_cb
from leaseguard.pipeline.prompts import PromptComposer
from leaseguard.pipeline.recovery import validate_output
from leaseguard.pipeline.report import build_report, validate_report_markdown
from leaseguard.pipeline.schemas import (
    CaseContext, CaseEvaluation, DefenseReport, EvidenceItemContext, MissingPhotos, utcnow,
)
from leaseguard.pipeline.storage import DocumentStore, LeaseRepository

logger = logging.getLogger(__name__)

_MARKDOWN_NOISE_RE = re.compile(r"[#*_>`|]+")


class PipelineState(str, Enum):
    IDLE = "idle"
    CONTEXT = "context"
    REPORT = "report"
    EVALUATION = "evaluation"
    DONE = "done"
    ABORTED = "aborted"


_TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.CONTEXT},
    PipelineState.CONTEXT: {PipelineState.REPORT, PipelineState.ABORTED},
    PipelineState.REPORT: {PipelineState.EVALUATION, PipelineState.ABORTED},
    PipelineState.EVALUATION: {PipelineState.DONE},
    PipelineState.DONE: set(),
    PipelineState.ABORTED: set(),
}


@dataclass
class DefenseRun:
    """Outcome of one pipeline run."""

    case_id: str
    user_query: str
    lease_id: str = ""
    state: PipelineState = PipelineState.IDLE
    context: CaseContext | None = None
    report: DefenseReport | None = None
    evaluation: CaseEvaluation | None = None
    failure: StageFailure | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.DONE

    def advance(self, target: PipelineState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {target.value}")
        self.state = target
        if target in (PipelineState.DONE, PipelineState.ABORTED):
            self.finished_at = utcnow()

    def to_document(self) -> dict:
        """Persistable form of a completed run (report, evaluation and the context behind them)."""
        if not self.succeeded:
            raise ValueError("Only completed runs can be serialized")
        doc = {
            "caseId": self.case_id,
            "userQuery": self.user_query,
            "context": self.context.to_document(),
            "report": self.report.to_document(),
            "evaluation": self.evaluation.to_document(),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
        }
        if self.lease_id:
            doc["leaseId"] = self.lease_id
        return doc

    def to_response(self) -> dict:
        if self.failure is not None:
            return {"caseId": self.case_id, "status": "aborted", "error": self.failure.to_dict()}
        return {"status": "completed", **self.to_document()}


# ═══════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════

def build_remediation(ledger: EvidenceLedger) -> str:
    """Tell the tenant which photos would unblock the pipeline."""
    gaps = ledger.missing_documentation_report()
    if not gaps:
        return "Evidence is complete; check the model service configuration and run the defense again."
    actions = []
    for item_id, description in gaps:
        if description.startswith("intake and checkout"):
            actions.append(f"add intake and checkout photos for item {item_id}")
        elif description.startswith("intake"):
            actions.append(f"add intake photos for item {item_id}")
        else:
            actions.append(f"add checkout photos for item {item_id}")
    return "Insufficient evidence: " + "; ".join(actions)


def reconcile_context(context: CaseContext, ledger: EvidenceLedger, case_id: str,
                      user_query: str) -> CaseContext:
    """Overwrite what the model guessed about the evidence with what the ledger knows.

    Photo lists, counts, missing flags and completeness come from the ledger
    for every known item; known items the model left out are appended.
    """
    known = ledger.item_ids()
    gaps = dict(ledger.missing_documentation_report())
    by_id = {item.item_id: item for item in context.evidence_items}
    items = []

    for item_id in known:
        base = by_id.pop(item_id, None) or EvidenceItemContext(
            item_id=item_id,
            item_name=ledger.item_name(item_id),
            description=(ledger.item(item_id).description or "") if ledger.item(item_id) else "",
            priority=ledger.item(item_id).priority if ledger.item(item_id) else "medium",
        )
        intake = ledger.record(item_id, "intake")
        checkout = ledger.record(item_id, "checkout")
        intake_refs = list(intake.photo_refs) if intake else []
        checkout_refs = list(checkout.photo_refs) if checkout else []
        latest = ledger.latest_analysis(item_id)
        items.append(base.model_copy(update={
            "item_name": base.item_name or ledger.item_name(item_id),
            "intake_photos": intake_refs,
            "checkout_photos": checkout_refs,
            "intake_photo_count": len(intake_refs),
            "checkout_photo_count": len(checkout_refs),
            "missing_photos": MissingPhotos(intake_missing=not intake_refs,
                                            checkout_missing=not checkout_refs,
                                            details=gaps.get(item_id, "")),
            "documentation_completeness": ledger.completeness_of(item_id),
            "intake_timestamp": intake.captured_at.isoformat() if intake else None,
            "checkout_timestamp": checkout.captured_at.isoformat() if checkout else None,
            "damage_analysis": latest.to_document() if latest else base.damage_analysis,
        }))

    # Items only the model knows about are kept as-is
    items.extend(by_id.values())
    return context.model_copy(update={
        "case_id": context.case_id or case_id,
        "user_query": context.user_query or user_query,
        "evidence_items": items,
    })


def report_excerpt(markdown: str, limit: int = 150) -> str:
    """First prose line of the report, stripped of markdown, for placeholder summaries."""
    for line in markdown.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or set(stripped) <= set("-|: "):
            continue
        text = " ".join(_MARKDOWN_NOISE_RE.sub("", stripped).split())
        if text:
            return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."
    return "Automated evaluation unavailable; review the defense report."


def neutral_evaluation(report: DefenseReport, ledger: EvidenceLedger) -> CaseEvaluation:
    gaps = tuple(ledger.gaps())
    recommendations = ["Review the defense report with a tenant association before responding."]
    if gaps:
        recommendations.insert(0, build_remediation(ledger))
    return CaseEvaluation(
        win_probability=None,
        confidence="low",
        summary=report_excerpt(report.markdown),
        case_strength=None,
        gaps=gaps,
        recommendations=tuple(recommendations),
        is_placeholder=True,
    )


# ═══════════════════════════════════════════════════════════════════
# Pipeline
# ═══════════════════════════════════════════════════════════════════

class DefensePipeline:
    """Runs Context -> Report -> Evaluation for one claim.

    The pipeline object holds only injected collaborators; each ``run`` gets
    its own state machine, so concurrent runs do not share state.
    """

    def __init__(self, gateway: ModelGateway, composer: PromptComposer,
                 logger: logging.Logger | None = None):
        self.gateway = gateway
        self.composer = composer
        self.logger = logger or logging.getLogger(__name__)

    def _abort(self, run: DefenseRun, stage: Stage, reason: str, ledger: EvidenceLedger) -> DefenseRun:
        run.failure = StageFailure(stage, reason, remediation=build_remediation(ledger))
        run.context = None
        run.report = None
        run.evaluation = None
        run.advance(PipelineState.ABORTED)
        self.logger.error(f"[{run.case_id}] {run.failure.message}")
        return run

    async def run(
        self,
        lease: dict,
        ledger: EvidenceLedger,
        user_query: str,
        jurisdiction: str | None = None,
        tenant: dict | None = None,
        lease_id: str = "",
        on_progress: LLMProgressCallback | None = None,
    ) -> DefenseRun:
        cb = on_progress or _noop_cb
        case_id = f"CASE-{int(time.time() * 1000)}"
        run = DefenseRun(case_id=case_id, user_query=user_query, lease_id=lease_id or ledger.lease_id)

        # ── Stage 1: Context ──
        run.advance(PipelineState.CONTEXT)
        await cb("defense", "Stage 1/3: Extracting case context...", {"type": "stage_start", "stage": "Context"})
        t0 = time.time()
        prompt = self.composer.compose_context(lease, ledger, user_query, jurisdiction, tenant, case_id)
        result = await self.gateway.complete(prompt, on_progress=cb)
        if result.used_fallback:
            return self._abort(run, Stage.CONTEXT, f"model service unavailable ({result.error_type})", ledger)
        outcome = validate_output(result.text, CaseContext, label="Context")
        if not outcome.ok:
            return self._abort(run, Stage.CONTEXT, outcome.failure.reason, ledger)
        run.context = reconcile_context(outcome.value, ledger, case_id, user_query)
        run.stage_timings["Context"] = round(time.time() - t0, 2)
        self.logger.info(f"[{case_id}] Context: {len(run.context.evidence_items)} evidence item(s), "
                         f"{len(run.context.legal_references)} legal reference(s)")

        # ── Stage 2: Report ──
        run.advance(PipelineState.REPORT)
        photo_refs = ledger.all_photo_refs()
        await cb("defense", f"Stage 2/3: Writing defense report ({len(photo_refs)} photo(s))...",
                 {"type": "stage_start", "stage": "Report", "photos": len(photo_refs)})
        t0 = time.time()
        prompt = self.composer.compose_report(run.context, ledger, lease, jurisdiction, tenant)
        result = await self.gateway.complete(prompt, on_progress=cb)
        if result.used_fallback:
            return self._abort(run, Stage.REPORT, f"model service unavailable ({result.error_type})", ledger)
        checked = validate_report_markdown(result.text, self.composer.catalogue.report_sections,
                                           known_refs=photo_refs)
        if not checked.ok:
            return self._abort(run, Stage.REPORT, checked.failure.reason, ledger)
        run.report = build_report(checked.value, photo_refs)
        run.stage_timings["Report"] = round(time.time() - t0, 2)

        # ── Stage 3: Evaluation (non-fatal) ──
        run.advance(PipelineState.EVALUATION)
        await cb("defense", "Stage 3/3: Evaluating case strength...", {"type": "stage_start", "stage": "Evaluation"})
        t0 = time.time()
        run.evaluation = await self._evaluate(run, ledger, cb)
        run.stage_timings["Evaluation"] = round(time.time() - t0, 2)

        run.advance(PipelineState.DONE)
        await cb("defense", "Defense complete", {
            "type": "complete",
            "case_id": case_id,
            "win_probability": run.evaluation.win_probability,
            "placeholder": run.evaluation.is_placeholder,
        })
        self.logger.info(f"[{case_id}] Defense complete in {sum(run.stage_timings.values()):.1f}s "
                         f"(win probability: {run.evaluation.win_probability})")
        return run

    async def _evaluate(self, run: DefenseRun, ledger: EvidenceLedger, cb) -> CaseEvaluation:
        prompt = self.composer.compose_evaluation(run.report.markdown)
        result = await self.gateway.complete(prompt, on_progress=cb)
        reason = None
        if result.used_fallback:
            reason = f"model service unavailable ({result.error_type})"
        else:
            outcome = validate_output(result.text, CaseEvaluation, label="Evaluation")
            if not outcome.ok:
                reason = outcome.failure.reason
            elif outcome.value.win_probability is None:
                reason = "evaluation has no usable win probability"
            else:
                evaluation = outcome.value
                if not evaluation.gaps:
                    evaluation = evaluation.model_copy(update={"gaps": tuple(ledger.gaps())})
                return evaluation

        self.logger.warning(f"[{run.case_id}] {StageFailure(Stage.EVALUATION, reason).message}; "
                            "returning neutral evaluation")
        return neutral_evaluation(run.report, ledger)


def persist_run(store: DocumentStore, lease_id: str, run: DefenseRun) -> bool:
    """Write a completed run under ``defense/<lease_id>``; aborted runs are not stored."""
    if not run.succeeded:
        logger.info(f"[{run.case_id}] Run not completed; nothing persisted")
        return False
    LeaseRepository(store).save_run(lease_id, run.to_document())
    return True
