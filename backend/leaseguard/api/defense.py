"""Lease, evidence and defense endpoints."""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from leaseguard.pipeline.citations import GatewayCitationLookup
from leaseguard.pipeline.damage import DamageComparisonEngine, skipped_match
from leaseguard.pipeline.errors import LeaseGuardError, ValidationError
from leaseguard.pipeline.evidence_ledger import EvidenceLedger
from leaseguard.pipeline.lease_analysis import analyze_lease, stream_answer, validate_jurisdiction
from leaseguard.pipeline.llm_client import GatewaySettings, ModelGateway
from leaseguard.pipeline.orchestrator import DefensePipeline, persist_run
from leaseguard.pipeline.prompts import LegalCatalogue, PromptComposer
from leaseguard.pipeline.storage import DocumentStore, JsonFileDocumentStore, LeaseRepository

router = APIRouter()
citations_router = APIRouter()
logger = logging.getLogger(__name__)


# ── Services ──

@dataclass
class Services:
    """Collaborators shared by every request, built once at startup."""

    gateway: ModelGateway
    composer: PromptComposer
    engine: DamageComparisonEngine
    pipeline: DefensePipeline
    repository: LeaseRepository
    citations: GatewayCitationLookup
    _ledgers: dict[str, EvidenceLedger] = field(default_factory=dict)
    _ledger_lock: threading.Lock = field(default_factory=threading.Lock)

    def ledger_for(self, lease_id: str) -> EvidenceLedger:
        """The lease's ledger, loaded from the store once and kept in memory."""
        with self._ledger_lock:
            ledger = self._ledgers.get(lease_id)
            if ledger is None:
                ledger = self.repository.load_ledger(lease_id)
                self._ledgers[lease_id] = ledger
            return ledger

    def forget_ledger(self, lease_id: str) -> None:
        with self._ledger_lock:
            self._ledgers.pop(lease_id, None)


def build_services(
    settings: GatewaySettings | None = None,
    store: DocumentStore | None = None,
    gateway: ModelGateway | None = None,
) -> Services:
    catalogue = LegalCatalogue.load()
    composer = PromptComposer(catalogue)
    gateway = gateway or ModelGateway(settings or GatewaySettings.from_env())
    return Services(
        gateway=gateway,
        composer=composer,
        engine=DamageComparisonEngine(gateway, composer),
        pipeline=DefensePipeline(gateway, composer),
        repository=LeaseRepository(store or JsonFileDocumentStore()),
        citations=GatewayCitationLookup(gateway, composer),
    )


def _services(request: Request) -> Services:
    return request.app.state.services


def _require_lease(services: Services, lease_id: str) -> dict:
    try:
        lease = services.repository.load_lease(lease_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if lease is None:
        raise HTTPException(status_code=404, detail="Lease not found")
    return lease


def _bad_request(e: LeaseGuardError) -> HTTPException:
    return HTTPException(status_code=400, detail=e.to_dict())


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


# ── Request models ──

class CreateLeaseRequest(BaseModel):
    document_text: str = Field(min_length=1)
    jurisdiction: str | None = None
    lease_id: str | None = None
    lease: dict = {}
    tenant: dict | None = None


class RecordEvidenceRequest(BaseModel):
    item_id: str
    phase: str
    photo_refs: list[str]
    notes: str | None = None


class QuickMatchRequest(BaseModel):
    item_id: str
    after_ref: str
    before_ref: str | None = None


class CompareRequest(BaseModel):
    item_ids: list[str] | None = None
    deterioration: bool = False


class DefenseRequest(BaseModel):
    query: str = Field(min_length=1)
    jurisdiction: str | None = None
    tenant: dict | None = None


class QuestionRequest(BaseModel):
    question: str = Field(min_length=1)


class ExplainRequest(BaseModel):
    article: str = Field(min_length=1)


# ── Leases ──

@router.post("")
async def create_lease(body: CreateLeaseRequest, request: Request):
    """Analyse a lease document and register its inspection checklist."""
    services = _services(request)
    try:
        jurisdiction = validate_jurisdiction(body.jurisdiction)
        analysis = await analyze_lease(services.gateway, services.composer, body.document_text,
                                       jurisdiction, body.tenant)
    except ValidationError as e:
        raise _bad_request(e)

    lease_id = body.lease_id or uuid.uuid4().hex[:12]
    lease = {
        **body.lease,
        "jurisdiction": jurisdiction,
        "assetType": analysis.asset_type,
        "assetName": body.lease.get("assetName") or analysis.asset_name,
        "riskScore": analysis.risk_score,
    }
    try:
        services.repository.save_lease(lease_id, lease, analysis)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    services.forget_ledger(lease_id)
    logger.info(f"Lease {lease_id} created ({len(analysis.inspection_items)} inspection items, "
                f"fallback={analysis.is_fallback})")
    return {"leaseId": lease_id, "lease": lease, "analysis": analysis.to_document()}


@router.get("/{lease_id}")
async def get_lease(lease_id: str, request: Request):
    services = _services(request)
    lease = _require_lease(services, lease_id)
    ledger = services.ledger_for(lease_id)
    analysis = services.repository.load_analysis(lease_id)
    return {
        "leaseId": lease_id,
        "lease": lease,
        "analysis": analysis.to_document() if analysis else None,
        "evidence": ledger.snapshot(),
    }


# ── Evidence ──

@router.post("/{lease_id}/evidence")
async def record_evidence(lease_id: str, body: RecordEvidenceRequest, request: Request):
    services = _services(request)
    _require_lease(services, lease_id)
    ledger = services.ledger_for(lease_id)
    try:
        record = ledger.record_evidence(body.item_id, body.phase, body.photo_refs, body.notes)
    except ValidationError as e:
        raise _bad_request(e)
    services.repository.save_record(ledger, body.item_id, body.phase)
    return {
        "record": record.to_dict(),
        "completeness": ledger.completeness_of(body.item_id),
    }


@router.get("/{lease_id}/gaps")
async def evidence_gaps(lease_id: str, request: Request):
    services = _services(request)
    _require_lease(services, lease_id)
    ledger = services.ledger_for(lease_id)
    return {
        "completeness": {item_id: ledger.completeness_of(item_id) for item_id in ledger.item_ids()},
        "gaps": [gap.to_document() for gap in ledger.gaps()],
    }


@router.post("/{lease_id}/quick-match")
async def quick_match(lease_id: str, body: QuickMatchRequest, request: Request):
    """Check a checkout photo against the intake reference before it is committed."""
    services = _services(request)
    _require_lease(services, lease_id)
    ledger = services.ledger_for(lease_id)
    before_ref = body.before_ref
    if before_ref is None:
        intake = ledger.record(body.item_id, "intake")
        before_ref = intake.photo_refs[0] if intake and intake.photo_refs else None
    if before_ref is None:
        return skipped_match().to_document()
    match = await services.engine.quick_match(ledger.item_name(body.item_id), before_ref, body.after_ref)
    return match.to_document()


@router.post("/{lease_id}/compare")
async def compare_items(lease_id: str, body: CompareRequest, request: Request):
    services = _services(request)
    _require_lease(services, lease_id)
    ledger = services.ledger_for(lease_id)
    try:
        results = await services.engine.compare_items(ledger, body.item_ids, body.deterioration)
    except ValidationError as e:
        raise _bad_request(e)
    services.repository.save_ledger(ledger)
    return {"analyses": {item_id: a.to_document() for item_id, a in results.items()}}


# ── Defense ──

@router.post("/{lease_id}/defense")
async def run_defense(lease_id: str, body: DefenseRequest, request: Request):
    """Run Context -> Report -> Evaluation; 422 names the stage that aborted."""
    services = _services(request)
    lease = _require_lease(services, lease_id)
    ledger = services.ledger_for(lease_id)
    try:
        jurisdiction = validate_jurisdiction(body.jurisdiction or lease.get("jurisdiction"))
    except ValidationError as e:
        raise _bad_request(e)

    run = await services.pipeline.run(lease, ledger, body.query, jurisdiction, body.tenant, lease_id)
    if not run.succeeded:
        raise HTTPException(status_code=422, detail=run.failure.to_dict())
    persist_run(services.repository.store, lease_id, run)
    return run.to_response()


@router.get("/{lease_id}/defense")
async def get_defense(lease_id: str, request: Request):
    services = _services(request)
    _require_lease(services, lease_id)
    doc = services.repository.load_run(lease_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="No defense generated for this lease yet")
    return doc


@router.post("/{lease_id}/ask")
async def ask_question(lease_id: str, body: QuestionRequest, request: Request):
    """Streaming lease Q&A.

    SSE events:
      {"token": "..."}                         content delta
      {"done": true, "content": "full text"}   completion signal
      {"error": "..."}                         failure
    """
    services = _services(request)
    lease = _require_lease(services, lease_id)
    try:
        deltas = stream_answer(services.gateway, services.composer, lease, body.question,
                               lease.get("jurisdiction"))
    except ValidationError as e:
        raise _bad_request(e)

    async def answer_stream():
        accumulated = ""
        try:
            async for delta in deltas:
                accumulated += delta
                yield _sse({"token": delta})
            yield _sse({"done": True, "content": accumulated})
        except LeaseGuardError as e:
            logger.error(f"Lease {lease_id}: question stream failed: {e.message}")
            yield _sse({"error": e.message})

    return StreamingResponse(answer_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ── Citations ──

@citations_router.post("/explain")
async def explain_citation(body: ExplainRequest, request: Request):
    services = _services(request)
    try:
        explanation = await services.citations.explain(body.article)
    except ValidationError as e:
        raise _bad_request(e)
    return {"article": body.article, "explanation": explanation}
