"""Initial contract analysis and the free-text lease assistant."""

import logging

from leaseguard.config import DEFAULT_JURISDICTION, SWISS_CANTONS
from leaseguard.pipeline.errors import ValidationError
from leaseguard.pipeline.llm_client import LLMProgressCallback, ModelGateway
from leaseguard.pipeline.prompts import PromptComposer
from leaseguard.pipeline.recovery import validate_output
from leaseguard.pipeline.schemas import LeaseAnalysis

logger = logging.getLogger(__name__)


def validate_jurisdiction(jurisdiction: str | None) -> str:
    """Return the canonical jurisdiction name; only Swiss cantons are supported."""
    if not jurisdiction or not jurisdiction.strip():
        return DEFAULT_JURISDICTION
    wanted = jurisdiction.strip().lower()
    if wanted == DEFAULT_JURISDICTION.lower():
        return DEFAULT_JURISDICTION
    for canton in SWISS_CANTONS:
        if canton.lower() == wanted:
            return canton
    raise ValidationError(
        f"Unsupported jurisdiction '{jurisdiction}' (expected a Swiss canton)",
        {"jurisdiction": jurisdiction},
    )


# Standard residential checklist used when the contract cannot be analysed
FALLBACK_INSPECTION_ITEMS = [
    {"id": "kitchen_counter", "name": "Kitchen - Countertops", "room": "Kitchen",
     "description": "Photograph countertops from multiple angles",
     "photoAngles": ["Overall view", "Close-up of any marks", "Sink area"], "recommendedPhotos": 3,
     "priority": "high", "reason": "Stains and scratches often disputed",
     "contractReference": "Damage liability clause"},
    {"id": "kitchen_appliances", "name": "Kitchen - Appliances", "room": "Kitchen",
     "description": "Document stove, oven, refrigerator condition",
     "photoAngles": ["Front view", "Interior", "Control panels"], "recommendedPhotos": 4,
     "priority": "high", "reason": "High-value items", "contractReference": "Equipment responsibility"},
    {"id": "bathroom_tiles", "name": "Bathroom - Tiles & Grout", "room": "Bathroom",
     "description": "Check tiles, grout, and caulking",
     "photoAngles": ["Wall tiles overview", "Floor tiles", "Shower area", "Grout condition"],
     "recommendedPhotos": 4, "priority": "high", "reason": "Water damage claims common",
     "contractReference": "Moisture damage clause"},
    {"id": "bathroom_fixtures", "name": "Bathroom - Fixtures", "room": "Bathroom",
     "description": "Toilet, sink, shower/tub condition",
     "photoAngles": ["Toilet", "Sink and faucet", "Shower/tub", "Drain condition"], "recommendedPhotos": 4,
     "priority": "high", "reason": "Plumbing issues often claimed", "contractReference": "Fixture maintenance"},
    {"id": "living_walls", "name": "Living Room - Walls", "room": "Living Room",
     "description": "All walls for paint, holes, marks",
     "photoAngles": ["Each wall separately", "Corners", "Any existing marks"], "recommendedPhotos": 5,
     "priority": "high", "reason": "Paint damage most disputed", "contractReference": "Wall damage liability"},
    {"id": "living_floor", "name": "Living Room - Flooring", "room": "Living Room",
     "description": "Parquet, carpet, or tile condition",
     "photoAngles": ["Overall floor", "High-traffic areas", "Corners", "Any existing damage"],
     "recommendedPhotos": 4, "priority": "high", "reason": "Wear patterns must be documented",
     "contractReference": "Normal wear and tear"},
    {"id": "bedroom_walls", "name": "Bedroom - Walls", "room": "Bedroom",
     "description": "All bedroom walls and ceiling",
     "photoAngles": ["Each wall", "Ceiling", "Window areas"], "recommendedPhotos": 4,
     "priority": "medium", "reason": "Pre-existing marks protection", "contractReference": "Damage clause"},
    {"id": "bedroom_floor", "name": "Bedroom - Flooring", "room": "Bedroom",
     "description": "Floor condition throughout",
     "photoAngles": ["Overall view", "Under bed area", "Closet floor"], "recommendedPhotos": 3,
     "priority": "medium", "reason": "Hidden damage documentation", "contractReference": "Floor maintenance"},
    {"id": "windows_doors", "name": "Windows and Doors", "room": "All Rooms",
     "description": "All windows, frames, and doors",
     "photoAngles": ["Each window exterior", "Window frames", "Each door", "Door frames and locks"],
     "recommendedPhotos": 6, "priority": "medium", "reason": "Frame and lock condition",
     "contractReference": "Fixture responsibility"},
    {"id": "entrance", "name": "Entrance Area", "room": "Entrance",
     "description": "Entry door, walls, floor",
     "photoAngles": ["Entry door both sides", "Floor mat area", "Walls"], "recommendedPhotos": 3,
     "priority": "medium", "reason": "High-traffic area", "contractReference": "Common area maintenance"},
]


def fallback_analysis(jurisdiction: str = DEFAULT_JURISDICTION) -> LeaseAnalysis:
    return LeaseAnalysis.model_validate({
        "assetType": "Property",
        "assetName": "Residential apartment",
        "riskScore": 45,
        "clauses": [
            {"section": "Term", "text": "12 Months fixed duration.", "status": "clean",
             "legalReference": "Art. 266a CO"},
            {"section": "Deposit", "text": "3 months rent deposit.", "status": "warning",
             "note": f"Standard practice in {jurisdiction}", "legalReference": "Art. 257e CO"},
            {"section": "Damage", "text": "Tenant liable for all damages.", "status": "risk",
             "note": f"Potentially unfair under {jurisdiction} law - tenant only liable for damages "
                     "beyond normal wear and tear.",
             "legalReference": "Art. 267 CO"},
        ],
        "irregularities": [
            {"issue": "Excessive damage liability clause", "severity": "moderate",
             "legalBasis": "Under Art. 267 CO, tenants are only liable for damages beyond normal wear and tear"},
        ],
        "inspectionItems": FALLBACK_INSPECTION_ITEMS,
        "benchmark": {
            "comparedToStandard": "worse",
            "keyDifferences": ["Overly broad damage liability", "No mention of normal wear and tear"],
            "tenantAdvantages": ["Standard deposit amount"],
            "tenantDisadvantages": ["Excessive damage liability", "No maintenance responsibility clarity"],
        },
        "recommendations": [
            "Request clarification on normal wear and tear definition",
            "Ensure deposit is held in blocked account",
            "Document all pre-existing conditions thoroughly",
            "Consider requesting amendment to damage clause",
        ],
        "isFallback": True,
    })


def _dedupe_items(analysis: LeaseAnalysis) -> LeaseAnalysis:
    seen = set()
    items = []
    for item in analysis.inspection_items:
        if item.id in seen:
            logger.warning(f"Dropping duplicate inspection item id '{item.id}'")
            continue
        seen.add(item.id)
        items.append(item)
    if len(items) == len(analysis.inspection_items):
        return analysis
    return analysis.model_copy(update={"inspection_items": items})


async def analyze_lease(
    gateway: ModelGateway,
    composer: PromptComposer,
    document_text: str,
    jurisdiction: str | None = None,
    tenant: dict | None = None,
    on_progress: LLMProgressCallback | None = None,
) -> LeaseAnalysis:
    """Analyse the contract text and derive its inspection checklist."""
    jurisdiction = validate_jurisdiction(jurisdiction)
    if not document_text or not document_text.strip():
        raise ValidationError("Lease document text is empty")

    prompt = composer.compose_lease_analysis(document_text, jurisdiction, tenant)
    result = await gateway.complete(prompt, on_progress=on_progress)
    if result.used_fallback:
        logger.warning(f"Lease analysis: model unavailable ({result.error_type}), using standard checklist")
        return fallback_analysis(jurisdiction)

    outcome = validate_output(result.text, LeaseAnalysis, label="Lease Analysis")
    if not outcome.ok:
        logger.warning(f"Lease analysis output unusable ({outcome.failure.reason}), using standard checklist")
        return fallback_analysis(jurisdiction)

    analysis = _dedupe_items(outcome.value)
    logger.info(
        f"Lease analysis complete: {analysis.asset_type}, risk {analysis.risk_score}, "
        f"{len(analysis.clauses)} clause(s), {len(analysis.inspection_items)} inspection item(s)"
    )
    return analysis


async def answer_question(
    gateway: ModelGateway,
    composer: PromptComposer,
    lease: dict,
    question: str,
    jurisdiction: str | None = None,
) -> str:
    """Answer a free-text question about the lease; offline this is the keyword rubric."""
    if not question or not question.strip():
        raise ValidationError("Question is empty")
    prompt = composer.compose_question(lease, question, validate_jurisdiction(jurisdiction))
    return await gateway.generate(prompt.user, prompt.system, task_label=prompt.stage)


def stream_answer(gateway: ModelGateway, composer: PromptComposer, lease: dict, question: str,
                  jurisdiction: str | None = None):
    """Streaming variant of answer_question; returns an async iterator of text deltas."""
    if not question or not question.strip():
        raise ValidationError("Question is empty")
    prompt = composer.compose_question(lease, question, validate_jurisdiction(jurisdiction))
    return gateway.stream(prompt.user, prompt.system, task_label=prompt.stage)
