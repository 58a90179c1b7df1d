"""Shared fixtures for the LeaseGuard test suite.

The model service is simulated with ``httpx.MockTransport``; no test touches
the network.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from leaseguard.pipeline.evidence_ledger import EvidenceLedger
from leaseguard.pipeline.llm_client import (
    FallbackPolicy,
    GatewaySettings,
    ModelGateway,
    OfflineFallback,
)
from leaseguard.pipeline.prompts import LegalCatalogue, PromptComposer
from leaseguard.pipeline.schemas import InspectionItem

BASE_URL = "https://llm.test/v1"
T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════
# Model service simulation
# ═══════════════════════════════════════════════════

def chat_response(content: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"total_tokens": 42},
    })


def sse_body(deltas: list[str], done: bool = True) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': d}}]})}" for d in deltas]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode("utf-8")


class ScriptedModel:
    """Answers chat-completion calls from a script, in order.

    Each entry is a string (200 with that content), an int (bare status code),
    an ``httpx.Response`` or an exception instance to raise.  Every request
    body is recorded in ``calls``.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.calls.append(body)
        if not self.script:
            raise AssertionError(f"Unexpected model call #{len(self.calls)}")
        entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, httpx.Response):
            return entry
        if isinstance(entry, int):
            return httpx.Response(entry, json={"error": "scripted"})
        return chat_response(entry)

    def user_text(self, index: int) -> str:
        content = self.calls[index]["messages"][-1]["content"]
        if isinstance(content, str):
            return content
        return " ".join(b.get("text", "") for b in content if b.get("type") == "text")


# ═══════════════════════════════════════════════════
# Collaborators
# ═══════════════════════════════════════════════════

@pytest.fixture(scope="session")
def catalogue():
    return LegalCatalogue.load()


@pytest.fixture
def composer(catalogue):
    return PromptComposer(catalogue)


@pytest.fixture
def settings():
    return GatewaySettings(api_key="test-key", base_url=BASE_URL, fallback_cooldown=30)


@pytest.fixture
def make_gateway(catalogue, settings):
    """Factory: gateway wired to a handler (usually a ScriptedModel)."""

    def _make(handler=None, api_key: str | None = None, clock=None) -> ModelGateway:
        gw_settings = settings if api_key is None else GatewaySettings(
            api_key=api_key, base_url=BASE_URL, fallback_cooldown=30)
        policy_kwargs = {"cooldown": gw_settings.fallback_cooldown}
        if clock is not None:
            policy_kwargs["clock"] = clock
        fallback = FallbackPolicy(OfflineFallback.from_catalogue(catalogue), **policy_kwargs)
        transport = httpx.MockTransport(handler) if handler is not None else None
        return ModelGateway(gw_settings, fallback=fallback, transport=transport)

    return _make


# ═══════════════════════════════════════════════════
# Evidence fixtures
# ═══════════════════════════════════════════════════

@pytest.fixture
def items():
    return [
        InspectionItem(id="living_floor", name="Living Room - Flooring", priority="high",
                       reason="Wear patterns must be documented", room="Living Room"),
        InspectionItem(id="kitchen_counter", name="Kitchen - Countertops", priority="high",
                       reason="Stains and scratches often disputed", room="Kitchen"),
        InspectionItem(id="bedroom_walls", name="Bedroom - Walls", priority="medium",
                       reason="Pre-existing marks protection", room="Bedroom"),
    ]


@pytest.fixture
def ledger(items):
    """Floor fully documented, countertop intake only, bedroom walls untouched."""
    led = EvidenceLedger("lease-42", items)
    led.record_evidence("living_floor", "intake", ["https://photos.test/floor-in-1.jpg",
                                                   "https://photos.test/floor-in-2.jpg"], captured_at=T0)
    led.record_evidence("kitchen_counter", "intake", ["https://photos.test/counter-in-1.jpg"],
                        captured_at=T0 + timedelta(minutes=5))
    led.record_evidence("living_floor", "checkout", ["https://photos.test/floor-out-1.jpg"],
                        captured_at=T0 + timedelta(days=365))
    return led


@pytest.fixture
def lease():
    return {
        "assetType": "Property",
        "assetName": "3.5-room apartment, Zurich",
        "jurisdiction": "Zurich",
        "startDate": "2024-03-01",
        "endDate": "2025-03-01",
    }


# ═══════════════════════════════════════════════════
# Stage outputs
# ═══════════════════════════════════════════════════

CONTEXT_JSON = json.dumps({
    "caseId": "",
    "userQuery": "Landlord claims 800 CHF for the living room floor",
    "leaseContext": {"assetType": "Property", "assetName": "3.5-room apartment", "riskScore": 40},
    "evidenceItems": [
        {"itemId": "living_floor", "itemName": "Living Room - Flooring",
         "intakePhotos": ["https://invented.test/x.jpg"], "documentationCompleteness": "complete",
         "relevanceToQuery": "high", "concerns": ["Landlord alleges gouges"]},
        {"itemId": "kitchen_counter", "documentationCompleteness": "complete"},
    ],
    "legalReferences": [{"article": "Art. 267 CO", "topic": "Return condition", "relevance": "core"}],
    "keyFactors": {"strengths": ["Intake photos show existing wear"]},
})

REPORT_MD = """# Defense Report: Living Room Flooring

## 1. Executive Summary
The marks on the floor are normal wear and tear under Art. 267 CO.

## 3. Evidence Analysis
Intake: ![before](https://photos.test/floor-in-1.jpg)
Checkout: ![after](https://photos.test/floor-out-1.jpg)

## 6. Defense Strategy
Ask the landlord for an itemized invoice.

## 7. Conclusion
No deduction from the deposit is justified.
"""

EVALUATION_JSON = json.dumps({
    "winProbability": 78,
    "confidence": "high",
    "summary": "Intake photos document the existing wear.",
    "caseStrength": "strong",
    "recommendations": ["Reply in writing within 30 days"],
})
