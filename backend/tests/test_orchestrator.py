"""Tests for the three-stage defense pipeline."""

import json

import httpx
import pytest

from conftest import CONTEXT_JSON, EVALUATION_JSON, REPORT_MD, ScriptedModel
from leaseguard.pipeline.errors import Stage
from leaseguard.pipeline.evidence_ledger import EvidenceLedger
from leaseguard.pipeline.orchestrator import (
    DefensePipeline,
    DefenseRun,
    PipelineState,
    build_remediation,
    persist_run,
    report_excerpt,
)
from leaseguard.pipeline.storage import InMemoryDocumentStore, LeaseRepository, ensure_no_none


@pytest.fixture
def pipeline_for(make_gateway, composer):
    def _make(model, **kwargs):
        return DefensePipeline(make_gateway(model, **kwargs), composer)
    return _make


QUERY = "Landlord claims 800 CHF for the living room floor"


# ═══════════════════════════════════════════════════
# Successful runs
# ═══════════════════════════════════════════════════

class TestSuccessfulRun:

    @pytest.mark.asyncio
    async def test_three_stages_in_order(self, pipeline_for, lease, ledger):
        model = ScriptedModel(CONTEXT_JSON, REPORT_MD, EVALUATION_JSON)
        stages = []

        async def cb(stage, message, details):
            if details.get("type") == "stage_start":
                stages.append(details["stage"])

        run = await pipeline_for(model).run(lease, ledger, QUERY, "Zurich", lease_id="lease-42", on_progress=cb)

        assert run.succeeded
        assert run.state is PipelineState.DONE
        assert stages == ["Context", "Report", "Evaluation"]
        assert len(model.calls) == 3
        # Report call carries every ledger photo; evaluation sees the accepted report
        report_urls = [b["image_url"]["url"] for b in model.calls[1]["messages"][-1]["content"]
                       if b["type"] == "image_url"]
        assert report_urls == ledger.all_photo_refs()
        assert "Executive Summary" in model.user_text(2)
        assert set(run.stage_timings) == {"Context", "Report", "Evaluation"}

    @pytest.mark.asyncio
    async def test_ledger_overrides_model_evidence_claims(self, pipeline_for, lease, ledger):
        run = await pipeline_for(ScriptedModel(CONTEXT_JSON, REPORT_MD, EVALUATION_JSON)).run(
            lease, ledger, QUERY)
        items = {i.item_id: i for i in run.context.evidence_items}

        floor = items["living_floor"]
        assert floor.intake_photos == ["https://photos.test/floor-in-1.jpg", "https://photos.test/floor-in-2.jpg"]
        assert floor.concerns == ["Landlord alleges gouges"]
        assert items["kitchen_counter"].documentation_completeness == "partial"
        assert items["kitchen_counter"].missing_photos.checkout_missing is True
        # Known to the ledger but omitted by the model
        assert items["bedroom_walls"].documentation_completeness == "missing"
        assert run.context.case_id == run.case_id

    @pytest.mark.asyncio
    async def test_report_and_evaluation(self, pipeline_for, lease, ledger):
        run = await pipeline_for(ScriptedModel(CONTEXT_JSON, REPORT_MD, EVALUATION_JSON)).run(
            lease, ledger, QUERY)
        assert run.report.citations == ("Art. 267 CO",)
        assert run.evaluation.win_probability == 78
        assert run.evaluation.is_placeholder is False
        # Gaps come from the ledger when the model gives none
        assert {g.item_id for g in run.evaluation.gaps} == {"kitchen_counter", "bedroom_walls"}

    @pytest.mark.asyncio
    async def test_fenced_context_is_recovered(self, pipeline_for, lease, ledger):
        fenced = "Here is the context:\n```json\n" + CONTEXT_JSON[:-1] + ",}\n```"
        run = await pipeline_for(ScriptedModel(fenced, REPORT_MD, EVALUATION_JSON)).run(lease, ledger, QUERY)
        assert run.succeeded

    @pytest.mark.asyncio
    async def test_report_quoting_ledger_refs_verbatim_is_accepted(self, pipeline_for, lease, items):
        refs = ["https://photos.example.com/floor-in-1.jpg", "https://photos.example.com/floor-out-1.jpg"]
        ledger = EvidenceLedger("lease-42", items)
        ledger.record_evidence("living_floor", "intake", refs[:1])
        ledger.record_evidence("living_floor", "checkout", refs[1:])
        report = (REPORT_MD.replace("https://photos.test/floor-in-1.jpg", refs[0])
                  .replace("https://photos.test/floor-out-1.jpg", refs[1]))

        run = await pipeline_for(ScriptedModel(CONTEXT_JSON, report, EVALUATION_JSON)).run(lease, ledger, QUERY)

        assert run.state is PipelineState.DONE
        assert refs[0] in run.report.markdown


# ═══════════════════════════════════════════════════
# Fatal stage failures
# ═══════════════════════════════════════════════════

class TestAbortedRun:

    @pytest.mark.asyncio
    async def test_context_network_failure_aborts(self, pipeline_for, lease, ledger):
        model = ScriptedModel(httpx.ConnectError("connection refused"))
        run = await pipeline_for(model).run(lease, ledger, QUERY)

        assert not run.succeeded
        assert run.state is PipelineState.ABORTED
        assert run.failure.stage is Stage.CONTEXT
        assert run.failure.fatal
        assert run.failure.message.startswith("Cannot generate defense (Context stage failed)")
        assert run.report is None and run.evaluation is None and run.context is None
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_offline_gateway_never_reaches_report(self, pipeline_for, lease, ledger):
        model = ScriptedModel()
        run = await pipeline_for(model, api_key="").run(lease, ledger, QUERY)
        assert run.failure.stage is Stage.CONTEXT
        assert "auth" in run.failure.reason
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_unparseable_context_aborts(self, pipeline_for, lease, ledger):
        run = await pipeline_for(ScriptedModel("I could not find any evidence.")).run(lease, ledger, QUERY)
        assert run.failure.stage is Stage.CONTEXT

    @pytest.mark.asyncio
    async def test_invalid_report_aborts_without_evaluation(self, pipeline_for, lease, ledger):
        model = ScriptedModel(CONTEXT_JSON, "Sorry, here is a short note instead of a report.")
        run = await pipeline_for(model).run(lease, ledger, QUERY)
        assert run.failure.stage is Stage.REPORT
        assert run.context is None
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_remediation_names_missing_photos(self, pipeline_for, lease, ledger):
        run = await pipeline_for(ScriptedModel(500)).run(lease, ledger, QUERY)
        assert "add checkout photos for item kitchen_counter" in run.failure.remediation
        assert "add intake and checkout photos for item bedroom_walls" in run.failure.remediation
        response = run.to_response()
        assert response["status"] == "aborted"
        assert response["error"]["stage"] == "Context"
        assert set(response["error"]) == {"error_type", "message", "recoverable", "stage", "reason", "remediation"}


# ═══════════════════════════════════════════════════
# Non-fatal evaluation failures
# ═══════════════════════════════════════════════════

class TestEvaluationFallback:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("evaluation", [
        "The case looks decent overall.",
        json.dumps({"confidence": "high", "summary": "no probability"}),
        503,
    ])
    async def test_neutral_evaluation_keeps_report(self, pipeline_for, lease, ledger, evaluation):
        run = await pipeline_for(ScriptedModel(CONTEXT_JSON, REPORT_MD, evaluation)).run(lease, ledger, QUERY)
        assert run.succeeded
        assert run.report is not None
        assert run.evaluation.confidence == "low"
        assert run.evaluation.is_placeholder is True
        assert run.evaluation.win_probability is None
        assert run.evaluation.summary.startswith("The marks on the floor")
        assert run.evaluation.gaps


# ═══════════════════════════════════════════════════
# State machine and helpers
# ═══════════════════════════════════════════════════

class TestDefenseRun:

    def test_illegal_transition(self):
        run = DefenseRun(case_id="CASE-1", user_query="q")
        with pytest.raises(RuntimeError):
            run.advance(PipelineState.REPORT)

    def test_terminal_states_are_final(self):
        run = DefenseRun(case_id="CASE-1", user_query="q")
        run.advance(PipelineState.CONTEXT)
        run.advance(PipelineState.ABORTED)
        assert run.finished_at is not None
        with pytest.raises(RuntimeError):
            run.advance(PipelineState.REPORT)

    def test_incomplete_run_not_serializable(self):
        with pytest.raises(ValueError):
            DefenseRun(case_id="CASE-1", user_query="q").to_document()

    def test_report_excerpt(self):
        assert report_excerpt("# Title\n\n**Bold** claim here.") == "Bold claim here."
        assert len(report_excerpt("# T\n" + "word " * 100)) <= 150

    def test_remediation_when_complete(self, items):
        ledger = EvidenceLedger("l1", items[:1])
        ledger.record_evidence("living_floor", "intake", ["https://p/1.jpg"])
        ledger.record_evidence("living_floor", "checkout", ["https://p/2.jpg"])
        assert build_remediation(ledger).startswith("Evidence is complete")


class TestPersistRun:

    @pytest.mark.asyncio
    async def test_completed_run_persisted_without_nulls(self, pipeline_for, lease, ledger):
        run = await pipeline_for(ScriptedModel(CONTEXT_JSON, REPORT_MD, "not json")).run(lease, ledger, QUERY)
        store = InMemoryDocumentStore()
        assert persist_run(store, "lease-42", run) is True
        doc = LeaseRepository(store).load_run("lease-42")
        ensure_no_none(doc)
        assert doc["evaluation"]["isPlaceholder"] is True
        assert "winProbability" not in doc["evaluation"]

    @pytest.mark.asyncio
    async def test_aborted_run_not_persisted(self, pipeline_for, lease, ledger):
        run = await pipeline_for(ScriptedModel(500)).run(lease, ledger, QUERY)
        store = InMemoryDocumentStore()
        assert persist_run(store, "lease-42", run) is False
        assert store.list("lease-42") == {}
