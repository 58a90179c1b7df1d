"""Tests for the run_defense command-line tool."""

import pytest

from conftest import CONTEXT_JSON, EVALUATION_JSON, REPORT_MD, ScriptedModel
from leaseguard.pipeline.storage import JsonFileDocumentStore, LeaseRepository
from run_defense import build_ledger, run_defense


@pytest.fixture
def case(items):
    return {
        "leaseId": "lease-42",
        "jurisdiction": "Zurich",
        "lease": {"assetName": "3.5-room apartment", "startDate": "2024-03-01"},
        "items": [item.to_document() for item in items],
        "evidence": [
            {"itemId": "living_floor", "phase": "checkout",
             "photoRefs": ["https://photos.test/floor-out-1.jpg"], "capturedAt": "2025-03-01T09:00:00Z"},
            {"itemId": "living_floor", "phase": "intake",
             "photoRefs": ["https://photos.test/floor-in-1.jpg"], "capturedAt": "2024-03-01T09:00:00Z"},
        ],
    }


class TestBuildLedger:

    def test_evidence_replayed_oldest_first(self, case):
        ledger = build_ledger(case)
        assert ledger.completeness_of("living_floor") == "complete"
        assert ledger.completeness_of("kitchen_counter") == "missing"


class TestRunDefense:

    @pytest.mark.asyncio
    async def test_store_dir_keeps_completed_defense(self, case, make_gateway, tmp_path, capsys):
        model = ScriptedModel(CONTEXT_JSON, REPORT_MD, EVALUATION_JSON)
        code = await run_defense(case, "Landlord claims 800 CHF", store_dir=str(tmp_path),
                                 gateway=make_gateway(model))
        assert code == 0
        doc = LeaseRepository(JsonFileDocumentStore(tmp_path)).load_run("lease-42")
        assert doc["evaluation"]["winProbability"] == 78
        assert "Defense saved under" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_nothing_written_without_store_dir(self, case, make_gateway, tmp_path):
        model = ScriptedModel(CONTEXT_JSON, REPORT_MD, EVALUATION_JSON)
        assert await run_defense(case, "q", gateway=make_gateway(model)) == 0
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_aborted_run_not_stored(self, case, make_gateway, tmp_path):
        code = await run_defense(case, "q", store_dir=str(tmp_path),
                                 gateway=make_gateway(ScriptedModel(), api_key=""))
        assert code == 2
        assert not (tmp_path / "lease-42").exists()
