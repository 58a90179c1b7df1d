"""Tests for document stores and the lease repository."""

import pytest

from leaseguard.pipeline.lease_analysis import fallback_analysis
from leaseguard.pipeline.storage import (
    InMemoryDocumentStore,
    JsonFileDocumentStore,
    LeaseRepository,
    check_lease_id,
    ensure_no_none,
    prune_none,
)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return JsonFileDocumentStore(tmp_path / "store")


# ═══════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════

class TestHelpers:

    def test_ensure_no_none_reports_path(self):
        with pytest.raises(ValueError, match=r"\$\.a\[1\]\.b"):
            ensure_no_none({"a": [{}, {"b": None}]})

    def test_prune_none(self):
        assert prune_none({"a": None, "b": [1, None, {"c": None}]}) == {"b": [1, {}]}

    @pytest.mark.parametrize("lease_id", ["", "../etc", "a b", "/abs"])
    def test_invalid_lease_ids(self, lease_id):
        with pytest.raises(ValueError):
            check_lease_id(lease_id)

    def test_valid_lease_id(self):
        assert check_lease_id("lease-42_v1.0") == "lease-42_v1.0"


# ═══════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════

class TestDocumentStore:

    def test_put_get_overwrite(self, store):
        store.put("lease-1", "lease/lease-1", {"v": 1})
        store.put("lease-1", "lease/lease-1", {"v": 2})
        assert store.get("lease-1", "lease/lease-1") == {"v": 2}

    def test_missing_document(self, store):
        assert store.get("lease-1", "nothing") is None

    def test_none_rejected(self, store):
        with pytest.raises(ValueError):
            store.put("lease-1", "k", {"notes": None})
        assert store.get("lease-1", "k") is None

    def test_list_by_prefix(self, store):
        store.put("lease-1", "intakeEvidence.floor", {"n": 1})
        store.put("lease-1", "checkoutEvidence.floor", {"n": 2})
        store.put("lease-2", "intakeEvidence.floor", {"n": 3})
        assert store.list("lease-1", "intakeEvidence.") == {"intakeEvidence.floor": {"n": 1}}
        assert len(store.list("lease-1")) == 2

    def test_delete(self, store):
        store.put("lease-1", "k", {"n": 1})
        assert store.delete("lease-1", "k") is True
        assert store.delete("lease-1", "k") is False

    def test_returned_documents_are_copies(self, store):
        store.put("lease-1", "k", {"n": [1]})
        store.get("lease-1", "k")["n"].append(2)
        assert store.get("lease-1", "k") == {"n": [1]}


class TestJsonFileStore:

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileDocumentStore(tmp_path)
        store.put("lease-1", "defense/lease-1", {"ok": True})
        files = [p.name for p in (tmp_path / "lease-1").iterdir()]
        assert files == ["defense%2Flease-1.json"]

    def test_invalid_lease_id_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            JsonFileDocumentStore(tmp_path).put("../x", "k", {})


# ═══════════════════════════════════════════════════
# Repository
# ═══════════════════════════════════════════════════

class TestLeaseRepository:

    def test_lease_and_analysis_round_trip(self, store):
        repo = LeaseRepository(store)
        repo.save_lease("lease-1", {"assetName": "Flat", "endDate": None}, fallback_analysis())
        assert repo.load_lease("lease-1") == {"assetName": "Flat"}
        analysis = repo.load_analysis("lease-1")
        assert analysis.is_fallback is True
        assert len(analysis.inspection_items) == 10

    def test_unknown_lease(self, store):
        repo = LeaseRepository(store)
        assert repo.load_lease("lease-9") is None
        assert repo.load_analysis("lease-9") is None

    def test_ledger_round_trip_uses_stored_items(self, store):
        repo = LeaseRepository(store)
        repo.save_lease("lease-1", {"assetName": "Flat"}, fallback_analysis())
        ledger = repo.load_ledger("lease-1")
        ledger.record_evidence("living_floor", "intake", ["https://p/1.jpg"])
        repo.save_record(ledger, "living_floor", "intake")

        restored = repo.load_ledger("lease-1")
        assert restored.completeness_of("living_floor") == "partial"
        assert restored.record("living_floor", "intake").photo_refs == ("https://p/1.jpg",)
        assert len(restored.items) == 10

    def test_save_ledger_writes_one_document_per_record(self, store, ledger):
        repo = LeaseRepository(store)
        assert repo.save_ledger(ledger) == 3
        assert set(store.list("lease-42", "checkoutEvidence.")) == {"checkoutEvidence.living_floor"}
