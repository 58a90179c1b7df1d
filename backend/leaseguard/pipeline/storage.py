"""Document persistence for leases, evidence records and completed defense runs.

Documents are keyed by (lease_id, key) and overwritten last-write-wins.  No
store accepts a document containing ``None``; optional fields must be left
out rather than written as null.
"""

import copy
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

from leaseguard.config import STORE_DIR
from leaseguard.pipeline.evidence_ledger import EvidenceLedger
from leaseguard.pipeline.schemas import InspectionItem, LeaseAnalysis

logger = logging.getLogger(__name__)

_LEASE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

INTAKE_PREFIX = "intakeEvidence."
CHECKOUT_PREFIX = "checkoutEvidence."


def lease_key(lease_id: str) -> str:
    return f"lease/{lease_id}"


def defense_key(lease_id: str) -> str:
    return f"defense/{lease_id}"


def check_lease_id(lease_id: str) -> str:
    if not isinstance(lease_id, str) or not _LEASE_ID_RE.match(lease_id):
        raise ValueError(f"Invalid lease id: {lease_id!r}")
    return lease_id


def ensure_no_none(value: Any, path: str = "$") -> None:
    """Raise ValueError if any value in the document tree is None."""
    if value is None:
        raise ValueError(f"Document contains a null value at {path}")
    if isinstance(value, dict):
        for k, v in value.items():
            ensure_no_none(v, f"{path}.{k}")
    elif isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            ensure_no_none(v, f"{path}[{i}]")


def prune_none(value: Any) -> Any:
    """Copy of *value* with None entries dropped from dicts and lists."""
    if isinstance(value, dict):
        return {k: prune_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [prune_none(v) for v in value if v is not None]
    return value


class DocumentStore(Protocol):
    def put(self, lease_id: str, key: str, document: dict) -> None: ...

    def get(self, lease_id: str, key: str) -> dict | None: ...

    def list(self, lease_id: str, prefix: str = "") -> dict[str, dict]: ...

    def delete(self, lease_id: str, key: str) -> bool: ...


class InMemoryDocumentStore:
    """Process-local store, used by tests and the offline CLI."""

    def __init__(self):
        self._docs: dict[tuple[str, str], dict] = {}
        self._lock = threading.Lock()

    def put(self, lease_id: str, key: str, document: dict) -> None:
        check_lease_id(lease_id)
        ensure_no_none(document)
        with self._lock:
            self._docs[(lease_id, key)] = copy.deepcopy(document)

    def get(self, lease_id: str, key: str) -> dict | None:
        with self._lock:
            doc = self._docs.get((lease_id, key))
        return copy.deepcopy(doc) if doc is not None else None

    def list(self, lease_id: str, prefix: str = "") -> dict[str, dict]:
        with self._lock:
            return {k: copy.deepcopy(v) for (lid, k), v in sorted(self._docs.items())
                    if lid == lease_id and k.startswith(prefix)}

    def delete(self, lease_id: str, key: str) -> bool:
        with self._lock:
            return self._docs.pop((lease_id, key), None) is not None


class JsonFileDocumentStore:
    """One JSON file per document under ``<root>/<lease_id>/``, written atomically."""

    def __init__(self, root: Path | str = STORE_DIR):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _lease_dir(self, lease_id: str) -> Path:
        return self.root / check_lease_id(lease_id)

    def _path(self, lease_id: str, key: str) -> Path:
        return self._lease_dir(lease_id) / f"{quote(key, safe='')}.json"

    def put(self, lease_id: str, key: str, document: dict) -> None:
        ensure_no_none(document)
        directory = self._lease_dir(lease_id)
        directory.mkdir(parents=True, exist_ok=True)
        target = self._path(lease_id, key)
        data = json.dumps(document, indent=2, ensure_ascii=False)
        with self._lock:
            # Temp file in the same directory so os.replace() stays on one device
            fd, tmp_path = tempfile.mkstemp(dir=str(directory), suffix=".tmp", prefix="doc_")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                    tmp.write(data)
                os.replace(tmp_path, str(target))
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        logger.debug(f"Stored {lease_id}/{key} ({len(data):,} bytes)")

    def get(self, lease_id: str, key: str) -> dict | None:
        path = self._path(lease_id, key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def list(self, lease_id: str, prefix: str = "") -> dict[str, dict]:
        directory = self._lease_dir(lease_id)
        if not directory.exists():
            return {}
        docs = {}
        for path in sorted(directory.glob("*.json")):
            key = unquote(path.stem)
            if key.startswith(prefix):
                with open(path, "r", encoding="utf-8") as f:
                    docs[key] = json.load(f)
        return docs

    def delete(self, lease_id: str, key: str) -> bool:
        path = self._path(lease_id, key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False


class LeaseRepository:
    """Maps leases, ledgers and defense runs onto store keys."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # ── Lease ──

    def save_lease(self, lease_id: str, lease: dict, analysis: LeaseAnalysis | None = None) -> None:
        document = {"lease": prune_none(lease)}
        if analysis is not None:
            document["analysis"] = analysis.to_document()
        self.store.put(lease_id, lease_key(lease_id), document)

    def load_lease(self, lease_id: str) -> dict | None:
        """The stored lease data, or None if the lease is unknown."""
        doc = self.store.get(lease_id, lease_key(lease_id))
        return doc.get("lease") if doc else None

    def load_analysis(self, lease_id: str) -> LeaseAnalysis | None:
        doc = self.store.get(lease_id, lease_key(lease_id))
        if not doc or "analysis" not in doc:
            return None
        return LeaseAnalysis.model_validate(doc["analysis"])

    # ── Evidence ──

    def save_ledger(self, ledger: EvidenceLedger) -> int:
        documents = ledger.to_documents()
        for key, document in documents.items():
            self.store.put(ledger.lease_id, key, document)
        return len(documents)

    def save_record(self, ledger: EvidenceLedger, item_id: str, phase: str) -> None:
        record = ledger.record(item_id, phase)
        if record is not None:
            self.store.put(ledger.lease_id, f"{phase}Evidence.{item_id}", record.to_dict())

    def load_ledger(self, lease_id: str, items: list[InspectionItem] | None = None,
                    logger: logging.Logger | None = None) -> EvidenceLedger:
        if items is None:
            analysis = self.load_analysis(lease_id)
            items = analysis.inspection_items if analysis else []
        documents = {
            **self.store.list(lease_id, INTAKE_PREFIX),
            **self.store.list(lease_id, CHECKOUT_PREFIX),
        }
        return EvidenceLedger.from_documents(lease_id, items, documents, logger=logger)

    # ── Defense runs ──

    def save_run(self, lease_id: str, document: dict) -> None:
        self.store.put(lease_id, defense_key(lease_id), prune_none(document))

    def load_run(self, lease_id: str) -> dict | None:
        return self.store.get(lease_id, defense_key(lease_id))
