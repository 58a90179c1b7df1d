"""Evidence Ledger - canonical record of intake/checkout photos per inspection item.

Every prompt in the defense pipeline is built from this ledger:
  - Inspection items (fixed once the contract has been analysed)
  - Photo references per (item, phase), append-only
  - Capture timestamps (intake never later than checkout)
  - Damage analyses attached to the checkout record, superseded but never replaced

Appends to different (item, phase) keys run independently; appends to the
same key serialize, so call order decides which photo is the primary one.
"""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Iterator, Sequence
from datetime import datetime, timezone

from leaseguard.pipeline.errors import ValidationError
from leaseguard.pipeline.schemas import (
    PHASES,
    DamageAnalysis,
    EvidenceGap,
    InspectionItem,
    utcnow,
)

logger = logging.getLogger(__name__)

COMPLETE = "complete"
PARTIAL = "partial"
MISSING = "missing"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


class EvidenceRecord:
    """Photos captured for one inspection item in one phase."""

    def __init__(
        self,
        item_id: str,
        phase: str,
        captured_at: datetime | None = None,
        notes: str | None = None,
    ):
        self.item_id = item_id
        self.phase = phase
        self.captured_at = _as_utc(captured_at) if captured_at else utcnow()
        self.updated_at = self.captured_at
        self.notes = notes
        self._photo_refs: list[str] = []
        self._analyses: list[DamageAnalysis] = []

    @property
    def photo_refs(self) -> tuple[str, ...]:
        return tuple(self._photo_refs)

    @property
    def photo_count(self) -> int:
        return len(self._photo_refs)

    @property
    def is_gap(self) -> bool:
        return not self._photo_refs

    @property
    def analyses(self) -> tuple[DamageAnalysis, ...]:
        """All analyses, oldest first."""
        return tuple(sorted(self._analyses, key=lambda a: a.analyzed_at))

    @property
    def analysis(self) -> DamageAnalysis | None:
        """The analysis currently in effect (the most recent one)."""
        history = self.analyses
        return history[-1] if history else None

    def _append(self, photo_refs: Sequence[str], at: datetime) -> None:
        self._photo_refs.extend(photo_refs)
        self.updated_at = max(self.updated_at, at)

    def to_dict(self) -> dict:
        """Serialize for persistence; unset optionals are left out, never null."""
        data = {
            "itemId": self.item_id,
            "phase": self.phase,
            "photoRefs": list(self._photo_refs),
            "capturedAt": self.captured_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.notes:
            data["notes"] = self.notes
        if self._analyses:
            data["analyses"] = [a.to_document() for a in self.analyses]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EvidenceRecord":
        record = cls(
            item_id=data["itemId"],
            phase=data["phase"],
            captured_at=_parse_timestamp(data.get("capturedAt")),
            notes=data.get("notes"),
        )
        record._photo_refs = list(data.get("photoRefs", []))
        record.updated_at = _parse_timestamp(data.get("updatedAt")) or record.captured_at
        record._analyses = [DamageAnalysis.model_validate(a) for a in data.get("analyses", [])]
        return record

    def __repr__(self):
        return f"EvidenceRecord({self.item_id}/{self.phase}, {len(self._photo_refs)} photo(s))"


class EvidenceLedger:
    """Per-lease evidence store.

    Usage:
        ledger = EvidenceLedger("lease-42", items)
        ledger.record_evidence("kitchen_counter", "intake", ["https://.../1.jpg"])
        ledger.completeness_of("kitchen_counter")        # "partial"
        ledger.missing_documentation_report()            # [("kitchen_counter", "checkout gap: ...")]
    """

    def __init__(
        self,
        lease_id: str = "",
        items: Sequence[InspectionItem] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.lease_id = lease_id
        self.logger = logger or logging.getLogger(__name__)
        self._items: dict[str, InspectionItem] = {}
        self._records: dict[tuple[str, str], EvidenceRecord] = {}
        self._registry_lock = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._batch_locks: dict[tuple[str, str], asyncio.Lock] = {}
        if items:
            self.register_items(items)

    # ── Inspection items ──

    def register_items(self, items: Sequence[InspectionItem]) -> None:
        """Register inspection items.  Re-registering an identical item is a no-op."""
        with self._registry_lock:
            for item in items:
                existing = self._items.get(item.id)
                if existing is not None and existing != item:
                    raise ValidationError(
                        f"Inspection item '{item.id}' is already registered and cannot change",
                        {"item_id": item.id},
                    )
                self._items[item.id] = item

    @property
    def items(self) -> list[InspectionItem]:
        return list(self._items.values())

    def item(self, item_id: str) -> InspectionItem | None:
        return self._items.get(item_id)

    def item_name(self, item_id: str) -> str:
        item = self._items.get(item_id)
        return item.name if item else item_id

    def item_ids(self) -> list[str]:
        """Registered items first, then any item that only exists through evidence."""
        ids = list(self._items)
        for item_id, _phase in list(self._records):
            if item_id not in ids:
                ids.append(item_id)
        return ids

    def _require_known_item(self, item_id: str) -> None:
        if self._items and item_id not in self._items:
            raise ValidationError(f"Unknown inspection item '{item_id}'", {"item_id": item_id})

    # ── Records ──

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def record(self, item_id: str, phase: str) -> EvidenceRecord | None:
        return self._records.get((item_id, phase))

    def records(self) -> Iterator[EvidenceRecord]:
        return iter(list(self._records.values()))

    def _check_phase_order(self, item_id: str, phase: str, at: datetime) -> None:
        if phase == "intake":
            checkout = self._records.get((item_id, "checkout"))
            if checkout is not None and at > checkout.captured_at:
                raise ValidationError(
                    f"Intake evidence for '{item_id}' cannot be captured after its checkout evidence",
                    {"item_id": item_id, "intake_at": at.isoformat(),
                     "checkout_at": checkout.captured_at.isoformat()},
                )
        else:
            intake = self._records.get((item_id, "intake"))
            if intake is not None and at < intake.captured_at:
                raise ValidationError(
                    f"Checkout evidence for '{item_id}' cannot predate its intake evidence",
                    {"item_id": item_id, "intake_at": intake.captured_at.isoformat(),
                     "checkout_at": at.isoformat()},
                )

    def record_evidence(
        self,
        item_id: str,
        phase: str,
        photo_refs: Sequence[str],
        notes: str | None = None,
        captured_at: datetime | None = None,
    ) -> EvidenceRecord:
        """Append photo references to the (item, phase) record, creating it if absent.

        Raises:
            ValidationError: unknown phase or item, blank reference, empty
                photo set for a record that does not exist yet, or an intake
                capture later than the checkout capture.
        """
        if phase not in PHASES:
            raise ValidationError(f"Unknown phase '{phase}' (expected intake or checkout)")
        self._require_known_item(item_id)
        refs = list(photo_refs)
        if any(not isinstance(ref, str) or not ref.strip() for ref in refs):
            raise ValidationError(f"Blank photo reference for '{item_id}' ({phase})")

        key = (item_id, phase)
        at = _as_utc(captured_at) if captured_at else utcnow()
        with self._key_lock(key):
            record = self._records.get(key)
            if record is None:
                if not refs:
                    raise ValidationError(
                        f"Cannot create {phase} evidence for '{item_id}' without photos",
                        {"item_id": item_id, "phase": phase},
                    )
                record = EvidenceRecord(item_id, phase, captured_at=at, notes=notes)
                record._append(refs, at)
                # Intake and checkout keys lock separately; the order check spans both
                with self._registry_lock:
                    self._check_phase_order(item_id, phase, at)
                    self._records[key] = record
                self.logger.info(f"Ledger {self.lease_id}: new {phase} record for {item_id} ({len(refs)} photo(s))")
                return record

            if refs:
                record._append(refs, at)
                self.logger.info(f"Ledger {self.lease_id}: +{len(refs)} {phase} photo(s) for {item_id} "
                                 f"(now {record.photo_count})")
            if notes:
                record.notes = notes
            return record

    async def record_evidence_batch(
        self,
        item_id: str,
        phase: str,
        uploads: Sequence[Awaitable[str]],
        notes: str | None = None,
    ) -> EvidenceRecord:
        """Run every upload concurrently, then write all references or none.

        Each awaitable resolves to the stored photo reference.  Batches for the
        same (item, phase) key run one after another in call order.
        """
        key = (item_id, phase)
        with self._registry_lock:
            lock = self._batch_locks.get(key)
            if lock is None:
                lock = self._batch_locks[key] = asyncio.Lock()

        async with lock:
            results = await asyncio.gather(*uploads, return_exceptions=True)
            failures = [r for r in results if isinstance(r, BaseException)]
            if failures:
                self.logger.warning(
                    f"Ledger {self.lease_id}: batch upload for {item_id} ({phase}) failed "
                    f"({len(failures)}/{len(results)} upload(s)); nothing recorded"
                )
                raise failures[0]
            return self.record_evidence(item_id, phase, list(results), notes)

    # ── Damage analyses ──

    def attach_analysis(self, item_id: str, analysis: DamageAnalysis) -> None:
        """Attach a new analysis to the item's checkout record; older ones stay retrievable."""
        key = (item_id, "checkout")
        with self._key_lock(key):
            record = self._records.get(key)
            if record is None:
                raise ValidationError(
                    f"Cannot attach a damage analysis to '{item_id}' without checkout evidence",
                    {"item_id": item_id},
                )
            record._analyses.append(analysis)
        self.logger.info(f"Ledger {self.lease_id}: analysis attached to {item_id} "
                         f"(severity={analysis.severity}, liable={analysis.tenant_liable})")

    def analyses_for(self, item_id: str) -> tuple[DamageAnalysis, ...]:
        record = self._records.get((item_id, "checkout"))
        return record.analyses if record else ()

    def latest_analysis(self, item_id: str) -> DamageAnalysis | None:
        record = self._records.get((item_id, "checkout"))
        return record.analysis if record else None

    def analysis_at(self, item_id: str, when: datetime) -> DamageAnalysis | None:
        """The analysis that was in effect at *when*."""
        when = _as_utc(when)
        current = None
        for analysis in self.analyses_for(item_id):
            if analysis.analyzed_at <= when:
                current = analysis
        return current

    # ── Completeness ──

    def photo_count(self, item_id: str, phase: str) -> int:
        record = self._records.get((item_id, phase))
        return record.photo_count if record else 0

    def completeness_of(self, item_id: str) -> str:
        """complete iff both phases have photos, missing iff neither, partial otherwise."""
        self._require_known_item(item_id)
        has_intake = self.photo_count(item_id, "intake") > 0
        has_checkout = self.photo_count(item_id, "checkout") > 0
        if has_intake and has_checkout:
            return COMPLETE
        if not has_intake and not has_checkout:
            return MISSING
        return PARTIAL

    def missing_documentation_report(self) -> list[tuple[str, str]]:
        """(item_id, gap description) for every item that is not fully documented."""
        report = []
        for item_id in self.item_ids():
            name = self.item_name(item_id)
            has_intake = self.photo_count(item_id, "intake") > 0
            has_checkout = self.photo_count(item_id, "checkout") > 0
            if has_intake and has_checkout:
                continue
            if not has_intake and not has_checkout:
                report.append((item_id, f"intake and checkout gap: no photos of {name} for either phase"))
            elif not has_intake:
                report.append((item_id, f"intake gap: no intake photos of {name}; "
                                        "pre-existing condition cannot be proven"))
            else:
                report.append((item_id, f"checkout gap: no checkout photos of {name}; "
                                        "return condition is undocumented"))
        return report

    def gaps(self) -> list[EvidenceGap]:
        """The documentation report as typed gaps with a severity."""
        gaps = []
        for item_id, description in self.missing_documentation_report():
            if description.startswith("intake and checkout"):
                severity = "severe"
            else:
                severity = "moderate"
            gaps.append(EvidenceGap(item_id=item_id, description=description, severity=severity))
        return gaps

    # ── Views for prompts ──

    def all_photo_refs(self) -> list[str]:
        """Every photo reference, grouped by item then phase (intake first)."""
        refs = []
        for item_id in self.item_ids():
            for phase in PHASES:
                record = self._records.get((item_id, phase))
                if record:
                    refs.extend(record.photo_refs)
        return refs

    def first_capture(self, phase: str) -> datetime | None:
        times = [r.captured_at for (_item, p), r in self._records.items() if p == phase]
        return min(times) if times else None

    def snapshot(self) -> dict:
        """Ledger content grouped by item and phase, for prompt payloads."""
        snap = {}
        for item_id in self.item_ids():
            item = self._items.get(item_id)
            entry = {
                "itemName": self.item_name(item_id),
                "completeness": self.completeness_of(item_id),
            }
            if item is not None:
                entry["priority"] = item.priority
                if item.description:
                    entry["description"] = item.description
            for phase in PHASES:
                record = self._records.get((item_id, phase))
                if record is None:
                    continue
                phase_entry = {
                    "photoRefs": list(record.photo_refs),
                    "photoCount": record.photo_count,
                    "capturedAt": record.captured_at.isoformat(),
                }
                if record.notes:
                    phase_entry["notes"] = record.notes
                if phase == "checkout" and record.analysis is not None:
                    phase_entry["damageAnalysis"] = record.analysis.to_document()
                entry[phase] = phase_entry
            snap[item_id] = entry
        return snap

    def get_prompt_context(self) -> str:
        """Compact text listing of every photo URL, grouped by item and phase."""
        lines = [f"=== EVIDENCE LEDGER: {len(self.item_ids())} inspection item(s) ==="]
        for item_id in self.item_ids():
            lines.append(f"\n=== ITEM: {item_id} ({self.item_name(item_id)}) "
                         f"[{self.completeness_of(item_id)}] ===")
            for phase in PHASES:
                record = self._records.get((item_id, phase))
                label = "BEFORE (Intake)" if phase == "intake" else "AFTER (Checkout)"
                if record is None or record.is_gap:
                    lines.append(f"{label}: NO PHOTOS")
                    continue
                lines.append(f"{label} Photo URLs ({record.photo_count}, captured {record.captured_at.isoformat()}):")
                for idx, ref in enumerate(record.photo_refs, 1):
                    lines.append(f"  [{idx}] {ref}")
                if phase == "checkout" and record.analysis is not None:
                    a = record.analysis
                    lines.append(f"Damage analysis: severity={a.severity}, normal_wear={a.is_normal_wear}, "
                                 f"tenant_liable={a.tenant_liable}. {a.description}")
        return "\n".join(lines)

    # ── Persistence ──

    def to_dict(self) -> dict:
        return {
            "leaseId": self.lease_id,
            "items": [item.to_document() for item in self.items],
            "records": [r.to_dict() for r in self.records()],
        }

    @classmethod
    def from_dict(cls, data: dict, logger: logging.Logger | None = None) -> "EvidenceLedger":
        """Restore a ledger; records are trusted as persisted (no re-validation of order)."""
        ledger = cls(
            lease_id=data.get("leaseId", ""),
            items=[InspectionItem.model_validate(i) for i in data.get("items", [])],
            logger=logger,
        )
        for rd in data.get("records", []):
            record = EvidenceRecord.from_dict(rd)
            ledger._records[(record.item_id, record.phase)] = record
        return ledger

    def to_documents(self) -> dict[str, dict]:
        """One document per record, keyed ``intakeEvidence.<item>`` / ``checkoutEvidence.<item>``."""
        return {f"{r.phase}Evidence.{r.item_id}": r.to_dict() for r in self.records()}

    @classmethod
    def from_documents(
        cls,
        lease_id: str,
        items: Sequence[InspectionItem],
        documents: dict[str, dict],
        logger: logging.Logger | None = None,
    ) -> "EvidenceLedger":
        return cls.from_dict(
            {
                "leaseId": lease_id,
                "items": [item.to_document() for item in items],
                "records": list(documents.values()),
            },
            logger=logger,
        )
