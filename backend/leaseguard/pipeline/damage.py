"""Damage Comparison Engine: before/after photo verdicts per inspection item.

Every failure path resolves in the tenant's favour: an unreadable model answer,
an unavailable model, a missing photo side or a doubtful location match all
produce "no damage, normal wear, not liable".  Quick match fails open so a
checkout capture is never blocked by the validator.
"""

import asyncio
import logging
from typing import Sequence

from leaseguard.config import COMPARISON_CONCURRENCY
from leaseguard.pipeline.errors import ValidationError
from leaseguard.pipeline.evidence_ledger import EvidenceLedger
from leaseguard.pipeline.llm_client import LLMProgressCallback, ModelGateway
from leaseguard.pipeline.prompts import ComposedPrompt, PromptComposer
from leaseguard.pipeline.recovery import validate_output
from leaseguard.pipeline.schemas import DamageAnalysis, PhotoMatch

logger = logging.getLogger(__name__)

TENANT_SAFE_DESCRIPTION = "No damage attributable to the tenant could be established from the photos."
TENANT_SAFE_REASONING = (
    "Under Art. 267 CO the tenant is not liable for normal wear and tear; "
    "damage beyond it has not been demonstrated."
)


def tenant_safe_analysis(description: str = TENANT_SAFE_DESCRIPTION,
                         photos_analyzed: int | None = None, **extra) -> DamageAnalysis:
    """The verdict used whenever the comparison cannot be trusted."""
    return DamageAnalysis(
        has_damage=False,
        severity="none",
        is_normal_wear=True,
        tenant_liable=False,
        description=description,
        liability_reasoning=TENANT_SAFE_REASONING,
        photos_analyzed=photos_analyzed,
        **extra,
    )


def skipped_match() -> PhotoMatch:
    return PhotoMatch(is_match=True, confidence="medium",
                      reason="Validation check skipped", recommendation="accept")


class DamageComparisonEngine:
    """Runs comparison prompts through the gateway and validates the verdicts."""

    def __init__(
        self,
        gateway: ModelGateway,
        composer: PromptComposer,
        concurrency: int = COMPARISON_CONCURRENCY,
        logger: logging.Logger | None = None,
    ):
        self.gateway = gateway
        self.composer = composer
        self.concurrency = max(1, concurrency)
        self.logger = logger or logging.getLogger(__name__)

    async def _ask(self, prompt: ComposedPrompt, model, on_progress: LLMProgressCallback | None):
        result = await self.gateway.complete(prompt, on_progress=on_progress)
        if result.used_fallback:
            self.logger.warning(f"[{prompt.stage}] model unavailable ({result.error_type})")
            return None
        outcome = validate_output(result.text, model, label=prompt.stage)
        if not outcome.ok:
            self.logger.warning(f"[{prompt.stage}] unusable output: {outcome.failure.reason}")
            return None
        return outcome.value

    async def quick_match(self, item_name: str, before_ref: str, after_ref: str,
                          on_progress: LLMProgressCallback | None = None) -> PhotoMatch:
        """Same location/angle check before a checkout photo is committed."""
        prompt = self.composer.compose_quick_match(item_name, before_ref, after_ref)
        match = await self._ask(prompt, PhotoMatch, on_progress)
        if match is None:
            return skipped_match()
        self.logger.info(f"Quick match '{item_name}': match={match.is_match} ({match.confidence})")
        return match

    async def _compare(self, prompt: ComposedPrompt, item_name: str, before_refs: Sequence[str],
                       after_refs: Sequence[str], on_progress) -> DamageAnalysis:
        total = len(before_refs) + len(after_refs)
        if not before_refs or not after_refs:
            missing = "intake" if not before_refs else "checkout"
            self.logger.info(f"{prompt.stage} '{item_name}': no {missing} photos, nothing to compare")
            return tenant_safe_analysis(
                f"No {missing} photos of {item_name}; no damage can be attributed to the tenant.",
                photos_analyzed=total,
            )

        analysis = await self._ask(prompt, DamageAnalysis, on_progress)
        if analysis is None:
            return tenant_safe_analysis(photos_analyzed=total)

        if analysis.location_confidence == "low":
            self.logger.info(f"{prompt.stage} '{item_name}': low location confidence, verdict neutralized")
            return tenant_safe_analysis(
                "Before and after photos may not show the same location; no damage can be attributed.",
                photos_analyzed=analysis.photos_analyzed or total,
                state_grade=analysis.state_grade,
                same_location=analysis.same_location,
                location_confidence="low",
            )

        self.logger.info(
            f"{prompt.stage} '{item_name}': damage={analysis.has_damage}, severity={analysis.severity}, "
            f"liable={analysis.tenant_liable}"
        )
        return analysis

    async def compare(self, item_name: str, before_refs: Sequence[str], after_refs: Sequence[str],
                      on_progress: LLMProgressCallback | None = None) -> DamageAnalysis:
        prompt = self.composer.compose_comparison(item_name, list(before_refs), list(after_refs))
        return await self._compare(prompt, item_name, before_refs, after_refs, on_progress)

    async def assess_deterioration(self, item_name: str, before_refs: Sequence[str],
                                   after_refs: Sequence[str],
                                   on_progress: LLMProgressCallback | None = None) -> DamageAnalysis:
        """Like compare, but asks for a state grade A+..F instead of a detailed breakdown."""
        prompt = self.composer.compose_deterioration(item_name, list(before_refs), list(after_refs))
        return await self._compare(prompt, item_name, before_refs, after_refs, on_progress)

    # ── Ledger-driven comparisons ──

    async def compare_item(self, ledger: EvidenceLedger, item_id: str, deterioration: bool = False,
                           on_progress: LLMProgressCallback | None = None) -> DamageAnalysis:
        """Compare an item's intake and checkout photos and attach the verdict to the ledger."""
        checkout = ledger.record(item_id, "checkout")
        if checkout is None:
            raise ValidationError(f"No checkout evidence recorded for '{item_id}'", {"item_id": item_id})
        intake = ledger.record(item_id, "intake")
        before = list(intake.photo_refs) if intake else []
        after = list(checkout.photo_refs)
        name = ledger.item_name(item_id)

        if deterioration:
            analysis = await self.assess_deterioration(name, before, after, on_progress)
        else:
            analysis = await self.compare(name, before, after, on_progress)
        ledger.attach_analysis(item_id, analysis)
        return analysis

    async def compare_items(self, ledger: EvidenceLedger, item_ids: Sequence[str] | None = None,
                            deterioration: bool = False,
                            on_progress: LLMProgressCallback | None = None) -> dict[str, DamageAnalysis]:
        """Compare several items concurrently; items without checkout photos are skipped."""
        ids = list(item_ids) if item_ids is not None else ledger.item_ids()
        runnable = [i for i in ids if ledger.record(i, "checkout") is not None]
        skipped = len(ids) - len(runnable)
        if skipped:
            self.logger.info(f"Skipping {skipped} item(s) without checkout evidence")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(item_id: str) -> tuple[str, DamageAnalysis]:
            async with semaphore:
                return item_id, await self.compare_item(ledger, item_id, deterioration, on_progress)

        results = await asyncio.gather(*[_one(i) for i in runnable])
        return dict(results)
