"""Defense report validation and block structure.

The report stage returns markdown, not JSON.  It is accepted only when it is
non-empty, carries enough of the required section headings and does not cite
placeholder photo references; the accepted text is then split into typed
blocks for rendering.
"""

import logging
import re
from typing import Sequence

from leaseguard.config import REPORT_MIN_SECTION_MARKERS
from leaseguard.pipeline.citations import extract_citations, mark_citations
from leaseguard.pipeline.recovery import Err, Ok, RecoveryFailure
from leaseguard.pipeline.schemas import DefenseReport, ReportBlock

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_URL_RE = re.compile(r"(?:https?|gs)://[^\s)\]\"'<>]+")
_PLACEHOLDER_RES = [
    re.compile(r"\[\s*(?:(?:before|after|intake|checkout)\s+)?(?:photo\s+)?(?:url|link)\s*\]", re.IGNORECASE),
    re.compile(r"Photo \[[XY]\]"),
    re.compile(r"<(?:photo[_\s-]*)?(?:url|link|image)[^>]*>", re.IGNORECASE),
    re.compile(r"\{\{?\s*(?:photo_?)?url\s*\}?\}", re.IGNORECASE),
    re.compile(r"full-url-\d+", re.IGNORECASE),
]
_PLACEHOLDER_URL_HINTS = ("example.com", "example.org", "placeholder", "your-url", "url-here", "xxx")

_RECOMMENDATION_SECTIONS = ("recommend", "next steps", "defense strategy", "negotiation")


def find_placeholder_refs(markdown: str, known_refs: Sequence[str] = ()) -> list[str]:
    """Photo references that are template filler rather than real evidence.

    URLs the ledger actually holds are never flagged, whatever their host.
    """
    known = set(known_refs)
    found = []
    for pattern in _PLACEHOLDER_RES:
        found.extend(m.group(0) for m in pattern.finditer(markdown))
    for m in _URL_RE.finditer(markdown):
        url = m.group(0)
        if url in known:
            continue
        if any(hint in url.lower() for hint in _PLACEHOLDER_URL_HINTS):
            found.append(url)
    return found


def present_sections(markdown: str, required: Sequence[str]) -> list[str]:
    lines = [line.strip().lower() for line in markdown.splitlines()]
    return [marker for marker in required
            if any(line.startswith(marker.lower()) for line in lines)]


def validate_report_markdown(
    markdown: str | None,
    required_sections: Sequence[str],
    min_markers: int = REPORT_MIN_SECTION_MARKERS,
    known_refs: Sequence[str] = (),
) -> Ok[str] | Err:
    if markdown is None or not markdown.strip():
        return Err(RecoveryFailure("Report", "Report is empty"))

    text = markdown.strip()
    present = present_sections(text, required_sections)
    needed = min(min_markers, len(required_sections))
    if len(present) < needed:
        return Err(RecoveryFailure(
            "Report",
            f"Report is missing its required sections ({len(present)} of {len(required_sections)} present)",
            text[:200],
        ))

    placeholders = find_placeholder_refs(text, known_refs)
    if placeholders:
        return Err(RecoveryFailure(
            "Report",
            f"Report cites placeholder photo references: {', '.join(placeholders[:3])}",
            text[:200],
        ))
    return Ok(text)


def _classify(text: str, section: str, refs: tuple[str, ...]) -> str:
    if refs:
        return "evidence_comparison"
    if "timeline" in section:
        return "timeline"
    if any(key in section for key in _RECOMMENDATION_SECTIONS):
        return "recommendation"
    return "text"


def split_blocks(markdown: str, known_refs: Sequence[str] = ()) -> tuple[ReportBlock, ...]:
    blocks: list[ReportBlock] = []
    paragraph: list[str] = []
    section = ""

    def flush():
        text = "\n".join(paragraph).strip()
        paragraph.clear()
        if not text:
            return
        refs = tuple(ref for ref in known_refs if ref in text)
        blocks.append(ReportBlock(kind=_classify(text, section, refs), content=text, photo_refs=refs))

    for line in markdown.splitlines():
        m = _HEADING_RE.match(line)
        if m:
            flush()
            title = m.group(2).strip()
            blocks.append(ReportBlock(kind="heading", content=title, level=len(m.group(1))))
            section = title.lower()
            continue
        if not line.strip():
            flush()
            continue
        paragraph.append(line)
    flush()
    return tuple(blocks)


def build_report(markdown: str, known_refs: Sequence[str] = ()) -> DefenseReport:
    """Turn validated markdown into a DefenseReport with citations marked."""
    text = mark_citations(markdown.strip())
    cited = sorted((ref for ref in set(known_refs) if ref in text), key=text.index)
    report = DefenseReport(
        markdown=text,
        blocks=split_blocks(text, known_refs),
        photo_refs=tuple(cited),
        citations=tuple(extract_citations(text)),
    )
    logger.info(f"Report built: {len(report.blocks)} block(s), {len(report.photo_refs)} photo ref(s), "
                f"{len(report.citations)} citation(s)")
    return report
