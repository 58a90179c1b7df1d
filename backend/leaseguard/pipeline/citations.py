"""Law citation marking and lookup.

Reports cite articles as ``**Art. 257 CO**`` / ``**OR Art. 267**`` so the UI
can make them clickable.  ``mark_citations`` bolds any citation the model left
plain; running it twice changes nothing.
"""

import logging
import re
from typing import AsyncIterator, Protocol

from leaseguard.pipeline.errors import ValidationError
from leaseguard.pipeline.llm_client import ModelGateway
from leaseguard.pipeline.prompts import LegalCatalogue, PromptComposer, article_key

logger = logging.getLogger(__name__)

MARKED_CITATION_RE = re.compile(r"\*\*((?:OR\s+)?Art\.?\s*\d+[a-z]?(?:\s+(?:CO|OR))?)\*\*", re.IGNORECASE)

_UNMARKED_CITATION_RE = re.compile(
    r"(?<!\*\*)"
    r"(OR\s+Art\.?\s*\d+[a-z]?(?:\s+(?:CO|OR)\b)?|Art\.?\s*\d+[a-z]?\s+(?:CO|OR)\b)"
    r"(?!\*\*)"
)


def mark_citations(text: str) -> str:
    return _UNMARKED_CITATION_RE.sub(lambda m: f"**{m.group(1)}**", text)


def extract_citations(text: str) -> list[str]:
    """Marked citations in order of first appearance, duplicates removed."""
    seen = set()
    citations = []
    for m in MARKED_CITATION_RE.finditer(text):
        token = " ".join(m.group(1).split())
        if token not in seen:
            seen.add(token)
            citations.append(token)
    return citations


class CitationLookup(Protocol):
    async def explain(self, article: str) -> str: ...


class CatalogueCitationLookup:
    """Offline lookup: the catalogue's one-line topic for the article."""

    def __init__(self, catalogue: LegalCatalogue):
        self.catalogue = catalogue

    async def explain(self, article: str) -> str:
        entry = self.catalogue.find_article(article)
        if entry is None:
            raise ValidationError(f"'{article}' is not a rental-law article in the catalogue",
                                  {"article": article})
        return f"**{entry['article']}**: {entry['topic']}.\nCatalogue section: {entry['group']}"


class GatewayCitationLookup:
    """Explains an article through the model, streaming the four-section answer.

    Falls back to the catalogue entry while the model is unreachable.
    """

    def __init__(self, gateway: ModelGateway, composer: PromptComposer,
                 fallback: CitationLookup | None = None):
        self.gateway = gateway
        self.composer = composer
        self.fallback = fallback or CatalogueCitationLookup(composer.catalogue)

    def _online(self) -> bool:
        return self.gateway.settings.has_credential and not self.gateway.fallback.is_open

    async def stream(self, article: str) -> AsyncIterator[str]:
        if article_key(article) is None:
            raise ValidationError(f"'{article}' is not an article reference", {"article": article})
        if not self._online():
            yield await self.fallback.explain(article)
            return
        prompt = self.composer.compose_article_explanation(article)
        async for delta in self.gateway.stream(prompt.user, prompt.system, task_label=prompt.stage):
            yield delta

    async def explain(self, article: str) -> str:
        parts = [delta async for delta in self.stream(article)]
        text = "".join(parts)
        logger.info(f"Explained {article} ({len(text):,} chars)")
        return text
