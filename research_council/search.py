"""Grounded search: one tool-enabled request, sources registered as citations."""

import asyncio
import logging
from urllib.parse import urlsplit

from config.config_loader import ModelsConfig, PromptsConfig, SearchConfig
from research_council.citations import CitationRegistry
from research_council.executor import Executor
from research_council.models import Citation, Finding, GenerationRequest, Source

logger = logging.getLogger(__name__)


def _domain(url: str) -> str | None:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def _quality(source: Source) -> int:
    return len(source.title or "") + (10 if source.url.startswith("https") else 0)


def select_sources(sources: list[Source], config: SearchConfig) -> list[Source]:
    """Drop exact-URL duplicates, keep the best few per domain, cap the total."""
    unique = list({s.url: s for s in sources}.values())

    by_domain: dict[str, list[Source]] = {}
    for source in unique:
        # Unparseable URLs each get their own bucket
        key = _domain(source.url) or f"invalid_{source.url}"
        by_domain.setdefault(key, []).append(source)

    selected: list[Source] = []
    for group in by_domain.values():
        if len(group) <= config.per_domain_limit:
            selected.extend(group)
        else:
            selected.extend(sorted(group, key=_quality, reverse=True)[:config.per_domain_limit])

    if len(selected) > config.max_sources:
        selected = selected[:config.ideal_sources]
    return selected


async def run_search(
    query: str,
    executor: Executor,
    registry: CitationRegistry,
    config: SearchConfig,
    prompts: PromptsConfig,
    models: ModelsConfig,
    mode: str,
    cancel: asyncio.Event | None = None,
    outline: str | None = None,
    section: str | None = None,
) -> Finding:
    """Search with the grounding tool and turn the result into a research note."""
    if outline and section:
        prompt = prompts.section_search.format(query=query, outline=outline, section=section)
    else:
        prompt = prompts.search.format(query=query)

    request = GenerationRequest.from_text(
        models.model_for("searcher", mode),
        prompt,
        tools=("google_search",),
        operation="search",
    )
    response = await executor.execute(request, cancel)

    sources = select_sources(response.sources, config)
    citations = [Citation(url=s.url, title=s.title or s.url) for s in sources]
    text, ids = registry.mark_text(f'Summary for "{query}": {response.text.strip()}', citations)
    logger.info("Search '%s' returned %d source(s)", query, len(ids))
    return Finding(query=query, text=text, citation_ids=ids)
