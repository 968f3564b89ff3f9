"""Final synthesis: section-by-section generation with citation checks, plus report rewrites."""

import asyncio
import logging
import re

from config.config_loader import ModelsConfig, PromptsConfig, SynthesisConfig
from research_council.citations import CitationRegistry
from research_council.errors import NoUsableOutput
from research_council.executor import Executor, check_cancelled, interruptible_sleep
from research_council.models import GenerationRequest

logger = logging.getLogger(__name__)

_SECTION_HEADING_RE = re.compile(r"^#{1,2}\s+\S")


def split_outline(outline: str) -> list[str]:
    """Split a markdown outline at # and ## headings.

    Text before the first heading stays with the first section. Deeper headings
    (###) remain inside their parent section.
    """
    sections: list[list[str]] = []
    preamble: list[str] = []
    for line in outline.splitlines():
        if _SECTION_HEADING_RE.match(line):
            sections.append(preamble + [line] if not sections else [line])
            preamble = []
        elif sections:
            sections[-1].append(line)
        else:
            preamble.append(line)

    if not sections:
        text = "\n".join(preamble).strip()
        return [text] if text else []
    return ["\n".join(lines).strip() for lines in sections if "\n".join(lines).strip()]


def format_sources(registry: CitationRegistry) -> str:
    lines = [f"[{c.id}] {c.title} - {c.url}" for c in registry.get_all()]
    return "\n".join(lines) or "No sources were collected."


def validate_chunk(chunk: str, registry: CitationRegistry, label: str) -> list[int]:
    """Record usage for marks that resolve; warn about ids outside the known range."""
    found = registry.scan_marks(chunk)
    known = [i for i in found if 1 <= i <= registry.max_id]
    unknown = [i for i in found if not 1 <= i <= registry.max_id]
    if unknown:
        logger.warning(
            "%s cites unknown source id(s) %s (known range 1-%d)",
            label, unknown, registry.max_id,
        )
    registry.record_usage(known)
    return known


async def run_synthesis(
    topic: str,
    outline: str | None,
    notes: str,
    registry: CitationRegistry,
    mode: str,
    executor: Executor,
    config: SynthesisConfig,
    prompts: PromptsConfig,
    models: ModelsConfig,
    cancel: asyncio.Event | None = None,
) -> str:
    """Generate the document section by section (or whole, without an outline).

    Raises:
        CancelledByUser: the cancel event fired before or between sections.
        AllCredentialsExhausted: the execution layer gave up on a section.
        NoUsableOutput: a section came back empty.
    """
    model = models.model_for("synthesizer", mode)
    sources = format_sources(registry)
    notes_text = notes or "No research notes were collected."
    sections = split_outline(outline) if outline else []

    if not sections:
        logger.info("No outline; generating the whole document with %s", model)
        check_cancelled(cancel, "synthesis")
        prompt = prompts.whole_document.format(topic=topic, notes=notes_text, sources=sources)
        request = GenerationRequest.from_text(
            model, prompt, temperature=config.temperature, operation="synthesizeDocument"
        )
        response = await executor.execute(request, cancel)
        document = response.text.strip()
        if not document:
            raise NoUsableOutput("synthesis", "Whole-document generation returned no content")
        validate_chunk(document, registry, "Document")
        return document

    logger.info("Synthesizing %d section(s) with %s", len(sections), model)
    chunks: list[str] = []
    for index, section in enumerate(sections, start=1):
        if index > 1:
            await interruptible_sleep(config.section_pause_sec, cancel, "synthesis")
        check_cancelled(cancel, "synthesis")

        heading = section.splitlines()[0].lstrip("#").strip()
        prompt = prompts.section.format(
            topic=topic, section=section, notes=notes_text, sources=sources
        )
        request = GenerationRequest.from_text(
            model, prompt, temperature=config.temperature, operation="synthesizeSection"
        )
        response = await executor.execute(request, cancel)
        chunk = response.text.strip()
        if not chunk:
            raise NoUsableOutput(
                "synthesis", f"Section {index}/{len(sections)} '{heading}' returned no content"
            )
        validate_chunk(chunk, registry, f"Section {index} '{heading}'")
        chunks.append(chunk)
        logger.info("Section %d/%d complete: %s", index, len(sections), heading)

    return "\n\n".join(chunks)


async def rewrite_report(
    document: str,
    instruction: str,
    mode: str,
    executor: Executor,
    config: SynthesisConfig,
    prompts: PromptsConfig,
    models: ModelsConfig,
    cancel: asyncio.Event | None = None,
) -> str:
    """Rewrite a finished report according to a free-text instruction.

    Raises:
        CancelledByUser: the cancel event fired.
        AllCredentialsExhausted: the execution layer gave up.
        NoUsableOutput: the rewrite came back empty.
    """
    model = models.model_for("synthesizer", mode)
    check_cancelled(cancel, "rewrite")
    logger.info("Rewriting report (%d chars) with %s", len(document), model)

    prompt = prompts.rewrite.format(document=document, instruction=instruction)
    request = GenerationRequest.from_text(
        model, prompt, temperature=config.rewrite_temperature, operation="rewriteReport"
    )
    response = await executor.execute(request, cancel)
    rewritten = response.text.strip()
    if not rewritten:
        raise NoUsableOutput("rewrite", "Report rewrite returned no content")
    return rewritten
