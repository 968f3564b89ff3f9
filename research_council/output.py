"""Rich console output and markdown file save for research reports."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from research_council.models import Citation, DebateTurn, Persona, ResearchReport

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_PERSONA_STYLES = {
    Persona.STRATEGIST: "cyan",
    Persona.IMPLEMENTER: "magenta",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 60) -> str:
    """Return first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def format_reference(citation: Citation) -> str:
    """[id] Authors (year). Title. Source. URL (accessed date)"""
    parts = [f"[{citation.id}]"]
    if citation.authors:
        parts.append(f"{citation.authors} ({citation.year})." if citation.year else f"{citation.authors}.")
    elif citation.year:
        parts.append(f"({citation.year}).")
    parts.append(f"{citation.title.rstrip('.')}.")
    if citation.source:
        parts.append(f"{citation.source.rstrip('.')}.")
    url = citation.url
    if citation.access_date:
        url += f" (accessed {citation.access_date})"
    parts.append(url)
    return " ".join(parts)


def print_turn(turn: DebateTurn) -> None:
    """Print one accepted debate turn as it arrives."""
    style = _PERSONA_STYLES.get(turn.persona, "white")
    console.print(
        Panel(
            _preview(turn.thought),
            title=f"[bold {style}]{turn.persona.value.title()}[/bold {style}]",
            subtitle=turn.action.value,
            border_style="dim",
        )
    )


def print_report(report: ResearchReport) -> None:
    """Print the final document to the console using Rich markdown."""
    cited = sum(1 for c in report.citations if c.times_cited > 0)
    console.print(Rule("[bold green]Research Report[/bold green]"))
    console.print(
        Text(
            f"Mode: {report.mode} | "
            f"Duration: {report.duration_sec:.1f}s | "
            f"Outline: {'yes' if report.outline else 'no'} | "
            f"Sources: {cited} cited / {len(report.citations)} collected",
            style="dim",
        )
    )
    console.print(Markdown(report.document))


def save_report(report: ResearchReport, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the report as a markdown file with outline and reference sections.

    Args:
        report: The completed ResearchReport.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the topic. Useful when running from a brief file.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(report.topic)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    cited = [c for c in report.citations if c.times_cited > 0]
    uncited = [c for c in report.citations if c.times_cited == 0]

    lines: list[str] = [
        f"<!-- Research Council: {report.topic[:80]} -->",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode:** {report.mode}",
        f"**Duration:** {report.duration_sec:.1f}s",
        f"**Sources:** {len(cited)} cited, {len(uncited)} uncited",
        "",
        "---",
        "",
        report.document,
        "",
    ]

    if cited:
        lines += ["## References", ""]
        lines += [f"- {format_reference(c)}" for c in cited]
        lines.append("")

    if uncited:
        lines += ["## Further Reading", ""]
        lines += [f"- {format_reference(c)}" for c in uncited]
        lines.append("")

    if report.outline:
        lines += ["---", "", "## Appendix: Outline", "", report.outline, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Report saved to: %s", filepath)
    return filepath


def save_rewrite(document: str, instruction: str, output_dir: Path, slug: str) -> Path:
    """Save a rewritten report next to the others as {timestamp}_{slug}_rewrite.md."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(slug)}_rewrite.md"

    lines = [
        f"<!-- Research Council rewrite: {instruction[:80]} -->",
        "",
        document,
        "",
    ]
    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Rewrite saved to: %s", filepath)
    return filepath
