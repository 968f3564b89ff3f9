"""Click CLI: orchestrates config loading, credential checks, outline debate, search and synthesis."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from research_council.brief import parse_brief
from research_council.credentials import CredentialPool, mask_key
from research_council.errors import CancelledByUser, CouncilError
from research_council.healthcheck import check_credentials
from research_council.models import DebateTurn
from research_council.output import print_report, print_turn, save_report, save_rewrite
from research_council.providers.base import Transport
from research_council.session import ResearchSession, build_transport

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

MODES = ("deep", "balanced", "fast", "ultrafast")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _resolve_settings(
    config: AppConfig,
    meta: dict,
    mode_cli: str | None,
    rounds_cli: int | None,
    queries_cli: tuple[str, ...],
) -> tuple[str, int, list[str]]:
    """Precedence: CLI flag > brief frontmatter > config default."""
    mode = mode_cli or str(meta.get("mode") or config.defaults.mode)
    rounds = (
        rounds_cli if rounds_cli is not None
        else int(meta["rounds"]) if "rounds" in meta
        else config.negotiation.max_rounds
    )
    queries = list(queries_cli) if queries_cli else list(meta.get("queries") or [])
    return mode, rounds, queries


def _check_and_filter_credentials(
    pool: CredentialPool,
    transport: Transport,
    model: str,
) -> CredentialPool:
    """Ping every key, print results, and ask what to do on failures.

    Returns a pool of the working keys. Exits if the user declines to
    continue or no key passes.
    """
    console.print("\n[bold]Checking API keys...[/bold]")
    results = asyncio.run(check_credentials(pool.keys(), transport, model))

    working: list[str] = []
    failed: list[str] = []
    for key in pool.keys():
        ok, err = results[key]
        if ok:
            console.print(f"  [green]OK  [/green] {mask_key(key)}")
            working.append(key)
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {mask_key(key)}: {short_err}")
            failed.append(key)

    if not failed:
        console.print()
        return pool

    if not working:
        console.print("\n[bold red]Error:[/bold red] No API key passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed)} key(s) failed.[/yellow] {len(working)} working.")
    if not click.confirm("Continue with working keys only?", default=True):
        sys.exit(0)

    console.print()
    return CredentialPool(working)


async def _run_research(
    session: ResearchSession,
    topic: str,
    queries: list[str],
    context: str,
    with_outline: bool,
    outline: str | None,
    rounds: int,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Run one research session and return the saved report path."""
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, session.cancel.set)

    console.print(f"\n[bold cyan]Research Council[/bold cyan] | {session.mode} mode, {session.pool.size()} key(s)")
    console.print(f"Topic: [italic]{topic[:80]}{'...' if len(topic) > 80 else ''}[/italic]\n")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:

        def on_turn(turn: DebateTurn) -> None:
            progress.print(f"[green]OK[/green] {turn.persona.value} turn accepted ({turn.action.value})")
            print_turn(turn)

        task = progress.add_task("Running research...", total=None)
        try:
            report = await session.run(
                topic,
                queries=queries,
                context=context,
                with_outline=with_outline,
                outline=outline,
                on_turn=on_turn,
                max_rounds=rounds,
            )
        finally:
            progress.update(task, description="Done")
            if sys.platform != "win32":
                loop.remove_signal_handler(signal.SIGINT)

    print_report(report)
    saved_path = save_report(report, output_dir, slug_override=slug_override)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


async def _run_rewrite(
    session: ResearchSession,
    document: str,
    instruction: str,
    output_dir: Path,
    slug: str,
) -> Path:
    """Rewrite an existing report and return the saved path."""
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, session.cancel.set)

    console.print(f"\n[bold cyan]Research Council[/bold cyan] | rewrite, {session.mode} mode")
    console.print(f"Instruction: [italic]{instruction[:80]}[/italic]\n")

    try:
        with console.status("Rewriting report..."):
            rewritten = await session.rewrite(document, instruction)
    finally:
        if sys.platform != "win32":
            loop.remove_signal_handler(signal.SIGINT)

    console.print(Markdown(rewritten))
    saved_path = save_rewrite(rewritten, instruction, output_dir, slug)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


@click.command()
@click.argument("topic", required=False)
@click.option("--file", "brief_file", type=click.Path(exists=True), help="Read topic and settings from a .md brief")
@click.option("--mode", type=click.Choice(MODES), default=None, help="Operating mode (default: from config)")
@click.option("--rounds", default=None, type=int, help="Maximum outline debate rounds (default: from config)")
@click.option("--query", "queries", multiple=True, help="Grounded search query; repeatable")
@click.option("--outline", "outline_file", type=click.Path(exists=True), default=None,
              help="Use a ready-made outline instead of running the debate")
@click.option("--no-outline", is_flag=True, default=False, help="Skip the outline debate; write the whole document at once")
@click.option("--rewrite", "rewrite_file", type=click.Path(exists=True), default=None,
              help="Rewrite an existing report instead of researching a topic")
@click.option("--instruction", default=None, help="How to rewrite the report (used with --rewrite)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API key connectivity check at startup")
def main(
    topic: str | None,
    brief_file: str | None,
    mode: str | None,
    rounds: int | None,
    queries: tuple[str, ...],
    outline_file: str | None,
    no_outline: bool,
    rewrite_file: str | None,
    instruction: str | None,
    output_path: str | None,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Research Council -- two-agent outline debate and cited long-form synthesis.

    \b
    Examples:
      research-council "Impact of sleep on memory consolidation"
      research-council "CRISPR delivery methods" --mode deep --query "lipid nanoparticles CRISPR"
      research-council "Edge AI accelerators" --no-outline --mode fast
      research-council --file brief.md
      research-council --rewrite output/report.md --instruction "Shorten to an executive summary"
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    meta: dict = {}
    slug_override: str | None = None
    topic_text = ""
    if rewrite_file:
        if not instruction:
            console.print("[bold red]Error:[/bold red] --rewrite needs --instruction.")
            sys.exit(1)
    elif brief_file:
        topic_text, meta = parse_brief(Path(brief_file))
        slug_override = Path(brief_file).stem
    elif topic:
        topic_text = topic
    else:
        console.print("[bold red]Error:[/bold red] Provide a TOPIC argument or --file.")
        sys.exit(1)

    effective_mode, effective_rounds, effective_queries = _resolve_settings(
        config, meta, mode, rounds, queries
    )
    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    outline_path = outline_file or meta.get("outline")
    outline = Path(outline_path).read_text(encoding="utf-8").strip() if outline_path else None

    try:
        transport = build_transport(config.models)
    except ValueError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    pool = CredentialPool.from_env(config.api_key_envs)
    if pool.size() == 0:
        console.print("[bold red]Error:[/bold red] No API keys available. Set them in .env.")
        sys.exit(1)

    if not skip_health_check:
        # Health check runs in its own event loop; give the session fresh clients.
        pool = _check_and_filter_credentials(
            pool, transport, config.models.model_for("searcher", effective_mode)
        )
        transport = build_transport(config.models)

    session = ResearchSession(config, pool, transport, mode=effective_mode)

    if rewrite_file:
        document = Path(rewrite_file).read_text(encoding="utf-8")
        try:
            asyncio.run(
                _run_rewrite(
                    session,
                    document,
                    instruction or "",
                    effective_output,
                    slug=Path(rewrite_file).stem,
                )
            )
        except CancelledByUser:
            console.print("\n[yellow]Stopped.[/yellow]")
            sys.exit(130)
        except CouncilError as exc:
            console.print(f"\n[bold red]Rewrite failed:[/bold red] {exc}")
            sys.exit(1)
        return

    try:
        asyncio.run(
            _run_research(
                session,
                topic=topic_text,
                queries=effective_queries,
                context=str(meta.get("context") or ""),
                with_outline=not no_outline,
                outline=outline,
                rounds=effective_rounds,
                output_dir=effective_output,
                slug_override=slug_override,
            )
        )
    except CancelledByUser:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(130)
    except CouncilError as exc:
        console.print(f"\n[bold red]Research failed:[/bold red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
